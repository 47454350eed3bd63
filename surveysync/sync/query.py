"""
Query/filter engine — sorted, filtered, paginated composite views of the cache.

A composite row is the flattened parent plus its description and fact
children and its materialized photos. Soft-deleted parents never appear.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Optional, Union

from sqlalchemy import func
from sqlalchemy.orm import selectinload

from surveysync.config.field_mapping import EDITABLE_FIELDS, FILTER_FIELDS, PARENT_FIELDS, SORT_FIELDS
from surveysync.models.survey import JobStatus, SurveyFact, SurveyRecord, as_utc
from surveysync.sync.orchestrator import require_subject
from surveysync.sync.store import CacheStore, subject_clause

logger = logging.getLogger(__name__)

DEFAULT_SORT = "fecha"
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 500

DateBound = Union[date, datetime, str, None]


class InvalidQueryError(ValueError):
    pass


@dataclass(frozen=True)
class NotReady:
    """Returned by preview() while the job behind it has not completed."""
    job_id: str
    status: JobStatus


@dataclass
class QueryResult:
    rows: list[dict] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE

    @property
    def pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size if self.total else 0

    def to_dict(self) -> dict:
        return {
            "rows": self.rows,
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "pages": self.pages,
        }


def _bound(value: DateBound, end: bool) -> Optional[datetime]:
    """Inclusive UTC bound; a bare date covers the whole day."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value) if "T" in value or " " in value else date.fromisoformat(value)
        except ValueError as e:
            raise InvalidQueryError(f"Invalid date: {value!r}") from e
    if not isinstance(value, datetime):
        value = datetime.combine(value, time.max if end else time.min)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _json_or_none(text: Optional[str]) -> Optional[dict]:
    return json.loads(text) if text else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def composite_row(record: SurveyRecord, photos: list) -> dict:
    row = {}
    for column in PARENT_FIELDS:
        value = getattr(record, column)
        row[column] = _iso(value) if isinstance(value, datetime) else value
    row["descrip_1"] = record.descrip_1
    row["hecho_detec_1"] = record.hecho_detec_1
    row["descrip_2"] = record.descrip_2
    for column in EDITABLE_FIELDS.values():
        row[column] = getattr(record, column)
    row["user_edited_at"] = _iso(record.user_edited_at)
    row["extra"] = _json_or_none(record.extra)
    row["synced_at"] = _iso(record.synced_at)
    row["descriptions"] = [
        {"objectid": d.objectid, "descrip_1": d.descrip_1, "extra": _json_or_none(d.extra)}
        for d in record.descriptions
    ]
    row["facts"] = [
        {
            "objectid": f.objectid,
            "hecho_detec_1": f.hecho_detec_1,
            "descrip_2": f.descrip_2,
            "extra": _json_or_none(f.extra),
        }
        for f in record.facts
    ]
    row["photos"] = [p.to_dict() for p in photos]
    return row


class QueryEngine:
    def __init__(self, store: CacheStore, jobs=None):
        self._store = store
        # Anything with get(job_id) -> JobView; set after the tracker exists
        self.jobs = jobs

    def query(
        self,
        subject: str,
        filters: Optional[dict] = None,
        date_range: Optional[tuple[DateBound, DateBound]] = None,
        sort: Optional[str] = None,
        direction: str = "desc",
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> QueryResult:
        subject = require_subject(subject)
        sort = sort or DEFAULT_SORT
        if sort not in SORT_FIELDS:
            raise InvalidQueryError(f"Cannot sort by {sort!r}; allowed: {', '.join(SORT_FIELDS)}")
        direction = (direction or "desc").lower()
        if direction not in ("asc", "desc"):
            raise InvalidQueryError(f"Invalid sort direction: {direction!r}")
        page = max(int(page), 1)
        page_size = min(max(int(page_size), 1), MAX_PAGE_SIZE)

        with self._store.session() as db:
            q = db.query(SurveyRecord).filter(subject_clause(subject), SurveyRecord.is_deleted.is_(False))

            for key, value in (filters or {}).items():
                if value is None or not str(value).strip():
                    continue
                if key not in FILTER_FIELDS:
                    raise InvalidQueryError(f"Unknown filter: {key}")
                wanted = str(value).strip().lower()
                if key == "hecho_detectado":
                    q = q.filter(SurveyRecord.facts.any(
                        func.lower(func.trim(SurveyFact.hecho_detec_1)) == wanted
                    ))
                else:
                    column = getattr(SurveyRecord, FILTER_FIELDS[key])
                    q = q.filter(func.lower(func.trim(column)) == wanted)

            if date_range:
                start, end = _bound(date_range[0], end=False), _bound(date_range[1], end=True)
                if start and end and start > end:
                    raise InvalidQueryError("Date range start is after its end")
                if start:
                    q = q.filter(SurveyRecord.fecha >= start)
                if end:
                    q = q.filter(SurveyRecord.fecha <= end)

            total = q.count()

            order = getattr(SurveyRecord, sort)
            order = order.asc() if direction == "asc" else order.desc()
            records = (
                q.options(selectinload(SurveyRecord.descriptions), selectinload(SurveyRecord.facts))
                .order_by(order, SurveyRecord.objectid.asc())
                .offset((page - 1) * page_size)
                .limit(page_size)
                .all()
            )
            photos = self._store.photos_for(db, subject, [r.globalid for r in records])
            rows = [composite_row(r, photos.get(r.globalid, [])) for r in records]

        return QueryResult(rows=rows, total=total, page=page, page_size=page_size)

    def prepare(self, subject: str) -> int:
        """Build the first page of the default view; returns the subject's row count."""
        result = self.query(subject)
        logger.info("Prepared %s: %d records, first page %d rows", subject, result.total, len(result.rows))
        return result.total

    def preview(self, job_id: str, **kwargs) -> Union[QueryResult, NotReady]:
        """Query the subject behind a job once it has completed.

        Raises JobNotFoundError for unknown or expired jobs.
        """
        if self.jobs is None:
            raise RuntimeError("Query engine has no job tracker attached")
        job = self.jobs.get(job_id)
        if job.status != JobStatus.completed:
            return NotReady(job_id=job.id, status=job.status)
        return self.query(job.subject, **kwargs)
