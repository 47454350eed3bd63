"""
Local cache store — owns every survey table.

The writes of a reconciliation pass for one subject run inside `reconcile()`,
a single session committed once at the end, so readers never see a
half-applied sync. Callers finish every remote call before opening it: the
SQLite write lock is held from the first flush until the commit.

User overrides of the child summaries (`*_editada` columns) belong to this
store alone; reconciliation never writes them.
"""

import json
import logging
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Generator, Iterable, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from surveysync.config.field_mapping import EDITABLE_FIELDS
from surveysync.config.settings import settings
from surveysync.models.survey import (
    CodeKind,
    SubjectSync,
    SurveyDescription,
    SurveyFact,
    SurveyPhoto,
    SurveyRecord,
    SyncLogEntry,
    SyncLogStatus,
    as_utc,
    utcnow,
)
from surveysync.remote.fields import DescriptionFields, FactFields, ParentFields, join_values
from surveysync.storage.database import SessionLocal, get_db

logger = logging.getLogger(__name__)

_CHUNK = 500  # bound on bind parameters per IN (...) clause


class RecordNotFoundError(LookupError):
    pass


class EditFieldError(ValueError):
    pass


class UpsertOutcome:
    inserted = "inserted"
    updated = "updated"
    unchanged = "unchanged"


@dataclass(frozen=True)
class PhotoAttachment:
    id: str
    subject: str
    record_globalid: str
    layer_id: int
    objectid: int
    attachment_id: int
    filename: str
    local_path: str
    content_type: Optional[str]
    size_bytes: Optional[int]
    downloaded_at: datetime

    @classmethod
    def from_row(cls, row: SurveyPhoto) -> "PhotoAttachment":
        return cls(
            id=row.id,
            subject=row.subject,
            record_globalid=row.record_globalid,
            layer_id=row.layer_id,
            objectid=row.objectid,
            attachment_id=row.attachment_id,
            filename=row.filename,
            local_path=row.local_path,
            content_type=row.content_type,
            size_bytes=row.size_bytes,
            downloaded_at=as_utc(row.downloaded_at),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "layer_id": self.layer_id,
            "objectid": self.objectid,
            "attachment_id": self.attachment_id,
            "filename": self.filename,
            "local_path": self.local_path,
            "content_type": self.content_type,
            "size_bytes": self.size_bytes,
        }


@dataclass(frozen=True)
class DescriptionEdits:
    globalid: str
    descrip_1: Optional[str]
    descrip_1_editada: Optional[str]
    hecho_detec_1: Optional[str]
    hecho_detec_1_editado: Optional[str]
    descrip_2: Optional[str]
    descrip_2_editada: Optional[str]
    user_edited_at: Optional[datetime]

    @classmethod
    def from_row(cls, row: SurveyRecord) -> "DescriptionEdits":
        return cls(
            globalid=row.globalid,
            descrip_1=row.descrip_1,
            descrip_1_editada=row.descrip_1_editada,
            hecho_detec_1=row.hecho_detec_1,
            hecho_detec_1_editado=row.hecho_detec_1_editado,
            descrip_2=row.descrip_2,
            descrip_2_editada=row.descrip_2_editada,
            user_edited_at=as_utc(row.user_edited_at),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["user_edited_at"] = self.user_edited_at.isoformat() if self.user_edited_at else None
        return data


@dataclass(frozen=True)
class CacheSummary:
    subject: str
    exists: bool
    record_count: int
    photo_count: int
    last_sync_at: Optional[datetime]
    kind: Optional[str]
    fresh: bool

    @property
    def needs_sync(self) -> bool:
        return not self.fresh


def subject_clause(subject: str):
    return or_(SurveyRecord.codigo_accion == subject, SurveyRecord.otro_ca == subject)


def _chunks(items: list, size: int = _CHUNK):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class CacheStore:
    """Relational cache for survey records, children, photos and sync state."""

    def __init__(self, session_factory=None, freshness_minutes: Optional[float] = None):
        self._session_factory = session_factory or SessionLocal
        self._freshness = timedelta(
            minutes=settings.freshness_minutes if freshness_minutes is None else freshness_minutes
        )

    @property
    def session_factory(self):
        return self._session_factory

    def session(self):
        return get_db(self._session_factory)

    @contextmanager
    def reconcile(self, subject: str) -> Generator[Session, None, None]:
        """One transaction covering every write of a reconciliation pass."""
        logger.debug("Opening reconciliation transaction for %s", subject)
        with self.session() as db:
            yield db
        logger.debug("Committed reconciliation transaction for %s", subject)

    # ── Parents ─────────────────────────────────────────────────────

    def active_global_ids(self, db: Session, subject: str) -> set[str]:
        rows = (
            db.query(SurveyRecord.globalid)
            .filter(subject_clause(subject), SurveyRecord.is_deleted.is_(False))
            .all()
        )
        return {gid for (gid,) in rows}

    def fingerprints(self, db: Session, global_ids: Iterable[str]) -> dict[str, tuple[str, bool]]:
        """globalid -> (fingerprint, is_deleted) for cached rows among global_ids."""
        result = {}
        for chunk in _chunks(list(global_ids)):
            rows = (
                db.query(SurveyRecord.globalid, SurveyRecord.fingerprint, SurveyRecord.is_deleted)
                .filter(SurveyRecord.globalid.in_(chunk))
                .all()
            )
            for gid, fp, deleted in rows:
                result[gid] = (fp, bool(deleted))
        return result

    def upsert_parent(
        self,
        db: Session,
        parent: ParentFields,
        raw: dict,
        force: bool = False,
        fingerprint: Optional[str] = None,
    ) -> str:
        fingerprint = fingerprint or parent.fingerprint()
        row = db.query(SurveyRecord).filter_by(globalid=parent.globalid).first()

        if row is not None and not force and not row.is_deleted and row.fingerprint == fingerprint:
            return UpsertOutcome.unchanged

        values = parent.columns()
        values["raw_json"] = json.dumps(raw, default=str)
        values["fingerprint"] = fingerprint
        values["is_deleted"] = False
        values["synced_at"] = utcnow()

        if row is None:
            db.add(SurveyRecord(**values))
            db.flush()
            return UpsertOutcome.inserted

        if row.is_deleted:
            logger.info("Reactivating soft-deleted record %s", parent.globalid)
        for key, value in values.items():
            setattr(row, key, value)
        db.flush()
        return UpsertOutcome.updated

    def replace_children(
        self,
        db: Session,
        global_id: str,
        descriptions: list[tuple[DescriptionFields, dict]],
        facts: list[tuple[FactFields, dict]],
    ) -> None:
        """Delete-then-insert both child sets and refresh the parent's flattened summaries."""
        db.query(SurveyDescription).filter_by(record_globalid=global_id).delete(synchronize_session=False)
        db.query(SurveyFact).filter_by(record_globalid=global_id).delete(synchronize_session=False)

        for desc, raw in descriptions:
            db.add(SurveyDescription(
                record_globalid=global_id,
                objectid=desc.objectid,
                descrip_1=desc.descrip_1,
                extra=json.dumps(desc.extra, default=str) if desc.extra else None,
                raw_json=json.dumps(raw, default=str),
            ))
        for fact, raw in facts:
            db.add(SurveyFact(
                record_globalid=global_id,
                objectid=fact.objectid,
                hecho_detec_1=fact.hecho_detec_1,
                descrip_2=fact.descrip_2,
                extra=json.dumps(fact.extra, default=str) if fact.extra else None,
                raw_json=json.dumps(raw, default=str),
            ))

        parent = db.query(SurveyRecord).filter_by(globalid=global_id).one()
        parent.descrip_1 = join_values(d.descrip_1 for d, _ in descriptions)
        parent.hecho_detec_1 = join_values(f.hecho_detec_1 for f, _ in facts)
        parent.descrip_2 = join_values(f.descrip_2 for f, _ in facts)
        db.flush()

    def sweep_deleted(self, db: Session, subject: str, seen_global_ids: set[str]) -> int:
        """Soft-delete cached parents of subject that the remote no longer returns."""
        missing = sorted(self.active_global_ids(db, subject) - set(seen_global_ids))
        now = utcnow()
        for chunk in _chunks(missing):
            (
                db.query(SurveyRecord)
                .filter(SurveyRecord.globalid.in_(chunk))
                .update({"is_deleted": True, "synced_at": now}, synchronize_session=False)
            )
        for gid in missing:
            logger.info("Record %s no longer on remote — marked deleted", gid)
        return len(missing)

    # ── Subject state ───────────────────────────────────────────────

    def record_sync(self, subject: str, kind: Optional[str], record_count: int) -> None:
        with self.session() as db:
            row = db.get(SubjectSync, subject)
            if row is None:
                row = SubjectSync(subject=subject)
                db.add(row)
            row.kind = CodeKind(kind) if kind else None
            row.record_count = record_count
            row.last_sync_at = utcnow()

    def last_sync_at(self, subject: str) -> Optional[datetime]:
        with self.session() as db:
            row = db.get(SubjectSync, subject)
            return as_utc(row.last_sync_at) if row else None

    def is_fresh(self, subject: str, now: Optional[datetime] = None) -> bool:
        last = self.last_sync_at(subject)
        if last is None:
            return False
        return (now or utcnow()) - last < self._freshness

    def summary(self, subject: str) -> CacheSummary:
        with self.session() as db:
            state = db.get(SubjectSync, subject)
            record_count = (
                db.query(func.count(SurveyRecord.id))
                .filter(subject_clause(subject), SurveyRecord.is_deleted.is_(False))
                .scalar()
            ) or 0
            photo_count = (
                db.query(func.count(SurveyPhoto.id))
                .filter(SurveyPhoto.subject == subject)
                .scalar()
            ) or 0
            last = as_utc(state.last_sync_at) if state else None
            kind = state.kind.value if state and state.kind else None

        fresh = last is not None and utcnow() - last < self._freshness
        return CacheSummary(
            subject=subject,
            exists=state is not None,
            record_count=record_count,
            photo_count=photo_count,
            last_sync_at=last,
            kind=kind,
            fresh=fresh,
        )

    def subject_stats(self) -> list[dict]:
        """Active record counts per cached subject, most recently synced first."""
        code = func.coalesce(SurveyRecord.codigo_accion, SurveyRecord.otro_ca)
        with self.session() as db:
            rows = (
                db.query(
                    code.label("subject"),
                    func.count(SurveyRecord.id),
                    func.max(SurveyRecord.last_edited_date),
                    func.max(SurveyRecord.synced_at),
                )
                .filter(code.isnot(None), SurveyRecord.is_deleted.is_(False))
                .group_by(code)
                .all()
            )
            photos = dict(
                db.query(SurveyPhoto.subject, func.count(SurveyPhoto.id))
                .group_by(SurveyPhoto.subject)
                .all()
            )
            synced = {s.subject: as_utc(s.last_sync_at) for s in db.query(SubjectSync).all()}

        stats = [
            {
                "subject": subject,
                "record_count": count,
                "photo_count": photos.get(subject, 0),
                "last_edited_at": as_utc(last_edit),
                "last_sync_at": synced.get(subject) or as_utc(last_synced),
            }
            for subject, count, last_edit, last_synced in rows
        ]
        stats.sort(key=lambda s: (s["last_sync_at"] is not None, s["last_sync_at"] or utcnow()), reverse=True)
        return stats

    # ── Photos ──────────────────────────────────────────────────────

    def find_photo(self, subject: str, global_id: str, layer_id: int, filename: str) -> Optional[PhotoAttachment]:
        with self.session() as db:
            row = (
                db.query(SurveyPhoto)
                .filter_by(subject=subject, record_globalid=global_id, layer_id=layer_id, filename=filename)
                .first()
            )
            return PhotoAttachment.from_row(row) if row else None

    def save_photo(
        self,
        subject: str,
        global_id: str,
        layer_id: int,
        objectid: int,
        attachment_id: int,
        filename: str,
        local_path: str,
        content_type: Optional[str],
        size_bytes: Optional[int],
    ) -> PhotoAttachment:
        """Record a materialized file; a forced re-download refreshes the existing row."""
        with self.session() as db:
            row = (
                db.query(SurveyPhoto)
                .filter_by(subject=subject, record_globalid=global_id, layer_id=layer_id, filename=filename)
                .first()
            )
            if row is None:
                row = SurveyPhoto(
                    subject=subject,
                    record_globalid=global_id,
                    layer_id=layer_id,
                    filename=filename,
                )
                db.add(row)
            row.objectid = objectid
            row.attachment_id = attachment_id
            row.local_path = local_path
            row.content_type = content_type
            row.size_bytes = size_bytes
            row.downloaded_at = utcnow()
            db.flush()
            return PhotoAttachment.from_row(row)

    def photos_for(self, db: Session, subject: str, global_ids: Iterable[str]) -> dict[str, list[PhotoAttachment]]:
        result: dict[str, list[PhotoAttachment]] = {}
        for chunk in _chunks(list(global_ids)):
            rows = (
                db.query(SurveyPhoto)
                .filter(SurveyPhoto.subject == subject, SurveyPhoto.record_globalid.in_(chunk))
                .order_by(SurveyPhoto.layer_id, SurveyPhoto.filename)
                .all()
            )
            for row in rows:
                result.setdefault(row.record_globalid, []).append(PhotoAttachment.from_row(row))
        return result

    # ── User edits ──────────────────────────────────────────────────

    def update_edited(self, global_id: str, field: str, value: Optional[str]) -> DescriptionEdits:
        """Set (or clear, with a blank value) the local override of one child summary."""
        column = EDITABLE_FIELDS.get(field)
        if column is None:
            raise EditFieldError(
                f"Field not editable: {field}. Valid fields: {', '.join(EDITABLE_FIELDS)}"
            )
        if value is not None and not str(value).strip():
            value = None

        with self.session() as db:
            row = db.query(SurveyRecord).filter_by(globalid=global_id).first()
            if row is None:
                raise RecordNotFoundError(f"Record not found: {global_id}")
            setattr(row, column, value)
            row.user_edited_at = utcnow()
            db.flush()
            logger.info("Updated %s for %s", column, global_id)
            return DescriptionEdits.from_row(row)

    def description_edits(self, global_id: str) -> Optional[DescriptionEdits]:
        with self.session() as db:
            row = db.query(SurveyRecord).filter_by(globalid=global_id).first()
            return DescriptionEdits.from_row(row) if row else None

    def edited_descriptions(self, subject: str) -> list[DescriptionEdits]:
        """Active records of subject carrying at least one override."""
        with self.session() as db:
            rows = (
                db.query(SurveyRecord)
                .filter(
                    subject_clause(subject),
                    SurveyRecord.is_deleted.is_(False),
                    or_(*(getattr(SurveyRecord, c).isnot(None) for c in EDITABLE_FIELDS.values())),
                )
                .order_by(SurveyRecord.objectid)
                .all()
            )
            return [DescriptionEdits.from_row(r) for r in rows]

    # ── Sync log ────────────────────────────────────────────────────

    def start_log(self, subject: str, force: bool, records_before: int) -> str:
        with self.session() as db:
            entry = SyncLogEntry(
                subject=subject,
                operation="force" if force else "incremental",
                status=SyncLogStatus.running,
                records_before=records_before,
            )
            db.add(entry)
            db.flush()
            return entry.id

    def finish_log(self, log_id: str, stats: dict, duration_ms: int) -> None:
        with self.session() as db:
            entry = db.get(SyncLogEntry, log_id)
            if entry is None:
                return
            entry.status = SyncLogStatus.completed
            for key in (
                "records_after", "records_inserted", "records_updated",
                "records_deleted", "photos_downloaded", "photos_failed",
            ):
                if key in stats:
                    setattr(entry, key, stats[key])
            entry.completed_at = utcnow()
            entry.duration_ms = duration_ms

    def fail_log(self, log_id: str, message: str) -> None:
        with self.session() as db:
            entry = db.get(SyncLogEntry, log_id)
            if entry is None:
                return
            entry.status = SyncLogStatus.error
            entry.error_message = message
            entry.completed_at = utcnow()

    def recent_logs(self, subject: Optional[str] = None, limit: int = 20) -> list[dict]:
        with self.session() as db:
            query = db.query(SyncLogEntry).order_by(SyncLogEntry.started_at.desc())
            if subject:
                query = query.filter(SyncLogEntry.subject == subject)
            return [
                {
                    "id": e.id,
                    "subject": e.subject,
                    "operation": e.operation,
                    "status": e.status.value,
                    "records_inserted": e.records_inserted,
                    "records_updated": e.records_updated,
                    "records_deleted": e.records_deleted,
                    "photos_downloaded": e.photos_downloaded,
                    "photos_failed": e.photos_failed,
                    "error_message": e.error_message,
                    "started_at": as_utc(e.started_at),
                    "duration_ms": e.duration_ms,
                }
                for e in query.limit(limit).all()
            ]
