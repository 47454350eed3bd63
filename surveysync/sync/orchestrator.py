"""
Sync orchestrator — reconciles one subject (action code) with the remote service.

Pass: check freshness → page parents and both child layers into memory →
check the read against the remote count → one write transaction (upsert
changed parents + replace their children, soft-delete parents missing
remotely) → materialize attachments of touched children → record last sync.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Optional

from surveysync.config.field_mapping import (
    ALT_CODE_FIELD,
    CODE_FIELD,
    DESCRIPTION_LAYER,
    FACT_LAYER,
    LINK_FIELD,
    PARENT_LAYER,
)
from surveysync.config.settings import settings
from surveysync.models.survey import CodeKind
from surveysync.remote.client import LayerClient, RemoteServiceError, in_clause, sql_literal
from surveysync.remote.fields import DescriptionFields, FactFields, ParentFields
from surveysync.sync.attachments import AttachmentMaterializer, AttachmentOutcome, AttachmentTask
from surveysync.sync.store import CacheStore, UpsertOutcome

logger = logging.getLogger(__name__)

_CHILD_BATCH = 50  # parent global ids per child-layer IN (...) query


class SubjectRequiredError(ValueError):
    pass


class SyncStage:
    checking_cache = "checking_cache"
    syncing = "syncing"
    downloading_photos = "downloading_photos"


@dataclass
class SyncProgress:
    stage: str
    fetched: int = 0
    total: int = 0
    attachments_downloaded: int = 0
    attachments_total: int = 0


@dataclass
class SyncResult:
    subject: str
    from_cache: bool = False
    total: int = 0
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    attachments_total: int = 0
    attachments_downloaded: int = 0
    attachments_cached: int = 0
    attachments_failed: int = 0
    duration_ms: int = 0
    touched: list = field(default_factory=list, repr=False)

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("touched")
        return data


@dataclass
class _FetchedParent:
    parent: ParentFields
    raw: dict
    descriptions: list
    facts: list
    fingerprint: str


def require_subject(subject: Optional[str]) -> str:
    if subject is None or not str(subject).strip():
        raise SubjectRequiredError("A subject (action code) is required")
    return str(subject).strip()


def subject_where(subject: str) -> str:
    literal = sql_literal(subject)
    return f"{CODE_FIELD} = {literal} OR {ALT_CODE_FIELD} = {literal}"


ProgressCallback = Callable[[SyncProgress], None]


class SyncOrchestrator:
    """Composes the layer client, materializer and store for one subject at a time."""

    def __init__(
        self,
        client: LayerClient,
        store: CacheStore,
        materializer: Optional[AttachmentMaterializer] = None,
        page_size: Optional[int] = None,
    ):
        self._client = client
        self._store = store
        self._materializer = materializer or AttachmentMaterializer(client, store)
        self._page_size = page_size or settings.page_size

    @property
    def store(self) -> CacheStore:
        return self._store

    def sync(self, subject: str, force: bool = False, on_progress: Optional[ProgressCallback] = None) -> SyncResult:
        subject = require_subject(subject)
        started = time.monotonic()
        result = SyncResult(subject=subject)

        def emit(stage: str) -> None:
            if on_progress:
                on_progress(SyncProgress(
                    stage=stage,
                    fetched=result.fetched,
                    total=result.total,
                    attachments_downloaded=result.attachments_downloaded,
                    attachments_total=result.attachments_total,
                ))

        # 1. Freshness
        emit(SyncStage.checking_cache)
        if not force and self._store.is_fresh(subject):
            summary = self._store.summary(subject)
            result.from_cache = True
            result.total = summary.record_count
            logger.info("Cache for %s is fresh (%d records) — skipping remote", subject, summary.record_count)
            return result

        logger.info("Syncing %s (%s)", subject, "forced" if force else "incremental")
        records_before = self._store.summary(subject).record_count
        log_id = self._store.start_log(subject, force, records_before)

        try:
            kind = self._reconcile(subject, force, result, emit)

            # 5. Attachments, after parents are committed
            emit(SyncStage.downloading_photos)
            self._materialize_attachments(subject, force, result, emit)

            # 6. Last-sync cursor only after everything above succeeded
            self._store.record_sync(subject, kind, result.total)
        except Exception as e:
            self._store.fail_log(log_id, str(e))
            raise

        result.duration_ms = int((time.monotonic() - started) * 1000)
        self._store.finish_log(
            log_id,
            {
                "records_after": self._store.summary(subject).record_count,
                "records_inserted": result.inserted,
                "records_updated": result.updated,
                "records_deleted": result.deleted,
                "photos_downloaded": result.attachments_downloaded,
                "photos_failed": result.attachments_failed,
            },
            result.duration_ms,
        )
        logger.info(
            "Sync of %s done in %dms: %d fetched, %d inserted, %d updated, %d deleted, "
            "%d/%d photos downloaded (%d already cached)",
            subject, result.duration_ms, result.fetched, result.inserted, result.updated,
            result.deleted, result.attachments_downloaded, result.attachments_total, result.attachments_cached,
        )
        return result

    # ── Steps 2-4 ───────────────────────────────────────────────────

    def _reconcile(self, subject: str, force: bool, result: SyncResult, emit) -> Optional[str]:
        where = subject_where(subject)
        result.total = self._client.count(PARENT_LAYER, where)
        emit(SyncStage.syncing)

        # Remote phase: nothing is written until every page and child set is in hand
        fetched: list[_FetchedParent] = []
        seen: set[str] = set()
        skipped = 0
        kind = None

        for page in self._client.iter_pages(PARENT_LAYER, where, page_size=self._page_size):
            parents: list[tuple[ParentFields, dict]] = []
            for attrs in page:
                parent = ParentFields.from_attributes(attrs)
                if parent is None:
                    logger.warning("Feature without global id skipped (objectid=%s)", attrs.get("OBJECTID"))
                    skipped += 1
                    continue
                if parent.globalid in seen:
                    continue
                seen.add(parent.globalid)
                parents.append((parent, attrs))
                if kind is None:
                    kind = CodeKind.codigo_accion.value if parent.codigo_accion == subject else CodeKind.otro_ca.value

            children = self._fetch_children([p for p, _ in parents])
            for parent, attrs in parents:
                descriptions, facts = children[parent.globalid]
                fetched.append(_FetchedParent(
                    parent, attrs, descriptions, facts, parent.fingerprint(descriptions, facts),
                ))

            result.fetched += len(page)
            emit(SyncStage.syncing)

        # A short read must not look like remote deletions
        if len(seen) + skipped < result.total:
            raise RemoteServiceError(
                f"Remote returned {len(seen) + skipped} of {result.total} features for {subject}; "
                "cache left unchanged"
            )
        if result.fetched > result.total:
            result.total = result.fetched

        # Local phase: one short write transaction, no network calls
        with self._store.reconcile(subject) as db:
            cached = self._store.fingerprints(db, [f.parent.globalid for f in fetched])
            for item in fetched:
                gid = item.parent.globalid
                if not force and gid in cached and not cached[gid][1] and cached[gid][0] == item.fingerprint:
                    result.unchanged += 1
                    continue

                outcome = self._store.upsert_parent(db, item.parent, item.raw, force=force, fingerprint=item.fingerprint)
                if outcome == UpsertOutcome.inserted:
                    result.inserted += 1
                elif outcome == UpsertOutcome.updated:
                    result.updated += 1
                self._store.replace_children(db, gid, item.descriptions, item.facts)
                for desc, _ in item.descriptions:
                    if desc.objectid is not None:
                        result.touched.append((gid, DESCRIPTION_LAYER, desc.objectid))
                for fact, _ in item.facts:
                    if fact.objectid is not None:
                        result.touched.append((gid, FACT_LAYER, fact.objectid))

            result.deleted = self._store.sweep_deleted(db, subject, seen)

        return kind

    def _fetch_children(self, parents: list[ParentFields]) -> dict[str, tuple[list, list]]:
        """Both child layers for the given parents, grouped by normalized global id."""
        grouped: dict[str, tuple[list, list]] = {p.globalid: ([], []) for p in parents}
        remote_ids = [p.remote_globalid or p.globalid for p in parents]

        for i in range(0, len(remote_ids), _CHILD_BATCH):
            where = in_clause(LINK_FIELD, remote_ids[i:i + _CHILD_BATCH])
            for attrs in self._client.iter_features(DESCRIPTION_LAYER, where, page_size=self._page_size):
                desc = DescriptionFields.from_attributes(attrs)
                if desc.guid in grouped:
                    grouped[desc.guid][0].append((desc, attrs))
            for attrs in self._client.iter_features(FACT_LAYER, where, page_size=self._page_size):
                fact = FactFields.from_attributes(attrs)
                if fact.guid in grouped:
                    grouped[fact.guid][1].append((fact, attrs))
        return grouped

    # ── Step 5 ──────────────────────────────────────────────────────

    def _materialize_attachments(self, subject: str, force: bool, result: SyncResult, emit) -> None:
        tasks: list[AttachmentTask] = []
        for global_id, layer, object_id in result.touched:
            try:
                refs = self._client.list_attachments(layer, object_id)
            except RemoteServiceError as e:
                logger.warning("Listing attachments for layer %d OID %s failed: %s", layer, object_id, e)
                result.attachments_failed += 1
                continue
            tasks.extend(AttachmentTask(subject, global_id, layer, object_id, ref) for ref in refs)

        result.attachments_total = len(tasks)
        emit(SyncStage.downloading_photos)

        def on_result(outcome: AttachmentOutcome) -> None:
            if outcome.ok and outcome.fetched:
                result.attachments_downloaded += 1
            elif outcome.ok:
                result.attachments_cached += 1
            else:
                result.attachments_failed += 1
            emit(SyncStage.downloading_photos)

        self._materializer.materialize_many(tasks, force=force, on_result=on_result)
