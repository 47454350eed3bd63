"""
High-level sync engine — wires the client, store, orchestrator, tracker and
query engine together and owns their lifecycle.

Lifecycle: initialize → start/get/preview jobs → shutdown
"""

import logging
from pathlib import Path
from typing import Optional

from surveysync.config.field_mapping import CODE_FIELD, PARENT_LAYER
from surveysync.config.settings import settings
from surveysync.remote.client import LayerClient
from surveysync.remote.fields import normalize_global_id
from surveysync.sync.attachments import AttachmentMaterializer, sanitize_filename
from surveysync.sync.jobs import JobTracker, JobView
from surveysync.sync.orchestrator import SyncOrchestrator, require_subject
from surveysync.sync.query import QueryEngine
from surveysync.sync.store import (
    CacheStore,
    CacheSummary,
    DescriptionEdits,
    PhotoAttachment,
    RecordNotFoundError,
)

logger = logging.getLogger(__name__)


class SyncEngine:
    """Orchestrates the sync service lifecycle."""

    def __init__(
        self,
        client: Optional[LayerClient] = None,
        session_factory=None,
        photos_dir: Optional[Path] = None,
        freshness_minutes: Optional[float] = None,
        retention_minutes: Optional[float] = None,
        page_size: Optional[int] = None,
    ):
        self._client = client
        self._session_factory = session_factory
        self._photos_dir = photos_dir
        self._freshness_minutes = freshness_minutes
        self._retention_minutes = retention_minutes
        self._page_size = page_size
        self._store: Optional[CacheStore] = None
        self._orchestrator: Optional[SyncOrchestrator] = None
        self._jobs: Optional[JobTracker] = None
        self._query: Optional[QueryEngine] = None
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def client(self) -> LayerClient:
        self._ensure()
        return self._client

    @property
    def store(self) -> CacheStore:
        self._ensure()
        return self._store

    @property
    def orchestrator(self) -> SyncOrchestrator:
        self._ensure()
        return self._orchestrator

    @property
    def jobs(self) -> JobTracker:
        self._ensure()
        return self._jobs

    @property
    def query(self) -> QueryEngine:
        self._ensure()
        return self._query

    # ── Lifecycle ───────────────────────────────────────────────────

    def initialize(self) -> None:
        if self._initialized:
            return
        self._client = self._client or LayerClient()
        self._store = CacheStore(self._session_factory, freshness_minutes=self._freshness_minutes)
        materializer = AttachmentMaterializer(self._client, self._store, photos_dir=self._photos_dir)
        self._orchestrator = SyncOrchestrator(self._client, self._store, materializer, page_size=self._page_size)
        self._query = QueryEngine(self._store)
        self._jobs = JobTracker(
            self._orchestrator,
            session_factory=self._store.session_factory,
            retention_minutes=self._retention_minutes,
            prepare=self._query.prepare,
        )
        self._query.jobs = self._jobs
        self._initialized = True
        logger.info("Sync engine initialized (photos: %s)", materializer.photos_dir)

    def startup(self) -> None:
        """Initialize, fail jobs orphaned by a previous process, start cleanup."""
        self.initialize()
        self._jobs.recover_interrupted()
        self._jobs.purge_expired()
        self._jobs.start_cleanup()

    def shutdown(self) -> None:
        if not self._initialized:
            return
        self._jobs.stop_cleanup()
        self._client.close()
        logger.info("Sync engine stopped")

    def _ensure(self) -> None:
        if not self._initialized:
            self.initialize()

    # ── Operations ──────────────────────────────────────────────────

    def start_sync(self, subject: str, force: bool = False) -> tuple[JobView, bool, bool]:
        """Returns (job, created, fresh) where fresh reports the cache state at request time."""
        subject = require_subject(subject)
        fresh = self.store.is_fresh(subject)
        job, created = self.jobs.start(subject, force=force)
        return job, created, fresh

    def cache_summary(self, subject: str) -> CacheSummary:
        return self.store.summary(require_subject(subject))

    def photos(self, subject: str, global_id: str) -> list[PhotoAttachment]:
        subject = require_subject(subject)
        gid = normalize_global_id(global_id)
        if gid is None:
            return []
        with self.store.session() as db:
            return self.store.photos_for(db, subject, [gid]).get(gid, [])

    def photo(self, subject: str, global_id: str, filename: str) -> Optional[PhotoAttachment]:
        """The photo with this filename on any layer, or None if missing or not on disk."""
        wanted = sanitize_filename(filename)
        for photo in self.photos(subject, global_id):
            if photo.filename == wanted and Path(photo.local_path).is_file():
                return photo
        return None

    def subjects(self, search: str = "") -> list[str]:
        """Distinct subject codes on the remote parent layer."""
        return self.client.distinct_values(PARENT_LAYER, CODE_FIELD, search)

    def edit_description(self, global_id: str, field: str, value: Optional[str]) -> DescriptionEdits:
        gid = normalize_global_id(global_id)
        if gid is None:
            raise RecordNotFoundError(f"Record not found: {global_id}")
        return self.store.update_edited(gid, field, value)

    def descriptions(self, global_id: str) -> Optional[DescriptionEdits]:
        gid = normalize_global_id(global_id)
        return self.store.description_edits(gid) if gid else None

    def edited_descriptions(self, subject: str) -> list[DescriptionEdits]:
        return self.store.edited_descriptions(require_subject(subject))

    def status(self) -> dict:
        return {
            "initialized": self._initialized,
            "layer_url": settings.layer_url,
            "photos_dir": str(self._photos_dir or settings.photos_dir),
            "freshness_minutes": (
                settings.freshness_minutes if self._freshness_minutes is None else self._freshness_minutes
            ),
        }


# Singleton
sync_engine = SyncEngine()
