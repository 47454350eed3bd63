"""
Attachment materializer.

Layout: {photos_dir}/{subject}/{globalid}/{filename}

The file is written first (temp file + rename) and the photo row recorded
after, so a row always means the file made it to disk. A failed attachment
raises AttachmentError; batch callers collect failures and carry on.
"""

import logging
import os
import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from surveysync.config.settings import settings
from surveysync.remote.client import AttachmentRef, LayerClient, RemoteServiceError
from surveysync.sync.store import CacheStore, PhotoAttachment

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r'[/\\?%*:|"<>\x00-\x1f]')


class AttachmentError(Exception):
    def __init__(self, message: str, layer: Optional[int] = None,
                 object_id: Optional[int] = None, attachment_id: Optional[int] = None):
        super().__init__(message)
        self.layer = layer
        self.object_id = object_id
        self.attachment_id = attachment_id


def sanitize_filename(name: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", str(name)).strip().strip(".")
    return cleaned or "attachment"


def photo_path(root: Path, subject: str, global_id: str, filename: str) -> Path:
    return Path(root) / sanitize_filename(subject) / sanitize_filename(global_id) / sanitize_filename(filename)


@dataclass(frozen=True)
class AttachmentTask:
    subject: str
    global_id: str
    layer: int
    object_id: int
    ref: AttachmentRef


@dataclass
class AttachmentOutcome:
    task: AttachmentTask
    photo: Optional[PhotoAttachment] = None
    error: Optional[AttachmentError] = None
    fetched: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


class AttachmentMaterializer:
    """Downloads attachments to deterministic paths; skips ones already cached."""

    def __init__(
        self,
        client: LayerClient,
        store: CacheStore,
        photos_dir: Optional[Path] = None,
        workers: Optional[int] = None,
    ):
        self._client = client
        self._store = store
        self._photos_dir = Path(photos_dir or settings.photos_dir)
        self._workers = workers or settings.attachment_workers

    @property
    def photos_dir(self) -> Path:
        return self._photos_dir

    def materialize(
        self,
        subject: str,
        global_id: str,
        layer: int,
        object_id: int,
        ref: AttachmentRef,
        force: bool = False,
    ) -> PhotoAttachment:
        photo, _ = self._materialize(AttachmentTask(subject, global_id, layer, object_id, ref), force)
        return photo

    def _materialize(self, task: AttachmentTask, force: bool) -> tuple[PhotoAttachment, bool]:
        filename = sanitize_filename(task.ref.name)
        try:
            existing = self._store.find_photo(task.subject, task.global_id, task.layer, filename)
        except SQLAlchemyError as e:
            raise AttachmentError(f"Photo lookup failed: {e}", task.layer, task.object_id, task.ref.id) from e

        if existing and not force:
            if Path(existing.local_path).exists():
                return existing, False
            logger.warning("Photo row for %s has no file on disk — downloading again", existing.local_path)

        target = photo_path(self._photos_dir, task.subject, task.global_id, filename)
        try:
            content = self._client.fetch_attachment(task.layer, task.object_id, task.ref.id)
        except RemoteServiceError as e:
            raise AttachmentError(
                f"Download of attachment {task.ref.id} (layer {task.layer}, OID {task.object_id}) failed: {e}",
                task.layer, task.object_id, task.ref.id,
            ) from e

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(target.name + ".part")
            tmp.write_bytes(content)
            os.replace(tmp, target)
        except OSError as e:
            raise AttachmentError(f"Could not write {target}: {e}", task.layer, task.object_id, task.ref.id) from e

        try:
            photo = self._store.save_photo(
                subject=task.subject,
                global_id=task.global_id,
                layer_id=task.layer,
                objectid=task.object_id,
                attachment_id=task.ref.id,
                filename=filename,
                local_path=str(target),
                content_type=task.ref.content_type,
                size_bytes=len(content),
            )
        except SQLAlchemyError as e:
            raise AttachmentError(f"Could not record {target}: {e}", task.layer, task.object_id, task.ref.id) from e

        logger.debug("Downloaded %s (%d bytes)", target, len(content))
        return photo, True

    def materialize_many(
        self,
        tasks: Iterable[AttachmentTask],
        force: bool = False,
        on_result: Optional[Callable[[AttachmentOutcome], None]] = None,
    ) -> list[AttachmentOutcome]:
        """Materialize independent attachments on a bounded worker pool."""
        tasks = list(tasks)
        outcomes: list[AttachmentOutcome] = []
        if not tasks:
            return outcomes

        with ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="attachments") as pool:
            futures = {pool.submit(self._materialize, task, force): task for task in tasks}
            for future in as_completed(futures):
                task = futures[future]
                try:
                    photo, fetched = future.result()
                    outcome = AttachmentOutcome(task=task, photo=photo, fetched=fetched)
                except AttachmentError as e:
                    logger.warning("Attachment skipped: %s", e)
                    outcome = AttachmentOutcome(task=task, error=e)
                outcomes.append(outcome)
                if on_result:
                    on_result(outcome)
        return outcomes
