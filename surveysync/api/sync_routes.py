"""
Sync API routes.

POST   /api/sync                                 — Start (or reuse) a sync job for a subject
GET    /api/sync/jobs/{job_id}                   — Job status and counters
GET    /api/sync/jobs/{job_id}/preview           — Filtered, paginated rows once the job completed
GET    /api/sync/cache                           — Per-subject cache statistics
GET    /api/sync/cache/{subject}                 — Cache summary for one subject
GET    /api/sync/cache/{subject}/edits           — Records with local description overrides
GET    /api/sync/records/{global_id}/descriptions — Original and edited child summaries
PUT    /api/sync/records/{global_id}/descriptions — Set or clear one override
GET    /api/sync/photos/{subject}/{global_id}    — Photos materialized for a record
GET    /api/sync/photos/{subject}/{global_id}/{filename} — Photo file
GET    /api/sync/subjects                        — Distinct subject codes on the remote
GET    /api/sync/logs                            — Recent reconciliation passes (debug)
"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel

from surveysync.remote.client import RemoteServiceError
from surveysync.sync.engine import sync_engine
from surveysync.sync.jobs import JobNotFoundError
from surveysync.sync.orchestrator import SubjectRequiredError
from surveysync.sync.query import InvalidQueryError, NotReady
from surveysync.sync.store import EditFieldError, RecordNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


# ── Request/Response Models ─────────────────────────────────────────────

class SyncRequest(BaseModel):
    subject: str
    force: bool = False


class SyncResponse(BaseModel):
    job_id: str
    status: str
    created: bool
    fresh: bool


class JobOut(BaseModel):
    id: str
    subject: str
    status: str
    message: Optional[str] = None
    fetched: int
    total: int
    attachments_downloaded: int
    attachments_total: int
    from_cache: bool
    error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    finished_at: Optional[str] = None


class CacheOut(BaseModel):
    subject: str
    exists: bool
    record_count: int
    photo_count: int
    last_sync_at: Optional[str] = None
    kind: Optional[str] = None
    fresh: bool
    needs_sync: bool


class SubjectStatsOut(BaseModel):
    subject: str
    record_count: int
    photo_count: int
    last_edited_at: Optional[str] = None
    last_sync_at: Optional[str] = None


class PhotoOut(BaseModel):
    layer_id: int
    objectid: int
    attachment_id: int
    filename: str
    content_type: Optional[str] = None
    size_bytes: Optional[int] = None
    url: str


class DescriptionEditRequest(BaseModel):
    field: str
    value: Optional[str] = None


class DescriptionsOut(BaseModel):
    globalid: str
    descrip_1: Optional[str] = None
    descrip_1_editada: Optional[str] = None
    hecho_detec_1: Optional[str] = None
    hecho_detec_1_editado: Optional[str] = None
    descrip_2: Optional[str] = None
    descrip_2_editada: Optional[str] = None
    user_edited_at: Optional[str] = None


class PreviewOut(BaseModel):
    job_id: str
    subject: str
    rows: list[dict]
    total: int
    page: int
    page_size: int
    pages: int


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


# ── Routes ──────────────────────────────────────────────────────────────

@router.post("", response_model=SyncResponse)
def start_sync(req: SyncRequest):
    """Start a sync job, or return the one already running for this subject."""
    try:
        job, created, fresh = sync_engine.start_sync(req.subject, force=req.force)
    except SubjectRequiredError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return SyncResponse(job_id=job.id, status=job.status.value, created=created, fresh=fresh)


@router.get("/jobs/{job_id}", response_model=JobOut)
def get_job(job_id: str):
    try:
        job = sync_engine.jobs.get(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return JobOut(**job.to_dict())


@router.get("/jobs/{job_id}/preview", response_model=PreviewOut)
def preview_job(
    job_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=500),
    sort: Optional[str] = None,
    direction: str = "desc",
    supervisor: Optional[str] = None,
    componente: Optional[str] = None,
    tipo_componente: Optional[str] = None,
    actividad: Optional[str] = None,
    instalacion_referencia: Optional[str] = None,
    hecho_detectado: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
):
    """Rows for the job's subject; 202 while the job is still running."""
    filters = {
        "supervisor": supervisor,
        "componente": componente,
        "tipo_componente": tipo_componente,
        "actividad": actividad,
        "instalacion_referencia": instalacion_referencia,
        "hecho_detectado": hecho_detectado,
    }
    try:
        result = sync_engine.query.preview(
            job_id,
            filters=filters,
            date_range=(date_from, date_to),
            sort=sort,
            direction=direction,
            page=page,
            page_size=page_size,
        )
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidQueryError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if isinstance(result, NotReady):
        return JSONResponse(
            status_code=202,
            content={"preparing": True, "job_id": result.job_id, "status": result.status.value},
        )
    job = sync_engine.jobs.get(job_id)
    return PreviewOut(job_id=job.id, subject=job.subject, **result.to_dict())


@router.get("/cache", response_model=list[SubjectStatsOut])
def cache_stats():
    """Record and photo counts for every cached subject."""
    return [
        SubjectStatsOut(
            subject=s["subject"],
            record_count=s["record_count"],
            photo_count=s["photo_count"],
            last_edited_at=_iso(s["last_edited_at"]),
            last_sync_at=_iso(s["last_sync_at"]),
        )
        for s in sync_engine.store.subject_stats()
    ]


@router.get("/cache/{subject}", response_model=CacheOut)
def cache_summary(subject: str):
    try:
        summary = sync_engine.cache_summary(subject)
    except SubjectRequiredError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return CacheOut(
        subject=summary.subject,
        exists=summary.exists,
        record_count=summary.record_count,
        photo_count=summary.photo_count,
        last_sync_at=_iso(summary.last_sync_at),
        kind=summary.kind,
        fresh=summary.fresh,
        needs_sync=summary.needs_sync,
    )


@router.get("/photos/{subject}/{global_id}", response_model=list[PhotoOut])
def list_photos(subject: str, global_id: str):
    photos = sync_engine.photos(subject, global_id)
    return [
        PhotoOut(
            layer_id=p.layer_id,
            objectid=p.objectid,
            attachment_id=p.attachment_id,
            filename=p.filename,
            content_type=p.content_type,
            size_bytes=p.size_bytes,
            url=f"{router.prefix}/photos/{subject}/{p.record_globalid}/{p.filename}",
        )
        for p in photos
    ]


@router.get("/photos/{subject}/{global_id}/{filename}")
def get_photo(subject: str, global_id: str, filename: str):
    photo = sync_engine.photo(subject, global_id, filename)
    if photo is None:
        raise HTTPException(status_code=404, detail="Photo not found")
    return FileResponse(photo.local_path, media_type=photo.content_type, filename=photo.filename)


@router.get("/subjects", response_model=list[str])
def list_subjects(search: str = ""):
    """Distinct subject codes offered by the remote service."""
    try:
        return sync_engine.subjects(search)
    except RemoteServiceError as e:
        logger.warning("Subject lookup failed: %s", e)
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/logs")
def recent_logs(subject: Optional[str] = None, limit: int = Query(20, ge=1, le=200)):
    """Recent reconciliation passes (debug endpoint)."""
    return [
        {**entry, "started_at": _iso(entry["started_at"])}
        for entry in sync_engine.store.recent_logs(subject, limit)
    ]


@router.get("/cache/{subject}/edits", response_model=list[DescriptionsOut])
def list_edited_descriptions(subject: str):
    """Records of the subject carrying local description overrides."""
    try:
        edits = sync_engine.edited_descriptions(subject)
    except SubjectRequiredError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [DescriptionsOut(**e.to_dict()) for e in edits]


@router.get("/records/{global_id}/descriptions", response_model=DescriptionsOut)
def get_descriptions(global_id: str):
    edits = sync_engine.descriptions(global_id)
    if edits is None:
        raise HTTPException(status_code=404, detail=f"Record not found: {global_id}")
    return DescriptionsOut(**edits.to_dict())


@router.put("/records/{global_id}/descriptions", response_model=DescriptionsOut)
def edit_description(global_id: str, req: DescriptionEditRequest):
    """Override one child summary locally; a null or blank value clears the override."""
    try:
        edits = sync_engine.edit_description(global_id, req.field, req.value)
    except EditFieldError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return DescriptionsOut(**edits.to_dict())
