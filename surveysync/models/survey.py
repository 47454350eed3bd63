"""
SQLAlchemy models for the local survey cache.

- SurveyRecord: one row per remote parent feature (never physically deleted)
- SurveyDescription / SurveyFact: child rows, replaced with their parent
- SurveyPhoto: materialized attachment; a row means the file is on disk
- SubjectSync: per-subject sync cursor (last successful pass)
- SyncLogEntry: audit row per reconciliation pass
- SyncJob: polled job wrapping a sync
"""

from sqlalchemy import (
    Column, String, Integer, Float, Boolean, Text,
    DateTime, ForeignKey, Index, UniqueConstraint, Enum as SAEnum,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from datetime import datetime, timezone
from typing import Optional
import enum
import uuid

from surveysync.storage.database import Base


def generate_id():
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; they were written as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class JobStatus(str, enum.Enum):
    pending = "pending"
    checking_cache = "checking_cache"
    syncing = "syncing"
    downloading_photos = "downloading_photos"
    preparing = "preparing"
    completed = "completed"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.completed, JobStatus.failed)


TERMINAL_STATUSES = (JobStatus.completed, JobStatus.failed)


class CodeKind(str, enum.Enum):
    codigo_accion = "codigo_accion"
    otro_ca = "otro_ca"


class SyncLogStatus(str, enum.Enum):
    running = "running"
    completed = "completed"
    error = "error"


class SurveyRecord(Base):
    __tablename__ = "survey_records"
    __table_args__ = (
        Index("ix_records_codigo", "codigo_accion", "is_deleted"),
        Index("ix_records_otro_ca", "otro_ca", "is_deleted"),
    )

    id = Column(String, primary_key=True, default=generate_id)
    objectid = Column(Integer, nullable=True)
    globalid = Column(String, nullable=False, unique=True)
    codigo_accion = Column(String, nullable=True)
    otro_ca = Column(String, nullable=True)

    fecha = Column(DateTime(timezone=True), nullable=True)
    nombre_supervisor = Column(String, nullable=True)
    modalidad = Column(String, nullable=True)
    actividad = Column(String, nullable=True)
    componente = Column(String, nullable=True)
    tipo_componente = Column(String, nullable=True)
    instalacion_referencia = Column(String, nullable=True)
    nom_pto_ppc = Column(String, nullable=True)
    num_pto_muestreo = Column(String, nullable=True)
    nom_pto_muestreo = Column(String, nullable=True)
    norte = Column(Float, nullable=True)
    este = Column(Float, nullable=True)
    zona = Column(String, nullable=True)
    altitud = Column(Float, nullable=True)

    created_user = Column(String, nullable=True)
    created_date = Column(DateTime(timezone=True), nullable=True)
    last_edited_user = Column(String, nullable=True)
    last_edited_date = Column(DateTime(timezone=True), nullable=True)

    # Child layers flattened with " | " for list views
    descrip_1 = Column(Text, nullable=True)
    hecho_detec_1 = Column(Text, nullable=True)
    descrip_2 = Column(Text, nullable=True)

    # User overrides of the summaries above; never written by a sync
    descrip_1_editada = Column(Text, nullable=True)
    hecho_detec_1_editado = Column(Text, nullable=True)
    descrip_2_editada = Column(Text, nullable=True)
    user_edited_at = Column(DateTime(timezone=True), nullable=True)

    extra = Column(Text, nullable=True)          # JSON: unmapped attributes
    raw_json = Column(Text, nullable=True)
    fingerprint = Column(String, nullable=False)  # SHA-256 of flattened fields + children
    synced_at = Column(DateTime(timezone=True), server_default=func.now())
    is_deleted = Column(Boolean, default=False, nullable=False)

    descriptions = relationship(
        "SurveyDescription", back_populates="record",
        order_by="SurveyDescription.objectid",
    )
    facts = relationship(
        "SurveyFact", back_populates="record",
        order_by="SurveyFact.objectid",
    )


class SurveyDescription(Base):
    __tablename__ = "survey_descriptions"

    id = Column(String, primary_key=True, default=generate_id)
    record_globalid = Column(String, ForeignKey("survey_records.globalid"), nullable=False, index=True)
    objectid = Column(Integer, nullable=True)
    descrip_1 = Column(Text, nullable=True)
    extra = Column(Text, nullable=True)
    raw_json = Column(Text, nullable=True)

    record = relationship("SurveyRecord", back_populates="descriptions")


class SurveyFact(Base):
    __tablename__ = "survey_facts"

    id = Column(String, primary_key=True, default=generate_id)
    record_globalid = Column(String, ForeignKey("survey_records.globalid"), nullable=False, index=True)
    objectid = Column(Integer, nullable=True)
    hecho_detec_1 = Column(Text, nullable=True)
    descrip_2 = Column(Text, nullable=True)
    extra = Column(Text, nullable=True)
    raw_json = Column(Text, nullable=True)

    record = relationship("SurveyRecord", back_populates="facts")


class SurveyPhoto(Base):
    __tablename__ = "survey_photos"
    __table_args__ = (
        UniqueConstraint("subject", "record_globalid", "layer_id", "filename", name="uq_photo_key"),
        Index("ix_photos_record", "record_globalid"),
    )

    id = Column(String, primary_key=True, default=generate_id)
    subject = Column(String, nullable=False)
    record_globalid = Column(String, nullable=False)
    layer_id = Column(Integer, nullable=False)
    objectid = Column(Integer, nullable=False)
    attachment_id = Column(Integer, nullable=False)
    filename = Column(String, nullable=False)
    local_path = Column(String, nullable=False)
    content_type = Column(String, nullable=True)
    size_bytes = Column(Integer, nullable=True)
    downloaded_at = Column(DateTime(timezone=True), nullable=False)


class SubjectSync(Base):
    __tablename__ = "survey_subjects"

    subject = Column(String, primary_key=True)
    kind = Column(SAEnum(CodeKind), nullable=True)
    record_count = Column(Integer, nullable=False, default=0)
    last_sync_at = Column(DateTime(timezone=True), nullable=False)


class SyncLogEntry(Base):
    __tablename__ = "survey_sync_log"

    id = Column(String, primary_key=True, default=generate_id)
    subject = Column(String, nullable=False, index=True)
    operation = Column(String, nullable=False)     # "force" | "incremental"
    status = Column(SAEnum(SyncLogStatus), default=SyncLogStatus.running, nullable=False)
    records_before = Column(Integer, default=0)
    records_after = Column(Integer, default=0)
    records_inserted = Column(Integer, default=0)
    records_updated = Column(Integer, default=0)
    records_deleted = Column(Integer, default=0)
    photos_downloaded = Column(Integer, default=0)
    photos_failed = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)


class SyncJob(Base):
    __tablename__ = "sync_jobs"
    __table_args__ = (
        Index("ix_jobs_subject_status", "subject", "status"),
    )

    id = Column(String, primary_key=True, default=generate_id)
    subject = Column(String, nullable=False)
    force = Column(Boolean, default=False, nullable=False)
    status = Column(SAEnum(JobStatus), default=JobStatus.pending, nullable=False)
    message = Column(String, nullable=True)
    fetched = Column(Integer, default=0, nullable=False)
    total = Column(Integer, default=0, nullable=False)
    attachments_downloaded = Column(Integer, default=0, nullable=False)
    attachments_total = Column(Integer, default=0, nullable=False)
    from_cache = Column(Boolean, default=False, nullable=False)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
