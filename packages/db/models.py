"""
SQLAlchemy ORM models for diagnosis run persistence.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone as dt_timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, JSON, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, relationship


def _uuid():
    return uuid.uuid4().hex


def utcnow():
    return datetime.now(dt_timezone.utc)


class Base(DeclarativeBase):
    pass


class PatientContext(Base):
    """Latest assembled context bundle for a patient, written by the context producer."""
    __tablename__ = "patient_contexts"

    patient_id = Column(String(120), primary_key=True)
    organization_id = Column(String(120), nullable=False, index=True)
    demographics = Column(JSON, nullable=True)
    current_measures = Column(JSON, nullable=True)
    anamnesis = Column(JSON, nullable=True)
    funnel_runs = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class DiagnosisRun(Base):
    __tablename__ = "diagnosis_runs"

    id = Column(String(120), primary_key=True, default=_uuid)
    patient_id = Column(String(120), nullable=False, index=True)
    organization_id = Column(String(120), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="queued", index=True)  # queued | running | succeeded | failed
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    input_config = Column(JSON, nullable=True)
    output_data = Column(JSON, nullable=True)
    error_code = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)
    error_details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)

    # Worker management
    worker_id = Column(String(100), nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    heartbeat_at = Column(DateTime, nullable=True)

    artifact_links = relationship(
        "DiagnosisRunArtifact",
        back_populates="run",
        order_by="DiagnosisRunArtifact.sequence_order",
    )


class DiagnosisArtifact(Base):
    __tablename__ = "diagnosis_artifacts"

    id = Column(String(120), primary_key=True, default=_uuid)
    organization_id = Column(String(120), nullable=False, index=True)
    patient_id = Column(String(120), nullable=False, index=True)
    artifact_type = Column(String(64), nullable=False, default="diagnosis_json")
    artifact_name = Column(String(200), nullable=False)
    artifact_data = Column(JSON, nullable=False)
    schema_version = Column(String(20), nullable=False, default="v1")
    risk_level = Column(String(20), nullable=True)
    created_at = Column(DateTime, default=utcnow)


class DiagnosisRunArtifact(Base):
    __tablename__ = "diagnosis_run_artifacts"
    __table_args__ = (
        UniqueConstraint("run_id", "sequence_order", name="uq_run_artifact_sequence"),
    )

    id = Column(String(120), primary_key=True, default=_uuid)
    run_id = Column(String(120), ForeignKey("diagnosis_runs.id"), nullable=False, index=True)
    artifact_id = Column(String(120), ForeignKey("diagnosis_artifacts.id"), nullable=False, unique=True)
    sequence_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)

    run = relationship("DiagnosisRun", back_populates="artifact_links")
    artifact = relationship("DiagnosisArtifact")
