"""
ORM models for import jobs, the staging table and the lead tables they feed.

The ``leads``, ``lead_history``, ``profiles`` and ``notifications`` tables are
owned by the CRM; only the columns the import pipeline reads or writes are
declared here.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB

from app.db.session import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class ImportJob(Base):
    """One uploaded file moving through parse and commit."""

    __tablename__ = "import_jobs"

    id = Column(String(36), primary_key=True, default=_new_id)
    created_by = Column(String(36), nullable=True, index=True)
    file_name = Column(String(255), nullable=False)
    file_type = Column(String(10), nullable=False)
    storage_path = Column(Text, nullable=False)
    file_hash = Column(String(64), nullable=True, index=True)
    file_size = Column(Integer, nullable=True)
    sheet_name = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default="pending", index=True)

    column_mapping = Column(JSONType, nullable=True)
    assignment_config = Column(JSONType, nullable=True)
    duplicate_config = Column(JSONType, nullable=True)
    default_status = Column(String(50), nullable=True)
    default_source = Column(String(255), nullable=True)

    total_rows = Column(Integer, nullable=True)
    valid_rows = Column(Integer, nullable=False, default=0)
    invalid_rows = Column(Integer, nullable=False, default=0)
    processed_rows = Column(Integer, nullable=False, default=0)
    imported_rows = Column(Integer, nullable=False, default=0)
    skipped_rows = Column(Integer, nullable=False, default=0)
    current_chunk = Column(Integer, nullable=False, default=0)
    total_chunks = Column(Integer, nullable=True)
    last_checkpoint = Column(JSONType, nullable=True)
    worker_id = Column(String(255), nullable=True)

    error_message = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class ImportRow(Base):
    """Staged input line; ``status`` is valid/invalid after parse, imported/skipped after commit."""

    __tablename__ = "import_rows"
    __table_args__ = (
        UniqueConstraint("import_job_id", "row_number", name="uq_import_rows_job_row"),
        Index("idx_import_rows_job_status_row", "import_job_id", "status", "row_number"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    import_job_id = Column(
        String(36), ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False
    )
    row_number = Column(Integer, nullable=False)
    chunk_number = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False)
    raw_data = Column(JSONType, nullable=False)
    normalized_data = Column(JSONType, nullable=True)
    validation_errors = Column(JSONType, nullable=True)
    lead_id = Column(String(36), nullable=True)
    action = Column(String(20), nullable=True)
    duplicate_of_row = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=_new_id)
    display_name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    role = Column(String(50), nullable=False, default="sales")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class Lead(Base):
    __tablename__ = "leads"

    id = Column(String(36), primary_key=True, default=_new_id)
    external_id = Column(String(255), nullable=True, index=True)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True, index=True)
    phone = Column(String(50), nullable=True, index=True)
    company = Column(String(255), nullable=True)
    job_title = Column(String(255), nullable=True)
    address = Column(Text, nullable=True)
    city = Column(String(255), nullable=True)
    postal_code = Column(String(20), nullable=True)
    country = Column(String(100), nullable=True, default="France")
    status = Column(String(50), nullable=False, default="new")
    status_label = Column(String(100), nullable=True)
    source = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    assigned_to = Column(String(36), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)
    import_job_id = Column(String(36), ForeignKey("import_jobs.id", ondelete="SET NULL"), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class LeadHistory(Base):
    __tablename__ = "lead_history"

    id = Column(String(36), primary_key=True, default=_new_id)
    lead_id = Column(String(36), ForeignKey("leads.id", ondelete="CASCADE"), nullable=False, index=True)
    actor_id = Column(String(36), nullable=True)
    event_type = Column(String(50), nullable=False)
    before_data = Column(JSONType, nullable=True)
    after_data = Column(JSONType, nullable=True)
    # "metadata" is reserved on declarative classes.
    event_metadata = Column("metadata", JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=True)
    payload = Column("metadata", JSONType, nullable=True)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
