"""SQLAlchemy models for the on-device evidence store"""
import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)

from database import Base, utcnow


def new_id() -> str:
    return str(uuid.uuid4())


# Evidence sync lifecycle
EVIDENCE_STATUSES = ("captured", "processing", "uploaded", "synced", "error")
# Report / record sync lifecycle
RECORD_STATUSES = ("draft", "pending", "synced", "error", "conflict")
PENDING_REPORT_STATUSES = ("draft", "pending", "error")


class Report(Base):
    """Inspection report; business fields travel in data_json"""
    __tablename__ = "reports"

    id = Column(String(36), primary_key=True, default=new_id)
    report_number = Column(String(50), nullable=True, index=True)
    title = Column(String(255), nullable=True)
    property_address = Column(String(500), nullable=True)
    status = Column(String(30), nullable=False, default="DRAFT")
    data_json = Column(Text, nullable=True)

    sync_status = Column(String(20), nullable=False, default="draft", index=True)
    last_sync_error = Column(Text, nullable=True)
    server_updated_at = Column(DateTime, nullable=True)  # last server version seen
    synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, index=True)


class EvidenceColumns:
    """Columns shared by every file-backed evidence item"""

    id = Column(String(36), primary_key=True, default=new_id)
    report_id = Column(String(36), ForeignKey("reports.id"), nullable=False, index=True)
    # Weak references: lookup only, no ownership
    defect_id = Column(String(36), nullable=True, index=True)
    roof_element_id = Column(String(36), nullable=True, index=True)

    original_filename = Column(String(255), nullable=False)  # under evidence/originals
    working_filename = Column(String(255), nullable=False)
    thumbnail_filename = Column(String(255), nullable=True)
    mime_type = Column(String(100), nullable=False)
    file_size = Column(Integer, nullable=False)
    original_hash = Column(String(64), nullable=False)  # SHA-256 hex, set once

    captured_at = Column(DateTime, nullable=False)
    gps_lat = Column(Float, nullable=True)
    gps_lng = Column(Float, nullable=True)
    gps_altitude = Column(Float, nullable=True)
    gps_accuracy = Column(Float, nullable=True)
    camera_make = Column(String(100), nullable=True)
    camera_model = Column(String(100), nullable=True)

    sync_status = Column(String(20), nullable=False, default="captured", index=True)
    uploaded_url = Column(String(1000), nullable=True)
    last_sync_error = Column(Text, nullable=True)
    synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class Photo(EvidenceColumns, Base):
    __tablename__ = "photos"

    photo_type = Column(String(30), nullable=False, default="GENERAL")
    quick_tag = Column(String(30), nullable=True)
    caption = Column(Text, nullable=True)
    annotations_json = Column(Text, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)


class Video(EvidenceColumns, Base):
    __tablename__ = "videos"

    title = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    gps_track_json = Column(Text, nullable=True)


class VoiceNote(EvidenceColumns, Base):
    __tablename__ = "voice_notes"

    duration_ms = Column(Integer, nullable=True)
    transcription = Column(Text, nullable=True)


class Defect(Base):
    __tablename__ = "defects"

    id = Column(String(36), primary_key=True, default=new_id)
    report_id = Column(String(36), ForeignKey("reports.id"), nullable=False, index=True)
    roof_element_id = Column(String(36), nullable=True)
    defect_number = Column(Integer, nullable=False, default=1)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(255), nullable=True)
    classification = Column(String(30), nullable=True)
    severity = Column(String(20), nullable=True)
    observation = Column(Text, nullable=True)
    recommendation = Column(Text, nullable=True)

    sync_status = Column(String(20), nullable=False, default="draft")
    synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class RoofElement(Base):
    __tablename__ = "roof_elements"

    id = Column(String(36), primary_key=True, default=new_id)
    report_id = Column(String(36), ForeignKey("reports.id"), nullable=False, index=True)
    element_type = Column(String(50), nullable=False)
    location = Column(String(255), nullable=True)
    material = Column(String(100), nullable=True)
    condition_rating = Column(String(20), nullable=True)
    notes = Column(Text, nullable=True)

    sync_status = Column(String(20), nullable=False, default="draft")
    synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class ComplianceAssessment(Base):
    __tablename__ = "compliance_assessments"

    id = Column(String(36), primary_key=True, default=new_id)
    report_id = Column(String(36), ForeignKey("reports.id"), nullable=False, unique=True)
    checklist_results_json = Column(Text, nullable=False, default="{}")
    non_compliance_summary = Column(Text, nullable=True)

    sync_status = Column(String(20), nullable=False, default="draft")
    synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class AuditLog(Base):
    """Append-only hash-chained chain-of-custody ledger"""
    __tablename__ = "audit_log"

    id = Column(String(36), primary_key=True, default=new_id)
    sequence_number = Column(Integer, unique=True, nullable=False, index=True)
    action = Column(String(30), nullable=False, index=True)
    entity_type = Column(String(30), nullable=False)
    entity_id = Column(String(36), nullable=False)
    user_id = Column(String(255), nullable=True)
    user_name = Column(String(255), nullable=True)
    device_id = Column(String(64), nullable=True)
    hash_at_time = Column(String(64), nullable=True)
    details_json = Column(Text, nullable=False, default="{}")
    entry_hash = Column(String(64), nullable=False)
    previous_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime, nullable=False, index=True)


class Checklist(Base):
    """Compliance checklist cached from the server for offline use"""
    __tablename__ = "checklists"

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    version = Column(String(20), nullable=False, default="1.0")
    category = Column(String(100), nullable=True)
    standard = Column(String(100), nullable=True, index=True)  # e.g. E2/AS1
    definition_json = Column(Text, nullable=False)
    downloaded_at = Column(DateTime, nullable=False, default=utcnow)


class ReportTemplate(Base):
    __tablename__ = "report_templates"

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    inspection_type = Column(String(50), nullable=True, index=True)
    sections_json = Column(Text, nullable=False, default="[]")
    checklists_json = Column(Text, nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    downloaded_at = Column(DateTime, nullable=False, default=utcnow)


class SyncQueueEntry(Base):
    """Local mutation awaiting server acknowledgment"""
    __tablename__ = "sync_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String(30), nullable=False)
    entity_id = Column(String(36), nullable=False)
    operation = Column(String(10), nullable=False)  # create | update | delete
    operation_class = Column(String(10), nullable=False)  # upsert | delete
    payload_json = Column(Text, nullable=False, default="{}")
    enqueued_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    last_attempt_at = Column(DateTime, nullable=True)  # sticky: never cleared by a collapse
    version = Column(Integer, nullable=False, default=1)  # bumped whenever a newer payload folds in

    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", "operation_class", name="uq_sync_queue_entity_class"),
    )


class SyncState(Base):
    """Process-wide sync markers; always the single row id=1"""
    __tablename__ = "sync_state"

    id = Column(Integer, primary_key=True, default=1)
    device_id = Column(String(64), nullable=False)
    last_bootstrap_at = Column(DateTime, nullable=True)
    last_upload_at = Column(DateTime, nullable=True)
    last_download_at = Column(DateTime, nullable=True)
    server_cursor = Column(String(64), nullable=True)


class SyncConflictRecord(Base):
    """Report modified both locally and on the server since last sync"""
    __tablename__ = "sync_conflicts"

    report_id = Column(String(36), ForeignKey("reports.id"), primary_key=True)
    resolution = Column(String(20), nullable=False, default="pending")
    server_updated_at = Column(DateTime, nullable=True)
    client_updated_at = Column(DateTime, nullable=True)
    server_data_json = Column(Text, nullable=True)
    detected_at = Column(DateTime, nullable=False, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)
    dismissed_count = Column(Integer, nullable=False, default=0)


class UploadSession(Base):
    """Checkpoint of a resumable upload so later runs continue it"""
    __tablename__ = "upload_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String(30), nullable=False)
    entity_id = Column(String(36), nullable=False)
    upload_url = Column(String(1000), nullable=False)
    offset = Column(Integer, nullable=False, default=0)
    total_size = Column(Integer, nullable=False)
    original_hash = Column(String(64), nullable=False)
    completed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", name="uq_upload_sessions_entity"),
    )


EVIDENCE_MODELS = {
    "photo": Photo,
    "video": Video,
    "voice_note": VoiceNote,
}

RECORD_MODELS = {
    "report": Report,
    "defect": Defect,
    "roof_element": RoofElement,
    "compliance": ComplianceAssessment,
}


@event.listens_for(AuditLog, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise ValueError("audit_log is append-only: updates are not allowed")


@event.listens_for(AuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise ValueError("audit_log is append-only: deletes are not allowed")
