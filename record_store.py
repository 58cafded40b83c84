"""Local record store: reports, evidence, sync queue and sync state.

Every public call runs inside one serialized transaction. Typed JSON blobs
(annotations, GPS tracks, compliance results, queue payloads) are decoded
into pydantic models here and nowhere else.
"""
import hashlib
import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional, Tuple

from sqlalchemy import func
from pydantic import ValidationError
from sqlalchemy.orm import Session

from config import settings
from database import create_db_engine, init_db, make_session_factory, utcnow
from errors import StoreUnavailableError
from file_storage import ImmutableEvidenceStore
from models import (
    EVIDENCE_MODELS,
    PENDING_REPORT_STATUSES,
    RECORD_MODELS,
    AuditLog,
    Checklist,
    ComplianceAssessment,
    Defect,
    Photo,
    Report,
    ReportTemplate,
    RoofElement,
    SyncConflictRecord,
    SyncQueueEntry,
    SyncState,
    UploadSession,
)
from schemas import (
    ChecklistDefinition,
    ComplianceResults,
    GPSTrack,
    PhotoAnnotations,
    QueuePayload,
    ReportSummary,
    TemplateDefinition,
)

logger = logging.getLogger(__name__)

OPERATIONS = ("create", "update", "delete")


def operation_class(operation: str) -> str:
    if operation not in OPERATIONS:
        raise ValueError(f"Unknown sync operation: {operation}")
    return "delete" if operation == "delete" else "upsert"


def load_payload(entry: SyncQueueEntry) -> QueuePayload:
    return QueuePayload.model_validate_json(entry.payload_json or "{}")


def _raw_id(raw) -> str:
    return str(raw.get("id")) if isinstance(raw, dict) else repr(raw)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def report_payload(report: Report) -> dict:
    return {
        "id": report.id,
        "reportNumber": report.report_number,
        "title": report.title,
        "propertyAddress": report.property_address,
        "status": report.status,
        "data": json.loads(report.data_json or "{}"),
        "updatedAt": _iso(report.updated_at),
    }


def evidence_metadata(entity_type: str, item) -> dict:
    """Metadata sent alongside an evidence file upload."""
    meta = {
        "id": item.id,
        "reportId": item.report_id,
        "defectId": item.defect_id,
        "roofElementId": item.roof_element_id,
        "filename": item.original_filename,
        "mimeType": item.mime_type,
        "fileSize": item.file_size,
        "originalHash": item.original_hash,
        "capturedAt": _iso(item.captured_at),
        "gpsLat": item.gps_lat,
        "gpsLng": item.gps_lng,
        "gpsAltitude": item.gps_altitude,
        "gpsAccuracy": item.gps_accuracy,
        "cameraMake": item.camera_make,
        "cameraModel": item.camera_model,
    }
    if entity_type == "photo":
        meta.update(photoType=item.photo_type, quickTag=item.quick_tag, caption=item.caption)
    elif entity_type == "video":
        meta.update(title=item.title, description=item.description, durationMs=item.duration_ms)
    elif entity_type == "voice_note":
        meta.update(durationMs=item.duration_ms, transcription=item.transcription)
    return meta


def record_payload(entity_type: str, row) -> dict:
    """Plain column dict of a defect, roof element or compliance row."""
    data = {}
    for column in row.__table__.columns:
        value = getattr(row, column.name)
        if column.name in ("sync_status", "synced_at"):
            continue
        data[column.name] = value.isoformat() if isinstance(value, datetime) else value
    if entity_type == "compliance":
        data["checklist_results"] = json.loads(data.pop("checklist_results_json") or "{}")
    return data


class LocalStore(ABC):
    """Capability interface the custody log and sync engine depend on."""

    available = True

    @abstractmethod
    def transaction(self) -> Iterator[Session]: ...

    @abstractmethod
    def device_id(self) -> str: ...

    @abstractmethod
    def get_sync_state(self) -> Optional[SyncState]: ...

    @abstractmethod
    def update_sync_state(self, **patch) -> None: ...

    @abstractmethod
    def enqueue_sync(self, entity_type: str, entity_id: str, operation: str, payload=None) -> Optional[SyncQueueEntry]: ...

    @abstractmethod
    def sync_queue(self, include_failed: bool = False) -> List[SyncQueueEntry]: ...

    @abstractmethod
    def mark_sync_attempt(self, entry_id: int) -> None: ...

    @abstractmethod
    def complete_sync_entry(self, entry_id: int, version: Optional[int] = None) -> bool: ...

    @abstractmethod
    def record_sync_failure(self, entry_id: int, error: str) -> int: ...

    @abstractmethod
    def drop_queue_entries(self, entity_type: str, entity_id: str) -> int: ...

    @abstractmethod
    def pending_sync_count(self) -> int: ...

    @abstractmethod
    def failed_sync_count(self) -> int: ...

    @abstractmethod
    def reset_failed_sync_entries(self) -> int: ...

    @abstractmethod
    def pending_sync_reports(self) -> List[Report]: ...

    @abstractmethod
    def get_report(self, report_id: str) -> Optional[Report]: ...

    @abstractmethod
    def mark_report_synced(self, report_id: str, server_updated_at: Optional[datetime], settled: bool = True) -> None: ...

    @abstractmethod
    def mark_report_error(self, report_id: str, error: str) -> None: ...

    @abstractmethod
    def apply_server_report(self, summary: ReportSummary) -> Report: ...

    @abstractmethod
    def get_evidence(self, entity_type: str, item_id: str): ...

    @abstractmethod
    def list_evidence(self, report_id: str) -> List[Tuple[str, object]]: ...

    @abstractmethod
    def mark_evidence_status(self, entity_type: str, item_id: str, status: str,
                             uploaded_url: Optional[str] = None, error: Optional[str] = None) -> None: ...

    @abstractmethod
    def get_record(self, entity_type: str, record_id: str): ...

    @abstractmethod
    def mark_record_synced(self, entity_type: str, record_id: str, settled: bool = True) -> None: ...

    @abstractmethod
    def get_upload_session(self, entity_type: str, entity_id: str) -> Optional[UploadSession]: ...

    @abstractmethod
    def save_upload_session(self, entity_type: str, entity_id: str, upload_url: str, offset: int,
                            total_size: int, original_hash: str) -> None: ...

    @abstractmethod
    def clear_upload_session(self, entity_type: str, entity_id: str) -> None: ...

    @abstractmethod
    def save_conflict(self, report_id: str, server_updated_at: Optional[datetime],
                      client_updated_at: Optional[datetime], server_data: Optional[dict] = None) -> SyncConflictRecord: ...

    @abstractmethod
    def get_conflict(self, report_id: str) -> Optional[SyncConflictRecord]: ...

    @abstractmethod
    def pending_conflicts(self) -> List[SyncConflictRecord]: ...

    @abstractmethod
    def resolve_conflict_record(self, report_id: str, resolution: str) -> None: ...

    @abstractmethod
    def dismiss_conflict(self, report_id: str) -> None: ...

    @abstractmethod
    def save_checklists(self, definitions: List[dict]) -> int: ...

    @abstractmethod
    def save_templates(self, definitions: List[dict]) -> int: ...

    @abstractmethod
    def get_checklist(self, standard: str) -> Optional[ChecklistDefinition]: ...

    @abstractmethod
    def get_template(self, inspection_type: Optional[str] = None) -> Optional[TemplateDefinition]: ...


class SqlRecordStore(LocalStore):
    """SQLite-backed store; one writer at a time through a process-wide lock."""

    def __init__(self, session_factory, storage: ImmutableEvidenceStore, max_attempts: Optional[int] = None):
        self.session_factory = session_factory
        self.storage = storage
        self.max_attempts = max_attempts or settings.MAX_SYNC_ATTEMPTS
        self._lock = threading.RLock()
        self._device_id = None

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        with self._lock:
            db = self.session_factory()
            try:
                yield db
                db.commit()
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    # Sync state

    def _ensure_sync_state(self, db: Session) -> SyncState:
        state = db.get(SyncState, 1)
        if state is None:
            device_id = hashlib.sha256(uuid.uuid4().bytes).hexdigest()[:32]
            state = SyncState(id=1, device_id=device_id)
            db.add(state)
            db.flush()
            logger.info(f"Generated device id {device_id[:8]}...")
        return state

    def device_id(self) -> str:
        if self._device_id is None:
            with self.transaction() as db:
                self._device_id = self._ensure_sync_state(db).device_id
        return self._device_id

    def get_sync_state(self) -> SyncState:
        with self.transaction() as db:
            return self._ensure_sync_state(db)

    def update_sync_state(self, **patch) -> None:
        with self.transaction() as db:
            state = self._ensure_sync_state(db)
            for key, value in patch.items():
                if key in ("id", "device_id") or not hasattr(SyncState, key):
                    raise ValueError(f"Unknown sync state field: {key}")
                setattr(state, key, value)

    # Sync queue

    def _enqueue(self, db: Session, entity_type: str, entity_id: str, operation: str,
                 payload=None) -> Optional[SyncQueueEntry]:
        """Latest-wins per (entity_type, entity_id, operation class).

        A create and later updates collapse into one upsert entry that
        keeps the create operation and carries the newest payload; its
        version is bumped so a push already in flight cannot consume it.
        A delete removes any pending upsert; if that upsert was a create
        never attempted, nothing is queued at all.
        """
        if isinstance(payload, QueuePayload):
            payload_json = payload.model_dump_json()
        else:
            payload_json = QueuePayload(**(payload or {})).model_dump_json()

        op_class = operation_class(operation)
        now = utcnow()
        existing = (
            db.query(SyncQueueEntry)
            .filter(
                SyncQueueEntry.entity_type == entity_type,
                SyncQueueEntry.entity_id == entity_id,
            )
            .all()
        )
        by_class = {e.operation_class: e for e in existing}

        if op_class == "delete":
            upsert = by_class.get("upsert")
            if upsert is not None:
                never_sent = upsert.operation == "create" and upsert.last_attempt_at is None
                db.delete(upsert)
                if never_sent and "delete" not in by_class:
                    db.flush()
                    logger.info(f"Dropped unsent create for deleted {entity_type}/{entity_id}")
                    return None

        entry = by_class.get(op_class)
        if entry is not None:
            if operation == "create":
                entry.operation = "create"
            entry.payload_json = payload_json
            entry.version = (entry.version or 1) + 1
            # Only the parking counter restarts; last_attempt_at stays
            entry.attempt_count = 0
            entry.last_error = None
        else:
            entry = SyncQueueEntry(
                entity_type=entity_type,
                entity_id=entity_id,
                operation=operation,
                operation_class=op_class,
                payload_json=payload_json,
                enqueued_at=now,
                attempt_count=0,
                version=1,
            )
            db.add(entry)
        db.flush()
        return entry

    def enqueue_sync(self, entity_type: str, entity_id: str, operation: str, payload=None) -> Optional[SyncQueueEntry]:
        with self.transaction() as db:
            return self._enqueue(db, entity_type, entity_id, operation, payload)

    def sync_queue(self, include_failed: bool = False) -> List[SyncQueueEntry]:
        with self.transaction() as db:
            query = db.query(SyncQueueEntry)
            if not include_failed:
                query = query.filter(SyncQueueEntry.attempt_count < self.max_attempts)
            return query.order_by(SyncQueueEntry.enqueued_at.asc(), SyncQueueEntry.id.asc()).all()

    def mark_sync_attempt(self, entry_id: int) -> None:
        with self.transaction() as db:
            entry = db.get(SyncQueueEntry, entry_id)
            if entry is not None:
                entry.last_attempt_at = utcnow()

    def complete_sync_entry(self, entry_id: int, version: Optional[int] = None) -> bool:
        """Remove an acknowledged entry.

        With a version, the entry is only removed if no newer payload has
        collapsed into it since it was read; False means it stays queued.
        """
        with self.transaction() as db:
            query = db.query(SyncQueueEntry).filter(SyncQueueEntry.id == entry_id)
            if version is not None:
                query = query.filter(SyncQueueEntry.version == version)
            removed = query.delete()
        if version is not None and not removed:
            logger.info(f"Sync entry {entry_id} changed or was removed while in flight; not consumed")
        return bool(removed)

    def record_sync_failure(self, entry_id: int, error: str) -> int:
        with self.transaction() as db:
            entry = db.get(SyncQueueEntry, entry_id)
            if entry is None:
                return 0
            entry.attempt_count += 1
            entry.last_error = error
            entry.last_attempt_at = utcnow()
            return entry.attempt_count

    def drop_queue_entries(self, entity_type: str, entity_id: str) -> int:
        with self.transaction() as db:
            return (
                db.query(SyncQueueEntry)
                .filter(SyncQueueEntry.entity_type == entity_type, SyncQueueEntry.entity_id == entity_id)
                .delete()
            )

    def pending_sync_count(self) -> int:
        with self.transaction() as db:
            return db.query(SyncQueueEntry).filter(SyncQueueEntry.attempt_count < self.max_attempts).count()

    def failed_sync_count(self) -> int:
        with self.transaction() as db:
            return db.query(SyncQueueEntry).filter(SyncQueueEntry.attempt_count >= self.max_attempts).count()

    def reset_failed_sync_entries(self) -> int:
        with self.transaction() as db:
            count = (
                db.query(SyncQueueEntry)
                .filter(SyncQueueEntry.attempt_count >= self.max_attempts)
                .update({SyncQueueEntry.attempt_count: 0, SyncQueueEntry.last_error: None})
            )
        if count:
            logger.info(f"Reset {count} failed sync entries for retry")
        return count

    # Reports

    def create_report(self, title: Optional[str] = None, property_address: Optional[str] = None,
                      report_number: Optional[str] = None, data: Optional[dict] = None) -> Report:
        with self.transaction() as db:
            now = utcnow()
            report = Report(
                title=title,
                property_address=property_address,
                report_number=report_number,
                data_json=json.dumps(data or {}),
                sync_status="draft",
                created_at=now,
                updated_at=now,
            )
            db.add(report)
            db.flush()
            self._enqueue(db, "report", report.id, "create", {"fields": report_payload(report)})
            return report

    def update_report(self, report_id: str, **fields) -> Report:
        with self.transaction() as db:
            report = db.get(Report, report_id)
            if report is None:
                raise KeyError(f"Report not found: {report_id}")
            for key, value in fields.items():
                if key == "data":
                    report.data_json = json.dumps(value or {})
                elif key in ("title", "property_address", "report_number", "status"):
                    setattr(report, key, value)
                else:
                    raise ValueError(f"Unknown report field: {key}")
            self._touch_report(db, report)
            return report

    def mark_report_dirty(self, report_id: str) -> None:
        with self.transaction() as db:
            report = db.get(Report, report_id)
            if report is not None:
                self._touch_report(db, report)

    def _touch_report(self, db: Session, report: Report) -> None:
        report.updated_at = utcnow()
        # A conflicted report stays conflicted until the user resolves it
        if report.sync_status != "conflict":
            report.sync_status = "pending"
        self._enqueue(db, "report", report.id, "update", {"fields": report_payload(report)})

    def get_report(self, report_id: str) -> Optional[Report]:
        with self.transaction() as db:
            return db.get(Report, report_id)

    def list_reports(self) -> List[Report]:
        with self.transaction() as db:
            return db.query(Report).order_by(Report.updated_at.desc()).all()

    def pending_sync_reports(self) -> List[Report]:
        with self.transaction() as db:
            return (
                db.query(Report)
                .filter(Report.sync_status.in_(PENDING_REPORT_STATUSES))
                .order_by(Report.updated_at.asc())
                .all()
            )

    def mark_report_synced(self, report_id: str, server_updated_at: Optional[datetime], settled: bool = True) -> None:
        """Record a server acknowledgment.

        When a newer local edit is still queued (settled=False) the server
        baseline advances but the report stays pending.
        """
        with self.transaction() as db:
            report = db.get(Report, report_id)
            if report is None:
                return
            report.sync_status = "synced" if settled else "pending"
            report.synced_at = utcnow()
            report.last_sync_error = None
            if server_updated_at is not None:
                report.server_updated_at = server_updated_at

    def mark_report_error(self, report_id: str, error: str) -> None:
        with self.transaction() as db:
            report = db.get(Report, report_id)
            if report is not None and report.sync_status != "conflict":
                report.sync_status = "error"
                report.last_sync_error = error

    def apply_server_report(self, summary: ReportSummary) -> Report:
        """Overwrite (or create) the local copy with the server version."""
        with self.transaction() as db:
            report = db.get(Report, summary.id)
            if report is None:
                report = Report(id=summary.id, created_at=utcnow())
                db.add(report)
            report.report_number = summary.report_number
            report.title = summary.title
            report.property_address = summary.property_address
            report.status = summary.status
            report.data_json = json.dumps(summary.data)
            report.updated_at = summary.updated_at
            report.server_updated_at = summary.updated_at
            report.sync_status = "synced"
            report.synced_at = utcnow()
            report.last_sync_error = None
            db.flush()
            return report

    # Defects, roof elements, compliance

    def save_defect(self, report_id: str, title: str, defect_id: Optional[str] = None, **fields) -> Defect:
        return self._save_record("defect", Defect, defect_id, report_id=report_id, title=title, **fields)

    def save_roof_element(self, report_id: str, element_type: str, element_id: Optional[str] = None,
                          **fields) -> RoofElement:
        return self._save_record("roof_element", RoofElement, element_id, report_id=report_id,
                                 element_type=element_type, **fields)

    def save_compliance_assessment(self, report_id: str, results: ComplianceResults,
                                   non_compliance_summary: Optional[str] = None) -> ComplianceAssessment:
        with self.transaction() as db:
            existing = db.query(ComplianceAssessment).filter(ComplianceAssessment.report_id == report_id).first()
        return self._save_record(
            "compliance",
            ComplianceAssessment,
            existing.id if existing else None,
            report_id=report_id,
            checklist_results_json=results.model_dump_json(),
            non_compliance_summary=non_compliance_summary,
        )

    def _save_record(self, entity_type: str, model, record_id: Optional[str], **fields):
        with self.transaction() as db:
            row = db.get(model, record_id) if record_id else None
            operation = "update"
            if row is None:
                row = model(id=record_id) if record_id else model()
                row.created_at = utcnow()
                db.add(row)
                operation = "create"
            for key, value in fields.items():
                if not hasattr(model, key):
                    raise ValueError(f"Unknown {entity_type} field: {key}")
                setattr(row, key, value)
            row.updated_at = utcnow()
            row.sync_status = "pending"
            db.flush()
            self._enqueue(db, entity_type, row.id, operation,
                          {"report_id": row.report_id, "fields": record_payload(entity_type, row)})
            return row

    def get_record(self, entity_type: str, record_id: str):
        with self.transaction() as db:
            return db.get(RECORD_MODELS[entity_type], record_id)

    def get_compliance_assessment(self, report_id: str) -> Optional[ComplianceAssessment]:
        with self.transaction() as db:
            return db.query(ComplianceAssessment).filter(ComplianceAssessment.report_id == report_id).first()

    def compliance_results(self, report_id: str) -> ComplianceResults:
        assessment = self.get_compliance_assessment(report_id)
        if assessment is None:
            return ComplianceResults()
        return ComplianceResults.model_validate_json(assessment.checklist_results_json or "{}")

    def list_defects(self, report_id: str) -> List[Defect]:
        with self.transaction() as db:
            return (
                db.query(Defect).filter(Defect.report_id == report_id)
                .order_by(Defect.defect_number.asc()).all()
            )

    def list_roof_elements(self, report_id: str) -> List[RoofElement]:
        with self.transaction() as db:
            return db.query(RoofElement).filter(RoofElement.report_id == report_id).all()

    def delete_record(self, entity_type: str, record_id: str) -> bool:
        with self.transaction() as db:
            row = db.get(RECORD_MODELS[entity_type], record_id)
            if row is None:
                return False
            report_id = row.report_id
            db.delete(row)
            self._enqueue(db, entity_type, record_id, "delete", {"report_id": report_id})
            return True

    def mark_record_synced(self, entity_type: str, record_id: str, settled: bool = True) -> None:
        with self.transaction() as db:
            row = db.get(RECORD_MODELS[entity_type], record_id)
            if row is not None:
                row.sync_status = "synced" if settled else "pending"
                row.synced_at = utcnow()

    # Evidence

    def add_evidence(self, entity_type: str, **fields):
        """Insert a captured evidence row and queue its upload in one transaction."""
        model = EVIDENCE_MODELS[entity_type]
        with self.transaction() as db:
            now = utcnow()
            item = model(created_at=now, updated_at=now, sync_status="captured", **fields)
            db.add(item)
            db.flush()
            self._enqueue(db, entity_type, item.id, "create",
                          {"report_id": item.report_id, "original_hash": item.original_hash})
            return item

    def get_evidence(self, entity_type: str, item_id: str):
        with self.transaction() as db:
            return db.get(EVIDENCE_MODELS[entity_type], item_id)

    def list_evidence(self, report_id: str) -> List[Tuple[str, object]]:
        items = []
        with self.transaction() as db:
            for entity_type, model in EVIDENCE_MODELS.items():
                rows = db.query(model).filter(model.report_id == report_id).order_by(model.captured_at.asc()).all()
                items.extend((entity_type, row) for row in rows)
        return items

    def list_photos(self, report_id: str) -> List[Photo]:
        with self.transaction() as db:
            return (
                db.query(Photo).filter(Photo.report_id == report_id)
                .order_by(Photo.sort_order.asc(), Photo.captured_at.asc()).all()
            )

    def update_photo_classification(self, photo_id: str, photo_type: Optional[str] = None,
                                    quick_tag: Optional[str] = None, caption: Optional[str] = None) -> Photo:
        with self.transaction() as db:
            photo = db.get(Photo, photo_id)
            if photo is None:
                raise KeyError(f"Photo not found: {photo_id}")
            if photo_type is not None:
                photo.photo_type = photo_type
            if quick_tag is not None:
                photo.quick_tag = quick_tag
            if caption is not None:
                photo.caption = caption
            photo.updated_at = utcnow()
            if photo.sync_status == "synced":
                # File is on the server, metadata is stale
                photo.sync_status = "uploaded"
            self._enqueue(db, "photo", photo.id, "update",
                          {"report_id": photo.report_id, "original_hash": photo.original_hash,
                           "fields": {"photoType": photo.photo_type, "quickTag": photo.quick_tag,
                                      "caption": photo.caption}})
            return photo

    def save_photo_annotations(self, photo_id: str, annotations: PhotoAnnotations) -> None:
        with self.transaction() as db:
            photo = db.get(Photo, photo_id)
            if photo is None:
                raise KeyError(f"Photo not found: {photo_id}")
            photo.annotations_json = annotations.model_dump_json()
            photo.updated_at = utcnow()

    def photo_annotations(self, photo_id: str) -> PhotoAnnotations:
        photo = self.get_evidence("photo", photo_id)
        if photo is None or not photo.annotations_json:
            return PhotoAnnotations()
        return PhotoAnnotations.model_validate_json(photo.annotations_json)

    def video_track(self, video_id: str) -> GPSTrack:
        video = self.get_evidence("video", video_id)
        if video is None or not video.gps_track_json:
            return GPSTrack()
        return GPSTrack.model_validate_json(video.gps_track_json)

    def mark_evidence_status(self, entity_type: str, item_id: str, status: str,
                             uploaded_url: Optional[str] = None, error: Optional[str] = None) -> None:
        with self.transaction() as db:
            item = db.get(EVIDENCE_MODELS[entity_type], item_id)
            if item is None:
                return
            item.sync_status = status
            item.last_sync_error = error
            if uploaded_url:
                item.uploaded_url = uploaded_url
            if status == "synced":
                item.synced_at = utcnow()

    def delete_evidence(self, entity_type: str, item_id: str) -> Optional[dict]:
        """Remove the row and its derivatives; the original file is left in place."""
        with self.transaction() as db:
            item = db.get(EVIDENCE_MODELS[entity_type], item_id)
            if item is None:
                return None
            info = {
                "report_id": item.report_id,
                "original_hash": item.original_hash,
                "working_filename": item.working_filename,
                "original_filename": item.original_filename,
            }
            db.delete(item)
            db.query(UploadSession).filter(
                UploadSession.entity_type == entity_type, UploadSession.entity_id == item_id
            ).delete()
            self._enqueue(db, entity_type, item_id, "delete",
                          {"report_id": info["report_id"], "original_hash": info["original_hash"]})

        info["removed_files"] = self.storage.delete_derivatives(info["working_filename"], item_id)
        logger.info(f"Deleted {entity_type} {item_id} ({len(info['removed_files'])} derivatives removed)")
        return info

    # Resumable upload checkpoints

    def get_upload_session(self, entity_type: str, entity_id: str) -> Optional[UploadSession]:
        with self.transaction() as db:
            return (
                db.query(UploadSession)
                .filter(UploadSession.entity_type == entity_type, UploadSession.entity_id == entity_id)
                .first()
            )

    def save_upload_session(self, entity_type: str, entity_id: str, upload_url: str, offset: int,
                            total_size: int, original_hash: str) -> None:
        with self.transaction() as db:
            session = (
                db.query(UploadSession)
                .filter(UploadSession.entity_type == entity_type, UploadSession.entity_id == entity_id)
                .first()
            )
            if session is None:
                session = UploadSession(entity_type=entity_type, entity_id=entity_id, created_at=utcnow())
                db.add(session)
            session.upload_url = upload_url
            session.offset = offset
            session.total_size = total_size
            session.original_hash = original_hash
            session.completed = offset >= total_size
            session.updated_at = utcnow()

    def clear_upload_session(self, entity_type: str, entity_id: str) -> None:
        with self.transaction() as db:
            db.query(UploadSession).filter(
                UploadSession.entity_type == entity_type, UploadSession.entity_id == entity_id
            ).delete()

    # Conflicts

    def save_conflict(self, report_id: str, server_updated_at: Optional[datetime],
                      client_updated_at: Optional[datetime], server_data: Optional[dict] = None) -> SyncConflictRecord:
        with self.transaction() as db:
            conflict = db.get(SyncConflictRecord, report_id)
            if conflict is None:
                conflict = SyncConflictRecord(report_id=report_id, dismissed_count=0)
                db.add(conflict)
            conflict.resolution = "pending"
            conflict.server_updated_at = server_updated_at
            conflict.client_updated_at = client_updated_at
            conflict.server_data_json = json.dumps(server_data) if server_data is not None else None
            conflict.detected_at = utcnow()
            conflict.resolved_at = None

            report = db.get(Report, report_id)
            if report is not None:
                report.sync_status = "conflict"
            db.flush()
            return conflict

    def get_conflict(self, report_id: str) -> Optional[SyncConflictRecord]:
        with self.transaction() as db:
            return db.get(SyncConflictRecord, report_id)

    def pending_conflicts(self) -> List[SyncConflictRecord]:
        with self.transaction() as db:
            return (
                db.query(SyncConflictRecord)
                .filter(SyncConflictRecord.resolution == "pending")
                .order_by(SyncConflictRecord.detected_at.asc())
                .all()
            )

    def resolve_conflict_record(self, report_id: str, resolution: str) -> None:
        if resolution not in ("client_wins", "server_wins"):
            raise ValueError(f"Invalid conflict resolution: {resolution}")
        with self.transaction() as db:
            conflict = db.get(SyncConflictRecord, report_id)
            if conflict is None:
                raise KeyError(f"No conflict recorded for report {report_id}")
            conflict.resolution = resolution
            conflict.resolved_at = utcnow()
            report = db.get(Report, report_id)
            if report is None:
                return
            if resolution == "client_wins":
                # Rebase onto the server version so the next push is accepted
                report.server_updated_at = conflict.server_updated_at
                report.sync_status = "pending"
                report.updated_at = utcnow()
                self._enqueue(db, "report", report_id, "update", {"fields": report_payload(report)})

    def dismiss_conflict(self, report_id: str) -> None:
        with self.transaction() as db:
            conflict = db.get(SyncConflictRecord, report_id)
            if conflict is not None:
                conflict.dismissed_count += 1

    # Reference data

    def save_checklists(self, definitions: List[dict]) -> int:
        """Cache server checklists; a malformed entry is skipped, the rest still land."""
        count = 0
        for raw in definitions:
            try:
                checklist = ChecklistDefinition.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping invalid checklist {_raw_id(raw)}: {e.error_count()} validation errors")
                continue
            with self.transaction() as db:
                db.merge(Checklist(
                    id=checklist.id,
                    name=checklist.name,
                    version=checklist.version,
                    category=checklist.category,
                    standard=checklist.standard,
                    definition_json=checklist.model_dump_json(by_alias=True),
                    downloaded_at=utcnow(),
                ))
            count += 1
        logger.info(f"Cached {count} checklists")
        return count

    def save_templates(self, definitions: List[dict]) -> int:
        count = 0
        for raw in definitions:
            try:
                template = TemplateDefinition.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping invalid template {_raw_id(raw)}: {e.error_count()} validation errors")
                continue
            with self.transaction() as db:
                db.merge(ReportTemplate(
                    id=template.id,
                    name=template.name,
                    description=template.description,
                    inspection_type=template.inspection_type,
                    sections_json=json.dumps(template.sections),
                    checklists_json=json.dumps(template.checklists) if template.checklists is not None else None,
                    is_default=template.is_default,
                    downloaded_at=utcnow(),
                ))
            count += 1
        logger.info(f"Cached {count} report templates")
        return count

    def get_checklist(self, standard: str) -> Optional[ChecklistDefinition]:
        with self.transaction() as db:
            row = (
                db.query(Checklist).filter(Checklist.standard == standard)
                .order_by(Checklist.downloaded_at.desc()).first()
            )
        if row is None:
            return None
        return ChecklistDefinition.model_validate_json(row.definition_json)

    def list_checklists(self) -> List[Checklist]:
        with self.transaction() as db:
            return db.query(Checklist).order_by(Checklist.name.asc()).all()

    def get_template(self, inspection_type: Optional[str] = None) -> Optional[TemplateDefinition]:
        """Template for an inspection type, or the default template when none is given."""
        with self.transaction() as db:
            query = db.query(ReportTemplate)
            if inspection_type is None:
                query = query.filter(ReportTemplate.is_default.is_(True))
            else:
                query = query.filter(ReportTemplate.inspection_type == inspection_type)
            row = query.order_by(ReportTemplate.downloaded_at.desc()).first()
        if row is None:
            return None
        return TemplateDefinition(
            id=row.id,
            name=row.name,
            description=row.description,
            inspection_type=row.inspection_type,
            sections=json.loads(row.sections_json or "[]"),
            checklists=json.loads(row.checklists_json) if row.checklists_json else None,
            is_default=row.is_default,
        )

    # Diagnostics

    def database_stats(self) -> dict:
        with self.transaction() as db:
            stats = {name: db.query(func.count(model.id)).scalar() for name, model in RECORD_MODELS.items()}
            for name, model in EVIDENCE_MODELS.items():
                stats[name] = db.query(func.count(model.id)).scalar()
            stats["audit_events"] = db.query(func.count(AuditLog.id)).scalar()
            stats["checklists"] = db.query(func.count(Checklist.id)).scalar()
            stats["templates"] = db.query(func.count(ReportTemplate.id)).scalar()
            stats["queue_pending"] = (
                db.query(SyncQueueEntry).filter(SyncQueueEntry.attempt_count < self.max_attempts).count()
            )
            stats["queue_failed"] = (
                db.query(SyncQueueEntry).filter(SyncQueueEntry.attempt_count >= self.max_attempts).count()
            )
            stats["pending_conflicts"] = (
                db.query(SyncConflictRecord).filter(SyncConflictRecord.resolution == "pending").count()
            )
        return stats


class NullRecordStore(LocalStore):
    """Stand-in for platforms without on-device storage.

    Reads come back empty and the sync engine sees no work. Anything that
    would need to persist raises StoreUnavailableError.
    """

    available = False

    @contextmanager
    def transaction(self):
        raise StoreUnavailableError("Local store is not available on this platform")
        yield  # pragma: no cover

    def device_id(self) -> str:
        raise StoreUnavailableError("Local store is not available on this platform")

    def get_sync_state(self):
        return None

    def update_sync_state(self, **patch) -> None:
        pass

    def enqueue_sync(self, entity_type, entity_id, operation, payload=None):
        return None

    def sync_queue(self, include_failed=False):
        return []

    def mark_sync_attempt(self, entry_id) -> None:
        pass

    def complete_sync_entry(self, entry_id, version=None) -> bool:
        return False

    def record_sync_failure(self, entry_id, error) -> int:
        return 0

    def drop_queue_entries(self, entity_type, entity_id) -> int:
        return 0

    def pending_sync_count(self) -> int:
        return 0

    def failed_sync_count(self) -> int:
        return 0

    def reset_failed_sync_entries(self) -> int:
        return 0

    def pending_sync_reports(self):
        return []

    def get_report(self, report_id):
        return None

    def mark_report_synced(self, report_id, server_updated_at, settled=True) -> None:
        pass

    def mark_report_error(self, report_id, error) -> None:
        pass

    def apply_server_report(self, summary):
        raise StoreUnavailableError("Local store is not available on this platform")

    def get_evidence(self, entity_type, item_id):
        return None

    def list_evidence(self, report_id):
        return []

    def mark_evidence_status(self, entity_type, item_id, status, uploaded_url=None, error=None) -> None:
        pass

    def get_record(self, entity_type, record_id):
        return None

    def mark_record_synced(self, entity_type, record_id, settled=True) -> None:
        pass

    def get_upload_session(self, entity_type, entity_id):
        return None

    def save_upload_session(self, entity_type, entity_id, upload_url, offset, total_size, original_hash) -> None:
        pass

    def clear_upload_session(self, entity_type, entity_id) -> None:
        pass

    def save_conflict(self, report_id, server_updated_at, client_updated_at, server_data=None):
        raise StoreUnavailableError("Local store is not available on this platform")

    def get_conflict(self, report_id):
        return None

    def pending_conflicts(self):
        return []

    def resolve_conflict_record(self, report_id, resolution) -> None:
        raise StoreUnavailableError("Local store is not available on this platform")

    def dismiss_conflict(self, report_id) -> None:
        pass

    def save_checklists(self, definitions) -> int:
        raise StoreUnavailableError("Local store is not available on this platform")

    def save_templates(self, definitions) -> int:
        raise StoreUnavailableError("Local store is not available on this platform")

    def get_checklist(self, standard):
        return None

    def list_checklists(self):
        return []

    def get_template(self, inspection_type=None):
        return None

    def database_stats(self) -> dict:
        return {}


def build_record_store(config=None, storage: Optional[ImmutableEvidenceStore] = None) -> LocalStore:
    """Pick the store implementation for this platform at startup."""
    config = config or settings
    if not config.LOCAL_STORE_ENABLED:
        logger.info("Local store disabled; using no-op store")
        return NullRecordStore()

    db_engine = create_db_engine(config.DATABASE_URL)
    init_db(db_engine)
    storage = storage or ImmutableEvidenceStore(config.STORAGE_ROOT)
    return SqlRecordStore(make_session_factory(db_engine), storage, max_attempts=config.MAX_SYNC_ATTEMPTS)
