"""Evidence capture pipeline and evidence lifecycle operations.

Order for every captured item: confirm the report exists, hash the bytes
as delivered, write the original once, log CAPTURED/HASHED/STORED, build
derivatives, persist the record and queue it for upload. Hashing or
original-write failures abort the capture; derivative failures only degrade
it. A record that cannot be persisted after the custody events is closed
out with DELETED (reason capture_aborted).
"""
import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import media_utils
from audit_service import ChainOfCustodyLog
from database import utcnow
from errors import CaptureError, EvidenceCoreError, HashingError, OriginalWriteError, StoreUnavailableError
from evidence_service import ContentHasher, VerificationResult, hashes_match
from file_storage import ImmutableEvidenceStore, original_filename, working_filename
from location_utils import LocationCheck, validate_capture_location
from models import new_id
from progress import ProgressEmitter
from schemas import DeviceInfo, GPSFix, GPSTrack, GPSTrackPoint

logger = logging.getLogger(__name__)


@dataclass
class CaptureResult:
    success: bool
    entity_type: str
    item_id: Optional[str] = None
    original_hash: Optional[str] = None
    byte_length: int = 0
    original_path: Optional[str] = None
    working_path: Optional[str] = None
    thumbnail_path: Optional[str] = None
    error: Optional[str] = None
    user_message: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    location_check: Optional[LocationCheck] = None


class CaptureService:
    def __init__(
        self,
        store,
        storage: ImmutableEvidenceStore,
        hasher: ContentHasher,
        custody: ChainOfCustodyLog,
        progress: Optional[ProgressEmitter] = None,
    ):
        self.store = store
        self.storage = storage
        self.hasher = hasher
        self.custody = custody
        self.progress = progress or ProgressEmitter()

    # Capture entry points

    def capture_photo(
        self,
        data: bytes,
        report_id: str,
        ext: str = "jpg",
        mime_type: str = "image/jpeg",
        gps: Optional[GPSFix] = None,
        device: Optional[DeviceInfo] = None,
        photo_type: str = "GENERAL",
        quick_tag: Optional[str] = None,
        caption: Optional[str] = None,
        defect_id: Optional[str] = None,
        roof_element_id: Optional[str] = None,
        captured_at: Optional[datetime] = None,
        property_location: Optional[GPSFix] = None,
    ) -> CaptureResult:
        return self._capture(
            "photo",
            data,
            report_id,
            ext,
            mime_type,
            gps=gps,
            device=device,
            defect_id=defect_id,
            roof_element_id=roof_element_id,
            captured_at=captured_at,
            property_location=property_location,
            extra_fields={"photo_type": photo_type, "quick_tag": quick_tag, "caption": caption},
        )

    def capture_video(
        self,
        data: bytes,
        report_id: str,
        ext: str = "mp4",
        mime_type: str = "video/mp4",
        duration_ms: Optional[int] = None,
        gps_track: Optional[GPSTrack] = None,
        gps: Optional[GPSFix] = None,
        device: Optional[DeviceInfo] = None,
        title: Optional[str] = None,
        description: Optional[str] = None,
        defect_id: Optional[str] = None,
        roof_element_id: Optional[str] = None,
        captured_at: Optional[datetime] = None,
        property_location: Optional[GPSFix] = None,
    ) -> CaptureResult:
        if gps is None and gps_track is not None and gps_track.points:
            first = gps_track.points[0]
            gps = GPSFix(latitude=first.latitude, longitude=first.longitude,
                         altitude=first.altitude, accuracy=first.accuracy)
        return self._capture(
            "video",
            data,
            report_id,
            ext,
            mime_type,
            gps=gps,
            device=device,
            defect_id=defect_id,
            roof_element_id=roof_element_id,
            captured_at=captured_at,
            property_location=property_location,
            extra_fields={
                "title": title,
                "description": description,
                "duration_ms": duration_ms,
                "gps_track_json": gps_track.model_dump_json() if gps_track and gps_track.points else None,
            },
        )

    def capture_voice_note(
        self,
        data: bytes,
        report_id: str,
        ext: str = "m4a",
        mime_type: str = "audio/mp4",
        duration_ms: Optional[int] = None,
        gps: Optional[GPSFix] = None,
        defect_id: Optional[str] = None,
        roof_element_id: Optional[str] = None,
        captured_at: Optional[datetime] = None,
        property_location: Optional[GPSFix] = None,
    ) -> CaptureResult:
        return self._capture(
            "voice_note",
            data,
            report_id,
            ext,
            mime_type,
            gps=gps,
            defect_id=defect_id,
            roof_element_id=roof_element_id,
            captured_at=captured_at,
            property_location=property_location,
            extra_fields={"duration_ms": duration_ms},
        )

    def start_recording(self, entity_type: str, report_id: str, ext: str, mime_type: str, **capture_kwargs) -> "RecordingSession":
        if entity_type not in ("video", "voice_note"):
            raise ValueError(f"Cannot record a {entity_type}")
        return RecordingSession(self, entity_type, report_id, ext, mime_type, capture_kwargs)

    def _capture(
        self,
        entity_type: str,
        data: bytes,
        report_id: str,
        ext: str,
        mime_type: str,
        gps: Optional[GPSFix] = None,
        device: Optional[DeviceInfo] = None,
        defect_id: Optional[str] = None,
        roof_element_id: Optional[str] = None,
        captured_at: Optional[datetime] = None,
        property_location: Optional[GPSFix] = None,
        extra_fields: Optional[Dict] = None,
    ) -> CaptureResult:
        if not self.store.available:
            err = StoreUnavailableError("Cannot capture evidence without a local store")
            return CaptureResult(False, entity_type, error=err.message, user_message=err.user_message)
        # Nothing is hashed, written or logged for evidence that has no report to belong to
        if self.store.get_report(report_id) is None:
            err = CaptureError(f"Report not found: {report_id}", "This report is no longer on this device.")
            logger.error(f"Capture of {entity_type} rejected: report {report_id} does not exist")
            return CaptureResult(False, entity_type, error=err.message, user_message=err.user_message)

        item_id = new_id()
        result = CaptureResult(success=False, entity_type=entity_type, item_id=item_id)
        self.progress.emit("hashing", "Computing evidence hash...", 10, entity_type, item_id)

        # Hash before any filesystem write
        try:
            hashed = self.hasher.hash_bytes(data)
        except HashingError as e:
            logger.error(f"Capture aborted, hashing failed for {entity_type}: {e}")
            result.error, result.user_message = e.message, e.user_message
            return result
        result.original_hash = hashed.digest
        result.byte_length = hashed.byte_length

        if gps is not None or property_location is not None:
            result.location_check = validate_capture_location(gps, property_location)
            if result.location_check.approximate:
                result.warnings.append("approximate_location")
            if not result.location_check.is_valid:
                result.warnings.append("location_unverified")

        orig_name = original_filename(item_id, ext)
        self.progress.emit("storing", "Storing original...", 30, entity_type, item_id)
        try:
            result.original_path = self.storage.write_original(data, orig_name)
        except OriginalWriteError as e:
            logger.error(f"Capture aborted, original write failed for {entity_type} {item_id}: {e}")
            result.error, result.user_message = e.message, e.user_message
            return result

        # Audit failures propagate
        self.custody.log_capture(
            entity_type,
            item_id,
            hashed.digest,
            {
                "original_filename": orig_name,
                "byte_length": hashed.byte_length,
                "mime_type": mime_type,
                "report_id": report_id,
                "captured_at": (captured_at or hashed.timestamp).isoformat(),
                "gps": gps.model_dump() if gps else None,
                "location_check": result.location_check.to_dict() if result.location_check else None,
            },
        )

        self.progress.emit("processing", "Preparing working copy...", 60, entity_type, item_id)
        work_name = working_filename(item_id, ext)
        working_bytes = data
        if entity_type == "photo":
            if gps is not None:
                try:
                    working_bytes = media_utils.embed_gps_exif(data, gps)
                except Exception as e:
                    logger.warning(f"GPS EXIF embedding failed for {item_id} (non-fatal): {e}")
                    result.warnings.append("gps_exif_failed")
            if device is None:
                exif = media_utils.extract_exif(data)
                device = DeviceInfo(make=exif["make"], model=exif["model"])

        result.working_path = self.storage.write_working(working_bytes, work_name)
        if result.working_path is None:
            result.warnings.append("working_copy_failed")
            work_name = orig_name

        if entity_type in ("photo", "video"):
            source = result.working_path or result.original_path
            result.thumbnail_path = self.storage.derive_thumbnail(
                source, item_id, "video" if entity_type == "video" else "image"
            )
            if result.thumbnail_path == source:
                result.warnings.append("thumbnail_fallback")

        fields = {
            "id": item_id,
            "report_id": report_id,
            "defect_id": defect_id,
            "roof_element_id": roof_element_id,
            "original_filename": orig_name,
            "working_filename": work_name,
            "thumbnail_filename": (
                os.path.basename(result.thumbnail_path)
                if result.thumbnail_path and result.thumbnail_path.startswith(self.storage.paths.thumbnails)
                else None
            ),
            "mime_type": mime_type,
            "file_size": hashed.byte_length,
            "original_hash": hashed.digest,
            "captured_at": captured_at or hashed.timestamp,
            "gps_lat": gps.latitude if gps else None,
            "gps_lng": gps.longitude if gps else None,
            "gps_altitude": gps.altitude if gps else None,
            "gps_accuracy": gps.accuracy if gps else None,
            "camera_make": device.make if device else None,
            "camera_model": device.model if device else None,
            **(extra_fields or {}),
        }
        self.progress.emit("saving", "Saving record...", 85, entity_type, item_id)
        try:
            self.store.add_evidence(entity_type, **fields)
        except Exception as e:
            logger.error(f"Failed to save {entity_type} record {item_id}: {e}", exc_info=True)
            # The trail already records the capture; close it out
            self.custody.log_deletion(entity_type, item_id, hashed.digest, reason="capture_aborted")
            err = CaptureError(f"Record save failed: {e}", "The capture could not be saved. Please try again.")
            result.error, result.user_message = err.message, err.user_message
            return result

        result.success = True
        self.progress.emit("complete", "Capture complete", 100, entity_type, item_id)
        logger.info(f"Captured {entity_type} {item_id} ({hashed.byte_length} bytes, hash={hashed.digest[:12]}...)")
        return result

    # Lifecycle

    def _require(self, entity_type: str, item_id: str):
        item = self.store.get_evidence(entity_type, item_id)
        if item is None:
            raise KeyError(f"{entity_type} not found: {item_id}")
        return item

    def view_evidence(self, entity_type: str, item_id: str) -> str:
        """Log VIEWED and return the path to display."""
        item = self._require(entity_type, item_id)
        self.custody.log_view(entity_type, item_id, item.original_hash)
        working = self.storage.working_path(item.working_filename)
        if os.path.exists(working):
            return working
        return self.storage.original_path(item.original_filename)

    def verify_evidence(self, entity_type: str, item_id: str, context: str = "manual") -> VerificationResult:
        item = self._require(entity_type, item_id)
        result = self.hasher.verify_file_hash(
            self.storage.original_path(item.original_filename), item.original_hash
        )
        self.custody.log_verification(
            entity_type, item_id, item.original_hash, result.actual_hash, result.is_valid, context
        )
        return result

    def verify_report_evidence(self, report_id: str) -> Dict[str, VerificationResult]:
        results = {}
        for entity_type, item in self.store.list_evidence(report_id):
            results[item.id] = self.verify_evidence(entity_type, item.id, context="batch")
        return results

    def export_evidence(self, entity_type: str, item_id: str, destination_dir: str) -> str:
        """Copy the original out of the store and confirm the copy's hash."""
        item = self._require(entity_type, item_id)
        source = self.storage.original_path(item.original_filename)
        os.makedirs(destination_dir, exist_ok=True)
        dest = os.path.join(destination_dir, item.original_filename)
        shutil.copyfile(source, dest)

        copied = self.hasher.hash_file(dest)
        if not hashes_match(copied.digest, item.original_hash):
            raise EvidenceCoreError(f"Exported copy of {item_id} does not match its recorded hash")
        self.custody.log_export(entity_type, item_id, item.original_hash, dest)
        return dest

    def include_in_report(self, entity_type: str, item_id: str, report_id: str) -> None:
        item = self._require(entity_type, item_id)
        self.custody.log_included_in_report(entity_type, item_id, item.original_hash, report_id)

    def delete_evidence(self, entity_type: str, item_id: str, reason: Optional[str] = None) -> bool:
        """Log DELETED, drop the record and derivatives, queue the server delete."""
        item = self.store.get_evidence(entity_type, item_id)
        if item is None:
            return False
        self.custody.log_deletion(entity_type, item_id, item.original_hash, reason)
        self.store.delete_evidence(entity_type, item_id)
        return True


class RecordingSession:
    """A recording staged in temp/ until it is finished or cancelled.

    Cancelling discards the partial file and leaves no custody trace.
    """

    def __init__(self, service: CaptureService, entity_type: str, report_id: str, ext: str,
                 mime_type: str, capture_kwargs: dict):
        self.service = service
        self.entity_type = entity_type
        self.report_id = report_id
        self.ext = ext
        self.mime_type = mime_type
        self.capture_kwargs = capture_kwargs
        self.track = GPSTrack()
        self.started_at = utcnow()
        self.state = "recording"

        service.storage.ensure_directories()
        self.temp_path = service.storage.temp_path(f"rec_{new_id()}.{ext}")
        try:
            self._file = open(self.temp_path, "wb")
        except OSError as e:
            raise CaptureError(f"Failed to start recording: {e}", "Failed to start recording.") from e
        logger.info(f"Recording {entity_type} started: {self.temp_path}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if self.state == "recording":
            self.cancel()
        return False

    def write(self, chunk: bytes) -> None:
        if self.state != "recording":
            raise CaptureError(f"Recording is {self.state}")
        self._file.write(chunk)

    def add_track_point(self, point: GPSTrackPoint) -> None:
        self.track.points.append(point)

    def cancel(self) -> None:
        if self.state != "recording":
            return
        self._file.close()
        self.service.storage.discard_temp(self.temp_path)
        self.state = "cancelled"
        logger.info(f"Recording {self.entity_type} cancelled; partial file discarded")

    def finish(self, duration_ms: Optional[int] = None) -> CaptureResult:
        if self.state != "recording":
            raise CaptureError(f"Recording is {self.state}")
        self._file.close()
        self.state = "finished"
        with open(self.temp_path, "rb") as f:
            data = f.read()
        self.service.storage.discard_temp(self.temp_path)

        if duration_ms is None:
            duration_ms = int((utcnow() - self.started_at).total_seconds() * 1000)
        kwargs = dict(self.capture_kwargs, duration_ms=duration_ms, captured_at=self.started_at)
        if self.entity_type == "video":
            return self.service.capture_video(
                data, self.report_id, ext=self.ext, mime_type=self.mime_type,
                gps_track=self.track if self.track.points else None, **kwargs
            )
        return self.service.capture_voice_note(data, self.report_id, ext=self.ext, mime_type=self.mime_type, **kwargs)
