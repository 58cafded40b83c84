"""Sync engine: drains the local queue to the server and pulls server changes.

A run goes Idle -> CheckingConnectivity -> CheckingServerHealth ->
Draining -> Uploading/Downloading -> Reconciling -> Idle. No network or an
unhealthy server ends the run early as a skip, not a failure. Only one run
is active at a time; a second caller awaits the run already in flight.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from api_client import SyncApiClient, parse_timestamp
from audit_service import ChainOfCustodyLog
from chunked_upload import ChunkedUploader, should_use_chunked_upload
from config import settings
from database import utcnow
from errors import AuditLogError, ChunkedUploadInterrupted, ConflictDetected, SyncApiError
from evidence_service import ContentHasher
from file_storage import ImmutableEvidenceStore
from models import EVIDENCE_MODELS, SyncConflictRecord, SyncQueueEntry
from network import NetworkMonitor, NetworkStatus, TransferPolicy
from progress import ProgressEmitter
from record_store import evidence_metadata, load_payload, record_payload, report_payload
from schemas import ReportSummary

logger = logging.getLogger(__name__)

COUNTER_KEYS = {
    "report": "reports",
    "photo": "photos",
    "video": "videos",
    "voice_note": "voice_notes",
    "defect": "defects",
    "roof_element": "roof_elements",
    "compliance": "compliance",
}

RESOLUTIONS = {"keep_local": "client_wins", "keep_server": "server_wins"}


class SyncPhase(str, Enum):
    IDLE = "idle"
    CHECKING_CONNECTIVITY = "checking_connectivity"
    CHECKING_SERVER_HEALTH = "checking_server_health"
    DRAINING = "draining"
    UPLOADING = "uploading"
    DOWNLOADING = "downloading"
    RECONCILING = "reconciling"


@dataclass
class SyncError:
    code: str
    message: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    retryable: bool = True


@dataclass
class SyncConflict:
    report_id: str
    resolution: str
    server_updated_at: Optional[datetime]
    client_updated_at: Optional[datetime]
    dismissed_count: int = 0

    @classmethod
    def from_record(cls, record: SyncConflictRecord) -> "SyncConflict":
        return cls(
            report_id=record.report_id,
            resolution=record.resolution,
            server_updated_at=record.server_updated_at,
            client_updated_at=record.client_updated_at,
            dismissed_count=record.dismissed_count,
        )


@dataclass
class SyncResult:
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    skipped: bool = False
    skip_reason: Optional[str] = None
    uploaded: Dict[str, int] = field(default_factory=lambda: {key: 0 for key in COUNTER_KEYS.values()})
    deleted: int = 0
    downloaded_reports: int = 0
    downloaded_checklists: int = 0
    downloaded_templates: int = 0
    deferred: int = 0
    errors: List[SyncError] = field(default_factory=list)
    conflicts: List[SyncConflict] = field(default_factory=list)
    integrity_failures: List[dict] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def reports_synced(self) -> int:
        return self.uploaded["reports"]

    @property
    def photos_synced(self) -> int:
        return self.uploaded["photos"]

    @property
    def items_transferred(self) -> int:
        return sum(self.uploaded.values()) + self.deleted + self.downloaded_reports


class SyncEngine:
    def __init__(
        self,
        store,
        storage: ImmutableEvidenceStore,
        hasher: ContentHasher,
        custody: ChainOfCustodyLog,
        api: SyncApiClient,
        network: NetworkMonitor,
        policy: Optional[TransferPolicy] = None,
        uploader: Optional[ChunkedUploader] = None,
        progress: Optional[ProgressEmitter] = None,
        chunk_threshold: Optional[int] = None,
    ):
        self.store = store
        self.storage = storage
        self.hasher = hasher
        self.custody = custody
        self.api = api
        self.network = network
        self.policy = policy or TransferPolicy()
        self.uploader = uploader or ChunkedUploader(api, store)
        self.progress = progress or ProgressEmitter()
        self.chunk_threshold = chunk_threshold or settings.CHUNKED_UPLOAD_THRESHOLD
        self.phase = SyncPhase.IDLE
        self.last_result: Optional[SyncResult] = None
        self._inflight: Optional[asyncio.Future] = None

    @property
    def is_syncing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def _set_phase(self, phase: SyncPhase, message: str, percent: Optional[float] = None) -> None:
        self.phase = phase
        self.progress.emit(phase.value, message, percent)

    async def sync(self, download: bool = True) -> SyncResult:
        """Run a sync, or join the one already running."""
        if self.is_syncing:
            logger.info("Sync already in progress; joining the running sync")
            return await asyncio.shield(self._inflight)

        self._inflight = asyncio.ensure_future(self._run(download))
        return await asyncio.shield(self._inflight)

    async def _run(self, download: bool) -> SyncResult:
        result = SyncResult()
        try:
            if not self.store.available:
                return self._skip(result, "store_unavailable")

            self._set_phase(SyncPhase.CHECKING_CONNECTIVITY, "Checking connectivity...", 0)
            status = await self.network.current_status()
            if not status.connected:
                logger.info("Sync skipped: no network connectivity")
                return self._skip(result, "offline")

            self._set_phase(SyncPhase.CHECKING_SERVER_HEALTH, "Checking server...", 5)
            if not await self.api.check_health():
                logger.info("Sync skipped: server unreachable")
                return self._skip(result, "server_unreachable")

            self._set_phase(SyncPhase.DRAINING, "Uploading local changes...", 10)
            entries = self.store.sync_queue()
            for index, entry in enumerate(entries):
                await self._process_entry(entry, status, result)
                self.progress.emit(
                    SyncPhase.UPLOADING.value,
                    f"Processed {index + 1} of {len(entries)}",
                    10 + 70 * (index + 1) / len(entries),
                    entry.entity_type,
                    entry.entity_id,
                )

            if download:
                self._set_phase(SyncPhase.DOWNLOADING, "Downloading server changes...", 80)
                await self._download(result)

            self._set_phase(SyncPhase.RECONCILING, "Reconciling...", 95)
            result.conflicts = [SyncConflict.from_record(c) for c in self.store.pending_conflicts()]
            if sum(result.uploaded.values()) or result.deleted:
                self.store.update_sync_state(last_upload_at=utcnow())

            result.finished_at = utcnow()
            self.last_result = result
            self.progress.emit("complete", "Sync complete", 100)
            logger.info(
                f"Sync finished: uploaded={result.uploaded} deleted={result.deleted} "
                f"downloaded={result.downloaded_reports} deferred={result.deferred} "
                f"errors={len(result.errors)} conflicts={len(result.conflicts)}"
            )
            return result
        finally:
            self.phase = SyncPhase.IDLE

    def _skip(self, result: SyncResult, reason: str) -> SyncResult:
        result.skipped = True
        result.skip_reason = reason
        result.finished_at = utcnow()
        self.last_result = result
        return result

    # Upload side

    async def _process_entry(self, entry: SyncQueueEntry, status: NetworkStatus, result: SyncResult) -> None:
        """Process one queue entry; failures are recorded and never stop the drain."""
        etype, eid = entry.entity_type, entry.entity_id
        try:
            if entry.operation == "delete":
                self.store.mark_sync_attempt(entry.id)
                await self.api.delete_entity(etype, eid, load_payload(entry).model_dump(exclude_none=True))
                self.store.complete_sync_entry(entry.id, entry.version)
                result.deleted += 1
            elif etype == "report":
                await self._push_report(entry, result)
            elif etype in EVIDENCE_MODELS:
                await self._push_evidence(entry, status, result)
            else:
                await self._push_record(entry, result)
        except AuditLogError:
            raise
        except ConflictDetected as e:
            if etype == "report":
                self._record_conflict(eid, e)
            else:
                self._record_failure(entry, result, "UPLOAD_FAILED", str(e), retryable=False)
        except SyncApiError as e:
            self._record_failure(entry, result, "UPLOAD_FAILED", str(e), retryable=e.transient)
        except Exception as e:
            logger.error(f"Unexpected sync failure for {etype} {eid}: {e}", exc_info=True)
            self._record_failure(entry, result, "UPLOAD_FAILED", str(e))

    def _record_failure(self, entry: SyncQueueEntry, result: SyncResult, code: str, message: str,
                        retryable: bool = True) -> None:
        attempts = self.store.record_sync_failure(entry.id, message)
        logger.warning(f"Sync of {entry.entity_type} {entry.entity_id} failed (attempt {attempts}): {message}")
        if entry.entity_type == "report":
            self.store.mark_report_error(entry.entity_id, message)
        elif entry.entity_type in EVIDENCE_MODELS and entry.operation != "delete":
            self.store.mark_evidence_status(entry.entity_type, entry.entity_id, "error", error=message)
        result.errors.append(SyncError(code, message, entry.entity_type, entry.entity_id, retryable))

    def _record_conflict(self, report_id: str, conflict: ConflictDetected) -> None:
        report = self.store.get_report(report_id)
        self.store.save_conflict(
            report_id,
            conflict.server_updated_at,
            report.updated_at if report else None,
            conflict.server_data or None,
        )
        logger.warning(f"Conflict on report {report_id}: modified on server at {conflict.server_updated_at}")

    async def _push_report(self, entry: SyncQueueEntry, result: SyncResult) -> None:
        report = self.store.get_report(entry.entity_id)
        if report is None:
            self.store.complete_sync_entry(entry.id)
            return
        if report.sync_status == "conflict":
            # Held until the user resolves the conflict
            return

        self.store.mark_sync_attempt(entry.id)
        payload = report_payload(report)
        if entry.operation == "create" and report.server_updated_at is None:
            data = await self.api.create_report(payload)
        else:
            data = await self.api.update_report(report.id, payload, report.server_updated_at)

        server_updated_at = parse_timestamp((data or {}).get("updatedAt")) or utcnow()
        # An edit folded in while the push was in flight keeps the report pending
        completed = self.store.complete_sync_entry(entry.id, entry.version)
        self.store.mark_report_synced(report.id, server_updated_at, settled=completed)
        result.uploaded["reports"] += 1

    async def _push_record(self, entry: SyncQueueEntry, result: SyncResult) -> None:
        row = self.store.get_record(entry.entity_type, entry.entity_id)
        if row is None:
            self.store.complete_sync_entry(entry.id)
            return
        self.store.mark_sync_attempt(entry.id)
        await self.api.push_record(
            entry.entity_type, entry.operation, entry.entity_id, record_payload(entry.entity_type, row)
        )
        completed = self.store.complete_sync_entry(entry.id, entry.version)
        self.store.mark_record_synced(entry.entity_type, entry.entity_id, settled=completed)
        result.uploaded[COUNTER_KEYS[entry.entity_type]] += 1

    async def _push_evidence(self, entry: SyncQueueEntry, status: NetworkStatus, result: SyncResult) -> None:
        etype, eid = entry.entity_type, entry.entity_id
        item = self.store.get_evidence(etype, eid)
        if item is None:
            self.store.complete_sync_entry(entry.id)
            return

        if item.uploaded_url:
            # File already on the server; only metadata changed
            self.store.mark_sync_attempt(entry.id)
            await self.api.push_record(etype, "update", eid, evidence_metadata(etype, item))
            if self.store.complete_sync_entry(entry.id, entry.version):
                self.store.mark_evidence_status(etype, eid, "synced")
            return

        if not self.policy.can_transfer(item.file_size, status):
            logger.info(f"Deferring {etype} {eid} ({item.file_size} bytes) until on Wi-Fi")
            result.deferred += 1
            return

        self.store.mark_sync_attempt(entry.id)
        self.phase = SyncPhase.UPLOADING
        self.store.mark_evidence_status(etype, eid, "processing")
        path = self.storage.original_path(item.original_filename)
        metadata = evidence_metadata(etype, item)

        if should_use_chunked_upload(item.file_size, self.chunk_threshold):
            try:
                upload = await self.uploader.upload(
                    etype,
                    eid,
                    path,
                    {
                        "filename": item.original_filename,
                        "filetype": item.mime_type,
                        "originalHash": item.original_hash,
                        "reportId": item.report_id,
                        "entityType": etype,
                        "entityId": eid,
                    },
                    item.original_hash,
                    on_progress=lambda sent, total: self.progress.emit(
                        SyncPhase.UPLOADING.value, f"Uploading {etype}", 100 * sent / total, etype, eid
                    ),
                )
            except ChunkedUploadInterrupted as e:
                self._record_failure(entry, result, "UPLOAD_INTERRUPTED", str(e))
                return
            uploaded_url = upload.url
        else:
            receipt = await self.api.upload_evidence(etype, path, item.original_filename, item.mime_type, metadata)
            uploaded_url = receipt.url

        self.custody.log_sync(etype, eid, item.original_hash, uploaded_url)
        self.store.mark_evidence_status(etype, eid, "uploaded", uploaded_url=uploaded_url)

        # Re-hash the original now that the transfer is acknowledged
        verification = await asyncio.to_thread(self.hasher.verify_file_hash, path, item.original_hash)
        self.custody.log_verification(
            etype, eid, item.original_hash, verification.actual_hash, verification.is_valid, context="post_sync"
        )
        completed = self.store.complete_sync_entry(entry.id, entry.version)
        result.uploaded[COUNTER_KEYS[etype]] += 1

        if verification.is_valid:
            if completed:
                self.store.mark_evidence_status(etype, eid, "synced", uploaded_url=uploaded_url)
            else:
                logger.info(f"{etype} {eid} edited during upload; metadata goes out on the next run")
        else:
            message = (
                f"Integrity check failed after upload: expected {item.original_hash[:12]}..., "
                f"got {(verification.actual_hash or 'unreadable')[:12]}..."
            )
            logger.error(f"{etype} {eid}: {message}")
            self.store.mark_evidence_status(etype, eid, "error", uploaded_url=uploaded_url, error=message)
            result.integrity_failures.append(
                {
                    "entity_type": etype,
                    "entity_id": eid,
                    "expected_hash": verification.expected_hash,
                    "actual_hash": verification.actual_hash,
                    "error": verification.error,
                }
            )
            result.errors.append(SyncError("INTEGRITY_ERROR", message, etype, eid, retryable=False))

    # Download side

    async def _download(self, result: SyncResult) -> None:
        state = self.store.get_sync_state()
        try:
            bootstrap = await self.api.fetch_bootstrap(state.last_download_at if state else None)
        except SyncApiError as e:
            logger.warning(f"Report download failed: {e}")
            result.errors.append(SyncError("REPORT_DOWNLOAD_FAILED", str(e)))
            return

        for summary in bootstrap.recent_reports:
            local = self.store.get_report(summary.id)
            if local is None or local.sync_status == "synced":
                if local is not None and local.server_updated_at and summary.updated_at <= local.server_updated_at:
                    continue
                self.store.apply_server_report(summary)
                result.downloaded_reports += 1
            elif local.sync_status == "conflict":
                continue
            elif local.server_updated_at is None or summary.updated_at > local.server_updated_at:
                # Local edits not yet pushed and a newer server version
                self.store.save_conflict(
                    summary.id,
                    summary.updated_at,
                    local.updated_at,
                    summary.model_dump(mode="json", by_alias=True),
                )
                logger.warning(f"Conflict on report {summary.id}: local edits and newer server version")

        # Server-owned reference data; local copies are overwritten by id
        if bootstrap.checklists:
            result.downloaded_checklists = self.store.save_checklists(bootstrap.checklists)
        if bootstrap.templates:
            result.downloaded_templates = self.store.save_templates(bootstrap.templates)

        self.store.update_sync_state(last_download_at=bootstrap.last_sync_at or utcnow(), last_bootstrap_at=utcnow())

    # Conflicts and maintenance

    def pending_conflicts(self) -> List[SyncConflict]:
        return [SyncConflict.from_record(c) for c in self.store.pending_conflicts()]

    async def resolve_conflict(self, report_id: str, choice: str) -> SyncConflict:
        """Apply keep_local, keep_server or dismiss to a pending conflict."""
        conflict = self.store.get_conflict(report_id)
        if conflict is None or conflict.resolution != "pending":
            raise KeyError(f"No pending conflict for report {report_id}")

        if choice == "dismiss":
            self.store.dismiss_conflict(report_id)
            logger.info(f"Conflict on report {report_id} deferred")
        elif choice == "keep_local":
            self.store.resolve_conflict_record(report_id, RESOLUTIONS[choice])
            logger.info(f"Conflict on report {report_id} resolved: keeping local version")
        elif choice == "keep_server":
            if conflict.server_data_json:
                summary = ReportSummary.model_validate_json(conflict.server_data_json)
            else:
                summary = await self.api.fetch_report(report_id)
            self.store.apply_server_report(summary)
            self.store.drop_queue_entries("report", report_id)
            self.store.resolve_conflict_record(report_id, RESOLUTIONS[choice])
            logger.info(f"Conflict on report {report_id} resolved: keeping server version")
        else:
            raise ValueError(f"Unknown conflict resolution: {choice}")

        return SyncConflict.from_record(self.store.get_conflict(report_id))

    async def retry_failed(self) -> SyncResult:
        self.store.reset_failed_sync_entries()
        return await self.sync()

    def status(self) -> dict:
        state = self.store.get_sync_state()
        return {
            "phase": self.phase.value,
            "is_syncing": self.is_syncing,
            "pending": self.store.pending_sync_count(),
            "failed": self.store.failed_sync_count(),
            "conflicts": len(self.store.pending_conflicts()),
            "last_upload_at": state.last_upload_at if state else None,
            "last_download_at": state.last_download_at if state else None,
        }
