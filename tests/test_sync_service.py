"""End-to-end sync engine tests against the in-process fake server."""
import asyncio
import os
from unittest.mock import patch

import pytest

from database import utcnow
from errors import AuditLogError
from evidence_service import VerificationResult
from network import OFFLINE, NetworkStatus, TransferPolicy
from record_store import NullRecordStore
from sync_service import SyncEngine

CELLULAR = NetworkStatus(connected=True, connection_type="cellular")


def _sync(engine, **kwargs):
    return asyncio.run(engine.sync(**kwargs))


def _actions(custody, entity_type, entity_id):
    return [e.action for e in reversed(custody.chain_for(entity_type, entity_id))]


class TestSkips:
    def test_offline_skips_without_touching_queue(self, engine, store, network, fake_server, capture, report,
                                                  jpeg_bytes):
        capture.capture_photo(jpeg_bytes, report.id)
        before = [(e.id, e.attempt_count) for e in store.sync_queue()]
        network.set_status(OFFLINE)

        result = _sync(engine)

        assert result.skipped is True
        assert result.skip_reason == "offline"
        assert result.errors == []
        assert [(e.id, e.attempt_count) for e in store.sync_queue()] == before
        assert fake_server.requests == []

    def test_unhealthy_server_skips(self, engine, store, fake_server, report):
        fake_server.healthy = False

        result = _sync(engine)

        assert result.skip_reason == "server_unreachable"
        assert store.pending_sync_count() == 1
        assert fake_server.reports == {}

    def test_unavailable_store_skips(self, storage, hasher, api_client, network, fake_server):
        engine = SyncEngine(NullRecordStore(), storage, hasher, None, api_client, network)
        result = _sync(engine)
        assert result.skip_reason == "store_unavailable"
        assert fake_server.requests == []


class TestUpload:
    def test_report_and_photo_reach_server(self, engine, store, custody, fake_server, capture, report, jpeg_bytes):
        captured = capture.capture_photo(jpeg_bytes, report.id)

        result = _sync(engine)

        assert result.success is True
        assert result.reports_synced == 1
        assert result.photos_synced == 1
        assert fake_server.reports[report.id]["title"] == "Roof inspection"
        stored = fake_server.evidence[("photos", captured.item_id)]
        assert stored["content"] == jpeg_bytes
        assert stored["hash"] == captured.original_hash
        assert stored["metadata"]["originalHash"] == captured.original_hash

        photo = store.get_evidence("photo", captured.item_id)
        assert photo.sync_status == "synced"
        assert photo.uploaded_url == f"/files/photos/{captured.item_id}"
        local = store.get_report(report.id)
        assert local.sync_status == "synced"
        assert local.server_updated_at is not None
        assert store.pending_sync_count() == 0

    def test_sync_and_verification_are_logged(self, engine, custody, capture, report, jpeg_bytes):
        captured = capture.capture_photo(jpeg_bytes, report.id)

        _sync(engine)

        assert _actions(custody, "photo", captured.item_id) == ["CAPTURED", "HASHED", "STORED", "SYNCED", "VERIFIED"]
        verified = custody.chain_for("photo", captured.item_id)[0]
        assert verified.details["result"] == "PASSED"
        assert verified.details["context"] == "post_sync"
        assert custody.verify_chain()["valid"] is True

    def test_second_sync_is_idempotent(self, engine, fake_server, capture, report, jpeg_bytes):
        capture.capture_photo(jpeg_bytes, report.id)
        _sync(engine)
        uploads_before = fake_server.request_count("POST", "/api/photos")

        result = _sync(engine)

        assert result.items_transferred == 0
        assert fake_server.request_count("POST", "/api/photos") == uploads_before
        assert len(fake_server.evidence) == 1

    def test_report_edit_after_sync_is_an_update(self, engine, store, fake_server, report):
        _sync(engine)
        store.update_report(report.id, title="Revised title")

        result = _sync(engine)

        assert result.reports_synced == 1
        assert fake_server.reports[report.id]["title"] == "Revised title"
        assert fake_server.request_count("POST", "/api/reports") == 1
        assert fake_server.request_count("PATCH", f"/api/reports/{report.id}") == 1

    def test_records_are_pushed(self, engine, store, fake_server, report):
        from schemas import ComplianceResults

        defect = store.save_defect(report.id, "Cracked ridge cap", severity="high")
        store.save_compliance_assessment(report.id, ComplianceResults(items={"flashing": "fail"}))

        result = _sync(engine)

        assert result.uploaded["defects"] == 1
        assert result.uploaded["compliance"] == 1
        assert fake_server.records[("defects", defect.id)]["severity"] == "high"
        assert fake_server.records[("compliance", report.id)]["checklist_results"]["items"] == {"flashing": "fail"}
        assert store.get_record("defect", defect.id).sync_status == "synced"

    def test_metadata_edit_after_sync_does_not_reupload(self, engine, store, fake_server, capture, report,
                                                         jpeg_bytes):
        captured = capture.capture_photo(jpeg_bytes, report.id)
        _sync(engine)
        store.update_photo_classification(captured.item_id, caption="North elevation")

        _sync(engine)

        assert fake_server.request_count("POST", "/api/photos") == 1
        collection, record_id, body = fake_server.evidence_updates[-1]
        assert (collection, record_id) == ("photos", captured.item_id)
        assert body["caption"] == "North elevation"
        assert store.get_evidence("photo", captured.item_id).sync_status == "synced"

    def test_deletion_is_propagated(self, engine, store, fake_server, capture, report, jpeg_bytes):
        captured = capture.capture_photo(jpeg_bytes, report.id)
        _sync(engine)
        capture.delete_evidence("photo", captured.item_id, reason="blurred")

        result = _sync(engine)

        assert result.deleted == 1
        assert ("photos", captured.item_id) in fake_server.deleted
        assert store.pending_sync_count() == 0


class TestEditsDuringSync:
    def test_report_edit_during_push_is_not_lost(self, engine, store, fake_server, report):
        fake_server.on_request(
            "POST", "/api/reports", lambda: store.update_report(report.id, title="Edited mid-push")
        )

        first = _sync(engine)

        assert first.reports_synced == 1
        assert fake_server.reports[report.id]["title"] == "Roof inspection"
        local = store.get_report(report.id)
        assert local.sync_status == "pending"
        assert local.server_updated_at is not None
        assert store.pending_sync_count() == 1

        second = _sync(engine)

        assert second.success is True
        assert second.conflicts == []
        assert fake_server.reports[report.id]["title"] == "Edited mid-push"
        assert fake_server.request_count("PATCH", f"/api/reports/{report.id}") == 1
        assert store.get_report(report.id).sync_status == "synced"
        assert store.pending_sync_count() == 0

    def test_photo_edit_during_upload_goes_out_next_run(self, engine, store, fake_server, capture, report,
                                                        jpeg_bytes):
        captured = capture.capture_photo(jpeg_bytes, report.id)
        fake_server.on_request(
            "POST", "/api/photos",
            lambda: store.update_photo_classification(captured.item_id, caption="North elevation"),
        )

        first = _sync(engine)

        assert first.photos_synced == 1
        photo = store.get_evidence("photo", captured.item_id)
        assert photo.sync_status == "uploaded"
        assert photo.uploaded_url is not None

        _sync(engine)

        assert fake_server.request_count("POST", "/api/photos") == 1
        collection, record_id, body = fake_server.evidence_updates[-1]
        assert (collection, record_id) == ("photos", captured.item_id)
        assert body["caption"] == "North elevation"
        assert store.get_evidence("photo", captured.item_id).sync_status == "synced"
        assert store.pending_sync_count() == 0

    def test_delete_during_create_push_is_propagated(self, engine, store, fake_server, report):
        defect = store.save_defect(report.id, "Cracked tile")
        fake_server.on_request("POST", "/api/defects", lambda: store.delete_record("defect", defect.id))

        _sync(engine)

        assert ("defects", defect.id) in fake_server.records
        assert [e.operation for e in store.sync_queue() if e.entity_id == defect.id] == ["delete"]

        result = _sync(engine)

        assert result.deleted == 1
        assert ("defects", defect.id) in fake_server.deleted
        assert store.pending_sync_count() == 0

    def test_delete_after_failed_create_and_edit_reaches_server(self, engine, store, fake_server, capture, report,
                                                               jpeg_bytes):
        captured = capture.capture_photo(jpeg_bytes, report.id)
        fake_server.fail_after_write("POST", "/api/photos", 400)
        _sync(engine)
        assert ("photos", captured.item_id) in fake_server.evidence

        store.update_photo_classification(captured.item_id, caption="Gutter")
        capture.delete_evidence("photo", captured.item_id, reason="duplicate")

        result = _sync(engine)

        assert result.deleted == 1
        assert ("photos", captured.item_id) in fake_server.deleted


class TestFailures:
    def test_failure_is_recorded_and_drain_continues(self, engine, store, fake_server, capture, report, jpeg_bytes):
        captured = capture.capture_photo(jpeg_bytes, report.id)
        fake_server.fail_next("POST", "/api/reports", 500, 500)

        result = _sync(engine)

        assert result.success is False
        assert result.errors[0].entity_type == "report"
        assert result.errors[0].retryable is True
        assert store.get_report(report.id).sync_status == "error"
        # The photo behind the failed report still went up
        assert store.get_evidence("photo", captured.item_id).sync_status == "synced"
        (entry,) = [e for e in store.sync_queue() if e.entity_type == "report"]
        assert entry.attempt_count == 1

    def test_retry_failed_resets_parked_entries(self, engine, store, fake_server, report):
        for _ in range(3):
            fake_server.fail_next("POST", "/api/reports", 500, 500)
            _sync(engine, download=False)
        assert store.failed_sync_count() == 1
        assert store.pending_sync_count() == 0

        result = asyncio.run(engine.retry_failed())

        assert result.reports_synced == 1
        assert store.failed_sync_count() == 0

    def test_integrity_failure_after_upload(self, engine, store, custody, capture, report, jpeg_bytes):
        captured = capture.capture_photo(jpeg_bytes, report.id)
        mismatch = VerificationResult(is_valid=False, expected_hash=captured.original_hash, actual_hash="0" * 64)

        with patch.object(engine.hasher, "verify_file_hash", return_value=mismatch):
            result = _sync(engine)

        assert len(result.integrity_failures) == 1
        assert result.errors[-1].code == "INTEGRITY_ERROR"
        photo = store.get_evidence("photo", captured.item_id)
        assert photo.sync_status == "error"
        assert photo.uploaded_url is not None
        verified = custody.chain_for("photo", captured.item_id)[0]
        assert verified.action == "VERIFIED"
        assert verified.details["result"] == "FAILED"

    def test_audit_failure_stops_the_sync(self, engine, capture, report, jpeg_bytes):
        capture.capture_photo(jpeg_bytes, report.id)

        with patch.object(engine.custody, "log_sync", side_effect=AuditLogError("ledger unavailable")):
            with pytest.raises(AuditLogError):
                _sync(engine)


class TestTransferPolicy:
    def test_large_file_deferred_on_cellular(self, engine, store, network, fake_server, capture, report, jpeg_bytes):
        engine.policy = TransferPolicy(wifi_only=True, threshold_mb=0)
        captured = capture.capture_photo(jpeg_bytes, report.id)
        network.set_status(CELLULAR)

        result = _sync(engine)

        assert result.deferred == 1
        assert result.photos_synced == 0
        assert result.reports_synced == 1
        (entry,) = [e for e in store.sync_queue() if e.entity_type == "photo"]
        assert entry.attempt_count == 0
        assert store.get_evidence("photo", captured.item_id).sync_status == "captured"

        network.set_status(NetworkStatus(connected=True, connection_type="wifi"))
        assert _sync(engine).photos_synced == 1


class TestChunkedVideo:
    def test_video_resumes_on_next_sync(self, engine, store, custody, fake_server, capture, report):
        data = os.urandom(6 * 8 * 1024 + 500)
        captured = capture.capture_video(data, report.id, duration_ms=3000)
        fake_server.tus_fail_from_offset = 2 * 8 * 1024

        first = _sync(engine)

        assert first.errors[0].code == "UPLOAD_INTERRUPTED"
        assert store.get_evidence("video", captured.item_id).sync_status == "error"
        assert store.get_upload_session("video", captured.item_id).offset == 2 * 8 * 1024
        assert "SYNCED" not in _actions(custody, "video", captured.item_id)

        fake_server.tus_fail_from_offset = None
        received_before = fake_server.tus_bytes_received
        second = _sync(engine)

        assert second.uploaded["videos"] == 1
        assert fake_server.tus_bytes_received - received_before == len(data) - 2 * 8 * 1024
        (upload,) = fake_server.tus_uploads.values()
        assert bytes(upload["data"]) == data
        video = store.get_evidence("video", captured.item_id)
        assert video.sync_status == "synced"
        assert video.uploaded_url.startswith("http://testserver/api/upload/video/")


class TestConflicts:
    def _diverge(self, engine, store, fake_server, report):
        _sync(engine)
        fake_server.touch_report(report.id, title="Edited on the web")
        store.update_report(report.id, title="Edited in the field")

    def test_conflict_detected_and_nothing_overwritten(self, engine, store, fake_server, report):
        self._diverge(engine, store, fake_server, report)

        result = _sync(engine)

        assert [c.report_id for c in result.conflicts] == [report.id]
        assert result.errors == []
        local = store.get_report(report.id)
        assert local.sync_status == "conflict"
        assert local.title == "Edited in the field"
        assert fake_server.reports[report.id]["title"] == "Edited on the web"

    def test_conflicted_report_held_until_resolved(self, engine, store, fake_server, report):
        self._diverge(engine, store, fake_server, report)
        _sync(engine)
        patches = fake_server.request_count("PATCH", f"/api/reports/{report.id}")

        _sync(engine)

        assert fake_server.request_count("PATCH", f"/api/reports/{report.id}") == patches
        assert fake_server.reports[report.id]["title"] == "Edited on the web"

    def test_keep_local(self, engine, store, fake_server, report):
        self._diverge(engine, store, fake_server, report)
        _sync(engine)

        conflict = asyncio.run(engine.resolve_conflict(report.id, "keep_local"))
        assert conflict.resolution == "client_wins"
        result = _sync(engine)

        assert result.conflicts == []
        assert fake_server.reports[report.id]["title"] == "Edited in the field"
        assert store.get_report(report.id).sync_status == "synced"

    def test_keep_server(self, engine, store, fake_server, report):
        self._diverge(engine, store, fake_server, report)
        _sync(engine)

        conflict = asyncio.run(engine.resolve_conflict(report.id, "keep_server"))

        assert conflict.resolution == "server_wins"
        local = store.get_report(report.id)
        assert local.title == "Edited on the web"
        assert local.sync_status == "synced"
        assert [e for e in store.sync_queue() if e.entity_type == "report"] == []

    def test_dismiss_keeps_conflict_visible(self, engine, store, fake_server, report):
        self._diverge(engine, store, fake_server, report)
        _sync(engine)

        asyncio.run(engine.resolve_conflict(report.id, "dismiss"))

        (conflict,) = engine.pending_conflicts()
        assert conflict.dismissed_count == 1
        assert store.get_report(report.id).title == "Edited in the field"

    def test_unknown_choice_rejected(self, engine, store, fake_server, report):
        self._diverge(engine, store, fake_server, report)
        _sync(engine)
        with pytest.raises(ValueError):
            asyncio.run(engine.resolve_conflict(report.id, "merge"))

    def test_resolving_without_conflict_raises(self, engine, report):
        with pytest.raises(KeyError):
            asyncio.run(engine.resolve_conflict(report.id, "keep_local"))


class TestDownload:
    def test_new_server_reports_are_applied(self, engine, store, fake_server):
        fake_server.reports["srv-1"] = {
            "id": "srv-1", "title": "Created on the web", "status": "DRAFT",
            "updatedAt": fake_server.now().isoformat(),
        }

        result = _sync(engine)

        assert result.downloaded_reports == 1
        assert store.get_report("srv-1").title == "Created on the web"
        assert store.get_sync_state().last_download_at is not None

    def test_server_edit_never_overwrites_local_edit(self, engine, store, fake_server, report):
        _sync(engine)
        store.update_report(report.id, title="Field edit")
        fake_server.touch_report(report.id, title="Web edit")

        result = _sync(engine, download=True)

        assert store.get_report(report.id).title == "Field edit"
        assert report.id in [c.report_id for c in result.conflicts]

    def test_bootstrap_caches_checklists_and_templates(self, engine, store, fake_server):
        fake_server.checklists = [
            {"id": "cl-1", "name": "E2/AS1 Cladding", "standard": "E2/AS1", "items": [{"id": "flashing"}]},
            {"id": "cl-bad"},
        ]
        fake_server.templates = [{"id": "t-1", "name": "Full roof", "inspectionType": "FULL", "isDefault": True}]

        result = _sync(engine)

        assert result.success is True
        assert result.downloaded_checklists == 1
        assert result.downloaded_templates == 1
        assert store.get_checklist("E2/AS1").items == [{"id": "flashing"}]
        assert store.get_template("FULL").name == "Full roof"

    def test_unchanged_reports_not_reapplied(self, engine, fake_server, report):
        _sync(engine)
        assert _sync(engine).downloaded_reports == 0


class TestConcurrency:
    def test_concurrent_calls_share_one_run(self, engine, fake_server, capture, report, jpeg_bytes):
        capture.capture_photo(jpeg_bytes, report.id)

        async def both():
            return await asyncio.gather(engine.sync(), engine.sync())

        first, second = asyncio.run(both())

        assert first is second
        assert fake_server.request_count("POST", "/api/photos") == 1
        assert fake_server.request_count("GET", "/api/health") == 1

    def test_status(self, engine, report):
        status = engine.status()
        assert status["phase"] == "idle"
        assert status["pending"] == 1
        assert status["is_syncing"] is False
        assert status["last_upload_at"] is None
        _sync(engine)
        assert engine.status()["last_upload_at"] is not None
        assert engine.status()["pending"] == 0
        assert utcnow() >= engine.last_result.finished_at
