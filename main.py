"""Field evidence core: composition root and maintenance CLI"""
import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from api_client import SyncApiClient
from audit_service import ChainOfCustodyLog
from background_sync import BackgroundSync, background_sync_task
from capture_service import CaptureService
from config import Settings, settings
from evidence_service import ContentHasher
from file_storage import ImmutableEvidenceStore
from network import NetworkMonitor, NetworkStatus, StaticNetworkMonitor, TransferPolicy
from progress import ProgressEmitter
from record_store import build_record_store
from sync_service import SyncEngine

logger = logging.getLogger(__name__)


class AppContext:
    """Wires storage, store, custody, capture and sync from one Settings object."""

    def __init__(self, config: Optional[Settings] = None, network: Optional[NetworkMonitor] = None,
                 api: Optional[SyncApiClient] = None):
        self.config = config or settings
        self.storage = ImmutableEvidenceStore(
            self.config.STORAGE_ROOT, self.config.THUMBNAIL_WIDTH, self.config.THUMBNAIL_QUALITY
        )
        self.storage.ensure_directories()
        self.store = build_record_store(self.config, self.storage)
        self.hasher = ContentHasher()
        self.custody = ChainOfCustodyLog(self.store)
        self.progress = ProgressEmitter()
        self.capture = CaptureService(self.store, self.storage, self.hasher, self.custody, self.progress)
        self.api = api or SyncApiClient(self.config.API_URL)
        # Without a host probe, assume an unmetered connection and let the health check decide
        self.network = network or StaticNetworkMonitor(NetworkStatus(connected=True, connection_type="ethernet"))
        self.sync = SyncEngine(
            self.store,
            self.storage,
            self.hasher,
            self.custody,
            self.api,
            self.network,
            policy=TransferPolicy(self.config.LARGE_FILE_WIFI_ONLY, self.config.WIFI_ONLY_THRESHOLD_MB),
            progress=self.progress,
            chunk_threshold=self.config.CHUNKED_UPLOAD_THRESHOLD,
        )
        self.background = BackgroundSync(self.sync, interval=self.config.BACKGROUND_SYNC_INTERVAL)
        logger.info(f"Evidence core ready (store available: {self.store.available})")


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_init(ctx: AppContext, args) -> int:
    _print({"device_id": ctx.store.device_id(), "storage": ctx.storage.paths.__dict__})
    return 0


def cmd_sync(ctx: AppContext, args) -> int:
    result = asyncio.run(ctx.sync.sync(download=not args.upload_only))
    _print(
        {
            "skipped": result.skipped,
            "skip_reason": result.skip_reason,
            "uploaded": result.uploaded,
            "deleted": result.deleted,
            "downloaded_reports": result.downloaded_reports,
            "downloaded_checklists": result.downloaded_checklists,
            "downloaded_templates": result.downloaded_templates,
            "deferred": result.deferred,
            "errors": [e.__dict__ for e in result.errors],
            "conflicts": [c.__dict__ for c in result.conflicts],
        }
    )
    return 0 if result.success else 1


def cmd_background(ctx: AppContext, args) -> int:
    outcome = asyncio.run(background_sync_task(ctx.sync, ctx.background))
    _print({"outcome": outcome.value, **ctx.background.status().to_dict()})
    return 0


def cmd_status(ctx: AppContext, args) -> int:
    _print({"sync": ctx.sync.status(), "database": ctx.store.database_stats(), "storage": ctx.storage.storage_usage()})
    return 0


def cmd_verify_chain(ctx: AppContext, args) -> int:
    result = ctx.custody.verify_chain()
    _print(result)
    return 0 if result["valid"] else 1


def cmd_verify(ctx: AppContext, args) -> int:
    result = ctx.capture.verify_evidence(args.entity_type, args.entity_id, context="cli")
    _print(result.__dict__)
    return 0 if result.is_valid else 1


def cmd_chain(ctx: AppContext, args) -> int:
    events = ctx.custody.chain_for(args.entity_type, args.entity_id)
    _print([e.__dict__ for e in events])
    return 0


def cmd_export_chain(ctx: AppContext, args) -> int:
    _print(ctx.custody.export_chain(args.report_id))
    return 0


def cmd_resolve(ctx: AppContext, args) -> int:
    conflict = asyncio.run(ctx.sync.resolve_conflict(args.report_id, args.choice))
    _print(conflict.__dict__)
    return 0


def cmd_checklist(ctx: AppContext, args) -> int:
    checklist = ctx.store.get_checklist(args.standard)
    if checklist is None:
        _print({"error": f"No cached checklist for {args.standard}"})
        return 1
    _print(checklist.model_dump(mode="json"))
    return 0


def cmd_template(ctx: AppContext, args) -> int:
    template = ctx.store.get_template(args.inspection_type)
    if template is None:
        _print({"error": "No cached template"})
        return 1
    _print(template.model_dump(mode="json", by_alias=True))
    return 0


def cmd_cleanup_temp(ctx: AppContext, args) -> int:
    _print({"removed": ctx.storage.cleanup_temp(args.max_age_hours)})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="field-evidence", description="Offline evidence store maintenance")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create the local store and evidence directories").set_defaults(func=cmd_init)

    p = sub.add_parser("sync", help="Run one foreground sync")
    p.add_argument("--upload-only", action="store_true")
    p.set_defaults(func=cmd_sync)

    sub.add_parser("background", help="Run the background sync task once").set_defaults(func=cmd_background)
    sub.add_parser("status", help="Show queue, database and storage status").set_defaults(func=cmd_status)
    sub.add_parser("verify-chain", help="Verify the custody hash chain").set_defaults(func=cmd_verify_chain)

    p = sub.add_parser("verify", help="Re-hash one evidence original")
    p.add_argument("entity_type", choices=["photo", "video", "voice_note"])
    p.add_argument("entity_id")
    p.set_defaults(func=cmd_verify)

    p = sub.add_parser("chain", help="Show custody events for one entity")
    p.add_argument("entity_type")
    p.add_argument("entity_id")
    p.set_defaults(func=cmd_chain)

    p = sub.add_parser("export-chain", help="Export the custody trail of a report")
    p.add_argument("report_id")
    p.set_defaults(func=cmd_export_chain)

    p = sub.add_parser("resolve", help="Resolve a report sync conflict")
    p.add_argument("report_id")
    p.add_argument("choice", choices=["keep_local", "keep_server", "dismiss"])
    p.set_defaults(func=cmd_resolve)

    p = sub.add_parser("checklist", help="Show the cached checklist for a standard")
    p.add_argument("standard")
    p.set_defaults(func=cmd_checklist)

    p = sub.add_parser("template", help="Show the cached report template")
    p.add_argument("inspection_type", nargs="?", default=None)
    p.set_defaults(func=cmd_template)

    p = sub.add_parser("cleanup-temp", help="Remove stale files from temp/")
    p.add_argument("--max-age-hours", type=int, default=None)
    p.set_defaults(func=cmd_cleanup_temp)

    return parser


def main(argv=None) -> int:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = build_parser().parse_args(argv)
    ctx = AppContext()
    return args.func(ctx, args)


if __name__ == "__main__":
    sys.exit(main())
