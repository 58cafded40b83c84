"""In-process stand-in for the evidence sync server, served through httpx.ASGITransport."""
import hashlib
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import FastAPI, File, Form, Request, Response, UploadFile
from fastapi.responses import JSONResponse

from api_client import parse_timestamp

EVIDENCE_COLLECTIONS = ("photos", "videos", "voice-notes")


def ok(data=None, status_code: int = 200) -> JSONResponse:
    return JSONResponse({"success": True, "data": data, "error": None}, status_code=status_code)


def fail(error: str, status_code: int, data=None) -> JSONResponse:
    return JSONResponse({"success": False, "data": data, "error": error}, status_code=status_code)


class FakeSyncServer:
    """Records everything it receives; failures are injected through attributes."""

    def __init__(self):
        self.healthy = True
        self.reports = {}
        self.records = {}  # (collection, id) -> body
        self.evidence = {}  # (collection, id) -> {"content", "metadata", "hash"}
        self.evidence_updates = []
        self.deleted = []
        self.requests = []
        self.failures = {}  # "METHOD /path" -> [status, ...] returned before handling
        self.failures_after = {}  # "METHOD /path" -> [status, ...] returned after the write is kept
        self.hooks = {}  # "METHOD /path" -> callable run while the request is in flight
        self.evidence_writes = 0
        self.idempotent_responses = {}  # Idempotency-Key -> response body
        self.checklists = []  # served raw by bootstrap
        self.templates = []
        self.tus_uploads = {}
        self.tus_fail_from_offset: Optional[int] = None
        self.tus_fail_count = 0  # next N chunk PATCHes answer 503
        self.tus_bytes_received = 0
        self._clock = datetime.now(timezone.utc)
        self.app = self._build_app()

    def now(self) -> datetime:
        # Strictly increasing so every server write gets a distinct version
        self._clock += timedelta(milliseconds=1)
        return self._clock

    def fail_next(self, method: str, path: str, *statuses: int) -> None:
        self.failures.setdefault(f"{method} {path}", []).extend(statuses)

    def fail_after_write(self, method: str, path: str, *statuses: int) -> None:
        """The server keeps the write but the client only sees an error."""
        self.failures_after.setdefault(f"{method} {path}", []).extend(statuses)

    def on_request(self, method: str, path: str, hook) -> None:
        self.hooks[f"{method} {path}"] = hook

    def touch_report(self, report_id: str, **fields) -> dict:
        """Simulate another client editing a report on the server."""
        report = self.reports[report_id]
        report.update(fields)
        report["updatedAt"] = self.now().isoformat()
        return report

    def request_count(self, method: str, prefix: str) -> int:
        return sum(1 for m, p in self.requests if m == method and p.startswith(prefix))

    def _build_app(self) -> FastAPI:
        app = FastAPI()
        server = self

        @app.middleware("http")
        async def record_and_inject(request: Request, call_next):
            key = f"{request.method} {request.url.path}"
            server.requests.append((request.method, request.url.path))
            pending = server.failures.get(key)
            if pending:
                return fail("injected failure", pending.pop(0))
            hook = server.hooks.pop(key, None)
            if hook is not None:
                hook()
            response = await call_next(request)
            after = server.failures_after.get(key)
            if after:
                return fail("injected failure", after.pop(0))
            return response

        @app.get("/api/health")
        async def health():
            if not server.healthy:
                return fail("maintenance", 503)
            return ok({"status": "ok"})

        # Reports

        @app.post("/api/reports")
        async def create_report(request: Request):
            body = await request.json()
            report = {k: v for k, v in body.items() if k != "baseUpdatedAt"}
            report["updatedAt"] = server.now().isoformat()
            server.reports[report["id"]] = report
            return ok(report, 201)

        @app.patch("/api/reports/{report_id}")
        async def update_report(report_id: str, request: Request):
            body = await request.json()
            base = parse_timestamp(body.pop("baseUpdatedAt", None))
            current = server.reports.get(report_id)
            if current is not None:
                server_version = parse_timestamp(current["updatedAt"])
                if base is None or server_version > base:
                    return fail(
                        "Report modified on server",
                        409,
                        {"serverUpdatedAt": current["updatedAt"], "report": current},
                    )
            report = {**(current or {}), **body, "id": report_id}
            report["updatedAt"] = server.now().isoformat()
            server.reports[report_id] = report
            return ok(report)

        @app.get("/api/reports/{report_id}")
        async def get_report(report_id: str):
            if report_id not in server.reports:
                return fail("Not found", 404)
            return ok(server.reports[report_id])

        @app.get("/api/sync/bootstrap")
        async def bootstrap(lastSyncAt: Optional[str] = None):
            since = parse_timestamp(lastSyncAt)
            recent = [
                r for r in server.reports.values()
                if since is None or parse_timestamp(r["updatedAt"]) > since
            ]
            return ok({
                "recentReports": recent,
                "checklists": server.checklists,
                "templates": server.templates,
                "lastSyncAt": server.now().isoformat(),
            })

        # Resumable uploads

        @app.post("/api/upload/video")
        async def tus_create(request: Request):
            upload_id = uuid.uuid4().hex
            metadata = {}
            for pair in filter(None, request.headers.get("Upload-Metadata", "").split(",")):
                key, _, value = pair.partition(" ")
                metadata[key] = value
            server.tus_uploads[upload_id] = {
                "length": int(request.headers["Upload-Length"]),
                "data": bytearray(),
                "metadata": metadata,
            }
            return Response(status_code=201, headers={"Location": f"/api/upload/video/{upload_id}"})

        @app.head("/api/upload/video/{upload_id}")
        async def tus_offset(upload_id: str):
            upload = server.tus_uploads.get(upload_id)
            if upload is None:
                return Response(status_code=404)
            return Response(
                status_code=200,
                headers={"Upload-Offset": str(len(upload["data"])), "Upload-Length": str(upload["length"])},
            )

        @app.patch("/api/upload/video/{upload_id}")
        async def tus_patch(upload_id: str, request: Request):
            upload = server.tus_uploads.get(upload_id)
            if upload is None:
                return Response(status_code=404)
            offset = int(request.headers["Upload-Offset"])
            if offset != len(upload["data"]):
                return Response(status_code=409)
            if server.tus_fail_from_offset is not None and offset >= server.tus_fail_from_offset:
                return Response(status_code=503)
            if server.tus_fail_count > 0:
                server.tus_fail_count -= 1
                return Response(status_code=503)
            chunk = await request.body()
            upload["data"].extend(chunk)
            server.tus_bytes_received += len(chunk)
            return Response(status_code=204, headers={"Upload-Offset": str(len(upload["data"]))})

        # Evidence files

        for collection in EVIDENCE_COLLECTIONS:
            def make_upload(collection=collection):
                async def upload(request: Request, file: UploadFile = File(...), metadata: str = Form(...)):
                    key = request.headers.get("Idempotency-Key")
                    if key and key in server.idempotent_responses:
                        return ok(server.idempotent_responses[key], 201)
                    content = await file.read()
                    meta = json.loads(metadata)
                    digest = hashlib.sha256(content).hexdigest()
                    server.evidence_writes += 1
                    server.evidence[(collection, meta["id"])] = {
                        "content": content,
                        "metadata": meta,
                        "hash": digest,
                    }
                    body = {"id": meta["id"], "url": f"/files/{collection}/{meta['id']}", "hash": digest}
                    if key:
                        server.idempotent_responses[key] = body
                    return ok(body, 201)
                return upload

            app.post(f"/api/{collection}")(make_upload())

        # Records and metadata updates

        @app.post("/api/compliance/{report_id}")
        async def save_compliance(report_id: str, request: Request):
            body = await request.json()
            server.records[("compliance", report_id)] = body
            return ok(body)

        @app.post("/api/{collection}")
        async def create_record(collection: str, request: Request):
            body = await request.json()
            server.records[(collection, body["id"])] = body
            return ok(body, 201)

        @app.patch("/api/{collection}/{record_id}")
        async def update_record(collection: str, record_id: str, request: Request):
            body = await request.json()
            if collection in EVIDENCE_COLLECTIONS:
                server.evidence_updates.append((collection, record_id, body))
            else:
                server.records[(collection, record_id)] = body
            return ok(body)

        @app.delete("/api/{collection}/{record_id}")
        async def delete_entity(collection: str, record_id: str):
            found = (
                server.reports.pop(record_id, None) if collection == "reports"
                else server.records.pop((collection, record_id), None)
                or server.evidence.pop((collection, record_id), None)
            )
            if found is None:
                return fail("Not found", 404)
            server.deleted.append((collection, record_id))
            return ok({"id": record_id})

        return app
