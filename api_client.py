"""HTTP client for the evidence sync server"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from config import settings
from errors import ConflictDetected, SyncApiError
from schemas import BootstrapResponse, ReportSummary, UploadReceipt

logger = logging.getLogger(__name__)

COLLECTIONS = {
    "report": "reports",
    "defect": "defects",
    "roof_element": "roof-elements",
    "compliance": "compliance",
    "photo": "photos",
    "video": "videos",
    "voice_note": "voice-notes",
}


def parse_timestamp(value) -> Optional[datetime]:
    """ISO-8601 string to naive UTC, the form the local store keeps."""
    if value is None or isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt is not None and dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, SyncApiError) and not isinstance(exc, ConflictDetected) and exc.transient


class SyncApiClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        auth_token: Optional[str] = None,
        timeout: Optional[float] = None,
        retry_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
    ):
        self.base_url = (base_url or settings.API_URL).rstrip("/")
        self.transport = transport
        self.auth_token = auth_token
        self.timeout = timeout or settings.API_TIMEOUT
        self.retry_attempts = retry_attempts or settings.REQUEST_RETRY_ATTEMPTS
        self.retry_base_delay = settings.REQUEST_RETRY_BASE_DELAY if retry_base_delay is None else retry_base_delay

    def client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or self.timeout,
            headers=headers,
            transport=self.transport,
        )

    async def with_retry(self, operation, description: str = "request"):
        """Run an async callable with exponential backoff on transient failures."""
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_base_delay, max=30),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(f"Retrying {description} (attempt {attempt.retry_state.attempt_number})")
                return await operation()

    async def _request(self, method: str, path: str, timeout: Optional[float] = None, **kwargs) -> Any:
        try:
            async with self.client(timeout) as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise SyncApiError(f"{method} {path} timed out: {e}") from e
        except httpx.TransportError as e:
            raise SyncApiError(f"{method} {path} failed: {e}") from e
        return self._unwrap(method, path, response)

    def _unwrap(self, method: str, path: str, response: httpx.Response) -> Any:
        try:
            body = response.json() if response.content else {}
        except json.JSONDecodeError:
            body = {}

        if response.status_code == 409:
            data = body.get("data") or {}
            raise ConflictDetected(
                f"{method} {path} rejected: modified on server",
                server_updated_at=parse_timestamp(data.get("serverUpdatedAt")),
                server_data=data.get("report"),
            )
        if response.status_code >= 400:
            detail = body.get("error") or body.get("detail") or response.reason_phrase
            raise SyncApiError(f"{method} {path} returned {response.status_code}: {detail}",
                               status_code=response.status_code)
        if isinstance(body, dict) and body.get("success") is False:
            raise SyncApiError(f"{method} {path} failed: {body.get('error')}", status_code=response.status_code)
        return body.get("data") if isinstance(body, dict) else body

    # Health

    async def check_health(self, timeout: Optional[float] = None) -> bool:
        """Lightweight probe; timeouts and errors mean unreachable."""
        try:
            async with self.client(timeout or settings.HEALTH_CHECK_TIMEOUT) as client:
                response = await client.get("/api/health")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.info(f"Health check failed: {e}")
            return False

    # Reports

    async def create_report(self, payload: dict) -> dict:
        return await self.with_retry(
            lambda: self._request("POST", "/api/reports", json=payload), "create report"
        )

    async def update_report(self, report_id: str, payload: dict, base_updated_at: Optional[datetime]) -> dict:
        """PATCH with the server version this edit was based on; 409 means conflict."""
        body = {**payload, "baseUpdatedAt": base_updated_at.isoformat() if base_updated_at else None}
        return await self.with_retry(
            lambda: self._request("PATCH", f"/api/reports/{report_id}", json=body), "update report"
        )

    async def fetch_report(self, report_id: str) -> ReportSummary:
        data = await self.with_retry(lambda: self._request("GET", f"/api/reports/{report_id}"), "fetch report")
        return ReportSummary.model_validate(data)

    # Defects, roof elements, compliance and evidence metadata

    async def push_record(self, entity_type: str, operation: str, record_id: str, payload: dict) -> Any:
        collection = COLLECTIONS[entity_type]
        if entity_type == "compliance":
            # One assessment per report, addressed by report id
            path = f"/api/compliance/{payload.get('report_id')}"
            method = "POST"
        elif operation == "create":
            path, method = f"/api/{collection}", "POST"
        else:
            path, method = f"/api/{collection}/{record_id}", "PATCH"
        return await self.with_retry(
            lambda: self._request(method, path, json=payload), f"{operation} {entity_type}"
        )

    async def delete_entity(self, entity_type: str, entity_id: str, payload: Optional[dict] = None) -> Any:
        path = f"/api/{COLLECTIONS[entity_type]}/{entity_id}"

        async def _delete():
            try:
                return await self._request("DELETE", path, json=payload or {})
            except SyncApiError as e:
                if e.status_code == 404:
                    # Already gone on the server
                    return None
                raise

        return await self.with_retry(_delete, f"delete {entity_type}")

    # Evidence files

    async def upload_evidence(self, entity_type: str, file_path: str, filename: str,
                              mime_type: str, metadata: dict) -> UploadReceipt:
        """Direct multipart upload for files below the chunking threshold.

        Every attempt carries the same Idempotency-Key, so a retry after a
        lost response cannot store the file twice.
        """
        path = f"/api/{COLLECTIONS[entity_type]}"
        idempotency_key = f"{entity_type}:{metadata.get('id')}:{metadata.get('originalHash')}"

        async def _upload():
            with open(file_path, "rb") as f:
                return await self._request(
                    "POST",
                    path,
                    timeout=settings.UPLOAD_TIMEOUT,
                    files={"file": (filename, f, mime_type)},
                    data={"metadata": json.dumps(metadata)},
                    headers={"Idempotency-Key": idempotency_key},
                )

        data = await self.with_retry(_upload, f"upload {entity_type}")
        return UploadReceipt.model_validate(data)

    # Download

    async def fetch_bootstrap(self, last_sync_at: Optional[datetime] = None) -> BootstrapResponse:
        params = {"lastSyncAt": last_sync_at.isoformat()} if last_sync_at else {}
        data = await self.with_retry(
            lambda: self._request("GET", "/api/sync/bootstrap", params=params), "bootstrap"
        )
        return BootstrapResponse.model_validate(data or {})
