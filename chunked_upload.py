"""Resumable chunked uploads for large evidence files (tus 1.0 semantics).

The upload URL and last acknowledged offset are checkpointed in the local
store after every chunk. A later attempt asks the server for its offset
with HEAD and continues from there instead of starting again at byte 0.
"""
import base64
import logging
import os
from dataclasses import dataclass
from typing import Callable, List, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt

from api_client import SyncApiClient
from config import settings
from errors import ChunkedUploadInterrupted, SyncApiError

logger = logging.getLogger(__name__)

TUS_VERSION = "1.0.0"
TUS_CONTENT_TYPE = "application/offset+octet-stream"
# 409: offset mismatch, 423: upload locked by a previous request
RETRYABLE_STATUSES = {409, 423, 429}


@dataclass
class ChunkedUploadResult:
    success: bool
    url: Optional[str]
    bytes_uploaded: int
    resumed_from: int = 0
    error: Optional[str] = None


def encode_metadata(metadata: dict) -> str:
    """Upload-Metadata header: comma separated 'key base64(value)' pairs."""
    pairs = []
    for key, value in metadata.items():
        if value is None:
            continue
        encoded = base64.b64encode(str(value).encode("utf-8")).decode("ascii")
        pairs.append(f"{key} {encoded}")
    return ",".join(pairs)


def should_use_chunked_upload(file_size: int, threshold: Optional[int] = None) -> bool:
    return file_size >= (threshold or settings.CHUNKED_UPLOAD_THRESHOLD)


def _retryable(exc: BaseException) -> bool:
    if not isinstance(exc, SyncApiError):
        return False
    return exc.status_code is None or exc.status_code >= 500 or exc.status_code in RETRYABLE_STATUSES


def _check(response: httpx.Response, what: str) -> None:
    if response.status_code >= 400:
        raise SyncApiError(f"{what} returned {response.status_code}", status_code=response.status_code)


class ChunkedUploader:
    def __init__(
        self,
        api: SyncApiClient,
        store,
        endpoint: Optional[str] = None,
        chunk_size: Optional[int] = None,
        retry_delays: Optional[List[float]] = None,
    ):
        self.api = api
        self.store = store
        self.endpoint = endpoint or settings.TUS_ENDPOINT
        self.chunk_size = chunk_size or settings.CHUNK_SIZE
        self.retry_delays = list(settings.UPLOAD_RETRY_DELAYS if retry_delays is None else retry_delays)

    def _retrying(self) -> AsyncRetrying:
        delays = self.retry_delays or [0]
        return AsyncRetrying(
            retry=retry_if_exception(_retryable),
            stop=stop_after_attempt(len(self.retry_delays) + 1),
            wait=lambda state: delays[min(state.attempt_number - 1, len(delays) - 1)],
            reraise=True,
        )

    async def _call(self, coro_factory, description: str):
        async for attempt in self._retrying():
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(f"Retrying {description} (attempt {attempt.retry_state.attempt_number})")
                try:
                    return await coro_factory(attempt.retry_state.attempt_number)
                except httpx.TransportError as e:
                    raise SyncApiError(f"{description} failed: {e}") from e

    async def _create(self, client: httpx.AsyncClient, total: int, metadata: dict) -> str:
        response = await client.post(
            self.endpoint,
            headers={
                "Tus-Resumable": TUS_VERSION,
                "Upload-Length": str(total),
                "Upload-Metadata": encode_metadata(metadata),
            },
        )
        _check(response, "upload creation")
        location = response.headers.get("Location")
        if not location:
            raise SyncApiError("upload creation returned no Location", status_code=response.status_code)
        return str(response.url.join(location))

    async def _server_offset(self, client: httpx.AsyncClient, upload_url: str) -> int:
        response = await client.head(upload_url, headers={"Tus-Resumable": TUS_VERSION})
        _check(response, "offset discovery")
        return int(response.headers["Upload-Offset"])

    async def _patch(self, client: httpx.AsyncClient, upload_url: str, offset: int, chunk: bytes) -> int:
        response = await client.patch(
            upload_url,
            content=chunk,
            headers={
                "Tus-Resumable": TUS_VERSION,
                "Upload-Offset": str(offset),
                "Content-Type": TUS_CONTENT_TYPE,
            },
        )
        _check(response, "chunk upload")
        return int(response.headers.get("Upload-Offset", offset + len(chunk)))

    async def upload(
        self,
        entity_type: str,
        entity_id: str,
        file_path: str,
        metadata: dict,
        original_hash: str,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> ChunkedUploadResult:
        """Upload file_path, resuming a checkpointed session when one exists.

        Raises ChunkedUploadInterrupted when retries are exhausted; the
        checkpoint is kept so the next call resumes.
        """
        total = os.path.getsize(file_path)
        session = self.store.get_upload_session(entity_type, entity_id)
        upload_url = None
        offset = 0
        resumed_from = 0

        async with self.api.client(settings.UPLOAD_TIMEOUT) as client:
            if session is not None and session.total_size == total and session.original_hash == original_hash:
                try:
                    offset = await self._call(
                        lambda _: self._server_offset(client, session.upload_url), "offset discovery"
                    )
                    upload_url = session.upload_url
                    resumed_from = offset
                    logger.info(f"Resuming upload of {entity_type} {entity_id} at byte {offset}/{total}")
                except SyncApiError as e:
                    if e.status_code in (404, 410):
                        logger.warning(f"Upload session expired for {entity_type} {entity_id}, starting over")
                        self.store.clear_upload_session(entity_type, entity_id)
                    else:
                        raise ChunkedUploadInterrupted(
                            f"Could not resume upload: {e}", offset=session.offset, upload_url=session.upload_url
                        ) from e

            if upload_url is None:
                try:
                    upload_url = await self._call(
                        lambda _: self._create(client, total, metadata), "upload creation"
                    )
                except SyncApiError as e:
                    raise ChunkedUploadInterrupted(f"Could not create upload: {e}", offset=0) from e
                self.store.save_upload_session(entity_type, entity_id, upload_url, 0, total, original_hash)

            with open(file_path, "rb") as f:
                while offset < total:
                    async def _send(attempt_number: int, start: int = offset) -> int:
                        if attempt_number > 1:
                            # Resync with the server before re-sending
                            start = await self._server_offset(client, upload_url)
                        f.seek(start)
                        chunk = f.read(self.chunk_size)
                        return await self._patch(client, upload_url, start, chunk)

                    try:
                        offset = await self._call(_send, f"chunk at {offset}")
                    except SyncApiError as e:
                        logger.warning(
                            f"Upload of {entity_type} {entity_id} interrupted at byte {offset}/{total}: {e}"
                        )
                        raise ChunkedUploadInterrupted(
                            f"Upload interrupted at byte {offset}: {e}", offset=offset, upload_url=upload_url
                        ) from e

                    self.store.save_upload_session(entity_type, entity_id, upload_url, offset, total, original_hash)
                    if on_progress:
                        on_progress(offset, total)

        self.store.clear_upload_session(entity_type, entity_id)
        logger.info(f"Chunked upload complete for {entity_type} {entity_id}: {upload_url}")
        return ChunkedUploadResult(success=True, url=upload_url, bytes_uploaded=total, resumed_from=resumed_from)
