"""Tests for resumable chunked uploads."""
import asyncio
import base64
import os

import pytest

from chunked_upload import ChunkedUploader, encode_metadata, should_use_chunked_upload
from errors import ChunkedUploadInterrupted

DIGEST = "f" * 64
TEST_CHUNK_SIZE = 8 * 1024  # chunk size of the uploader fixture


@pytest.fixture
def video_file(tmp_path):
    data = os.urandom(5 * TEST_CHUNK_SIZE + 123)
    path = tmp_path / "orig_v1.mp4"
    path.write_bytes(data)
    return str(path), data


def _upload(uploader, path):
    return asyncio.run(uploader.upload("video", "v1", path, {"filename": "orig_v1.mp4"}, DIGEST))


def _server_data(fake_server):
    (upload,) = fake_server.tus_uploads.values()
    return bytes(upload["data"])


def test_threshold():
    assert should_use_chunked_upload(10 * 1024 * 1024) is True
    assert should_use_chunked_upload(10 * 1024 * 1024 - 1) is False
    assert should_use_chunked_upload(100, threshold=50) is True


def test_metadata_encoding():
    header = encode_metadata({"filename": "orig_v1.mp4", "reportId": "r1", "skip": None})
    pairs = dict(pair.split(" ") for pair in header.split(","))
    assert set(pairs) == {"filename", "reportId"}
    assert base64.b64decode(pairs["filename"]).decode() == "orig_v1.mp4"


def test_full_upload(uploader, store, fake_server, video_file):
    path, data = video_file

    result = _upload(uploader, path)

    assert result.success is True
    assert result.bytes_uploaded == len(data)
    assert result.resumed_from == 0
    assert _server_data(fake_server) == data
    assert fake_server.request_count("PATCH", "/api/upload/video/") == 6
    # Completed uploads leave no checkpoint behind
    assert store.get_upload_session("video", "v1") is None


def test_interrupted_upload_resumes_from_acknowledged_offset(uploader, store, fake_server, video_file):
    """The connection drops after two chunks; the next attempt sends only the rest."""
    path, data = video_file
    fake_server.tus_fail_from_offset = 2 * TEST_CHUNK_SIZE

    with pytest.raises(ChunkedUploadInterrupted) as exc_info:
        _upload(uploader, path)

    assert exc_info.value.offset == 2 * TEST_CHUNK_SIZE
    session = store.get_upload_session("video", "v1")
    assert session.offset == 2 * TEST_CHUNK_SIZE
    assert session.total_size == len(data)

    fake_server.tus_fail_from_offset = None
    received_before = fake_server.tus_bytes_received

    result = _upload(uploader, path)

    assert result.success is True
    assert result.resumed_from == 2 * TEST_CHUNK_SIZE
    assert fake_server.tus_bytes_received - received_before == len(data) - 2 * TEST_CHUNK_SIZE
    assert fake_server.request_count("POST", "/api/upload/video") == 1
    assert _server_data(fake_server) == data
    assert store.get_upload_session("video", "v1") is None


def test_expired_session_starts_over(uploader, store, fake_server, video_file):
    path, data = video_file
    store.save_upload_session("video", "v1", "http://testserver/api/upload/video/gone", 1024, len(data), DIGEST)

    result = _upload(uploader, path)

    assert result.success is True
    assert result.resumed_from == 0
    assert _server_data(fake_server) == data


def test_changed_file_does_not_resume(uploader, store, fake_server, video_file):
    """A checkpoint for a different hash is ignored rather than appended to."""
    path, data = video_file
    store.save_upload_session("video", "v1", "http://testserver/api/upload/video/old", 1024, len(data), "0" * 64)

    result = _upload(uploader, path)

    assert result.resumed_from == 0
    assert fake_server.request_count("HEAD", "/api/upload/video/") == 0


def test_transient_chunk_failure_is_retried(api_client, store, fake_server, video_file):
    path, data = video_file
    uploader = ChunkedUploader(api_client, store, chunk_size=TEST_CHUNK_SIZE, retry_delays=[0, 0])
    fake_server.tus_fail_count = 1

    result = _upload(uploader, path)

    assert result.success is True
    assert _server_data(fake_server) == data
    # One failed PATCH, then an offset check before the resend
    assert fake_server.request_count("PATCH", "/api/upload/video/") == 7
    assert fake_server.request_count("HEAD", "/api/upload/video/") == 1


def test_creation_failure_raises_interrupted(uploader, fake_server, video_file):
    path, _ = video_file
    fake_server.fail_next("POST", "/api/upload/video", 503, 503, 503)

    with pytest.raises(ChunkedUploadInterrupted) as exc_info:
        _upload(uploader, path)
    assert exc_info.value.offset == 0
