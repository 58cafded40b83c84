"""Test fixtures for the field evidence core tests."""
import io
import os
import sys

import httpx
import pytest
from PIL import Image

# Add parent dir to path so imports work
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from api_client import SyncApiClient
from audit_service import ChainOfCustodyLog
from capture_service import CaptureService
from chunked_upload import ChunkedUploader
from database import create_db_engine, init_db, make_session_factory
from evidence_service import ContentHasher
from fake_server import FakeSyncServer
from file_storage import ImmutableEvidenceStore
from network import NetworkStatus, StaticNetworkMonitor, TransferPolicy
from record_store import SqlRecordStore
from sync_service import SyncEngine

TEST_CHUNK_SIZE = 8 * 1024
CHUNK_THRESHOLD = 32 * 1024


@pytest.fixture
def db_engine(tmp_path):
    """Create a fresh SQLite store per test."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'store.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def TestingSessionLocal(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def db_session(TestingSessionLocal):
    """Create a test database session."""
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def storage(tmp_path):
    s = ImmutableEvidenceStore(str(tmp_path / "files"), thumbnail_width=200, thumbnail_quality=70)
    s.ensure_directories()
    return s


@pytest.fixture
def store(TestingSessionLocal, storage):
    return SqlRecordStore(TestingSessionLocal, storage, max_attempts=3)


@pytest.fixture
def hasher():
    return ContentHasher()


@pytest.fixture
def custody(store):
    return ChainOfCustodyLog(store)


@pytest.fixture
def capture(store, storage, hasher, custody):
    return CaptureService(store, storage, hasher, custody)


@pytest.fixture
def report(store):
    """A local draft report evidence can attach to."""
    return store.create_report(title="Roof inspection", property_address="12 Gully Rd", report_number="R-0001")


@pytest.fixture
def jpeg_bytes():
    """A small JPEG carrying camera make/model in its EXIF block."""
    img = Image.new("RGB", (640, 480), (120, 80, 40))
    exif = Image.Exif()
    exif[271] = "TestCam"
    exif[272] = "Model X"
    buf = io.BytesIO()
    img.save(buf, "JPEG", exif=exif)
    return buf.getvalue()


@pytest.fixture
def fake_server():
    return FakeSyncServer()


@pytest.fixture
def api_client(fake_server):
    """Client talking to the fake server in-process, with no backoff delay."""
    return SyncApiClient(
        base_url="http://testserver",
        transport=httpx.ASGITransport(app=fake_server.app),
        retry_attempts=2,
        retry_base_delay=0,
    )


@pytest.fixture
def network():
    return StaticNetworkMonitor(NetworkStatus(connected=True, connection_type="wifi"))


@pytest.fixture
def uploader(api_client, store):
    return ChunkedUploader(api_client, store, chunk_size=TEST_CHUNK_SIZE, retry_delays=[0, 0])


@pytest.fixture
def engine(store, storage, hasher, custody, api_client, network, uploader):
    return SyncEngine(
        store,
        storage,
        hasher,
        custody,
        api_client,
        network,
        policy=TransferPolicy(wifi_only=True, threshold_mb=5),
        uploader=uploader,
        chunk_threshold=CHUNK_THRESHOLD,
    )
