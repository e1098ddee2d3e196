"""
Pytest configuration and fixtures for the upload backend tests.
"""

import os
import shutil
import tempfile
import time
from pathlib import Path
from threading import Event, Lock

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
_TEST_DATA_DIR = tempfile.mkdtemp(prefix="upload_test_data_")
os.environ["UPLOAD_DB_PATH"] = str(Path(_TEST_DATA_DIR) / "uploads.db")
os.environ["UPLOAD_TRANSFER_BACKEND"] = "http"
os.environ["UPLOAD_LOG_LEVEL"] = "DEBUG"

from doc_upload_backend.errors import TransferError
from doc_upload_backend.main import app, get_metadata_store, get_scheduler
from doc_upload_backend.metadata_store import FileMetadataStore
from doc_upload_backend.models import UploadResult
from doc_upload_backend.scheduler import UploadScheduler
from doc_upload_backend.tasks import UploadPayload


class GatedTransferClient:
    """
    In-process transfer client whose uploads block until released.

    - ``auto=True`` lets every upload finish immediately
    - names in ``fail_names`` raise TransferError once released
    - ``progress_at`` is reported before blocking (None to skip)
    - tracks start order and the peak number of concurrent calls
    """

    def __init__(self, auto: bool = False) -> None:
        self.auto = auto
        self.fail_names: set = set()
        self.progress_at = 10
        self.started: list = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._gates: dict = {}
        self._lock = Lock()

    def upload(self, payload, progress):
        gate = Event()
        with self._lock:
            self.started.append(payload.filename)
            self._gates.setdefault(payload.filename, []).append(gate)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.progress_at is not None:
                progress(self.progress_at)
            if not self.auto and not gate.wait(timeout=5):
                raise TimeoutError(f"{payload.filename} was never released")
            if payload.filename in self.fail_names:
                raise TransferError(f"Upload failed: rejected {payload.filename}")
            return UploadResult(
                name=payload.filename,
                url=f"https://files.example.com/{payload.filename}",
                size=payload.size,
                key=payload.filename,
            )
        finally:
            with self._lock:
                self.in_flight -= 1

    def release(self, name: str, timeout: float = 5.0) -> None:
        """Release the oldest blocked attempt for ``name``, waiting for it to start."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._lock:
                for gate in self._gates.get(name, []):
                    if not gate.is_set():
                        gate.set()
                        return
            time.sleep(0.005)
        raise AssertionError(f"No blocked upload for {name}")

    def release_all(self) -> None:
        with self._lock:
            self.auto = True
            for gates in self._gates.values():
                for gate in gates:
                    gate.set()


def payload(name: str, folder_id=None) -> UploadPayload:
    return UploadPayload(filename=name, content=f"contents of {name}".encode(), content_type="text/plain", folder_id=folder_id)


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Remove the test data directory after the session."""
    yield _TEST_DATA_DIR
    shutil.rmtree(_TEST_DATA_DIR, ignore_errors=True)


@pytest.fixture
def make_payload():
    return payload


@pytest.fixture
def wait_until():
    """Poll a predicate until it holds or fail after a timeout."""

    def _wait(predicate, timeout: float = 5.0, interval: float = 0.01):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return
            time.sleep(interval)
        raise AssertionError("Condition not met before timeout")

    return _wait


@pytest.fixture
def gated_client():
    return GatedTransferClient()


@pytest.fixture
def auto_client():
    return GatedTransferClient(auto=True)


@pytest.fixture
def make_scheduler():
    """Build schedulers that are released and shut down after the test."""
    created = []

    def _make(client, max_concurrent: int = 3) -> UploadScheduler:
        scheduler = UploadScheduler(client, max_concurrent=max_concurrent)
        created.append((scheduler, client))
        return scheduler

    yield _make

    for scheduler, client in created:
        client.release_all()
        scheduler.shutdown(wait=True)


@pytest.fixture
def metadata_store(tmp_path):
    return FileMetadataStore(tmp_path / "uploads.db")


@pytest.fixture
def api_scheduler(auto_client, make_scheduler):
    return make_scheduler(auto_client, max_concurrent=2)


@pytest.fixture
def client(api_scheduler, metadata_store):
    """Create a test client with an isolated scheduler and metadata store."""
    app.dependency_overrides[get_scheduler] = lambda: api_scheduler
    app.dependency_overrides[get_metadata_store] = lambda: metadata_store
    yield TestClient(app)
    app.dependency_overrides.clear()
