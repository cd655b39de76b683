"""Shared pytest fixtures for Art Photo tests.

No test touches the network: the remote API is served by
``httpx.MockTransport`` through :class:`FakeRemoteAPI`, and generated images
land in :class:`FakeArtifactStore`.
"""

from __future__ import annotations

import base64
import shutil
import tempfile
from collections import defaultdict, deque
from pathlib import Path
from typing import Generator

import httpx
import pytest

from artphoto.core.artifact_store import ArtifactStore
from artphoto.core.config import ArtPhotoConfig
from artphoto.core.errors import UploadError
from artphoto.core.history import HistoryLedger
from artphoto.core.orchestrator import TaskOrchestrator
from artphoto.core.remote import RemoteGenerationClient
from artphoto.core.signer import Signer

SUBMIT_ACTION = "JimengT2IV40SubmitTask"
RESULT_ACTION = "JimengT2IV40GetResult"
FIXED_TIMESTAMP = "20240101T000000Z"


def submit_ok(task_id: str = "task-1") -> dict:
    """Successful submit response."""
    return {
        "ResponseMetadata": {"RequestId": "req-1"},
        "Result": {"code": 10000, "data": {"task_id": task_id}, "message": "Success"},
    }


def result_response(status: str, payloads: list[bytes] | None = None) -> dict:
    """Result response with *status* and optional raw image payloads."""
    data: dict = {"status": status}
    if payloads is not None:
        data["binary_data_base64"] = [base64.b64encode(p).decode("ascii") for p in payloads]
    return {
        "ResponseMetadata": {"RequestId": "req-2"},
        "Result": {"code": 10000, "data": data, "message": "Success"},
    }


class FakeRemoteAPI:
    """In-memory stand-in for the remote generation API.

    Responses are queued per action; when a queue is empty the action's
    default response is returned.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._queues: dict[str, deque] = defaultdict(deque)
        self.defaults: dict[str, tuple[int, object]] = {
            SUBMIT_ACTION: (200, submit_ok()),
            RESULT_ACTION: (200, result_response("generating")),
        }

    def queue(self, action: str, body: object, status_code: int = 200) -> None:
        self._queues[action].append((status_code, body))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        action = request.url.params.get("Action", "")
        if self._queues[action]:
            status_code, body = self._queues[action].popleft()
        else:
            status_code, body = self.defaults.get(action, (404, {"error": "unknown action"}))
        if isinstance(body, (dict, list)):
            return httpx.Response(status_code, json=body)
        return httpx.Response(status_code, text=str(body))

    def calls(self, action: str | None = None) -> list[httpx.Request]:
        if action is None:
            return list(self.requests)
        return [r for r in self.requests if r.url.params.get("Action") == action]


class FakeArtifactStore(ArtifactStore):
    """Artifact store that keeps uploads in memory.

    Args:
        fail_on: 1-based indexes of ``put`` calls that raise ``UploadError``.
    """

    def __init__(self, fail_on: set[int] | None = None) -> None:
        self.fail_on = fail_on or set()
        self.calls = 0
        self.uploads: list[tuple[bytes, str]] = []

    def put(self, data: bytes, content_type: str = "image/jpeg") -> str:
        self.calls += 1
        if self.calls in self.fail_on:
            raise UploadError(f"upload {self.calls} rejected")
        self.uploads.append((data, content_type))
        return f"https://cdn.example.com/art-photos/{self.calls}.{content_type.split('/')[-1]}"


class FakeClock:
    """Manually advanced clock; ``sleep`` advances it."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> ArtPhotoConfig:
    """Create a fully configured ArtPhotoConfig that never reads ``.env``.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        ArtPhotoConfig instance for testing
    """
    return ArtPhotoConfig(
        _env_file=None,
        access_key_id="AKTESTKEY",
        secret_access_key="test-secret",
        storage_secret_id="cos-id",
        storage_secret_key="cos-key",
        storage_bucket="art-1250000000",
        storage_region="ap-guangzhou",
        storage_domain="cdn.example.com",
        history_file=temp_dir / "data" / "history.json",
        poll_interval=0.0,
        poll_max_attempts=3,
        poll_deadline=60.0,
    )


@pytest.fixture
def ledger(test_config: ArtPhotoConfig) -> HistoryLedger:
    """History ledger in the temporary directory."""
    return HistoryLedger(test_config.history_file, test_config.history_capacity)


@pytest.fixture
def fake_remote() -> FakeRemoteAPI:
    return FakeRemoteAPI()


@pytest.fixture
def fake_store() -> FakeArtifactStore:
    return FakeArtifactStore()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def http_client(fake_remote: FakeRemoteAPI) -> Generator[httpx.Client, None, None]:
    client = httpx.Client(transport=httpx.MockTransport(fake_remote.handler))
    try:
        yield client
    finally:
        client.close()


@pytest.fixture
def remote_client(test_config: ArtPhotoConfig, http_client: httpx.Client) -> RemoteGenerationClient:
    """Remote client signing with a fixed timestamp over the mock transport."""
    return RemoteGenerationClient(
        test_config,
        Signer.from_config(test_config),
        http_client,
        timestamp_factory=lambda: FIXED_TIMESTAMP,
    )


@pytest.fixture
def orchestrator(
    test_config: ArtPhotoConfig,
    remote_client: RemoteGenerationClient,
    fake_store: FakeArtifactStore,
    ledger: HistoryLedger,
    fake_clock: FakeClock,
) -> TaskOrchestrator:
    """Orchestrator wired to the fake remote API, store and clock."""
    return TaskOrchestrator(
        test_config,
        remote_client,
        fake_store,
        ledger,
        clock=fake_clock,
        sleep=fake_clock.sleep,
    )
