"""
Test configuration for TaxHelp bot-core tests.

sys.path is configured so 'from taxhelp...' resolves whether pytest is run from
the project root or from taxhelp/, installed or not.

Shared fixtures wire the real API client, store, queue and engine to a scripted
in-process backend (tests/fake_backend.py) — no network, no real sleeping.
"""
import sys
from pathlib import Path

_package_dir = Path(__file__).parent.parent        # .../taxhelp/
_project_root = _package_dir.parent                # .../

for _path in (_project_root, _package_dir):
    if str(_path) not in sys.path:
        sys.path.insert(0, str(_path))

import pytest
import pytest_asyncio

from taxhelp.services.api_client import ApiClient, RequestOptions
from taxhelp.store import SessionStore
from taxhelp.sync_queue import SyncQueue
from taxhelp.tests.fake_backend import FakeBackend
from taxhelp.wizard.engine import WizardEngine


class FakeClock:
    """Manually advanced wall clock for TTL tests."""

    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def sleeps() -> list:
    """Backoff delays requested by the API client, in order."""
    return []


@pytest_asyncio.fixture
async def api_client(backend: FakeBackend, sleeps: list):
    async def _record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    async with backend.http_client() as http:
        yield ApiClient(
            http,
            RequestOptions(timeout=1.0, retry_attempts=2, retry_delay=0.5),
            health_timeout=0.5,
            sleep=_record_sleep,
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> SessionStore:
    return SessionStore(ttl_seconds=60 * 60 * 12, clock=clock)


@pytest.fixture
def queue(api_client: ApiClient, store: SessionStore) -> SyncQueue:
    return SyncQueue(api_client, store, interval=0.01)


@pytest.fixture
def engine(api_client: ApiClient, store: SessionStore, queue: SyncQueue) -> WizardEngine:
    return WizardEngine(api_client, store, queue, page_size=8)
