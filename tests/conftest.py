"""
Pytest Configuration and Fixtures
"""

import asyncio
import os
import sys
import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"

from billing.gateway import PurchaseResult, SimulatedLedgerGateway
from metering.checkpoint import CheckpointStore
from metering.clock import Clock, ManualScheduler
from metering.config import EngineConfig
from metering.session import SessionController
from persistence.database import Database, get_database
from persistence.kv import KVStoreError, MemoryKVStore


class FailingKVStore(MemoryKVStore):
    """Memory store whose reads and writes can be switched to fail."""

    def __init__(self):
        super().__init__()
        self.fail_reads = False
        self.fail_writes = False

    def get(self, key):
        if self.fail_reads:
            raise KVStoreError("disk unavailable")
        return super().get(key)

    def set(self, key, value):
        if self.fail_writes:
            raise KVStoreError("disk full")
        super().set(key, value)

    def delete(self, key):
        if self.fail_writes:
            raise KVStoreError("disk full")
        super().delete(key)


class BlockingGateway:
    """Gateway whose purchases stay in flight until release() is called."""

    def __init__(self, result=None):
        self.result = result or PurchaseResult.ok("0xblocked")
        self.calls = []
        self._pending = []

    async def purchase(self, content_id, amount, idempotency_key=None):
        self.calls.append((content_id, amount, idempotency_key))
        waiter = asyncio.get_running_loop().create_future()
        self._pending.append(waiter)
        await waiter
        return self.result

    @property
    def waiting(self):
        return sum(1 for w in self._pending if not w.done())

    def release(self):
        for waiter in self._pending:
            if not waiter.done():
                waiter.set_result(None)


class HangingGateway:
    """Gateway that never answers within a test's patience."""

    def __init__(self):
        self.calls = 0

    async def purchase(self, content_id, amount, idempotency_key=None):
        self.calls += 1
        await asyncio.sleep(10)
        return PurchaseResult.ok("0xlate")


@pytest.fixture
def scheduler():
    """Virtual-time scheduler starting at t=0."""
    return ManualScheduler()


@pytest.fixture
def clock(scheduler):
    return Clock(scheduler)


@pytest.fixture
def kv():
    return FailingKVStore()


@pytest.fixture
def checkpoint_store(kv):
    return CheckpointStore(kv)


@pytest.fixture
def gateway():
    return SimulatedLedgerGateway(viewer="viewer-1")


@pytest.fixture
def blocking_gateway():
    return BlockingGateway()


@pytest.fixture
def make_controller(scheduler, clock, checkpoint_store):
    """Build a SessionController on the manual clock."""

    def _make(gateway=None, config=None, **kwargs):
        kwargs.setdefault("session_id", "session-1")
        kwargs.setdefault("checkpoint_store", checkpoint_store)
        return SessionController(
            gateway=gateway,
            config=config or EngineConfig(),
            clock=clock,
            wall_clock=lambda: scheduler.now_ms,
            **kwargs,
        )

    return _make


@pytest.fixture
def database(tmp_path, monkeypatch):
    """Fresh SQLite database file installed as the singleton."""
    url = f"sqlite:///{tmp_path / 'streammeter.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    Database.reset_instance()
    db = get_database(url)
    yield db
    Database.reset_instance()
