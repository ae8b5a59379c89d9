"""Shared pytest fixtures and configuration."""

import asyncio

import pytest

from branchgate.core.scheduler import VirtualScheduler
from branchgate.session.events import SessionEventBus
from branchgate.session.manager import SessionManager
from branchgate.session.models import BranchContext, DeviceInfo
from branchgate.session.policy import load_policy_registry
from branchgate.store.memory import MemoryStore


class FailingStore(MemoryStore):
    """MemoryStore whose writes can be switched to fail or hang."""

    def __init__(self):
        super().__init__()
        self.fail_writes = False
        self.hang_writes = False

    async def set(self, key, value):
        if self.hang_writes:
            await asyncio.Event().wait()
        if self.fail_writes:
            raise OSError("disk unavailable")
        await super().set(key, value)


@pytest.fixture
def registry():
    return load_policy_registry()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def scheduler():
    return VirtualScheduler()


@pytest.fixture
def events():
    return SessionEventBus()


@pytest.fixture
def received(events):
    """List collecting every published SessionEvent."""
    collected = []
    events.subscribe(collected.append)
    return collected


@pytest.fixture
def device():
    return DeviceInfo(device_id="dev-1", device_type="tablet", platform="android")


@pytest.fixture
def make_context():
    def _make(access_method="branch_tablet", **extra):
        return BranchContext(
            branch_id="BR-001",
            branch_name="Downtown",
            branch_code="DT01",
            access_method=access_method,
            **extra,
        )

    return _make


@pytest.fixture
def manager(registry, store, scheduler, events, device):
    mgr = SessionManager(
        registry=registry,
        store=store,
        scheduler=scheduler,
        events=events,
        device_info_provider=lambda: device,
    )
    yield mgr
    mgr.close()


@pytest.fixture
def failing_store():
    return FailingStore()
