"""
Termination when the store cannot confirm the terminal write.
"""

import asyncio
from datetime import timedelta

import pytest

from branchgate.errors import SessionError
from branchgate.session.manager import SessionManager
from branchgate.session.models import Session, SessionState
from branchgate.store import StorageKeys


@pytest.fixture
def fragile_manager(registry, failing_store, scheduler, events):
    mgr = SessionManager(
        registry,
        failing_store,
        scheduler,
        events=events,
        termination_timeout_ms=50,
        store_timeout_ms=50,
    )
    yield mgr
    mgr.close()


class TestUnconfirmedTermination:
    @pytest.mark.asyncio
    async def test_failed_write_still_ends_session(
        self, fragile_manager, failing_store, make_context, received
    ):
        session = await fragile_manager.create_session(make_context())
        failing_store.fail_writes = True

        with pytest.raises(SessionError, match="terminate_unconfirmed") as exc:
            await fragile_manager.terminate_session()

        assert exc.value.details["session_id"] == session.session_id
        assert fragile_manager.get_current_session() is None
        assert await fragile_manager.validate_session(session.session_id) is False
        assert fragile_manager.pending_reconciliation == [session.session_id]
        assert [e.event for e in received] == ["reconcile"]

    @pytest.mark.asyncio
    async def test_hanging_write_times_out(self, fragile_manager, failing_store, make_context):
        await fragile_manager.create_session(make_context())
        failing_store.hang_writes = True

        with pytest.raises(SessionError, match="terminate_unconfirmed"):
            await fragile_manager.terminate_session()

        assert fragile_manager.get_current_session() is None

    @pytest.mark.asyncio
    async def test_refresh_after_unconfirmed_termination_fails(
        self, fragile_manager, failing_store, make_context
    ):
        session = await fragile_manager.create_session(make_context())
        failing_store.fail_writes = True
        with pytest.raises(SessionError):
            await fragile_manager.terminate_session()

        with pytest.raises(SessionError, match="invalid_or_expired"):
            await fragile_manager.refresh_session(session.session_id)

    @pytest.mark.asyncio
    async def test_reconcile_writes_terminal_record(
        self, fragile_manager, failing_store, make_context
    ):
        await fragile_manager.create_session(make_context())
        failing_store.fail_writes = True
        with pytest.raises(SessionError):
            await fragile_manager.terminate_session()

        assert await fragile_manager.reconcile() == 1

        failing_store.fail_writes = False
        assert await fragile_manager.reconcile() == 0
        assert fragile_manager.pending_reconciliation == []
        stored = Session.from_json(await failing_store.get(StorageKeys().session_data))
        assert stored.state is SessionState.TERMINATED

    @pytest.mark.asyncio
    async def test_new_session_supersedes_pending(
        self, fragile_manager, failing_store, make_context
    ):
        await fragile_manager.create_session(make_context())
        failing_store.fail_writes = True
        with pytest.raises(SessionError):
            await fragile_manager.terminate_session()

        failing_store.fail_writes = False
        fresh = await fragile_manager.create_session(make_context("qr_code"))

        assert fragile_manager.pending_reconciliation == []
        assert fragile_manager.get_current_session().session_id == fresh.session_id

    @pytest.mark.asyncio
    async def test_timer_expiry_with_failing_store(
        self, fragile_manager, failing_store, scheduler, make_context, received
    ):
        session = await fragile_manager.create_session(make_context("customer_kiosk"))
        failing_store.fail_writes = True

        scheduler.set_time(session.expires_at + timedelta(seconds=1))
        assert await fragile_manager.validate_session() is False

        assert [e.event for e in received] == ["reconcile", "expired"]
        assert fragile_manager.pending_reconciliation == [session.session_id]


class TestHangingStore:
    @pytest.mark.asyncio
    async def test_terminate_not_blocked_by_hanging_activity_write(
        self, fragile_manager, failing_store, make_context
    ):
        await fragile_manager.create_session(make_context())
        failing_store.hang_writes = True
        activity = asyncio.create_task(fragile_manager.update_activity())
        await asyncio.sleep(0)

        with pytest.raises(SessionError, match="terminate_unconfirmed"):
            await asyncio.wait_for(fragile_manager.terminate_session(), timeout=1.0)

        assert fragile_manager.get_current_session() is None
        assert fragile_manager.get_session_state() is None
        await asyncio.wait_for(activity, timeout=1.0)

    @pytest.mark.asyncio
    async def test_validate_not_blocked_by_hanging_activity_write(
        self, fragile_manager, failing_store, make_context
    ):
        await fragile_manager.create_session(make_context())
        failing_store.hang_writes = True
        activity = asyncio.create_task(fragile_manager.update_activity())
        await asyncio.sleep(0)

        assert await asyncio.wait_for(fragile_manager.validate_session(), timeout=1.0) is True
        await asyncio.wait_for(activity, timeout=1.0)

    @pytest.mark.asyncio
    async def test_hanging_create_write_raises(
        self, fragile_manager, failing_store, make_context
    ):
        failing_store.hang_writes = True

        with pytest.raises(SessionError):
            await asyncio.wait_for(
                fragile_manager.create_session(make_context()), timeout=1.0
            )

        assert fragile_manager.get_current_session() is None

    @pytest.mark.asyncio
    async def test_hanging_refresh_rolls_back(
        self, fragile_manager, failing_store, scheduler, make_context
    ):
        session = await fragile_manager.create_session(make_context())
        await scheduler.advance(60 * 1000)
        failing_store.hang_writes = True

        with pytest.raises(SessionError):
            await asyncio.wait_for(fragile_manager.refresh_session(), timeout=1.0)

        assert fragile_manager.get_current_session().expires_at == session.expires_at
