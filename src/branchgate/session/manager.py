"""
Session lifecycle manager.

Creates, validates, refreshes and terminates the single current session of one
manager instance under the policy of its access method. Three timers run per
session generation:

- expiration: fires at expires_at and ends the session as "expired"
- warning: fires warning_lead_time before expiry and marks it "warning"
- inactivity: fires once the idle window may have been exceeded and ends the
  session as "inactive"

Timers are only an optimisation. validate_session re-derives expiry and
idleness from the clock on every call, so a delayed or lost timer can never
keep a session alive. Timer callbacks and explicit calls go through the same
transition code, and every callback checks that its generation is still live
and re-reads the session before acting.
"""

import asyncio
import math
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from branchgate.core.scheduler import AsyncioScheduler, Scheduler, TimerHandle
from branchgate.errors import ConfigError, SessionError, StoreError
from branchgate.logger import get_logger
from branchgate.session.events import SessionEventBus
from branchgate.session.models import (
    BranchContext,
    DeviceInfo,
    Session,
    SessionEvent,
    SessionState,
    SessionTimeoutWarning,
    TerminationReason,
)
from branchgate.session.policy import PolicyRegistry, SessionPolicy, load_policy_registry
from branchgate.store import KeyValueStore, StorageKeys, create_store

logger = get_logger(__name__)

MIN_ENTROPY_BYTES = 16
VALID_STATES = (SessionState.ACTIVE, SessionState.WARNING)


class TimerKind(str, Enum):
    EXPIRATION = "expiration"
    WARNING = "warning"
    INACTIVITY = "inactivity"


def _ms(value: int) -> timedelta:
    return timedelta(milliseconds=value)


def _ms_until(now: datetime, moment: datetime) -> int:
    """Milliseconds from now until moment, rounded up, never negative."""
    return max(0, math.ceil((moment - now) / timedelta(milliseconds=1)))


def _short(session_id: str) -> str:
    return session_id[:8]


class SessionManager:
    """
    Owns one "current session" slot.

    Instances are independent: the HTTP server keeps one per process on
    app.state, tests create one per case with a VirtualScheduler.
    """

    def __init__(
        self,
        registry: PolicyRegistry,
        store: KeyValueStore,
        scheduler: Scheduler,
        events: Optional[SessionEventBus] = None,
        namespace: Optional[str] = None,
        device_info_provider: Optional[Callable[[], DeviceInfo]] = None,
        termination_timeout_ms: int = 2000,
        store_timeout_ms: int = 2000,
        session_id_bytes: int = 16,
        session_token_bytes: int = 32,
    ):
        if min(session_id_bytes, session_token_bytes) < MIN_ENTROPY_BYTES:
            raise ConfigError(
                f"Session identifiers need at least {MIN_ENTROPY_BYTES} random bytes"
            )
        if termination_timeout_ms <= 0 or store_timeout_ms <= 0:
            raise ConfigError("Store timeouts must be positive")

        self.registry = registry
        self.store = store
        self.scheduler = scheduler
        self.events = events or SessionEventBus()
        self.keys = StorageKeys(namespace)
        self.termination_timeout_ms = termination_timeout_ms
        self.store_timeout_ms = store_timeout_ms
        self._device_info_provider = device_info_provider or DeviceInfo.unknown
        self._session_id_bytes = session_id_bytes
        self._session_token_bytes = session_token_bytes

        self._current: Optional[Session] = None
        self._timers: Dict[TimerKind, TimerHandle] = {}
        self._generation = 0
        self._pending_reconciliation: Dict[str, Session] = {}
        self._outbox: List[SessionEvent] = []
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        config,
        *,
        registry: Optional[PolicyRegistry] = None,
        store: Optional[KeyValueStore] = None,
        scheduler: Optional[Scheduler] = None,
        events: Optional[SessionEventBus] = None,
        device_info_provider: Optional[Callable[[], DeviceInfo]] = None,
    ) -> "SessionManager":
        """Build a manager from a Config, loading the policy table and store it names."""
        return cls(
            registry=registry or load_policy_registry(config.policy_file),
            store=store or create_store(config),
            scheduler=scheduler or AsyncioScheduler(),
            events=events,
            namespace=config.namespace,
            device_info_provider=device_info_provider,
            termination_timeout_ms=config.termination_timeout_ms,
            store_timeout_ms=config.store_timeout_ms,
            session_id_bytes=config.session_id_bytes,
            session_token_bytes=config.session_token_bytes,
        )

    # -- Public operations ---------------------------------------------------

    async def create_session(
        self,
        branch_context: Union[BranchContext, Mapping[str, Any]],
        device_info: Optional[Union[DeviceInfo, Mapping[str, Any]]] = None,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session:
        """
        Open a new session for the branch context's access method.

        A session already occupying the current slot is terminated first.

        Raises:
            SessionError: If the context is missing or invalid, the access
                method has no policy, or the session cannot be persisted.
        """
        if branch_context is None:
            raise SessionError("branch_context_required")

        try:
            context = (
                branch_context
                if isinstance(branch_context, BranchContext)
                else BranchContext.model_validate(branch_context)
            )
            policy = self.registry.policy_for(context.access_method)
            device = device_info if device_info is not None else self._device_info_provider()
            if not isinstance(device, DeviceInfo):
                device = DeviceInfo.model_validate(device)
        except (ConfigError, ValidationError) as e:
            logger.error(f"Failed to create session: {e}")
            raise SessionError("Failed to create session", cause=e) from e
        except Exception as e:
            logger.error(f"Device info provider failed: {e}")
            raise SessionError("Failed to create session", cause=e) from e

        async with self._transaction():
            if self._current is not None:
                logger.info(f"Replacing current session {_short(self._current.session_id)}")
                try:
                    await self._terminate(self._current, TerminationReason.MANUAL)
                except SessionError as e:
                    logger.warning(f"Previous session ended without a confirmed write: {e}")

            now = self.scheduler.now()
            session = Session(
                session_id=secrets.token_hex(self._session_id_bytes),
                session_token=secrets.token_urlsafe(self._session_token_bytes),
                access_method=context.access_method,
                branch_context=context,
                device_info=device,
                ip_address=ip_address,
                created_at=now,
                expires_at=now + _ms(policy.session_duration),
                last_activity=now,
                state=SessionState.ACTIVE,
                user_id=user_id,
                transaction_count=0,
                is_active=True,
            )

            try:
                await self._persist(session)
            except StoreError as e:
                logger.error(f"Failed to persist new session: {e}")
                raise SessionError("Failed to create session", cause=e) from e

            # The slot now holds this record, so older unconfirmed terminations are moot.
            self._pending_reconciliation.clear()
            self._current = session
            self._arm_all(session, policy)

            logger.info(
                f"Session created: {_short(session.session_id)} "
                f"method={session.access_method} expires_at={session.expires_at.isoformat()}"
            )
            return session.snapshot()

    async def validate_session(self, session_id: Optional[str] = None) -> bool:
        """
        Return True if the session is usable right now. Never raises.

        Expiry and idleness are re-derived from the clock, so an overdue
        session is ended here even if its timer never fired.
        """
        try:
            async with self._transaction():
                session = await self._resolve(session_id)
                if session is None:
                    return False
                return await self._check_validity(session)
        except Exception as e:
            logger.error(f"Session validation failed: {e}")
            return False

    async def refresh_session(self, session_id: Optional[str] = None) -> Session:
        """
        Extend a valid session by a full session duration and reset its timers.

        Raises:
            SessionError: "invalid_or_expired" if the session is not currently
                valid, or a persistence failure.
        """
        async with self._transaction():
            try:
                session = await self._resolve(session_id)
                valid = session is not None and await self._check_validity(session)
            except Exception as e:
                raise SessionError("invalid_or_expired", cause=e) from e
            if not valid:
                raise SessionError("invalid_or_expired", details={"session_id": session_id})

            policy = self.registry.policy_for(session.access_method)
            now = self.scheduler.now()
            previous = (session.expires_at, session.last_activity, session.state)

            session.expires_at = now + _ms(policy.session_duration)
            session.last_activity = now
            session.state = SessionState.ACTIVE

            try:
                await self._persist(session)
            except StoreError as e:
                session.expires_at, session.last_activity, session.state = previous
                logger.error(f"Failed to persist refreshed session: {e}")
                raise SessionError("Failed to refresh session", cause=e) from e

            self._current = session
            self._arm_all(session, policy)

            logger.info(
                f"Session refreshed: {_short(session.session_id)} "
                f"expires_at={session.expires_at.isoformat()}"
            )
            return session.snapshot()

    async def terminate_session(
        self,
        session_id: Optional[str] = None,
        reason: Union[TerminationReason, str] = TerminationReason.MANUAL,
    ) -> None:
        """
        End a session. Idempotent: a missing or already-ended session is a no-op.

        The session is ended in memory before the durable write. If that write
        is not confirmed within termination_timeout_ms the session stays ended,
        is queued for reconcile(), and SessionError is raised.
        """
        try:
            reason = TerminationReason(reason)
        except ValueError as e:
            raise SessionError(f"Unknown termination reason '{reason}'", cause=e) from e

        async with self._transaction():
            try:
                session = await self._resolve(session_id)
            except StoreError as e:
                raise SessionError("Failed to terminate session", cause=e) from e

            if session is None:
                logger.warning("No session to terminate")
                return

            await self._terminate(session, reason)

    async def update_activity(self) -> None:
        """Record user activity: resets only the inactivity window."""
        async with self._transaction():
            session = self._current
            if session is None or not await self._check_validity(session):
                return

            session.last_activity = self.scheduler.now()
            try:
                await self._persist(session)
            except StoreError as e:
                logger.warning(f"Failed to persist activity for {_short(session.session_id)}: {e}")

            self._arm_inactivity(session, self.registry.policy_for(session.access_method))

    async def increment_transaction_count(self) -> None:
        """Count a completed transaction; single-use channels end the session here."""
        async with self._transaction():
            session = self._current
            if session is None or not await self._check_validity(session):
                return

            session.transaction_count += 1
            try:
                await self._persist(session)
            except StoreError as e:
                logger.warning(
                    f"Failed to persist transaction count for {_short(session.session_id)}: {e}"
                )

            policy = self.registry.policy_for(session.access_method)
            if policy.auto_terminate_after_transaction:
                logger.info("Auto-terminating session after transaction")
                await self._terminate(session, TerminationReason.TRANSACTION_COMPLETE)

    def requires_reauth(self) -> bool:
        """True once the session is older than its policy's reauthentication interval."""
        session = self._current
        if session is None:
            return False
        policy = self.registry.policy_for(session.access_method)
        if not policy.require_reauth or policy.reauth_interval is None:
            return False
        return self.scheduler.now() - session.created_at >= _ms(policy.reauth_interval)

    async def restore_session(self) -> Optional[Session]:
        """
        Adopt the persisted session if it is still valid.

        An invalid, ended or unreadable record is removed from the store.
        """
        async with self._transaction():
            try:
                stored = await self._load_stored()
            except StoreError as e:
                logger.error(f"Failed to restore session: {e}")
                if e.details.get("malformed"):
                    await self._clear_stored()
                return None

            if stored is None:
                return None

            if self._current is not None and self._current.session_id == stored.session_id:
                return self._current.snapshot()

            try:
                valid = await self._check_validity(stored)
            except Exception as e:
                logger.error(f"Failed to validate stored session: {e}")
                valid = False

            if not valid:
                await self._clear_stored()
                return None

            self._current = stored
            self._arm_all(stored, self.registry.policy_for(stored.access_method))
            logger.info(f"Session restored: {_short(stored.session_id)}")
            return stored.snapshot()

    def get_remaining_time(self) -> int:
        """Milliseconds until the current session expires, 0 if there is none."""
        if self._current is None:
            return 0
        remaining = self._current.expires_at - self.scheduler.now()
        return max(0, int(remaining / timedelta(milliseconds=1)))

    def get_current_session(self) -> Optional[Session]:
        return self._current.snapshot() if self._current is not None else None

    def get_session_state(self) -> Optional[SessionState]:
        return self._current.state if self._current is not None else None

    def get_timeout_warning(self) -> Optional[SessionTimeoutWarning]:
        """Data for an "expiring soon" prompt, or None without a current session."""
        session = self._current
        if session is None:
            return None
        remaining = self.get_remaining_time()
        return SessionTimeoutWarning(
            session_id=session.session_id,
            time_remaining=remaining,
            expires_at=session.expires_at,
            can_extend=not session.is_terminal and remaining > 0,
        )

    @property
    def pending_reconciliation(self) -> List[str]:
        """Ids of ended sessions whose terminal record is not yet durable."""
        return list(self._pending_reconciliation)

    async def reconcile(self) -> int:
        """Retry unconfirmed terminal writes. Returns how many are still pending."""
        async with self._transaction():
            for session_id, session in list(self._pending_reconciliation.items()):
                if self._current is not None and self._current.session_id != session_id:
                    # A newer record already replaced it in the store.
                    del self._pending_reconciliation[session_id]
                    continue
                try:
                    await self._persist_bounded(session)
                except StoreError as e:
                    logger.warning(f"Reconciliation for {_short(session_id)} failed: {e}")
                    continue
                del self._pending_reconciliation[session_id]
                logger.info(f"Reconciled terminal record for {_short(session_id)}")
            return len(self._pending_reconciliation)

    def close(self) -> None:
        """Disarm all timers without changing session state (process shutdown)."""
        self._cancel_timers()
        self._generation += 1

    # -- Transitions -----------------------------------------------------------

    async def _check_validity(self, session: Session) -> bool:
        """Shared validity rule. Ends an overdue session as a side effect."""
        if not session.is_active or session.state not in VALID_STATES:
            return False

        policy = self.registry.policy_for(session.access_method)
        now = self.scheduler.now()

        if self._is_expired(session, now):
            await self._end_session(session, TerminationReason.EXPIRED)
            return False

        if self._is_idle(session, policy, now):
            await self._end_session(session, TerminationReason.INACTIVE)
            return False

        return True

    @staticmethod
    def _is_expired(session: Session, now: datetime) -> bool:
        return now >= session.expires_at

    @staticmethod
    def _is_idle(session: Session, policy: SessionPolicy, now: datetime) -> bool:
        return now - session.last_activity > _ms(policy.inactivity_timeout)

    async def _end_session(self, session: Session, reason: TerminationReason) -> None:
        """Time-based end (expired/inactive): terminate, then notify listeners."""
        try:
            await self._terminate(session, reason)
        except SessionError as e:
            logger.error(f"Session {_short(session.session_id)} {reason.value} without a confirmed write: {e}")
        self._queue_event(reason.value, session)

    async def _terminate(self, session: Session, reason: TerminationReason) -> bool:
        """Move a session to its terminal state. Returns False if it already was terminal."""
        if session.is_terminal:
            logger.info(
                f"Session {_short(session.session_id)} already {session.state.value}; "
                "nothing to terminate"
            )
            return False

        session.state = reason.terminal_state
        session.is_active = False

        if self._current is not None and self._current.session_id == session.session_id:
            self._cancel_timers()
            self._generation += 1
            self._current = None

        logger.info(f"Session terminated: {_short(session.session_id)} reason={reason.value}")

        try:
            await self._persist_bounded(session)
        except StoreError as e:
            self._pending_reconciliation[session.session_id] = session.snapshot()
            logger.error(
                f"Terminal write for {_short(session.session_id)} not confirmed; "
                f"queued for reconciliation: {e!r}"
            )
            self._queue_event("reconcile", session)
            raise SessionError(
                "terminate_unconfirmed",
                details={"session_id": session.session_id, "reason": reason.value},
                cause=e,
            ) from e

        self._pending_reconciliation.pop(session.session_id, None)
        return True

    # -- Timers ----------------------------------------------------------------

    def _arm(self, kind: TimerKind, delay_ms: int, session_id: str, callback) -> None:
        """Cancel-then-arm: at most one timer of each kind exists."""
        self.scheduler.cancel(self._timers.pop(kind, None))
        self._timers[kind] = self.scheduler.schedule(
            delay_ms, callback, label=f"{kind.value}:{_short(session_id)}"
        )

    def _cancel_timers(self) -> None:
        for handle in self._timers.values():
            self.scheduler.cancel(handle)
        self._timers.clear()

    def _arm_all(self, session: Session, policy: SessionPolicy) -> None:
        """Start a new timer generation for the current session."""
        self._cancel_timers()
        self._generation += 1
        generation = self._generation
        now = self.scheduler.now()

        until_expiry = _ms_until(now, session.expires_at)
        self._arm(
            TimerKind.EXPIRATION,
            until_expiry,
            session.session_id,
            partial(self._on_expiration_timer, session.session_id, generation),
        )

        until_warning = until_expiry - policy.warning_lead_time
        if (
            policy.warning_lead_time > 0
            and until_warning > 0
            and session.state is SessionState.ACTIVE
        ):
            self._arm(
                TimerKind.WARNING,
                until_warning,
                session.session_id,
                partial(self._on_warning_timer, session.session_id, generation),
            )

        self._arm_inactivity(session, policy)

    def _arm_inactivity(self, session: Session, policy: SessionPolicy) -> None:
        idle_at = session.last_activity + _ms(policy.inactivity_timeout)
        self._arm(
            TimerKind.INACTIVITY,
            _ms_until(self.scheduler.now(), idle_at),
            session.session_id,
            partial(self._on_inactivity_timer, session.session_id, self._generation),
        )

    def _live(self, session_id: str, generation: int) -> Optional[Session]:
        """The current session if a timer of this generation may still act on it."""
        session = self._current
        if (
            session is None
            or session.session_id != session_id
            or generation != self._generation
            or session.is_terminal
        ):
            return None
        return session

    async def _on_expiration_timer(self, session_id: str, generation: int) -> None:
        async with self._transaction():
            session = self._live(session_id, generation)
            if session is None:
                logger.debug(f"Stale expiration timer for {_short(session_id)} ignored")
                return

            now = self.scheduler.now()
            if not self._is_expired(session, now):
                self._arm(
                    TimerKind.EXPIRATION,
                    max(1, _ms_until(now, session.expires_at)),
                    session_id,
                    partial(self._on_expiration_timer, session_id, generation),
                )
                return

            logger.info(f"Session expired: {_short(session_id)}")
            await self._end_session(session, TerminationReason.EXPIRED)

    async def _on_warning_timer(self, session_id: str, generation: int) -> None:
        async with self._transaction():
            session = self._live(session_id, generation)
            if session is None or session.state is not SessionState.ACTIVE:
                return

            session.state = SessionState.WARNING
            try:
                await self._persist(session)
            except StoreError as e:
                logger.warning(f"Failed to persist warning state: {e}")

            logger.info(f"Session expiring soon: {_short(session_id)}")
            self._queue_event("warning", session)

    async def _on_inactivity_timer(self, session_id: str, generation: int) -> None:
        async with self._transaction():
            session = self._live(session_id, generation)
            if session is None:
                logger.debug(f"Stale inactivity timer for {_short(session_id)} ignored")
                return

            policy = self.registry.policy_for(session.access_method)
            now = self.scheduler.now()
            if not self._is_idle(session, policy, now):
                idle_at = session.last_activity + _ms(policy.inactivity_timeout)
                # Idle means strictly past the window, so look again just after it.
                self._arm(
                    TimerKind.INACTIVITY,
                    _ms_until(now, idle_at) + 1,
                    session_id,
                    partial(self._on_inactivity_timer, session_id, generation),
                )
                return

            logger.info(f"Session inactive: {_short(session_id)}")
            await self._end_session(session, TerminationReason.INACTIVE)

    # -- Persistence -------------------------------------------------------------

    async def _bounded(self, awaitable, action: str, timeout_ms: Optional[int] = None):
        """Await a store call for at most timeout_ms (store_timeout_ms by default)."""
        timeout_ms = timeout_ms or self.store_timeout_ms
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            raise StoreError(
                f"Store did not confirm {action} within {timeout_ms}ms", cause=e
            ) from e

    async def _write(self, session: Session) -> None:
        try:
            await self.store.set(self.keys.session_data, session.to_json())
            await self.store.set(self.keys.last_activity, session.last_activity.isoformat())
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to persist session: {e}", cause=e) from e

    async def _persist(self, session: Session) -> None:
        await self._bounded(self._write(session), "session write")

    async def _persist_bounded(self, session: Session) -> None:
        """Terminal write, bounded by termination_timeout_ms."""
        await self._bounded(
            self._write(session), "terminal write", self.termination_timeout_ms
        )

    async def _read(self):
        try:
            raw = await self.store.get(self.keys.session_data)
            last_activity_raw = await self.store.get(self.keys.last_activity)
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to read session: {e}", cause=e) from e
        return raw, last_activity_raw

    async def _load_stored(self) -> Optional[Session]:
        raw, last_activity_raw = await self._bounded(self._read(), "session read")

        if not raw:
            return None

        try:
            session = Session.from_json(raw)
        except ValidationError as e:
            raise StoreError(
                "Stored session record is malformed", details={"malformed": True}, cause=e
            ) from e

        # LAST_ACTIVITY may be newer than the record if only activity was written.
        if last_activity_raw:
            try:
                last_activity = datetime.fromisoformat(last_activity_raw)
            except ValueError:
                logger.debug("Ignoring unparseable last-activity timestamp")
            else:
                if last_activity.tzinfo is None:
                    last_activity = last_activity.replace(tzinfo=timezone.utc)
                if last_activity > session.last_activity:
                    session.last_activity = last_activity

        return session

    async def _delete(self) -> None:
        await self.store.delete(self.keys.session_data)
        await self.store.delete(self.keys.last_activity)

    async def _clear_stored(self) -> None:
        try:
            await self._bounded(self._delete(), "session delete")
        except Exception as e:
            logger.error(f"Failed to clear stored session: {e}")

    async def _resolve(self, session_id: Optional[str]) -> Optional[Session]:
        """Find the target session: current, pending reconciliation, or the stored record."""
        if session_id is None:
            return self._current
        if self._current is not None and self._current.session_id == session_id:
            return self._current
        if session_id in self._pending_reconciliation:
            return self._pending_reconciliation[session_id]

        stored = await self._load_stored()
        if stored is not None and stored.session_id == session_id:
            return stored
        return None

    # -- Events ------------------------------------------------------------------

    def _queue_event(self, name: str, session: Session) -> None:
        """Queue an event on the outbox of the transaction in progress."""
        self._outbox.append(
            SessionEvent(event=name, session=session.snapshot(), timestamp=self.scheduler.now())
        )

    @asynccontextmanager
    async def _transaction(self):
        """
        Serialise state changes; publish queued events once the lock is released.

        Each transaction owns its outbox, so only events queued inside it are
        published by it.
        """
        queued: List[SessionEvent] = []
        try:
            async with self._lock:
                self._outbox = queued
                try:
                    yield
                finally:
                    self._outbox = []
        finally:
            for event in queued:
                await self.events.publish(event)
