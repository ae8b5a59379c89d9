"""
Lifecycle event channel.

Consumers (UI layers, audit writers, websocket pushers) subscribe to receive
"expired", "warning", "inactive" and "reconcile" notifications. Listeners may
be plain functions or coroutine functions.
"""

import inspect
from typing import Awaitable, Callable, List, Union

from branchgate.logger import get_logger
from branchgate.session.models import SessionEvent

logger = get_logger(__name__)

SessionListener = Callable[[SessionEvent], Union[None, Awaitable[None]]]


class SessionEventBus:
    """Publishes session lifecycle events to every registered listener."""

    def __init__(self):
        self._listeners: List[SessionListener] = []

    def subscribe(self, listener: SessionListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: SessionListener) -> bool:
        """Remove a listener. Returns False if it was not registered."""
        try:
            self._listeners.remove(listener)
            return True
        except ValueError:
            return False

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    async def publish(self, event: SessionEvent) -> None:
        """Deliver to all current listeners. A failing listener does not stop the rest."""
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    f"Session listener {getattr(listener, '__name__', listener)!r} "
                    f"failed on '{event.event}': {e}"
                )
