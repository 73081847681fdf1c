"""Fire-and-forget collaborators: domain event delivery and cache invalidation.

Both run after the write transaction has committed. A failing listener or
hook is logged and skipped; it never reaches the caller, because the state
change it reports on has already happened.
"""

from __future__ import annotations

from collections import deque
from typing import Callable, Deque, List, Optional, Sequence

from .models import DomainEvent, EventType
from .ops import StructuredLogger

HISTORY_LIMIT = 1000

Listener = Callable[[DomainEvent], None]
InvalidationHook = Callable[[str], None]


class NotificationCenter:
    """In-process event bus that also keeps an inbox of delivered events."""

    def __init__(self, logger: Optional[StructuredLogger] = None, *, history_limit: int = HISTORY_LIMIT) -> None:
        self._logger = logger or StructuredLogger()
        self._listeners: List[Listener] = []
        self._sent: Deque[DomainEvent] = deque(maxlen=history_limit)

    def register(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unregister(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def publish(self, event: DomainEvent) -> None:
        self._sent.append(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:  # noqa: BLE001 - delivery is best effort
                self._logger.log(
                    "notification_failed",
                    eventType=event.type.value,
                    familyId=event.family_id,
                    error=str(exc),
                )

    def history(self, *, event_type: EventType | None = None) -> Sequence[DomainEvent]:
        if event_type is None:
            return tuple(self._sent)
        return tuple(event for event in self._sent if event.type is event_type)

    def clear(self) -> None:
        self._sent.clear()


def family_key(family_id: int) -> str:
    return f"family:{family_id}"


def wallet_key(family_id: int, child_id: int) -> str:
    return f"wallet:{family_id}:{child_id}"


class CacheInvalidator:
    """Signal downstream read caches; repeated signals for a key are harmless."""

    def __init__(self, logger: Optional[StructuredLogger] = None, *, history_limit: int = HISTORY_LIMIT) -> None:
        self._logger = logger or StructuredLogger()
        self._hooks: List[InvalidationHook] = []
        self._signalled: Deque[str] = deque(maxlen=history_limit)

    def register(self, hook: InvalidationHook) -> None:
        self._hooks.append(hook)

    def invalidate_family(self, family_id: int) -> None:
        self._signal(family_key(family_id))

    def invalidate_wallet(self, family_id: int, child_id: int) -> None:
        self._signal(wallet_key(family_id, child_id))

    def signalled(self) -> Sequence[str]:
        return tuple(self._signalled)

    def _signal(self, key: str) -> None:
        self._signalled.append(key)
        for hook in list(self._hooks):
            try:
                hook(key)
            except Exception as exc:  # noqa: BLE001 - invalidation is best effort
                self._logger.log("cache_invalidation_failed", key=key, error=str(exc))


__all__ = [
    "CacheInvalidator",
    "NotificationCenter",
    "family_key",
    "wallet_key",
]
