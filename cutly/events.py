from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

EVENT_TYPES = {"INSERT", "UPDATE", "DELETE"}


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: str  # INSERT / UPDATE / DELETE
    tenant_id: str
    row: dict[str, Any] = field(default_factory=dict)


Subscriber = Callable[[ChangeEvent], None]


class ChangeFeed:
    """
    In-process change notifications keyed by (table, tenant).

    Services publish after their transaction commits. Delivery is best-effort:
    a subscriber that raises is logged and skipped, the mutation stays committed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subs: dict[tuple[str, Optional[str]], list[Subscriber]] = {}

    def subscribe(self, table: str, tenant_id: Optional[str], callback: Subscriber) -> Callable[[], None]:
        """tenant_id=None listens to every tenant. Returns an unsubscribe function."""
        key = (table, tenant_id)
        with self._lock:
            self._subs.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                subs = self._subs.get(key, [])
                if callback in subs:
                    subs.remove(callback)
                if not subs:
                    self._subs.pop(key, None)

        return unsubscribe

    def publish(self, event: ChangeEvent) -> int:
        if event.event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event.event_type}")

        with self._lock:
            targets = list(self._subs.get((event.table, event.tenant_id), []))
            targets += self._subs.get((event.table, None), [])

        delivered = 0
        for cb in targets:
            try:
                cb(event)
                delivered += 1
            except Exception as e:
                logger.warning("Change subscriber failed for %s/%s: %s", event.table, event.event_type, e)
        return delivered

    def clear(self) -> None:
        with self._lock:
            self._subs.clear()


feed = ChangeFeed()


def publish(table: str, event_type: str, tenant_id: str, row: dict[str, Any]) -> None:
    feed.publish(ChangeEvent(table=table, event_type=event_type, tenant_id=tenant_id, row=dict(row)))
