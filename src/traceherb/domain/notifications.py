"""Change notification fan-out for canonical batch updates.

Each subscription owns a buffered channel; publishing only appends to those
channels and never waits on a subscriber. A bounded subscription that
falls behind is closed with ``overflowed`` set so the consumer knows it must
re-query instead of silently missing updates.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Self

if TYPE_CHECKING:
    from collections.abc import Iterator
    from types import TracebackType

    from traceherb.domain.model import CanonicalBatch, LifecycleStep

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """New observable state of one identity.

    ``version`` increases by one for every observable change of ``identity``.
    ``absorbed`` lists identity keys fused into ``identity`` by this change.
    """

    identity: str
    version: int
    batch: CanonicalBatch
    timeline: tuple[LifecycleStep, ...]
    absorbed: tuple[str, ...] = ()


class Subscription:
    """Buffered, thread-safe channel of change events."""

    def __init__(self, identity: str | None = None, *, maxsize: int = 0) -> None:
        if maxsize < 0:
            raise ValueError("maxsize must be >= 0 (0 means unbounded)")
        self._identities: set[str] | None = None if identity is None else {identity}
        self._maxsize = maxsize
        self._buffer: deque[ChangeEvent] = deque()
        self._condition = threading.Condition()
        self._closed = False
        self._overflowed = False

    @property
    def identities(self) -> frozenset[str] | None:
        with self._condition:
            return None if self._identities is None else frozenset(self._identities)

    @property
    def closed(self) -> bool:
        with self._condition:
            return self._closed

    @property
    def overflowed(self) -> bool:
        with self._condition:
            return self._overflowed

    def pending(self) -> int:
        with self._condition:
            return len(self._buffer)

    def offer(self, event: ChangeEvent) -> bool:
        """Enqueue ``event`` if it concerns this subscription; never blocks."""

        with self._condition:
            if self._closed or not self._matches(event):
                return False
            if self._maxsize and len(self._buffer) >= self._maxsize:
                self._overflowed = True
                self._closed = True
                self._condition.notify_all()
                log.warning("Subscription overflowed after %d buffered events", self._maxsize)
                return False
            self._buffer.append(event)
            self._condition.notify()
            return True

    def get(self, timeout: float | None = None) -> ChangeEvent | None:
        """Next event, or ``None`` once closed and drained or when ``timeout`` expires."""

        with self._condition:
            self._condition.wait_for(lambda: self._buffer or self._closed, timeout=timeout)
            if self._buffer:
                return self._buffer.popleft()
            return None

    def close(self) -> None:
        with self._condition:
            self._closed = True
            self._condition.notify_all()

    def __iter__(self) -> Iterator[ChangeEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def _matches(self, event: ChangeEvent) -> bool:
        if self._identities is None:
            return True
        if self._identities.intersection(event.absorbed):
            # Follow the identity the watched one was fused into.
            self._identities.add(event.identity)
        return event.identity in self._identities


class ChangeNotifier:
    """Registry of subscriptions plus fan-out."""

    def __init__(self, *, default_maxsize: int = 0) -> None:
        self._default_maxsize = default_maxsize
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, identity: str | None = None, *, maxsize: int | None = None) -> Subscription:
        subscription = Subscription(
            identity, maxsize=self._default_maxsize if maxsize is None else maxsize
        )
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(self, event: ChangeEvent) -> int:
        """Deliver ``event`` to every matching subscription; returns the delivery count."""

        with self._lock:
            self._subscriptions = [sub for sub in self._subscriptions if not sub.closed]
            targets = tuple(self._subscriptions)
        delivered = sum(1 for subscription in targets if subscription.offer(event))
        log.debug("Published %s v%d to %d subscriber(s)", event.identity, event.version, delivered)
        return delivered

    def subscriber_count(self) -> int:
        with self._lock:
            return sum(1 for subscription in self._subscriptions if not subscription.closed)
