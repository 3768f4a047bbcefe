"""Event ingestion buffer and the reference risk scorer."""
from __future__ import annotations

import logging
import math
import threading
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Deque, Dict, Iterable, Mapping, Optional, Sequence, Tuple

from .state import Event, EventCategory

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS: Mapping[EventCategory, float] = {
    EventCategory.AUTH_FAIL: 0.35,
    EventCategory.CONN_ANOMALY: 0.25,
    EventCategory.SYSCALL_ANOMALY: 0.6,
    EventCategory.OTHER: 0.05,
}


class EventWindow:
    """Bounded buffer of recent events.

    Bursts beyond ``capacity`` evict the oldest events. Events may arrive out
    of order as long as they are no older than ``max_skew`` behind the newest
    timestamp seen so far; anything later than that is dropped and counted.
    """

    def __init__(
        self,
        *,
        span: timedelta = timedelta(seconds=60),
        max_skew: timedelta = timedelta(seconds=5),
        capacity: int = 10_000,
    ) -> None:
        if span <= timedelta(0):
            raise ValueError("span must be positive")
        if max_skew < timedelta(0):
            raise ValueError("max_skew must not be negative")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._span = span
        self._max_skew = max_skew
        self._lock = threading.Lock()
        self._events: Deque[Event] = deque(maxlen=capacity)
        self._newest: Optional[datetime] = None
        self._dropped = 0

    @property
    def dropped(self) -> int:
        with self._lock:
            return self._dropped

    def push(self, event: Event) -> bool:
        with self._lock:
            if self._newest is not None and event.timestamp < self._newest - self._max_skew:
                self._dropped += 1
                logger.debug("Dropped stale %s event from %s", event.category.value, event.source)
                return False
            if self._newest is None or event.timestamp > self._newest:
                self._newest = event.timestamp
            self._events.append(event)
            return True

    def extend(self, events: Iterable[Event]) -> int:
        return sum(1 for event in events if self.push(event))

    def window(self, now: Optional[datetime] = None) -> Tuple[Event, ...]:
        """Return events inside the evaluation span ending at ``now``, oldest first."""

        moment = now or datetime.now(tz=timezone.utc)
        start = moment - self._span
        horizon = start - self._max_skew
        with self._lock:
            while self._events and self._events[0].timestamp < horizon:
                self._events.popleft()
            selected = [event for event in self._events if start <= event.timestamp <= moment]
        return tuple(sorted(selected, key=lambda event: event.timestamp))

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class HeuristicRiskScorer:
    """Weighted category scorer saturating smoothly towards 1.0."""

    def __init__(
        self,
        weights: Optional[Mapping[EventCategory, float]] = None,
        *,
        saturation: float = 2.0,
    ) -> None:
        if saturation <= 0:
            raise ValueError("saturation must be positive")
        self._weights: Dict[EventCategory, float] = dict(DEFAULT_WEIGHTS)
        if weights:
            self._weights.update({EventCategory.coerce(key): float(value) for key, value in weights.items()})
        self._saturation = saturation

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def score(self, events: Sequence[Event]) -> float:
        pressure = sum(self._contribution(event) for event in events)
        if pressure <= 0:
            return 0.0
        return _clamp(1.0 - math.exp(-pressure / self._saturation))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _contribution(self, event: Event) -> float:
        return self._weights.get(event.category, 0.0) * max(0.0, event.magnitude)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


__all__ = ["DEFAULT_WEIGHTS", "EventWindow", "HeuristicRiskScorer"]
