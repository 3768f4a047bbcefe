"""Session continuity and the configuration admission barrier."""
from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, Mapping, Optional

logger = logging.getLogger(__name__)


class BarrierClosed(RuntimeError):
    """Raised when a configuration change is refused while a collapse is running."""


class SessionRegistry:
    """Tracks authenticated sessions by token, independent of port numbers.

    Each session is bound to the internal port of the logical service it
    uses; the external port it reaches that service on is derived from the
    active configuration, so a port remap re-associates rather than drops it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[str, int] = {}

    def open(self, token: str, service_port: int) -> None:
        if not token:
            raise ValueError("session token must not be empty")
        with self._lock:
            self._sessions[token] = int(service_port)

    def close(self, token: str) -> bool:
        with self._lock:
            return self._sessions.pop(token, None) is not None

    def service_for(self, token: str) -> Optional[int]:
        with self._lock:
            return self._sessions.get(token)

    def snapshot(self) -> Mapping[str, int]:
        with self._lock:
            return dict(self._sessions)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class AdmissionBarrier:
    """Logical barrier gating configuration-affecting operations.

    Closing the barrier never touches established traffic; it only stops new
    installs from starting and lets the collapse wait for running ones.
    """

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._closed = False
        self._in_flight = 0

    @property
    def closed(self) -> bool:
        with self._condition:
            return self._closed

    @property
    def in_flight(self) -> int:
        with self._condition:
            return self._in_flight

    @contextmanager
    def admit(self, *, timeout: float = 0.0) -> Iterator[None]:
        """Hold an admission slot, queueing up to ``timeout`` seconds while closed."""

        deadline = time.monotonic() + max(0.0, timeout)
        with self._condition:
            while self._closed:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise BarrierClosed("configuration changes are frozen by an active collapse")
                self._condition.wait(remaining)
            self._in_flight += 1
        try:
            yield
        finally:
            with self._condition:
                self._in_flight -= 1
                self._condition.notify_all()

    def close(self) -> None:
        with self._condition:
            self._closed = True
        logger.debug("Admission barrier closed")

    def drain(self, timeout: float) -> bool:
        """Wait until no admitted operation is running. Returns ``False`` on timeout."""

        deadline = time.monotonic() + max(0.0, timeout)
        with self._condition:
            while self._in_flight:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._condition.wait(remaining)
            return True

    def open(self) -> None:
        with self._condition:
            self._closed = False
            self._condition.notify_all()
        logger.debug("Admission barrier opened")


__all__ = ["AdmissionBarrier", "BarrierClosed", "SessionRegistry"]
