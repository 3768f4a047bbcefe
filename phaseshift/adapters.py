"""Collaborator interfaces and the bundled apply adapters."""
from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence

from .state import ConfigurationState, Event

logger = logging.getLogger(__name__)


class ApplyError(RuntimeError):
    """Raised when a configuration could not be installed or confirmed live."""


@dataclass(frozen=True)
class InstallAck:
    """Acknowledgement returned by :meth:`ApplyAdapter.install`."""

    state_id: int
    installed_at: datetime
    changed: bool = True


class EventSource(Protocol):
    """Producer of behavioral events."""

    def subscribe(self, callback: Callable[[Event], None]) -> None:
        ...

    def set_sampling_rate(self, rate: float) -> None:
        ...


class RiskScorer(Protocol):
    """Black-box classifier mapping an event window to a score in [0, 1]."""

    def score(self, events: Sequence[Event]) -> float:
        ...


class ApplyAdapter(Protocol):
    """Sink installing a configuration state into the live system.

    ``install`` must be idempotent: installing the state that is already live
    is acknowledged without side effects.
    """

    def install(self, state: ConfigurationState) -> InstallAck:
        ...

    def live_state_id(self) -> Optional[int]:
        ...


class InMemoryApplyAdapter:
    """Adapter that keeps the live state in memory. Used for dry runs and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._live: Optional[ConfigurationState] = None
        self.installed: List[int] = []

    @property
    def live_state(self) -> Optional[ConfigurationState]:
        with self._lock:
            return self._live

    def install(self, state: ConfigurationState) -> InstallAck:
        with self._lock:
            changed = self._live != state
            if changed:
                self._live = state
                self.installed.append(state.state_id)
        return InstallAck(state_id=state.state_id, installed_at=_utcnow(), changed=changed)

    def live_state_id(self) -> Optional[int]:
        with self._lock:
            return self._live.state_id if self._live is not None else None


class IptablesApplyAdapter:
    """Render port remaps as an ``iptables-restore`` NAT table.

    Each external port is redirected to its internal service port through a
    dedicated chain. The rules file is replaced atomically; ``runner`` (for
    example a wrapper around ``iptables-restore``) is invoked with its path.
    """

    chain = "PHASESHIFT_REDIRECT"
    _HEADER = "# phaseshift state "

    def __init__(
        self,
        rules_path: Path,
        *,
        runner: Optional[Callable[[Path], None]] = None,
        protocol: str = "tcp",
    ) -> None:
        self._rules_path = Path(rules_path)
        self._runner = runner
        self._protocol = protocol
        self._lock = threading.Lock()

    @property
    def rules_path(self) -> Path:
        return self._rules_path

    def render(self, state: ConfigurationState) -> str:
        lines = [
            f"{self._HEADER}{state.state_id}",
            f"# layout generation {state.layout.generation}",
            "*nat",
            ":PREROUTING ACCEPT [0:0]",
            f":{self.chain} - [0:0]",
            f"-A PREROUTING -p {self._protocol} -j {self.chain}",
        ]
        for external, internal in sorted(state.port_map.items()):
            lines.append(
                f"-A {self.chain} -p {self._protocol} --dport {external} -j REDIRECT --to-ports {internal}"
            )
        lines.append("COMMIT")
        return "\n".join(lines) + "\n"

    def install(self, state: ConfigurationState) -> InstallAck:
        rendered = self.render(state)
        with self._lock:
            if self._current_text() == rendered:
                return InstallAck(state_id=state.state_id, installed_at=_utcnow(), changed=False)
            staging = self._rules_path.with_suffix(self._rules_path.suffix + ".tmp")
            try:
                self._rules_path.parent.mkdir(parents=True, exist_ok=True)
                with open(staging, "w", encoding="utf-8") as handle:
                    handle.write(rendered)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(staging, self._rules_path)
            except OSError as exc:
                raise ApplyError(f"unable to write {self._rules_path}: {exc}") from exc
            if self._runner is not None:
                try:
                    self._runner(self._rules_path)
                except Exception as exc:  # noqa: BLE001 - surface any runner fault as an apply failure
                    raise ApplyError(f"rule runner rejected state {state.state_id}: {exc}") from exc
        logger.info("Rendered %s redirect rules for state %s", len(state.port_map), state.state_id)
        return InstallAck(state_id=state.state_id, installed_at=_utcnow())

    def live_state_id(self) -> Optional[int]:
        with self._lock:
            text = self._current_text()
        if not text:
            return None
        first_line = text.splitlines()[0]
        if not first_line.startswith(self._HEADER):
            return None
        try:
            return int(first_line[len(self._HEADER):].strip())
        except ValueError:
            return None

    def _current_text(self) -> Optional[str]:
        try:
            return self._rules_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise ApplyError(f"unable to read {self._rules_path}: {exc}") from exc


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


__all__ = [
    "ApplyAdapter",
    "ApplyError",
    "EventSource",
    "InMemoryApplyAdapter",
    "InstallAck",
    "IptablesApplyAdapter",
    "RiskScorer",
]
