"""Durable snapshot persistence for configuration states."""
from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from cryptography.fernet import Fernet, InvalidToken

from .state import ConfigurationState, Snapshot

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """Raised when the snapshot backing store is unreachable, full or corrupt."""


class NotFoundError(KeyError):
    """Raised when a snapshot id is unknown."""


@dataclass(frozen=True)
class RetentionPolicy:
    """Count- and/or age-bound snapshot retention."""

    max_count: Optional[int] = 10
    max_age: Optional[timedelta] = None

    def __post_init__(self) -> None:
        if self.max_count is not None and self.max_count < 1:
            raise ValueError("max_count must keep at least one snapshot")


class SnapshotStore(Protocol):
    """Persistence contract relied upon by the collapse orchestrator."""

    def capture(
        self,
        state: ConfigurationState,
        *,
        reason: str = "",
        trigger_score: Optional[float] = None,
    ) -> str:
        ...

    def restore(self, snapshot_id: str) -> ConfigurationState:
        ...

    def get(self, snapshot_id: str) -> Snapshot:
        ...

    def latest(self) -> Optional[Snapshot]:
        ...

    def list(self) -> List[Snapshot]:
        ...

    def prune(self, policy: RetentionPolicy) -> List[str]:
        ...

    def mark_active(self, state: ConfigurationState) -> None:
        ...

    def active(self) -> Optional[ConfigurationState]:
        ...


class _BaseSnapshotStore:
    """Shared id allocation, checksum and retention logic."""

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or _utcnow
        self._lock = threading.RLock()
        self._sequence = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def capture(
        self,
        state: ConfigurationState,
        *,
        reason: str = "",
        trigger_score: Optional[float] = None,
    ) -> str:
        with self._lock:
            self._sequence += 1
            sequence = self._sequence
            snapshot = Snapshot(
                snapshot_id=f"snap-{sequence:08d}-{os.urandom(4).hex()}",
                sequence=sequence,
                state=state,
                reason=reason,
                trigger_score=trigger_score,
                captured_at=self._clock(),
                checksum=state.fingerprint(),
            )
            self._write(snapshot)
        logger.info("Captured snapshot %s of state %s (%s)", snapshot.snapshot_id, state.state_id, reason)
        return snapshot.snapshot_id

    def restore(self, snapshot_id: str) -> ConfigurationState:
        snapshot = self.get(snapshot_id)
        if not snapshot.verify():
            raise StorageError(f"snapshot {snapshot_id} failed checksum verification")
        return snapshot.state

    def get(self, snapshot_id: str) -> Snapshot:
        with self._lock:
            return self._read(snapshot_id)

    def latest(self) -> Optional[Snapshot]:
        snapshots = self.list()
        return snapshots[-1] if snapshots else None

    def list(self) -> List[Snapshot]:
        with self._lock:
            return sorted(self._read_all(), key=lambda snap: snap.sequence)

    def prune(self, policy: RetentionPolicy) -> List[str]:
        """Delete snapshots beyond ``policy``; the most recent one always survives."""

        with self._lock:
            snapshots = sorted(self._read_all(), key=lambda snap: snap.sequence, reverse=True)
            if not snapshots:
                return []
            cutoff = self._clock() - policy.max_age if policy.max_age is not None else None
            removed: List[str] = []
            for index, snapshot in enumerate(snapshots[1:], start=1):
                over_count = policy.max_count is not None and index >= policy.max_count
                too_old = cutoff is not None and snapshot.captured_at < cutoff
                if over_count or too_old:
                    self._delete(snapshot.snapshot_id)
                    removed.append(snapshot.snapshot_id)
        if removed:
            logger.info("Pruned %s snapshots", len(removed))
        return removed

    def mark_active(self, state: ConfigurationState) -> None:
        """Record ``state`` as the live configuration, replacing any earlier one.

        The checkpoint is kept apart from the snapshots: it is never pruned
        and never returned by :meth:`latest`.
        """

        with self._lock:
            self._write_active({"state": state.as_dict(), "checksum": state.fingerprint()})
        logger.debug("Checkpointed active state %s", state.state_id)

    def active(self) -> Optional[ConfigurationState]:
        """Return the last state passed to :meth:`mark_active`, if any."""

        with self._lock:
            payload = self._read_active()
        if payload is None:
            return None
        try:
            state = ConfigurationState.from_dict(payload["state"])
            checksum = payload["checksum"]
        except (KeyError, TypeError, ValueError) as exc:
            raise StorageError("active state checkpoint is malformed") from exc
        if state.fingerprint() != checksum:
            raise StorageError("active state checkpoint failed checksum verification")
        return state

    # ------------------------------------------------------------------
    # Storage primitives
    # ------------------------------------------------------------------
    def _write(self, snapshot: Snapshot) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def _write_active(self, payload: Dict[str, object]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def _read_active(self) -> Optional[Dict[str, object]]:  # pragma: no cover - interface
        raise NotImplementedError

    def _read(self, snapshot_id: str) -> Snapshot:  # pragma: no cover - interface
        raise NotImplementedError

    def _read_all(self) -> Sequence[Snapshot]:  # pragma: no cover - interface
        raise NotImplementedError

    def _delete(self, snapshot_id: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class InMemorySnapshotStore(_BaseSnapshotStore):
    """Process-local store used for tests and ephemeral deployments."""

    def __init__(
        self,
        *,
        capacity: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        super().__init__(clock=clock)
        self._capacity = capacity
        self._snapshots: Dict[str, Snapshot] = {}
        self._active: Optional[Dict[str, object]] = None

    def _write(self, snapshot: Snapshot) -> None:
        if self._capacity is not None and len(self._snapshots) >= self._capacity:
            raise StorageError(f"snapshot store is full ({self._capacity} snapshots)")
        self._snapshots[snapshot.snapshot_id] = snapshot

    def _read(self, snapshot_id: str) -> Snapshot:
        try:
            return self._snapshots[snapshot_id]
        except KeyError:
            raise NotFoundError(snapshot_id) from None

    def _read_all(self) -> Sequence[Snapshot]:
        return list(self._snapshots.values())

    def _delete(self, snapshot_id: str) -> None:
        self._snapshots.pop(snapshot_id, None)

    def _write_active(self, payload: Dict[str, object]) -> None:
        self._active = payload

    def _read_active(self) -> Optional[Dict[str, object]]:
        return self._active


class EncryptedSnapshotStore(_BaseSnapshotStore):
    """Persist each snapshot as a Fernet-encrypted JSON file."""

    suffix = ".snap"
    active_name = "active.state"

    def __init__(
        self,
        secret: str,
        directory: Path,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        super().__init__(clock=clock)
        self._fernet = Fernet(derive_fernet_key(secret))
        self._directory = Path(directory)
        self._sequence = max((snap.sequence for snap in self._read_all()), default=0)

    @property
    def directory(self) -> Path:
        return self._directory

    # ------------------------------------------------------------------
    # Persistence helpers
    def _path_for(self, snapshot_id: str) -> Path:
        if not snapshot_id or "/" in snapshot_id or "\\" in snapshot_id or snapshot_id.startswith("."):
            raise NotFoundError(snapshot_id)
        return self._directory / f"{snapshot_id}{self.suffix}"

    def _write(self, snapshot: Snapshot) -> None:
        self._replace(self._path_for(snapshot.snapshot_id), snapshot.as_dict(), f"snapshot {snapshot.snapshot_id}")

    def _write_active(self, payload: Dict[str, object]) -> None:
        self._replace(self._directory / self.active_name, payload, "active state checkpoint")

    def _read_active(self) -> Optional[Dict[str, object]]:
        path = self._directory / self.active_name
        if not path.exists():
            return None
        return self._decrypt(path)

    def _replace(self, target: Path, document: Dict[str, object], label: str) -> None:
        payload = json.dumps(document, separators=(",", ":")).encode("utf-8")
        encrypted = self._fernet.encrypt(payload)
        staging = target.with_suffix(target.suffix + ".tmp")
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            with open(staging, "wb") as handle:
                handle.write(encrypted)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(staging, target)
        except OSError as exc:
            staging.unlink(missing_ok=True)
            raise StorageError(f"unable to persist {label}: {exc}") from exc

    def _read(self, snapshot_id: str) -> Snapshot:
        path = self._path_for(snapshot_id)
        if not path.exists():
            raise NotFoundError(snapshot_id)
        return self._load(path)

    def _read_all(self) -> Sequence[Snapshot]:
        if not self._directory.exists():
            return []
        return [self._load(path) for path in sorted(self._directory.glob(f"*{self.suffix}"))]

    def _delete(self, snapshot_id: str) -> None:
        try:
            self._path_for(snapshot_id).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"unable to delete snapshot {snapshot_id}: {exc}") from exc

    def _load(self, path: Path) -> Snapshot:
        try:
            return Snapshot.from_dict(self._decrypt(path))
        except (KeyError, TypeError, ValueError) as exc:
            raise StorageError(f"snapshot file {path.name} is malformed") from exc

    def _decrypt(self, path: Path) -> Dict[str, object]:
        try:
            payload = self._fernet.decrypt(path.read_bytes())
        except OSError as exc:
            raise StorageError(f"unable to read {path.name}: {exc}") from exc
        except InvalidToken as exc:
            raise StorageError(
                f"unable to decrypt {path.name}. Ensure the snapshot key matches the original value."
            ) from exc
        try:
            document = json.loads(payload.decode("utf-8"))
        except ValueError as exc:
            raise StorageError(f"{path.name} is not valid JSON") from exc
        if not isinstance(document, dict):
            raise StorageError(f"{path.name} does not hold a JSON object")
        return document


def derive_fernet_key(secret: str) -> bytes:
    """Return a valid Fernet key from an arbitrary secret string."""

    if not secret:
        raise ValueError("snapshot key must not be empty")

    try:
        decoded = base64.urlsafe_b64decode(secret)
        if len(decoded) == 32:
            return base64.urlsafe_b64encode(decoded)
    except (binascii.Error, ValueError):
        pass

    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


__all__ = [
    "EncryptedSnapshotStore",
    "InMemorySnapshotStore",
    "NotFoundError",
    "RetentionPolicy",
    "SnapshotStore",
    "StorageError",
    "derive_fernet_key",
]
