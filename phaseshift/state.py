"""Core data model shared by the Phaseshift components."""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple


__all__ = [
    "EventCategory",
    "Event",
    "RiskScore",
    "Identity",
    "LayoutDescriptor",
    "ConfigurationState",
    "Snapshot",
    "CollapseOutcome",
    "CollapseRecord",
    "parse_timestamp",
]


class EventCategory(str, Enum):
    """Behavioral event classes delivered by observation probes."""

    AUTH_FAIL = "AUTH_FAIL"
    CONN_ANOMALY = "CONN_ANOMALY"
    SYSCALL_ANOMALY = "SYSCALL_ANOMALY"
    OTHER = "OTHER"

    @classmethod
    def coerce(cls, value: object) -> "EventCategory":
        if isinstance(value, EventCategory):
            return value
        text = str(value or "").strip().upper().replace("-", "_")
        try:
            return cls(text)
        except ValueError:
            return cls.OTHER


@dataclass(frozen=True)
class Event:
    """Timestamped behavioral observation. Immutable once emitted."""

    timestamp: datetime
    category: EventCategory
    source: str
    magnitude: float = 1.0

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "Event":
        """Build an :class:`Event` from heterogeneous probe payloads."""

        timestamp = parse_timestamp(payload.get("timestamp"))
        category = EventCategory.coerce(payload.get("category") or payload.get("type"))
        source = str(payload.get("source") or payload.get("source_id") or "unknown")

        try:
            magnitude = float(payload.get("magnitude", 1.0))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            magnitude = 1.0

        return cls(
            timestamp=timestamp,
            category=category,
            source=source,
            magnitude=max(0.0, magnitude),
        )

    def to_payload(self) -> Dict[str, object]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "category": self.category.value,
            "source": self.source,
            "magnitude": self.magnitude,
        }


@dataclass(frozen=True)
class RiskScore:
    """Output of one evaluation tick of the risk scorer."""

    value: float
    timestamp: datetime
    window: Tuple[Event, ...] = ()

    def __post_init__(self) -> None:
        if not 0.0 <= self.value <= 1.0:
            raise ValueError(f"risk score must lie in [0, 1], got {self.value!r}")


@dataclass(frozen=True)
class Identity:
    """Signed credential issued to a subject for one configuration generation."""

    subject: str
    credential_id: str
    issued_at: datetime
    expires_at: datetime
    nonce: str = ""
    signature: str = ""
    parent_signature: Optional[str] = None

    def is_valid_at(self, moment: datetime) -> bool:
        return self.issued_at <= moment < self.expires_at

    def as_dict(self) -> Dict[str, object]:
        return {
            "subject": self.subject,
            "credential_id": self.credential_id,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "nonce": self.nonce,
            "signature": self.signature,
            "parent_signature": self.parent_signature,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "Identity":
        parent = data.get("parent_signature")
        return cls(
            subject=str(data["subject"]),
            credential_id=str(data["credential_id"]),
            issued_at=parse_timestamp(data["issued_at"]),
            expires_at=parse_timestamp(data["expires_at"]),
            nonce=str(data.get("nonce") or ""),
            signature=str(data.get("signature") or ""),
            parent_signature=str(parent) if parent else None,
        )


@dataclass(frozen=True)
class LayoutDescriptor:
    """Opaque memory layout permutation token."""

    token: str
    generation: int = 0

    def as_dict(self) -> Dict[str, object]:
        return {"token": self.token, "generation": self.generation}


@dataclass(frozen=True)
class ConfigurationState:
    """Externally observable shape of the protected host at one point in time.

    ``port_map`` maps external ports to internal service ports and must be a
    bijection over the active service set. ``session_bindings`` maps session
    tokens to the external port their service is reachable on in this state,
    so established sessions follow a remap instead of being dropped.
    """

    state_id: int
    port_map: Mapping[int, int]
    layout: LayoutDescriptor
    identities: Mapping[str, Identity] = field(default_factory=dict)
    grace_identities: Mapping[str, Identity] = field(default_factory=dict)
    session_bindings: Mapping[str, int] = field(default_factory=dict)
    grace_until: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "port_map", {int(k): int(v) for k, v in self.port_map.items()})
        object.__setattr__(self, "identities", dict(self.identities))
        object.__setattr__(self, "grace_identities", dict(self.grace_identities))
        object.__setattr__(
            self,
            "session_bindings",
            {str(k): int(v) for k, v in self.session_bindings.items()},
        )

    @property
    def services(self) -> frozenset[int]:
        return frozenset(self.port_map.values())

    def external_port_for(self, internal_port: int) -> Optional[int]:
        for external, internal in self.port_map.items():
            if internal == internal_port:
                return external
        return None

    def is_bijective(self) -> bool:
        return len(set(self.port_map.values())) == len(self.port_map)

    def latest_expiry(self) -> Optional[datetime]:
        if not self.identities:
            return None
        return max(identity.expires_at for identity in self.identities.values())

    def as_dict(self) -> Dict[str, object]:
        return {
            "state_id": self.state_id,
            "port_map": {str(external): internal for external, internal in sorted(self.port_map.items())},
            "layout": self.layout.as_dict(),
            "identities": {subject: ident.as_dict() for subject, ident in sorted(self.identities.items())},
            "grace_identities": {
                subject: ident.as_dict() for subject, ident in sorted(self.grace_identities.items())
            },
            "session_bindings": dict(sorted(self.session_bindings.items())),
            "grace_until": self.grace_until.isoformat() if self.grace_until else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "ConfigurationState":
        layout = _ensure_mapping(data.get("layout"))
        grace_until = data.get("grace_until")
        return cls(
            state_id=int(data["state_id"]),  # type: ignore[arg-type]
            port_map={int(k): int(v) for k, v in _ensure_mapping(data.get("port_map")).items()},  # type: ignore[arg-type]
            layout=LayoutDescriptor(
                token=str(layout.get("token", "")),
                generation=int(layout.get("generation", 0)),  # type: ignore[arg-type]
            ),
            identities={
                str(subject): Identity.from_dict(_ensure_mapping(item))
                for subject, item in _ensure_mapping(data.get("identities")).items()
            },
            grace_identities={
                str(subject): Identity.from_dict(_ensure_mapping(item))
                for subject, item in _ensure_mapping(data.get("grace_identities")).items()
            },
            session_bindings={
                str(token): int(port)  # type: ignore[arg-type]
                for token, port in _ensure_mapping(data.get("session_bindings")).items()
            },
            grace_until=parse_timestamp(grace_until) if grace_until else None,
        )

    def fingerprint(self) -> str:
        """Return the SHA-256 digest of the canonical JSON rendering."""

        serialized = json.dumps(self.as_dict(), sort_keys=True, separators=(",", ":")).encode("utf-8")
        return hashlib.sha256(serialized).hexdigest()


@dataclass(frozen=True)
class Snapshot:
    """Durable copy of a past :class:`ConfigurationState` plus capture metadata."""

    snapshot_id: str
    sequence: int
    state: ConfigurationState
    reason: str
    trigger_score: Optional[float]
    captured_at: datetime
    checksum: str

    def verify(self) -> bool:
        return self.state.fingerprint() == self.checksum

    def as_dict(self) -> Dict[str, object]:
        return {
            "snapshot_id": self.snapshot_id,
            "sequence": self.sequence,
            "state": self.state.as_dict(),
            "reason": self.reason,
            "trigger_score": self.trigger_score,
            "captured_at": self.captured_at.isoformat(),
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "Snapshot":
        score = data.get("trigger_score")
        return cls(
            snapshot_id=str(data["snapshot_id"]),
            sequence=int(data.get("sequence", 0)),  # type: ignore[arg-type]
            state=ConfigurationState.from_dict(_ensure_mapping(data.get("state"))),
            reason=str(data.get("reason") or ""),
            trigger_score=float(score) if score is not None else None,  # type: ignore[arg-type]
            captured_at=parse_timestamp(data.get("captured_at")),
            checksum=str(data.get("checksum") or ""),
        )


class CollapseOutcome(str, Enum):
    COMPLETED = "COMPLETED"
    ROLLED_BACK = "ROLLED_BACK"
    ABORTED = "ABORTED"


@dataclass(frozen=True)
class CollapseRecord:
    """Audit entry describing one collapse attempt."""

    record_id: str
    trigger_score: float
    started_at: datetime
    ended_at: datetime
    outcome: CollapseOutcome
    resulting_state_id: int
    snapshot_id: Optional[str] = None
    reason: str = ""
    detail: str = ""
    candidate_state_id: Optional[int] = None

    def as_dict(self) -> Dict[str, object]:
        return {
            "record_id": self.record_id,
            "trigger_score": self.trigger_score,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "outcome": self.outcome.value,
            "resulting_state_id": self.resulting_state_id,
            "snapshot_id": self.snapshot_id,
            "reason": self.reason,
            "detail": self.detail,
            "candidate_state_id": self.candidate_state_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "CollapseRecord":
        snapshot_id = data.get("snapshot_id")
        candidate = data.get("candidate_state_id")
        return cls(
            record_id=str(data["record_id"]),
            trigger_score=float(data.get("trigger_score", 0.0)),  # type: ignore[arg-type]
            started_at=parse_timestamp(data.get("started_at")),
            ended_at=parse_timestamp(data.get("ended_at")),
            outcome=CollapseOutcome(str(data.get("outcome"))),
            resulting_state_id=int(data.get("resulting_state_id", 0)),  # type: ignore[arg-type]
            snapshot_id=str(snapshot_id) if snapshot_id else None,
            reason=str(data.get("reason") or ""),
            detail=str(data.get("detail") or ""),
            candidate_state_id=int(candidate) if candidate is not None else None,  # type: ignore[arg-type]
        )


def parse_timestamp(value: object) -> datetime:
    """Coerce ``value`` into an aware UTC :class:`datetime`."""

    if isinstance(value, datetime):
        timestamp = value
    elif isinstance(value, str) and value:
        timestamp = datetime.fromisoformat(value.replace("Z", "+00:00"))
    elif isinstance(value, (int, float)):
        timestamp = datetime.fromtimestamp(float(value), tz=timezone.utc)
    else:
        timestamp = datetime.now(tz=timezone.utc)
    return timestamp if timestamp.tzinfo else timestamp.replace(tzinfo=timezone.utc)


def _ensure_mapping(value: object) -> Mapping[str, object]:
    if isinstance(value, Mapping):
        return value
    return {}
