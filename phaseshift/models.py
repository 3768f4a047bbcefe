"""Pydantic models used by the Phaseshift control API."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .orchestrator import CollapsePhase, OrchestratorConfig, OrchestratorStatus
from .state import CollapseOutcome, ConfigurationState, Event, EventCategory, Snapshot


class IdentitySummary(BaseModel):
    """Public view of an issued credential. Signatures are not exposed."""

    credential_id: str
    issued_at: datetime
    expires_at: datetime

    model_config = ConfigDict(from_attributes=True)


class StateView(BaseModel):
    """Externally observable configuration of the protected host."""

    state_id: int
    port_map: Dict[int, int]
    layout_generation: int
    identities: Dict[str, IdentitySummary] = Field(default_factory=dict)
    grace_until: Optional[datetime] = None
    sessions: int = Field(default=0, description="Number of sessions bound in this state")

    @classmethod
    def from_state(cls, state: ConfigurationState) -> "StateView":
        return cls(
            state_id=state.state_id,
            port_map=dict(state.port_map),
            layout_generation=state.layout.generation,
            identities={
                subject: IdentitySummary.model_validate(identity)
                for subject, identity in state.identities.items()
            },
            grace_until=state.grace_until,
            sessions=len(state.session_bindings),
        )


class CollapseRecordModel(BaseModel):
    """Audit entry for one collapse attempt."""

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

    model_config = ConfigDict(from_attributes=True)


class StatusEnvelope(BaseModel):
    """API envelope for the current orchestrator state."""

    phase: CollapsePhase
    collapse_in_progress: bool
    lockout_reason: Optional[str] = None
    merged_triggers: int = 0
    state: StateView
    last_record: Optional[CollapseRecordModel] = None

    @classmethod
    def build(cls, status: OrchestratorStatus, state: ConfigurationState) -> "StatusEnvelope":
        return cls(
            phase=status.phase,
            collapse_in_progress=status.collapse_in_progress,
            lockout_reason=status.lockout_reason,
            merged_triggers=status.merged_triggers,
            state=StateView.from_state(state),
            last_record=CollapseRecordModel.model_validate(status.last_record) if status.last_record else None,
        )


class RecordsEnvelope(BaseModel):
    """API envelope for collapse history responses."""

    records: List[CollapseRecordModel]


class SnapshotSummary(BaseModel):
    snapshot_id: str
    sequence: int
    state_id: int
    reason: str
    trigger_score: Optional[float]
    captured_at: datetime
    checksum: str

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> "SnapshotSummary":
        return cls(
            snapshot_id=snapshot.snapshot_id,
            sequence=snapshot.sequence,
            state_id=snapshot.state.state_id,
            reason=snapshot.reason,
            trigger_score=snapshot.trigger_score,
            captured_at=snapshot.captured_at,
            checksum=snapshot.checksum,
        )


class SnapshotsEnvelope(BaseModel):
    """API envelope for stored snapshots, oldest first."""

    snapshots: List[SnapshotSummary]


class RestoreRequest(BaseModel):
    snapshot_id: Optional[str] = Field(default=None, description="Defaults to the most recent snapshot")


class LockoutRequest(BaseModel):
    reason: str = Field(default="administrative lockout", min_length=1)


class Thresholds(BaseModel):
    """Tunable detection thresholds and the collapse rate limit."""

    sensitivity: float
    suspect_watermark: float
    suspect_release: float
    decay_window_seconds: float
    max_collapses: int
    rate_window_seconds: float

    @classmethod
    def from_config(cls, config: OrchestratorConfig) -> "Thresholds":
        return cls(
            sensitivity=config.sensitivity,
            suspect_watermark=config.suspect_watermark,
            suspect_release=config.suspect_release,
            decay_window_seconds=config.decay_window.total_seconds(),
            max_collapses=config.max_collapses,
            rate_window_seconds=config.rate_window.total_seconds(),
        )


class ThresholdsUpdate(BaseModel):
    """Partial threshold update; omitted fields keep their value."""

    sensitivity: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    suspect_watermark: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    suspect_release: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    decay_window_seconds: Optional[float] = Field(default=None, ge=0.0)
    max_collapses: Optional[int] = Field(default=None, ge=1)
    rate_window_seconds: Optional[float] = Field(default=None, gt=0.0)


class EventIn(BaseModel):
    """Behavioral event submitted by an external probe."""

    category: str
    source: str = "api"
    timestamp: Optional[datetime] = None
    magnitude: float = Field(default=1.0, ge=0.0)

    def to_event(self, default_time: datetime) -> Event:
        return Event.from_payload(
            {
                "timestamp": self.timestamp or default_time,
                "category": EventCategory.coerce(self.category),
                "source": self.source,
                "magnitude": self.magnitude,
            }
        )


class EventsRequest(BaseModel):
    events: List[EventIn] = Field(min_length=1)


class IngestEnvelope(BaseModel):
    """API envelope for event ingestion results."""

    accepted: int
    dropped: int


__all__ = [
    "CollapseRecordModel",
    "EventIn",
    "EventsRequest",
    "IdentitySummary",
    "IngestEnvelope",
    "LockoutRequest",
    "RecordsEnvelope",
    "RestoreRequest",
    "SnapshotSummary",
    "SnapshotsEnvelope",
    "StateView",
    "StatusEnvelope",
    "Thresholds",
    "ThresholdsUpdate",
]
