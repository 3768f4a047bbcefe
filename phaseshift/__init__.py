"""Phaseshift core exports."""

from .adapters import ApplyAdapter, ApplyError, InMemoryApplyAdapter, InstallAck, IptablesApplyAdapter
from .audit import Alert, CollapseLedger
from .identity import CredentialVerificationError, IdentityIssuer, RevocationProof
from .mutation import ConstraintUnsatisfiable, InvalidConfiguration, MutationConstraints, MutationEngine
from .orchestrator import (
    CollapseAborted,
    CollapseInProgress,
    CollapseOrchestrator,
    CollapsePhase,
    OrchestratorConfig,
    OrchestratorStatus,
    RateLimitExceeded,
)
from .scoring import EventWindow, HeuristicRiskScorer
from .sessions import AdmissionBarrier, BarrierClosed, SessionRegistry
from .snapshots import (
    EncryptedSnapshotStore,
    InMemorySnapshotStore,
    NotFoundError,
    RetentionPolicy,
    SnapshotStore,
    StorageError,
)
from .state import (
    CollapseOutcome,
    CollapseRecord,
    ConfigurationState,
    Event,
    EventCategory,
    Identity,
    LayoutDescriptor,
    RiskScore,
    Snapshot,
)

__all__ = [
    "AdmissionBarrier",
    "Alert",
    "ApplyAdapter",
    "ApplyError",
    "BarrierClosed",
    "CollapseAborted",
    "CollapseInProgress",
    "CollapseLedger",
    "CollapseOrchestrator",
    "CollapseOutcome",
    "CollapsePhase",
    "CollapseRecord",
    "ConfigurationState",
    "ConstraintUnsatisfiable",
    "CredentialVerificationError",
    "EncryptedSnapshotStore",
    "Event",
    "EventCategory",
    "EventWindow",
    "HeuristicRiskScorer",
    "Identity",
    "IdentityIssuer",
    "InMemoryApplyAdapter",
    "InMemorySnapshotStore",
    "InstallAck",
    "InvalidConfiguration",
    "IptablesApplyAdapter",
    "LayoutDescriptor",
    "MutationConstraints",
    "MutationEngine",
    "NotFoundError",
    "OrchestratorConfig",
    "OrchestratorStatus",
    "RateLimitExceeded",
    "RetentionPolicy",
    "RevocationProof",
    "RiskScore",
    "SessionRegistry",
    "Snapshot",
    "SnapshotStore",
    "StorageError",
]
