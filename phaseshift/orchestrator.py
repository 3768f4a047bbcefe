"""Collapse orchestration: the freeze, snapshot, mutate, apply, resume transaction."""
from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional

from .adapters import ApplyAdapter, ApplyError, EventSource
from .audit import Alert, CollapseLedger, log_alert
from .mutation import ConstraintUnsatisfiable, InvalidConfiguration, MutationConstraints, MutationEngine
from .sessions import AdmissionBarrier, SessionRegistry
from .snapshots import NotFoundError, RetentionPolicy, SnapshotStore, StorageError
from .state import CollapseOutcome, CollapseRecord, ConfigurationState, RiskScore

logger = logging.getLogger(__name__)


class CollapsePhase(str, Enum):
    NORMAL = "NORMAL"
    SUSPECT = "SUSPECT"
    FREEZING = "FREEZING"
    SNAPSHOTTING = "SNAPSHOTTING"
    MUTATING = "MUTATING"
    APPLYING = "APPLYING"
    RESUMING = "RESUMING"
    LOCKED_OUT = "LOCKED_OUT"


IN_FLIGHT = frozenset(
    {
        CollapsePhase.FREEZING,
        CollapsePhase.SNAPSHOTTING,
        CollapsePhase.MUTATING,
        CollapsePhase.APPLYING,
        CollapsePhase.RESUMING,
    }
)
_ABORTABLE = frozenset({CollapsePhase.FREEZING, CollapsePhase.SNAPSHOTTING, CollapsePhase.MUTATING})


class RateLimitExceeded(RuntimeError):
    """Raised when the rolling collapse budget is exhausted."""


class CollapseAborted(RuntimeError):
    """Raised inside a collapse when it must stop before APPLYING."""


class CollapseInProgress(RuntimeError):
    """Raised when an administrative action cannot run alongside a collapse."""


@dataclass(frozen=True)
class OrchestratorConfig:
    """Tunables of the collapse state machine."""

    sensitivity: float = 0.85
    suspect_watermark: float = 0.5
    suspect_release: float = 0.4
    decay_window: timedelta = timedelta(seconds=30)
    max_collapses: int = 10
    rate_window: timedelta = timedelta(hours=1)
    snapshot_attempts: int = 3
    mutation_attempts: int = 3
    apply_attempts: int = 3
    call_timeout: float = 5.0
    quiesce_timeout: float = 5.0
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    base_sampling_rate: float = 1.0
    heightened_sampling_rate: float = 10.0

    def __post_init__(self) -> None:
        if not 0.0 <= self.suspect_release < self.suspect_watermark <= self.sensitivity <= 1.0:
            raise ValueError(
                "watermarks must satisfy 0 <= suspect_release < suspect_watermark <= sensitivity <= 1"
            )
        if self.max_collapses < 1:
            raise ValueError("max_collapses must be at least 1")
        for name in ("snapshot_attempts", "mutation_attempts", "apply_attempts"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        if self.call_timeout <= 0 or self.quiesce_timeout < 0:
            raise ValueError("timeouts must be positive")
        if self.decay_window < timedelta(0) or self.rate_window <= timedelta(0):
            raise ValueError("decay_window and rate_window must not be negative")


@dataclass(frozen=True)
class OrchestratorStatus:
    """Answer to the administrative current-state query."""

    phase: CollapsePhase
    active_state_id: int
    lockout_reason: Optional[str]
    merged_triggers: int
    last_record: Optional[CollapseRecord]

    @property
    def collapse_in_progress(self) -> bool:
        return self.phase in IN_FLIGHT

    def as_dict(self) -> dict[str, object]:
        return {
            "phase": self.phase.value,
            "active_state_id": self.active_state_id,
            "lockout_reason": self.lockout_reason,
            "merged_triggers": self.merged_triggers,
            "collapse_in_progress": self.collapse_in_progress,
            "last_record": self.last_record.as_dict() if self.last_record else None,
        }


PhaseListener = Callable[[CollapsePhase, CollapsePhase], None]


class CollapseOrchestrator:
    """Serializes collapses of the active configuration into one recoverable transaction.

    The active :class:`ConfigurationState` is only ever replaced by swapping in
    a fully installed successor; every failure before that point leaves the
    pre-collapse state active, and every failure after the install began is
    rolled back from the snapshot captured at the start of the collapse.
    """

    def __init__(
        self,
        initial_state: ConfigurationState,
        *,
        store: SnapshotStore,
        engine: MutationEngine,
        adapter: ApplyAdapter,
        constraints: MutationConstraints,
        config: Optional[OrchestratorConfig] = None,
        sessions: Optional[SessionRegistry] = None,
        barrier: Optional[AdmissionBarrier] = None,
        ledger: Optional[CollapseLedger] = None,
        event_source: Optional[EventSource] = None,
        alert_sink: Optional[Callable[[Alert], None]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._active = initial_state
        self._store = store
        self._engine = engine
        self._adapter = adapter
        self._constraints = constraints
        self._config = config if config is not None else OrchestratorConfig()
        self._sessions = sessions if sessions is not None else SessionRegistry()
        self._barrier = barrier if barrier is not None else AdmissionBarrier()
        self._ledger = ledger if ledger is not None else CollapseLedger()
        self._event_source = event_source
        self._alert_sink = alert_sink or log_alert
        self._clock = clock or _utcnow

        self._phase = CollapsePhase.NORMAL
        self._state_lock = threading.RLock()
        self._transition_lock = threading.Lock()
        self._abort = threading.Event()
        self._lockout_reason: Optional[str] = None
        self._pending_lockout: Optional[str] = None
        self._below_since: Optional[datetime] = None
        self._merged_triggers = 0
        self._listeners: List[PhaseListener] = []
        # One worker keeps external calls ordered even after a timeout.
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="phaseshift-call")

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    @property
    def phase(self) -> CollapsePhase:
        with self._state_lock:
            return self._phase

    @property
    def active_state(self) -> ConfigurationState:
        with self._state_lock:
            return self._active

    @property
    def config(self) -> OrchestratorConfig:
        with self._state_lock:
            return self._config

    @property
    def sessions(self) -> SessionRegistry:
        return self._sessions

    @property
    def barrier(self) -> AdmissionBarrier:
        return self._barrier

    @property
    def ledger(self) -> CollapseLedger:
        return self._ledger

    @property
    def store(self) -> SnapshotStore:
        return self._store

    def status(self) -> OrchestratorStatus:
        with self._state_lock:
            return OrchestratorStatus(
                phase=self._phase,
                active_state_id=self._active.state_id,
                lockout_reason=self._lockout_reason,
                merged_triggers=self._merged_triggers,
                last_record=self._ledger.latest(),
            )

    def session_port(self, token: str) -> Optional[int]:
        """Return the external port the session ``token`` reaches its service on."""

        service = self._sessions.service_for(token)
        if service is None:
            return None
        return self.active_state.external_port_for(service)

    def open_session(self, token: str, service_port: int) -> Optional[int]:
        """Register session ``token`` for a service and return its current external port.

        Admission goes through the barrier so a session is never half
        registered while a collapse computes session bindings.
        """

        with self._barrier.admit(timeout=self.config.quiesce_timeout):
            self._sessions.open(token, service_port)
        return self.session_port(token)

    def close_session(self, token: str) -> bool:
        with self._barrier.admit(timeout=self.config.quiesce_timeout):
            return self._sessions.close(token)

    def add_listener(self, listener: PhaseListener) -> None:
        with self._state_lock:
            self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Detection input
    # ------------------------------------------------------------------
    def observe(self, score: RiskScore | float) -> CollapsePhase:
        """Feed one risk evaluation into the watermark state machine."""

        risk = score if isinstance(score, RiskScore) else RiskScore(value=float(score), timestamp=self._clock())
        trigger = False
        with self._state_lock:
            phase = self._phase
            config = self._config
            if phase in IN_FLIGHT or phase is CollapsePhase.LOCKED_OUT:
                logger.debug("Ignoring risk %.3f while %s", risk.value, phase.value)
                return phase

            if phase is CollapsePhase.NORMAL and risk.value >= config.suspect_watermark:
                self._below_since = None
                self._set_phase(CollapsePhase.SUSPECT)
                self._request_sampling(config.heightened_sampling_rate)
                phase = CollapsePhase.SUSPECT

            if phase is CollapsePhase.SUSPECT:
                if risk.value >= config.sensitivity:
                    trigger = True
                elif risk.value < config.suspect_release:
                    if self._below_since is None:
                        self._below_since = risk.timestamp
                    if risk.timestamp - self._below_since >= config.decay_window:
                        self._below_since = None
                        self._set_phase(CollapsePhase.NORMAL)
                        self._request_sampling(config.base_sampling_rate)
                else:
                    self._below_since = None

        if trigger:
            self.collapse(
                risk.value,
                reason=f"risk {risk.value:.2f} crossed sensitivity {config.sensitivity:.2f}",
            )
        return self.phase

    # ------------------------------------------------------------------
    # Collapse transaction
    # ------------------------------------------------------------------
    def collapse(self, trigger_score: float, *, reason: str = "manual collapse") -> Optional[CollapseRecord]:
        """Run one collapse. Returns ``None`` when merged into a running one or refused."""

        if not self._transition_lock.acquire(blocking=False):
            with self._state_lock:
                self._merged_triggers += 1
            logger.info("Collapse already in progress; merged trigger with score %.3f", trigger_score)
            return None
        try:
            with self._state_lock:
                if not self._admit():
                    return None
            return self._execute(trigger_score, reason)
        finally:
            self._transition_lock.release()

    def abort(self) -> bool:
        """Request that the running collapse stop. Only honored before APPLYING."""

        with self._state_lock:
            if self._phase not in _ABORTABLE:
                return False
            self._abort.set()
        logger.warning("Administrative abort requested")
        return True

    def _admit(self) -> bool:
        if self._phase is CollapsePhase.LOCKED_OUT:
            logger.warning("Collapse refused: orchestrator is locked out (%s)", self._lockout_reason)
            return False
        try:
            self._check_rate_limit()
        except RateLimitExceeded as exc:
            self._enter_lockout(str(exc))
            return False
        if self._phase is CollapsePhase.NORMAL:
            self._set_phase(CollapsePhase.SUSPECT)
        self._abort.clear()
        self._set_phase(CollapsePhase.FREEZING)
        return True

    def _check_rate_limit(self) -> None:
        config = self._config
        recent = self._ledger.count_since(self._clock() - config.rate_window)
        if recent >= config.max_collapses:
            raise RateLimitExceeded(
                f"{recent} collapses within {config.rate_window}; limit is {config.max_collapses}"
            )

    def _execute(self, trigger_score: float, reason: str) -> CollapseRecord:
        started_at = self._clock()
        record_id = uuid.uuid4().hex
        previous = self.active_state
        snapshot_id: Optional[str] = None
        candidate: Optional[ConfigurationState] = None

        def finish(outcome: CollapseOutcome, state_id: int, detail: str = "", *, reopen: bool = True) -> CollapseRecord:
            record = CollapseRecord(
                record_id=record_id,
                trigger_score=trigger_score,
                started_at=started_at,
                ended_at=self._clock(),
                outcome=outcome,
                resulting_state_id=state_id,
                snapshot_id=snapshot_id,
                reason=reason,
                detail=detail,
                candidate_state_id=candidate.state_id if candidate is not None else None,
            )
            self._finish(record, reopen=reopen)
            return record

        logger.info("Collapse %s started (score %.3f): %s", record_id, trigger_score, reason)
        self._barrier.close()
        try:
            if not self._barrier.drain(self._config.quiesce_timeout):
                raise CollapseAborted("in-flight configuration changes did not quiesce")
            self._check_abort()
            snapshot_id = self._capture(previous, trigger_score, reason)
            self._check_abort()
            candidate = self._mutate(previous)
            self._check_abort()
        except CollapseAborted as exc:
            logger.warning("Collapse %s aborted: %s", record_id, exc)
            return finish(CollapseOutcome.ABORTED, previous.state_id, str(exc))
        except StorageError as exc:
            self._alert("critical", f"collapse aborted without a durable snapshot: {exc}")
            return finish(CollapseOutcome.ABORTED, previous.state_id, str(exc))
        except (ConstraintUnsatisfiable, InvalidConfiguration) as exc:
            self._alert("warning", f"collapse aborted, no valid configuration: {exc}")
            return finish(CollapseOutcome.ABORTED, previous.state_id, str(exc))
        except Exception as exc:  # noqa: BLE001 - nothing is live yet, so any fault aborts
            logger.exception("Collapse %s failed before applying", record_id)
            self._alert("critical", f"collapse aborted by an unexpected fault: {exc!r}")
            return finish(CollapseOutcome.ABORTED, previous.state_id, repr(exc))

        # From here on the transaction ends in success or rollback.
        self._set_phase(CollapsePhase.APPLYING)
        try:
            self._install(candidate)
        except ApplyError as exc:
            logger.warning("Install of state %s failed (%s); rolling back to %s", candidate.state_id, exc, snapshot_id)
            try:
                restored = self._call(self._store.restore, snapshot_id)
                self._install(restored)
            except Exception as rollback_exc:  # noqa: BLE001 - any rollback fault leaves the state unknown
                detail = f"{exc}; rollback failed: {str(rollback_exc) or 'timed out'}"
                with self._state_lock:
                    self._pending_lockout = f"rollback to snapshot {snapshot_id} failed"
                self._alert("critical", f"state {candidate.state_id} could not be rolled back: {detail}")
                return finish(CollapseOutcome.ROLLED_BACK, previous.state_id, detail, reopen=False)
            with self._state_lock:
                self._active = restored
            self._alert("warning", f"state {candidate.state_id} rolled back to {restored.state_id}: {exc}")
            return finish(CollapseOutcome.ROLLED_BACK, restored.state_id, str(exc))

        self._set_phase(CollapsePhase.RESUMING)
        with self._state_lock:
            self._active = candidate
        self._resume(previous, candidate)
        return finish(CollapseOutcome.COMPLETED, candidate.state_id)

    def _resume(self, previous: ConfigurationState, current: ConfigurationState) -> None:
        """Bookkeeping after ``current`` went live. Failures here never undo it."""

        try:
            self._call(self._store.mark_active, current)
        except Exception as exc:  # noqa: BLE001 - the new state is already live
            self._alert("warning", f"active state {current.state_id} was not checkpointed: {exc!r}")
        try:
            self._engine.commit(previous, current)
        except Exception:  # noqa: BLE001 - the new state is already live
            logger.exception("Revocation of credentials superseded by state %s failed", current.state_id)
        try:
            self._store.prune(self._config.retention)
        except Exception as exc:  # noqa: BLE001 - the new state is already live
            logger.warning("Snapshot pruning failed: %r", exc)

    def _finish(self, record: CollapseRecord, *, reopen: bool) -> None:
        try:
            self._ledger.append(record)
        except OSError as exc:
            self._alert("critical", f"collapse record {record.record_id} could not be persisted: {exc}")
        if reopen:
            self._barrier.open()
        with self._state_lock:
            self._below_since = None
            if self._pending_lockout is not None:
                self._enter_lockout(self._pending_lockout)
            else:
                self._set_phase(CollapsePhase.NORMAL)
                self._request_sampling(self._config.base_sampling_rate)
        logger.info(
            "Collapse %s finished: %s (active state %s)",
            record.record_id,
            record.outcome.value,
            record.resulting_state_id,
        )

    def _capture(self, state: ConfigurationState, trigger_score: float, reason: str) -> str:
        attempts = self._config.snapshot_attempts
        last_error: Optional[StorageError] = None
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                self._set_phase(CollapsePhase.FREEZING)
                self._check_abort()
            self._set_phase(CollapsePhase.SNAPSHOTTING)
            try:
                return self._call(self._store.capture, state, reason=reason, trigger_score=trigger_score)
            except StorageError as exc:
                last_error = exc
            except FutureTimeout:
                last_error = StorageError("snapshot capture timed out")
            except Exception as exc:  # noqa: BLE001 - any store fault counts as a failed capture
                last_error = StorageError(f"snapshot store failure: {exc!r}")
            logger.warning("Snapshot attempt %s/%s failed: %s", attempt, attempts, last_error)
        raise StorageError(f"no durable snapshot after {attempts} attempts: {last_error}") from last_error

    def _mutate(self, previous: ConfigurationState) -> ConfigurationState:
        self._set_phase(CollapsePhase.MUTATING)
        constraints = replace(self._constraints, sessions=self._sessions.snapshot())
        attempts = self._config.mutation_attempts
        last_error: Optional[InvalidConfiguration] = None
        for attempt in range(1, attempts + 1):
            self._check_abort()
            try:
                candidate = self._call(self._engine.generate, previous, constraints)
                self._engine.validate(candidate, previous, constraints)
                return candidate
            except InvalidConfiguration as exc:
                last_error = exc
            except FutureTimeout:
                last_error = InvalidConfiguration("configuration generation timed out")
            except ConstraintUnsatisfiable:
                raise
            except Exception as exc:  # noqa: BLE001 - any generator fault counts as a rejected candidate
                last_error = InvalidConfiguration(f"configuration generator failure: {exc!r}")
            logger.warning("Mutation attempt %s/%s rejected: %s", attempt, attempts, last_error)
        raise InvalidConfiguration(f"no valid configuration after {attempts} attempts: {last_error}") from last_error

    def _install(self, state: ConfigurationState) -> None:
        """Install ``state`` at least once and confirm it is the live one."""

        attempts = self._config.apply_attempts
        last_error: Optional[ApplyError] = None
        for attempt in range(1, attempts + 1):
            try:
                self._call(self._adapter.install, state)
                observed = self._call(self._adapter.live_state_id)
            except ApplyError as exc:
                last_error = exc
            except FutureTimeout:
                last_error = ApplyError(f"install of state {state.state_id} timed out")
            except Exception as exc:  # noqa: BLE001 - any adapter fault counts as a failed install
                last_error = ApplyError(f"adapter failure: {exc!r}")
            else:
                if observed == state.state_id:
                    return
                last_error = ApplyError(f"adapter reports state {observed}, expected {state.state_id}")
            logger.warning("Install attempt %s/%s failed: %s", attempt, attempts, last_error)
        raise ApplyError(f"state {state.state_id} not confirmed after {attempts} attempts: {last_error}") from last_error

    # ------------------------------------------------------------------
    # Administrative control
    # ------------------------------------------------------------------
    def restore(self, snapshot_id: Optional[str] = None) -> ConfigurationState:
        """Reinstall a snapshot (the most recent by default) and leave LOCKED_OUT."""

        if not self._transition_lock.acquire(timeout=self.config.call_timeout):
            raise CollapseInProgress("a collapse is running; retry once it finishes")
        try:
            try:
                if snapshot_id is None:
                    snapshot = self._call(self._store.latest)
                    if snapshot is None:
                        raise NotFoundError("no snapshot has been captured")
                    snapshot_id = snapshot.snapshot_id
                state = self._call(self._store.restore, snapshot_id)
            except FutureTimeout as exc:
                raise StorageError("snapshot store did not answer in time") from exc

            current = self.active_state
            self._barrier.close()
            try:
                self._install(state)
            except ApplyError as exc:
                try:
                    self._install(current)
                except ApplyError as reinstall_exc:
                    with self._state_lock:
                        self._enter_lockout(f"restore of {snapshot_id} failed and reinstall failed: {reinstall_exc}")
                    raise exc
                self._barrier.open()
                raise

            with self._state_lock:
                self._active = state
                self._lockout_reason = None
                self._pending_lockout = None
                self._below_since = None
                self._set_phase(CollapsePhase.NORMAL)
                self._request_sampling(self._config.base_sampling_rate)
            self._barrier.open()
            try:
                self._call(self._store.mark_active, state)
            except Exception as exc:  # noqa: BLE001 - the restored state is already live
                self._alert("warning", f"restored state {state.state_id} was not checkpointed: {exc!r}")
            logger.info("Restored snapshot %s (state %s)", snapshot_id, state.state_id)
            return state
        finally:
            self._transition_lock.release()

    def enable_lockout(self, reason: str = "administrative lockout") -> None:
        with self._state_lock:
            if self._phase in IN_FLIGHT:
                # Applied when the running collapse finishes.
                self._pending_lockout = reason
                if self._phase in _ABORTABLE:
                    self._abort.set()
                return
            self._enter_lockout(reason)

    def disable_lockout(self) -> bool:
        with self._state_lock:
            if self._phase is not CollapsePhase.LOCKED_OUT:
                return False
            self._lockout_reason = None
            self._below_since = None
            self._set_phase(CollapsePhase.NORMAL)
            self._request_sampling(self._config.base_sampling_rate)
        self._barrier.open()
        logger.info("Lockout lifted; automatic collapses re-enabled")
        return True

    def reconfigure(self, **values: object) -> OrchestratorConfig:
        """Replace tunables such as ``sensitivity`` or ``max_collapses``.

        Waits behind the admission barrier, so tunables never change while a
        collapse is running. Raises :class:`BarrierClosed` if it stays closed.
        """

        with self._barrier.admit(timeout=self.config.quiesce_timeout):
            with self._state_lock:
                self._config = replace(self._config, **values)  # type: ignore[arg-type]
                config = self._config
        logger.info("Orchestrator reconfigured: %s", ", ".join(sorted(values)))
        return config

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _call(self, fn: Callable[..., object], *args: object, **kwargs: object):
        future = self._executor.submit(fn, *args, **kwargs)
        return future.result(timeout=self._config.call_timeout)

    def _check_abort(self) -> None:
        if self._abort.is_set():
            raise CollapseAborted("administrative abort requested")

    def _enter_lockout(self, reason: str) -> None:
        self._lockout_reason = reason
        self._pending_lockout = None
        self._below_since = None
        self._set_phase(CollapsePhase.LOCKED_OUT)
        self._alert("critical", f"automatic collapses disabled: {reason}")

    def _set_phase(self, phase: CollapsePhase) -> None:
        with self._state_lock:
            previous = self._phase
            if previous is phase:
                return
            self._phase = phase
            listeners = list(self._listeners)
        logger.info("Phase %s -> %s", previous.value, phase.value)
        for listener in listeners:
            try:
                listener(previous, phase)
            except Exception:  # noqa: BLE001 - listeners must not break a transition
                logger.exception("Phase listener %r failed", listener)

    def _request_sampling(self, rate: float) -> None:
        if self._event_source is None:
            return
        try:
            self._event_source.set_sampling_rate(rate)
        except Exception:  # noqa: BLE001 - sampling hints are advisory
            logger.exception("Event source rejected sampling rate %s", rate)

    def _alert(self, severity: str, reason: str) -> None:
        alert = Alert(severity=severity, reason=reason, phase=self.phase.value, issued_at=self._clock())
        try:
            self._alert_sink(alert)
        except Exception:  # noqa: BLE001 - alert delivery must not break a transition
            logger.exception("Alert sink failed for %s", reason)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


__all__ = [
    "CollapseAborted",
    "CollapseInProgress",
    "CollapseOrchestrator",
    "CollapsePhase",
    "IN_FLIGHT",
    "OrchestratorConfig",
    "OrchestratorStatus",
    "RateLimitExceeded",
]
