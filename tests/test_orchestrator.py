from __future__ import annotations

import random
import sys
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from phaseshift.adapters import ApplyError, InMemoryApplyAdapter  # noqa: E402
from phaseshift.audit import CollapseLedger  # noqa: E402
from phaseshift.mutation import MutationConstraints, MutationEngine  # noqa: E402
from phaseshift.orchestrator import (  # noqa: E402
    CollapseOrchestrator,
    CollapsePhase,
    OrchestratorConfig,
)
from phaseshift.sessions import BarrierClosed, SessionRegistry  # noqa: E402
from phaseshift.snapshots import InMemorySnapshotStore, NotFoundError, StorageError  # noqa: E402
from phaseshift.state import CollapseOutcome, RiskScore  # noqa: E402


class DummyAdapter(InMemoryApplyAdapter):
    """Refuses every state newer than ``reject_above`` when set."""

    def __init__(self) -> None:
        super().__init__()
        self.reject_above = None

    def install(self, state):
        if self.reject_above is not None and state.state_id > self.reject_above:
            raise ApplyError(f"firewall refused state {state.state_id}")
        return super().install(state)


class BlockingAdapter(InMemoryApplyAdapter):
    def __init__(self) -> None:
        super().__init__()
        self.block_above = None
        self.entered = threading.Event()
        self.release = threading.Event()

    def install(self, state):
        if self.block_above is not None and state.state_id > self.block_above:
            self.entered.set()
            self.release.wait(5.0)
        return super().install(state)


class GatedStore(InMemorySnapshotStore):
    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def capture(self, state, *, reason="", trigger_score=None):
        self.entered.set()
        self.release.wait(5.0)
        return super().capture(state, reason=reason, trigger_score=trigger_score)


class BrokenRestoreStore(InMemorySnapshotStore):
    def restore(self, snapshot_id):
        raise StorageError("backing volume unavailable")


def build(*, adapter=None, store=None, config=None, port_range=(30000, 30999), services=(22, 443)):
    constraints = MutationConstraints(
        port_range=port_range,
        services=frozenset(services),
        subjects=frozenset({"operator"}),
    )
    engine = MutationEngine(rng=random.Random(7))
    initial = engine.bootstrap(constraints)
    adapter = adapter or DummyAdapter()
    adapter.install(initial)
    alerts = []
    orchestrator = CollapseOrchestrator(
        initial,
        store=store or InMemorySnapshotStore(),
        engine=engine,
        adapter=adapter,
        constraints=constraints,
        config=config or OrchestratorConfig(call_timeout=5.0, quiesce_timeout=0.5),
        alert_sink=alerts.append,
    )
    return orchestrator, adapter, alerts


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_spike_runs_the_full_collapse_sequence():
    orchestrator, adapter, alerts = build()
    initial = orchestrator.active_state
    phases = []
    orchestrator.add_listener(lambda old, new: phases.append(new))

    final = orchestrator.observe(0.9)

    assert phases == [
        CollapsePhase.SUSPECT,
        CollapsePhase.FREEZING,
        CollapsePhase.SNAPSHOTTING,
        CollapsePhase.MUTATING,
        CollapsePhase.APPLYING,
        CollapsePhase.RESUMING,
        CollapsePhase.NORMAL,
    ]
    assert final is CollapsePhase.NORMAL
    assert len(orchestrator.store.list()) == 1
    records = orchestrator.ledger.records()
    assert len(records) == 1
    assert records[0].outcome is CollapseOutcome.COMPLETED
    assert records[0].resulting_state_id == orchestrator.active_state.state_id
    assert orchestrator.store.get(records[0].snapshot_id).state == initial
    assert orchestrator.active_state.state_id > initial.state_id
    assert adapter.live_state_id() == orchestrator.active_state.state_id
    assert not orchestrator.barrier.closed
    assert alerts == []


def test_completed_collapse_remaps_every_service():
    orchestrator, _, _ = build()
    initial = orchestrator.active_state

    orchestrator.collapse(0.95)
    current = orchestrator.active_state

    assert current.services == initial.services
    assert not set(current.port_map.items()) & set(initial.port_map.items())
    assert current.layout.token != initial.layout.token
    assert current.latest_expiry() > initial.latest_expiry()


def test_scores_below_watermark_never_change_state():
    orchestrator, _, _ = build()
    state_id = orchestrator.active_state.state_id

    for value in (0.1, 0.3, 0.49, 0.2):
        assert orchestrator.observe(value) is CollapsePhase.NORMAL

    assert orchestrator.active_state.state_id == state_id
    assert len(orchestrator.ledger) == 0


def test_suspect_decays_back_to_normal_after_window():
    orchestrator, _, _ = build(
        config=OrchestratorConfig(decay_window=timedelta(seconds=30), quiesce_timeout=0.5)
    )
    start = datetime(2025, 1, 1, tzinfo=timezone.utc)

    assert orchestrator.observe(RiskScore(0.6, start)) is CollapsePhase.SUSPECT
    assert orchestrator.observe(RiskScore(0.2, start + timedelta(seconds=10))) is CollapsePhase.SUSPECT
    assert orchestrator.observe(RiskScore(0.45, start + timedelta(seconds=20))) is CollapsePhase.SUSPECT
    assert orchestrator.observe(RiskScore(0.2, start + timedelta(seconds=25))) is CollapsePhase.SUSPECT
    assert orchestrator.observe(RiskScore(0.2, start + timedelta(seconds=56))) is CollapsePhase.NORMAL
    assert len(orchestrator.ledger) == 0


def test_rate_limit_locks_out_after_budget():
    orchestrator, _, alerts = build(config=OrchestratorConfig(max_collapses=10, quiesce_timeout=0.5))

    for _ in range(11):
        orchestrator.observe(0.95)

    assert orchestrator.phase is CollapsePhase.LOCKED_OUT
    assert len(orchestrator.ledger) == 10
    assert all(r.outcome is CollapseOutcome.COMPLETED for r in orchestrator.ledger.records())
    assert any(alert.severity == "critical" for alert in alerts)
    assert orchestrator.status().lockout_reason


def test_locked_out_ignores_scores_until_lifted():
    orchestrator, _, _ = build()
    state_id = orchestrator.active_state.state_id

    orchestrator.enable_lockout("maintenance")
    assert orchestrator.observe(0.99) is CollapsePhase.LOCKED_OUT
    assert orchestrator.collapse(0.99) is None
    assert orchestrator.active_state.state_id == state_id

    assert orchestrator.disable_lockout()
    assert orchestrator.phase is CollapsePhase.NORMAL
    assert not orchestrator.disable_lockout()


def test_apply_failure_rolls_back_to_snapshot():
    orchestrator, adapter, alerts = build()
    initial = orchestrator.active_state
    adapter.reject_above = initial.state_id

    record = orchestrator.collapse(0.95)

    assert record.outcome is CollapseOutcome.ROLLED_BACK
    assert record.resulting_state_id == initial.state_id
    assert record.snapshot_id is not None
    assert orchestrator.active_state == initial
    assert adapter.live_state_id() == initial.state_id
    assert orchestrator.phase is CollapsePhase.NORMAL
    assert any(alert.severity == "warning" for alert in alerts)


def test_failed_rollback_locks_out():
    orchestrator, adapter, alerts = build(store=BrokenRestoreStore())
    initial = orchestrator.active_state
    adapter.reject_above = initial.state_id

    record = orchestrator.collapse(0.95)

    assert record.outcome is CollapseOutcome.ROLLED_BACK
    assert "rollback failed" in record.detail
    assert orchestrator.phase is CollapsePhase.LOCKED_OUT
    assert orchestrator.active_state == initial
    assert orchestrator.barrier.closed
    assert any(alert.severity == "critical" for alert in alerts)


def test_storage_failure_aborts_without_touching_state():
    orchestrator, adapter, alerts = build(store=InMemorySnapshotStore(capacity=0))
    initial = orchestrator.active_state

    record = orchestrator.collapse(0.95)

    assert record.outcome is CollapseOutcome.ABORTED
    assert record.snapshot_id is None
    assert orchestrator.active_state == initial
    assert adapter.installed == [initial.state_id]
    assert orchestrator.phase is CollapsePhase.NORMAL
    assert any(alert.severity == "critical" for alert in alerts)


def test_unsatisfiable_constraints_abort_after_snapshot():
    orchestrator, _, alerts = build(port_range=(30000, 30000), services=(22,))
    initial = orchestrator.active_state

    record = orchestrator.collapse(0.95)

    assert record.outcome is CollapseOutcome.ABORTED
    assert record.snapshot_id is not None
    assert orchestrator.active_state == initial
    assert alerts


def test_concurrent_triggers_yield_one_collapse():
    adapter = BlockingAdapter()
    orchestrator, _, _ = build(adapter=adapter)
    adapter.block_above = orchestrator.active_state.state_id
    results = []

    worker = threading.Thread(target=lambda: results.append(orchestrator.collapse(0.95)))
    worker.start()
    assert adapter.entered.wait(5.0)

    assert orchestrator.phase is CollapsePhase.APPLYING
    assert orchestrator.collapse(0.99) is None
    assert orchestrator.observe(0.99) is CollapsePhase.APPLYING
    assert not orchestrator.abort()

    adapter.release.set()
    worker.join(5.0)

    assert len(orchestrator.ledger) == 1
    assert results[0].outcome is CollapseOutcome.COMPLETED
    assert orchestrator.status().merged_triggers == 1


def test_abort_is_honored_before_applying():
    store = GatedStore()
    orchestrator, adapter, _ = build(store=store)
    initial = orchestrator.active_state
    results = []

    worker = threading.Thread(target=lambda: results.append(orchestrator.collapse(0.95)))
    worker.start()
    assert store.entered.wait(5.0)
    assert wait_for(lambda: orchestrator.phase is CollapsePhase.SNAPSHOTTING)

    assert orchestrator.abort()
    store.release.set()
    worker.join(5.0)

    assert results[0].outcome is CollapseOutcome.ABORTED
    assert orchestrator.active_state == initial
    assert adapter.installed == [initial.state_id]
    assert orchestrator.phase is CollapsePhase.NORMAL


def test_lockout_requested_mid_collapse_applies_afterwards():
    store = GatedStore()
    orchestrator, _, _ = build(store=store)
    worker = threading.Thread(target=lambda: orchestrator.collapse(0.95))
    worker.start()
    assert store.entered.wait(5.0)

    orchestrator.enable_lockout("operator request")
    store.release.set()
    worker.join(5.0)

    assert orchestrator.phase is CollapsePhase.LOCKED_OUT
    assert orchestrator.ledger.latest().outcome is CollapseOutcome.ABORTED


def test_restore_reinstalls_snapshot_and_leaves_lockout():
    orchestrator, adapter, _ = build()
    initial = orchestrator.active_state
    orchestrator.collapse(0.95)
    orchestrator.enable_lockout("investigating")

    restored = orchestrator.restore()

    assert restored == initial
    assert orchestrator.active_state == initial
    assert adapter.live_state_id() == initial.state_id
    assert orchestrator.phase is CollapsePhase.NORMAL
    assert orchestrator.status().lockout_reason is None


def test_restore_unknown_snapshot_changes_nothing():
    orchestrator, _, _ = build()
    orchestrator.collapse(0.95)
    current = orchestrator.active_state

    with pytest.raises(NotFoundError):
        orchestrator.restore("snap-does-not-exist")

    assert orchestrator.active_state == current


def test_sessions_survive_a_collapse():
    orchestrator, _, _ = build()
    before = orchestrator.open_session("tok", 443)

    orchestrator.collapse(0.95)

    after = orchestrator.session_port("tok")
    assert after is not None
    assert after != before
    assert orchestrator.active_state.session_bindings["tok"] == after


def test_reconfigure_validates_thresholds():
    orchestrator, _, _ = build()

    config = orchestrator.reconfigure(sensitivity=0.95)
    assert config.sensitivity == 0.95
    with pytest.raises(ValueError):
        orchestrator.reconfigure(suspect_release=0.9)
    assert orchestrator.config.suspect_release == 0.4


def test_config_rejects_inverted_watermarks():
    with pytest.raises(ValueError):
        OrchestratorConfig(sensitivity=0.4, suspect_watermark=0.5)


class FailingCaptureStore(InMemorySnapshotStore):
    def capture(self, state, *, reason="", trigger_score=None):
        raise OSError(28, "No space left on device")


class StalledStore(InMemorySnapshotStore):
    def __init__(self) -> None:
        super().__init__()
        self.release = threading.Event()

    def capture(self, state, *, reason="", trigger_score=None):
        self.release.wait(5.0)
        return super().capture(state, reason=reason, trigger_score=trigger_score)


class SlowAdapter(InMemoryApplyAdapter):
    """Installs states newer than ``slow_above`` only after ``delay`` seconds."""

    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay
        self.slow_above = None

    def install(self, state):
        if self.slow_above is not None and state.state_id > self.slow_above:
            time.sleep(self.delay)
        return super().install(state)


class BrokenEngine(MutationEngine):
    def generate(self, previous, constraints):
        if previous.port_map:
            raise RuntimeError("entropy source unavailable")
        return super().generate(previous, constraints)


class StalledEngine(MutationEngine):
    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.release = threading.Event()

    def generate(self, previous, constraints):
        if previous.port_map:
            self.release.wait(5.0)
        return super().generate(previous, constraints)


class RevocationFailingEngine(MutationEngine):
    def commit(self, previous, current):
        raise RuntimeError("revocation list unavailable")


def build_with_engine(engine, **kwargs):
    constraints = MutationConstraints(
        port_range=(30000, 30999),
        services=frozenset({22, 443}),
        subjects=frozenset({"operator"}),
    )
    initial = engine.bootstrap(constraints)
    adapter = InMemoryApplyAdapter()
    adapter.install(initial)
    alerts = []
    orchestrator = CollapseOrchestrator(
        initial,
        store=InMemorySnapshotStore(),
        engine=engine,
        adapter=adapter,
        constraints=constraints,
        config=kwargs.pop("config", OrchestratorConfig(quiesce_timeout=0.5)),
        alert_sink=alerts.append,
        **kwargs,
    )
    return orchestrator, adapter, alerts


def test_injected_empty_ledger_and_sessions_are_used(tmp_path):
    ledger = CollapseLedger(tmp_path / "collapses.jsonl")
    sessions = SessionRegistry()
    orchestrator, _, _ = build_with_engine(
        MutationEngine(rng=random.Random(3)), ledger=ledger, sessions=sessions
    )
    sessions.open("tok", 443)

    orchestrator.collapse(0.9)

    assert orchestrator.ledger is ledger
    assert orchestrator.sessions is sessions
    assert len(ledger) == 1
    assert (tmp_path / "collapses.jsonl").exists()
    assert orchestrator.session_port("tok") == orchestrator.active_state.external_port_for(443)
    assert orchestrator.active_state.session_bindings == {"tok": orchestrator.session_port("tok")}


def test_unexpected_store_fault_aborts_and_keeps_detection_alive():
    orchestrator, adapter, alerts = build(store=FailingCaptureStore())
    initial = orchestrator.active_state

    record = orchestrator.collapse(0.9)

    assert record.outcome is CollapseOutcome.ABORTED
    assert "No space left" in record.detail
    assert orchestrator.active_state == initial
    assert adapter.installed == [initial.state_id]
    assert orchestrator.phase is CollapsePhase.NORMAL
    assert not orchestrator.barrier.closed
    assert any(alert.severity == "critical" for alert in alerts)
    assert orchestrator.observe(0.6) is CollapsePhase.SUSPECT


def test_unexpected_generator_fault_aborts():
    orchestrator, _, alerts = build_with_engine(BrokenEngine(rng=random.Random(3)))
    initial = orchestrator.active_state

    record = orchestrator.collapse(0.9)

    assert record.outcome is CollapseOutcome.ABORTED
    assert "entropy source unavailable" in record.detail
    assert orchestrator.active_state == initial
    assert orchestrator.phase is CollapsePhase.NORMAL
    assert alerts


def test_revocation_fault_does_not_undo_a_completed_collapse():
    orchestrator, adapter, _ = build_with_engine(RevocationFailingEngine(rng=random.Random(3)))
    initial = orchestrator.active_state

    record = orchestrator.collapse(0.9)

    assert record.outcome is CollapseOutcome.COMPLETED
    assert orchestrator.active_state.state_id > initial.state_id
    assert adapter.live_state_id() == orchestrator.active_state.state_id
    assert orchestrator.phase is CollapsePhase.NORMAL


def test_completed_collapse_checkpoints_the_live_state():
    orchestrator, _, _ = build()

    orchestrator.collapse(0.9)

    assert orchestrator.store.active() == orchestrator.active_state
    assert orchestrator.store.latest().state != orchestrator.active_state


def test_snapshot_timeout_aborts_after_retries():
    store = StalledStore()
    orchestrator, adapter, alerts = build(
        store=store,
        config=OrchestratorConfig(call_timeout=0.05, quiesce_timeout=0.5),
    )
    initial = orchestrator.active_state
    try:
        record = orchestrator.collapse(0.9)
    finally:
        store.release.set()

    assert record.outcome is CollapseOutcome.ABORTED
    assert "timed out" in record.detail
    assert record.resulting_state_id == initial.state_id
    assert orchestrator.active_state == initial
    assert adapter.installed == [initial.state_id]
    assert orchestrator.phase is CollapsePhase.NORMAL
    assert any(alert.severity == "critical" for alert in alerts)


def test_generation_timeout_aborts_after_retries():
    engine = StalledEngine(rng=random.Random(3))
    orchestrator, adapter, _ = build_with_engine(
        engine, config=OrchestratorConfig(call_timeout=0.05, quiesce_timeout=0.5)
    )
    initial = orchestrator.active_state
    try:
        record = orchestrator.collapse(0.9)
    finally:
        engine.release.set()

    assert record.outcome is CollapseOutcome.ABORTED
    assert "timed out" in record.detail
    assert record.snapshot_id is not None
    assert record.resulting_state_id == initial.state_id
    assert adapter.installed == [initial.state_id]
    assert orchestrator.phase is CollapsePhase.NORMAL


def test_install_timeout_rolls_back_to_snapshot():
    adapter = SlowAdapter(delay=0.25)
    orchestrator, _, alerts = build(
        adapter=adapter,
        config=OrchestratorConfig(call_timeout=0.2, quiesce_timeout=0.5, apply_attempts=1),
    )
    initial = orchestrator.active_state
    adapter.slow_above = initial.state_id

    record = orchestrator.collapse(0.9)

    assert record.outcome is CollapseOutcome.ROLLED_BACK
    assert "timed out" in record.detail
    assert record.resulting_state_id == initial.state_id
    assert record.candidate_state_id > initial.state_id
    assert orchestrator.active_state == initial
    assert adapter.live_state_id() == initial.state_id
    assert orchestrator.phase is CollapsePhase.NORMAL
    assert any(alert.severity == "warning" for alert in alerts)


def test_rollback_timeout_locks_out():
    adapter = BlockingAdapter()
    orchestrator, _, alerts = build(
        adapter=adapter,
        config=OrchestratorConfig(call_timeout=0.05, quiesce_timeout=0.5, apply_attempts=1),
    )
    initial = orchestrator.active_state
    adapter.block_above = initial.state_id
    try:
        record = orchestrator.collapse(0.9)
    finally:
        adapter.release.set()

    assert record.outcome is CollapseOutcome.ROLLED_BACK
    assert "rollback failed: timed out" in record.detail
    assert record.resulting_state_id == initial.state_id
    assert orchestrator.active_state == initial
    assert orchestrator.phase is CollapsePhase.LOCKED_OUT
    assert orchestrator.barrier.closed
    assert any(alert.severity == "critical" for alert in alerts)


def test_collapse_waits_for_admitted_changes_then_aborts():
    orchestrator, adapter, _ = build(config=OrchestratorConfig(call_timeout=5.0, quiesce_timeout=0.1))
    initial = orchestrator.active_state

    with orchestrator.barrier.admit():
        record = orchestrator.collapse(0.9)

    assert record.outcome is CollapseOutcome.ABORTED
    assert "quiesce" in record.detail
    assert adapter.installed == [initial.state_id]
    assert orchestrator.phase is CollapsePhase.NORMAL


def test_configuration_changes_wait_for_a_running_collapse():
    store = GatedStore()
    orchestrator, _, _ = build(store=store, config=OrchestratorConfig(quiesce_timeout=0.1))
    worker = threading.Thread(target=lambda: orchestrator.collapse(0.9))
    worker.start()
    assert store.entered.wait(5.0)

    with pytest.raises(BarrierClosed):
        orchestrator.reconfigure(sensitivity=0.95)
    with pytest.raises(BarrierClosed):
        orchestrator.open_session("late", 22)

    store.release.set()
    worker.join(5.0)

    assert orchestrator.config.sensitivity == 0.85
    assert orchestrator.open_session("late", 22) == orchestrator.active_state.external_port_for(22)
    assert orchestrator.close_session("late")
