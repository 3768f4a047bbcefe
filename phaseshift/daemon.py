"""Evaluation loop tying ingestion, scoring and the orchestrator together."""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from .adapters import ApplyAdapter, InMemoryApplyAdapter, IptablesApplyAdapter, RiskScorer
from .audit import CollapseLedger
from .config import Settings, get_settings
from .mutation import MutationEngine
from .orchestrator import CollapseOrchestrator
from .scoring import EventWindow, HeuristicRiskScorer
from .snapshots import EncryptedSnapshotStore, InMemorySnapshotStore, SnapshotStore
from .state import Event, RiskScore

logger = logging.getLogger(__name__)


class LocalEventSource:
    """In-process event source that fans published events out to subscribers."""

    def __init__(self, sampling_rate: float = 1.0) -> None:
        self._lock = threading.Lock()
        self._subscribers: List[Callable[[Event], None]] = []
        self._sampling_rate = sampling_rate

    @property
    def sampling_rate(self) -> float:
        with self._lock:
            return self._sampling_rate

    def subscribe(self, callback: Callable[[Event], None]) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def set_sampling_rate(self, rate: float) -> None:
        if rate <= 0:
            raise ValueError("sampling rate must be positive")
        with self._lock:
            self._sampling_rate = rate
        logger.info("Sampling rate set to %s", rate)

    def publish(self, event: Event) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(event)


class CollapseDaemon:
    """Scores the recent event window on a fixed interval and feeds the orchestrator."""

    def __init__(
        self,
        orchestrator: CollapseOrchestrator,
        scorer: RiskScorer,
        window: EventWindow,
        *,
        source: Optional[LocalEventSource] = None,
        interval: float = 1.0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._orchestrator = orchestrator
        self._scorer = scorer
        self._window = window
        self._source = source
        self._interval = interval
        self._clock = clock or _utcnow
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        if source is not None:
            source.subscribe(self.ingest)

    @property
    def orchestrator(self) -> CollapseOrchestrator:
        return self._orchestrator

    @property
    def window(self) -> EventWindow:
        return self._window

    @property
    def source(self) -> Optional[LocalEventSource]:
        return self._source

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def ingest(self, event: Event) -> bool:
        return self._window.push(event)

    def tick(self, now: Optional[datetime] = None) -> Optional[RiskScore]:
        """Run one evaluation. Returns ``None`` when the scorer failed."""

        moment = now or self._clock()
        events = self._window.window(moment)
        try:
            value = float(self._scorer.score(events))
        except Exception:  # noqa: BLE001 - a faulty scorer skips the tick
            logger.exception("Risk scorer failed on %s events", len(events))
            return None
        risk = RiskScore(value=max(0.0, min(1.0, value)), timestamp=moment, window=events)
        logger.debug("Risk %.3f over %s events", risk.value, len(events))
        self._orchestrator.observe(risk)
        return risk

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="phaseshift-daemon", daemon=True)
        self._thread.start()
        logger.info("Evaluation loop started (interval %.2fs)", self._interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self._orchestrator.close()
        logger.info("Evaluation loop stopped")

    def _current_interval(self) -> float:
        rate = self._source.sampling_rate if self._source is not None else 1.0
        return self._interval / max(rate, 1.0)

    def _run(self) -> None:
        while not self._stop.wait(self._current_interval()):
            self.tick()


def build_daemon(settings: Optional[Settings] = None) -> CollapseDaemon:
    """Wire a daemon from ``settings``, resuming the last committed state if any."""

    settings = settings or get_settings()
    constraints = settings.mutation_constraints()
    engine = MutationEngine()

    store: SnapshotStore
    ledger: CollapseLedger
    if settings.snapshot_key:
        store = EncryptedSnapshotStore(settings.snapshot_key, settings.snapshot_directory)
        ledger = CollapseLedger(settings.ledger_path)
    else:
        logger.warning("PHASESHIFT_SNAPSHOT_KEY is unset; snapshots are kept in memory only")
        store = InMemorySnapshotStore()
        ledger = CollapseLedger()

    adapter: ApplyAdapter
    if settings.apply_backend == "iptables":
        adapter = IptablesApplyAdapter(settings.resolved_rules_path)
    else:
        adapter = InMemoryApplyAdapter()

    engine.resume(_highest_state_id(store, ledger))
    initial = store.active()
    latest = store.latest()
    if initial is not None:
        logger.info("Resuming active state %s", initial.state_id)
    elif latest is not None:
        initial = store.restore(latest.snapshot_id)
        logger.info("Resuming from snapshot %s (state %s)", latest.snapshot_id, initial.state_id)
    else:
        initial = engine.bootstrap(constraints)
        store.capture(initial, reason="bootstrap")
        logger.info("Bootstrapped state %s for %s services", initial.state_id, len(initial.port_map))
    adapter.install(initial)
    store.mark_active(initial)

    source = LocalEventSource(settings.base_sampling_rate)
    orchestrator = CollapseOrchestrator(
        initial,
        store=store,
        engine=engine,
        adapter=adapter,
        constraints=constraints,
        config=settings.orchestrator_config(),
        ledger=ledger,
        event_source=source,
    )
    window = EventWindow(
        span=timedelta(seconds=settings.evaluation_window_seconds),
        max_skew=timedelta(seconds=settings.max_event_skew_seconds),
        capacity=settings.event_capacity,
    )
    return CollapseDaemon(
        orchestrator,
        HeuristicRiskScorer(),
        window,
        source=source,
        interval=settings.evaluation_interval_seconds,
    )


def _highest_state_id(store: SnapshotStore, ledger: CollapseLedger) -> int:
    known = [snapshot.state.state_id for snapshot in store.list()]
    known.extend(record.resulting_state_id for record in ledger.records())
    known.extend(record.candidate_state_id for record in ledger.records() if record.candidate_state_id is not None)
    active = store.active()
    if active is not None:
        known.append(active.state_id)
    return max(known, default=0)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


__all__ = ["CollapseDaemon", "LocalEventSource", "build_daemon"]
