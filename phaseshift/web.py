"""FastAPI application exposing the Phaseshift administrative control surface."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request

from .adapters import ApplyError
from .daemon import CollapseDaemon
from .models import (
    CollapseRecordModel,
    EventsRequest,
    IngestEnvelope,
    LockoutRequest,
    RecordsEnvelope,
    RestoreRequest,
    SnapshotsEnvelope,
    SnapshotSummary,
    StatusEnvelope,
    Thresholds,
    ThresholdsUpdate,
)
from .orchestrator import CollapseInProgress, CollapseOrchestrator
from .sessions import BarrierClosed
from .snapshots import NotFoundError, StorageError

logger = logging.getLogger(__name__)


def create_app(daemon: CollapseDaemon) -> FastAPI:
    """Build the control API around an already wired daemon."""

    app = FastAPI(title="Phaseshift Control", version="0.1.0")
    app.state.daemon = daemon

    @app.get("/healthz")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/state", response_model=StatusEnvelope)
    def api_state(orchestrator: CollapseOrchestrator = Depends(get_orchestrator)) -> StatusEnvelope:
        return _status(orchestrator)

    @app.get("/api/records", response_model=RecordsEnvelope)
    def api_records(
        limit: Optional[int] = Query(default=None, ge=1),
        orchestrator: CollapseOrchestrator = Depends(get_orchestrator),
    ) -> RecordsEnvelope:
        records = orchestrator.ledger.records(limit)
        return RecordsEnvelope(records=[CollapseRecordModel.model_validate(record) for record in records])

    @app.get("/api/snapshots", response_model=SnapshotsEnvelope)
    def api_snapshots(orchestrator: CollapseOrchestrator = Depends(get_orchestrator)) -> SnapshotsEnvelope:
        try:
            snapshots = orchestrator.store.list()
        except StorageError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return SnapshotsEnvelope(snapshots=[SnapshotSummary.from_snapshot(snap) for snap in snapshots])

    @app.post("/api/restore", response_model=StatusEnvelope)
    def api_restore(
        request: RestoreRequest,
        orchestrator: CollapseOrchestrator = Depends(get_orchestrator),
    ) -> StatusEnvelope:
        try:
            orchestrator.restore(request.snapshot_id)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=f"Snapshot not found: {exc.args[0] if exc.args else ''}") from exc
        except CollapseInProgress as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except (StorageError, ApplyError) as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return _status(orchestrator)

    @app.post("/api/lockout", response_model=StatusEnvelope)
    def api_enable_lockout(
        request: LockoutRequest,
        orchestrator: CollapseOrchestrator = Depends(get_orchestrator),
    ) -> StatusEnvelope:
        orchestrator.enable_lockout(request.reason)
        return _status(orchestrator)

    @app.delete("/api/lockout", response_model=StatusEnvelope)
    def api_disable_lockout(orchestrator: CollapseOrchestrator = Depends(get_orchestrator)) -> StatusEnvelope:
        if not orchestrator.disable_lockout():
            raise HTTPException(status_code=409, detail="Orchestrator is not locked out")
        return _status(orchestrator)

    @app.get("/api/thresholds", response_model=Thresholds)
    def api_thresholds(orchestrator: CollapseOrchestrator = Depends(get_orchestrator)) -> Thresholds:
        return Thresholds.from_config(orchestrator.config)

    @app.put("/api/thresholds", response_model=Thresholds)
    def api_update_thresholds(
        update: ThresholdsUpdate,
        orchestrator: CollapseOrchestrator = Depends(get_orchestrator),
    ) -> Thresholds:
        values = update.model_dump(exclude_none=True)
        if "decay_window_seconds" in values:
            values["decay_window"] = timedelta(seconds=values.pop("decay_window_seconds"))
        if "rate_window_seconds" in values:
            values["rate_window"] = timedelta(seconds=values.pop("rate_window_seconds"))
        try:
            config = orchestrator.reconfigure(**values)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except BarrierClosed as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        logger.info("Thresholds updated: %s", sorted(values))
        return Thresholds.from_config(config)

    @app.post("/api/events", response_model=IngestEnvelope)
    def api_events(request: EventsRequest, daemon: CollapseDaemon = Depends(get_daemon)) -> IngestEnvelope:
        now = datetime.now(tz=timezone.utc)
        accepted = sum(1 for item in request.events if daemon.ingest(item.to_event(now)))
        return IngestEnvelope(accepted=accepted, dropped=len(request.events) - accepted)

    return app


def get_daemon(request: Request) -> CollapseDaemon:
    return request.app.state.daemon


def get_orchestrator(daemon: CollapseDaemon = Depends(get_daemon)) -> CollapseOrchestrator:
    return daemon.orchestrator


def _status(orchestrator: CollapseOrchestrator) -> StatusEnvelope:
    return StatusEnvelope.build(orchestrator.status(), orchestrator.active_state)


__all__ = ["create_app", "get_daemon", "get_orchestrator"]
