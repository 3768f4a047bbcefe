from __future__ import annotations

import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from phaseshift.audit import Alert, CollapseLedger, log_alert  # noqa: E402
from phaseshift.state import CollapseOutcome, CollapseRecord  # noqa: E402

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _record(record_id: str, started_at: datetime, outcome=CollapseOutcome.COMPLETED) -> CollapseRecord:
    return CollapseRecord(
        record_id=record_id,
        trigger_score=0.9,
        started_at=started_at,
        ended_at=started_at + timedelta(seconds=1),
        outcome=outcome,
        resulting_state_id=2,
    )


def test_ledger_counts_records_inside_window():
    ledger = CollapseLedger()
    ledger.append(_record("old", NOW - timedelta(hours=2)))
    ledger.append(_record("recent", NOW - timedelta(minutes=5), CollapseOutcome.ABORTED))
    ledger.append(_record("now", NOW))

    assert ledger.count_since(NOW - timedelta(hours=1)) == 2
    assert ledger.latest().record_id == "now"
    assert [r.record_id for r in ledger.records(limit=2)] == ["recent", "now"]
    assert len(ledger) == 3


def test_ledger_replays_persisted_records(tmp_path):
    path = tmp_path / "audit" / "collapses.jsonl"
    ledger = CollapseLedger(path)
    ledger.append(_record("a", NOW))
    ledger.append(_record("b", NOW + timedelta(minutes=1), CollapseOutcome.ROLLED_BACK))

    reopened = CollapseLedger(path)

    assert [r.record_id for r in reopened.records()] == ["a", "b"]
    assert reopened.latest().outcome is CollapseOutcome.ROLLED_BACK


def test_ledger_rejects_malformed_lines(tmp_path):
    path = tmp_path / "collapses.jsonl"
    path.write_text('{"record_id": "x"}\n', encoding="utf-8")

    with pytest.raises(RuntimeError):
        CollapseLedger(path)


def test_critical_alerts_are_logged_at_critical(caplog):
    alert = Alert(severity="critical", reason="rate limit", phase="SUSPECT", issued_at=NOW)

    with caplog.at_level(logging.WARNING, logger="phaseshift.audit"):
        log_alert(alert)
        log_alert(Alert(severity="warning", reason="rolled back", phase="APPLYING", issued_at=NOW))

    levels = [record.levelno for record in caplog.records]
    assert levels == [logging.CRITICAL, logging.WARNING]
    assert alert.as_dict()["phase"] == "SUSPECT"
