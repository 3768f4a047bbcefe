from __future__ import annotations

import sys
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from phaseshift.state import (  # noqa: E402
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

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


def build_state(**overrides) -> ConfigurationState:
    values = {
        "state_id": 3,
        "port_map": {31000: 22, 31001: 443},
        "layout": LayoutDescriptor(token="abc", generation=2),
        "identities": {
            "operator": Identity(
                subject="operator",
                credential_id="cred-1",
                issued_at=NOW,
                expires_at=NOW + timedelta(hours=1),
                nonce="n",
                signature="aa",
            )
        },
        "session_bindings": {"tok": 31001},
    }
    values.update(overrides)
    return ConfigurationState(**values)


def test_event_from_payload_coerces_probe_fields():
    event = Event.from_payload(
        {
            "timestamp": "2025-01-01T00:00:05Z",
            "type": "auth-fail",
            "source_id": "sshd",
            "magnitude": "2.5",
        }
    )

    assert event.category is EventCategory.AUTH_FAIL
    assert event.source == "sshd"
    assert event.magnitude == 2.5
    assert event.timestamp == NOW + timedelta(seconds=5)


def test_unknown_event_category_maps_to_other():
    event = Event.from_payload({"category": "kernel-oops", "magnitude": "n/a"})

    assert event.category is EventCategory.OTHER
    assert event.magnitude == 1.0
    assert event.timestamp.tzinfo is not None


def test_risk_score_rejects_values_outside_unit_interval():
    with pytest.raises(ValueError):
        RiskScore(value=1.2, timestamp=NOW)
    with pytest.raises(ValueError):
        RiskScore(value=-0.1, timestamp=NOW)


def test_configuration_state_survives_serialization():
    state = build_state(grace_until=NOW + timedelta(seconds=30))
    restored = ConfigurationState.from_dict(state.as_dict())

    assert restored == state
    assert restored.fingerprint() == state.fingerprint()


def test_port_map_queries():
    state = build_state()

    assert state.services == frozenset({22, 443})
    assert state.external_port_for(443) == 31001
    assert state.external_port_for(8080) is None
    assert state.is_bijective()
    assert not build_state(port_map={31000: 22, 31001: 22}).is_bijective()
    assert state.latest_expiry() == NOW + timedelta(hours=1)


def test_fingerprint_changes_with_mapping():
    state = build_state()
    remapped = build_state(port_map={31002: 22, 31001: 443})

    assert state.fingerprint() != remapped.fingerprint()


def test_snapshot_verify_detects_tampering():
    state = build_state()
    snapshot = Snapshot(
        snapshot_id="snap-1",
        sequence=1,
        state=state,
        reason="test",
        trigger_score=0.9,
        captured_at=NOW,
        checksum=state.fingerprint(),
    )

    assert snapshot.verify()
    assert Snapshot.from_dict(snapshot.as_dict()) == snapshot
    assert not replace(snapshot, state=build_state(state_id=4)).verify()


def test_collapse_record_from_dict():
    record = CollapseRecord(
        record_id="r1",
        trigger_score=0.91,
        started_at=NOW,
        ended_at=NOW + timedelta(seconds=2),
        outcome=CollapseOutcome.ROLLED_BACK,
        resulting_state_id=3,
        snapshot_id="snap-1",
        reason="risk",
        detail="adapter refused",
    )

    assert CollapseRecord.from_dict(record.as_dict()) == record
