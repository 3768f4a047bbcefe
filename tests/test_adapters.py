from __future__ import annotations

import random
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from phaseshift.adapters import ApplyError, InMemoryApplyAdapter, IptablesApplyAdapter  # noqa: E402
from phaseshift.mutation import MutationConstraints, MutationEngine  # noqa: E402


def build_states():
    constraints = MutationConstraints(port_range=(30000, 30099), services=frozenset({22, 443}))
    engine = MutationEngine(rng=random.Random(3))
    first = engine.bootstrap(constraints)
    return first, engine.generate(first, constraints)


def test_in_memory_install_is_idempotent():
    adapter = InMemoryApplyAdapter()
    state, _ = build_states()

    assert adapter.live_state_id() is None
    assert adapter.install(state).changed
    assert not adapter.install(state).changed
    assert adapter.installed == [state.state_id]
    assert adapter.live_state is state


def test_iptables_render_redirects_every_external_port(tmp_path):
    adapter = IptablesApplyAdapter(tmp_path / "rules")
    state, _ = build_states()
    rendered = adapter.render(state)

    assert rendered.startswith(f"# phaseshift state {state.state_id}\n")
    assert "*nat" in rendered
    assert rendered.rstrip().endswith("COMMIT")
    for external, internal in state.port_map.items():
        assert f"--dport {external} -j REDIRECT --to-ports {internal}" in rendered


def test_iptables_install_writes_rules_and_reports_live_state(tmp_path):
    calls = []
    adapter = IptablesApplyAdapter(tmp_path / "rules", runner=calls.append)
    first, second = build_states()

    assert adapter.live_state_id() is None
    adapter.install(first)
    assert adapter.live_state_id() == first.state_id
    assert not adapter.install(first).changed
    adapter.install(second)

    assert adapter.live_state_id() == second.state_id
    assert calls == [adapter.rules_path, adapter.rules_path]


def test_iptables_runner_failure_surfaces_as_apply_error(tmp_path):
    def runner(path):
        raise RuntimeError("iptables-restore: line 3 failed")

    adapter = IptablesApplyAdapter(tmp_path / "rules", runner=runner)
    state, _ = build_states()

    with pytest.raises(ApplyError):
        adapter.install(state)
