"""Shared fixtures for Network Doctor tests.

Fixtures are auto-injected by pytest. Helper functions are in helpers.py.
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add parent directory and tests directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

import network_agent  # noqa: E402
import reachability  # noqa: E402
from firewall_remediation import ConfirmationGate, RemediationExecutor  # noqa: E402
from flow_logs import FlowLogCorrelator  # noqa: E402
from helpers import MockShell, ScriptedOracle  # noqa: E402
from project_scope import ResourceGraphProbe, ScopeDiscoverer  # noqa: E402
from reachability import ReachabilityProber  # noqa: E402
from safe_exec_shell import SafeExecShell  # noqa: E402


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    """Replace time.sleep with a no-op for all tests."""
    m = MagicMock()
    monkeypatch.setattr(reachability.time, "sleep", m)
    monkeypatch.setattr(network_agent.time, "sleep", m)
    return m


@pytest.fixture
def tmp_audit_dir(tmp_path):
    return str(tmp_path / "audit")


@pytest.fixture
def shell():
    return MockShell()


@pytest.fixture
def gate():
    return ConfirmationGate()


@pytest.fixture
def gated_shell(gate):
    """MockShell that asks the confirmation gate about every RISKY command."""
    return MockShell(hitl_callback=gate)


@pytest.fixture
def make_shell(tmp_audit_dir):
    """Factory fixture for real SafeExecShell instances."""
    def _make(hitl_callback=None, timeout=120, session_id="test_session", cancel_event=None):
        return SafeExecShell(
            session_id=session_id,
            audit_dir=tmp_audit_dir,
            hitl_callback=hitl_callback,
            timeout_seconds=timeout,
            cancel_event=cancel_event,
        )
    return _make


@pytest.fixture
def make_workflow(gated_shell, gate):
    """Factory for a workflow wired to the gated MockShell and a scripted oracle."""
    def _make(*decisions, roots=("svc-proj",), session=None, max_loop_turns=10,
              session_timeout=network_agent.DEFAULT_SESSION_TIMEOUT):
        oracle = ScriptedOracle(*decisions)
        probe = ResourceGraphProbe(gated_shell)
        session = session or network_agent.new_session(list(roots), session_id="nd_test")
        workflow = network_agent.TroubleshootingWorkflow(
            session=session,
            oracle=oracle,
            discoverer=ScopeDiscoverer(probe, max_workers=2),
            prober=ReachabilityProber(gated_shell),
            correlator=FlowLogCorrelator(gated_shell, max_workers=2),
            executor=RemediationExecutor(gated_shell),
            gate=gate,
            inspector=probe,
            shell=gated_shell,
            max_loop_turns=max_loop_turns,
            session_timeout=session_timeout,
        )
        return workflow, oracle
    return _make
