"""Firewall remediation: command building, the one-shot confirmation gate, the executor."""

import shlex
import threading

import pytest

from firewall_remediation import (
    RESULT_FAILURE,
    RESULT_SUCCESS,
    FirewallAction,
    RemediationExecutor,
    build_firewall_command,
)
from helpers import CMD_ERR, FIREWALL_FIX, SAFE_OK, MockShell, json_ok
from safe_exec_shell import CLASSIFICATION_RISKY, classify


FIX = FirewallAction.from_dict(FIREWALL_FIX)


def _created(name="allow-web-443"):
    return json_ok([{"name": name, "network": "shared-vpc", "direction": "INGRESS"}])


# ---------------------------------------------------------------------------
# Command building
# ---------------------------------------------------------------------------

@pytest.mark.p1
class TestBuildCommand:

    def test_create(self):
        argv = shlex.split(build_firewall_command(FIX))
        assert argv[:5] == ["gcloud", "compute", "firewall-rules", "create", "allow-web-443"]
        assert "--project=host-proj" in argv
        assert "--network=projects/host-proj/global/networks/shared-vpc" in argv
        assert "--direction=INGRESS" in argv
        assert "--action=ALLOW" in argv
        assert "--priority=900" in argv
        assert "--source-ranges=10.0.0.0/24" in argv
        assert "--target-tags=web" in argv
        assert "--rules=tcp:443" in argv

    def test_deny_rule_with_several_ports(self):
        action = FirewallAction(verb="CREATE", project="p", rule_name="deny-ssh",
                                network="projects/p/global/networks/vpc",
                                denied=[{"IPProtocol": "tcp", "ports": ["22", "2222"]},
                                        {"IPProtocol": "icmp"}])
        argv = shlex.split(build_firewall_command(action))
        assert "--action=DENY" in argv
        assert "--rules=tcp:22,tcp:2222,icmp" in argv
        assert "--network=projects/p/global/networks/vpc" in argv

    def test_update_only_carries_given_fields(self):
        action = FirewallAction(verb="UPDATE", project="p", rule_name="r", priority=100)
        argv = shlex.split(build_firewall_command(action))
        assert argv[3] == "update"
        assert "--priority=100" in argv
        assert not any(a.startswith(("--network", "--direction", "--action")) for a in argv)

    def test_delete(self):
        action = FirewallAction(verb="delete", project="p", rule_name="r")
        assert build_firewall_command(action) == (
            "gcloud compute firewall-rules delete r --project=p --quiet --format=json")

    @pytest.mark.parametrize("action,needle", [
        (FirewallAction(verb="PATCH", project="p", rule_name="r"), "Unknown action"),
        (FirewallAction(verb="DELETE", project="", rule_name="r"), "required"),
        (FirewallAction(verb="CREATE", project="p", rule_name="r",
                        allowed=[{"IPProtocol": "tcp"}]), "network"),
        (FirewallAction(verb="CREATE", project="p", rule_name="r", network="n"), "allowed or denied"),
        (FirewallAction(verb="CREATE", project="p", rule_name="r", network="n",
                        allowed=[{"IPProtocol": "tcp"}], denied=[{"IPProtocol": "udp"}]),
         "both allow and deny"),
        (FirewallAction(verb="UPDATE", project="p", rule_name="r", direction="EGRESS"),
         "cannot change"),
        (FirewallAction(verb="CREATE", project="p", rule_name="r", network="n",
                        allowed=[{"ports": ["80"]}]), "IPProtocol"),
    ])
    def test_invalid_actions(self, action, needle):
        with pytest.raises(ValueError, match=needle):
            build_firewall_command(action)

    def test_mutations_classify_as_risky(self):
        assert classify(build_firewall_command(FIX))[0] == CLASSIFICATION_RISKY

    def test_to_dict_strips_unset_fields(self):
        out = FirewallAction(verb="DELETE", project="p", rule_name="r").to_dict()
        assert out == {"action": "DELETE", "projectId": "p", "ruleName": "r"}
        assert FirewallAction.from_dict(FIX.to_dict()) == FIX


# ---------------------------------------------------------------------------
# ConfirmationGate
# ---------------------------------------------------------------------------

@pytest.mark.p0
class TestConfirmationGate:

    def test_denies_without_grant(self, gate):
        decision = gate(build_firewall_command(FIX), "r", "mutation", 2)
        assert decision.action == "deny"

    def test_approves_exact_command_once(self, gate):
        gate.grant(FIX)
        command = build_firewall_command(FIX)
        assert gate(command, "r", "mutation", 2).action == "approve"
        assert gate(command, "r", "mutation", 2).action == "deny"
        assert gate.pending is None

    def test_different_command_denied_and_grant_kept(self, gate):
        gate.grant(FIX)
        other = FirewallAction.from_dict({**FIREWALL_FIX, "sourceRanges": ["0.0.0.0/0"]})
        assert gate(build_firewall_command(other), "r", "mutation", 2).action == "deny"
        assert gate.pending == build_firewall_command(FIX)

    def test_revoke(self, gate):
        gate.grant(FIX)
        gate.revoke()
        assert gate(build_firewall_command(FIX), "r", "mutation", 2).action == "deny"

    def test_grant_rejects_invalid_action(self, gate):
        with pytest.raises(ValueError):
            gate.grant(FirewallAction(verb="CREATE", project="p", rule_name="r"))
        assert gate.pending is None


# ---------------------------------------------------------------------------
# RemediationExecutor
# ---------------------------------------------------------------------------

@pytest.mark.p0
class TestExecutor:

    def test_granted_create_succeeds_and_is_verified(self, gated_shell, gate):
        gated_shell.add_response("firewall-rules create", _created())
        gate.grant(FIX)
        result = RemediationExecutor(gated_shell).apply(FIX)
        assert result.status == RESULT_SUCCESS
        assert "verified complete" in result.message
        assert gated_shell.denied == []
        assert result.details["ruleName"] == "allow-web-443"
        assert result.details["auditId"]
        assert gated_shell.calls[0]["timeout_seconds"] == 300

    def test_success_without_resource_in_output_is_not_confirmed(self, gated_shell, gate):
        gate.grant(FIX)
        result = RemediationExecutor(gated_shell).apply(FIX)
        assert result.status == RESULT_SUCCESS
        assert "completion not confirmed" in result.message

    def test_delete_confirmed_from_stderr(self, gated_shell, gate):
        action = FirewallAction(verb="DELETE", project="p", rule_name="old-rule")
        gated_shell.add_response("firewall-rules delete", {
            **SAFE_OK,
            "stderr": "Deleted [https://www.googleapis.com/compute/v1/projects/p/global/firewalls/old-rule].",
        })
        gate.grant(action)
        result = RemediationExecutor(gated_shell).apply(action)
        assert result.status == RESULT_SUCCESS
        assert "verified complete" in result.message

    def test_ungranted_mutation_is_denied(self, gated_shell):
        result = RemediationExecutor(gated_shell).apply(FIX)
        assert result.status == RESULT_FAILURE
        assert "denied" in result.message
        assert len(gated_shell.denied) == 1

    def test_nonzero_exit_is_failure(self, gated_shell, gate):
        gated_shell.add_response("firewall-rules create", CMD_ERR)
        gate.grant(FIX)
        result = RemediationExecutor(gated_shell).apply(FIX)
        assert result.status == RESULT_FAILURE
        assert result.message == "Failed to create firewall rule: command failed"

    def test_unknown_verb_makes_no_call(self, shell):
        result = RemediationExecutor(shell).apply(
            FirewallAction(verb="PATCH", project="p", rule_name="r"))
        assert result.status == RESULT_FAILURE
        assert result.message == "Unknown action: PATCH"
        assert shell.calls == []

    def test_unbuildable_action_makes_no_call(self, shell):
        result = RemediationExecutor(shell).apply(
            FirewallAction(verb="CREATE", project="p", rule_name="r"))
        assert result.status == RESULT_FAILURE
        assert result.message.startswith("Failed to create firewall rule:")
        assert shell.calls == []

    def test_shell_exception_is_failure(self, shell):
        def explode(req, cmd):
            raise OSError("broken pipe")
        shell.add_response("firewall-rules", explode)
        result = RemediationExecutor(shell).apply(FIX)
        assert result.status == RESULT_FAILURE
        assert "broken pipe" in result.message

    def test_applies_are_serialized(self):
        entered = threading.Event()
        release = threading.Event()
        active = {"now": 0, "max": 0}
        lock = threading.Lock()

        def slow(req, cmd):
            with lock:
                active["now"] += 1
                active["max"] = max(active["max"], active["now"])
            entered.set()
            release.wait(5)
            with lock:
                active["now"] -= 1
            return dict(SAFE_OK)

        shell = MockShell()
        shell.add_response("firewall-rules", slow)
        executor = RemediationExecutor(shell)
        threads = [threading.Thread(target=executor.apply, args=(FIX,)) for _ in range(2)]
        for t in threads:
            t.start()
        assert entered.wait(5)
        threading.Event().wait(0.1)
        assert len(shell.calls) == 1
        release.set()
        for t in threads:
            t.join(5)
        assert len(shell.calls) == 2
        assert active["max"] == 1
