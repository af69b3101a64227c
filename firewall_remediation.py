"""Firewall remediation: the only component that mutates cloud configuration.

Public API:
    gate = ConfirmationGate()                       # shell approval callback
    shell = SafeExecShell(session_id, hitl_callback=gate)
    executor = RemediationExecutor(shell)

    gate.grant(action)                              # after the user says yes
    result = executor.apply(action)                 # RemediationResult

A mutating command reaches gcloud only if it is byte-identical to the command
built from the action the user confirmed. Any other RISKY command is denied.
"""

import shlex
import sys
import threading
from dataclasses import dataclass, field
from typing import Optional

from safe_exec_shell import (
    STATUS_DENIED,
    HitlDecision,
    command_failed,
    failure_message,
    parse_json_output,
)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VERB_CREATE = "CREATE"
VERB_UPDATE = "UPDATE"
VERB_DELETE = "DELETE"
VERBS = (VERB_CREATE, VERB_UPDATE, VERB_DELETE)
_PROGRESSIVE = {VERB_CREATE: "Creating", VERB_UPDATE: "Updating", VERB_DELETE: "Deleting"}

RESULT_SUCCESS = "SUCCESS"
RESULT_FAILURE = "FAILURE"

MUTATION_TIMEOUT_SECONDS = 300


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass
class FirewallAction:
    verb: str
    project: str
    rule_name: str
    network: Optional[str] = None
    description: Optional[str] = None
    direction: Optional[str] = None
    priority: Optional[int] = None
    target_tags: Optional[list[str]] = None
    source_ranges: Optional[list[str]] = None
    allowed: Optional[list[dict]] = None
    denied: Optional[list[dict]] = None

    def to_dict(self) -> dict:
        """camelCase view with unset fields stripped."""
        out = {
            "action": self.verb,
            "projectId": self.project,
            "ruleName": self.rule_name,
            "network": self.network,
            "description": self.description,
            "direction": self.direction,
            "priority": self.priority,
            "targetTags": self.target_tags,
            "sourceRanges": self.source_ranges,
            "allowed": self.allowed,
            "denied": self.denied,
        }
        return {k: v for k, v in out.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict) -> "FirewallAction":
        return cls(
            verb=str(data.get("action", "")).upper(),
            project=data.get("projectId", ""),
            rule_name=data.get("ruleName", ""),
            network=data.get("network"),
            description=data.get("description"),
            direction=data.get("direction"),
            priority=data.get("priority"),
            target_tags=data.get("targetTags"),
            source_ranges=data.get("sourceRanges"),
            allowed=data.get("allowed"),
            denied=data.get("denied"),
        )

    @property
    def network_uri(self) -> Optional[str]:
        if self.network and "/" not in self.network:
            return f"projects/{self.project}/global/networks/{self.network}"
        return self.network


@dataclass
class RemediationResult:
    status: str
    message: str
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"status": self.status, "message": self.message, "details": dict(self.details)}


# ---------------------------------------------------------------------------
# Command construction
# ---------------------------------------------------------------------------

def _rules_flag(entries: list[dict]) -> str:
    """[{"IPProtocol": "tcp", "ports": ["80", "443"]}] -> "tcp:80,tcp:443"."""
    parts = []
    for entry in entries:
        protocol = str(entry.get("IPProtocol", "")).lower()
        if not protocol:
            raise ValueError("firewall rule entry is missing IPProtocol")
        ports = entry.get("ports") or []
        if ports:
            parts.extend(f"{protocol}:{p}" for p in ports)
        else:
            parts.append(protocol)
    return ",".join(parts)


def build_firewall_command(action: FirewallAction) -> str:
    """The exact gcloud invocation for an action. Raises ValueError if it cannot be expressed."""
    verb = (action.verb or "").upper()
    if verb not in VERBS:
        raise ValueError(f"Unknown action: {action.verb}")
    if not action.project or not action.rule_name:
        raise ValueError("projectId and ruleName are required")
    if action.allowed and action.denied:
        raise ValueError("a firewall rule cannot both allow and deny traffic")

    argv = ["gcloud", "compute", "firewall-rules", verb.lower(), action.rule_name,
            f"--project={action.project}"]

    if verb == VERB_DELETE:
        return shlex.join(argv + ["--quiet", "--format=json"])

    if verb == VERB_CREATE:
        if not action.network:
            raise ValueError("network is required to create a firewall rule")
        if not (action.allowed or action.denied):
            raise ValueError("create needs allowed or denied entries")
        argv.append(f"--network={action.network_uri}")
        if action.direction:
            argv.append(f"--direction={action.direction}")
        argv.append("--action=ALLOW" if action.allowed else "--action=DENY")
    elif action.network or action.direction:
        raise ValueError("update cannot change network or direction; delete and re-create the rule")

    if action.description is not None:
        argv.append(f"--description={action.description}")
    if action.priority is not None:
        argv.append(f"--priority={action.priority}")
    if action.target_tags:
        argv.append(f"--target-tags={','.join(action.target_tags)}")
    if action.source_ranges:
        argv.append(f"--source-ranges={','.join(action.source_ranges)}")
    if action.allowed or action.denied:
        argv.append(f"--rules={_rules_flag(action.allowed or action.denied)}")
    argv.append("--format=json")
    return shlex.join(argv)


# ---------------------------------------------------------------------------
# Confirmation gate (shell approval callback)
# ---------------------------------------------------------------------------

class ConfirmationGate:
    """Fail-closed approval callback holding at most one one-shot grant."""

    def __init__(self):
        self._granted: Optional[str] = None
        self._lock = threading.Lock()

    def grant(self, action: FirewallAction):
        command = build_firewall_command(action)
        with self._lock:
            self._granted = command

    def revoke(self):
        with self._lock:
            self._granted = None

    @property
    def pending(self) -> Optional[str]:
        return self._granted

    def __call__(self, command: str, reasoning: str, risk_explanation: str,
                 tier) -> HitlDecision:
        with self._lock:
            if self._granted is not None and command == self._granted:
                self._granted = None
                return HitlDecision(action="approve", reason="confirmed by user")
        return HitlDecision(action="deny",
                            reason="no confirmed remediation matches this command")


# ---------------------------------------------------------------------------
# RemediationExecutor
# ---------------------------------------------------------------------------

class RemediationExecutor:
    """Applies one firewall action at a time and reports SUCCESS or FAILURE."""

    def __init__(self, shell, timeout_seconds: int = MUTATION_TIMEOUT_SECONDS):
        self._shell = shell
        self._timeout = timeout_seconds
        self._lock = threading.Lock()

    def apply(self, action: FirewallAction) -> RemediationResult:
        with self._lock:
            return self._apply(action)

    def _apply(self, action: FirewallAction) -> RemediationResult:
        details = {"projectId": action.project, "ruleName": action.rule_name,
                   "action": action.verb}
        verb = (action.verb or "").upper()
        if verb not in VERBS:
            return RemediationResult(RESULT_FAILURE, f"Unknown action: {action.verb}", details)

        try:
            command = build_firewall_command(action)
        except ValueError as e:
            return RemediationResult(RESULT_FAILURE,
                                     f"Failed to {verb.lower()} firewall rule: {e}", details)

        self._log(f"{_PROGRESSIVE[verb]} firewall rule {action.rule_name} in {action.project}…")
        try:
            result = self._shell.execute({
                "command": command,
                "reasoning": f"Applying confirmed remediation: {verb.lower()} firewall rule "
                             f"{action.rule_name}",
                "timeout_seconds": self._timeout,
            })
        except Exception as e:
            self._log(f"Error managing firewall rule: {e}")
            return RemediationResult(RESULT_FAILURE,
                                     f"Failed to {verb.lower()} firewall rule: {e}", details)

        details["auditId"] = result.get("audit_id")
        if command_failed(result):
            reason = failure_message(result)
            if result.get("status") == STATUS_DENIED and result.get("error"):
                reason = f"{reason} ({result['error']})"
            self._log(f"Error managing firewall rule: {reason}")
            return RemediationResult(RESULT_FAILURE,
                                     f"Failed to {verb.lower()} firewall rule: {reason}", details)

        if self._confirmed(verb, action.rule_name, result):
            message = (f"Successfully performed '{verb.lower()}' on firewall rule "
                       f"'{action.rule_name}'; operation verified complete.")
        else:
            message = (f"'{verb.lower()}' on firewall rule '{action.rule_name}' submitted; "
                       f"completion not confirmed.")
        self._log(message)
        return RemediationResult(RESULT_SUCCESS, message, details)

    @staticmethod
    def _confirmed(verb: str, rule_name: str, result: dict) -> bool:
        """True if the CLI output names the resulting resource (or its deletion)."""
        if verb == VERB_DELETE:
            stderr = result.get("stderr") or ""
            return "Deleted [" in stderr and rule_name in stderr
        try:
            data = parse_json_output(result)
        except ValueError:
            return False
        items = data if isinstance(data, list) else [data]
        return any(isinstance(i, dict) and i.get("name") == rule_name for i in items)

    def _log(self, message: str):
        print(f"[Remediation] {message}", file=sys.stderr)
