"""Shared test helpers: MockShell, response templates, fake oracle, builders.

Importable by both conftest.py and test modules.
"""
import json
import os
import sys
import threading

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from network_agent import OracleDecision  # noqa: E402
from safe_exec_shell import CLASSIFICATION_RISKY, HitlDecision, classify  # noqa: E402


# ── Response templates ────────────────────────────────────────────────

SAFE_OK = {"status": "completed", "exit_code": 0, "output": "", "stderr": ""}
RISKY_OK = {"status": "completed", "exit_code": 0, "output": "", "stderr": ""}
DENIED = {"status": "denied", "exit_code": None, "output": "", "error": "user_denied"}
CMD_ERR = {"status": "completed", "exit_code": 1, "output": "", "stderr": "command failed"}
NOT_FOUND_ERR = {"status": "completed", "exit_code": 1, "output": "",
                 "stderr": "ERROR: (gcloud) NOT_FOUND: Resource not found"}
CANCELLED = {"status": "error", "exit_code": None, "output": "", "error": "cancelled"}
TIMEOUT = {"status": "error", "exit_code": None, "output": "", "error": "timeout"}


def json_ok(data) -> dict:
    return {**SAFE_OK, "output": json.dumps(data)}


# ── MockShell ─────────────────────────────────────────────────────────

class MockShell:
    """Mock Shell: records all calls, returns pattern-matched responses.

    With a hitl_callback, RISKY commands (per the real classifier) are gated
    the same way SafeExecShell gates them.
    """

    def __init__(self, hitl_callback=None):
        self.hitl_callback = hitl_callback
        self.denied: list = []
        self.calls: list = []
        self._patterns: list = []
        self._seq = 0
        self._lock = threading.Lock()
        self.cancel_event = threading.Event()
        self.deadline = None

    def add_response(self, pattern: str, response):
        """Register pattern -> response. First match wins."""
        self._patterns.append((pattern, response))

    def set_deadline(self, deadline):
        self.deadline = deadline

    def execute(self, request: dict) -> dict:
        with self._lock:
            self.calls.append(dict(request))
            self._seq += 1
            seq = self._seq
        cmd = request.get("command", "")
        if self.hitl_callback is not None:
            classification, tier, why = classify(cmd)
            if classification == CLASSIFICATION_RISKY:
                decision = self.hitl_callback(cmd, request.get("reasoning", ""), why, tier)
                if not isinstance(decision, HitlDecision) or decision.action != "approve":
                    self.denied.append(cmd)
                    return {**DENIED, "audit_id": f"aud_{seq:04d}"}
        for pat, resp in self._patterns:
            if pat in cmd:
                r = resp(request, cmd) if callable(resp) else dict(resp)
                r.setdefault("audit_id", f"aud_{seq:04d}")
                return r
        return {**SAFE_OK, "audit_id": f"aud_{seq:04d}"}

    def commands(self) -> list:
        return [c["command"] for c in self.calls]

    def calls_with(self, pat: str) -> list:
        return [c for c in self.calls if pat in c.get("command", "")]


def response_seq(*responses):
    """Callable returning successive responses; repeats the last forever."""
    state = {"i": 0}

    def fn(req, cmd):
        i = min(state["i"], len(responses) - 1)
        state["i"] += 1
        return dict(responses[i])

    return fn


# ── Fake oracle ───────────────────────────────────────────────────────

def call(name: str, **args) -> OracleDecision:
    return OracleDecision(calls=[(name, args)])


def text(message: str) -> OracleDecision:
    return OracleDecision(text=message)


class ScriptedOracle:
    """Returns queued decisions in order and records what it was shown."""

    def __init__(self, *decisions):
        self._queue = list(decisions)
        self.requests: list = []

    def push(self, *decisions):
        self._queue.extend(decisions)

    def decide(self, history, instruction, tool_names):
        self.requests.append({"history": list(history), "instruction": instruction,
                              "tools": set(tool_names)})
        if not self._queue:
            return text("No further findings.")
        return self._queue.pop(0)


# ── Cloud fixtures ────────────────────────────────────────────────────

def subnet_uri(project: str, region: str = "us-central1", name: str = "shared-subnet") -> str:
    return (f"https://www.googleapis.com/compute/v1/projects/{project}"
            f"/regions/{region}/subnetworks/{name}")


def network_uri(project: str, name: str = "shared-vpc") -> str:
    return f"https://www.googleapis.com/compute/v1/projects/{project}/global/networks/{name}"


def flow_row(ts: str, src="10.0.0.5", dst="10.1.0.9", dport=443, **extra) -> dict:
    return {
        "timestamp": ts, "src_ip": src, "src_port": "51515", "dest_ip": dst,
        "dest_port": str(dport), "protocol": "6", "bytes_sent": "1200", "rtt_msec": "3",
        "subnetwork_name": "shared-subnet", "resource_project_id": "host-proj", **extra,
    }


def reachability_resource(result="UNREACHABLE", steps=None) -> dict:
    steps = steps if steps is not None else [
        {"state": "START_FROM_INSTANCE",
         "instance": {"uri": "projects/svc-proj/zones/us-central1-a/instances/web-1"}},
        {"state": "APPLY_INGRESS_FIREWALL_RULE",
         "firewall": {"uri": "projects/host-proj/global/firewalls/default-deny",
                      "action": "DENY"}},
        {"state": "DROP", "drop": {"cause": "FIREWALL_RULE_BLOCKED"}},
    ]
    return {
        "name": "projects/svc-proj/locations/global/connectivityTests/nd-test",
        "reachabilityDetails": {
            "result": result,
            "verifyTime": "2024-05-01T10:00:00Z",
            "traces": [{"steps": steps}],
        },
    }


def setup_probe(shell, *resources):
    """Connectivity test create returns the first resource; later creates the following ones."""
    shell.add_response("connectivity-tests create",
                       response_seq(*[json_ok(r) for r in resources]))
    shell.add_response("connectivity-tests delete", SAFE_OK)


FIREWALL_FIX = {
    "projectId": "host-proj",
    "action": "create",
    "ruleName": "allow-web-443",
    "network": "shared-vpc",
    "direction": "INGRESS",
    "priority": 900,
    "sourceRanges": ["10.0.0.0/24"],
    "targetTags": ["web"],
    "allowed": [{"IPProtocol": "tcp", "ports": ["443"]}],
}

PROBE_ARGS = {"projectId": "svc-proj", "sourceIp": "10.0.0.5", "destIp": "10.1.0.9",
              "destinationPort": 443}
