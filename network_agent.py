#!/usr/bin/env python3
"""Network Doctor: cross-project GCP connectivity troubleshooting with gated remediation.

Usage:
    network-doctor --project PROJECT[,PROJECT...] [--model MODEL] [--audit-dir PATH]
    network-doctor --resume SESSION_ID [--audit-dir PATH]

A session moves through
    SCOPING -> DIAGNOSING -> ROOT_CAUSED -> AWAITING_CONFIRMATION -> APPLYING -> VERIFYING -> DONE
with ABORTED reachable from anywhere. Firewall changes run only after the user
confirms the exact staged action, and are always followed by a re-probe.
"""

import argparse
import hashlib
import json
import os
import re
import secrets
import sys
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from google import genai
from google.genai import types
from pydantic import ValidationError

from firewall_remediation import (
    RESULT_FAILURE,
    RESULT_SUCCESS,
    ConfirmationGate,
    FirewallAction,
    RemediationExecutor,
    RemediationResult,
    build_firewall_command,
)
from flow_logs import FlowLogCorrelator
from project_scope import (
    DiscoveredScope,
    ResourceGraphProbe,
    ScanError,
    ScopeDiscoverer,
    ScopeEdge,
    load_denylist,
    normalize_roots,
)
from reachability import ProbeRequest, ReachabilityProber, ReachabilityResult
from safe_exec_shell import SafeExecShell
from tool_requests import UnknownTool, invalid_arguments, parse_tool_request

load_dotenv()

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_AUDIT_DIR = "./audit"
DEFAULT_MODEL = "gemini-2.0-flash"
DEFAULT_MAX_WORKERS = 4
DEFAULT_SESSION_TIMEOUT = 900
DEFAULT_PORT = 8080
MAX_LOOP_TURNS = 25

SCOPING = "SCOPING"
DIAGNOSING = "DIAGNOSING"
ROOT_CAUSED = "ROOT_CAUSED"
AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
APPLYING = "APPLYING"
VERIFYING = "VERIFYING"
DONE = "DONE"
ABORTED = "ABORTED"

TERMINAL_STATES = frozenset({DONE, ABORTED})

ROLE_USER = "user"
ROLE_COORDINATOR = "coordinator"
ROLE_DIAGNOSTIC = "diagnostic"
ROLE_REMEDIATION = "remediation"

# Authorization boundary: a role can only ever see and dispatch its own tools
ROLE_TOOLS: dict[str, frozenset[str]] = {
    ROLE_COORDINATOR: frozenset(),
    ROLE_DIAGNOSTIC: frozenset({
        "identify_network_projects",
        "fetch_network_architecture",
        "run_connectivity_test",
        "query_flow_logs",
        "propose_remediation",
    }),
    ROLE_REMEDIATION: frozenset({"manage_firewall_rule"}),
}

CONFIRM_AFFIRMATIVE = "affirmative"
CONFIRM_NEGATIVE = "negative"
CONFIRM_AMBIGUOUS = "ambiguous"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class OracleError(Exception):
    """The reasoning oracle could not produce a decision."""


class WorkflowError(Exception):
    """Fatal workflow failure. Session state is left as it was."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class Settings:
    api_key: Optional[str]
    model: str
    default_project: Optional[str]
    audit_dir: str
    denylist: frozenset[str]
    max_workers: int
    session_timeout: int
    port: int


def load_settings(env: Optional[dict] = None) -> Settings:
    env = os.environ if env is None else env
    return Settings(
        api_key=env.get("GEMINI_API_KEY") or None,
        model=env.get("NETWORK_DOCTOR_MODEL") or DEFAULT_MODEL,
        default_project=env.get("GOOGLE_CLOUD_PROJECT") or None,
        audit_dir=env.get("NETWORK_DOCTOR_AUDIT_DIR") or DEFAULT_AUDIT_DIR,
        denylist=load_denylist(env),
        max_workers=int(env.get("NETWORK_DOCTOR_MAX_WORKERS") or DEFAULT_MAX_WORKERS),
        session_timeout=int(env.get("NETWORK_DOCTOR_SESSION_TIMEOUT") or DEFAULT_SESSION_TIMEOUT),
        port=int(env.get("PORT") or DEFAULT_PORT),
    )


# ---------------------------------------------------------------------------
# Session model
# ---------------------------------------------------------------------------

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_session_id() -> str:
    return f"nd_{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}_{secrets.token_hex(2)}"


@dataclass
class Turn:
    role: str
    decision: dict
    result: Optional[dict] = None
    timestamp: str = field(default_factory=_now_iso)


@dataclass
class WorkflowSession:
    session_id: str
    root_projects: list[str]
    state: str = SCOPING
    turns: list[Turn] = field(default_factory=list)
    scope: DiscoveredScope = field(default_factory=DiscoveredScope)
    last_probe: Optional[ProbeRequest] = None
    last_reachability: Optional[ReachabilityResult] = None
    root_cause: Optional[str] = None
    pending_mutation: Optional[FirewallAction] = None
    verify_probe: Optional[ProbeRequest] = None
    baseline: Optional[ReachabilityResult] = None
    mutation_count: int = 0
    mutation_result: Optional[dict] = None
    verification: Optional[ReachabilityResult] = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def evidence_trail(self) -> list[dict]:
        return [asdict(t) for t in self.turns]

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "WorkflowSession":
        def _opt(factory, value):
            return factory(**value) if value else None

        scope_data = data.get("scope") or {}
        scope = DiscoveredScope(
            visited=list(scope_data.get("visited", [])),
            edges=[ScopeEdge(**e) for e in scope_data.get("edges", [])],
            errors=[ScanError(**e) for e in scope_data.get("errors", [])],
        )
        return cls(
            session_id=data["session_id"],
            root_projects=list(data.get("root_projects", [])),
            state=data.get("state", SCOPING),
            turns=[Turn(**t) for t in data.get("turns", [])],
            scope=scope,
            last_probe=_opt(ProbeRequest, data.get("last_probe")),
            last_reachability=_opt(ReachabilityResult, data.get("last_reachability")),
            root_cause=data.get("root_cause"),
            pending_mutation=_opt(FirewallAction, data.get("pending_mutation")),
            verify_probe=_opt(ProbeRequest, data.get("verify_probe")),
            baseline=_opt(ReachabilityResult, data.get("baseline")),
            mutation_count=data.get("mutation_count", 0),
            mutation_result=data.get("mutation_result"),
            verification=_opt(ReachabilityResult, data.get("verification")),
            created_at=data.get("created_at") or _now_iso(),
            updated_at=data.get("updated_at") or _now_iso(),
        )


def new_session(root_projects, session_id: Optional[str] = None) -> WorkflowSession:
    roots = normalize_roots(root_projects)
    if not roots:
        raise WorkflowError("at least one root project is required")
    return WorkflowSession(session_id=session_id or new_session_id(), root_projects=roots)


# ---------------------------------------------------------------------------
# Session persistence
# ---------------------------------------------------------------------------

def _checksum(data: dict) -> str:
    """SHA-256 of sorted JSON, excluding the _checksum field itself."""
    payload = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode()).hexdigest()


def session_path(audit_dir: str, session_id: str) -> Path:
    return Path(audit_dir) / f"network_session_{session_id}.json"


def save_session(session: WorkflowSession, path) -> Path:
    """Write session state with a SHA-256 integrity checksum."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    base = json.loads(json.dumps(session.to_dict(), default=str))
    base["_checksum"] = _checksum(base)
    with open(path, "w") as f:
        json.dump(base, f, indent=2, default=str)
    return path


def load_session(path, resume_id: str) -> WorkflowSession:
    """Load and verify a snapshot for --resume."""
    path = Path(path)
    if not path.exists():
        raise WorkflowError(f"Session file not found: {path}")
    try:
        raw = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise WorkflowError(f"Session file corrupted: {e}") from e

    stored = raw.pop("_checksum", None)
    if stored is None or _checksum(raw) != stored:
        raise WorkflowError("Session file checksum mismatch — file may have been modified externally")
    if raw.get("session_id") != resume_id:
        raise WorkflowError(f"session_id mismatch: expected '{resume_id}', "
                            f"found '{raw.get('session_id')}'")
    return WorkflowSession.from_dict(raw)


# ---------------------------------------------------------------------------
# Tool declarations
# ---------------------------------------------------------------------------

def _firewall_properties() -> dict:
    S, T = types.Schema, types.Type
    rule_entry = S(type=T.OBJECT, properties={
        "IPProtocol": S(type=T.STRING, description="tcp, udp, icmp, or all"),
        "ports": S(type=T.ARRAY, items=S(type=T.STRING)),
    })
    return {
        "projectId": S(type=T.STRING, description="Project that owns the VPC network / rule."),
        "action": S(type=T.STRING, enum=["create", "update", "delete"]),
        "ruleName": S(type=T.STRING, description="Firewall rule name (lowercase, digits, hyphens)."),
        "network": S(type=T.STRING, description=(
            "Network name or projects/<p>/global/networks/<n>. Required for create; "
            "cannot be changed by update."
        )),
        "description": S(type=T.STRING),
        "priority": S(type=T.INTEGER, description="0-65535, lower wins."),
        "direction": S(type=T.STRING, enum=["INGRESS", "EGRESS"],
                       description="Only for create."),
        "targetTags": S(type=T.ARRAY, items=S(type=T.STRING)),
        "sourceRanges": S(type=T.ARRAY, items=S(type=T.STRING),
                          description="Source CIDRs for INGRESS rules."),
        "allowed": S(type=T.ARRAY, items=rule_entry,
                     description='e.g. [{"IPProtocol": "tcp", "ports": ["443"]}]'),
        "denied": S(type=T.ARRAY, items=rule_entry),
    }


def _probe_properties() -> dict:
    S, T = types.Schema, types.Type
    return {
        "projectId": S(type=T.STRING, description=(
            "Project where the test is created (usually the source project)."
        )),
        "sourceIp": S(type=T.STRING),
        "sourceInstance": S(type=T.STRING, description="projects/<p>/zones/<z>/instances/<i>"),
        "destIp": S(type=T.STRING),
        "destInstance": S(type=T.STRING),
        "destinationPort": S(type=T.INTEGER),
        "protocol": S(type=T.STRING, description="TCP (default), UDP, ICMP."),
    }


def _tool_declarations() -> dict[str, types.FunctionDeclaration]:
    S, T = types.Schema, types.Type

    decls = [
        types.FunctionDeclaration(
            name="identify_network_projects",
            description=(
                "Discover projects related to the given projects through Shared VPC, "
                "network peering, interconnect attachments, load-balancer backends and "
                "instance NICs. Adds them to the session scope. Depth 1: newly found "
                "projects are listed but not scanned — call again with them to go deeper."
            ),
            parameters=S(type=T.OBJECT, properties={
                "projectIds": S(type=T.ARRAY, items=S(type=T.STRING)),
            }, required=["projectIds"]),
        ),
        types.FunctionDeclaration(
            name="fetch_network_architecture",
            description=(
                "Inventory of a project's networks, subnetworks, firewalls, routes, VPN "
                "tunnels, forwarding rules, URL maps, target proxies and backend services, "
                "grouped by type."
            ),
            parameters=S(type=T.OBJECT, properties={
                "projectId": S(type=T.STRING),
            }, required=["projectId"]),
        ),
        types.FunctionDeclaration(
            name="run_connectivity_test",
            description=(
                "Run an ephemeral connectivity test (simulated packet trace) from a source "
                "to a destination. Returns REACHABLE / UNREACHABLE / AMBIGUOUS / "
                "UNDETERMINED, the full trace, and projects seen along the path. The test "
                "is deleted afterwards."
            ),
            parameters=S(type=T.OBJECT, properties=_probe_properties(),
                         required=["projectId"]),
        ),
        types.FunctionDeclaration(
            name="query_flow_logs",
            description=(
                "Read real VPC flow-log traffic between two IPs (both directions) from the "
                "flow_logs BigQuery dataset of every listed project. Newest first."
            ),
            parameters=S(type=T.OBJECT, properties={
                "projects": S(type=T.ARRAY, items=S(type=T.STRING)),
                "sourceIp": S(type=T.STRING),
                "destIp": S(type=T.STRING),
                "limit": S(type=T.INTEGER, description="Max rows (default 20)."),
                "hoursAgo": S(type=T.INTEGER, description="Lookback window (default 1)."),
            }, required=["projects", "sourceIp", "destIp"]),
        ),
        types.FunctionDeclaration(
            name="propose_remediation",
            description=(
                "Stage ONE firewall change that fixes the root cause and ask the user to "
                "confirm it. Nothing is applied until the user says yes. Ends your turn."
            ),
            parameters=S(type=T.OBJECT, properties={
                "rootCause": S(type=T.STRING, description="One-paragraph root cause, citing evidence."),
                **_firewall_properties(),
                "verification": S(type=T.OBJECT, properties=_probe_properties(),
                                  description=(
                                      "Probe to re-run after the change. Defaults to the last "
                                      "connectivity test."
                                  )),
            }, required=["rootCause", "projectId", "action", "ruleName"]),
        ),
        types.FunctionDeclaration(
            name="manage_firewall_rule",
            description="Create, update or delete a VPC firewall rule.",
            parameters=S(type=T.OBJECT, properties=_firewall_properties(),
                         required=["projectId", "action", "ruleName"]),
        ),
    ]
    return {d.name: d for d in decls}


def build_role_tools(tool_names) -> Optional[types.Tool]:
    """A genai Tool exposing exactly the named declarations, or None for no tools."""
    declarations = _tool_declarations()
    selected = [declarations[n] for n in sorted(tool_names) if n in declarations]
    if not selected:
        return None
    return types.Tool(function_declarations=selected)


DIAGNOSTIC_INSTRUCTION = """You are Network Doctor, a Google Cloud networking troubleshooter.

You diagnose connectivity problems that span several projects (Shared VPC host and
service projects, peered VPCs, interconnects, load-balancer backends).

How to work:
1. The session scope (projects already discovered) is given to you. If evidence points
   at a project outside it, call identify_network_projects on that project.
2. Use run_connectivity_test for the active verdict and trace. A trace step names the
   firewall, route or policy that dropped the packet.
3. Use query_flow_logs across ALL projects in scope to confirm what real traffic did.
   Flow logs for Shared VPC traffic usually live in the host project.
4. Use fetch_network_architecture when you need the firewall / route inventory.
5. When the evidence supports one root cause fixable by a firewall change, call
   propose_remediation exactly once. Cite the evidence in rootCause. Prefer the narrowest
   rule: specific sourceRanges, targetTags and ports.
6. If the cause is not a firewall problem, explain it in plain text and do not propose.

Rules:
- Read-only tools only. You cannot change anything yourself.
- Never invent project ids, IPs or rule names. Ask the user when something is missing.
- Keep answers short and factual."""

REMEDIATION_INSTRUCTION = """You apply exactly one firewall change that the user has
confirmed, using manage_firewall_rule with the confirmed arguments unchanged."""


# ---------------------------------------------------------------------------
# Reasoning oracle (Gemini)
# ---------------------------------------------------------------------------

@dataclass
class OracleDecision:
    text: str = ""
    calls: list[tuple[str, dict]] = field(default_factory=list)
    content: Any = None

    def as_content(self):
        if self.content is not None:
            return self.content
        parts = []
        if self.text:
            parts.append(types.Part(text=self.text))
        for name, args in self.calls:
            parts.append(types.Part(function_call=types.FunctionCall(name=name, args=args)))
        if not parts:
            parts.append(types.Part(text="(no response)"))
        return types.Content(role="model", parts=parts)


class GeminiOracle:
    """Stateless oracle: ordered history + role instruction + permitted tools -> decision."""

    def __init__(self, client, model: str = DEFAULT_MODEL, max_attempts: int = 3):
        self._client = client
        self._model = model
        self._max_attempts = max_attempts

    def decide(self, history: list, instruction: str, tool_names) -> OracleDecision:
        tool = build_role_tools(tool_names)
        config = types.GenerateContentConfig(
            tools=[tool] if tool else None,
            system_instruction=instruction,
        )

        response = None
        for attempt in range(self._max_attempts):
            try:
                response = self._client.models.generate_content(
                    model=self._model,
                    contents=history,
                    config=config,
                )
                break
            except Exception as e:
                err_str = str(e)
                is_rate_limit = "429" in err_str or "RESOURCE_EXHAUSTED" in err_str
                if is_rate_limit and attempt < self._max_attempts - 1:
                    wait_sec = 30 * (2 ** attempt)   # 30s, then 60s
                    _log(f"Rate limited (429). Waiting {wait_sec}s, then retrying "
                         f"({attempt + 2}/{self._max_attempts})...")
                    time.sleep(wait_sec)
                else:
                    raise OracleError(f"Gemini API error: {e}") from e

        if response is None or not response.candidates:
            feedback = getattr(response, "prompt_feedback", None)
            block_reason = getattr(feedback, "block_reason", None) if feedback else None
            raise OracleError(f"Gemini returned no candidates ({block_reason or 'safety/quota'})")

        candidate = response.candidates[0]
        parts = (candidate.content.parts if candidate.content else None) or []
        calls = [
            (p.function_call.name, dict(p.function_call.args or {}))
            for p in parts if p.function_call
        ]
        text = " ".join(p.text.strip() for p in parts if getattr(p, "text", None)).strip()
        return OracleDecision(text=text, calls=calls, content=candidate.content)


# ---------------------------------------------------------------------------
# Confirmation classification
# ---------------------------------------------------------------------------

_AFFIRMATIVE_PHRASES = frozenset({
    "go ahead", "do it", "make it so", "ship it", "sounds good",
})
_AFFIRMATIVE_STRONG = frozenset({
    "yes", "y", "yep", "yeah", "yup", "confirm", "confirmed", "approve", "approved",
    "proceed", "apply", "ok", "okay", "sure", "lgtm",
})
_AFFIRMATIVE_FILLER = frozenset({"please", "it", "the", "change", "fix", "that", "this", "rule"})
_NEGATIVE_LEADS = frozenset({
    "no", "n", "nope", "nah", "cancel", "abort", "stop", "reject", "rejected", "decline",
    "deny", "denied", "don't", "dont", "never",
})


def classify_confirmation(text: str) -> str:
    """affirmative / negative / ambiguous. Only a clear yes counts as affirmative."""
    normalized = re.sub(r"[^a-z' ]+", " ", (text or "").lower())
    words = normalized.split()
    if not words:
        return CONFIRM_AMBIGUOUS
    if words[0] in _NEGATIVE_LEADS or normalized.strip().startswith("do not"):
        return CONFIRM_NEGATIVE
    remaining = f" {' '.join(words)} "
    matched_phrase = False
    for phrase in _AFFIRMATIVE_PHRASES:
        if f" {phrase} " in remaining:
            remaining = remaining.replace(f" {phrase} ", " ")
            matched_phrase = True
    rest = remaining.split()
    if not matched_phrase and not any(w in _AFFIRMATIVE_STRONG for w in rest):
        return CONFIRM_AMBIGUOUS
    if all(w in _AFFIRMATIVE_STRONG or w in _AFFIRMATIVE_FILLER for w in rest):
        return CONFIRM_AFFIRMATIVE
    return CONFIRM_AMBIGUOUS


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def build_report(session: WorkflowSession) -> str:
    """Markdown summary of scope, evidence, remediation and verification."""
    lines = [f"# Network Doctor Report — {session.session_id}", ""]
    lines.append(f"**Root projects:** {', '.join(session.root_projects)}  ")
    lines.append(f"**Final state:** {session.state}  ")
    lines.append(f"**Generated:** {_now_iso()}")
    lines.append("")

    lines.append("## Scope")
    lines.append(f"Projects: {', '.join(session.scope.visited) or 'none'}")
    if session.scope.edges:
        lines.append("")
        lines.append("| Source | Target | Reason |")
        lines.append("|---|---|---|")
        for e in session.scope.edges:
            lines.append(f"| {e.source} | {e.target} | {e.reason} |")
    if session.scope.errors:
        lines.append("")
        lines.append("Partial scan errors:")
        for err in session.scope.errors:
            lines.append(f"- {err.project} / {err.kind}: {err.message}")
    lines.append("")

    lines.append("## Root cause")
    lines.append(session.root_cause or "_No root cause was recorded._")
    lines.append("")

    lines.append("## Remediation")
    if session.mutation_result:
        details = session.mutation_result.get("details") or {}
        lines.append(f"- Rule: `{details.get('ruleName')}` in `{details.get('projectId')}` "
                     f"({details.get('action')})")
        if session.mutation_result.get("command"):
            lines.append(f"- Command: `{session.mutation_result['command']}`")
        lines.append(f"- Result: **{session.mutation_result.get('status')}** — "
                     f"{session.mutation_result.get('message')}")
    else:
        lines.append("_No change was applied._")
    lines.append("")

    lines.append("## Verification")
    before = session.baseline.verdict if session.baseline else "n/a"
    after = session.verification.verdict if session.verification else "n/a"
    lines.append(f"- Before: {before}")
    lines.append(f"- After: {after}")
    if session.verification and session.verification.error:
        lines.append(f"- Verification error: {session.verification.error}")
    lines.append("")

    lines.append("## Evidence trail")
    lines.append("| # | Role | Tool | Outcome |")
    lines.append("|---|---|---|---|")
    n = 0
    for t in session.turns:
        tool = t.decision.get("tool")
        if not tool:
            continue
        n += 1
        result = t.result or {}
        outcome = result.get("error") or result.get("result") or result.get("status") or "ok"
        lines.append(f"| {n} | {t.role} | {tool} | {outcome} |")
    lines.append("")
    return "\n".join(lines)


def write_report(session: WorkflowSession, audit_dir: str) -> Path:
    path = Path(audit_dir) / f"network_report_{session.session_id}.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(build_report(session))
    return path


# ---------------------------------------------------------------------------
# TroubleshootingWorkflow
# ---------------------------------------------------------------------------

def _log(message: str):
    print(f"[Network Doctor] {message}", file=sys.stderr)


class TroubleshootingWorkflow:
    """Explicit state machine driving one troubleshooting conversation."""

    def __init__(
        self,
        session: WorkflowSession,
        oracle,
        discoverer: ScopeDiscoverer,
        prober: ReachabilityProber,
        correlator: FlowLogCorrelator,
        executor: RemediationExecutor,
        gate: ConfirmationGate,
        inspector: Optional[ResourceGraphProbe] = None,
        shell: Optional[SafeExecShell] = None,
        max_loop_turns: int = MAX_LOOP_TURNS,
        session_timeout: Optional[float] = DEFAULT_SESSION_TIMEOUT,
    ):
        self.session = session
        self._oracle = oracle
        self._discoverer = discoverer
        self._prober = prober
        self._correlator = correlator
        self._executor = executor
        self._gate = gate
        self._inspector = inspector
        self._shell = shell
        self._max_loop_turns = max_loop_turns
        self._session_timeout = session_timeout
        self._cancel_event = shell.cancel_event if shell is not None else threading.Event()
        self._deadline: Optional[float] = None
        self._history: list = []
        self._resumed = bool(session.turns)
        self._lock = threading.Lock()
        self._handlers = {
            "identify_network_projects": self._handle_identify_projects,
            "fetch_network_architecture": self._handle_fetch_architecture,
            "run_connectivity_test": self._handle_connectivity_test,
            "query_flow_logs": self._handle_query_flow_logs,
            "propose_remediation": self._handle_propose_remediation,
            "manage_firewall_rule": self._handle_manage_firewall_rule,
        }

    # --- Public API ---

    def handle_message(self, text: str) -> dict:
        """Advance the conversation by one user message and return the reply."""
        with self._lock:
            s = self.session
            if s.state in TERMINAL_STATES:
                return self._reply(f"This session is {s.state}. Start a new session to "
                                   f"troubleshoot another problem.")
            self._begin_turn()
            try:
                self._record(ROLE_USER, {"text": text})
                if s.state == SCOPING:
                    return self._scope_then_diagnose(text)
                if s.state == AWAITING_CONFIRMATION:
                    return self._handle_confirmation(text)
                if s.state == DIAGNOSING:
                    return self._diagnose(text)
                raise WorkflowError(f"cannot accept a message in state {s.state}")
            finally:
                self._end_turn()

    def cancel(self):
        """Abort in-flight cloud calls. Probe cleanup still runs."""
        self._cancel_event.set()

    # --- State handlers ---

    def _scope_then_diagnose(self, text: str) -> dict:
        s = self.session
        _log(f"Scoping from root project(s): {', '.join(s.root_projects)}")
        self._discoverer.discover(s.root_projects, into=s.scope)
        self._record(ROLE_COORDINATOR,
                     {"tool": "identify_network_projects", "args": {"projectIds": s.root_projects}},
                     {"status": "ok", **s.scope.to_dict()})
        self._transition(DIAGNOSING)
        return self._diagnose(
            f"{text}\n\n[Session scope]\nRoot projects: {', '.join(s.root_projects)}\n"
            f"{json.dumps(s.scope.to_dict(), indent=2)}"
        )

    def _handle_confirmation(self, text: str) -> dict:
        s = self.session
        intent = classify_confirmation(text)
        _log(f"Confirmation reply classified as {intent}")
        if intent == CONFIRM_AFFIRMATIVE:
            return self._apply_and_verify()

        s.pending_mutation = None
        s.verify_probe = None
        self._gate.revoke()
        if intent == CONFIRM_NEGATIVE:
            self._transition(ABORTED)
            return self._reply("Understood — the proposed change was discarded. "
                               "No configuration was modified.")
        self._transition(DIAGNOSING)
        return self._diagnose(
            "The user did not confirm the proposed firewall change. Their reply: "
            f"{text!r}. Nothing was applied. Continue the diagnosis with this in mind."
        )

    def _diagnose(self, user_text: str) -> dict:
        s = self.session
        if self._resumed and not self._history:
            user_text = f"{self._resume_context()}\n\n{user_text}"
        self._history.append(types.Content(role="user", parts=[types.Part(text=user_text)]))

        for _ in range(self._max_loop_turns):
            self._check_interrupts()
            decision = self._oracle.decide(
                self._history, DIAGNOSTIC_INSTRUCTION, ROLE_TOOLS[ROLE_DIAGNOSTIC]
            )
            self._history.append(decision.as_content())

            if not decision.calls:
                self._record(ROLE_DIAGNOSTIC, {"text": decision.text})
                return self._reply(decision.text or "I have no further findings yet.")

            if decision.text:
                _log(decision.text)

            responses = []
            for name, args in decision.calls:
                if s.state == AWAITING_CONFIRMATION:
                    result = {"status": "error", "error": "proposal_pending",
                              "message": "A remediation is awaiting user confirmation."}
                else:
                    result = self._dispatch(ROLE_DIAGNOSTIC, name, args)
                responses.append(types.Part(function_response=types.FunctionResponse(
                    name=name, response=result,
                )))
            self._history.append(types.Content(role="user", parts=responses))

            if s.state == AWAITING_CONFIRMATION:
                return self._reply(self._proposal_text())

        _log(f"Maximum diagnostic turns ({self._max_loop_turns}) reached")
        return self._reply("I reached the investigation step limit without a conclusion. "
                           "Send another message to keep going.")

    def _apply_and_verify(self) -> dict:
        s = self.session
        action = s.pending_mutation
        if action is None:
            raise WorkflowError("no staged remediation to apply")

        self._transition(APPLYING)
        self._gate.grant(action)
        try:
            result = self._dispatch(ROLE_REMEDIATION, "manage_firewall_rule", action.to_dict())
        finally:
            self._gate.revoke()
        if result.get("status") not in (RESULT_SUCCESS, RESULT_FAILURE):
            result = RemediationResult(RESULT_FAILURE, result.get("message") or
                                       str(result.get("error")),
                                       {"projectId": action.project,
                                        "ruleName": action.rule_name,
                                        "action": action.verb}).to_dict()
        result["command"] = build_firewall_command(action)
        s.mutation_result = result
        s.mutation_count += 1
        s.pending_mutation = None

        self._transition(VERIFYING)
        verification = self._prober.probe(s.verify_probe)
        s.verification = verification
        s.last_reachability = verification
        self._record(ROLE_COORDINATOR,
                     {"tool": "run_connectivity_test", "args": s.verify_probe.to_dict()},
                     verification.to_dict())

        self._transition(DONE)
        return self._reply(build_report(s))

    # --- Dispatch ---

    def _dispatch(self, role: str, name: str, args: Optional[dict]) -> dict:
        args = dict(args or {})
        if name not in ROLE_TOOLS[role]:
            result = {"status": "error", "error": "tool_not_permitted",
                      "message": f"Tool '{name}' is not available to the {role} role."}
            _log(f"Rejected {name} for role {role}")
        else:
            try:
                request = parse_tool_request(name, args)
            except UnknownTool:
                result = {"status": "error", "error": "unknown_tool",
                          "message": f"Unknown tool: {name}"}
            except ValidationError as e:
                result = invalid_arguments(name, e)
            else:
                result = self._handlers[name](request)
        self._record(role, {"tool": name, "args": args}, result)
        return result

    def _handle_identify_projects(self, request) -> dict:
        scope = self._discoverer.discover(request.project_ids, into=self.session.scope)
        return {"status": "ok", **scope.to_dict()}

    def _handle_fetch_architecture(self, request) -> dict:
        if self._inspector is None:
            return {"status": "error", "error": "not_configured",
                    "message": "Topology inspection is not available in this session."}
        return self._inspector.describe_architecture(request.project_id)

    def _handle_connectivity_test(self, request) -> dict:
        s = self.session
        probe = request.to_probe()
        result = self._prober.probe(probe)
        if result.suggestion is None:
            s.last_probe = probe
            s.last_reachability = result
            for project in result.discovered_projects:
                s.scope.add_project(project)
        return result.to_dict()

    def _handle_query_flow_logs(self, request) -> dict:
        correlation = self._correlator.correlate(
            request.projects, str(request.source_ip), str(request.dest_ip),
            limit=request.limit, lookback_hours=request.hours_ago,
        )
        return correlation.to_dict()

    def _handle_propose_remediation(self, request) -> dict:
        s = self.session
        probe = request.verification.to_probe() if request.verification else s.last_probe
        if probe is None:
            return {"status": "error", "error": "no_verification_probe",
                    "message": "Run run_connectivity_test first, or include a verification "
                               "probe, so the fix can be re-checked after it is applied."}
        action = request.to_action()
        s.root_cause = request.root_cause
        self._transition(ROOT_CAUSED)
        s.pending_mutation = action
        s.verify_probe = probe
        s.baseline = s.last_reachability
        self._transition(AWAITING_CONFIRMATION)
        return {"status": "proposed", "action": action.to_dict(),
                "command": build_firewall_command(action)}

    def _handle_manage_firewall_rule(self, request) -> dict:
        return self._executor.apply(request.to_action()).to_dict()

    # --- Internals ---

    def _proposal_text(self) -> str:
        s = self.session
        action = s.pending_mutation
        return (
            f"Root cause: {s.root_cause}\n\n"
            f"Proposed change ({action.verb} firewall rule '{action.rule_name}' in "
            f"{action.project}):\n"
            f"    {build_firewall_command(action)}\n\n"
            f"Reply 'yes' to apply it, 'no' to discard it, or tell me what to look at instead."
        )

    def _resume_context(self) -> str:
        s = self.session
        last = s.last_reachability.verdict if s.last_reachability else "none"
        return (
            f"[RESUME] Session {s.session_id} resumed. Scope so far: "
            f"{', '.join(s.scope.visited)}. Last connectivity verdict: {last}. "
            f"Network state may have changed; re-check key evidence before concluding."
        )

    def _transition(self, state: str):
        s = self.session
        _log(f"{s.state} -> {state}")
        s.state = state
        s.updated_at = _now_iso()

    def _record(self, role: str, decision: dict, result: Optional[dict] = None):
        self.session.turns.append(Turn(role=role, decision=decision, result=result))
        self.session.updated_at = _now_iso()

    def _begin_turn(self):
        self._cancel_event.clear()
        if self._session_timeout:
            self._deadline = time.monotonic() + self._session_timeout
            if self._shell is not None:
                self._shell.set_deadline(self._deadline)

    def _end_turn(self):
        self._deadline = None
        if self._shell is not None:
            self._shell.set_deadline(None)

    def _check_interrupts(self):
        if self._cancel_event.is_set():
            raise WorkflowError("session cancelled")
        if self._deadline is not None and time.monotonic() >= self._deadline:
            raise WorkflowError("session deadline exceeded")

    def _reply(self, text: str) -> dict:
        s = self.session
        return {
            "response": text,
            "evidenceTrail": s.evidence_trail(),
            "sessionId": s.session_id,
            "state": s.state,
        }


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def build_workflow(
    root_projects=None,
    settings: Optional[Settings] = None,
    session: Optional[WorkflowSession] = None,
    oracle=None,
    client=None,
) -> TroubleshootingWorkflow:
    """Wire a workflow with real collaborators around one shell per session."""
    settings = settings or load_settings()
    session = session or new_session(root_projects)

    if oracle is None:
        if client is None:
            if not settings.api_key:
                raise WorkflowError("GEMINI_API_KEY is not set")
            client = genai.Client(api_key=settings.api_key)
        oracle = GeminiOracle(client, model=settings.model)

    gate = ConfirmationGate()
    shell = SafeExecShell(
        session_id=session.session_id,
        audit_dir=settings.audit_dir,
        hitl_callback=gate,
    )
    probe = ResourceGraphProbe(shell, denylist=settings.denylist)
    return TroubleshootingWorkflow(
        session=session,
        oracle=oracle,
        discoverer=ScopeDiscoverer(probe, max_workers=settings.max_workers),
        prober=ReachabilityProber(shell, denylist=settings.denylist),
        correlator=FlowLogCorrelator(shell, max_workers=settings.max_workers),
        executor=RemediationExecutor(shell),
        gate=gate,
        inspector=probe,
        shell=shell,
        session_timeout=settings.session_timeout,
    )


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _read_message() -> Optional[str]:
    """Multi-line input finished with an empty line. None on EOF with no input."""
    lines = []
    while True:
        try:
            line = input("> " if not lines else "  ")
        except EOFError:
            break
        if line == "" and lines:
            break
        if line:
            lines.append(line)
    text = " ".join(lines).strip()
    return text or None


def main():
    settings = load_settings()
    parser = argparse.ArgumentParser(
        description="Network Doctor — cross-project GCP connectivity troubleshooter")
    parser.add_argument("--project", default=settings.default_project, metavar="PROJECT[,PROJECT]",
                        help="Root project id(s), comma-separated (default: $GOOGLE_CLOUD_PROJECT)")
    parser.add_argument("--model", default=settings.model,
                        help=f"Gemini model (default: {settings.model})")
    parser.add_argument("--audit-dir", default=settings.audit_dir,
                        help=f"Audit directory (default: {settings.audit_dir})")
    parser.add_argument("--resume", metavar="SESSION_ID", help="Resume a previous session")
    args = parser.parse_args()

    settings.model = args.model
    settings.audit_dir = args.audit_dir

    if not settings.api_key:
        print("[ERROR] GEMINI_API_KEY is not set.")
        print("        Set it in your environment or add GEMINI_API_KEY=... to a .env file.")
        sys.exit(1)

    try:
        if args.resume:
            session = load_session(session_path(settings.audit_dir, args.resume), args.resume)
        else:
            if not normalize_roots(args.project):
                print("[ERROR] No project given. Use --project or set GOOGLE_CLOUD_PROJECT.")
                sys.exit(1)
            session = new_session(args.project)
        workflow = build_workflow(settings=settings, session=session)
    except WorkflowError as e:
        print(f"[ERROR] {e}")
        sys.exit(1)

    sid = session.session_id
    snapshot = session_path(settings.audit_dir, sid)
    W = 56
    print("\n" + "═" * W)
    print(f"  NETWORK DOCTOR  |  Session: {sid}")
    print(f"  Root projects: {', '.join(session.root_projects)}  |  State: {session.state}")
    print("═" * W)
    print("\nDescribe the connectivity problem (finish with an empty line, Ctrl-D to quit).")

    try:
        while session.state not in TERMINAL_STATES:
            message = _read_message()
            if message is None:
                break
            reply = workflow.handle_message(message)
            save_session(session, snapshot)
            print(f"\n{reply['response']}\n")
    except (OracleError, WorkflowError) as e:
        print(f"[ERROR] {e}")
        save_session(session, snapshot)
        print(f"Session saved. Resume with: network-doctor --resume {sid}")
        sys.exit(1)
    except KeyboardInterrupt:
        workflow.cancel()
        print("\n\n[Network Doctor] Interrupted — saving session…")
        save_session(session, snapshot)
        print(f"Resume with: network-doctor --resume {sid}")
        sys.exit(0)

    save_session(session, snapshot)
    if session.state == DONE:
        report = write_report(session, settings.audit_dir)
        print(f"Report written to {report}")


if __name__ == "__main__":
    main()
