"""Safe-Exec Shell — safety boundary between the workflow and Google Cloud CLIs.

Public API:
    shell = SafeExecShell(session_id, audit_dir, hitl_callback)
    response = shell.execute({"command": "gcloud compute networks list --project=p1 --format=json",
                              "reasoning": "List networks"})

Four-stage pipeline: Classify -> Gate (approval) -> Execute -> Audit
Four-tier classification: Tier 0 (Forbidden) -> Tier 1 (Allowlist) -> Tier 2 (gcloud / bq verbs)
-> Tier 3 (Dangerous Patterns)
"""

import json
import os
import re
import shlex
import subprocess
import sys
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CLASSIFICATION_FORBIDDEN = "FORBIDDEN"
CLASSIFICATION_SAFE = "SAFE"
CLASSIFICATION_RISKY = "RISKY"

STATUS_COMPLETED = "completed"
STATUS_DENIED = "denied"
STATUS_ERROR = "error"

DEFAULT_TIMEOUT_SECONDS = 120
DEFAULT_AUDIT_DIR = "./audit"
CANCEL_POLL_SECONDS = 0.5
OUTPUT_SUMMARY_CHARS = 200


# ---------------------------------------------------------------------------
# Tier 0 — Forbidden patterns
# ---------------------------------------------------------------------------

# IAM writes are never part of a connectivity fix
_FORBIDDEN_VERBS = frozenset({
    "set-iam-policy", "add-iam-policy-binding", "remove-iam-policy-binding",
})

# Groups where any mutative verb is catastrophic
_FORBIDDEN_MUTATIVE_GROUPS = frozenset({"projects", "organizations", "folders", "billing"})

_FORBIDDEN_AUTH_VERBS = frozenset({"revoke", "login", "activate-service-account"})

_FORBIDDEN_BQ_COMMANDS = frozenset({"rm", "truncate"})


def _positional(args: list[str]) -> list[str]:
    """Positional tokens after the binary. Flags are expected in --flag=value form."""
    return [a for a in args[1:] if not a.startswith("-")]


def _find_verb(positional: list[str]) -> Optional[str]:
    """First positional token that is a known gcloud verb."""
    for p in positional:
        if p in _GCLOUD_SAFE_VERBS or p in _GCLOUD_RISKY_VERBS or p in _FORBIDDEN_VERBS:
            return p
    return None


def _is_forbidden(args: list[str]) -> bool:
    """Tier 0: return True if the command is catastrophic and must be blocked unconditionally."""
    if not args:
        return False

    base = os.path.basename(args[0])
    positional = _positional(args)

    if base == "gcloud":
        verb = _find_verb(positional)
        if verb in _FORBIDDEN_VERBS:
            return True
        if positional and positional[0] in _FORBIDDEN_MUTATIVE_GROUPS \
                and verb in _GCLOUD_RISKY_VERBS:
            return True
        if positional and positional[0] == "auth" and len(positional) > 1 \
                and positional[1] in _FORBIDDEN_AUTH_VERBS:
            return True

    if base == "bq" and positional and positional[0] in _FORBIDDEN_BQ_COMMANDS:
        return True

    return False


# ---------------------------------------------------------------------------
# Tier 1 — Command allowlist
# ---------------------------------------------------------------------------

_ALLOWED_BINARIES = frozenset({"gcloud", "bq"})


def _classify_tier1(args: list[str]) -> Optional[bool]:
    """Tier 1: only the Google Cloud CLIs may run.

    Returns:
        None  — command is in the allowlist (pass to Tier 2)
        True  — command is RISKY (not in allowlist)
    """
    base = os.path.basename(args[0])
    if base in _ALLOWED_BINARIES:
        return None
    return True


# ---------------------------------------------------------------------------
# Tier 2 — gcloud / bq verb rules
# ---------------------------------------------------------------------------

_GCLOUD_SAFE_VERBS = frozenset({
    "list", "describe", "get", "get-host-project", "list-usable",
    "search-all-resources", "list-associated-resources", "wait",
})

_GCLOUD_RISKY_VERBS = frozenset({
    "create", "delete", "update", "patch", "set", "add", "remove", "insert",
    "rerun", "enable", "disable", "start", "stop", "reset", "move", "import", "export",
})

# Connectivity tests are ephemeral diagnostic objects owned by the prober,
# not network configuration
_EPHEMERAL_GROUPS = frozenset({"connectivity-tests"})
_EPHEMERAL_VERBS = frozenset({"create", "delete", "rerun"})

_BQ_SAFE_COMMANDS = frozenset({"ls", "show", "head"})

_SQL_MUTATIVE_RE = re.compile(
    r"\b(?:INSERT|UPDATE|DELETE|MERGE|DROP|CREATE|ALTER|TRUNCATE|GRANT|REVOKE|CALL|EXPORT)\b",
    re.IGNORECASE,
)


def _sql_is_read_only(sql: str) -> bool:
    stripped = sql.strip().lstrip("(").lstrip()
    head = stripped.split(None, 1)[0].upper() if stripped else ""
    if head not in ("SELECT", "WITH"):
        return False
    return not _SQL_MUTATIVE_RE.search(sql)


def _classify_tier2(args: list[str]) -> tuple[Optional[bool], str]:
    """Tier 2: verb-based classification.

    Returns:
        (None, "")    — no verb rule applies
        (True, why)   — RISKY (mutative verb, unknown verb, or non-SELECT SQL)
        (False, "")   — SAFE (read-only verb or ephemeral diagnostic object)
    """
    base = os.path.basename(args[0])
    positional = _positional(args)

    if base == "bq":
        if not positional:
            return True, "bare 'bq' with no subcommand"
        sub = positional[0]
        if sub in _BQ_SAFE_COMMANDS:
            return False, ""
        if sub == "query":
            sql = positional[-1] if len(positional) > 1 else ""
            if _sql_is_read_only(sql):
                return False, ""
            return True, "BigQuery statement is not a read-only SELECT"
        return True, f"bq subcommand '{sub}' is classified as mutative"

    if base != "gcloud":
        return None, ""

    if not positional:
        return True, "bare 'gcloud' with no subcommand"

    verb = _find_verb(positional)
    if verb is None:
        return True, "gcloud command has no recognised verb — default deny"

    if verb in _EPHEMERAL_VERBS and _EPHEMERAL_GROUPS & set(positional):
        return False, ""

    if verb in _GCLOUD_SAFE_VERBS:
        return False, ""

    return True, f"gcloud verb '{verb}' is classified as mutative"


# ---------------------------------------------------------------------------
# Tier 3 — Dangerous pattern detection
# ---------------------------------------------------------------------------

_SHELL_EVASION_PATTERNS = [
    re.compile(r"`[^`]+`"),        # backtick substitution
    re.compile(r"\$\([^)]+\)"),    # $() substitution
    re.compile(r"\$\{[^}]+\}"),    # ${} expansion
]

_CHAIN_TOKENS = frozenset({"&&", "||", "|", ";", ">", ">>", "<"})


def _classify_tier3(args: list[str]) -> bool:
    """Tier 3: Dangerous pattern detection on argument tokens. Returns True if RISKY.

    The SQL text of a `bq query` is exempt: it is a single argv entry and its
    backtick table references are never shell-evaluated.
    """
    tokens = list(args)
    if os.path.basename(args[0]) == "bq" and "query" in _positional(args):
        tokens = tokens[:-1]

    for a in tokens:
        if a in _CHAIN_TOKENS:
            return True
        if "\n" in a:
            return True
        for pattern in _SHELL_EVASION_PATTERNS:
            if pattern.search(a):
                return True
    return False


# ---------------------------------------------------------------------------
# Main classification function (Stage 1)
# ---------------------------------------------------------------------------

def classify(command_str: str) -> tuple[str, Optional[int], str]:
    """Classify a command through the four-tier defense.

    Returns:
        (classification, tier_triggered, risk_explanation)
    """
    try:
        args = shlex.split(command_str.strip())
    except ValueError:
        return (CLASSIFICATION_RISKY, 1,
                "Command has malformed quoting and cannot be parsed safely")

    if not args:
        return (CLASSIFICATION_RISKY, 1, "Empty argument list after parsing")

    if _is_forbidden(args):
        return (CLASSIFICATION_FORBIDDEN, 0,
                "Catastrophic command — blocked unconditionally, no approval possible")

    if _classify_tier1(args) is True:
        return (CLASSIFICATION_RISKY, 1,
                f"Command '{os.path.basename(args[0])}' is not in the allowlist — default deny")

    tier2, why = _classify_tier2(args)
    if tier2 is True:
        return (CLASSIFICATION_RISKY, 2, why)

    if _classify_tier3(args):
        return (CLASSIFICATION_RISKY, 3,
                "Command contains a dangerous pattern (shell substitution or chaining)")

    return (CLASSIFICATION_SAFE, None, "")


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------

@dataclass
class AuditRecord:
    timestamp: str
    session_id: str
    sequence: int
    command: str
    reasoning: str
    status: str
    classification: str
    tier_triggered: Optional[int]
    error: Optional[str]
    action: str
    exit_code: Optional[int]
    output_summary: str
    duration_seconds: Optional[float]


def _write_audit_record(record: AuditRecord, audit_dir: Path, session_id: str):
    """Append one audit record to the session's JSONL file."""
    audit_dir.mkdir(parents=True, exist_ok=True)
    filepath = audit_dir / f"shell_audit_{session_id}.jsonl"
    with open(filepath, "a") as f:
        f.write(json.dumps(asdict(record), default=str) + "\n")


# ---------------------------------------------------------------------------
# Approval decision types
# ---------------------------------------------------------------------------

@dataclass
class HitlDecision:
    action: str  # "approve", "deny"
    reason: str = ""


# Default approval callback: denies everything (fail-closed)
def _default_hitl_callback(
    command: str, reasoning: str, risk_explanation: str, tier: int
) -> HitlDecision:
    return HitlDecision(action="deny")


class CommandCancelled(Exception):
    """Raised internally when the cancel event interrupts a running command."""


# ---------------------------------------------------------------------------
# SafeExecShell — main class
# ---------------------------------------------------------------------------

class SafeExecShell:
    """The Safe-Exec Shell: safety boundary between the workflow and cloud CLIs.

    Usage:
        shell = SafeExecShell(session_id="sess_001", audit_dir="./audit")
        response = shell.execute({"command": "gcloud compute networks list", "reasoning": "..."})

    Request keys beyond command/reasoning:
        timeout_seconds — per-call override of the default timeout
        cleanup         — True for calls that must run even after cancellation
    """

    def __init__(
        self,
        session_id: str,
        audit_dir: str = DEFAULT_AUDIT_DIR,
        hitl_callback: Optional[Callable] = None,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        cancel_event: Optional[threading.Event] = None,
    ):
        self._session_id = session_id
        self._audit_dir = Path(audit_dir)
        self._hitl_callback = hitl_callback or _default_hitl_callback
        self._timeout = timeout_seconds
        self._cancel_event = cancel_event or threading.Event()
        self._deadline: Optional[float] = None
        self._sequence = 0
        self._seq_lock = threading.Lock()

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel_event

    def set_deadline(self, deadline: Optional[float]):
        """Session deadline as a time.monotonic() value. None clears it."""
        self._deadline = deadline

    def execute(self, request: dict[str, Any]) -> dict[str, Any]:
        """Execute a command through the four-stage pipeline.

        Args:
            request: {"command": str, "reasoning": str, ...}

        Returns:
            Response dict: status, classification, action, output, stderr,
            exit_code, error, duration_seconds, audit_id.
        """
        with self._seq_lock:
            self._sequence += 1
            sequence = self._sequence
        audit_id = f"{self._session_id}_{sequence:03d}"

        command_str = request.get("command", "")
        reasoning = request.get("reasoning", "")
        cleanup = bool(request.get("cleanup", False))

        if not isinstance(command_str, str) or not command_str.strip():
            return self._response(audit_id, STATUS_ERROR, CLASSIFICATION_RISKY,
                                  "auto_approved", error="empty_command")
        if "reasoning" not in request:
            return self._response(audit_id, STATUS_ERROR, CLASSIFICATION_RISKY,
                                  "auto_approved", error="missing_reasoning")

        command_str = command_str.strip()

        # --- Stage 1: Classify ---
        classification, tier_triggered, risk_explanation = classify(command_str)

        if classification == CLASSIFICATION_FORBIDDEN:
            response = self._response(audit_id, STATUS_ERROR, classification,
                                      "auto_approved", error="forbidden_command")
            self._write_audit(sequence, command_str, reasoning, response, tier_triggered)
            return response

        # --- Stage 2: Gate ---
        action = "auto_approved"
        if classification == CLASSIFICATION_RISKY:
            try:
                decision = self._hitl_callback(
                    command_str, reasoning, risk_explanation, tier_triggered
                )
            except Exception:
                # Approval mechanism failure: fail closed
                response = self._response(audit_id, STATUS_DENIED, classification,
                                          "user_abandoned")
                self._write_audit(sequence, command_str, reasoning, response, tier_triggered)
                return response

            if isinstance(decision, dict):
                decision = HitlDecision(action=decision.get("action", "deny"),
                                        reason=decision.get("reason", ""))

            if decision.action != "approve":
                response = self._response(audit_id, STATUS_DENIED, classification,
                                          "user_denied", error=decision.reason or None)
                self._write_audit(sequence, command_str, reasoning, response, tier_triggered)
                return response
            action = "user_approved"

        # --- Stage 3: Execute ---
        timeout = request.get("timeout_seconds") or self._timeout
        if self._deadline is not None and not cleanup:
            remaining = self._deadline - time.monotonic()
            if remaining <= 0:
                response = self._response(audit_id, STATUS_ERROR, classification, action,
                                          error="timeout")
                self._write_audit(sequence, command_str, reasoning, response, tier_triggered)
                return response
            timeout = min(timeout, remaining)

        exec_args = shlex.split(command_str)
        start_time = time.monotonic()
        try:
            stdout_str, stderr_str, exit_code = self._run(exec_args, timeout, cancellable=not cleanup)
            response = self._response(audit_id, STATUS_COMPLETED, classification, action,
                                      output=stdout_str, stderr=stderr_str, exit_code=exit_code)
        except subprocess.TimeoutExpired:
            response = self._response(audit_id, STATUS_ERROR, classification, action,
                                      error="timeout")
        except CommandCancelled:
            response = self._response(audit_id, STATUS_ERROR, classification, action,
                                      error="cancelled")
        except FileNotFoundError:
            response = self._response(audit_id, STATUS_COMPLETED, classification, action,
                                      stderr=f"command not found: {exec_args[0]}", exit_code=127)
        response["duration_seconds"] = round(time.monotonic() - start_time, 3)

        # --- Stage 4: Audit ---
        self._write_audit(sequence, command_str, reasoning, response, tier_triggered)
        return response

    def _run(self, argv: list[str], timeout: float, cancellable: bool) -> tuple[str, str, int]:
        """Run argv without a shell. Polls so the cancel event can interrupt the call."""
        proc = subprocess.Popen(argv, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        deadline = time.monotonic() + timeout
        while True:
            try:
                stdout_str, stderr_str = proc.communicate(timeout=CANCEL_POLL_SECONDS)
                return stdout_str or "", stderr_str or "", proc.returncode
            except subprocess.TimeoutExpired:
                if cancellable and self._cancel_event.is_set():
                    proc.kill()
                    proc.communicate()
                    raise CommandCancelled()
                if time.monotonic() >= deadline:
                    proc.kill()
                    proc.communicate()
                    raise subprocess.TimeoutExpired(argv, timeout)

    # --- Response builders ---

    @staticmethod
    def _response(
        audit_id: str,
        status: str,
        classification: str,
        action: str,
        output: str = "",
        stderr: str = "",
        exit_code: Optional[int] = None,
        error: Optional[str] = None,
    ) -> dict[str, Any]:
        return {
            "status": status,
            "classification": classification,
            "action": action,
            "output": output,
            "stderr": stderr,
            "exit_code": exit_code,
            "error": error,
            "duration_seconds": None,
            "audit_id": audit_id,
        }

    def _write_audit(self, sequence: int, command_str: str, reasoning: str,
                     response: dict, tier_triggered: Optional[int]):
        """Write an audit record. Failures are logged to stderr but never block execution."""
        output = response.get("output") or response.get("stderr") or ""
        record = AuditRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            session_id=self._session_id,
            sequence=sequence,
            command=command_str,
            reasoning=reasoning,
            status=response["status"],
            classification=response["classification"],
            tier_triggered=tier_triggered,
            error=response.get("error"),
            action=response["action"],
            exit_code=response.get("exit_code"),
            output_summary=output[:OUTPUT_SUMMARY_CHARS],
            duration_seconds=response.get("duration_seconds"),
        )
        try:
            _write_audit_record(record, self._audit_dir, self._session_id)
        except Exception as e:
            print(f"WARNING: Audit log write failure: {e}", file=sys.stderr)


# ---------------------------------------------------------------------------
# Helpers shared by the cloud adapters
# ---------------------------------------------------------------------------

def command_failed(result: dict) -> bool:
    return result.get("status") != STATUS_COMPLETED or result.get("exit_code", 1) != 0


def failure_message(result: dict) -> str:
    """Human-readable reason for a failed shell call."""
    if result.get("status") == STATUS_DENIED:
        return "command denied by approval gate"
    if result.get("error"):
        return str(result["error"])
    stderr = (result.get("stderr") or "").strip()
    if stderr:
        return stderr.splitlines()[-1]
    return f"exit code {result.get('exit_code')}"


def parse_json_output(result: dict) -> Any:
    """Parse --format=json output. Empty output parses to None."""
    text = (result.get("output") or "").strip()
    if not text:
        return None
    return json.loads(text)
