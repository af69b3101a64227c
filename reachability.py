"""Active reachability probes using ephemeral Network Intelligence Center connectivity tests.

Public API:
    prober = ReachabilityProber(shell)
    result = prober.probe(ProbeRequest(project="svc-proj", source_ip="10.0.0.5",
                                       dest_ip="10.1.0.9", dest_port=443))
    result.verdict              # REACHABLE | UNREACHABLE | AMBIGUOUS | UNDETERMINED
    result.discovered_projects  # projects seen along the trace

Lifecycle per probe: create -> poll describe until evaluated -> delete.
The delete always runs exactly once, whatever happened before it.
"""

import json
import secrets
import shlex
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional

from project_scope import DEFAULT_DENYLIST, extract_project_ids
from safe_exec_shell import command_failed, failure_message, parse_json_output


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VERDICT_REACHABLE = "REACHABLE"
VERDICT_UNREACHABLE = "UNREACHABLE"
VERDICT_AMBIGUOUS = "AMBIGUOUS"
VERDICT_UNDETERMINED = "UNDETERMINED"

_KNOWN_VERDICTS = frozenset({
    VERDICT_REACHABLE, VERDICT_UNREACHABLE, VERDICT_AMBIGUOUS, VERDICT_UNDETERMINED,
})

TEST_ID_PREFIX = "nd-test"
TEST_DESCRIPTION = "Created by Network Doctor"

DEFAULT_MAX_POLLS = 20
DEFAULT_INITIAL_POLL_INTERVAL = 2
DEFAULT_MAX_POLL_INTERVAL = 15

API_SUGGESTION = ("Ensure API 'networkmanagement.googleapis.com' is enabled and the caller "
                  "has roles/networkmanagement.admin.")


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------

def _compute_poll_interval(attempt: int, initial: int, max_interval: int) -> int:
    """Compute exponential backoff: min(initial * 2^(attempt-1), max_interval)."""
    if attempt < 1:
        attempt = 1
    return min(initial * (2 ** (attempt - 1)), max_interval)


def new_test_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"{TEST_ID_PREFIX}-{stamp}-{secrets.token_hex(3)}"


def map_verdict(raw: Optional[str]) -> str:
    if raw in _KNOWN_VERDICTS:
        return raw
    return VERDICT_UNDETERMINED


def _reachability_details(resource: Optional[dict]) -> dict:
    details = (resource or {}).get("reachabilityDetails")
    return details if isinstance(details, dict) else {}


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass
class ProbeRequest:
    project: str
    source_ip: Optional[str] = None
    source_instance: Optional[str] = None
    dest_ip: Optional[str] = None
    dest_instance: Optional[str] = None
    dest_port: Optional[int] = None
    protocol: str = "TCP"

    def to_dict(self) -> dict:
        return {
            "projectId": self.project,
            "sourceIp": self.source_ip,
            "sourceInstance": self.source_instance,
            "destIp": self.dest_ip,
            "destInstance": self.dest_instance,
            "destinationPort": self.dest_port,
            "protocol": self.protocol,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProbeRequest":
        return cls(
            project=data["projectId"],
            source_ip=data.get("sourceIp"),
            source_instance=data.get("sourceInstance"),
            dest_ip=data.get("destIp"),
            dest_instance=data.get("destInstance"),
            dest_port=data.get("destinationPort"),
            protocol=data.get("protocol") or "TCP",
        )


@dataclass
class ReachabilityResult:
    test_id: str
    verdict: str
    trace: list[str] = field(default_factory=list)
    discovered_projects: list[str] = field(default_factory=list)
    verify_time: Optional[str] = None
    error: Optional[str] = None
    suggestion: Optional[str] = None
    cleanup_error: Optional[str] = None

    def to_dict(self) -> dict:
        out = {
            "testId": self.test_id,
            "result": self.verdict,
            "verifyTime": self.verify_time,
            "fullTrace": list(self.trace),
            "discoveredScope": list(self.discovered_projects),
        }
        if self.error:
            out["error"] = self.error
        if self.suggestion:
            out["suggestion"] = self.suggestion
        if self.cleanup_error:
            out["cleanupError"] = self.cleanup_error
        if self.error is None:
            related = ", ".join(self.discovered_projects) or "none"
            out["message"] = (f"Test completed. Result: {self.verdict}. "
                              f"Discovered related projects: {related}")
        return out


# ---------------------------------------------------------------------------
# ReachabilityProber
# ---------------------------------------------------------------------------

class ReachabilityProber:
    """Runs one ephemeral connectivity test per probe and always deletes it."""

    def __init__(
        self,
        shell,
        denylist: Iterable[str] = DEFAULT_DENYLIST,
        max_polls: int = DEFAULT_MAX_POLLS,
        initial_poll_interval: int = DEFAULT_INITIAL_POLL_INTERVAL,
        max_poll_interval: int = DEFAULT_MAX_POLL_INTERVAL,
    ):
        self._shell = shell
        self._denylist = frozenset(denylist)
        self._max_polls = max_polls
        self._initial_poll_interval = initial_poll_interval
        self._max_poll_interval = max_poll_interval

    def probe(self, request: ProbeRequest) -> ReachabilityResult:
        test_id = new_test_id()
        self._log(f"Creating connectivity test projects/{request.project}/locations/global/"
                  f"connectivityTests/{test_id}…")
        try:
            result = self._run_test(request, test_id)
        except Exception as e:
            result = self._error_result(test_id, f"Connectivity test failed: {e}")
        finally:
            cleanup_error = self._delete(request.project, test_id)
        result.cleanup_error = cleanup_error
        return result

    # --- Lifecycle ---

    def _run_test(self, request: ProbeRequest, test_id: str) -> ReachabilityResult:
        created = self._shell.execute({
            "command": self._create_command(request, test_id),
            "reasoning": "Creating an ephemeral connectivity test to check reachability "
                         f"from {request.source_ip or request.source_instance} to "
                         f"{request.dest_ip or request.dest_instance}",
        })
        if command_failed(created):
            return self._error_result(test_id, f"Failed to create connectivity test: "
                                               f"{failure_message(created)}")

        try:
            resource = parse_json_output(created)
        except ValueError as e:
            return self._error_result(test_id, f"Malformed create output: {e}")
        if resource is not None and not isinstance(resource, dict):
            return self._error_result(test_id, "Malformed create output: expected a JSON object")

        details = _reachability_details(resource)
        polls = 0
        while not details.get("result") and polls < self._max_polls:
            polls += 1
            time.sleep(_compute_poll_interval(
                polls, self._initial_poll_interval, self._max_poll_interval
            ))
            described = self._shell.execute({
                "command": shlex.join([
                    "gcloud", "network-management", "connectivity-tests", "describe",
                    test_id, f"--project={request.project}", "--format=json",
                ]),
                "reasoning": f"Polling connectivity test {test_id} for its reachability verdict",
            })
            if command_failed(described):
                return self._error_result(test_id, f"Failed to read connectivity test: "
                                                   f"{failure_message(described)}")
            try:
                resource = parse_json_output(described)
            except ValueError as e:
                return self._error_result(test_id, f"Malformed describe output: {e}")
            if resource is not None and not isinstance(resource, dict):
                return self._error_result(test_id,
                                          "Malformed describe output: expected a JSON object")
            details = _reachability_details(resource)

        if not details.get("result"):
            self._log(f"  {test_id} not evaluated after {polls} polls")
            return ReachabilityResult(
                test_id=test_id, verdict=VERDICT_UNDETERMINED,
                error="Connectivity test did not finish evaluating within the polling window",
            )

        return self._build_result(request, test_id, details)

    def _build_result(self, request: ProbeRequest, test_id: str,
                      details: dict) -> ReachabilityResult:
        verdict = map_verdict(details.get("result"))
        trace: list[str] = []
        discovered: set[str] = set()
        exclude = self._denylist | {request.project}
        for t in details.get("traces") or []:
            for step in t.get("steps") or []:
                serialized = json.dumps(step, sort_keys=True)
                trace.append(serialized)
                discovered |= extract_project_ids(serialized, exclude=exclude)

        error = details.get("error")
        if isinstance(error, dict):
            error = error.get("message") or json.dumps(error, sort_keys=True)

        self._log(f"  {test_id}: {verdict}, {len(trace)} trace step(s), "
                  f"related projects: {', '.join(sorted(discovered)) or 'none'}")
        return ReachabilityResult(
            test_id=test_id,
            verdict=verdict,
            trace=trace,
            discovered_projects=sorted(discovered),
            verify_time=details.get("verifyTime"),
            error=error or None,
        )

    def _delete(self, project: str, test_id: str) -> Optional[str]:
        """Delete the test. Returns an error string on failure, never raises."""
        self._log(f"Deleting connectivity test {test_id}…")
        try:
            deleted = self._shell.execute({
                "command": shlex.join([
                    "gcloud", "network-management", "connectivity-tests", "delete",
                    test_id, f"--project={project}", "--quiet", "--format=json",
                ]),
                "reasoning": f"Removing ephemeral connectivity test {test_id}",
                "cleanup": True,
            })
        except Exception as e:
            self._log(f"  Cleanup of {test_id} raised: {e}")
            return str(e)
        if command_failed(deleted):
            message = failure_message(deleted)
            self._log(f"  Cleanup of {test_id} failed: {message}")
            return message
        return None

    # --- Builders ---

    @staticmethod
    def _create_command(request: ProbeRequest, test_id: str) -> str:
        argv = [
            "gcloud", "network-management", "connectivity-tests", "create", test_id,
            f"--project={request.project}",
            f"--description={TEST_DESCRIPTION}",
            f"--protocol={request.protocol or 'TCP'}",
        ]
        if request.source_ip:
            argv.append(f"--source-ip-address={request.source_ip}")
        if request.source_instance:
            argv.append(f"--source-instance={request.source_instance}")
        if request.dest_ip:
            argv.append(f"--destination-ip-address={request.dest_ip}")
        if request.dest_instance:
            argv.append(f"--destination-instance={request.dest_instance}")
        if request.dest_port is not None:
            argv.append(f"--destination-port={request.dest_port}")
        argv.append("--format=json")
        return shlex.join(argv)

    def _error_result(self, test_id: str, message: str) -> ReachabilityResult:
        self._log(f"  {message}")
        return ReachabilityResult(test_id=test_id, verdict=VERDICT_UNDETERMINED,
                                  error=message, suggestion=API_SUGGESTION)

    def _log(self, message: str):
        print(f"[Reachability] {message}", file=sys.stderr)
