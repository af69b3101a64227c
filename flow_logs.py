"""VPC flow-log correlation across every project in scope.

Public API:
    correlator = FlowLogCorrelator(shell)
    result = correlator.correlate(["svc-proj", "host-proj"], "10.0.0.5", "10.1.0.9")
    result.records   # newest first, at most `limit`
    result.errors    # [{"project": ..., "message": ...}]

Each project is queried through `bq query` against its `flow_logs._Default`
view. A project whose dataset is missing or unreadable is recorded as an error
and the others still count.
"""

import re
import shlex
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from safe_exec_shell import command_failed, failure_message, parse_json_output


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_LIMIT = 20
DEFAULT_LOOKBACK_HOURS = 1
DEFAULT_MAX_WORKERS = 4
FLOW_LOG_DATASET = "flow_logs"
FLOW_LOG_VIEW = "_Default"

_SAFE_PROJECT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9:._-]*$")

FLOW_LOG_SQL = """\
SELECT
  timestamp,
  jsonPayload.connection.src_ip AS src_ip,
  jsonPayload.connection.src_port AS src_port,
  jsonPayload.connection.dest_ip AS dest_ip,
  jsonPayload.connection.dest_port AS dest_port,
  jsonPayload.connection.protocol AS protocol,
  jsonPayload.bytes_sent AS bytes_sent,
  jsonPayload.rtt_msec AS rtt_msec,
  resource.labels.subnetwork_name AS subnetwork_name,
  resource.labels.project_id AS resource_project_id
FROM `{table}`
WHERE
  timestamp > TIMESTAMP_SUB(CURRENT_TIMESTAMP(), INTERVAL @hoursAgo HOUR)
  AND (
    (jsonPayload.connection.src_ip = @sourceIp AND jsonPayload.connection.dest_ip = @destIp)
    OR
    (jsonPayload.connection.src_ip = @destIp AND jsonPayload.connection.dest_ip = @sourceIp)
  )
ORDER BY timestamp DESC
LIMIT @limit"""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FlowLogRecord:
    timestamp: datetime
    src_ip: Optional[str]
    src_port: Optional[int]
    dest_ip: Optional[str]
    dest_port: Optional[int]
    protocol: Optional[int]
    bytes_sent: Optional[int]
    rtt_msec: Optional[int]
    source_dataset_project: str
    subnetwork_name: Optional[str] = None
    resource_project_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "src_ip": self.src_ip,
            "src_port": self.src_port,
            "dest_ip": self.dest_ip,
            "dest_port": self.dest_port,
            "protocol": self.protocol,
            "bytes_sent": self.bytes_sent,
            "rtt_msec": self.rtt_msec,
            "subnetwork_name": self.subnetwork_name,
            "resource_project_id": self.resource_project_id,
            "source_dataset_project": self.source_dataset_project,
        }


@dataclass
class FlowLogCorrelation:
    records: list[FlowLogRecord]
    errors: list[dict] = field(default_factory=list)
    message: str = ""
    projects: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        out = {
            "recordCount": len(self.records),
            "records": [r.to_dict() for r in self.records],
            "message": self.message,
            "projects": list(self.projects),
        }
        if self.errors:
            out["errors"] = list(self.errors)
        return out


# ---------------------------------------------------------------------------
# Row parsing
# ---------------------------------------------------------------------------

def parse_timestamp(value: Any) -> datetime:
    """Parse a BigQuery TIMESTAMP as rendered by `bq --format=json`.

    Accepts epoch seconds (number or numeric string) and ISO-like strings with
    a space or 'T' separator and an optional ' UTC' / 'Z' suffix.
    """
    if isinstance(value, dict) and "value" in value:
        value = value["value"]
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"unrecognised timestamp: {value!r}")
    text = value.strip()
    try:
        return datetime.fromtimestamp(float(text), tz=timezone.utc)
    except ValueError:
        pass
    if text.endswith(" UTC"):
        text = text[:-4] + "+00:00"
    elif text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(float(value))


def _row_to_record(row: dict, project: str) -> FlowLogRecord:
    return FlowLogRecord(
        timestamp=parse_timestamp(row.get("timestamp")),
        src_ip=row.get("src_ip"),
        src_port=_to_int(row.get("src_port")),
        dest_ip=row.get("dest_ip"),
        dest_port=_to_int(row.get("dest_port")),
        protocol=_to_int(row.get("protocol")),
        bytes_sent=_to_int(row.get("bytes_sent")),
        rtt_msec=_to_int(row.get("rtt_msec")),
        subnetwork_name=row.get("subnetwork_name"),
        resource_project_id=row.get("resource_project_id"),
        source_dataset_project=project,
    )


def build_flow_log_command(project: str, src_ip: str, dst_ip: str,
                           limit: int, lookback_hours: int) -> str:
    """The parameterised, read-only bq invocation for one project."""
    sql = FLOW_LOG_SQL.format(table=f"{project}.{FLOW_LOG_DATASET}.{FLOW_LOG_VIEW}")
    argv = [
        "bq", "query",
        "--use_legacy_sql=false",
        "--format=json",
        f"--max_rows={limit}",
        f"--parameter=sourceIp:STRING:{src_ip}",
        f"--parameter=destIp:STRING:{dst_ip}",
        f"--parameter=hoursAgo:INT64:{lookback_hours}",
        f"--parameter=limit:INT64:{limit}",
        sql,
    ]
    return shlex.join(argv)


def dedupe_projects(projects) -> list[str]:
    if isinstance(projects, str):
        projects = [projects]
    seen: list[str] = []
    for p in projects or []:
        if p not in seen:
            seen.append(p)
    return seen


# ---------------------------------------------------------------------------
# FlowLogCorrelator
# ---------------------------------------------------------------------------

class FlowLogCorrelator:
    """Merges bidirectional flow-log rows from every project in scope."""

    def __init__(self, shell, max_workers: int = DEFAULT_MAX_WORKERS):
        self._shell = shell
        self._max_workers = max(1, max_workers)

    def correlate(
        self,
        projects,
        src_ip: str,
        dst_ip: str,
        limit: int = DEFAULT_LIMIT,
        lookback_hours: int = DEFAULT_LOOKBACK_HOURS,
    ) -> FlowLogCorrelation:
        unique = dedupe_projects(projects)
        limit = max(0, int(limit))
        self._log(f"Querying VPC Flow Logs for {src_ip} <-> {dst_ip} in projects: "
                  f"{', '.join(unique)}…")

        per_project = self._query_all(unique, src_ip, dst_ip, limit, lookback_hours)

        rows: list[FlowLogRecord] = []
        errors: list[dict] = []
        for project, (records, error) in zip(unique, per_project):
            if error is not None:
                errors.append({"project": project, "message": error})
            rows.extend(records)

        # sorted() is stable with reverse=True: ties keep project order
        merged = sorted(rows, key=lambda r: r.timestamp, reverse=True)[:limit]

        if merged:
            message = f"Found {len(merged)} flow log entries."
        else:
            message = (f"No flow logs found. Verified in projects: {', '.join(unique)}. "
                       f"Ensure VPC Flow Logs are ENABLED and exported to BigQuery dataset "
                       f"'{FLOW_LOG_DATASET}' in these projects.")
        return FlowLogCorrelation(records=merged, errors=errors, message=message,
                                  projects=unique)

    def _query_all(self, projects: list[str], src_ip: str, dst_ip: str,
                   limit: int, lookback_hours: int) -> list[tuple[list, Optional[str]]]:
        if not projects:
            return []
        workers = min(self._max_workers, len(projects))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [
                pool.submit(self._query_project, p, src_ip, dst_ip, limit, lookback_hours)
                for p in projects
            ]
            return [self._collect(p, f) for p, f in zip(projects, futures)]

    def _collect(self, project: str, future) -> tuple[list, Optional[str]]:
        try:
            return future.result()
        except Exception as e:
            self._log(f"Flow log query in {project} raised: {e}")
            return [], str(e)

    def _query_project(self, project: str, src_ip: str, dst_ip: str,
                       limit: int, lookback_hours: int) -> tuple[list, Optional[str]]:
        """Returns (records, error) for one project. Never raises for query failures."""
        if not _SAFE_PROJECT_RE.match(project):
            return [], f"invalid project id: {project!r}"

        self._log(f"Executing BQ query in {project}…")
        result = self._shell.execute({
            "command": build_flow_log_command(project, src_ip, dst_ip, limit, lookback_hours),
            "reasoning": f"Reading VPC flow logs between {src_ip} and {dst_ip} in {project}",
        })
        if command_failed(result):
            message = failure_message(result)
            self._log(f"Failed to query flow logs in {project}: {message}")
            return [], message

        try:
            data = parse_json_output(result) or []
        except ValueError as e:
            return [], f"malformed bq output: {e}"

        records = []
        for row in data if isinstance(data, list) else []:
            try:
                records.append(_row_to_record(row, project))
            except (ValueError, TypeError, AttributeError) as e:
                self._log(f"Skipping unparseable flow log row in {project}: {e}")
        if not records:
            self._log(f"No matching flow logs found in {project}.")
        return records, None

    def _log(self, message: str):
        print(f"[Flow Logs] {message}", file=sys.stderr)
