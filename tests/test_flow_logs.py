"""Flow-log correlation: per-project bq queries, merge, ordering, partial failure."""

import shlex
from datetime import datetime, timezone

import pytest

from flow_logs import (
    FlowLogCorrelator,
    build_flow_log_command,
    dedupe_projects,
    parse_timestamp,
)
from helpers import CMD_ERR, NOT_FOUND_ERR, flow_row, json_ok
from safe_exec_shell import CLASSIFICATION_SAFE, classify


def _rows(shell, project, *rows):
    shell.add_response(f"`{project}.flow_logs._Default`", json_ok(list(rows)))


# ---------------------------------------------------------------------------
# Correlation
# ---------------------------------------------------------------------------

@pytest.mark.p0
class TestCorrelate:

    def test_duplicate_projects_queried_once_and_failures_isolated(self, shell):
        _rows(shell, "p1",
              flow_row("2024-05-01 10:00:00 UTC"),
              flow_row("2024-05-01 10:05:00 UTC"))
        shell.add_response("`p2.flow_logs._Default`", NOT_FOUND_ERR)

        result = FlowLogCorrelator(shell).correlate(["p1", "p2", "p1"], "10.0.0.5", "10.1.0.9")

        assert len(shell.calls_with("`p1.flow_logs")) == 1
        assert len(shell.calls_with("`p2.flow_logs")) == 1
        assert [r.timestamp.minute for r in result.records] == [5, 0]
        assert [e["project"] for e in result.errors] == ["p2"]
        assert "NOT_FOUND" in result.errors[0]["message"]
        assert result.message == "Found 2 flow log entries."

    def test_raising_project_becomes_error_entry(self, shell):
        def explode(req, cmd):
            raise RuntimeError("bq transport closed")
        _rows(shell, "p1", flow_row("2024-05-01 10:00:00 UTC"))
        shell.add_response("`p2.flow_logs._Default`", explode)

        result = FlowLogCorrelator(shell).correlate(["p1", "p2"], "10.0.0.5", "10.1.0.9")

        assert len(result.records) == 1
        assert result.errors == [{"project": "p2", "message": "bq transport closed"}]

    def test_records_newest_first_across_projects(self, shell):
        _rows(shell, "p1", flow_row("2024-05-01T10:00:00Z"), flow_row("2024-05-01T10:30:00Z"))
        _rows(shell, "p2", flow_row("2024-05-01T10:15:00Z"))
        result = FlowLogCorrelator(shell).correlate(["p1", "p2"], "10.0.0.5", "10.1.0.9")
        stamps = [r.timestamp for r in result.records]
        assert stamps == sorted(stamps, reverse=True)
        assert [r.source_dataset_project for r in result.records] == ["p1", "p2", "p1"]

    def test_equal_timestamps_keep_project_order(self, shell):
        _rows(shell, "p2", flow_row("2024-05-01 10:00:00 UTC", src_port="1"))
        _rows(shell, "p1", flow_row("2024-05-01 10:00:00 UTC", src_port="2"))
        result = FlowLogCorrelator(shell, max_workers=2).correlate(
            ["p2", "p1"], "10.0.0.5", "10.1.0.9")
        assert [r.source_dataset_project for r in result.records] == ["p2", "p1"]

    def test_truncated_to_limit(self, shell):
        _rows(shell, "p1", *[flow_row(f"2024-05-01 10:0{i}:00 UTC") for i in range(5)])
        _rows(shell, "p2", *[flow_row(f"2024-05-01 11:0{i}:00 UTC") for i in range(5)])
        result = FlowLogCorrelator(shell).correlate(["p1", "p2"], "10.0.0.5", "10.1.0.9", limit=3)
        assert len(result.records) == 3
        assert all(r.timestamp.hour == 11 for r in result.records)
        assert "--max_rows=3" in shell.commands()[0]

    def test_empty_result_names_projects_and_hint(self, shell):
        result = FlowLogCorrelator(shell).correlate(["p1", "p2"], "10.0.0.5", "10.1.0.9")
        assert result.records == []
        assert "Verified in projects: p1, p2" in result.message
        assert "flow_logs" in result.message
        assert "ENABLED" in result.message

    def test_all_projects_failing_is_not_fatal(self, shell):
        shell.add_response("bq query", CMD_ERR)
        result = FlowLogCorrelator(shell).correlate(["p1", "p2"], "10.0.0.5", "10.1.0.9")
        assert result.records == []
        assert len(result.errors) == 2

    def test_invalid_project_id_is_rejected_without_a_query(self, shell):
        result = FlowLogCorrelator(shell).correlate(["p1; rm -rf /", "p1"], "10.0.0.5", "10.1.0.9")
        assert len(shell.calls) == 1
        assert result.errors[0]["project"] == "p1; rm -rf /"

    def test_bad_rows_are_skipped(self, shell):
        _rows(shell, "p1", flow_row("not a time"), flow_row("2024-05-01 10:00:00 UTC"))
        result = FlowLogCorrelator(shell).correlate(["p1"], "10.0.0.5", "10.1.0.9")
        assert len(result.records) == 1
        assert result.errors == []

    def test_to_dict_shape(self, shell):
        _rows(shell, "p1", flow_row("2024-05-01 10:00:00 UTC"))
        shell.add_response("`p2.flow_logs", CMD_ERR)
        out = FlowLogCorrelator(shell).correlate(["p1", "p2"], "10.0.0.5", "10.1.0.9").to_dict()
        assert out["recordCount"] == 1
        assert out["records"][0]["dest_port"] == 443
        assert out["records"][0]["timestamp"] == "2024-05-01T10:00:00+00:00"
        assert out["projects"] == ["p1", "p2"]
        assert out["errors"] == [{"project": "p2", "message": "command failed"}]


# ---------------------------------------------------------------------------
# Command building
# ---------------------------------------------------------------------------

@pytest.mark.p1
class TestFlowLogCommand:

    def test_query_is_parameterised(self):
        cmd = build_flow_log_command("p1", "10.0.0.5", "10.1.0.9", 20, 6)
        argv = shlex.split(cmd)
        assert argv[:2] == ["bq", "query"]
        assert "--parameter=sourceIp:STRING:10.0.0.5" in argv
        assert "--parameter=destIp:STRING:10.1.0.9" in argv
        assert "--parameter=hoursAgo:INT64:6" in argv
        assert "--parameter=limit:INT64:20" in argv
        assert "10.0.0.5" not in argv[-1]
        assert "`p1.flow_logs._Default`" in argv[-1]

    def test_query_is_bidirectional(self):
        sql = shlex.split(build_flow_log_command("p1", "a", "b", 20, 1))[-1]
        assert "src_ip = @sourceIp AND jsonPayload.connection.dest_ip = @destIp" in sql
        assert "src_ip = @destIp AND jsonPayload.connection.dest_ip = @sourceIp" in sql

    def test_query_classifies_as_safe(self):
        cmd = build_flow_log_command("p1", "10.0.0.5", "10.1.0.9", 20, 1)
        assert classify(cmd)[0] == CLASSIFICATION_SAFE


@pytest.mark.p1
@pytest.mark.parametrize("value", [
    "2024-05-01 10:00:00 UTC",
    "2024-05-01T10:00:00Z",
    "2024-05-01T10:00:00+00:00",
    "1714557600",
    1714557600.0,
    {"value": "2024-05-01 10:00:00 UTC"},
])
def test_parse_timestamp_formats(value):
    assert parse_timestamp(value) == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


@pytest.mark.p1
def test_parse_timestamp_rejects_garbage():
    with pytest.raises(ValueError):
        parse_timestamp("")
    with pytest.raises(ValueError):
        parse_timestamp("yesterday")


@pytest.mark.p1
def test_dedupe_projects():
    assert dedupe_projects(["a", "b", "a"]) == ["a", "b"]
    assert dedupe_projects("a") == ["a"]
