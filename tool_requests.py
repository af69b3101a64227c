"""Typed tool-call arguments, one pydantic model per tool.

The oracle's function-call args arrive as loose dicts. They are validated here
before any cloud call is made; a failure becomes an `invalid_arguments` error
dict that is fed back to the oracle.
"""

from typing import Annotated, ClassVar, Literal, Optional

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    IPvAnyAddress,
    ValidationError,
    field_validator,
    model_validator,
)

from firewall_remediation import FirewallAction, build_firewall_command
from reachability import ProbeRequest


_PROJECT_PATTERN = r"^[^\s/`'\"]+$"
_RULE_NAME_PATTERN = r"^[a-z]([-a-z0-9]{0,61}[a-z0-9])?$"


def _split_list(value):
    """Accept "a, b" as well as ["a", "b"]."""
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return value


def _check_projects(value: list[str]) -> list[str]:
    checked = []
    for v in value:
        v = v.strip()
        if not v or any(c in v for c in " /`'\"\t\n"):
            raise ValueError(f"invalid project id: {v!r}")
        checked.append(v)
    return checked


ProjectList = Annotated[list[str], BeforeValidator(_split_list), AfterValidator(_check_projects)]


class ToolRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    tool: ClassVar[str] = ""


class IdentifyNetworkProjects(ToolRequest):
    tool: ClassVar[str] = "identify_network_projects"

    project_ids: ProjectList = Field(alias="projectIds", min_length=1)


class FetchNetworkArchitecture(ToolRequest):
    tool: ClassVar[str] = "fetch_network_architecture"

    project_id: str = Field(alias="projectId", pattern=_PROJECT_PATTERN)


class RunConnectivityTest(ToolRequest):
    tool: ClassVar[str] = "run_connectivity_test"

    project_id: str = Field(alias="projectId", pattern=_PROJECT_PATTERN)
    source_ip: Optional[IPvAnyAddress] = Field(default=None, alias="sourceIp")
    source_instance: Optional[str] = Field(default=None, alias="sourceInstance")
    dest_ip: Optional[IPvAnyAddress] = Field(default=None, alias="destIp")
    dest_instance: Optional[str] = Field(default=None, alias="destInstance")
    destination_port: Optional[int] = Field(default=None, alias="destinationPort",
                                            ge=1, le=65535)
    protocol: Literal["TCP", "UDP", "ICMP", "ESP", "AH", "SCTP", "IPIP"] = "TCP"

    @field_validator("protocol", mode="before")
    @classmethod
    def _upper(cls, value):
        return value.upper() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _endpoints(self):
        if not (self.source_ip or self.source_instance):
            raise ValueError("sourceIp or sourceInstance is required")
        if not (self.dest_ip or self.dest_instance):
            raise ValueError("destIp or destInstance is required")
        return self

    def to_probe(self) -> ProbeRequest:
        return ProbeRequest(
            project=self.project_id,
            source_ip=str(self.source_ip) if self.source_ip else None,
            source_instance=self.source_instance,
            dest_ip=str(self.dest_ip) if self.dest_ip else None,
            dest_instance=self.dest_instance,
            dest_port=self.destination_port,
            protocol=self.protocol,
        )


class QueryFlowLogs(ToolRequest):
    tool: ClassVar[str] = "query_flow_logs"

    projects: ProjectList = Field(min_length=1)
    source_ip: IPvAnyAddress = Field(alias="sourceIp")
    dest_ip: IPvAnyAddress = Field(alias="destIp")
    limit: int = Field(default=20, ge=1, le=1000)
    hours_ago: int = Field(default=1, alias="hoursAgo", ge=1, le=720)


class FirewallRuleEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    IPProtocol: str = Field(min_length=1)
    ports: Optional[list[str]] = None

    @field_validator("ports", mode="before")
    @classmethod
    def _stringify(cls, value):
        if isinstance(value, list):
            return [str(v) for v in value]
        return value


class ManageFirewallRule(ToolRequest):
    tool: ClassVar[str] = "manage_firewall_rule"

    project_id: str = Field(alias="projectId", pattern=_PROJECT_PATTERN)
    action: Literal["create", "update", "delete"]
    rule_name: str = Field(alias="ruleName", pattern=_RULE_NAME_PATTERN)
    network: Optional[str] = Field(default=None, pattern=r"^[^\s`'\"]+$")
    description: Optional[str] = None
    direction: Optional[Literal["INGRESS", "EGRESS"]] = None
    priority: Optional[int] = Field(default=None, ge=0, le=65535)
    target_tags: Optional[list[str]] = Field(default=None, alias="targetTags")
    source_ranges: Optional[list[str]] = Field(default=None, alias="sourceRanges")
    allowed: Optional[list[FirewallRuleEntry]] = None
    denied: Optional[list[FirewallRuleEntry]] = None

    @field_validator("action", mode="before")
    @classmethod
    def _lower(cls, value):
        return value.lower() if isinstance(value, str) else value

    @field_validator("direction", mode="before")
    @classmethod
    def _upper(cls, value):
        return value.upper() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _expressible(self):
        # raises ValueError for combinations gcloud cannot apply
        build_firewall_command(self.to_action())
        return self

    def to_action(self) -> FirewallAction:
        return FirewallAction(
            verb=self.action.upper(),
            project=self.project_id,
            rule_name=self.rule_name,
            network=self.network,
            description=self.description,
            direction=self.direction,
            priority=self.priority,
            target_tags=self.target_tags,
            source_ranges=self.source_ranges,
            allowed=[e.model_dump(exclude_none=True) for e in self.allowed]
            if self.allowed else None,
            denied=[e.model_dump(exclude_none=True) for e in self.denied]
            if self.denied else None,
        )


class ProposeRemediation(ManageFirewallRule):
    """A firewall change put to the user for confirmation, with the diagnosis behind it."""

    tool: ClassVar[str] = "propose_remediation"

    root_cause: str = Field(alias="rootCause", min_length=1)
    verification: Optional[RunConnectivityTest] = None


TOOL_REQUESTS: dict[str, type[ToolRequest]] = {
    m.tool: m for m in (
        IdentifyNetworkProjects,
        FetchNetworkArchitecture,
        RunConnectivityTest,
        QueryFlowLogs,
        ManageFirewallRule,
        ProposeRemediation,
    )
}


class UnknownTool(Exception):
    pass


def parse_tool_request(name: str, args: Optional[dict]) -> ToolRequest:
    """Validate raw function-call args. Raises UnknownTool or pydantic.ValidationError."""
    model = TOOL_REQUESTS.get(name)
    if model is None:
        raise UnknownTool(name)
    return model.model_validate(dict(args or {}))


def invalid_arguments(name: str, error: ValidationError) -> dict:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in e['loc']) or name}: {e['msg']}" for e in error.errors()
    )
    return {"status": "error", "error": "invalid_arguments",
            "message": f"Invalid arguments for {name}: {problems}"}
