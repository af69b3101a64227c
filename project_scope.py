"""Project scope discovery: which GCP projects take part in a network path.

Public API:
    probe = ResourceGraphProbe(shell, denylist=load_denylist())
    scope = ScopeDiscoverer(probe).discover(["service-proj"])
    scope.visited   # ["service-proj", "host-proj", ...]
    scope.edges     # [ScopeEdge(source, target, reason), ...]

Discovery is bounded to depth 1: roots are scanned, projects they reference are
recorded but never scanned in the same call.
"""

import json
import os
import re
import shlex
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from typing import Iterable, Optional

from safe_exec_shell import command_failed, failure_message, parse_json_output


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_DENYLIST = ("google-cloud-clients",)
DEFAULT_MAX_WORKERS = 4
ASSET_PAGE_SIZE = 500
INSTANCE_PAGE_SIZE = 100

ASSET_NETWORK = "compute.googleapis.com/Network"
ASSET_SUBNETWORK = "compute.googleapis.com/Subnetwork"
ASSET_INTERCONNECT = "compute.googleapis.com/InterconnectAttachment"
ASSET_FORWARDING_RULE = "compute.googleapis.com/ForwardingRule"
ASSET_BACKEND_SERVICE = "compute.googleapis.com/BackendService"
ASSET_INSTANCE = "compute.googleapis.com/Instance"

ARCHITECTURE_ASSET_TYPES = (
    ASSET_NETWORK,
    ASSET_SUBNETWORK,
    "compute.googleapis.com/Firewall",
    "compute.googleapis.com/Route",
    "compute.googleapis.com/VpnTunnel",
    ASSET_FORWARDING_RULE,
    "compute.googleapis.com/UrlMap",
    "compute.googleapis.com/TargetHttpProxy",
    ASSET_BACKEND_SERVICE,
)

# .../projects/<id>/... in URLs, relative names, and serialized JSON
_PROJECT_REF_RE = re.compile(r"projects/([^/\"'\s]+)/")


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------

def extract_project_ids(text: Optional[str], exclude: Iterable[str] = ()) -> set[str]:
    """Return every project id embedded as projects/<id>/ in text, minus exclude."""
    if not text:
        return set()
    excluded = set(exclude)
    return {m for m in _PROJECT_REF_RE.findall(text) if m not in excluded}


def load_denylist(env: Optional[dict] = None) -> frozenset[str]:
    """Deny-list of project ids that are never treated as discovered projects."""
    env = os.environ if env is None else env
    raw = env.get("NETWORK_DOCTOR_PROJECT_DENYLIST")
    if raw is None:
        return frozenset(DEFAULT_DENYLIST)
    return frozenset(p.strip() for p in raw.split(",") if p.strip())


def normalize_roots(roots) -> list[str]:
    """Accept a list or a comma-separated string; drop blanks and repeats, keep order."""
    if isinstance(roots, str):
        roots = roots.split(",")
    ordered: list[str] = []
    for r in roots or []:
        r = str(r).strip()
        if r and r not in ordered:
            ordered.append(r)
    return ordered


def _as_list(value) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScopeEdge:
    source: str
    target: str
    reason: str


@dataclass(frozen=True)
class ScanError:
    project: str
    kind: str
    message: str


@dataclass
class ProjectScan:
    project: str
    refs: set[str] = field(default_factory=set)
    edges: list[ScopeEdge] = field(default_factory=list)
    errors: list[ScanError] = field(default_factory=list)


@dataclass
class DiscoveredScope:
    """Append-only project graph. Nothing is ever removed once added."""

    visited: list[str] = field(default_factory=list)
    edges: list[ScopeEdge] = field(default_factory=list)
    errors: list[ScanError] = field(default_factory=list)

    def __post_init__(self):
        self._visited_set = set(self.visited)
        self._edge_set = set(self.edges)

    def add_project(self, project: str) -> bool:
        """Add a project once. Returns True if it was new."""
        if project in self._visited_set:
            return False
        self._visited_set.add(project)
        self.visited.append(project)
        return True

    def add_edge(self, edge: ScopeEdge) -> bool:
        """Record an edge (and its target) unless the exact triple is already present."""
        self.add_project(edge.target)
        if edge in self._edge_set:
            return False
        self._edge_set.add(edge)
        self.edges.append(edge)
        return True

    def __contains__(self, project: str) -> bool:
        return project in self._visited_set

    def to_dict(self) -> dict:
        return {
            "detectedScope": list(self.visited),
            "relationships": [asdict(e) for e in self.edges],
            "errors": [asdict(e) for e in self.errors],
        }


# ---------------------------------------------------------------------------
# ResourceGraphProbe
# ---------------------------------------------------------------------------

class ResourceGraphProbe:
    """Scans one project's inventory for references to other projects.

    Every query goes through the Safe-Exec Shell and is read-only. A failing
    catalog entry becomes a ScanError; the rest of the catalog still runs.
    """

    def __init__(self, shell, denylist: Iterable[str] = DEFAULT_DENYLIST,
                 page_size: int = ASSET_PAGE_SIZE,
                 instance_page_size: int = INSTANCE_PAGE_SIZE):
        self._shell = shell
        self._denylist = frozenset(denylist)
        self._page_size = page_size
        self._instance_page_size = instance_page_size

    @property
    def denylist(self) -> frozenset[str]:
        return self._denylist

    def scan(self, project: str) -> ProjectScan:
        """Run the fixed catalog against one project."""
        self._log(f"Scanning projects/{project}…")
        scan = ProjectScan(project=project)
        catalog = (
            ("shared_vpc_host", self._scan_shared_vpc_host),
            ("usable_subnetworks", self._scan_usable_subnetworks),
            (ASSET_NETWORK, self._scan_networks),
            (ASSET_SUBNETWORK, self._scan_subnetworks),
            (ASSET_INTERCONNECT, self._scan_interconnects),
            (ASSET_FORWARDING_RULE, self._scan_forwarding_rules),
            (ASSET_BACKEND_SERVICE, self._scan_backend_services),
            (ASSET_INSTANCE, self._scan_instances),
        )
        for kind, step in catalog:
            try:
                step(project, scan)
            except ScanFailure as e:
                self._log(f"  {kind} failed for {project}: {e}")
                scan.errors.append(ScanError(project=project, kind=kind, message=str(e)))
            except (ValueError, TypeError, AttributeError) as e:
                # unparseable or unexpectedly shaped CLI output
                self._log(f"  {kind} returned malformed output for {project}: {e}")
                scan.errors.append(ScanError(project=project, kind=kind,
                                             message=f"malformed output: {e}"))
        self._log(f"  {project}: {len(scan.refs)} referenced project(s), "
                  f"{len(scan.errors)} error(s)")
        return scan

    # --- Catalog steps ---

    def _scan_shared_vpc_host(self, project: str, scan: ProjectScan):
        data = self._run_json(
            ["gcloud", "compute", "shared-vpc", "get-host-project", project, "--format=json"],
            f"Checking whether {project} is a Shared VPC service project",
        )
        host = (data or {}).get("name") if isinstance(data, dict) else None
        if host and host != project and host not in self._denylist:
            self._record(scan, host,
                         f"Project is a Service Project attached to Shared VPC Host Project {host}")

    def _scan_usable_subnetworks(self, project: str, scan: ProjectScan):
        subnets = self._run_json(
            ["gcloud", "compute", "networks", "subnets", "list-usable",
             f"--project={project}", "--format=json"],
            f"Listing subnetworks usable by {project} (Shared VPC detection)",
        )
        for subnet in _as_list(subnets):
            uri = subnet.get("subnetwork") or subnet.get("network")
            for ref in self._refs(uri, project):
                self._record(scan, ref,
                             f"Project has usable subnet {uri} from Shared VPC Host Project {ref}")

    def _scan_networks(self, project: str, scan: ProjectScan):
        for net in self._search_assets(project, [ASSET_NETWORK], self._page_size):
            attrs = json.dumps(net.get("additionalAttributes") or {}, sort_keys=True)
            for ref in self._refs(attrs, project):
                self._record(scan, ref,
                             f"Network {net.get('displayName')} has peering/link to {ref}")

    def _scan_subnetworks(self, project: str, scan: ProjectScan):
        for sub in self._search_assets(project, [ASSET_SUBNETWORK], self._page_size):
            attrs = sub.get("additionalAttributes") or {}
            for ref in self._refs(attrs.get("network"), project):
                self._record(scan, ref,
                             f"Subnetwork {sub.get('displayName')} belongs to a network in "
                             f"{ref} (Shared VPC)")

    def _scan_interconnects(self, project: str, scan: ProjectScan):
        for ic in self._search_assets(project, [ASSET_INTERCONNECT], self._page_size):
            attrs = json.dumps(ic.get("additionalAttributes") or {}, sort_keys=True)
            for ref in self._refs(attrs, project):
                self._record(scan, ref,
                             f"Interconnect Attachment {ic.get('displayName')} references {ref}")

    def _scan_forwarding_rules(self, project: str, scan: ProjectScan):
        for rule in self._search_assets(project, [ASSET_FORWARDING_RULE], self._page_size):
            attrs = rule.get("additionalAttributes") or {}
            for key in ("subnetwork", "network"):
                for ref in self._refs(attrs.get(key), project):
                    self._record(scan, ref,
                                 f"ForwardingRule {rule.get('displayName')} uses {key} in {ref}")

    def _scan_backend_services(self, project: str, scan: ProjectScan):
        for svc in self._search_assets(project, [ASSET_BACKEND_SERVICE], self._page_size):
            attrs = json.dumps(svc.get("additionalAttributes") or {}, sort_keys=True)
            for ref in self._refs(attrs, project):
                self._record(scan, ref,
                             f"BackendService {svc.get('displayName')} has load-balancer "
                             f"backends in {ref}")

    def _scan_instances(self, project: str, scan: ProjectScan):
        for inst in self._search_assets(project, [ASSET_INSTANCE], self._instance_page_size):
            attrs = inst.get("additionalAttributes") or {}
            for nic in _as_list(attrs.get("networkInterfaces")):
                if not isinstance(nic, dict):
                    continue
                for key in ("network", "subnetwork"):
                    for ref in self._refs(nic.get(key), project):
                        self._record(scan, ref,
                                     f"Instance {inst.get('displayName')} uses {key} in "
                                     f"{ref} (Shared VPC Host)")

    # --- Topology inspection ---

    def describe_architecture(self, project: str) -> dict:
        """Inventory of the project's network resources, grouped by asset type."""
        try:
            resources = self._search_assets(project, list(ARCHITECTURE_ASSET_TYPES),
                                            self._page_size)
        except ScanFailure as e:
            return {"status": "error", "error": "inventory_query_failed",
                    "message": f"Failed to list assets in {project}: {e}"}
        except ValueError as e:
            return {"status": "error", "error": "inventory_query_failed",
                    "message": f"Malformed inventory output for {project}: {e}"}

        summary: dict[str, list] = {}
        for res in resources:
            summary.setdefault(res.get("assetType") or "unknown", []).append({
                "name": res.get("name"),
                "displayName": res.get("displayName"),
                "location": res.get("location"),
                "description": res.get("description"),
                "additionalAttributes": res.get("additionalAttributes"),
            })
        return {"status": "ok", "projectId": project,
                "resourceCount": len(resources), "resources": summary}

    # --- Internals ---

    def _refs(self, text: Optional[str], project: str) -> list[str]:
        if not isinstance(text, str):
            return []
        return sorted(extract_project_ids(text, exclude=self._denylist | {project}))

    @staticmethod
    def _record(scan: ProjectScan, ref: str, reason: str):
        scan.refs.add(ref)
        edge = ScopeEdge(source=scan.project, target=ref, reason=reason)
        if edge not in scan.edges:
            scan.edges.append(edge)

    def _search_assets(self, project: str, asset_types: list[str], page_size: int) -> list[dict]:
        data = self._run_json(
            ["gcloud", "asset", "search-all-resources",
             f"--scope=projects/{project}",
             f"--asset-types={','.join(asset_types)}",
             f"--page-size={page_size}", f"--limit={page_size}",
             "--format=json"],
            f"Searching {', '.join(t.rsplit('/', 1)[-1] for t in asset_types)} in {project}",
        )
        return [r for r in _as_list(data) if isinstance(r, dict)]

    def _run_json(self, argv: list[str], reasoning: str):
        result = self._shell.execute({"command": shlex.join(argv), "reasoning": reasoning})
        if command_failed(result):
            raise ScanFailure(failure_message(result))
        return parse_json_output(result)

    def _log(self, message: str):
        print(f"[Project Scope] {message}", file=sys.stderr)


class ScanFailure(Exception):
    """One catalog query failed; recorded as a ScanError by the caller."""


def describe_network_architecture(shell, project: str) -> dict:
    return ResourceGraphProbe(shell).describe_architecture(project)


# ---------------------------------------------------------------------------
# ScopeDiscoverer
# ---------------------------------------------------------------------------

class ScopeDiscoverer:
    """Depth-1 breadth-first discovery over a frontier of root projects."""

    def __init__(self, probe: ResourceGraphProbe, max_workers: int = DEFAULT_MAX_WORKERS):
        self._probe = probe
        self._max_workers = max(1, max_workers)

    def discover(self, roots, into: Optional[DiscoveredScope] = None) -> DiscoveredScope:
        """Scan every root once and merge the results in root order.

        Targets are recorded but never scanned here. Roots and deny-listed ids
        never become edge targets.
        """
        frontier = normalize_roots(roots)
        scope = into if into is not None else DiscoveredScope()
        for root in frontier:
            scope.add_project(root)
        if not frontier:
            return scope

        excluded = set(frontier) | set(self._probe.denylist)
        for scan in self._scan_all(frontier):
            for edge in scan.edges:
                if edge.target in excluded:
                    continue
                scope.add_edge(edge)
            scope.errors.extend(scan.errors)
        return scope

    def _scan_all(self, frontier: list[str]) -> list[ProjectScan]:
        workers = min(self._max_workers, len(frontier))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self._probe.scan, p) for p in frontier]
            scans = []
            for project, future in zip(frontier, futures):
                try:
                    scans.append(future.result())
                except Exception as e:
                    print(f"[Project Scope] Error scanning project {project}: {e}",
                          file=sys.stderr)
                    scans.append(ProjectScan(project=project, errors=[
                        ScanError(project=project, kind="scan", message=str(e))
                    ]))
            return scans
