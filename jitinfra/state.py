"""
Resource handles and run state management.

Provisioning steps pass cloud-assigned IDs to later steps through a
``ResourceRegistry`` instead of global variables. The registry of a run can
be persisted under the run directory and rendered as the plain-text
"Infrastructure Details" summary.
"""

import json
import os
import re
import secrets
import shutil
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .errors import ActionFailure


class ResourceKind(Enum):
    """Kinds of cloud resources handled by the provisioning flows.

    Values double as the ``<project>-<kind>`` suffix used for default
    ``Name`` tags.
    """
    VPC = "vpc"
    SUBNET = "subnet"
    INTERNET_GATEWAY = "internet-gateway"
    ELASTIC_IP = "elastic-ip"
    NAT_GATEWAY = "natgateway"
    ROUTE_TABLE = "route-table"
    SECURITY_GROUP = "security-group"
    VPC_ENDPOINT = "vpc-endpoint"
    FILE_SYSTEM = "efs"
    ACCESS_POINT = "access-point"
    MOUNT_TARGET = "mount-target"
    SECRET = "secret"
    NAMESPACE = "namespace"
    PEERING_CONNECTION = "vpc-peering-connection"
    SERVICE_SET = "service-set"
    SERVICE = "service"
    TASK_DEFINITION = "task-definition"
    BUCKET = "bucket"
    REPOSITORY = "repository"
    CLUSTER = "cluster"
    LOG_GROUP = "log-group"
    ROLE = "role"
    POLICY = "policy"
    NETWORK = "network"
    ROUTER = "router"
    ROUTER_NAT = "nat"
    FIREWALL_RULE = "firewall-rule"
    INSTANCE = "instance"
    SERVICE_ACCOUNT = "service-account"
    ADDRESS = "address"
    FORWARDING_RULE = "forwarding-rule"


@dataclass(frozen=True)
class ResourceHandle:
    """Identifies a cloud resource produced by a step."""
    kind: ResourceKind
    id: str
    region: str
    name: str = ""  # registry key; defaults to the id
    arn: Optional[str] = None

    @property
    def key(self) -> str:
        return self.name or self.id

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceHandle":
        return cls(
            kind=ResourceKind(data["kind"]),
            id=data["id"],
            region=data.get("region", ""),
            name=data.get("name", ""),
            arn=data.get("arn"),
        )


class ResourceRegistry:
    """Ordered, name-keyed collection of the handles produced during a run."""

    def __init__(self, handles: Optional[List[ResourceHandle]] = None):
        self._handles: Dict[str, ResourceHandle] = {}
        for handle in handles or []:
            self.add(handle)

    def add(self, handle: ResourceHandle) -> ResourceHandle:
        self._handles[handle.key] = handle
        return handle

    def get(self, key: str) -> Optional[ResourceHandle]:
        return self._handles.get(key)

    def require(self, key: str) -> ResourceHandle:
        """
        Get a handle produced by an earlier step.

        Raises:
            ActionFailure: If no earlier step registered ``key``
        """
        handle = self._handles.get(key)
        if handle is None:
            raise ActionFailure(f"Required resource '{key}' was not produced by an earlier step")
        return handle

    def id_of(self, key: str) -> str:
        return self.require(key).id

    def discard(self, key: str) -> Optional[ResourceHandle]:
        return self._handles.pop(key, None)

    def by_kind(self, kind: ResourceKind) -> List[ResourceHandle]:
        return [h for h in self._handles.values() if h.kind == kind]

    def __contains__(self, key: str) -> bool:
        return key in self._handles

    def __iter__(self) -> Iterator[ResourceHandle]:
        return iter(list(self._handles.values()))

    def __len__(self) -> int:
        return len(self._handles)

    def to_list(self) -> List[Dict[str, Any]]:
        return [h.to_dict() for h in self._handles.values()]


# <UTC start time>-<flow>-<4 hex>, e.g. 20240101T120000-aws-provision-3f2a
RUN_ID_PATTERN = re.compile(r"^(\d{8}T\d{6})-([a-z0-9][a-z0-9-]*)-([0-9a-f]{4})$")


def new_run_id(flow: str) -> str:
    """
    Generate a run ID for ``flow``.

    IDs start with the UTC start time so that they sort chronologically.
    """
    slug = re.sub(r"[^a-z0-9]+", "-", flow.lower()).strip("-") or "run"
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    return f"{stamp}-{slug}-{secrets.token_hex(2)}"


def is_valid_run_id(run_id: str) -> bool:
    return bool(RUN_ID_PATTERN.match(run_id or ""))


def flow_of_run(run_id: str) -> Optional[str]:
    """Flow name embedded in a run ID, or None for an invalid ID."""
    match = RUN_ID_PATTERN.match(run_id or "")
    return match.group(2) if match else None


def get_jitinfra_home() -> Path:
    """
    Get the jitinfra home directory.

    Returns:
        Path: jitinfra home directory
    """
    home = os.environ.get("JITINFRA_HOME", ".jitinfra")
    return Path(home).resolve()


def get_run_dir(run_id: str) -> Path:
    """
    Get the directory for a specific run.

    Args:
        run_id: Run ID

    Returns:
        Path: Run directory

    Raises:
        ValueError: If run ID is invalid
    """
    if not is_valid_run_id(run_id):
        raise ValueError(f"Invalid run ID: {run_id}")

    return get_jitinfra_home() / run_id


def create_run_dir(run_id: str) -> Path:
    run_dir = get_run_dir(run_id)
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir


def write_run_json(run_id: str, flow: str, settings: Dict[str, Any]) -> None:
    """
    Write the run description to run.json.

    Args:
        run_id: Run ID
        flow: Flow name (e.g. "aws-provision")
        settings: Non-secret settings the run was started with
    """
    run_dir = create_run_dir(run_id)
    run_data = {
        "flow": flow,
        "settings": settings,
        "created_at": datetime.now().isoformat(),
    }

    with open(run_dir / "run.json", "w") as f:
        json.dump(run_data, f, indent=2)


def read_run_json(run_id: str) -> Dict[str, Any]:
    """
    Read the run description from run.json.

    Raises:
        FileNotFoundError: If run.json doesn't exist
    """
    run_file = get_run_dir(run_id) / "run.json"

    if not run_file.exists():
        raise FileNotFoundError(f"Run {run_id} not found")

    with open(run_file, "r") as f:
        return json.load(f)


def write_registry_json(run_id: str, registry: ResourceRegistry) -> Path:
    run_dir = create_run_dir(run_id)
    registry_file = run_dir / "resources.json"

    with open(registry_file, "w") as f:
        json.dump(registry.to_list(), f, indent=2)

    return registry_file


def read_registry_json(run_id: str) -> ResourceRegistry:
    """
    Read the resources recorded by a run.

    Returns:
        ResourceRegistry: Empty when the run recorded nothing
    """
    registry_file = get_run_dir(run_id) / "resources.json"

    if not registry_file.exists():
        return ResourceRegistry()

    with open(registry_file, "r") as f:
        return ResourceRegistry([ResourceHandle.from_dict(item) for item in json.load(f)])


def list_runs() -> List[str]:
    """
    List all run IDs, most recent first.
    """
    home = get_jitinfra_home()

    if not home.exists():
        return []

    runs = []
    for item in home.iterdir():
        if item.is_dir() and is_valid_run_id(item.name):
            runs.append(item.name)

    return sorted(runs, reverse=True)


def remove_run(run_id: str) -> None:
    run_dir = get_run_dir(run_id)

    if run_dir.exists():
        shutil.rmtree(run_dir)


def format_details(
    registry: ResourceRegistry,
    title: str = "Infrastructure Details",
    sections: Optional[Dict[str, List[str]]] = None,
) -> str:
    """
    Render the registry as the plain-text details summary.

    Args:
        registry: Handles accumulated during the run
        title: Heading line
        sections: Extra bulleted sections, e.g. {"Services Created": [...]}

    Returns:
        The summary text
    """
    lines = [title, "-" * (len(title) + 1)]
    for handle in registry:
        lines.append(f"{handle.key}: {handle.id}")

    for heading, items in (sections or {}).items():
        lines.append("")
        lines.append(f"{heading}:")
        lines.extend(f"- {item}" for item in items)

    return "\n".join(lines) + "\n"


def write_details_file(
    path: Path,
    registry: ResourceRegistry,
    title: str = "Infrastructure Details",
    sections: Optional[Dict[str, List[str]]] = None,
    append: bool = False,
) -> Path:
    path = Path(path)
    with open(path, "a" if append else "w") as f:
        f.write(format_details(registry, title, sections))
    return path
