"""
Configuration for the AWS and GCP provisioning flows.

Configuration files are YAML (JSON is accepted too, being a YAML subset).
Keys mirror the dataclass field names.
"""

import ipaddress
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .errors import ConfigError
from .tags import DEFAULT_PROJECT_NAME, load_tags_file

PROXY_SERVICES = ["proxysql", "proxyserver", "query-logging"]
DAM_SERVICES = ["dam-server", "postgresql"]


@dataclass
class ExistingVpc:
    """Network of an already provisioned VPC to install the workloads into."""
    vpc_id: str
    private_subnet_ids: List[str]
    public_subnet_ids: List[str] = field(default_factory=list)
    nat_gateway_id: Optional[str] = None


@dataclass
class AwsWorkloadConfig:
    region: str = "us-east-1"
    project_name: str = DEFAULT_PROJECT_NAME
    enable_dam: bool = False

    vpc_cidr: str = "10.0.0.0/16"
    private_subnet_cidrs: List[str] = field(default_factory=lambda: ["10.0.1.0/24", "10.0.2.0/24"])
    public_subnet_cidrs: List[str] = field(default_factory=lambda: ["10.0.3.0/24", "10.0.4.0/24"])
    availability_zones: List[str] = field(default_factory=list)
    existing_vpc: Optional[ExistingVpc] = None

    bucket_name: str = "cdx-jit-db-logs"
    cluster_name: str = "cdx-jit-db-cluster"
    namespace_name: str = "proxysql-proxyserver"
    secret_name: str = "CDX_SECRETS"
    secret_values: Dict[str, str] = field(default_factory=dict)
    task_role_name: str = "cdx-ECSTaskRole"
    repository_prefix: str = "cloudanix/ecr-aws-jit-"
    task_definitions_dir: Optional[str] = None
    image_tag: str = "latest"
    rds_assume_role_arns: List[str] = field(default_factory=list)

    tags_file: Optional[str] = None
    tags: Optional[Dict[str, str]] = None

    efs_max_attempts: Optional[int] = None
    details_file: str = "infrastructure-details.txt"

    @property
    def services(self) -> List[str]:
        return PROXY_SERVICES + (DAM_SERVICES if self.enable_dam else [])

    @property
    def log_group_names(self) -> List[str]:
        return [f"/ecs/{self.project_name}/{service}" for service in self.services]

    @property
    def repositories(self) -> List[str]:
        names = {
            "proxysql": "proxy-sql",
            "proxyserver": "proxy-server",
            "query-logging": "query-logging",
            "dam-server": "dam-server",
            "postgresql": "postgresql",
        }
        return [f"{self.repository_prefix}{names[s]}" for s in self.services]

    @property
    def task_families(self) -> List[str]:
        families = {
            "proxysql": "proxysql",
            "proxyserver": "proxyserver-task",
            "query-logging": "query-logging-task",
            "dam-server": "dam-server-task",
            "postgresql": "postgresql-task",
        }
        return [families[s] for s in self.services]

    @property
    def security_group_name(self) -> str:
        return f"{self.project_name}-ecs-sg"

    def user_tags(self) -> Optional[Dict[str, str]]:
        """Tags from the inline ``tags`` mapping or the tags file, if any."""
        if self.tags is not None:
            return dict(self.tags)
        if self.tags_file:
            return load_tags_file(self.tags_file)
        return None


@dataclass
class PeeringLink:
    requester_vpc_id: str
    accepter_vpc_id: str
    accepter_account_id: str
    accepter_region: str
    accepter_cidr: str
    ecs_security_group_id: str
    peering_name: str


@dataclass
class PeeringConfig:
    region: str = "us-east-1"
    project_name: str = DEFAULT_PROJECT_NAME
    vpc_peerings: List[PeeringLink] = field(default_factory=list)
    tags_file: Optional[str] = None
    details_file: str = "peering-details.txt"
    database_ports: List[int] = field(default_factory=lambda: [3306, 5432])


@dataclass
class PscEndpoint:
    """A Cloud SQL instance reached through a Private Service Connect endpoint."""
    db_project: str
    db_instance: str
    ip_address: str
    region: Optional[str] = None

    @property
    def address_name(self) -> str:
        return f"{self.db_instance}-psc-ip"

    @property
    def endpoint_name(self) -> str:
        return f"{self.db_instance}-psc-endpoint"


@dataclass
class GcpConfig:
    project_id: str = ""
    region: str = "us-central1"
    zone: str = "us-central1-a"
    prefix: str = "cdx"
    subnet_cidr: str = "10.10.0.0/20"
    pods_cidr: str = "10.20.0.0/16"
    services_cidr: str = "10.30.0.0/20"
    master_cidr: str = "172.16.0.0/28"
    machine_type: str = "e2-standard-4"
    num_nodes: int = 2
    artifact_repository: str = "cdx-jit-db-artifacts"
    secret_values: Dict[str, str] = field(default_factory=dict)
    labels: Optional[Dict[str, str]] = None
    enable_dam: bool = False
    k8s_namespace: str = "jit-services"
    image_tag: str = "latest"
    psc_endpoints: List[PscEndpoint] = field(default_factory=list)

    @property
    def cluster_name(self) -> str:
        return f"{self.prefix}-jit-cluster"

    @property
    def network_name(self) -> str:
        return f"{self.prefix}-jit-network"

    @property
    def subnet_name(self) -> str:
        return f"{self.prefix}-jit-subnet"

    @property
    def router_name(self) -> str:
        return f"{self.prefix}-jit-router"

    @property
    def nat_name(self) -> str:
        return f"{self.prefix}-jit-nat"

    @property
    def nfs_vm(self) -> str:
        return f"{self.prefix}-nfs-server"

    @property
    def vm_names(self) -> List[str]:
        return [self.nfs_vm, f"{self.prefix}-jit-jump-vm", f"{self.prefix}-gke-bastion"]

    @property
    def secret_name(self) -> str:
        return f"{self.prefix}-jit-secrets"

    @property
    def service_account(self) -> str:
        return f"{self.prefix}-jit-workload-sa"

    @property
    def service_account_email(self) -> str:
        return f"{self.service_account}@{self.project_id}.iam.gserviceaccount.com"

    @property
    def k8s_service_account(self) -> str:
        return f"{self.prefix}-jit-sa"

    @property
    def image_registry(self) -> str:
        return f"{self.region}-docker.pkg.dev/{self.project_id}/{self.artifact_repository}"

    def ilb_address(self, host: int) -> str:
        """Address ``host`` within the subnet, e.g. 101 for the proxysql load balancer."""
        return str(ipaddress.ip_network(self.subnet_cidr, strict=False).network_address + host)


def _read_mapping(path: Union[str, Path]) -> Dict[str, Any]:
    config_file = Path(path)
    if not config_file.exists():
        raise ConfigError(f"Config file {config_file} not found")

    try:
        with open(config_file, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file {config_file} is not valid YAML: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_file} must contain a mapping")
    return data


def _build(cls, data: Dict[str, Any]):
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown {cls.__name__} option(s): {', '.join(unknown)}")
    try:
        return cls(**data)
    except TypeError as e:
        raise ConfigError(f"Invalid {cls.__name__}: {e}") from e


def aws_config_from_dict(data: Dict[str, Any]) -> AwsWorkloadConfig:
    data = dict(data)
    existing = data.pop("existing_vpc", None)
    config = _build(AwsWorkloadConfig, data)
    if existing is not None:
        config.existing_vpc = _build(ExistingVpc, existing)

    if config.existing_vpc is None:
        if not config.private_subnet_cidrs or not config.public_subnet_cidrs:
            raise ConfigError("At least one private and one public subnet CIDR are required")
    elif not config.existing_vpc.private_subnet_ids:
        raise ConfigError("existing_vpc.private_subnet_ids must not be empty")

    if config.efs_max_attempts is not None and config.efs_max_attempts < 1:
        raise ConfigError("efs_max_attempts must be >= 1")
    if config.tags is None and config.tags_file:
        load_tags_file(config.tags_file)
    return config


def load_aws_config(path: Union[str, Path]) -> AwsWorkloadConfig:
    return aws_config_from_dict(_read_mapping(path))


def peering_config_from_dict(data: Dict[str, Any]) -> PeeringConfig:
    data = dict(data)
    links = data.pop("vpc_peerings", [])
    config = _build(PeeringConfig, data)
    config.vpc_peerings = [_build(PeeringLink, link) for link in links]
    if not config.vpc_peerings:
        raise ConfigError("No vpc_peerings configured")
    if config.tags_file:
        load_tags_file(config.tags_file)
    return config


def load_peering_config(path: Union[str, Path]) -> PeeringConfig:
    return peering_config_from_dict(_read_mapping(path))


def gcp_config_from_dict(data: Dict[str, Any]) -> GcpConfig:
    data = dict(data)
    endpoints = data.pop("psc_endpoints", None) or []
    config = _build(GcpConfig, data)
    if not config.project_id:
        raise ConfigError("project_id is required")
    try:
        ipaddress.ip_network(config.subnet_cidr, strict=False)
    except ValueError as e:
        raise ConfigError(f"Invalid subnet_cidr: {e}") from e

    config.psc_endpoints = [_build(PscEndpoint, endpoint) for endpoint in endpoints]
    for endpoint in config.psc_endpoints:
        try:
            ipaddress.ip_address(endpoint.ip_address)
        except ValueError as e:
            raise ConfigError(f"Invalid PSC endpoint IP for {endpoint.db_instance}: {e}") from e
    return config


def load_gcp_config(path: Union[str, Path]) -> GcpConfig:
    return gcp_config_from_dict(_read_mapping(path))
