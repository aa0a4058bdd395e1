"""
Teardown of the GCP JIT stack.

Resources are removed in dependency order: the cluster and VMs first, then
private service connect endpoints, NAT and router, firewall rules, subnets
and network, and finally the secret, service accounts, artifact repository,
snapshots and orphaned disks. Every step is lenient and "not found" counts
as already deleted.
"""

import logging
from typing import List, Sequence

from ..config import GcpConfig
from ..errors import ActionFailure
from ..sequencer import Step, cleanup_step
from ..state import ResourceKind, ResourceRegistry
from .gcloud import Gcloud

logger = logging.getLogger(__name__)


class GcpCleaner:
    def __init__(self, config: GcpConfig, gcloud: Gcloud):
        self.config = config
        self.gcloud = gcloud

    def _delete_each(self, description: str, names: List[str], command: List[str], flags: Sequence[str] = ()) -> None:
        """Delete every named resource, failing the step only after trying all of them."""
        errors = []
        for name in names:
            try:
                self.gcloud.delete(f"{description}: {name}", *command, name, *flags)
            except ActionFailure as e:
                logger.warning(str(e))
                errors.append(name)
        if errors:
            raise ActionFailure(f"Could not delete {description}(s): {', '.join(errors)}")

    def delete_cluster(self, registry: ResourceRegistry) -> None:
        config = self.config
        self.gcloud.delete("GKE cluster", "container", "clusters", "delete", config.cluster_name, f"--zone={config.zone}")
        registry.discard("cluster")

    def delete_instances(self, registry: ResourceRegistry) -> None:
        self._delete_each("VM", self.config.vm_names, ["compute", "instances", "delete"], [f"--zone={self.config.zone}"])
        registry.discard("nfs_vm")

    def delete_psc_endpoints(self, registry: ResourceRegistry) -> None:
        endpoints = self.gcloud.names(
            "compute", "forwarding-rules", "list", "--format=value(name)", "--filter=name~psc-endpoint"
        )
        self._delete_each("PSC endpoint", endpoints, ["compute", "forwarding-rules", "delete"],
                          [f"--region={self.config.region}"])

    def delete_psc_addresses(self, registry: ResourceRegistry) -> None:
        addresses = self.gcloud.names("compute", "addresses", "list", "--format=value(name)", "--filter=name~psc-ip")
        self._delete_each("PSC IP", addresses, ["compute", "addresses", "delete"], [f"--region={self.config.region}"])

    def delete_nat(self, registry: ResourceRegistry) -> None:
        config = self.config
        self.gcloud.delete(
            "Cloud NAT", "compute", "routers", "nats", "delete", config.nat_name,
            f"--router={config.router_name}", f"--region={config.region}",
        )
        registry.discard("nat")

    def delete_router(self, registry: ResourceRegistry) -> None:
        config = self.config
        self.gcloud.delete("Cloud Router", "compute", "routers", "delete", config.router_name, f"--region={config.region}")
        registry.discard("router")

    def delete_firewall_rules(self, registry: ResourceRegistry) -> None:
        rules = self.gcloud.names(
            "compute", "firewall-rules", "list", "--format=value(name)",
            f"--filter=network~{self.config.network_name}",
        )
        self._delete_each("Firewall rule", rules, ["compute", "firewall-rules", "delete"])
        for handle in registry.by_kind(ResourceKind.FIREWALL_RULE):
            registry.discard(handle.key)

    def delete_psc_subnets(self, registry: ResourceRegistry) -> None:
        """Regional subnets created for PSC endpoints outside the main region."""
        rows = self.gcloud.names(
            "compute", "networks", "subnets", "list", "--format=value(name,region)",
            f"--filter=name~^{self.config.prefix}-jit-subnet-",
        )
        errors = []
        for row in rows:
            parts = row.split()
            if len(parts) < 2:
                continue
            subnet, region = parts[0], parts[1].rsplit("/", 1)[-1]
            try:
                self.gcloud.delete(f"PSC subnet: {subnet}", "compute", "networks", "subnets", "delete", subnet,
                                   f"--region={region}")
            except ActionFailure as e:
                logger.warning(str(e))
                errors.append(subnet)
        if errors:
            raise ActionFailure(f"Could not delete PSC subnet(s): {', '.join(errors)}")
        for handle in registry.by_kind(ResourceKind.SUBNET):
            if handle.key.startswith("psc_subnet:"):
                registry.discard(handle.key)

    def delete_subnet(self, registry: ResourceRegistry) -> None:
        config = self.config
        self.gcloud.delete("Subnet", "compute", "networks", "subnets", "delete", config.subnet_name,
                           f"--region={config.region}")
        registry.discard("subnet")

    def delete_network(self, registry: ResourceRegistry) -> None:
        self.gcloud.delete("VPC Network", "compute", "networks", "delete", self.config.network_name)
        registry.discard("network")

    def delete_secret(self, registry: ResourceRegistry) -> None:
        self.gcloud.delete(f"Secret: {self.config.secret_name}", "secrets", "delete", self.config.secret_name)
        registry.discard("secret")

    def delete_service_accounts(self, registry: ResourceRegistry) -> None:
        accounts = self.gcloud.names(
            "iam", "service-accounts", "list", "--format=value(email)", f"--filter=email~{self.config.prefix}"
        )
        self._delete_each("service account", accounts, ["iam", "service-accounts", "delete"])
        registry.discard("service_account")

    def delete_artifact_repository(self, registry: ResourceRegistry) -> None:
        repo = self.config.artifact_repository
        self.gcloud.delete(f"Artifact Registry: {repo}", "artifacts", "repositories", "delete", repo,
                           f"--location={self.config.region}")

    def delete_snapshots(self, registry: ResourceRegistry) -> None:
        snapshots = self.gcloud.names(
            "compute", "snapshots", "list", "--format=value(name)", f"--filter=name~{self.config.prefix}"
        )
        self._delete_each("Snapshot", snapshots, ["compute", "snapshots", "delete"])

    def delete_orphaned_disks(self, registry: ResourceRegistry) -> None:
        rows = self.gcloud.names(
            "compute", "disks", "list", "--format=value(name,zone)",
            f"--filter=name~{self.config.prefix} AND -users:*",
        )
        errors = []
        for row in rows:
            parts = row.split()
            if len(parts) < 2:
                continue
            disk, zone = parts[0], parts[1].rsplit("/", 1)[-1]
            try:
                self.gcloud.delete(f"Disk: {disk}", "compute", "disks", "delete", disk, f"--zone={zone}")
            except ActionFailure as e:
                logger.warning(str(e))
                errors.append(disk)
        if errors:
            raise ActionFailure(f"Could not delete disk(s): {', '.join(errors)}")

    def steps(self) -> List[Step]:
        return [
            cleanup_step("Delete GKE cluster", self.delete_cluster),
            cleanup_step("Delete compute instances", self.delete_instances),
            cleanup_step("Delete PSC endpoints", self.delete_psc_endpoints),
            cleanup_step("Delete PSC reserved IPs", self.delete_psc_addresses),
            cleanup_step("Delete Cloud NAT", self.delete_nat),
            cleanup_step("Delete Cloud Router", self.delete_router),
            cleanup_step("Delete firewall rules", self.delete_firewall_rules),
            cleanup_step("Delete PSC subnets", self.delete_psc_subnets),
            cleanup_step("Delete subnet", self.delete_subnet),
            cleanup_step("Delete VPC network", self.delete_network),
            cleanup_step("Delete secret", self.delete_secret),
            cleanup_step("Delete service accounts", self.delete_service_accounts),
            cleanup_step("Delete Artifact Registry repository", self.delete_artifact_repository),
            cleanup_step("Delete disk snapshots", self.delete_snapshots),
            cleanup_step("Delete orphaned disks", self.delete_orphaned_disks),
        ]


def build_cleanup_steps(config: GcpConfig, gcloud: Gcloud) -> List[Step]:
    return GcpCleaner(config, gcloud).steps()
