"""
GCP infrastructure for the JIT proxy stack: VPC network, subnet with GKE
secondary ranges, Cloud Router and NAT, firewall rules, the secret, the
workload service account, a private GKE cluster and the NFS server VM.

Each step describes the resource first and only creates it when missing,
so a rerun after a partial failure picks up where it stopped.
"""

import json
import logging
import os
import tempfile
from typing import Dict, List, Optional

from ..config import GcpConfig
from ..errors import ActionFailure
from ..poller import Check, PollSpec, READY, failed, not_ready
from ..sequencer import Step
from ..state import ResourceHandle, ResourceKind, ResourceRegistry
from ..tags import to_gcloud_labels
from .gcloud import Gcloud

logger = logging.getLogger(__name__)

DEFAULT_LABELS = {"owner": "cloudanix", "service": "iap-proxy", "purpose": "cdx-jit-db"}

CLUSTER_ATTEMPTS, CLUSTER_INTERVAL = 40, 30

IAP_RANGE = "35.235.240.0/20"
HEALTH_CHECK_RANGES = "35.191.0.0/16,130.211.0.0/22"

NFS_STARTUP_SCRIPT = """#!/bin/bash
apt-get update -qq
apt-get install -y nfs-kernel-server curl
NETWORK_CIDR=$(curl -sH "Metadata-Flavor: Google" \\
  http://metadata.google.internal/computeMetadata/v1/instance/attributes/network-cidr)
if ! mountpoint -q /mnt/nfs-data; then
  mkfs.ext4 -m 0 -F -E lazy_itable_init=0,lazy_journal_init=0,discard /dev/sdb
  mkdir -p /mnt/nfs-data
  mount -o discard,defaults /dev/sdb /mnt/nfs-data
  echo "/dev/sdb /mnt/nfs-data ext4 discard,defaults,nofail 0 2" >> /etc/fstab
fi
mkdir -p /mnt/nfs-data/exports/proxysql
chmod 777 /mnt/nfs-data/exports/proxysql
echo "/mnt/nfs-data/exports/proxysql ${NETWORK_CIDR}(rw,sync,no_subtree_check,no_root_squash)" > /etc/exports
exportfs -ra
systemctl restart nfs-kernel-server
systemctl enable nfs-kernel-server
"""


def firewall_rules(config: GcpConfig) -> Dict[str, List[str]]:
    """Rule name to the ``gcloud compute firewall-rules create`` flags after ``--network``."""
    prefix = config.prefix
    return {
        f"{prefix}-allow-iap": ["--allow=tcp:22,tcp:3306,tcp:5432", f"--source-ranges={IAP_RANGE}"],
        f"{prefix}-allow-internal": ["--allow=tcp,udp,icmp", "--source-ranges=10.0.0.0/8"],
        f"{prefix}-allow-health-check": ["--allow=tcp", f"--source-ranges={HEALTH_CHECK_RANGES}"],
        f"{prefix}-allow-nfs": [
            "--allow=tcp:111,tcp:2049,tcp:20048,udp:111,udp:2049,udp:20048",
            f"--source-ranges={config.subnet_cidr}",
            "--target-tags=nfs-server",
        ],
    }


def cluster_running(gcloud: Gcloud, cluster_name: str, zone: str) -> Check:
    """Ready when the GKE cluster reports RUNNING, failed on ERROR."""
    try:
        cluster = gcloud.json("container", "clusters", "describe", cluster_name, f"--zone={zone}")
    except ActionFailure as e:
        return not_ready(str(e))
    status = (cluster or {}).get("status", "")
    if status == "RUNNING":
        return READY
    if status == "ERROR":
        return failed((cluster or {}).get("statusMessage") or f"GKE cluster {cluster_name} is in ERROR")
    return not_ready(status or "unknown")


def cluster_spec(gcloud: Gcloud, config: GcpConfig) -> PollSpec:
    return PollSpec(
        predicate=lambda: cluster_running(gcloud, config.cluster_name, config.zone),
        interval=CLUSTER_INTERVAL,
        max_attempts=CLUSTER_ATTEMPTS,
        description=f"GKE cluster {config.cluster_name}",
    )


class GcpInfrastructure:
    """Builds the step list for one GCP installation."""

    def __init__(self, config: GcpConfig, gcloud: Gcloud):
        self.config = config
        self.gcloud = gcloud
        self.labels = to_gcloud_labels(config.labels if config.labels is not None else DEFAULT_LABELS)

    def _handle(self, kind: ResourceKind, resource_id: str, name: Optional[str] = None) -> ResourceHandle:
        return ResourceHandle(kind=kind, id=resource_id, region=self.config.region, name=name or "")

    def create_network(self, registry: ResourceRegistry) -> ResourceHandle:
        name = self.config.network_name
        logger.info("Creating VPC network...")
        if not self.gcloud.exists("compute", "networks", "describe", name):
            self.gcloud.run(
                "compute", "networks", "create", name,
                "--subnet-mode=custom", "--bgp-routing-mode=regional", "--quiet",
            )
        return self._handle(ResourceKind.NETWORK, name, "network")

    def create_subnet(self, registry: ResourceRegistry) -> ResourceHandle:
        config = self.config
        name = config.subnet_name
        logger.info(f"Creating subnet {name}...")
        if not self.gcloud.exists("compute", "networks", "subnets", "describe", name, f"--region={config.region}"):
            self.gcloud.run(
                "compute", "networks", "subnets", "create", name,
                f"--network={config.network_name}",
                f"--region={config.region}",
                f"--range={config.subnet_cidr}",
                f"--secondary-range=pods={config.pods_cidr},services={config.services_cidr}",
                "--enable-private-ip-google-access",
                "--quiet",
            )
        return self._handle(ResourceKind.SUBNET, name, "subnet")

    def create_router(self, registry: ResourceRegistry) -> ResourceHandle:
        config = self.config
        name = config.router_name
        logger.info(f"Creating Cloud Router {name}...")
        if not self.gcloud.exists("compute", "routers", "describe", name, f"--region={config.region}"):
            self.gcloud.run(
                "compute", "routers", "create", name,
                f"--network={config.network_name}", f"--region={config.region}", "--quiet",
            )
        return self._handle(ResourceKind.ROUTER, name, "router")

    def create_nat(self, registry: ResourceRegistry) -> ResourceHandle:
        config = self.config
        name = config.nat_name
        logger.info(f"Creating Cloud NAT {name}...")
        router_args = [f"--router={config.router_name}", f"--region={config.region}"]
        if not self.gcloud.exists("compute", "routers", "nats", "describe", name, *router_args):
            self.gcloud.run(
                "compute", "routers", "nats", "create", name, *router_args,
                "--nat-all-subnet-ip-ranges", "--auto-allocate-nat-external-ips", "--quiet",
            )
        return self._handle(ResourceKind.ROUTER_NAT, name, "nat")

    def create_firewall_rules(self, registry: ResourceRegistry) -> List[ResourceHandle]:
        logger.info("Creating firewall rules...")
        handles = []
        for name, flags in firewall_rules(self.config).items():
            self.gcloud.create(
                f"firewall rule {name}",
                "compute", "firewall-rules", "create", name,
                f"--network={self.config.network_name}", *flags, "--quiet",
            )
            handles.append(self._handle(ResourceKind.FIREWALL_RULE, name, f"firewall:{name}"))
        return handles

    def secret_payload(self) -> str:
        values = dict(self.config.secret_values)
        values.setdefault("GCP_PROJECT_ID", self.config.project_id)
        values.setdefault("CDX_DEFAULT_REGION", self.config.region)
        return json.dumps(values, indent=2)

    def create_secret(self, registry: ResourceRegistry) -> ResourceHandle:
        name = self.config.secret_name
        logger.info(f"Creating Secret Manager secret {name}...")
        if not self.gcloud.exists("secrets", "describe", name):
            self.gcloud.run("secrets", "create", name, "--replication-policy=automatic", f"--labels={self.labels}")
        self.gcloud.run("secrets", "versions", "add", name, "--data-file=-", input=self.secret_payload())
        return self._handle(ResourceKind.SECRET, name, "secret")

    def create_service_account(self, registry: ResourceRegistry) -> ResourceHandle:
        account = self.config.service_account
        email = self.config.service_account_email
        logger.info(f"Creating service account {account}...")
        if not self.gcloud.exists("iam", "service-accounts", "describe", email):
            self.gcloud.run(
                "iam", "service-accounts", "create", account,
                "--display-name=JIT workload service account",
            )
        return self._handle(ResourceKind.SERVICE_ACCOUNT, email, "service_account")

    def create_cluster(self, registry: ResourceRegistry) -> ResourceHandle:
        config = self.config
        name = config.cluster_name
        logger.info(f"Creating GKE cluster {name} (10-15 min)...")
        if not self.gcloud.exists("container", "clusters", "describe", name, f"--zone={config.zone}"):
            self.gcloud.run(
                "container", "clusters", "create", name,
                f"--zone={config.zone}",
                f"--network={config.network_name}",
                f"--subnetwork={config.subnet_name}",
                "--enable-ip-alias",
                "--cluster-secondary-range-name=pods",
                "--services-secondary-range-name=services",
                "--enable-private-nodes",
                "--enable-private-endpoint",
                f"--master-ipv4-cidr={config.master_cidr}",
                "--enable-master-authorized-networks",
                f"--master-authorized-networks={config.subnet_cidr}",
                f"--machine-type={config.machine_type}",
                f"--num-nodes={config.num_nodes}",
                "--disk-type=pd-standard",
                "--disk-size=20",
                f"--workload-pool={config.project_id}.svc.id.goog",
                "--addons=GcpFilestoreCsiDriver",
                f"--labels={self.labels}",
                "--async",
                "--quiet",
            )
        return self._handle(ResourceKind.CLUSTER, name, "cluster")

    def create_nfs_server(self, registry: ResourceRegistry) -> ResourceHandle:
        config = self.config
        name = config.nfs_vm
        logger.info(f"Creating NFS server {name}...")
        if not self.gcloud.exists("compute", "instances", "describe", name, f"--zone={config.zone}"):
            fd, script_path = tempfile.mkstemp(prefix="nfs-startup-", suffix=".sh")
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(NFS_STARTUP_SCRIPT)
                self.gcloud.run(
                    "compute", "instances", "create", name,
                    f"--zone={config.zone}",
                    "--machine-type=e2-micro",
                    f"--subnet={config.subnet_name}",
                    "--no-address",
                    "--tags=nfs-server",
                    f"--labels={self.labels}",
                    f"--create-disk=device-name={name}-data,size=20,type=pd-standard",
                    "--boot-disk-size=10GB",
                    "--image-family=debian-12",
                    "--image-project=debian-cloud",
                    f"--metadata=network-cidr={config.subnet_cidr}",
                    f"--metadata-from-file=startup-script={script_path}",
                    "--quiet",
                )
            finally:
                os.unlink(script_path)
        return self._handle(ResourceKind.INSTANCE, name, "nfs_vm")

    def steps(self) -> List[Step]:
        return [
            Step("Create VPC network", self.create_network),
            Step("Create subnet", self.create_subnet),
            Step("Create Cloud Router", self.create_router),
            Step("Create Cloud NAT", self.create_nat),
            Step("Create firewall rules", self.create_firewall_rules),
            Step("Create secret", self.create_secret),
            Step("Create workload service account", self.create_service_account),
            Step("Create GKE cluster", self.create_cluster, poll=cluster_spec(self.gcloud, self.config)),
            Step("Create NFS server", self.create_nfs_server),
        ]


def build_infrastructure_steps(config: GcpConfig, gcloud: Gcloud) -> List[Step]:
    return GcpInfrastructure(config, gcloud).steps()
