"""
JIT workloads on an existing GKE cluster: IAM roles for the workload service
account, the namespace and Kubernetes service account, Workload Identity,
the NFS volume, the secret provider and the deployments.

Runs after ``gcp provision``; every apply is idempotent.
"""

import logging
from typing import List

from ..config import GcpConfig
from ..errors import ActionFailure
from ..poller import Check, PollSpec, READY, not_ready
from ..sequencer import Step
from ..state import ResourceHandle, ResourceKind, ResourceRegistry
from . import manifests
from .gcloud import Gcloud, Kubectl

logger = logging.getLogger(__name__)

WORKLOAD_ROLES = [
    "roles/secretmanager.secretAccessor",
    "roles/logging.logWriter",
    "roles/storage.objectAdmin",
    "roles/iam.serviceAccountTokenCreator",
]

DEPLOY_ATTEMPTS, DEPLOY_INTERVAL = 40, 15


def deployments_ready(kubectl: Kubectl, namespace: str) -> Check:
    """Ready once every deployment in the namespace has all replicas ready."""
    try:
        listing = kubectl.json("get", "deployments", "-n", namespace)
    except ActionFailure as e:
        return not_ready(str(e))

    pending = []
    for item in (listing or {}).get("items", []):
        wanted = item.get("spec", {}).get("replicas", 1)
        ready = item.get("status", {}).get("readyReplicas", 0) or 0
        if ready < wanted:
            pending.append(f"{item['metadata']['name']} {ready}/{wanted}")
    if pending:
        return not_ready(", ".join(pending))
    return READY


class GcpWorkloads:
    """Builds the step list that deploys the JIT services onto GKE."""

    def __init__(self, config: GcpConfig, gcloud: Gcloud, kubectl: Kubectl):
        self.config = config
        self.gcloud = gcloud
        self.kubectl = kubectl

    def get_credentials(self, registry: ResourceRegistry) -> None:
        config = self.config
        logger.info(f"Fetching credentials for cluster {config.cluster_name}...")
        self.gcloud.run(
            "container", "clusters", "get-credentials", config.cluster_name,
            f"--zone={config.zone}", "--internal-ip",
        )

    def grant_roles(self, registry: ResourceRegistry) -> None:
        member = f"serviceAccount:{self.config.service_account_email}"
        for role in WORKLOAD_ROLES:
            logger.info(f"Granting {role} to {self.config.service_account}")
            self.gcloud.run(
                "projects", "add-iam-policy-binding", self.config.project_id,
                f"--member={member}", f"--role={role}", "--condition=None", "--quiet",
            )

    def apply_namespace(self, registry: ResourceRegistry) -> ResourceHandle:
        config = self.config
        logger.info(f"Applying namespace {config.k8s_namespace} and service account {config.k8s_service_account}")
        self.kubectl.apply(manifests.render(manifests.namespace(config)))
        return ResourceHandle(
            kind=ResourceKind.NAMESPACE, id=config.k8s_namespace, region=config.region, name="k8s_namespace",
        )

    def bind_workload_identity(self, registry: ResourceRegistry) -> None:
        config = self.config
        member = f"serviceAccount:{config.project_id}.svc.id.goog[{config.k8s_namespace}/{config.k8s_service_account}]"
        logger.info(f"Binding {config.k8s_service_account} to {config.service_account_email}")
        self.gcloud.run(
            "iam", "service-accounts", "add-iam-policy-binding", config.service_account_email,
            "--role=roles/iam.workloadIdentityUser", f"--member={member}", "--quiet",
        )

    def nfs_ip(self) -> str:
        config = self.config
        ip = self.gcloud.run(
            "compute", "instances", "describe", config.nfs_vm, f"--zone={config.zone}",
            "--format=value(networkInterfaces[0].networkIP)",
        ).strip()
        if not ip:
            raise ActionFailure(f"NFS server {config.nfs_vm} has no internal IP")
        return ip

    def apply_volume(self, registry: ResourceRegistry) -> None:
        ip = self.nfs_ip()
        logger.info(f"Applying NFS volume backed by {ip}")
        self.kubectl.apply(manifests.render(manifests.nfs_volume(self.config, ip)))

    def apply_secret_provider(self, registry: ResourceRegistry) -> None:
        self.kubectl.apply(manifests.render(manifests.secret_provider(self.config)))

    def apply_workloads(self, registry: ResourceRegistry) -> None:
        names = [w.name for w in manifests.workloads(self.config)]
        logger.info(f"Applying workloads: {', '.join(names)}")
        self.kubectl.apply(manifests.render(manifests.workload_manifests(self.config)))

    def steps(self) -> List[Step]:
        ready = PollSpec(
            predicate=lambda: deployments_ready(self.kubectl, self.config.k8s_namespace),
            interval=DEPLOY_INTERVAL,
            max_attempts=DEPLOY_ATTEMPTS,
            description=f"deployments in {self.config.k8s_namespace}",
        )
        return [
            Step("Fetch cluster credentials", self.get_credentials),
            Step("Grant workload roles", self.grant_roles),
            Step("Apply namespace and service account", self.apply_namespace),
            Step("Bind Workload Identity", self.bind_workload_identity),
            Step("Apply NFS volume", self.apply_volume),
            Step("Apply secret provider", self.apply_secret_provider),
            Step("Apply workloads", self.apply_workloads, poll=ready),
        ]


def build_workload_steps(config: GcpConfig, gcloud: Gcloud, kubectl: Kubectl) -> List[Step]:
    return GcpWorkloads(config, gcloud, kubectl).steps()
