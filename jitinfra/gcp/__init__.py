"""
GCP flows: GKE infrastructure provisioning and teardown, workload deployment
and Private Service Connect endpoints, all through gcloud and kubectl.
"""

from .cleanup import build_cleanup_steps
from .gcloud import Gcloud, Kubectl
from .infrastructure import build_infrastructure_steps, cluster_running
from .psc import build_psc_steps
from .workloads import build_workload_steps, deployments_ready

__all__ = [
    "Gcloud",
    "Kubectl",
    "build_cleanup_steps",
    "build_infrastructure_steps",
    "build_psc_steps",
    "build_workload_steps",
    "cluster_running",
    "deployments_ready",
]
