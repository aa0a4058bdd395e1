"""
Kubernetes manifests for the JIT workloads on GKE.

Every builder returns plain dicts; ``render`` turns a list of them into one
multi-document YAML stream for ``kubectl apply -f -``.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import yaml

from ..config import GcpConfig
from .infrastructure import DEFAULT_LABELS

Manifest = Dict[str, Any]

NFS_EXPORT = "/mnt/nfs-data/exports/proxysql"
STORAGE_SIZE = "20Gi"
DATA_PATH = "/var/lib/proxysql"
SECRETS_PATH = "/mnt/secrets-store"
SECRETS_FILE = "cdx-secrets.json"
PVC_NAME = "proxysql-pvc"

# Turns the mounted secret JSON into KEY=value lines the entrypoint sources.
LOAD_SECRETS_SCRIPT = (
    "apk add --no-cache jq\n"
    f"jq -r 'to_entries|map(\"\\(.key)=\\(.value)\")|.[]' {SECRETS_PATH}/{SECRETS_FILE} > /env/.env\n"
)


@dataclass
class Workload:
    name: str
    image: str
    ports: List[Tuple[str, int]]
    replicas: int = 1
    # command run after sourcing the secrets env file; None keeps the image entrypoint
    entrypoint: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    # host part of the internal load balancer address, when exposed outside the cluster
    ilb_host: Optional[int] = None
    data_volume: bool = True


def render(manifests: List[Manifest]) -> str:
    return yaml.safe_dump_all(manifests, sort_keys=False, default_flow_style=False)


def _labels(config: GcpConfig, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    labels = dict(config.labels if config.labels is not None else DEFAULT_LABELS)
    labels.update(extra or {})
    return labels


def workloads(config: GcpConfig) -> List[Workload]:
    """Workloads to run, postgresql first so dam-server finds it."""
    registry = config.image_registry
    tag = config.image_tag
    items = [
        Workload(
            name="proxysql",
            image=f"{registry}/gcp-ar-jit-proxy-sql:{tag}",
            ports=[("admin", 6032), ("mysql", 6033), ("psql", 6133)],
            ilb_host=101,
        ),
        Workload(
            name="proxyserver",
            image=f"{registry}/gcp-ar-jit-proxy-server:{tag}",
            ports=[("http", 8079)],
            replicas=2,
            entrypoint="exec /app/server_proxy",
            ilb_host=102,
        ),
        Workload(
            name="query-logging",
            image=f"{registry}/gcp-ar-jit-query-logging:{tag}",
            ports=[("http", 8079)],
            entrypoint="exec /app/query_logging",
            env={"CDX_APP_ENV": "production", "CDX_DEFAULT_REGION": config.region},
        ),
    ]
    if config.enable_dam:
        items = [
            Workload(
                name="postgresql",
                image=f"{registry}/gcp-ar-jit-postgresql:{tag}",
                ports=[("postgres", 5432)],
                entrypoint="exec docker-entrypoint.sh postgres",
                env={"POSTGRES_DB": "jitdb", "POSTGRES_USER": "pgjitdbuser",
                     "PGDATA": "/var/lib/postgresql/data/pgdata"},
                data_volume=False,
            ),
        ] + items + [
            Workload(
                name="dam-server",
                image=f"{registry}/gcp-ar-jit-dam-server:{tag}",
                ports=[("http", 8080)],
                entrypoint="exec node server.js",
                env={"NODE_ENV": "production", "PROXYSERVER_HOST": "proxyserver", "PROXYSERVER_PORT": "8079"},
                ilb_host=103,
            ),
        ]
    return items


def namespace(config: GcpConfig) -> List[Manifest]:
    """The namespace and the Kubernetes service account bound to the GCP one."""
    ns = config.k8s_namespace
    return [
        {
            "apiVersion": "v1",
            "kind": "Namespace",
            "metadata": {"name": ns, "labels": _labels(config, {"name": ns})},
        },
        {
            "apiVersion": "v1",
            "kind": "ServiceAccount",
            "metadata": {
                "name": config.k8s_service_account,
                "namespace": ns,
                "annotations": {"iam.gke.io/gcp-service-account": config.service_account_email},
            },
        },
    ]


def nfs_volume(config: GcpConfig, nfs_ip: str) -> List[Manifest]:
    """The NFS-backed PersistentVolume shared by the proxy workloads and its claim."""
    selector = {"storage": "proxysql-nfs"}
    return [
        {
            "apiVersion": "v1",
            "kind": "PersistentVolume",
            "metadata": {"name": f"{config.prefix}-proxysql-pv", "labels": selector},
            "spec": {
                "capacity": {"storage": STORAGE_SIZE},
                "accessModes": ["ReadWriteMany"],
                "persistentVolumeReclaimPolicy": "Retain",
                "storageClassName": "",
                "mountOptions": ["hard", "nfsvers=4.1"],
                "nfs": {"server": nfs_ip, "path": NFS_EXPORT},
            },
        },
        {
            "apiVersion": "v1",
            "kind": "PersistentVolumeClaim",
            "metadata": {"name": PVC_NAME, "namespace": config.k8s_namespace},
            "spec": {
                "accessModes": ["ReadWriteMany"],
                "storageClassName": "",
                "resources": {"requests": {"storage": STORAGE_SIZE}},
                "selector": {"matchLabels": selector},
            },
        },
    ]


def secret_provider(config: GcpConfig) -> List[Manifest]:
    secret = f"projects/{config.project_id}/secrets/{config.secret_name}/versions/latest"
    return [{
        "apiVersion": "secrets-store.csi.x-k8s.io/v1",
        "kind": "SecretProviderClass",
        "metadata": {"name": f"{config.prefix}-secrets-provider", "namespace": config.k8s_namespace},
        "spec": {
            "provider": "gke",
            "parameters": {"secrets": yaml.safe_dump([{"resourceName": secret, "path": SECRETS_FILE}])},
        },
    }]


def _pod_spec(config: GcpConfig, workload: Workload) -> Dict[str, Any]:
    mounts = [{"name": "secrets-store", "mountPath": SECRETS_PATH, "readOnly": True}]
    volumes = [{
        "name": "secrets-store",
        "csi": {
            "driver": "secrets-store-gke.csi.k8s.io",
            "readOnly": True,
            "volumeAttributes": {"secretProviderClass": f"{config.prefix}-secrets-provider"},
        },
    }]
    init_containers = []

    if workload.data_volume:
        mounts.append({"name": "proxysql-data", "mountPath": DATA_PATH})
        volumes.append({"name": "proxysql-data", "persistentVolumeClaim": {"claimName": PVC_NAME}})
    else:
        mounts.append({"name": f"{workload.name}-data", "mountPath": "/var/lib/postgresql/data"})

    container: Dict[str, Any] = {
        "name": workload.name,
        "image": workload.image,
        "imagePullPolicy": "Always",
        "ports": [{"containerPort": port} for _, port in workload.ports],
    }
    if workload.env:
        container["env"] = [{"name": k, "value": v} for k, v in workload.env.items()]

    if workload.entrypoint:
        init_containers.append({
            "name": "load-secrets",
            "image": "alpine:3.19",
            "command": ["sh", "-c", LOAD_SECRETS_SCRIPT],
            "volumeMounts": [
                {"name": "secrets-store", "mountPath": SECRETS_PATH},
                {"name": "env-file", "mountPath": "/env"},
            ],
        })
        container["command"] = ["sh", "-c", f"set -a\n. /env/.env\nset +a\n{workload.entrypoint}\n"]
        mounts.append({"name": "env-file", "mountPath": "/env"})
        volumes.append({"name": "env-file", "emptyDir": {}})
    elif workload.data_volume:
        init_containers.append({
            "name": "fix-permissions",
            "image": "busybox",
            "command": ["sh", "-c", f"chown -R 1000:1000 {DATA_PATH}"],
            "volumeMounts": [{"name": "proxysql-data", "mountPath": DATA_PATH}],
        })

    container["volumeMounts"] = mounts
    spec: Dict[str, Any] = {
        "serviceAccountName": config.k8s_service_account,
        "securityContext": {"fsGroup": 1000},
    }
    if init_containers:
        spec["initContainers"] = init_containers
    spec["containers"] = [container]
    spec["volumes"] = volumes
    return spec


def _workload(config: GcpConfig, workload: Workload) -> Manifest:
    match = {"app": workload.name}
    template = {"metadata": {"labels": match}, "spec": _pod_spec(config, workload)}
    spec: Dict[str, Any] = {"replicas": workload.replicas, "selector": {"matchLabels": match}, "template": template}

    if workload.data_volume:
        kind = "Deployment"
    else:
        kind = "StatefulSet"
        spec["serviceName"] = workload.name
        spec["volumeClaimTemplates"] = [{
            "metadata": {"name": f"{workload.name}-data"},
            "spec": {
                "accessModes": ["ReadWriteOnce"],
                "storageClassName": "standard-rwo",
                "resources": {"requests": {"storage": STORAGE_SIZE}},
            },
        }]

    return {
        "apiVersion": "apps/v1",
        "kind": kind,
        "metadata": {"name": workload.name, "namespace": config.k8s_namespace, "labels": _labels(config, match)},
        "spec": spec,
    }


def _services(config: GcpConfig, workload: Workload) -> List[Manifest]:
    ports = [{"name": name, "port": port, "targetPort": port} for name, port in workload.ports]
    services = [{
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": workload.name, "namespace": config.k8s_namespace},
        "spec": {"type": "ClusterIP", "ports": ports, "selector": {"app": workload.name}},
    }]
    if workload.ilb_host is not None:
        network = config.ilb_address(0).rsplit(".", 2)[0]
        services.append({
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {
                "name": f"{workload.name}-ilb",
                "namespace": config.k8s_namespace,
                "annotations": {"cloud.google.com/load-balancer-type": "Internal"},
            },
            "spec": {
                "type": "LoadBalancer",
                "loadBalancerIP": config.ilb_address(workload.ilb_host),
                "loadBalancerSourceRanges": [f"{network}.0.0/16"],
                "ports": ports,
                "selector": {"app": workload.name},
            },
        })
    return services


def workload_manifests(config: GcpConfig) -> List[Manifest]:
    manifests = []
    for workload in workloads(config):
        manifests.append(_workload(config, workload))
        manifests.extend(_services(config, workload))
    return manifests
