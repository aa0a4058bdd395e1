"""
ECS task definitions and service settings for the proxy workloads.

Definitions are built from the service table below. A directory of
``<service>-task-definition.json`` templates can replace any of them;
templates may reference ``${ACCOUNT_ID}``, ``${AWS_REGION}``,
``${PROJECT_NAME}``, ``${EFS_ID}``, ``${ACCESS_POINT_ID}``,
``${SECRET_ARN}``, ``${TASK_ROLE_ARN}`` and ``${IMAGE}``.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from string import Template
from typing import Any, Dict, List, Optional, Tuple

from ..config import AwsWorkloadConfig
from ..errors import ConfigError

CDX_SECRET_KEYS = [
    "CDX_AUTH_TOKEN",
    "CDX_SIGNATURE_SECRET_KEY",
    "CDX_SENTRY_DSN",
    "CDX_DC",
    "CDX_API_BASE",
]
DAM_SECRET_KEYS = ["POSTGRES_PASSWORD", "ENCRYPTION_KEY"]

DATA_VOLUME = "proxysql-data"
DATA_PATH = "/var/lib/proxysql"


@dataclass
class WorkloadService:
    name: str
    family: str
    repository: str
    ports: List[Tuple[str, int]]
    desired_count: int = 1
    environment: Dict[str, str] = field(default_factory=dict)
    secrets: List[str] = field(default_factory=list)
    # (port name, client alias port) exposed through service connect
    discovery: Optional[Tuple[str, int]] = None
    app_protocol: Optional[str] = None


def workload_services(config: AwsWorkloadConfig) -> List[WorkloadService]:
    """
    Services to run, in creation order.

    With DAM enabled postgresql is created before dam-server, which
    depends on it.
    """
    region = config.region
    logging_secrets = CDX_SECRET_KEYS + ["CDX_LOGGING_S3_BUCKET"]
    dam_extra = DAM_SECRET_KEYS if config.enable_dam else []
    repositories = dict(zip(config.services, config.repositories))

    services = [
        WorkloadService(
            name="proxysql",
            family="proxysql",
            repository=repositories["proxysql"],
            ports=[("proxysql-admin", 6032), ("proxysql-mysql", 6033)],
            discovery=("proxysql-admin", 6032),
        ),
        WorkloadService(
            name="proxyserver",
            family="proxyserver-task",
            repository=repositories["proxyserver"],
            ports=[("proxyserver-http", 8079)],
            desired_count=2,
            environment={"AWS_DEFAULT_REGION": region, "PROXYSQL_HOST": "proxysql"},
            secrets=logging_secrets + dam_extra,
            discovery=("proxyserver-http", 8079),
            app_protocol="http",
        ),
        WorkloadService(
            name="query-logging",
            family="query-logging-task",
            repository=repositories["query-logging"],
            ports=[("query-logging-port", 8079)],
            environment={
                "AWS_DEFAULT_REGION": region,
                "CDX_APP_ENV": "production",
                "CDX_LOG_LEVEL": "DEBUG",
                "CDX_DEFAULT_REGION": region,
                "CDX_SERVER_VERSION": "1.0.0",
            },
            secrets=logging_secrets + (["POSTGRES_PASSWORD"] if config.enable_dam else []),
        ),
    ]

    if config.enable_dam:
        services += [
            WorkloadService(
                name="postgresql",
                family="postgresql-task",
                repository=repositories["postgresql"],
                ports=[("postgresql-db", 5432)],
                environment={
                    "POSTGRES_USER": "pgjitdbuser",
                    "POSTGRES_DB": "jitdb",
                    "PGDATA": f"{DATA_PATH}/postgresql/data/pgdata",
                    "POSTGRES_INITDB_ARGS": "-E UTF8 --locale=en_US.utf8",
                },
                secrets=["POSTGRES_PASSWORD"],
                discovery=("postgresql-db", 5432),
            ),
            WorkloadService(
                name="dam-server",
                family="dam-server-task",
                repository=repositories["dam-server"],
                ports=[("dam-server-http", 8080)],
                environment={
                    "AWS_DEFAULT_REGION": region,
                    "NODE_ENV": "production",
                    "PROXYSERVER_HOST": "proxyserver",
                    "PROXYSERVER_PORT": "8079",
                    "DAM_LOG_LEVEL": "INFO",
                    "DAM_APP_ENV": "production",
                },
                secrets=CDX_SECRET_KEYS + ["POSTGRES_PASSWORD"],
                discovery=("dam-server-http", 8080),
                app_protocol="http",
            ),
        ]

    return services


def build_task_definition(
    service: WorkloadService,
    config: AwsWorkloadConfig,
    account_id: str,
    secret_arn: str,
    task_role_arn: str,
    file_system_id: str,
    access_point_id: str,
) -> Dict[str, Any]:
    """Keyword arguments for ``ecs.register_task_definition``."""
    image = f"{account_id}.dkr.ecr.{config.region}.amazonaws.com/{service.repository}:{config.image_tag}"

    port_mappings = []
    for port_name, port in service.ports:
        mapping = {
            "name": port_name,
            "containerPort": port,
            "hostPort": port,
            "protocol": "tcp",
        }
        if service.app_protocol:
            mapping["appProtocol"] = service.app_protocol
        port_mappings.append(mapping)

    container = {
        "name": service.name,
        "image": image,
        "cpu": 0,
        "portMappings": port_mappings,
        "essential": True,
        "environment": [{"name": k, "value": v} for k, v in service.environment.items()],
        "secrets": [
            {"name": key, "valueFrom": f"{secret_arn}:{key}::"} for key in service.secrets
        ],
        "mountPoints": [
            {"sourceVolume": DATA_VOLUME, "containerPath": DATA_PATH, "readOnly": False}
        ],
        "logConfiguration": {
            "logDriver": "awslogs",
            "options": {
                "awslogs-group": f"/ecs/{config.project_name}/{service.name}",
                "awslogs-region": config.region,
                "awslogs-stream-prefix": "ecs",
            },
        },
    }

    return {
        "family": service.family,
        "containerDefinitions": [container],
        "taskRoleArn": task_role_arn,
        "executionRoleArn": task_role_arn,
        "networkMode": "awsvpc",
        "volumes": [
            {
                "name": DATA_VOLUME,
                "efsVolumeConfiguration": {
                    "fileSystemId": file_system_id,
                    "rootDirectory": "/",
                    "transitEncryption": "ENABLED",
                    "transitEncryptionPort": 2049,
                    "authorizationConfig": {"accessPointId": access_point_id, "iam": "ENABLED"},
                },
            }
        ],
        "requiresCompatibilities": ["FARGATE"],
        "cpu": "256",
        "memory": "1024",
    }


def load_task_definition_template(
    directory: str,
    service: WorkloadService,
    values: Dict[str, str],
) -> Optional[Dict[str, Any]]:
    """
    Load ``<service>-task-definition.json`` from ``directory`` if present.

    Raises:
        ConfigError: If the template is not valid JSON after substitution
    """
    template_file = Path(directory) / f"{service.name}-task-definition.json"
    if not template_file.exists():
        return None

    rendered = Template(template_file.read_text()).safe_substitute(values)
    try:
        data = json.loads(rendered)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Task definition template {template_file} is not valid JSON: {e}") from e

    data.pop("tags", None)
    return data


def service_connect_configuration(service: WorkloadService, namespace: str) -> Dict[str, Any]:
    services = []
    if service.discovery:
        port_name, port = service.discovery
        services.append({
            "portName": port_name,
            "discoveryName": service.name,
            "clientAliases": [{"port": port, "dnsName": service.name}],
        })
    return {"enabled": True, "namespace": namespace, "services": services}
