"""
Readiness predicates and poll specs for AWS resources.

Each ``*_spec`` function parameterizes the generic poller with the budget
and interval used for that resource type.
"""

import logging
from typing import List, Optional

from botocore.exceptions import ClientError, WaiterError

from ..errors import ActionFailure
from ..poller import Check, PollSpec, READY, failed, not_ready
from .clients import is_not_found

logger = logging.getLogger(__name__)

VPC_ENDPOINT_ATTEMPTS, VPC_ENDPOINT_INTERVAL = 20, 30
SECRET_ATTEMPTS, SECRET_INTERVAL = 10, 30
NAT_GATEWAY_TIMEOUT, NAT_GATEWAY_INTERVAL = 300, 30
NAMESPACE_ATTEMPTS, NAMESPACE_INTERVAL = 10, 30
EFS_INTERVAL = 10
PEERING_ATTEMPTS, PEERING_INTERVAL = 20, 10


def vpc_endpoint_available(ec2, endpoint_id: str) -> Check:
    try:
        response = ec2.describe_vpc_endpoints(VpcEndpointIds=[endpoint_id])
    except ClientError as e:
        if is_not_found(e):
            return not_ready("not found")
        raise
    endpoints = response.get("VpcEndpoints", [])
    state = endpoints[0].get("State", "").lower() if endpoints else ""
    if state == "available":
        return READY
    if state in ("failed", "rejected"):
        return failed(f"VPC endpoint {endpoint_id} is {state}")
    return not_ready(state or "unknown")


def vpc_endpoint_spec(ec2, endpoint_id: str) -> PollSpec:
    return PollSpec(
        predicate=lambda: vpc_endpoint_available(ec2, endpoint_id),
        interval=VPC_ENDPOINT_INTERVAL,
        max_attempts=VPC_ENDPOINT_ATTEMPTS,
        description=f"endpoint {endpoint_id}",
    )


def secret_exists(secretsmanager, secret_name: str) -> Check:
    try:
        response = secretsmanager.describe_secret(SecretId=secret_name)
    except ClientError as e:
        if is_not_found(e):
            return not_ready("not found")
        raise
    if secret_name in response.get("Name", ""):
        return READY
    return not_ready(f"describe returned {response.get('Name')!r}")


def secret_spec(secretsmanager, secret_name: str) -> PollSpec:
    return PollSpec(
        predicate=lambda: secret_exists(secretsmanager, secret_name),
        interval=SECRET_INTERVAL,
        max_attempts=SECRET_ATTEMPTS,
        description=f"secret {secret_name}",
    )


def nat_gateway_available(ec2, nat_gateway_id: str) -> Check:
    try:
        response = ec2.describe_nat_gateways(NatGatewayIds=[nat_gateway_id])
    except ClientError as e:
        if is_not_found(e):
            return not_ready("not found")
        raise
    gateways = response.get("NatGateways", [])
    if not gateways:
        return not_ready("not found")
    state = gateways[0].get("State", "")
    if state == "available":
        return READY
    if state in ("failed", "deleted", "deleting"):
        message = gateways[0].get("FailureMessage") or f"NAT gateway {nat_gateway_id} is {state}"
        return failed(message)
    return not_ready(state)


def nat_gateway_spec(ec2, nat_gateway_id: str) -> PollSpec:
    return PollSpec(
        predicate=lambda: nat_gateway_available(ec2, nat_gateway_id),
        interval=NAT_GATEWAY_INTERVAL,
        total_timeout=NAT_GATEWAY_TIMEOUT,
        description=f"NAT Gateway {nat_gateway_id}",
    )


def find_namespace_id(servicediscovery, namespace_name: str) -> Optional[str]:
    paginator = servicediscovery.get_paginator("list_namespaces")
    for page in paginator.paginate():
        for namespace in page.get("Namespaces", []):
            if namespace.get("Name") == namespace_name and namespace.get("Id", "").startswith("ns-"):
                return namespace["Id"]
    return None


def find_file_system_id(efs, name: str) -> Optional[str]:
    """ID of the EFS file system whose Name tag is ``name``."""
    for page in efs.get_paginator("describe_file_systems").paginate():
        for fs in page.get("FileSystems", []):
            if any(t.get("Key") == "Name" and t.get("Value") == name for t in fs.get("Tags") or []):
                return fs["FileSystemId"]
    return None


def namespace_available(servicediscovery, namespace_name: str) -> Check:
    if find_namespace_id(servicediscovery, namespace_name):
        return READY
    return not_ready("not listed")


def namespace_spec(servicediscovery, namespace_name: str) -> PollSpec:
    return PollSpec(
        predicate=lambda: namespace_available(servicediscovery, namespace_name),
        interval=NAMESPACE_INTERVAL,
        max_attempts=NAMESPACE_ATTEMPTS,
        description=f"namespace {namespace_name}",
    )


def file_system_available(efs, file_system_id: str) -> Check:
    try:
        response = efs.describe_file_systems(FileSystemId=file_system_id)
    except ClientError as e:
        if is_not_found(e):
            return not_ready("not found")
        raise
    systems = response.get("FileSystems", [])
    state = systems[0].get("LifeCycleState", "") if systems else ""
    if state == "available":
        return READY
    if state == "error":
        return failed(f"EFS {file_system_id} entered the error state")
    return not_ready(state or "unknown")


def file_system_spec(efs, file_system_id: str, max_attempts: Optional[int] = None) -> PollSpec:
    """EFS waits are unbounded unless ``max_attempts`` is given."""
    return PollSpec(
        predicate=lambda: file_system_available(efs, file_system_id),
        interval=EFS_INTERVAL,
        max_attempts=max_attempts,
        description=f"EFS {file_system_id}",
    )


def peering_active(ec2, peering_id: str) -> Check:
    try:
        response = ec2.describe_vpc_peering_connections(VpcPeeringConnectionIds=[peering_id])
    except ClientError as e:
        if is_not_found(e):
            return not_ready("not found")
        raise
    connections = response.get("VpcPeeringConnections", [])
    status = connections[0].get("Status", {}) if connections else {}
    code = status.get("Code", "")
    if code == "active":
        return READY
    if code == "failed":
        return failed(status.get("Message") or f"VPC peering connection {peering_id} failed")
    return not_ready(code or "unknown")


def peering_spec(ec2, peering_id: str) -> PollSpec:
    return PollSpec(
        predicate=lambda: peering_active(ec2, peering_id),
        interval=PEERING_INTERVAL,
        max_attempts=PEERING_ATTEMPTS,
        description=f"VPC peering connection {peering_id}",
    )


def wait_services_stable(ecs, cluster: str, services: List[str]) -> None:
    """
    Block until the ECS services are stable, using boto3's own waiter.

    Raises:
        ActionFailure: If the waiter gives up or sees a failure
    """
    logger.info(f"Waiting for services to stabilize: {', '.join(services)}")
    waiter = ecs.get_waiter("services_stable")
    try:
        waiter.wait(cluster=cluster, services=services)
    except WaiterError as e:
        raise ActionFailure(f"Services did not stabilize: {e}") from e
