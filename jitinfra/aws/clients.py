"""
boto3 client access and error helpers shared by the AWS flows.
"""

from typing import Dict, Optional

import boto3
from botocore.exceptions import ClientError

# Error codes meaning "the resource is not there".
NOT_FOUND_CODES = {
    "ResourceNotFoundException",
    "NoSuchEntity",
    "NoSuchBucket",
    "NotFound",
    "404",
    "RepositoryNotFoundException",
    "ClusterNotFoundException",
    "ServiceNotFoundException",
    "NamespaceNotFound",
    "FileSystemNotFound",
    "AccessPointNotFound",
    "MountTargetNotFound",
    "InvalidVpcID.NotFound",
    "InvalidSubnetID.NotFound",
    "InvalidGroup.NotFound",
    "InvalidRouteTableID.NotFound",
    "InvalidInternetGatewayID.NotFound",
    "InvalidNatGatewayID.NotFound",
    "InvalidAllocationID.NotFound",
    "InvalidVpcPeeringConnectionID.NotFound",
    "InvalidVpcEndpointId.NotFound",
}

# Error codes meaning "the resource is already there".
ALREADY_EXISTS_CODES = {
    "EntityAlreadyExists",
    "ResourceAlreadyExistsException",
    "ResourceExistsException",
    "BucketAlreadyOwnedByYou",
    "InvalidPermission.Duplicate",
    "RouteAlreadyExists",
    "ConflictException",
}


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def is_not_found(error: ClientError) -> bool:
    code = error_code(error)
    return code in NOT_FOUND_CODES or code.endswith(".NotFound")


def is_already_exists(error: ClientError) -> bool:
    return error_code(error) in ALREADY_EXISTS_CODES


class AwsClients:
    """
    Lazily created, cached boto3 clients for one region.

    Tests pass pre-built mocks through ``clients``.
    """

    def __init__(self, region: str, session: Optional[boto3.session.Session] = None,
                 clients: Optional[Dict[str, object]] = None):
        self.region = region
        self._session = session
        self._clients: Dict[str, object] = dict(clients or {})

    def client(self, service: str):
        if service not in self._clients:
            session = self._session or boto3.session.Session(region_name=self.region)
            self._clients[service] = session.client(service, region_name=self.region)
        return self._clients[service]

    @property
    def ec2(self):
        return self.client("ec2")

    @property
    def efs(self):
        return self.client("efs")

    @property
    def ecs(self):
        return self.client("ecs")

    @property
    def ecr(self):
        return self.client("ecr")

    @property
    def iam(self):
        return self.client("iam")

    @property
    def logs(self):
        return self.client("logs")

    @property
    def s3(self):
        return self.client("s3")

    @property
    def secretsmanager(self):
        return self.client("secretsmanager")

    @property
    def servicediscovery(self):
        return self.client("servicediscovery")

    @property
    def sts(self):
        return self.client("sts")

    def account_id(self) -> str:
        return self.sts.get_caller_identity()["Account"]
