"""
Re-apply resolved tags to an existing workload installation.

Resources are discovered by name and VPC membership rather than read from
a run registry, so the flow also works for installs made before tagging
rules changed.
"""

import logging
from typing import Dict, List, Optional

from botocore.exceptions import ClientError

from ..config import AwsWorkloadConfig
from ..errors import ActionFailure
from ..sequencer import Step, cleanup_step
from ..state import ResourceHandle, ResourceKind, ResourceRegistry
from ..tags import resolve_tags, to_key_value_list, to_lower_key_value_list
from .clients import AwsClients, is_not_found

logger = logging.getLogger(__name__)


def _name_tag(tags) -> Optional[str]:
    for tag in tags or []:
        if tag.get("Key") == "Name":
            return tag.get("Value")
    return None


class RetagFlow:
    def __init__(self, config: AwsWorkloadConfig, clients: AwsClients):
        self.config = config
        self.clients = clients
        self.project = config.project_name
        self.user_tags = config.user_tags()

    def _tags(self, kind: ResourceKind, name: Optional[str] = None) -> Dict[str, str]:
        return resolve_tags(kind, name, self.user_tags, self.project)

    def _tag_ec2(self, resource_id: str, kind: ResourceKind, name: Optional[str] = None) -> None:
        tags = self._tags(kind, name)
        logger.info(f"Adding tags to {tags['Name']} ({resource_id})...")
        self.clients.ec2.create_tags(Resources=[resource_id], Tags=to_key_value_list(tags))

    def _vpc_filter(self, registry: ResourceRegistry) -> List[Dict]:
        return [{"Name": "vpc-id", "Values": [registry.id_of("vpc")]}]

    def find_vpc(self, registry: ResourceRegistry) -> ResourceHandle:
        if self.config.existing_vpc is not None:
            vpc_id = self.config.existing_vpc.vpc_id
        else:
            vpcs = self.clients.ec2.describe_vpcs(
                Filters=[{"Name": "tag:Name", "Values": [f"{self.project}-vpc"]}]
            ).get("Vpcs", [])
            if not vpcs:
                raise ActionFailure(f"No VPC found with name {self.project}-vpc")
            vpc_id = vpcs[0]["VpcId"]
        logger.info(f"Found VPC: {vpc_id}")
        return ResourceHandle(kind=ResourceKind.VPC, id=vpc_id, region=self.config.region, name="vpc")

    def tag_vpc(self, registry: ResourceRegistry) -> None:
        self._tag_ec2(registry.id_of("vpc"), ResourceKind.VPC)

    def _is_public(self, subnet_id: str) -> bool:
        tables = self.clients.ec2.describe_route_tables(
            Filters=[{"Name": "association.subnet-id", "Values": [subnet_id]}]
        ).get("RouteTables", [])
        routes = tables[0].get("Routes", []) if tables else []
        return any(route.get("GatewayId", "").startswith("igw-") for route in routes)

    def tag_subnets(self, registry: ResourceRegistry) -> None:
        subnets = self.clients.ec2.describe_subnets(Filters=self._vpc_filter(registry)).get("Subnets", [])
        for subnet in subnets:
            subnet_id = subnet["SubnetId"]
            name = _name_tag(subnet.get("Tags"))
            if not name:
                name = f"{self.project}-{'public' if self._is_public(subnet_id) else 'private'}"
            self._tag_ec2(subnet_id, ResourceKind.SUBNET, name)

    def tag_security_groups(self, registry: ResourceRegistry) -> None:
        groups = self.clients.ec2.describe_security_groups(Filters=self._vpc_filter(registry)).get("SecurityGroups", [])
        for group in groups:
            name = group["GroupName"]
            if not name.startswith(self.project):
                name = f"{self.project}-{name}"
            self._tag_ec2(group["GroupId"], ResourceKind.SECURITY_GROUP, name)

    def tag_gateways(self, registry: ResourceRegistry) -> None:
        ec2 = self.clients.ec2
        vpc_id = registry.id_of("vpc")
        gateways = ec2.describe_internet_gateways(
            Filters=[{"Name": "attachment.vpc-id", "Values": [vpc_id]}]
        ).get("InternetGateways", [])
        for igw in gateways:
            self._tag_ec2(igw["InternetGatewayId"], ResourceKind.INTERNET_GATEWAY)

        nat_gateways = ec2.describe_nat_gateways(Filters=self._vpc_filter(registry)).get("NatGateways", [])
        for nat in nat_gateways:
            if nat.get("State") in ("deleted", "deleting"):
                continue
            self._tag_ec2(nat["NatGatewayId"], ResourceKind.NAT_GATEWAY)

    def tag_route_tables(self, registry: ResourceRegistry) -> None:
        tables = self.clients.ec2.describe_route_tables(Filters=self._vpc_filter(registry)).get("RouteTables", [])
        for table in tables:
            name = _name_tag(table.get("Tags")) or f"{self.project}-rt"
            self._tag_ec2(table["RouteTableId"], ResourceKind.ROUTE_TABLE, name)

    def tag_file_system(self, registry: ResourceRegistry) -> None:
        efs = self.clients.efs
        wanted = f"{self.project}-{ResourceKind.FILE_SYSTEM.value}"
        for page in efs.get_paginator("describe_file_systems").paginate():
            for fs in page.get("FileSystems", []):
                if _name_tag(fs.get("Tags")) == wanted:
                    logger.info(f"Adding tags to {wanted} ({fs['FileSystemId']})...")
                    efs.tag_resource(
                        ResourceId=fs["FileSystemId"],
                        Tags=to_key_value_list(self._tags(ResourceKind.FILE_SYSTEM)),
                    )
                    return
        logger.warning(f"EFS file system {wanted} not found!")

    def tag_cluster(self, registry: ResourceRegistry) -> None:
        ecs = self.clients.ecs
        cluster_arns = ecs.list_clusters().get("clusterArns", [])
        for arn in cluster_arns:
            name = arn.split("/")[-1]
            if self.project in name:
                logger.info(f"Adding tags to ECS cluster {name}...")
                ecs.tag_resource(
                    resourceArn=arn,
                    tags=to_lower_key_value_list(self._tags(ResourceKind.CLUSTER, self.config.cluster_name)),
                )

    def tag_repositories(self, registry: ResourceRegistry) -> None:
        ecr = self.clients.ecr
        missing = []
        for repo in self.config.repositories:
            try:
                response = ecr.describe_repositories(repositoryNames=[repo])
            except ClientError as e:
                if not is_not_found(e):
                    raise
                logger.warning(f"Repository {repo} not found!")
                missing.append(repo)
                continue
            arn = response["repositories"][0]["repositoryArn"]
            ecr.tag_resource(resourceArn=arn, tags=to_key_value_list(self._tags(ResourceKind.REPOSITORY, repo)))
            logger.info(f"Tagged ECR repository: {repo}")
        if missing:
            raise ActionFailure(f"Repositories not found: {', '.join(missing)}")

    def tag_log_groups(self, registry: ResourceRegistry) -> None:
        logs = self.clients.logs
        for name in self.config.log_group_names:
            try:
                logs.tag_log_group(logGroupName=name, tags=self._tags(ResourceKind.LOG_GROUP, name))
                logger.info(f"Tagged log group: {name}")
            except ClientError as e:
                if not is_not_found(e):
                    raise
                logger.warning(f"Log group {name} not found!")

    def tag_secret(self, registry: ResourceRegistry) -> None:
        name = self.config.secret_name
        self.clients.secretsmanager.tag_resource(
            SecretId=name, Tags=to_key_value_list(self._tags(ResourceKind.SECRET, name))
        )
        logger.info(f"Tagged secret: {name}")

    def steps(self) -> List[Step]:
        return [
            Step("Find VPC", self.find_vpc),
            cleanup_step("Tag VPC", self.tag_vpc),
            cleanup_step("Tag subnets", self.tag_subnets),
            cleanup_step("Tag security groups", self.tag_security_groups),
            cleanup_step("Tag gateways", self.tag_gateways),
            cleanup_step("Tag route tables", self.tag_route_tables),
            cleanup_step("Tag EFS file system", self.tag_file_system),
            cleanup_step("Tag ECS cluster", self.tag_cluster),
            cleanup_step("Tag ECR repositories", self.tag_repositories),
            cleanup_step("Tag log groups", self.tag_log_groups),
            cleanup_step("Tag secret", self.tag_secret),
        ]


def build_retag_steps(config: AwsWorkloadConfig, clients: AwsClients) -> List[Step]:
    return RetagFlow(config, clients).steps()
