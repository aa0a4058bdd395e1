"""
Changes to an installed workload stack.

``build_update_steps`` registers new task definition revisions against the
resources a previous provision created and rolls the services onto them.
``build_rds_policy_steps`` lets the task role assume additional database
roles in connected accounts.
"""

import json
import logging
from typing import List, Optional
from urllib.parse import unquote

from ..config import AwsWorkloadConfig
from ..errors import ActionFailure, ConfigError
from ..sequencer import Step
from ..state import ResourceHandle, ResourceKind, ResourceRegistry
from . import waiters
from .clients import AwsClients
from .provision import RDS_ASSUME_ROLE_POLICY, WorkloadProvisioner
from .taskdefs import WorkloadService

logger = logging.getLogger(__name__)

# IAM keeps at most five versions of a managed policy.
MAX_POLICY_VERSIONS = 5


def _name_tag(resource) -> Optional[str]:
    return next((t["Value"] for t in resource.get("Tags") or [] if t.get("Key") == "Name"), None)


class WorkloadUpdater(WorkloadProvisioner):
    """
    Registers new task definition revisions and rolls services onto them.

    Existing resources are looked up by the names and ``Name`` tags the
    provision flow gives them. A service that does not exist yet is created.
    """

    def __init__(self, config: AwsWorkloadConfig, clients: AwsClients, services: Optional[List[str]] = None):
        super().__init__(config, clients)
        known = [s.name for s in super().services()]
        unknown = sorted(set(services or []) - set(known))
        if unknown:
            raise ConfigError(f"Unknown service(s): {', '.join(unknown)} (configured: {', '.join(known)})")
        self.selected = list(services or [])

    def services(self) -> List[WorkloadService]:
        services = super().services()
        if not self.selected:
            return services
        return [s for s in services if s.name in self.selected]

    def find_network(self, registry: ResourceRegistry) -> List[ResourceHandle]:
        if self.config.existing_vpc is not None:
            handles = self.register_existing_vpc(registry)
        else:
            ec2 = self.clients.ec2
            project = self.config.project_name
            vpcs = ec2.describe_vpcs(Filters=[{"Name": "tag:Name", "Values": [f"{project}-vpc"]}]).get("Vpcs", [])
            if not vpcs:
                raise ActionFailure(f"VPC {project}-vpc not found; run aws provision first")
            vpc_id = vpcs[0]["VpcId"]
            handles = [self._handle(ResourceKind.VPC, vpc_id, "vpc")]

            subnets = ec2.describe_subnets(Filters=[
                {"Name": "vpc-id", "Values": [vpc_id]},
                {"Name": "tag:Name", "Values": [f"{project}-private-subnet-*"]},
            ]).get("Subnets", [])
            if not subnets:
                raise ActionFailure(f"No private subnets found in {vpc_id}")
            subnets.sort(key=lambda s: _name_tag(s) or s["SubnetId"])
            for index, subnet in enumerate(subnets, start=1):
                handles.append(self._handle(ResourceKind.SUBNET, subnet["SubnetId"], f"private_subnet_{index}"))

        groups = self.clients.ec2.describe_security_groups(Filters=[
            {"Name": "vpc-id", "Values": [handles[0].id]},
            {"Name": "group-name", "Values": [self.config.security_group_name]},
        ]).get("SecurityGroups", [])
        if not groups:
            raise ActionFailure(f"Security group {self.config.security_group_name} not found")
        handles.append(self._handle(ResourceKind.SECURITY_GROUP, groups[0]["GroupId"], "security_group"))
        return handles

    def find_storage(self, registry: ResourceRegistry) -> List[ResourceHandle]:
        efs = self.clients.efs
        wanted = f"{self.config.project_name}-{ResourceKind.FILE_SYSTEM.value}"
        file_system_id = waiters.find_file_system_id(efs, wanted)
        if file_system_id is None:
            raise ActionFailure(f"EFS file system {wanted} not found")

        points = efs.describe_access_points(FileSystemId=file_system_id).get("AccessPoints", [])
        if not points:
            raise ActionFailure(f"No access point found for {file_system_id}")
        return [
            self._handle(ResourceKind.FILE_SYSTEM, file_system_id, "file_system"),
            self._handle(ResourceKind.ACCESS_POINT, points[0]["AccessPointId"], "access_point"),
        ]

    def find_secret_and_role(self, registry: ResourceRegistry) -> List[ResourceHandle]:
        secret = self.clients.secretsmanager.describe_secret(SecretId=self.config.secret_name)
        role = self.clients.iam.get_role(RoleName=self.config.task_role_name)["Role"]
        return [
            self._handle(ResourceKind.SECRET, self.config.secret_name, "secret", arn=secret["ARN"]),
            self._handle(ResourceKind.ROLE, self.config.task_role_name, "task_role", arn=role["Arn"]),
        ]

    def roll_out_services(self, registry: ResourceRegistry) -> List[ResourceHandle]:
        ecs = self.clients.ecs
        cluster = self.config.cluster_name
        services = self.services()
        described = ecs.describe_services(cluster=cluster, services=[s.name for s in services]).get("services", [])
        active = {s["serviceName"]: s for s in described if s.get("status") == "ACTIVE"}

        handles = []
        for service in services:
            task_definition = registry.require(f"task_definition:{service.name}").arn
            if service.name not in active:
                logger.info(f"Service {service.name} not found, creating it")
                handles.append(self.create_service(service, registry))
                continue
            logger.info(f"Updating service {service.name} to {task_definition}")
            ecs.update_service(
                cluster=cluster,
                service=service.name,
                taskDefinition=task_definition,
                forceNewDeployment=True,
            )
            handles.append(self._handle(
                ResourceKind.SERVICE, service.name, f"service:{service.name}",
                arn=active[service.name].get("serviceArn"),
            ))
        return handles

    def steps(self) -> List[Step]:
        return [
            Step("Find network", self.find_network),
            Step("Find EFS storage", self.find_storage),
            Step("Find secret and task role", self.find_secret_and_role),
            Step("Register task definitions", self.register_task_definitions),
            Step("Update ECS services", self.roll_out_services),
            Step("Wait for ECS services", self.wait_for_services),
        ]

    def details_sections(self):
        return {"Services Updated": [s.name for s in self.services()]}


class RdsRoleGrant:
    """Adds role ARNs to the task role's RDS assume-role policy as a new default version."""

    def __init__(self, config: AwsWorkloadConfig, clients: AwsClients, role_arns: Optional[List[str]] = None):
        self.config = config
        self.clients = clients
        self.role_arns = list(role_arns or config.rds_assume_role_arns)
        if not self.role_arns:
            raise ConfigError("No role ARNs given; pass --role-arn or set rds_assume_role_arns")

    def find_policy(self, registry: ResourceRegistry) -> ResourceHandle:
        role = self.config.task_role_name
        paginator = self.clients.iam.get_paginator("list_attached_role_policies")
        for page in paginator.paginate(RoleName=role):
            for policy in page.get("AttachedPolicies", []):
                if policy["PolicyName"] == RDS_ASSUME_ROLE_POLICY:
                    logger.info(f"Found policy ARN: {policy['PolicyArn']}")
                    return ResourceHandle(
                        kind=ResourceKind.POLICY, id=RDS_ASSUME_ROLE_POLICY, region=self.config.region,
                        name=f"policy:{RDS_ASSUME_ROLE_POLICY}", arn=policy["PolicyArn"],
                    )
        raise ActionFailure(f"Policy {RDS_ASSUME_ROLE_POLICY} is not attached to role {role}")

    def _current_document(self, policy_arn: str) -> dict:
        iam = self.clients.iam
        version_id = iam.get_policy(PolicyArn=policy_arn)["Policy"]["DefaultVersionId"]
        document = iam.get_policy_version(PolicyArn=policy_arn, VersionId=version_id)["PolicyVersion"]["Document"]
        # boto3 normally decodes the document; the raw API returns it URL-encoded.
        if isinstance(document, str):
            document = json.loads(unquote(document))
        return document

    def _make_room(self, policy_arn: str) -> None:
        iam = self.clients.iam
        versions = iam.list_policy_versions(PolicyArn=policy_arn).get("Versions", [])
        if len(versions) < MAX_POLICY_VERSIONS:
            return
        old = sorted((v for v in versions if not v.get("IsDefaultVersion")), key=lambda v: v["CreateDate"])
        if old:
            logger.info(f"Deleting policy version {old[0]['VersionId']} to stay under the version limit")
            iam.delete_policy_version(PolicyArn=policy_arn, VersionId=old[0]["VersionId"])

    def add_role_arns(self, registry: ResourceRegistry) -> None:
        policy_arn = registry.require(f"policy:{RDS_ASSUME_ROLE_POLICY}").arn
        document = self._current_document(policy_arn)

        statement = document["Statement"][0]
        resources = statement.get("Resource", [])
        if isinstance(resources, str):
            resources = [resources]
        added = [arn for arn in self.role_arns if arn not in resources]
        if not added:
            logger.info("All role ARNs are already in the policy")
            return
        statement["Resource"] = resources + added

        self._make_room(policy_arn)
        logger.info(f"Creating a new policy version with {', '.join(added)}")
        self.clients.iam.create_policy_version(
            PolicyArn=policy_arn,
            PolicyDocument=json.dumps(document),
            SetAsDefault=True,
        )

    def steps(self) -> List[Step]:
        return [
            Step("Find RDS assume role policy", self.find_policy),
            Step("Add role ARNs to policy", self.add_role_arns),
        ]


def build_update_steps(config: AwsWorkloadConfig, clients: AwsClients,
                       services: Optional[List[str]] = None) -> List[Step]:
    return WorkloadUpdater(config, clients, services).steps()


def build_rds_policy_steps(config: AwsWorkloadConfig, clients: AwsClients,
                           role_arns: Optional[List[str]] = None) -> List[Step]:
    return RdsRoleGrant(config, clients, role_arns).steps()
