"""
Cleanup flow for the ECS/Fargate workload stack.

Every step is lenient: a failure is logged and the next step runs. A
resource that is already gone counts as cleaned up. When a registry from
the provisioning run is supplied, the handles of removed resources are
discarded from it.
"""

import logging
from typing import Callable, List, Optional

from botocore.exceptions import ClientError

from ..config import AwsWorkloadConfig
from ..errors import ActionFailure
from ..poller import Check, PollSpec, READY, not_ready, poll
from ..sequencer import Step, cleanup_step
from ..state import ResourceKind, ResourceRegistry
from . import waiters
from .clients import AwsClients, is_not_found
from .provision import MANAGED_POLICIES

logger = logging.getLogger(__name__)

MOUNT_TARGET_ATTEMPTS, MOUNT_TARGET_INTERVAL = 12, 10
NAT_DELETE_TIMEOUT, NAT_DELETE_INTERVAL = 300, 15


class _Failures:
    """Collects per-item failures so one bad item does not stop a step."""

    def __init__(self, what: str):
        self.what = what
        self.items: List[str] = []

    def attempt(self, description: str, call: Callable[[], object]) -> bool:
        try:
            call()
            return True
        except ClientError as e:
            if is_not_found(e):
                logger.info(f"{description}: not found - skipping")
                return True
            logger.warning(f"Failed to {description}: {e}")
            self.items.append(description)
            return False

    def raise_if_any(self) -> None:
        if self.items:
            raise ActionFailure(f"{len(self.items)} {self.what} operation(s) failed: {'; '.join(self.items)}")


class WorkloadCleaner:
    """Builds the step list that tears down one workload installation."""

    def __init__(self, config: AwsWorkloadConfig, clients: AwsClients, include_network: Optional[bool] = None):
        self.config = config
        self.clients = clients
        self.project = config.project_name
        # Network resources are only ours to delete when the install created them.
        self.include_network = config.existing_vpc is None if include_network is None else include_network

    # ECS

    def delete_services(self, registry: ResourceRegistry) -> None:
        ecs = self.clients.ecs
        cluster = self.config.cluster_name
        failures = _Failures("ECS service")

        for name in self.config.services:
            try:
                response = ecs.describe_services(cluster=cluster, services=[name])
            except ClientError as e:
                if is_not_found(e):
                    logger.info(f"Cluster {cluster} not found - skipping services")
                    return
                raise
            active = [s for s in response.get("services", []) if s.get("status") == "ACTIVE"]
            if not active:
                logger.info(f"Service not found: {name} - skipping")
                continue

            logger.info(f"Updating service to 0 desired count: {name}")
            failures.attempt(f"scale down service {name}",
                             lambda: ecs.update_service(cluster=cluster, service=name, desiredCount=0))
            try:
                waiters.wait_services_stable(ecs, cluster, [name])
            except ActionFailure as e:
                logger.warning(f"Service didn't scale down properly: {name} ({e})")

            logger.info(f"Deleting service: {name}")
            if failures.attempt(f"delete service {name}",
                                lambda: ecs.delete_service(cluster=cluster, service=name, force=True)):
                registry.discard(f"service:{name}")

        failures.raise_if_any()

    def deregister_task_definitions(self, registry: ResourceRegistry) -> None:
        ecs = self.clients.ecs
        failures = _Failures("task definition")
        paginator = ecs.get_paginator("list_task_definitions")

        for family in self.config.task_families:
            revisions = []
            for page in paginator.paginate(familyPrefix=family, status="ACTIVE"):
                revisions.extend(page.get("taskDefinitionArns", []))
            if not revisions:
                logger.info(f"No task definitions found for family: {family} - skipping")
                continue
            for revision in revisions:
                logger.info(f"Deregistering task definition: {revision}")
                failures.attempt(f"deregister {revision}",
                                 lambda: ecs.deregister_task_definition(taskDefinition=revision))

        for handle in registry.by_kind(ResourceKind.TASK_DEFINITION):
            registry.discard(handle.key)
        failures.raise_if_any()

    def delete_cluster(self, registry: ResourceRegistry) -> None:
        ecs = self.clients.ecs
        cluster = self.config.cluster_name
        clusters = ecs.describe_clusters(clusters=[cluster]).get("clusters", [])
        if not clusters or clusters[0].get("status") != "ACTIVE":
            logger.info(f"ECS cluster not found: {cluster} - skipping")
            registry.discard("cluster")
            return
        logger.info(f"Deleting ECS cluster: {cluster}")
        ecs.delete_cluster(cluster=cluster)
        registry.discard("cluster")

    def delete_namespace(self, registry: ResourceRegistry) -> None:
        sd = self.clients.servicediscovery
        namespace_id = waiters.find_namespace_id(sd, self.config.namespace_name)
        if not namespace_id:
            logger.info("Service Discovery namespace not found - skipping")
            registry.discard("namespace")
            return

        failures = _Failures("service discovery")
        paginator = sd.get_paginator("list_services")
        pages = paginator.paginate(Filters=[{"Name": "NAMESPACE_ID", "Values": [namespace_id], "Condition": "EQ"}])
        for page in pages:
            for service in page.get("Services", []):
                logger.info(f"Deleting service discovery service: {service['Id']}")
                failures.attempt(f"delete service discovery service {service['Id']}",
                                 lambda: sd.delete_service(Id=service["Id"]))

        logger.info(f"Deleting service discovery namespace: {namespace_id}")
        if failures.attempt(f"delete namespace {namespace_id}", lambda: sd.delete_namespace(Id=namespace_id)):
            registry.discard("namespace")
        failures.raise_if_any()

    # Storage

    def _find_file_system_id(self) -> Optional[str]:
        return waiters.find_file_system_id(self.clients.efs, f"{self.project}-{ResourceKind.FILE_SYSTEM.value}")

    def _mount_targets_gone(self, file_system_id: str) -> Check:
        targets = self.clients.efs.describe_mount_targets(FileSystemId=file_system_id).get("MountTargets", [])
        if not targets:
            return READY
        return not_ready(f"{len(targets)} mount target(s) remaining")

    def delete_file_system(self, registry: ResourceRegistry) -> None:
        efs = self.clients.efs
        file_system_id = self._find_file_system_id()
        if not file_system_id:
            logger.info("EFS file system not found - skipping")
            return

        failures = _Failures("EFS")
        access_points = efs.describe_access_points(FileSystemId=file_system_id).get("AccessPoints", [])
        for ap in access_points:
            logger.info(f"Deleting EFS access point: {ap['AccessPointId']}")
            failures.attempt(f"delete access point {ap['AccessPointId']}",
                             lambda: efs.delete_access_point(AccessPointId=ap["AccessPointId"]))

        mount_targets = efs.describe_mount_targets(FileSystemId=file_system_id).get("MountTargets", [])
        for mt in mount_targets:
            logger.info(f"Deleting EFS mount target: {mt['MountTargetId']}")
            failures.attempt(f"delete mount target {mt['MountTargetId']}",
                             lambda: efs.delete_mount_target(MountTargetId=mt["MountTargetId"]))

        if mount_targets:
            result = poll(PollSpec(
                predicate=lambda: self._mount_targets_gone(file_system_id),
                interval=MOUNT_TARGET_INTERVAL,
                max_attempts=MOUNT_TARGET_ATTEMPTS,
                description=f"mount targets of {file_system_id} to be deleted",
            ))
            result.raise_for_outcome(f"mount targets of {file_system_id}")

        logger.info(f"Deleting EFS file system: {file_system_id}")
        if failures.attempt(f"delete EFS {file_system_id}",
                            lambda: efs.delete_file_system(FileSystemId=file_system_id)):
            for key in ("file_system", "access_point", "mount_target_1", "mount_target_2"):
                registry.discard(key)
        failures.raise_if_any()

    def delete_security_group(self, registry: ResourceRegistry) -> None:
        ec2 = self.clients.ec2
        groups = ec2.describe_security_groups(
            Filters=[{"Name": "group-name", "Values": [self.config.security_group_name]}]
        ).get("SecurityGroups", [])
        if not groups:
            logger.info("Security group not found - skipping")
            return
        for group in groups:
            logger.info(f"Deleting security group: {group['GroupId']}")
            ec2.delete_security_group(GroupId=group["GroupId"])
        registry.discard("security_group")

    def delete_log_groups(self, registry: ResourceRegistry) -> None:
        logs = self.clients.logs
        failures = _Failures("log group")
        for name in self.config.log_group_names:
            existing = logs.describe_log_groups(logGroupNamePrefix=name).get("logGroups", [])
            if not any(g.get("logGroupName") == name for g in existing):
                logger.info(f"CloudWatch log group not found: {name} - skipping")
                continue
            logger.info(f"Deleting CloudWatch log group: {name}")
            if failures.attempt(f"delete log group {name}", lambda: logs.delete_log_group(logGroupName=name)):
                registry.discard(f"log_group:{name}")
        failures.raise_if_any()

    def delete_secret(self, registry: ResourceRegistry) -> None:
        sm = self.clients.secretsmanager
        name = self.config.secret_name
        try:
            sm.describe_secret(SecretId=name)
        except ClientError as e:
            if is_not_found(e):
                logger.info(f"Secrets Manager secret not found: {name} - skipping")
                registry.discard("secret")
                return
            raise
        logger.info(f"Deleting Secrets Manager secret: {name}")
        sm.delete_secret(SecretId=name, ForceDeleteWithoutRecovery=True)
        registry.discard("secret")

    def delete_bucket(self, registry: ResourceRegistry) -> None:
        s3 = self.clients.s3
        bucket = self.config.bucket_name
        try:
            s3.head_bucket(Bucket=bucket)
        except ClientError as e:
            if is_not_found(e):
                logger.info(f"S3 bucket not found: {bucket} - skipping")
                registry.discard("bucket")
                return
            raise

        logger.info(f"Emptying S3 bucket: {bucket}")
        paginator = s3.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=bucket):
            if "Contents" in page:
                objects = [{"Key": obj["Key"]} for obj in page["Contents"]]
                s3.delete_objects(Bucket=bucket, Delete={"Objects": objects})

        logger.info(f"Deleting S3 bucket: {bucket}")
        s3.delete_bucket(Bucket=bucket)
        registry.discard("bucket")

    # IAM

    def delete_policies(self, registry: ResourceRegistry) -> None:
        iam = self.clients.iam
        failures = _Failures("IAM policy")
        names = set(MANAGED_POLICIES)

        found = {}
        for page in iam.get_paginator("list_policies").paginate(Scope="Local"):
            for policy in page.get("Policies", []):
                if policy["PolicyName"] in names:
                    found[policy["PolicyName"]] = policy["Arn"]

        for name in sorted(names - set(found)):
            logger.info(f"IAM policy not found: {name} - skipping")

        for name, arn in found.items():
            roles = iam.list_entities_for_policy(PolicyArn=arn, EntityFilter="Role").get("PolicyRoles", [])
            for role in roles:
                logger.info(f"Detaching policy {name} from role {role['RoleName']}")
                failures.attempt(f"detach {name} from {role['RoleName']}",
                                 lambda: iam.detach_role_policy(RoleName=role["RoleName"], PolicyArn=arn))
            for version in iam.list_policy_versions(PolicyArn=arn).get("Versions", []):
                if not version.get("IsDefaultVersion"):
                    failures.attempt(f"delete version {version['VersionId']} of {name}",
                                     lambda: iam.delete_policy_version(PolicyArn=arn, VersionId=version["VersionId"]))
            logger.info(f"Deleting IAM policy: {name}")
            if failures.attempt(f"delete policy {name}", lambda: iam.delete_policy(PolicyArn=arn)):
                registry.discard(f"policy:{name}")

        failures.raise_if_any()

    def delete_role(self, registry: ResourceRegistry) -> None:
        iam = self.clients.iam
        role_name = self.config.task_role_name
        try:
            iam.get_role(RoleName=role_name)
        except ClientError as e:
            if is_not_found(e):
                logger.info(f"IAM role not found: {role_name} - skipping")
                registry.discard("task_role")
                return
            raise

        attached = iam.list_attached_role_policies(RoleName=role_name).get("AttachedPolicies", [])
        for policy in attached:
            logger.info(f"Detaching policy {policy['PolicyArn']} from role {role_name}")
            iam.detach_role_policy(RoleName=role_name, PolicyArn=policy["PolicyArn"])

        logger.info(f"Deleting IAM role: {role_name}")
        iam.delete_role(RoleName=role_name)
        registry.discard("task_role")

    def delete_repositories(self, registry: ResourceRegistry) -> None:
        ecr = self.clients.ecr
        failures = _Failures("ECR repository")
        for repo in self.config.repositories:
            logger.info(f"Deleting ECR repository: {repo}")
            if failures.attempt(f"delete ECR repository {repo}",
                                lambda: ecr.delete_repository(repositoryName=repo, force=True)):
                registry.discard(f"repository:{repo}")
        failures.raise_if_any()

    # Network

    def _find_vpc_id(self) -> Optional[str]:
        vpcs = self.clients.ec2.describe_vpcs(
            Filters=[{"Name": "tag:Name", "Values": [f"{self.project}-vpc"]}]
        ).get("Vpcs", [])
        return vpcs[0]["VpcId"] if vpcs else None

    def _nat_gateways_deleted(self, nat_ids: List[str]) -> Check:
        gateways = self.clients.ec2.describe_nat_gateways(NatGatewayIds=nat_ids).get("NatGateways", [])
        pending = [g["NatGatewayId"] for g in gateways if g.get("State") != "deleted"]
        if not pending:
            return READY
        return not_ready(f"waiting on {', '.join(pending)}")

    def delete_network(self, registry: ResourceRegistry) -> None:
        ec2 = self.clients.ec2
        vpc_id = self._find_vpc_id()
        if not vpc_id:
            logger.info(f"VPC {self.project}-vpc not found - skipping network cleanup")
            return

        failures = _Failures("network")
        vpc_filter = [{"Name": "vpc-id", "Values": [vpc_id]}]

        nat_ids = [
            g["NatGatewayId"]
            for g in ec2.describe_nat_gateways(Filters=vpc_filter).get("NatGateways", [])
            if g.get("State") not in ("deleted", "deleting")
        ]
        for nat_id in nat_ids:
            logger.info(f"Deleting NAT gateway: {nat_id}")
            failures.attempt(f"delete NAT gateway {nat_id}", lambda: ec2.delete_nat_gateway(NatGatewayId=nat_id))
        if nat_ids:
            poll(PollSpec(
                predicate=lambda: self._nat_gateways_deleted(nat_ids),
                interval=NAT_DELETE_INTERVAL,
                total_timeout=NAT_DELETE_TIMEOUT,
                description="NAT gateways to be deleted",
            )).raise_for_outcome("NAT gateway deletion")

        addresses = ec2.describe_addresses(
            Filters=[{"Name": "tag:Name", "Values": [f"{self.project}-{ResourceKind.ELASTIC_IP.value}"]}]
        ).get("Addresses", [])
        for address in addresses:
            logger.info(f"Releasing elastic IP: {address['AllocationId']}")
            failures.attempt(f"release {address['AllocationId']}",
                             lambda: ec2.release_address(AllocationId=address["AllocationId"]))

        for subnet in ec2.describe_subnets(Filters=vpc_filter).get("Subnets", []):
            logger.info(f"Deleting subnet: {subnet['SubnetId']}")
            failures.attempt(f"delete subnet {subnet['SubnetId']}",
                             lambda: ec2.delete_subnet(SubnetId=subnet["SubnetId"]))

        for table in ec2.describe_route_tables(Filters=vpc_filter).get("RouteTables", []):
            associations = table.get("Associations", [])
            if any(a.get("Main") for a in associations):
                continue  # the main route table goes with the VPC
            for association in associations:
                failures.attempt(f"disassociate {association['RouteTableAssociationId']}",
                                 lambda: ec2.disassociate_route_table(
                                     AssociationId=association["RouteTableAssociationId"]))
            logger.info(f"Deleting route table: {table['RouteTableId']}")
            failures.attempt(f"delete route table {table['RouteTableId']}",
                             lambda: ec2.delete_route_table(RouteTableId=table["RouteTableId"]))

        gateways = ec2.describe_internet_gateways(
            Filters=[{"Name": "attachment.vpc-id", "Values": [vpc_id]}]
        ).get("InternetGateways", [])
        for igw in gateways:
            logger.info(f"Deleting internet gateway: {igw['InternetGatewayId']}")
            failures.attempt(f"detach {igw['InternetGatewayId']}",
                             lambda: ec2.detach_internet_gateway(
                                 InternetGatewayId=igw["InternetGatewayId"], VpcId=vpc_id))
            failures.attempt(f"delete {igw['InternetGatewayId']}",
                             lambda: ec2.delete_internet_gateway(InternetGatewayId=igw["InternetGatewayId"]))

        logger.info(f"Deleting VPC: {vpc_id}")
        if failures.attempt(f"delete VPC {vpc_id}", lambda: ec2.delete_vpc(VpcId=vpc_id)):
            for kind in (ResourceKind.VPC, ResourceKind.SUBNET, ResourceKind.ROUTE_TABLE,
                         ResourceKind.INTERNET_GATEWAY, ResourceKind.NAT_GATEWAY, ResourceKind.ELASTIC_IP):
                for handle in registry.by_kind(kind):
                    registry.discard(handle.key)
        failures.raise_if_any()

    def steps(self) -> List[Step]:
        steps = [
            cleanup_step("Delete ECS services", self.delete_services),
            cleanup_step("Deregister task definitions", self.deregister_task_definitions),
            cleanup_step("Delete ECS cluster", self.delete_cluster),
            cleanup_step("Delete service discovery namespace", self.delete_namespace),
            cleanup_step("Delete EFS resources", self.delete_file_system),
            cleanup_step("Delete security group", self.delete_security_group),
            cleanup_step("Delete CloudWatch log groups", self.delete_log_groups),
            cleanup_step("Delete Secrets Manager secret", self.delete_secret),
            cleanup_step("Delete S3 bucket", self.delete_bucket),
            cleanup_step("Delete IAM policies", self.delete_policies),
            cleanup_step("Delete IAM role", self.delete_role),
            cleanup_step("Delete ECR repositories", self.delete_repositories),
        ]
        if self.include_network:
            steps.append(cleanup_step("Delete VPC network", self.delete_network))
        return steps


def build_cleanup_steps(config: AwsWorkloadConfig, clients: AwsClients,
                        include_network: Optional[bool] = None) -> List[Step]:
    return WorkloadCleaner(config, clients, include_network).steps()
