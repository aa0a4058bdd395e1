"""
Provisioning flow for the ECS/Fargate workload stack.

The flow creates the network (or registers an existing one), IAM role and
policies, log groups, secret, log bucket, ECS cluster, security group, EFS
storage, task definitions, the service connect namespace and the services.
Steps run strictly in order; later steps read the IDs earlier steps
registered.
"""

import json
import logging
from typing import Dict, List, Optional

from botocore.exceptions import ClientError

from ..config import AwsWorkloadConfig
from ..errors import ActionFailure
from ..sequencer import Step
from ..state import ResourceHandle, ResourceKind, ResourceRegistry
from ..tags import (
    base_tags,
    resolve_tags,
    to_key_value_list,
    to_lower_key_value_list,
    to_s3_tagging,
    to_tag_specifications,
)
from . import waiters
from .clients import AwsClients, is_already_exists
from .taskdefs import (
    build_task_definition,
    load_task_definition_template,
    WorkloadService,
    service_connect_configuration,
    workload_services,
)

logger = logging.getLogger(__name__)

ECS_TASK_EXECUTION_POLICY = "arn:aws:iam::aws:policy/service-role/AmazonECSTaskExecutionRolePolicy"

# (ingress port, also open egress) rules between members of the ECS security group
SECURITY_GROUP_RULES = [(6032, False), (6033, False), (8079, False), (2049, True)]
DAM_SECURITY_GROUP_RULES = [(5432, True), (8080, False)]

SECRETS_POLICY = "cdx-ECSSecretsAccessPolicy"
RDS_ASSUME_ROLE_POLICY = "cdx-ECSRDSAssumeRolePolicy"
EFS_POLICY = "cdx-EFSAccessPolicy"
LOGS_POLICY = "cdx-CloudWatchLogsPolicy"
S3_POLICY = "cdx-S3AccessPolicy"
MANAGED_POLICIES = [SECRETS_POLICY, RDS_ASSUME_ROLE_POLICY, EFS_POLICY, LOGS_POLICY, S3_POLICY]


def _assume_role_document(service: str) -> str:
    return json.dumps({
        "Version": "2012-10-17",
        "Statement": [{
            "Effect": "Allow",
            "Principal": {"Service": service},
            "Action": "sts:AssumeRole",
        }],
    })


def _policy_document(actions: List[str], resources) -> str:
    return json.dumps({
        "Version": "2012-10-17",
        "Statement": [{"Effect": "Allow", "Action": actions, "Resource": resources}],
    })


class WorkloadProvisioner:
    """Builds the step list for one workload installation."""

    def __init__(self, config: AwsWorkloadConfig, clients: AwsClients):
        self.config = config
        self.clients = clients
        self.region = config.region
        self.user_tags = config.user_tags()
        self._account_id: Optional[str] = None

    @property
    def account_id(self) -> str:
        if self._account_id is None:
            self._account_id = self.clients.account_id()
        return self._account_id

    def _tags(self, kind: ResourceKind, name: Optional[str] = None) -> Dict[str, str]:
        return resolve_tags(kind, name, self.user_tags, self.config.project_name)

    def _spec(self, resource_type: str, kind: ResourceKind, name: Optional[str] = None) -> List[Dict]:
        return to_tag_specifications(resource_type, self._tags(kind, name))

    def _handle(self, kind: ResourceKind, resource_id: str, name: str, arn: Optional[str] = None) -> ResourceHandle:
        if not resource_id:
            raise ActionFailure(f"No ID returned for {name}")
        return ResourceHandle(kind=kind, id=resource_id, region=self.region, name=name, arn=arn)

    def services(self) -> List[WorkloadService]:
        return workload_services(self.config)

    # Network

    def create_service_linked_role(self, registry: ResourceRegistry) -> None:
        try:
            self.clients.iam.create_service_linked_role(AWSServiceName="ecs.amazonaws.com")
        except ClientError as e:
            # An existing role is reported as InvalidInput.
            if "has been taken" not in str(e) and not is_already_exists(e):
                raise
            logger.info("ECS service linked role already exists")

    def create_vpc(self, registry: ResourceRegistry) -> ResourceHandle:
        ec2 = self.clients.ec2
        logger.info("Creating VPC...")
        response = ec2.create_vpc(
            CidrBlock=self.config.vpc_cidr,
            TagSpecifications=self._spec("vpc", ResourceKind.VPC),
        )
        vpc_id = response["Vpc"]["VpcId"]
        ec2.modify_vpc_attribute(VpcId=vpc_id, EnableDnsHostnames={"Value": True})
        ec2.modify_vpc_attribute(VpcId=vpc_id, EnableDnsSupport={"Value": True})
        return self._handle(ResourceKind.VPC, vpc_id, "vpc")

    def create_internet_gateway(self, registry: ResourceRegistry) -> ResourceHandle:
        ec2 = self.clients.ec2
        logger.info("Creating Internet Gateway...")
        response = ec2.create_internet_gateway(
            TagSpecifications=self._spec("internet-gateway", ResourceKind.INTERNET_GATEWAY),
        )
        igw_id = response["InternetGateway"]["InternetGatewayId"]
        ec2.attach_internet_gateway(InternetGatewayId=igw_id, VpcId=registry.id_of("vpc"))
        return self._handle(ResourceKind.INTERNET_GATEWAY, igw_id, "internet_gateway")

    def create_subnets(self, registry: ResourceRegistry) -> List[ResourceHandle]:
        """
        Create the private and public subnets.

        Each subnet is added to the registry as soon as it exists, so a
        failure part way through still records the subnets already created
        for cleanup. The same handles are returned for the step outcome.
        """
        ec2 = self.clients.ec2
        vpc_id = registry.id_of("vpc")
        zones = self.config.availability_zones
        handles = []

        layout = [
            ("private", self.config.private_subnet_cidrs),
            ("public", self.config.public_subnet_cidrs),
        ]
        for visibility, cidrs in layout:
            for index, cidr in enumerate(cidrs):
                key = f"{visibility}_subnet_{index + 1}"
                logger.info(f"Creating subnet {key} ({cidr})...")
                kwargs = {
                    "VpcId": vpc_id,
                    "CidrBlock": cidr,
                    "TagSpecifications": self._spec(
                        "subnet", ResourceKind.SUBNET,
                        f"{self.config.project_name}-{visibility}-subnet-{index + 1}",
                    ),
                }
                if zones:
                    kwargs["AvailabilityZone"] = zones[index % len(zones)]
                response = ec2.create_subnet(**kwargs)
                handles.append(registry.add(self._handle(ResourceKind.SUBNET, response["Subnet"]["SubnetId"], key)))

        return handles

    def allocate_elastic_ip(self, registry: ResourceRegistry) -> ResourceHandle:
        logger.info("Allocating Elastic IP...")
        response = self.clients.ec2.allocate_address(
            Domain="vpc",
            TagSpecifications=self._spec("elastic-ip", ResourceKind.ELASTIC_IP),
        )
        return self._handle(ResourceKind.ELASTIC_IP, response["AllocationId"], "elastic_ip")

    def create_nat_gateway(self, registry: ResourceRegistry) -> ResourceHandle:
        logger.info("Creating NAT Gateway...")
        response = self.clients.ec2.create_nat_gateway(
            SubnetId=registry.id_of("public_subnet_1"),
            AllocationId=registry.id_of("elastic_ip"),
            TagSpecifications=self._spec("natgateway", ResourceKind.NAT_GATEWAY),
        )
        return self._handle(ResourceKind.NAT_GATEWAY, response["NatGateway"]["NatGatewayId"], "nat_gateway")

    def create_route_tables(self, registry: ResourceRegistry) -> List[ResourceHandle]:
        ec2 = self.clients.ec2
        vpc_id = registry.id_of("vpc")
        logger.info("Creating route tables...")

        public = ec2.create_route_table(
            VpcId=vpc_id,
            TagSpecifications=self._spec(
                "route-table", ResourceKind.ROUTE_TABLE, f"{self.config.project_name}-public-rt"),
        )["RouteTable"]["RouteTableId"]
        private = ec2.create_route_table(
            VpcId=vpc_id,
            TagSpecifications=self._spec(
                "route-table", ResourceKind.ROUTE_TABLE, f"{self.config.project_name}-private-rt"),
        )["RouteTable"]["RouteTableId"]

        ec2.create_route(RouteTableId=public, DestinationCidrBlock="0.0.0.0/0",
                         GatewayId=registry.id_of("internet_gateway"))
        ec2.create_route(RouteTableId=private, DestinationCidrBlock="0.0.0.0/0",
                         NatGatewayId=registry.id_of("nat_gateway"))

        for handle in registry.by_kind(ResourceKind.SUBNET):
            table = public if handle.key.startswith("public_") else private
            ec2.associate_route_table(RouteTableId=table, SubnetId=handle.id)

        return [
            self._handle(ResourceKind.ROUTE_TABLE, public, "public_route_table"),
            self._handle(ResourceKind.ROUTE_TABLE, private, "private_route_table"),
        ]

    def register_existing_vpc(self, registry: ResourceRegistry) -> List[ResourceHandle]:
        existing = self.config.existing_vpc
        logger.info(f"Using existing VPC {existing.vpc_id}")
        self.clients.ec2.describe_vpcs(VpcIds=[existing.vpc_id])

        handles = [self._handle(ResourceKind.VPC, existing.vpc_id, "vpc")]
        for i, subnet_id in enumerate(existing.private_subnet_ids):
            handles.append(self._handle(ResourceKind.SUBNET, subnet_id, f"private_subnet_{i + 1}"))
        for i, subnet_id in enumerate(existing.public_subnet_ids):
            handles.append(self._handle(ResourceKind.SUBNET, subnet_id, f"public_subnet_{i + 1}"))
        if existing.nat_gateway_id:
            handles.append(self._handle(ResourceKind.NAT_GATEWAY, existing.nat_gateway_id, "nat_gateway"))
        return handles

    # IAM

    def _create_policy(self, name: str, document: str) -> str:
        iam = self.clients.iam
        try:
            response = iam.create_policy(
                PolicyName=name,
                PolicyDocument=document,
                Tags=to_key_value_list(base_tags(self.user_tags)),
            )
            return response["Policy"]["Arn"]
        except ClientError as e:
            if not is_already_exists(e):
                raise
            logger.info(f"IAM policy {name} already exists")
            return f"arn:aws:iam::{self.account_id}:policy/{name}"

    def create_task_role(self, registry: ResourceRegistry) -> List[ResourceHandle]:
        iam = self.clients.iam
        role_name = self.config.task_role_name
        region, account = self.region, self.account_id
        logger.info(f"Creating IAM role {role_name}...")

        try:
            role_arn = iam.create_role(
                RoleName=role_name,
                AssumeRolePolicyDocument=_assume_role_document("ecs-tasks.amazonaws.com"),
                Tags=to_key_value_list(self._tags(ResourceKind.ROLE, role_name)),
            )["Role"]["Arn"]
        except ClientError as e:
            if not is_already_exists(e):
                raise
            logger.info(f"IAM role {role_name} already exists")
            role_arn = iam.get_role(RoleName=role_name)["Role"]["Arn"]

        log_group_arns = [
            f"arn:aws:logs:{region}:{account}:log-group:{name}:*" for name in self.config.log_group_names
        ]
        policies = {
            SECRETS_POLICY: _policy_document(
                ["secretsmanager:GetSecretValue"],
                f"arn:aws:secretsmanager:{region}:{account}:secret:*"),
            EFS_POLICY: _policy_document(
                ["elasticfilesystem:ClientMount", "elasticfilesystem:ClientWrite",
                 "elasticfilesystem:DescribeMountTargets"],
                f"arn:aws:elasticfilesystem:{region}:{account}:file-system/*"),
            S3_POLICY: _policy_document(
                ["s3:*", "s3-object-lambda:*"],
                [f"arn:aws:s3:::{self.config.bucket_name}", f"arn:aws:s3:::{self.config.bucket_name}/*"]),
            LOGS_POLICY: _policy_document(
                ["logs:*", "cloudwatch:GenerateQuery"], log_group_arns),
        }
        if self.config.rds_assume_role_arns:
            policies[RDS_ASSUME_ROLE_POLICY] = _policy_document(
                ["sts:AssumeRole"], list(self.config.rds_assume_role_arns))

        handles = [self._handle(ResourceKind.ROLE, role_name, "task_role", arn=role_arn)]
        iam.attach_role_policy(RoleName=role_name, PolicyArn=ECS_TASK_EXECUTION_POLICY)
        for name, document in policies.items():
            policy_arn = self._create_policy(name, document)
            iam.attach_role_policy(RoleName=role_name, PolicyArn=policy_arn)
            handles.append(self._handle(ResourceKind.POLICY, name, f"policy:{name}", arn=policy_arn))
        return handles

    # Logging, secrets, storage

    def create_log_groups(self, registry: ResourceRegistry) -> List[ResourceHandle]:
        logs = self.clients.logs
        handles = []
        for name in self.config.log_group_names:
            logger.info(f"Creating log group {name}...")
            try:
                logs.create_log_group(logGroupName=name, tags=base_tags(self.user_tags))
            except ClientError as e:
                if not is_already_exists(e):
                    raise
                logger.info(f"Log group {name} already exists")
            handles.append(self._handle(ResourceKind.LOG_GROUP, name, f"log_group:{name}"))
        return handles

    def create_secret(self, registry: ResourceRegistry) -> ResourceHandle:
        sm = self.clients.secretsmanager
        name = self.config.secret_name
        values = dict(self.config.secret_values)
        values.setdefault("CDX_LOGGING_S3_BUCKET", self.config.bucket_name)
        logger.info(f"Creating secret {name}...")

        try:
            arn = sm.create_secret(
                Name=name,
                SecretString=json.dumps(values),
                Tags=to_key_value_list(base_tags(self.user_tags)),
            )["ARN"]
        except ClientError as e:
            if not is_already_exists(e):
                raise
            logger.info(f"Secret {name} already exists, adding a new version")
            arn = sm.put_secret_value(SecretId=name, SecretString=json.dumps(values))["ARN"]
        return self._handle(ResourceKind.SECRET, name, "secret", arn=arn)

    def create_bucket(self, registry: ResourceRegistry) -> ResourceHandle:
        s3 = self.clients.s3
        bucket = self.config.bucket_name
        logger.info(f"Creating S3 bucket {bucket}...")

        kwargs = {"Bucket": bucket}
        if self.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        try:
            s3.create_bucket(**kwargs)
        except ClientError as e:
            if not is_already_exists(e):
                raise
            logger.info(f"Bucket {bucket} already exists")

        s3.put_bucket_tagging(Bucket=bucket, Tagging=to_s3_tagging(base_tags(self.user_tags)))
        return self._handle(ResourceKind.BUCKET, bucket, "bucket", arn=f"arn:aws:s3:::{bucket}")

    def create_cluster(self, registry: ResourceRegistry) -> ResourceHandle:
        name = self.config.cluster_name
        logger.info(f"Creating ECS cluster {name}...")
        response = self.clients.ecs.create_cluster(
            clusterName=name,
            capacityProviders=["FARGATE", "FARGATE_SPOT"],
            defaultCapacityProviderStrategy=[{"capacityProvider": "FARGATE", "weight": 1}],
            tags=to_lower_key_value_list(self._tags(ResourceKind.CLUSTER, name)),
        )
        return self._handle(ResourceKind.CLUSTER, name, "cluster", arn=response["cluster"]["clusterArn"])

    def create_security_group(self, registry: ResourceRegistry) -> ResourceHandle:
        ec2 = self.clients.ec2
        logger.info("Creating Security Group...")
        group_id = ec2.create_security_group(
            GroupName=self.config.security_group_name,
            Description="Security group for ECS cluster",
            VpcId=registry.id_of("vpc"),
            TagSpecifications=self._spec("security-group", ResourceKind.SECURITY_GROUP),
        )["GroupId"]

        rules = list(SECURITY_GROUP_RULES)
        if self.config.enable_dam:
            logger.info("Adding DAM security group rules...")
            rules += DAM_SECURITY_GROUP_RULES

        for port, with_egress in rules:
            permission = [{
                "IpProtocol": "tcp",
                "FromPort": port,
                "ToPort": port,
                "UserIdGroupPairs": [{"GroupId": group_id}],
            }]
            ec2.authorize_security_group_ingress(GroupId=group_id, IpPermissions=permission)
            if with_egress:
                ec2.authorize_security_group_egress(GroupId=group_id, IpPermissions=permission)

        return self._handle(ResourceKind.SECURITY_GROUP, group_id, "security_group")

    def create_file_system(self, registry: ResourceRegistry) -> ResourceHandle:
        logger.info("Creating EFS file system...")
        response = self.clients.efs.create_file_system(
            PerformanceMode="generalPurpose",
            ThroughputMode="bursting",
            Encrypted=True,
            Tags=to_key_value_list(self._tags(ResourceKind.FILE_SYSTEM)),
        )
        return self._handle(ResourceKind.FILE_SYSTEM, response["FileSystemId"], "file_system")

    def create_mount_targets(self, registry: ResourceRegistry) -> List[ResourceHandle]:
        efs = self.clients.efs
        file_system_id = registry.id_of("file_system")
        group_id = registry.id_of("security_group")
        handles = []

        logger.info("Creating EFS mount targets...")
        subnets = [h for h in registry.by_kind(ResourceKind.SUBNET) if h.key.startswith("private_")]
        for index, subnet in enumerate(subnets, start=1):
            response = efs.create_mount_target(
                FileSystemId=file_system_id,
                SubnetId=subnet.id,
                SecurityGroups=[group_id],
            )
            handles.append(self._handle(ResourceKind.MOUNT_TARGET, response["MountTargetId"], f"mount_target_{index}"))
        return handles

    def create_access_point(self, registry: ResourceRegistry) -> ResourceHandle:
        logger.info("Creating EFS access point...")
        response = self.clients.efs.create_access_point(
            FileSystemId=registry.id_of("file_system"),
            PosixUser={"Uid": 1000, "Gid": 1000},
            RootDirectory={
                "Path": "/proxysql-data",
                "CreationInfo": {"OwnerUid": 1000, "OwnerGid": 1000, "Permissions": "777"},
            },
            Tags=to_key_value_list(self._tags(ResourceKind.ACCESS_POINT)),
        )
        return self._handle(ResourceKind.ACCESS_POINT, response["AccessPointId"], "access_point")

    def tag_repositories(self, registry: ResourceRegistry) -> List[ResourceHandle]:
        ecr = self.clients.ecr
        handles = []
        logger.info("Tagging specified ECR repositories...")
        for repo in self.config.repositories:
            repositories = ecr.describe_repositories(repositoryNames=[repo]).get("repositories", [])
            if not repositories:
                raise ActionFailure(f"ECR repository {repo} not found")
            arn = repositories[0]["repositoryArn"]
            ecr.tag_resource(
                resourceArn=arn,
                tags=to_key_value_list(self._tags(ResourceKind.REPOSITORY, repo)),
            )
            handles.append(self._handle(ResourceKind.REPOSITORY, repo, f"repository:{repo}", arn=arn))
        return handles

    # Workloads

    def register_task_definitions(self, registry: ResourceRegistry) -> List[ResourceHandle]:
        ecs = self.clients.ecs
        secret_arn = registry.require("secret").arn
        task_role_arn = registry.require("task_role").arn
        file_system_id = registry.id_of("file_system")
        access_point_id = registry.id_of("access_point")
        handles = []

        for service in self.services():
            definition = None
            if self.config.task_definitions_dir:
                definition = load_task_definition_template(self.config.task_definitions_dir, service, {
                    "ACCOUNT_ID": self.account_id,
                    "AWS_REGION": self.region,
                    "PROJECT_NAME": self.config.project_name,
                    "EFS_ID": file_system_id,
                    "ACCESS_POINT_ID": access_point_id,
                    "SECRET_ARN": secret_arn,
                    "TASK_ROLE_ARN": task_role_arn,
                    "IMAGE": f"{self.account_id}.dkr.ecr.{self.region}.amazonaws.com/"
                             f"{service.repository}:{self.config.image_tag}",
                })
            if definition is None:
                definition = build_task_definition(
                    service, self.config, self.account_id, secret_arn,
                    task_role_arn, file_system_id, access_point_id,
                )

            logger.info(f"Registering task definition {definition['family']}...")
            response = ecs.register_task_definition(
                **definition,
                tags=to_lower_key_value_list(base_tags(self.user_tags)),
            )
            arn = response["taskDefinition"]["taskDefinitionArn"]
            handles.append(self._handle(
                ResourceKind.TASK_DEFINITION, definition["family"],
                f"task_definition:{service.name}", arn=arn,
            ))
        return handles

    def create_namespace(self, registry: ResourceRegistry) -> None:
        sd = self.clients.servicediscovery
        name = self.config.namespace_name
        logger.info("Creating Service Connect namespace...")
        if waiters.find_namespace_id(sd, name):
            logger.info(f"Namespace {name} already exists")
            return
        sd.create_private_dns_namespace(
            Name=name,
            Vpc=registry.id_of("vpc"),
            Tags=to_key_value_list(self._tags(ResourceKind.NAMESPACE, name)),
        )

    def record_namespace(self, registry: ResourceRegistry) -> ResourceHandle:
        namespace_id = waiters.find_namespace_id(self.clients.servicediscovery, self.config.namespace_name)
        return self._handle(ResourceKind.NAMESPACE, namespace_id, "namespace")

    def create_service(self, service: WorkloadService, registry: ResourceRegistry) -> ResourceHandle:
        subnets = [h.id for h in registry.by_kind(ResourceKind.SUBNET) if h.key.startswith("private_")]
        response = self.clients.ecs.create_service(
            cluster=self.config.cluster_name,
            serviceName=service.name,
            taskDefinition=registry.require(f"task_definition:{service.name}").arn,
            desiredCount=service.desired_count,
            launchType="FARGATE",
            platformVersion="LATEST",
            networkConfiguration={"awsvpcConfiguration": {
                "subnets": subnets,
                "securityGroups": [registry.id_of("security_group")],
                "assignPublicIp": "DISABLED",
            }},
            enableExecuteCommand=True,
            serviceConnectConfiguration=service_connect_configuration(
                service, self.config.namespace_name),
            tags=to_lower_key_value_list(base_tags(self.user_tags)),
        )
        return self._handle(
            ResourceKind.SERVICE, service.name, f"service:{service.name}",
            arn=response["service"]["serviceArn"],
        )

    def create_services(self, registry: ResourceRegistry) -> List[ResourceHandle]:
        logger.info("Creating ECS Services...")
        return [self.create_service(service, registry) for service in self.services()]

    def wait_for_services(self, registry: ResourceRegistry) -> ResourceHandle:
        services = [s.name for s in self.services()]
        waiters.wait_services_stable(self.clients.ecs, self.config.cluster_name, services)
        return self._handle(ResourceKind.SERVICE_SET, ",".join(services), "service_set")

    def steps(self) -> List[Step]:
        ec2 = self.clients.ec2
        steps = [Step("Create ECS service linked role", self.create_service_linked_role, continue_on_error=True)]

        if self.config.existing_vpc is None:
            steps += [
                Step("Create VPC", self.create_vpc),
                Step("Create internet gateway", self.create_internet_gateway),
                Step("Create subnets", self.create_subnets),
                Step("Allocate elastic IP", self.allocate_elastic_ip),
                Step("Create NAT gateway", self.create_nat_gateway,
                     poll=lambda registry: waiters.nat_gateway_spec(ec2, registry.id_of("nat_gateway"))),
                Step("Create route tables", self.create_route_tables),
            ]
        else:
            steps.append(Step("Register existing VPC", self.register_existing_vpc))

        steps += [
            Step("Create task role and policies", self.create_task_role),
            Step("Create log groups", self.create_log_groups),
            Step("Create secret", self.create_secret,
                 poll=lambda registry: waiters.secret_spec(self.clients.secretsmanager, self.config.secret_name)),
            Step("Create S3 bucket", self.create_bucket),
            Step("Create ECS cluster", self.create_cluster),
            Step("Create security group", self.create_security_group),
            Step("Create EFS file system", self.create_file_system,
                 poll=lambda registry: waiters.file_system_spec(
                     self.clients.efs, registry.id_of("file_system"), self.config.efs_max_attempts)),
            Step("Create EFS mount targets", self.create_mount_targets),
            Step("Create EFS access point", self.create_access_point),
            Step("Tag ECR repositories", self.tag_repositories),
            Step("Register task definitions", self.register_task_definitions),
            Step("Create service connect namespace", self.create_namespace,
                 poll=lambda registry: waiters.namespace_spec(
                     self.clients.servicediscovery, self.config.namespace_name)),
            Step("Record namespace", self.record_namespace),
            Step("Create ECS services", self.create_services),
            Step("Wait for ECS services", self.wait_for_services),
        ]
        return steps

    def details_sections(self) -> Dict[str, List[str]]:
        return {
            "Services Created": [s.name for s in self.services()],
        }


def build_provision_steps(config: AwsWorkloadConfig, clients: AwsClients) -> List[Step]:
    return WorkloadProvisioner(config, clients).steps()
