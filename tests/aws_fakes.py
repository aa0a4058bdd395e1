"""
Mock boto3 clients that answer like a fresh AWS account.
"""

from unittest.mock import MagicMock

from botocore.exceptions import ClientError

from jitinfra.aws.clients import AwsClients

ACCOUNT_ID = "123456789012"


def client_error(code, operation="Operation"):
    return ClientError({"Error": {"Code": code, "Message": f"{code} error"}}, operation)


def fake_clients(region="us-east-1"):
    ec2, efs, ecs, ecr, iam = MagicMock(), MagicMock(), MagicMock(), MagicMock(), MagicMock()
    logs, s3, sm, sd, sts = MagicMock(), MagicMock(), MagicMock(), MagicMock(), MagicMock()

    sts.get_caller_identity.return_value = {"Account": ACCOUNT_ID}

    ec2.create_vpc.return_value = {"Vpc": {"VpcId": "vpc-1"}}
    ec2.create_internet_gateway.return_value = {"InternetGateway": {"InternetGatewayId": "igw-1"}}
    ec2.create_subnet.side_effect = [{"Subnet": {"SubnetId": f"subnet-{i}"}} for i in range(1, 5)]
    ec2.allocate_address.return_value = {"AllocationId": "eipalloc-1"}
    ec2.create_nat_gateway.return_value = {"NatGateway": {"NatGatewayId": "nat-1"}}
    ec2.describe_nat_gateways.return_value = {"NatGateways": [{"State": "available"}]}
    ec2.create_route_table.side_effect = [
        {"RouteTable": {"RouteTableId": "rtb-public"}},
        {"RouteTable": {"RouteTableId": "rtb-private"}},
    ]
    ec2.create_security_group.return_value = {"GroupId": "sg-1"}

    iam.create_role.return_value = {"Role": {"Arn": f"arn:aws:iam::{ACCOUNT_ID}:role/cdx-ECSTaskRole"}}
    iam.create_policy.side_effect = lambda PolicyName, **kwargs: {
        "Policy": {"Arn": f"arn:aws:iam::{ACCOUNT_ID}:policy/{PolicyName}"}
    }

    sm.create_secret.return_value = {"ARN": "arn:aws:secretsmanager:us-east-1:1:secret:CDX_SECRETS-abc"}
    sm.describe_secret.return_value = {"Name": "CDX_SECRETS"}

    ecs.create_cluster.return_value = {"cluster": {"clusterArn": "arn:aws:ecs:us-east-1:1:cluster/cdx-jit-db-cluster"}}
    ecs.register_task_definition.side_effect = lambda **kwargs: {
        "taskDefinition": {"taskDefinitionArn": f"arn:aws:ecs:us-east-1:1:task-definition/{kwargs['family']}:1"}
    }
    ecs.create_service.side_effect = lambda **kwargs: {
        "service": {"serviceArn": f"arn:aws:ecs:us-east-1:1:service/{kwargs['serviceName']}"}
    }

    efs.create_file_system.return_value = {"FileSystemId": "fs-1"}
    efs.describe_file_systems.return_value = {"FileSystems": [{"LifeCycleState": "available"}]}
    efs.create_mount_target.side_effect = [{"MountTargetId": "fsmt-1"}, {"MountTargetId": "fsmt-2"}]
    efs.create_access_point.return_value = {"AccessPointId": "fsap-1"}

    ecr.describe_repositories.side_effect = lambda repositoryNames: {
        "repositories": [{"repositoryArn": f"arn:aws:ecr:us-east-1:1:repository/{repositoryNames[0]}"}]
    }

    # The namespace shows up once it has been created.
    def namespace_pages(**kwargs):
        if sd.create_private_dns_namespace.called:
            return [{"Namespaces": [{"Name": "proxysql-proxyserver", "Id": "ns-1"}]}]
        return [{"Namespaces": []}]

    sd.get_paginator.return_value.paginate.side_effect = namespace_pages

    return AwsClients(region, clients={
        "ec2": ec2, "efs": efs, "ecs": ecs, "ecr": ecr, "iam": iam,
        "logs": logs, "s3": s3, "secretsmanager": sm, "servicediscovery": sd, "sts": sts,
    })
