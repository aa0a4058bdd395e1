"""
Tests for rolling new task definitions out to an installed stack and for
granting the task role additional RDS roles.
"""

import json
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from aws_fakes import ACCOUNT_ID, fake_clients
from jitinfra.aws.provision import RDS_ASSUME_ROLE_POLICY
from jitinfra.aws.update import build_rds_policy_steps, build_update_steps
from jitinfra.config import aws_config_from_dict
from jitinfra.errors import ConfigError
from jitinfra.sequencer import Sequencer, StepStatus

POLICY_ARN = f"arn:aws:iam::{ACCOUNT_ID}:policy/{RDS_ASSUME_ROLE_POLICY}"
EXISTING_ROLE = "arn:aws:iam::111111111111:role/cdx-rds"
NEW_ROLE = "arn:aws:iam::222222222222:role/cdx-rds"


def installed_clients():
    """Clients answering like an account where aws provision already ran."""
    clients = fake_clients()
    ec2, efs, ecs = clients.ec2, clients.efs, clients.ecs

    ec2.describe_vpcs.return_value = {"Vpcs": [{"VpcId": "vpc-1"}]}
    ec2.describe_subnets.return_value = {"Subnets": [
        {"SubnetId": "subnet-2", "Tags": [{"Key": "Name", "Value": "cdx-jit-db-private-subnet-2"}]},
        {"SubnetId": "subnet-1", "Tags": [{"Key": "Name", "Value": "cdx-jit-db-private-subnet-1"}]},
    ]}
    ec2.describe_security_groups.return_value = {"SecurityGroups": [{"GroupId": "sg-1"}]}

    efs.get_paginator.return_value.paginate.return_value = [{"FileSystems": [
        {"FileSystemId": "fs-other", "Tags": [{"Key": "Name", "Value": "something-else"}]},
        {"FileSystemId": "fs-1", "Tags": [{"Key": "Name", "Value": "cdx-jit-db-efs"}]},
    ]}]
    efs.describe_access_points.return_value = {"AccessPoints": [{"AccessPointId": "fsap-1"}]}

    clients.secretsmanager.describe_secret.return_value = {"ARN": "arn:aws:secretsmanager:us-east-1:1:secret:CDX_SECRETS-abc"}
    clients.iam.get_role.return_value = {"Role": {"Arn": f"arn:aws:iam::{ACCOUNT_ID}:role/cdx-ECSTaskRole"}}

    ecs.describe_services.side_effect = lambda cluster, services: {"services": [
        {"serviceName": name, "status": "ACTIVE", "serviceArn": f"arn:aws:ecs:us-east-1:1:service/{name}"}
        for name in services
    ]}
    return clients


def run_update(config, clients, services=None):
    return Sequencer(build_update_steps(config, clients, services)).run()


class TestUpdateTaskDefinitions:
    def test_updates_every_service(self):
        clients = installed_clients()

        result = run_update(aws_config_from_dict({}), clients)

        assert result.succeeded, result.summary()
        families = [c.kwargs["family"] for c in clients.ecs.register_task_definition.call_args_list]
        assert families == ["proxysql", "proxyserver-task", "query-logging-task"]

        updates = clients.ecs.update_service.call_args_list
        assert [c.kwargs["service"] for c in updates] == ["proxysql", "proxyserver", "query-logging"]
        assert updates[1].kwargs == {
            "cluster": "cdx-jit-db-cluster",
            "service": "proxyserver",
            "taskDefinition": "arn:aws:ecs:us-east-1:1:task-definition/proxyserver-task:1",
            "forceNewDeployment": True,
        }
        clients.ecs.create_service.assert_not_called()
        clients.ecs.get_waiter.return_value.wait.assert_called_once_with(
            cluster="cdx-jit-db-cluster", services=["proxysql", "proxyserver", "query-logging"],
        )

    def test_discovers_installed_resources(self):
        clients = installed_clients()

        result = run_update(aws_config_from_dict({}), clients)

        registry = result.registry
        assert registry.id_of("private_subnet_1") == "subnet-1"
        assert registry.id_of("private_subnet_2") == "subnet-2"
        assert registry.id_of("security_group") == "sg-1"
        assert registry.id_of("file_system") == "fs-1"
        assert registry.id_of("access_point") == "fsap-1"

        definition = clients.ecs.register_task_definition.call_args_list[0].kwargs
        volume = definition["volumes"][0]["efsVolumeConfiguration"]
        assert volume["fileSystemId"] == "fs-1"
        assert definition["taskRoleArn"] == f"arn:aws:iam::{ACCOUNT_ID}:role/cdx-ECSTaskRole"

    def test_selected_services_only(self):
        clients = installed_clients()

        result = run_update(aws_config_from_dict({}), clients, services=["proxyserver"])

        assert result.succeeded
        assert clients.ecs.register_task_definition.call_count == 1
        assert [c.kwargs["service"] for c in clients.ecs.update_service.call_args_list] == ["proxyserver"]

    def test_unknown_service(self):
        with pytest.raises(ConfigError, match="dam-server"):
            build_update_steps(aws_config_from_dict({}), installed_clients(), ["dam-server"])

    def test_missing_service_is_created(self):
        clients = installed_clients()
        clients.ecs.describe_services.side_effect = None
        clients.ecs.describe_services.return_value = {"services": [
            {"serviceName": "proxysql", "status": "ACTIVE"},
            {"serviceName": "proxyserver", "status": "INACTIVE"},
        ]}

        result = run_update(aws_config_from_dict({}), clients)

        assert result.succeeded
        created = [c.kwargs["serviceName"] for c in clients.ecs.create_service.call_args_list]
        assert created == ["proxyserver", "query-logging"]
        network = clients.ecs.create_service.call_args_list[0].kwargs["networkConfiguration"]["awsvpcConfiguration"]
        assert network["subnets"] == ["subnet-1", "subnet-2"]
        assert network["securityGroups"] == ["sg-1"]

    def test_existing_vpc(self):
        clients = installed_clients()
        config = aws_config_from_dict({"existing_vpc": {"vpc_id": "vpc-9", "private_subnet_ids": ["subnet-9"]}})

        result = run_update(config, clients)

        assert result.succeeded
        clients.ec2.describe_subnets.assert_not_called()
        assert result.registry.id_of("private_subnet_1") == "subnet-9"

    def test_not_provisioned(self):
        clients = installed_clients()
        clients.ec2.describe_vpcs.return_value = {"Vpcs": []}

        result = run_update(aws_config_from_dict({}), clients)

        assert result.error.step_name == "Find network"
        assert "run aws provision first" in str(result.error)
        assert result.outcome("Register task definitions").status == StepStatus.SKIPPED
        clients.ecs.register_task_definition.assert_not_called()


def policy_clients(document, versions=None):
    clients = fake_clients()
    iam = clients.iam
    iam.get_paginator.return_value.paginate.return_value = [{"AttachedPolicies": [
        {"PolicyName": "cdx-ECSSecretsAccessPolicy", "PolicyArn": "arn:aws:iam::1:policy/other"},
        {"PolicyName": RDS_ASSUME_ROLE_POLICY, "PolicyArn": POLICY_ARN},
    ]}]
    iam.get_policy.return_value = {"Policy": {"DefaultVersionId": "v2"}}
    iam.get_policy_version.return_value = {"PolicyVersion": {"Document": document}}
    iam.list_policy_versions.return_value = {"Versions": versions or [
        {"VersionId": "v1", "IsDefaultVersion": False, "CreateDate": datetime(2024, 1, 1)},
        {"VersionId": "v2", "IsDefaultVersion": True, "CreateDate": datetime(2024, 2, 1)},
    ]}
    return clients


def assume_document(resource):
    return {
        "Version": "2012-10-17",
        "Statement": [{"Effect": "Allow", "Action": ["sts:AssumeRole"], "Resource": resource}],
    }


class TestRdsRoleGrant:
    def run(self, clients, role_arns):
        return Sequencer(build_rds_policy_steps(aws_config_from_dict({}), clients, role_arns)).run()

    def new_document(self, clients):
        call = clients.iam.create_policy_version.call_args
        assert call.kwargs["PolicyArn"] == POLICY_ARN
        assert call.kwargs["SetAsDefault"] is True
        return json.loads(call.kwargs["PolicyDocument"])

    def test_appends_role(self):
        clients = policy_clients(assume_document([EXISTING_ROLE]))

        result = self.run(clients, [NEW_ROLE])

        assert result.succeeded, result.summary()
        clients.iam.get_paginator.assert_called_with("list_attached_role_policies")
        clients.iam.get_policy_version.assert_called_once_with(PolicyArn=POLICY_ARN, VersionId="v2")
        assert self.new_document(clients)["Statement"][0]["Resource"] == [EXISTING_ROLE, NEW_ROLE]
        clients.iam.delete_policy_version.assert_not_called()

    def test_single_resource_string(self):
        clients = policy_clients(assume_document(EXISTING_ROLE))

        self.run(clients, [NEW_ROLE])

        assert self.new_document(clients)["Statement"][0]["Resource"] == [EXISTING_ROLE, NEW_ROLE]

    def test_url_encoded_document(self):
        encoded = "%7B%22Version%22%3A%20%222012-10-17%22%2C%20%22Statement%22%3A%20%5B%7B%22Effect%22%3A%20%22Allow%22%2C%20%22Action%22%3A%20%22sts%3AAssumeRole%22%2C%20%22Resource%22%3A%20%5B%5D%7D%5D%7D"
        clients = policy_clients(encoded)

        self.run(clients, [NEW_ROLE])

        assert self.new_document(clients)["Statement"][0]["Resource"] == [NEW_ROLE]

    def test_already_present(self):
        clients = policy_clients(assume_document([EXISTING_ROLE]))

        result = self.run(clients, [EXISTING_ROLE])

        assert result.succeeded
        clients.iam.create_policy_version.assert_not_called()

    def test_oldest_version_removed_at_limit(self):
        versions = [
            {"VersionId": f"v{i}", "IsDefaultVersion": i == 5, "CreateDate": datetime(2024, i, 1)}
            for i in (3, 1, 5, 2, 4)
        ]
        clients = policy_clients(assume_document([EXISTING_ROLE]), versions)

        self.run(clients, [NEW_ROLE])

        clients.iam.delete_policy_version.assert_called_once_with(PolicyArn=POLICY_ARN, VersionId="v1")
        clients.iam.create_policy_version.assert_called_once()

    def test_policy_not_attached(self):
        clients = policy_clients(assume_document([]))
        clients.iam.get_paginator.return_value.paginate.return_value = [{"AttachedPolicies": []}]

        result = self.run(clients, [NEW_ROLE])

        assert result.error.step_name == "Find RDS assume role policy"
        assert "not attached" in str(result.error)
        clients.iam.create_policy_version.assert_not_called()

    def test_role_arns_from_config(self):
        config = aws_config_from_dict({"rds_assume_role_arns": [NEW_ROLE]})
        clients = policy_clients(assume_document([]))

        Sequencer(build_rds_policy_steps(config, clients)).run()

        assert self.new_document(clients)["Statement"][0]["Resource"] == [NEW_ROLE]

    def test_no_role_arns(self):
        with pytest.raises(ConfigError, match="--role-arn"):
            build_rds_policy_steps(aws_config_from_dict({}), MagicMock())
