"""
Tests for the click CLI.
"""

import json
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from aws_fakes import fake_clients
from jitinfra.cli import main
from jitinfra.errors import ActionFailure
from jitinfra.sequencer import Step
from jitinfra.state import ResourceHandle, ResourceKind, list_runs, read_run_json


def write_config(path, data):
    path.write_text(yaml.safe_dump(data))
    return str(path)


def last_json(output):
    lines = [line for line in output.splitlines() if line.strip()]
    return json.loads(lines[-1])


def network_step():
    return Step("Create network", lambda registry: ResourceHandle(ResourceKind.NETWORK, "net-1", "r", "network"))


def failing_step():
    def action(registry):
        raise ActionFailure("quota exceeded")
    return Step("Create cluster", action)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def aws_config(tmp_path):
    return write_config(tmp_path / "aws.yaml", {
        "region": "us-east-1",
        "details_file": str(tmp_path / "infrastructure-details.txt"),
        "secret_values": {"CDX_AUTH_TOKEN": "hunter2"},
    })


class TestAwsProvision:
    """Test the aws provision command."""

    def test_success(self, runner, aws_config, tmp_path, jitinfra_home):
        """A full run records the run and writes the details file."""
        with patch("jitinfra.cli.AwsClients", side_effect=fake_clients):
            result = runner.invoke(main, ["aws", "provision", "--config", aws_config])

        assert result.exit_code == 0, result.output
        assert "✅ aws-provision completed" in result.output

        run_id = list_runs()[0]
        run_dir = jitinfra_home / run_id
        for name in ("run.json", "resources.json", "events.ndjson", "details.txt"):
            assert (run_dir / name).exists()

        settings = json.loads((run_dir / "run.json").read_text())["settings"]
        assert "secret_values" not in settings
        assert "hunter2" not in (run_dir / "run.json").read_text()

        details = (tmp_path / "infrastructure-details.txt").read_text()
        assert details.startswith("Infrastructure Details\n")
        assert "vpc: vpc-1" in details
        assert "Services Created:\n- proxysql" in details

    def test_json_output(self, runner, aws_config, jitinfra_home):
        """--json prints one machine-readable result."""
        with patch("jitinfra.cli.AwsClients", side_effect=fake_clients):
            result = runner.invoke(main, ["--json", "aws", "provision", "--config", aws_config])

        data = last_json(result.output)
        assert result.exit_code == 0
        assert data["flow"] == "aws-provision"
        assert data["succeeded"] is True
        assert data["aborted_at"] is None
        assert data["run_id"] == list_runs()[0]

    def test_aborted_run(self, runner, aws_config, jitinfra_home):
        """A failing strict step exits 1 and names the step."""
        clients = fake_clients()
        clients.ec2.describe_nat_gateways.return_value = {"NatGateways": [{"State": "failed"}]}

        with patch("jitinfra.cli.AwsClients", return_value=clients):
            result = runner.invoke(main, ["aws", "provision", "--config", aws_config])

        assert result.exit_code == 1
        assert "❌ aws-provision aborted: Step 'Create NAT gateway' failed" in result.output
        assert "[SKIPPED] Create route tables" in result.output

    def test_missing_config(self, runner, tmp_path, jitinfra_home):
        """A missing config file exits 2 before anything runs."""
        with patch("jitinfra.cli.AwsClients") as clients:
            result = runner.invoke(main, ["aws", "provision", "--config", str(tmp_path / "nope.yaml")])

        assert result.exit_code == 2
        assert "Invalid configuration" in result.output
        clients.assert_not_called()
        assert list_runs() == []

    def test_unknown_option(self, runner, tmp_path, jitinfra_home):
        path = write_config(tmp_path / "aws.yaml", {"regoin": "us-east-1"})

        result = runner.invoke(main, ["--json", "aws", "provision", "--config", path])

        assert result.exit_code == 2
        assert "regoin" in last_json(result.output)["error"]


class TestAwsCleanup:
    """Test the aws cleanup command."""

    def test_requires_confirmation(self, runner, aws_config, jitinfra_home):
        with patch("jitinfra.cli.build_cleanup_steps") as build:
            result = runner.invoke(main, ["aws", "cleanup", "--config", aws_config], input="n\n")

        assert result.exit_code == 1
        build.assert_not_called()

    def test_updates_previous_registry(self, runner, aws_config, jitinfra_home):
        """Handles removed by cleanup disappear from the registry loaded via --run."""
        with patch("jitinfra.cli.build_infrastructure_steps", return_value=[network_step()]), \
                patch("jitinfra.cli.Gcloud"):
            gcp_config = write_config(jitinfra_home.parent / "gcp.yaml", {"project_id": "p"})
            runner.invoke(main, ["gcp", "provision", "--config", gcp_config])
        provision_run = list_runs()[0]

        discard = Step("Delete network", lambda registry: registry.discard("network"))
        with patch("jitinfra.cli.build_cleanup_steps", return_value=[discard]), patch("jitinfra.cli.AwsClients"):
            result = runner.invoke(main, ["--json", "aws", "cleanup", "--config", aws_config,
                                          "--run", provision_run, "--yes"])

        assert result.exit_code == 0, result.output
        assert last_json(result.output)["resources"] == []

    def test_invalid_run_id(self, runner, aws_config, jitinfra_home):
        result = runner.invoke(main, ["aws", "cleanup", "--config", aws_config, "--run", "bogus", "--yes"])

        assert result.exit_code == 2
        assert "Invalid run ID" in result.output


class TestPeering:
    @pytest.fixture
    def peering_config(self, tmp_path):
        return write_config(tmp_path / "peering.yaml", {
            "details_file": str(tmp_path / "peering-details.txt"),
            "vpc_peerings": [{
                "requester_vpc_id": "vpc-1",
                "accepter_vpc_id": "vpc-2",
                "accepter_account_id": "2",
                "accepter_region": "us-west-2",
                "accepter_cidr": "172.31.0.0/16",
                "ecs_security_group_id": "sg-1",
                "peering_name": "orders",
            }],
        })

    def test_create(self, runner, peering_config, jitinfra_home):
        with patch("jitinfra.cli.build_peering_steps", return_value=[]) as build, \
                patch("jitinfra.cli.build_peering_cleanup_steps") as remove, \
                patch("jitinfra.cli.AwsClients"):
            result = runner.invoke(main, ["aws", "peering", "--config", peering_config])

        assert result.exit_code == 0, result.output
        build.assert_called_once()
        remove.assert_not_called()

    def test_remove(self, runner, peering_config, jitinfra_home):
        with patch("jitinfra.cli.build_peering_steps") as build, \
                patch("jitinfra.cli.build_peering_cleanup_steps", return_value=[]) as remove, \
                patch("jitinfra.cli.AwsClients"):
            result = runner.invoke(main, ["aws", "peering", "--config", peering_config, "--remove", "--yes"])

        assert result.exit_code == 0, result.output
        remove.assert_called_once()
        build.assert_not_called()

    def test_no_links(self, runner, tmp_path, jitinfra_home):
        path = write_config(tmp_path / "peering.yaml", {"vpc_peerings": []})

        result = runner.invoke(main, ["aws", "peering", "--config", path])

        assert result.exit_code == 2


class TestGcp:
    def test_provision_uses_project(self, runner, tmp_path, jitinfra_home):
        path = write_config(tmp_path / "gcp.yaml", {"project_id": "my-proj"})

        with patch("jitinfra.cli.Gcloud") as gcloud, \
                patch("jitinfra.cli.build_infrastructure_steps", return_value=[network_step()]) as build:
            result = runner.invoke(main, ["gcp", "provision", "--config", path])

        assert result.exit_code == 0, result.output
        gcloud.assert_called_once_with("my-proj")
        assert build.call_args.args[0].project_id == "my-proj"
        assert "network: net-1" in result.output

    def test_project_required(self, runner, tmp_path, jitinfra_home):
        path = write_config(tmp_path / "gcp.yaml", {"region": "europe-west1"})

        result = runner.invoke(main, ["gcp", "provision", "--config", path])

        assert result.exit_code == 2
        assert "project_id is required" in result.output

    def test_cleanup_confirmed(self, runner, tmp_path, jitinfra_home):
        path = write_config(tmp_path / "gcp.yaml", {"project_id": "my-proj"})

        with patch("jitinfra.cli.Gcloud"), patch("jitinfra.cli.build_gcp_cleanup_steps", return_value=[]) as build:
            result = runner.invoke(main, ["gcp", "cleanup", "--config", path], input="y\n")

        assert result.exit_code == 0, result.output
        build.assert_called_once()


class TestRunsAndStatus:
    """Test the runs and status commands."""

    def provision(self, runner, tmp_path, steps):
        path = write_config(tmp_path / "gcp.yaml", {"project_id": "my-proj"})
        with patch("jitinfra.cli.Gcloud"), patch("jitinfra.cli.build_infrastructure_steps", return_value=steps):
            runner.invoke(main, ["gcp", "provision", "--config", path])
        return list_runs()[0]

    def test_runs_empty(self, runner, jitinfra_home):
        result = runner.invoke(main, ["runs"])

        assert result.exit_code == 0
        assert "No runs recorded" in result.output

    def test_runs_lists_flow_and_status(self, runner, tmp_path, jitinfra_home):
        run_id = self.provision(runner, tmp_path, [network_step()])

        result = runner.invoke(main, ["--json", "runs"])

        assert last_json(result.output) == {
            "runs": [{"run_id": run_id, "flow": "gcp-provision", "status": "completed"}]
        }

    def test_status_of_aborted_run(self, runner, tmp_path, jitinfra_home):
        run_id = self.provision(runner, tmp_path, [network_step(), failing_step()])

        result = runner.invoke(main, ["status", run_id])

        assert result.exit_code == 0
        assert "Flow: gcp-provision" in result.output
        assert "Status: ABORTED" in result.output
        assert "Create cluster: quota exceeded" in result.output
        assert "network: net-1" in result.output

    def test_status_json(self, runner, tmp_path, jitinfra_home):
        run_id = self.provision(runner, tmp_path, [network_step()])

        data = last_json(runner.invoke(main, ["--json", "status", run_id]).output)

        assert data["status"] == "completed"
        assert data["resources"][0]["id"] == "net-1"
        assert data["last_event"]["type"] == "RUN_DONE"

    def test_status_invalid_and_unknown(self, runner, jitinfra_home):
        assert runner.invoke(main, ["status", "not-a-run"]).exit_code == 2
        assert runner.invoke(main, ["status", "20240101T000000-aws-provision-abcd"]).exit_code == 1

    def test_forget(self, runner, tmp_path, jitinfra_home):
        run_id = self.provision(runner, tmp_path, [network_step()])

        result = runner.invoke(main, ["forget", run_id])

        assert result.exit_code == 0
        assert list_runs() == []
        assert runner.invoke(main, ["forget", run_id]).exit_code == 1


class TestTagOption:
    def test_tags_merged_over_config(self, runner, tmp_path, jitinfra_home):
        path = write_config(tmp_path / "aws.yaml", {"tags": {"Team": "db"}})

        with patch("jitinfra.cli.build_retag_steps", return_value=[]) as build, patch("jitinfra.cli.AwsClients"):
            result = runner.invoke(main, ["aws", "retag", "--config", path, "--tag", "Env=prod", "--tag", "Team=dba"])

        assert result.exit_code == 0, result.output
        assert build.call_args.args[0].tags == {"Team": "dba", "Env": "prod"}

    def test_bad_tag(self, runner, aws_config, jitinfra_home):
        with patch("jitinfra.cli.AwsClients") as clients:
            result = runner.invoke(main, ["aws", "provision", "--config", aws_config, "--tag", "oops"])

        assert result.exit_code == 2
        assert "Invalid tag format" in result.output
        clients.assert_not_called()


class TestTagsFile:
    """A bad tags file is a configuration error, reported before anything runs."""

    def test_missing_tags_file_on_provision(self, runner, tmp_path, jitinfra_home):
        path = write_config(tmp_path / "aws.yaml", {"tags_file": str(tmp_path / "missing-tags.json")})

        with patch("jitinfra.cli.AwsClients") as clients:
            result = runner.invoke(main, ["aws", "provision", "--config", path])

        assert result.exit_code == 2
        assert "Tags file" in result.output
        clients.assert_not_called()
        assert list_runs() == []

    def test_missing_tags_file_on_peering(self, runner, tmp_path, jitinfra_home):
        path = write_config(tmp_path / "peering.yaml", {
            "tags_file": str(tmp_path / "missing-tags.json"),
            "vpc_peerings": [{
                "requester_vpc_id": "vpc-1",
                "accepter_vpc_id": "vpc-2",
                "accepter_account_id": "2",
                "accepter_region": "us-west-2",
                "accepter_cidr": "172.31.0.0/16",
                "ecs_security_group_id": "sg-1",
                "peering_name": "orders",
            }],
        })

        with patch("jitinfra.cli.AwsClients") as clients:
            result = runner.invoke(main, ["--json", "aws", "peering", "--config", path])

        assert result.exit_code == 2
        assert "not found" in last_json(result.output)["error"]
        clients.assert_not_called()

    def test_malformed_tags_file_on_retag(self, runner, tmp_path, jitinfra_home):
        tags_file = tmp_path / "tags.json"
        tags_file.write_text("{not json")
        path = write_config(tmp_path / "aws.yaml", {"tags_file": str(tags_file)})

        with patch("jitinfra.cli.build_retag_steps") as build, patch("jitinfra.cli.AwsClients"):
            result = runner.invoke(main, ["aws", "retag", "--config", path])

        assert result.exit_code == 2
        assert "not valid JSON" in result.output
        build.assert_not_called()


class TestAwsUpdateCommands:
    def test_update_selected_services(self, runner, aws_config, jitinfra_home):
        with patch("jitinfra.cli.WorkloadUpdater") as updater, patch("jitinfra.cli.AwsClients"):
            updater.return_value.steps.return_value = [network_step()]
            updater.return_value.details_sections.return_value = {"Services Updated": ["proxyserver"]}
            result = runner.invoke(main, ["aws", "update-task-definitions", "--config", aws_config,
                                          "--service", "proxyserver"])

        assert result.exit_code == 0, result.output
        assert updater.call_args.args[2] == ["proxyserver"]
        run_id = list_runs()[0]
        assert read_run_json(run_id)["flow"] == "aws-update"
        assert "Services Updated:\n- proxyserver" in (jitinfra_home / run_id / "details.txt").read_text()

    def test_update_unknown_service(self, runner, aws_config, jitinfra_home):
        with patch("jitinfra.cli.AwsClients"):
            result = runner.invoke(main, ["aws", "update-task-definitions", "--config", aws_config,
                                          "--service", "nope"])

        assert result.exit_code == 2
        assert "Unknown service(s): nope" in result.output
        assert list_runs() == []

    def test_grant_rds_role(self, runner, aws_config, jitinfra_home):
        role = "arn:aws:iam::222222222222:role/cdx-rds"
        with patch("jitinfra.cli.build_rds_policy_steps", return_value=[]) as build, patch("jitinfra.cli.AwsClients"):
            result = runner.invoke(main, ["aws", "grant-rds-role", "--config", aws_config, "--role-arn", role])

        assert result.exit_code == 0, result.output
        assert build.call_args.args[2] == [role]

    def test_grant_rds_role_without_roles(self, runner, aws_config, jitinfra_home):
        with patch("jitinfra.cli.AwsClients"):
            result = runner.invoke(main, ["--json", "aws", "grant-rds-role", "--config", aws_config])

        assert result.exit_code == 2
        assert "--role-arn" in last_json(result.output)["error"]


class TestGcpWorkloadCommands:
    def test_workloads(self, runner, tmp_path, jitinfra_home):
        path = write_config(tmp_path / "gcp.yaml", {"project_id": "my-proj", "enable_dam": True})

        with patch("jitinfra.cli.Gcloud") as gcloud, patch("jitinfra.cli.Kubectl") as kubectl, \
                patch("jitinfra.cli.build_workload_steps", return_value=[]) as build:
            result = runner.invoke(main, ["gcp", "workloads", "--config", path])

        assert result.exit_code == 0, result.output
        gcloud.assert_called_once_with("my-proj")
        kubectl.assert_called_once_with()
        assert build.call_args.args[0].enable_dam is True

    def test_psc_endpoints(self, runner, tmp_path, jitinfra_home):
        path = write_config(tmp_path / "gcp.yaml", {
            "project_id": "my-proj",
            "psc_endpoints": [{"db_project": "db-proj", "db_instance": "orders-db", "ip_address": "10.238.1.10"}],
        })

        with patch("jitinfra.cli.Gcloud"), patch("jitinfra.cli.build_psc_steps", return_value=[]) as build:
            result = runner.invoke(main, ["gcp", "psc", "--config", path])

        assert result.exit_code == 0, result.output
        assert build.call_args.args[0].psc_endpoints[0].endpoint_name == "orders-db-psc-endpoint"
        settings = read_run_json(list_runs()[0])["settings"]
        assert settings["psc_endpoints"][0]["db_instance"] == "orders-db"

    def test_psc_without_endpoints(self, runner, tmp_path, jitinfra_home):
        path = write_config(tmp_path / "gcp.yaml", {"project_id": "my-proj"})

        with patch("jitinfra.cli.Gcloud"):
            result = runner.invoke(main, ["gcp", "psc", "--config", path])

        assert result.exit_code == 2
        assert "No psc_endpoints configured" in result.output
        assert list_runs() == []
