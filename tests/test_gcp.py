"""
Tests for the GCP flows with a fake ``gcloud`` runner.
"""

import json
from pathlib import Path

import pytest

from gcp_fakes import FakeKubectl, FakeRunner, completed
from jitinfra.config import gcp_config_from_dict
from jitinfra.errors import ActionFailure, PollFailed
from jitinfra.gcp import Gcloud, Kubectl, build_cleanup_steps, build_infrastructure_steps, cluster_running
from jitinfra.poller import CheckState
from jitinfra.sequencer import Sequencer, StepStatus
from jitinfra.state import ResourceHandle, ResourceKind, ResourceRegistry


def fresh_project(args):
    """Nothing exists yet; the cluster reports RUNNING once created."""
    if "describe" in args:
        if "--format=json" in args:
            return completed(stdout=json.dumps({"status": "RUNNING"}))
        return completed(1, stderr="ERROR: (gcloud) NOT_FOUND: resource not found")
    return completed()


@pytest.fixture
def config():
    return gcp_config_from_dict({"project_id": "my-proj", "secret_values": {"CDX_AUTH_TOKEN": "t0ken"}})


class TestGcloud:
    def test_project_appended(self):
        runner = FakeRunner(lambda args: completed(stdout="a\n\nb\n"))
        gcloud = Gcloud("my-proj", runner=runner)

        assert gcloud.names("compute", "networks", "list") == ["a", "b"]
        assert runner.calls[0][0] == ["gcloud", "compute", "networks", "list", "--project=my-proj"]

    def test_run_failure(self):
        gcloud = Gcloud("my-proj", runner=FakeRunner(lambda args: completed(2, stderr="ERROR: permission denied")))

        with pytest.raises(ActionFailure, match="permission denied"):
            gcloud.run("compute", "networks", "create", "x")

    def test_missing_binary(self):
        def runner(*args, **kwargs):
            raise FileNotFoundError("gcloud")

        with pytest.raises(ActionFailure, match="not installed"):
            Gcloud("my-proj", runner=runner).run("info")

    def test_create_and_delete_tolerance(self):
        gcloud = Gcloud("my-proj", runner=FakeRunner(lambda args: completed(1, stderr="ERROR: already exists")))
        assert gcloud.create("rule", "compute", "firewall-rules", "create", "x") is False

        gcloud = Gcloud("my-proj", runner=FakeRunner(lambda args: completed(1, stderr="ERROR: x was not found")))
        assert gcloud.delete("rule", "compute", "firewall-rules", "delete", "x") is False

        runner = FakeRunner(lambda args: completed(1, stderr="ERROR: in use by another resource"))
        with pytest.raises(ActionFailure, match="in use"):
            Gcloud("my-proj", runner=runner).delete("rule", "compute", "firewall-rules", "delete", "x")
        assert runner.calls[0][0][-2] == "--quiet"

    def test_invalid_json(self):
        gcloud = Gcloud("my-proj", runner=FakeRunner(lambda args: completed(stdout="not json")))

        with pytest.raises(ActionFailure, match="invalid JSON"):
            gcloud.json("container", "clusters", "describe", "c")

    def test_kubectl_apply_and_json(self):
        runner = FakeKubectl(lambda args: completed(stdout=json.dumps({"items": []})))
        kubectl = Kubectl(runner=runner)

        kubectl.apply("kind: Namespace\n")
        assert kubectl.json("get", "deployments", "-n", "ns") == {"items": []}

        assert runner.calls[0] == (["kubectl", "apply", "-f", "-"], "kind: Namespace\n")
        assert runner.calls[1][0] == ["kubectl", "get", "deployments", "-n", "ns", "-o", "json"]

    def test_gcloud_for_other_project(self):
        runner = FakeRunner(lambda args: completed())
        Gcloud("my-proj", runner=runner).for_project("db-proj").run("sql", "instances", "list")

        assert runner.calls[0][0][-1] == "--project=db-proj"


class TestClusterRunning:
    @pytest.mark.parametrize("status,state", [
        ("RUNNING", CheckState.READY),
        ("PROVISIONING", CheckState.NOT_READY),
        ("ERROR", CheckState.FAILED),
    ])
    def test_states(self, status, state):
        gcloud = Gcloud("p", runner=FakeRunner(lambda args: completed(stdout=json.dumps({"status": status}))))

        assert cluster_running(gcloud, "c", "z").state == state

    def test_describe_error_is_not_ready(self):
        gcloud = Gcloud("p", runner=FakeRunner(lambda args: completed(1, stderr="NOT_FOUND")))

        assert cluster_running(gcloud, "c", "z").state == CheckState.NOT_READY


class TestInfrastructure:
    def test_fresh_project(self, config, clock):
        runner = FakeRunner(fresh_project)

        result = Sequencer(build_infrastructure_steps(config, Gcloud("my-proj", runner=runner)),
                           sleep=clock.sleep, clock=clock).run()

        assert result.succeeded, result.summary()
        for command, _ in runner.calls:
            assert command[-1] == "--project=my-proj"

        calls = [cmd[1:-1] for cmd, _ in runner.calls]
        created = [args[args.index("create") + 1] for args in calls if "create" in args]
        assert created == [
            "cdx-jit-network", "cdx-jit-subnet", "cdx-jit-router", "cdx-jit-nat",
            "cdx-allow-iap", "cdx-allow-internal", "cdx-allow-health-check", "cdx-allow-nfs",
            "cdx-jit-secrets", "cdx-jit-workload-sa", "cdx-jit-cluster", "cdx-nfs-server",
        ]

        subnet = runner.commands("compute", "networks", "subnets", "create")[0]
        assert "--secondary-range=pods=10.20.0.0/16,services=10.30.0.0/20" in subnet

        cluster = runner.commands("container", "clusters", "create")[0]
        assert "--async" in cluster
        assert "--labels=owner=cloudanix,service=iap-proxy,purpose=cdx-jit-db" in cluster

        registry = result.registry
        assert registry.id_of("cluster") == "cdx-jit-cluster"
        assert registry.id_of("service_account") == "cdx-jit-workload-sa@my-proj.iam.gserviceaccount.com"
        assert "firewall:cdx-allow-nfs" in registry

    def test_secret_payload(self, config, clock):
        runner = FakeRunner(fresh_project)

        Sequencer(build_infrastructure_steps(config, Gcloud("my-proj", runner=runner)),
                  sleep=clock.sleep, clock=clock).run()

        payload = next(stdin for cmd, stdin in runner.calls if cmd[1:4] == ["secrets", "versions", "add"])
        assert json.loads(payload) == {
            "CDX_AUTH_TOKEN": "t0ken",
            "GCP_PROJECT_ID": "my-proj",
            "CDX_DEFAULT_REGION": "us-central1",
        }

    def test_startup_script_removed(self, config, clock):
        runner = FakeRunner(fresh_project)

        Sequencer(build_infrastructure_steps(config, Gcloud("my-proj", runner=runner)),
                  sleep=clock.sleep, clock=clock).run()

        instance = runner.commands("compute", "instances", "create")[0]
        flag = next(a for a in instance if a.startswith("--metadata-from-file="))
        assert not Path(flag.split("=", 2)[2]).exists()

    def test_rerun_skips_existing(self, config, clock):
        def everything_exists(args):
            if "--format=json" in args:
                return completed(stdout=json.dumps({"status": "RUNNING"}))
            if args[:2] == ["compute", "firewall-rules"] and "create" in args:
                return completed(1, stderr="ERROR: The resource already exists")
            return completed()

        runner = FakeRunner(everything_exists)

        result = Sequencer(build_infrastructure_steps(config, Gcloud("my-proj", runner=runner)),
                           sleep=clock.sleep, clock=clock).run()

        assert result.succeeded
        assert runner.commands("compute", "networks", "create") == []
        assert runner.commands("container", "clusters", "create") == []
        assert len(runner.commands("secrets", "versions", "add")) == 1

    def test_cluster_error_aborts(self, config, clock):
        polls = iter(["PROVISIONING", "ERROR"])

        def handler(args):
            if "--format=json" in args:
                return completed(stdout=json.dumps({"status": next(polls), "statusMessage": "quota exceeded"}))
            return fresh_project(args)

        result = Sequencer(build_infrastructure_steps(config, Gcloud("my-proj", runner=FakeRunner(handler))),
                           sleep=clock.sleep, clock=clock).run()

        assert result.error.step_name == "Create GKE cluster"
        assert isinstance(result.error.cause, PollFailed)
        assert "quota exceeded" in str(result.error)
        assert clock.sleeps == [30]
        assert result.outcome("Create NFS server").status == StepStatus.SKIPPED

    def test_network_failure_aborts(self, config, clock):
        def handler(args):
            if args[:3] == ["compute", "networks", "create"]:
                return completed(1, stderr="ERROR: Compute Engine API has not been used")
            return fresh_project(args)

        result = Sequencer(build_infrastructure_steps(config, Gcloud("my-proj", runner=FakeRunner(handler))),
                           sleep=clock.sleep, clock=clock).run()

        assert result.error.step_name == "Create VPC network"
        assert all(o.status == StepStatus.SKIPPED for o in result.outcomes[1:])


class TestCleanup:
    def listing(self, args):
        if "list" in args:
            if args[0] == "compute" and args[1] == "disks":
                return completed(stdout="cdx-disk-1 https://www.googleapis.com/compute/v1/projects/p/zones/us-central1-b\n")
            if args[:2] == ["compute", "firewall-rules"]:
                return completed(stdout="cdx-allow-iap\ncdx-allow-nfs\n")
            if args[:2] == ["iam", "service-accounts"]:
                return completed(stdout="cdx-jit-workload-sa@my-proj.iam.gserviceaccount.com\n")
            return completed()
        return completed()

    def test_full_teardown(self, config):
        runner = FakeRunner(self.listing)

        result = Sequencer(build_cleanup_steps(config, Gcloud("my-proj", runner=runner))).run()

        assert result.failed_steps() == []
        deleted = [args for args in (cmd[1:-1] for cmd, _ in runner.calls) if "delete" in args]
        assert all(args[-1] == "--quiet" for args in deleted)
        assert deleted[0][:4] == ["container", "clusters", "delete", "cdx-jit-cluster"]
        assert [a[3] for a in runner.commands("compute", "instances", "delete")] == [
            "cdx-nfs-server", "cdx-jit-jump-vm", "cdx-gke-bastion",
        ]
        assert [a[3] for a in runner.commands("compute", "firewall-rules", "delete")] == [
            "cdx-allow-iap", "cdx-allow-nfs",
        ]
        disk = runner.commands("compute", "disks", "delete")[0]
        assert disk[3:5] == ["cdx-disk-1", "--zone=us-central1-b"]
        assert deleted[-1][:3] == ["compute", "disks", "delete"]

    def test_not_found_and_failures(self, config):
        def handler(args):
            if args[:3] == ["compute", "instances", "delete"] and args[3] == "cdx-jit-jump-vm":
                return completed(1, stderr="ERROR: permission denied")
            if "delete" in args:
                return completed(1, stderr="ERROR: The resource was not found")
            return completed()

        runner = FakeRunner(handler)
        result = Sequencer(build_cleanup_steps(config, Gcloud("my-proj", runner=runner))).run()

        assert result.succeeded
        assert [o.name for o in result.failed_steps()] == ["Delete compute instances"]
        assert "cdx-jit-jump-vm" in result.outcome("Delete compute instances").reason
        # the VM after the failing one is still attempted
        assert runner.commands("compute", "instances", "delete")[-1][3] == "cdx-gke-bastion"

    def test_psc_subnets_removed_in_their_region(self, config):
        def handler(args):
            if args[:4] == ["compute", "networks", "subnets", "list"]:
                return completed(stdout="cdx-jit-subnet-europe-west1 https://www.googleapis.com/compute/v1/projects/p/regions/europe-west1\n")
            return completed()

        runner = FakeRunner(handler)
        registry = ResourceRegistry()
        registry.add(ResourceHandle(kind=ResourceKind.SUBNET, id="cdx-jit-subnet-europe-west1",
                                    region="europe-west1", name="psc_subnet:orders-db"))

        result = Sequencer(build_cleanup_steps(config, Gcloud("my-proj", runner=runner)), registry=registry).run()

        assert result.outcome("Delete PSC subnets").status == StepStatus.SUCCESS
        listing = runner.commands("compute", "networks", "subnets", "list")[0]
        assert "--filter=name~^cdx-jit-subnet-" in listing
        deleted = [a[4:6] for a in runner.commands("compute", "networks", "subnets", "delete")]
        assert deleted == [["cdx-jit-subnet-europe-west1", "--region=europe-west1"], ["cdx-jit-subnet", "--region=us-central1"]]
        assert "psc_subnet:orders-db" not in registry
