"""
Click CLI for jitinfra.

Every flow command loads its configuration, builds the flow's step list,
runs it under a fresh run ID and records the run under ``JITINFRA_HOME``.
Exit codes: 0 success, 1 aborted run, 2 invalid configuration.
"""

import dataclasses
import json
import logging
import sys
from typing import Any, Callable, Dict, List, Optional, Tuple

import click

from .aws import (
    AwsClients,
    build_cleanup_steps,
    build_peering_cleanup_steps,
    build_peering_steps,
    build_rds_policy_steps,
    build_retag_steps,
)
from .aws.provision import WorkloadProvisioner
from .aws.update import WorkloadUpdater
from .config import load_aws_config, load_gcp_config, load_peering_config
from .errors import ConfigError
from .events import get_last_event, get_status_from_events, read_events
from .gcp import Gcloud, Kubectl, build_infrastructure_steps, build_psc_steps, build_workload_steps
from .gcp import build_cleanup_steps as build_gcp_cleanup_steps
from .sequencer import Sequencer, Step
from .state import (
    ResourceRegistry,
    flow_of_run,
    get_run_dir,
    is_valid_run_id,
    list_runs,
    new_run_id,
    read_registry_json,
    read_run_json,
    remove_run,
    write_details_file,
    write_registry_json,
    write_run_json,
)
from .tags import parse_user_tags

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s]: %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

EXIT_CONFIG_ERROR = 2


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stderr,
        force=True,
    )
    # boto's own debug output drowns the step log
    for name in ("botocore", "boto3", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)


def _json_output(data: Dict[str, Any]) -> None:
    click.echo(json.dumps(data, indent=None))


def _wants_json() -> bool:
    return click.get_current_context().obj.get("json", False)


def _config_error(error: ConfigError) -> None:
    if _wants_json():
        _json_output({"error": f"Invalid configuration: {error}"})
    else:
        click.echo(f"Invalid configuration: {error}", err=True)
    sys.exit(EXIT_CONFIG_ERROR)


def _load(loader: Callable[[str], Any], path: str) -> Any:
    try:
        return loader(path)
    except ConfigError as e:
        _config_error(e)


def _checked(build: Callable[..., Any], *args: Any) -> Any:
    """Call a step-list builder, reporting a ConfigError it raises as invalid configuration."""
    try:
        return build(*args)
    except ConfigError as e:
        _config_error(e)


def _apply_tags(config: Any, tags: Tuple[str, ...]) -> None:
    """Merge ``--tag key=value`` options over the configured user tags."""
    if not tags:
        return
    try:
        extra = parse_user_tags(list(tags))
        merged = config.user_tags() or {}
    except ConfigError as e:
        _config_error(e)
    merged.update(extra)
    config.tags = merged


def _settings(config: Any) -> Dict[str, Any]:
    """Config as a dict with secret values left out."""
    data = dataclasses.asdict(config)
    data.pop("secret_values", None)
    return data


def _previous_registry(run_id: Optional[str]) -> Optional[ResourceRegistry]:
    if not run_id:
        return None
    if not is_valid_run_id(run_id):
        click.echo(f"Invalid run ID: {run_id}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)
    return read_registry_json(run_id)


def _execute(
    flow: str,
    steps: List[Step],
    settings: Dict[str, Any],
    registry: Optional[ResourceRegistry] = None,
    title: str = "Infrastructure Details",
    details_file: Optional[str] = None,
    sections: Optional[Dict[str, List[str]]] = None,
) -> None:
    """Run a step list as a recorded run and exit with its exit code."""
    run_id = new_run_id(flow)
    write_run_json(run_id, flow, settings)
    logger.info(f"Starting {flow} run {run_id}")

    result = Sequencer(steps, registry=registry, run_id=run_id).run()

    write_registry_json(run_id, result.registry)
    write_details_file(get_run_dir(run_id) / "details.txt", result.registry, title, sections)
    if details_file:
        write_details_file(details_file, result.registry, title, sections)
        logger.info(f"Details saved to {details_file}")

    if _wants_json():
        _json_output({"run_id": run_id, "flow": flow, **result.to_dict()})
    else:
        click.echo(result.summary(title))
        if result.succeeded:
            click.echo(f"✅ {flow} completed (run {run_id})")
        else:
            click.echo(f"❌ {flow} aborted: {result.error} (run {run_id})")

    sys.exit(result.exit_code)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--json", "output_json", is_flag=True, help="Output machine-readable JSON")
@click.pass_context
def main(ctx, verbose: bool, output_json: bool):
    """
    jitinfra - provision and tear down the JIT database access stack.
    """
    ctx.ensure_object(dict)
    ctx.obj["json"] = output_json
    configure_logging(verbose)


@main.group()
def aws():
    """ECS/Fargate workload on AWS."""


@aws.command("provision")
@click.option("--config", "config_path", required=True, type=click.Path(), help="Workload config file (YAML/JSON)")
@click.option("--tag", "tags", multiple=True, help="Extra tag as key=value (repeatable)")
def aws_provision(config_path: str, tags: Tuple[str, ...]):
    """Install the workload stack."""
    config = _load(load_aws_config, config_path)
    _apply_tags(config, tags)
    provisioner = WorkloadProvisioner(config, AwsClients(config.region))
    _execute(
        "aws-provision",
        provisioner.steps(),
        _settings(config),
        details_file=config.details_file,
        sections=provisioner.details_sections(),
    )


@aws.command("cleanup")
@click.option("--config", "config_path", required=True, type=click.Path(), help="Workload config file (YAML/JSON)")
@click.option("--run", "run_id", help="Provisioning run whose recorded resources should be updated")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def aws_cleanup(config_path: str, run_id: Optional[str], yes: bool):
    """Delete the workload stack."""
    config = _load(load_aws_config, config_path)
    registry = _previous_registry(run_id)
    if not yes:
        click.confirm(f"Delete all {config.project_name} resources in {config.region}?", abort=True)
    _execute(
        "aws-cleanup",
        build_cleanup_steps(config, AwsClients(config.region)),
        _settings(config),
        registry=registry,
        title="Remaining Resources",
    )


@aws.command("peering")
@click.option("--config", "config_path", required=True, type=click.Path(), help="Peering config file (YAML/JSON)")
@click.option("--remove", is_flag=True, help="Delete the configured peerings instead of creating them")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation when removing")
def aws_peering(config_path: str, remove: bool, yes: bool):
    """Peer the workload VPC with database VPCs."""
    config = _load(load_peering_config, config_path)
    clients = AwsClients(config.region)
    if remove:
        if not yes:
            click.confirm(f"Delete {len(config.vpc_peerings)} VPC peering connection(s)?", abort=True)
        _execute("aws-peering-cleanup", build_peering_cleanup_steps(config, clients), _settings(config),
                 title="Peering Details")
    else:
        _execute("aws-peering", build_peering_steps(config, clients), _settings(config), title="Peering Details")


@aws.command("retag")
@click.option("--config", "config_path", required=True, type=click.Path(), help="Workload config file (YAML/JSON)")
@click.option("--tag", "tags", multiple=True, help="Extra tag as key=value (repeatable)")
def aws_retag(config_path: str, tags: Tuple[str, ...]):
    """Re-apply tags to an existing installation."""
    config = _load(load_aws_config, config_path)
    _apply_tags(config, tags)
    _execute("aws-retag", build_retag_steps(config, AwsClients(config.region)), _settings(config))


@aws.command("update-task-definitions")
@click.option("--config", "config_path", required=True, type=click.Path(), help="Workload config file (YAML/JSON)")
@click.option("--service", "services", multiple=True, help="Only update this service (repeatable)")
def aws_update_task_definitions(config_path: str, services: Tuple[str, ...]):
    """Register new task definition revisions and redeploy the services."""
    config = _load(load_aws_config, config_path)
    updater = _checked(WorkloadUpdater, config, AwsClients(config.region), list(services))
    _execute(
        "aws-update",
        updater.steps(),
        _settings(config),
        sections=updater.details_sections(),
    )


@aws.command("grant-rds-role")
@click.option("--config", "config_path", required=True, type=click.Path(), help="Workload config file (YAML/JSON)")
@click.option("--role-arn", "role_arns", multiple=True,
              help="Role in a connected account the tasks may assume (repeatable)")
def aws_grant_rds_role(config_path: str, role_arns: Tuple[str, ...]):
    """Let the task role assume database roles in connected accounts."""
    config = _load(load_aws_config, config_path)
    steps = _checked(build_rds_policy_steps, config, AwsClients(config.region), list(role_arns))
    _execute("aws-grant-rds-role", steps, _settings(config), title="Policy Details")


@main.group()
def gcp():
    """GKE stack on GCP."""


@gcp.command("provision")
@click.option("--config", "config_path", required=True, type=click.Path(), help="GCP config file (YAML/JSON)")
def gcp_provision(config_path: str):
    """Create network, cluster and supporting resources."""
    config = _load(load_gcp_config, config_path)
    _execute("gcp-provision", build_infrastructure_steps(config, Gcloud(config.project_id)), _settings(config))


@gcp.command("cleanup")
@click.option("--config", "config_path", required=True, type=click.Path(), help="GCP config file (YAML/JSON)")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def gcp_cleanup(config_path: str, yes: bool):
    """Delete all JIT resources in the project."""
    config = _load(load_gcp_config, config_path)
    if not yes:
        click.confirm(f"Delete ALL {config.prefix} JIT resources in project {config.project_id}?", abort=True)
    _execute("gcp-cleanup", build_gcp_cleanup_steps(config, Gcloud(config.project_id)), _settings(config),
             title="Remaining Resources")


@gcp.command("workloads")
@click.option("--config", "config_path", required=True, type=click.Path(), help="GCP config file (YAML/JSON)")
def gcp_workloads(config_path: str):
    """Deploy the JIT services onto the GKE cluster."""
    config = _load(load_gcp_config, config_path)
    _execute("gcp-workloads", build_workload_steps(config, Gcloud(config.project_id), Kubectl()), _settings(config))


@gcp.command("psc")
@click.option("--config", "config_path", required=True, type=click.Path(), help="GCP config file (YAML/JSON)")
def gcp_psc(config_path: str):
    """Create Private Service Connect endpoints to the configured Cloud SQL instances."""
    config = _load(load_gcp_config, config_path)
    steps = _checked(build_psc_steps, config, Gcloud(config.project_id))
    _execute("gcp-psc", steps, _settings(config), title="PSC Endpoints")


@main.command("runs")
def runs_cmd():
    """List recorded runs, most recent first."""
    rows = []
    for run_id in list_runs():
        try:
            flow = read_run_json(run_id).get("flow") or flow_of_run(run_id)
        except FileNotFoundError:
            flow = flow_of_run(run_id)
        rows.append({"run_id": run_id, "flow": flow, "status": get_status_from_events(run_id)})

    if _wants_json():
        _json_output({"runs": rows})
        return
    if not rows:
        click.echo("No runs recorded")
        return
    for row in rows:
        click.echo(f"{row['run_id']}  {row['flow']:<20} {row['status']}")


@main.command("status")
@click.argument("run_id")
def status_cmd(run_id: str):
    """Show the status of a run."""
    if not is_valid_run_id(run_id):
        click.echo(f"Invalid run ID: {run_id}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    try:
        run = read_run_json(run_id)
    except FileNotFoundError:
        click.echo(f"Run {run_id} not found", err=True)
        sys.exit(1)

    status = get_status_from_events(run_id)
    last_event = get_last_event(run_id)
    resources = read_registry_json(run_id).to_list()

    if _wants_json():
        _json_output({
            "run_id": run_id,
            "flow": run.get("flow"),
            "status": status,
            "created_at": run.get("created_at"),
            "last_event": last_event,
            "resources": resources,
        })
        return

    click.echo(f"🆔 Run ID: {run_id}")
    click.echo(f"🔧 Flow: {run.get('flow')}")
    click.echo(f"📊 Status: {status.upper()}")

    failed = [e["data"] for e in read_events(run_id) if e.get("type") == "STEP_FAILED"]
    if failed:
        click.echo("\n❌ Failed steps:")
        for data in failed:
            click.echo(f"  • {data.get('step')}: {data.get('reason')}")

    if resources:
        click.echo("\n📦 Resources:")
        for item in resources:
            click.echo(f"  • {item.get('name') or item.get('id')}: {item.get('id')}")


@main.command("forget")
@click.argument("run_id")
def forget_cmd(run_id: str):
    """Delete the local records of a run (cloud resources are untouched)."""
    if not is_valid_run_id(run_id):
        click.echo(f"Invalid run ID: {run_id}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)
    if run_id not in list_runs():
        click.echo(f"Run {run_id} not found", err=True)
        sys.exit(1)

    remove_run(run_id)
    if _wants_json():
        _json_output({"run_id": run_id, "removed": True})
    else:
        click.echo(f"🗑️  Removed run {run_id}")


if __name__ == "__main__":
    main()
