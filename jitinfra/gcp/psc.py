"""
Private Service Connect endpoints that let the JIT network reach Cloud SQL
instances in other projects.

Per configured instance: enable PSC for the JIT project, wait for the
service attachment, find or create a subnet in the instance's region,
reserve the endpoint IP and create the forwarding rule.
"""

import ipaddress
import logging
from typing import List, Optional

from ..config import GcpConfig, PscEndpoint
from ..errors import ActionFailure, ConfigError
from ..poller import Check, PollSpec, READY, not_ready
from ..sequencer import Step
from ..state import ResourceHandle, ResourceKind, ResourceRegistry
from .gcloud import Gcloud

logger = logging.getLogger(__name__)

# Tried in order for a new regional subnet.
PSC_SUBNET_RANGES = ["10.238.0.0/16", "10.239.0.0/16", "10.240.0.0/16", "10.241.0.0/16"]

ATTACHMENT_ATTEMPTS, ATTACHMENT_INTERVAL = 30, 10


def free_range(existing: List[str]) -> Optional[str]:
    """First candidate range overlapping none of ``existing``."""
    taken = [ipaddress.ip_network(cidr, strict=False) for cidr in existing]
    for candidate in PSC_SUBNET_RANGES:
        network = ipaddress.ip_network(candidate)
        if not any(network.overlaps(other) for other in taken):
            return candidate
    return None


def service_attachment(gcloud: Gcloud, instance: str) -> str:
    return gcloud.run(
        "sql", "instances", "describe", instance, "--format=value(pscServiceAttachmentLink)",
    ).strip()


def service_attachment_ready(gcloud: Gcloud, instance: str) -> Check:
    try:
        link = service_attachment(gcloud, instance)
    except ActionFailure as e:
        return not_ready(str(e))
    return READY if link else not_ready("no service attachment yet")


class PscEndpoints:
    """Builds the per-instance PSC steps."""

    def __init__(self, config: GcpConfig, gcloud: Gcloud):
        self.config = config
        self.gcloud = gcloud

    def region_of(self, endpoint: PscEndpoint) -> str:
        return endpoint.region or self.config.region

    def enable_psc(self, endpoint: PscEndpoint, registry: ResourceRegistry) -> None:
        db = self.gcloud.for_project(endpoint.db_project)
        logger.info(f"Enabling PSC on Cloud SQL instance {endpoint.db_instance}...")
        db.run(
            "sql", "instances", "patch", endpoint.db_instance,
            "--enable-private-service-connect",
            f"--allowed-psc-projects={self.config.project_id}",
            "--quiet",
        )
        labels = ",".join([
            f"psc_primary_ip={endpoint.ip_address.replace('.', '_')}",
            f"psc_consumer_project={self.config.project_id}",
            f"psc_region={self.region_of(endpoint)}",
        ])
        db.run("beta", "sql", "instances", "patch", endpoint.db_instance, f"--update-labels={labels}", "--quiet")

    def find_subnet(self, endpoint: PscEndpoint, registry: ResourceRegistry) -> ResourceHandle:
        """
        A subnet of the JIT network in the endpoint's region, created on the
        first free candidate range when the region has none.

        Raises:
            ActionFailure: If every candidate range is already used
        """
        region = self.region_of(endpoint)
        network = f"--network={self.config.network_name}"
        logger.info(f"Looking for subnet in {region}...")
        found = self.gcloud.names(
            "compute", "networks", "subnets", "list", network,
            f"--filter=region:{region}", "--format=value(name)", "--limit=1",
        )
        key = f"psc_subnet:{endpoint.db_instance}"
        if found:
            logger.info(f"Found subnet: {found[0]}")
            return ResourceHandle(kind=ResourceKind.SUBNET, id=found[0], region=region, name=key)

        existing = self.gcloud.names(
            "compute", "networks", "subnets", "list", network, "--format=value(ipCidrRange)",
        )
        cidr = free_range(existing)
        if cidr is None:
            raise ActionFailure(f"No free range for a PSC subnet in {region} (tried {', '.join(PSC_SUBNET_RANGES)})")

        name = f"{self.config.prefix}-jit-subnet-{region}"
        logger.info(f"Creating subnet {name} ({cidr})...")
        self.gcloud.run(
            "compute", "networks", "subnets", "create", name, network,
            f"--region={region}", f"--range={cidr}", "--enable-private-ip-google-access", "--quiet",
        )
        return ResourceHandle(kind=ResourceKind.SUBNET, id=name, region=region, name=key)

    def reserve_address(self, endpoint: PscEndpoint, registry: ResourceRegistry) -> ResourceHandle:
        region = self.region_of(endpoint)
        subnet = registry.id_of(f"psc_subnet:{endpoint.db_instance}")
        name = endpoint.address_name
        logger.info(f"Reserving {endpoint.ip_address} as {name}...")
        if not self.gcloud.exists("compute", "addresses", "describe", name, f"--region={region}"):
            self.gcloud.run(
                "compute", "addresses", "create", name,
                f"--region={region}", f"--subnet={subnet}", f"--addresses={endpoint.ip_address}", "--quiet",
            )
        return ResourceHandle(kind=ResourceKind.ADDRESS, id=name, region=region, name=f"psc_ip:{endpoint.db_instance}")

    def create_endpoint(self, endpoint: PscEndpoint, registry: ResourceRegistry) -> ResourceHandle:
        region = self.region_of(endpoint)
        name = endpoint.endpoint_name
        if self.gcloud.exists("compute", "forwarding-rules", "describe", name, f"--region={region}"):
            logger.info(f"Endpoint {name} already exists")
        else:
            attachment = service_attachment(self.gcloud.for_project(endpoint.db_project), endpoint.db_instance)
            if not attachment:
                raise ActionFailure(f"Cloud SQL instance {endpoint.db_instance} has no service attachment")
            logger.info(f"Creating PSC endpoint {name}...")
            self.gcloud.run(
                "compute", "forwarding-rules", "create", name,
                f"--address={endpoint.address_name}",
                f"--region={region}",
                f"--network={self.config.network_name}",
                f"--target-service-attachment={attachment}",
                "--allow-psc-global-access",
                "--quiet",
            )
        ip = self.gcloud.run(
            "compute", "forwarding-rules", "describe", name, f"--region={region}", "--format=value(IPAddress)",
        ).strip()
        logger.info(f"PSC endpoint {name} ready at {ip}")
        return ResourceHandle(
            kind=ResourceKind.FORWARDING_RULE, id=name, region=region, name=f"psc_endpoint:{endpoint.db_instance}",
        )

    def endpoint_steps(self, endpoint: PscEndpoint) -> List[Step]:
        instance = endpoint.db_instance
        attachment = PollSpec(
            predicate=lambda: service_attachment_ready(self.gcloud.for_project(endpoint.db_project), instance),
            interval=ATTACHMENT_INTERVAL,
            max_attempts=ATTACHMENT_ATTEMPTS,
            description=f"service attachment of {instance}",
        )
        return [
            Step(f"Enable PSC on {instance}", lambda registry: self.enable_psc(endpoint, registry), poll=attachment),
            Step(f"Find subnet for {instance}", lambda registry: self.find_subnet(endpoint, registry)),
            Step(f"Reserve IP for {instance}", lambda registry: self.reserve_address(endpoint, registry)),
            Step(f"Create PSC endpoint for {instance}", lambda registry: self.create_endpoint(endpoint, registry)),
        ]

    def steps(self) -> List[Step]:
        if not self.config.psc_endpoints:
            raise ConfigError("No psc_endpoints configured")
        steps = []
        for endpoint in self.config.psc_endpoints:
            steps.extend(self.endpoint_steps(endpoint))
        return steps


def build_psc_steps(config: GcpConfig, gcloud: Gcloud) -> List[Step]:
    return PscEndpoints(config, gcloud).steps()
