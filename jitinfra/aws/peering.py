"""
VPC peering between the workload VPC and database VPCs.

For each configured link the flow creates the peering connection, waits
for it to become active, routes the accepter CIDR through it from every
requester route table and opens the database ports on the ECS security
group. A short record of each link is appended to the peering details
file.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

from botocore.exceptions import ClientError

from ..config import PeeringConfig, PeeringLink
from ..errors import ActionFailure
from ..sequencer import Step, cleanup_step
from ..state import ResourceHandle, ResourceKind, ResourceRegistry
from ..tags import load_tags_file, resolve_tags, to_tag_specifications
from . import waiters
from .clients import AwsClients, is_already_exists, is_not_found

logger = logging.getLogger(__name__)

DETAILS_SEPARATOR = "-" * 40


def peering_key(link: PeeringLink) -> str:
    return f"peering:{link.peering_name}"


def peering_tag_name(link: PeeringLink) -> str:
    return f"{link.peering_name}-peering"


def route_table_ids(ec2, vpc_id: str) -> List[str]:
    response = ec2.describe_route_tables(Filters=[{"Name": "vpc-id", "Values": [vpc_id]}])
    return [table["RouteTableId"] for table in response.get("RouteTables", [])]


def append_peering_details(path: Union[str, Path], link: PeeringLink, peering_id: str) -> None:
    """Append one link's record to the peering details file."""
    lines = [
        f"Peering Details for {link.peering_name}:",
        f"Peering ID: {peering_id}",
        f"Requester VPC: {link.requester_vpc_id}",
        f"Accepter VPC: {link.accepter_vpc_id}",
        f"Accepter CIDR: {link.accepter_cidr}",
        DETAILS_SEPARATOR,
    ]
    with open(path, "a") as f:
        f.write("\n".join(lines) + "\n")


class PeeringFlow:
    """Builds setup and teardown steps for the configured peering links."""

    def __init__(self, config: PeeringConfig, clients: AwsClients):
        self.config = config
        self.clients = clients
        self.user_tags: Optional[Dict[str, str]] = (
            load_tags_file(config.tags_file) if config.tags_file else None
        )

    def _ingress_permissions(self, link: PeeringLink) -> List[Dict]:
        return [
            {
                "IpProtocol": "tcp",
                "FromPort": port,
                "ToPort": port,
                "IpRanges": [{"CidrIp": link.accepter_cidr}],
            }
            for port in self.config.database_ports
        ]

    # Setup

    def create_peering(self, link: PeeringLink, registry: ResourceRegistry) -> ResourceHandle:
        logger.info(f"Creating VPC Peering connection from {link.requester_vpc_id} to {link.accepter_vpc_id}...")
        tags = resolve_tags(
            ResourceKind.PEERING_CONNECTION, peering_tag_name(link), self.user_tags, self.config.project_name
        )
        response = self.clients.ec2.create_vpc_peering_connection(
            VpcId=link.requester_vpc_id,
            PeerOwnerId=link.accepter_account_id,
            PeerVpcId=link.accepter_vpc_id,
            PeerRegion=link.accepter_region,
            TagSpecifications=to_tag_specifications("vpc-peering-connection", tags),
        )
        peering_id = response.get("VpcPeeringConnection", {}).get("VpcPeeringConnectionId")
        if not peering_id:
            raise ActionFailure("Failed to create VPC peering connection. Please check the parameters.")
        logger.info(f"Created peering connection: {peering_id}")
        return ResourceHandle(
            kind=ResourceKind.PEERING_CONNECTION, id=peering_id, region=self.config.region, name=peering_key(link)
        )

    def add_routes(self, link: PeeringLink, registry: ResourceRegistry) -> None:
        ec2 = self.clients.ec2
        peering_id = registry.id_of(peering_key(link))
        logger.info(f"Updating route tables for VPC {link.requester_vpc_id}...")
        for table_id in route_table_ids(ec2, link.requester_vpc_id):
            logger.info(f"Adding route to route table {table_id}...")
            try:
                ec2.create_route(
                    RouteTableId=table_id,
                    DestinationCidrBlock=link.accepter_cidr,
                    VpcPeeringConnectionId=peering_id,
                )
            except ClientError as e:
                if not is_already_exists(e):
                    raise
                logger.info(f"Route to {link.accepter_cidr} already exists in {table_id}")

    def open_database_ports(self, link: PeeringLink, registry: ResourceRegistry) -> None:
        logger.info(f"Updating security group {link.ecs_security_group_id}...")
        for permission in self._ingress_permissions(link):
            try:
                self.clients.ec2.authorize_security_group_ingress(
                    GroupId=link.ecs_security_group_id, IpPermissions=[permission]
                )
            except ClientError as e:
                if not is_already_exists(e):
                    raise
                logger.info(f"Port {permission['FromPort']} already open for {link.accepter_cidr}")

    def record_details(self, link: PeeringLink, registry: ResourceRegistry) -> None:
        append_peering_details(self.config.details_file, link, registry.id_of(peering_key(link)))

    def steps(self) -> List[Step]:
        ec2 = self.clients.ec2
        steps = []
        for link in self.config.vpc_peerings:
            name = link.peering_name
            steps += [
                Step(f"Create VPC peering {name}", lambda registry, link=link: self.create_peering(link, registry),
                     poll=lambda registry, link=link: waiters.peering_spec(ec2, registry.id_of(peering_key(link)))),
                Step(f"Add routes for {name}", lambda registry, link=link: self.add_routes(link, registry)),
                Step(f"Open database ports for {name}",
                     lambda registry, link=link: self.open_database_ports(link, registry)),
                Step(f"Record peering details for {name}",
                     lambda registry, link=link: self.record_details(link, registry)),
            ]
        return steps

    # Teardown

    def find_peering_id(self, link: PeeringLink) -> Optional[str]:
        response = self.clients.ec2.describe_vpc_peering_connections(Filters=[
            {"Name": "tag:Name", "Values": [peering_tag_name(link)]},
            {"Name": "requester-vpc-info.vpc-id", "Values": [link.requester_vpc_id]},
        ])
        for connection in response.get("VpcPeeringConnections", []):
            if connection.get("Status", {}).get("Code") not in ("deleted", "deleting", "rejected", "failed"):
                return connection["VpcPeeringConnectionId"]
        return None

    def remove_routes(self, link: PeeringLink, registry: ResourceRegistry) -> None:
        """Delete the requester routes that target this link's peering connection."""
        ec2 = self.clients.ec2
        peering_id = self.find_peering_id(link)
        if not peering_id:
            logger.info(f"VPC peering {peering_tag_name(link)} not found - no routes to remove")
            return

        response = ec2.describe_route_tables(Filters=[{"Name": "vpc-id", "Values": [link.requester_vpc_id]}])
        for table in response.get("RouteTables", []):
            table_id = table["RouteTableId"]
            for route in table.get("Routes", []):
                destination = route.get("DestinationCidrBlock")
                if route.get("VpcPeeringConnectionId") != peering_id or not destination:
                    continue
                logger.info(f"Deleting route to {destination} via {peering_id} from {table_id}")
                try:
                    ec2.delete_route(RouteTableId=table_id, DestinationCidrBlock=destination)
                except ClientError as e:
                    if not is_not_found(e):
                        raise

    def close_database_ports(self, link: PeeringLink, registry: ResourceRegistry) -> None:
        logger.info(f"Revoking database ports on {link.ecs_security_group_id}")
        try:
            self.clients.ec2.revoke_security_group_ingress(
                GroupId=link.ecs_security_group_id, IpPermissions=self._ingress_permissions(link)
            )
        except ClientError as e:
            if not is_not_found(e):
                raise

    def delete_peering(self, link: PeeringLink, registry: ResourceRegistry) -> None:
        peering_id = self.find_peering_id(link)
        if not peering_id:
            logger.info(f"VPC peering {peering_tag_name(link)} not found - skipping")
        else:
            logger.info(f"Deleting VPC peering connection: {peering_id}")
            self.clients.ec2.delete_vpc_peering_connection(VpcPeeringConnectionId=peering_id)
        registry.discard(peering_key(link))

    def cleanup_steps(self) -> List[Step]:
        steps = []
        for link in self.config.vpc_peerings:
            name = link.peering_name
            steps += [
                cleanup_step(f"Remove routes for {name}", lambda registry, link=link: self.remove_routes(link, registry)),
                cleanup_step(f"Close database ports for {name}",
                             lambda registry, link=link: self.close_database_ports(link, registry)),
                cleanup_step(f"Delete VPC peering {name}",
                             lambda registry, link=link: self.delete_peering(link, registry)),
            ]
        return steps


def build_peering_steps(config: PeeringConfig, clients: AwsClients) -> List[Step]:
    return PeeringFlow(config, clients).steps()


def build_peering_cleanup_steps(config: PeeringConfig, clients: AwsClients) -> List[Step]:
    return PeeringFlow(config, clients).cleanup_steps()
