"""
AWS flows: workload provisioning and updates, cleanup, VPC peering,
re-tagging and RDS role grants.
"""

from .cleanup import build_cleanup_steps
from .clients import AwsClients
from .peering import build_peering_cleanup_steps, build_peering_steps
from .provision import build_provision_steps
from .retag import build_retag_steps
from .update import build_rds_policy_steps, build_update_steps

__all__ = [
    "AwsClients",
    "build_cleanup_steps",
    "build_peering_cleanup_steps",
    "build_peering_steps",
    "build_provision_steps",
    "build_rds_policy_steps",
    "build_retag_steps",
    "build_update_steps",
]
