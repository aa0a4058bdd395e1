"""
jitinfra - provisioning and teardown of the JIT database access stack.

This package provides a CLI that builds, tags and removes the AWS
ECS/Fargate workload (with optional VPC peering) and the GCP GKE stack
as ordered, polled steps.
"""

__version__ = "0.1.0"
