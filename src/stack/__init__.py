"""AWS VPC stack lifecycle: create, gated teardown, delete."""

from stack.create import ResourceStack, stack_region
from stack.delete import StackDeleter, delete_environment
from stack.ec2 import StackError, make_client, make_elb_client
from stack.gate import (
    GateFormatError,
    JobStatusError,
    TeardownBlocked,
    TeardownGate,
    check_jobs_completed,
    cleanup_vpcs,
    validate_repository,
    validate_run_id,
)

__all__ = [
    'ResourceStack',
    'stack_region',
    'StackDeleter',
    'delete_environment',
    'StackError',
    'make_client',
    'make_elb_client',
    'GateFormatError',
    'JobStatusError',
    'TeardownBlocked',
    'TeardownGate',
    'check_jobs_completed',
    'cleanup_vpcs',
    'validate_repository',
    'validate_run_id',
]
