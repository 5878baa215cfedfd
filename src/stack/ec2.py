"""EC2 client construction and shared helpers for stack create and delete."""

import logging
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

logger = logging.getLogger(__name__)

DEFAULT_CALL_TIMEOUT = 30

# Error codes worth another attempt: throttling and eventual-consistency races
RETRYABLE_CODES = frozenset({
    'RequestLimitExceeded',
    'Throttling',
    'ThrottlingException',
    'DependencyViolation',
    'InvalidVpcID.NotFound',
    'InvalidSubnetID.NotFound',
    'InvalidGroup.NotFound',
    'InvalidInternetGatewayID.NotFound',
    'InvalidRouteTableID.NotFound',
    'InvalidInstanceID.NotFound',
})


class StackError(Exception):
    """Cloud lifecycle failure.

    Attributes:
        resource: Resource ID or class involved (e.g. 'vpc-0abc', 'security groups')
        operation: API operation or step name
    """

    def __init__(self, message: str, resource: str = '', operation: str = ''):
        self.resource = resource
        self.operation = operation
        super().__init__(message)


def _client(service: str, region: str, call_timeout: float):
    if not region:
        raise StackError("AWS region is not set (use --region or AWS_REGION)")
    config = Config(
        connect_timeout=call_timeout,
        read_timeout=call_timeout,
        retries={'max_attempts': 2, 'mode': 'standard'},
    )
    return boto3.client(service, region_name=region, config=config)


def make_client(region: str, call_timeout: float = DEFAULT_CALL_TIMEOUT):
    """EC2 client whose every call is bounded by call_timeout.

    botocore's own retries are limited to a couple of attempts so that
    RetryPolicy owns the retry budget.
    """
    return _client('ec2', region, call_timeout)


def make_elb_client(region: str, call_timeout: float = DEFAULT_CALL_TIMEOUT):
    """Elastic Load Balancing v2 client, bounded the same way as make_client."""
    return _client('elbv2', region, call_timeout)


def error_code(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return exc.response.get('Error', {}).get('Code', '')
    return ''


def is_retryable(exc: Exception) -> bool:
    """True for throttling, dependency and connection errors."""
    if isinstance(exc, ClientError):
        return error_code(exc) in RETRYABLE_CODES
    return isinstance(exc, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError))


def tag_specifications(resource_type: str, tags: list[dict]) -> list[dict]:
    return [{'ResourceType': resource_type, 'Tags': list(tags)}]


def tags_to_dict(tags: Optional[list]) -> dict:
    return {t['Key']: t.get('Value', '') for t in (tags or [])}


def get_tag_value(client, resource_id: str, key: str) -> str:
    """Value of one tag on a resource.

    Returns an empty string when the tag is absent. A failed query
    raises StackError and never returns a value.
    """
    try:
        resp = client.describe_tags(Filters=[
            {'Name': 'resource-id', 'Values': [resource_id]},
            {'Name': 'key', 'Values': [key]},
        ])
    except (ClientError, BotoCoreError) as e:
        raise StackError(
            f"failed to describe tags on {resource_id}: {e}",
            resource=resource_id, operation='DescribeTags',
        ) from e
    tags = resp.get('Tags', [])
    if not tags:
        return ''
    return tags[0].get('Value', '')
