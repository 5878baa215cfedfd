"""Resolve an image selector to a concrete image ID."""

import logging

from botocore.exceptions import BotoCoreError, ClientError

from environment import ImageSpec
from stack.ec2 import StackError

logger = logging.getLogger(__name__)

# Default selector: Ubuntu 22.04 from Canonical
DEFAULT_IMAGE_OWNER = '099720109477'
DEFAULT_IMAGE_NAME = 'ubuntu/images/hvm-ssd/ubuntu-jammy-22.04-{arch}-server-*'

_ARCH_ALIASES = {
    'amd64': 'x86_64',
    'x86_64': 'x86_64',
    'arm64': 'arm64',
    'aarch64': 'arm64',
}


def normalize_arch(arch: str) -> str:
    return _ARCH_ALIASES.get(arch.lower(), arch)


def _name_arch(arch: str) -> str:
    # Ubuntu image names say amd64 where EC2 says x86_64
    return 'amd64' if arch == 'x86_64' else arch


def resolve_image(client, image: ImageSpec, region: str = '') -> str:
    """Return image.image_id, or the newest available image matching the selector.

    A name pattern may contain '{arch}', which is filled with the
    architecture spelling used in image names.

    Raises:
        StackError: No image matches or the query failed
    """
    if image.image_id:
        return image.image_id

    arch = normalize_arch(image.architecture or 'x86_64')
    pattern = (image.name or DEFAULT_IMAGE_NAME).replace('{arch}', _name_arch(arch))
    owner = image.owner or DEFAULT_IMAGE_OWNER

    logger.info(f"Resolving image '{pattern}' (owner {owner}, {arch})...")
    try:
        resp = client.describe_images(
            Owners=[owner],
            Filters=[
                {'Name': 'name', 'Values': [pattern]},
                {'Name': 'architecture', 'Values': [arch]},
                {'Name': 'state', 'Values': ['available']},
            ],
        )
    except (ClientError, BotoCoreError) as e:
        raise StackError(f"failed to describe images: {e}", operation='DescribeImages') from e

    images = sorted(resp.get('Images', []), key=lambda i: i.get('CreationDate', ''), reverse=True)
    if not images or not images[0].get('ImageId'):
        where = f" in region {region}" if region else ''
        raise StackError(f"no images found matching '{pattern}'{where}", operation='DescribeImages')

    image_id = images[0]['ImageId']
    logger.info(f"Resolved image {image_id} ({images[0].get('Name', '')})")
    return image_id
