"""Environment record: desired spec, observed status, and YAML persistence.

The status properties are the only ledger of created cloud resources.
Teardown locates everything it deletes from them, so they are saved after
every create step.
"""

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

PROVIDER_AWS = 'aws'
PROVIDER_SSH = 'ssh'

ROLE_CONTROL_PLANE = 'control-plane'
ROLE_WORKER = 'worker'

INSTANCE_LABEL_KEY = 'testbed-instance-id'

# Status property names
VPC_ID = 'vpc-id'
SUBNET_ID = 'subnet-id'
INTERNET_GATEWAY_ID = 'internet-gateway-id'
INTERNET_GATEWAY_ATTACHMENT = 'internet-gateway-attachment-vpc-id'
ROUTE_TABLE_ID = 'route-table-id'
SECURITY_GROUP_ID = 'security-group-id'
INSTANCE_ID = 'instance-id'
PUBLIC_DNS_NAME = 'public-dns-name'
LOAD_BALANCER_ARN = 'load-balancer-arn'
TARGET_GROUP_ARN = 'target-group-arn'
LISTENER_ARN = 'listener-arn'

STACK_PROPERTIES = (
    VPC_ID,
    SUBNET_ID,
    INTERNET_GATEWAY_ID,
    INTERNET_GATEWAY_ATTACHMENT,
    ROUTE_TABLE_ID,
    SECURITY_GROUP_ID,
    INSTANCE_ID,
    PUBLIC_DNS_NAME,
    LOAD_BALANCER_ARN,
    TARGET_GROUP_ARN,
    LISTENER_ARN,
)


class StateError(Exception):
    """State file could not be read or written."""


def _from_fields(cls, data: Optional[dict]):
    """Build a flat dataclass from a dict, ignoring unknown keys."""
    data = data or {}
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in names})


@dataclass
class Auth:
    key_name: str = ''
    username: str = 'ubuntu'
    public_key: str = ''
    private_key: str = ''


@dataclass
class ImageSpec:
    """Either a resolved image_id or a selector (name pattern, owner, architecture)."""
    image_id: str = ''
    name: str = ''
    owner: str = ''
    architecture: str = 'x86_64'


@dataclass
class InstanceSpec:
    type: str = 'g4dn.xlarge'
    region: str = ''
    image: ImageSpec = field(default_factory=ImageSpec)
    ingress_ip_ranges: list = field(default_factory=list)
    host_url: str = ''
    root_volume_size_gb: int = 64

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'InstanceSpec':
        data = dict(data or {})
        image = ImageSpec(**data.pop('image', {}) or {})
        spec = _from_fields(cls, data)
        spec.image = image
        return spec


@dataclass
class KernelSpec:
    version: str = ''


@dataclass
class DriverSpec:
    install: bool = False
    version: str = ''
    branch: str = ''


@dataclass
class RuntimeSpec:
    install: bool = False
    name: str = 'containerd'
    version: str = ''


@dataclass
class ToolkitSpec:
    install: bool = False
    version: str = ''
    enable_cdi: bool = False


@dataclass
class KubernetesSpec:
    install: bool = False
    installer: str = 'kubeadm'
    version: str = 'v1.31.1'
    kube_config: str = ''
    kind_config: str = ''
    feature_gates: list = field(default_factory=list)
    endpoint_host: str = ''


@dataclass
class NodePoolSpec:
    count: int = 1
    instance_type: str = ''
    dedicated: bool = False
    labels: dict = field(default_factory=dict)


@dataclass
class ClusterSpec:
    region: str = ''
    control_plane: NodePoolSpec = field(default_factory=NodePoolSpec)
    workers: Optional[NodePoolSpec] = None
    high_availability: bool = False

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional['ClusterSpec']:
        if not data:
            return None
        workers = data.get('workers')
        return cls(
            region=data.get('region', ''),
            control_plane=_from_fields(NodePoolSpec, data.get('control_plane')),
            workers=_from_fields(NodePoolSpec, workers) if workers else None,
            high_availability=bool(data.get('high_availability', False)),
        )


@dataclass
class EnvironmentSpec:
    provider: str = PROVIDER_AWS
    auth: Auth = field(default_factory=Auth)
    instance: InstanceSpec = field(default_factory=InstanceSpec)
    kernel: KernelSpec = field(default_factory=KernelSpec)
    nvidia_driver: DriverSpec = field(default_factory=DriverSpec)
    container_runtime: RuntimeSpec = field(default_factory=RuntimeSpec)
    nvidia_container_toolkit: ToolkitSpec = field(default_factory=ToolkitSpec)
    kubernetes: KubernetesSpec = field(default_factory=KubernetesSpec)
    cluster: Optional[ClusterSpec] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'EnvironmentSpec':
        data = data or {}
        provider = data.get('provider', PROVIDER_AWS)
        if provider not in (PROVIDER_AWS, PROVIDER_SSH):
            raise StateError(f"Unknown provider '{provider}' (expected aws or ssh)")
        return cls(
            provider=provider,
            auth=_from_fields(Auth, data.get('auth')),
            instance=InstanceSpec.from_dict(data.get('instance')),
            kernel=_from_fields(KernelSpec, data.get('kernel')),
            nvidia_driver=_from_fields(DriverSpec, data.get('nvidia_driver')),
            container_runtime=_from_fields(RuntimeSpec, data.get('container_runtime')),
            nvidia_container_toolkit=_from_fields(ToolkitSpec, data.get('nvidia_container_toolkit')),
            kubernetes=_from_fields(KubernetesSpec, data.get('kubernetes')),
            cluster=ClusterSpec.from_dict(data.get('cluster')),
        )


@dataclass
class Condition:
    type: str
    status: str = 'Unknown'
    reason: str = ''
    message: str = ''
    last_transition_time: str = ''


@dataclass
class Node:
    """A provisioning target, either launched by the stack or supplied directly."""
    name: str
    role: str = ROLE_WORKER
    public_ip: str = ''
    private_ip: str = ''
    phase: str = ''
    ssh_username: str = ''
    instance_id: str = ''


@dataclass
class ClusterStatus:
    nodes: list[Node] = field(default_factory=list)
    control_plane_endpoint: str = ''
    load_balancer_dns: str = ''

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional['ClusterStatus']:
        if not data:
            return None
        return cls(
            nodes=[_from_fields(Node, n) for n in data.get('nodes', [])],
            control_plane_endpoint=data.get('control_plane_endpoint', ''),
            load_balancer_dns=data.get('load_balancer_dns', ''),
        )


@dataclass
class EnvironmentStatus:
    properties: list[dict] = field(default_factory=list)
    conditions: list[Condition] = field(default_factory=list)
    cluster: Optional[ClusterStatus] = None
    components: dict = field(default_factory=dict)

    def get_property(self, name: str) -> str:
        for prop in self.properties:
            if prop.get('name') == name:
                return prop.get('value', '')
        return ''

    def set_property(self, name: str, value: str) -> None:
        """Set a property in place, keeping insertion order."""
        for prop in self.properties:
            if prop.get('name') == name:
                prop['value'] = value
                return
        self.properties.append({'name': name, 'value': value})

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'EnvironmentStatus':
        data = data or {}
        return cls(
            properties=[dict(p) for p in data.get('properties', [])],
            conditions=[_from_fields(Condition, c) for c in data.get('conditions', [])],
            cluster=ClusterStatus.from_dict(data.get('cluster')),
            components=dict(data.get('components', {})),
        )


@dataclass
class Environment:
    """Named desired-state plus observed-state record."""
    name: str
    spec: EnvironmentSpec = field(default_factory=EnvironmentSpec)
    status: EnvironmentStatus = field(default_factory=EnvironmentStatus)
    labels: dict = field(default_factory=dict)

    @property
    def is_multinode(self) -> bool:
        return self.spec.cluster is not None

    @property
    def instance_id(self) -> str:
        return self.labels.get(INSTANCE_LABEL_KEY, '')

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        # Drop empty optional sections to keep files readable
        if d['spec']['cluster'] is None:
            del d['spec']['cluster']
        if d['status']['cluster'] is None:
            del d['status']['cluster']
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'Environment':
        if not data or not data.get('name'):
            raise StateError("Environment record requires a 'name'")
        return cls(
            name=data['name'],
            spec=EnvironmentSpec.from_dict(data.get('spec')),
            status=EnvironmentStatus.from_dict(data.get('status')),
            labels=dict(data.get('labels', {}) or {}),
        )


def load_environment(path: Path) -> Environment:
    """Load an Environment record from a YAML file.

    Raises:
        StateError: File missing, unreadable or malformed
    """
    path = Path(path)
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise StateError(f"Environment file not found: {path}") from e
    except yaml.YAMLError as e:
        raise StateError(f"Invalid YAML in {path}: {e}") from e
    env = Environment.from_dict(data)
    logger.debug(f"Loaded environment '{env.name}' from {path}")
    return env


def save_environment(env: Environment, path: Path) -> Path:
    """Write an Environment record as YAML with owner-only permissions."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o750)
    with open(path, 'w', encoding='utf-8') as f:
        yaml.safe_dump(env.to_dict(), f, default_flow_style=False, sort_keys=False)
    os.chmod(path, 0o600)
    logger.debug(f"Saved environment '{env.name}' to {path}")
    return path


class StateStore:
    """Persists one environment record to one file after every change."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None

    def save(self, env: Environment) -> None:
        if self.path is None:
            return
        save_environment(env, self.path)
