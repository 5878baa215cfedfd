"""Driver configuration.

All ambient inputs (environment variables, CLI flags) are resolved once at
the command-line boundary into a DriverConfig, which is then passed to each
component. Core code never reads os.environ.

Resolution order for every setting:
1. Explicit flag (CLI argument)
2. Environment variable
3. Built-in default
"""

import enum
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

import yaml

from deadline import DEFAULT_TARGET_TIMEOUT


class ConfigError(Exception):
    """Configuration error."""


class HostKeyPolicy(enum.Enum):
    """How the SSH client treats remote host keys.

    ACCEPT_ANY skips verification entirely. Hosts launched by the stack mint
    fresh keys at boot, so there is no prior key to pin against.
    KNOWN_HOSTS verifies against a known_hosts file.
    """
    ACCEPT_ANY = 'accept-any'
    KNOWN_HOSTS = 'known-hosts'


# CI variable -> correlation tag key
CI_TAG_VARIABLES = (
    ('GITHUB_SHA', 'CommitSHA'),
    ('GITHUB_ACTOR', 'Actor'),
    ('GITHUB_REF_NAME', 'Branch'),
    ('GITHUB_REPOSITORY', 'GitHubRepository'),
    ('GITHUB_RUN_ID', 'GitHubRunId'),
    ('GITHUB_RUN_NUMBER', 'GitHubRunNumber'),
    ('GITHUB_JOB', 'GitHubJob'),
    ('GITHUB_RUN_ATTEMPT', 'GitHubRunAttempt'),
)

PROJECT_NAME = 'testbed'


@dataclass
class DriverConfig:
    """Resolved driver settings.

    Attributes:
        region: AWS region used when the environment spec names none
        github_token: Token for the job-status query; empty disables the gate check
        ssh_key: Private key used for every remote shell
        ssh_user: Default remote user (environment auth/username wins)
        ssh_port: Remote SSH port
        host_key_policy: Host key trust mode
        known_hosts_file: Used with HostKeyPolicy.KNOWN_HOSTS
        call_timeout: Per-API-call connect/read timeout in seconds
        target_timeout: Deadline for one target's whole sequence in seconds
        connect_attempts: SSH connect attempts before giving up
        connect_delay: Seconds between SSH connect attempts
        vpc_delete_attempts: VPC delete attempts
        vpc_delete_delay: Seconds between VPC delete attempts
        discover_caller_ip: Add the caller's public IP to the SG ingress
        ci_metadata: CI correlation values keyed by tag name
        state_dir: Directory holding environment state files
    """
    region: str = ''
    github_token: str = ''
    ssh_key: Path = field(default_factory=lambda: Path.home() / '.ssh' / 'id_rsa')
    ssh_user: str = 'ubuntu'
    ssh_port: int = 22
    host_key_policy: HostKeyPolicy = HostKeyPolicy.ACCEPT_ANY
    known_hosts_file: Optional[Path] = None
    call_timeout: float = 30.0
    target_timeout: float = DEFAULT_TARGET_TIMEOUT
    connect_attempts: int = 20
    connect_delay: float = 1.0
    vpc_delete_attempts: int = 3
    vpc_delete_delay: float = 30.0
    discover_caller_ip: bool = True
    ci_metadata: dict = field(default_factory=dict)
    state_dir: Path = field(default_factory=lambda: Path.home() / '.cache' / PROJECT_NAME)

    def __post_init__(self):
        if isinstance(self.ssh_key, str):
            self.ssh_key = Path(self.ssh_key)
        if isinstance(self.state_dir, str):
            self.state_dir = Path(self.state_dir)
        if isinstance(self.known_hosts_file, str):
            self.known_hosts_file = Path(self.known_hosts_file)
        if self.host_key_policy == HostKeyPolicy.KNOWN_HOSTS and not self.known_hosts_file:
            raise ConfigError("host key policy 'known-hosts' requires a known_hosts file")
        if self.target_timeout <= 0:
            raise ConfigError(f"timeout must be positive, got {self.target_timeout}")

    def state_file(self, name: str) -> Path:
        """Path of the state file for environment name."""
        return self.state_dir / f'{name}.yaml'


def _pick(flags: Mapping, environ: Mapping, flag: str, *env_vars: str):
    """Return the flag value if set, else the first non-empty env var, else None."""
    value = flags.get(flag)
    if value not in (None, ''):
        return value
    for var in env_vars:
        if env_value := environ.get(var):
            return env_value
    return None


def _as_float(value, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be a number, got '{value}'") from e


def resolve_config(flags: Optional[Mapping] = None, environ: Optional[Mapping] = None) -> DriverConfig:
    """Build a DriverConfig from flags and environment variables.

    Args:
        flags: Parsed CLI values keyed by DriverConfig field name; None means unset
        environ: Environment mapping (defaults to os.environ)

    Raises:
        ConfigError: A value is malformed
    """
    flags = dict(flags or {})
    environ = os.environ if environ is None else environ
    kwargs: dict = {}

    if region := _pick(flags, environ, 'region', 'AWS_REGION', 'AWS_DEFAULT_REGION'):
        kwargs['region'] = region
    if token := _pick(flags, environ, 'github_token', 'GITHUB_TOKEN'):
        kwargs['github_token'] = token
    if ssh_key := _pick(flags, environ, 'ssh_key', 'TESTBED_SSH_KEY'):
        kwargs['ssh_key'] = Path(ssh_key).expanduser()
    if ssh_user := _pick(flags, environ, 'ssh_user', 'TESTBED_SSH_USER'):
        kwargs['ssh_user'] = ssh_user
    if state_dir := _pick(flags, environ, 'state_dir', 'TESTBED_STATE_DIR'):
        kwargs['state_dir'] = Path(state_dir).expanduser()
    if (timeout := _pick(flags, environ, 'target_timeout', 'TESTBED_TIMEOUT')) is not None:
        kwargs['target_timeout'] = _as_float(timeout, 'timeout')
    if (call_timeout := _pick(flags, environ, 'call_timeout', 'TESTBED_CALL_TIMEOUT')) is not None:
        kwargs['call_timeout'] = _as_float(call_timeout, 'call timeout')

    if policy := _pick(flags, environ, 'host_key_policy', 'TESTBED_HOST_KEY_POLICY'):
        try:
            kwargs['host_key_policy'] = HostKeyPolicy(policy)
        except ValueError as e:
            choices = ', '.join(p.value for p in HostKeyPolicy)
            raise ConfigError(f"Unknown host key policy '{policy}' (expected one of: {choices})") from e
    if known_hosts := _pick(flags, environ, 'known_hosts_file', 'TESTBED_KNOWN_HOSTS'):
        kwargs['known_hosts_file'] = Path(known_hosts).expanduser()

    if flags.get('discover_caller_ip') is not None:
        kwargs['discover_caller_ip'] = bool(flags['discover_caller_ip'])

    ci_metadata = {}
    for var, tag in CI_TAG_VARIABLES:
        ci_metadata[tag] = environ.get(var, '')
    # Short SHA
    ci_metadata['CommitSHA'] = ci_metadata['CommitSHA'][:8]
    kwargs['ci_metadata'] = ci_metadata

    return DriverConfig(**kwargs)


def correlation_tags(config: DriverConfig, name: str, instance_id: str = '') -> list[dict]:
    """Tags applied to every created resource.

    GitHubRepository and GitHubRunId are what the teardown gate reads back.
    """
    tags = [
        {'Key': 'Product', 'Value': 'Cloud Native'},
        {'Key': 'Name', 'Value': name},
        {'Key': 'Project', 'Value': PROJECT_NAME},
        {'Key': 'Environment', 'Value': 'cicd'},
    ]
    for _var, tag in CI_TAG_VARIABLES:
        tags.append({'Key': tag, 'Value': config.ci_metadata.get(tag, '')})
    if instance_id:
        tags.append({'Key': 'testbed-instance-id', 'Value': instance_id})
    return tags


def load_environment_file(path: Path) -> dict:
    """Parse an environment definition YAML file into a plain dict."""
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Environment file not found: {path}")
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Environment file {path} must contain a mapping")
    return data
