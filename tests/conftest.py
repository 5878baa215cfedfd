"""Shared pytest fixtures for testbed-driver tests."""

import re
import shlex
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import DriverConfig  # noqa: E402
from deadline import Deadline  # noqa: E402
from environment import Environment, EnvironmentSpec  # noqa: E402
from provisioner.remote import RemoteShellError  # noqa: E402


def client_error(code: str, operation: str = 'Operation', message: str = 'boom') -> ClientError:
    """Build a botocore ClientError with the given error code."""
    return ClientError({'Error': {'Code': code, 'Message': message}}, operation)


class FakeEC2:
    """EC2 client double that records every call in order.

    responses: operation -> dict, or callable(**kwargs) returning a dict
    errors: operation -> exception (always raised) or list of exceptions/None
        consumed one per call
    """

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.responses: dict = {}
        self.errors: dict = {}
        self.waits: list[tuple[str, dict]] = []

    def __getattr__(self, operation):
        if operation.startswith('_'):
            raise AttributeError(operation)

        def _call(**kwargs):
            self.calls.append((operation, kwargs))
            error = self.errors.get(operation)
            if isinstance(error, list):
                error = error.pop(0) if error else None
            if error is not None:
                raise error
            response = self.responses.get(operation, {})
            if callable(response):
                return response(**kwargs)
            return response
        return _call

    def get_waiter(self, name):
        waiter = MagicMock()
        waiter.wait.side_effect = lambda **kwargs: self.waits.append((name, kwargs))
        return waiter

    @property
    def operations(self) -> list[str]:
        return [op for op, _ in self.calls]

    def calls_to(self, operation: str) -> list[dict]:
        return [kwargs for op, kwargs in self.calls if op == operation]


_VAR_LINE = re.compile(r'^(COMPONENT|VERSION)=(.*)$', re.MULTILINE)


class FakeShell:
    """RemoteShell double backed by in-memory state markers.

    Scripts "install" their component by writing an installed marker,
    unless script_results scripts a failure for it.
    """

    def __init__(self, host: str = '198.51.100.10', markers=None, responses=None):
        self.host = host
        self.markers: dict[str, str] = dict(markers or {})
        self.responses: dict[str, tuple] = dict(responses or {})
        self.script_results: dict[str, tuple] = {}
        self.commands: list[str] = []
        self.scripts: list[str] = []
        self.fetched: list[tuple] = []
        self.connects = 0
        self.connect_error = None

    def connect(self):
        self.connects += 1
        if self.connect_error:
            raise self.connect_error

    def run(self, command, timeout=60):
        self.commands.append(command)
        if command.startswith('cat /var/lib/testbed/state/'):
            name = command.split()[1].rsplit('/', 1)[-1].removesuffix('.state')
            if name in self.markers:
                return 0, self.markers[name], ''
            return 1, '', ''
        for key, result in self.responses.items():
            if key in command:
                return result
        return 0, '', ''

    def check(self, command, timeout=60):
        rc, out, err = self.run(command, timeout)
        if rc != 0:
            raise RemoteShellError(f"command failed on {self.host} (rc={rc}): {err}", host=self.host, rc=rc)
        return out.strip()

    def run_script(self, script, timeout=3600):
        values = {k: (shlex.split(v) or [''])[0] for k, v in _VAR_LINE.findall(script)}
        component = values['COMPONENT']
        self.scripts.append(component)
        result = self.script_results.get(component, (0, f'[testbed] {component} installed\n', ''))
        if result[0] == 0:
            self.markers[component] = f"status=installed\nversion={values.get('VERSION', '')}\n"
        return result

    def fetch_file(self, remote_path, local_path):
        self.fetched.append((remote_path, Path(local_path)))
        return Path(local_path)


@pytest.fixture
def fake_ec2():
    return FakeEC2()


@pytest.fixture
def driver_config(tmp_path):
    """DriverConfig pointing at a temporary state directory."""
    return DriverConfig(
        region='us-west-2',
        ssh_key=tmp_path / 'id_rsa',
        state_dir=tmp_path / 'state',
        discover_caller_ip=False,
        ci_metadata={'GitHubRepository': 'NVIDIA/holodeck', 'GitHubRunId': '12345678'},
    )


@pytest.fixture
def deadline():
    return Deadline(timeout=3600)


@pytest.fixture
def aws_env():
    """Single-node AWS environment with a fixed image and ingress range."""
    spec = EnvironmentSpec.from_dict({
        'provider': 'aws',
        'auth': {'key_name': 'ci-key', 'username': 'ubuntu'},
        'instance': {
            'type': 'g4dn.xlarge',
            'region': 'us-west-2',
            'image': {'image_id': 'ami-0123456789abcdef0'},
            'ingress_ip_ranges': ['203.0.113.0/24'],
        },
    })
    return Environment(name='ci-test', spec=spec, labels={'testbed-instance-id': 'abc123'})
