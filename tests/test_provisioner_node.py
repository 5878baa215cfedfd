"""Tests for provisioner/node.py - single-node provisioning."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest

from conftest import FakeShell
from deadline import CancelToken, Deadline, OperationCancelled
from environment import PUBLIC_DNS_NAME, Environment, EnvironmentSpec
from provisioner.node import Provisioner, ProvisioningError, target_host
from provisioner.remote import RemoteShellError
from provisioner.scripts import REBOOT_MARKER
from status import resolve_status

FULL_STACK = {
    'provider': 'ssh',
    'instance': {'host_url': '198.51.100.20'},
    'kernel': {'version': '6.8.0-1015-aws'},
    'nvidia_driver': {'install': True, 'branch': '550'},
    'container_runtime': {'install': True, 'name': 'containerd'},
    'nvidia_container_toolkit': {'install': True},
    'kubernetes': {'install': True, 'installer': 'kubeadm', 'version': 'v1.31.1'},
}


def _env(spec=None):
    return Environment(name='ci', spec=EnvironmentSpec.from_dict(spec or FULL_STACK))


def _provisioner(shell, driver_config, saves=None, sleeps=None):
    saves = [] if saves is None else saves
    return Provisioner(
        driver_config,
        shell_factory=lambda host, user: shell,
        save=lambda env: saves.append(resolve_status(env.status.conditions)),
        reboot_attempts=3,
        reboot_delay=0.0,
    )


class TestTargetHost:

    def test_ssh_provider_uses_host_url(self):
        assert target_host(_env()) == '198.51.100.20'

    def test_aws_provider_uses_public_dns(self):
        env = _env({'provider': 'aws'})
        env.status.set_property(PUBLIC_DNS_NAME, 'ec2-1.compute.amazonaws.com')
        assert target_host(env) == 'ec2-1.compute.amazonaws.com'

    def test_no_address(self):
        with pytest.raises(ProvisioningError, match='no reachable host'):
            target_host(_env({'provider': 'aws'}))


class TestProvisionerRun:

    def test_installs_in_order(self, driver_config):
        shell = FakeShell()
        env = _env()
        result = _provisioner(shell, driver_config).run(env, Deadline(3600))
        assert result.success
        assert shell.scripts == [
            'kernel', 'nvdriver', 'containerd', 'nvidia-container-toolkit', 'kubernetes-kubeadm']
        assert resolve_status(env.status.conditions) == 'running'
        assert env.status.components['198.51.100.20']['kubernetes-kubeadm'] == 'installed'

    def test_second_run_installs_nothing(self, driver_config):
        shell = FakeShell()
        env = _env()
        provisioner = _provisioner(shell, driver_config)
        provisioner.run(env, Deadline(3600))
        first = list(shell.scripts)

        result = provisioner.run(env, Deadline(3600))
        assert shell.scripts == first
        assert result.context_updates['installed'] == []
        assert resolve_status(env.status.conditions) == 'running'

    def test_failure_records_degraded_before_raising(self, driver_config):
        shell = FakeShell()
        shell.script_results['nvdriver'] = (1, '', 'E: Unable to locate package cuda-drivers-550')
        env = _env()
        saves = []
        with pytest.raises(ProvisioningError, match='cuda-drivers-550') as exc_info:
            _provisioner(shell, driver_config, saves=saves).run(env, Deadline(3600))
        assert exc_info.value.node == '198.51.100.20'
        assert saves[-1] == 'degraded'
        assert env.status.components['198.51.100.20']['nvdriver'] == 'failed'
        # Later steps never ran
        assert shell.scripts == ['kernel', 'nvdriver']

    def test_failed_step_retried_on_next_run(self, driver_config):
        shell = FakeShell()
        shell.script_results['nvdriver'] = (1, '', 'boom')
        env = _env()
        provisioner = _provisioner(shell, driver_config)
        with pytest.raises(ProvisioningError):
            provisioner.run(env, Deadline(3600))

        del shell.script_results['nvdriver']
        provisioner.run(env, Deadline(3600))
        assert shell.scripts.count('kernel') == 1
        assert shell.scripts.count('nvdriver') == 2
        assert env.status.components['198.51.100.20']['nvdriver'] == 'installed'

    def test_connect_failure_is_provisioning_error(self, driver_config):
        shell = FakeShell()
        shell.connect_error = RemoteShellError('failed to connect to 198.51.100.20 after 20 attempts')
        env = _env()
        with pytest.raises(ProvisioningError, match='after 20 attempts') as exc_info:
            _provisioner(shell, driver_config).run(env, Deadline(3600))
        assert exc_info.value.node == '198.51.100.20'
        assert resolve_status(env.status.conditions) == 'degraded'

    def test_kernel_reboot_waits_for_host(self, driver_config):
        shell = FakeShell(responses={'echo ready': (0, 'ready\n', '')})
        shell.script_results['kernel'] = (0, f'{REBOOT_MARKER}\n', '')
        _provisioner(shell, driver_config).run(_env(), Deadline(3600))
        assert 'echo ready' in shell.commands

    def test_host_never_returns_after_reboot(self, driver_config):
        shell = FakeShell(responses={'echo ready': (255, '', 'Connection refused')})
        shell.script_results['kernel'] = (0, f'{REBOOT_MARKER}\n', '')
        with pytest.raises(ProvisioningError, match='did not come back'):
            _provisioner(shell, driver_config).run(_env(), Deadline(3600))
        assert shell.commands.count('echo ready') == 3

    def test_kubeconfig_fetched(self, driver_config, tmp_path):
        spec = dict(FULL_STACK)
        spec['kubernetes'] = dict(FULL_STACK['kubernetes'], kube_config=str(tmp_path / 'kubeconfig'))
        shell = FakeShell()
        _provisioner(shell, driver_config).run(_env(spec), Deadline(3600))
        assert shell.fetched == [('/etc/kubernetes/admin.conf', tmp_path / 'kubeconfig')]

    def test_cancellation_is_distinct(self, driver_config):
        token = CancelToken()
        token.cancel()
        env = _env()
        with pytest.raises(OperationCancelled):
            _provisioner(FakeShell(), driver_config).run(env, Deadline(3600, token))
        degraded = next(c for c in env.status.conditions if c.type == 'Degraded')
        assert degraded.reason == 'Cancelled'
