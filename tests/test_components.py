"""Tests for provisioner/components.py and provisioner/scripts.py."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest

from conftest import FakeShell
from environment import EnvironmentSpec
from provisioner.components import (
    ComponentState,
    InvalidTransition,
    kernel_step,
    kubeadm_join_step,
    parse_marker,
    resolve_steps,
    runtime_step,
    toolkit_step,
    transition,
)
from provisioner.scripts import REBOOT_MARKER, build_script


def _spec(**sections):
    return EnvironmentSpec.from_dict(sections)


class TestComponentState:

    @pytest.mark.parametrize('current,target', [
        (ComponentState.NOT_INSTALLED, ComponentState.INSTALLED),
        (ComponentState.NOT_INSTALLED, ComponentState.FAILED),
        (ComponentState.FAILED, ComponentState.INSTALLED),
    ])
    def test_allowed(self, current, target):
        assert transition(current, target) == target

    def test_installed_is_terminal(self):
        with pytest.raises(InvalidTransition):
            transition(ComponentState.INSTALLED, ComponentState.FAILED)

    def test_parse_marker(self):
        assert parse_marker('status=installed\nversion=v1.31.1\n') == (ComponentState.INSTALLED, 'v1.31.1')
        assert parse_marker('status=failed\n')[0] == ComponentState.FAILED
        assert parse_marker('garbage')[0] == ComponentState.NOT_INSTALLED


class TestResolveSteps:

    def test_fixed_order(self):
        spec = _spec(
            kernel={'version': '6.8.0-1015-aws'},
            nvidia_driver={'install': True},
            container_runtime={'install': True, 'name': 'docker'},
            nvidia_container_toolkit={'install': True, 'enable_cdi': True},
            kubernetes={'install': True, 'installer': 'kubeadm'},
        )
        assert resolve_steps(spec).names == [
            'kernel', 'nvdriver', 'docker', 'nvidia-container-toolkit', 'kubernetes-kubeadm']

    def test_kubernetes_implies_default_runtime(self):
        plan = resolve_steps(_spec(kubernetes={'install': True}))
        assert plan.names == ['containerd', 'kubernetes-kubeadm']
        assert plan.remote_kubeconfig == '/etc/kubernetes/admin.conf'

    def test_microk8s_replaces_everything(self):
        spec = _spec(
            nvidia_driver={'install': True},
            container_runtime={'install': True},
            nvidia_container_toolkit={'install': True},
            kubernetes={'install': True, 'installer': 'microk8s'},
        )
        assert resolve_steps(spec).names == ['kubernetes-microk8s']

    def test_kind_kubeconfig(self):
        plan = resolve_steps(_spec(kubernetes={'install': True, 'installer': 'kind', 'kube_config': '/tmp/kc'}))
        assert plan.names[-1] == 'kubernetes-kind'
        assert plan.kubeconfig_path == '/tmp/kc'
        assert plan.remote_kubeconfig == '~/.kube/config'

    def test_nothing_requested(self):
        assert resolve_steps(_spec()).names == []

    def test_unknown_installer(self):
        with pytest.raises(ValueError, match='installer'):
            resolve_steps(_spec(kubernetes={'install': True, 'installer': 'k3s'}))

    def test_unknown_runtime(self):
        with pytest.raises(ValueError, match='runtime'):
            runtime_step('rkt')


class TestScripts:

    def test_values_are_shell_quoted(self):
        script = build_script('kernel', 'echo body\n', "6.8; rm -rf /")
        assert "VERSION='6.8; rm -rf /'" in script
        assert script.rstrip().endswith('echo "[testbed] ${COMPONENT} installed"')

    def test_booleans_rendered_for_bash(self):
        step = toolkit_step('containerd', enable_cdi=True)
        assert 'ENABLE_CDI=true' in step.script
        assert 'RUNTIME=containerd' in step.script

    def test_join_carries_control_plane_flags(self):
        step = kubeadm_join_step('v1.31.1', '10.0.0.5', 'abc.def', 'sha256:00', control_plane=True,
                                 certificate_key='k3y')
        assert 'IS_CONTROL_PLANE=true' in step.script
        assert 'CERTIFICATE_KEY=k3y' in step.script
        assert 'ENDPOINT=10.0.0.5' in step.script


class TestInstallStep:

    def test_probe_not_installed_without_marker(self):
        assert runtime_step('containerd').probe(FakeShell()) == ComponentState.NOT_INSTALLED

    def test_probe_installed(self):
        shell = FakeShell(markers={'containerd': 'status=installed\nversion=\n'})
        assert runtime_step('containerd').probe(shell) == ComponentState.INSTALLED

    def test_probe_version_mismatch_reinstalls(self):
        shell = FakeShell(markers={'kernel': 'status=installed\nversion=6.5.0\n'})
        assert kernel_step('6.8.0').probe(shell) == ComponentState.NOT_INSTALLED

    def test_run_success_writes_marker(self):
        shell = FakeShell()
        result = runtime_step('containerd').run(shell)
        assert result.success
        assert shell.markers['containerd'].startswith('status=installed')

    def test_run_failure_writes_failed_marker(self):
        shell = FakeShell()
        shell.script_results['containerd'] = (100, '', 'E: Unable to locate package')
        result = runtime_step('containerd').run(shell)
        assert not result.success
        assert 'Unable to locate package' in result.message
        assert any('status=failed' in c and 'containerd.state' in c for c in shell.commands)

    def test_kernel_reboot_detected(self):
        shell = FakeShell()
        shell.script_results['kernel'] = (0, f'Upgrading kernel\n{REBOOT_MARKER}\n', '')
        result = kernel_step('6.8.0').run(shell)
        assert result.context_updates['reboot'] is True

    def test_kernel_already_running_no_reboot(self):
        result = kernel_step('6.8.0').run(FakeShell())
        assert result.context_updates['reboot'] is False
