"""Install steps for the GPU software stack.

A step is idempotent: it first reads a state marker on the host and
skips when the component is already installed. The install script
itself writes the marker as its last action.
"""

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from common import ActionResult
from environment import EnvironmentSpec
from provisioner import scripts

logger = logging.getLogger(__name__)

KERNEL = 'kernel'
NVIDIA_DRIVER = 'nvdriver'
CONTAINER_TOOLKIT = 'nvidia-container-toolkit'
RUNTIMES = ('containerd', 'docker', 'crio')
INSTALLERS = ('kubeadm', 'kind', 'microk8s')
ADMIN_KUBECONFIG = '/etc/kubernetes/admin.conf'
KIND_KUBECONFIG = '~/.kube/config'

_RUNTIME_SCRIPTS = {
    'containerd': scripts.CONTAINERD,
    'docker': scripts.DOCKER,
    'crio': scripts.CRIO,
}


class ComponentState(enum.Enum):
    NOT_INSTALLED = 'not-installed'
    INSTALLED = 'installed'
    FAILED = 'failed'


_TRANSITIONS = {
    ComponentState.NOT_INSTALLED: {ComponentState.INSTALLED, ComponentState.FAILED},
    ComponentState.FAILED: {ComponentState.INSTALLED, ComponentState.FAILED},
    ComponentState.INSTALLED: set(),
}


class InvalidTransition(Exception):
    pass


def transition(current: ComponentState, target: ComponentState) -> ComponentState:
    """Move a component between states.

    Allowed: NOT_INSTALLED to INSTALLED or FAILED, FAILED to INSTALLED
    (retry) or FAILED again. INSTALLED is terminal.

    Raises:
        InvalidTransition: The move is not allowed
    """
    if target not in _TRANSITIONS[current]:
        raise InvalidTransition(f"cannot move component from {current.value} to {target.value}")
    return target


def parse_marker(text: str) -> tuple[ComponentState, str]:
    """Parse 'key=value' marker contents into (state, version)."""
    values = {}
    for line in text.splitlines():
        key, sep, value = line.partition('=')
        if sep:
            values[key.strip()] = value.strip()
    status = values.get('status', '')
    try:
        state = ComponentState(status)
    except ValueError:
        state = ComponentState.NOT_INSTALLED
    return state, values.get('version', '')


@dataclass
class InstallStep:
    """One component install on one host.

    Attributes:
        name: Component name, also the marker file name
        script: Complete bash script; writes the marker on success
        version: Requested version, compared against the marker when set
        reboots: Script may schedule a reboot and print the reboot marker
    """
    name: str
    script: str
    version: str = ''
    reboots: bool = False
    description: str = ''
    timeout: int = 3600

    def probe(self, shell) -> ComponentState:
        """Current state of the component on the host.

        A marker recording a different version than the one requested
        counts as NOT_INSTALLED so the step runs again.
        """
        rc, out, _ = shell.run(f'cat {scripts.state_file(self.name)} 2>/dev/null')
        if rc != 0 or not out.strip():
            return ComponentState.NOT_INSTALLED
        state, version = parse_marker(out)
        if state == ComponentState.INSTALLED and self.version and version and version != self.version:
            logger.info(f"[{self.name}] Installed version {version} differs from {self.version}")
            return ComponentState.NOT_INSTALLED
        return state

    def run(self, shell) -> ActionResult:
        """Run the install script on the host."""
        start = time.time()
        logger.info(f"[{self.name}] Installing on {shell.host}...")
        rc, out, err = shell.run_script(self.script, timeout=self.timeout)
        if rc != 0:
            shell.run(
                f"printf 'status=failed\\nversion={self.version}\\n' | "
                f"sudo tee {scripts.state_file(self.name)} > /dev/null"
            )
            tail = (err.strip() or out.strip())[-500:]
            return ActionResult(
                success=False,
                message=f"{self.name} install failed on {shell.host} (rc={rc}): {tail}",
                duration=time.time() - start,
            )
        rebooting = self.reboots and scripts.REBOOT_MARKER in out
        return ActionResult(
            success=True,
            message=f"{self.name} installed on {shell.host}",
            duration=time.time() - start,
            context_updates={'reboot': rebooting},
        )


@dataclass
class StepPlan:
    """Ordered install steps for one host."""
    steps: list[InstallStep] = field(default_factory=list)
    kubeconfig_path: Optional[str] = None
    remote_kubeconfig: str = ''

    @property
    def names(self) -> list[str]:
        return [s.name for s in self.steps]


def kernel_step(version: str) -> InstallStep:
    return InstallStep(
        name=KERNEL,
        script=scripts.build_script(KERNEL, scripts.KERNEL, version),
        version=version,
        reboots=True,
        description=f'Install kernel {version}',
    )


def driver_step(version: str = '', branch: str = '') -> InstallStep:
    return InstallStep(
        name=NVIDIA_DRIVER,
        script=scripts.build_script(NVIDIA_DRIVER, scripts.NVIDIA_DRIVER, version, BRANCH=branch),
        version=version or branch,
        description='Install NVIDIA driver',
    )


def runtime_step(name: str, version: str = '') -> InstallStep:
    if name not in _RUNTIME_SCRIPTS:
        raise ValueError(f"Unknown container runtime '{name}' (expected one of {', '.join(RUNTIMES)})")
    return InstallStep(
        name=name,
        script=scripts.build_script(name, _RUNTIME_SCRIPTS[name], version),
        version=version,
        description=f'Install {name}',
    )


def toolkit_step(runtime: str, version: str = '', enable_cdi: bool = False) -> InstallStep:
    return InstallStep(
        name=CONTAINER_TOOLKIT,
        script=scripts.build_script(
            CONTAINER_TOOLKIT, scripts.CONTAINER_TOOLKIT, version,
            RUNTIME=runtime, ENABLE_CDI=enable_cdi,
        ),
        version=version,
        description='Install NVIDIA container toolkit',
    )


def kubeadm_step(version: str, endpoint_host: str = '', feature_gates: Optional[list] = None) -> InstallStep:
    """Single-node kubeadm cluster with Calico and the control-plane taint removed."""
    return InstallStep(
        name='kubernetes-kubeadm',
        script=scripts.build_script(
            'kubernetes-kubeadm', scripts.KUBEADM_SINGLE_NODE, version,
            ENDPOINT_HOST=endpoint_host,
            FEATURE_GATES=','.join(feature_gates or []),
            POD_NETWORK_CIDR=scripts.POD_NETWORK_CIDR,
            CNI_PLUGINS_VERSION=scripts.CNI_PLUGINS_VERSION,
            CRICTL_VERSION=scripts.CRICTL_VERSION,
            CALICO_VERSION=scripts.CALICO_VERSION,
            KUBELET_RELEASE_VERSION=scripts.KUBELET_RELEASE_VERSION,
        ),
        version=version,
        description='Install Kubernetes with kubeadm',
    )


def kind_step(version: str, kind_config: str = '') -> InstallStep:
    return InstallStep(
        name='kubernetes-kind',
        script=scripts.build_script(
            'kubernetes-kind', scripts.KIND, version,
            KIND_CONFIG=kind_config, KIND_VERSION=scripts.KIND_VERSION,
        ),
        version=version,
        description='Install Kubernetes with kind',
    )


def microk8s_step(version: str) -> InstallStep:
    return InstallStep(
        name='kubernetes-microk8s',
        script=scripts.build_script('kubernetes-microk8s', scripts.MICROK8S, version),
        version=version,
        description='Install Kubernetes with microk8s',
    )


def kube_prerequisites_step(version: str) -> InstallStep:
    """kubeadm, kubelet and kubectl without initializing a cluster."""
    return InstallStep(
        name='kubernetes-prereq',
        script=scripts.build_script(
            'kubernetes-prereq', scripts.KUBE_PREREQUISITES, version,
            CNI_PLUGINS_VERSION=scripts.CNI_PLUGINS_VERSION,
            CRICTL_VERSION=scripts.CRICTL_VERSION,
            KUBELET_RELEASE_VERSION=scripts.KUBELET_RELEASE_VERSION,
        ),
        version=version,
        description='Install Kubernetes binaries',
    )


def kubeadm_init_step(version: str, endpoint: str, high_availability: bool = False) -> InstallStep:
    return InstallStep(
        name='kubeadm-init',
        script=scripts.build_script(
            'kubeadm-init', scripts.KUBEADM_INIT, version,
            ENDPOINT=endpoint,
            IS_HA=high_availability,
            POD_NETWORK_CIDR=scripts.POD_NETWORK_CIDR,
            CALICO_VERSION=scripts.CALICO_VERSION,
        ),
        version=version,
        description='Initialize first control-plane node',
    )


def kubeadm_join_step(
    version: str,
    endpoint: str,
    token: str,
    ca_cert_hash: str,
    control_plane: bool = False,
    certificate_key: str = '',
) -> InstallStep:
    return InstallStep(
        name='kubeadm-join',
        script=scripts.build_script(
            'kubeadm-join', scripts.KUBEADM_JOIN, version,
            ENDPOINT=endpoint,
            TOKEN=token,
            CA_CERT_HASH=ca_cert_hash,
            IS_CONTROL_PLANE=control_plane,
            CERTIFICATE_KEY=certificate_key,
        ),
        version=version,
        description='Join control-plane node' if control_plane else 'Join worker node',
    )


def base_steps(spec: EnvironmentSpec) -> list[InstallStep]:
    """Kernel, driver, runtime and toolkit steps, in that order, as requested."""
    steps = []
    if spec.kernel.version:
        steps.append(kernel_step(spec.kernel.version))
    if spec.nvidia_driver.install:
        steps.append(driver_step(spec.nvidia_driver.version, spec.nvidia_driver.branch))
    runtime = spec.container_runtime
    # Kubernetes and the toolkit both need a runtime; containerd is the default
    if runtime.install or spec.nvidia_container_toolkit.install or spec.kubernetes.install:
        steps.append(runtime_step(runtime.name or 'containerd', runtime.version))
    toolkit = spec.nvidia_container_toolkit
    if toolkit.install:
        steps.append(toolkit_step(runtime.name or 'containerd', toolkit.version, toolkit.enable_cdi))
    return steps


def resolve_steps(spec: EnvironmentSpec) -> StepPlan:
    """Ordered single-node steps for an environment spec.

    microk8s ships its own runtime and GPU operator, so when selected it
    replaces every other step.
    """
    kube = spec.kubernetes
    if kube.install and kube.installer not in INSTALLERS:
        raise ValueError(f"Unknown Kubernetes installer '{kube.installer}' "
                         f"(expected one of {', '.join(INSTALLERS)})")
    if kube.install and kube.installer == 'microk8s':
        return StepPlan(steps=[microk8s_step(kube.version)])

    steps = base_steps(spec)
    plan = StepPlan(steps=steps)
    if kube.install:
        if kube.installer == 'kind':
            steps.append(kind_step(kube.version, kube.kind_config))
            plan.remote_kubeconfig = KIND_KUBECONFIG
        else:
            steps.append(kubeadm_step(kube.version, kube.endpoint_host, kube.feature_gates))
            plan.remote_kubeconfig = ADMIN_KUBECONFIG
        plan.kubeconfig_path = kube.kube_config or None
    return plan
