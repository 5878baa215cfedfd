"""Multi-node kubeadm clusters and cluster health."""

import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, Optional

from common import ActionResult
from config import DriverConfig
from deadline import Deadline, OperationCancelled
from environment import ROLE_CONTROL_PLANE, ROLE_WORKER, Environment, Node
from provisioner.components import (
    ADMIN_KUBECONFIG,
    base_steps,
    kube_prerequisites_step,
    kubeadm_init_step,
    kubeadm_join_step,
)
from provisioner.node import Provisioner, ProvisioningError, target_host
from provisioner.remote import RemoteShell, RemoteShellError
from retry import RetryPolicy, constant_backoff
from status import mark_available, mark_degraded, mark_progressing

logger = logging.getLogger(__name__)

KUBECTL = f'sudo kubectl --kubeconfig={ADMIN_KUBECONFIG}'
# Single-node installers keep their own kubeconfig
HEALTH_KUBECTL = {
    'kubeadm': KUBECTL,
    'kind': 'kubectl --kubeconfig="$HOME/.kube/config"',
    'microk8s': 'sudo microk8s kubectl',
}
ROLE_LABEL = 'testbed.io/role'
CONTROL_PLANE_TAINT = 'node-role.kubernetes.io/control-plane:NoSchedule'
API_SERVER_PORT = 6443

TOKEN_COMMAND = 'sudo kubeadm token create --ttl 2h'
CA_HASH_COMMAND = (
    'sudo openssl x509 -pubkey -in /etc/kubernetes/pki/ca.crt | '
    'openssl rsa -pubin -outform der 2>/dev/null | '
    "openssl dgst -sha256 -hex | sed 's/^.* //'"
)
CERT_KEY_COMMAND = 'sudo kubeadm init phase upload-certs --upload-certs 2>/dev/null | tail -1'

HEALTH_CONNECT_ATTEMPTS = 3

PHASE_PROVISIONING = 'Provisioning'
PHASE_READY = 'Ready'
PHASE_FAILED = 'Failed'


@dataclass
class JoinDetails:
    token: str
    ca_cert_hash: str
    certificate_key: str = ''


def node_address(node: Node) -> str:
    return node.public_ip or node.private_ip


class ClusterProvisioner:
    """Provisions control-plane nodes, then workers, into one kubeadm cluster.

    Reuses Provisioner for connections, step execution and component
    state bookkeeping.
    """

    def __init__(
        self,
        config: DriverConfig,
        shell_factory: Optional[Callable[[str, str], RemoteShell]] = None,
        save: Optional[Callable[[Environment], None]] = None,
        provisioner: Optional[Provisioner] = None,
    ):
        self.config = config
        self.provisioner = provisioner or Provisioner(config, shell_factory=shell_factory, save=save)
        self.save = self.provisioner.save

    def _connect(self, env: Environment, node: Node, deadline: Deadline) -> RemoteShell:
        user = node.ssh_username or env.spec.auth.username or self.config.ssh_user
        shell = self.provisioner.shell(node_address(node), user, deadline)
        shell.connect()
        return shell

    def join_details(self, shell: RemoteShell, high_availability: bool) -> JoinDetails:
        """Fresh join token, CA hash and (HA only) certificate key from the first control plane."""
        token = shell.check(TOKEN_COMMAND)
        ca_hash = shell.check(CA_HASH_COMMAND)
        if not ca_hash.startswith('sha256:'):
            ca_hash = f'sha256:{ca_hash}'
        cert_key = shell.check(CERT_KEY_COMMAND) if high_availability else ''
        return JoinDetails(token=token, ca_cert_hash=ca_hash, certificate_key=cert_key)

    def provision_cluster(
        self,
        env: Environment,
        deadline: Deadline,
        nodes: Optional[list[Node]] = None,
    ) -> ActionResult:
        """Provision every node of a multi-node environment.

        The first failing node aborts the sequence.

        Raises:
            ProvisioningError: With .node set to the failing node's name
            OperationCancelled: Deadline or interrupt
        """
        start = time.time()
        if nodes is None:
            nodes = env.status.cluster.nodes if env.status.cluster else []
        control_planes = [n for n in nodes if n.role == ROLE_CONTROL_PLANE]
        workers = [n for n in nodes if n.role == ROLE_WORKER]
        if not control_planes:
            raise ProvisioningError("at least one control-plane node is required")

        kube = env.spec.kubernetes
        if kube.installer != 'kubeadm':
            raise ProvisioningError(f"multi-node clusters require the kubeadm installer, not {kube.installer}")

        cluster = env.spec.cluster
        high_availability = bool(cluster and cluster.high_availability) and len(control_planes) > 1
        endpoint = ''
        if env.status.cluster:
            endpoint = env.status.cluster.load_balancer_dns or env.status.cluster.control_plane_endpoint
        endpoint = endpoint or control_planes[0].private_ip or node_address(control_planes[0])
        common_steps = base_steps(env.spec) + [kube_prerequisites_step(kube.version)]
        logger.info(f"Provisioning cluster {env.name}: {len(control_planes)} control-plane, "
                    f"{len(workers)} worker node(s), endpoint {endpoint}")

        current = control_planes[0]
        hostnames: dict[str, str] = {}
        try:
            first_shell = None
            join = None
            for index, node in enumerate(control_planes + workers):
                current = node
                deadline.check(f'provisioning {node.name}')
                node.phase = PHASE_PROVISIONING
                mark_progressing(env, 'Provisioning', f'Provisioning {node.role} node {node.name}')
                self.save(env)

                shell = self._connect(env, node, deadline)
                steps = list(common_steps)
                if index == 0:
                    steps.append(kubeadm_init_step(kube.version, endpoint, high_availability))
                else:
                    steps.append(kubeadm_join_step(
                        kube.version, endpoint, join.token, join.ca_cert_hash,
                        control_plane=node.role == ROLE_CONTROL_PLANE,
                        certificate_key=join.certificate_key,
                    ))
                self.provisioner.apply_steps(shell, steps, env, node.name, deadline)
                hostnames[node.name] = shell.check('hostname')
                if index == 0:
                    first_shell = shell
                    join = self.join_details(shell, high_availability)
                node.phase = PHASE_READY
                self.save(env)

            current = control_planes[0]
            self.configure_nodes(first_shell, env, control_planes, workers, hostnames)
            if kube.kube_config:
                first_shell.fetch_file(ADMIN_KUBECONFIG, Path(kube.kube_config))
        except OperationCancelled as e:
            mark_degraded(env, 'Cancelled', str(e))
            self.save(env)
            raise
        except (ProvisioningError, RemoteShellError) as e:
            current.phase = PHASE_FAILED
            mark_degraded(env, 'ProvisioningFailed', f'{current.name}: {e}')
            self.save(env)
            raise ProvisioningError(str(e), node=current.name) from e

        mark_available(env)
        self.save(env)
        return ActionResult(
            success=True,
            message=f"Cluster {env.name} provisioned with {len(nodes)} node(s)",
            duration=time.time() - start,
            context_updates={'control_plane_endpoint': endpoint},
        )

    def configure_nodes(
        self,
        shell: RemoteShell,
        env: Environment,
        control_planes: list[Node],
        workers: list[Node],
        hostnames: dict[str, str],
    ) -> None:
        """Apply role labels and the control-plane taint policy."""
        cluster = env.spec.cluster
        cp_pool = cluster.control_plane if cluster else None
        worker_pool = cluster.workers if cluster else None

        for node in control_planes + workers:
            pool = cp_pool if node.role == ROLE_CONTROL_PLANE else worker_pool
            labels = {ROLE_LABEL: node.role}
            if node.role == ROLE_WORKER:
                labels['node-role.kubernetes.io/worker'] = ''
            if pool:
                labels.update(pool.labels)
            pairs = ' '.join(f'{k}={v}' for k, v in labels.items())
            shell.check(f'{KUBECTL} label node {hostnames[node.name]} {pairs} --overwrite')

        dedicated = bool(cp_pool and cp_pool.dedicated)
        if dedicated:
            logger.info("Dedicated control plane: keeping NoSchedule taint")
            return
        for node in control_planes:
            # Removing an absent taint fails; treat as already shared
            rc, _, err = shell.run(f'{KUBECTL} taint nodes {hostnames[node.name]} {CONTROL_PLANE_TAINT}-')
            if rc != 0 and 'not found' not in err:
                raise RemoteShellError(f"failed to remove taint from {node.name}: {err.strip()}",
                                       host=shell.host, rc=rc)


@dataclass
class NodeHealth:
    name: str
    role: str
    ready: bool
    status: str
    version: str = ''


@dataclass
class ClusterHealth:
    healthy: bool = False
    api_server_status: str = 'Unknown'
    total_nodes: int = 0
    ready_nodes: int = 0
    control_planes: int = 0
    workers: int = 0
    nodes: list[NodeHealth] = field(default_factory=list)
    message: str = ''

    def to_dict(self) -> dict:
        return asdict(self)


def parse_node_output(output: str) -> list[NodeHealth]:
    """Parse `kubectl get nodes -o wide --no-headers` output."""
    nodes = []
    for line in output.splitlines():
        fields = line.split()
        if len(fields) < 5:
            continue
        name, status, roles, _age, version = fields[:5]
        role = ROLE_CONTROL_PLANE if 'control-plane' in roles else ROLE_WORKER
        nodes.append(NodeHealth(
            name=name,
            role=role,
            ready=status.split(',')[0] == 'Ready',
            status=status,
            version=version,
        ))
    return nodes


def _health_candidates(env: Environment) -> list[tuple[str, str]]:
    """(address, ssh user) of each node able to answer for the cluster."""
    user = env.spec.auth.username
    if env.status.cluster and env.status.cluster.nodes:
        return [(node_address(n), n.ssh_username or user)
                for n in env.status.cluster.nodes if n.role == ROLE_CONTROL_PLANE]
    try:
        return [(target_host(env), user)]
    except ProvisioningError:
        return []


def get_cluster_health(
    env: Environment,
    config: DriverConfig,
    shell_factory: Optional[Callable[[str, str], RemoteShell]] = None,
) -> ClusterHealth:
    """Live health of the environment's Kubernetes cluster.

    Tries each control-plane node in order and reports from the first
    reachable one. Never raises for unreachable nodes.
    """
    if env.is_multinode:
        kubectl = KUBECTL
    elif env.spec.kubernetes.install and env.spec.kubernetes.installer in HEALTH_KUBECTL:
        kubectl = HEALTH_KUBECTL[env.spec.kubernetes.installer]
    else:
        return ClusterHealth(message='kubernetes is not installed on this environment')

    candidates = _health_candidates(env)
    if not candidates:
        return ClusterHealth(message='no control-plane nodes found')

    shell = None
    errors = []
    for host, user in candidates:
        if shell_factory:
            candidate = shell_factory(host, user or config.ssh_user)
        else:
            candidate = RemoteShell.from_config(host, config, user=user)
            candidate.connect_retry = RetryPolicy(
                max_attempts=HEALTH_CONNECT_ATTEMPTS, backoff=constant_backoff(1.0))
        try:
            candidate.connect()
        except RemoteShellError as e:
            logger.warning(f"Control-plane node {host} unreachable: {e}")
            errors.append(str(e))
            continue
        shell = candidate
        break
    if shell is None:
        return ClusterHealth(message=f"no control-plane node reachable: {'; '.join(errors)}")

    health = ClusterHealth()
    rc, out, _ = shell.run(f'{kubectl} cluster-info')
    health.api_server_status = 'Running' if rc == 0 and 'is running' in out else 'Unreachable'

    rc, out, err = shell.run(f'{kubectl} get nodes -o wide --no-headers')
    if rc != 0:
        health.message = f"failed to list nodes: {err.strip()}"
        return health

    health.nodes = parse_node_output(out)
    health.total_nodes = len(health.nodes)
    health.ready_nodes = sum(1 for n in health.nodes if n.ready)
    health.control_planes = sum(1 for n in health.nodes if n.role == ROLE_CONTROL_PLANE)
    health.workers = health.total_nodes - health.control_planes
    cp_ready = all(n.ready for n in health.nodes if n.role == ROLE_CONTROL_PLANE)
    health.healthy = (
        health.api_server_status == 'Running'
        and health.total_nodes > 0
        and health.ready_nodes == health.total_nodes
        and cp_ready
    )
    if health.healthy:
        health.message = f"{health.ready_nodes}/{health.total_nodes} nodes ready"
    elif health.api_server_status != 'Running':
        health.message = 'API server is not running'
    else:
        not_ready = [n.name for n in health.nodes if not n.ready]
        health.message = f"nodes not ready: {', '.join(not_ready)}" if not_ready else 'no nodes registered'
    return health
