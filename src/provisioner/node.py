"""Single-node provisioning."""

import logging
import time
from pathlib import Path
from typing import Callable, Optional

from common import ActionResult
from config import DriverConfig
from deadline import Deadline, OperationCancelled
from environment import PROVIDER_SSH, PUBLIC_DNS_NAME, Environment
from provisioner.components import ComponentState, InstallStep, resolve_steps, transition
from provisioner.remote import RemoteShell, RemoteShellError
from retry import RetryError, RetryPolicy, constant_backoff
from status import mark_available, mark_degraded, mark_progressing

logger = logging.getLogger(__name__)

REBOOT_ATTEMPTS = 30
REBOOT_DELAY = 10.0


class ProvisioningError(Exception):
    """An install step failed; node names the host it failed on."""

    def __init__(self, message: str, node: str = ''):
        self.node = node
        super().__init__(message)


def target_host(env: Environment) -> str:
    """Address of the single host to provision.

    Raises:
        ProvisioningError: Nothing to connect to yet
    """
    if env.spec.provider == PROVIDER_SSH:
        host = env.spec.instance.host_url
    else:
        host = env.status.get_property(PUBLIC_DNS_NAME)
    if not host:
        raise ProvisioningError(f"environment {env.name} has no reachable host address")
    return host


class Provisioner:
    """Applies install steps to one host over SSH.

    Args:
        config: Driver configuration (SSH key, user, trust mode)
        shell_factory: (host, user) -> RemoteShell; defaults to one built
            from config whose retry sleeps respect the deadline
        save: Called with the environment after each status change
    """

    def __init__(
        self,
        config: DriverConfig,
        shell_factory: Optional[Callable[[str, str], RemoteShell]] = None,
        save: Optional[Callable[[Environment], None]] = None,
        reboot_attempts: int = REBOOT_ATTEMPTS,
        reboot_delay: float = REBOOT_DELAY,
    ):
        self.config = config
        self.shell_factory = shell_factory
        self.save = save or (lambda env: None)
        self.reboot_attempts = reboot_attempts
        self.reboot_delay = reboot_delay

    def shell(self, host: str, user: str, deadline: Deadline) -> RemoteShell:
        if self.shell_factory:
            return self.shell_factory(host, user)
        return RemoteShell.from_config(host, self.config, user=user, sleep=deadline.sleep)

    def _record(self, env: Environment, node: str, component: str, state: ComponentState) -> None:
        states = env.status.components.setdefault(node, {})
        states[component] = state.value
        self.save(env)

    def wait_for_reboot(self, shell: RemoteShell, deadline: Deadline) -> None:
        """Block until the host answers again after a reboot."""
        logger.info(f"Waiting for {shell.host} to reboot...")
        deadline.sleep(self.reboot_delay)

        def _probe():
            rc, out, err = shell.run('echo ready', timeout=15)
            if rc != 0 or 'ready' not in out:
                raise RemoteShellError(err.strip() or f'exit code {rc}', host=shell.host, rc=rc)

        retry = RetryPolicy(
            max_attempts=self.reboot_attempts,
            backoff=constant_backoff(self.reboot_delay),
            sleep=deadline.sleep,
        )
        try:
            retry.call(_probe, description=f'reconnect to {shell.host}')
        except RetryError as e:
            raise RemoteShellError(
                f"{shell.host} did not come back after reboot ({e.attempts} attempts)",
                host=shell.host,
            ) from e
        logger.info(f"{shell.host} is back")

    def apply_steps(
        self,
        shell: RemoteShell,
        steps: list[InstallStep],
        env: Environment,
        node: str,
        deadline: Deadline,
    ) -> list[str]:
        """Run each step not already installed, in order.

        Returns:
            Names of the steps that actually ran

        Raises:
            ProvisioningError: A step failed (its marker is set to failed)
        """
        ran = []
        for step in steps:
            deadline.check(step.name)
            state = step.probe(shell)
            if state == ComponentState.INSTALLED:
                logger.info(f"[{step.name}] Already installed on {node}, skipping")
                self._record(env, node, step.name, state)
                continue

            mark_progressing(env, 'Provisioning', f'{step.description or step.name} on {node}')
            self.save(env)
            result = step.run(shell)
            if not result.success:
                self._record(env, node, step.name, transition(state, ComponentState.FAILED))
                raise ProvisioningError(result.message, node=node)

            self._record(env, node, step.name, transition(state, ComponentState.INSTALLED))
            logger.info(f"[{step.name}] {result.message} ({result.duration:.1f}s)")
            ran.append(step.name)
            if result.context_updates.get('reboot'):
                self.wait_for_reboot(shell, deadline)
        return ran

    def run(self, env: Environment, deadline: Deadline) -> ActionResult:
        """Provision the environment's single host.

        Failures are recorded as Degraded (and saved) before raising.

        Raises:
            ProvisioningError: Connection or install failure
            OperationCancelled: Deadline or interrupt
        """
        start = time.time()
        try:
            plan = resolve_steps(env.spec)
            host = target_host(env)
        except ValueError as e:
            raise ProvisioningError(str(e)) from e

        mark_progressing(env, 'Provisioning', f'Connecting to {host}')
        self.save(env)
        try:
            shell = self.shell(host, env.spec.auth.username or self.config.ssh_user, deadline)
            shell.connect()
            ran = self.apply_steps(shell, plan.steps, env, host, deadline)
            if plan.kubeconfig_path:
                shell.fetch_file(plan.remote_kubeconfig, Path(plan.kubeconfig_path))
        except OperationCancelled as e:
            mark_degraded(env, 'Cancelled', str(e))
            self.save(env)
            raise
        except ProvisioningError as e:
            mark_degraded(env, 'ProvisioningFailed', str(e))
            self.save(env)
            raise
        except RemoteShellError as e:
            mark_degraded(env, 'ProvisioningFailed', str(e))
            self.save(env)
            raise ProvisioningError(str(e), node=host) from e

        mark_available(env)
        self.save(env)
        skipped = len(plan.steps) - len(ran)
        return ActionResult(
            success=True,
            message=f"Provisioned {host}: {len(ran)} installed, {skipped} already present",
            duration=time.time() - start,
            context_updates={'installed': ran},
        )
