"""Remote shell over the OpenSSH client."""

import logging
import os
from pathlib import Path
from typing import Optional

from common import run_ssh
from config import DriverConfig, HostKeyPolicy
from retry import RetryError, RetryPolicy, constant_backoff

logger = logging.getLogger(__name__)

CONNECT_ATTEMPTS = 20
CONNECT_DELAY = 1.0
COMMAND_TIMEOUT = 60
SCRIPT_TIMEOUT = 3600


class RemoteShellError(Exception):
    """Connection or command failure on a remote host."""

    def __init__(self, message: str, host: str = '', rc: Optional[int] = None):
        self.host = host
        self.rc = rc
        super().__init__(message)


class RemoteShell:
    """Commands on one host, each a single string run by the remote shell.

    Callers needing literal argument quoting must quote themselves.
    """

    def __init__(
        self,
        host: str,
        user: str = 'ubuntu',
        key_file: Optional[Path] = None,
        port: int = 22,
        policy: HostKeyPolicy = HostKeyPolicy.ACCEPT_ANY,
        known_hosts_file: Optional[Path] = None,
        connect_retry: Optional[RetryPolicy] = None,
    ):
        self.host = host
        self.user = user
        self.key_file = key_file
        self.port = port
        self.policy = policy
        self.known_hosts_file = known_hosts_file
        self.connect_retry = connect_retry or RetryPolicy(
            max_attempts=CONNECT_ATTEMPTS,
            backoff=constant_backoff(CONNECT_DELAY),
        )

    @classmethod
    def from_config(cls, host: str, config: DriverConfig, user: str = '',
                    sleep=None) -> 'RemoteShell':
        """Shell for host using the key, port and trust mode from config."""
        retry = RetryPolicy(
            max_attempts=config.connect_attempts,
            backoff=constant_backoff(config.connect_delay),
        )
        if sleep is not None:
            retry.sleep = sleep
        return cls(
            host,
            user=user or config.ssh_user,
            key_file=config.ssh_key,
            port=config.ssh_port,
            policy=config.host_key_policy,
            known_hosts_file=config.known_hosts_file,
            connect_retry=retry,
        )

    def __repr__(self):
        return f'RemoteShell({self.user}@{self.host})'

    def _ssh(self, command: str, timeout: int, **kwargs) -> tuple[int, str, str]:
        return run_ssh(
            self.host,
            command,
            user=self.user,
            timeout=timeout,
            key_file=self.key_file,
            port=self.port,
            policy=self.policy,
            known_hosts_file=self.known_hosts_file,
            **kwargs,
        )

    def connect(self) -> None:
        """Block until the host accepts SSH.

        Raises:
            RemoteShellError: Not reachable within the retry budget
        """
        def _probe():
            rc, out, err = self._ssh('echo ready', timeout=15)
            if rc != 0 or 'ready' not in out:
                raise RemoteShellError(err.strip() or f'exit code {rc}', host=self.host, rc=rc)

        try:
            self.connect_retry.call(_probe, description=f'SSH to {self.host}')
        except RetryError as e:
            raise RemoteShellError(
                f"failed to connect to {self.host} after {e.attempts} attempts: {e.last_error}",
                host=self.host,
            ) from e
        logger.debug(f"SSH available on {self.host}")

    def run(self, command: str, timeout: int = COMMAND_TIMEOUT) -> tuple[int, str, str]:
        """Run command; returns (rc, stdout, stderr) without raising on failure."""
        return self._ssh(command, timeout=timeout)

    def check(self, command: str, timeout: int = COMMAND_TIMEOUT) -> str:
        """Run command and return stripped stdout.

        Raises:
            RemoteShellError: Non-zero exit
        """
        rc, out, err = self._ssh(command, timeout=timeout)
        if rc != 0:
            raise RemoteShellError(
                f"command failed on {self.host} (rc={rc}): {err.strip() or out.strip()}",
                host=self.host, rc=rc,
            )
        return out.strip()

    def run_script(self, script: str, timeout: int = SCRIPT_TIMEOUT) -> tuple[int, str, str]:
        """Feed a whole bash script to the remote shell on stdin."""
        return self._ssh('bash -s', timeout=timeout, input=script)

    def fetch_file(self, remote_path: str, local_path: Path) -> Path:
        """Stream a remote file into local_path (mode 0600).

        Raises:
            RemoteShellError: The remote read failed; no partial file is left
        """
        local_path = Path(local_path).expanduser()
        local_path.parent.mkdir(parents=True, exist_ok=True)
        with open(local_path, 'w', encoding='utf-8') as f:
            rc, _, err = self._ssh(f'sudo cat {remote_path}', timeout=COMMAND_TIMEOUT, stdout=f)
        if rc != 0:
            local_path.unlink(missing_ok=True)
            raise RemoteShellError(
                f"failed to fetch {remote_path} from {self.host}: {err.strip()}",
                host=self.host, rc=rc,
            )
        os.chmod(local_path, 0o600)
        logger.info(f"Fetched {self.host}:{remote_path} to {local_path}")
        return local_path
