"""Common utilities and types for testbed automation."""

import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import requests

from config import HostKeyPolicy

logger = logging.getLogger(__name__)

CALLER_IP_URL = 'https://api.ipify.org'


@dataclass
class ActionResult:
    """Result returned by an install step or stack action."""
    success: bool
    message: str = ''
    duration: float = 0.0
    context_updates: dict = field(default_factory=dict)
    continue_on_failure: bool = False


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None,
    stdout=None,
    input: Optional[str] = None,
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr).

    When stdout is a file object, output streams there and the returned
    stdout string is empty. input is fed to the command's stdin.
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        if stdout is not None:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                stdout=stdout,
                stderr=subprocess.PIPE,
                input=input,
                text=True,
                timeout=timeout,
                env=env,
                check=False
            )
            return result.returncode, '', result.stderr
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            input=input,
            text=True,
            timeout=timeout,
            env=env,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)


def ssh_options(
    policy: HostKeyPolicy = HostKeyPolicy.ACCEPT_ANY,
    key_file: Optional[Path] = None,
    port: int = 22,
    known_hosts_file: Optional[Path] = None,
    connect_timeout: int = 10,
) -> list[str]:
    """Build OpenSSH client options for the given host key policy."""
    if policy == HostKeyPolicy.ACCEPT_ANY:
        opts = ['-o', 'StrictHostKeyChecking=no', '-o', 'UserKnownHostsFile=/dev/null']
    else:
        opts = ['-o', 'StrictHostKeyChecking=yes']
        if known_hosts_file:
            opts += ['-o', f'UserKnownHostsFile={known_hosts_file}']
    opts += ['-o', 'LogLevel=ERROR', '-o', 'BatchMode=yes', '-o', f'ConnectTimeout={connect_timeout}']
    if key_file:
        opts += ['-i', str(key_file)]
    if port != 22:
        opts += ['-p', str(port)]
    return opts


def run_ssh(
    host: str,
    command: str,
    user: str = 'ubuntu',
    timeout: int = 60,
    key_file: Optional[Path] = None,
    port: int = 22,
    policy: HostKeyPolicy = HostKeyPolicy.ACCEPT_ANY,
    known_hosts_file: Optional[Path] = None,
    stdout=None,
    input: Optional[str] = None,
) -> tuple[int, str, str]:
    """Run command over SSH. input is sent to the remote command's stdin."""
    opts = ssh_options(policy, key_file, port, known_hosts_file, connect_timeout=min(timeout, 30))
    cmd = ['ssh'] + opts + [f'{user}@{host}', command]
    return run_command(cmd, timeout=timeout, stdout=stdout, input=input)


def get_caller_ip(url: str = CALLER_IP_URL, timeout: int = 10) -> str:
    """Public IPv4 address of this machine as seen from the internet.

    Raises:
        requests.exceptions.RequestException: Lookup failed
    """
    resp = requests.get(url, timeout=timeout)
    resp.raise_for_status()
    ip = resp.text.strip()
    logger.debug(f"Caller public IP: {ip}")
    return ip
