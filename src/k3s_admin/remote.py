"""Remote command execution over SSH with a local shortcut."""

import logging
import os
import socket
import subprocess
from typing import Dict, Optional

import paramiko

from k3s_admin.errors import RemoteConnectionError, RemoteTimeoutError
from k3s_admin.interfaces import RemoteExecutor
from k3s_admin.models import CommandResult, ExecMode

logger = logging.getLogger(__name__)

LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


class SSHExecutor(RemoteExecutor):
    """Runs commands on cluster nodes and Proxmox hosts via paramiko.

    Node names are resolved through ``aliases`` (name -> address) so callers
    can address nodes by their cluster name.
    """

    def __init__(
        self,
        user: str = "root",
        key_path: Optional[str] = None,
        port: int = 22,
        connect_timeout: float = 10,
        default_timeout: float = 300,
        aliases: Optional[Dict[str, str]] = None,
    ) -> None:
        self.user = user
        self.key_path = os.path.expanduser(key_path) if key_path else None
        self.port = port
        self.connect_timeout = connect_timeout
        self.default_timeout = default_timeout
        self.aliases = dict(aliases or {})

    def resolve(self, host: str) -> str:
        return self.aliases.get(host, host)

    def is_local(self, host: str) -> bool:
        address = self.resolve(host)
        return address in LOCAL_HOSTS or address in (socket.gethostname(), socket.getfqdn())

    def run(
        self,
        host: str,
        command: str,
        user: Optional[str] = None,
        mode: ExecMode = ExecMode.NORMAL,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        timeout = timeout or self.default_timeout
        if mode == ExecMode.NORMAL:
            logger.debug(f"[{host}]$ {command}")

        if self.is_local(host):
            stdout, stderr, exit_code = self._run_local(host, command, timeout)
        else:
            stdout, stderr, exit_code = self._run_ssh(host, user or self.user, command, timeout)

        return self._shape_result(host, stdout, stderr, exit_code, mode)

    def _run_local(self, host: str, command: str, timeout: float):
        try:
            result = subprocess.run(command, shell=True, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise RemoteTimeoutError(host, f"Command timed out after {timeout}s: {command}") from e
        return result.stdout.strip(), result.stderr.strip(), result.returncode

    def _run_ssh(self, host: str, user: str, command: str, timeout: float):
        address = self.resolve(host)
        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            ssh.connect(
                hostname=address,
                port=self.port,
                username=user,
                key_filename=self.key_path,
                timeout=self.connect_timeout,
            )
        except (paramiko.SSHException, OSError) as e:
            ssh.close()
            raise RemoteConnectionError(host, f"SSH connection to {address} failed: {e}") from e

        try:
            _, stdout, stderr = ssh.exec_command(command, timeout=timeout)
            out = stdout.read().decode(errors="replace").strip()
            err = stderr.read().decode(errors="replace").strip()
            exit_code = stdout.channel.recv_exit_status()
        except socket.timeout as e:
            raise RemoteTimeoutError(host, f"Command timed out after {timeout}s: {command}") from e
        except (paramiko.SSHException, OSError) as e:
            raise RemoteConnectionError(host, f"SSH session failed: {e}") from e
        finally:
            ssh.close()

        return out, err, exit_code

    @staticmethod
    def _shape_result(host: str, stdout: str, stderr: str, exit_code: int, mode: ExecMode) -> CommandResult:
        if mode == ExecMode.SILENT:
            return CommandResult(output="", exit_code=exit_code)
        if mode == ExecMode.QUIET:
            return CommandResult(output=stdout, exit_code=exit_code)

        output = "\n".join(part for part in (stdout, stderr) if part)
        if mode == ExecMode.NORMAL:
            if output:
                logger.debug(f"[{host}] {output}")
            if exit_code != 0:
                logger.debug(f"[{host}] exit code {exit_code}")
        return CommandResult(output=output, exit_code=exit_code)
