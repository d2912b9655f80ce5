"""Host-level operations on k3s nodes: service control, network and storage."""

import logging
import shlex
from typing import Dict, Optional

from k3s_admin.errors import CommandFailedError, RemoteConnectionError
from k3s_admin.interfaces import NodeAgent, RemoteExecutor
from k3s_admin.models import ExecMode

logger = logging.getLogger(__name__)

SERVER_UNIT = "k3s.service"
AGENT_UNIT = "k3s-agent.service"
NODE_TOKEN_PATH = "/var/lib/rancher/k3s/server/node-token"
UNIT_NOT_LOADED = 5


class SSHNodeAgent(NodeAgent):
    """Manages the k3s service and host checks on cluster nodes."""

    def __init__(self, executor: RemoteExecutor, addresses: Optional[Dict[str, str]] = None, user: Optional[str] = None):
        self.executor = executor
        self.addresses = dict(addresses or {})
        self.user = user

    def _run(self, node: str, command: str, mode: ExecMode = ExecMode.CAPTURE, timeout: float = 60):
        return self.executor.run(node, command, user=self.user, mode=mode, timeout=timeout)

    def is_reachable(self, node: str) -> bool:
        try:
            return self._run(node, "true", mode=ExecMode.SILENT, timeout=10).ok
        except RemoteConnectionError as e:
            logger.debug(f"{node} unreachable: {e}")
            return False

    def service_active(self, node: str) -> bool:
        command = f"systemctl is-active --quiet {SERVER_UNIT} || systemctl is-active --quiet {AGENT_UNIT}"
        try:
            return self._run(node, command, mode=ExecMode.SILENT, timeout=15).ok
        except RemoteConnectionError:
            return False

    def stop_service(self, node: str) -> None:
        result = self._run(node, f"systemctl stop {SERVER_UNIT} {AGENT_UNIT}", timeout=120)
        # exit code 5: one of the units is not installed on this node
        if result.exit_code not in (0, UNIT_NOT_LOADED):
            raise CommandFailedError(
                f"Failed to stop k3s on {node}: {result.output}", exit_code=result.exit_code, output=result.output
            )

    def kill_service(self, node: str) -> None:
        result = self._run(node, "pkill -9 k3s", timeout=30)
        # pkill exits 1 when nothing matched
        if result.exit_code not in (0, 1):
            raise CommandFailedError(f"Failed to kill k3s on {node}: {result.output}", exit_code=result.exit_code)

    def start_service(self, node: str) -> None:
        command = (
            f"if systemctl cat {SERVER_UNIT} >/dev/null 2>&1; "
            f"then systemctl start {SERVER_UNIT}; else systemctl start {AGENT_UNIT}; fi"
        )
        result = self._run(node, command, timeout=180)
        if not result.ok:
            raise CommandFailedError(f"Failed to start k3s on {node}: {result.output}", exit_code=result.exit_code)

    def can_ping(self, source: str, target: str) -> bool:
        address = self.addresses.get(target, target)
        try:
            return self._run(source, f"ping -c 1 -W 2 {shlex.quote(address)}", mode=ExecMode.SILENT, timeout=15).ok
        except RemoteConnectionError:
            return False

    def mount_writable(self, node: str, path: str) -> bool:
        marker = f"{path}/.k3s-admin-write-test"
        command = (
            f"mountpoint -q {shlex.quote(path)} && touch {shlex.quote(marker)} && rm -f {shlex.quote(marker)}"
        )
        try:
            return self._run(node, command, mode=ExecMode.SILENT, timeout=30).ok
        except RemoteConnectionError:
            return False

    def read_join_token(self, node: str) -> str:
        """
        Get k3s join token from a control-plane node.

        Args:
            node: Control-plane node holding the server token

        Returns:
            K3s join token string

        Raises:
            CommandFailedError: If the token cannot be read
        """
        result = self._run(node, f"cat {NODE_TOKEN_PATH}", mode=ExecMode.QUIET, timeout=30)
        token = result.output.strip()
        if not result.ok or not token:
            raise CommandFailedError(f"Failed to read k3s token from {node}", exit_code=result.exit_code)
        logger.info(f"✅ Retrieved k3s token from {node}")
        return token

    def install_k3s(self, node: str, server_url: str, token: str, server: bool) -> None:
        """
        Install k3s on a node and join it to the cluster.

        Args:
            node: Node to install k3s on
            server_url: URL of an existing k3s server (e.g., https://192.168.4.212:6443)
            token: K3s join token
            server: Join as control-plane server instead of agent

        Raises:
            CommandFailedError: If installation fails
        """
        role_args = "server --write-kubeconfig-mode 644" if server else "agent"
        install_cmd = (
            f"curl -sfL https://get.k3s.io | "
            f"K3S_TOKEN={shlex.quote(token)} "
            f"K3S_URL={shlex.quote(server_url)} "
            f"sh -s - {role_args}"
        )

        logger.info(f"🚀 Installing k3s {'server' if server else 'agent'} on {node}")
        result = self._run(node, install_cmd, timeout=600)
        if not result.ok:
            logger.error(f"K3s installation failed: {result.output}")
            raise CommandFailedError(f"Failed to install k3s on {node}", exit_code=result.exit_code, output=result.output)
        logger.info(f"✅ K3s installed on {node}")

    def configure_shared_storage(self, node: str, source: str, mount_path: str, fstab_line: str) -> None:
        """Copy Ceph client config from ``source`` and mount the shared filesystem on ``node``."""
        for path in ("/etc/ceph/ceph.conf", "/etc/ceph/ceph.client.admin.keyring"):
            content = self._run(source, f"cat {path}", mode=ExecMode.QUIET, timeout=30)
            if not content.ok:
                raise CommandFailedError(f"Failed to read {path} on {source}", exit_code=content.exit_code)
            write = f"mkdir -p /etc/ceph && cat > {path} << 'EOF'\n{content.output}\nEOF\nchmod 600 {path}"
            result = self._run(node, write, timeout=30)
            if not result.ok:
                raise CommandFailedError(f"Failed to write {path} on {node}: {result.output}")

        quoted_line = shlex.quote(fstab_line)
        command = (
            f"mkdir -p {shlex.quote(mount_path)} && "
            f"(grep -qF {quoted_line} /etc/fstab || echo {quoted_line} >> /etc/fstab) && "
            f"(mountpoint -q {shlex.quote(mount_path)} || mount {shlex.quote(mount_path)})"
        )
        result = self._run(node, command, timeout=120)
        if not result.ok:
            raise CommandFailedError(f"Failed to mount {mount_path} on {node}: {result.output}")
        logger.info(f"✅ Shared storage mounted at {mount_path} on {node}")
