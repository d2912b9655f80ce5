"""k3s embedded etcd snapshot operations."""

import logging
import re
import shlex
from typing import List, Optional

from k3s_admin.errors import CommandFailedError, RemoteConnectionError, VerificationError
from k3s_admin.interfaces import DistributedStoreAPI, RemoteExecutor
from k3s_admin.models import DistributedStateSnapshot, ExecMode

logger = logging.getLogger(__name__)

DEFAULT_SNAPSHOT_DIR = "/var/lib/rancher/k3s/server/db/snapshots"
_SAVED_PATH = re.compile(r'[Ss]aving (?:current )?etcd snapshot to ([^\s"]+)')


class K3sEtcdStore(DistributedStoreAPI):
    """Saves, lists and restores etcd snapshots with the k3s binary."""

    def __init__(
        self,
        executor: RemoteExecutor,
        snapshot_dir: str = DEFAULT_SNAPSHOT_DIR,
        data_dir: Optional[str] = None,
        user: Optional[str] = None,
    ) -> None:
        self.executor = executor
        self.snapshot_dir = snapshot_dir.rstrip("/")
        self.data_dir = data_dir
        self.user = user

    def save_snapshot(self, node: str, name: str) -> DistributedStateSnapshot:
        """Save an etcd snapshot on a control-plane node.

        k3s appends ``-<node>-<unix time>`` to the requested name; the returned
        snapshot keeps the requested name and points at the actual file.
        """
        logger.info(f"📸 Saving etcd snapshot {name} on {node}")
        result = self.executor.run(
            node, f"k3s etcd-snapshot save --name {shlex.quote(name)}", user=self.user, mode=ExecMode.CAPTURE, timeout=300
        )
        if not result.ok:
            raise CommandFailedError(
                f"Failed to save etcd snapshot on {node}: {result.output}",
                exit_code=result.exit_code,
                output=result.output,
            )

        match = _SAVED_PATH.search(result.output)
        if match:
            return DistributedStateSnapshot(name=name, node=node, location=match.group(1))

        snapshot = self.find_snapshot(node, name)
        if snapshot is None:
            raise VerificationError(f"etcd snapshot {name} not found on {node} after save")
        return snapshot

    def list_snapshots(self, node: str) -> List[str]:
        result = self.executor.run(
            node, f"ls -1 {shlex.quote(self.snapshot_dir)}", user=self.user, mode=ExecMode.QUIET, timeout=30
        )
        if not result.ok:
            raise CommandFailedError(f"Failed to list etcd snapshots on {node}", exit_code=result.exit_code)
        return [line.strip() for line in result.output.splitlines() if line.strip()]

    def delete_snapshot(self, node: str, name: str) -> None:
        result = self.executor.run(
            node, f"k3s etcd-snapshot delete {shlex.quote(name)}", user=self.user, mode=ExecMode.CAPTURE, timeout=120
        )
        if not result.ok:
            raise CommandFailedError(f"Failed to delete etcd snapshot {name} on {node}: {result.output}")

    def find_snapshot(self, node: str, name: str) -> Optional[DistributedStateSnapshot]:
        for filename in sorted(self.list_snapshots(node), reverse=True):
            if filename.startswith(name):
                return DistributedStateSnapshot(name=name, node=node, location=f"{self.snapshot_dir}/{filename}")
        return None

    def is_healthy(self, node: str) -> bool:
        """True if the running server answers an etcd snapshot listing."""
        try:
            result = self.executor.run(node, "k3s etcd-snapshot ls", user=self.user, mode=ExecMode.SILENT, timeout=60)
        except RemoteConnectionError:
            return False
        return result.ok

    def restore(self, node: str, snapshot: DistributedStateSnapshot) -> None:
        command = f"k3s server --cluster-reset --cluster-reset-restore-path={shlex.quote(snapshot.location)}"
        if self.data_dir:
            command += f" --data-dir={shlex.quote(self.data_dir)}"

        logger.info(f"♻️ Restoring etcd on {node} from {snapshot.location}")
        result = self.executor.run(node, command, user=self.user, mode=ExecMode.CAPTURE, timeout=900)
        if not result.ok:
            raise CommandFailedError(
                f"etcd restore failed on {node}: {result.output}",
                command=command,
                exit_code=result.exit_code,
                output=result.output,
            )
        logger.info(f"✅ etcd restored on {node}")
