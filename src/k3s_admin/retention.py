"""Retention cleanup for VM snapshots, VM backups and etcd snapshots."""

import logging
from typing import Optional, Sequence

from k3s_admin.errors import K3sAdminError
from k3s_admin.interfaces import DistributedStoreAPI, HypervisorAPI
from k3s_admin.models import ArtifactKind, ClusterTopology, Node, OperationOptions, RetentionPolicy
from k3s_admin.naming import (
    artifact_sort_key,
    auto_label_pattern,
    etcd_label_pattern,
    name_sort_key,
    select_expired,
)

logger = logging.getLogger(__name__)


class RetentionManager:
    """Deletes all but the newest ``keep`` artifacts of each class."""

    def __init__(
        self,
        topology: ClusterTopology,
        hypervisor: HypervisorAPI,
        etcd: DistributedStoreAPI,
        options: Optional[OperationOptions] = None,
    ) -> None:
        self.topology = topology
        self.hypervisor = hypervisor
        self.etcd = etcd
        self.options = options or OperationOptions()
        self.failures = 0

    def _delete(self, description: str, action, *args) -> bool:
        if self.options.dry_run:
            logger.info(f"[DRY RUN] Would delete {description}")
            return True
        try:
            action(*args)
        except K3sAdminError as e:
            self.failures += 1
            logger.warning(f"⚠️ Could not delete {description}: {e}")
            return False
        logger.info(f"🗑️ Deleted {description}")
        return True

    def apply(
        self,
        kind: ArtifactKind,
        policy: RetentionPolicy,
        scope: Sequence[Node],
        storage: Optional[str] = None,
    ) -> int:
        """Apply the policy to the VM artifacts of ``kind`` and to etcd snapshots.

        Returns:
            Number of artifacts deleted
        """
        if not policy.enabled:
            logger.info("Retention cleanup disabled (keep=0)")
            return 0

        logger.info(f"🧹 Applying retention: keeping {policy.keep} most recent {kind.value}s")
        self.failures = 0
        deleted = 0
        for node in scope:
            if kind == ArtifactKind.BACKUP and storage:
                deleted += self._clean_backups(node, policy, storage)
            elif kind == ArtifactKind.SNAPSHOT:
                deleted += self._clean_snapshots(node, policy)
        deleted += self._clean_etcd(policy)
        if self.failures:
            logger.warning(f"⚠️ {self.failures} artifacts could not be deleted")
        return deleted

    def _clean_backups(self, node: Node, policy: RetentionPolicy, storage: str) -> int:
        try:
            backups = self.hypervisor.list_backups(node.hypervisor_host, node.vmid, storage)
        except K3sAdminError as e:
            logger.warning(f"⚠️ Could not list backups of VM {node.vmid}: {e}")
            return 0
        expired = select_expired(backups, policy.keep, artifact_sort_key)
        return sum(
            self._delete(f"backup {b.name}", self.hypervisor.delete_backup, node.hypervisor_host, storage, b.name)
            for b in expired
        )

    def _clean_snapshots(self, node: Node, policy: RetentionPolicy) -> int:
        pattern = auto_label_pattern(self.options.label_prefix)
        try:
            snapshots = [s for s in self.hypervisor.list_snapshots(node.hypervisor_host, node.vmid) if pattern.match(s.name)]
        except K3sAdminError as e:
            logger.warning(f"⚠️ Could not list snapshots of VM {node.vmid}: {e}")
            return 0
        expired = select_expired(snapshots, policy.keep, artifact_sort_key)
        return sum(
            self._delete(
                f"snapshot {s.name} of VM {node.vmid}",
                self.hypervisor.delete_snapshot,
                node.hypervisor_host,
                node.vmid,
                s.name,
            )
            for s in expired
        )

    def _clean_etcd(self, policy: RetentionPolicy) -> int:
        pattern = etcd_label_pattern(self.options.label_prefix)
        deleted = 0
        for cp in self.topology.control_plane():
            try:
                names = [n for n in self.etcd.list_snapshots(cp.name) if pattern.match(n)]
            except K3sAdminError as e:
                logger.warning(f"⚠️ Could not list etcd snapshots on {cp.name}: {e}")
                continue
            expired = select_expired(names, policy.keep, name_sort_key)
            deleted += sum(
                self._delete(f"etcd snapshot {name} on {cp.name}", self.etcd.delete_snapshot, cp.name, name)
                for name in expired
            )
        return deleted
