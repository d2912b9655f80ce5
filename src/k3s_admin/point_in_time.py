"""Cluster-wide snapshot and backup sequencing.

Order of operations:

1. validate the cluster
2. take the etcd snapshot on a live control-plane node
3. workers as a batch
4. control-plane nodes strictly one at a time, each validated before the next
5. final validation, uncordon sweep, retention cleanup

Every VM artifact description embeds the etcd snapshot name so a restore can
find the consistent etcd state.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from k3s_admin.cluster_query import ClusterQuery
from k3s_admin.errors import CommandFailedError, K3sAdminError, PreconditionError, VerificationError
from k3s_admin.interfaces import DistributedStoreAPI, HypervisorAPI
from k3s_admin.lifecycle import NodeLifecycle
from k3s_admin.models import (
    ArtifactKind,
    ClusterTopology,
    DistributedStateSnapshot,
    Node,
    NodeState,
    OperationOptions,
    OperationReport,
    PointInTimeRecord,
    RetentionPolicy,
    ValidationLevel,
    VMArtifact,
)
from k3s_admin.naming import artifact_sort_key, auto_label, describe_artifact, etcd_snapshot_name, format_label
from k3s_admin.retention import RetentionManager
from k3s_admin.validator import ClusterValidator

logger = logging.getLogger(__name__)

CORDONED_STATES = {
    NodeState.CORDONED,
    NodeState.DRAINING,
    NodeState.DRAINED,
    NodeState.SERVICE_STOPPED,
    NodeState.POWERED_OFF,
}
COORDINATOR_UNCORDON_ATTEMPTS = 15


class PointInTimeCoordinator:
    """Creates a consistent cluster snapshot or backup across all nodes."""

    def __init__(
        self,
        topology: ClusterTopology,
        query: ClusterQuery,
        lifecycle: NodeLifecycle,
        validator: ClusterValidator,
        hypervisor: HypervisorAPI,
        etcd: DistributedStoreAPI,
        retention: RetentionManager,
        options: Optional[OperationOptions] = None,
        cluster_name: str = "k3s",
        backup_compress: str = "zstd",
        backup_mode: str = "stop",
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.topology = topology
        self.query = query
        self.lifecycle = lifecycle
        self.validator = validator
        self.hypervisor = hypervisor
        self.etcd = etcd
        self.retention = retention
        self.options = options or OperationOptions()
        self.cluster_name = cluster_name
        self.backup_compress = backup_compress
        self.backup_mode = backup_mode
        self.now = now

    def resolve_label(self, label: Optional[str]) -> str:
        now = self.now()
        if label:
            return format_label(label, self.cluster_name, now)
        return auto_label(self.options.label_prefix, now)

    def create(
        self,
        kind: ArtifactKind,
        label: Optional[str] = None,
        description: str = "",
        scope: Optional[Sequence[Node]] = None,
    ) -> OperationReport:
        """Take a cluster-wide snapshot or backup.

        Args:
            kind: ArtifactKind.SNAPSHOT or ArtifactKind.BACKUP
            label: Optional user label, sanitized and shortened for Proxmox
            description: Free text appended to every artifact description
            scope: Nodes to process, defaults to the whole topology

        Returns:
            OperationReport; ``record`` is set when the run completed
        """
        scope = list(scope) if scope is not None else list(self.topology)
        report = OperationReport(operation=kind.value)
        label = self.resolve_label(label)
        timestamp = self.now()
        artifacts: List[VMArtifact] = []
        logger.info(f"🚀 Creating cluster {kind.value} '{label}' for {len(scope)} nodes")

        try:
            self.validator.gate(self.options.validation_level, f"before {kind.value}", scope)
            storage = self.query.find_backup_storage(self.options.backup_storage) if kind == ArtifactKind.BACKUP else None

            etcd_snapshot = self._save_distributed_snapshot(label, scope)
            etcd_name = etcd_snapshot.name if etcd_snapshot else None

            workers = [n for n in scope if not self.query.is_control_plane(n)]
            control_plane = [n for n in scope if n not in workers]

            if workers:
                if kind == ArtifactKind.SNAPSHOT:
                    artifacts += self._snapshot_workers(workers, label, etcd_name, description, report)
                else:
                    artifacts += self._backup_workers(workers, storage, etcd_name, description, report)

            for node in control_plane:
                artifact = self._process_control_plane(kind, node, label, storage, etcd_name, description, report)
                if artifact is not None:
                    artifacts.append(artifact)
        except K3sAdminError as e:
            logger.error(f"❌ Cluster {kind.value} '{label}' aborted: {e}")
            report.fail(str(e))
            report.degraded = self._still_cordoned(scope)
            self._log_summary(report)
            return report

        self._post_pass(kind, scope, storage, report)
        report.record = PointInTimeRecord(
            kind=kind,
            label=label,
            timestamp=timestamp,
            distributed_snapshot_name=etcd_name,
            description=description,
            artifacts=tuple(artifacts),
        )
        if report.success:
            report.message = f"{kind.value} '{label}' created for {len(report.processed)} nodes"
        self._log_summary(report)
        return report

    def _save_distributed_snapshot(self, label: str, scope: List[Node]) -> Optional[DistributedStateSnapshot]:
        """Save the etcd snapshot on the first live control-plane node, failing over to the next.

        Control-plane nodes in scope are tried in scope order, then the rest of the topology.
        """
        name = etcd_snapshot_name(label)
        in_scope = [n for n in scope if n.is_control_plane]
        seen = {n.name for n in in_scope}
        candidates = in_scope + [n for n in self.topology.control_plane() if n.name not in seen]
        for node in candidates:
            if not self.query.is_live(node):
                logger.warning(f"⚠️ {node.name} is not serving, trying next control-plane node")
                continue
            if self.options.dry_run:
                logger.info(f"[DRY RUN] Would save etcd snapshot {name} on {node.name}")
                return DistributedStateSnapshot(name=name, node=node.name, location="")
            try:
                snapshot = self.etcd.save_snapshot(node.name, name)
            except K3sAdminError as e:
                logger.warning(f"⚠️ etcd snapshot on {node.name} failed: {e}")
                continue
            logger.info(f"✅ etcd snapshot {name} saved on {node.name} ({snapshot.location})")
            return snapshot

        message = "Could not take an etcd snapshot on any control-plane node"
        if self.options.force:
            logger.warning(f"⚠️ {message}. Continuing without etcd link (force)")
            return None
        raise PreconditionError(message)

    def _snapshot_vm(self, node: Node, label: str, etcd_name: Optional[str], description: str) -> VMArtifact:
        text = describe_artifact(ArtifactKind.SNAPSHOT, node.name, etcd_name, description)
        artifact = VMArtifact(
            kind=ArtifactKind.SNAPSHOT,
            vmid=node.vmid,
            hypervisor_host=node.hypervisor_host,
            name=label,
            description=text,
            created=self.now(),
        )
        if self.options.dry_run:
            logger.info(f"[DRY RUN] Would snapshot VM {node.vmid} as {label}")
            return artifact

        logger.info(f"📸 Snapshotting VM {node.vmid} ({node.name}) as {label}")
        self.hypervisor.create_snapshot(node.hypervisor_host, node.vmid, label, text)
        names = {s.name for s in self.hypervisor.list_snapshots(node.hypervisor_host, node.vmid)}
        if label not in names:
            raise VerificationError(f"Snapshot {label} of VM {node.vmid} not found after creation")
        logger.info(f"✅ Snapshot {label} of VM {node.vmid} created")
        return artifact

    def _backup_vm(self, node: Node, storage: str, etcd_name: Optional[str], description: str) -> VMArtifact:
        notes = describe_artifact(ArtifactKind.BACKUP, node.name, etcd_name, description)
        if self.options.dry_run:
            logger.info(f"[DRY RUN] Would back up VM {node.vmid} to {storage}")
            return VMArtifact(ArtifactKind.BACKUP, node.vmid, node.hypervisor_host, "", notes, self.now())

        result = self.hypervisor.create_backup(
            node.hypervisor_host, node.vmid, storage, notes, compress=self.backup_compress, mode=self.backup_mode
        )
        if not result.success:
            raise CommandFailedError(f"Backup of VM {node.vmid} failed", output=result.log[-2000:])

        volid = result.volid
        backups = self.hypervisor.list_backups(node.hypervisor_host, node.vmid, storage)
        if backups:
            volid = max(backups, key=artifact_sort_key).name
        logger.info(f"✅ Backup of VM {node.vmid} created: {volid}")
        return VMArtifact(ArtifactKind.BACKUP, node.vmid, node.hypervisor_host, volid or "", notes, self.now())

    def _handle_node_failure(self, node: Node, error: K3sAdminError, report: OperationReport) -> None:
        """Record a per-node failure; re-raise unless force is set."""
        report.failed.append(node.name)
        if not self.options.force:
            raise error
        logger.warning(f"⚠️ {node.name} failed: {error}. Continuing (force)")

    def _restart(self, node: Node, report: OperationReport) -> None:
        """Power a node back on and uncordon it once Ready; uncordon failures only degrade."""
        self.lifecycle.power_on(node, uncordon=False)
        try:
            self.lifecycle.uncordon(node, attempts=COORDINATOR_UNCORDON_ATTEMPTS, wait_ready=True)
        except VerificationError as e:
            logger.error(f"❌ {e}")
            report.degraded.append(node.name)

    def _snapshot_workers(
        self, workers: List[Node], label: str, etcd_name: Optional[str], description: str, report: OperationReport
    ) -> List[VMArtifact]:
        logger.info(f"👷 Snapshotting {len(workers)} worker nodes as a batch")
        down: List[Node] = []
        artifacts: List[VMArtifact] = []
        try:
            for node in workers:
                self.lifecycle.shutdown(node)
                down.append(node)
            for node in workers:
                try:
                    artifacts.append(self._snapshot_vm(node, label, etcd_name, description))
                    report.processed.append(node.name)
                except K3sAdminError as e:
                    self._handle_node_failure(node, e, report)
        finally:
            restart_error = None
            for node in down:
                try:
                    self._restart(node, report)
                except K3sAdminError as e:
                    logger.error(f"❌ Could not bring {node.name} back: {e}")
                    report.failed.append(node.name)
                    restart_error = restart_error or e
            if restart_error is not None and not self.options.force:
                raise restart_error
        return artifacts

    def _backup_workers(
        self,
        workers: List[Node],
        storage: Optional[str],
        etcd_name: Optional[str],
        description: str,
        report: OperationReport,
    ) -> List[VMArtifact]:
        logger.info(f"👷 Backing up {len(workers)} worker nodes")
        artifacts = []
        for node in workers:
            try:
                self.lifecycle.evacuate(node)
                try:
                    artifacts.append(self._backup_vm(node, storage or "", etcd_name, description))
                finally:
                    # vzdump stop mode restarts the VM itself, k3s still needs starting
                    self._restart(node, report)
                report.processed.append(node.name)
            except K3sAdminError as e:
                self._handle_node_failure(node, e, report)
        return artifacts

    def _process_control_plane(
        self,
        kind: ArtifactKind,
        node: Node,
        label: str,
        storage: Optional[str],
        etcd_name: Optional[str],
        description: str,
        report: OperationReport,
    ) -> Optional[VMArtifact]:
        logger.info(f"🎛️ Processing control-plane node {node.name}")
        artifact = None
        try:
            self.lifecycle.shutdown(node)
            try:
                if kind == ArtifactKind.SNAPSHOT:
                    artifact = self._snapshot_vm(node, label, etcd_name, description)
                else:
                    artifact = self._backup_vm(node, storage or "", etcd_name, description)
            finally:
                self._restart(node, report)
            self.validator.gate(ValidationLevel.BASIC, f"after {node.name}")
            report.processed.append(node.name)
        except K3sAdminError as e:
            self._handle_node_failure(node, e, report)
        return artifact

    def _post_pass(
        self, kind: ArtifactKind, scope: List[Node], storage: Optional[str], report: OperationReport
    ) -> None:
        if len(scope) > 1:
            final = self.validator.validate(self.options.validation_level, scope)
            report.issues += final.errors + final.warnings
            if not final.valid:
                report.fail(f"Final validation failed: {'; '.join(final.errors)}")

        for node in scope:
            if self.options.dry_run or self.query.is_cordoned(node.name) is not True:
                continue
            logger.warning(f"⚠️ {node.name} is still cordoned, uncordoning")
            if self.lifecycle.try_uncordon(node, attempts=3):
                if node.name in report.degraded:
                    report.degraded.remove(node.name)
            elif node.name not in report.degraded:
                report.degraded.append(node.name)

        if report.failed:
            report.fail(f"{len(report.failed)} nodes failed: {', '.join(report.failed)}")

        self.retention.apply(kind, RetentionPolicy(self.options.retention), scope, storage)

    def _still_cordoned(self, scope: List[Node]) -> List[str]:
        """Nodes an aborted run may have left unschedulable."""
        if self.options.dry_run:
            return []
        return [n.name for n in scope if n.state in CORDONED_STATES or self.query.is_cordoned(n.name) is True]

    @staticmethod
    def _log_summary(report: OperationReport) -> None:
        if report.success:
            logger.info(f"✅ {report.summary}")
        else:
            logger.error(f"❌ {report.summary}")
        if report.degraded:
            logger.warning(f"⚠️ {len(report.degraded)} nodes may still be cordoned")
