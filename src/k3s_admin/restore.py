"""Restore the cluster from a point-in-time snapshot or backup."""

import logging
from typing import Dict, List, Optional, Sequence

from k3s_admin.cluster_query import ClusterQuery
from k3s_admin.confirm import Confirmer, StaticConfirmer
from k3s_admin.errors import (
    ArtifactNotFoundError,
    K3sAdminError,
    MissingMetadataError,
    PreconditionError,
    RemoteConnectionError,
    VerificationError,
)
from k3s_admin.interfaces import DistributedStoreAPI, HypervisorAPI, NodeAgent
from k3s_admin.lifecycle import NodeLifecycle
from k3s_admin.models import (
    ArtifactKind,
    ClusterTopology,
    DistributedStateSnapshot,
    Node,
    NodeState,
    OperationOptions,
    OperationReport,
    ValidationLevel,
    VMArtifact,
)
from k3s_admin.naming import artifact_sort_key, auto_label_pattern, label_matches
from k3s_admin.polling import SystemClock, wait_until
from k3s_admin.validator import ClusterValidator

logger = logging.getLogger(__name__)

ALL_REACHABLE_TIMEOUT = 300
ALL_REACHABLE_INTERVAL = 10


class RestoreCoordinator:
    """Finds a restore point, restores etcd, then restores every VM."""

    def __init__(
        self,
        topology: ClusterTopology,
        query: ClusterQuery,
        lifecycle: NodeLifecycle,
        validator: ClusterValidator,
        hypervisor: HypervisorAPI,
        etcd: DistributedStoreAPI,
        node_agent: NodeAgent,
        options: Optional[OperationOptions] = None,
        confirmer: Optional[Confirmer] = None,
        clock=None,
    ) -> None:
        self.topology = topology
        self.query = query
        self.lifecycle = lifecycle
        self.validator = validator
        self.hypervisor = hypervisor
        self.etcd = etcd
        self.node_agent = node_agent
        self.options = options or OperationOptions()
        self.confirmer = confirmer or StaticConfirmer(False)
        self.clock = clock or SystemClock()

    def _proceed_without(self, question: str) -> bool:
        if self.options.force or self.options.ignore_missing_snapshot:
            logger.warning(f"⚠️ {question} Proceeding without etcd restore")
            return True
        if self.options.interactive:
            return self.confirmer.confirm(question)
        return False

    def _backup_storage(self) -> Optional[str]:
        try:
            return self.query.find_backup_storage(self.options.backup_storage)
        except PreconditionError as e:
            logger.info(f"Skipping backup search: {e}")
            return None

    def _list(self, kind: ArtifactKind, node: Node, storage: Optional[str]) -> List[VMArtifact]:
        if kind == ArtifactKind.BACKUP:
            if not storage:
                return []
            return self.hypervisor.list_backups(node.hypervisor_host, node.vmid, storage)
        return self.hypervisor.list_snapshots(node.hypervisor_host, node.vmid)

    def resolve_target(self, anchor: Node, label: Optional[str], storage: Optional[str]) -> VMArtifact:
        """Find the artifact to restore on the anchor node: backups first, then snapshots.

        Raises:
            ArtifactNotFoundError: If nothing matches
        """
        backups = self._list(ArtifactKind.BACKUP, anchor, storage)
        if label:
            matches = [b for b in backups if label_matches(b.label, label) or label in b.name]
        else:
            matches = backups
        if matches:
            return max(matches, key=artifact_sort_key)

        snapshots = self._list(ArtifactKind.SNAPSHOT, anchor, storage)
        if label:
            matches = [s for s in snapshots if label_matches(s.name, label)]
        else:
            pattern = auto_label_pattern(self.options.label_prefix)
            matches = [s for s in snapshots if s.linked_snapshot or pattern.match(s.name)]
        if matches:
            return max(matches, key=artifact_sort_key)

        wanted = f"matching '{label}'" if label else "at all"
        raise ArtifactNotFoundError(f"No backup or snapshot {wanted} for VM {anchor.vmid} ({anchor.name})")

    def _match_artifact(self, node: Node, target: VMArtifact, storage: Optional[str]) -> Optional[VMArtifact]:
        """Pick the artifact of ``node`` that belongs to the same restore point as ``target``."""
        if node.vmid == target.vmid and node.hypervisor_host == target.hypervisor_host:
            return target
        candidates = self._list(target.kind, node, storage)
        if target.label:
            candidates = [a for a in candidates if a.label == target.label]
        if not candidates:
            return None
        return max(candidates, key=artifact_sort_key)

    def _locate_distributed_snapshot(self, name: str) -> Optional[DistributedStateSnapshot]:
        for cp in self.topology.control_plane():
            if not self.node_agent.is_reachable(cp.name):
                continue
            try:
                snapshot = self.etcd.find_snapshot(cp.name, name)
            except K3sAdminError as e:
                logger.warning(f"⚠️ Could not list etcd snapshots on {cp.name}: {e}")
                continue
            if snapshot is not None:
                logger.info(f"🔍 etcd snapshot {name} found on {cp.name}: {snapshot.location}")
                return snapshot
        return None

    def restore(self, label: Optional[str] = None, scope: Optional[Sequence[Node]] = None) -> OperationReport:
        """Restore the cluster to a snapshot or backup.

        Args:
            label: Restore point label; the most recent point when omitted
            scope: Nodes whose VMs to restore, defaults to the whole topology

        Returns:
            OperationReport describing restored, failed and degraded nodes
        """
        scope = list(scope) if scope is not None else list(self.topology)
        report = OperationReport(operation="restore")
        if not scope:
            return report.fail("No nodes selected for restore")

        try:
            storage = self._backup_storage()
            target = self.resolve_target(scope[0], label, storage)
            logger.info(f"🎯 Restore point: {target.kind.value} {target.name}")

            etcd_name = target.linked_snapshot
            snapshot = None
            if etcd_name is None:
                if not self._proceed_without(f"{target.name} has no linked etcd snapshot. Restore VMs only?"):
                    raise MissingMetadataError(f"{target.kind.value} {target.name} carries no linked etcd snapshot")
            else:
                snapshot = self._locate_distributed_snapshot(etcd_name)
                if snapshot is None and not self._proceed_without(
                    f"etcd snapshot {etcd_name} not found on any control-plane node. Restore VMs only?"
                ):
                    raise ArtifactNotFoundError(f"etcd snapshot {etcd_name} not found on any control-plane node")

            plan = {node.name: self._match_artifact(node, target, storage) for node in scope}

            if snapshot is not None:
                self._restore_distributed_state(snapshot)
            self._restore_vms(scope, plan, report)
        except K3sAdminError as e:
            logger.error(f"❌ Restore aborted: {e}")
            report.fail(str(e))
            return report

        self._finish(scope, report)
        return report

    def _restore_distributed_state(self, snapshot: DistributedStateSnapshot) -> None:
        """Stop k3s everywhere, reset etcd on the holder, then bring k3s back up."""
        holder = self.topology.get(snapshot.node)
        others = [n for n in self.topology if n.name != holder.name]
        logger.info(f"♻️ Restoring etcd from {snapshot.name} on {holder.name}")

        for node in [holder] + others:
            if not self.options.dry_run and not self.node_agent.is_reachable(node.name):
                logger.warning(f"⚠️ {node.name} unreachable, skipping k3s stop")
                continue
            self.lifecycle.stop_cluster_service(node)

        if self.options.dry_run:
            logger.info(f"[DRY RUN] Would reset etcd on {holder.name} from {snapshot.location}")
        else:
            self.etcd.restore(holder.name, snapshot)

        self.lifecycle.start_cluster_service(holder)
        for node in others:
            try:
                if self.options.dry_run:
                    logger.info(f"[DRY RUN] Would start k3s on {node.name}")
                    continue
                if self.node_agent.is_reachable(node.name):
                    self.node_agent.start_service(node.name)
            except K3sAdminError as e:
                logger.warning(f"⚠️ Could not restart k3s on {node.name}: {e}")

    def _restore_vm(self, node: Node, artifact: VMArtifact) -> None:
        host, vmid = node.hypervisor_host, node.vmid
        if self.options.dry_run:
            logger.info(f"[DRY RUN] Would restore VM {vmid} from {artifact.kind.value} {artifact.name}")
            return

        if self.hypervisor.vm_status(host, vmid) != "stopped":
            self.lifecycle.power_off(node, hard=True)
        if artifact.kind == ArtifactKind.BACKUP:
            logger.info(f"♻️ Restoring VM {vmid} from backup {artifact.name}")
            self.hypervisor.restore_backup(host, vmid, artifact.name)
        else:
            logger.info(f"♻️ Rolling back VM {vmid} to snapshot {artifact.name}")
            self.hypervisor.rollback_snapshot(host, vmid, artifact.name)

        if self.hypervisor.vm_status(host, vmid) != "running":
            self.hypervisor.start_vm(host, vmid)
        node.state = NodeState.POWERING_ON

    def _other_control_plane_reachable(self, node: Node) -> bool:
        return any(
            self.node_agent.is_reachable(cp.name) for cp in self.topology.control_plane() if cp.name != node.name
        )

    def _restore_vms(self, scope: List[Node], plan: Dict[str, Optional[VMArtifact]], report: OperationReport) -> None:
        workers = [n for n in scope if not n.is_control_plane]
        control_plane = [n for n in scope if n.is_control_plane]
        multi_control_plane = len(self.topology.control_plane()) > 1
        first_control_plane = True

        for node in workers + control_plane:
            artifact = plan.get(node.name)
            try:
                if artifact is None:
                    raise ArtifactNotFoundError(f"No matching artifact for VM {node.vmid} ({node.name})")
                if node.is_control_plane and multi_control_plane:
                    if first_control_plane and not self._other_control_plane_reachable(node):
                        logger.info(f"All other control-plane nodes are down, skipping quorum check for {node.name}")
                    else:
                        self.lifecycle.check_quorum(node)
                    first_control_plane = False
                self._restore_vm(node, artifact)
                if node.is_control_plane:
                    # the next control-plane node waits until this one is back
                    self.lifecycle.power_on(node, uncordon=False)
                report.processed.append(node.name)
            except K3sAdminError as e:
                logger.error(f"❌ Restore of {node.name} failed: {e}")
                report.failed.append(node.name)
                if not self.options.force:
                    raise

    def _finish(self, scope: List[Node], report: OperationReport) -> None:
        restored = [n for n in scope if n.name in report.processed]
        if not self.options.dry_run:
            all_up = wait_until(
                lambda: all(self.node_agent.is_reachable(n.name) for n in restored),
                ALL_REACHABLE_TIMEOUT,
                ALL_REACHABLE_INTERVAL,
                self.clock,
                "restored nodes to become reachable",
            )
            if not all_up:
                down = [n.name for n in restored if not self.node_agent.is_reachable(n.name)]
                report.issues.append(f"Unreachable after restore: {', '.join(down)}")
                report.fail(f"{len(down)} nodes unreachable after restore", None)

            for node in restored:
                if node.state != NodeState.SERVICE_ACTIVE:
                    try:
                        self.lifecycle.start_cluster_service(node)
                    except (VerificationError, RemoteConnectionError) as e:
                        report.issues.append(str(e))
                if self.query.is_cordoned(node.name) and not self.lifecycle.try_uncordon(node):
                    report.degraded.append(node.name)

        level = (
            ValidationLevel.EXTENDED
            if self.options.validation_level.includes(ValidationLevel.EXTENDED)
            else ValidationLevel.BASIC
        )
        validation = self.validator.validate(level, scope)
        report.issues += validation.errors + validation.warnings
        if not validation.valid:
            report.fail(f"Post-restore validation failed: {'; '.join(validation.errors)}")
        elif report.failed:
            report.fail(f"{len(report.failed)} nodes failed to restore: {', '.join(report.failed)}")
        elif report.success:
            report.message = f"Restored {len(report.processed)} nodes"

        if report.success:
            logger.info(f"✅ {report.summary}")
        else:
            logger.error(f"❌ {report.summary}")
