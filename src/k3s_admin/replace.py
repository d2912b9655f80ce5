"""Replace a broken node with a fresh VM and rejoin it to the cluster."""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from k3s_admin.cluster_query import ClusterQuery
from k3s_admin.errors import ConfigError, CommandFailedError, K3sAdminError, PreconditionError, RemoteConnectionError
from k3s_admin.interfaces import ClusterAPI, HypervisorAPI, NodeAgent
from k3s_admin.lifecycle import NodeLifecycle
from k3s_admin.models import ArtifactKind, Node, NodeRole, OperationOptions, OperationReport
from k3s_admin.naming import describe_artifact
from k3s_admin.validator import ClusterValidator

logger = logging.getLogger(__name__)

CLEAN_SNAPSHOT = "clean"


@dataclass
class ReplaceSettings:
    """Inputs for rebuilding a node VM."""

    api_server: Optional[str] = None
    templates: Dict[str, int] = field(default_factory=dict)
    gateway: Optional[str] = None
    prefix_len: int = 24
    mount_path: Optional[str] = None
    storage_device: Optional[str] = None
    storage_fs_type: str = "ceph"
    storage_options: str = "_netdev,noatime"
    backup_compress: str = "zstd"

    @property
    def fstab_line(self) -> Optional[str]:
        if not (self.storage_device and self.mount_path):
            return None
        return f"{self.storage_device} {self.mount_path} {self.storage_fs_type} {self.storage_options} 0 0"


class NodeReplacer:
    """Tears down a node, recreates its VM and rejoins it."""

    def __init__(
        self,
        query: ClusterQuery,
        lifecycle: NodeLifecycle,
        validator: ClusterValidator,
        hypervisor: HypervisorAPI,
        node_agent: NodeAgent,
        cluster_api: ClusterAPI,
        settings: Optional[ReplaceSettings] = None,
        options: Optional[OperationOptions] = None,
    ) -> None:
        self.query = query
        self.lifecycle = lifecycle
        self.validator = validator
        self.hypervisor = hypervisor
        self.node_agent = node_agent
        self.cluster_api = cluster_api
        self.settings = settings or ReplaceSettings()
        self.options = options or OperationOptions()

    def replace(self, node: Node) -> OperationReport:
        """Replace one node.

        Steps: shutdown, pre-replace backup, delete the node object, recreate
        the VM, start it, rejoin k3s, mount shared storage, wait for Ready.
        """
        report = OperationReport(operation=f"replace {node.name}")
        logger.info(f"🔄 Replacing node {node.name} (VM {node.vmid} on {node.hypervisor_host})")
        try:
            self.lifecycle.shutdown(node)
            self._backup(node)
            self._delete_node_object(node)
            self._recreate_vm(node)
            self._start(node)
            peer = self._rejoin(node)
            self._mount_storage(node, peer)
            self._wait_ready(node, report)
        except K3sAdminError as e:
            logger.error(f"❌ Replacement of {node.name} failed: {e}")
            return report.fail(str(e), node.name)

        validation = self.validator.validate(scope=[node])
        report.issues += validation.errors + validation.warnings
        if not validation.valid:
            return report.fail("Validation failed after replacement", node.name)
        report.processed.append(node.name)
        report.message = f"{node.name} replaced and rejoined"
        logger.info(f"✅ {report.message}")
        return report

    def _backup(self, node: Node) -> None:
        storage = self.query.find_backup_storage(self.options.backup_storage)
        notes = describe_artifact(ArtifactKind.BACKUP, node.name, None, "prereplace")
        if self.options.dry_run:
            logger.info(f"[DRY RUN] Would back up VM {node.vmid} to {storage} before replacement")
            return
        result = self.hypervisor.create_backup(
            node.hypervisor_host, node.vmid, storage, notes, compress=self.settings.backup_compress, mode="stop"
        )
        if result.success:
            logger.info(f"✅ Pre-replace backup of VM {node.vmid} created")
            return
        if not self.options.force:
            raise CommandFailedError(f"Pre-replace backup of VM {node.vmid} failed", output=result.log[-2000:])
        logger.warning(f"⚠️ Pre-replace backup of VM {node.vmid} failed. Continuing (force)")

    def _delete_node_object(self, node: Node) -> None:
        via = self.query.find_kubectl_node(exclude=node.name, allow_self=False)
        if via is None:
            raise PreconditionError(f"No other node available to remove {node.name} from the cluster")
        if self.options.dry_run:
            logger.info(f"[DRY RUN] Would delete node object {node.name}")
            return
        self.cluster_api.delete_node(via, node.name)
        logger.info(f"🗑️ Removed {node.name} from the cluster")

    def _recreate_vm(self, node: Node) -> None:
        host, vmid = node.hypervisor_host, node.vmid
        snapshots = {s.name for s in self.hypervisor.list_snapshots(host, vmid)}
        if CLEAN_SNAPSHOT in snapshots:
            if self.options.dry_run:
                logger.info(f"[DRY RUN] Would roll back VM {vmid} to '{CLEAN_SNAPSHOT}'")
                return
            logger.info(f"♻️ Rolling back VM {vmid} to its '{CLEAN_SNAPSHOT}' snapshot")
            self.hypervisor.rollback_snapshot(host, vmid, CLEAN_SNAPSHOT)
            return

        role = "master" if node.role == NodeRole.CONTROL_PLANE else "worker"
        template = self.settings.templates.get(role)
        if template is None:
            raise ConfigError(f"No '{CLEAN_SNAPSHOT}' snapshot on VM {vmid} and no {role} template configured")
        if not self.settings.gateway:
            raise ConfigError("network.gateway is required to configure a cloned VM")

        ipconfig = f"ip={node.address}/{self.settings.prefix_len},gw={self.settings.gateway}"
        if self.options.dry_run:
            logger.info(f"[DRY RUN] Would recreate VM {vmid} from template {template} with {ipconfig}")
            return
        logger.info(f"🆕 Recreating VM {vmid} from template {template}")
        self.hypervisor.destroy_vm(host, vmid)
        self.hypervisor.clone_vm(host, template, vmid, node.name)
        self.hypervisor.set_ip_config(host, vmid, ipconfig)

    def _start(self, node: Node) -> None:
        if self.options.dry_run:
            logger.info(f"[DRY RUN] Would start VM {node.vmid}")
            return
        self.hypervisor.start_vm(node.hypervisor_host, node.vmid)
        if not self.query.wait_reachable(node.name, self.lifecycle.timeouts.reachable):
            raise RemoteConnectionError(node.name, "not reachable after VM start")

    def _rejoin(self, node: Node) -> Optional[str]:
        peers = self.query.live_control_plane_peers(node)
        if not peers:
            raise PreconditionError(f"No live control-plane node to rejoin {node.name} to")
        peer = peers[0].name
        if not self.settings.api_server:
            raise ConfigError("cluster.api_server is required to rejoin a node")
        if self.options.dry_run:
            logger.info(f"[DRY RUN] Would install k3s on {node.name} joining {self.settings.api_server}")
            return peer
        token = self.node_agent.read_join_token(peer)
        self.node_agent.install_k3s(node.name, self.settings.api_server, token, server=node.is_control_plane)
        return peer

    def _mount_storage(self, node: Node, peer: Optional[str]) -> None:
        fstab_line = self.settings.fstab_line
        if not fstab_line or not peer:
            return
        if self.options.dry_run:
            logger.info(f"[DRY RUN] Would mount {self.settings.mount_path} on {node.name}")
            return
        self.node_agent.configure_shared_storage(node.name, peer, self.settings.mount_path or "", fstab_line)

    def _wait_ready(self, node: Node, report: OperationReport) -> None:
        if self.options.dry_run:
            return
        if not self.query.wait_node_ready(node.name, self.lifecycle.timeouts.node_ready):
            raise CommandFailedError(f"{node.name} did not become Ready after rejoining")
        if not self.lifecycle.try_uncordon(node):
            report.degraded.append(node.name)
