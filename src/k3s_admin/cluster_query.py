"""Read-only queries against the running cluster and the Proxmox fleet."""

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from k3s_admin.errors import K3sAdminError, PreconditionError
from k3s_admin.interfaces import ClusterAPI, HypervisorAPI, NodeAgent
from k3s_admin.models import ClusterTopology, Node
from k3s_admin.polling import SystemClock, wait_until

logger = logging.getLogger(__name__)

CONTROL_PLANE_ROLES = {"control-plane", "master"}


class ClusterQuery:
    """Peer selection, readiness and discovery helpers shared by the coordinators."""

    def __init__(
        self,
        topology: ClusterTopology,
        cluster_api: ClusterAPI,
        node_agent: NodeAgent,
        hypervisor: HypervisorAPI,
        clock=None,
    ) -> None:
        self.topology = topology
        self.cluster_api = cluster_api
        self.node_agent = node_agent
        self.hypervisor = hypervisor
        self.clock = clock or SystemClock()

    def _kubectl_candidates(self) -> List[Node]:
        # control-plane nodes hold a kubeconfig, workers usually do not
        return self.topology.control_plane() + self.topology.workers()

    def find_kubectl_node(self, exclude: Optional[str] = None, allow_self: bool = True) -> Optional[str]:
        """Pick a node that can run kubectl, never preferring ``exclude``.

        Args:
            exclude: Node the operation targets
            allow_self: Fall back to ``exclude`` when no other node answers

        Returns:
            Node name to issue kubectl from, or None
        """
        for node in self._kubectl_candidates():
            if node.name == exclude:
                continue
            if self.node_agent.is_reachable(node.name) and self.cluster_api.can_query(node.name):
                return node.name

        if exclude and allow_self and self.cluster_api.can_query(exclude):
            logger.warning(f"⚠️ No peer can run kubectl; using {exclude} itself (degraded)")
            return exclude
        return None

    def is_live(self, node: Node) -> bool:
        """Node is reachable and its k3s service is active."""
        return self.node_agent.is_reachable(node.name) and self.node_agent.service_active(node.name)

    def is_control_plane(self, node: Node) -> bool:
        """Configured role, cross-checked against live role labels when available."""
        if node.is_control_plane:
            return True
        via = self.find_kubectl_node(exclude=node.name)
        if via is None:
            return False
        try:
            roles = self.cluster_api.node_roles(via, node.name)
        except K3sAdminError as e:
            logger.debug(f"Could not read role labels of {node.name}: {e}")
            return False
        if roles & CONTROL_PLANE_ROLES:
            logger.warning(f"⚠️ {node.name} is configured as worker but carries control-plane labels")
            return True
        return False

    def live_control_plane_peers(self, node: Node) -> List[Node]:
        return [cp for cp in self.topology.control_plane() if cp.name != node.name and self.is_live(cp)]

    def has_live_control_plane_peer(self, node: Node) -> bool:
        return bool(self.live_control_plane_peers(node))

    def node_ready(self, name: str) -> Optional[bool]:
        via = self.find_kubectl_node(exclude=name)
        if via is None:
            return None
        try:
            return self.cluster_api.node_ready(via, name)
        except K3sAdminError as e:
            logger.debug(f"Ready check for {name} failed: {e}")
            return None

    def is_cordoned(self, name: str) -> Optional[bool]:
        via = self.find_kubectl_node(exclude=name)
        if via is None:
            return None
        try:
            return self.cluster_api.is_unschedulable(via, name)
        except K3sAdminError as e:
            logger.debug(f"Cordon check for {name} failed: {e}")
            return None

    def wait_reachable(self, name: str, timeout: float, interval: float = 5) -> bool:
        return wait_until(
            lambda: self.node_agent.is_reachable(name), timeout, interval, self.clock, f"{name} to become reachable"
        )

    def wait_service_active(self, name: str, timeout: float, interval: float = 5) -> bool:
        return wait_until(
            lambda: self.node_agent.service_active(name), timeout, interval, self.clock, f"k3s on {name}"
        )

    def wait_node_ready(self, name: str, timeout: float, interval: float = 10) -> bool:
        return wait_until(lambda: self.node_ready(name) is True, timeout, interval, self.clock, f"{name} Ready")

    def wait_vm_status(self, node: Node, status: str, timeout: float, interval: float = 5) -> bool:
        return wait_until(
            lambda: self.hypervisor.vm_status(node.hypervisor_host, node.vmid) == status,
            timeout,
            interval,
            self.clock,
            f"VM {node.vmid} to be {status}",
        )

    def find_backup_storage(self, preferred: Optional[str] = None) -> str:
        """Return the configured backup storage or the first backup-capable one."""
        if preferred:
            return preferred
        for host in self.topology.hypervisor_hosts:
            try:
                storages = self.hypervisor.list_storages(host)
            except K3sAdminError as e:
                logger.warning(f"⚠️ Could not list storages on {host}: {e}")
                continue
            for storage in storages:
                content = {c.strip() for c in str(storage.get("content", "")).split(",")}
                if "backup" in content:
                    logger.info(f"🔍 Using backup storage {storage['storage']} (discovered on {host})")
                    return str(storage["storage"])
        raise PreconditionError("No backup-capable storage found on any Proxmox host")


def discover_vms(hypervisor: HypervisorAPI, names: Iterable[str]) -> Dict[str, Tuple[int, str]]:
    """Map node names to (vmid, Proxmox host) by matching VM names."""
    wanted = set(names)
    mapping: Dict[str, Tuple[int, str]] = {}
    for vm in hypervisor.cluster_vms():
        name = vm.get("name")
        if name in wanted and not vm.get("template"):
            mapping[name] = (int(vm["vmid"]), vm["node"])
    missing = wanted - set(mapping)
    if missing:
        logger.warning(f"⚠️ No Proxmox VM found for: {', '.join(sorted(missing))}")
    return mapping
