"""
Capability interfaces consumed by the orchestration core.

Adapters:
- RemoteExecutor: k3s_admin.remote.SSHExecutor
- ClusterAPI: k3s_admin.kubectl.KubectlClusterAPI
- NodeAgent: k3s_admin.node_agent.SSHNodeAgent
- HypervisorAPI: k3s_admin.proxmox_api.ProxmoxHypervisor
- DistributedStoreAPI: k3s_admin.etcd_store.K3sEtcdStore

Calls against the cluster are issued *from* a node (``via``), since kubectl
only works on hosts holding a kubeconfig.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Set

from k3s_admin.models import (
    BackupResult,
    CommandResult,
    DistributedStateSnapshot,
    ExecMode,
    VMArtifact,
)


class RemoteExecutor(ABC):
    """Runs commands on named hosts."""

    @abstractmethod
    def run(
        self,
        host: str,
        command: str,
        user: Optional[str] = None,
        mode: ExecMode = ExecMode.NORMAL,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """
        Run a command and return its output and exit code.

        Raises RemoteConnectionError when the host cannot be reached and
        RemoteTimeoutError when the command exceeds ``timeout``.
        """


class ClusterAPI(ABC):
    """Kubernetes node operations issued from a node holding a kubeconfig."""

    @abstractmethod
    def can_query(self, via: str) -> bool:
        """True if the cluster API answers when called from ``via``."""

    @abstractmethod
    def list_nodes(self, via: str) -> List[Dict[str, Any]]:
        """Node summaries: name, ready, unschedulable, roles, version."""

    @abstractmethod
    def node_ready(self, via: str, node: str) -> Optional[bool]:
        """Ready condition of a node, None if the node object is missing."""

    @abstractmethod
    def is_unschedulable(self, via: str, node: str) -> Optional[bool]:
        """Cordon flag of a node, None if it cannot be read."""

    @abstractmethod
    def cordon(self, via: str, node: str) -> None:
        pass

    @abstractmethod
    def uncordon(self, via: str, node: str) -> None:
        pass

    @abstractmethod
    def drain(self, via: str, node: str, timeout: int, force: bool = False) -> None:
        """Evict workloads; raises DrainTimeoutError when ``timeout`` expires."""

    @abstractmethod
    def node_roles(self, via: str, node: str) -> Set[str]:
        pass

    @abstractmethod
    def delete_node(self, via: str, node: str) -> None:
        pass

    @abstractmethod
    def problem_pods(self, via: str) -> List[str]:
        """Pods not in Running or Succeeded phase, as ``namespace/name (phase)``."""

    @abstractmethod
    def unhealthy_components(self, via: str) -> List[str]:
        pass

    @abstractmethod
    def unavailable_deployments(self, via: str) -> List[str]:
        pass

    @abstractmethod
    def dns_smoke_test(self, via: str) -> bool:
        pass


class NodeAgent(ABC):
    """Host-level operations on a cluster node (k3s service, network, storage)."""

    @abstractmethod
    def is_reachable(self, node: str) -> bool:
        pass

    @abstractmethod
    def service_active(self, node: str) -> bool:
        pass

    @abstractmethod
    def stop_service(self, node: str) -> None:
        pass

    @abstractmethod
    def kill_service(self, node: str) -> None:
        pass

    @abstractmethod
    def start_service(self, node: str) -> None:
        pass

    @abstractmethod
    def can_ping(self, source: str, target: str) -> bool:
        pass

    @abstractmethod
    def mount_writable(self, node: str, path: str) -> bool:
        pass

    @abstractmethod
    def read_join_token(self, node: str) -> str:
        pass

    @abstractmethod
    def install_k3s(self, node: str, server_url: str, token: str, server: bool) -> None:
        pass

    @abstractmethod
    def configure_shared_storage(self, node: str, source: str, mount_path: str, fstab_line: str) -> None:
        pass


class HypervisorAPI(ABC):
    """Proxmox VM operations."""

    @abstractmethod
    def vm_status(self, host: str, vmid: int) -> str:
        """VM power state, e.g. ``running`` or ``stopped``."""

    @abstractmethod
    def start_vm(self, host: str, vmid: int) -> None:
        pass

    @abstractmethod
    def shutdown_vm(self, host: str, vmid: int, timeout: int) -> None:
        pass

    @abstractmethod
    def stop_vm(self, host: str, vmid: int) -> None:
        pass

    @abstractmethod
    def create_snapshot(self, host: str, vmid: int, name: str, description: str) -> None:
        pass

    @abstractmethod
    def list_snapshots(self, host: str, vmid: int) -> List[VMArtifact]:
        pass

    @abstractmethod
    def delete_snapshot(self, host: str, vmid: int, name: str) -> None:
        pass

    @abstractmethod
    def rollback_snapshot(self, host: str, vmid: int, name: str) -> None:
        pass

    @abstractmethod
    def create_backup(
        self, host: str, vmid: int, storage: str, notes: str, compress: str = "zstd", mode: str = "stop"
    ) -> BackupResult:
        pass

    @abstractmethod
    def list_backups(self, host: str, vmid: int, storage: str) -> List[VMArtifact]:
        pass

    @abstractmethod
    def delete_backup(self, host: str, storage: str, volid: str) -> None:
        pass

    @abstractmethod
    def restore_backup(self, host: str, vmid: int, volid: str) -> None:
        pass

    @abstractmethod
    def list_storages(self, host: str) -> List[Dict[str, Any]]:
        """Storage entries with ``storage`` and comma separated ``content``."""

    @abstractmethod
    def cluster_vms(self) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def host_online(self, host: str) -> bool:
        pass

    @abstractmethod
    def destroy_vm(self, host: str, vmid: int) -> None:
        pass

    @abstractmethod
    def clone_vm(self, host: str, template_id: int, vmid: int, name: str) -> None:
        pass

    @abstractmethod
    def set_ip_config(self, host: str, vmid: int, ipconfig: str) -> None:
        pass


class DistributedStoreAPI(ABC):
    """k3s embedded etcd snapshot operations, run on control-plane nodes."""

    @abstractmethod
    def save_snapshot(self, node: str, name: str) -> DistributedStateSnapshot:
        pass

    @abstractmethod
    def list_snapshots(self, node: str) -> List[str]:
        pass

    @abstractmethod
    def delete_snapshot(self, node: str, name: str) -> None:
        pass

    @abstractmethod
    def find_snapshot(self, node: str, name: str) -> Optional[DistributedStateSnapshot]:
        """Locate a saved snapshot whose file name starts with ``name``."""

    @abstractmethod
    def is_healthy(self, node: str) -> bool:
        """True if the store on ``node`` answers snapshot queries."""

    @abstractmethod
    def restore(self, node: str, snapshot: DistributedStateSnapshot) -> None:
        """Reset the cluster and restore the store from ``snapshot``."""
