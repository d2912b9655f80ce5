"""Wire configuration, adapters and coordinators together for one CLI run."""

import logging
from dataclasses import dataclass
from typing import Optional

from k3s_admin.cluster_query import ClusterQuery, discover_vms
from k3s_admin.config import ClusterConfig
from k3s_admin.confirm import Confirmer, StaticConfirmer
from k3s_admin.errors import ConfigError
from k3s_admin.etcd_store import K3sEtcdStore
from k3s_admin.interfaces import ClusterAPI, DistributedStoreAPI, HypervisorAPI, NodeAgent
from k3s_admin.kubectl import KubectlClusterAPI
from k3s_admin.lifecycle import NodeLifecycle
from k3s_admin.models import ClusterTopology, OperationOptions
from k3s_admin.node_agent import SSHNodeAgent
from k3s_admin.point_in_time import PointInTimeCoordinator
from k3s_admin.proxmox_api import ProxmoxHypervisor
from k3s_admin.remote import SSHExecutor
from k3s_admin.replace import NodeReplacer, ReplaceSettings
from k3s_admin.restore import RestoreCoordinator
from k3s_admin.retention import RetentionManager
from k3s_admin.validator import ClusterValidator, ValidationSettings

logger = logging.getLogger(__name__)


def validation_settings(config: ClusterConfig) -> ValidationSettings:
    return ValidationSettings(
        etcd=config.validate_etcd,
        storage=config.validate_storage,
        network=config.validate_network,
        mount_path=config.mount_path,
    )


def replace_settings(config: ClusterConfig) -> ReplaceSettings:
    return ReplaceSettings(
        api_server=config.api_server,
        templates=dict(config.templates),
        gateway=config.gateway,
        prefix_len=config.prefix_len,
        mount_path=config.mount_path,
        storage_device=config.storage_device,
        storage_fs_type=config.storage_fs_type,
        storage_options=config.storage_options,
        backup_compress=config.backup_compress,
    )


def connect_hypervisor(config: ClusterConfig) -> ProxmoxHypervisor:
    if not config.api_host:
        raise ConfigError("No Proxmox API host: set PROXMOX_API_HOST or proxmox.hosts")
    return ProxmoxHypervisor.connect(
        config.api_host,
        config.api_token,
        verify_ssl=config.proxmox_verify_ssl,
        user=config.proxmox_user,
        task_timeout=config.operation_timeout,
    )


@dataclass
class Runtime:
    """Everything a command needs, built from one configuration."""

    config: ClusterConfig
    options: OperationOptions
    topology: ClusterTopology
    cluster_api: ClusterAPI
    node_agent: NodeAgent
    hypervisor: HypervisorAPI
    etcd: DistributedStoreAPI
    query: ClusterQuery
    lifecycle: NodeLifecycle
    validator: ClusterValidator
    retention: RetentionManager
    confirmer: Confirmer

    @classmethod
    def build(
        cls,
        config: ClusterConfig,
        options: OperationOptions,
        confirmer: Optional[Confirmer] = None,
        hypervisor: Optional[HypervisorAPI] = None,
        clock=None,
    ) -> "Runtime":
        """Create SSH, kubectl, etcd and Proxmox adapters and the services on top of them.

        VM ids and hosts missing from the configuration are discovered by
        matching VM names through the Proxmox API.
        """
        confirmer = confirmer or StaticConfirmer(False)
        hypervisor = hypervisor or connect_hypervisor(config)

        discovered = None
        if config.needs_discovery:
            logger.info("🔍 Discovering VM ids for nodes without proxmox_vmid/proxmox_host")
            discovered = discover_vms(hypervisor, [n.name for n in config.nodes])
        topology = config.build_topology(discovered)

        executor = SSHExecutor(
            user=config.ssh_user,
            key_path=config.ssh_key_path,
            port=config.ssh_port,
            default_timeout=config.operation_timeout,
            aliases=config.addresses(),
        )
        cluster_api = KubectlClusterAPI(executor, kubectl=config.kubectl)
        node_agent = SSHNodeAgent(executor, addresses=config.addresses())
        etcd = K3sEtcdStore(executor, snapshot_dir=config.etcd_snapshot_dir, data_dir=config.etcd_data_dir)

        query = ClusterQuery(topology, cluster_api, node_agent, hypervisor, clock)
        lifecycle = NodeLifecycle(query, cluster_api, node_agent, hypervisor, options, confirmer, clock)
        validator = ClusterValidator(
            topology, query, cluster_api, node_agent, etcd, hypervisor, validation_settings(config), options
        )
        retention = RetentionManager(topology, hypervisor, etcd, options)
        return cls(
            config=config,
            options=options,
            topology=topology,
            cluster_api=cluster_api,
            node_agent=node_agent,
            hypervisor=hypervisor,
            etcd=etcd,
            query=query,
            lifecycle=lifecycle,
            validator=validator,
            retention=retention,
            confirmer=confirmer,
        )

    def point_in_time(self) -> PointInTimeCoordinator:
        return PointInTimeCoordinator(
            self.topology,
            self.query,
            self.lifecycle,
            self.validator,
            self.hypervisor,
            self.etcd,
            self.retention,
            self.options,
            cluster_name=self.config.name,
            backup_compress=self.config.backup_compress,
            backup_mode=self.config.backup_mode,
        )

    def restorer(self) -> RestoreCoordinator:
        return RestoreCoordinator(
            self.topology,
            self.query,
            self.lifecycle,
            self.validator,
            self.hypervisor,
            self.etcd,
            self.node_agent,
            self.options,
            self.confirmer,
            self.lifecycle.clock,
        )

    def replacer(self) -> NodeReplacer:
        return NodeReplacer(
            self.query,
            self.lifecycle,
            self.validator,
            self.hypervisor,
            self.node_agent,
            self.cluster_api,
            replace_settings(self.config),
            self.options,
        )
