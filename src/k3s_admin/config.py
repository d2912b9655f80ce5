"""Cluster configuration from YAML plus secrets from the environment.

Precedence: CLI flags > YAML file > built-in defaults. Secrets (Proxmox API
token, SSH key) come from the environment or a ``.env`` file.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv

from k3s_admin.errors import ConfigError
from k3s_admin.models import ClusterTopology, Node, NodeRole, OperationOptions, ValidationLevel

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "cluster-config.yaml"


class NodeConfig:
    """One entry of ``node_details``."""

    def __init__(self, name: str, data: Dict[str, Any]):
        self.name = name
        self.ip: str = data.get("ip", name)
        vmid = data.get("proxmox_vmid")
        self.vmid: Optional[int] = int(vmid) if vmid not in (None, "") else None
        self.host: Optional[str] = data.get("proxmox_host")
        self.role: str = data.get("role", "worker")
        self.arch: str = data.get("arch", "amd64")

    def to_node(self, discovered: Optional[Tuple[int, str]] = None) -> Node:
        vmid, host = self.vmid, self.host
        if discovered and (vmid is None or host is None):
            vmid = vmid if vmid is not None else discovered[0]
            host = host or discovered[1]
        if vmid is None or host is None:
            raise ConfigError(f"Node {self.name} has no proxmox_vmid/proxmox_host and was not discovered")
        return Node(
            name=self.name,
            address=self.ip,
            role=NodeRole.from_config(self.role),
            vmid=vmid,
            hypervisor_host=host,
            arch=self.arch,
        )


class ClusterConfig:
    """Loads and manages cluster configuration."""

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        """
        Initialize cluster config from a parsed YAML dictionary.

        Args:
            data: Configuration dictionary from YAML
        """
        data = data or {}
        load_dotenv()

        cluster = data.get("cluster", {}) or {}
        self.name: str = cluster.get("name", "k3s")
        self.api_server: Optional[str] = cluster.get("api_server")

        details = data.get("node_details", {}) or {}
        names = data.get("nodes") or list(details)
        self.nodes: List[NodeConfig] = [NodeConfig(name, details.get(name, {}) or {}) for name in names]

        self.retention: int = int((data.get("retention", {}) or {}).get("count", 5))

        timeouts = data.get("timeouts", {}) or {}
        self.drain_timeout: int = int(timeouts.get("draining", 300))
        self.operation_timeout: int = int(timeouts.get("operation", 600))

        validation = data.get("validation", {}) or {}
        self.validation_level: str = validation.get("level", "basic")
        self.validate_etcd: bool = bool(validation.get("etcd", True))
        self.validate_storage: bool = bool(validation.get("storage", True))
        self.validate_network: bool = bool(validation.get("network", True))

        proxmox = data.get("proxmox", {}) or {}
        self.proxmox_hosts: List[str] = list(proxmox.get("hosts", []) or [])
        self.proxmox_user: str = proxmox.get("user", "root@pam")
        self.proxmox_verify_ssl: bool = bool(proxmox.get("verify_ssl", False))
        self.templates: Dict[str, int] = {k: int(v) for k, v in (proxmox.get("templates", {}) or {}).items()}

        backup = data.get("backup", {}) or {}
        self.backup_prefix: str = backup.get("prefix", "k3s-backup")
        self.backup_storage: Optional[str] = backup.get("storage") or proxmox.get("storage")
        self.backup_compress: str = backup.get("compress", "zstd")
        self.backup_mode: str = backup.get("mode", "stop")

        restore = data.get("restore", {}) or {}
        self.ignore_missing_snapshot: bool = bool(restore.get("ignore_missing_snapshot", False))

        storage = data.get("storage", {}) or {}
        self.mount_path: Optional[str] = storage.get("mount_path", "/mnt/pvecephfs-1-k3s")
        self.storage_device: Optional[str] = storage.get("device")
        self.storage_fs_type: str = storage.get("fs_type", "ceph")
        self.storage_options: str = storage.get("options", "_netdev,noatime")

        network = data.get("network", {}) or {}
        self.gateway: Optional[str] = network.get("gateway")
        self.prefix_len: int = int(network.get("prefix_len", 24))

        etcd = data.get("etcd", {}) or {}
        self.etcd_snapshot_dir: str = etcd.get("snapshot_dir", "/var/lib/rancher/k3s/server/db/snapshots")
        self.etcd_data_dir: Optional[str] = etcd.get("data_dir")

        advanced = data.get("advanced", {}) or {}
        self.debug: bool = bool(advanced.get("debug", False))
        self.log_dir: Optional[str] = advanced.get("log_dir")
        self.ssh_user: str = advanced.get("ssh_user") or os.getenv("SSH_USER", "root")
        self.ssh_key_path: str = advanced.get("ssh_key_path") or os.getenv("SSH_KEY_PATH", "~/.ssh/id_rsa")
        self.ssh_port: int = int(advanced.get("ssh_port", 22))
        self.kubectl: str = advanced.get("kubectl", "kubectl")

        self.api_token: Optional[str] = os.getenv("API_TOKEN")
        self.api_host: Optional[str] = os.getenv("PROXMOX_API_HOST") or (
            self.proxmox_hosts[0] if self.proxmox_hosts else None
        )

    @classmethod
    def load(cls, config_path: str) -> "ClusterConfig":
        """
        Load cluster configuration from a YAML file.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            Parsed ClusterConfig

        Raises:
            ConfigError: If the file is missing or not valid YAML
        """
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        logger.info(f"📖 Loading cluster config from: {config_path}")
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Invalid config: {config_path} must contain a mapping")
        config = cls(data)
        logger.info(f"✅ Loaded config for cluster {config.name} with {len(config.nodes)} nodes")
        return config

    def validate(self, require_vm_mapping: bool = True) -> None:
        """Check the configuration for errors that would break every operation.

        Raises:
            ConfigError: Listing every problem found
        """
        errors = []
        if not self.nodes:
            errors.append("No nodes configured")
        for node in self.nodes:
            try:
                NodeRole.from_config(node.role)
            except ValueError as e:
                errors.append(f"{node.name}: {e}")
            if require_vm_mapping and (node.vmid is None or node.host is None):
                errors.append(f"{node.name}: proxmox_vmid and proxmox_host are required")
        if self.retention < 0:
            errors.append("retention.count must not be negative")
        if self.validation_level not in {level.value for level in ValidationLevel}:
            errors.append(f"Unknown validation level: {self.validation_level}")
        if errors:
            raise ConfigError("Invalid configuration: " + "; ".join(errors))

    @property
    def needs_discovery(self) -> bool:
        return any(n.vmid is None or n.host is None for n in self.nodes)

    def build_topology(self, discovered: Optional[Dict[str, Tuple[int, str]]] = None) -> ClusterTopology:
        discovered = discovered or {}
        nodes = [n.to_node(discovered.get(n.name)) for n in self.nodes]
        hosts = list(self.proxmox_hosts)
        for node in nodes:
            if node.hypervisor_host not in hosts:
                hosts.append(node.hypervisor_host)
        return ClusterTopology(nodes=nodes, hypervisor_hosts=hosts)

    def addresses(self) -> Dict[str, str]:
        return {n.name: n.ip for n in self.nodes}

    def options(
        self,
        force: bool = False,
        dry_run: bool = False,
        interactive: bool = False,
        retention: Optional[int] = None,
        validation_level: Optional[str] = None,
        ignore_missing_snapshot: bool = False,
    ) -> OperationOptions:
        """Merge CLI flags over file settings."""
        level = validation_level or self.validation_level
        try:
            parsed_level = ValidationLevel(level)
        except ValueError:
            raise ConfigError(f"Unknown validation level: {level}")
        return OperationOptions(
            force=force,
            dry_run=dry_run,
            interactive=interactive,
            validation_level=parsed_level,
            retention=self.retention if retention is None else retention,
            drain_timeout=self.drain_timeout,
            operation_timeout=self.operation_timeout,
            backup_storage=self.backup_storage,
            label_prefix=self.backup_prefix,
            ignore_missing_snapshot=ignore_missing_snapshot or self.ignore_missing_snapshot,
        )


SAMPLE_CONFIG = """\
# k3s cluster administration configuration
cluster:
  name: homelab
  api_server: https://192.168.4.236:6443

nodes:
  - k3s-vm-pve
  - k3s-vm-still-fawn
  - k3s-vm-chief-horse

node_details:
  k3s-vm-pve:
    ip: 192.168.4.236
    proxmox_vmid: 107
    proxmox_host: pve
    role: master
  k3s-vm-still-fawn:
    ip: 192.168.4.237
    proxmox_vmid: 108
    proxmox_host: still-fawn
    role: master
  k3s-vm-chief-horse:
    ip: 192.168.4.238
    proxmox_vmid: 109
    proxmox_host: chief-horse
    role: worker

retention:
  count: 5            # 0 disables cleanup

timeouts:
  draining: 300
  operation: 600

validation:
  level: basic        # basic | extended | full
  etcd: true
  storage: true
  network: true

proxmox:
  hosts: [pve, still-fawn, chief-horse]
  user: root@pam     # token owner when API_TOKEN is just tokenname=secret
  verify_ssl: false
  templates:
    master: 9000
    worker: 9001

backup:
  prefix: k3s-backup
  storage: homelab-backup
  compress: zstd
  mode: stop

restore:
  ignore_missing_snapshot: false   # restore VMs even when the linked etcd snapshot is gone

storage:
  mount_path: /mnt/pvecephfs-1-k3s
  # device: admin@.cephfs=/
  fs_type: ceph
  options: _netdev,noatime

network:
  gateway: 192.168.4.1
  prefix_len: 24

advanced:
  debug: false
  ssh_user: root
  ssh_key_path: ~/.ssh/id_rsa
  ssh_port: 22
  kubectl: kubectl
  # log_dir: /var/log/k3s-admin
"""


def write_sample_config(path: str, overwrite: bool = False) -> Path:
    target = Path(path)
    if target.exists() and not overwrite:
        raise ConfigError(f"{path} already exists")
    target.write_text(SAMPLE_CONFIG)
    return target
