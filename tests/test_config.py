"""Tests for cluster configuration loading."""

import pytest

from k3s_admin.config import ClusterConfig, write_sample_config
from k3s_admin.errors import ConfigError
from k3s_admin.models import NodeRole, ValidationLevel


@pytest.fixture
def sample_path(tmp_path, clean_env):
    return write_sample_config(str(tmp_path / "cluster-config.yaml"))


class TestLoad:
    def test_sample_config_loads(self, sample_path):
        """The generated sample should load and validate as-is."""
        config = ClusterConfig.load(str(sample_path))
        config.validate()

        assert config.name == "homelab"
        assert [n.name for n in config.nodes] == ["k3s-vm-pve", "k3s-vm-still-fawn", "k3s-vm-chief-horse"]
        assert config.nodes[0].vmid == 107
        assert config.templates == {"master": 9000, "worker": 9001}
        assert config.backup_storage == "homelab-backup"
        assert config.retention == 5
        assert config.api_host == "pve"

    def test_env_overrides(self, sample_path, monkeypatch):
        """Secrets and the API host come from the environment."""
        monkeypatch.setenv("API_TOKEN", "root@pam!k3s=secret")
        monkeypatch.setenv("PROXMOX_API_HOST", "192.168.4.122")

        config = ClusterConfig.load(str(sample_path))

        assert config.api_token == "root@pam!k3s=secret"
        assert config.api_host == "192.168.4.122"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Config file not found"):
            ClusterConfig.load(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("cluster: [unclosed\n")

        with pytest.raises(ConfigError, match="Invalid YAML"):
            ClusterConfig.load(str(path))

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- k3s-cp-1\n- k3s-cp-2\n")

        with pytest.raises(ConfigError, match="must contain a mapping"):
            ClusterConfig.load(str(path))

    def test_defaults(self, clean_env):
        """An almost empty config should fall back to defaults."""
        config = ClusterConfig({"nodes": ["k3s-cp-1"]})

        assert config.drain_timeout == 300
        assert config.validation_level == "basic"
        assert config.mount_path == "/mnt/pvecephfs-1-k3s"
        assert config.ssh_user == "root"
        assert config.nodes[0].ip == "k3s-cp-1"
        assert config.api_host is None
        assert config.proxmox_user == "root@pam"
        assert config.ignore_missing_snapshot is False

    def test_nodes_default_to_details_keys(self, clean_env):
        config = ClusterConfig({"node_details": {"k3s-cp-1": {"role": "master"}, "k3s-worker-1": {}}})

        assert [n.name for n in config.nodes] == ["k3s-cp-1", "k3s-worker-1"]
        assert config.nodes[1].role == "worker"


class TestValidate:
    def test_reports_every_problem(self, clean_env):
        config = ClusterConfig(
            {
                "node_details": {"k3s-cp-1": {"role": "boss", "proxmox_vmid": 100, "proxmox_host": "pve"}},
                "retention": {"count": -1},
                "validation": {"level": "paranoid"},
            }
        )

        with pytest.raises(ConfigError) as excinfo:
            config.validate()

        message = str(excinfo.value)
        assert "k3s-cp-1: Unknown node role: 'boss'" in message
        assert "retention.count must not be negative" in message
        assert "Unknown validation level: paranoid" in message

    def test_no_nodes(self, clean_env):
        with pytest.raises(ConfigError, match="No nodes configured"):
            ClusterConfig({}).validate()

    def test_vm_mapping_optional_for_discovery(self, clean_env):
        """Nodes without vmid/host are fine when discovery will fill them in."""
        config = ClusterConfig({"nodes": ["k3s-cp-1"], "node_details": {"k3s-cp-1": {"role": "master"}}})

        config.validate(require_vm_mapping=False)
        with pytest.raises(ConfigError, match="proxmox_vmid and proxmox_host are required"):
            config.validate()
        assert config.needs_discovery


class TestTopology:
    def test_build_topology_merges_discovery(self, clean_env):
        config = ClusterConfig(
            {
                "proxmox": {"hosts": ["pve"]},
                "node_details": {
                    "k3s-cp-1": {"ip": "192.168.4.238", "role": "master", "proxmox_vmid": 100, "proxmox_host": "pve"},
                    "k3s-worker-1": {"ip": "192.168.4.240", "role": "worker"},
                },
            }
        )

        topology = config.build_topology({"k3s-worker-1": (200, "still-fawn")})

        worker = topology.get("k3s-worker-1")
        assert (worker.vmid, worker.hypervisor_host, worker.role) == (200, "still-fawn", NodeRole.WORKER)
        assert topology.hypervisor_hosts == ["pve", "still-fawn"]
        assert config.addresses() == {"k3s-cp-1": "192.168.4.238", "k3s-worker-1": "192.168.4.240"}

    def test_undiscovered_node_fails(self, clean_env):
        config = ClusterConfig({"node_details": {"k3s-worker-1": {"role": "worker"}}})

        with pytest.raises(ConfigError, match="was not discovered"):
            config.build_topology({})


class TestOptions:
    def test_cli_flags_override_file(self, sample_path):
        config = ClusterConfig.load(str(sample_path))

        options = config.options(force=True, retention=0, validation_level="full")

        assert options.force is True
        assert options.retention == 0
        assert options.validation_level == ValidationLevel.FULL
        assert options.backup_storage == "homelab-backup"
        assert options.label_prefix == "k3s-backup"

    def test_file_values_used_without_flags(self, sample_path):
        options = ClusterConfig.load(str(sample_path)).options()

        assert options.retention == 5
        assert options.validation_level == ValidationLevel.BASIC
        assert options.drain_timeout == 300

    def test_unknown_level(self, sample_path):
        with pytest.raises(ConfigError, match="Unknown validation level"):
            ClusterConfig.load(str(sample_path)).options(validation_level="paranoid")

    def test_ignore_missing_snapshot_from_file(self, clean_env):
        config = ClusterConfig({"nodes": ["k3s-cp-1"], "restore": {"ignore_missing_snapshot": True}})

        assert config.options().ignore_missing_snapshot is True

    def test_ignore_missing_snapshot_flag(self, sample_path):
        config = ClusterConfig.load(str(sample_path))

        assert config.options().ignore_missing_snapshot is False
        assert config.options(ignore_missing_snapshot=True).ignore_missing_snapshot is True


def test_write_sample_refuses_to_overwrite(tmp_path):
    path = tmp_path / "cluster-config.yaml"
    path.write_text("cluster: {}\n")

    with pytest.raises(ConfigError, match="already exists"):
        write_sample_config(str(path))

    write_sample_config(str(path), overwrite=True)
    assert "node_details" in path.read_text()
