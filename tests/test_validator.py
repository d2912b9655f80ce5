"""Tests for tiered cluster validation."""

import pytest

from fakes import build_services
from k3s_admin.errors import ValidationFailedError
from k3s_admin.models import OperationOptions, ValidationLevel


class TestBasicValidation:
    def test_healthy_cluster_passes(self, services):
        """All nodes Ready should pass basic validation."""
        report = services.validator.validate(ValidationLevel.BASIC)

        assert report.valid
        assert report.checks["ready:k3s-worker-1"] is True
        assert report.warnings == []

    def test_not_ready_node_is_blocking(self, services):
        """A NotReady node should be an error."""
        services.cluster.nodes["k3s-worker-1"].service_active = False

        report = services.validator.validate(ValidationLevel.BASIC)

        assert not report.valid
        assert report.errors == ["k3s-worker-1 is NotReady"]

    def test_unregistered_node(self, services):
        """A configured node missing from the cluster should be reported."""
        services.cluster.nodes["k3s-worker-2"].registered = False

        report = services.validator.validate(ValidationLevel.BASIC)

        assert "k3s-worker-2 is not registered in the cluster" in report.errors

    def test_version_skew_is_a_warning(self, services):
        """Mixed k3s versions should warn but not block."""
        services.cluster.nodes["k3s-worker-2"].version = "v1.29.8+k3s1"

        report = services.validator.validate(ValidationLevel.BASIC)

        assert report.valid
        assert any("Inconsistent k3s versions" in w for w in report.warnings)

    def test_scope_limits_node_checks(self, services):
        """Nodes outside the scope are not checked for readiness."""
        services.cluster.nodes["k3s-worker-1"].service_active = False

        report = services.validator.validate(ValidationLevel.BASIC, services.topology.select(["k3s-worker-2"]))

        assert report.valid

    def test_no_kubectl_anywhere(self, services):
        """Should stop early when no node can reach the API."""
        for name in ("k3s-cp-1", "k3s-cp-2", "k3s-cp-3"):
            services.cluster.nodes[name].service_active = False

        report = services.validator.validate(ValidationLevel.FULL)

        assert report.errors == ["No node can reach the Kubernetes API"]


class TestExtendedValidation:
    def test_passes_with_etcd_and_storage(self, services):
        report = services.validator.validate(ValidationLevel.EXTENDED)

        assert report.valid
        assert report.checks["etcd"] is True
        assert report.checks["storage:k3s-cp-1"] is True

    def test_unwritable_mount_is_blocking(self, services):
        """Shared storage missing on a node should fail extended validation."""
        services.cluster.unreachable.add("k3s-worker-2")

        report = services.validator.validate(ValidationLevel.EXTENDED)

        assert "Shared storage /mnt/pvecephfs-1-k3s missing or read-only on k3s-worker-2" in report.errors

    def test_basic_level_skips_storage(self, services):
        """Basic validation does not look at storage."""
        services.cluster.unreachable.add("k3s-worker-2")

        report = services.validator.validate(ValidationLevel.BASIC)

        assert report.valid
        assert "storage:k3s-worker-2" not in report.checks


class TestFullValidation:
    def test_pairwise_connectivity(self, services):
        """Every ordered pair of nodes should be pinged."""
        report = services.validator.validate(ValidationLevel.FULL)

        assert report.valid
        pings = [check for check in report.checks if check.startswith("ping:")]
        assert len(pings) == 5 * 4
        assert report.checks["dns"] is True
        assert report.checks["proxmox:pve"] is True

    def test_unreachable_peer_fails(self, services):
        services.cluster.unreachable.add("k3s-worker-1")

        report = services.validator.validate(ValidationLevel.FULL)

        assert "k3s-cp-1 cannot reach k3s-worker-1" in report.errors
        assert "k3s-worker-1 cannot reach k3s-cp-1" in report.errors


class TestGate:
    def test_gate_raises_on_failure(self, services):
        """Gate should block destructive operations on blocking errors."""
        services.cluster.nodes["k3s-worker-1"].service_active = False

        with pytest.raises(ValidationFailedError, match="before backup") as excinfo:
            services.validator.gate(ValidationLevel.BASIC, "before backup")

        assert excinfo.value.errors == ["k3s-worker-1 is NotReady"]

    def test_gate_with_force_returns_report(self, cluster):
        """Force turns a failed gate into a warning."""
        services = build_services(cluster, options=OperationOptions(force=True))
        cluster.nodes["k3s-worker-1"].service_active = False

        report = services.validator.gate(ValidationLevel.BASIC, "before backup")

        assert not report.valid

    def test_gate_uses_configured_level(self, cluster):
        """Without an explicit level the configured one applies."""
        services = build_services(cluster, options=OperationOptions(validation_level=ValidationLevel.FULL))

        report = services.validator.gate()

        assert report.level == ValidationLevel.FULL


def test_preflight_reports_unreachable_nodes(services):
    """Preflight should check SSH to every node in scope."""
    services.cluster.unreachable.add("k3s-worker-2")

    report = services.validator.preflight()

    assert report.errors == ["Cannot reach k3s-worker-2 over SSH"]
    assert report.checks["kubectl"] is True
