"""Tests for cluster-wide snapshot and backup sequencing."""

import random

import pytest

from fakes import BACKUP_STORAGE, SimulatedCluster, build_services
from k3s_admin.models import ArtifactKind, OperationOptions, ValidationLevel
from k3s_admin.naming import parse_linked_snapshot

CONTROL_PLANE = ["k3s-cp-1", "k3s-cp-2", "k3s-cp-3"]
WORKERS = ["k3s-worker-1", "k3s-worker-2"]


class TestSnapshotOrdering:
    def test_snapshot_succeeds(self, services):
        """A healthy cluster should be snapshotted end to end."""
        report = services.coordinator.create(ArtifactKind.SNAPSHOT, label="demo")

        assert report.success, report.summary
        assert sorted(report.processed) == sorted(CONTROL_PLANE + WORKERS)
        assert report.record.label == "demo-k3s-20250101-120000"
        assert report.record.distributed_snapshot_name == "etcd-demo-k3s-20250101-120000"
        assert len(report.record.artifacts) == 5
        assert all(not n.unschedulable and n.live for n in services.cluster.nodes.values())

    def test_etcd_snapshot_taken_before_any_node_is_touched(self, services):
        """The etcd snapshot is the consistency point for every VM artifact."""
        services.coordinator.create(ArtifactKind.SNAPSHOT, label="demo")
        calls = services.cluster.calls

        assert calls[0] == ("etcd_save", "k3s-cp-1")
        assert calls.index(("etcd_save", "k3s-cp-1")) < calls.index(("cordon", "k3s-worker-1"))

    def test_workers_before_control_plane(self, services):
        """Every worker artifact exists before the first control-plane node goes down."""
        services.coordinator.create(ArtifactKind.SNAPSHOT)
        cluster = services.cluster

        first_cp_cordon = min(cluster.index("cordon", cp) for cp in CONTROL_PLANE)
        for worker in WORKERS:
            assert cluster.index("create_snapshot", worker) < first_cp_cordon

    def test_control_plane_one_at_a_time(self, services):
        """A control-plane node is back before the next one is cordoned."""
        services.coordinator.create(ArtifactKind.SNAPSHOT)
        cluster = services.cluster

        for current, following in zip(CONTROL_PLANE, CONTROL_PLANE[1:]):
            assert cluster.index("shutdown_vm", current) < cluster.index("start_vm", current)
            assert cluster.index("start_vm", current) < cluster.index("cordon", following)
        assert cluster.min_live_control_plane == 2

    def test_artifact_descriptions_carry_etcd_link(self, services):
        """Every VM snapshot description should name the etcd snapshot."""
        report = services.coordinator.create(ArtifactKind.SNAPSHOT, label="demo", description="pre-upgrade")

        for vmid in (100, 101, 102, 200, 201):
            (artifact,) = services.hypervisor.list_snapshots("pve", vmid)
            assert artifact.linked_snapshot == report.record.distributed_snapshot_name
            assert artifact.description.endswith(" - pre-upgrade")

    def test_scope_limits_processed_nodes(self, services):
        """Only the selected nodes should be touched."""
        scope = services.topology.select(["k3s-worker-2"])

        report = services.coordinator.create(ArtifactKind.SNAPSHOT, scope=scope)

        assert report.success
        assert report.processed == ["k3s-worker-2"]
        touched = {node for op, node in services.cluster.calls if op != "etcd_save"}
        assert touched == {"k3s-worker-2"}

    def test_dry_run_touches_nothing(self, cluster):
        """Dry run should report the plan without mutating the cluster."""
        services = build_services(cluster, options=OperationOptions(dry_run=True))

        report = services.coordinator.create(ArtifactKind.SNAPSHOT, label="demo")

        assert report.success
        assert cluster.calls == []
        assert cluster.snapshots == {}


class TestBackup:
    def test_backup_links_etcd_snapshot(self, services):
        """Backup notes should carry the etcd link so restore can find it."""
        report = services.coordinator.create(ArtifactKind.BACKUP, label="nightly")

        assert report.success, report.summary
        for artifact in report.record.artifacts:
            assert artifact.name.startswith(f"{BACKUP_STORAGE}:backup/vzdump-qemu-")
            assert parse_linked_snapshot(artifact.description) == "etcd-nightly-k3s-20250101-120000"

    def test_worker_backup_keeps_vm_running(self, services):
        """Workers are evacuated but vzdump stop mode handles the VM itself."""
        services.coordinator.create(ArtifactKind.BACKUP)

        worker_ops = [op for op, node in services.cluster.calls if node == "k3s-worker-1"]
        assert "shutdown_vm" not in worker_ops
        assert worker_ops[:4] == ["cordon", "drain", "stop_service", "create_backup"]
        assert worker_ops[-1] == "uncordon"

    def test_drain_timeout_aborts_before_control_plane(self, cluster):
        """A worker drain timeout without force stops the run and reports the cordoned node."""
        services = build_services(cluster)
        cluster.drain_timeouts.add("k3s-worker-1")

        report = services.coordinator.create(ArtifactKind.BACKUP)

        assert report.success is False
        assert report.degraded == ["k3s-worker-1"]
        assert "1 nodes may still be cordoned" in report.summary
        assert cluster.nodes["k3s-worker-1"].unschedulable
        touched = {node for op, node in cluster.calls if op != "etcd_save"}
        assert touched == {"k3s-worker-1"}
        assert report.record is None

    def test_drain_timeout_with_force_continues(self, cluster):
        """Force escalates the drain and finishes the run."""
        services = build_services(cluster, options=OperationOptions(force=True))
        cluster.drain_timeouts.add("k3s-worker-1")

        report = services.coordinator.create(ArtifactKind.BACKUP)

        assert report.success, report.summary
        assert cluster.ops("force-drain") == ["k3s-worker-1"]
        assert not cluster.nodes["k3s-worker-1"].unschedulable

    def test_backup_failure_brings_worker_back(self, cluster):
        """A failed vzdump still restarts k3s and uncordons the worker before aborting."""
        services = build_services(cluster)
        cluster.fail("create_backup", "k3s-worker-1")

        report = services.coordinator.create(ArtifactKind.BACKUP)

        worker = cluster.nodes["k3s-worker-1"]
        assert report.success is False
        assert report.failed == ["k3s-worker-1"]
        assert report.degraded == []
        assert worker.live
        assert not worker.unschedulable
        assert cluster.ops("cordon") == ["k3s-worker-1"]

    def test_backup_failure_with_force_continues(self, cluster):
        services = build_services(cluster, options=OperationOptions(force=True))
        cluster.fail("create_backup", "k3s-worker-1")

        report = services.coordinator.create(ArtifactKind.BACKUP)

        worker = cluster.nodes["k3s-worker-1"]
        assert report.success is False
        assert report.failed == ["k3s-worker-1"]
        assert "k3s-worker-2" in report.processed
        assert worker.live
        assert not worker.unschedulable

    def test_missing_backup_storage(self, cluster):
        """No backup-capable storage is a precondition failure."""
        services = build_services(cluster)
        services.hypervisor.list_storages = lambda host: [{"storage": "local-zfs", "content": "images"}]

        report = services.coordinator.create(ArtifactKind.BACKUP)

        assert report.success is False
        assert "No backup-capable storage" in report.message
        assert cluster.calls == []


class TestAbortPaths:
    def test_validation_gate_blocks_run(self, cluster):
        """A NotReady node stops the run before the etcd snapshot."""
        services = build_services(cluster)
        cluster.nodes["k3s-worker-2"].service_active = False

        report = services.coordinator.create(ArtifactKind.SNAPSHOT)

        assert report.success is False
        assert "NotReady" in report.message
        assert cluster.calls == []

    def test_no_live_control_plane_for_etcd(self, cluster):
        """Without a serving control-plane node there is no consistency point."""
        services = build_services(cluster, options=OperationOptions(validation_level=ValidationLevel.BASIC))
        for cp in CONTROL_PLANE:
            cluster.fail("etcd_save", cp)

        report = services.coordinator.create(ArtifactKind.SNAPSHOT)

        assert report.success is False
        assert "etcd snapshot" in report.message
        assert cluster.ops("cordon") == []

    def test_etcd_snapshot_fails_over(self, cluster):
        """A failed save on one control-plane node moves on to the next."""
        services = build_services(cluster)
        cluster.fail("etcd_save", "k3s-cp-1")

        report = services.coordinator.create(ArtifactKind.SNAPSHOT)

        assert report.success, report.summary
        assert cluster.ops("etcd_save") == ["k3s-cp-2"]

    def test_etcd_snapshot_follows_scope_order(self, cluster):
        """The etcd snapshot is taken on the first control-plane node in scope."""
        services = build_services(cluster)

        report = services.coordinator.create(ArtifactKind.SNAPSHOT, scope=[services.topology.get("k3s-cp-3")])

        assert report.success, report.summary
        assert cluster.ops("etcd_save") == ["k3s-cp-3"]

    def test_worker_scope_uses_first_control_plane_for_etcd(self, cluster):
        services = build_services(cluster)

        services.coordinator.create(ArtifactKind.SNAPSHOT, scope=[services.topology.get("k3s-worker-2")])

        assert cluster.ops("etcd_save") == ["k3s-cp-1"]

    def test_sticky_cordon_degrades_but_completes(self, cluster):
        """A node that will not uncordon is reported, not fatal."""
        services = build_services(cluster)
        cluster.sticky_cordon.add("k3s-worker-2")

        report = services.coordinator.create(ArtifactKind.SNAPSHOT)

        assert "k3s-worker-2" in report.degraded
        assert "may still be cordoned" in report.summary


class TestRetention:
    def test_keeps_newest_backups_and_etcd_snapshots(self, cluster):
        """After three runs with retention 2, two of each remain."""
        services = build_services(cluster, options=OperationOptions(retention=2))

        for _ in range(3):
            assert services.coordinator.create(ArtifactKind.BACKUP).success

        for node in cluster.nodes.values():
            assert len(cluster.backups[node.vmid]) == 2
        etcd_files = cluster.etcd_files["k3s-cp-1"]
        assert len(etcd_files) == 2
        assert all("k3s-backup-20250101-1200" in name for name in etcd_files)

    def test_retention_zero_keeps_everything(self, cluster):
        """Retention 0 disables cleanup."""
        services = build_services(cluster, options=OperationOptions(retention=0))

        for _ in range(3):
            services.coordinator.create(ArtifactKind.SNAPSHOT)

        assert all(len(entries) == 3 for entries in cluster.snapshots.values())
        assert len(cluster.etcd_files["k3s-cp-1"]) == 3

    def test_user_labelled_snapshots_are_never_pruned(self, cluster):
        """Only auto-labelled snapshots fall under retention."""
        services = build_services(cluster, options=OperationOptions(retention=1))

        services.coordinator.create(ArtifactKind.SNAPSHOT, label="keep-me")
        services.coordinator.create(ArtifactKind.SNAPSHOT)
        services.coordinator.create(ArtifactKind.SNAPSHOT)

        names = sorted(a.name for a, _ in cluster.snapshots[200])
        assert len(names) == 2
        assert names[0].startswith("k3s-backup-")
        assert names[1].startswith("keep-me-")


@pytest.mark.parametrize("seed", range(12))
def test_quorum_kept_under_random_failures(seed):
    """With random failures and no force, at most one control-plane node is ever down
    and every node left cordoned is reported."""
    rng = random.Random(seed)
    cluster = SimulatedCluster.build(control_plane=3, workers=2)
    names = CONTROL_PLANE + WORKERS
    operations = ["shutdown_vm", "start_vm", "create_snapshot", "stop_service", "create_backup"]
    for _ in range(rng.randint(1, 3)):
        cluster.fail(rng.choice(operations), rng.choice(names))
    if rng.random() < 0.5:
        cluster.drain_timeouts.add(rng.choice(names))
    if rng.random() < 0.3:
        cluster.sticky_cordon.add(rng.choice(names))
    services = build_services(cluster)
    kind = rng.choice([ArtifactKind.SNAPSHOT, ArtifactKind.BACKUP])

    report = services.coordinator.create(kind)

    assert cluster.min_live_control_plane >= 2
    cordoned = {name for name, node in cluster.nodes.items() if node.unschedulable}
    assert cordoned <= set(report.degraded)
