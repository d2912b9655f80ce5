"""Tests for k3s etcd snapshot operations."""

import pytest

from k3s_admin.errors import CommandFailedError, RemoteConnectionError, VerificationError
from k3s_admin.etcd_store import DEFAULT_SNAPSHOT_DIR, K3sEtcdStore
from k3s_admin.models import CommandResult, DistributedStateSnapshot

LISTING = "\n".join(
    [
        "etcd-demo-k3s-20250101-120000-k3s-cp-1-1735732800",
        "etcd-k3s-backup-20250102-120000-k3s-cp-1-1735819200",
        "on-demand-k3s-cp-1-1735700000",
    ]
)


@pytest.fixture
def store(mock_executor):
    return K3sEtcdStore(mock_executor)


class TestSave:
    def test_save_reads_path_from_output(self, store, mock_executor):
        """Should use the path k3s reports in its log output."""
        path = f"{DEFAULT_SNAPSHOT_DIR}/etcd-demo-k3s-cp-1-1735732800"
        mock_executor.run.return_value = CommandResult(
            f'level=info msg="Saving etcd snapshot to {path}"', 0
        )

        snapshot = store.save_snapshot("k3s-cp-1", "etcd-demo")

        assert snapshot == DistributedStateSnapshot(name="etcd-demo", node="k3s-cp-1", location=path)
        assert mock_executor.run.call_args.args[1] == "k3s etcd-snapshot save --name etcd-demo"

    def test_save_falls_back_to_listing(self, store, mock_executor):
        """Without a path in the output the snapshot is looked up by prefix."""
        mock_executor.run.side_effect = [CommandResult("done", 0), CommandResult(LISTING, 0)]

        snapshot = store.save_snapshot("k3s-cp-1", "etcd-demo-k3s-20250101-120000")

        assert snapshot.location == f"{DEFAULT_SNAPSHOT_DIR}/etcd-demo-k3s-20250101-120000-k3s-cp-1-1735732800"

    def test_save_not_found_after_save(self, store, mock_executor):
        mock_executor.run.side_effect = [CommandResult("done", 0), CommandResult("", 0)]

        with pytest.raises(VerificationError, match="not found on k3s-cp-1 after save"):
            store.save_snapshot("k3s-cp-1", "etcd-demo")

    def test_save_failure(self, store, mock_executor):
        mock_executor.run.return_value = CommandResult("etcd datastore is not running", 1)

        with pytest.raises(CommandFailedError, match="Failed to save etcd snapshot on k3s-cp-1"):
            store.save_snapshot("k3s-cp-1", "etcd-demo")


class TestListing:
    def test_list_snapshots(self, store, mock_executor):
        mock_executor.run.return_value = CommandResult(LISTING + "\n", 0)

        assert len(store.list_snapshots("k3s-cp-1")) == 3
        assert mock_executor.run.call_args.args[1] == f"ls -1 {DEFAULT_SNAPSHOT_DIR}"

    def test_find_snapshot_missing(self, store, mock_executor):
        mock_executor.run.return_value = CommandResult(LISTING, 0)

        assert store.find_snapshot("k3s-cp-1", "etcd-nope") is None

    def test_is_healthy(self, store, mock_executor):
        assert store.is_healthy("k3s-cp-1") is True

        mock_executor.run.side_effect = RemoteConnectionError("k3s-cp-1", "unreachable")
        assert store.is_healthy("k3s-cp-1") is False


class TestRestore:
    def test_cluster_reset_command(self, mock_executor):
        """Should run k3s server --cluster-reset with the restore path and data dir."""
        store = K3sEtcdStore(mock_executor, data_dir="/var/lib/rancher/k3s")
        snapshot = DistributedStateSnapshot("etcd-demo", "k3s-cp-1", f"{DEFAULT_SNAPSHOT_DIR}/etcd-demo-k3s-cp-1-1")

        store.restore("k3s-cp-1", snapshot)

        command = mock_executor.run.call_args.args[1]
        assert command == (
            "k3s server --cluster-reset "
            f"--cluster-reset-restore-path={DEFAULT_SNAPSHOT_DIR}/etcd-demo-k3s-cp-1-1 "
            "--data-dir=/var/lib/rancher/k3s"
        )

    def test_restore_failure(self, store, mock_executor):
        mock_executor.run.return_value = CommandResult("cluster-reset failed", 1)
        snapshot = DistributedStateSnapshot("etcd-demo", "k3s-cp-1", "/tmp/x")

        with pytest.raises(CommandFailedError, match="etcd restore failed on k3s-cp-1"):
            store.restore("k3s-cp-1", snapshot)
