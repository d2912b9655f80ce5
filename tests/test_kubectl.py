"""Tests for kubectl-backed cluster operations."""

import json

import pytest

from k3s_admin.errors import CommandFailedError, DrainTimeoutError, RemoteConnectionError
from k3s_admin.kubectl import KubectlClusterAPI
from k3s_admin.models import CommandResult, ExecMode

NODES_JSON = {
    "items": [
        {
            "metadata": {
                "name": "k3s-cp-1",
                "labels": {
                    "node-role.kubernetes.io/control-plane": "true",
                    "node-role.kubernetes.io/master": "true",
                    "kubernetes.io/hostname": "k3s-cp-1",
                },
            },
            "spec": {},
            "status": {
                "conditions": [{"type": "Ready", "status": "True"}],
                "nodeInfo": {"kubeletVersion": "v1.30.4+k3s1"},
            },
        },
        {
            "metadata": {"name": "k3s-worker-1", "labels": {}},
            "spec": {"unschedulable": True},
            "status": {
                "conditions": [{"type": "Ready", "status": "False"}],
                "nodeInfo": {"kubeletVersion": "v1.30.4+k3s1"},
            },
        },
    ]
}


@pytest.fixture
def api(mock_executor):
    return KubectlClusterAPI(mock_executor, kubectl="k3s kubectl")


class TestNodeQueries:
    def test_list_nodes(self, api, mock_executor):
        """Should summarize readiness, roles and cordon state."""
        mock_executor.run.return_value = CommandResult(json.dumps(NODES_JSON), 0)

        nodes = api.list_nodes("k3s-cp-1")

        assert nodes[0] == {
            "name": "k3s-cp-1",
            "ready": True,
            "unschedulable": False,
            "roles": {"control-plane", "master"},
            "version": "v1.30.4+k3s1",
        }
        assert nodes[1]["ready"] is False
        assert nodes[1]["unschedulable"] is True
        assert mock_executor.run.call_args.args[1] == "k3s kubectl get nodes -o json"

    def test_node_roles(self, api, mock_executor):
        mock_executor.run.return_value = CommandResult(json.dumps(NODES_JSON["items"][0]), 0)

        assert api.node_roles("k3s-cp-2", "k3s-cp-1") == {"control-plane", "master"}

    def test_node_ready_missing_node(self, api, mock_executor):
        """A node that does not exist should read as None, not an error."""
        mock_executor.run.return_value = CommandResult('Error from server (NotFound): nodes "ghost" not found', 1)

        assert api.node_ready("k3s-cp-1", "ghost") is None

    @pytest.mark.parametrize("output,expected", [("true", True), ("", False), ("false", False)])
    def test_is_unschedulable(self, api, mock_executor, output, expected):
        mock_executor.run.return_value = CommandResult(output, 0)

        assert api.is_unschedulable("k3s-cp-1", "k3s-worker-1") is expected

    def test_is_unschedulable_unknown_on_error(self, api, mock_executor):
        mock_executor.run.return_value = CommandResult("The connection to the server was refused", 1)

        assert api.is_unschedulable("k3s-cp-1", "k3s-worker-1") is None

    def test_can_query(self, api, mock_executor):
        """Should be False when the node cannot be reached at all."""
        assert api.can_query("k3s-cp-1") is True
        assert mock_executor.run.call_args.kwargs["mode"] == ExecMode.SILENT

        mock_executor.run.side_effect = RemoteConnectionError("k3s-cp-1", "unreachable")
        assert api.can_query("k3s-cp-1") is False

    def test_invalid_json(self, api, mock_executor):
        mock_executor.run.return_value = CommandResult("not json", 0)

        with pytest.raises(CommandFailedError, match="invalid JSON"):
            api.list_nodes("k3s-cp-1")

    def test_node_ready_invalid_json(self, api, mock_executor):
        mock_executor.run.return_value = CommandResult("<html>502 Bad Gateway</html>", 0)

        with pytest.raises(CommandFailedError, match="get node k3s-worker-1: invalid JSON"):
            api.node_ready("k3s-cp-1", "k3s-worker-1")


class TestNodeMutations:
    def test_cordon_failure_raises(self, api, mock_executor):
        mock_executor.run.return_value = CommandResult("error: nodes not found", 1)

        with pytest.raises(CommandFailedError, match="Failed to cordon k3s-worker-1"):
            api.cordon("k3s-cp-1", "k3s-worker-1")

    def test_drain_wraps_timeout(self, api, mock_executor):
        """Drain should run under coreutils timeout with daemonsets ignored."""
        api.drain("k3s-cp-1", "k3s-worker-1", timeout=300)

        command = mock_executor.run.call_args.args[1]
        assert command == "timeout 300 k3s kubectl drain k3s-worker-1 --ignore-daemonsets"
        assert mock_executor.run.call_args.kwargs["timeout"] == 330

    def test_force_drain_flags(self, api, mock_executor):
        api.drain("k3s-cp-1", "k3s-worker-1", timeout=60, force=True)

        assert mock_executor.run.call_args.args[1].endswith("--ignore-daemonsets --force --delete-emptydir-data")

    def test_drain_timeout_exit_code(self, api, mock_executor):
        """Exit code 124 from timeout should raise DrainTimeoutError."""
        mock_executor.run.return_value = CommandResult("evicting pod default/web-0", 124)

        with pytest.raises(DrainTimeoutError) as excinfo:
            api.drain("k3s-cp-1", "k3s-worker-1", timeout=300)

        assert excinfo.value.exit_code == 124

    def test_drain_other_failure(self, api, mock_executor):
        mock_executor.run.return_value = CommandResult("cannot delete Pods not managed by a controller", 1)

        with pytest.raises(CommandFailedError) as excinfo:
            api.drain("k3s-cp-1", "k3s-worker-1", timeout=300)

        assert not isinstance(excinfo.value, DrainTimeoutError)

    def test_delete_node_ignores_missing(self, api, mock_executor):
        api.delete_node("k3s-cp-1", "k3s-worker-1")

        assert mock_executor.run.call_args.args[1] == "k3s kubectl delete node k3s-worker-1 --ignore-not-found"


class TestHealthQueries:
    def test_problem_pods(self, api, mock_executor):
        pods = {
            "items": [
                {"metadata": {"namespace": "kube-system", "name": "coredns"}, "status": {"phase": "Running"}},
                {"metadata": {"namespace": "default", "name": "job-1"}, "status": {"phase": "Succeeded"}},
                {"metadata": {"namespace": "default", "name": "web-0"}, "status": {"phase": "Pending"}},
            ]
        }
        mock_executor.run.return_value = CommandResult(json.dumps(pods), 0)

        assert api.problem_pods("k3s-cp-1") == ["default/web-0 (Pending)"]

    def test_unhealthy_components_unavailable(self, api, mock_executor):
        """Missing componentstatuses should not be treated as unhealthy."""
        mock_executor.run.return_value = CommandResult("the server doesn't have a resource type", 1)

        assert api.unhealthy_components("k3s-cp-1") == []

    def test_unhealthy_components_invalid_json(self, api, mock_executor):
        mock_executor.run.return_value = CommandResult("Warning: v1 ComponentStatus is deprecated", 0)

        with pytest.raises(CommandFailedError, match="list componentstatuses: invalid JSON"):
            api.unhealthy_components("k3s-cp-1")

    def test_unavailable_deployments(self, api, mock_executor):
        deployments = {
            "items": [
                {
                    "metadata": {"namespace": "media", "name": "jellyfin"},
                    "spec": {"replicas": 1},
                    "status": {},
                },
                {
                    "metadata": {"namespace": "default", "name": "web"},
                    "spec": {"replicas": 2},
                    "status": {"availableReplicas": 2},
                },
            ]
        }
        mock_executor.run.return_value = CommandResult(json.dumps(deployments), 0)

        assert api.unavailable_deployments("k3s-cp-1") == ["media/jellyfin (0/1)"]
