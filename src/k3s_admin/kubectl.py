"""Kubernetes node operations via kubectl on a cluster node."""

import json
import logging
import shlex
import time
from typing import Any, Dict, List, Optional, Set

from k3s_admin.errors import CommandFailedError, DrainTimeoutError, RemoteConnectionError
from k3s_admin.interfaces import ClusterAPI, RemoteExecutor
from k3s_admin.models import CommandResult, ExecMode

logger = logging.getLogger(__name__)

ROLE_LABEL_PREFIX = "node-role.kubernetes.io/"
TIMEOUT_EXIT_CODE = 124


class KubectlClusterAPI(ClusterAPI):
    """Runs kubectl on a node through a RemoteExecutor."""

    def __init__(self, executor: RemoteExecutor, kubectl: str = "kubectl", user: Optional[str] = None) -> None:
        self.executor = executor
        self.kubectl = kubectl
        self.user = user

    def _run(self, via: str, args: str, mode: ExecMode = ExecMode.CAPTURE, timeout: float = 60) -> CommandResult:
        return self.executor.run(via, f"{self.kubectl} {args}", user=self.user, mode=mode, timeout=timeout)

    def _check(self, via: str, args: str, action: str, timeout: float = 60) -> CommandResult:
        result = self._run(via, args, timeout=timeout)
        if not result.ok:
            raise CommandFailedError(
                f"Failed to {action}: {result.output}",
                command=f"{self.kubectl} {args}",
                exit_code=result.exit_code,
                output=result.output,
            )
        return result

    @staticmethod
    def _parse_json(output: str, action: str) -> Dict[str, Any]:
        try:
            return json.loads(output)  # type: ignore[no-any-return]
        except json.JSONDecodeError as e:
            raise CommandFailedError(f"Failed to {action}: invalid JSON from kubectl ({e})", output=output) from e

    def _get_json(self, via: str, args: str, action: str) -> Dict[str, Any]:
        result = self._check(via, f"{args} -o json", action)
        return self._parse_json(result.output, action)

    def can_query(self, via: str) -> bool:
        try:
            return self._run(via, "get nodes", mode=ExecMode.SILENT, timeout=30).ok
        except RemoteConnectionError:
            return False

    @staticmethod
    def _summarize(item: Dict[str, Any]) -> Dict[str, Any]:
        metadata = item.get("metadata", {})
        conditions = item.get("status", {}).get("conditions", [])
        ready = any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions)
        roles = {
            key[len(ROLE_LABEL_PREFIX):]
            for key in metadata.get("labels", {})
            if key.startswith(ROLE_LABEL_PREFIX)
        }
        return {
            "name": metadata.get("name"),
            "ready": ready,
            "unschedulable": bool(item.get("spec", {}).get("unschedulable", False)),
            "roles": roles,
            "version": item.get("status", {}).get("nodeInfo", {}).get("kubeletVersion"),
        }

    def list_nodes(self, via: str) -> List[Dict[str, Any]]:
        data = self._get_json(via, "get nodes", "list nodes")
        return [self._summarize(item) for item in data.get("items", [])]

    def _get_node(self, via: str, node: str) -> Optional[Dict[str, Any]]:
        result = self._run(via, f"get node {shlex.quote(node)} -o json")
        if not result.ok:
            if "NotFound" in result.output or "not found" in result.output:
                return None
            raise CommandFailedError(f"Failed to get node {node}: {result.output}", exit_code=result.exit_code)
        return self._summarize(self._parse_json(result.output, f"get node {node}"))

    def node_ready(self, via: str, node: str) -> Optional[bool]:
        summary = self._get_node(via, node)
        return None if summary is None else summary["ready"]

    def is_unschedulable(self, via: str, node: str) -> Optional[bool]:
        result = self._run(via, f"get node {shlex.quote(node)} -o jsonpath='{{.spec.unschedulable}}'", timeout=30)
        if not result.ok:
            logger.debug(f"Could not read unschedulable flag of {node}: {result.output}")
            return None
        return result.output.strip().lower() == "true"

    def cordon(self, via: str, node: str) -> None:
        self._check(via, f"cordon {shlex.quote(node)}", f"cordon {node}")

    def uncordon(self, via: str, node: str) -> None:
        self._check(via, f"uncordon {shlex.quote(node)}", f"uncordon {node}")

    def drain(self, via: str, node: str, timeout: int, force: bool = False) -> None:
        flags = "--ignore-daemonsets"
        if force:
            flags += " --force --delete-emptydir-data"
        command = f"timeout {timeout} {self.kubectl} drain {shlex.quote(node)} {flags}"
        result = self.executor.run(via, command, user=self.user, mode=ExecMode.CAPTURE, timeout=timeout + 30)
        if result.exit_code == TIMEOUT_EXIT_CODE:
            raise DrainTimeoutError(
                f"Drain of {node} timed out after {timeout}s", command=command, exit_code=result.exit_code
            )
        if not result.ok:
            raise CommandFailedError(
                f"Failed to drain {node}: {result.output}",
                command=command,
                exit_code=result.exit_code,
                output=result.output,
            )

    def node_roles(self, via: str, node: str) -> Set[str]:
        summary = self._get_node(via, node)
        return set() if summary is None else summary["roles"]

    def delete_node(self, via: str, node: str) -> None:
        result = self._run(via, f"delete node {shlex.quote(node)} --ignore-not-found")
        if not result.ok:
            raise CommandFailedError(f"Failed to delete node {node}: {result.output}", exit_code=result.exit_code)

    def problem_pods(self, via: str) -> List[str]:
        data = self._get_json(via, "get pods --all-namespaces", "list pods")
        problems = []
        for pod in data.get("items", []):
            phase = pod.get("status", {}).get("phase", "Unknown")
            if phase not in ("Running", "Succeeded"):
                meta = pod.get("metadata", {})
                problems.append(f"{meta.get('namespace')}/{meta.get('name')} ({phase})")
        return problems

    def unhealthy_components(self, via: str) -> List[str]:
        # componentstatuses is deprecated and missing on some versions
        result = self._run(via, "get componentstatuses -o json")
        if not result.ok:
            logger.debug(f"componentstatuses unavailable: {result.output}")
            return []
        unhealthy = []
        for item in self._parse_json(result.output, "list componentstatuses").get("items", []):
            for condition in item.get("conditions", []):
                if condition.get("type") == "Healthy" and condition.get("status") != "True":
                    unhealthy.append(item.get("metadata", {}).get("name", "unknown"))
        return unhealthy

    def unavailable_deployments(self, via: str) -> List[str]:
        data = self._get_json(via, "get deployments --all-namespaces", "list deployments")
        unavailable = []
        for deployment in data.get("items", []):
            desired = deployment.get("spec", {}).get("replicas", 1)
            available = deployment.get("status", {}).get("availableReplicas", 0) or 0
            if available < desired:
                meta = deployment.get("metadata", {})
                unavailable.append(f"{meta.get('namespace')}/{meta.get('name')} ({available}/{desired})")
        return unavailable

    def dns_smoke_test(self, via: str) -> bool:
        pod = f"k3s-admin-dns-check-{int(time.time())}"
        result = self._run(
            via,
            f"run {pod} --image=busybox:1.36 --restart=Never --rm -i --command -- nslookup kubernetes.default",
            timeout=120,
        )
        if not result.ok:
            logger.warning(f"⚠️ DNS smoke test failed: {result.output}")
        return result.ok
