"""Tiered cluster health checks gating destructive operations."""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from k3s_admin.cluster_query import ClusterQuery
from k3s_admin.errors import K3sAdminError, ValidationFailedError
from k3s_admin.interfaces import ClusterAPI, DistributedStoreAPI, HypervisorAPI, NodeAgent
from k3s_admin.models import ClusterTopology, Node, OperationOptions, ValidationLevel, ValidationReport

logger = logging.getLogger(__name__)


@dataclass
class ValidationSettings:
    """Which optional checks are enabled."""

    etcd: bool = True
    storage: bool = True
    network: bool = True
    mount_path: Optional[str] = "/mnt/pvecephfs-1-k3s"


class ClusterValidator:
    """Run basic, extended or full health checks against the cluster."""

    def __init__(
        self,
        topology: ClusterTopology,
        query: ClusterQuery,
        cluster_api: ClusterAPI,
        node_agent: NodeAgent,
        etcd: DistributedStoreAPI,
        hypervisor: HypervisorAPI,
        settings: Optional[ValidationSettings] = None,
        options: Optional[OperationOptions] = None,
    ):
        """Initialize cluster validator.

        Args:
            topology: Configured cluster nodes
            query: Shared cluster queries
            cluster_api: kubectl access
            node_agent: Host-level checks on nodes
            etcd: etcd snapshot access
            hypervisor: Proxmox access
            settings: Optional check toggles
            options: Run flags (force downgrades failures to warnings)
        """
        self.topology = topology
        self.query = query
        self.cluster_api = cluster_api
        self.node_agent = node_agent
        self.etcd = etcd
        self.hypervisor = hypervisor
        self.settings = settings or ValidationSettings()
        self.options = options or OperationOptions()

    def preflight(self, scope: Optional[Sequence[Node]] = None) -> ValidationReport:
        """SSH reachability of every node in scope and a working kubectl somewhere."""
        scope = list(scope) if scope is not None else list(self.topology)
        report = ValidationReport(level=ValidationLevel.BASIC)
        for node in scope:
            reachable = self.node_agent.is_reachable(node.name)
            report.record(f"ssh:{node.name}", reachable, f"Cannot reach {node.name} over SSH")
        via = self.query.find_kubectl_node()
        report.record("kubectl", via is not None, "kubectl is not working on any node")
        return report

    def validate(
        self, level: Optional[ValidationLevel] = None, scope: Optional[Sequence[Node]] = None
    ) -> ValidationReport:
        """Run the checks for ``level`` and return a report.

        Args:
            level: Validation tier, defaults to the configured level
            scope: Nodes to check, defaults to the whole topology

        Returns:
            ValidationReport with per-check results, warnings and errors
        """
        level = level or self.options.validation_level
        scope = list(scope) if scope is not None else list(self.topology)
        report = ValidationReport(level=level)
        logger.info(f"🔍 Running {level.value} validation on {len(scope)} nodes")

        via = self.query.find_kubectl_node()
        if via is None:
            report.record("kubectl", False, "No node can reach the Kubernetes API")
            return self._log_report(report)

        try:
            self._check_basic(report, via, scope)
            if level.includes(ValidationLevel.EXTENDED):
                self._check_extended(report, scope)
            if level.includes(ValidationLevel.FULL):
                self._check_full(report, via, scope)
        except K3sAdminError as e:
            report.record("query", False, f"Validation query failed: {e}")

        return self._log_report(report)

    def gate(self, level: Optional[ValidationLevel] = None, context: str = "", scope=None) -> ValidationReport:
        """Validate and raise on blocking errors unless force is set.

        Raises:
            ValidationFailedError: If validation fails and force is off
        """
        report = self.validate(level, scope)
        if report.valid:
            return report
        message = f"Cluster validation failed{' ' + context if context else ''}: {'; '.join(report.errors)}"
        if self.options.force:
            logger.warning(f"⚠️ {message}. Continuing (force)")
            return report
        raise ValidationFailedError(message, report.errors)

    def _check_basic(self, report: ValidationReport, via: str, scope: List[Node]) -> None:
        nodes = {n["name"]: n for n in self.cluster_api.list_nodes(via)}

        for node in scope:
            info = nodes.get(node.name)
            if info is None:
                report.record(f"registered:{node.name}", False, f"{node.name} is not registered in the cluster")
                continue
            report.record(f"ready:{node.name}", bool(info["ready"]), f"{node.name} is NotReady")
            report.record(f"version:{node.name}", bool(info.get("version")), f"{node.name} reports no k3s version")

        versions = {info.get("version") for name, info in nodes.items() if info.get("version")}
        report.record(
            "version-consistency",
            len(versions) <= 1,
            f"Inconsistent k3s versions: {', '.join(sorted(versions))}",
            blocking=False,
        )

        unhealthy = self.cluster_api.unhealthy_components(via)
        report.record(
            "components", not unhealthy, f"Unhealthy components: {', '.join(unhealthy)}", blocking=False
        )

        stuck = self.cluster_api.problem_pods(via)
        report.record(
            "pods", not stuck, f"{len(stuck)} pods not Running/Completed: {', '.join(stuck[:10])}", blocking=False
        )

    def _check_extended(self, report: ValidationReport, scope: List[Node]) -> None:
        if self.settings.etcd:
            healthy = any(
                self.etcd.is_healthy(cp.name) for cp in self.topology.control_plane() if self.query.is_live(cp)
            )
            report.record("etcd", healthy, "etcd did not answer on any control-plane node")

        if self.settings.storage and self.settings.mount_path:
            for node in scope:
                writable = self.node_agent.mount_writable(node.name, self.settings.mount_path)
                report.record(
                    f"storage:{node.name}",
                    writable,
                    f"Shared storage {self.settings.mount_path} missing or read-only on {node.name}",
                )

    def _check_full(self, report: ValidationReport, via: str, scope: List[Node]) -> None:
        if not self.settings.network:
            return

        for source in scope:
            for target in scope:
                if source.name == target.name:
                    continue
                reachable = self.node_agent.can_ping(source.name, target.name)
                report.record(
                    f"ping:{source.name}->{target.name}", reachable, f"{source.name} cannot reach {target.name}"
                )

        report.record("dns", self.cluster_api.dns_smoke_test(via), "Pod DNS smoke test failed")

        unavailable = self.cluster_api.unavailable_deployments(via)
        report.record(
            "workloads",
            not unavailable,
            f"Deployments below desired replicas: {', '.join(unavailable)}",
            blocking=False,
        )

        for host in self.topology.hypervisor_hosts:
            report.record(f"proxmox:{host}", self.hypervisor.host_online(host), f"Proxmox host {host} is not online")

    @staticmethod
    def _log_report(report: ValidationReport) -> ValidationReport:
        for warning in report.warnings:
            logger.warning(f"  ⚠️ {warning}")
        for error in report.errors:
            logger.error(f"  ❌ {error}")
        if report.valid:
            logger.info(f"✅ {report.level.value} validation passed ({len(report.checks)} checks)")
        else:
            logger.error(f"❌ {report.level.value} validation failed with {len(report.errors)} errors")
        return report
