"""Single-node lifecycle: cordon, drain, stop k3s, power off and back on.

Forward path::

    Ready -> Cordoned -> Draining -> Drained -> ServiceStopped -> PoweredOff

Reverse path::

    PoweredOff -> PoweringOn -> Reachable -> ServiceStarting -> ServiceActive -> Ready
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from tenacity import RetryError, Retrying, before_sleep_log, retry_if_result, stop_after_attempt, wait_exponential

from k3s_admin.cluster_query import ClusterQuery
from k3s_admin.confirm import Confirmer, StaticConfirmer, escalation_allowed
from k3s_admin.errors import (
    CommandFailedError,
    DrainTimeoutError,
    K3sAdminError,
    PreconditionError,
    QuorumError,
    RemoteConnectionError,
    VerificationError,
)
from k3s_admin.interfaces import ClusterAPI, HypervisorAPI, NodeAgent
from k3s_admin.models import Node, NodeState, OperationOptions
from k3s_admin.polling import SystemClock, wait_until

logger = logging.getLogger(__name__)


@dataclass
class LifecycleTimeouts:
    """Bounds, in seconds, for the wait-with-poll loops."""

    vm_shutdown: int = 90
    vm_force_stop: int = 60
    reachable: int = 120
    service_start: int = 180
    service_stop: int = 30
    node_ready: int = 300
    poll_interval: int = 5
    uncordon_attempts: int = 12
    uncordon_delay: int = 10
    uncordon_max_delay: int = 120


class NodeLifecycle:
    """Moves one node at a time through its lifecycle states."""

    def __init__(
        self,
        query: ClusterQuery,
        cluster_api: ClusterAPI,
        node_agent: NodeAgent,
        hypervisor: HypervisorAPI,
        options: Optional[OperationOptions] = None,
        confirmer: Optional[Confirmer] = None,
        clock=None,
        timeouts: Optional[LifecycleTimeouts] = None,
    ) -> None:
        self.query = query
        self.cluster_api = cluster_api
        self.node_agent = node_agent
        self.hypervisor = hypervisor
        self.options = options or OperationOptions()
        self.confirmer = confirmer or StaticConfirmer(False)
        self.clock = clock or SystemClock()
        self.timeouts = timeouts or LifecycleTimeouts()

    def _transition(self, node: Node, state: NodeState) -> None:
        if node.state != state:
            logger.debug(f"{node.name}: {node.state.value} -> {state.value}")
        node.state = state

    def _dry_run(self, node: Node, action: str, state: Optional[NodeState] = None) -> bool:
        if not self.options.dry_run:
            return False
        logger.info(f"[DRY RUN] Would {action}")
        if state is not None:
            self._transition(node, state)
        return True

    def _escalate(self, question: str) -> bool:
        return escalation_allowed(self.options, self.confirmer, question)

    def check_quorum(self, node: Node) -> None:
        """Refuse to take down the last live control-plane node.

        A worker always passes. A control-plane node passes when at least one
        other control-plane node is reachable with k3s active.

        Raises:
            QuorumError: If no live control-plane peer exists and force is off
        """
        if not self.query.is_control_plane(node):
            return
        peers = self.query.live_control_plane_peers(node)
        if peers:
            logger.info(f"✅ Quorum check passed for {node.name} (live peers: {', '.join(p.name for p in peers)})")
            return
        message = f"{node.name} is the last live control-plane node; taking it down would lose quorum"
        if self.options.force:
            logger.warning(f"⚠️ {message}. Continuing (force)")
            return
        raise QuorumError(message)

    def cordon(self, node: Node) -> None:
        if self._dry_run(node, f"cordon {node.name}", NodeState.CORDONED):
            return
        via = self.query.find_kubectl_node(exclude=node.name)
        if via is None:
            raise RemoteConnectionError(node.name, "no node can run kubectl to cordon it")
        logger.info(f"🚧 Cordoning {node.name} via {via}")
        self.cluster_api.cordon(via, node.name)
        self._transition(node, NodeState.CORDONED)

    def _uncordon_once(self, node: Node) -> bool:
        """Issue uncordon and independently verify the unschedulable flag."""
        via = self.query.find_kubectl_node(exclude=node.name, allow_self=False)
        if via is None and self.query.node_ready(node.name) is not False:
            via = self.query.find_kubectl_node(exclude=node.name, allow_self=True)
        if via is None:
            logger.warning(f"⚠️ No node available to uncordon {node.name}")
            return False

        try:
            self.cluster_api.uncordon(via, node.name)
        except (CommandFailedError, RemoteConnectionError) as e:
            logger.warning(f"⚠️ Uncordon of {node.name} failed: {e}")
            return False

        flag = self.cluster_api.is_unschedulable(via, node.name)
        if flag is False:
            return True
        logger.warning(f"⚠️ {node.name} still reports unschedulable={flag} after uncordon")
        return False

    def uncordon(self, node: Node, attempts: Optional[int] = None, wait_ready: bool = False) -> None:
        """Make the node schedulable, retrying until the flag is verified clear.

        Args:
            node: Node to uncordon
            attempts: Maximum uncordon+verify attempts
            wait_ready: Wait for the node to report Ready first

        Raises:
            VerificationError: If the node is still cordoned after all attempts
        """
        if self._dry_run(node, f"uncordon {node.name}", NodeState.READY):
            return
        attempts = attempts or self.timeouts.uncordon_attempts

        if wait_ready and not self.query.wait_node_ready(node.name, self.timeouts.node_ready):
            logger.warning(f"⚠️ {node.name} not Ready after {self.timeouts.node_ready}s, uncordoning anyway")

        retrying = Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self.timeouts.uncordon_delay, max=self.timeouts.uncordon_max_delay),
            retry=retry_if_result(lambda verified: not verified),
            before_sleep=before_sleep_log(logger, logging.INFO),
            sleep=self.clock.sleep,
        )
        try:
            retrying(self._uncordon_once, node)
        except RetryError:
            raise VerificationError(f"{node.name} is still cordoned after {attempts} uncordon attempts")
        logger.info(f"✅ {node.name} uncordoned")
        self._transition(node, NodeState.READY)

    def try_uncordon(self, node: Node, attempts: Optional[int] = None) -> bool:
        """Best-effort uncordon used on rollback paths."""
        try:
            self.uncordon(node, attempts=attempts)
            return True
        except K3sAdminError as e:
            logger.error(f"❌ Could not uncordon {node.name}: {e}")
            return False

    def drain(self, node: Node) -> None:
        """Evict workloads; on timeout force-drain only if force or the operator allows it.

        A failed drain leaves the node cordoned.
        """
        if self._dry_run(node, f"drain {node.name}", NodeState.DRAINED):
            return
        via = self.query.find_kubectl_node(exclude=node.name, allow_self=False)
        if via is None:
            raise PreconditionError(f"No other node available to drain {node.name}")

        timeout = self.options.drain_timeout
        logger.info(f"🚚 Draining {node.name} via {via} (timeout {timeout}s)")
        self._transition(node, NodeState.DRAINING)
        try:
            self.cluster_api.drain(via, node.name, timeout=timeout)
        except DrainTimeoutError:
            logger.warning(f"⚠️ Drain of {node.name} timed out after {timeout}s")
            if not self._escalate(f"Force drain {node.name}? Pods using local storage will be deleted."):
                self._transition(node, NodeState.CORDONED)
                raise
            self.cluster_api.drain(via, node.name, timeout=timeout, force=True)
        except K3sAdminError:
            self._transition(node, NodeState.CORDONED)
            raise
        logger.info(f"✅ {node.name} drained")
        self._transition(node, NodeState.DRAINED)

    def _service_stopped(self, node: Node, timeout: int) -> bool:
        return wait_until(
            lambda: not self.node_agent.service_active(node.name), timeout, 2, self.clock, f"k3s to stop on {node.name}"
        )

    def stop_cluster_service(self, node: Node) -> None:
        if self._dry_run(node, f"stop k3s on {node.name}", NodeState.SERVICE_STOPPED):
            return
        logger.info(f"🛑 Stopping k3s on {node.name}")
        try:
            self.node_agent.stop_service(node.name)
        except CommandFailedError as e:
            logger.warning(f"⚠️ {e}")

        if not self._service_stopped(node, self.timeouts.service_stop):
            logger.warning(f"⚠️ k3s still active on {node.name}")
            if not self._escalate(f"Force kill k3s on {node.name}?"):
                raise VerificationError(f"k3s service is still active on {node.name}")
            self.node_agent.kill_service(node.name)
            if not self._service_stopped(node, 10):
                raise VerificationError(f"k3s service is still active on {node.name} after kill")

        logger.info(f"✅ k3s stopped on {node.name}")
        self._transition(node, NodeState.SERVICE_STOPPED)

    def start_cluster_service(self, node: Node) -> None:
        if self._dry_run(node, f"start k3s on {node.name}", NodeState.SERVICE_ACTIVE):
            return
        self._transition(node, NodeState.SERVICE_STARTING)
        if not self.node_agent.service_active(node.name):
            logger.info(f"▶️ Starting k3s on {node.name}")
            self.node_agent.start_service(node.name)
        if not self.query.wait_service_active(node.name, self.timeouts.service_start, self.timeouts.poll_interval):
            raise VerificationError(f"k3s did not become active on {node.name} within {self.timeouts.service_start}s")
        logger.info(f"✅ k3s active on {node.name}")
        self._transition(node, NodeState.SERVICE_ACTIVE)

    def power_off(self, node: Node, wait: bool = True, hard: bool = False) -> None:
        """Shut down the backing VM, escalating to a hard stop only when allowed.

        Args:
            node: Node whose VM to power off
            wait: Poll until the VM reports stopped
            hard: Skip the graceful shutdown
        """
        host, vmid = node.hypervisor_host, node.vmid
        if self._dry_run(node, f"power off VM {vmid} on {host}", NodeState.POWERED_OFF):
            return
        if self.hypervisor.vm_status(host, vmid) == "stopped":
            logger.info(f"VM {vmid} is already stopped")
            self._transition(node, NodeState.POWERED_OFF)
            return

        stopped = False
        if not hard:
            logger.info(f"⏻ Shutting down VM {vmid} ({node.name}) on {host}")
            try:
                self.hypervisor.shutdown_vm(host, vmid, timeout=self.timeouts.vm_shutdown)
                stopped = not wait or self.query.wait_vm_status(node, "stopped", self.timeouts.vm_shutdown)
            except K3sAdminError as e:
                logger.warning(f"⚠️ Graceful shutdown of VM {vmid} failed: {e}")

        if not stopped:
            if not hard and not self._escalate(f"VM {vmid} did not shut down gracefully. Force stop it?"):
                raise CommandFailedError(f"VM {vmid} did not shut down gracefully")
            logger.info(f"⏻ Force stopping VM {vmid}")
            self.hypervisor.stop_vm(host, vmid)
            if wait and not self.query.wait_vm_status(node, "stopped", self.timeouts.vm_force_stop):
                raise VerificationError(f"VM {vmid} did not stop within {self.timeouts.vm_force_stop}s")

        logger.info(f"✅ VM {vmid} stopped")
        self._transition(node, NodeState.POWERED_OFF)

    def power_on(self, node: Node, uncordon: bool = True) -> None:
        """Start the VM, wait for SSH and k3s, then optionally uncordon."""
        host, vmid = node.hypervisor_host, node.vmid
        if self._dry_run(node, f"start VM {vmid} on {host}", NodeState.SERVICE_ACTIVE):
            if uncordon:
                self.uncordon(node)
            return

        if self.hypervisor.vm_status(host, vmid) == "running":
            logger.info(f"VM {vmid} ({node.name}) is already running")
        else:
            logger.info(f"🚀 Starting VM {vmid} ({node.name}) on {host}")
            self._transition(node, NodeState.POWERING_ON)
            self.hypervisor.start_vm(host, vmid)

        if not self.query.wait_reachable(node.name, self.timeouts.reachable, self.timeouts.poll_interval):
            raise RemoteConnectionError(node.name, f"not reachable within {self.timeouts.reachable}s after start")
        self._transition(node, NodeState.REACHABLE)

        self.start_cluster_service(node)
        if uncordon:
            self.uncordon(node)

    def _step(self, node: Node, name: str, action: Callable[[Node], None], rollback: bool) -> None:
        try:
            action(node)
        except K3sAdminError as e:
            if self.options.force:
                logger.warning(f"⚠️ {name} failed on {node.name}: {e}. Continuing (force)")
                return
            logger.error(f"❌ {name} failed on {node.name}: {e}")
            if rollback:
                self.try_uncordon(node)
            raise

    def evacuate(self, node: Node) -> None:
        """Quorum check, cordon, drain and stop k3s, leaving the VM running."""
        self.check_quorum(node)
        self._step(node, "Cordon", self.cordon, rollback=False)
        self._step(node, "Drain", self.drain, rollback=False)
        self._step(node, "Stopping k3s", self.stop_cluster_service, rollback=True)

    def shutdown(self, node: Node) -> None:
        """Take a node fully offline: evacuate, then power off the VM."""
        logger.info(f"🔻 Shutting down node {node.name}")
        self.evacuate(node)
        self._step(node, "Power off", self.power_off, rollback=True)
        logger.info(f"✅ Node {node.name} is down")
