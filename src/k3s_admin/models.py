"""Data models for cluster nodes, artifacts and operation results."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple


class NodeRole(Enum):
    """Cluster role of a node."""

    CONTROL_PLANE = "control-plane"
    WORKER = "worker"

    @classmethod
    def from_config(cls, value: str) -> "NodeRole":
        """Map config role names (master, control, worker) to a role."""
        normalized = (value or "").strip().lower()
        if normalized in ("master", "control", "control-plane", "server"):
            return cls.CONTROL_PLANE
        if normalized in ("worker", "agent"):
            return cls.WORKER
        raise ValueError(f"Unknown node role: {value!r}")


class NodeState(Enum):
    """Lifecycle state of a node as tracked by NodeLifecycle."""

    READY = "Ready"
    CORDONED = "Cordoned"
    DRAINING = "Draining"
    DRAINED = "Drained"
    SERVICE_STOPPED = "ServiceStopped"
    POWERED_OFF = "PoweredOff"
    POWERING_ON = "PoweringOn"
    REACHABLE = "Reachable"
    SERVICE_STARTING = "ServiceStarting"
    SERVICE_ACTIVE = "ServiceActive"
    UNKNOWN = "Unknown"


class ArtifactKind(Enum):
    """Kind of point-in-time artifact."""

    SNAPSHOT = "snapshot"
    BACKUP = "backup"


class ExecMode(Enum):
    """Output handling for remote commands."""

    NORMAL = "normal"  # stdout + stderr, logged
    SILENT = "silent"  # no output returned, only the exit code
    QUIET = "quiet"  # stdout only, stderr discarded
    CAPTURE = "capture"  # stdout + stderr, not logged


class ValidationLevel(Enum):
    """Validation tier."""

    BASIC = "basic"
    EXTENDED = "extended"
    FULL = "full"

    def includes(self, other: "ValidationLevel") -> bool:
        order = [ValidationLevel.BASIC, ValidationLevel.EXTENDED, ValidationLevel.FULL]
        return order.index(self) >= order.index(other)


@dataclass
class Node:
    """A k3s node backed by a Proxmox VM."""

    name: str
    address: str
    role: NodeRole
    vmid: int
    hypervisor_host: str
    arch: str = "amd64"
    state: NodeState = NodeState.UNKNOWN

    @property
    def is_control_plane(self) -> bool:
        return self.role == NodeRole.CONTROL_PLANE


@dataclass
class ClusterTopology:
    """Ordered set of nodes plus the hypervisor hosts backing them."""

    nodes: List[Node]
    hypervisor_hosts: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.hypervisor_hosts:
            seen: List[str] = []
            for node in self.nodes:
                if node.hypervisor_host not in seen:
                    seen.append(node.hypervisor_host)
            self.hypervisor_hosts = seen

    def __iter__(self):
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    def get(self, name: str) -> Node:
        for node in self.nodes:
            if node.name == name:
                return node
        raise KeyError(f"Node {name} is not part of the cluster configuration")

    def select(self, names: Iterable[str]) -> List[Node]:
        """Return the named nodes in topology order."""
        wanted = set(names)
        unknown = wanted - {n.name for n in self.nodes}
        if unknown:
            raise KeyError(f"Unknown nodes: {', '.join(sorted(unknown))}")
        return [n for n in self.nodes if n.name in wanted]

    def control_plane(self) -> List[Node]:
        return [n for n in self.nodes if n.is_control_plane]

    def workers(self) -> List[Node]:
        return [n for n in self.nodes if not n.is_control_plane]


@dataclass
class CommandResult:
    """Output and exit code of a remote command."""

    output: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class BackupResult:
    """Outcome of a hypervisor backup job."""

    success: bool
    log: str
    volid: Optional[str] = None


@dataclass(frozen=True)
class VMArtifact:
    """A Proxmox snapshot or backup archive of one VM.

    The description is the only persistent link between the artifact and the
    etcd snapshot it is consistent with.
    """

    kind: ArtifactKind
    vmid: int
    hypervisor_host: str
    name: str
    description: str = ""
    created: Optional[datetime] = None

    @property
    def linked_snapshot(self) -> Optional[str]:
        """Name of the linked etcd snapshot, or None when absent."""
        from k3s_admin.naming import parse_linked_snapshot

        return parse_linked_snapshot(self.description)

    @property
    def label(self) -> str:
        """Point-in-time label this artifact belongs to."""
        from k3s_admin.naming import label_from_artifact

        return label_from_artifact(self)


@dataclass(frozen=True)
class DistributedStateSnapshot:
    """An etcd snapshot saved by k3s on a control-plane node."""

    name: str
    node: str
    location: str


@dataclass(frozen=True)
class PointInTimeRecord:
    """A completed cluster-wide snapshot or backup."""

    kind: ArtifactKind
    label: str
    timestamp: datetime
    distributed_snapshot_name: Optional[str]
    description: str = ""
    artifacts: Tuple[VMArtifact, ...] = ()


@dataclass(frozen=True)
class RetentionPolicy:
    """Keep the N most recent artifacts of a class; 0 disables cleanup."""

    keep: int

    @property
    def enabled(self) -> bool:
        return self.keep > 0


@dataclass
class ValidationReport:
    """Result of a validation run."""

    level: ValidationLevel
    checks: Dict[str, bool] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def record(self, check: str, passed: bool, message: str = "", blocking: bool = True) -> None:
        """Record a check outcome, adding the message as error or warning on failure."""
        self.checks[check] = passed
        if passed or not message:
            return
        if blocking:
            self.errors.append(message)
        else:
            self.warnings.append(message)


@dataclass
class OperationOptions:
    """Run-wide flags and settings consumed by the coordinators."""

    force: bool = False
    dry_run: bool = False
    interactive: bool = False
    validation_level: ValidationLevel = ValidationLevel.BASIC
    retention: int = 5
    drain_timeout: int = 300
    operation_timeout: int = 600
    backup_storage: Optional[str] = None
    label_prefix: str = "k3s-backup"
    ignore_missing_snapshot: bool = False


@dataclass
class OperationReport:
    """Summary of a top-level operation."""

    operation: str
    success: bool = True
    record: Optional[PointInTimeRecord] = None
    processed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    degraded: List[str] = field(default_factory=list)
    issues: List[str] = field(default_factory=list)
    message: str = ""

    def fail(self, message: str, node: Optional[str] = None) -> "OperationReport":
        self.success = False
        self.message = message
        if node and node not in self.failed:
            self.failed.append(node)
        return self

    @property
    def summary(self) -> str:
        parts = [f"{self.operation}: {'succeeded' if self.success else 'failed'}"]
        if self.message:
            parts.append(self.message)
        if self.degraded:
            parts.append(f"{len(self.degraded)} nodes may still be cordoned: {', '.join(self.degraded)}")
        return " - ".join(parts)
