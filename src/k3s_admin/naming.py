"""Artifact naming, description metadata and retention selection.

Proxmox snapshot names must start with a letter, use only ``[A-Za-z0-9_-]``
and be at most 40 characters long. The etcd snapshot that a VM artifact is
consistent with is recorded in the artifact description as ``Etcd: <name>``;
that marker is the only link between the two and is shown as-is in the
Proxmox UI.
"""

import re
from datetime import datetime
from typing import Callable, List, Optional, Pattern, Sequence, TypeVar

from k3s_admin.models import ArtifactKind, VMArtifact

T = TypeVar("T")

PROXMOX_NAME_MAX = 40
PROXMOX_NAME_MIN = 2
TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
SHORT_TIMESTAMP_FORMAT = "%y%m%d%H%M"
ETCD_PREFIX = "etcd-"

_INVALID_CHARS = re.compile(r"[^A-Za-z0-9_-]")
_ETCD_MARKER = re.compile(r"Etcd: (\S+)")
_LABEL_TIMESTAMP = re.compile(r"(\d{8}-\d{6})")
_VZDUMP_TIMESTAMP = re.compile(r"(\d{4}_\d{2}_\d{2}-\d{2}_\d{2}_\d{2})")


def sanitize_name(value: Optional[str]) -> str:
    """Strip characters Proxmox rejects and make sure the name starts with a letter."""
    cleaned = _INVALID_CHARS.sub("", value or "")
    if not cleaned or not cleaned[0].isalpha():
        cleaned = f"s{cleaned}"
    return cleaned


def format_label(label: str, cluster_name: str, now: datetime) -> str:
    """Build a Proxmox-compliant snapshot name from a user label.

    The name is ``<label>-<cluster>-<timestamp>``. When it exceeds 40 chars it
    is shortened in order: seconds-free short timestamp, cluster segment cut
    to 3 chars, then the user label truncated to fit.

    Args:
        label: User supplied label
        cluster_name: Cluster name from configuration
        now: Timestamp to embed

    Returns:
        Snapshot name between 2 and 40 characters
    """
    specific = sanitize_name(label)
    cluster = _INVALID_CHARS.sub("", cluster_name or "")
    timestamp = now.strftime(TIMESTAMP_FORMAT)
    name = f"{specific}-{cluster}-{timestamp}"

    if len(name) > PROXMOX_NAME_MAX:
        timestamp = now.strftime(SHORT_TIMESTAMP_FORMAT)
        name = f"{specific}-{cluster}-{timestamp}"

    if len(name) > PROXMOX_NAME_MAX:
        cluster = cluster[:3]
        name = f"{specific}-{cluster}-{timestamp}"

    if len(name) > PROXMOX_NAME_MAX:
        room = PROXMOX_NAME_MAX - len(cluster) - len(timestamp) - 2
        specific = specific[:room]
        name = f"{specific}-{cluster}-{timestamp}"

    if len(name) < PROXMOX_NAME_MIN:
        name = "sn"
    return name


def auto_label(prefix: str, now: datetime) -> str:
    """Label used when the operator gives none: ``<prefix>-<YYYYmmdd-HHMMSS>``."""
    timestamp = now.strftime(TIMESTAMP_FORMAT)
    room = PROXMOX_NAME_MAX - len(timestamp) - 1
    return f"{sanitize_name(prefix)[:room]}-{timestamp}"


def etcd_snapshot_name(label: str) -> str:
    return f"{ETCD_PREFIX}{label}"


def describe_artifact(
    kind: ArtifactKind, node: str, etcd_name: Optional[str], description: str = ""
) -> str:
    """Render the VM artifact description, embedding the etcd snapshot link.

    Example:
        ``K3s cluster snapshot - Node: k3s-1 - Etcd: etcd-k3s-backup-20250101-120000``
    """
    text = f"K3s cluster {kind.value} - Node: {node}"
    if etcd_name:
        text += f" - Etcd: {etcd_name}"
    if description:
        text += f" - {description}"
    return text


def parse_linked_snapshot(description: Optional[str]) -> Optional[str]:
    """Extract the linked etcd snapshot name from an artifact description.

    Returns:
        The snapshot name, or None when the description carries no marker
    """
    if not description:
        return None
    match = _ETCD_MARKER.search(description)
    return match.group(1) if match else None


def label_from_artifact(artifact: VMArtifact) -> str:
    """Point-in-time label of an artifact.

    Snapshots are named after their label. Backup archives are named by
    vzdump, so their label comes from the linked etcd snapshot.
    """
    if artifact.kind == ArtifactKind.SNAPSHOT:
        return artifact.name
    linked = artifact.linked_snapshot
    if linked and linked.startswith(ETCD_PREFIX):
        return linked[len(ETCD_PREFIX):]
    return linked or ""


def label_matches(candidate: str, query: str) -> bool:
    """True when candidate is the query label or a formatted name built from it."""
    if not candidate or not query:
        return False
    return candidate == query or candidate.startswith(f"{query}-")


def auto_label_pattern(prefix: str) -> Pattern[str]:
    return re.compile(rf"^{re.escape(sanitize_name(prefix))}-\d{{8}}-\d{{6}}$")


def etcd_label_pattern(prefix: str) -> Pattern[str]:
    # k3s appends -<node>-<unix time> to saved snapshot names
    return re.compile(rf"^{re.escape(ETCD_PREFIX + sanitize_name(prefix))}-\d{{8}}-\d{{6}}")


def embedded_timestamp(name: str) -> Optional[datetime]:
    """Parse the timestamp embedded in an artifact name, if any."""
    match = _VZDUMP_TIMESTAMP.search(name)
    if match:
        return datetime.strptime(match.group(1), "%Y_%m_%d-%H_%M_%S")
    match = _LABEL_TIMESTAMP.search(name)
    if match:
        try:
            return datetime.strptime(match.group(1), TIMESTAMP_FORMAT)
        except ValueError:
            return None
    return None


def artifact_sort_key(artifact: VMArtifact) -> datetime:
    return embedded_timestamp(artifact.name) or artifact.created or datetime.min


def name_sort_key(name: str) -> datetime:
    return embedded_timestamp(name) or datetime.min


def select_expired(items: Sequence[T], keep: int, key: Callable[[T], datetime]) -> List[T]:
    """Return the items a retention policy of ``keep`` would delete.

    Items are ordered newest first by ``key``; everything after the first
    ``keep`` entries is expired. ``keep <= 0`` disables cleanup.
    """
    if keep <= 0:
        return []
    ordered = sorted(items, key=key, reverse=True)
    return ordered[keep:]
