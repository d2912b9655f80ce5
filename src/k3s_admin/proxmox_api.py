from datetime import datetime
from typing import Any, Dict, List, Optional
import logging
import re

from proxmoxer import ProxmoxAPI
from proxmoxer.core import ResourceException
import requests

from k3s_admin.errors import CommandFailedError, ConfigError, RemoteConnectionError, RemoteTimeoutError
from k3s_admin.interfaces import HypervisorAPI
from k3s_admin.models import ArtifactKind, BackupResult, VMArtifact
from k3s_admin.polling import SystemClock

logger = logging.getLogger(__name__)

_ARCHIVE_PATH = re.compile(r"creating vzdump archive '([^']+)'")
BACKUP_SUCCESS_MARKER = "Backup job finished successfully"


def parse_api_token(api_token: Optional[str], default_user: Optional[str] = None):
    """Split ``user!tokenname=secret`` into its three parts.

    A bare ``tokenname=secret`` is accepted when ``default_user`` is given.
    """
    if not api_token:
        raise ConfigError("API_TOKEN environment variable is not set")
    try:
        user_token, secret = api_token.split("=", 1)
        if "!" not in user_token and default_user:
            return default_user, user_token, secret
        user, token_name = user_token.split("!", 1)
    except ValueError:
        raise ConfigError("API_TOKEN must have the form user!tokenname=secret")
    return user, token_name, secret


class ProxmoxHypervisor(HypervisorAPI):
    """Proxmox VE operations for the VMs backing cluster nodes."""

    def __init__(self, proxmox: Any, clock=None, task_timeout: int = 600, backup_timeout: int = 7200) -> None:
        self.proxmox = proxmox
        self.clock = clock or SystemClock()
        self.task_timeout = task_timeout
        self.backup_timeout = backup_timeout

    @classmethod
    def connect(
        cls,
        host: str,
        api_token: Optional[str],
        verify_ssl: bool = False,
        user: Optional[str] = None,
        **kwargs: Any,
    ) -> "ProxmoxHypervisor":
        user, token_name, secret = parse_api_token(api_token, default_user=user)
        try:
            proxmox = ProxmoxAPI(host, user=user, token_name=token_name, token_value=secret, verify_ssl=verify_ssl)
        except (ResourceException, requests.exceptions.RequestException) as e:
            raise RemoteConnectionError(host, f"Proxmox API connection failed: {e}") from e
        return cls(proxmox, **kwargs)

    def _call(self, host: str, action: str, fn, *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except ResourceException as e:
            raise CommandFailedError(f"Failed to {action}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise RemoteConnectionError(host, f"Proxmox API unreachable while trying to {action}: {e}") from e

    def _wait_task(self, host: str, upid: Any, action: str, timeout: Optional[int] = None) -> Dict[str, Any]:
        """Poll a Proxmox task until it stops; raise unless it ended OK."""
        if not isinstance(upid, str) or not upid.startswith("UPID"):
            return {}
        deadline = self.clock.monotonic() + (timeout or self.task_timeout)
        while self.clock.monotonic() < deadline:
            status = self._call(host, action, self.proxmox.nodes(host).tasks(upid).status.get)
            if status.get("status") == "stopped":
                if status.get("exitstatus") != "OK":
                    raise CommandFailedError(f"Failed to {action}: task ended with {status.get('exitstatus')}")
                return status  # type: ignore[no-any-return]
            self.clock.sleep(2)
        raise RemoteTimeoutError(host, f"Timed out waiting to {action}")

    def _task_log(self, host: str, upid: str) -> str:
        lines = self._call(host, "read task log", self.proxmox.nodes(host).tasks(upid).log.get, limit=5000)
        return "\n".join(line.get("t", "") for line in lines)

    def vm_status(self, host: str, vmid: int) -> str:
        status = self._call(host, f"get status of VM {vmid}", self.proxmox.nodes(host).qemu(vmid).status.current.get)
        return status.get("status", "unknown")  # type: ignore[no-any-return]

    def start_vm(self, host: str, vmid: int) -> None:
        upid = self._call(host, f"start VM {vmid}", self.proxmox.nodes(host).qemu(vmid).status.start.post)
        self._wait_task(host, upid, f"start VM {vmid}")

    def shutdown_vm(self, host: str, vmid: int, timeout: int) -> None:
        vm = self.proxmox.nodes(host).qemu(vmid)
        upid = self._call(host, f"shut down VM {vmid}", vm.status.shutdown.post, timeout=timeout)
        self._wait_task(host, upid, f"shut down VM {vmid}", timeout=timeout + 30)

    def stop_vm(self, host: str, vmid: int) -> None:
        upid = self._call(host, f"stop VM {vmid}", self.proxmox.nodes(host).qemu(vmid).status.stop.post)
        self._wait_task(host, upid, f"stop VM {vmid}")

    def create_snapshot(self, host: str, vmid: int, name: str, description: str) -> None:
        vm = self.proxmox.nodes(host).qemu(vmid)
        upid = self._call(host, f"snapshot VM {vmid}", vm.snapshot.post, snapname=name, description=description)
        self._wait_task(host, upid, f"snapshot VM {vmid}")

    def list_snapshots(self, host: str, vmid: int) -> List[VMArtifact]:
        entries = self._call(host, f"list snapshots of VM {vmid}", self.proxmox.nodes(host).qemu(vmid).snapshot.get)
        snapshots = []
        for entry in entries:
            if entry.get("name") == "current":
                continue
            created = datetime.fromtimestamp(entry["snaptime"]) if entry.get("snaptime") else None
            snapshots.append(
                VMArtifact(
                    kind=ArtifactKind.SNAPSHOT,
                    vmid=vmid,
                    hypervisor_host=host,
                    name=entry["name"],
                    description=entry.get("description", "") or "",
                    created=created,
                )
            )
        return snapshots

    def delete_snapshot(self, host: str, vmid: int, name: str) -> None:
        snapshot = self.proxmox.nodes(host).qemu(vmid).snapshot(name)
        upid = self._call(host, f"delete snapshot {name} of VM {vmid}", snapshot.delete)
        self._wait_task(host, upid, f"delete snapshot {name} of VM {vmid}")

    def rollback_snapshot(self, host: str, vmid: int, name: str) -> None:
        snapshot = self.proxmox.nodes(host).qemu(vmid).snapshot(name)
        upid = self._call(host, f"roll back VM {vmid} to {name}", snapshot.rollback.post)
        self._wait_task(host, upid, f"roll back VM {vmid} to {name}")

    def create_backup(
        self, host: str, vmid: int, storage: str, notes: str, compress: str = "zstd", mode: str = "stop"
    ) -> BackupResult:
        logger.info(f"💾 Backing up VM {vmid} on {host} to {storage}")
        upid = self._call(
            host,
            f"back up VM {vmid}",
            self.proxmox.nodes(host).vzdump.post,
            vmid=vmid,
            storage=storage,
            compress=compress,
            mode=mode,
            **{"notes-template": notes},
        )
        try:
            self._wait_task(host, upid, f"back up VM {vmid}", timeout=self.backup_timeout)
            success = True
        except CommandFailedError as e:
            logger.error(f"❌ {e}")
            success = False

        log = self._task_log(host, upid) if isinstance(upid, str) else ""
        success = success and (not log or BACKUP_SUCCESS_MARKER in log)
        match = _ARCHIVE_PATH.search(log)
        return BackupResult(success=success, log=log, volid=match.group(1) if match else None)

    def list_backups(self, host: str, vmid: int, storage: str) -> List[VMArtifact]:
        content = self.proxmox.nodes(host).storage(storage).content
        entries = self._call(host, f"list backups of VM {vmid}", content.get, content="backup", vmid=vmid)
        return [
            VMArtifact(
                kind=ArtifactKind.BACKUP,
                vmid=vmid,
                hypervisor_host=host,
                name=entry["volid"],
                description=entry.get("notes", "") or "",
                created=datetime.fromtimestamp(entry["ctime"]) if entry.get("ctime") else None,
            )
            for entry in entries
            if str(entry.get("vmid", vmid)) == str(vmid)
        ]

    def delete_backup(self, host: str, storage: str, volid: str) -> None:
        volume = self.proxmox.nodes(host).storage(storage).content(volid)
        upid = self._call(host, f"delete backup {volid}", volume.delete)
        self._wait_task(host, upid, f"delete backup {volid}")

    def restore_backup(self, host: str, vmid: int, volid: str) -> None:
        upid = self._call(
            host, f"restore VM {vmid} from {volid}", self.proxmox.nodes(host).qemu.post, vmid=vmid, archive=volid, force=1
        )
        self._wait_task(host, upid, f"restore VM {vmid} from {volid}", timeout=self.backup_timeout)

    def list_storages(self, host: str) -> List[Dict[str, Any]]:
        return self._call(host, f"list storages on {host}", self.proxmox.nodes(host).storage.get)  # type: ignore[no-any-return]

    def cluster_vms(self) -> List[Dict[str, Any]]:
        return self._call("cluster", "list cluster VMs", self.proxmox.cluster.resources.get, type="vm")  # type: ignore[no-any-return]

    def host_online(self, host: str) -> bool:
        try:
            nodes = self.proxmox.nodes.get()
        except (ResourceException, requests.exceptions.RequestException) as e:
            logger.warning(f"⚠️ Could not query Proxmox nodes: {e}")
            return False
        return any(n.get("node") == host and n.get("status") == "online" for n in nodes)

    def destroy_vm(self, host: str, vmid: int) -> None:
        upid = self._call(host, f"destroy VM {vmid}", self.proxmox.nodes(host).qemu(vmid).delete, purge=1)
        self._wait_task(host, upid, f"destroy VM {vmid}")

    def clone_vm(self, host: str, template_id: int, vmid: int, name: str) -> None:
        template = self.proxmox.nodes(host).qemu(template_id)
        upid = self._call(host, f"clone template {template_id}", template.clone.post, newid=vmid, name=name, full=1)
        self._wait_task(host, upid, f"clone template {template_id} to VM {vmid}", timeout=self.backup_timeout)

    def set_ip_config(self, host: str, vmid: int, ipconfig: str) -> None:
        config = self.proxmox.nodes(host).qemu(vmid).config
        upid = self._call(host, f"configure VM {vmid}", config.post, ipconfig0=ipconfig)
        self._wait_task(host, upid, f"configure VM {vmid}")
