#!/usr/bin/env python3
"""
Command-line interface for k3s cluster administration on Proxmox.

Safely shuts down, starts, snapshots, backs up, restores and replaces the
VMs backing a k3s cluster while keeping etcd quorum and the etcd link intact.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from k3s_admin.cluster_query import discover_vms
from k3s_admin.config import DEFAULT_CONFIG_PATH, ClusterConfig, write_sample_config
from k3s_admin.confirm import RichConfirmer, StaticConfirmer
from k3s_admin.errors import K3sAdminError
from k3s_admin.models import ArtifactKind, Node, OperationReport, ValidationLevel, ValidationReport
from k3s_admin.runtime import Runtime, connect_hypervisor

# Initialize CLI app and console
app = typer.Typer(
    name="k3s-admin",
    help="k3s cluster lifecycle, snapshot and backup management on Proxmox",
    add_completion=False
)
console = Console()

LOG_FORMAT = "%(asctime)s [%(levelname)8s] %(name)s: %(message)s"

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format=LOG_FORMAT
)
logger = logging.getLogger(__name__)


@dataclass
class CLIState:
    """Global options shared by every command."""

    config_path: Path = Path(DEFAULT_CONFIG_PATH)
    nodes: List[str] = field(default_factory=list)
    all_nodes: bool = False
    force: bool = False
    retention: Optional[int] = None
    validation_level: Optional[str] = None
    dry_run: bool = False
    interactive: bool = False
    debug: bool = False
    ignore_missing_snapshot: bool = False


def configure_logging(debug: bool, log_dir: Optional[str] = None) -> None:
    """Raise the root level for --debug and add a per-run log file when configured."""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    if log_dir:
        path = Path(log_dir).expanduser()
        path.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path / f"k3s-admin-{datetime.now().strftime('%Y%m%d-%H%M%S')}.log")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        logger.info(f"📝 Logging to {handler.baseFilename}")


def load_config(state: CLIState) -> ClusterConfig:
    try:
        config = ClusterConfig.load(str(state.config_path))
        config.validate(require_vm_mapping=False)
    except K3sAdminError as e:
        console.print(f"❌ {e}")
        raise typer.Exit(1)
    configure_logging(state.debug or config.debug, config.log_dir)
    return config


def get_runtime(state: CLIState) -> Runtime:
    """Get a Runtime with live SSH, kubectl and Proxmox adapters."""
    config = load_config(state)
    try:
        options = config.options(
            force=state.force,
            dry_run=state.dry_run,
            interactive=state.interactive,
            retention=state.retention,
            validation_level=state.validation_level,
            ignore_missing_snapshot=state.ignore_missing_snapshot,
        )
        confirmer = RichConfirmer(console) if state.interactive else StaticConfirmer(False)
        return Runtime.build(config, options, confirmer)
    except K3sAdminError as e:
        console.print(f"❌ Failed to initialize: {e}")
        raise typer.Exit(1)


def select_nodes(runtime: Runtime, state: CLIState, required: bool = False) -> List[Node]:
    """Nodes named with --node, or all nodes."""
    if state.nodes:
        try:
            return runtime.topology.select(state.nodes)
        except KeyError as e:
            console.print(f"❌ {e.args[0]}")
            raise typer.Exit(1)
    if required and not state.all_nodes:
        console.print("❌ Specify --node or --all-nodes")
        raise typer.Exit(1)
    return list(runtime.topology)


def print_report(report: OperationReport) -> None:
    table = Table(title=f"{report.operation.capitalize()} Results")
    table.add_column("Node", style="cyan")
    table.add_column("Status", style="bold")
    for name in report.processed:
        status = "⚠️ Still cordoned" if name in report.degraded else "✅ Done"
        table.add_row(name, status)
    for name in report.failed:
        table.add_row(name, "❌ Failed")
    for name in report.degraded:
        if name not in report.processed and name not in report.failed:
            table.add_row(name, "⚠️ Still cordoned")
    if table.row_count:
        console.print(table)

    if report.record is not None:
        console.print(f"🏷️  Label: [bold]{report.record.label}[/bold]")
        if report.record.distributed_snapshot_name:
            console.print(f"🗄️  etcd snapshot: {report.record.distributed_snapshot_name}")
    for issue in report.issues:
        console.print(f"  ⚠️  {issue}")

    if report.success:
        console.print(f"\n✅ {report.summary}")
    else:
        console.print(f"\n❌ {report.summary}")


def finish(report: OperationReport) -> None:
    print_report(report)
    if not report.success:
        raise typer.Exit(1)


def print_validation(report: ValidationReport) -> None:
    table = Table(title=f"Validation Results ({report.level.value})")
    table.add_column("Check", style="cyan")
    table.add_column("Status", style="bold")
    for check, passed in report.checks.items():
        table.add_row(check, "✅" if passed else "❌")
    console.print(table)
    for error in report.errors:
        console.print(f"  ❌ {error}")
    for warning in report.warnings:
        console.print(f"  ⚠️  {warning}")


def preflight(runtime: Runtime, scope: List[Node]) -> None:
    """SSH and kubectl must work before anything mutates the cluster."""
    report = runtime.validator.preflight(scope)
    if report.valid:
        return
    for error in report.errors:
        console.print(f"  ❌ {error}")
    if runtime.options.force:
        console.print("⚠️  Preflight failed, continuing (force)")
        return
    console.print("❌ Preflight checks failed")
    raise typer.Exit(1)


@app.callback()
def main(
    ctx: typer.Context,
    config: Path = typer.Option(
        DEFAULT_CONFIG_PATH,
        "--config", "-c",
        help="Cluster configuration file"
    ),
    node: Optional[List[str]] = typer.Option(
        None,
        "--node", "-n",
        help="Node to operate on (repeatable)"
    ),
    all_nodes: bool = typer.Option(False, "--all-nodes", "-a", help="Operate on every configured node"),
    force: bool = typer.Option(False, "--force", "-f", help="Continue past failures and escalate without asking"),
    retention: Optional[int] = typer.Option(
        None,
        "--retention", "-r",
        help="Number of snapshots/backups to keep (0 disables cleanup)"
    ),
    validate: Optional[str] = typer.Option(
        None,
        "--validate", "-v",
        help="Validation level: basic, extended or full"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", "-d", help="Show what would be done without doing it"),
    interactive: bool = typer.Option(False, "--interactive", "-i", help="Ask before risky fallbacks"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
) -> None:
    """k3s cluster administration."""
    if validate is not None and validate not in {level.value for level in ValidationLevel}:
        console.print(f"❌ Unknown validation level: {validate}")
        raise typer.Exit(1)
    if dry_run:
        console.print("🔍 DRY RUN MODE - No changes will be made")
    ctx.obj = CLIState(
        config_path=config,
        nodes=list(node or []),
        all_nodes=all_nodes,
        force=force,
        retention=retention,
        validation_level=validate,
        dry_run=dry_run,
        interactive=interactive,
        debug=debug,
    )


@app.command("shutdown")
def shutdown_nodes(ctx: typer.Context) -> None:
    """
    Safely shut down nodes.

    Workers go first. A control-plane node is only taken down while another
    control-plane node stays live.
    """
    state: CLIState = ctx.obj
    runtime = get_runtime(state)
    scope = select_nodes(runtime, state, required=True)
    report = OperationReport(operation="shutdown")

    try:
        preflight(runtime, scope)
        runtime.validator.gate(context="before shutdown", scope=scope)
    except K3sAdminError as e:
        finish(report.fail(str(e)))

    ordered = [n for n in scope if not n.is_control_plane] + [n for n in scope if n.is_control_plane]
    for target in ordered:
        try:
            runtime.lifecycle.shutdown(target)
            report.processed.append(target.name)
        except K3sAdminError as e:
            report.fail(f"Shutdown of {target.name} failed: {e}", target.name)
            if runtime.query.is_cordoned(target.name):
                report.degraded.append(target.name)
            break
    if report.success:
        report.message = f"{len(report.processed)} nodes shut down"
    finish(report)


@app.command("start")
def start_nodes(ctx: typer.Context) -> None:
    """Power on nodes, wait for k3s and uncordon them. Control-plane nodes start first."""
    state: CLIState = ctx.obj
    runtime = get_runtime(state)
    scope = select_nodes(runtime, state, required=True)
    report = OperationReport(operation="start")

    ordered = [n for n in scope if n.is_control_plane] + [n for n in scope if not n.is_control_plane]
    for target in ordered:
        try:
            runtime.lifecycle.power_on(target, uncordon=False)
            runtime.lifecycle.uncordon(target, wait_ready=True)
            report.processed.append(target.name)
        except K3sAdminError as e:
            logger.error(f"❌ Start of {target.name} failed: {e}")
            report.fail(f"Start of {target.name} failed: {e}", target.name)
            if not runtime.options.force:
                break
    if report.success:
        report.message = f"{len(report.processed)} nodes started"
    finish(report)


def _point_in_time(ctx: typer.Context, kind: ArtifactKind, label: Optional[str], description: str) -> None:
    state: CLIState = ctx.obj
    runtime = get_runtime(state)
    scope = select_nodes(runtime, state)
    try:
        preflight(runtime, scope)
        report = runtime.point_in_time().create(kind, label=label, description=description, scope=scope)
    except K3sAdminError as e:
        report = OperationReport(operation=kind.value).fail(str(e))
    finish(report)


@app.command("backup")
def backup_cluster(
    ctx: typer.Context,
    label: Optional[str] = typer.Option(None, "--label", "-l", help="Restore point label"),
    description: str = typer.Option("", "--description", "-m", help="Free text added to every backup"),
) -> None:
    """Back up every VM with vzdump, linked to a fresh etcd snapshot."""
    _point_in_time(ctx, ArtifactKind.BACKUP, label, description)


@app.command("snapshot")
def snapshot_cluster(
    ctx: typer.Context,
    label: Optional[str] = typer.Option(None, "--label", "-l", help="Restore point label"),
    description: str = typer.Option("", "--description", "-m", help="Free text added to every snapshot"),
) -> None:
    """Snapshot every VM, linked to a fresh etcd snapshot."""
    _point_in_time(ctx, ArtifactKind.SNAPSHOT, label, description)


@app.command("restore")
def restore_cluster(
    ctx: typer.Context,
    label: Optional[str] = typer.Argument(None, help="Restore point label; newest when omitted"),
    ignore_missing_snapshot: bool = typer.Option(
        False,
        "--ignore-missing-snapshot",
        help="Restore VMs even when the linked etcd snapshot is missing"
    ),
) -> None:
    """
    Restore the cluster from a backup or snapshot.

    The linked etcd snapshot is restored first, then every VM, workers first.
    """
    state: CLIState = ctx.obj
    state.ignore_missing_snapshot = ignore_missing_snapshot
    runtime = get_runtime(state)
    scope = select_nodes(runtime, state)
    try:
        report = runtime.restorer().restore(label, scope)
    except K3sAdminError as e:
        report = OperationReport(operation="restore").fail(str(e))
    finish(report)


@app.command("replace")
def replace_node(ctx: typer.Context) -> None:
    """Rebuild the VM of one node (--node) and rejoin it to the cluster."""
    state: CLIState = ctx.obj
    if len(state.nodes) != 1:
        console.print("❌ replace needs exactly one --node")
        raise typer.Exit(1)
    runtime = get_runtime(state)
    target = select_nodes(runtime, state)[0]
    finish(runtime.replacer().replace(target))


@app.command("validate")
def validate_cluster(ctx: typer.Context) -> None:
    """Run cluster health checks without changing anything."""
    state: CLIState = ctx.obj
    runtime = get_runtime(state)
    scope = select_nodes(runtime, state)
    report = runtime.validator.validate(scope=scope)
    print_validation(report)
    if report.valid:
        console.print("\n✅ Cluster is healthy")
    else:
        console.print("\n❌ Cluster validation failed")
        raise typer.Exit(1)


@app.command("discover")
def discover(ctx: typer.Context) -> None:
    """Find the Proxmox VM id and host of every configured node."""
    state: CLIState = ctx.obj
    config = load_config(state)
    try:
        hypervisor = connect_hypervisor(config)
        mapping = discover_vms(hypervisor, [n.name for n in config.nodes])
    except K3sAdminError as e:
        console.print(f"❌ Discovery failed: {e}")
        raise typer.Exit(1)

    table = Table(title="Discovered VMs")
    table.add_column("Node", style="cyan")
    table.add_column("VMID", style="green")
    table.add_column("Host", style="green")
    for entry in config.nodes:
        vmid, host = mapping.get(entry.name, (None, None))
        table.add_row(entry.name, str(vmid) if vmid is not None else "❌", host or "❌")
    console.print(table)
    if len(mapping) != len(config.nodes):
        raise typer.Exit(1)


@app.command("init-config")
def init_config(
    ctx: typer.Context,
    overwrite: bool = typer.Option(False, "--overwrite", help="Replace an existing file"),
) -> None:
    """Write a commented sample configuration to --config."""
    state: CLIState = ctx.obj
    try:
        path = write_sample_config(str(state.config_path), overwrite=overwrite)
    except K3sAdminError as e:
        console.print(f"❌ {e}")
        raise typer.Exit(1)
    console.print(f"✅ Sample configuration written to {path}")


if __name__ == "__main__":
    app()
