import json
import logging
import os
import shlex
import subprocess
import time

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .constants import (
    DEFAULT_COMPOSE_FILE,
    DEFAULT_CRITICAL_CREDENTIALS,
    DEFAULT_DEPLOYMENT_DIR,
    DEFAULT_GRACEFUL_STOP_TIMEOUT,
    DEFAULT_HEALTH_INTERVAL,
    DEFAULT_HEALTH_TIMEOUT,
    DEFAULT_RENDER_COMMAND,
    DEFAULT_RUNTIME_CONFIG,
    DEFAULT_START_TIMEOUT,
    EXIT_FAILED,
    EXIT_ROLLBACK_DEGRADED,
    EXIT_SUCCEEDED,
)
from .core import DeploymentOrchestrator
from .errors import DeployError, RollbackError
from .services.archive import ArchiveService
from .services.command_runner import CommandRunner
from .services.config_loader import ConfigLoader
from .services.config_store import ConfigStore
from .services.docker_runtime import DockerRuntimeService
from .services.filesystem import FileSystemService
from .services.monitor import MonitorService
from .services.rollback import RollbackManager
from .services.selection import SelectionLoader
from .services.snapshot import SnapshotService

CONFIG_FILE_NAME = ".paasdeploy.yml"

console = Console()


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


def _optional_float(value):
    return None if value is None else float(value)


def _as_list(value):
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value]


def _command(value):
    if value is None:
        return []
    if isinstance(value, str):
        return shlex.split(value)
    return [str(item) for item in value]


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


def _configure_logging(verbose: bool, log_file):
    logger = logging.getLogger("paasdeploy")
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)
    return logger


def build_config_store(settings) -> ConfigStore:
    logger = logging.getLogger("paasdeploy")
    return ConfigStore(
        deployment_dir=settings["deployment_dir"],
        logger=logger,
        filesystem_service=FileSystemService(logger=logger, console=console),
        compose_file=settings["compose_file"],
        lock_timeout=settings["lock_timeout"],
    )


def build_runtime(settings, config_store: ConfigStore) -> DockerRuntimeService:
    logger = logging.getLogger("paasdeploy")
    return DockerRuntimeService(
        logger=logger,
        console=console,
        command_runner=CommandRunner(logger=logger, cwd=config_store.deployment_dir),
        project_dir=config_store.deployment_dir,
        compose_file=settings["compose_file"],
        subprocess_module=subprocess,
    )


def build_snapshot_service(config_store: ConfigStore) -> SnapshotService:
    return SnapshotService(
        config_store=config_store,
        archive_service=ArchiveService(),
        filesystem_service=config_store.filesystem_service,
        logger=logging.getLogger("paasdeploy"),
    )


def build_rollback_manager(settings) -> RollbackManager:
    config_store = build_config_store(settings)
    return RollbackManager(
        config_store=config_store,
        snapshot_service=build_snapshot_service(config_store),
        runtime=build_runtime(settings, config_store),
        logger=logging.getLogger("paasdeploy"),
        console=console,
        graceful_stop_timeout=settings["graceful_stop_timeout"],
        start_timeout=settings["start_timeout"],
    )


def build_monitor(settings) -> MonitorService:
    config_store = build_config_store(settings)
    return MonitorService(
        runtime=build_runtime(settings, config_store),
        logger=logging.getLogger("paasdeploy"),
        console=console,
        targets=settings["reachability_targets"],
    )


@click.group()
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help=f"Path to a YAML configuration file. Defaults to {CONFIG_FILE_NAME} if present.",
)
@click.option("--deployment-dir", required=False, type=click.Path(), help="Deployment directory on this host.")
@click.option("--compose-file", required=False, help="Compose file name inside the deployment directory.")
@click.option(
    "--lock-timeout",
    required=False,
    type=float,
    default=None,
    help="Seconds to wait for another deployment or rollback to release the lock.",
)
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
@click.pass_context
def main(ctx, config, deployment_dir, compose_file, lock_timeout, verbose, log_file):
    """Deploy, verify and roll back tenant service stacks."""
    try:
        resolved_config = config
        if resolved_config is None:
            default_config_path = os.path.join(os.getcwd(), CONFIG_FILE_NAME)
            if os.path.exists(default_config_path):
                resolved_config = default_config_path

        config_values = ConfigLoader().load(resolved_config)
    except DeployError as exc:
        raise click.ClickException(str(exc)) from exc

    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    log_file = _resolve_option(log_file, config_values, "log_file")
    _configure_logging(verbose, log_file)

    ctx.obj = {
        "config": config_values,
        "deployment_dir": os.path.expanduser(
            str(_resolve_option(deployment_dir, config_values, "deployment_dir", default=DEFAULT_DEPLOYMENT_DIR))
        ),
        "compose_file": _resolve_option(compose_file, config_values, "compose_file", default=DEFAULT_COMPOSE_FILE),
        "lock_timeout": float(_resolve_option(lock_timeout, config_values, "lock_timeout", default=0.0)),
        "graceful_stop_timeout": int(
            config_values.get("graceful_stop_timeout", DEFAULT_GRACEFUL_STOP_TIMEOUT)
        ),
        "start_timeout": _optional_float(config_values.get("start_timeout", DEFAULT_START_TIMEOUT)),
        "reachability_targets": config_values.get("reachability_targets"),
        "verbose": verbose,
    }


@main.command()
@click.option("--selection", required=False, type=click.Path(), help="Tenant selection YAML document.")
@click.option("--tenant", required=False, help="Tenant identifier (overrides the selection document).")
@click.option("--domain", required=False, help="Tenant domain (overrides the selection document).")
@click.option("--runtime-config", required=False, type=click.Path(), help="Runtime topology YAML file.")
@click.option(
    "--credential-file",
    "credential_files",
    multiple=True,
    type=click.Path(),
    help="KEY=value credential source; repeatable, later files win.",
)
@click.option("--render-command", required=False, help="Template render command (default: chezmoi apply).")
@click.option("--render-data-file", required=False, type=click.Path(), help="Renderer YAML data file to update.")
@click.option("--health-timeout", type=float, default=None, help="Per-unit health budget in seconds.")
@click.option("--health-interval", type=float, default=None, help="Health poll interval in seconds.")
@click.option("--start-timeout", type=float, default=None, help="Timeout for each group start in seconds.")
@click.option("--deploy-timeout", type=float, default=None, help="Overall attempt budget in seconds.")
@click.option("--pull/--no-pull", "pull_images", default=None, help="Pull images before starting units.")
@click.option("--auto-snapshot/--no-auto-snapshot", default=None, help="Snapshot the current configuration first.")
@click.option(
    "--auto-rollback",
    is_flag=True,
    default=None,
    help="Restore the pre-attempt snapshot when the attempt aborts with a fatal error.",
)
@click.option("--report-file", required=False, type=click.Path(), help="Path for the JSON deployment report.")
@click.pass_obj
def deploy(
    settings,
    selection,
    tenant,
    domain,
    runtime_config,
    credential_files,
    render_command,
    render_data_file,
    health_timeout,
    health_interval,
    start_timeout,
    deploy_timeout,
    pull_images,
    auto_snapshot,
    auto_rollback,
    report_file,
):
    """Run one deployment attempt for a tenant."""
    config_values = settings["config"]

    selection = _resolve_option(selection, config_values, "selection")
    tenant = _resolve_option(tenant, config_values, "tenant")
    domain = _resolve_option(domain, config_values, "domain")
    runtime_config = _resolve_option(runtime_config, config_values, "runtime_config", default=DEFAULT_RUNTIME_CONFIG)
    credential_files = _as_list(
        _resolve_option(credential_files or None, config_values, "credential_files", default=[])
    )
    critical_credentials = _as_list(
        config_values.get("critical_credentials", list(DEFAULT_CRITICAL_CREDENTIALS))
    )
    render_command = _command(
        _resolve_option(render_command, config_values, "render_command", default=list(DEFAULT_RENDER_COMMAND))
    )
    render_data_file = _resolve_option(render_data_file, config_values, "render_data_file")
    health_timeout = float(
        _resolve_option(health_timeout, config_values, "health_timeout", default=DEFAULT_HEALTH_TIMEOUT)
    )
    health_interval = float(
        _resolve_option(health_interval, config_values, "health_interval", default=DEFAULT_HEALTH_INTERVAL)
    )
    start_timeout = _optional_float(_resolve_option(start_timeout, config_values, "start_timeout", default=DEFAULT_START_TIMEOUT))
    deploy_timeout = _optional_float(_resolve_option(deploy_timeout, config_values, "deploy_timeout"))
    pull_images = bool(_resolve_option(pull_images, config_values, "pull_images", default=True))
    auto_snapshot = bool(_resolve_option(auto_snapshot, config_values, "auto_snapshot", default=True))
    auto_rollback = bool(_resolve_option(auto_rollback, config_values, "auto_rollback", default=False))
    report_file = _resolve_option(report_file, config_values, "report_file")

    if not selection:
        raise click.ClickException("Missing required option '--selection' (or provide it in config).")

    try:
        tenant_selection = SelectionLoader().load(selection, tenant_id=tenant, domain=domain)
        orchestrator = DeploymentOrchestrator(
            selection=tenant_selection,
            deployment_dir=settings["deployment_dir"],
            runtime_config=runtime_config,
            credential_files=credential_files,
            critical_credentials=critical_credentials,
            render_command=render_command,
            render_data_file=render_data_file,
            compose_file=settings["compose_file"],
            health_timeout=health_timeout,
            health_interval=health_interval,
            start_timeout=start_timeout,
            deploy_timeout=deploy_timeout,
            graceful_stop_timeout=settings["graceful_stop_timeout"],
            lock_timeout=settings["lock_timeout"],
            pull_images=pull_images,
            auto_snapshot=auto_snapshot,
            auto_rollback=auto_rollback,
            report_file=report_file,
        )
    except DeployError as exc:
        raise click.ClickException(str(exc)) from exc

    raise SystemExit(orchestrator.run())


@main.command()
@click.option("--snapshot", "snapshot_id", required=False, help="Snapshot id to restore (default: most recent).")
@click.option("--last-good", is_flag=True, default=False, help="Restore the most recent known-good snapshot.")
@click.option("--dry-run", is_flag=True, default=False, help="Show what would happen without changing anything.")
@click.pass_obj
def rollback(settings, snapshot_id, last_good, dry_run):
    """Restore a previous deployment snapshot."""
    if snapshot_id and last_good:
        raise click.ClickException("Use either '--snapshot' or '--last-good', not both.")

    manager = build_rollback_manager(settings)
    try:
        result = manager.rollback(snapshot_id=snapshot_id, known_good=last_good, dry_run=dry_run)
    except RollbackError as exc:
        console.print(f"[bold red]Rollback failed:[/bold red] {exc}")
        if exc.degraded:
            console.print("[bold red]Deployment state is unknown; inspect the host manually.[/bold red]")
            raise SystemExit(EXIT_ROLLBACK_DEGRADED)
        raise SystemExit(EXIT_FAILED)
    except DeployError as exc:
        console.print(f"[bold red]Rollback failed:[/bold red] {exc}")
        raise SystemExit(EXIT_FAILED)

    if result.status == "dry_run":
        console.print(f"[yellow]Dry run complete; would restore {result.target_id}[/yellow]")
        raise SystemExit(EXIT_SUCCEEDED)

    if result.forensic_snapshot_id:
        console.print(f"Previous state saved as snapshot {result.forensic_snapshot_id}")
    if result.status == "degraded":
        console.print(f"[bold red]Rollback to {result.target_id} is degraded:[/bold red] {result.message}")
        raise SystemExit(EXIT_ROLLBACK_DEGRADED)

    console.print(f"[green]Rolled back to {result.target_id}:[/green] {result.message}")
    raise SystemExit(EXIT_SUCCEEDED)


@main.command()
@click.option("--reason", default="manual", show_default=True, help="Reason stored with the snapshot.")
@click.pass_obj
def snapshot(settings, reason):
    """Snapshot the current effective configuration."""
    manager = build_rollback_manager(settings)
    try:
        snapshot_id = manager.snapshot(reason=reason)
    except DeployError as exc:
        raise click.ClickException(str(exc)) from exc
    console.print(f"[green]Snapshot created:[/green] {snapshot_id}")


@main.command(name="snapshots")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the list as JSON.")
@click.pass_obj
def list_snapshots(settings, as_json):
    """List available snapshots, oldest first."""
    snapshot_service = build_snapshot_service(build_config_store(settings))
    try:
        snapshots = snapshot_service.list_snapshots()
    except DeployError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        click.echo(json.dumps([dict(item.to_metadata(), path=item.path) for item in snapshots], indent=2))
        return
    if not snapshots:
        console.print(f"No snapshots in {snapshot_service.backups_dir}")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Snapshot")
    table.add_column("Created")
    table.add_column("Reason")
    table.add_column("Source verdict")
    for item in snapshots:
        table.add_row(
            item.snapshot_id + (" (forensic)" if item.forensic else ""),
            item.created_at,
            item.reason,
            item.source_verdict or "-",
        )
    console.print(table)


@main.command()
@click.option("--keep", type=int, required=True, help="Number of most recent snapshots to keep.")
@click.pass_obj
def prune(settings, keep):
    """Delete old snapshots, keeping the most recent ones."""
    config_store = build_config_store(settings)
    snapshot_service = build_snapshot_service(config_store)
    try:
        with config_store.lock():
            removed = snapshot_service.prune(keep)
    except (DeployError, OSError) as exc:
        raise click.ClickException(str(exc)) from exc
    console.print(f"Removed {len(removed)} snapshot(s)")


@main.command()
@click.option("--json", "as_json", is_flag=True, default=False, help="Print records as JSON.")
@click.option("--watch", type=float, default=None, help="Repeat every N seconds until interrupted.")
@click.pass_obj
def monitor(settings, as_json, watch):
    """Show unit health, host resources and network reachability."""
    monitor_service = build_monitor(settings)
    try:
        while True:
            record = monitor_service.collect()
            if as_json:
                click.echo(json.dumps(record.to_dict(), indent=2))
            else:
                monitor_service.print_record(record)
            if not watch:
                break
            time.sleep(watch)
    except KeyboardInterrupt:
        console.print("Monitoring stopped.")


if __name__ == "__main__":
    main()
