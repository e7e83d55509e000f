import logging
import re
import socket
import subprocess
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from rich.console import Console

from .constants import (
    DEFAULT_COMPOSE_FILE,
    DEFAULT_CONFIG_DIRS,
    DEFAULT_CRITICAL_CREDENTIALS,
    DEFAULT_DEPLOYMENT_DIR,
    DEFAULT_GRACEFUL_STOP_TIMEOUT,
    DEFAULT_HEALTH_INTERVAL,
    DEFAULT_HEALTH_TIMEOUT,
    DEFAULT_RENDER_COMMAND,
    DEFAULT_RUNTIME_CONFIG,
    DEFAULT_START_TIMEOUT,
)
from .errors import DeployError, GroupStartError
from .errors_catalog import actionable_error
from .models import (
    CredentialSet,
    Deadline,
    DeploymentAttempt,
    DeployState,
    HealthState,
    ResolvedGroups,
    RollbackResult,
    RuntimeTopology,
    TenantSelection,
    Verdict,
)
from .services.archive import ArchiveService
from .services.catalog import ServiceCatalogResolver
from .services.command_runner import CommandRunner
from .services.config_loader import RuntimeConfigLoader
from .services.config_store import ConfigStore
from .services.credentials import CredentialLoader
from .services.docker_runtime import DockerRuntimeService
from .services.filesystem import FileSystemService
from .services.health import HealthVerifier
from .services.network import NetworkProvisioner
from .services.renderer import TemplateRenderer
from .services.report import ReportService
from .services.rollback import RollbackManager
from .services.snapshot import SnapshotService
from .services.validation import ValidationService

console = Console()
logger = logging.getLogger("paasdeploy")

_ENV_NAME_INVALID = re.compile(r"[^A-Z0-9]+")

_GROUP_STATES = {
    "core": DeployState.STARTING_CORE,
    "landing": DeployState.STARTING_LANDING,
    "selected": DeployState.STARTING_SELECTED,
}

# Failing in these states leaves the deployment directory untouched.
_NO_SIDE_EFFECT_STATES = (DeployState.INIT, DeployState.VALIDATING)


def env_var_name(*parts: str) -> str:
    return _ENV_NAME_INVALID.sub("_", "_".join(parts).upper()).strip("_")


def build_environment(
    selection: TenantSelection,
    groups: ResolvedGroups,
    credentials: CredentialSet,
) -> Tuple[Dict[str, str], List[str]]:
    """Tenant variables overlaid by credentials; returns the env and the collision warnings."""
    tenant_vars: Dict[str, str] = {
        "TENANT_ID": selection.tenant_id,
        "TENANT_DOMAIN": selection.domain,
    }
    origins: Dict[str, str] = {"TENANT_ID": "tenant id", "TENANT_DOMAIN": "tenant domain"}
    warnings: List[str] = []
    for name in groups.all_units():
        entry = selection.services.get(name)
        if entry is None:
            continue
        for key, value in entry.config.items():
            variable = env_var_name(name, key)
            origin = f"{name}.{key}"
            if variable in tenant_vars:
                warnings.append(
                    f"Tenant variable '{variable}' from {origin} collides with {origins[variable]}; {origin} wins"
                )
            tenant_vars[variable] = value
            origins[variable] = origin

    warnings.extend(
        f"Credential '{key}' overrides the tenant variable of the same name"
        for key in sorted(set(tenant_vars) & set(credentials.values))
        if tenant_vars[key] != credentials.values[key]
    )

    environment = dict(tenant_vars)
    environment.update(credentials.values)
    return environment, warnings


class DeploymentOrchestrator:
    """Drives one deployment attempt through the sequencer states.

    States run strictly in order. A fatal error stops the attempt in the
    state it happened in; groups started before that are left running.
    Health shortfalls never raise, they only shape the verdict.
    """

    def __init__(
        self,
        selection: TenantSelection,
        deployment_dir: str = DEFAULT_DEPLOYMENT_DIR,
        runtime_config: Optional[str] = DEFAULT_RUNTIME_CONFIG,
        credential_files: Sequence[str] = (),
        critical_credentials: Sequence[str] = DEFAULT_CRITICAL_CREDENTIALS,
        render_command: Optional[Sequence[str]] = DEFAULT_RENDER_COMMAND,
        render_data_file: Optional[str] = None,
        compose_file: str = DEFAULT_COMPOSE_FILE,
        config_dirs: Sequence[str] = DEFAULT_CONFIG_DIRS,
        health_timeout: float = DEFAULT_HEALTH_TIMEOUT,
        health_interval: float = DEFAULT_HEALTH_INTERVAL,
        start_timeout: Optional[float] = DEFAULT_START_TIMEOUT,
        deploy_timeout: Optional[float] = None,
        graceful_stop_timeout: int = DEFAULT_GRACEFUL_STOP_TIMEOUT,
        lock_timeout: float = 0.0,
        pull_images: bool = True,
        auto_snapshot: bool = True,
        auto_rollback: bool = False,
        report_file: Optional[str] = None,
        runtime=None,
        rollback_runtime=None,
        renderer=None,
        validation_service=None,
        health_verifier=None,
    ):
        self.selection = selection
        self.runtime_config = runtime_config
        self.credential_files = list(credential_files)
        self.health_timeout = health_timeout
        self.start_timeout = start_timeout
        self.pull_images = pull_images
        self.auto_snapshot = auto_snapshot
        self.auto_rollback = auto_rollback
        self.render_command = list(render_command or [])

        self.deadline = Deadline(deploy_timeout)
        self.attempt = DeploymentAttempt(
            attempt_id=uuid.uuid4().hex[:12],
            tenant_id=selection.tenant_id,
            started_at=self._now(),
        )
        self.groups: Optional[ResolvedGroups] = None
        self.topology: Optional[RuntimeTopology] = None
        self.rollback_result: Optional[RollbackResult] = None

        self.filesystem_service = FileSystemService(logger=logger, console=console)
        self.config_store = ConfigStore(
            deployment_dir=deployment_dir,
            logger=logger,
            filesystem_service=self.filesystem_service,
            compose_file=compose_file,
            config_dirs=config_dirs,
            lock_timeout=lock_timeout,
        )
        self.command_runner = CommandRunner(
            logger=logger,
            cwd=self.config_store.deployment_dir,
            deadline=self.deadline,
        )
        self.runtime = runtime or self._build_runtime(self.command_runner)
        # The rollback runner is never bound by the attempt deadline.
        if rollback_runtime is None:
            rollback_runtime = runtime or self._build_runtime(
                CommandRunner(logger=logger, cwd=self.config_store.deployment_dir)
            )
        self.renderer = renderer or TemplateRenderer(
            config_store=self.config_store,
            command_runner=self.command_runner,
            logger=logger,
            console=console,
            render_command=self.render_command,
            data_file=render_data_file,
        )
        self.validation_service = validation_service or ValidationService(
            runtime=self.runtime,
            logger=logger,
            console=console,
        )
        self.health_verifier = health_verifier or HealthVerifier(
            runtime=self.runtime,
            logger=logger,
            poll_interval=health_interval,
        )
        self.runtime_config_loader = RuntimeConfigLoader(logger=logger)
        self.catalog_resolver = ServiceCatalogResolver(logger=logger)
        self.credential_loader = CredentialLoader(logger=logger, critical_keys=critical_credentials)
        self.network_provisioner = NetworkProvisioner(runtime=self.runtime, logger=logger, console=console)
        self.snapshot_service = SnapshotService(
            config_store=self.config_store,
            archive_service=ArchiveService(),
            filesystem_service=self.filesystem_service,
            logger=logger,
        )
        self.rollback_manager = RollbackManager(
            config_store=self.config_store,
            snapshot_service=self.snapshot_service,
            runtime=rollback_runtime,
            logger=logger,
            console=console,
            graceful_stop_timeout=graceful_stop_timeout,
            start_timeout=start_timeout,
        )
        self.report_service = ReportService(report_file=report_file, logger=logger)

    def _build_runtime(self, command_runner) -> DockerRuntimeService:
        return DockerRuntimeService(
            logger=logger,
            console=console,
            command_runner=command_runner,
            project_dir=self.config_store.deployment_dir,
            compose_file=self.config_store.compose_file,
            subprocess_module=subprocess,
        )

    def _build_report_metadata(self) -> Dict[str, Any]:
        return {
            "hostname": socket.gethostname(),
            "domain": self.selection.domain,
            "deployment_dir": self.config_store.deployment_dir,
            "runtime_config": self.runtime_config,
            "credential_files": list(self.credential_files),
            "render_command": list(self.render_command),
            "deploy_timeout": self.deadline.seconds,
            "auto_rollback": self.auto_rollback,
        }

    def _add_warnings(self, warnings: Sequence[str]):
        for warning in warnings:
            if warning not in self.attempt.warnings:
                self.attempt.warnings.append(warning)
        if warnings:
            self.report_service.add_warnings(warnings)

    def _enter_state(self, state: DeployState):
        self.attempt.state = state
        self.attempt.transitions.append({"state": state.value, "at": self._now()})
        logger.debug("Entering state %s", state.value)

    def _run_state(self, state: DeployState, callback, *args, **kwargs):
        self._enter_state(state)
        self.report_service.state_started(state.value)

        try:
            result = callback(*args, **kwargs)
        except BaseException as exc:
            self.report_service.state_finished(state.value, "failed", error=str(exc) or type(exc).__name__)
            raise

        self.report_service.state_finished(state.value, "success")
        return result

    def validate(self):
        tools = self.render_command[:1]
        self._add_warnings(self.validation_service.validate_prerequisites(tools))

        self.topology, topology_warnings = self.runtime_config_loader.load(self.runtime_config)
        self._add_warnings(topology_warnings)

    def render(self) -> ResolvedGroups:
        if self.auto_snapshot:
            self._capture_pre_attempt_snapshot()

        units = self.renderer.render(self.selection)
        self.topology = replace(self.topology, units=tuple(units))

        groups = self.catalog_resolver.resolve(self.selection, self.topology)
        self._add_warnings(groups.warnings)
        self.runtime.validate_config()

        self.groups = groups
        self.report_service.set_groups(groups)
        for name, group_units in groups.ordered():
            logger.info("%s services: %s", name.capitalize(), " ".join(group_units) or "<none>")
        return groups

    def _capture_pre_attempt_snapshot(self):
        if not self.config_store.has_configuration():
            logger.info("No existing configuration to snapshot; this looks like a first deployment")
            return
        try:
            snapshot = self.snapshot_service.create(
                reason=f"before attempt {self.attempt.attempt_id}",
                skip_if_unchanged=True,
            )
        except DeployError as exc:
            message = f"Could not snapshot the current configuration: {exc}"
            logger.warning(message)
            self._add_warnings([message])
            return
        self.attempt.snapshot_id = snapshot.snapshot_id

    def materialize_environment(self):
        credentials = self.credential_loader.load(self.credential_files)
        self._add_warnings(credentials.warnings)
        self.attempt.insecure_credentials = credentials.insecure_keys

        environment, override_warnings = build_environment(self.selection, self.groups, credentials)
        self._add_warnings(override_warnings)
        self.config_store.write_environment(environment)

        if not self.pull_images:
            logger.info("Image pull disabled")
            return
        if not self.runtime.pull():
            self._add_warnings(["Some images could not be pulled; using local images where available"])

    def provision_networks(self):
        self._add_warnings(self.network_provisioner.ensure(self.topology.networks))

    def start_group(self, group: str, units: Sequence[str]):
        console.print(f"[blue]Starting {group} services: {' '.join(units)}[/blue]")
        self.attempt.groups_attempted.append(group)
        result = self.runtime.start_group(group, units, timeout=self.deadline.bound(self.start_timeout))
        if not result.ok:
            if result.output:
                logger.error("Runtime output for %s group:\n%s", group, result.output.strip())
            raise GroupStartError(
                actionable_error("group_start_failed", group=group, units=", ".join(units)),
                group=group,
            )
        logger.info("%s group started", group.capitalize())

    def verify(self) -> Dict[str, HealthState]:
        units = self.groups.all_units()
        console.print(f"[blue]Verifying health of {len(units)} units...[/blue]")
        health = self.health_verifier.verify(units, self.health_timeout, deadline=self.deadline)
        self.attempt.per_unit_health = health
        return health

    def _execute(self):
        self._run_state(DeployState.VALIDATING, self.validate)
        self._run_state(DeployState.RENDERING, self.render)
        self._run_state(DeployState.ENV_MATERIALIZING, self.materialize_environment)
        self._run_state(DeployState.NETWORK_PROVISIONING, self.provision_networks)

        for group, units in self.groups.ordered():
            state = _GROUP_STATES[group]
            if not units:
                self._enter_state(state)
                self.report_service.state_started(state.value)
                self.report_service.state_finished(state.value, "skipped")
                logger.info("No %s services to start, skipping", group)
                continue
            self._run_state(state, self.start_group, group, units)

        health = self._run_state(DeployState.VERIFYING, self.verify)
        self.attempt.verdict = HealthVerifier.aggregate(health)
        for unit, state in health.items():
            if state in (HealthState.UNHEALTHY, HealthState.TIMED_OUT):
                self._add_warnings([f"Unit '{unit}' is {state.value.replace('_', ' ')}"])

    def _mark_failed(self, message: str):
        self.attempt.verdict = Verdict.FAILED
        if self.attempt.state not in (DeployState.SUCCEEDED, DeployState.PARTIAL_FAILURE, DeployState.FAILED):
            self.attempt.failed_state = self.attempt.state
        self.attempt.error = message

    def _finish(self, persist: bool = True):
        self.health_verifier.cancel()
        verdict = self.attempt.verdict or Verdict.FAILED
        self.attempt.verdict = verdict
        self._enter_state(verdict.terminal_state)
        self.attempt.finished_at = self._now()

        if persist:
            try:
                self.config_store.save_attempt(self.attempt)
            except DeployError as exc:
                logger.warning("Could not record the deployment attempt: %s", exc)
        self.report_service.finalize(self.attempt)

    def _run_locked(self):
        try:
            self._execute()
        except KeyboardInterrupt:
            console.print("[bold red]Operation cancelled by user.[/bold red]")
            logger.info("Operation cancelled by user")
            self._mark_failed("Operation cancelled by user.")
        except DeployError as exc:
            console.print(f"[bold red]Error in {self.attempt.state.value}:[/bold red] {exc}")
            logger.error("Deployment failed in %s: %s", self.attempt.state.value, exc)
            self._mark_failed(str(exc))
        except Exception as exc:
            console.print(f"[bold red]Unexpected error in {self.attempt.state.value}:[/bold red] {exc}")
            logger.exception("Unexpected error")
            self._mark_failed(str(exc))
        self._finish()

    def _should_auto_rollback(self) -> bool:
        if not self.auto_rollback or self.attempt.verdict != Verdict.FAILED:
            return False
        # Health verdicts are reported, never rolled back automatically.
        if self.attempt.failed_state is None or self.attempt.failed_state in _NO_SIDE_EFFECT_STATES:
            return False
        if not self.attempt.snapshot_id:
            logger.warning("Auto-rollback requested but no pre-attempt snapshot exists")
            return False
        return True

    def _auto_rollback(self):
        console.print(f"[yellow]Rolling back to snapshot {self.attempt.snapshot_id}...[/yellow]")
        try:
            self.rollback_result = self.rollback_manager.rollback(snapshot_id=self.attempt.snapshot_id)
        except DeployError as exc:
            console.print(f"[bold red]Automatic rollback failed:[/bold red] {exc}")
            logger.error("Automatic rollback failed: %s", exc)
            return
        logger.info("Automatic rollback finished: %s", self.rollback_result.status)

    def deploy(self) -> DeploymentAttempt:
        self.deadline.start()
        logger.info("Starting deployment for tenant %s (%s)", self.selection.tenant_id, self.selection.domain)
        self.report_service.start_run(
            attempt_id=self.attempt.attempt_id,
            tenant_id=self.selection.tenant_id,
            metadata=self._build_report_metadata(),
        )

        try:
            with self.config_store.lock():
                self._run_locked()
        except (DeployError, OSError) as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(str(exc))
            self._mark_failed(str(exc))
            self._finish(persist=False)

        if self._should_auto_rollback():
            self._auto_rollback()

        self.print_summary()
        return self.attempt

    def run(self) -> int:
        return self.deploy().verdict.exit_code

    def print_summary(self):
        attempt = self.attempt
        colour = {
            Verdict.SUCCEEDED: "green",
            Verdict.PARTIAL_FAILURE: "yellow",
            Verdict.FAILED: "red",
        }[attempt.verdict]
        console.print(f"[bold {colour}]Deployment {attempt.verdict.value}[/bold {colour}] (attempt {attempt.attempt_id})")
        if attempt.failed_state:
            console.print(f"Failed in state: {attempt.failed_state.value}")
        for unit, health in attempt.per_unit_health.items():
            console.print(f"  {unit}: {health.value}")
        for key in attempt.insecure_credentials:
            console.print(f"[yellow]Insecure credential: {key}[/yellow]")
        for warning in attempt.warnings:
            console.print(f"[yellow]Warning:[/yellow] {warning}")

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
