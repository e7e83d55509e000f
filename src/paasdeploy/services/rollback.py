"""Rollback to a previously captured deployment snapshot."""

import time
from typing import Callable, Optional

from paasdeploy.constants import DEFAULT_GRACEFUL_STOP_TIMEOUT, DEFAULT_ROLLBACK_SETTLE_SECONDS
from paasdeploy.errors import DeployError, RollbackError
from paasdeploy.errors_catalog import actionable_error
from paasdeploy.models import DeploymentSnapshot, RollbackResult


class RollbackManager:
    """Restores a snapshot: forensic copy, stop, replace configuration, restart, check.

    A failed post-rollback check is reported as `degraded` and never triggers
    another rollback.
    """

    def __init__(
        self,
        config_store,
        snapshot_service,
        runtime,
        logger,
        console,
        graceful_stop_timeout: int = DEFAULT_GRACEFUL_STOP_TIMEOUT,
        settle_seconds: float = DEFAULT_ROLLBACK_SETTLE_SECONDS,
        start_timeout: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config_store = config_store
        self.snapshot_service = snapshot_service
        self.runtime = runtime
        self.logger = logger
        self.console = console
        self.graceful_stop_timeout = graceful_stop_timeout
        self.settle_seconds = settle_seconds
        self.start_timeout = start_timeout
        self.sleep = sleep

    def snapshot(self, reason: str = "manual") -> str:
        with self.config_store.lock():
            return self.snapshot_service.create(reason=reason).snapshot_id

    def resolve_target(self, snapshot_id: Optional[str] = None, known_good: bool = False) -> DeploymentSnapshot:
        if snapshot_id:
            return self.snapshot_service.get(snapshot_id)

        target = self.snapshot_service.latest(known_good=known_good)
        if target is None:
            raise RollbackError(actionable_error("no_snapshots", path=self.snapshot_service.backups_dir))
        return target

    def rollback(
        self,
        snapshot_id: Optional[str] = None,
        known_good: bool = False,
        dry_run: bool = False,
    ) -> RollbackResult:
        with self.config_store.lock():
            target = self.resolve_target(snapshot_id, known_good=known_good)
            self.logger.info("Rollback target: %s (%s)", target.snapshot_id, target.path)
            result = RollbackResult(target_id=target.snapshot_id)

            if dry_run:
                self.console.print("[yellow]DRY RUN MODE - No changes will be made[/yellow]")
                self.logger.info("[DRY RUN] Would snapshot the current configuration")
                self.logger.info("[DRY RUN] Would stop services")
                self.logger.info("[DRY RUN] Would restore from: %s", target.path)
                self.logger.info("[DRY RUN] Would start services")
                result.status = "dry_run"
                return result

            has_configuration = self.config_store.has_configuration()
            if has_configuration:
                try:
                    forensic = self.snapshot_service.create(
                        reason=f"before rollback to {target.snapshot_id}",
                        forensic=True,
                    )
                except DeployError as exc:
                    raise RollbackError(f"Could not snapshot the current state: {exc}") from exc
                result.forensic_snapshot_id = forensic.snapshot_id

                self.console.print("[blue]Stopping current services...[/blue]")
                try:
                    result.stop_mode = self.runtime.stop_all(self.graceful_stop_timeout)
                except DeployError as exc:
                    raise RollbackError(f"Could not stop running units: {exc}", degraded=True) from exc
                self.logger.info("Services stopped (%s)", result.stop_mode)
            else:
                self.logger.warning("No current configuration found; nothing to stop")
                result.stop_mode = "skipped"

            try:
                self.snapshot_service.restore(target)
            except DeployError as exc:
                raise RollbackError(
                    f"Could not restore snapshot {target.snapshot_id}: {exc}",
                    degraded=has_configuration,
                ) from exc

            self.console.print("[blue]Starting services from restored configuration...[/blue]")
            try:
                self.runtime.up_all(timeout=self.start_timeout)
            except DeployError as exc:
                raise RollbackError(f"Could not start restored services: {exc}", degraded=True) from exc

            result.running_units = self._running_after_settle()
            if result.running_units:
                result.status = "restored"
                result.message = f"{len(result.running_units)} units running after rollback"
                self.logger.info("Rollback verification passed: %s", result.message)
            else:
                result.status = "degraded"
                result.message = "No units running after rollback"
                self.logger.error("Rollback verification failed: %s", result.message)

            return result

    def _running_after_settle(self):
        self.logger.info("Verifying rollback...")
        self.sleep(self.settle_seconds)
        try:
            return self.runtime.running_units()
        except DeployError as exc:
            self.logger.error("Could not list running units after rollback: %s", exc)
            return []
