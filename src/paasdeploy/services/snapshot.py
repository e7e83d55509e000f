"""Deployment snapshot store."""

import os
import re
import shutil
import tempfile
from datetime import datetime, timezone
from typing import Callable, List, Optional

from paasdeploy.constants import DIR_MODE
from paasdeploy.errors import DeployError, RollbackError
from paasdeploy.errors_catalog import actionable_error
from paasdeploy.models import DeploymentSnapshot, Verdict

_SNAPSHOT_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SnapshotService:
    """Immutable tar.gz copies of the effective configuration.

    Archives live in `<deployment_dir>/backups/backup-<id>.tar.gz` and carry
    their metadata as an embedded `snapshot.json`. Snapshots taken by a
    rollback right before it discards the current state are forensic: they
    can be restored by id but are never picked as "most recent".
    """

    ARCHIVE_PREFIX = "backup-"
    ARCHIVE_SUFFIX = ".tar.gz"
    FORENSIC_PREFIX = "pre-rollback-"

    def __init__(
        self,
        config_store,
        archive_service,
        filesystem_service,
        logger,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config_store = config_store
        self.archive_service = archive_service
        self.filesystem_service = filesystem_service
        self.logger = logger
        self.clock = clock

    @property
    def backups_dir(self) -> str:
        return self.config_store.backups_dir

    def archive_path(self, snapshot_id: str) -> str:
        return os.path.join(self.backups_dir, f"{self.ARCHIVE_PREFIX}{snapshot_id}{self.ARCHIVE_SUFFIX}")

    def create(
        self,
        reason: str = "manual",
        forensic: bool = False,
        skip_if_unchanged: bool = False,
    ) -> DeploymentSnapshot:
        if not self.config_store.has_configuration():
            raise DeployError(
                f"No effective configuration to snapshot in {self.config_store.deployment_dir}."
            )

        fingerprint = self.config_store.fingerprint()
        if skip_if_unchanged:
            latest = self.latest()
            if latest is not None and latest.fingerprint == fingerprint:
                self.logger.info("Configuration unchanged since snapshot %s, reusing it", latest.snapshot_id)
                return latest

        now = self.clock()
        snapshot_id = now.strftime("%Y%m%d-%H%M%S-%f")
        if forensic:
            snapshot_id = f"{self.FORENSIC_PREFIX}{snapshot_id}"

        last_attempt = self.config_store.load_last_attempt() or {}
        snapshot = DeploymentSnapshot(
            snapshot_id=snapshot_id,
            created_at=now.isoformat(),
            path=self.archive_path(snapshot_id),
            reason=reason,
            fingerprint=fingerprint,
            source_attempt_id=last_attempt.get("attempt_id"),
            source_verdict=last_attempt.get("verdict"),
            forensic=forensic,
            files=tuple(self.config_store.managed_paths()),
        )

        self.filesystem_service.ensure_dir(self.backups_dir, DIR_MODE)
        self.archive_service.create_tar(
            self.config_store.deployment_dir,
            snapshot.files,
            snapshot.path,
            metadata=snapshot.to_metadata(),
        )
        self.logger.info("Snapshot created: %s (%s)", snapshot.snapshot_id, reason)
        return snapshot

    def list_snapshots(self) -> List[DeploymentSnapshot]:
        """All snapshots, oldest first."""
        if not os.path.isdir(self.backups_dir):
            return []

        snapshots = []
        for file_name in os.listdir(self.backups_dir):
            if not (file_name.startswith(self.ARCHIVE_PREFIX) and file_name.endswith(self.ARCHIVE_SUFFIX)):
                continue
            snapshot_id = file_name[len(self.ARCHIVE_PREFIX) : -len(self.ARCHIVE_SUFFIX)]
            try:
                snapshots.append(self._load(snapshot_id))
            except DeployError as exc:
                self.logger.warning("Ignoring unreadable snapshot %s: %s", file_name, exc)

        return sorted(snapshots, key=lambda item: (item.created_at, item.snapshot_id))

    def get(self, snapshot_id: str) -> DeploymentSnapshot:
        if not _SNAPSHOT_ID_PATTERN.match(snapshot_id or "") or not os.path.isfile(self.archive_path(snapshot_id)):
            raise RollbackError(actionable_error("snapshot_not_found", snapshot_id=snapshot_id))
        try:
            return self._load(snapshot_id)
        except DeployError as exc:
            raise RollbackError(str(exc)) from exc

    def latest(self, known_good: bool = False) -> Optional[DeploymentSnapshot]:
        candidates = [snapshot for snapshot in self.list_snapshots() if not snapshot.forensic]
        if known_good:
            candidates = [
                snapshot for snapshot in candidates if snapshot.source_verdict == Verdict.SUCCEEDED.value
            ]
        return candidates[-1] if candidates else None

    def restore(self, snapshot: DeploymentSnapshot):
        """Replaces the managed configuration with the snapshot's content."""
        deployment_dir = self.config_store.deployment_dir
        staging_dir = tempfile.mkdtemp(prefix=".restore-", dir=deployment_dir)
        try:
            self.archive_service.safe_extract_tar(snapshot.path, staging_dir)

            for name in self.config_store.managed_names():
                self.filesystem_service.remove_path(os.path.join(deployment_dir, name))

            for name in sorted(os.listdir(staging_dir)):
                shutil.move(os.path.join(staging_dir, name), os.path.join(deployment_dir, name))
        except OSError as exc:
            raise DeployError(f"Could not restore snapshot {snapshot.snapshot_id}: {exc}") from exc
        finally:
            shutil.rmtree(staging_dir, ignore_errors=True)

        self.logger.info("Restored configuration from snapshot %s", snapshot.snapshot_id)

    def prune(self, keep: int) -> List[str]:
        if keep < 1:
            raise DeployError("Retention must keep at least one snapshot.")

        snapshots = self.list_snapshots()
        removed = []
        for snapshot in snapshots[: max(0, len(snapshots) - keep)]:
            os.remove(snapshot.path)
            removed.append(snapshot.snapshot_id)
            self.logger.info("Pruned snapshot %s", snapshot.snapshot_id)
        return removed

    def _load(self, snapshot_id: str) -> DeploymentSnapshot:
        path = self.archive_path(snapshot_id)
        metadata = self.archive_service.read_json_member(path)
        created_at = metadata.get("created_at")
        if not created_at:
            created_at = datetime.fromtimestamp(os.path.getmtime(path), tz=timezone.utc).isoformat()

        return DeploymentSnapshot(
            snapshot_id=snapshot_id,
            created_at=created_at,
            path=path,
            reason=metadata.get("reason", "unknown"),
            fingerprint=metadata.get("fingerprint"),
            source_attempt_id=metadata.get("source_attempt_id"),
            source_verdict=metadata.get("source_verdict"),
            forensic=bool(metadata.get("forensic", snapshot_id.startswith(self.FORENSIC_PREFIX))),
            files=tuple(metadata.get("files") or ()),
        )
