"""Effective configuration store shared by deployments and rollbacks."""

import fcntl
import hashlib
import json
import os
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

from dotenv import set_key

from paasdeploy.constants import (
    DEFAULT_COMPOSE_FILE,
    DEFAULT_CONFIG_DIRS,
    DEFAULT_ENV_FILE,
    DIR_MODE,
    SECRET_FILE_MODE,
)
from paasdeploy.errors import DeployError, LockHeldError
from paasdeploy.errors_catalog import actionable_error
from paasdeploy.models import DeploymentAttempt


class ConfigStore:
    """Owns the deployment directory: compose file, `.env`, config dirs and run state.

    Deployments and rollbacks both write here, so both take `lock()` for their
    whole duration.
    """

    STATE_DIR_NAME = "state"
    BACKUPS_DIR_NAME = "backups"
    LOCK_FILE_NAME = ".paasdeploy.lock"

    def __init__(
        self,
        deployment_dir: str,
        logger,
        filesystem_service,
        compose_file: str = DEFAULT_COMPOSE_FILE,
        env_file: str = DEFAULT_ENV_FILE,
        config_dirs: Sequence[str] = DEFAULT_CONFIG_DIRS,
        lock_timeout: float = 0.0,
    ):
        self.deployment_dir = os.path.abspath(deployment_dir)
        self.logger = logger
        self.filesystem_service = filesystem_service
        self.compose_file = compose_file
        self.env_file = env_file
        self.config_dirs = tuple(config_dirs)
        self.lock_timeout = lock_timeout

    @property
    def compose_path(self) -> str:
        return os.path.join(self.deployment_dir, self.compose_file)

    @property
    def env_path(self) -> str:
        return os.path.join(self.deployment_dir, self.env_file)

    @property
    def state_dir(self) -> str:
        return os.path.join(self.deployment_dir, self.STATE_DIR_NAME)

    @property
    def backups_dir(self) -> str:
        return os.path.join(self.deployment_dir, self.BACKUPS_DIR_NAME)

    @property
    def lock_path(self) -> str:
        return os.path.join(self.deployment_dir, self.LOCK_FILE_NAME)

    def managed_names(self) -> List[str]:
        return [self.compose_file, self.env_file] + list(self.config_dirs)

    def managed_paths(self) -> List[str]:
        """Relative paths of the managed entries that currently exist."""
        return [
            name
            for name in self.managed_names()
            if os.path.lexists(os.path.join(self.deployment_dir, name))
        ]

    def has_configuration(self) -> bool:
        return os.path.isfile(self.compose_path)

    def fingerprint(self) -> str:
        hasher = hashlib.sha256()
        for relative_path in self._iter_managed_files():
            hasher.update(relative_path.encode("utf-8"))
            hasher.update(b"\0")
            with open(os.path.join(self.deployment_dir, relative_path), "rb") as file_obj:
                for chunk in iter(lambda: file_obj.read(65536), b""):
                    hasher.update(chunk)
            hasher.update(b"\0")
        return hasher.hexdigest()

    def _iter_managed_files(self) -> Iterator[str]:
        for name in sorted(self.managed_paths()):
            full_path = os.path.join(self.deployment_dir, name)
            if os.path.isfile(full_path):
                yield name
                continue
            for current_root, dirs, files in os.walk(full_path):
                dirs.sort()
                for file_name in sorted(files):
                    yield os.path.relpath(os.path.join(current_root, file_name), self.deployment_dir)

    @contextmanager
    def lock(self):
        self.filesystem_service.ensure_dir(self.deployment_dir, DIR_MODE)
        handle = open(self.lock_path, "a+", encoding="utf-8")
        try:
            give_up_at = time.monotonic() + self.lock_timeout
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= give_up_at:
                        raise LockHeldError(actionable_error("lock_held", path=self.deployment_dir))
                    time.sleep(0.5)

            handle.seek(0)
            handle.truncate()
            handle.write(f"{os.getpid()}\n")
            handle.flush()
            self.logger.debug("Acquired configuration lock %s", self.lock_path)
            try:
                yield self
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
                self.logger.debug("Released configuration lock %s", self.lock_path)
        finally:
            handle.close()

    def write_environment(self, environment: Dict[str, str]):
        self.filesystem_service.ensure_dir(self.deployment_dir, DIR_MODE)
        fd, temp_path = tempfile.mkstemp(prefix=".paasdeploy-env-", dir=self.deployment_dir)
        os.close(fd)
        try:
            for key in sorted(environment):
                set_key(temp_path, key, environment[key], quote_mode="always")
            self.filesystem_service.set_permissions(temp_path, SECRET_FILE_MODE)
            os.replace(temp_path, self.env_path)
        except OSError as exc:
            raise DeployError(f"Could not write '{self.env_path}': {exc}") from exc
        finally:
            if os.path.exists(temp_path):
                os.remove(temp_path)
        self.logger.info("Wrote %s variables to %s", len(environment), self.env_path)

    def save_attempt(self, attempt: DeploymentAttempt):
        payload = attempt.to_dict()
        self._write_json(os.path.join(self.state_dir, "last-attempt.json"), payload)

    def load_last_attempt(self) -> Optional[Dict[str, Any]]:
        return self._read_json(os.path.join(self.state_dir, "last-attempt.json"))

    def _read_json(self, path: str) -> Optional[Dict[str, Any]]:
        if not os.path.exists(path):
            return None

        try:
            with open(path, "r", encoding="utf-8") as file_obj:
                data = json.load(file_obj)
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.warning("Could not read state file '%s': %s", path, exc)
            return None

        return data if isinstance(data, dict) else None

    def _write_json(self, path: str, payload: Dict[str, Any]):
        payload = dict(payload, updated_at=self._now())
        content = json.dumps(payload, indent=2, sort_keys=True) + "\n"
        self._atomic_write(path, content)

    def _atomic_write(self, path: str, content: str, mode: Optional[int] = None):
        directory = os.path.dirname(path) or "."
        self.filesystem_service.ensure_dir(directory, DIR_MODE)

        fd, temp_path = tempfile.mkstemp(prefix=".paasdeploy-", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                file_obj.write(content)
            if mode is not None:
                self.filesystem_service.set_permissions(temp_path, mode)
            os.replace(temp_path, path)
        except OSError as exc:
            raise DeployError(f"Could not write '{path}': {exc}") from exc
        finally:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
