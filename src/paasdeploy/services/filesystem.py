"""Filesystem helpers for paasdeploy."""

import logging
import os
import shutil
import sys

from rich.console import Console


class FileSystemService:
    """Encapsulates file and directory side effects."""

    def __init__(self, logger: logging.Logger, console: Console):
        self.logger = logger
        self.console = console

    def set_permissions(self, path: str, mode: int):
        if sys.platform == "win32":
            return

        try:
            os.chmod(path, mode)
        except OSError as exc:
            self.logger.warning("Could not set permissions on %s: %s", path, exc)

    def ensure_dir(self, path: str, mode: int):
        if os.path.isdir(path):
            return
        os.makedirs(path, exist_ok=True)
        self.set_permissions(path, mode)

    def remove_path(self, path: str):
        """Removes a file, link or directory tree; missing paths are ignored."""
        if os.path.islink(path) or os.path.isfile(path):
            os.remove(path)
            self.logger.debug("Removed file: %s", path)
        elif os.path.isdir(path):
            shutil.rmtree(path)
            self.logger.debug("Removed directory: %s", path)
