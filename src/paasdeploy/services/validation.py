"""Prerequisite checks run before any deployment side effect."""

import shutil
from typing import Callable, List, Optional, Sequence

from packaging import version

from paasdeploy.constants import MIN_DOCKER_VERSION
from paasdeploy.errors import DeployError


class ValidationService:
    """Checks that the render engine and the container runtime are usable."""

    def __init__(
        self,
        runtime,
        logger,
        console,
        which: Callable[[str], Optional[str]] = shutil.which,
        min_docker_version: str = MIN_DOCKER_VERSION,
    ):
        self.runtime = runtime
        self.logger = logger
        self.console = console
        self.which = which
        self.min_docker_version = min_docker_version

    def check_required_tools(self, tools: Sequence[str]):
        missing = [tool for tool in dict.fromkeys(tools) if tool and self.which(tool) is None]
        if missing:
            raise DeployError(
                f"Required tools are missing: {', '.join(missing)}. Install them before continuing."
            )

    def check_docker_version(self) -> Optional[str]:
        raw_version = self.runtime.server_version()
        try:
            current = version.parse(raw_version.split("+")[0].strip())
        except version.InvalidVersion:
            message = f"Could not parse Docker server version '{raw_version}'"
            self.logger.warning(message)
            return message

        if current < version.parse(self.min_docker_version):
            message = (
                f"Docker {raw_version} is older than the recommended {self.min_docker_version}"
            )
            self.logger.warning(message)
            return message

        self.logger.info("Docker server version: %s", raw_version)
        return None

    def validate_prerequisites(self, required_tools: Sequence[str]) -> List[str]:
        warnings: List[str] = []
        self.check_required_tools(["docker"] + list(required_tools))
        self.runtime.validate_environment()

        version_warning = self.check_docker_version()
        if version_warning:
            warnings.append(version_warning)
        return warnings
