"""Docker runtime services for paasdeploy."""

import json
import subprocess
from typing import Any, Dict, List, Optional, Sequence

from paasdeploy.errors import DeployError
from paasdeploy.models import GroupStartResult, NetworkSpec, UnitStatus


class DockerRuntimeService:
    """Wraps `docker` and `docker compose` for one deployment directory."""

    def __init__(
        self,
        logger,
        console,
        command_runner,
        project_dir: str,
        compose_file: str = "docker-compose.yml",
        subprocess_module=subprocess,
    ):
        self.logger = logger
        self.console = console
        self.command_runner = command_runner
        self.project_dir = project_dir
        self.compose_file = compose_file
        self.subprocess = subprocess_module
        self._compose_cmd: Optional[List[str]] = None

    def get_docker_compose_cmd(self) -> List[str]:
        try:
            self.subprocess.run(["docker", "compose", "version"], check=True, capture_output=True)
            return ["docker", "compose"]
        except (self.subprocess.CalledProcessError, FileNotFoundError):
            try:
                self.subprocess.run(["docker-compose", "--version"], check=True, capture_output=True)
                return ["docker-compose"]
            except (self.subprocess.CalledProcessError, FileNotFoundError):
                raise DeployError(
                    "Docker Compose is not available. Install Docker Compose v2 (`docker compose`) "
                    "or v1 (`docker-compose`) and try again."
                )

    @property
    def compose_cmd(self) -> List[str]:
        if self._compose_cmd is None:
            self._compose_cmd = self.get_docker_compose_cmd()
        return self._compose_cmd

    def _compose(self, *args: str) -> List[str]:
        return self.compose_cmd + ["-f", self.compose_file] + list(args)

    def _run(self, cmd: List[str], **kwargs) -> subprocess.CompletedProcess:
        kwargs.setdefault("cwd", self.project_dir)
        return self.command_runner.run(cmd, **kwargs)

    def validate_environment(self):
        self.console.print("[blue]Validating Docker environment...[/blue]")
        self._run(["docker", "--version"], capture_output=True, cwd=None)
        self._run(self.compose_cmd + ["version"], capture_output=True, cwd=None)
        self._run(["docker", "info", "--format", "{{.ServerVersion}}"], capture_output=True, cwd=None)
        self.console.print("[green]Docker is available.[/green]")

    def server_version(self) -> str:
        result = self._run(
            ["docker", "version", "--format", "{{.Server.Version}}"],
            capture_output=True,
            cwd=None,
        )
        return (result.stdout or "").strip()

    def validate_config(self):
        self._run(self._compose("config", "--quiet"), capture_output=True)

    def pull(self) -> bool:
        result = self._run(self._compose("pull"), check=False, capture_output=True)
        return result.returncode == 0

    def start_group(self, group: str, units: Sequence[str], timeout: Optional[float] = None) -> GroupStartResult:
        result = self._run(
            self._compose("up", "-d", *units),
            check=False,
            capture_output=True,
            timeout=timeout,
        )
        output = "\n".join(part.strip() for part in (result.stdout, result.stderr) if part)
        return GroupStartResult(
            group=group,
            units=tuple(units),
            returncode=result.returncode,
            output=output,
        )

    def unit_status(self, unit: str) -> Optional[UnitStatus]:
        result = self._run(
            self._compose("ps", "--all", "--format", "json", unit),
            capture_output=True,
        )
        for entry in self.parse_ps_output(result.stdout or ""):
            if entry.get("Service", unit) == unit:
                return self._to_status(entry, unit)
        return None

    def list_unit_statuses(self) -> List[UnitStatus]:
        result = self._run(self._compose("ps", "--all", "--format", "json"), capture_output=True)
        return [
            self._to_status(entry, entry.get("Service") or entry.get("Name") or "<unknown>")
            for entry in self.parse_ps_output(result.stdout or "")
        ]

    def running_units(self) -> List[str]:
        result = self._run(
            self._compose("ps", "--services", "--filter", "status=running"),
            capture_output=True,
        )
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]

    def stop_all(self, graceful_timeout: int) -> str:
        """Stops every unit, escalating to a forced kill when `down` does not finish."""
        try:
            self._run(
                self._compose("down", "--timeout", str(graceful_timeout)),
                capture_output=True,
                timeout=graceful_timeout + 30,
            )
            return "graceful"
        except DeployError as exc:
            self.logger.warning("Graceful shutdown failed, forcing stop: %s", exc)
            self.console.print("[yellow]Graceful shutdown failed, forcing stop...[/yellow]")

        self._run(self._compose("kill"), capture_output=True)
        self._run(self._compose("down", "--timeout", "0"), check=False, capture_output=True)
        return "forced"

    def up_all(self, timeout: Optional[float] = None):
        self._run(self._compose("up", "-d"), capture_output=True, timeout=timeout)

    def inspect_network(self, name: str) -> Optional[Dict[str, Any]]:
        result = self._run(
            ["docker", "network", "inspect", name, "--format", "{{json .}}"],
            check=False,
            capture_output=True,
            cwd=None,
        )
        if result.returncode != 0:
            return None
        try:
            data = json.loads((result.stdout or "").strip() or "{}")
        except json.JSONDecodeError:
            self.logger.warning("Could not parse `docker network inspect` output for %s", name)
            return {}
        return data if isinstance(data, dict) else {}

    def create_network(self, spec: NetworkSpec):
        cmd = ["docker", "network", "create", "--driver", spec.driver]
        if spec.attachable:
            cmd.append("--attachable")
        cmd.append(spec.name)
        self._run(cmd, capture_output=True, cwd=None)

    @staticmethod
    def parse_ps_output(stdout: str) -> List[Dict[str, Any]]:
        """Accepts both the JSON array and the one-object-per-line formats of `compose ps`."""
        text = stdout.strip()
        if not text:
            return []

        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            entries = []
            for line in text.splitlines():
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
            return [entry for entry in entries if isinstance(entry, dict)]

        if isinstance(data, dict):
            return [data]
        if isinstance(data, list):
            return [entry for entry in data if isinstance(entry, dict)]
        return []

    @staticmethod
    def _to_status(entry: Dict[str, Any], unit: str) -> UnitStatus:
        state = str(entry.get("State") or "unknown").lower()
        health = str(entry.get("Health") or "").lower() or None
        return UnitStatus(unit=unit, state=state, health=health)
