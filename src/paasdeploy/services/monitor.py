"""On-demand sampling of unit health, host resources and reachability."""

import socket
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

import psutil
import requests
from rich.table import Table

from paasdeploy.constants import DEFAULT_REACHABILITY_TARGETS
from paasdeploy.errors import DeployError
from paasdeploy.models import HealthState, MonitorRecord
from paasdeploy.services.health import HealthVerifier


class MonitorService:
    """Builds MonitorRecords; not part of the deployment critical path."""

    def __init__(
        self,
        runtime,
        logger,
        console,
        targets: Optional[Mapping[str, str]] = None,
        requests_module=requests,
        psutil_module=psutil,
        disk_path: str = "/",
        hostname: Callable[[], str] = socket.gethostname,
        probe_timeout: float = 2.0,
    ):
        self.runtime = runtime
        self.logger = logger
        self.console = console
        self.targets = dict(DEFAULT_REACHABILITY_TARGETS if targets is None else targets)
        self.requests = requests_module
        self.psutil = psutil_module
        self.disk_path = disk_path
        self.hostname = hostname
        self.probe_timeout = probe_timeout

    def container_health(self) -> Dict[str, Any]:
        try:
            statuses = self.runtime.list_unit_statuses()
        except DeployError as exc:
            self.logger.warning("Could not query unit status: %s", exc)
            return {"total": 0, "running": 0, "healthy": 0, "units": [], "error": str(exc)}

        units = []
        for status in statuses:
            classification = HealthVerifier.classify(status)
            units.append(
                {
                    "unit": status.unit,
                    "state": status.state,
                    "health": status.health,
                    "classification": classification.value if classification else "pending",
                }
            )

        healthy_states = {HealthState.HEALTHY.value, HealthState.NO_HEALTHCHECK.value}
        return {
            "total": len(statuses),
            "running": sum(1 for status in statuses if status.is_running),
            "healthy": sum(1 for unit in units if unit["classification"] in healthy_states),
            "units": units,
        }

    def resource_usage(self) -> Dict[str, Optional[float]]:
        usage: Dict[str, Optional[float]] = {
            "cpu_percent": None,
            "memory_percent": None,
            "disk_percent": None,
        }
        try:
            usage["cpu_percent"] = float(self.psutil.cpu_percent(interval=0.5))
            usage["memory_percent"] = float(self.psutil.virtual_memory().percent)
            usage["disk_percent"] = float(self.psutil.disk_usage(self.disk_path).percent)
        except (OSError, self.psutil.Error) as exc:
            self.logger.warning("Could not sample host resources: %s", exc)
        return usage

    def network_reachability(self) -> Dict[str, bool]:
        results: Dict[str, bool] = {}
        for name, url in self.targets.items():
            try:
                response = self.requests.get(url, timeout=self.probe_timeout, allow_redirects=True)
                results[name] = response.status_code < 400
                response.close()
            except self.requests.RequestException as exc:
                self.logger.debug("Reachability probe %s (%s) failed: %s", name, url, exc)
                results[name] = False
        return results

    def collect(self) -> MonitorRecord:
        return MonitorRecord(
            timestamp=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            hostname=self.hostname(),
            health=self.container_health(),
            resources=self.resource_usage(),
            network=self.network_reachability(),
        )

    def print_record(self, record: MonitorRecord):
        health = record.health
        self.console.rule(f"Deployment Health - {record.timestamp} ({record.hostname})")
        self.console.print(
            f"Containers: Total: {health['total']}  Running: {health['running']}  "
            f"Healthy: {health['healthy']}"
        )
        if health.get("error"):
            self.console.print(f"[red]{health['error']}[/red]")

        if health["units"]:
            table = Table(show_header=True, header_style="bold")
            table.add_column("Unit")
            table.add_column("State")
            table.add_column("Health")
            for unit in health["units"]:
                table.add_row(unit["unit"], unit["state"], unit["classification"])
            self.console.print(table)

        resources = record.resources
        self.console.print(
            "Resources: "
            + "  ".join(
                f"{label}: {self._percent(resources.get(key))}"
                for label, key in (("CPU", "cpu_percent"), ("Memory", "memory_percent"), ("Disk", "disk_percent"))
            )
        )
        self.console.print(
            "Network: " + "  ".join(f"{name}: {'ok' if ok else 'unreachable'}" for name, ok in record.network.items())
        )

    @staticmethod
    def _percent(value: Optional[float]) -> str:
        return "n/a" if value is None else f"{value:.1f}%"
