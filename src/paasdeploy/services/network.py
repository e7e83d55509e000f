"""Docker network provisioning."""

from typing import Any, Dict, List, Optional, Sequence

from paasdeploy.errors import DeadlineExceeded, DeployError, ProvisionError
from paasdeploy.errors_catalog import actionable_error
from paasdeploy.models import NetworkSpec


class NetworkProvisioner:
    """Makes sure every declared network exists before any unit starts."""

    def __init__(self, runtime, logger, console):
        self.runtime = runtime
        self.logger = logger
        self.console = console

    def ensure(self, networks: Sequence[NetworkSpec]) -> List[str]:
        """Creates missing networks and returns drift warnings for existing ones."""
        warnings: List[str] = []
        seen = set()

        for spec in networks:
            if spec.name in seen:
                continue
            seen.add(spec.name)

            existing = self.runtime.inspect_network(spec.name)
            if existing is not None:
                self.logger.info("Docker network '%s' already exists", spec.name)
                drift = self.describe_drift(spec, existing)
                if drift:
                    message = f"Docker network '{spec.name}' differs from its declaration: {drift}"
                    self.logger.warning(message)
                    warnings.append(message)
                continue

            self.logger.info("Creating docker network '%s' (driver=%s)", spec.name, spec.driver)
            self.console.print(f"[blue]Creating docker network {spec.name}...[/blue]")
            try:
                self.runtime.create_network(spec)
            except DeadlineExceeded:
                raise
            except DeployError as exc:
                raise ProvisionError(f"{actionable_error('network_create_failed', name=spec.name)}\n{exc}") from exc

        return warnings

    @staticmethod
    def describe_drift(spec: NetworkSpec, existing: Dict[str, Any]) -> Optional[str]:
        differences = []

        actual_driver = existing.get("Driver")
        if actual_driver and actual_driver != spec.driver:
            differences.append(f"driver is '{actual_driver}', declared '{spec.driver}'")

        actual_attachable = existing.get("Attachable")
        if actual_attachable is not None and bool(actual_attachable) != spec.attachable:
            differences.append(
                f"attachable is {str(bool(actual_attachable)).lower()}, "
                f"declared {str(spec.attachable).lower()}"
            )

        return "; ".join(differences) or None
