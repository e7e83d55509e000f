"""Template renderer invocation and rendered topology inspection."""

from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

import yaml

from paasdeploy.constants import DEFAULT_RENDER_COMMAND
from paasdeploy.errors import ConfigurationError, DeadlineExceeded, DeployError
from paasdeploy.errors_catalog import actionable_error
from paasdeploy.models import TenantSelection


class TemplateRenderer:
    """Feeds the tenant selection to the external renderer and reads back its units.

    The renderer (chezmoi by default) reads a YAML data file; the tenant's
    services are merged into it before the render command runs. The unit list
    is taken from the `services` keys of the rendered compose file.
    """

    def __init__(
        self,
        config_store,
        command_runner,
        logger,
        console,
        render_command: Optional[Sequence[str]] = DEFAULT_RENDER_COMMAND,
        data_file: Optional[str] = None,
        render_timeout: Optional[float] = None,
    ):
        self.config_store = config_store
        self.command_runner = command_runner
        self.logger = logger
        self.console = console
        self.render_command = list(render_command or [])
        self.data_file = data_file
        self.render_timeout = render_timeout

    def render(self, selection: TenantSelection) -> Tuple[str, ...]:
        if self.data_file:
            self.write_data_file(selection)

        if self.render_command:
            self.console.print("[blue]Rendering tenant configuration...[/blue]")
            try:
                self.command_runner.run(
                    self.render_command,
                    capture_output=True,
                    timeout=self.render_timeout,
                )
            except DeadlineExceeded:
                raise
            except DeployError as exc:
                raise ConfigurationError(actionable_error("render_failed", reason=str(exc))) from exc
        else:
            self.logger.info("No render command configured; using the compose file as-is")

        units = self.rendered_units()
        self.logger.info("Rendered topology defines %s units", len(units))
        return units

    def write_data_file(self, selection: TenantSelection):
        path = Path(self.data_file)
        data: Dict[str, Any] = {}
        if path.exists():
            try:
                loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
            except (yaml.YAMLError, OSError) as exc:
                raise ConfigurationError(
                    actionable_error("render_failed", reason=f"cannot read data file {path}: {exc}")
                ) from exc
            if isinstance(loaded, dict):
                data = loaded

        data["tenant_name"] = selection.tenant_id
        data["tenant_domain"] = selection.domain
        data["services"] = {
            name: {"enabled": entry.enabled, "config": dict(entry.config)}
            for name, entry in selection.services.items()
        }

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(
                yaml.safe_dump(data, default_flow_style=False, sort_keys=False),
                encoding="utf-8",
            )
        except OSError as exc:
            raise ConfigurationError(
                actionable_error("render_failed", reason=f"cannot write data file {path}: {exc}")
            ) from exc
        self.logger.info("Updated renderer data with %s services", len(data["services"]))

    def rendered_units(self) -> Tuple[str, ...]:
        compose_path = Path(self.config_store.compose_path)
        if not compose_path.is_file():
            raise ConfigurationError(actionable_error("compose_missing", path=str(compose_path)))

        try:
            parsed = yaml.safe_load(compose_path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise ConfigurationError(actionable_error("compose_invalid", reason=str(exc))) from exc

        services = parsed.get("services") if isinstance(parsed, dict) else None
        if not isinstance(services, dict):
            raise ConfigurationError(
                actionable_error("compose_invalid", reason="no `services` mapping in the compose file")
            )
        return tuple(str(name) for name in services)
