"""Configuration loaders for paasdeploy."""

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from paasdeploy.constants import DEFAULT_CORE_SERVICES, DEFAULT_LANDING_SERVICES, DEFAULT_NETWORKS
from paasdeploy.errors import ConfigurationError, DeployError
from paasdeploy.errors_catalog import actionable_error
from paasdeploy.models import NetworkSpec, RuntimeTopology


class ConfigLoader:
    """Loads YAML configuration files for CLI defaults."""

    SUPPORTED_KEYS = {
        "selection",
        "tenant",
        "domain",
        "deployment_dir",
        "runtime_config",
        "credential_files",
        "critical_credentials",
        "render_command",
        "render_data_file",
        "compose_file",
        "health_timeout",
        "health_interval",
        "start_timeout",
        "deploy_timeout",
        "graceful_stop_timeout",
        "lock_timeout",
        "pull_images",
        "auto_snapshot",
        "auto_rollback",
        "report_file",
        "reachability_targets",
        "verbose",
        "log_file",
    }

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise DeployError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise DeployError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise DeployError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise DeployError(f"Unknown configuration keys: {unknown_list}")

        return parsed


class RuntimeConfigLoader:
    """Loads the host runtime topology: core/landing groups and networks."""

    def __init__(self, logger):
        self.logger = logger

    def load(self, runtime_config_path: Optional[str]) -> Tuple[RuntimeTopology, List[str]]:
        warnings: List[str] = []
        data: Dict[str, Any] = {}

        if not runtime_config_path or not Path(runtime_config_path).exists():
            message = (
                f"Docker runtime config not found at {runtime_config_path}, using defaults"
                if runtime_config_path
                else "No docker runtime config given, using defaults"
            )
            self.logger.warning(message)
            warnings.append(message)
        else:
            data = self._parse(runtime_config_path)

        core = self._service_list(data, "core_services", runtime_config_path)
        landing = self._service_list(data, "landing_services", runtime_config_path)
        networks = self._networks(data.get("networks"), runtime_config_path)

        if not core:
            core = DEFAULT_CORE_SERVICES
            if data:
                warnings.append("Runtime config declares no core services, using defaults")
        if not landing:
            landing = DEFAULT_LANDING_SERVICES
            if data:
                warnings.append("Runtime config declares no landing services, using defaults")
        if not networks:
            networks = tuple(self._network_spec(entry, runtime_config_path) for entry in DEFAULT_NETWORKS)

        topology = RuntimeTopology(
            core_services=tuple(core),
            landing_services=tuple(landing),
            networks=networks,
        )
        return topology, warnings

    def _parse(self, runtime_config_path: str) -> Dict[str, Any]:
        try:
            parsed = yaml.safe_load(Path(runtime_config_path).read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise ConfigurationError(
                actionable_error("invalid_runtime_config", path=runtime_config_path, reason=str(exc))
            ) from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ConfigurationError(
                actionable_error(
                    "invalid_runtime_config",
                    path=runtime_config_path,
                    reason="the root must be a mapping",
                )
            )
        return parsed

    @staticmethod
    def _service_list(data: Dict[str, Any], key: str, path: Optional[str]) -> Tuple[str, ...]:
        raw = data.get(key) or []
        if not isinstance(raw, list):
            raise ConfigurationError(
                actionable_error("invalid_runtime_config", path=str(path), reason=f"`{key}` must be a list")
            )

        names: List[str] = []
        for item in raw:
            if not isinstance(item, str) or not item.strip():
                raise ConfigurationError(
                    actionable_error(
                        "invalid_runtime_config",
                        path=str(path),
                        reason=f"`{key}` contains an empty or non-string name",
                    )
                )
            if item.strip() not in names:
                names.append(item.strip())
        return tuple(names)

    def _networks(self, raw: Any, path: Optional[str]) -> Tuple[NetworkSpec, ...]:
        if raw is None:
            return ()
        if not isinstance(raw, list):
            raise ConfigurationError(
                actionable_error("invalid_runtime_config", path=str(path), reason="`networks` must be a list")
            )

        specs: Dict[str, NetworkSpec] = {}
        for entry in raw:
            spec = self._network_spec(entry, path)
            existing = specs.get(spec.name)
            if existing is not None and existing != spec:
                raise ConfigurationError(
                    actionable_error(
                        "invalid_runtime_config",
                        path=str(path),
                        reason=f"network '{spec.name}' is declared twice with different settings",
                    )
                )
            specs[spec.name] = spec
        return tuple(specs.values())

    @staticmethod
    def _network_spec(entry: Any, path: Optional[str]) -> NetworkSpec:
        if not isinstance(entry, dict) or not isinstance(entry.get("name"), str) or not entry["name"].strip():
            raise ConfigurationError(
                actionable_error(
                    "invalid_runtime_config",
                    path=str(path),
                    reason=f"network entry {entry!r} needs a non-empty `name`",
                )
            )

        attachable = entry.get("attachable", False)
        if isinstance(attachable, str):
            attachable = attachable.strip().lower() in {"1", "true", "yes"}

        return NetworkSpec(
            name=entry["name"].strip(),
            driver=str(entry.get("driver") or "bridge"),
            attachable=bool(attachable),
        )
