"""Tenant selection document loading."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from paasdeploy.errors import ConfigurationError
from paasdeploy.errors_catalog import actionable_error
from paasdeploy.models import ServiceSelection, TenantSelection


class SelectionLoader:
    """Parses `selection.yml` into a validated TenantSelection."""

    DEFAULT_DOMAIN = "localhost"

    def load(
        self,
        selection_path: str,
        tenant_id: Optional[str] = None,
        domain: Optional[str] = None,
    ) -> TenantSelection:
        path = Path(selection_path)
        if not path.is_file():
            raise ConfigurationError(actionable_error("selection_not_found", path=selection_path))

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise ConfigurationError(
                actionable_error("invalid_selection", reason=f"could not parse {selection_path}: {exc}")
            ) from exc

        return self.from_mapping(parsed if parsed is not None else {}, tenant_id=tenant_id, domain=domain)

    def from_mapping(
        self,
        data: Any,
        tenant_id: Optional[str] = None,
        domain: Optional[str] = None,
    ) -> TenantSelection:
        if not isinstance(data, dict):
            raise ConfigurationError(
                actionable_error("invalid_selection", reason="the document root must be a mapping")
            )

        resolved_tenant = tenant_id or data.get("tenant_id") or data.get("tenant")
        if not isinstance(resolved_tenant, str) or not resolved_tenant.strip():
            raise ConfigurationError(
                actionable_error("invalid_selection", reason="`tenant_id` is missing or empty")
            )

        resolved_domain = domain or data.get("domain") or self.DEFAULT_DOMAIN
        if not isinstance(resolved_domain, str):
            raise ConfigurationError(actionable_error("invalid_selection", reason="`domain` must be a string"))

        raw_services = data.get("services") or {}
        if not isinstance(raw_services, dict):
            raise ConfigurationError(
                actionable_error("invalid_selection", reason="`services` must be a mapping")
            )

        services: Dict[str, ServiceSelection] = {}
        for name, entry in raw_services.items():
            services[self._service_name(name)] = self._parse_entry(name, entry)

        return TenantSelection(
            tenant_id=resolved_tenant.strip(),
            domain=resolved_domain.strip(),
            services=services,
        )

    @staticmethod
    def _service_name(name: Any) -> str:
        if not isinstance(name, str) or not name.strip():
            raise ConfigurationError(
                actionable_error("invalid_selection", reason=f"invalid service name {name!r}")
            )
        return name.strip()

    @staticmethod
    def _parse_entry(name: str, entry: Any) -> ServiceSelection:
        if isinstance(entry, bool):
            return ServiceSelection(enabled=entry)
        if entry is None:
            return ServiceSelection(enabled=False)
        if not isinstance(entry, dict):
            raise ConfigurationError(
                actionable_error("invalid_selection", reason=f"service '{name}' must be a mapping")
            )

        enabled = entry.get("enabled", False)
        if not isinstance(enabled, bool):
            raise ConfigurationError(
                actionable_error("invalid_selection", reason=f"service '{name}' has non-boolean `enabled`")
            )

        raw_config = entry.get("config") or {}
        if not isinstance(raw_config, dict):
            raise ConfigurationError(
                actionable_error("invalid_selection", reason=f"service '{name}' `config` must be a mapping")
            )

        config: Dict[str, str] = {}
        for key, value in raw_config.items():
            if isinstance(value, (dict, list)):
                raise ConfigurationError(
                    actionable_error(
                        "invalid_selection",
                        reason=f"service '{name}' config key '{key}' must be a scalar",
                    )
                )
            if isinstance(value, bool):
                config[str(key)] = "true" if value else "false"
            else:
                config[str(key)] = "" if value is None else str(value)

        return ServiceSelection(enabled=enabled, config=config)
