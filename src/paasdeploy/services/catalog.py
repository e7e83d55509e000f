"""Service catalog resolution: tenant selection to ordered service groups."""

from typing import List, Optional, Sequence

from paasdeploy.errors import ConfigurationError
from paasdeploy.models import ResolvedGroups, RuntimeTopology, TenantSelection


class ServiceCatalogResolver:
    """Splits a tenant selection into the core, landing and selected groups.

    Core and landing come from the runtime topology and cannot be disabled by
    the tenant. Selected services keep the order of the tenant document and
    never repeat a core or landing unit. A requested service that the render
    step did not produce is dropped with a warning.
    """

    def __init__(self, logger):
        self.logger = logger

    def resolve(self, selection: TenantSelection, topology: Optional[RuntimeTopology]) -> ResolvedGroups:
        if topology is None:
            raise ConfigurationError(
                "Runtime topology is unavailable; the render step did not produce a usable configuration."
            )

        warnings: List[str] = []
        rendered_units = set(topology.units)

        core = self._dedupe(topology.core_services, exclude=())
        landing = self._dedupe(topology.landing_services, exclude=core)
        reserved = set(core) | set(landing)

        for unit in core + landing:
            if unit not in rendered_units:
                message = f"Core/landing service '{unit}' is not defined in the rendered topology"
                self.logger.warning(message)
                warnings.append(message)

        selected: List[str] = []
        for name in selection.enabled_services():
            if name in reserved:
                self.logger.debug("Service '%s' is already part of core/landing, not selecting it", name)
                continue
            if name in selected:
                continue
            if name not in rendered_units:
                message = (
                    f"Service '{name}' is enabled for tenant '{selection.tenant_id}' "
                    "but not defined in the rendered topology; skipping it"
                )
                self.logger.warning(message)
                warnings.append(message)
                continue
            selected.append(name)

        if selected:
            self.logger.info("Tenant requested additional services: %s", " ".join(selected))

        return ResolvedGroups(
            core=tuple(core),
            landing=tuple(landing),
            selected=tuple(selected),
            warnings=tuple(warnings),
        )

    @staticmethod
    def _dedupe(names: Sequence[str], exclude: Sequence[str]) -> List[str]:
        result: List[str] = []
        for name in names:
            if name and name not in result and name not in exclude:
                result.append(name)
        return result
