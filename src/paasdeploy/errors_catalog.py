"""Actionable error catalog for paasdeploy."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "selection_not_found": {
        "what": "Tenant selection file not found: {path}",
        "next": "Pass `--selection` with the tenant's selection.yml or set `selection` in config.",
    },
    "invalid_selection": {
        "what": "Invalid tenant selection: {reason}",
        "next": "Fix the selection document; each service needs `enabled: true|false`.",
    },
    "invalid_runtime_config": {
        "what": "Invalid runtime config '{path}': {reason}",
        "next": "Check `core_services`, `landing_services` and `networks` in the runtime config.",
    },
    "render_failed": {
        "what": "Template rendering failed: {reason}",
        "next": "Run the render command manually (e.g. `chezmoi apply --verbose`) and fix the templates.",
    },
    "compose_missing": {
        "what": "Rendered compose file not found: {path}",
        "next": "Check that the renderer produces the compose file in the deployment directory.",
    },
    "compose_invalid": {
        "what": "Rendered compose file is invalid: {reason}",
        "next": "Inspect the output of `docker compose config` in the deployment directory.",
    },
    "network_create_failed": {
        "what": "Failed to create docker network '{name}'.",
        "next": "Check for subnet conflicts with `docker network ls` and the Docker daemon logs.",
    },
    "group_start_failed": {
        "what": "Failed to start {group} group ({units}).",
        "next": "Inspect `docker compose logs` for the listed units; earlier groups were left running.",
    },
    "lock_held": {
        "what": "Another deployment or rollback is in progress for {path}.",
        "next": "Wait for it to finish; remove the lock file only if no paasdeploy process is running.",
    },
    "deadline_exceeded": {
        "what": "Deployment attempt exceeded its overall timeout of {seconds}s.",
        "next": "Raise `--deploy-timeout` or investigate which step is slow in the report.",
    },
    "no_snapshots": {
        "what": "No deployment snapshots found in {path}.",
        "next": "Create one with `paasdeploy snapshot` while a known-good configuration is deployed.",
    },
    "snapshot_not_found": {
        "what": "Snapshot not found: {snapshot_id}",
        "next": "List available snapshots with `paasdeploy snapshots`.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
