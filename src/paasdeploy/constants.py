"""Shared defaults for paasdeploy."""

import os

DIR_MODE = 0o750
SECRET_FILE_MODE = 0o600

EXIT_SUCCEEDED = 0
EXIT_FAILED = 1
EXIT_PARTIAL_FAILURE = 2
EXIT_ROLLBACK_DEGRADED = 3

DEFAULT_DEPLOYMENT_DIR = os.path.join(os.path.expanduser("~"), "paas-deployment")
DEFAULT_RUNTIME_CONFIG = "/etc/paas/docker-runtime.yaml"
DEFAULT_COMPOSE_FILE = "docker-compose.yml"
DEFAULT_ENV_FILE = ".env"
DEFAULT_CONFIG_DIRS = ("configs",)
DEFAULT_RENDER_COMMAND = ("chezmoi", "apply")

DEFAULT_CORE_SERVICES = ("traefik", "authelia", "vaultwarden")
DEFAULT_LANDING_SERVICES = ("homepage",)
DEFAULT_NETWORKS = ({"name": "traefik_net", "driver": "bridge", "attachable": True},)

DEFAULT_CRITICAL_CREDENTIALS = ("TRAEFIK_ADMIN_PASSWORD", "POSTGRES_PASSWORD")
PLACEHOLDER_VALUES = frozenset({"changeme", "change-me", "password", "secret", "admin"})

MIN_DOCKER_VERSION = "24.0"

DEFAULT_HEALTH_INTERVAL = 5.0
DEFAULT_HEALTH_TIMEOUT = 120.0
DEFAULT_START_TIMEOUT = 600.0
DEFAULT_GRACEFUL_STOP_TIMEOUT = 30
DEFAULT_ROLLBACK_SETTLE_SECONDS = 10.0

DEFAULT_REACHABILITY_TARGETS = {
    "proxy": "http://localhost:80",
    "internet": "https://www.google.com",
}
