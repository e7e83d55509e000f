import pytest

from paasdeploy.constants import DEFAULT_CORE_SERVICES, DEFAULT_LANDING_SERVICES
from paasdeploy.errors import ConfigurationError, DeployError
from paasdeploy.models import NetworkSpec
from paasdeploy.services.config_loader import ConfigLoader, RuntimeConfigLoader


class DummyLogger:
    def warning(self, *_args, **_kwargs):
        return None


def test_config_loader_loads_yaml_mapping(tmp_path):
    config_file = tmp_path / ".paasdeploy.yml"
    config_file.write_text(
        "selection: ./selection.yml\ndomain: acme.example.com\nhealth_timeout: 60\n",
        encoding="utf-8",
    )

    loaded = ConfigLoader().load(str(config_file))

    assert loaded["selection"] == "./selection.yml"
    assert loaded["domain"] == "acme.example.com"
    assert loaded["health_timeout"] == 60


def test_config_loader_rejects_unknown_keys(tmp_path):
    config_file = tmp_path / ".paasdeploy.yml"
    config_file.write_text("unknown_key: true\n", encoding="utf-8")

    with pytest.raises(DeployError, match="Unknown configuration keys"):
        ConfigLoader().load(str(config_file))


def test_config_loader_requires_existing_file(tmp_path):
    with pytest.raises(DeployError, match="Config file not found"):
        ConfigLoader().load(str(tmp_path / "missing.yml"))


def test_runtime_config_missing_file_falls_back_to_defaults(tmp_path):
    topology, warnings = RuntimeConfigLoader(DummyLogger()).load(str(tmp_path / "missing.yaml"))

    assert topology.core_services == DEFAULT_CORE_SERVICES
    assert topology.landing_services == DEFAULT_LANDING_SERVICES
    assert topology.networks == (NetworkSpec(name="traefik_net", driver="bridge", attachable=True),)
    assert len(warnings) == 1


def test_runtime_config_reads_groups_and_networks(tmp_path):
    path = tmp_path / "runtime.yaml"
    path.write_text(
        "core_services: [traefik, authelia]\n"
        "landing_services: [homepage]\n"
        "networks:\n"
        "  - name: traefik_net\n"
        "    attachable: 'true'\n"
        "  - name: backend\n"
        "    driver: overlay\n"
        "  - name: backend\n"
        "    driver: overlay\n",
        encoding="utf-8",
    )

    topology, warnings = RuntimeConfigLoader(DummyLogger()).load(str(path))

    assert warnings == []
    assert topology.core_services == ("traefik", "authelia")
    assert topology.networks == (
        NetworkSpec(name="traefik_net", driver="bridge", attachable=True),
        NetworkSpec(name="backend", driver="overlay", attachable=False),
    )


def test_runtime_config_rejects_conflicting_network_declarations(tmp_path):
    path = tmp_path / "runtime.yaml"
    path.write_text(
        "networks:\n  - name: backend\n    driver: bridge\n  - name: backend\n    driver: overlay\n",
        encoding="utf-8",
    )

    with pytest.raises(ConfigurationError, match="declared twice"):
        RuntimeConfigLoader(DummyLogger()).load(str(path))


def test_runtime_config_rejects_malformed_yaml(tmp_path):
    path = tmp_path / "runtime.yaml"
    path.write_text("core_services: [traefik\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="Invalid runtime config"):
        RuntimeConfigLoader(DummyLogger()).load(str(path))


def test_runtime_config_rejects_empty_service_names(tmp_path):
    path = tmp_path / "runtime.yaml"
    path.write_text("core_services: [traefik, '']\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="empty or non-string"):
        RuntimeConfigLoader(DummyLogger()).load(str(path))
