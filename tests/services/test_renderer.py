import pytest
import yaml

from paasdeploy.errors import ConfigurationError, DeployError
from paasdeploy.models import ServiceSelection, TenantSelection
from paasdeploy.services.renderer import TemplateRenderer


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


class FakeStore:
    def __init__(self, path):
        self.compose_path = str(path)


class FakeCommandRunner:
    def __init__(self, error=None, on_run=None):
        self.error = error
        self.on_run = on_run
        self.calls = []

    def run(self, cmd, **kwargs):
        self.calls.append(cmd)
        if self.error:
            raise self.error
        if self.on_run:
            self.on_run()


SELECTION = TenantSelection(
    tenant_id="acme",
    domain="acme.example.com",
    services={
        "nextcloud": ServiceSelection(enabled=True, config={"storage_gb": "50"}),
        "vikunja": ServiceSelection(enabled=False),
    },
)


def test_render_merges_data_file_and_reads_units(tmp_path):
    compose = tmp_path / "docker-compose.yml"
    data_file = tmp_path / "chezmoi" / "data.yaml"
    data_file.parent.mkdir()
    data_file.write_text("email: ops@example.com\n", encoding="utf-8")

    def render():
        compose.write_text("services:\n  traefik: {}\n  nextcloud: {}\n", encoding="utf-8")

    runner = FakeCommandRunner(on_run=render)
    renderer = TemplateRenderer(
        FakeStore(compose),
        runner,
        DummyLogger(),
        DummyConsole(),
        data_file=str(data_file),
    )

    units = renderer.render(SELECTION)

    assert units == ("traefik", "nextcloud")
    assert runner.calls == [["chezmoi", "apply"]]
    data = yaml.safe_load(data_file.read_text(encoding="utf-8"))
    assert data["email"] == "ops@example.com"
    assert data["tenant_name"] == "acme"
    assert data["tenant_domain"] == "acme.example.com"
    assert data["services"]["nextcloud"] == {"enabled": True, "config": {"storage_gb": "50"}}
    assert data["services"]["vikunja"]["enabled"] is False


def test_render_command_failure_is_configuration_error(tmp_path):
    renderer = TemplateRenderer(
        FakeStore(tmp_path / "docker-compose.yml"),
        FakeCommandRunner(error=DeployError("template: unknown function")),
        DummyLogger(),
        DummyConsole(),
    )

    with pytest.raises(ConfigurationError, match="Template rendering failed"):
        renderer.render(SELECTION)


def test_missing_compose_file_is_configuration_error(tmp_path):
    renderer = TemplateRenderer(
        FakeStore(tmp_path / "docker-compose.yml"),
        FakeCommandRunner(),
        DummyLogger(),
        DummyConsole(),
        render_command=None,
    )

    with pytest.raises(ConfigurationError, match="not found"):
        renderer.render(SELECTION)


def test_compose_without_services_is_configuration_error(tmp_path):
    compose = tmp_path / "docker-compose.yml"
    compose.write_text("version: '3'\n", encoding="utf-8")
    renderer = TemplateRenderer(FakeStore(compose), FakeCommandRunner(), DummyLogger(), DummyConsole())

    with pytest.raises(ConfigurationError, match="no `services` mapping"):
        renderer.rendered_units()
