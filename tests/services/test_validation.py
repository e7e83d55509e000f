import pytest

from paasdeploy.errors import DeployError
from paasdeploy.services.validation import ValidationService


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


class FakeRuntime:
    def __init__(self, server_version="27.1.1"):
        self.version = server_version
        self.validated = False

    def validate_environment(self):
        self.validated = True

    def server_version(self):
        return self.version


def _service(runtime, installed=("docker", "chezmoi")):
    return ValidationService(
        runtime=runtime,
        logger=DummyLogger(),
        console=DummyConsole(),
        which=lambda tool: f"/usr/bin/{tool}" if tool in installed else None,
    )


def test_missing_render_tool_fails_before_runtime_is_queried():
    runtime = FakeRuntime()
    service = _service(runtime, installed=("docker",))

    with pytest.raises(DeployError, match="chezmoi"):
        service.validate_prerequisites(["chezmoi"])

    assert runtime.validated is False


def test_current_docker_passes_without_warnings():
    runtime = FakeRuntime()

    assert _service(runtime).validate_prerequisites(["chezmoi"]) == []
    assert runtime.validated is True


def test_old_docker_is_a_warning():
    warnings = _service(FakeRuntime("20.10.7")).validate_prerequisites([])

    assert len(warnings) == 1
    assert "older than the recommended 24.0" in warnings[0]


def test_unparsable_docker_version_is_a_warning():
    assert "Could not parse" in _service(FakeRuntime("dev-build")).check_docker_version()
