import json
import stat
import subprocess
import time

import pytest
from dotenv import dotenv_values

from paasdeploy.core import DeploymentOrchestrator, build_environment, env_var_name
from paasdeploy.errors import ConfigurationError, DeployError
from paasdeploy.models import (
    CredentialSet,
    DeployState,
    GroupStartResult,
    HealthState,
    ResolvedGroups,
    RollbackResult,
    ServiceSelection,
    TenantSelection,
    UnitStatus,
    Verdict,
)
from paasdeploy.services.health import HealthVerifier

RENDERED_UNITS = ("traefik", "authelia", "homepage", "nextcloud", "vikunja")


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None

    def info(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None

    def error(self, *_args, **_kwargs):
        return None


class FakeRuntime:
    def __init__(self, fail_groups=(), fail_networks=False, health=None, existing_networks=None, states=None):
        self.fail_groups = set(fail_groups)
        self.fail_networks = fail_networks
        self.health = health or {}
        self.states = states or {}
        self.existing_networks = existing_networks or {}
        self.start_calls = []
        self.created_networks = []
        self.pulled = False
        self.stopped = False

    def validate_config(self):
        return None

    def pull(self):
        self.pulled = True
        return True

    def inspect_network(self, name):
        return self.existing_networks.get(name)

    def create_network(self, spec):
        if self.fail_networks:
            raise DeployError("network create refused")
        self.created_networks.append(spec.name)

    def start_group(self, group, units, timeout=None):
        self.start_calls.append((group, tuple(units)))
        returncode = 1 if group in self.fail_groups else 0
        return GroupStartResult(group=group, units=tuple(units), returncode=returncode, output="boom")

    def unit_status(self, unit):
        state = self.states.get(unit, "running")
        health = self.health.get(unit, "healthy" if state == "running" else None)
        return UnitStatus(unit=unit, state=state, health=health)

    def stop_all(self, graceful_timeout):
        self.stopped = True
        return "graceful"


class FakeRenderer:
    def __init__(self, units=RENDERED_UNITS, error=None):
        self.units = units
        self.error = error
        self.calls = 0

    def render(self, selection):
        self.calls += 1
        if self.error:
            raise self.error
        return self.units


class FakeValidation:
    def __init__(self, error=None):
        self.error = error

    def validate_prerequisites(self, tools):
        if self.error:
            raise self.error
        return []


@pytest.fixture
def runtime_config(tmp_path):
    path = tmp_path / "docker-runtime.yaml"
    path.write_text(
        "core_services: [traefik, authelia]\n"
        "landing_services: [homepage]\n"
        "networks:\n"
        "  - name: traefik_net\n"
        "    driver: bridge\n"
        "    attachable: true\n",
        encoding="utf-8",
    )
    return path


def _selection(**services):
    if not services:
        services = {"nextcloud": True, "vikunja": False}
    return TenantSelection(
        tenant_id="acme",
        domain="acme.example.com",
        services={
            name: ServiceSelection(enabled=enabled) if isinstance(enabled, bool) else enabled
            for name, enabled in services.items()
        },
    )


def build_orchestrator(tmp_path, runtime_config, runtime=None, renderer=None, validation=None, **kwargs):
    runtime = runtime or FakeRuntime()
    kwargs.setdefault("auto_snapshot", False)
    orchestrator = DeploymentOrchestrator(
        selection=kwargs.pop("selection", _selection()),
        deployment_dir=str(tmp_path / "deployment"),
        runtime_config=str(runtime_config),
        runtime=runtime,
        renderer=renderer or FakeRenderer(),
        validation_service=validation or FakeValidation(),
        health_verifier=HealthVerifier(runtime=runtime, logger=DummyLogger(), poll_interval=0.01),
        health_timeout=0.2,
        **kwargs,
    )
    return orchestrator, runtime


def test_all_groups_healthy_succeeds_with_exit_zero(tmp_path, runtime_config):
    orchestrator, runtime = build_orchestrator(tmp_path, runtime_config)

    exit_code = orchestrator.run()

    assert exit_code == 0
    assert orchestrator.attempt.verdict == Verdict.SUCCEEDED
    assert orchestrator.attempt.state == DeployState.SUCCEEDED
    assert runtime.start_calls == [
        ("core", ("traefik", "authelia")),
        ("landing", ("homepage",)),
        ("selected", ("nextcloud",)),
    ]
    assert set(orchestrator.attempt.per_unit_health) == {"traefik", "authelia", "homepage", "nextcloud"}
    assert runtime.created_networks == ["traefik_net"]
    assert runtime.pulled is True


def test_states_are_visited_in_order(tmp_path, runtime_config):
    orchestrator, _ = build_orchestrator(tmp_path, runtime_config)

    orchestrator.run()

    visited = [transition["state"] for transition in orchestrator.attempt.transitions]
    assert visited == [
        "Validating",
        "Rendering",
        "EnvMaterializing",
        "NetworkProvisioning",
        "StartingCore",
        "StartingLanding",
        "StartingSelected",
        "Verifying",
        "Succeeded",
    ]


def test_network_failure_never_starts_a_group(tmp_path, runtime_config):
    orchestrator, runtime = build_orchestrator(
        tmp_path,
        runtime_config,
        runtime=FakeRuntime(fail_networks=True),
    )

    exit_code = orchestrator.run()

    assert exit_code == 1
    assert runtime.start_calls == []
    assert orchestrator.attempt.failed_state == DeployState.NETWORK_PROVISIONING
    assert "traefik_net" in orchestrator.attempt.error


def test_core_failure_skips_landing_and_selected(tmp_path, runtime_config):
    orchestrator, runtime = build_orchestrator(
        tmp_path,
        runtime_config,
        runtime=FakeRuntime(fail_groups={"core"}),
    )

    orchestrator.run()

    assert [call[0] for call in runtime.start_calls] == ["core"]
    assert orchestrator.attempt.verdict == Verdict.FAILED
    assert orchestrator.attempt.failed_state == DeployState.STARTING_CORE


def test_landing_failure_leaves_core_running_and_never_starts_selected(tmp_path, runtime_config):
    orchestrator, runtime = build_orchestrator(
        tmp_path,
        runtime_config,
        runtime=FakeRuntime(fail_groups={"landing"}),
    )

    exit_code = orchestrator.run()

    assert exit_code == 1
    assert [call[0] for call in runtime.start_calls] == ["core", "landing"]
    assert runtime.stopped is False
    assert orchestrator.attempt.failed_state == DeployState.STARTING_LANDING
    assert orchestrator.attempt.groups_attempted == ["core", "landing"]


def test_one_unhealthy_unit_fails_and_is_the_only_one_blamed(tmp_path, runtime_config):
    orchestrator, _ = build_orchestrator(
        tmp_path,
        runtime_config,
        runtime=FakeRuntime(health={"nextcloud": "unhealthy"}),
    )

    exit_code = orchestrator.run()

    assert exit_code == 1
    health = orchestrator.attempt.per_unit_health
    assert health["nextcloud"] == HealthState.UNHEALTHY
    assert [unit for unit, state in health.items() if state != HealthState.HEALTHY] == ["nextcloud"]
    assert orchestrator.attempt.failed_state is None


def test_unit_stuck_starting_gives_partial_failure(tmp_path, runtime_config):
    orchestrator, _ = build_orchestrator(
        tmp_path,
        runtime_config,
        runtime=FakeRuntime(health={"homepage": "starting"}),
    )

    exit_code = orchestrator.run()

    assert exit_code == 2
    assert orchestrator.attempt.verdict == Verdict.PARTIAL_FAILURE
    assert orchestrator.attempt.per_unit_health["homepage"] == HealthState.TIMED_OUT
    assert any("homepage" in warning for warning in orchestrator.attempt.warnings)


def test_rerun_with_same_input_gives_same_verdict(tmp_path, runtime_config):
    runtime = FakeRuntime(existing_networks={})
    first, _ = build_orchestrator(tmp_path, runtime_config, runtime=runtime)
    second, _ = build_orchestrator(tmp_path, runtime_config, runtime=runtime)

    assert first.run() == second.run() == 0
    assert first.attempt.per_unit_health == second.attempt.per_unit_health


def test_unknown_service_is_dropped_with_a_warning(tmp_path, runtime_config):
    orchestrator, runtime = build_orchestrator(
        tmp_path,
        runtime_config,
        selection=_selection(legacyapp=True),
    )

    exit_code = orchestrator.run()

    assert exit_code == 0
    assert orchestrator.groups.selected == ()
    assert ("selected", ()) not in runtime.start_calls
    assert [call[0] for call in runtime.start_calls] == ["core", "landing"]
    assert any("legacyapp" in warning for warning in orchestrator.attempt.warnings)


def test_render_failure_fails_before_any_side_effect(tmp_path, runtime_config):
    orchestrator, runtime = build_orchestrator(
        tmp_path,
        runtime_config,
        renderer=FakeRenderer(error=ConfigurationError("template syntax error")),
    )

    orchestrator.run()

    assert orchestrator.attempt.failed_state == DeployState.RENDERING
    assert runtime.start_calls == []
    assert runtime.created_networks == []
    assert not (tmp_path / "deployment" / ".env").exists()


def test_validation_failure_stops_at_validating(tmp_path, runtime_config):
    renderer = FakeRenderer()
    orchestrator, _ = build_orchestrator(
        tmp_path,
        runtime_config,
        renderer=renderer,
        validation=FakeValidation(error=DeployError("docker is not reachable")),
    )

    assert orchestrator.run() == 1
    assert orchestrator.attempt.failed_state == DeployState.VALIDATING
    assert renderer.calls == 0


def test_environment_file_contains_tenant_vars_and_credentials(tmp_path, runtime_config):
    credentials = tmp_path / "credentials.env"
    credentials.write_text("POSTGRES_PASSWORD=s3cr3t-value\nTRAEFIK_ADMIN_PASSWORD=changeme\n", encoding="utf-8")
    selection = _selection(
        nextcloud=ServiceSelection(enabled=True, config={"admin-user": "root"}),
    )
    orchestrator, _ = build_orchestrator(
        tmp_path,
        runtime_config,
        selection=selection,
        credential_files=[str(credentials), str(tmp_path / "missing.env")],
    )

    orchestrator.run()

    env_path = tmp_path / "deployment" / ".env"
    written = dotenv_values(env_path, interpolate=False)
    assert written["TENANT_ID"] == "acme"
    assert written["TENANT_DOMAIN"] == "acme.example.com"
    assert written["NEXTCLOUD_ADMIN_USER"] == "root"
    assert written["POSTGRES_PASSWORD"] == "s3cr3t-value"
    assert stat.S_IMODE(env_path.stat().st_mode) == 0o600
    assert orchestrator.attempt.insecure_credentials == ["TRAEFIK_ADMIN_PASSWORD"]
    assert any("missing.env" in warning for warning in orchestrator.attempt.warnings)


def test_attempt_is_recorded_in_state_dir(tmp_path, runtime_config):
    orchestrator, _ = build_orchestrator(tmp_path, runtime_config)

    orchestrator.run()

    state_dir = tmp_path / "deployment" / "state"
    last_attempt = json.loads((state_dir / "last-attempt.json").read_text(encoding="utf-8"))
    assert last_attempt["verdict"] == "Succeeded"
    assert last_attempt["attempt_id"] == orchestrator.attempt.attempt_id


def test_report_file_lists_states_and_verdict(tmp_path, runtime_config):
    report_file = tmp_path / "report.json"
    orchestrator, _ = build_orchestrator(
        tmp_path,
        runtime_config,
        runtime=FakeRuntime(fail_groups={"selected"}),
        report_file=str(report_file),
    )

    orchestrator.run()

    report = json.loads(report_file.read_text(encoding="utf-8"))
    assert report["verdict"] == "Failed"
    assert report["failed_state"] == "StartingSelected"
    assert report["states"][-1]["name"] == "StartingSelected"
    assert report["states"][-1]["status"] == "failed"
    assert report["groups"]["selected"] == ["nextcloud"]


def test_held_lock_fails_the_attempt_without_touching_runtime(tmp_path, runtime_config):
    orchestrator, runtime = build_orchestrator(tmp_path, runtime_config)
    other, _ = build_orchestrator(tmp_path, runtime_config)

    with other.config_store.lock():
        exit_code = orchestrator.run()

    assert exit_code == 1
    assert runtime.start_calls == []
    assert "in progress" in orchestrator.attempt.error


def test_auto_snapshot_captures_existing_configuration(tmp_path, runtime_config):
    deployment_dir = tmp_path / "deployment"
    deployment_dir.mkdir()
    (deployment_dir / "docker-compose.yml").write_text("services: {}\n", encoding="utf-8")
    orchestrator, _ = build_orchestrator(tmp_path, runtime_config, auto_snapshot=True)

    orchestrator.run()

    assert orchestrator.attempt.snapshot_id is not None
    assert len(orchestrator.snapshot_service.list_snapshots()) == 1


def test_auto_rollback_restores_pre_attempt_snapshot_on_fatal_error(tmp_path, runtime_config, monkeypatch):
    deployment_dir = tmp_path / "deployment"
    deployment_dir.mkdir()
    (deployment_dir / "docker-compose.yml").write_text("services: {}\n", encoding="utf-8")
    orchestrator, _ = build_orchestrator(
        tmp_path,
        runtime_config,
        runtime=FakeRuntime(fail_groups={"core"}),
        auto_snapshot=True,
        auto_rollback=True,
    )
    calls = []

    def fake_rollback(snapshot_id=None, **_kwargs):
        calls.append(snapshot_id)
        return RollbackResult(target_id=snapshot_id, status="restored")

    monkeypatch.setattr(orchestrator.rollback_manager, "rollback", fake_rollback)

    orchestrator.run()

    assert calls == [orchestrator.attempt.snapshot_id]


def test_auto_rollback_is_not_used_for_health_verdicts(tmp_path, runtime_config, monkeypatch):
    deployment_dir = tmp_path / "deployment"
    deployment_dir.mkdir()
    (deployment_dir / "docker-compose.yml").write_text("services: {}\n", encoding="utf-8")
    orchestrator, _ = build_orchestrator(
        tmp_path,
        runtime_config,
        runtime=FakeRuntime(health={"traefik": "unhealthy"}),
        auto_snapshot=True,
        auto_rollback=True,
    )
    calls = []
    monkeypatch.setattr(orchestrator.rollback_manager, "rollback", lambda **kwargs: calls.append(kwargs))

    assert orchestrator.run() == 1
    assert calls == []


def test_build_environment_warns_when_credential_overrides_tenant_var():
    selection = _selection()
    groups = ResolvedGroups(core=("traefik",), landing=(), selected=("nextcloud",))
    credentials = CredentialSet(values={"TENANT_DOMAIN": "other.example.com", "API_KEY": "k"})

    environment, warnings = build_environment(selection, groups, credentials)

    assert environment["TENANT_DOMAIN"] == "other.example.com"
    assert environment["TENANT_ID"] == "acme"
    assert environment["API_KEY"] == "k"
    assert len(warnings) == 1
    assert "TENANT_DOMAIN" in warnings[0]


def test_env_var_name_normalizes_service_and_key():
    assert env_var_name("next-cloud", "admin.user") == "NEXT_CLOUD_ADMIN_USER"


def test_crash_looping_unit_fails_the_attempt(tmp_path, runtime_config):
    orchestrator, _ = build_orchestrator(
        tmp_path,
        runtime_config,
        runtime=FakeRuntime(states={"nextcloud": "restarting"}),
    )

    exit_code = orchestrator.run()

    assert exit_code == 1
    assert orchestrator.attempt.per_unit_health["nextcloud"] == HealthState.UNHEALTHY
    assert orchestrator.attempt.failed_state is None


def test_malformed_runtime_config_fails_before_rendering(tmp_path):
    runtime_config = tmp_path / "docker-runtime.yaml"
    runtime_config.write_text("core_services: traefik\n", encoding="utf-8")
    renderer = FakeRenderer()
    orchestrator, runtime = build_orchestrator(tmp_path, runtime_config, renderer=renderer)

    assert orchestrator.run() == 1
    assert orchestrator.attempt.failed_state == DeployState.VALIDATING
    assert "core_services" in orchestrator.attempt.error
    assert renderer.calls == 0
    assert runtime.start_calls == []


class DeadlineWatchingRenderer(FakeRenderer):
    def __init__(self, delay=0.0):
        super().__init__()
        self.delay = delay
        self.deadline = None
        self.expired_at_render = []

    def render(self, selection):
        self.expired_at_render.append(self.deadline.expired)
        time.sleep(self.delay)
        return super().render(selection)


def test_deploy_timeout_counts_from_deploy_not_construction(tmp_path, runtime_config):
    renderer = DeadlineWatchingRenderer()
    orchestrator, _ = build_orchestrator(tmp_path, runtime_config, renderer=renderer, deploy_timeout=0.3)
    renderer.deadline = orchestrator.deadline

    time.sleep(0.4)

    assert orchestrator.run() == 0
    assert renderer.expired_at_render == [False]


def test_auto_rollback_still_runs_after_the_deploy_timeout(tmp_path, runtime_config, monkeypatch):
    deployment_dir = tmp_path / "deployment"
    deployment_dir.mkdir()
    (deployment_dir / "docker-compose.yml").write_text("services: {}\n", encoding="utf-8")
    commands = []

    def fake_run(cmd, **_kwargs):
        commands.append(list(cmd))
        stdout = "traefik\n" if "--services" in cmd else ""
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    renderer = DeadlineWatchingRenderer(delay=0.2)
    orchestrator = DeploymentOrchestrator(
        selection=_selection(),
        deployment_dir=str(deployment_dir),
        runtime_config=str(runtime_config),
        renderer=renderer,
        validation_service=FakeValidation(),
        deploy_timeout=0.1,
        auto_snapshot=True,
        auto_rollback=True,
    )
    renderer.deadline = orchestrator.deadline
    orchestrator.rollback_manager.settle_seconds = 0

    assert orchestrator.run() == 1
    assert orchestrator.attempt.failed_state == DeployState.RENDERING
    assert orchestrator.rollback_result is not None
    assert orchestrator.rollback_result.target_id == orchestrator.attempt.snapshot_id
    assert orchestrator.rollback_result.status == "restored"
    assert any("down" in cmd for cmd in commands)
    assert any(cmd[-2:] == ["up", "-d"] for cmd in commands)


def test_build_environment_warns_on_tenant_variable_collisions():
    selection = _selection(
        **{
            "foo-bar": ServiceSelection(enabled=True, config={"x": "first"}),
            "foo": ServiceSelection(enabled=True, config={"bar_x": "second"}),
        }
    )
    groups = ResolvedGroups(core=(), landing=(), selected=("foo-bar", "foo"))

    environment, warnings = build_environment(selection, groups, CredentialSet())

    assert environment["FOO_BAR_X"] == "second"
    assert warnings == ["Tenant variable 'FOO_BAR_X' from foo.bar_x collides with foo-bar.x; foo.bar_x wins"]
