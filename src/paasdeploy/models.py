"""Shared domain models for paasdeploy."""

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .constants import EXIT_FAILED, EXIT_PARTIAL_FAILURE, EXIT_SUCCEEDED


class DeployState(str, Enum):
    INIT = "Init"
    VALIDATING = "Validating"
    RENDERING = "Rendering"
    ENV_MATERIALIZING = "EnvMaterializing"
    NETWORK_PROVISIONING = "NetworkProvisioning"
    STARTING_CORE = "StartingCore"
    STARTING_LANDING = "StartingLanding"
    STARTING_SELECTED = "StartingSelected"
    VERIFYING = "Verifying"
    SUCCEEDED = "Succeeded"
    PARTIAL_FAILURE = "PartialFailure"
    FAILED = "Failed"


class Verdict(str, Enum):
    SUCCEEDED = "Succeeded"
    PARTIAL_FAILURE = "PartialFailure"
    FAILED = "Failed"

    @property
    def exit_code(self) -> int:
        return {
            Verdict.SUCCEEDED: EXIT_SUCCEEDED,
            Verdict.PARTIAL_FAILURE: EXIT_PARTIAL_FAILURE,
            Verdict.FAILED: EXIT_FAILED,
        }[self]

    @property
    def terminal_state(self) -> DeployState:
        return DeployState(self.value)


class HealthState(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    TIMED_OUT = "timed_out"
    NO_HEALTHCHECK = "no_healthcheck"


@dataclass(frozen=True)
class ServiceSelection:
    enabled: bool
    config: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class TenantSelection:
    """Declarative tenant input; never mutated by the orchestrator."""

    tenant_id: str
    domain: str
    services: Dict[str, ServiceSelection] = field(default_factory=dict)

    def enabled_services(self) -> List[str]:
        return [name for name, entry in self.services.items() if entry.enabled]


@dataclass(frozen=True)
class NetworkSpec:
    name: str
    driver: str = "bridge"
    attachable: bool = False


@dataclass(frozen=True)
class RuntimeTopology:
    """Core/landing groups and networks from runtime config plus rendered units."""

    core_services: Tuple[str, ...]
    landing_services: Tuple[str, ...]
    networks: Tuple[NetworkSpec, ...] = ()
    units: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ResolvedGroups:
    core: Tuple[str, ...]
    landing: Tuple[str, ...]
    selected: Tuple[str, ...]
    warnings: Tuple[str, ...] = ()

    def ordered(self) -> List[Tuple[str, Tuple[str, ...]]]:
        return [("core", self.core), ("landing", self.landing), ("selected", self.selected)]

    def all_units(self) -> List[str]:
        return list(self.core) + list(self.landing) + list(self.selected)


@dataclass
class CredentialSet:
    values: Dict[str, str] = field(default_factory=dict)
    sources_loaded: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    missing_critical: List[str] = field(default_factory=list)
    placeholder_keys: List[str] = field(default_factory=list)

    @property
    def insecure_keys(self) -> List[str]:
        return sorted(set(self.missing_critical) | set(self.placeholder_keys))


@dataclass(frozen=True)
class UnitStatus:
    unit: str
    state: str
    health: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.state == "running"


@dataclass(frozen=True)
class GroupStartResult:
    group: str
    units: Tuple[str, ...]
    returncode: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass
class DeploymentAttempt:
    """Ephemeral record of one orchestration run."""

    attempt_id: str
    tenant_id: str
    started_at: str
    state: DeployState = DeployState.INIT
    groups_attempted: List[str] = field(default_factory=list)
    per_unit_health: Dict[str, HealthState] = field(default_factory=dict)
    verdict: Optional[Verdict] = None
    warnings: List[str] = field(default_factory=list)
    insecure_credentials: List[str] = field(default_factory=list)
    transitions: List[Dict[str, str]] = field(default_factory=list)
    failed_state: Optional[DeployState] = None
    error: Optional[str] = None
    finished_at: Optional[str] = None
    snapshot_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "tenant_id": self.tenant_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "state": self.state.value,
            "groups_attempted": list(self.groups_attempted),
            "per_unit_health": {unit: health.value for unit, health in self.per_unit_health.items()},
            "verdict": self.verdict.value if self.verdict else None,
            "warnings": list(self.warnings),
            "insecure_credentials": list(self.insecure_credentials),
            "transitions": list(self.transitions),
            "failed_state": self.failed_state.value if self.failed_state else None,
            "error": self.error,
            "snapshot_id": self.snapshot_id,
        }


@dataclass(frozen=True)
class DeploymentSnapshot:
    snapshot_id: str
    created_at: str
    path: str
    reason: str = "manual"
    fingerprint: Optional[str] = None
    source_attempt_id: Optional[str] = None
    source_verdict: Optional[str] = None
    forensic: bool = False
    files: Tuple[str, ...] = ()

    def to_metadata(self) -> Dict[str, Any]:
        metadata = asdict(self)
        metadata.pop("path")
        metadata["files"] = list(self.files)
        return metadata


@dataclass
class RollbackResult:
    target_id: str
    status: str = "pending"
    forensic_snapshot_id: Optional[str] = None
    stop_mode: Optional[str] = None
    running_units: List[str] = field(default_factory=list)
    message: Optional[str] = None


@dataclass
class MonitorRecord:
    timestamp: str
    hostname: str
    health: Dict[str, Any]
    resources: Dict[str, Optional[float]]
    network: Dict[str, bool]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Deadline:
    """Attempt-level time budget shared by every blocking call."""

    def __init__(self, seconds: Optional[float], clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._expires_at = None
        self.start()

    def start(self):
        """Starts the budget over from now."""
        self._expires_at = None if self.seconds is None else self._clock() + self.seconds

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def bound(self, timeout: Optional[float]) -> Optional[float]:
        remaining = self.remaining()
        if remaining is None:
            return timeout
        if timeout is None:
            return remaining
        return min(timeout, remaining)
