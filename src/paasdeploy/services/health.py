"""Concurrent per-unit health verification."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, Mapping, Optional, Sequence

from paasdeploy.constants import DEFAULT_HEALTH_INTERVAL
from paasdeploy.errors import DeadlineExceeded, DeployError
from paasdeploy.models import Deadline, HealthState, UnitStatus, Verdict


class HealthVerifier:
    """Polls unit health with a fixed interval and a per-unit time budget.

    Every unit gets its own poll loop on a worker thread so a slow unit never
    delays the verdict of the others; `verify` joins all loops before
    returning. Running out of budget yields `TIMED_OUT` for a unit seen running
    and `UNHEALTHY` for one that never was; neither raises.
    """

    def __init__(
        self,
        runtime,
        logger,
        poll_interval: float = DEFAULT_HEALTH_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        max_workers: Optional[int] = None,
    ):
        self.runtime = runtime
        self.logger = logger
        self.poll_interval = poll_interval
        self.clock = clock
        self.max_workers = max_workers
        self._cancelled = threading.Event()

    def cancel(self):
        self._cancelled.set()

    @staticmethod
    def classify(status: Optional[UnitStatus]) -> Optional[HealthState]:
        """Maps a runtime report to a final state, or None while it is still settling."""
        if status is None:
            return None
        if status.health == "healthy":
            return HealthState.HEALTHY
        if status.health == "unhealthy":
            return HealthState.UNHEALTHY
        if status.state in ("exited", "dead"):
            return HealthState.UNHEALTHY
        if status.is_running and status.health is None:
            return HealthState.NO_HEALTHCHECK
        return None

    def poll_unit(self, unit: str, timeout: float, deadline: Optional[Deadline] = None) -> HealthState:
        budget = timeout if deadline is None else deadline.bound(timeout)
        give_up_at = self.clock() + (budget or 0.0)
        seen_running = False

        while True:
            try:
                status = self.runtime.unit_status(unit)
            except DeadlineExceeded:
                self.logger.warning("Deployment deadline reached while polling %s", unit)
                return self._out_of_time(unit, seen_running)
            except DeployError as exc:
                self.logger.warning("Health query for %s failed, will retry: %s", unit, exc)
                status = None

            if status is not None and status.is_running:
                seen_running = True
            health = self.classify(status)
            if health is not None:
                self.logger.debug("Unit %s settled as %s", unit, health.value)
                return health

            remaining = give_up_at - self.clock()
            if remaining <= 0:
                self.logger.warning("Unit %s did not report healthy within %.0fs", unit, timeout)
                return self._out_of_time(unit, seen_running)
            if self._cancelled.wait(min(self.poll_interval, remaining)):
                return self._out_of_time(unit, seen_running)

    def _out_of_time(self, unit: str, seen_running: bool) -> HealthState:
        # Only a unit the runtime reported running can still be "starting".
        if seen_running:
            return HealthState.TIMED_OUT
        self.logger.warning("Unit %s was never reported running", unit)
        return HealthState.UNHEALTHY

    def verify(
        self,
        units: Sequence[str],
        per_unit_timeout: float,
        deadline: Optional[Deadline] = None,
    ) -> Dict[str, HealthState]:
        ordered_units = list(dict.fromkeys(units))
        if not ordered_units:
            return {}

        results: Dict[str, HealthState] = {}
        workers = self.max_workers or len(ordered_units)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="health") as pool:
            futures = {
                pool.submit(self.poll_unit, unit, per_unit_timeout, deadline): unit
                for unit in ordered_units
            }
            for future in as_completed(futures):
                results[futures[future]] = future.result()

        return {unit: results[unit] for unit in ordered_units}

    @staticmethod
    def aggregate(health: Mapping[str, HealthState]) -> Verdict:
        states = set(health.values())
        if HealthState.UNHEALTHY in states:
            return Verdict.FAILED
        if HealthState.TIMED_OUT in states:
            return Verdict.PARTIAL_FAILURE
        return Verdict.SUCCEEDED
