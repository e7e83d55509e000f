"""Deployment report generation service."""

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from paasdeploy.models import DeploymentAttempt, ResolvedGroups


class ReportService:
    """Collects per-state progress, warnings and the verdict into a JSON report."""

    def __init__(self, report_file: Optional[str], logger):
        self.report_file = report_file
        self.logger = logger
        self.report: Dict[str, Any] = {
            "attempt_id": None,
            "tenant_id": None,
            "status": "running",
            "started_at": None,
            "finished_at": None,
            "duration_seconds": None,
            "metadata": {},
            "groups": {"core": [], "landing": [], "selected": []},
            "states": [],
            "warnings": [],
            "insecure_credentials": [],
            "per_unit_health": {},
            "verdict": None,
            "failed_state": None,
            "error": None,
        }

    def start_run(self, attempt_id: str, tenant_id: str, metadata: Dict[str, Any]):
        self.report["attempt_id"] = attempt_id
        self.report["tenant_id"] = tenant_id
        self.report["status"] = "running"
        self.report["started_at"] = self._now()
        self.report["metadata"] = metadata
        self.write()

    def set_groups(self, groups: ResolvedGroups):
        self.report["groups"] = {name: list(units) for name, units in groups.ordered()}
        self.write()

    def add_warnings(self, warnings: Iterable[str]):
        for warning in warnings:
            if warning not in self.report["warnings"]:
                self.report["warnings"].append(warning)
        self.write()

    def state_started(self, state_name: str, details: Optional[Dict[str, Any]] = None):
        self.report["states"].append(
            {
                "name": state_name,
                "status": "running",
                "started_at": self._now(),
                "finished_at": None,
                "duration_seconds": None,
                "details": details or {},
                "error": None,
            }
        )
        self.write()

    def state_finished(
        self,
        state_name: str,
        status: str,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ):
        for state in reversed(self.report["states"]):
            if state["name"] == state_name and state["status"] == "running":
                state["status"] = status
                state["finished_at"] = self._now()
                state["error"] = error
                if details:
                    state["details"].update(details)
                started_at = datetime.fromisoformat(state["started_at"])
                finished_at = datetime.fromisoformat(state["finished_at"])
                state["duration_seconds"] = (finished_at - started_at).total_seconds()
                break
        self.write()

    def finalize(self, attempt: DeploymentAttempt):
        self.report["status"] = attempt.verdict.value if attempt.verdict else "unknown"
        self.report["verdict"] = self.report["status"]
        self.report["finished_at"] = self._now()
        if self.report.get("started_at"):
            started_at = datetime.fromisoformat(self.report["started_at"])
            finished_at = datetime.fromisoformat(self.report["finished_at"])
            self.report["duration_seconds"] = (finished_at - started_at).total_seconds()
        self.report["per_unit_health"] = {
            unit: health.value for unit, health in attempt.per_unit_health.items()
        }
        self.report["insecure_credentials"] = list(attempt.insecure_credentials)
        self.report["failed_state"] = attempt.failed_state.value if attempt.failed_state else None
        self.report["error"] = attempt.error
        self.report["snapshot_id"] = attempt.snapshot_id
        self.add_warnings(attempt.warnings)

    def write(self):
        if not self.report_file:
            return

        os.makedirs(os.path.dirname(self.report_file) or ".", exist_ok=True)

        fd, temp_path = tempfile.mkstemp(
            prefix="deploy-report-",
            suffix=".json",
            dir=os.path.dirname(self.report_file) or ".",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                json.dump(self.report, file_obj, indent=2, sort_keys=True)
                file_obj.write("\n")
            os.replace(temp_path, self.report_file)
        except OSError as exc:
            self.logger.warning("Could not write report file '%s': %s", self.report_file, exc)
            try:
                os.remove(temp_path)
            except OSError:
                pass

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
