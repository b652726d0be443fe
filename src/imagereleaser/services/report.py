"""Release run report written as JSON next to the rendered descriptor."""

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class RunReportService:
    """Collects stage outcomes so a failed run names the stage that failed."""

    def __init__(self, report_file: str, logger):
        self.report_file = report_file
        self.logger = logger
        self.report: Dict[str, Any] = {
            "run_id": None,
            "status": "running",
            "started_at": None,
            "finished_at": None,
            "duration_seconds": None,
            "ref": {},
            "image": None,
            "stages": [],
            "artifacts": {},
            "failed_stage": None,
            "error": None,
        }

    def start_run(self, run_id: str):
        self.report["run_id"] = run_id
        self.report["status"] = "running"
        self.report["started_at"] = self._now()
        self.write()

    def set_ref(self, branch_slug: str, tag_value: Optional[str]):
        self.report["ref"] = {"branch_slug": branch_slug, "tag": tag_value}
        self.write()

    def set_image(self, reference: Optional[str], digest: Optional[str] = None):
        self.report["image"] = {"reference": reference, "digest": digest}
        self.write()

    def stage_started(self, stage: str, details: Optional[Dict[str, Any]] = None):
        self.report["stages"].append(
            {
                "name": stage,
                "status": "running",
                "started_at": self._now(),
                "finished_at": None,
                "duration_seconds": None,
                "details": details or {},
                "error": None,
            }
        )
        self.write()

    def stage_finished(
        self,
        stage: str,
        status: str,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ):
        for entry in reversed(self.report["stages"]):
            if entry["name"] == stage and entry["status"] == "running":
                entry["status"] = status
                entry["finished_at"] = self._now()
                entry["error"] = error
                if details:
                    entry["details"].update(details)
                started_at = datetime.fromisoformat(entry["started_at"])
                finished_at = datetime.fromisoformat(entry["finished_at"])
                entry["duration_seconds"] = (finished_at - started_at).total_seconds()
                break
        self.write()

    def add_artifact(self, key: str, value: str):
        self.report["artifacts"][key] = value
        self.write()

    def finalize(self, status: str, error: Optional[str] = None, failed_stage: Optional[str] = None):
        self.report["status"] = status
        self.report["failed_stage"] = failed_stage
        self.report["finished_at"] = self._now()
        if self.report.get("started_at"):
            started_at = datetime.fromisoformat(self.report["started_at"])
            finished_at = datetime.fromisoformat(self.report["finished_at"])
            self.report["duration_seconds"] = (finished_at - started_at).total_seconds()
        self.report["error"] = error
        self.write()

    def write(self):
        directory = os.path.dirname(self.report_file) or "."
        try:
            os.makedirs(directory, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(prefix="release-report-", suffix=".json", dir=directory)
        except OSError as exc:
            self.logger.warning("Could not write report file '%s': %s", self.report_file, exc)
            return

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
