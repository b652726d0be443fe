import json

from imagereleaser.services.report import RunReportService


class DummyLogger:
    def warning(self, *_args, **_kwargs):
        return None


def test_report_records_failed_stage(tmp_path):
    report_file = tmp_path / "release-report.json"
    service = RunReportService(str(report_file), logger=DummyLogger())

    service.start_run("run-123")
    service.set_ref("main", None)
    service.stage_started("build")
    service.stage_finished("build", "success")
    service.stage_started("publish")
    service.stage_finished("publish", "failed", error="push failed")
    service.finalize("failed", error="push failed", failed_stage="push")

    data = json.loads(report_file.read_text(encoding="utf-8"))

    assert data["run_id"] == "run-123"
    assert data["status"] == "failed"
    assert data["failed_stage"] == "push"
    assert data["ref"] == {"branch_slug": "main", "tag": None}
    assert [stage["status"] for stage in data["stages"]] == ["success", "failed"]
