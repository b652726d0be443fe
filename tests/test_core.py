import json
import os
import subprocess
import zipfile
from pathlib import Path

import pytest
import yaml

from imagereleaser.core import ReleasePipeline
from imagereleaser.errors import ReleaseError
from imagereleaser.models import MainStep, SecretBinding, SecretRef, VolumeBinding, VolumeSource
from imagereleaser.services.config_loader import DeploymentSettings

TAG_ENV = {"CI_COMMIT_TAG": "0.1.1", "CI_COMMIT_REF_NAME": "0.1.1", "CI_COMMIT_REF_SLUG": "0-1-1"}
BRANCH_ENV = {"CI_COMMIT_TAG": "", "CI_COMMIT_REF_NAME": "main", "CI_COMMIT_REF_SLUG": "main"}
DIGEST = "sha256:" + "c" * 64


class FakeRunner:
    """Stands in for cargo, docker and kubectl."""

    def __init__(self, fail_build=False, fail_login=False, push_failures=0):
        self.calls = []
        self.fail_build = fail_build
        self.fail_login = fail_login
        self.push_failures = push_failures

    def commands(self, *prefix):
        return [cmd for cmd in self.calls if tuple(cmd[: len(prefix)]) == prefix]

    def run(self, cmd, check=True, capture_output=False, **kwargs):
        self.calls.append(list(cmd))
        if cmd[0] == "cargo":
            if self.fail_build:
                raise ReleaseError("Command failed (101): cargo build --release")
            cargo_home = Path(kwargs["env"]["CARGO_HOME"])
            (cargo_home / "registry" / "cache").mkdir(parents=True, exist_ok=True)
            (cargo_home / "registry" / "cache" / "serde.crate").write_text("crate", encoding="utf-8")
            artifact = Path(kwargs["cwd"]) / "target" / "release" / "app"
            artifact.parent.mkdir(parents=True, exist_ok=True)
            artifact.write_text("binary", encoding="utf-8")
        if cmd[:2] == ["docker", "login"] and self.fail_login:
            raise ReleaseError("Command failed (1): docker login\nunauthorized")
        if cmd[:2] == ["docker", "push"]:
            if self.push_failures:
                self.push_failures -= 1
                raise ReleaseError("Command failed (1): docker push\nconnection reset by peer")
            return subprocess.CompletedProcess(cmd, 0, stdout=f"digest: {DIGEST} size: 1\n", stderr="")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")


def _deployment():
    return DeploymentSettings(
        name="samousse",
        namespace="samousse",
        pull_secret="regcred",
        secrets=[SecretBinding("DISCORD_TOKEN", SecretRef("samousse-secret", "discord_token"))],
        volumes=[
            VolumeBinding("samousse-vol-config", "/config", VolumeSource.CONFIG, "samousse-config", True),
            VolumeBinding("samousse-vol", "/cache", VolumeSource.PERSISTENT, "samousse-pvc"),
        ],
    )


def build_pipeline(tmp_path, environ, runner, **kwargs):
    source = tmp_path / "src"
    source.mkdir(exist_ok=True)
    options = dict(
        registry="registry.example.com",
        repository="github/samousse-rs/app",
        source_dir=str(source),
        cache_dir=str(tmp_path / "shared-cache"),
        deployment=_deployment(),
        registry_user="ci-user",
        registry_password="s3cret",
        retry_backoff_seconds=0.0,
        environ=environ,
    )
    options.update(kwargs)
    pipeline = ReleasePipeline(**options)
    pipeline.command_runner = runner
    return pipeline


def _manifest(pipeline):
    return yaml.safe_load(Path(pipeline.descriptor_file).read_text(encoding="utf-8"))


def _report(pipeline):
    return json.loads(Path(pipeline.report_file).read_text(encoding="utf-8"))


def test_tagged_release_pushes_versioned_image_and_renders_it(tmp_path):
    runner = FakeRunner()
    pipeline = build_pipeline(tmp_path, TAG_ENV, runner)

    assert pipeline.run() == 0

    assert runner.commands("docker", "push") == [
        ["docker", "push", "registry.example.com/github/samousse-rs/app:0.1.1"]
    ]
    assert runner.commands("docker", "build")[0][2] == "--no-cache"
    container = _manifest(pipeline)["spec"]["template"]["spec"]["containers"][0]
    assert container["image"] == "registry.example.com/github/samousse-rs/app:0.1.1"
    report = _report(pipeline)
    assert report["status"] == "success"
    assert report["image"] == {"reference": "registry.example.com/github/samousse-rs/app:0.1.1", "digest": DIGEST}
    assert (tmp_path / "shared-cache" / "tag@0.1.1.zip").exists()


def test_branch_release_uses_floating_tag_only(tmp_path):
    runner = FakeRunner()
    pipeline = build_pipeline(tmp_path, BRANCH_ENV, runner)

    assert pipeline.run() == 0

    pushed = [cmd[2] for cmd in runner.commands("docker", "push")]
    assert pushed == ["registry.example.com/github/samousse-rs/app:latest"]
    assert _manifest(pipeline)["spec"]["template"]["spec"]["containers"][0]["image"].endswith(":latest")
    assert (tmp_path / "shared-cache" / "main.zip").exists()
    assert not (tmp_path / "shared-cache" / "tag@0.1.1.zip").exists()


def test_rendered_init_container_precedes_workload(tmp_path):
    pipeline = build_pipeline(tmp_path, TAG_ENV, FakeRunner())

    assert pipeline.run() == 0

    pod = _manifest(pipeline)["spec"]["template"]["spec"]
    assert pod["initContainers"][0]["command"][-1] == "chown -R root:root /cache && chmod 700 /cache"
    assert pod["containers"][0]["name"] == "samousse"


def test_build_failure_stops_before_publish_and_skips_cache_write(tmp_path):
    runner = FakeRunner(fail_build=True)
    pipeline = build_pipeline(tmp_path, BRANCH_ENV, runner)

    assert pipeline.run() == 2

    assert runner.commands("docker") == []
    assert not (tmp_path / "shared-cache" / "main.zip").exists()
    assert not os.path.exists(pipeline.descriptor_file)
    report = _report(pipeline)
    assert report["failed_stage"] == "build"
    assert report["status"] == "failed"


def test_corrupt_shared_cache_still_builds_from_cold(tmp_path):
    archive = tmp_path / "shared-cache" / "main.zip"
    archive.parent.mkdir()
    member = ".cargo/registry/cache/stale.crate"
    with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED) as zip_file:
        zip_file.writestr(member, "x" * 4096)
    data = bytearray(archive.read_bytes())
    data[30 + len(member) : 32 + len(member)] = b"\xff\xff"
    archive.write_bytes(bytes(data))
    runner = FakeRunner()
    pipeline = build_pipeline(tmp_path, BRANCH_ENV, runner)

    assert pipeline.run() == 0

    assert len(runner.commands("cargo")) == 1
    assert not (tmp_path / "src" / member).exists()
    with zipfile.ZipFile(archive) as zip_file:
        assert ".cargo/registry/cache/serde.crate" in zip_file.namelist()


def test_pre_1980_cache_file_does_not_fail_a_successful_build(tmp_path):
    index = tmp_path / "src" / ".cargo" / "registry" / "index" / "config.json"
    index.parent.mkdir(parents=True)
    index.write_text("{}", encoding="utf-8")
    os.utime(index, (0, 0))
    pipeline = build_pipeline(tmp_path, BRANCH_ENV, FakeRunner())

    assert pipeline.run() == 0

    assert _report(pipeline)["status"] == "success"
    assert (tmp_path / "shared-cache" / "main.zip").exists()


def test_invalid_ci_ref_slug_fails_ref_detection(tmp_path):
    environ = dict(BRANCH_ENV, CI_COMMIT_REF_SLUG="tag@0-1-1")
    runner = FakeRunner()
    pipeline = build_pipeline(tmp_path, environ, runner)

    assert pipeline.run() == 1

    assert runner.calls == []
    assert _report(pipeline)["failed_stage"] == "detect_ref"


def test_auth_failure_is_not_retried(tmp_path):
    runner = FakeRunner(fail_login=True)
    pipeline = build_pipeline(tmp_path, TAG_ENV, runner, push_retry_count=3)

    assert pipeline.run() == 3

    assert len(runner.commands("docker", "login")) == 1
    assert runner.commands("docker", "push") == []
    assert _report(pipeline)["failed_stage"] == "auth"


def test_missing_credentials_fail_in_auth_stage(tmp_path):
    runner = FakeRunner()
    pipeline = build_pipeline(tmp_path, TAG_ENV, runner, registry_password=None)

    assert pipeline.run() == 3
    assert runner.calls == []


def test_push_failure_is_retried_without_rebuilding(tmp_path):
    runner = FakeRunner(push_failures=1)
    pipeline = build_pipeline(tmp_path, TAG_ENV, runner, push_retry_count=1)

    assert pipeline.run() == 0

    assert len(runner.commands("docker", "push")) == 2
    assert len(runner.commands("docker", "build")) == 1


def test_push_failure_after_retries_reports_push_stage(tmp_path):
    runner = FakeRunner(push_failures=5)
    pipeline = build_pipeline(tmp_path, TAG_ENV, runner, push_retry_count=1)

    assert pipeline.run() == 4

    assert len(runner.commands("docker", "push")) == 2
    assert _report(pipeline)["failed_stage"] == "push"


def test_mount_path_conflict_fails_render_stage(tmp_path):
    deployment = _deployment()
    deployment.volumes.append(
        VolumeBinding("second-cache", "/cache", VolumeSource.CONFIG, "other-config", True)
    )
    pipeline = build_pipeline(tmp_path, BRANCH_ENV, FakeRunner(), deployment=deployment)

    assert pipeline.run() == 5
    assert _report(pipeline)["failed_stage"] == "render"


def test_dry_run_renders_without_running_commands(tmp_path):
    runner = FakeRunner()
    pipeline = build_pipeline(tmp_path, TAG_ENV, runner, dry_run=True, registry_password=None)

    assert pipeline.run() == 0

    assert runner.calls == []
    assert _manifest(pipeline)["spec"]["template"]["spec"]["containers"][0]["image"].endswith(":0.1.1")


def test_apply_only_runs_for_tagged_releases(tmp_path):
    (tmp_path / "tagged").mkdir()
    (tmp_path / "branch").mkdir()
    tagged_runner = FakeRunner()
    branch_runner = FakeRunner()
    tagged = build_pipeline(tmp_path / "tagged", TAG_ENV, tagged_runner, apply=True)
    branch = build_pipeline(tmp_path / "branch", BRANCH_ENV, branch_runner, apply=True)

    assert tagged.run() == 0
    assert branch.run() == 0

    assert tagged_runner.commands("kubectl", "apply") == [
        ["kubectl", "apply", "-f", tagged.descriptor_file, "-n", "samousse"]
    ]
    assert branch_runner.commands("kubectl") == []


def test_render_descriptor_is_idempotent(tmp_path):
    pipeline = build_pipeline(tmp_path, TAG_ENV, FakeRunner())
    ref = pipeline.ref_detector.detect()
    identifier = pipeline.resolve_identifier(ref)

    first = pipeline.render_descriptor(identifier)
    second = pipeline.render_descriptor(identifier)

    assert first == second
    assert first.main_step == MainStep(name="samousse")


def test_invalid_pipeline_settings_are_rejected(tmp_path):
    with pytest.raises(ReleaseError, match="repository is required"):
        ReleasePipeline(registry="r", repository="")
    with pytest.raises(ReleaseError, match="Invalid cache policy"):
        ReleasePipeline(registry="r", repository="app", cache_policy="push")
