import sys

import pytest

from imagereleaser.errors import AuthFailure, ReleaseError
from imagereleaser.services.command_runner import CommandRunner


class DummyLogger:
    def __init__(self):
        self.messages = []

    def debug(self, *args, **_kwargs):
        self.messages.append(args)

    def warning(self, *args, **_kwargs):
        self.messages.append(args)


def test_command_runner_raises_with_stderr():
    runner = CommandRunner(logger=DummyLogger())

    with pytest.raises(ReleaseError, match="boom"):
        runner.run(
            [sys.executable, "-c", "import sys; sys.stderr.write('boom'); sys.exit(1)"],
            check=True,
            capture_output=True,
        )


def test_command_runner_returns_when_check_disabled():
    runner = CommandRunner(logger=DummyLogger())

    result = runner.run(
        [sys.executable, "-c", "import sys; sys.exit(1)"],
        check=False,
        capture_output=True,
    )

    assert result.returncode == 1


def test_command_runner_passes_stdin_without_logging_it():
    logger = DummyLogger()
    runner = CommandRunner(logger=logger)

    result = runner.run(
        [sys.executable, "-c", "import sys; sys.stdin.read()[::-1] == 'terc3s' or sys.exit(3)"],
        capture_output=True,
        input_text="s3cret",
    )

    assert result.returncode == 0
    assert all("s3cret" not in " ".join(str(part) for part in message) for message in logger.messages)


def test_command_runner_uses_cwd_and_extra_env(tmp_path):
    runner = CommandRunner(logger=DummyLogger())

    result = runner.run(
        [
            sys.executable,
            "-c",
            "import os; print(os.getcwd()); print(os.environ['CARGO_HOME'])",
        ],
        capture_output=True,
        cwd=str(tmp_path),
        env={"CARGO_HOME": "/cache/.cargo"},
    )

    lines = result.stdout.splitlines()
    assert lines[0] == str(tmp_path.resolve()) or lines[0] == str(tmp_path)
    assert lines[1] == "/cache/.cargo"


def test_command_runner_retries_before_success(tmp_path, monkeypatch):
    runner = CommandRunner(logger=DummyLogger())
    monkeypatch.chdir(tmp_path)

    command = [
        sys.executable,
        "-c",
        (
            "from pathlib import Path;"
            "p=Path('retry-counter.txt');"
            "n=int(p.read_text()) if p.exists() else 0;"
            "p.write_text(str(n+1));"
            "import sys; sys.exit(1 if n == 0 else 0)"
        ),
    ]

    result = runner.run(
        command,
        check=True,
        capture_output=True,
        retry_count=1,
        retry_backoff_seconds=0.0,
    )

    assert result.returncode == 0


def test_command_runner_raises_requested_error_class():
    runner = CommandRunner(logger=DummyLogger())

    with pytest.raises(AuthFailure, match="not found"):
        runner.run(["definitely-not-a-real-command-xyz"], error_cls=AuthFailure)


def test_command_runner_timeout_raises_error():
    runner = CommandRunner(logger=DummyLogger())

    with pytest.raises(ReleaseError, match="timed out"):
        runner.run(
            [sys.executable, "-c", "import time; time.sleep(2)"],
            check=True,
            capture_output=True,
            timeout=0.1,
        )
