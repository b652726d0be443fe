"""Application build stage."""

import os
import shlex
from typing import Callable, List, Sequence, Union

from imagereleaser.errors import BuildFailure, ReleaseError
from imagereleaser.errors_catalog import actionable_error
from imagereleaser.models import Artifact

DEFAULT_BUILD_COMMAND = ("cargo", "build", "--release")


class ArtifactBuilder:
    """Compiles the source tree into a release artifact."""

    def __init__(
        self,
        logger,
        console,
        run_cmd: Callable,
        artifact_path: str,
        build_command: Union[str, Sequence[str], None] = None,
    ):
        self.logger = logger
        self.console = console
        self.run_cmd = run_cmd
        self.artifact_path = artifact_path
        self.build_command = self._normalize_command(build_command)

    @staticmethod
    def _normalize_command(command) -> List[str]:
        if not command:
            return list(DEFAULT_BUILD_COMMAND)
        if isinstance(command, str):
            return shlex.split(command)
        return [str(part) for part in command]

    def build(self, source_dir: str, cache_session=None) -> Artifact:
        self.console.print(f"[blue]Building {source_dir}...[/blue]")
        env = {}
        if cache_session is not None:
            env["CARGO_HOME"] = os.path.join(cache_session.workspace, ".cargo")

        try:
            self.run_cmd(self.build_command, check=True, cwd=source_dir, env=env or None)
        except ReleaseError as exc:
            raise BuildFailure(
                f"{actionable_error('build_failed', source_dir=source_dir)}\n{exc}"
            ) from exc

        artifact = os.path.join(source_dir, self.artifact_path)
        if not os.path.isfile(artifact):
            raise BuildFailure(actionable_error("artifact_missing", path=artifact))

        # only a successful build may write back to the cache
        if cache_session is not None:
            cache_session.mark_succeeded()

        self.logger.info("Built artifact %s", artifact)
        self.console.print("[green]Build succeeded.[/green]")
        return Artifact(path=artifact, source_dir=source_dir)

