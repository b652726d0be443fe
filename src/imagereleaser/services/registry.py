"""Container registry client backed by the docker CLI."""

import re
from dataclasses import dataclass
from typing import Callable, Optional

from imagereleaser.errors import AuthFailure, BuildFailure, PushFailure, ReleaseError
from imagereleaser.errors_catalog import actionable_error
from imagereleaser.models import Credentials, ImageIdentifier

_DIGEST_RE = re.compile(r"digest:\s*(sha256:[0-9a-f]{64})")


@dataclass(frozen=True)
class RegistrySession:
    registry: str
    username: str


class DockerRegistryClient:
    """Authenticates, builds and pushes images with ``docker``."""

    def __init__(self, logger, run_cmd: Callable, docker_cmd: str = "docker"):
        self.logger = logger
        self.run_cmd = run_cmd
        self.docker_cmd = docker_cmd

    def authenticate(self, registry: str, credentials: Credentials) -> RegistrySession:
        cmd = [self.docker_cmd, "login", "-u", credentials.username, "--password-stdin"]
        if registry:
            cmd.insert(2, registry)
        try:
            self.run_cmd(cmd, check=True, capture_output=True, input_text=credentials.password)
        except ReleaseError as exc:
            raise AuthFailure(
                f"{actionable_error('registry_auth_failed', registry=registry or 'default registry')}\n{exc}"
            ) from exc
        self.logger.info("Logged in to %s as %s", registry or "default registry", credentials.username)
        return RegistrySession(registry=registry, username=credentials.username)

    def build_image(self, context_dir: str, identifier: ImageIdentifier, no_cache: bool = True):
        cmd = [self.docker_cmd, "build"]
        if no_cache:
            cmd.append("--no-cache")
        cmd += ["-t", identifier.reference, context_dir]
        try:
            self.run_cmd(cmd, check=True)
        except ReleaseError as exc:
            raise BuildFailure(
                actionable_error(
                    "image_build_failed",
                    reference=identifier.reference,
                    context_dir=context_dir,
                )
                + f"\n{exc}",
                stage="image",
            ) from exc

    def push(self, session: RegistrySession, identifier: ImageIdentifier) -> Optional[str]:
        """Push once and return the manifest digest reported by docker, if any."""
        if session.registry != identifier.registry:
            raise AuthFailure(
                f"Session is for registry '{session.registry}', "
                f"but {identifier.reference} targets '{identifier.registry}'."
            )
        try:
            result = self.run_cmd(
                [self.docker_cmd, "push", identifier.reference],
                check=True,
                capture_output=True,
            )
        except ReleaseError as exc:
            raise PushFailure(
                f"{actionable_error('push_failed', reference=identifier.reference)}\n{exc}"
            ) from exc

        match = _DIGEST_RE.search(result.stdout or "")
        return match.group(1) if match else None
