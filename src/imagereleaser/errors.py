"""Domain errors for ImageReleaser."""

from typing import Optional


class ReleaseError(RuntimeError):
    """Raised when the release cannot continue safely."""

    stage: Optional[str] = None

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if stage is not None:
            self.stage = stage


class BuildFailure(ReleaseError):
    """Compilation or image build failed. No image is produced."""

    stage = "build"


class AuthFailure(ReleaseError):
    """Registry rejected the credentials. Requires a credential fix."""

    stage = "auth"


class PushFailure(ReleaseError):
    """Transient push error. The caller may retry a bounded number of times."""

    stage = "push"


class ConflictError(ReleaseError):
    """The workload descriptor is malformed."""

    stage = "render"


class SecretNotFound(ReleaseError):
    stage = "render"


class InitStepFailure(ReleaseError):
    """The volume init step did not succeed, so the workload was not started."""

    stage = "init"
