"""Release ref detection from CI variables or the local git checkout."""

import os
import re
from typing import Mapping, Optional

from imagereleaser.errors import ReleaseError
from imagereleaser.models import ReleaseRef

SLUG_MAX_LENGTH = 63
_NON_SLUG_CHARS = re.compile(r"[^a-z0-9]")


def slugify(value: str) -> str:
    """Same rule as GitLab's ``CI_COMMIT_REF_SLUG``."""
    slug = _NON_SLUG_CHARS.sub("-", value.lower())[:SLUG_MAX_LENGTH]
    return slug.strip("-")


class RefDetector:
    """Builds the ``ReleaseRef`` for the current pipeline invocation."""

    def __init__(self, logger, run_cmd, environ: Optional[Mapping[str, str]] = None):
        self.logger = logger
        self.run_cmd = run_cmd
        self.environ = os.environ if environ is None else environ

    def detect(self, tag: Optional[str] = None, branch: Optional[str] = None) -> ReleaseRef:
        in_ci = bool(self.environ.get("CI_COMMIT_REF_NAME"))

        tag_value = tag or self.environ.get("CI_COMMIT_TAG") or None
        if tag_value is None and not in_ci and branch is None:
            tag_value = self._git_exact_tag()

        branch_slug = self._branch_slug(branch)
        if not branch_slug and tag_value:
            # tag pipelines run on a detached HEAD
            branch_slug = slugify(tag_value)
        if not branch_slug:
            raise ReleaseError(
                "Could not determine the branch. Pass --branch or run inside a CI job.",
                stage="detect_ref",
            )

        ref = ReleaseRef(branch_slug=branch_slug, tag_value=tag_value)
        self.logger.info(
            "Release ref: branch=%s tag=%s",
            ref.branch_slug,
            ref.tag_value or "<none>",
        )
        return ref

    def _branch_slug(self, branch: Optional[str]) -> str:
        if branch:
            return slugify(branch)
        if self.environ.get("CI_COMMIT_REF_SLUG"):
            return self.environ["CI_COMMIT_REF_SLUG"]
        if self.environ.get("CI_COMMIT_REF_NAME"):
            return slugify(self.environ["CI_COMMIT_REF_NAME"])

        result = self.run_cmd(
            ["git", "rev-parse", "--abbrev-ref", "HEAD"],
            check=False,
            capture_output=True,
        )
        name = (result.stdout or "").strip() if result.returncode == 0 else ""
        if name == "HEAD":
            return ""
        return slugify(name)

    def _git_exact_tag(self) -> Optional[str]:
        result = self.run_cmd(
            ["git", "describe", "--tags", "--exact-match", "HEAD"],
            check=False,
            capture_output=True,
        )
        if result.returncode != 0:
            return None
        return (result.stdout or "").strip() or None
