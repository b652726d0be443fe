"""Shared domain models for ImageReleaser."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from imagereleaser.errors import ReleaseError

FLOATING_TAG = "latest"

_DOCKER_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_BRANCH_SLUG_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")


@dataclass(frozen=True)
class ReleaseRef:
    """Version-control event that triggered the pipeline.

    A ref is tagged exactly when ``tag_value`` is set.
    """

    branch_slug: str
    tag_value: Optional[str] = None

    def __post_init__(self):
        if not _BRANCH_SLUG_RE.match(self.branch_slug or ""):
            raise ReleaseError(
                f"Branch slug `{self.branch_slug}` is not a valid ref slug "
                "(lowercase letters, digits and inner `-`; max 63 chars)."
            )
        if self.tag_value is None:
            return
        if not self.tag_value:
            raise ReleaseError("Tag value must not be empty for a tagged release.")
        if not _DOCKER_TAG_RE.match(self.tag_value):
            raise ReleaseError(
                f"Tag `{self.tag_value}` is not a valid image tag "
                "(allowed: letters, digits, `_`, `.`, `-`; max 128 chars)."
            )

    @property
    def is_tagged(self) -> bool:
        return self.tag_value is not None


class CachePolicy(str, Enum):
    READ_ONLY = "pull"
    READ_WRITE = "pull-push"


@dataclass(frozen=True)
class CacheScope:
    key: str
    policy: CachePolicy = CachePolicy.READ_WRITE


@dataclass(frozen=True)
class ImageIdentifier:
    registry: str
    repository: str
    tag: str

    @property
    def name(self) -> str:
        if self.registry:
            return f"{self.registry}/{self.repository}"
        return self.repository

    @property
    def reference(self) -> str:
        return f"{self.name}:{self.tag}"

    def __str__(self) -> str:
        return self.reference


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class Artifact:
    path: str
    source_dir: str


@dataclass(frozen=True)
class PublishResult:
    identifier: ImageIdentifier
    digest: Optional[str] = None


@dataclass(frozen=True)
class SecretRef:
    store: str
    key: str


@dataclass(frozen=True)
class SecretBinding:
    env_var_name: str
    secret_ref: SecretRef


@dataclass(frozen=True)
class EnvVar:
    name: str
    value: str


class VolumeSource(str, Enum):
    CONFIG = "config"
    PERSISTENT = "persistent"


@dataclass(frozen=True)
class VolumeBinding:
    """A volume mounted into the workload.

    ``source_name`` is the config map name for config volumes and the claim
    name for persistent ones. ``items`` maps config keys to file paths.
    """

    name: str
    mount_path: str
    source: VolumeSource
    source_name: str
    read_only: bool = False
    items: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class InitStep:
    name: str
    image: str
    command: Tuple[str, ...]
    volume: VolumeBinding


@dataclass(frozen=True)
class MainStep:
    name: str
    command: Tuple[str, ...] = ()


@dataclass(frozen=True)
class WorkloadDescriptor:
    name: str
    namespace: Optional[str]
    image: ImageIdentifier
    secret_bindings: Tuple[SecretBinding, ...]
    volume_bindings: Tuple[VolumeBinding, ...]
    init_sequence: Tuple[object, ...]
    replicas: int = 1
    env: Tuple[EnvVar, ...] = ()
    pull_secret: Optional[str] = None

    @property
    def init_steps(self) -> Tuple[InitStep, ...]:
        return tuple(step for step in self.init_sequence if isinstance(step, InitStep))

    @property
    def main_step(self) -> MainStep:
        return self.init_sequence[-1]
