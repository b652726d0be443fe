"""Configuration loader for ImageReleaser."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from imagereleaser.errors import ReleaseError
from imagereleaser.models import EnvVar, SecretBinding, SecretRef, VolumeBinding, VolumeSource


@dataclass
class InitSettings:
    image: str = "alpine:3"
    owner: str = "root:root"
    mode: str = "700"


@dataclass
class DeploymentSettings:
    """Workload shape read from the ``deployment`` section of the config file."""

    name: str = "app"
    namespace: Optional[str] = None
    replicas: int = 1
    pull_secret: Optional[str] = None
    container_name: Optional[str] = None
    env: List[EnvVar] = field(default_factory=list)
    secrets: List[SecretBinding] = field(default_factory=list)
    volumes: List[VolumeBinding] = field(default_factory=list)
    init: InitSettings = field(default_factory=InitSettings)
    secret_store: str = "none"


class ConfigLoader:
    """Loads YAML configuration files for CLI defaults."""

    SUPPORTED_KEYS = {
        "registry",
        "repository",
        "source_dir",
        "build_command",
        "artifact_path",
        "image_context",
        "cache_dir",
        "cache_paths",
        "cache_policy",
        "floating_tag",
        "push_retry_count",
        "retry_backoff_seconds",
        "output_dir",
        "verbose",
        "log_file",
        "dry_run",
        "apply",
        "deployment",
    }
    DEPLOYMENT_KEYS = {
        "name",
        "namespace",
        "replicas",
        "pull_secret",
        "container_name",
        "env",
        "secrets",
        "volumes",
        "init",
        "secret_store",
    }
    VOLUME_KEYS = {"name", "mount_path", "source", "source_name", "read_only", "items"}
    INIT_KEYS = {"image", "owner", "mode"}

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise ReleaseError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise ReleaseError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ReleaseError("Config file must contain a YAML mapping at the root.")

        if "password" in parsed or "registry_password" in parsed:
            raise ReleaseError("Registry passwords must not be stored in the config file.")
        self._reject_unknown(parsed, self.SUPPORTED_KEYS, "configuration")

        return parsed

    def parse_deployment(self, raw: Optional[Dict[str, Any]]) -> DeploymentSettings:
        if not raw:
            return DeploymentSettings()
        if not isinstance(raw, dict):
            raise ReleaseError("`deployment` must be a YAML mapping.")
        self._reject_unknown(raw, self.DEPLOYMENT_KEYS, "deployment")

        settings = DeploymentSettings(
            name=str(raw.get("name", "app")),
            namespace=raw.get("namespace"),
            replicas=self._parse_replicas(raw.get("replicas", 1)),
            pull_secret=raw.get("pull_secret"),
            container_name=raw.get("container_name"),
            secret_store=str(raw.get("secret_store", "none")),
        )
        settings.env = [EnvVar(name=str(k), value=str(v)) for k, v in (raw.get("env") or {}).items()]
        settings.secrets = [
            self._parse_secret(env_name, ref) for env_name, ref in (raw.get("secrets") or {}).items()
        ]
        settings.volumes = [self._parse_volume(item) for item in raw.get("volumes") or []]

        init_raw = raw.get("init") or {}
        self._reject_unknown(init_raw, self.INIT_KEYS, "deployment.init")
        settings.init = InitSettings(
            image=str(init_raw.get("image", "alpine:3")),
            owner=str(init_raw.get("owner", "root:root")),
            mode=str(init_raw.get("mode", "700")),
        )
        return settings

    @staticmethod
    def _parse_replicas(value: Any) -> int:
        try:
            replicas = int(value)
        except (TypeError, ValueError) as exc:
            raise ReleaseError(f"Invalid replica count: {value!r}") from exc
        if replicas < 0:
            raise ReleaseError("Replica count must not be negative.")
        return replicas

    @staticmethod
    def _parse_secret(env_name: str, ref: Any) -> SecretBinding:
        # accepts {store: ..., key: ...} or the "store/key" shorthand
        if isinstance(ref, dict) and "store" in ref and "key" in ref:
            secret_ref = SecretRef(store=str(ref["store"]), key=str(ref["key"]))
        elif isinstance(ref, str) and ref.count("/") == 1:
            store, key = ref.split("/")
            secret_ref = SecretRef(store=store, key=key)
        else:
            raise ReleaseError(
                f"Invalid secret reference for {env_name}. Use `store/key` or a mapping "
                "with `store` and `key`."
            )
        return SecretBinding(env_var_name=str(env_name), secret_ref=secret_ref)

    def _parse_volume(self, item: Any) -> VolumeBinding:
        if not isinstance(item, dict):
            raise ReleaseError("Each entry in `deployment.volumes` must be a mapping.")
        self._reject_unknown(item, self.VOLUME_KEYS, "deployment.volumes")

        missing = [key for key in ("name", "mount_path", "source", "source_name") if key not in item]
        if missing:
            raise ReleaseError(f"Volume entry is missing keys: {', '.join(missing)}")

        try:
            source = VolumeSource(item["source"])
        except ValueError as exc:
            allowed = ", ".join(member.value for member in VolumeSource)
            raise ReleaseError(f"Invalid volume source `{item['source']}`. Use one of: {allowed}") from exc

        items: Tuple[Tuple[str, str], ...] = tuple(
            (str(k), str(v)) for k, v in (item.get("items") or {}).items()
        )
        return VolumeBinding(
            name=str(item["name"]),
            mount_path=str(item["mount_path"]),
            source=source,
            source_name=str(item["source_name"]),
            read_only=bool(item.get("read_only", source == VolumeSource.CONFIG)),
            items=items,
        )

    @staticmethod
    def _reject_unknown(mapping: Dict[str, Any], allowed, label: str):
        if not isinstance(mapping, dict):
            raise ReleaseError(f"`{label}` must be a YAML mapping.")
        unknown = sorted(set(mapping.keys()) - allowed)
        if unknown:
            unknown_list = ", ".join(str(key) for key in unknown)
            raise ReleaseError(f"Unknown {label} keys: {unknown_list}")
