"""Deployment descriptor composition and Kubernetes rendering."""

import os
import posixpath
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional

import yaml

from imagereleaser.errors import ConflictError, ReleaseError
from imagereleaser.errors_catalog import actionable_error
from imagereleaser.models import (
    EnvVar,
    ImageIdentifier,
    InitStep,
    MainStep,
    SecretBinding,
    VolumeBinding,
    VolumeSource,
    WorkloadDescriptor,
)


class DescriptorGenerator:
    """Composes the workload descriptor handed to the orchestrator."""

    def __init__(self, logger, secret_store=None):
        self.logger = logger
        self.secret_store = secret_store

    def render(
        self,
        image: ImageIdentifier,
        secrets: Iterable[SecretBinding],
        volumes: Iterable[VolumeBinding],
        init_sequence,
        replicas: int = 1,
        name: str = "app",
        namespace: Optional[str] = None,
        env: Iterable[EnvVar] = (),
        pull_secret: Optional[str] = None,
    ) -> WorkloadDescriptor:
        secrets = tuple(secrets)
        volumes = tuple(volumes)
        env = tuple(env)
        init_sequence = tuple(init_sequence)

        if replicas < 0:
            raise ReleaseError("Replica count must not be negative.", stage="render")
        self._check_mount_paths(volumes)
        self._check_unique([volume.name for volume in volumes], "volume name")
        self._check_unique(
            [var.name for var in env] + [binding.env_var_name for binding in secrets],
            "environment variable",
        )
        self._check_init_sequence(init_sequence, volumes)
        self._check_secrets(secrets)

        descriptor = WorkloadDescriptor(
            name=name,
            namespace=namespace,
            image=image,
            secret_bindings=secrets,
            volume_bindings=volumes,
            init_sequence=init_sequence,
            replicas=replicas,
            env=env,
            pull_secret=pull_secret,
        )
        self.logger.info(
            "Rendered workload %s with image %s (%s init steps, %s secrets, %s volumes).",
            name,
            image.reference,
            len(descriptor.init_steps),
            len(secrets),
            len(volumes),
        )
        return descriptor

    @staticmethod
    def _check_mount_paths(volumes):
        claims = defaultdict(list)
        for volume in volumes:
            claims[posixpath.normpath(volume.mount_path)].append(volume.name)
        for mount_path, names in claims.items():
            if len(names) > 1:
                raise ConflictError(
                    actionable_error("mount_path_conflict", mount_path=mount_path, names=", ".join(names))
                )

    @staticmethod
    def _check_unique(values: List[str], label: str):
        seen = set()
        for value in values:
            if value in seen:
                raise ConflictError(f"Duplicate {label} `{value}` in workload descriptor.")
            seen.add(value)

    @staticmethod
    def _check_init_sequence(init_sequence, volumes):
        if not init_sequence or not isinstance(init_sequence[-1], MainStep):
            raise ReleaseError("Init sequence must end with exactly one main step.", stage="render")

        init_steps = init_sequence[:-1]
        for step in init_steps:
            if not isinstance(step, InitStep):
                raise ReleaseError(
                    f"Unexpected step `{getattr(step, 'name', step)}` before the main step.",
                    stage="render",
                )

        names = {volume.name for volume in volumes}
        covered = [step.volume.name for step in init_steps]
        for step in init_steps:
            if step.volume.name not in names:
                raise ReleaseError(
                    f"Init step `{step.name}` targets volume `{step.volume.name}`, which is not mounted.",
                    stage="render",
                )
        for volume in volumes:
            if volume.source == VolumeSource.PERSISTENT and covered.count(volume.name) != 1:
                raise ReleaseError(
                    f"Persistent volume `{volume.name}` needs exactly one init step before the main step.",
                    stage="render",
                )

    def _check_secrets(self, secrets):
        if self.secret_store is None:
            return
        for binding in secrets:
            # value discarded; only presence matters
            self.secret_store.lookup(binding.secret_ref.store, binding.secret_ref.key)
            self.logger.debug("Secret binding %s resolved.", binding.env_var_name)


def _volume_manifest(volume: VolumeBinding) -> Dict[str, Any]:
    if volume.source == VolumeSource.CONFIG:
        config_map: Dict[str, Any] = {"name": volume.source_name}
        if volume.items:
            config_map["items"] = [{"key": key, "path": path} for key, path in volume.items]
        return {"name": volume.name, "configMap": config_map}
    return {"name": volume.name, "persistentVolumeClaim": {"claimName": volume.source_name}}


def _mount_manifest(volume: VolumeBinding) -> Dict[str, Any]:
    mount: Dict[str, Any] = {"mountPath": volume.mount_path, "name": volume.name}
    if volume.read_only:
        mount["readOnly"] = True
    return mount


def to_manifest(descriptor: WorkloadDescriptor) -> Dict[str, Any]:
    """Kubernetes ``apps/v1`` Deployment for the descriptor."""
    labels = {"app": descriptor.name}
    metadata: Dict[str, Any] = {"name": descriptor.name}
    if descriptor.namespace:
        metadata["namespace"] = descriptor.namespace

    main = descriptor.main_step
    env: List[Dict[str, Any]] = [{"name": var.name, "value": var.value} for var in descriptor.env]
    env += [
        {
            "name": binding.env_var_name,
            "valueFrom": {
                "secretKeyRef": {"name": binding.secret_ref.store, "key": binding.secret_ref.key}
            },
        }
        for binding in descriptor.secret_bindings
    ]
    container: Dict[str, Any] = {"name": main.name, "image": descriptor.image.reference}
    if main.command:
        container["command"] = list(main.command)
    if env:
        container["env"] = env
    if descriptor.volume_bindings:
        container["volumeMounts"] = [_mount_manifest(volume) for volume in descriptor.volume_bindings]

    pod_spec: Dict[str, Any] = {}
    if descriptor.volume_bindings:
        pod_spec["volumes"] = [_volume_manifest(volume) for volume in descriptor.volume_bindings]
    if descriptor.pull_secret:
        pod_spec["imagePullSecrets"] = [{"name": descriptor.pull_secret}]
    if descriptor.init_steps:
        pod_spec["initContainers"] = [
            {
                "name": step.name,
                "image": step.image,
                "command": list(step.command),
                "volumeMounts": [{"mountPath": step.volume.mount_path, "name": step.volume.name}],
            }
            for step in descriptor.init_steps
        ]
    pod_spec["containers"] = [container]

    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": metadata,
        "spec": {
            "selector": {"matchLabels": dict(labels)},
            "replicas": descriptor.replicas,
            "template": {"metadata": {"labels": dict(labels)}, "spec": pod_spec},
        },
    }


def write_manifest(descriptor: WorkloadDescriptor, path: str) -> str:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    content = yaml.safe_dump(to_manifest(descriptor), sort_keys=False, default_flow_style=False)
    with open(path, "w", encoding="utf-8", newline="\n") as file_obj:
        file_obj.write(content)
    return path


class KubectlApplier:
    """Hands the rendered manifest to the cluster with ``kubectl apply``."""

    def __init__(self, logger, run_cmd, kubectl_cmd: str = "kubectl"):
        self.logger = logger
        self.run_cmd = run_cmd
        self.kubectl_cmd = kubectl_cmd

    def apply(self, manifest_path: str, namespace: Optional[str] = None):
        cmd = [self.kubectl_cmd, "apply", "-f", manifest_path]
        if namespace:
            cmd += ["-n", namespace]
        try:
            self.run_cmd(cmd, check=True, capture_output=True)
        except ReleaseError as exc:
            raise ReleaseError(str(exc), stage="apply") from exc
        self.logger.info("Applied %s%s", manifest_path, f" in namespace {namespace}" if namespace else "")
