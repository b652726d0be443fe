"""Actionable error catalog for ImageReleaser."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "build_failed": {
        "what": "Build command failed in {source_dir}.",
        "next": "Fix the compilation errors shown above and push a new commit.",
    },
    "artifact_missing": {
        "what": "Build succeeded but the artifact was not found: {path}",
        "next": "Check `artifact_path` in the config file against the build output.",
    },
    "image_build_failed": {
        "what": "Container image build failed for {reference}.",
        "next": "Check the Dockerfile in {context_dir} and the docker daemon logs.",
    },
    "registry_auth_failed": {
        "what": "Registry login to {registry} was rejected.",
        "next": "Verify CI_REGISTRY_USER / CI_REGISTRY_PASSWORD. Auth errors are never retried.",
    },
    "push_failed": {
        "what": "Push of {reference} failed.",
        "next": "Check registry availability and retry with a higher `--push-retry-count`.",
    },
    "mount_path_conflict": {
        "what": "Mount path {mount_path} is claimed by more than one volume: {names}.",
        "next": "Give every volume binding a unique `mount_path` in the deployment config.",
    },
    "secret_not_found": {
        "what": "Secret key `{key}` was not found in store `{store}`.",
        "next": "Create the secret entry before rendering, or remove its binding from the deployment config.",
    },
    "init_step_failed": {
        "what": "Init step `{step}` exited with status {status}.",
        "next": "Inspect the volume permissions. The workload was not started.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
