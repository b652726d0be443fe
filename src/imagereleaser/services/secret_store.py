"""Secret store lookups used to check bindings at render time.

Looked-up values are returned to the caller and never logged or cached here.
"""

import base64
import binascii
import json
import os
import re
from typing import Callable, Mapping, Optional

from imagereleaser.errors import ReleaseError, SecretNotFound
from imagereleaser.errors_catalog import actionable_error

_ENV_UNSAFE = re.compile(r"[^A-Z0-9]")


class EnvironmentSecretStore:
    """Reads ``<STORE>_<KEY>`` from the process environment (e.g. CI masked variables)."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self.environ = os.environ if environ is None else environ

    @staticmethod
    def variable_name(store: str, key: str) -> str:
        return _ENV_UNSAFE.sub("_", f"{store}_{key}".upper())

    def lookup(self, store: str, key: str) -> str:
        value = self.environ.get(self.variable_name(store, key))
        if value is None:
            raise SecretNotFound(actionable_error("secret_not_found", store=store, key=key))
        return value


class KubectlSecretStore:
    """Reads Kubernetes secrets with ``kubectl get secret``."""

    def __init__(self, run_cmd: Callable, namespace: Optional[str] = None, kubectl_cmd: str = "kubectl"):
        self.run_cmd = run_cmd
        self.namespace = namespace
        self.kubectl_cmd = kubectl_cmd

    def lookup(self, store: str, key: str) -> str:
        cmd = [self.kubectl_cmd, "get", "secret", store, "-o", "json"]
        if self.namespace:
            cmd += ["-n", self.namespace]
        not_found = SecretNotFound(actionable_error("secret_not_found", store=store, key=key))

        try:
            result = self.run_cmd(cmd, check=False, capture_output=True)
        except ReleaseError as exc:
            raise ReleaseError(f"Could not query secret `{store}`: {exc}", stage="render") from exc

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            if "(NotFound)" in stderr:
                raise not_found
            # unreachable cluster, RBAC denials and the like are not a missing secret
            raise ReleaseError(
                f"kubectl could not read secret `{store}` ({result.returncode}): {stderr or '<no output>'}",
                stage="render",
            )

        try:
            data = json.loads(result.stdout or "{}").get("data") or {}
        except (json.JSONDecodeError, AttributeError) as exc:
            raise ReleaseError(f"kubectl returned invalid JSON for secret `{store}`.", stage="render") from exc

        if key not in data:
            raise not_found
        try:
            return base64.b64decode(data[key]).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise ReleaseError(f"Secret `{store}/{key}` is not valid base64 text.", stage="render") from exc
