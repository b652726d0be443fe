import logging
import os
import time
import uuid
from typing import List, Mapping, Optional, Sequence

from rich.console import Console

from .errors import AuthFailure, PushFailure, ReleaseError
from .models import (
    FLOATING_TAG,
    CachePolicy,
    Credentials,
    ImageIdentifier,
    MainStep,
    PublishResult,
    ReleaseRef,
    WorkloadDescriptor,
)
from .services.builder import ArtifactBuilder
from .services.cache_scope import DEFAULT_CACHE_PATHS, CacheScopeManager, DirectoryCacheBackend
from .services.command_runner import CommandRunner
from .services.config_loader import DeploymentSettings
from .services.descriptor import DescriptorGenerator, KubectlApplier, write_manifest
from .services.publisher import ImagePublisher
from .services.ref_detection import RefDetector
from .services.registry import DockerRegistryClient
from .services.report import RunReportService
from .services.secret_store import EnvironmentSecretStore, KubectlSecretStore
from .services.sequencer import VolumeLifecycleSequencer
from .services.tag_resolver import TagResolver

console = Console()
logger = logging.getLogger("imagereleaser")

EXIT_CODES = {
    "build": 2,
    "image": 2,
    "auth": 3,
    "push": 4,
    "render": 5,
}


class ReleasePipeline:
    SECRET_STORES = ["none", "env", "kubectl"]

    def __init__(
        self,
        registry: str,
        repository: str,
        source_dir: str = ".",
        build_command: Optional[Sequence[str]] = None,
        artifact_path: str = "target/release/app",
        image_context: Optional[str] = None,
        cache_dir: Optional[str] = None,
        cache_paths: Sequence[str] = DEFAULT_CACHE_PATHS,
        cache_policy: str = CachePolicy.READ_WRITE.value,
        floating_tag: str = FLOATING_TAG,
        push_retry_count: int = 2,
        retry_backoff_seconds: float = 5.0,
        output_dir: Optional[str] = None,
        dry_run: bool = False,
        apply: bool = False,
        deployment: Optional[DeploymentSettings] = None,
        registry_user: Optional[str] = None,
        registry_password: Optional[str] = None,
        tag: Optional[str] = None,
        branch: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        if not repository:
            raise ReleaseError("An image repository is required (e.g. `group/project/app`).")
        if floating_tag == "" or "/" in floating_tag or ":" in floating_tag:
            raise ReleaseError(f"Invalid floating tag `{floating_tag}`.")
        if push_retry_count < 0:
            raise ReleaseError("Push retry count must not be negative.")
        try:
            self.cache_policy = CachePolicy(cache_policy)
        except ValueError as exc:
            allowed = ", ".join(policy.value for policy in CachePolicy)
            raise ReleaseError(f"Invalid cache policy `{cache_policy}`. Use one of: {allowed}") from exc

        self.source_dir = os.path.abspath(source_dir)
        self.output_dir = output_dir or os.path.join(self.source_dir, "output")
        self.cache_dir = cache_dir or os.path.join(self.source_dir, ".cache", "imagereleaser")
        self.descriptor_file = os.path.join(self.output_dir, "deployment.yaml")
        self.report_file = os.path.join(self.output_dir, "release-report.json")
        self.floating_tag = floating_tag
        self.push_retry_count = push_retry_count
        self.retry_backoff_seconds = retry_backoff_seconds
        self.dry_run = dry_run
        self.apply = apply
        self.deployment = deployment or DeploymentSettings()
        self.registry_user = registry_user
        self.registry_password = registry_password
        self.tag = tag
        self.branch = branch
        self.run_id = uuid.uuid4().hex[:10]
        self.current_stage: Optional[str] = None

        self.command_runner = CommandRunner(logger=logger)
        self.report_service = RunReportService(report_file=self.report_file, logger=logger)
        self.ref_detector = RefDetector(logger=logger, run_cmd=self._run_cmd, environ=environ)
        self.tag_resolver = TagResolver(registry=registry, repository=repository, floating_tag=floating_tag)
        self.cache_manager = CacheScopeManager(
            backend=DirectoryCacheBackend(self.cache_dir, logger=logger),
            logger=logger,
            cache_paths=cache_paths,
        )
        self.builder = ArtifactBuilder(
            logger=logger,
            console=console,
            run_cmd=self._run_cmd,
            artifact_path=artifact_path,
            build_command=build_command,
        )
        self.publisher = ImagePublisher(
            logger=logger,
            console=console,
            registry_client=DockerRegistryClient(logger=logger, run_cmd=self._run_cmd),
            context_dir=image_context,
        )
        init = self.deployment.init
        self.sequencer = VolumeLifecycleSequencer(image=init.image, owner=init.owner, mode=init.mode)
        self.descriptor_generator = DescriptorGenerator(
            logger=logger,
            secret_store=self._build_secret_store(environ),
        )
        self.applier = KubectlApplier(logger=logger, run_cmd=self._run_cmd)

    def _build_secret_store(self, environ):
        kind = self.deployment.secret_store
        if kind == "none":
            return None
        if kind == "env":
            return EnvironmentSecretStore(environ)
        if kind == "kubectl":
            return KubectlSecretStore(self._run_cmd, namespace=self.deployment.namespace)
        raise ReleaseError(
            f"Unknown secret store `{kind}`. Supported: {', '.join(self.SECRET_STORES)}"
        )

    def _run_cmd(self, cmd: List[str], check: bool = True, capture_output: bool = False, **kwargs):
        return self.command_runner.run(cmd, check=check, capture_output=capture_output, **kwargs)

    def _run_stage(self, name: str, callback, *args, **kwargs):
        self.report_service.stage_started(name)
        self.current_stage = name

        try:
            result = callback(*args, **kwargs)
        except ReleaseError as exc:
            if exc.stage is None:
                exc.stage = name
            self.report_service.stage_finished(name, "failed", error=str(exc))
            raise
        except Exception as exc:
            self.report_service.stage_finished(name, "failed", error=str(exc))
            raise

        self.report_service.stage_finished(name, "success")
        self.current_stage = None
        return result

    def credentials(self) -> Credentials:
        if not self.registry_user or not self.registry_password:
            raise AuthFailure(
                "Registry credentials are missing. Set CI_REGISTRY_USER and CI_REGISTRY_PASSWORD."
            )
        return Credentials(username=self.registry_user, password=self.registry_password)

    def resolve_identifier(self, ref: ReleaseRef) -> ImageIdentifier:
        identifier = self.tag_resolver.resolve(ref)
        kind = "versioned" if ref.is_tagged else "floating"
        console.print(f"[bold blue]Image ({kind}): {identifier.reference}[/bold blue]")
        return identifier

    def build_artifact(self, ref: ReleaseRef):
        scope = self.cache_manager.scope_for(ref, self.cache_policy)
        session = self._run_stage("restore_cache", self.cache_manager.acquire, scope, self.source_dir)
        try:
            return self._run_stage("build", self.builder.build, self.source_dir, session)
        finally:
            self.cache_manager.release(session)

    def publish_with_retry(self, artifact, identifier: ImageIdentifier, credentials: Credentials) -> PublishResult:
        max_attempts = self.push_retry_count + 1
        for attempt in range(1, max_attempts + 1):
            try:
                return self.publisher.publish(artifact, identifier, credentials, build=attempt == 1)
            except PushFailure as exc:
                if attempt >= max_attempts:
                    raise
                logger.warning(
                    "Push failed on attempt %s/%s. Retrying in %.1fs.\n%s",
                    attempt,
                    max_attempts,
                    self.retry_backoff_seconds,
                    exc,
                )
                time.sleep(self.retry_backoff_seconds)
        raise PushFailure(f"Push of {identifier.reference} failed after retries.")

    def render_descriptor(self, identifier: ImageIdentifier) -> WorkloadDescriptor:
        settings = self.deployment
        main_step = MainStep(name=settings.container_name or settings.name)
        init_sequence = self.sequencer.sequence_all(settings.volumes, main_step)
        return self.descriptor_generator.render(
            image=identifier,
            secrets=settings.secrets,
            volumes=settings.volumes,
            init_sequence=init_sequence,
            replicas=settings.replicas,
            name=settings.name,
            namespace=settings.namespace,
            env=settings.env,
            pull_secret=settings.pull_secret,
        )

    def run(self) -> int:
        exit_code = 1
        report_status = "failed"
        report_error: Optional[str] = None
        failed_stage: Optional[str] = None

        try:
            logger.info("Starting ImageReleaser run %s...", self.run_id)
            self.report_service.start_run(self.run_id)

            ref = self._run_stage("detect_ref", self.ref_detector.detect, self.tag, self.branch)
            self.report_service.set_ref(ref.branch_slug, ref.tag_value)

            if self.dry_run:
                console.print("[yellow]Dry run: skipping build and publish.[/yellow]")
                identifier = self._run_stage("resolve_tag", self.resolve_identifier, ref)
                self.report_service.set_image(identifier.reference)
            else:
                credentials = self._run_stage("auth", self.credentials)
                artifact = self.build_artifact(ref)
                self.report_service.add_artifact("binary", artifact.path)

                identifier = self._run_stage("resolve_tag", self.resolve_identifier, ref)
                result = self._run_stage(
                    "publish",
                    self.publish_with_retry,
                    artifact,
                    identifier,
                    credentials,
                )
                self.report_service.set_image(identifier.reference, result.digest)

            descriptor = self._run_stage("render", self.render_descriptor, identifier)
            manifest_path = write_manifest(descriptor, self.descriptor_file)
            self.report_service.add_artifact("descriptor", manifest_path)
            console.print(f"[green]Deployment descriptor written to {manifest_path}[/green]")

            if self.apply and not self.dry_run:
                if ref.is_tagged:
                    self._run_stage("apply", self.applier.apply, manifest_path, descriptor.namespace)
                else:
                    logger.info("Skipping apply: only tagged releases are deployed.")

            report_status = "success"
            exit_code = 0
            return exit_code

        except KeyboardInterrupt:
            console.print("[bold red]Operation cancelled by user.[/bold red]")
            logger.info("Operation cancelled by user")
            report_status = "aborted"
            report_error = "Operation cancelled by user."
            exit_code = 1
            return exit_code
        except ReleaseError as exc:
            stage = exc.stage or self.current_stage or "run"
            failed_stage = stage
            console.print(f"[bold red]Error in stage '{stage}':[/bold red] {exc}")
            logger.error("Stage '%s' failed: %s", stage, exc)
            report_error = str(exc)
            exit_code = EXIT_CODES.get(exc.stage or "", 1)
            return exit_code
        except Exception as exc:
            console.print(f"[bold red]Unexpected error:[/bold red] {exc}")
            logger.exception("Unexpected error")
            report_error = str(exc)
            failed_stage = self.current_stage
            exit_code = 1
            return exit_code
        finally:
            self.report_service.finalize(report_status, error=report_error, failed_stage=failed_stage)
