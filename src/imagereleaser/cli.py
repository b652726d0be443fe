import logging
import os

import click
from rich.logging import RichHandler

from .core import ReleasePipeline
from .errors import ReleaseError
from .models import CachePolicy
from .services.config_loader import ConfigLoader


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


@click.command()
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help="Path to a YAML configuration file. Defaults to .imagereleaser.yml if present.",
)
@click.option("--source-dir", required=False, type=click.Path(), help="Source tree to build.")
@click.option("--registry", required=False, envvar="CI_REGISTRY", help="Registry host.")
@click.option("--repository", required=False, help="Image repository, e.g. group/project/app.")
@click.option(
    "--registry-user",
    required=False,
    envvar="CI_REGISTRY_USER",
    help="Registry user. The password is read from CI_REGISTRY_PASSWORD.",
)
@click.option("--tag", required=False, help="Release tag (defaults to CI_COMMIT_TAG or git).")
@click.option("--branch", required=False, help="Branch name (defaults to CI_COMMIT_REF_SLUG or git).")
@click.option("--build-command", required=False, help="Build command (default: cargo build --release).")
@click.option("--artifact-path", required=False, help="Artifact path relative to the source dir.")
@click.option("--image-context", required=False, type=click.Path(), help="Docker build context.")
@click.option("--cache-dir", required=False, type=click.Path(), help="Shared build cache directory.")
@click.option(
    "--cache-policy",
    required=False,
    type=click.Choice([policy.value for policy in CachePolicy]),
    help="Cache access policy (default: pull-push).",
)
@click.option("--floating-tag", required=False, help="Tag used for untagged builds (default: latest).")
@click.option(
    "--push-retry-count",
    required=False,
    type=int,
    default=None,
    help="Number of retries for transient push failures.",
)
@click.option(
    "--retry-backoff-seconds",
    required=False,
    type=float,
    default=None,
    help="Backoff time in seconds between push retries.",
)
@click.option("--output-dir", required=False, type=click.Path(), help="Where the descriptor and report go.")
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
@click.option(
    "--dry-run",
    is_flag=True,
    default=None,
    help="Resolve the image and render the descriptor without building or pushing.",
)
@click.option(
    "--apply",
    is_flag=True,
    default=None,
    help="Apply the rendered descriptor with kubectl (tagged releases only).",
)
def main(
    config,
    source_dir,
    registry,
    repository,
    registry_user,
    tag,
    branch,
    build_command,
    artifact_path,
    image_context,
    cache_dir,
    cache_policy,
    floating_tag,
    push_retry_count,
    retry_backoff_seconds,
    output_dir,
    verbose,
    log_file,
    dry_run,
    apply,
):
    """Build the application, push its image and render the deployment descriptor."""
    logger = logging.getLogger("imagereleaser")

    try:
        config_loader = ConfigLoader()
        resolved_config = config
        if resolved_config is None:
            default_config_path = os.path.join(os.getcwd(), ".imagereleaser.yml")
            if os.path.exists(default_config_path):
                resolved_config = default_config_path

        config_values = config_loader.load(resolved_config)
        deployment = config_loader.parse_deployment(config_values.get("deployment"))
    except ReleaseError as exc:
        raise click.ClickException(str(exc)) from exc

    repository = _resolve_option(repository, config_values, "repository")
    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    log_file = _resolve_option(log_file, config_values, "log_file")

    if not repository:
        raise click.ClickException(
            "Missing required option '--repository' (or provide it in config)."
        )

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)

    options = dict(
        registry=str(_resolve_option(registry, config_values, "registry", default="")),
        repository=str(repository),
        source_dir=_resolve_option(source_dir, config_values, "source_dir", default=os.getcwd()),
        build_command=_resolve_option(build_command, config_values, "build_command"),
        artifact_path=_resolve_option(
            artifact_path, config_values, "artifact_path", default="target/release/app"
        ),
        image_context=_resolve_option(image_context, config_values, "image_context"),
        cache_dir=_resolve_option(cache_dir, config_values, "cache_dir"),
        cache_policy=_resolve_option(
            cache_policy, config_values, "cache_policy", default=CachePolicy.READ_WRITE.value
        ),
        floating_tag=str(_resolve_option(floating_tag, config_values, "floating_tag", default="latest")),
        push_retry_count=int(
            _resolve_option(push_retry_count, config_values, "push_retry_count", default=2)
        ),
        retry_backoff_seconds=float(
            _resolve_option(retry_backoff_seconds, config_values, "retry_backoff_seconds", default=5.0)
        ),
        output_dir=_resolve_option(output_dir, config_values, "output_dir"),
        dry_run=bool(_resolve_option(dry_run, config_values, "dry_run", default=False)),
        apply=bool(_resolve_option(apply, config_values, "apply", default=False)),
        deployment=deployment,
        registry_user=registry_user,
        registry_password=os.environ.get("CI_REGISTRY_PASSWORD"),
        tag=tag,
        branch=branch,
    )
    if "cache_paths" in config_values:
        options["cache_paths"] = [str(path) for path in config_values["cache_paths"]]

    try:
        pipeline = ReleasePipeline(**options)
    except ReleaseError as exc:
        raise click.ClickException(str(exc)) from exc

    raise SystemExit(pipeline.run())


if __name__ == "__main__":
    main()
