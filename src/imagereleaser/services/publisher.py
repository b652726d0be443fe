"""Image publishing stage."""

import os
from typing import Optional

from imagereleaser.errors import BuildFailure
from imagereleaser.models import Artifact, Credentials, ImageIdentifier, PublishResult


class ImagePublisher:
    """Builds the container image around an artifact and pushes it once.

    Authentication always happens before anything is built or pushed.
    ``AuthFailure`` and ``PushFailure`` propagate unchanged; retrying a push
    is the caller's decision.
    """

    def __init__(self, logger, console, registry_client, context_dir: Optional[str] = None, no_cache: bool = True):
        self.logger = logger
        self.console = console
        self.registry_client = registry_client
        self.context_dir = context_dir
        self.no_cache = no_cache

    def publish(
        self,
        artifact: Artifact,
        identifier: ImageIdentifier,
        credentials: Credentials,
        build: bool = True,
    ) -> PublishResult:
        """Authenticate, build the image unless ``build`` is false, then push once."""
        session = self.registry_client.authenticate(identifier.registry, credentials)

        if build:
            if not os.path.isfile(artifact.path):
                raise BuildFailure(f"Artifact disappeared before image build: {artifact.path}", stage="image")

            context_dir = self.context_dir or artifact.source_dir
            self.console.print(f"[blue]Building image {identifier.reference}...[/blue]")
            self.registry_client.build_image(context_dir, identifier, no_cache=self.no_cache)

        self.console.print(f"[blue]Pushing {identifier.reference}...[/blue]")
        digest = self.registry_client.push(session, identifier)
        self.logger.info("Pushed %s%s", identifier.reference, f" ({digest})" if digest else "")
        self.console.print(f"[green]Pushed {identifier.reference}.[/green]")
        return PublishResult(identifier=identifier, digest=digest)
