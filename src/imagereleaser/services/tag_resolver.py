"""Image tag resolution for tagged and branch releases."""

from imagereleaser.errors import ReleaseError
from imagereleaser.models import FLOATING_TAG, ImageIdentifier, ReleaseRef


class TagResolver:
    """Chooses the single image identifier to build and push for a ref.

    Tagged refs get an immutable identifier carrying the tag. Everything else
    gets the floating tag, overwritten by each branch build.
    """

    def __init__(self, registry: str, repository: str, floating_tag: str = FLOATING_TAG):
        self.registry = registry.rstrip("/")
        self.repository = repository.strip("/")
        self.floating_tag = floating_tag

    def resolve(self, ref: ReleaseRef) -> ImageIdentifier:
        if ref.is_tagged and ref.tag_value == self.floating_tag:
            raise ReleaseError(
                f"Tag `{ref.tag_value}` is reserved as the floating tag for untagged branch builds."
            )
        tag = ref.tag_value if ref.is_tagged else self.floating_tag
        return ImageIdentifier(registry=self.registry, repository=self.repository, tag=tag)
