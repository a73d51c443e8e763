import logging
from typing import Optional, List

from prefect_soci.provider.defaults import image_config_media_types, image_manifest_media_types
from prefect_soci.provider.errors import (
    ImageAlreadyIndexedError,
    ManifestNotFoundError,
    ManifestResolutionError,
    NoValidImagesError,
    RegistryNotFoundError,
    UnexpectedConfigMediaTypeError,
)
from prefect_soci.provider.models import Manifest
from prefect_soci.provider.platform import Platform, describe_platform
from prefect_soci.provider.registry import Registry

logger = logging.getLogger(__name__)


def validate_image_manifest(manifest: Manifest, repository: Optional[str] = None, digest: Optional[str] = None) -> None:
    """
    Check that a single-platform manifest describes a runnable image.

    :raises UnexpectedConfigMediaTypeError: if the config media type is empty or unknown
    """
    if not manifest.config_media_type:
        raise UnexpectedConfigMediaTypeError(
            "Empty config media type", repository=repository, digest=digest, operation="validate manifest"
        )

    if manifest.config_media_type not in image_config_media_types:
        raise UnexpectedConfigMediaTypeError(
            f"Unexpected config media type: {manifest.config_media_type}, "
            f"expected one of: {image_config_media_types}",
            repository=repository,
            digest=digest,
            operation="validate manifest",
        )


class ManifestResolver:
    """
    Works out which manifests of an image need their own SOCI index.
    """

    def __init__(self, registry: Registry, platforms: Optional[List[Platform]] = None):
        """
        :param registry: client of the registry holding the image
        :param platforms: restrict multi-architecture images to these platforms
        """
        self.registry = registry
        self.platforms = platforms or []

    def get_manifest(self, repository: str, digest: str) -> Manifest:
        container = self.registry.container(repository, digest)
        try:
            return self.registry.read_manifest(container)
        except RegistryNotFoundError as e:
            raise ManifestNotFoundError(
                f"Manifest not found: {e.message}", repository=repository, digest=digest, operation="fetch manifest"
            ) from e

    def validate_image_manifest(self, repository: str, digest: str) -> None:
        validate_image_manifest(self.get_manifest(repository, digest), repository, digest)

    def _platform_selected(self, platform: Optional[dict]) -> bool:
        if not self.platforms:
            return True
        return any(selected.is_match(platform) for selected in self.platforms)

    def get_image_digests(self, repository: str, digest: str) -> List[str]:
        """
        Inspect an image and return every digest that needs to be indexed.

        For multi-architecture images that is each valid platform manifest
        in the order of the list; for single images it is the image digest
        itself.

        :param repository: repository name
        :param digest: manifest digest of the image
        :return: ordered list of manifest digests
        """
        manifest = self.get_manifest(repository, digest)

        if manifest.is_index:
            raise ImageAlreadyIndexedError(
                "Image already indexed", repository=repository, digest=digest, operation="resolve digests"
            )

        if manifest.is_list:
            digests = []
            for child in manifest.manifests:
                if child.media_type not in image_manifest_media_types:
                    logger.debug("Skipping %s with media type %s", child.digest, child.media_type)
                    continue

                if not self._platform_selected(child.platform):
                    logger.debug("Skipping %s for platform %s", child.digest, describe_platform(child.platform))
                    continue

                try:
                    self.validate_image_manifest(repository, child.digest)
                except ManifestResolutionError as e:
                    # multi-arch lists may carry attestations and other non images
                    logger.debug("Skipping %s: %s", child.digest, e)
                    continue

                logger.debug("Found image %s for platform %s", child.digest, describe_platform(child.platform))
                digests.append(child.digest)

            if not digests:
                raise NoValidImagesError(
                    "Manifest contains no valid images", repository=repository, digest=digest, operation="resolve digests"
                )

            logger.info("Resolved %d image(s) from manifest list %s", len(digests), digest)
            return digests

        validate_image_manifest(manifest, repository, digest)
        return [digest]
