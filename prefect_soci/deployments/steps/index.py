import asyncio
import logging
from typing import List, Optional, Union

from prefect.utilities.asyncutils import run_sync_in_worker_thread

from prefect_soci.deployments.config import IndexerConfig
from prefect_soci.deployments.logging import ContextLoggerAdapter, LogContext
from prefect_soci.deployments.workspace import Workspace
from prefect_soci.index.builder import (
    EmptyIndexError,
    IndexBuilderFactory,
    builder_options,
    load_builder_factory,
)
from prefect_soci.provider.cancellation import CancellationScope
from prefect_soci.provider.errors import (
    IndexBuildError,
    ManifestNotFoundError,
    ManifestResolutionError,
    RegistryNotFoundError,
    RegistryUnsupportedError,
    SociIndexerError,
)
from prefect_soci.provider.manifest import ManifestResolver
from prefect_soci.provider.models import Image
from prefect_soci.provider.reference import ImageReference, parse_image_reference
from prefect_soci.provider.registry import init_registry
from prefect_soci.provider.transfer import ContentTransfer

logger = logging.getLogger(__name__)

RegistryInitFailedMessage = "Remote registry initialization error"
ManifestValidationSkipMessage = "Exited early due to manifest validation error"
WorkspaceFailedMessage = "Directory create error"
PullFailedMessage = "Image pull error"
BuildFailedMessage = "SOCI index build error"
PushFailedMessage = "SOCI index push error"
RegistryUnsupportedMessage = "Registry does not support OCI artifacts"
SkipPushOnEmptyIndexMessage = "Skipping pushing SOCI index as it does not contain any zTOCs"
BuildAndPushSuccessMessage = "Successfully built and pushed SOCI index"


def _resolve_image_digests(registry, resolver: ManifestResolver, reference: ImageReference) -> List[str]:
    digest = reference.tag_or_digest
    if not reference.is_digest:
        # manifests are inspected by digest, tags are mutable
        container = registry.container(reference.repository, reference.tag_or_digest)
        try:
            digest = registry.resolve(container).digest
        except RegistryNotFoundError as e:
            raise ManifestNotFoundError(
                f"Image not found: {e.message}", repository=reference.repository, operation="resolve tag"
            ) from e

    return resolver.get_image_digests(reference.repository, digest)


def index_and_push(
    image: Union[str, ImageReference],
    builder_factory: IndexBuilderFactory,
    config: Optional[IndexerConfig] = None,
    cancellation: Optional[CancellationScope] = None,
) -> str:
    """
    Build and push a SOCI index for every image behind a reference.

    Images that cannot be indexed and images without indexable layers are
    skipped without raising. Anything else that goes wrong is logged and
    raised.

    :param image: image reference, e.g. ``123456789012.dkr.ecr.us-east-1.amazonaws.com/app:v1``
    :param builder_factory: called with the run's workspace to create the index builder
    :param config: run options
    :param cancellation: scope aborting the run's registry calls
    :return: a short status message
    """
    config = config or IndexerConfig()
    reference = image if isinstance(image, ImageReference) else parse_image_reference(image)
    cancellation = cancellation or CancellationScope(config.deadline)

    log = ContextLoggerAdapter(
        logger, LogContext(registry_url=reference.registry, repository=reference.repository)
    )
    log.info("Indexing and pushing %s", reference)

    try:
        registry = init_registry(
            reference.registry,
            auth_token=config.token,
            insecure=config.insecure,
            timeout=config.request_timeout,
            cancellation=cancellation,
            ecr_endpoint=config.ecr_endpoint,
            aws_credentials=config.aws_credentials,
        )
    except SociIndexerError as e:
        log.error("%s: %s", RegistryInitFailedMessage, e)
        raise

    try:
        workspace = Workspace.create()
    except OSError as e:
        log.error("%s: %s", WorkspaceFailedMessage, e)
        raise

    try:
        resolver = ManifestResolver(registry, platforms=config.selected_platforms())
        try:
            digests = _resolve_image_digests(registry, resolver, reference)
        except ManifestResolutionError as e:
            log.warning("Image manifest validation error: %s", e)
            return ManifestValidationSkipMessage

        try:
            builder = builder_factory(workspace, **builder_options())
        except Exception as e:
            log.error("%s: %s", BuildFailedMessage, e)
            raise IndexBuildError(
                f"Failed to create index builder: {e}", repository=reference.repository, operation="build"
            ) from e

        transfer = ContentTransfer(registry)

        for digest in digests:
            digest_log = log.bind(image_digest=digest)
            cancellation.check(operation="index")

            try:
                descriptor = transfer.pull(reference.repository, digest, workspace.store)
            except SociIndexerError as e:
                digest_log.error("%s: %s", PullFailedMessage, e)
                raise

            pulled = Image(name=f"{reference.repository}@{digest}", target=descriptor)

            digest_log.info("Building SOCI index")
            try:
                index_descriptor = builder.convert(pulled, workspace.store, workspace.store)
            except EmptyIndexError as e:
                if config.fail_on_empty_index:
                    digest_log.error("%s: %s", BuildFailedMessage, e)
                    raise
                digest_log.warning(SkipPushOnEmptyIndexMessage)
                return SkipPushOnEmptyIndexMessage
            except SociIndexerError as e:
                digest_log.error("%s: %s", BuildFailedMessage, e)
                raise
            except Exception as e:
                digest_log.error("%s: %s", BuildFailedMessage, e)
                raise IndexBuildError(
                    f"Failed to build SOCI index: {e}",
                    repository=reference.repository,
                    digest=digest,
                    operation="build",
                ) from e

            index_log = digest_log.bind(index_digest=index_descriptor.digest)

            try:
                transfer.push(workspace.store, index_descriptor, reference.repository, config.index_tag)
            except RegistryUnsupportedError as e:
                index_log.error("%s: %s", RegistryUnsupportedMessage, e)
                raise
            except SociIndexerError as e:
                index_log.error("%s: %s", PushFailedMessage, e)
                raise

            index_log.info(BuildAndPushSuccessMessage)

        return BuildAndPushSuccessMessage
    finally:
        workspace.cleanup()


async def build_and_push_soci_index(
    image: str,
    builder: str,
    auth_token: Optional[str] = None,
    index_tag: Optional[str] = None,
    platforms: Optional[List[str]] = None,
    fail_on_empty_index: bool = False,
    deadline: Optional[float] = None,
    config_kwargs: Optional[dict] = None,
) -> dict:
    """
    Build a SOCI index for an image and push it to the image's repository.

    :param image: The image reference, ``[registry/]repository[:tag|@digest]``.
    :param builder: Dotted import path of the index builder factory.
    :param auth_token: Optional registry token (usually USER:PASSWORD).
        ECR registries are authorized automatically when omitted.
    :param index_tag: Optional tag for the pushed index.
    :param platforms: Optional list of platforms to index for multi-architecture images.
    :param fail_on_empty_index: Fail instead of skipping images without indexable layers.
    :param deadline: Optional time budget for the whole run in seconds.
    :param config_kwargs: Additional IndexerConfig options.
    :return: Dictionary with "image", "status" and "skipped".
    """
    reference = parse_image_reference(image)
    config = IndexerConfig(
        auth_token=auth_token,
        index_tag=index_tag,
        platforms=platforms,
        fail_on_empty_index=fail_on_empty_index,
        deadline=deadline,
        **(config_kwargs or {}),
    )
    factory = load_builder_factory(builder)
    cancellation = CancellationScope(config.deadline)

    try:
        status = await run_sync_in_worker_thread(
            index_and_push, reference, factory, config=config, cancellation=cancellation
        )
    except asyncio.CancelledError:
        cancellation.cancel("step cancelled")
        raise

    return {
        "image": str(reference),
        "status": status,
        "skipped": status != BuildAndPushSuccessMessage,
    }
