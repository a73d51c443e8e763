import logging
from typing import Optional

import requests

from prefect_soci.provider.errors import (
    OperationCancelledError,
    PullError,
    PushError,
    RegistryUnsupportedError,
    SociIndexerError,
)
from prefect_soci.provider.models import Descriptor, Manifest, is_manifest_media_type
from prefect_soci.provider.registry import Registry
from prefect_soci.provider.store import OciLayoutStore

logger = logging.getLogger(__name__)


class ContentTransfer:
    """
    Copies content graphs between a registry and a local store.
    """

    def __init__(self, registry: Registry):
        self.registry = registry

    def pull(self, repository: str, reference: str, store: OciLayoutStore) -> Descriptor:
        """
        Copy a manifest and everything it references into the local store.

        Blobs already in the store are verified instead of fetched again.
        The root is tagged in the store with the reference it was pulled by.

        :param repository: repository name
        :param reference: digest (or tag) of the manifest
        :param store: destination store
        :return: descriptor of the pulled manifest
        """
        logger.info("Pulling %s@%s", repository, reference)
        container = self.registry.container(repository, reference)
        try:
            root = self.registry.resolve(container)
            self._pull_node(repository, root, store)
            store.tag(root, reference)
        except OperationCancelledError:
            raise
        except (SociIndexerError, requests.RequestException, OSError) as e:
            raise PullError(
                f"Failed to pull image: {e}", repository=repository, digest=reference, operation="pull"
            ) from e

        logger.info("Pulled %s@%s", repository, root.digest)
        return root

    def _pull_node(self, repository: str, descriptor: Descriptor, store: OciLayoutStore) -> None:
        if store.exists(descriptor):
            logger.debug("%s already present, skipping download", descriptor.digest)
            if is_manifest_media_type(descriptor.media_type):
                for successor in store.get_manifest(descriptor).successors():
                    self._pull_node(repository, successor, store)
            return

        if is_manifest_media_type(descriptor.media_type):
            content, _ = self.registry.fetch_manifest(self.registry.container(repository, descriptor.digest))
            manifest = Manifest.model_validate_json(content)

            # children land before their parent so a present manifest implies a complete graph
            for successor in manifest.successors():
                self._pull_node(repository, successor, store)

            store.write(descriptor, [content])
            return

        container = self.registry.container(repository)
        with self.registry.stream_blob(container, descriptor.digest) as chunks:
            store.write(descriptor, chunks)

    def push(self, store: OciLayoutStore, root: Descriptor, repository: str, tag: Optional[str] = None) -> None:
        """
        Copy the content graph rooted at a descriptor from the store to the
        registry, then tag the root.

        :param store: source store
        :param root: descriptor of the artifact to push
        :param repository: target repository
        :param tag: optional tag for the pushed root
        :raises RegistryUnsupportedError: if the registry refuses OCI artifacts
        :raises PushError: on any other failure
        """
        logger.info("Pushing artifact %s to %s", root.digest, repository)
        container = self.registry.container(repository)
        try:
            self._push_node(container, root, store)

            if tag:
                logger.info("Tagging %s with %s", root.digest, tag)
                self.registry.put_manifest(container, store.read_bytes(root), root.media_type, reference=tag)
        except (OperationCancelledError, RegistryUnsupportedError):
            raise
        except (SociIndexerError, requests.RequestException, OSError) as e:
            raise PushError(
                f"Failed to push artifact: {e}", repository=repository, digest=root.digest, operation="push"
            ) from e

    def _push_node(self, container, descriptor: Descriptor, store: OciLayoutStore) -> None:
        if is_manifest_media_type(descriptor.media_type):
            for successor in store.get_manifest(descriptor).successors():
                self._push_node(container, successor, store)

            self.registry.put_manifest(container, store.read_bytes(descriptor), descriptor.media_type)
            return

        if self.registry.has_blob(container, descriptor.digest):
            logger.debug("Blob %s already exists in %s", descriptor.digest, container.repository)
            return

        self.registry.push_blob(container, descriptor, str(store.blob_path(descriptor.digest)))
