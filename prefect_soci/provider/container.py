from typing import Optional

from oras.container import Container as ORASContainer

from prefect_soci.provider.defaults import (
    default_registry,
    docker_hub_api_host,
    docker_hub_official_namespace,
)
from prefect_soci.provider.reference import is_digest


def api_host(registry: str) -> str:
    """
    Map a registry name to the host serving its distribution API.
    """
    if registry in (default_registry, "index.docker.io"):
        return docker_hub_api_host
    return registry


def api_repository(registry: str, repository: str) -> str:
    """
    Docker Hub keeps official images under the ``library`` namespace.
    """
    if api_host(registry) == docker_hub_api_host and "/" not in repository:
        return f"{docker_hub_official_namespace}/{repository}"
    return repository


class ImageContainer(ORASContainer):
    def __init__(self, registry: str, repository: str, reference: Optional[str] = None):
        """
        Address a repository on a registry and build the urls for registry
        interactions.

        Unlike the oras container the name is not parsed again, the registry
        and repository are taken as already validated.

        :param registry: registry host as given by the user
        :type registry: str
        :param repository: repository path
        :type repository: str
        :param reference: a tag or a digest
        :type reference: str
        """
        self.registry = api_host(registry)
        self.namespace = None
        self.repository = api_repository(registry, repository)
        self.tag = None
        self.digest = None

        if reference:
            if is_digest(reference):
                self.digest = reference
            else:
                self.tag = reference

    @property
    def api_prefix(self) -> str:
        return f"{self.registry}/v2/{self.repository}"

    @property
    def reference(self) -> Optional[str]:
        return self.digest or self.tag

    def manifest_url(self, tag: Optional[str] = None) -> str:
        return f"{self.api_prefix}/manifests/{tag or self.reference}"

    def get_blob_url(self, digest: str) -> str:
        return f"{self.api_prefix}/blobs/{digest}"

    def upload_blob_url(self) -> str:
        return f"{self.api_prefix}/blobs/uploads/"

    def __str__(self) -> str:
        if self.digest:
            return f"{self.registry}/{self.repository}@{self.digest}"
        if self.tag:
            return f"{self.registry}/{self.repository}:{self.tag}"
        return f"{self.registry}/{self.repository}"
