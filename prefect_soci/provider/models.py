from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field

from prefect_soci.provider.defaults import (
    default_docker_manifest_list_media_type,
    default_image_index_media_type,
    image_config_media_types,
    image_manifest_media_types,
)


class Descriptor(BaseModel):
    """
    Content addressed pointer to a blob or manifest.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    media_type: str = Field(
        "",
        alias="mediaType",
        description="Media type of the referenced content",
    )

    digest: str = Field(
        ...,
        description="Digest of the referenced content",
        examples=["sha256:9a161b6fc2f8ef74bb368f56edcac33a91b494d082da3693a600751a1a68b7d8"],
    )

    size: int = Field(
        ...,
        ge=0,
        description="Size of the referenced content in bytes",
    )

    artifact_type: Optional[str] = Field(None, alias="artifactType")

    platform: Optional[dict] = None

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class Manifest(BaseModel):
    """
    The OCI / Docker manifest envelope.

    Image manifests populate ``config`` and ``layers``, manifest lists and
    image indexes populate ``manifests``.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    schema_version: int = Field(2, alias="schemaVersion")

    media_type: str = Field("", alias="mediaType")

    artifact_type: Optional[str] = Field(None, alias="artifactType")

    config: Optional[Descriptor] = None

    layers: List[Descriptor] = Field(default_factory=list)

    manifests: List[Descriptor] = Field(default_factory=list)

    subject: Optional[Descriptor] = None

    @property
    def config_media_type(self) -> str:
        return self.config.media_type if self.config else ""

    @property
    def is_index(self) -> bool:
        return self.media_type == default_image_index_media_type

    @property
    def is_list(self) -> bool:
        return self.media_type == default_docker_manifest_list_media_type

    @property
    def is_image(self) -> bool:
        """
        Whether the manifest is a single-platform image with a runnable config.
        """
        return self.config_media_type in image_config_media_types

    def successors(self) -> List[Descriptor]:
        """
        Descriptors this manifest references, in the order they must be
        present before the manifest itself.

        The subject is not followed since it points back at content that
        already exists in the registry.
        """
        if self.manifests:
            return list(self.manifests)

        successors = [self.config] if self.config else []
        successors.extend(self.layers)
        return successors


def is_manifest_media_type(media_type: str) -> bool:
    return media_type in image_manifest_media_types or media_type in (
        default_docker_manifest_list_media_type,
        default_image_index_media_type,
    )


class Image(BaseModel):
    """
    Identity of a pulled image handed to the index builder.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., examples=["foo/bar@sha256:9a16..."])

    target: Descriptor
