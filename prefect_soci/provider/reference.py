import logging
import re

from pydantic import BaseModel, ConfigDict, Field

from prefect_soci.provider.defaults import default_registry, default_tag
from prefect_soci.provider.errors import ReferenceParseError

logger = logging.getLogger(__name__)

# https://github.com/distribution/reference/blob/main/regexp.go
path_component_regex = re.compile(r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*")
repository_regex = re.compile(
    rf"{path_component_regex.pattern}(?:/{path_component_regex.pattern})*$"
)
tag_regex = re.compile(r"[\w][\w.-]{0,127}$")
digest_regex = re.compile(
    r"(?P<algorithm>[a-z0-9]+(?:[.+_-][a-z0-9]+)*)"
    r":(?P<encoded>[a-zA-Z0-9=_-]+)$"
)
sha256_encoded_regex = re.compile(r"[a-f0-9]{64}$")


def is_digest(value: str) -> bool:
    """
    Check whether a string has the ``algorithm:encoded`` form of a content digest.
    """
    match = digest_regex.match(value or "")
    if not match:
        return False

    if match.group("algorithm") == "sha256":
        return bool(sha256_encoded_regex.match(match.group("encoded")))

    return True


class ImageReference(BaseModel):
    """
    A parsed ``[registry/]repository[:tag|@digest]`` reference.
    """
    model_config = ConfigDict(frozen=True)

    registry: str = Field(
        ...,
        min_length=1,
        description="Registry host, optionally with a port",
        examples=["docker.io", "123456789012.dkr.ecr.us-east-1.amazonaws.com"],
    )

    repository: str = Field(
        ...,
        min_length=1,
        description="Repository path within the registry",
        examples=["foo/bar"],
    )

    tag_or_digest: str = Field(
        ...,
        min_length=1,
        description="Mutable tag or immutable content digest",
        examples=["latest", "sha256:9a161b6fc2f8ef74bb368f56edcac33a91b494d082da3693a600751a1a68b7d8"],
    )

    @property
    def is_digest(self) -> bool:
        return is_digest(self.tag_or_digest)

    def __str__(self) -> str:
        separator = "@" if self.is_digest else ":"
        return f"{self.registry}/{self.repository}{separator}{self.tag_or_digest}"


def _is_registry_host(segment: str) -> bool:
    return "." in segment or ":" in segment or segment == "localhost"


def parse_image_reference(desc: str) -> ImageReference:
    """
    Parse an image descriptor string into registry, repository and tag or digest.

    The registry defaults to docker.io when the first path segment does not
    look like a host, and the tag defaults to ``latest``. A trailing
    ``@digest`` wins over a ``:tag``.

    :param desc: image descriptor, e.g. ``public.ecr.aws/foo/bar:version``
    :return: the parsed ImageReference
    """
    if not desc or desc != desc.strip():
        raise ReferenceParseError(f"Invalid image reference: {desc!r}")

    registry = default_registry
    remainder = desc

    head, sep, tail = desc.partition("/")
    if sep and _is_registry_host(head):
        registry = head
        remainder = tail

    if not remainder:
        raise ReferenceParseError(f"Image reference {desc!r} has no repository")

    tag_or_digest = None
    name = remainder

    if "@" in remainder:
        name, _, digest = remainder.partition("@")
        if not is_digest(digest):
            raise ReferenceParseError(f"Invalid digest {digest!r} in image reference {desc!r}")
        tag_or_digest = digest

    # a tag is only a colon after the last path separator
    last_segment_start = name.rfind("/") + 1
    colon = name.rfind(":")
    if colon >= last_segment_start:
        name, tag = name[:colon], name[colon + 1:]
        if tag_or_digest is not None:
            logger.debug("Ignoring tag %s of %s in favour of its digest", tag, desc)
        elif not tag_regex.match(tag):
            raise ReferenceParseError(f"Invalid tag {tag!r} in image reference {desc!r}")
        else:
            tag_or_digest = tag

    if not repository_regex.match(name):
        raise ReferenceParseError(f"Invalid repository {name!r} in image reference {desc!r}")

    return ImageReference(
        registry=registry,
        repository=name,
        tag_or_digest=tag_or_digest or default_tag,
    )
