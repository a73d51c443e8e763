import re
from typing import Optional

from pydantic import BaseModel, Field

# The value takes the form of `os/arch` or `os/arch/variant`.
# https://docs.docker.com/reference/cli/docker/buildx/build/#platform
platform_regex = re.compile(
    "(?P<os>[^/]+)"
    "/(?P<architecture>[^/]+)"
    "(?:/(?P<variant>[^/]+))?"
    "$"
)


class Platform(BaseModel):
    os: str = Field(
        ...,
        description="Operating system",
        examples=["linux", "windows"]
    )

    architecture: str = Field(
        ...,
        description="CPU architecture",
        examples=["amd64", "arm64"]
    )

    variant: Optional[str] = Field(
        None,
        description="CPU variant",
        examples=["v7", "v8"]
    )

    @classmethod
    def from_str(cls, platform_str: str) -> "Platform":
        match = platform_regex.match(platform_str)

        if not match:
            raise ValueError(f"Invalid platform string: {platform_str}")

        return Platform(
            os=match.group("os"),
            architecture=match.group("architecture"),
            variant=match.group("variant"),
        )

    def is_match(self, other: Optional[dict]) -> bool:
        """
        Check if this platform matches a manifest list platform dict.

        Fields missing from the other platform match anything, and a variant
        is only compared when this platform names one.

        :param other: the platform dict of a manifest list entry
        :return: True if they match, False otherwise
        """
        other = other or {}
        return all([
            other.get("os") is None or self.os == other.get("os"),
            other.get("architecture") is None or self.architecture == other.get("architecture"),
            self.variant is None or other.get("variant") is None or self.variant == other.get("variant"),
        ])

    def __str__(self) -> str:
        return "/".join(part for part in (self.os, self.architecture, self.variant) if part)


def describe_platform(platform: Optional[dict]) -> str:
    if not platform:
        return "unknown"
    return "/".join(
        platform[key] for key in ("os", "architecture", "variant") if platform.get(key)
    )
