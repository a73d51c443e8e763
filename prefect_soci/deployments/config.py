import os
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from prefect_soci.provider.defaults import default_request_timeout, ecr_endpoint_env
from prefect_soci.provider.platform import Platform
from prefect_soci.provider.reference import is_digest, tag_regex


class IndexerConfig(BaseModel):
    """
    Options of one indexing run.
    """
    model_config = ConfigDict(frozen=True)

    auth_token: Optional[SecretStr] = Field(
        None,
        description="Registry authentication token, usually USER:PASSWORD",
    )

    index_tag: Optional[str] = Field(
        None,
        description="Tag for the pushed SOCI index. The index is pushed by digest only when unset.",
        examples=["latest-soci"],
    )

    fail_on_empty_index: bool = Field(
        False,
        description="Treat an image without indexable layers as a failure instead of skipping it",
    )

    platforms: Optional[List[str]] = Field(
        None,
        description="Only index these platforms of multi-architecture images",
        examples=[["linux/amd64", "linux/arm64"]],
    )

    request_timeout: Optional[float] = Field(
        default_request_timeout,
        gt=0,
        description="Socket timeout of each registry request in seconds",
    )

    deadline: Optional[float] = Field(
        None,
        gt=0,
        description="Abort the run after this many seconds",
    )

    insecure: bool = Field(
        False,
        description="Talk to the registry over plain http",
    )

    ecr_endpoint: Optional[str] = Field(
        default_factory=lambda: os.environ.get(ecr_endpoint_env) or None,
        description="Non default ECR endpoint used for the token exchange",
    )

    aws_credentials: Optional[dict[str, Any]] = Field(
        None,
        description="AwsCredentials fields for the ECR token exchange, ambient credentials are used when unset",
    )

    @field_validator("index_tag")
    @classmethod
    def _validate_index_tag(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        if is_digest(value):
            raise ValueError(f"index_tag must be a tag, not a digest: {value}")
        if not tag_regex.match(value):
            raise ValueError(f"Invalid index_tag: {value}")
        return value

    @field_validator("platforms")
    @classmethod
    def _validate_platforms(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        for platform in value or []:
            Platform.from_str(platform)
        return value

    def selected_platforms(self) -> List[Platform]:
        return [Platform.from_str(platform) for platform in self.platforms or []]

    @property
    def token(self) -> Optional[str]:
        return self.auth_token.get_secret_value() if self.auth_token else None
