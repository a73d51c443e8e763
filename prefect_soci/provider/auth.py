import base64
import logging
import re
from typing import Optional, Any

from pydantic import BaseModel, ConfigDict, SecretStr

from prefect_soci.provider.errors import RegistryAuthError

logger = logging.getLogger(__name__)

# <account>.dkr.ecr[-fips].<region>.amazonaws.com[.cn]
ecr_registry_regex = re.compile(
    r"^\d{12}\.dkr\.ecr(?:-fips)?\.[a-z0-9-]+\.amazonaws\.com(?:\.cn)?(?::\d+)?$"
)


class RegistryCredentials(BaseModel):
    """
    Credentials installed on a registry client.

    ``authorization`` is the complete value of the Authorization header sent
    with every request; ``username``/``password`` are handed to the oras auth
    backend so it can answer bearer token challenges.
    """
    model_config = ConfigDict(frozen=True)

    source: str
    auth_backend: str = "token"
    authorization: Optional[SecretStr] = None
    username: Optional[str] = None
    password: Optional[SecretStr] = None

    @property
    def anonymous(self) -> bool:
        return self.authorization is None


def is_ecr_registry(registry_host: str) -> bool:
    """
    Check if a registry host is a private Amazon ECR registry.
    """
    return bool(ecr_registry_regex.match(registry_host or ""))


def _split_user_password(token: str) -> tuple[str, str]:
    username, sep, password = token.partition(":")
    if not sep:
        return "", token
    return username, password


def _get_ecr_token(
    credentials: Optional[dict[str, Any]] = None,
    endpoint: Optional[str] = None,
) -> str:
    """
    Retrieve an ECR authorization token using AwsCredentials.

    Without explicit credentials the ambient AWS configuration (environment,
    shared config, instance or task role) is used.

    :param credentials: optional dictionary of AwsCredentials fields
    :param endpoint: optional non default ECR endpoint url
    :return: the base64 encoded ``AWS:password`` token
    """
    try:
        from prefect_aws import AwsCredentials
    except ImportError as e:
        raise ImportError(
            "prefect-aws is required for ECR authentication. Please install it with `pip install prefect-aws`."
        ) from e

    data = dict(credentials or {})
    if endpoint:
        logger.debug("Using custom ECR endpoint %s", endpoint)
        data["aws_client_parameters"] = {
            **(data.get("aws_client_parameters") or {}),
            "endpoint_url": endpoint,
        }

    try:
        aws_credentials = AwsCredentials.model_validate(data)

        logger.debug("Getting ECR client using AwsCredentials (region: %s)", aws_credentials.region_name)
        client = aws_credentials.get_client("ecr")
        response = client.get_authorization_token()
    except Exception as e:
        logger.error("Failed to retrieve ECR auth token: %s", e)
        raise RegistryAuthError(f"Failed to retrieve ECR auth token: {e}", operation="authorize") from e

    auth_data = response.get("authorizationData") or []
    if not auth_data:
        raise RegistryAuthError(
            "Couldn't authorize with ECR: empty authorization data returned", operation="authorize"
        )

    token = auth_data[0].get("authorizationToken")
    if not token:
        raise RegistryAuthError(
            "Couldn't authorize with ECR: empty authorization token returned", operation="authorize"
        )

    return token


def resolve_credentials(
    registry_host: str,
    auth_token: Optional[str] = None,
    ecr_endpoint: Optional[str] = None,
    aws_credentials: Optional[dict[str, Any]] = None,
) -> RegistryCredentials:
    """
    Decide how to authenticate against a registry.

    An explicit token always wins and is sent as basic credentials. ECR
    registries are otherwise authorized through a token exchange, and
    anything else is accessed anonymously.

    :param registry_host: the registry host, e.g. 123456789012.dkr.ecr.us-east-1.amazonaws.com
    :param auth_token: explicit ``USER:PASSWORD`` token
    :param ecr_endpoint: optional non default ECR endpoint
    :param aws_credentials: optional AwsCredentials fields for the ECR exchange
    """
    if auth_token:
        logger.info("Using auth token")
        username, password = _split_user_password(auth_token)
        encoded = base64.b64encode(auth_token.encode("utf-8")).decode("utf-8")
        return RegistryCredentials(
            source="token",
            auth_backend="token",
            authorization=SecretStr(f"Basic {encoded}"),
            username=username,
            password=SecretStr(password),
        )

    if is_ecr_registry(registry_host):
        logger.info("Authorizing with ECR registry %s", registry_host)
        token = _get_ecr_token(aws_credentials, ecr_endpoint)

        # Token is base64 encoded "AWS:password"
        try:
            username, password = _split_user_password(base64.b64decode(token).decode("utf-8"))
        except ValueError as e:
            raise RegistryAuthError(
                f"Couldn't authorize with ECR: malformed authorization token: {e}", operation="authorize"
            ) from e

        return RegistryCredentials(
            source="ecr",
            auth_backend="basic",
            authorization=SecretStr(f"Basic {token}"),
            username=username,
            password=SecretStr(password),
        )

    logger.debug("No credentials for %s, proceeding anonymously", registry_host)
    return RegistryCredentials(source="anonymous")
