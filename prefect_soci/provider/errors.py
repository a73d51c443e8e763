import re
from typing import Optional

import requests


class SociIndexerError(Exception):
    """
    Base class for all errors raised by prefect-soci.

    Carries optional correlation fields so callers can log the repository,
    digest and operation alongside the message. ManifestResolutionError and
    its subclasses mean the image is skipped, every other error fails the run.
    """

    def __init__(
        self,
        message: str,
        repository: Optional[str] = None,
        digest: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.repository = repository
        self.digest = digest
        self.operation = operation

    def __str__(self) -> str:
        context = [
            f"{key}={value}"
            for key, value in (
                ("operation", self.operation),
                ("repository", self.repository),
                ("digest", self.digest),
            )
            if value
        ]
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class ReferenceParseError(SociIndexerError, ValueError):
    """The image reference string is malformed."""


class RegistryAuthError(SociIndexerError):
    """Credentials are missing or the token exchange failed."""


class OperationCancelledError(SociIndexerError):
    """A registry call was aborted by the cancellation scope or its deadline."""


class DigestMismatchError(SociIndexerError):
    """
    Content read from the registry or the local store does not hash to the
    digest that addresses it.
    """

    def __init__(self, message: str, expected: str | None = None, actual: str | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.expected = expected
        self.actual = actual


class RegistryRequestError(SociIndexerError):
    """
    The registry answered with an unexpected HTTP status.

    ``errors`` holds the decoded OCI distribution error list when the
    response carried one.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        url: Optional[str] = None,
        errors: Optional[list[dict]] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.url = url
        self.errors = errors or []


class RegistryNotFoundError(RegistryRequestError):
    pass


class ManifestResolutionError(SociIndexerError):
    """The image manifest cannot be indexed. Not a pipeline failure."""


class ManifestNotFoundError(ManifestResolutionError):
    pass


class ImageAlreadyIndexedError(ManifestResolutionError):
    pass


class NoValidImagesError(ManifestResolutionError):
    pass


class UnexpectedConfigMediaTypeError(ManifestResolutionError):
    pass


class PullError(SociIndexerError):
    pass


class PushError(SociIndexerError):
    pass


class RegistryUnsupportedError(PushError):
    """The registry refuses OCI artifacts such as the SOCI index manifest."""


class IndexBuildError(SociIndexerError):
    pass


# Last resort for registries that report the rejection only in prose.
# ECR answers an OCI image manifest with an artifact config like this.
_unsupported_artifact_pattern = re.compile(
    r"Invalid parameter at 'ImageManifest' failed to satisfy constraint"
)

_unsupported_error_codes = {"UNSUPPORTED", "MANIFEST_INVALID"}


def decode_registry_errors(response: requests.Response) -> list[dict]:
    """
    Decode the ``{"errors": [{"code", "message", "detail"}]}`` body of a
    distribution API error response.
    """
    try:
        body = response.json()
    except ValueError:
        return []

    if not isinstance(body, dict):
        return []

    errors = body.get("errors") or []
    return [error for error in errors if isinstance(error, dict)]


def classify_push_rejection(response: requests.Response) -> bool:
    """
    Decide whether a rejected manifest push means the registry does not
    accept OCI artifacts at all.

    Structured status and error codes are checked first; matching the
    response text is only used when the registry sent nothing structured.

    :param response: the failed manifest PUT response
    :return: True if the rejection is a registry capability problem
    """
    if response.status_code == 415:
        return True

    errors = decode_registry_errors(response)
    if errors:
        for error in errors:
            code = str(error.get("code", "")).upper()
            message = str(error.get("message", ""))
            if response.status_code == 405 and code == "UNSUPPORTED":
                return True
            if code in _unsupported_error_codes and _unsupported_artifact_pattern.search(message):
                return True
        return False

    return response.status_code in (400, 405) and bool(
        _unsupported_artifact_pattern.search(response.text or "")
    )
