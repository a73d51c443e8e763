import contextlib
import json
import logging
import os
import re
from typing import Iterator, Optional
from urllib.parse import urlencode, urljoin

import jsonschema
import oras.auth
import requests
import urllib3
from oras.provider import Registry as ORASRegistry
from requests.adapters import HTTPAdapter

from prefect_soci.provider.auth import RegistryCredentials, resolve_credentials
from prefect_soci.provider.cancellation import CancellationScope
from prefect_soci.provider.container import ImageContainer, api_host
from prefect_soci.provider.defaults import (
    accepted_manifest_media_types,
    default_chunk_size,
    user_agent,
)
from prefect_soci.provider.errors import (
    DigestMismatchError,
    OperationCancelledError,
    RegistryAuthError,
    RegistryNotFoundError,
    RegistryRequestError,
    RegistryUnsupportedError,
    classify_push_rejection,
    decode_registry_errors,
)
from prefect_soci.provider.models import Descriptor, Manifest
from prefect_soci.provider.schemas import manifest_envelope
from prefect_soci.utils.digest import digest_bytes

logger = logging.getLogger(__name__)


# oras wraps do_request in a retry loop that sleeps between attempts
_oras_do_request = ORASRegistry.do_request.__wrapped__

# raised by oras when a 401/403 cannot be answered with the configured credentials
_oras_auth_refused = "Cannot respond to request for authentication"

_repository_in_url = re.compile(r"/v2/(?P<repository>.+?)/(?:manifests|blobs|tags)/")


class TimeoutHTTPAdapter(HTTPAdapter):
    """
    Apply a default timeout to every request sent through a session, never
    longer than what is left of the cancellation deadline.
    """

    def __init__(self, *args, timeout: Optional[float] = None, cancellation: Optional[CancellationScope] = None, **kwargs):
        self.timeout = timeout
        self.cancellation = cancellation
        super().__init__(*args, **kwargs)

    def send(self, request, **kwargs):
        timeout = kwargs.get("timeout")
        if timeout is None:
            timeout = self.timeout
        if self.cancellation is not None:
            timeout = self.cancellation.cap_timeout(timeout)
        kwargs["timeout"] = timeout
        return super().send(request, **kwargs)


class _ResponseAbort:
    """
    Interrupts a streamed response, even while another thread is blocked
    reading from its socket.
    """

    def __init__(self, response: requests.Response):
        self.response = response

    def close(self) -> None:
        # the reading thread closes the response once its read returns
        try:
            self.response.raw.shutdown()
        except (AttributeError, ValueError, RuntimeError, OSError) as e:
            logger.debug("Could not shut down response socket, closing it: %s", e)
            self.response.close()


class Registry(ORASRegistry):
    def __init__(
            self,
            hostname: str,
            insecure: bool = False,
            tls_verify: bool = True,
            auth_backend: str = "token",
            timeout: Optional[float] = None,
            cancellation: Optional[CancellationScope] = None,
    ):
        """
        A client bound to one registry host.

        :param hostname: registry host as written in the image reference
        :param insecure: use plain http
        :param tls_verify: verify the registry certificate
        :param auth_backend: oras auth backend, "token" or "basic"
        :param timeout: per request socket timeout in seconds
        :param cancellation: scope that aborts every request of this client
        """
        super().__init__(
            hostname=api_host(hostname),
            insecure=insecure,
            tls_verify=tls_verify,
            auth_backend=auth_backend,
        )
        self.registry_name = hostname
        self.cancellation = cancellation or CancellationScope()
        self.cancellation.attach(self.session)

        adapter = TimeoutHTTPAdapter(timeout=timeout, cancellation=self.cancellation)
        self.session.mount("https://", adapter)
        self.session.mount("http://", adapter)

        # identify ourselves for registry side diagnostics
        self.session.headers.update({"User-Agent": user_agent})

    def install_credentials(self, credentials: RegistryCredentials) -> None:
        """
        Send the resolved credentials with every subsequent request.
        """
        if credentials.anonymous:
            return

        self.session.headers["Authorization"] = credentials.authorization.get_secret_value()
        if credentials.password is not None:
            # lets the token backend answer bearer challenges with the same credentials
            self.auth.set_basic_auth(credentials.username, credentials.password.get_secret_value())
        logger.debug("Installed %s credentials for %s", credentials.source, self.registry_name)

    def container(self, repository: str, reference: Optional[str] = None) -> ImageContainer:
        return ImageContainer(self.registry_name, repository, reference)

    def do_request(
            self,
            url: str,
            method: str = "GET",
            data=None,
            headers: Optional[dict] = None,
            json=None,
            stream: bool = False,
    ) -> requests.Response:
        """
        Issue a single request through oras' authentication handling.

        Nothing is retried: transport failures and error statuses go straight
        back to the caller. The cancellation scope is checked before the
        request and again once the response arrives.
        """
        operation = f"{method} {url}"
        self.cancellation.check(operation=operation)
        try:
            response = _oras_do_request(self, url, method, data=data, json=json, headers=headers, stream=stream)
        except requests.RequestException as e:
            if self.cancellation.cancelled:
                raise OperationCancelledError(
                    f"Registry operation aborted: {self.cancellation.reason}", operation=operation
                ) from e
            raise
        except (oras.auth.AuthenticationException, ValueError) as e:
            if isinstance(e, ValueError) and not str(e).startswith(_oras_auth_refused):
                raise
            match = _repository_in_url.search(url)
            raise RegistryAuthError(
                f"Registry authentication failed: {e}",
                repository=match.group("repository") if match else None,
                operation=operation,
            ) from e

        if self.cancellation.cancelled:
            response.close()
            self.cancellation.check(operation=operation)
        return response

    def _raise_for_response(
            self,
            response: requests.Response,
            operation: str,
            expected: tuple = (200,),
            repository: Optional[str] = None,
            digest: Optional[str] = None,
    ) -> None:
        if response.status_code in expected:
            return

        errors = decode_registry_errors(response)
        detail = "; ".join(
            f"{error.get('code', 'UNKNOWN')}: {error.get('message', '')}" for error in errors
        ) or (response.text or "")[:512]
        message = f"Response status code {response.status_code}: {detail}".rstrip(": ")

        if response.status_code in (401, 403):
            raise RegistryAuthError(message, repository=repository, digest=digest, operation=operation)

        error_class = RegistryNotFoundError if response.status_code == 404 else RegistryRequestError
        raise error_class(
            message,
            status_code=response.status_code,
            url=response.url,
            errors=errors,
            repository=repository,
            digest=digest,
            operation=operation,
        )

    def fetch_manifest(self, container: ImageContainer) -> tuple[bytes, str]:
        """
        Retrieve the raw bytes of a manifest.

        When the container points at a digest the content is verified
        against it.

        :param container: container pointing at a tag or digest
        :return: Tuple of (manifest bytes, media type)
        """
        logger.debug("Fetching manifest from %s", container.manifest_url())
        headers = {"Accept": ", ".join(accepted_manifest_media_types)}
        response = self.do_request(f"{self.prefix}://{container.manifest_url()}", "GET", headers=headers)
        self._raise_for_response(
            response, "fetch manifest", repository=container.repository, digest=container.digest
        )

        content = response.content
        if container.digest:
            actual = digest_bytes(content)
            if actual != container.digest:
                raise DigestMismatchError(
                    f"Manifest digest mismatch: expected {container.digest}, got {actual}",
                    expected=container.digest,
                    actual=actual,
                    repository=container.repository,
                    operation="fetch manifest",
                )

        media_type = response.headers.get("Content-Type", "").split(";")[0].strip()
        return content, media_type

    def read_manifest(self, container: ImageContainer, schema: Optional[dict] = None) -> Manifest:
        """
        Retrieve and validate a manifest.

        :param container: parsed container
        :param schema: optional jsonschema to validate against
        """
        content, media_type = self.fetch_manifest(container)

        try:
            data = json.loads(content)
            jsonschema.validate(data, schema=schema or manifest_envelope)
        except (ValueError, jsonschema.ValidationError) as e:
            raise RegistryRequestError(
                f"Invalid manifest returned by registry: {e}",
                repository=container.repository,
                digest=container.digest,
                operation="fetch manifest",
            ) from e

        # Docker schema 2 manifests always carry the media type in the body,
        # OCI ones may leave it to the Content-Type header.
        data.setdefault("mediaType", media_type)
        manifest = Manifest.model_validate(data)
        logger.debug("Successfully retrieved manifest (media type: %s)", manifest.media_type or "unknown")
        return manifest

    def resolve(self, container: ImageContainer) -> Descriptor:
        """
        Resolve a tag or digest to the descriptor of its manifest.
        """
        logger.debug("Resolving %s", container)
        headers = {"Accept": ", ".join(accepted_manifest_media_types)}
        response = self.do_request(f"{self.prefix}://{container.manifest_url()}", "HEAD", headers=headers)
        self._raise_for_response(response, "resolve", repository=container.repository, digest=container.digest)

        digest = response.headers.get("Docker-Content-Digest")
        media_type = response.headers.get("Content-Type", "").split(";")[0].strip()
        size = response.headers.get("Content-Length")

        if not digest or size is None:
            # not every registry answers HEAD with the digest
            content, media_type = self.fetch_manifest(container)
            digest = digest_bytes(content)
            size = len(content)

        return Descriptor(media_type=media_type, digest=digest, size=int(size))

    def has_blob(self, container: ImageContainer, digest: str) -> bool:
        response = self.do_request(f"{self.prefix}://{container.get_blob_url(digest)}", "HEAD")
        if response.status_code == 404:
            return False
        self._raise_for_response(response, "check blob", repository=container.repository, digest=digest)
        return True

    @contextlib.contextmanager
    def stream_blob(self, container: ImageContainer, digest: str, chunk_size: int = default_chunk_size) -> Iterator[Iterator[bytes]]:
        """
        Stream a blob from the registry.

        :param container: parsed container
        :param digest: digest of the blob
        :param chunk_size: size of the chunks yielded
        """
        logger.debug("Downloading blob %s from %s", digest, container.repository)
        response = self.do_request(f"{self.prefix}://{container.get_blob_url(digest)}", "GET", stream=True)
        abort = _ResponseAbort(response)
        self.cancellation.attach(abort)
        try:
            self._raise_for_response(response, "fetch blob", repository=container.repository, digest=digest)
            yield self._iter_blob(response, chunk_size, container.repository, digest)
        finally:
            self.cancellation.detach(abort)
            response.close()

    def _iter_blob(self, response: requests.Response, chunk_size: int, repository: str, digest: str) -> Iterator[bytes]:
        # read1 hands back whatever arrived instead of waiting for a full chunk
        operation = "fetch blob"
        try:
            while True:
                self.cancellation.check(operation=operation)
                chunk = response.raw.read1(chunk_size, decode_content=False)
                if not chunk:
                    break
                yield chunk
        except (urllib3.exceptions.HTTPError, OSError, ValueError) as e:
            if self.cancellation.cancelled:
                raise OperationCancelledError(
                    f"Registry operation aborted: {self.cancellation.reason}",
                    repository=repository,
                    digest=digest,
                    operation=operation,
                ) from e
            raise RegistryRequestError(
                f"Failed to read blob: {e}", repository=repository, digest=digest, operation=operation
            ) from e

        # a shut down socket reads as end of stream
        self.cancellation.check(operation=operation)

    def push_blob(self, container: ImageContainer, descriptor: Descriptor, path: str) -> None:
        """
        Upload a blob from a local file as a monolithic upload.

        :param container: parsed container
        :param descriptor: descriptor of the blob
        :param path: local file holding the blob content
        """
        logger.debug("Uploading blob %s (%d bytes) to %s", descriptor.digest, descriptor.size, container.repository)
        response = self.do_request(f"{self.prefix}://{container.upload_blob_url()}", "POST")
        self._raise_for_response(
            response, "start blob upload", expected=(202,), repository=container.repository, digest=descriptor.digest
        )

        location = response.headers.get("Location")
        if not location:
            raise RegistryRequestError(
                "Registry did not return an upload location",
                repository=container.repository,
                digest=descriptor.digest,
                operation="start blob upload",
            )

        upload_url = urljoin(f"{self.prefix}://{container.registry}/", location)
        separator = "&" if "?" in upload_url else "?"
        upload_url = f"{upload_url}{separator}{urlencode({'digest': descriptor.digest})}"

        headers = {
            "Content-Type": "application/octet-stream",
            "Content-Length": str(os.path.getsize(path)),
        }
        with open(path, "rb") as f:
            response = self.do_request(upload_url, "PUT", data=f, headers=headers)
        self._raise_for_response(
            response, "upload blob", expected=(201,), repository=container.repository, digest=descriptor.digest
        )

    def put_manifest(
            self,
            container: ImageContainer,
            content: bytes,
            media_type: str,
            reference: Optional[str] = None,
    ) -> str:
        """
        Upload manifest bytes under a tag or digest.

        The bytes are sent untouched so the registry computes the same digest.
        A rejection that shows the registry does not accept OCI artifacts is
        raised as RegistryUnsupportedError.

        :param container: parsed container
        :param content: the manifest bytes
        :param media_type: manifest media type sent as Content-Type
        :param reference: tag or digest, defaults to the content digest
        :return: manifest digest
        """
        digest = digest_bytes(content)
        reference = reference or digest
        logger.debug("Uploading manifest to %s (content-type: %s)", container.manifest_url(reference), media_type)

        headers = {"Content-Type": media_type}
        response = self.do_request(
            f"{self.prefix}://{container.manifest_url(reference)}",
            "PUT",
            headers=headers,
            data=content,
        )

        if response.status_code not in (200, 201) and classify_push_rejection(response):
            logger.warning(
                "Registry rejected manifest %s: %s %s", digest, response.status_code, (response.text or "")[:512]
            )
            raise RegistryUnsupportedError(
                "Registry does not support OCI artifacts",
                repository=container.repository,
                digest=digest,
                operation="push manifest",
            )

        self._raise_for_response(
            response, "push manifest", expected=(200, 201), repository=container.repository, digest=digest
        )

        return response.headers.get("Docker-Content-Digest") or digest


def init_registry(
        registry_host: str,
        auth_token: Optional[str] = None,
        insecure: bool = False,
        timeout: Optional[float] = None,
        cancellation: Optional[CancellationScope] = None,
        ecr_endpoint: Optional[str] = None,
        aws_credentials: Optional[dict] = None,
) -> Registry:
    """
    Create an authenticated client for one registry.

    :param registry_host: registry host as written in the image reference
    :param auth_token: explicit ``USER:PASSWORD`` token
    :param insecure: use plain http
    :param timeout: per request socket timeout in seconds
    :param cancellation: scope that aborts every request of this client
    :param ecr_endpoint: non default ECR endpoint for the token exchange
    :param aws_credentials: optional AwsCredentials fields for the token exchange
    """
    logger.info("Initializing registry client for %s", registry_host)
    credentials = resolve_credentials(
        registry_host,
        auth_token=auth_token,
        ecr_endpoint=ecr_endpoint,
        aws_credentials=aws_credentials,
    )

    registry = Registry(
        registry_host,
        insecure=insecure,
        auth_backend=credentials.auth_backend,
        timeout=timeout,
        cancellation=cancellation,
    )
    registry.install_credentials(credentials)
    return registry
