import hashlib
import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from unittest.mock import patch

import pytest

from prefect_soci.provider.cancellation import CancellationScope
from prefect_soci.provider.defaults import (
    default_oci_image_config_media_type,
    default_oci_manifest_media_type,
)
from prefect_soci.provider.errors import (
    OperationCancelledError,
    PullError,
    RegistryAuthError,
    RegistryRequestError,
)
from prefect_soci.provider.registry import Registry
from prefect_soci.provider.store import OciLayoutStore
from prefect_soci.provider.transfer import ContentTransfer


def sha256(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


class RegistryHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"

    def log_message(self, format, *args):
        pass

    def handle_request(self):
        self.server.requests.append((self.command, self.path))
        try:
            self.server.respond(self)
        except (BrokenPipeError, ConnectionResetError):
            pass

    do_GET = do_HEAD = do_PUT = do_POST = handle_request

    def reply(self, status, body=b"", headers=None):
        self.send_response(status)
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)


@pytest.fixture
def registry_server():
    server = ThreadingHTTPServer(("127.0.0.1", 0), RegistryHandler)
    server.daemon_threads = True
    server.requests = []
    server.release = threading.Event()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()

    yield server

    server.release.set()
    server.shutdown()
    server.server_close()


def make_registry(server, **kwargs) -> Registry:
    return Registry(f"127.0.0.1:{server.server_address[1]}", insecure=True, **kwargs)


class ImageServer:
    """Serves one image manifest and its blobs, optionally trickling a blob."""

    def __init__(self, layer: bytes, slow_chunk: int = 0, slow_delay: float = 0.0):
        self.config = b'{"architecture": "amd64", "os": "linux"}'
        self.layer = layer
        self.manifest = json.dumps({
            "schemaVersion": 2,
            "mediaType": default_oci_manifest_media_type,
            "config": {
                "mediaType": default_oci_image_config_media_type,
                "digest": sha256(self.config),
                "size": len(self.config),
            },
            "layers": [{
                "mediaType": "application/vnd.oci.image.layer.v1.tar+gzip",
                "digest": sha256(layer),
                "size": len(layer),
            }],
        }).encode()
        self.digest = sha256(self.manifest)
        self.blobs = {sha256(self.config): self.config, sha256(layer): layer}
        self.slow_chunk = slow_chunk
        self.slow_delay = slow_delay

    def __call__(self, handler: RegistryHandler):
        if "/manifests/" in handler.path:
            handler.reply(200, self.manifest, {
                "Content-Type": default_oci_manifest_media_type,
                "Docker-Content-Digest": self.digest,
            })
            return

        digest = handler.path.rsplit("/", 1)[-1]
        blob = self.blobs.get(digest)
        if blob is None:
            handler.reply(404)
            return

        if blob is not self.layer or not self.slow_chunk:
            handler.reply(200, blob)
            return

        handler.send_response(200)
        handler.send_header("Content-Length", str(len(blob)))
        handler.end_headers()
        for offset in range(0, len(blob), self.slow_chunk):
            if handler.server.release.wait(self.slow_delay):
                return
            handler.wfile.write(blob[offset:offset + self.slow_chunk])
            handler.wfile.flush()


class TestRequestsOverHttp:
    def test_pull_image(self, registry_server, tmp_path):
        image = ImageServer(layer=b"layer" * 100)
        registry_server.respond = image
        store = OciLayoutStore(tmp_path / "store")

        descriptor = ContentTransfer(make_registry(registry_server)).pull("foo/bar", image.digest, store)

        assert descriptor.digest == image.digest
        assert store.read_bytes(descriptor) == image.manifest
        for blob in image.blobs.values():
            assert store.blob_path(sha256(blob)).read_bytes() == blob

    def test_server_error_is_not_retried(self, registry_server):
        registry_server.respond = lambda handler: handler.reply(500, b"boom")
        registry = make_registry(registry_server)

        with patch("oras.decorator.time.sleep") as mock_sleep:
            with pytest.raises(RegistryRequestError) as exc_info:
                registry.resolve(registry.container("foo/bar", "v1"))

        assert exc_info.value.status_code == 500
        assert len(registry_server.requests) == 1
        mock_sleep.assert_not_called()

    def test_unanswerable_challenge_is_auth_error(self, registry_server):
        registry_server.respond = lambda handler: handler.reply(401)
        registry = make_registry(registry_server)

        with patch("oras.decorator.time.sleep") as mock_sleep:
            with pytest.raises(RegistryAuthError) as exc_info:
                registry.fetch_manifest(registry.container("foo/bar", "v1"))

        assert exc_info.value.repository == "foo/bar"
        assert len(registry_server.requests) == 1
        mock_sleep.assert_not_called()

    def test_auth_failure_fails_pull(self, registry_server, tmp_path):
        registry_server.respond = lambda handler: handler.reply(401)
        store = OciLayoutStore(tmp_path / "store")

        with pytest.raises(PullError) as exc_info:
            ContentTransfer(make_registry(registry_server)).pull("foo/bar", sha256(b"manifest"), store)

        assert isinstance(exc_info.value.__cause__, RegistryAuthError)


class TestCancellationOverHttp:
    def test_cancel_aborts_blob_download(self, registry_server, tmp_path):
        image = ImageServer(layer=b"x" * 64 * 1024, slow_chunk=1024, slow_delay=0.05)
        registry_server.respond = image
        cancellation = CancellationScope()
        store = OciLayoutStore(tmp_path / "store")
        transfer = ContentTransfer(make_registry(registry_server, cancellation=cancellation))

        timer = threading.Timer(0.3, cancellation.cancel, args=("test cancel",))
        started = time.monotonic()
        timer.start()
        try:
            with pytest.raises(OperationCancelledError):
                transfer.pull("foo/bar", image.digest, store)
        finally:
            timer.cancel()

        assert time.monotonic() - started < 2
        assert not store.blob_path(sha256(image.layer)).exists()

    def test_deadline_limits_request_timeout(self, registry_server):
        def stall(handler):
            handler.server.release.wait(5)

        registry_server.respond = stall
        registry = make_registry(registry_server, timeout=300, cancellation=CancellationScope(deadline=0.5))

        started = time.monotonic()
        with pytest.raises(OperationCancelledError, match="deadline exceeded"):
            registry.resolve(registry.container("foo/bar", "v1"))

        assert time.monotonic() - started < 2
