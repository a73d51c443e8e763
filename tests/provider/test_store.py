import hashlib
import json

import pytest

from prefect_soci.provider.errors import DigestMismatchError
from prefect_soci.provider.models import Descriptor
from prefect_soci.provider.store import OciLayoutStore


def descriptor_for(data: bytes, media_type="application/octet-stream") -> Descriptor:
    return Descriptor(media_type=media_type, digest="sha256:" + hashlib.sha256(data).hexdigest(), size=len(data))


@pytest.fixture
def store(tmp_path):
    return OciLayoutStore(tmp_path / "store")


class TestOciLayoutStore:
    """Unit tests for OciLayoutStore."""

    def test_layout_files(self, store):
        assert json.loads((store.root / "oci-layout").read_text()) == {"imageLayoutVersion": "1.0.0"}
        assert json.loads(store.index_path.read_text()) == {"schemaVersion": 2, "manifests": []}

    def test_write_and_read(self, store):
        descriptor = descriptor_for(b"hello world")

        path = store.write(descriptor, [b"hello ", b"world"])

        assert path == store.root / "blobs" / "sha256" / descriptor.digest.split(":")[1]
        assert store.exists(descriptor)
        assert store.read_bytes(descriptor) == b"hello world"

    def test_write_rejects_wrong_content(self, store):
        descriptor = descriptor_for(b"expected")

        with pytest.raises(DigestMismatchError):
            store.write(descriptor, [b"something else"])

        assert not store.exists(descriptor)
        assert list((store.root / "blobs" / "sha256").iterdir()) == []

    def test_exists_removes_corrupt_blob(self, store):
        descriptor = descriptor_for(b"content")
        store.write(descriptor, [b"content"])
        store.blob_path(descriptor.digest).write_bytes(b"tampered")

        assert not store.exists(descriptor)
        assert not store.blob_path(descriptor.digest).exists()

    def test_write_bytes(self, store):
        descriptor = store.write_bytes(b"{}", "application/vnd.oci.empty.v1+json")

        assert descriptor == descriptor_for(b"{}", "application/vnd.oci.empty.v1+json")
        assert store.exists(descriptor)

    def test_invalid_digest(self, store):
        with pytest.raises(ValueError):
            store.blob_path("../../etc/passwd")

    def test_tag_replaces_reference(self, store):
        first = descriptor_for(b"first", "application/vnd.oci.image.manifest.v1+json")
        second = descriptor_for(b"second", "application/vnd.oci.image.manifest.v1+json")

        store.tag(first, "v1")
        store.tag(second, "v1")

        manifests = json.loads(store.index_path.read_text())["manifests"]
        assert len(manifests) == 1
        assert manifests[0]["digest"] == second.digest
        assert manifests[0]["annotations"]["org.opencontainers.image.ref.name"] == "v1"

    def test_get_manifest(self, store):
        content = json.dumps({
            "schemaVersion": 2,
            "config": {"mediaType": "application/vnd.oci.image.config.v1+json", "digest": "sha256:" + "a" * 64, "size": 2},
            "layers": [],
        }).encode()
        descriptor = store.write_bytes(content, "application/vnd.oci.image.manifest.v1+json")

        manifest = store.get_manifest(descriptor)

        assert manifest.media_type == "application/vnd.oci.image.manifest.v1+json"
        assert manifest.is_image

    def test_reopen_keeps_content(self, store):
        descriptor = store.write_bytes(b"data", "application/octet-stream")

        reopened = OciLayoutStore(store.root)

        assert reopened.exists(descriptor)
