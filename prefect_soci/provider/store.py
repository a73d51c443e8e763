import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Iterable

from prefect_soci.provider.errors import DigestMismatchError, SociIndexerError
from prefect_soci.provider.models import Descriptor, Manifest
from prefect_soci.provider.reference import is_digest
from prefect_soci.utils.digest import copy_with_digest, digest_bytes, digest_file

logger = logging.getLogger(__name__)

ref_name_annotation = "org.opencontainers.image.ref.name"


class OciLayoutStore:
    def __init__(self, root: str | Path):
        """
        Open (and create when missing) an OCI image layout directory.

        :param root: directory of the layout
        """
        self.root = Path(root)
        self._lock = threading.Lock()

        (self.root / "blobs").mkdir(parents=True, exist_ok=True)

        layout = self.root / "oci-layout"
        if not layout.exists():
            layout.write_text(json.dumps({"imageLayoutVersion": "1.0.0"}))

        if not self.index_path.exists():
            self._write_index({"schemaVersion": 2, "manifests": []})

    @property
    def index_path(self) -> Path:
        return self.root / "index.json"

    def blob_path(self, digest: str) -> Path:
        if not is_digest(digest):
            raise ValueError(f"Invalid digest: {digest}")
        algorithm, encoded = digest.split(":", 1)
        return self.root / "blobs" / algorithm / encoded

    def exists(self, descriptor: Descriptor) -> bool:
        """
        Check that a blob is present and intact.

        A blob with the wrong size or digest is removed so it gets fetched again.
        """
        path = self.blob_path(descriptor.digest)
        if not path.is_file():
            return False

        if path.stat().st_size == descriptor.size and digest_file(str(path)) == descriptor.digest:
            return True

        logger.warning("Removing corrupt blob %s from %s", descriptor.digest, self.root)
        path.unlink(missing_ok=True)
        return False

    def write(self, descriptor: Descriptor, chunks: Iterable[bytes]) -> Path:
        """
        Store content under its digest, verifying it on the way in.

        :param descriptor: descriptor the content must match
        :param chunks: the content
        :return: path of the stored blob
        """
        path = self.blob_path(descriptor.digest)
        path.parent.mkdir(parents=True, exist_ok=True)

        with tempfile.NamedTemporaryFile(dir=path.parent, prefix=".ingest-", delete=False) as tmp:
            try:
                digest, size = copy_with_digest(chunks, tmp)
            except BaseException:
                os.unlink(tmp.name)
                raise

        if digest != descriptor.digest or size != descriptor.size:
            os.unlink(tmp.name)
            raise DigestMismatchError(
                f"Content of {descriptor.digest} does not match: got {digest} ({size} bytes, expected {descriptor.size})",
                expected=descriptor.digest,
                actual=digest,
                digest=descriptor.digest,
                operation="store blob",
            )

        os.replace(tmp.name, path)
        logger.debug("Stored %s (%d bytes)", descriptor.digest, size)
        return path

    def write_bytes(self, data: bytes, media_type: str, **fields) -> Descriptor:
        """
        Store a small piece of content and return its descriptor.
        """
        descriptor = Descriptor(media_type=media_type, digest=digest_bytes(data), size=len(data), **fields)
        if not self.exists(descriptor):
            self.write(descriptor, [data])
        return descriptor

    def read_bytes(self, descriptor: Descriptor) -> bytes:
        path = self.blob_path(descriptor.digest)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise SociIndexerError(
                f"Content {descriptor.digest} not found in {self.root}", digest=descriptor.digest, operation="read blob"
            ) from e

    def get_manifest(self, descriptor: Descriptor) -> Manifest:
        data = json.loads(self.read_bytes(descriptor))
        data.setdefault("mediaType", descriptor.media_type)
        return Manifest.model_validate(data)

    def _read_index(self) -> dict:
        return json.loads(self.index_path.read_text())

    def _write_index(self, index: dict) -> None:
        tmp = self.index_path.with_suffix(".tmp")
        tmp.write_text(json.dumps(index, indent=2))
        os.replace(tmp, self.index_path)

    def tag(self, descriptor: Descriptor, reference: str) -> None:
        """
        Record a descriptor in index.json under a reference name.
        """
        with self._lock:
            index = self._read_index()
            manifests = [
                m for m in index.get("manifests", [])
                if (m.get("annotations") or {}).get(ref_name_annotation) != reference
            ]
            entry = descriptor.to_dict()
            entry["annotations"] = {**(entry.get("annotations") or {}), ref_name_annotation: reference}
            manifests.append(entry)
            index["manifests"] = manifests
            self._write_index(index)
