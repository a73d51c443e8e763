import hashlib
import logging
from typing import BinaryIO, Iterable

logger = logging.getLogger(__name__)


def digest_bytes(data: bytes) -> str:
    """
    Calculate the sha256 content digest of a byte string.
    """
    return "sha256:{}".format(hashlib.sha256(data).hexdigest())


def digest_file(path: str) -> str:
    """
    Calculate the sha256 content digest of a file without loading it in memory.
    """
    logger.debug("Calculating digest for %s", path)
    with open(path, "rb") as f:
        return "sha256:{}".format(hashlib.file_digest(f, "sha256").hexdigest())


def copy_with_digest(chunks: Iterable[bytes], out: BinaryIO) -> tuple[str, int]:
    """
    Write chunks to a file object while hashing them.

    :return: Tuple of (digest, bytes written)
    """
    hasher = hashlib.sha256()
    size = 0
    for chunk in chunks:
        if not chunk:
            continue
        hasher.update(chunk)
        out.write(chunk)
        size += len(chunk)

    return "sha256:{}".format(hasher.hexdigest()), size

