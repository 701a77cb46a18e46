"""File content hashing utilities for stage fingerprints."""

import hashlib
from pathlib import Path
from typing import Union


def compute_content_hash(content: Union[str, bytes]) -> str:
    """Compute SHA256 hash of in-memory content.

    Args:
        content: Text or bytes to hash

    Returns:
        Hex digest of SHA256 hash
    """
    if isinstance(content, str):
        content = content.encode("utf-8", errors="ignore")
    return hashlib.sha256(content).hexdigest()


def compute_file_hash(file_path: Union[str, Path], chunk_size: int = 65536) -> str:
    """Compute SHA256 hash of a file's bytes.

    Args:
        file_path: Path to file
        chunk_size: Read size in bytes

    Returns:
        SHA256 hex digest of file content

    Raises:
        OSError: If the file cannot be read
    """
    digest = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()
