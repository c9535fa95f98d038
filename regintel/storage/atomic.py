"""Atomic file writes and file hashing."""

import hashlib
import json
import uuid
from pathlib import Path
from typing import Any, Union


def compute_file_hash(file_path: Union[str, Path]) -> str:
    """
    Compute SHA256 hex digest of a file.

    Args:
        file_path: Path to the file to hash

    Returns:
        Hex digest string
    """
    hasher = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def atomic_write_bytes(file_path: Union[str, Path], data: bytes) -> None:
    """Write to a sibling temp file, then rename over the target."""
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = file_path.with_name(f"{file_path.name}.{uuid.uuid4().hex}.tmp")
    try:
        with open(temp_path, "wb") as f:
            f.write(data)
        temp_path.replace(file_path)
    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise


def atomic_write_json(file_path: Union[str, Path], payload: Any) -> None:
    content = json.dumps(payload, indent=2, ensure_ascii=False)
    atomic_write_bytes(file_path, content.encode("utf-8"))
