"""
Content-addressed object store for downloaded files.

Objects live in one flat directory. The file name is the SHA256 of the source URL plus
an optional extension, so the same URL always maps to the same slot. The first write
wins: later puts for that URL return the stored object untouched, and the reported
digest is always computed from the bytes on disk.
"""

import hashlib
import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .atomic import atomic_write_bytes, compute_file_hash

logger = logging.getLogger(__name__)

_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


class ObjectNotFound(Exception):
    def __init__(self, object_id: str):
        self.object_id = object_id
        super().__init__(f"Stored object not found: {object_id}")


class InvalidObjectId(ValueError):
    pass


@dataclass
class StoredObject:
    id: str
    sha256: str
    size: int
    cached: bool
    storage_path: str
    ext: Optional[str] = None

    @property
    def filename(self) -> str:
        return self.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "ext": self.ext,
            "sha256": self.sha256,
            "size": self.size,
            "cached": self.cached,
            "storage_path": self.storage_path,
        }


def sanitize_object_id(object_id: str) -> str:
    """Strip path-unsafe characters; reject ids that end up empty or contain '..'."""
    safe = _UNSAFE_ID_CHARS.sub("", object_id or "")
    if not safe or ".." in safe:
        raise InvalidObjectId(f"Invalid object id: {object_id!r}")
    return safe


def object_id_for(url: str, ext: Optional[str] = None) -> str:
    url_hash = hashlib.sha256(url.encode("utf-8")).hexdigest()
    normalized_ext = (ext or "").lstrip(".").lower()
    return sanitize_object_id(f"{url_hash}.{normalized_ext}" if normalized_ext else url_hash)


class ObjectStore:
    """Flat-directory store keyed by URL digest."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self._lock = threading.Lock()

    def path_for(self, object_id: str) -> Path:
        return self.root / sanitize_object_id(object_id)

    def _describe(self, path: Path, ext: Optional[str], cached: bool) -> StoredObject:
        return StoredObject(
            id=path.name,
            sha256=compute_file_hash(path),
            size=path.stat().st_size,
            cached=cached,
            storage_path=str(path),
            ext=ext or None,
        )

    def put(self, source_url: str, data: bytes, ext: Optional[str] = None) -> StoredObject:
        """
        Store bytes fetched from source_url.

        Args:
            source_url: Canonical URL the bytes came from (determines the key)
            data: File content
            ext: Optional file extension, with or without the leading dot

        Returns:
            StoredObject; ``cached`` is True when the slot was already filled
        """
        normalized_ext = (ext or "").lstrip(".").lower()
        object_id = object_id_for(source_url, normalized_ext)
        path = self.root / object_id

        with self._lock:
            if path.is_file():
                logger.debug(f"Object cache hit for {source_url} -> {object_id}")
                return self._describe(path, normalized_ext, cached=True)
            atomic_write_bytes(path, data)

        stored = self._describe(path, normalized_ext, cached=False)
        logger.info(f"Stored {source_url} as {object_id} ({stored.size} bytes)")
        return stored

    def exists(self, object_id: str) -> bool:
        return self.path_for(object_id).is_file()

    def stat(self, object_id: str) -> StoredObject:
        path = self.path_for(object_id)
        if not path.is_file():
            raise ObjectNotFound(object_id)
        ext = path.suffix.lstrip(".") or None
        return self._describe(path, ext, cached=True)

    def get(self, object_id: str) -> bytes:
        path = self.path_for(object_id)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise ObjectNotFound(object_id)
