"""
Resumable download index.

One JSON document ``{version, updated_at, records: {url: DownloadRecord}}``, loaded
lazily into memory and rewritten atomically on every ``set``. Readers of the file never
see a partial write.
"""

import json
import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .atomic import atomic_write_json

logger = logging.getLogger(__name__)

INDEX_VERSION = 1

STATUS_CACHED = "cached"
STATUS_FAILED = "failed"


class DownloadIndexError(Exception):
    """Raised when the index file cannot be written."""
    pass


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class DownloadRecord:
    status: str
    stored_id: Optional[str] = None
    sha256: Optional[str] = None
    size: Optional[int] = None
    ext: Optional[str] = None
    download_url: Optional[str] = None
    last_seen: Optional[str] = None
    last_attempt: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DownloadRecord":
        known = {k: data.get(k) for k in cls.__dataclass_fields__}
        known["status"] = data.get("status", STATUS_FAILED)
        return cls(**known)

    @classmethod
    def cached(cls, stored, download_url: str, now: Optional[datetime] = None) -> "DownloadRecord":
        stamp = (now or _utc_now()).isoformat()
        return cls(
            status=STATUS_CACHED,
            stored_id=stored.id,
            sha256=stored.sha256,
            size=stored.size,
            ext=stored.ext,
            download_url=download_url,
            last_seen=stamp,
            last_attempt=stamp,
        )

    @classmethod
    def failed(cls, error: str, now: Optional[datetime] = None) -> "DownloadRecord":
        return cls(status=STATUS_FAILED, last_attempt=(now or _utc_now()).isoformat(), error=error)


class DownloadIndex:
    """Thread-safe, file-backed map of source URL -> DownloadRecord."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.RLock()
        self._records: Optional[Dict[str, DownloadRecord]] = None
        self._updated_at: Optional[str] = None

    def _load(self) -> Dict[str, DownloadRecord]:
        if self._records is not None:
            return self._records
        with self._lock:
            if self._records is not None:
                return self._records
            records: Dict[str, DownloadRecord] = {}
            if self.path.exists():
                try:
                    with open(self.path, "r", encoding="utf-8") as f:
                        data = json.load(f)
                    self._updated_at = data.get("updated_at")
                    for url, raw in (data.get("records") or {}).items():
                        records[url] = DownloadRecord.from_dict(raw)
                except (OSError, ValueError) as e:
                    logger.warning(f"Download index at {self.path} unreadable, starting empty: {e}")
            self._records = records
            return records

    def _flush(self) -> None:
        self._updated_at = _utc_now().isoformat()
        payload = {
            "version": INDEX_VERSION,
            "updated_at": self._updated_at,
            "records": {url: rec.to_dict() for url, rec in self._records.items()},
        }
        try:
            atomic_write_json(self.path, payload)
        except OSError as e:
            raise DownloadIndexError(f"Failed to write download index {self.path}: {e}") from e

    def get(self, url: str) -> Optional[DownloadRecord]:
        return self._load().get(url)

    def set(self, url: str, record: DownloadRecord) -> None:
        with self._lock:
            self._load()[url] = record
            self._flush()

    def is_cooling_down(self, url: str, cooldown_seconds: float, now: Optional[datetime] = None) -> bool:
        """True when the last attempt for url failed less than cooldown_seconds ago."""
        record = self.get(url)
        if record is None or record.status != STATUS_FAILED:
            return False
        last_attempt = _parse_ts(record.last_attempt)
        if last_attempt is None:
            return False
        elapsed = ((now or _utc_now()) - last_attempt).total_seconds()
        return elapsed < cooldown_seconds

    def __len__(self) -> int:
        return len(self._load())
