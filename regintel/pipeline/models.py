"""
Pipeline data models: discovered candidates, stored records and lineage graph parts.

Regulation items and requirements travel as plain dicts (their shape is owned by the
JSON schemas in ontology.schema); everything the pipeline itself creates is modelled here.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class FileLink:
    """A downloadable file referenced from a detail page."""
    url: str
    ext: Optional[str] = None
    label: str = ""
    canonical: bool = False


@dataclass
class StoredFileRef:
    """A file the connector downloaded (or chose not to) for one document."""
    source_url: str
    stored_id: Optional[str] = None
    sha256: Optional[str] = None
    size: Optional[int] = None
    ext: Optional[str] = None
    cached: bool = False
    download_url: Optional[str] = None
    skipped_reason: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CandidateDocument:
    """A discovered unit of content. Lives only for the duration of one scan."""
    url: str
    title: str
    content: str = ""
    published_date: Optional[str] = None
    profile_id: Optional[str] = None
    raw_file_uri: Optional[str] = None
    files: List[FileLink] = field(default_factory=list)
    stored_files: List[StoredFileRef] = field(default_factory=list)
    metadata: Dict[str, Optional[str]] = field(default_factory=dict)

    @property
    def document_date(self) -> Optional[str]:
        return self.metadata.get("document_date")

    @property
    def date_value(self) -> Optional[str]:
        return self.published_date or self.document_date

    def stored_download_url(self) -> Optional[str]:
        for stored in self.stored_files:
            if stored.download_url:
                return stored.download_url
        return None


@dataclass
class SourceDocument:
    id: str
    url: str
    domain: str
    title: str
    content: str
    retrieved_at: str
    hash: str
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceDocument":
        return cls(**data)


@dataclass
class ReviewQueueEntry:
    id: str
    entity_type: str
    payload: Dict[str, Any]
    reason: str
    status: str = "pending"
    created_at: str = field(default_factory=utc_now_iso)
    reviewed_at: Optional[str] = None
    reviewer: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReviewQueueEntry":
        return cls(**data)


@dataclass
class RunRecord:
    id: str
    run_type: str
    jurisdiction: str
    days_window: int
    status: str = "queued"
    started_at: str = field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    job_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunRecord":
        return cls(**data)


@dataclass
class RunLogEntry:
    id: str
    run_id: str
    stage: str
    message: str
    meta: Optional[Dict[str, Any]] = None
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunLogEntry":
        return cls(**data)


@dataclass
class Link:
    from_type: str
    from_id: str
    to_type: str
    to_id: str
    relation: str
    meta: Optional[Dict[str, Any]] = None
    id: str = field(default_factory=new_id)

    @property
    def key(self) -> tuple:
        return (self.from_type, self.from_id, self.to_type, self.to_id, self.relation)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Link":
        return cls(**data)


@dataclass
class LineageNode:
    id: str
    type: str
    label: str
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "type": self.type, "label": self.label, "meta": self.meta}


@dataclass
class LineageEdge:
    id: str
    source: str
    target: str
    relation: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "source": self.source, "target": self.target, "relation": self.relation}
