"""
Authoritative store for runs, documents, items, requirements, review entries and links.

An in-process keyed store guarded by one re-entrant lock. When constructed with a path
the full state is persisted as a single JSON document, atomically replaced once per
mutating call. A failed write rolls the in-memory change back, so memory never holds
state that was not committed to disk. Writes are idempotent upserts keyed by stable ids;
lineage links are unique on (from_type, from_id, to_type, to_id, relation).
"""

import copy
import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from regintel.pipeline.models import (
    Link,
    ReviewQueueEntry,
    RunLogEntry,
    RunRecord,
    SourceDocument,
    new_id,
    utc_now_iso,
)

from .atomic import atomic_write_json

logger = logging.getLogger(__name__)

STORE_VERSION = 1

_MISSING = object()


class StoreError(Exception):
    """Raised when the store cannot be persisted or loaded."""
    pass


class Repository:
    """Thread-safe keyed store with optional JSON persistence."""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else None
        self._lock = threading.RLock()
        self.runs: Dict[str, RunRecord] = {}
        self.run_logs: List[RunLogEntry] = []
        self.source_documents: Dict[str, SourceDocument] = {}
        self.regulation_items: Dict[str, Dict[str, Any]] = {}
        self.requirements: Dict[str, Dict[str, Any]] = {}
        self.review_queue: Dict[str, ReviewQueueEntry] = {}
        self.links: Dict[tuple, Link] = {}
        if self.path and self.path.exists():
            self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StoreError(f"Failed to load repository from {self.path}: {e}") from e

        self.runs = {r["id"]: RunRecord.from_dict(r) for r in data.get("runs", [])}
        self.run_logs = [RunLogEntry.from_dict(e) for e in data.get("run_logs", [])]
        self.source_documents = {
            d["id"]: SourceDocument.from_dict(d) for d in data.get("source_documents", [])
        }
        self.regulation_items = {i["id"]: i for i in data.get("regulation_items", [])}
        self.requirements = {r["id"]: r for r in data.get("requirements", [])}
        self.review_queue = {
            e["id"]: ReviewQueueEntry.from_dict(e) for e in data.get("review_queue", [])
        }
        links = [Link.from_dict(l) for l in data.get("links", [])]
        self.links = {link.key: link for link in links}
        logger.info(f"Loaded repository from {self.path}")

    def _save(self) -> None:
        if not self.path:
            return
        payload = {
            "version": STORE_VERSION,
            "updated_at": utc_now_iso(),
            "runs": [r.to_dict() for r in self.runs.values()],
            "run_logs": [e.to_dict() for e in self.run_logs],
            "source_documents": [d.to_dict() for d in self.source_documents.values()],
            "regulation_items": list(self.regulation_items.values()),
            "requirements": list(self.requirements.values()),
            "review_queue": [e.to_dict() for e in self.review_queue.values()],
            "links": [l.to_dict() for l in self.links.values()],
        }
        try:
            atomic_write_json(self.path, payload)
        except (OSError, TypeError, ValueError) as e:
            raise StoreError(f"Failed to persist repository to {self.path}: {e}") from e

    def _commit(self, undo: Callable[[], None]) -> None:
        """Persist, or undo the pending in-memory change and re-raise."""
        try:
            self._save()
        except StoreError:
            undo()
            raise

    def _put(self, table: Dict[Any, Any], key: Any, value: Any) -> None:
        previous = table.get(key, _MISSING)
        table[key] = value

        def undo():
            if previous is _MISSING:
                table.pop(key, None)
            else:
                table[key] = previous

        self._commit(undo)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def create_run(self, run: RunRecord) -> RunRecord:
        with self._lock:
            self._put(self.runs, run.id, run)
        return run

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        with self._lock:
            run = self.runs.get(run_id)
            return copy.deepcopy(run) if run else None

    def update_run(self, run_id: str, **changes: Any) -> RunRecord:
        with self._lock:
            current = self.runs.get(run_id)
            if current is None:
                raise StoreError(f"Unknown run: {run_id}")
            run = copy.deepcopy(current)
            for key, value in changes.items():
                setattr(run, key, value)
            self._put(self.runs, run_id, run)
            return copy.deepcopy(run)

    def list_runs(self) -> List[RunRecord]:
        with self._lock:
            runs = sorted(self.runs.values(), key=lambda r: r.started_at, reverse=True)
            return copy.deepcopy(runs)

    def add_run_log(
        self, run_id: str, stage: str, message: str, meta: Optional[Dict[str, Any]] = None
    ) -> RunLogEntry:
        entry = RunLogEntry(id=new_id(), run_id=run_id, stage=stage, message=message, meta=meta)
        with self._lock:
            self.run_logs.append(entry)
            self._commit(self.run_logs.pop)
        return entry

    def get_run_logs(self, run_id: str, limit: int = 200) -> List[RunLogEntry]:
        with self._lock:
            entries = [e for e in self.run_logs if e.run_id == run_id]
            return copy.deepcopy(entries[:limit])

    # ------------------------------------------------------------------
    # Documents, items, requirements
    # ------------------------------------------------------------------

    def insert_source_documents(self, documents: Iterable[SourceDocument]) -> int:
        """Insert documents, ignoring ids that already exist. Returns the number inserted."""
        with self._lock:
            added = []
            for doc in documents:
                if doc.id in self.source_documents:
                    continue
                self.source_documents[doc.id] = doc
                added.append(doc.id)

            def undo():
                for doc_id in added:
                    self.source_documents.pop(doc_id, None)

            if added:
                self._commit(undo)
        return len(added)

    def get_source_document(self, doc_id: str) -> Optional[SourceDocument]:
        with self._lock:
            doc = self.source_documents.get(doc_id)
            return copy.deepcopy(doc) if doc else None

    def list_source_documents(self) -> List[SourceDocument]:
        with self._lock:
            return copy.deepcopy(list(self.source_documents.values()))

    def upsert_regulation_item(self, item: Dict[str, Any]) -> None:
        with self._lock:
            self._put(self.regulation_items, item["id"], copy.deepcopy(item))

    def get_regulation_item(self, item_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self.regulation_items.get(item_id)
            return copy.deepcopy(item) if item else None

    def list_regulation_items(self, jurisdiction: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            items = [
                i for i in self.regulation_items.values()
                if jurisdiction is None or i.get("jurisdiction") == jurisdiction
            ]
            return copy.deepcopy(items)

    def insert_requirement(
        self, requirement: Dict[str, Any], source_item_id: Optional[str] = None
    ) -> str:
        req_id = requirement.get("id") or new_id()
        record = copy.deepcopy(requirement)
        record["id"] = req_id
        record["source_item_id"] = source_item_id
        with self._lock:
            self._put(self.requirements, req_id, record)
        return req_id

    def list_requirements(self) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(list(self.requirements.values()))

    # ------------------------------------------------------------------
    # Review queue
    # ------------------------------------------------------------------

    def insert_review_entry(self, entry: ReviewQueueEntry) -> ReviewQueueEntry:
        with self._lock:
            self._put(self.review_queue, entry.id, entry)
        return entry

    def get_review_entry(self, entry_id: str) -> Optional[ReviewQueueEntry]:
        with self._lock:
            entry = self.review_queue.get(entry_id)
            return copy.deepcopy(entry) if entry else None

    def update_review_entry(self, entry_id: str, **changes: Any) -> ReviewQueueEntry:
        with self._lock:
            current = self.review_queue.get(entry_id)
            if current is None:
                raise StoreError(f"Unknown review entry: {entry_id}")
            entry = copy.deepcopy(current)
            for key, value in changes.items():
                setattr(entry, key, value)
            self._put(self.review_queue, entry_id, entry)
            return copy.deepcopy(entry)

    def list_review_queue(self, status: Optional[str] = None) -> List[ReviewQueueEntry]:
        with self._lock:
            entries = [
                e for e in self.review_queue.values() if status is None or e.status == status
            ]
            entries.sort(key=lambda e: e.created_at, reverse=True)
            return copy.deepcopy(entries)

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    def insert_link(
        self,
        from_type: str,
        from_id: str,
        to_type: str,
        to_id: str,
        relation: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Insert a lineage link. Returns False when an identical link already exists."""
        return self.insert_links([{
            "from_type": from_type,
            "from_id": from_id,
            "to_type": to_type,
            "to_id": to_id,
            "relation": relation,
            "meta": meta,
        }]) == 1

    def insert_links(self, links: Iterable[Dict[str, Any]]) -> int:
        """Insert new links with a single write. Returns the number inserted."""
        with self._lock:
            added = []
            for data in links:
                link = Link(
                    data["from_type"],
                    data["from_id"],
                    data["to_type"],
                    data["to_id"],
                    data["relation"],
                    data.get("meta"),
                )
                if link.key in self.links:
                    continue
                self.links[link.key] = link
                added.append(link.key)

            def undo():
                for key in added:
                    self.links.pop(key, None)

            if added:
                self._commit(undo)
        return len(added)

    def list_links(self) -> List[Link]:
        with self._lock:
            return copy.deepcopy(list(self.links.values()))
