"""
Tests for the object store, download index and authoritative repository.
"""

import hashlib
import json
from datetime import datetime, timedelta, timezone

import pytest

from regintel.pipeline.models import Link, ReviewQueueEntry, RunRecord, SourceDocument
from regintel.storage.atomic import atomic_write_json, compute_file_hash
from regintel.storage.download_index import (
    STATUS_CACHED,
    STATUS_FAILED,
    DownloadIndex,
    DownloadRecord,
)
from regintel.storage.object_store import (
    InvalidObjectId,
    ObjectNotFound,
    ObjectStore,
    object_id_for,
    sanitize_object_id,
)
from regintel.storage.repository import Repository, StoreError

from fakes import make_item

FILE_URL = "https://unece.org/sites/default/files/2024-03/R155e.pdf"


class TestAtomicWrites:
    """Tests for hashing and atomic replace."""

    def test_compute_file_hash(self, tmp_path):
        path = tmp_path / "a.bin"
        path.write_bytes(b"payload")
        assert compute_file_hash(path) == hashlib.sha256(b"payload").hexdigest()

    def test_atomic_write_json_leaves_no_temp_files(self, tmp_path):
        target = tmp_path / "nested" / "state.json"
        atomic_write_json(target, {"b": 1, "a": 2})
        atomic_write_json(target, {"b": 3})

        assert json.loads(target.read_text()) == {"b": 3}
        assert [p.name for p in target.parent.iterdir()] == ["state.json"]


class TestObjectStore:
    """Tests for the content-addressed object store."""

    def test_put_stores_bytes_under_url_digest(self, tmp_path):
        store = ObjectStore(tmp_path / "objects")
        stored = store.put(FILE_URL, b"%PDF-1.7 body", "pdf")

        expected_id = hashlib.sha256(FILE_URL.encode("utf-8")).hexdigest() + ".pdf"
        assert stored.id == expected_id
        assert stored.sha256 == hashlib.sha256(b"%PDF-1.7 body").hexdigest()
        assert stored.size == len(b"%PDF-1.7 body")
        assert stored.cached is False
        assert store.get(stored.id) == b"%PDF-1.7 body"

    def test_second_put_is_a_cache_hit(self, tmp_path):
        store = ObjectStore(tmp_path / "objects")
        first = store.put(FILE_URL, b"original", ".PDF")
        second = store.put(FILE_URL, b"changed upstream", "pdf")

        assert second.cached is True
        assert second.id == first.id
        assert second.sha256 == first.sha256
        assert store.get(first.id) == b"original"
        assert len(list((tmp_path / "objects").iterdir())) == 1

    def test_object_without_extension(self, tmp_path):
        store = ObjectStore(tmp_path / "objects")
        stored = store.put(FILE_URL, b"x")
        assert "." not in stored.id
        assert stored.ext is None

    def test_get_unknown_raises(self, tmp_path):
        store = ObjectStore(tmp_path / "objects")
        with pytest.raises(ObjectNotFound):
            store.get(object_id_for("https://unece.org/missing.pdf", "pdf"))
        with pytest.raises(ObjectNotFound):
            store.stat("deadbeef.pdf")

    def test_stat_reports_extension(self, tmp_path):
        store = ObjectStore(tmp_path / "objects")
        stored = store.put(FILE_URL, b"abc", "pdf")
        info = store.stat(stored.id)
        assert info.ext == "pdf"
        assert info.size == 3

    def test_sanitize_rejects_traversal(self):
        assert sanitize_object_id("abc/def.pdf") == "abcdef.pdf"
        with pytest.raises(InvalidObjectId):
            sanitize_object_id("../../etc/passwd")
        with pytest.raises(InvalidObjectId):
            sanitize_object_id("///")


class TestDownloadIndex:
    """Tests for the resumable download index."""

    def test_set_and_get_roundtrip_through_file(self, tmp_path):
        path = tmp_path / "index.json"
        index = DownloadIndex(path)
        index.set(FILE_URL, DownloadRecord(status=STATUS_CACHED, stored_id="abc.pdf", size=3))

        reloaded = DownloadIndex(path)
        record = reloaded.get(FILE_URL)
        assert record.status == STATUS_CACHED
        assert record.stored_id == "abc.pdf"
        assert len(reloaded) == 1

        data = json.loads(path.read_text())
        assert data["version"] == 1
        assert "updated_at" in data
        assert "error" not in data["records"][FILE_URL]

    def test_failed_record_cools_down(self, tmp_path):
        index = DownloadIndex(tmp_path / "index.json")
        failed_at = datetime(2024, 3, 12, 10, 0, tzinfo=timezone.utc)
        index.set(FILE_URL, DownloadRecord.failed("Fetch failed (503)", now=failed_at))

        assert index.is_cooling_down(FILE_URL, 6 * 3600, now=failed_at + timedelta(hours=1)) is True
        assert index.is_cooling_down(FILE_URL, 6 * 3600, now=failed_at + timedelta(hours=7)) is False

    def test_cached_and_unknown_urls_never_cool_down(self, tmp_path):
        index = DownloadIndex(tmp_path / "index.json")
        index.set(FILE_URL, DownloadRecord(status=STATUS_CACHED, last_attempt=datetime.now(timezone.utc).isoformat()))
        assert index.is_cooling_down(FILE_URL, 3600) is False
        assert index.is_cooling_down("https://unece.org/other.pdf", 3600) is False

    def test_unreadable_file_starts_empty(self, tmp_path):
        path = tmp_path / "index.json"
        path.write_text("{not json")
        index = DownloadIndex(path)
        assert index.get(FILE_URL) is None
        index.set(FILE_URL, DownloadRecord(status=STATUS_FAILED, error="timeout"))
        assert json.loads(path.read_text())["records"][FILE_URL]["status"] == STATUS_FAILED


class TestRepository:
    """Tests for the keyed authoritative store."""

    def _doc(self, doc_id="doc-1"):
        return SourceDocument(
            id=doc_id,
            url="https://eur-lex.europa.eu/eli/reg/2019/2144/oj",
            domain="eur-lex.europa.eu",
            title="General Safety Regulation",
            content="text",
            retrieved_at="2024-03-12T10:00:00+00:00",
            hash="abc",
        )

    def test_source_documents_ignore_conflicts(self):
        repo = Repository()
        assert repo.insert_source_documents([self._doc()]) == 1
        assert repo.insert_source_documents([self._doc(), self._doc("doc-2")]) == 1
        assert len(repo.list_source_documents()) == 2

    def test_upsert_item_replaces_by_id(self):
        repo = Repository()
        repo.upsert_regulation_item(make_item(priority="P2"))
        repo.upsert_regulation_item(make_item(priority="P0"))
        items = repo.list_regulation_items()
        assert len(items) == 1
        assert items[0]["priority"] == "P0"

    def test_returned_records_are_copies(self):
        repo = Repository()
        repo.upsert_regulation_item(make_item())
        item = repo.get_regulation_item("item-1")
        item["title"] = "mutated"
        assert repo.get_regulation_item("item-1")["title"] == "UN Regulation No. 155"

    def test_list_items_by_jurisdiction(self):
        repo = Repository()
        repo.upsert_regulation_item(make_item(id="a", jurisdiction="EU"))
        repo.upsert_regulation_item(make_item(id="b", jurisdiction="DE"))
        assert [i["id"] for i in repo.list_regulation_items("DE")] == ["b"]

    def test_links_unique_on_endpoints_and_relation(self):
        repo = Repository()
        assert repo.insert_link("SourceDocument", "d1", "RegulationItem", "i1", "extracted_from") is True
        assert repo.insert_link("SourceDocument", "d1", "RegulationItem", "i1", "extracted_from") is False
        assert repo.insert_link("Run", "r1", "RegulationItem", "i1", "produced") is True
        assert len(repo.list_links()) == 2

    def test_insert_links_counts_new_rows(self):
        repo = Repository()
        link = {"from_type": "Run", "from_id": "r1", "to_type": "SourceDocument", "to_id": "d1",
                "relation": "produced"}
        assert repo.insert_links([link, dict(link)]) == 1

    def test_run_lifecycle_and_logs(self):
        repo = Repository()
        repo.create_run(RunRecord(id="r1", run_type="scan", jurisdiction="EU", days_window=30))
        repo.update_run("r1", status="running")
        repo.add_run_log("r1", "search", "Collecting", {"count": 2})
        repo.add_run_log("r2", "search", "Other run")

        assert repo.get_run("r1").status == "running"
        logs = repo.get_run_logs("r1")
        assert [l.message for l in logs] == ["Collecting"]
        assert logs[0].meta == {"count": 2}

    def test_update_unknown_run_raises(self):
        with pytest.raises(StoreError):
            Repository().update_run("missing", status="running")

    def test_review_queue_filter(self):
        repo = Repository()
        repo.insert_review_entry(ReviewQueueEntry(id="q1", entity_type="RegulationItem", payload={}, reason="x"))
        repo.insert_review_entry(ReviewQueueEntry(id="q2", entity_type="RegulationItem", payload={}, reason="y"))
        repo.update_review_entry("q2", status="rejected")
        assert [e.id for e in repo.list_review_queue("pending")] == ["q1"]
        assert len(repo.list_review_queue()) == 2

    def test_insert_requirement_assigns_id(self):
        repo = Repository()
        req_id = repo.insert_requirement(
            {"requirementFamily": "CSMS", "evidenceStatus": "partial", "priority": "P0"}
        )
        assert req_id
        assert repo.list_requirements()[0]["id"] == req_id

    def test_persistence_roundtrip(self, tmp_path):
        path = tmp_path / "repository.json"
        repo = Repository(path)
        repo.create_run(RunRecord(id="r1", run_type="scan", jurisdiction="EU", days_window=7))
        repo.insert_source_documents([self._doc()])
        repo.upsert_regulation_item(make_item())
        repo.insert_link("SourceDocument", "doc-1", "RegulationItem", "item-1", "extracted_from")

        reloaded = Repository(path)
        assert reloaded.get_run("r1").days_window == 7
        assert reloaded.get_source_document("doc-1").title == "General Safety Regulation"
        assert reloaded.get_regulation_item("item-1") is not None
        assert isinstance(reloaded.list_links()[0], Link)

    def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "repository.json"
        path.write_text("[")
        with pytest.raises(StoreError):
            Repository(path)


class TestRepositoryWriteFailures:
    """A failed write leaves memory matching what is on disk."""

    @pytest.fixture
    def repo(self, tmp_path):
        repo = Repository(tmp_path / "repository.json")
        repo.create_run(RunRecord(id="r1", run_type="scan", jurisdiction="EU", days_window=7))
        repo.upsert_regulation_item(make_item(priority="P2"))
        return repo

    @pytest.fixture
    def failing_writes(self, monkeypatch):
        def fail(path, payload):
            raise OSError("disk full")
        monkeypatch.setattr("regintel.storage.repository.atomic_write_json", fail)

    def test_failed_upsert_keeps_previous_item(self, repo, failing_writes):
        with pytest.raises(StoreError, match="disk full"):
            repo.upsert_regulation_item(make_item(priority="P0"))
        with pytest.raises(StoreError):
            repo.upsert_regulation_item(make_item(id="item-2"))

        assert repo.get_regulation_item("item-1")["priority"] == "P2"
        assert repo.get_regulation_item("item-2") is None

    def test_failed_run_update_keeps_status(self, repo, failing_writes):
        with pytest.raises(StoreError):
            repo.update_run("r1", status="completed", meta={"accepted": 1})

        run = repo.get_run("r1")
        assert run.status == "queued"
        assert run.meta == {}

    def test_failed_inserts_roll_back(self, repo, failing_writes):
        link = {"from_type": "Run", "from_id": "r1", "to_type": "RegulationItem", "to_id": "item-1",
                "relation": "produced"}
        with pytest.raises(StoreError):
            repo.insert_links([link])
        with pytest.raises(StoreError):
            repo.add_run_log("r1", "scan", "started")
        with pytest.raises(StoreError):
            repo.insert_source_documents([
                SourceDocument(
                    id="doc-1", url=FILE_URL, domain="unece.org", title="R155", content="text",
                    retrieved_at="2024-03-12T10:00:00+00:00", hash="abc",
                )
            ])

        assert repo.list_links() == []
        assert repo.get_run_logs("r1") == []
        assert repo.list_source_documents() == []

    def test_memory_matches_disk_after_failure(self, repo, tmp_path, monkeypatch):
        original = atomic_write_json

        def fail(path, payload):
            raise OSError("read-only")
        monkeypatch.setattr("regintel.storage.repository.atomic_write_json", fail)
        with pytest.raises(StoreError):
            repo.upsert_regulation_item(make_item(id="lost"))
        monkeypatch.setattr("regintel.storage.repository.atomic_write_json", original)
        repo.upsert_regulation_item(make_item(id="kept"))

        reloaded = Repository(tmp_path / "repository.json")
        assert sorted(i["id"] for i in reloaded.list_regulation_items()) == ["item-1", "kept"]

    def test_insert_links_writes_once_per_batch(self, repo, monkeypatch):
        writes = []
        monkeypatch.setattr(
            "regintel.storage.repository.atomic_write_json",
            lambda path, payload: writes.append(len(payload["links"])),
        )
        links = [
            {"from_type": "Run", "from_id": "r1", "to_type": "RegulationItem", "to_id": f"i{n}",
             "relation": "produced"}
            for n in range(3)
        ]

        assert repo.insert_links(links) == 3
        assert repo.insert_links(links) == 0
        assert writes == [3]
