"""
Tests for review-queue approve/reject.
"""

import pytest

from regintel.pipeline.models import ReviewQueueEntry
from regintel.pipeline.review import (
    ReviewNotFound,
    ReviewValidationError,
    approve,
    reject,
)

from fakes import build_test_context, make_item


@pytest.fixture
def context(tmp_path):
    return build_test_context(tmp_path)


def queue(context, payload, entry_id="q1", entity_type="RegulationItem"):
    context.repository.insert_review_entry(
        ReviewQueueEntry(id=entry_id, entity_type=entity_type, payload=payload, reason="Trust tier requires review")
    )
    return entry_id


class TestApprove:
    """Tests for approve."""

    def test_lower_tier_item_promoted(self, context):
        entry_id = queue(context, make_item(trust_tier="TIER_C_SOFT_REQ"))

        result = approve(context, entry_id, reviewer="analyst@example.com")

        assert result == {"status": "approved"}
        repo = context.repository
        item = repo.get_regulation_item("item-1")
        assert item["trust_tier"] == "TIER_C_SOFT_REQ"

        entry = repo.get_review_entry(entry_id)
        assert entry.status == "approved"
        assert entry.reviewer == "analyst@example.com"
        assert entry.reviewed_at

        relations = sorted((l.from_type, l.relation) for l in repo.list_links())
        assert relations == [("ReviewQueueItem", "approved_into_main"), ("SourceDocument", "extracted_from")]

    def test_payload_renormalized(self, context):
        payload = make_item(topics=["CYBER_SECURITY", "NOT_A_TOPIC"], confidence=3)
        entry_id = queue(context, payload)

        approve(context, entry_id)

        item = context.repository.get_regulation_item("item-1")
        assert item["topics"] == ["CYBER_SECURITY"]
        assert item["confidence"] == 1.0

    def test_invalid_payload_stays_pending(self, context):
        payload = make_item(confidence=0.2)
        entry_id = queue(context, payload)

        with pytest.raises(ReviewValidationError) as exc:
            approve(context, entry_id)

        assert exc.value.reason == "Confidence below threshold (0.7)"
        assert context.repository.get_review_entry(entry_id).status == "pending"
        assert context.repository.list_regulation_items() == []

    def test_missing_citations_still_block_approval(self, context):
        payload = make_item()
        payload["evidence"]["citations"] = []
        entry_id = queue(context, payload)

        with pytest.raises(ReviewValidationError) as exc:
            approve(context, entry_id)
        assert exc.value.reason == "Missing evidence citations"

    def test_schema_errors_reported(self, context):
        payload = make_item(url="ftp://eur-lex.europa.eu/x")
        payload["evidence"]["citations"][0]["url"] = "not-a-url"
        entry_id = queue(context, payload)

        with pytest.raises(ReviewValidationError) as exc:
            approve(context, entry_id)
        assert exc.value.reason == "Schema validation failed"
        assert exc.value.errors

    def test_already_decided_entry_unchanged(self, context):
        entry_id = queue(context, make_item())
        reject(context, entry_id)

        assert approve(context, entry_id) == {"status": "rejected"}
        assert context.repository.list_regulation_items() == []

    def test_other_entity_types_only_change_status(self, context):
        entry_id = queue(context, {"requirementFamily": "CSMS"}, entity_type="Requirement")

        assert approve(context, entry_id) == {"status": "approved"}
        assert context.repository.list_regulation_items() == []
        assert context.repository.list_links() == []

    def test_unknown_entry(self, context):
        with pytest.raises(ReviewNotFound):
            approve(context, "missing")


class TestReject:
    """Tests for reject."""

    def test_reject_is_terminal(self, context):
        entry_id = queue(context, make_item())

        assert reject(context, entry_id, reviewer="analyst") == {"status": "rejected"}
        assert reject(context, entry_id) == {"status": "rejected"}

        entry = context.repository.get_review_entry(entry_id)
        assert entry.status == "rejected"
        assert entry.reviewer == "analyst"
        assert context.repository.list_regulation_items() == []

    def test_unknown_entry(self, context):
        with pytest.raises(ReviewNotFound):
            reject(context, "missing")
