"""Human review actions on review-queue entries."""

import logging
from typing import Any, Dict, List, Optional

from regintel.ontology.normalize import normalize_item_payload

from .context import PipelineContext
from .ingest_job import ENTITY_REGULATION_ITEM, validate_item
from .models import ReviewQueueEntry, utc_now_iso

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"


class ReviewNotFound(Exception):
    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Review item not found: {entry_id}")


class ReviewValidationError(Exception):
    """Raised when an approved payload still fails validation."""
    def __init__(self, reason: str, errors: Optional[List[str]] = None):
        self.reason = reason
        self.errors = errors or []
        super().__init__(reason)


def _get_entry(context: PipelineContext, entry_id: str) -> ReviewQueueEntry:
    entry = context.repository.get_review_entry(entry_id)
    if entry is None:
        raise ReviewNotFound(entry_id)
    return entry


def approve(context: PipelineContext, entry_id: str, reviewer: Optional[str] = None) -> Dict[str, Any]:
    """
    Promote a pending entry into the main table.

    The payload is re-normalized and re-validated with the same validator used at
    ingestion. The trust-tier gate does not apply: approval is the human override.

    Raises:
        ReviewNotFound: unknown entry id
        ReviewValidationError: payload still invalid; the entry stays pending
    """
    repo = context.repository
    entry = _get_entry(context, entry_id)
    if entry.status != STATUS_PENDING:
        return {"status": entry.status}

    if entry.entity_type == ENTITY_REGULATION_ITEM:
        normalized = normalize_item_payload(entry.payload)
        validation = validate_item(normalized.fields, context)
        if not validation.ok:
            logger.warning(f"Review {entry_id} rejected by validation: {validation.reason}")
            raise ReviewValidationError(validation.reason, validation.errors)

        item = validation.data
        repo.upsert_regulation_item(item)
        if item.get("source_document_id"):
            repo.insert_link("SourceDocument", item["source_document_id"],
                             ENTITY_REGULATION_ITEM, item["id"], "extracted_from")
        repo.insert_link("ReviewQueueItem", entry.id, ENTITY_REGULATION_ITEM, item["id"],
                         "approved_into_main")

    repo.update_review_entry(entry_id, status=STATUS_APPROVED, reviewed_at=utc_now_iso(), reviewer=reviewer)
    logger.info(f"Review {entry_id} approved")
    return {"status": STATUS_APPROVED}


def reject(context: PipelineContext, entry_id: str, reviewer: Optional[str] = None) -> Dict[str, Any]:
    """Mark a pending entry terminally rejected. Already-decided entries are left as they are."""
    entry = _get_entry(context, entry_id)
    if entry.status != STATUS_PENDING:
        return {"status": entry.status}
    context.repository.update_review_entry(
        entry_id, status=STATUS_REJECTED, reviewed_at=utc_now_iso(), reviewer=reviewer
    )
    logger.info(f"Review {entry_id} rejected")
    return {"status": STATUS_REJECTED}
