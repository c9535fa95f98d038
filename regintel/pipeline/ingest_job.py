"""
Scan and merge job handlers.

Both handlers apply the same two-layer write gate to every item:

    validation ok (schema, domain, evidence, confidence)
    AND trust tier is the top tier
    AND the source policy routes to main (when a route is known)

Items that pass are upserted into the authoritative store; all others become pending
review-queue entries whose reason lists every failed condition, joined by " | ".
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from regintel.ontology.policy import ROUTE_REVIEW
from regintel.ontology.terms import MonitoringStage, TrustTier
from regintel.ontology.validator import ValidationResult, validate_regulation_item, validate_requirement
from regintel.storage.repository import StoreError

from .context import PipelineContext
from .models import ReviewQueueEntry, new_id, utc_now_iso
from .scan import run_scan

logger = logging.getLogger(__name__)

ENTITY_REGULATION_ITEM = "RegulationItem"


@dataclass
class PromotionDecision:
    accept: bool
    reasons: List[str] = field(default_factory=list)

    @property
    def reason(self) -> str:
        return " | ".join(self.reasons) or "Unknown validation error"


def validate_item(item: Dict[str, Any], context: PipelineContext) -> ValidationResult:
    settings = context.settings
    return validate_regulation_item(
        item,
        confidence_min=settings.confidence_min,
        allowed_domains=settings.allowed_domains or None,
    )


def promotion_decision(
    item: Dict[str, Any], validation: ValidationResult, route: Optional[str] = None
) -> PromotionDecision:
    """Decide whether a candidate item may be written to the main table."""
    reasons = []
    if not validation.ok:
        reason = validation.reason or "Schema validation failed"
        if validation.errors:
            reason = f"{reason}: {'; '.join(validation.errors[:3])}"
        reasons.append(reason)

    tier = item.get("trust_tier")
    if tier != TrustTier.top().value:
        reasons.append(f"Trust tier {tier or 'unknown'} requires review")
    elif route == ROUTE_REVIEW:
        reasons.append("Source policy routes to review")

    return PromotionDecision(accept=not reasons, reasons=reasons)


def queue_for_review(context: PipelineContext, item: Dict[str, Any], reason: str) -> ReviewQueueEntry:
    entry = ReviewQueueEntry(
        id=new_id(),
        entity_type=ENTITY_REGULATION_ITEM,
        payload=item,
        reason=reason,
    )
    return context.repository.insert_review_entry(entry)


def pick_highest_tier(items: List[Dict[str, Any]]) -> Optional[TrustTier]:
    best = None
    for item in items:
        tier = TrustTier.parse(item.get("trust_tier"))
        if tier and (best is None or tier.rank > best.rank):
            best = tier
    return best


def pick_highest_stage(items: List[Dict[str, Any]]) -> Optional[MonitoringStage]:
    best = None
    for item in items:
        try:
            stage = MonitoringStage(item.get("monitoring_stage"))
        except ValueError:
            continue
        if best is None or stage.position > best.position:
            best = stage
    return best


def _fail_run(context: PipelineContext, run_id: str, error: Exception) -> None:
    logger.error(f"Run {run_id} failed: {error}")
    try:
        context.repository.update_run(
            run_id, status="failed", completed_at=utc_now_iso(), meta={"error": str(error)}
        )
    except Exception:
        logger.exception(f"Could not record failure for run {run_id}")


def persist_scan_item(
    context: PipelineContext, run_id: str, item: Dict[str, Any], route: Optional[str]
) -> bool:
    """
    Gate one scanned item, store it in main or the review queue, and write its links.

    Returns:
        True when the item was accepted into main

    Raises:
        StoreError: If the item or its links cannot be persisted
    """
    repo = context.repository
    validation = validate_item(item, context)
    decision = promotion_decision(item, validation, route)

    if decision.accept:
        repo.upsert_regulation_item(validation.data)
        links = [{"from_type": "Run", "from_id": run_id, "to_type": ENTITY_REGULATION_ITEM,
                  "to_id": item["id"], "relation": "produced"}]
    else:
        entry = queue_for_review(context, item, decision.reason)
        links = [{"from_type": "Run", "from_id": run_id, "to_type": ENTITY_REGULATION_ITEM,
                  "to_id": item["id"], "relation": "queued_for_review",
                  "meta": {"review_id": entry.id}}]

    if item.get("source_document_id"):
        links.append({"from_type": "SourceDocument", "from_id": item["source_document_id"],
                      "to_type": ENTITY_REGULATION_ITEM, "to_id": item["id"],
                      "relation": "extracted_from"})
    repo.insert_links(links)
    return decision.accept


def process_scan_job(
    payload: Dict[str, Any],
    context: PipelineContext,
    cancel_event: Optional[threading.Event] = None,
) -> Dict[str, Any]:
    """
    Execute one scan run end to end.

    Args:
        payload: ``{run_id, jurisdiction, days, max_results}``
        context: Pipeline collaborators
        cancel_event: Optional run-scoped cancellation signal

    Returns:
        The run summary stored in the run's meta
    """
    run_id = payload["run_id"]
    jurisdiction = payload["jurisdiction"]
    days = payload.get("days")
    repo = context.repository
    repo.update_run(run_id, status="running")

    def progress(stage: str, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        repo.add_run_log(run_id, stage, message, meta)

    try:
        progress("detect", f"Starting scan for {jurisdiction} (last {days or 'all'} days)")
        result = run_scan(
            context,
            jurisdiction,
            days=days,
            max_results=payload.get("max_results"),
            on_progress=progress,
            cancel_event=cancel_event,
        )

        repo.insert_source_documents(result.documents)
        repo.insert_links(
            {"from_type": "Run", "from_id": run_id, "to_type": "SourceDocument",
             "to_id": doc.id, "relation": "produced"}
            for doc in result.documents
        )

        errors = list(result.errors)
        accepted = 0
        reviewed = 0
        for item in result.items:
            evaluation = result.evaluations.get(item["id"])
            try:
                if persist_scan_item(context, run_id, item, evaluation.route if evaluation else None):
                    accepted += 1
                else:
                    reviewed += 1
            except StoreError as e:
                logger.error(f"Could not store item {item['id']} for run {run_id}: {e}")
                errors.append(f"{item.get('title') or item['id']}: {e}")
                progress("error", f"Store failed: {item.get('title') or item['id']}")

        summary = {
            "discovered": result.discovered,
            "extracted": len(result.items),
            "accepted": accepted,
            "reviewed": reviewed,
            "errored": len(errors),
            "errors": errors,
            "coerced": len(result.coerced),
            "cancelled": result.cancelled,
        }
        progress(
            "complete",
            f"Scan complete: discovered {result.discovered} / accepted {accepted} / "
            f"reviewed {reviewed} / errors {len(errors)}",
        )
        repo.update_run(run_id, status="completed", completed_at=utc_now_iso(), meta=summary)
        return summary
    except Exception as e:
        _fail_run(context, run_id, e)
        raise


def process_merge_job(payload: Dict[str, Any], context: PipelineContext) -> Dict[str, Any]:
    """
    Merge all stored items of a jurisdiction into consolidated items and requirements.

    Merged items without a tier or stage inherit the highest found among the inputs.
    Requirements are stored only when that inferred tier is the top tier.
    """
    run_id = payload["run_id"]
    jurisdiction = payload["jurisdiction"]
    repo = context.repository
    repo.update_run(run_id, status="running")

    try:
        sources = repo.list_regulation_items(jurisdiction)
        repo.add_run_log(run_id, "merge", f"Merging {len(sources)} items for {jurisdiction}")
        merge = context.extraction_service.merge(sources, jurisdiction)

        inferred_tier = pick_highest_tier(sources)
        inferred_stage = pick_highest_stage(sources)

        links: List[Dict[str, Any]] = []
        merged = 0
        reviewed = 0
        for item in merge.get("mergedItems") or []:
            if not isinstance(item, dict):
                logger.warning(f"Skipping malformed merged item in run {run_id}: {item!r}")
                continue
            if not item.get("id"):
                item["id"] = new_id()
            if not item.get("trust_tier") and inferred_tier:
                item["trust_tier"] = inferred_tier.value
            if not item.get("monitoring_stage") and inferred_stage:
                item["monitoring_stage"] = inferred_stage.value

            validation = validate_item(item, context)
            decision = promotion_decision(item, validation)
            if decision.accept:
                repo.upsert_regulation_item(validation.data)
                merged += 1
                links.append({"from_type": "Run", "from_id": run_id, "to_type": ENTITY_REGULATION_ITEM,
                              "to_id": item["id"], "relation": "produced"})
                if item.get("source_document_id"):
                    links.append({"from_type": "SourceDocument", "from_id": item["source_document_id"],
                                  "to_type": ENTITY_REGULATION_ITEM, "to_id": item["id"],
                                  "relation": "extracted_from"})
            else:
                queue_for_review(context, item, decision.reason)
                reviewed += 1

        requirement_ids = []
        if inferred_tier == TrustTier.top():
            for requirement in merge.get("radarTable") or []:
                validation = validate_requirement(requirement)
                if validation.ok:
                    requirement_ids.append(repo.insert_requirement(validation.data))

        for req_id in requirement_ids:
            links.append({"from_type": "Run", "from_id": run_id, "to_type": "Requirement",
                          "to_id": req_id, "relation": "produced"})
            for source in sources:
                links.append({"from_type": ENTITY_REGULATION_ITEM, "from_id": source["id"],
                              "to_type": "Requirement", "to_id": req_id, "relation": "mapped_to"})

        repo.insert_links(links)

        summary = {
            "merged": merged,
            "radar": len(requirement_ids),
            "reviewed": reviewed,
            "data_gaps": merge.get("dataGaps", []),
            "summary": merge.get("summary", ""),
        }
        repo.update_run(run_id, status="completed", completed_at=utc_now_iso(), meta=summary)
        return summary
    except Exception as e:
        _fail_run(context, run_id, e)
        raise
