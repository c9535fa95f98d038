"""
Scan: discover candidate documents from every policy profile and extract items.

Connector failures are recorded and the scan moves on to the next profile; extraction
failures are recorded per document. Nothing here writes to the authoritative store.
"""

import hashlib
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from regintel.ingest.news_connector import GenericListConnector, NewsListConnector
from regintel.ingest.site_connector import DocumentRegisterConnector, date_sort_key
from regintel.ontology.normalize import build_regulation_item, normalize_extraction, parse_loose_date
from regintel.ontology.policy import PolicyProfile, SourceEvaluation, TrustPolicy
from regintel.ontology.terms import TrustTier, domain_of

from .context import PipelineContext
from .models import CandidateDocument, SourceDocument, new_id, utc_now_iso

logger = logging.getLogger(__name__)

CONNECTOR_DOCUMENT_REGISTER = "document_register"
CONNECTOR_NEWS_LIST = "news_list"
CONNECTOR_GENERIC_LIST = "generic_list"

ProgressFn = Callable[[str, str, Optional[Dict[str, Any]]], None]


@dataclass
class ScanResult:
    discovered: int = 0
    items: List[Dict[str, Any]] = field(default_factory=list)
    documents: List[SourceDocument] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    evaluations: Dict[str, SourceEvaluation] = field(default_factory=dict)
    coerced: Dict[str, List[str]] = field(default_factory=dict)
    cancelled: bool = False


def _safe_progress(on_progress: Optional[ProgressFn]) -> ProgressFn:
    def log(stage: str, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        logger.info(f"[{stage}] {message}")
        if on_progress is None:
            return
        try:
            on_progress(stage, message, meta)
        except Exception:
            logger.debug("Progress sink failed", exc_info=True)
    return log


def build_connector(profile: PolicyProfile, context: PipelineContext, log: ProgressFn):
    settings = context.settings
    if profile.connector == CONNECTOR_DOCUMENT_REGISTER:
        return DocumentRegisterConnector(
            context.fetcher,
            context.object_store,
            context.download_index,
            cooldown_seconds=settings.download_cooldown_seconds,
            max_workers=settings.connector_workers,
            on_progress=log,
        )
    if profile.connector == CONNECTOR_NEWS_LIST:
        return NewsListConnector(context.fetcher, max_workers=settings.connector_workers)
    if profile.connector == CONNECTOR_GENERIC_LIST:
        return GenericListConnector(context.fetcher, max_workers=settings.connector_workers)
    return None


def dedupe_by_url(candidates: List[CandidateDocument], policy: TrustPolicy) -> List[CandidateDocument]:
    """Keep the first candidate per canonical URL."""
    seen = set()
    unique = []
    for candidate in candidates:
        key = policy.canonicalize(candidate.url)
        if key in seen:
            continue
        seen.add(key)
        unique.append(candidate)
    return unique


def filter_by_days(
    candidates: List[CandidateDocument], days: Optional[int], now: Optional[datetime] = None
) -> List[CandidateDocument]:
    """Drop candidates dated before the window; undated or unparsable ones are kept."""
    if not days:
        return candidates
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
    kept = []
    for candidate in candidates:
        parsed = parse_loose_date(candidate.date_value)
        if parsed is None or parsed >= cutoff:
            kept.append(candidate)
    return kept


def resolve_tier(candidate: CandidateDocument, policy: TrustPolicy) -> Optional[TrustTier]:
    profile = policy.get_profile(candidate.profile_id)
    if profile:
        return profile.tier
    return policy.tier_for_domain(domain_of(candidate.url))


def sort_candidates(candidates: List[CandidateDocument], policy: TrustPolicy) -> List[CandidateDocument]:
    """Document registers first, then top-tier sources, then the rest; newest first within each."""
    def key(pair):
        index, candidate = pair
        profile = policy.get_profile(candidate.profile_id)
        if profile and profile.connector == CONNECTOR_DOCUMENT_REGISTER:
            bucket = 0
        elif resolve_tier(candidate, policy) == TrustTier.top():
            bucket = 1
        else:
            bucket = 2
        return (bucket, date_sort_key(candidate.date_value), index)

    return [c for _, c in sorted(enumerate(candidates), key=key)]


def evaluate_candidate(candidate: CandidateDocument, policy: TrustPolicy) -> SourceEvaluation:
    """The discovering profile decides; URLs found without one go through full evaluation."""
    profile = policy.get_profile(candidate.profile_id)
    if profile:
        return policy.evaluate_profile(profile, policy.canonicalize(candidate.url))
    return policy.evaluate(candidate.url)


def document_hash(canonical_url: str, title: str) -> str:
    return hashlib.sha256(f"{canonical_url}|{title}".encode("utf-8")).hexdigest()[:16]


def build_source_document(candidate: CandidateDocument, evaluation: SourceEvaluation) -> SourceDocument:
    canonical_url = evaluation.canonical_url
    stored = [s for s in candidate.stored_files if s.stored_id]
    meta = {
        "published_date": candidate.published_date,
        "trust_tier": evaluation.tier.value,
        "monitoring_stage": evaluation.stage.value,
        "route": evaluation.route,
        "source_profile_id": evaluation.profile_id or candidate.profile_id,
        "raw_file_uri": candidate.raw_file_uri,
        "raw_files": [f.url for f in candidate.files] or None,
        "stored_files": [s.to_dict() for s in candidate.stored_files] or None,
        "content_fetch_id": stored[0].stored_id if stored else None,
    }
    meta.update(candidate.metadata)
    return SourceDocument(
        id=new_id(),
        url=canonical_url,
        domain=domain_of(canonical_url),
        title=candidate.title,
        content=candidate.content,
        retrieved_at=utc_now_iso(),
        hash=document_hash(canonical_url, candidate.title),
        meta=meta,
    )


def collect_candidates(
    context: PipelineContext,
    policy: TrustPolicy,
    max_results: int,
    log: ProgressFn,
    errors: List[str],
    cancel_event: Optional[threading.Event] = None,
) -> List[CandidateDocument]:
    candidates: List[CandidateDocument] = []
    for profile in policy.profiles:
        if cancel_event is not None and cancel_event.is_set():
            break
        connector = build_connector(profile, context, log)
        if connector is None:
            log("search", f"No connector {profile.connector!r} for profile {profile.id}")
            continue
        log("search", f"Connector {profile.connector}: {profile.domain}{profile.path}")
        try:
            docs = connector.collect(profile, max_results, cancel_event=cancel_event)
        except Exception as e:
            logger.exception(f"Connector failed for profile {profile.id}")
            errors.append(f"{profile.id}: {e}")
            log("error", f"Connector failed for {profile.id}: {e}")
            continue
        log("search", f"{profile.id}: {len(docs)} candidates")
        candidates.extend(docs)
    return candidates


def run_scan(
    context: PipelineContext,
    jurisdiction: str,
    days: Optional[int] = None,
    max_results: Optional[int] = None,
    on_progress: Optional[ProgressFn] = None,
    cancel_event: Optional[threading.Event] = None,
) -> ScanResult:
    """
    Discover, rank and extract candidate documents.

    Args:
        context: Pipeline collaborators
        jurisdiction: Jurisdiction code stamped on extracted items
        days: Only keep candidates dated within this many days (None = no window)
        max_results: Number of candidates to extract (default from settings)
        on_progress: Optional sink for (stage, message, meta) progress entries
        cancel_event: When set, no further profiles or documents are processed

    Returns:
        ScanResult with extracted items, their source documents and errors
    """
    log = _safe_progress(on_progress)
    limit = max_results if max_results is not None else context.settings.default_max_results
    policy = context.policy_store.get()
    result = ScanResult()

    log("search", "Collecting candidates from connectors")
    candidates = collect_candidates(context, policy, limit, log, result.errors, cancel_event)

    filtered = filter_by_days(dedupe_by_url(candidates, policy), days)
    result.discovered = len(filtered)
    log("search", f"{len(filtered)} candidates after dedup and date window")

    selected = sort_candidates(filtered, policy)[:limit]
    log("triage", f"Extracting {len(selected)} candidates")

    for candidate in selected:
        if cancel_event is not None and cancel_event.is_set():
            result.cancelled = True
            log("cancel", "Scan cancelled, remaining candidates skipped")
            break

        log("process", f"Processing: {candidate.title}")
        evaluation = evaluate_candidate(candidate, policy)
        document = build_source_document(candidate, evaluation)
        result.documents.append(document)

        try:
            raw = context.extraction_service.extract(candidate)
            normalized = normalize_extraction(raw, candidate.title)
            item = build_regulation_item(
                normalized,
                url=candidate.url,
                title=candidate.title,
                content=candidate.content,
                jurisdiction=jurisdiction,
                source_document_id=document.id,
                trust_tier=evaluation.tier.value,
                monitoring_stage=evaluation.stage.value,
                source_profile_id=evaluation.profile_id,
                published_date=candidate.published_date,
                raw_file_uri=candidate.stored_download_url() or candidate.raw_file_uri,
            )
        except Exception as e:
            logger.warning(f"Extraction failed for {candidate.url}: {e}")
            result.errors.append(f"{candidate.title}: {e}")
            log("error", f"Extraction failed: {candidate.title}")
            continue

        result.items.append(item)
        result.evaluations[item["id"]] = evaluation
        if normalized.coerced:
            result.coerced[item["id"]] = normalized.coerced
        log("extract", f"Extracted: {candidate.title} [{item['priority']}]")

    if cancel_event is not None and cancel_event.is_set():
        result.cancelled = True
    return result
