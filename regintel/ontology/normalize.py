"""
Coerce extraction-service output into ontology-conformant item fields.

The extraction service is untrusted: unknown enum values are replaced by safe defaults,
list fields are filtered to their vocabularies and confidence is clamped. Every field
touched by a default is reported in ``NormalizedExtraction.coerced``.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .terms import (
    IMPACTED_AREAS,
    ITEM_STATUSES,
    JURISDICTIONS,
    MONITORING_STAGES,
    PRIORITIES,
    SOURCE_TYPES,
    TOPICS,
    TRUST_TIERS,
    source_org_for,
)

DEFAULT_CONFIDENCE = 0.7
SUMMARY_MAX_CHARS = 400
SNIPPET_MAX_CHARS = 300

_DMY_PATTERN = re.compile(r"(\d{1,2})[./-](\d{1,2})[./-](\d{2,4})")


@dataclass
class NormalizedExtraction:
    fields: Dict[str, Any]
    coerced: List[str] = field(default_factory=list)


def normalize_priority(value: Any) -> str:
    """Map free-text priority to P0/P1/P2."""
    if isinstance(value, str) and value in PRIORITIES:
        return value
    text = value.lower() if isinstance(value, str) else ""
    if "p0" in text or "urgent" in text or "critical" in text:
        return "P0"
    if "p1" in text or "high" in text:
        return "P1"
    return "P2"


def parse_loose_date(value: Optional[str]) -> Optional[datetime]:
    """
    Parse ISO dates/timestamps and day-first ``dd.mm.yyyy`` style dates.

    Returns:
        Timezone-aware datetime (UTC when no offset given), or None if unparsable
    """
    if not value:
        return None
    text = str(value).strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
    if parsed is None:
        match = _DMY_PATTERN.search(text)
        if not match:
            return None
        day, month, year = match.groups()
        if len(year) == 2:
            year = "20" + year
        try:
            parsed = datetime(int(year), int(month), int(day))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_extraction(raw: Dict[str, Any], title: str) -> NormalizedExtraction:
    """
    Normalize one extraction response.

    Args:
        raw: Parsed JSON returned by the extraction service
        title: Candidate title, used when the summary is empty

    Returns:
        NormalizedExtraction with the cleaned fields and the names of coerced fields
    """
    raw = raw if isinstance(raw, dict) else {}
    coerced: List[str] = []
    fields: Dict[str, Any] = {}

    source_type = raw.get("source_type")
    if source_type in SOURCE_TYPES:
        fields["source_type"] = source_type
    else:
        fields["source_type"] = "guidance"
        coerced.append("source_type")

    status = raw.get("status")
    if status in ITEM_STATUSES:
        fields["status"] = status
    else:
        fields["status"] = "unknown"
        coerced.append("status")

    priority = normalize_priority(raw.get("priority"))
    if priority != raw.get("priority"):
        coerced.append("priority")
    fields["priority"] = priority

    for name, vocabulary in (("topics", TOPICS), ("impacted_areas", IMPACTED_AREAS)):
        values = raw.get(name)
        if not isinstance(values, list):
            fields[name] = []
            coerced.append(name)
            continue
        kept = [v for v in values if v in vocabulary]
        if len(kept) != len(values):
            coerced.append(name)
        fields[name] = kept

    confidence = raw.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        fields["confidence"] = DEFAULT_CONFIDENCE
        coerced.append("confidence")
    else:
        clamped = max(0.0, min(1.0, float(confidence)))
        if clamped != confidence:
            coerced.append("confidence")
        fields["confidence"] = clamped

    summary = str(raw.get("summary_1line") or "").strip()
    if not summary:
        summary = title
        coerced.append("summary_1line")
    if len(summary) > SUMMARY_MAX_CHARS:
        summary = summary[:SUMMARY_MAX_CHARS]
        if "summary_1line" not in coerced:
            coerced.append("summary_1line")
    fields["summary_1line"] = summary

    actions = raw.get("engineering_actions")
    if isinstance(actions, list):
        fields["engineering_actions"] = actions
    else:
        fields["engineering_actions"] = []
        coerced.append("engineering_actions")

    fields["published_date"] = raw.get("published_date")
    fields["effective_date"] = raw.get("effective_date")
    fields["notes"] = raw.get("notes") or ""

    return NormalizedExtraction(fields=fields, coerced=coerced)


def build_regulation_item(
    normalized: NormalizedExtraction,
    *,
    url: str,
    title: str,
    content: str,
    jurisdiction: str,
    source_document_id: str,
    trust_tier: str,
    monitoring_stage: str,
    source_profile_id: Optional[str] = None,
    published_date: Optional[str] = None,
    raw_file_uri: Optional[str] = None,
    text_snapshot_uri: Optional[str] = None,
) -> Dict[str, Any]:
    """Assemble a full regulation item dict with identity and evidence."""
    fields = normalized.fields
    item = {
        "id": str(uuid.uuid4()),
        "jurisdiction": jurisdiction,
        "source_org": source_org_for(url),
        "source_type": fields["source_type"],
        "title": title,
        "summary_1line": fields["summary_1line"],
        "url": url,
        "published_date": fields.get("published_date") or published_date,
        "retrieved_at": datetime.now(timezone.utc).isoformat(),
        "effective_date": fields.get("effective_date"),
        "status": fields["status"],
        "topics": fields["topics"],
        "impacted_areas": fields["impacted_areas"],
        "engineering_actions": fields["engineering_actions"],
        "evidence": {
            "raw_file_uri": raw_file_uri,
            "text_snapshot_uri": text_snapshot_uri,
            "citations": [
                {"title": title, "url": url, "snippet": (content or "")[:SNIPPET_MAX_CHARS]}
            ],
        },
        "confidence": fields["confidence"],
        "notes": fields["notes"],
        "priority": fields["priority"],
        "source_document_id": source_document_id,
        "trust_tier": trust_tier,
        "monitoring_stage": monitoring_stage,
    }
    if source_profile_id:
        item["source_profile_id"] = source_profile_id
    return item


def _string_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(v) for v in value if v]
    if isinstance(value, str) and value.strip():
        return [value.strip()]
    return []


def normalize_item_payload(payload: Any) -> NormalizedExtraction:
    """
    Re-normalize a stored item payload (e.g. a review-queue entry) before re-validation.

    Enum fields fall back to their defaults, list fields are filtered, evidence gets an
    empty citation list when absent, and missing timestamps/dates are filled. Unknown
    tier or stage values are removed rather than guessed.
    """
    if not isinstance(payload, dict):
        return NormalizedExtraction(fields={}, coerced=["payload"])
    raw = payload
    item = dict(raw)
    coerced: List[str] = []

    def enum_field(name: str, allowed: List[str], fallback: str) -> None:
        value = raw.get(name)
        if isinstance(value, str) and value in allowed:
            item[name] = value
        else:
            item[name] = fallback
            coerced.append(name)

    if not item.get("id"):
        item["id"] = str(uuid.uuid4())
        coerced.append("id")
    enum_field("jurisdiction", JURISDICTIONS, "EU")
    enum_field("source_type", SOURCE_TYPES, "guidance")
    enum_field("status", ITEM_STATUSES, "unknown")
    enum_field("priority", PRIORITIES, "P2")

    for name, allowed in (("trust_tier", TRUST_TIERS), ("monitoring_stage", MONITORING_STAGES)):
        if name in item and item[name] not in allowed:
            del item[name]
            coerced.append(name)
    if "source_profile_id" in item and not isinstance(item["source_profile_id"], str):
        del item["source_profile_id"]

    for name, vocabulary in (("topics", TOPICS), ("impacted_areas", IMPACTED_AREAS)):
        values = _string_list(raw.get(name))
        kept = [v for v in values if v in vocabulary]
        if kept != raw.get(name):
            coerced.append(name)
        item[name] = kept

    if not isinstance(raw.get("engineering_actions"), list):
        item["engineering_actions"] = []
        coerced.append("engineering_actions")

    evidence = raw.get("evidence")
    if not isinstance(evidence, dict):
        evidence = {"raw_file_uri": None, "text_snapshot_uri": None, "citations": []}
        coerced.append("evidence")
    else:
        evidence = dict(evidence)
        evidence.setdefault("raw_file_uri", None)
        evidence.setdefault("text_snapshot_uri", None)
        if not isinstance(evidence.get("citations"), list):
            evidence["citations"] = []
            coerced.append("evidence")
    item["evidence"] = evidence

    if not item.get("url") and evidence["citations"] and isinstance(evidence["citations"][0], dict):
        cited = evidence["citations"][0].get("url")
        if cited:
            item["url"] = cited
            coerced.append("url")

    source_org = raw.get("source_org")
    item["source_org"] = source_org if isinstance(source_org, str) and source_org.strip() else "Unknown"
    title = raw.get("title")
    if not (isinstance(title, str) and title.strip()):
        summary = raw.get("summary_1line")
        item["title"] = summary if isinstance(summary, str) and summary.strip() else "Untitled"
        coerced.append("title")
    summary = raw.get("summary_1line")
    if isinstance(summary, str) and summary.strip():
        item["summary_1line"] = summary[:SUMMARY_MAX_CHARS]
    else:
        item["summary_1line"] = str(item["title"])[:SUMMARY_MAX_CHARS]
        coerced.append("summary_1line")

    confidence = raw.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        item["confidence"] = DEFAULT_CONFIDENCE
        coerced.append("confidence")
    else:
        item["confidence"] = max(0.0, min(1.0, float(confidence)))

    item["retrieved_at"] = item.get("retrieved_at") or datetime.now(timezone.utc).isoformat()
    item["published_date"] = item.get("published_date") or None
    item["effective_date"] = item.get("effective_date") or None
    item["notes"] = item.get("notes") or ""

    return NormalizedExtraction(fields=item, coerced=coerced)
