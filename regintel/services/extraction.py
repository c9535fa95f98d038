"""
Structured extraction and merge through a language model.

The pipeline only depends on the ``ExtractionService`` interface; its output is treated
as untrusted and always normalized and re-validated downstream.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from regintel.config.secrets import get_openai_model, load_extraction_credentials
from regintel.ontology.schema import (
    DATA_GAP_SCHEMA,
    EXTRACTION_RESPONSE_SCHEMA,
    MERGE_RESPONSE_SCHEMA,
    REQUIREMENT_SCHEMA,
    schema_errors,
)
from regintel.pipeline.models import CandidateDocument

logger = logging.getLogger(__name__)

EXTRACT_SYSTEM_PROMPT = (
    "You are a regulatory analyst. Extract structured JSON.\n"
    "Use strict schema with fields: source_type, summary_1line, published_date, "
    "effective_date, status, topics, impacted_areas, priority, engineering_actions, "
    "confidence, notes."
)

MERGE_SYSTEM_PROMPT = (
    "You are a regulatory analyst. Merge documents into structured JSON.\n"
    "Return: mergedItems, radarTable, dataGaps, summary."
)


class ExtractionError(Exception):
    """Raised when the extraction service returns nothing usable."""
    pass


class ExtractionService(ABC):
    @abstractmethod
    def extract(self, candidate: CandidateDocument) -> Dict[str, Any]:
        """Return classification fields for one candidate document."""

    @abstractmethod
    def merge(self, items: List[Dict[str, Any]], jurisdiction: str) -> Dict[str, Any]:
        """Return ``{mergedItems, radarTable, dataGaps, summary}`` for a set of items."""


def clean_merge_result(parsed: Dict[str, Any], jurisdiction: str) -> Dict[str, Any]:
    """Fill defaults on merged items and drop radar rows / data gaps that fail their schema."""
    merged_items = []
    for raw in parsed.get("mergedItems") or []:
        if not isinstance(raw, dict):
            continue
        item = dict(raw)
        item.setdefault("id", "")
        item["jurisdiction"] = item.get("jurisdiction") or jurisdiction
        item["retrieved_at"] = item.get("retrieved_at") or datetime.now(timezone.utc).isoformat()
        item["evidence"] = item.get("evidence") or {
            "raw_file_uri": None,
            "text_snapshot_uri": None,
            "citations": [],
        }
        if item.get("confidence") is None:
            item["confidence"] = 0.7
        item["notes"] = item.get("notes") or ""
        for key in ("topics", "impacted_areas", "engineering_actions"):
            item[key] = item.get(key) or []
        merged_items.append(item)

    radar = [r for r in parsed.get("radarTable") or [] if not schema_errors(r, REQUIREMENT_SCHEMA)]
    gaps = [g for g in parsed.get("dataGaps") or [] if not schema_errors(g, DATA_GAP_SCHEMA)]
    return {
        "mergedItems": merged_items,
        "radarTable": radar,
        "dataGaps": gaps,
        "summary": parsed.get("summary") or "",
    }


class OpenAIExtractionService(ExtractionService):
    """ExtractionService backed by OpenAI chat completions with JSON-schema output."""

    def __init__(self, model: Optional[str] = None, client=None):
        self.model = model or get_openai_model()
        self._client = client

    @property
    def client(self):
        if self._client is None:
            from openai import OpenAI
            credentials = load_extraction_credentials(self.model)
            self._client = OpenAI(api_key=credentials.api_key, base_url=credentials.base_url)
        return self._client

    def _complete(self, system_prompt: str, user_prompt: str, name: str,
                  schema: Dict[str, Any], strict: bool, max_tokens: int) -> Dict[str, Any]:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            response_format={
                "type": "json_schema",
                "json_schema": {"name": name, "strict": strict, "schema": schema},
            },
            max_completion_tokens=max_tokens,
        )
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ExtractionError("Empty model response")
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise ExtractionError(f"Model response is not valid JSON: {e}") from e

    def extract(self, candidate: CandidateDocument) -> Dict[str, Any]:
        user_prompt = f"Title: {candidate.title}\nURL: {candidate.url}\nContent: {candidate.content}"
        return self._complete(
            EXTRACT_SYSTEM_PROMPT, user_prompt, "regulation_item",
            EXTRACTION_RESPONSE_SCHEMA, strict=True, max_tokens=1200,
        )

    def merge(self, items: List[Dict[str, Any]], jurisdiction: str) -> Dict[str, Any]:
        summaries = [
            {
                "id": item.get("id"),
                "title": item.get("title"),
                "type": item.get("source_type"),
                "jurisdiction": item.get("jurisdiction"),
                "source": item.get("source_org"),
                "url": item.get("url"),
                "content": item.get("summary_1line"),
                "metadata": {"priority": item.get("priority"), "status": item.get("status")},
            }
            for item in items
        ]
        user_prompt = (
            f"Documents ({len(summaries)}):\n{json.dumps(summaries, indent=2)}\n"
            f"Target jurisdiction: {jurisdiction}"
        )
        parsed = self._complete(
            MERGE_SYSTEM_PROMPT, user_prompt, "merge_result",
            MERGE_RESPONSE_SCHEMA, strict=False, max_tokens=2000,
        )
        return clean_merge_result(parsed, jurisdiction)
