"""
JSON Schema documents for regulation items, requirements and extraction output.

Validation uses ``jsonschema``; error messages are flattened to
``"<path>: <message>"`` strings so they can be stored with review entries.
"""

from typing import Any, Dict, List

import jsonschema

from .terms import (
    EVIDENCE_STATUSES,
    IMPACTED_AREAS,
    ITEM_STATUSES,
    JURISDICTIONS,
    MONITORING_STAGES,
    PRIORITIES,
    SOURCE_TYPES,
    TOPICS,
    TRUST_TIERS,
)

URL_PATTERN = r"^https?://[^\s/$.?#][^\s]*$"

NULLABLE_STRING = {"type": ["string", "null"]}

ENGINEERING_ACTION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "action": {"type": "string", "minLength": 1},
        "owner_role": {"type": "string", "minLength": 1},
        "due_date": NULLABLE_STRING,
        "artifact": {"type": "string", "minLength": 1},
    },
    "required": ["action", "owner_role", "due_date", "artifact"],
}

CITATION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "title": {"type": "string", "minLength": 1},
        "url": {"type": "string", "pattern": URL_PATTERN},
        "snippet": {"type": "string"},
    },
    "required": ["title", "url"],
}

EVIDENCE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "raw_file_uri": NULLABLE_STRING,
        "text_snapshot_uri": NULLABLE_STRING,
        "citations": {"type": "array", "items": CITATION_SCHEMA},
    },
    "required": ["raw_file_uri", "text_snapshot_uri", "citations"],
}

REGULATION_ITEM_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "RegulationItem",
    "type": "object",
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "jurisdiction": {"enum": JURISDICTIONS},
        "source_org": {"type": "string", "minLength": 1},
        "source_type": {"enum": SOURCE_TYPES},
        "title": {"type": "string", "minLength": 1},
        "summary_1line": {"type": "string", "minLength": 1, "maxLength": 400},
        "url": {"type": "string", "pattern": URL_PATTERN},
        "published_date": NULLABLE_STRING,
        "retrieved_at": {"type": "string", "minLength": 1},
        "effective_date": NULLABLE_STRING,
        "status": {"enum": ITEM_STATUSES},
        "topics": {"type": "array", "items": {"enum": TOPICS}},
        "impacted_areas": {"type": "array", "items": {"enum": IMPACTED_AREAS}},
        "engineering_actions": {"type": "array", "items": ENGINEERING_ACTION_SCHEMA},
        "evidence": EVIDENCE_SCHEMA,
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        "notes": {"type": "string"},
        "priority": {"enum": PRIORITIES},
        "source_document_id": {"type": "string"},
        "trust_tier": {"enum": TRUST_TIERS},
        "monitoring_stage": {"enum": MONITORING_STAGES},
        "source_profile_id": {"type": "string"},
    },
    "required": [
        "id",
        "jurisdiction",
        "source_org",
        "source_type",
        "title",
        "summary_1line",
        "url",
        "published_date",
        "retrieved_at",
        "effective_date",
        "status",
        "evidence",
        "confidence",
        "priority",
    ],
}

REQUIREMENT_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "Requirement",
    "type": "object",
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "requirementFamily": {"type": "string", "minLength": 1},
        "markets": {"type": "array", "items": {"type": "string"}},
        "vehicleTypes": {"type": "array", "items": {"type": "string"}},
        "functions": {"type": "array", "items": {"type": "string"}},
        "owner": {"type": "string"},
        "evidenceStatus": {"enum": EVIDENCE_STATUSES},
        "priority": {"enum": PRIORITIES},
    },
    "required": ["requirementFamily", "evidenceStatus", "priority"],
}

DATA_GAP_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "area": {"type": "string", "minLength": 1},
        "description": {"type": "string", "minLength": 1},
        "severity": {"enum": ["high", "medium", "low"]},
        "recommendation": {"type": "string", "minLength": 1},
    },
    "required": ["area", "description", "severity", "recommendation"],
}

# Strict structured-output schema handed to the extraction service
EXTRACTION_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "source_type": {"type": "string", "enum": SOURCE_TYPES},
        "summary_1line": {"type": "string"},
        "published_date": {"type": ["string", "null"]},
        "effective_date": {"type": ["string", "null"]},
        "status": {"type": "string", "enum": ITEM_STATUSES},
        "topics": {"type": "array", "items": {"type": "string", "enum": TOPICS}},
        "impacted_areas": {"type": "array", "items": {"type": "string", "enum": IMPACTED_AREAS}},
        "priority": {"type": "string", "enum": PRIORITIES},
        "engineering_actions": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "action": {"type": "string"},
                    "owner_role": {"type": "string"},
                    "due_date": {"type": ["string", "null"]},
                    "artifact": {"type": "string"},
                },
                "required": ["action", "owner_role", "due_date", "artifact"],
                "additionalProperties": False,
            },
        },
        "confidence": {"type": "number"},
        "notes": {"type": "string"},
    },
    "required": [
        "source_type",
        "summary_1line",
        "published_date",
        "effective_date",
        "status",
        "topics",
        "impacted_areas",
        "priority",
        "engineering_actions",
        "confidence",
        "notes",
    ],
    "additionalProperties": False,
}

MERGE_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "mergedItems": {"type": "array", "items": {"type": "object"}},
        "radarTable": {"type": "array", "items": {"type": "object"}},
        "dataGaps": {"type": "array", "items": {"type": "object"}},
        "summary": {"type": "string"},
    },
    "required": ["mergedItems", "radarTable", "dataGaps", "summary"],
    "additionalProperties": False,
}

_VALIDATORS: Dict[str, jsonschema.Draft202012Validator] = {}


def _validator(schema: Dict[str, Any]) -> jsonschema.Draft202012Validator:
    key = schema.get("title") or str(id(schema))
    validator = _VALIDATORS.get(key)
    if validator is None:
        validator = jsonschema.Draft202012Validator(schema)
        _VALIDATORS[key] = validator
    return validator


def schema_errors(instance: Any, schema: Dict[str, Any]) -> List[str]:
    """Return flattened validation errors (empty list when the instance is valid)."""
    errors = []
    for error in sorted(_validator(schema).iter_errors(instance), key=lambda e: [str(p) for p in e.absolute_path]):
        path = ".".join(str(p) for p in error.absolute_path)
        errors.append(f"{path}: {error.message}" if path else error.message)
    return errors
