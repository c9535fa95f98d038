"""
Write gate for the authoritative store.

Checks run in a fixed order and stop at the first failure:
    1. schema and enum compliance
    2. source URL on the permitted domain list
    3. at least one evidence citation
    4. confidence at or above the configured minimum

Failures are returned as a ValidationResult with a human-readable reason, never raised.
The trust-tier gate is applied by the caller (see pipeline.ingest_job.promotion_decision).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .schema import REGULATION_ITEM_SCHEMA, REQUIREMENT_SCHEMA, schema_errors
from .terms import is_allowed_domain

DEFAULT_CONFIDENCE_MIN = 0.7


@dataclass
class ValidationResult:
    ok: bool
    data: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "reason": self.reason, "errors": list(self.errors)}


def validate_regulation_item(
    item: Any,
    confidence_min: float = DEFAULT_CONFIDENCE_MIN,
    allowed_domains: Optional[List[str]] = None,
) -> ValidationResult:
    errors = schema_errors(item, REGULATION_ITEM_SCHEMA)
    if errors:
        return ValidationResult(ok=False, reason="Schema validation failed", errors=errors)

    if not is_allowed_domain(item["url"], allowed_domains):
        return ValidationResult(ok=False, reason="Source domain not allowed")

    citations = item["evidence"].get("citations") or []
    if len(citations) == 0:
        return ValidationResult(ok=False, reason="Missing evidence citations")

    if item["confidence"] < confidence_min:
        return ValidationResult(
            ok=False, reason=f"Confidence below threshold ({confidence_min})"
        )

    return ValidationResult(ok=True, data=item)


def validate_requirement(requirement: Any) -> ValidationResult:
    errors = schema_errors(requirement, REQUIREMENT_SCHEMA)
    if errors:
        return ValidationResult(
            ok=False, reason="Requirement schema validation failed", errors=errors
        )
    return ValidationResult(ok=True, data=requirement)
