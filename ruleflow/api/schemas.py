from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from ruleflow.storage.models import RuleVersion

# Maximum nested JSON depth accepted in execute payloads
MAX_JSON_DEPTH = 20
# Maximum array items accepted in execute payloads
MAX_ARRAY_ITEMS = 1000


def validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject deeply nested or oversized JSON values.

    Raises:
        ValueError: If depth or array length exceeds the limits
    """
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            validate_json_depth(item, max_depth, current_depth + 1)


_VALID_ERROR_CODES = frozenset({
    "not_found",
    "validation_error",
    "conflict",
    "unresolved_reference",
    "unsupported_node_type",
    "node_execution_failed",
    "rule_execution_failed",
    "incomplete_execution",
    "cycle_limit_exceeded",
    "unprocessable",
    "cancelled",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code clients can branch on")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class VersionSummary(BaseModel):
    id: str
    category_id: str
    version: str
    type: str
    is_active: bool
    updated_at: datetime

    @classmethod
    def from_record(cls, record: RuleVersion) -> "VersionSummary":
        return cls(
            id=record.id,
            category_id=record.category_id,
            version=record.version,
            type=record.type.value,
            is_active=record.is_active,
            updated_at=record.updated_at,
        )


class ExecuteResponse(BaseModel):
    version: VersionSummary
    results: Dict[str, Any]
    rounds: Optional[int] = None
    duration_ms: float


class CancelResponse(BaseModel):
    request_id: str
    cancelled: bool
    message: str
