from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for rule version store failures."""


class ConstraintViolation(StoreError):
    """A write would break a store rule, such as a duplicate version label."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})

    @classmethod
    def duplicate_label(cls, category_id: str, version: str) -> "ConstraintViolation":
        return cls(
            f"version {version!r} already exists in category {category_id!r}",
            {"category_id": category_id, "version": version},
        )


__all__ = ["StoreError", "ConstraintViolation"]
