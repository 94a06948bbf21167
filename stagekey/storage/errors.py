from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or state constraint is violated.

    ``detail["reason"]`` names the constraint: ``username_taken``,
    ``bootstrap_claimed``, ``request_not_found``, ``request_processed``,
    ``user_not_found``, ``user_revoked``, ``credentials_changed``.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def reason(self) -> Optional[str]:
        return self.detail.get("reason")


__all__ = ["ConstraintViolation"]
