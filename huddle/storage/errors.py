from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write collided with a unique or foreign-key constraint.

    ``field`` names the unique column that collided (``email`` or
    ``username``) so registration can report which one is taken.
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.context = context or {}

    @property
    def detail(self) -> Dict[str, Any]:
        if self.field:
            return {"field": self.field}
        return {}


class UserMissing(ConstraintViolation):
    """A user-scoped write targeted an id with no user row."""

    def __init__(self, user_id: str):
        super().__init__("user not found", context={"user_id": user_id})
        self.user_id = user_id


__all__ = ["ConstraintViolation", "UserMissing"]
