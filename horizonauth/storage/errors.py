from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A credential-store write broke a uniqueness or ownership rule.

    Both stores raise it for the same cases: a duplicate email, refresh-token
    hash, provider identity, authorization code or push token value (``detail``
    names the ``field``), and a record pointing at a user or device that does
    not exist (``detail`` carries the missing ``user_id`` or ``device_id``).
    Services translate it into a ``ConflictError`` or a domain error.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["ConstraintViolation"]
