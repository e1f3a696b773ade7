# errors.py
"""Error kinds raised by the core and translated at the edges (API, commands)."""

from __future__ import annotations


class OrionError(Exception):
    kind = "error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"success": False, "error": self.kind, "message": self.message}


class ValidationError(OrionError):
    """Missing or malformed input."""
    kind = "validation_error"


class ConflictError(OrionError):
    """Uniqueness violation, e.g. a duplicate developer product id."""
    kind = "conflict"


class NotFoundError(OrionError):
    kind = "not_found"


class NotLinkedError(OrionError):
    """No Discord account is linked to the game account."""
    kind = "not_linked"


class DeliveryError(OrionError):
    """The payload could not be sent. Ownership is left untouched."""
    kind = "delivery_failed"


class UpstreamError(OrionError):
    """The game backend rejected or never received a broadcast."""
    kind = "upstream_failed"


def require(value, field: str) -> str:
    """Return `value` as a stripped string or raise ValidationError if empty."""
    s = "" if value is None else str(value).strip()
    if not s:
        raise ValidationError(f"Missing {field}")
    return s
