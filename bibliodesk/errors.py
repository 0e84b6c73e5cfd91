"""Error taxonomy shared by the services and the HTTP layer.

Every error carries the HTTP status it maps to; the API renders all of them
with the same ``{"error": ...}`` envelope.
"""

from typing import Dict, List, Optional


class LibraryError(Exception):
    http_status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message}


class AuthenticationError(LibraryError):
    http_status = 401


class AuthorizationError(LibraryError):
    http_status = 403


class NotFoundError(LibraryError, LookupError):
    http_status = 404


class ValidationError(LibraryError, ValueError):
    http_status = 422

    def __init__(self, message: str, fields: Optional[Dict[str, List[str]]] = None) -> None:
        super().__init__(message)
        self.fields = fields or {}

    def to_dict(self) -> dict:
        payload = super().to_dict()
        if self.fields:
            payload["fields"] = self.fields
        return payload


class ConflictError(LibraryError):
    http_status = 409


class UpstreamError(LibraryError):
    """A third-party provider call failed.

    ``message`` is safe to show to end users; ``detail`` keeps the provider's
    own description for the operator log.
    """
    http_status = 502

    def __init__(self, message: str, detail: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.detail = detail
        self.status_code = status_code
