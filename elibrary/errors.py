"""Error taxonomy shared by every client component.

Each class mirrors one way a request can end badly:

- ``ValidationError``: caught before submission, never reaches the network.
- ``AuthenticationError``: the server rejected credentials (login, password change).
- ``AuthorizationError``: token expired, forged or lacking privilege.
- ``ConflictError``: business-rule rejection (already borrowed, no copies).
- ``NotFoundError``: the referenced item or loan does not exist.
- ``TransportError``: network failure or timeout, no structured reason.
- ``MalformedResponseError``: the server answered but the payload is unreadable.
"""

from __future__ import annotations

from typing import Dict, Optional

import httpx


class LibraryClientError(Exception):
    """Base class for all client-side failures."""

    def __init__(self, message: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        return self.message


class ValidationError(LibraryClientError):
    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None) -> None:
        super().__init__(message)
        self.errors = errors or {}


class AuthenticationError(LibraryClientError):
    pass


class AuthorizationError(LibraryClientError):
    pass


class ConflictError(LibraryClientError):
    pass


class NotFoundError(LibraryClientError):
    pass


class TransportError(LibraryClientError):
    pass


class MalformedResponseError(LibraryClientError):
    pass


def extract_message(response: httpx.Response) -> str:
    """Read a human-readable message from an error response.

    The services answer either with JSON (``{"message": ...}``) or with a
    plain-text body, so both are accepted.
    """
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        for key in ("message", "error", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    elif isinstance(payload, str) and payload.strip():
        return payload.strip()

    text = response.text.strip()
    if text:
        return text
    return response.reason_phrase or f"HTTP {response.status_code}"


def from_response(response: httpx.Response) -> LibraryClientError:
    """Map a failed response to the matching taxonomy class."""
    status = response.status_code
    message = extract_message(response)
    if status in (400, 409):
        return ConflictError(message, status)
    if status in (401, 403):
        return AuthorizationError(message, status)
    if status == 404:
        return NotFoundError(message, status)
    return LibraryClientError(message, status)
