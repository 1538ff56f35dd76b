"""
Administrator operations on user accounts and catalog entries.

Every call goes through the authorized channel, so a 401/403 (expired token
or a non-admin session) reaches the session interceptor like any other
authorized request. Roles are not checked client-side.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx

from elibrary.errors import MalformedResponseError, extract_message
from elibrary.events import RefreshBus, RefreshSignal
from elibrary.models import CatalogItem, UserProfile, WireModel
from elibrary.services.http_client import ApiClient
from elibrary.services.session_manager import SessionManager
from elibrary.validators import BOOK_FILE_TYPES, BookValidator, CredentialValidator

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=WireModel)


def _message(response: httpx.Response, default: str) -> str:
    return extract_message(response) if response.content.strip() else default


def _parse(model: Type[M], response: httpx.Response, what: str) -> M:
    try:
        return model.model_validate(response.json())
    except ValueError as exc:
        raise MalformedResponseError(f"Malformed {what}: {exc}", response.status_code) from exc


def _parse_page(model: Type[M], response: httpx.Response, what: str) -> List[M]:
    """Read a list that may arrive bare or wrapped in a page object (``content``)."""
    try:
        payload = response.json()
        if isinstance(payload, dict):
            payload = payload.get("content")
        if not isinstance(payload, list):
            raise ValueError(f"expected a list or a page, got {type(payload).__name__}")
        return [model.model_validate(item) for item in payload]
    except ValueError as exc:
        raise MalformedResponseError(f"Malformed {what}: {exc}", response.status_code) from exc


class AdminService:
    """User management and catalog maintenance for administrators."""

    def __init__(self, sessions: SessionManager, api: ApiClient, refresh_bus: Optional[RefreshBus] = None) -> None:
        self._sessions = sessions
        self._api = api
        self.refresh_bus = refresh_bus or RefreshBus()

    # ------------------------- Users ------------------------- #
    async def list_users(self) -> List[UserProfile]:
        response = await self._api.get("/users/admin/all")
        return _parse_page(UserProfile, response, "user list")

    async def get_user(self, user_id: int) -> UserProfile:
        response = await self._api.get(f"/users/profile-by-id/{user_id}")
        return _parse(UserProfile, response, "user profile")

    async def restrict_user(self, user_id: int) -> str:
        """Lock an account; the user can no longer sign in."""
        response = await self._api.put(f"/users/admin/{user_id}/restrict", json={})
        logger.info(f"User {user_id} restricted")
        return _message(response, f"User with ID {user_id} has been restricted.")

    async def activate_user(self, user_id: int) -> str:
        response = await self._api.put(f"/users/admin/{user_id}/activate", json={})
        logger.info(f"User {user_id} activated")
        return _message(response, f"User with ID {user_id} has been activated.")

    async def update_user(self, user_id: int, name: str, phone_number: Optional[str] = None,
                          city: Optional[str] = None) -> UserProfile:
        CredentialValidator.check_admin_user_update(name, phone_number)
        response = await self._api.put(
            f"/users/admin/{user_id}",
            json={"name": name.strip(), "phoneNumber": phone_number or "", "city": city or ""},
        )
        user = _parse(UserProfile, response, "user profile")
        logger.info(f"User {user_id} ({user.email}) updated by admin")
        current = self._sessions.current_user
        if current is not None and current.id == user_id:
            await self._sessions.refresh_identity()
        return user

    async def reset_password(self, user_id: int, new_password: str, confirm_password: str) -> str:
        CredentialValidator.check_admin_password_reset(new_password, confirm_password)
        response = await self._api.post(
            f"/users/admin/{user_id}/change-password",
            json={"newPassword": new_password},
        )
        logger.info(f"Password reset for user {user_id}")
        return _message(response, "Password changed successfully.")

    async def delete_user(self, user_id: int) -> str:
        response = await self._api.delete(f"/users/admin/{user_id}")
        logger.info(f"User {user_id} deleted")
        return _message(response, f"User with ID {user_id} deleted successfully!")

    # ------------------------- Catalog ------------------------- #
    async def list_books(self) -> List[CatalogItem]:
        response = await self._api.get("/books/admin/all")
        return _parse_page(CatalogItem, response, "book list")

    async def get_book(self, book_id: int) -> CatalogItem:
        response = await self._api.get(f"/books/{book_id}")
        return _parse(CatalogItem, response, "book")

    @staticmethod
    def _book_form(title: str, author: str, published_date: str, copies: int, genre: Optional[str],
                   file_path: Optional[Path]) -> Dict[str, Any]:
        # the catalog service takes a JSON part named "bookRequest" plus an optional file part
        book_request = {
            "title": title.strip(),
            "author": author.strip(),
            "genre": (genre or "").strip(),
            "publishedDate": published_date.strip(),
            "numberOfCopies": copies,
        }
        files: Dict[str, Any] = {"bookRequest": (None, json.dumps(book_request), "application/json")}
        if file_path is not None:
            content_type = BOOK_FILE_TYPES[file_path.suffix.lower()]
            files["file"] = (file_path.name, file_path.read_bytes(), content_type)
        return files

    async def add_book(self, title: str, author: str, published_date: str, copies: int,
                       file_path: Path, genre: Optional[str] = None) -> CatalogItem:
        """Create a catalog entry. A PDF or EPUB file is mandatory."""
        file_path = Path(file_path)
        BookValidator.check_book(title, author, published_date, copies, file_path.name, require_file=True)
        response = await self._api.post(
            "/books",
            files=self._book_form(title, author, published_date, copies, genre, file_path),
        )
        book = _parse(CatalogItem, response, "book")
        logger.info(f"Book {book.id} ({book.title}) added")
        self.refresh_bus.emit(RefreshSignal.AVAILABILITY)
        return book

    async def update_book(self, book_id: int, title: str, author: str, published_date: str, copies: int,
                          genre: Optional[str] = None, file_path: Optional[Path] = None) -> CatalogItem:
        """Replace a catalog entry's details; the stored file is kept unless a new one is given."""
        file_path = Path(file_path) if file_path is not None else None
        BookValidator.check_book(title, author, published_date, copies,
                                 file_path.name if file_path is not None else None)
        response = await self._api.put(
            f"/books/{book_id}",
            files=self._book_form(title, author, published_date, copies, genre, file_path),
        )
        book = _parse(CatalogItem, response, "book")
        logger.info(f"Book {book_id} updated")
        self.refresh_bus.emit(RefreshSignal.AVAILABILITY)
        return book

    async def delete_book(self, book_id: int) -> str:
        response = await self._api.delete(f"/books/{book_id}")
        logger.info(f"Book {book_id} deleted")
        self.refresh_bus.emit(RefreshSignal.AVAILABILITY | RefreshSignal.ALL_LOANS)
        return _message(response, "Book deleted successfully!")
