import json
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
import pytest

from elibrary.events import Notifier
from elibrary.services.borrow_coordinator import BorrowCoordinator
from elibrary.services.http_client import ApiClient
from elibrary.services.session_manager import SessionManager
from elibrary.token_store import TokenStore

BASE_URL = "http://library.test/api"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat().replace("+00:00", "Z") if value else None


class FakeLibraryServer:
    """In-memory stand-in for the library gateway, used as an httpx.MockTransport handler.

    Implements the auth, profile, catalog, borrowing and admin endpoints
    with the same rejection messages as the real services. Book uploads are
    kept in ``uploads`` by book id.
    """

    def __init__(self) -> None:
        self.users: Dict[str, Dict[str, Any]] = {}
        self.tokens: Dict[str, str] = {}
        self.books: Dict[int, Dict[str, Any]] = {}
        self.loans: List[Dict[str, Any]] = []
        self.uploads: Dict[int, bytes] = {}
        self.requests: List[httpx.Request] = []
        self.overrides: Dict[tuple, Any] = {}
        self.single_loan_rule = False
        self._next_user = 1
        self._next_loan = 1

    # ------------------------- Seeding ------------------------- #
    def add_user(self, email: str, password: str, name: str = "", roles=("ROLE_USER",)) -> Dict[str, Any]:
        user = {
            "id": self._next_user,
            "email": email,
            "password": password,
            "name": name or email.split("@")[0].title(),
            "phoneNumber": "5550100123",
            "city": "Springfield",
            "roles": list(roles),
            "registrationDate": "2024-01-15T09:30:00",
            "accountNonLocked": True,
        }
        self._next_user += 1
        self.users[email] = user
        return user

    def issue_token(self, email: str) -> str:
        token = secrets.token_hex(8)
        self.tokens[token] = email
        return token

    def revoke_all(self) -> None:
        self.tokens.clear()

    def add_book(self, book_id: int, title: str, author: str, copies: int = 1,
                 available: Optional[int] = None, genre: str = "Fiction") -> None:
        self.books[book_id] = {
            "id": book_id,
            "title": title,
            "author": author,
            "genre": genre,
            "publishedDate": "2001-05-01",
            "numberOfCopies": copies,
            "availableCopies": copies if available is None else available,
        }

    def respond(self, method: str, path: str, result: Any) -> None:
        """Force an answer for ``method path``: a Response, an exception class, or a callable."""
        self.overrides[(method, path)] = result

    def requests_to(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and self._path(r) == path]

    # ------------------------- Transport ------------------------- #
    @staticmethod
    def _path(request: httpx.Request) -> str:
        path = request.url.path
        return path[len("/api"):] if path.startswith("/api") else path

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = self._path(request)
        override = self.overrides.get((request.method, path))
        if override is not None:
            if isinstance(override, httpx.Response):
                return override
            if isinstance(override, type) and issubclass(override, Exception):
                raise override("simulated failure", request=request)
            return override(request)

        body = self._json_body(request)
        method = request.method

        if method == "POST" and path == "/auth/login":
            return self._login(body)
        if method == "POST" and path == "/auth/register":
            return self._register(body)
        if method == "GET" and path == "/books/browse":
            return self._browse(request)

        user = self._authenticate(request)
        if user is None:
            return httpx.Response(401, json={"message": "Full authentication is required"})

        if path.startswith("/users/admin/") or path.startswith("/users/profile-by-id/") or (
                path.startswith("/books") and method in ("POST", "PUT", "DELETE")) or path == "/books/admin/all":
            if "ROLE_ADMIN" not in user["roles"]:
                return httpx.Response(403, json={"message": "Access Denied"})
            return self._admin(method, path, request, body)

        if method == "GET" and path == "/users/profile":
            return httpx.Response(200, json=self._public_user(user))
        if method == "PUT" and path == "/users/profile":
            for key in ("name", "phoneNumber", "city"):
                if key in body:
                    user[key] = body[key]
            return httpx.Response(200, json=self._public_user(user))
        if method == "POST" and path == "/auth/change-password":
            if body.get("currentPassword") != user["password"]:
                return httpx.Response(400, json={"message": "Current password is incorrect."})
            user["password"] = body["newPassword"]
            return httpx.Response(200, text="Password changed successfully.")
        if method == "POST" and path == "/borrows":
            return self._borrow(user, body)
        match = re.fullmatch(r"/borrows/(\d+)/return", path)
        if method == "PUT" and match:
            return self._return(user, int(match.group(1)))
        book_match = re.fullmatch(r"/books/(\d+)", path)
        if method == "GET" and book_match:
            book = self.books.get(int(book_match.group(1)))
            if book is None:
                return httpx.Response(404, text=f"Book not found with ID: {book_match.group(1)}")
            return httpx.Response(200, json=book)
        if method == "GET" and path == "/borrows/my-borrows":
            return httpx.Response(200, json=[self._loan_json(l) for l in self.loans if l["userId"] == user["id"]])
        if method == "GET" and path == "/borrows/admin/all":
            if "ROLE_ADMIN" not in user["roles"]:
                return httpx.Response(403, json={"message": "Access Denied"})
            return httpx.Response(200, json=[self._loan_json(l) for l in self.loans])
        return httpx.Response(404, json={"message": f"No route for {method} {path}"})

    # ------------------------- Handlers ------------------------- #
    @staticmethod
    def _json_body(request: httpx.Request) -> Dict[str, Any]:
        if not request.content or "json" not in request.headers.get("Content-Type", ""):
            return {}
        return json.loads(request.content)

    @staticmethod
    def _multipart(request: httpx.Request) -> Dict[str, bytes]:
        """Split a multipart body into {part name: raw bytes}."""
        boundary = request.headers["Content-Type"].split("boundary=")[1].encode()
        parts = {}
        for chunk in request.content.split(b"--" + boundary):
            head, sep, data = chunk.partition(b"\r\n\r\n")
            match = re.search(rb'name="([^"]+)"', head)
            if sep and match:
                parts[match.group(1).decode()] = data[:-2] if data.endswith(b"\r\n") else data
        return parts

    def _authenticate(self, request: httpx.Request) -> Optional[Dict[str, Any]]:
        header = request.headers.get("Authorization", "")
        if not header.startswith("Bearer "):
            return None
        email = self.tokens.get(header[len("Bearer "):])
        return self.users.get(email) if email else None

    @staticmethod
    def _public_user(user: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in user.items() if k != "password"}

    def _login(self, body: Dict[str, Any]) -> httpx.Response:
        user = self.users.get(body.get("email"))
        if user is None or user["password"] != body.get("password"):
            return httpx.Response(401, json={"message": "Invalid email or password."})
        if not user["accountNonLocked"]:
            return httpx.Response(401, json={"message": "User account is locked"})
        token = self.issue_token(user["email"])
        return httpx.Response(200, json={
            "token": token, "type": "Bearer", "id": user["id"],
            "email": user["email"], "name": user["name"], "roles": user["roles"],
        })

    def _register(self, body: Dict[str, Any]) -> httpx.Response:
        if body.get("email") in self.users:
            return httpx.Response(400, json={"message": "Error: Email is already in use!"})
        self.add_user(body["email"], body["password"], name=body.get("name", ""))
        return httpx.Response(200, text="User registered successfully!")

    def _browse(self, request: httpx.Request) -> httpx.Response:
        query = (request.url.params.get("query") or "").lower()
        items = [b for b in self.books.values()
                 if not query or query in b["title"].lower() or query in b["author"].lower()]
        return httpx.Response(200, json=items)

    def _user_by_id(self, user_id: int) -> Optional[Dict[str, Any]]:
        return next((u for u in self.users.values() if u["id"] == user_id), None)

    def _admin(self, method: str, path: str, request: httpx.Request, body: Dict[str, Any]) -> httpx.Response:
        if method == "GET" and path == "/users/admin/all":
            users = [self._public_user(u) for u in self.users.values()]
            return httpx.Response(200, json={"content": users, "totalElements": len(users)})
        if method == "GET" and path == "/books/admin/all":
            books = list(self.books.values())
            return httpx.Response(200, json={"content": books, "totalElements": len(books)})

        match = re.fullmatch(r"/users/(?:admin|profile-by-id)/(\d+)(?:/(\w+(?:-\w+)?))?", path)
        if match:
            user_id, action = int(match.group(1)), match.group(2)
            target = self._user_by_id(user_id)
            if target is None:
                return httpx.Response(404, text=f"User not found with ID: {user_id}")
            if method == "GET" and path.startswith("/users/profile-by-id/"):
                return httpx.Response(200, json=self._public_user(target))
            if method == "PUT" and action in ("restrict", "activate"):
                target["accountNonLocked"] = action == "activate"
                verb = "restricted" if action == "restrict" else "activated"
                return httpx.Response(200, text=f"User with ID {user_id} has been {verb}.")
            if method == "POST" and action == "change-password":
                target["password"] = body["newPassword"]
                return httpx.Response(200, text="Password changed successfully.")
            if method == "PUT" and action is None:
                for key in ("name", "phoneNumber", "city"):
                    target[key] = body.get(key)
                return httpx.Response(200, json=self._public_user(target))
            if method == "DELETE" and action is None:
                del self.users[target["email"]]
                self.tokens = {t: e for t, e in self.tokens.items() if e != target["email"]}
                return httpx.Response(200, text=f"User with ID {user_id} deleted successfully!")

        book_match = re.fullmatch(r"/books(?:/(\d+))?", path)
        if book_match and method in ("POST", "PUT"):
            parts = self._multipart(request)
            fields = json.loads(parts["bookRequest"])
            if method == "POST":
                if "file" not in parts:
                    return httpx.Response(400, json={"message": "Book file is required."})
                book_id = max(self.books, default=0) + 1
                self.add_book(book_id, fields["title"], fields["author"], copies=fields["numberOfCopies"],
                              genre=fields.get("genre") or None)
                self.books[book_id]["publishedDate"] = fields["publishedDate"]
                self.uploads[book_id] = parts["file"]
                return httpx.Response(201, json=self.books[book_id])
            book_id = int(book_match.group(1))
            book = self.books.get(book_id)
            if book is None:
                return httpx.Response(404, text=f"Book not found with ID: {book_id}")
            on_loan = book["numberOfCopies"] - book["availableCopies"]
            book.update(title=fields["title"], author=fields["author"], genre=fields.get("genre") or None,
                        publishedDate=fields["publishedDate"], numberOfCopies=fields["numberOfCopies"],
                        availableCopies=max(fields["numberOfCopies"] - on_loan, 0))
            if "file" in parts:
                self.uploads[book_id] = parts["file"]
            return httpx.Response(200, json=book)
        if book_match and method == "DELETE" and book_match.group(1):
            book_id = int(book_match.group(1))
            if self.books.pop(book_id, None) is None:
                return httpx.Response(404, text=f"Book not found with ID: {book_id}")
            self.uploads.pop(book_id, None)
            return httpx.Response(200, text="Book deleted successfully!")
        return httpx.Response(404, json={"message": f"No route for {method} {path}"})

    def _loan_json(self, loan: Dict[str, Any]) -> Dict[str, Any]:
        book = self.books.get(loan["bookId"], {})
        user = next((u for u in self.users.values() if u["id"] == loan["userId"]), {})
        return {
            "id": loan["id"],
            "userId": loan["userId"],
            "bookId": loan["bookId"],
            "borrowDate": _iso(loan["borrowDate"]),
            "dueDate": _iso(loan["dueDate"]),
            "returnDate": _iso(loan["returnDate"]),
            "status": loan["status"],
            "bookTitle": book.get("title", "[Deleted Book]"),
            "bookAuthor": book.get("author", "[Deleted Book]"),
            "userName": user.get("name"),
            "userEmail": user.get("email"),
        }

    def _borrow(self, user: Dict[str, Any], body: Dict[str, Any]) -> httpx.Response:
        book_id = body.get("bookId")
        active = [l for l in self.loans if l["userId"] == user["id"] and l["status"] == "BORROWED"]
        if any(l["bookId"] == book_id for l in active):
            return httpx.Response(400, text="You have already borrowed this book and have not returned it yet.")
        if self.single_loan_rule and active:
            return httpx.Response(
                400, text="You must return your currently borrowed book before borrowing another one.")
        book = self.books.get(book_id)
        if book is None:
            return httpx.Response(404, text="Book not found in the library.")
        if book["availableCopies"] <= 0:
            return httpx.Response(400, text="Book is not currently available.")
        book["availableCopies"] -= 1
        now = datetime.now(timezone.utc)
        loan = {
            "id": self._next_loan, "userId": user["id"], "bookId": book_id,
            "borrowDate": now, "dueDate": now + timedelta(days=14),
            "returnDate": None, "status": "BORROWED",
        }
        self._next_loan += 1
        self.loans.append(loan)
        return httpx.Response(201, json=self._loan_json(loan))

    def _return(self, user: Dict[str, Any], loan_id: int) -> httpx.Response:
        loan = next((l for l in self.loans if l["id"] == loan_id), None)
        if loan is None:
            return httpx.Response(404, text=f"Borrow record not found with ID: {loan_id}")
        if loan["userId"] != user["id"]:
            return httpx.Response(400, text="You are not authorized to return this book.")
        if loan["status"] not in ("BORROWED", "OVERDUE"):
            return httpx.Response(400, text="This book has already been returned or is not currently borrowed.")
        if loan["bookId"] in self.books:
            self.books[loan["bookId"]]["availableCopies"] += 1
        loan["returnDate"] = datetime.now(timezone.utc)
        loan["status"] = "RETURNED"
        return httpx.Response(200, json=self._loan_json(loan))


@pytest.fixture
def server():
    srv = FakeLibraryServer()
    srv.add_user("alice@example.com", "wonderland", name="Alice")
    srv.add_user("admin@example.com", "adminpass", name="Admin", roles=("ROLE_USER", "ROLE_ADMIN"))
    srv.add_book(1, "Dune", "Frank Herbert", copies=1)
    srv.add_book(2, "Emma", "Jane Austen", copies=2, available=0)
    srv.add_book(3, "Ulysses", "James Joyce", copies=3)
    return srv


@pytest.fixture
def token_store(tmp_path):
    return TokenStore(tmp_path / "session.json", key="jwtToken")


@pytest.fixture
def api(server):
    return ApiClient(base_url=BASE_URL, transport=httpx.MockTransport(server))


@pytest.fixture
def notifier():
    return Notifier(duration=5.0)


@pytest.fixture
def expired_calls():
    return []


@pytest.fixture
def sessions(api, token_store, notifier, expired_calls):
    return SessionManager(api, token_store, notifier, on_session_expired=lambda: expired_calls.append(True))


@pytest.fixture
def coordinator(sessions, api):
    return BorrowCoordinator(sessions, api)


@pytest.fixture
def persisted_login(server, token_store):
    """Store a valid token for ``email`` as if a previous run had logged in."""

    def _persist(email: str = "alice@example.com") -> str:
        token = server.issue_token(email)
        token_store.save_token(token)
        return token

    return _persist
