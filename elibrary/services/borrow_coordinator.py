import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Hashable, List, Optional, Set, Tuple, Union

import httpx

from elibrary.errors import (
    AuthorizationError,
    LibraryClientError,
    MalformedResponseError,
    NotFoundError,
    TransportError,
)
from elibrary.events import RefreshBus, RefreshSignal
from elibrary.models import CatalogItem, LoanRecord
from elibrary.services.http_client import ApiClient
from elibrary.services.session_manager import SessionManager

logger = logging.getLogger(__name__)

TRANSPORT_MESSAGE = "Unable to reach the library service. Please try again."

# Substrings of the loan service's rejection messages, matched case-insensitively
ALREADY_BORROWED_MARKERS = ("already borrowed this book", "already borrowed a copy")
NO_COPIES_MARKERS = ("no copies available", "not currently available")


class BorrowReason(str, Enum):
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    IN_PROGRESS = "IN_PROGRESS"
    CANCELLED = "CANCELLED"
    ALREADY_BORROWED = "ALREADY_BORROWED"
    NO_COPIES_AVAILABLE = "NO_COPIES_AVAILABLE"
    ITEM_NOT_FOUND = "ITEM_NOT_FOUND"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    UNKNOWN = "UNKNOWN"


REASON_MESSAGES = {
    BorrowReason.NOT_AUTHENTICATED: "Please log in to continue.",
    BorrowReason.IN_PROGRESS: "This request is already being processed.",
    BorrowReason.CANCELLED: "Return cancelled.",
    BorrowReason.ALREADY_BORROWED: "You already have this book borrowed. Please return it before borrowing again.",
    BorrowReason.NO_COPIES_AVAILABLE: "Sorry, no copies of this book are currently available.",
    BorrowReason.ITEM_NOT_FOUND: "Book not found or is no longer available.",
    BorrowReason.NOT_AUTHORIZED: "You need to be logged in and authorized to do this.",
    BorrowReason.TRANSPORT_ERROR: TRANSPORT_MESSAGE,
    BorrowReason.UNKNOWN: "The request failed. Please try again.",
}


@dataclass(frozen=True)
class LoanOutcome:
    """Result of a borrow or return intent."""

    ok: bool
    reason: Optional[BorrowReason] = None
    message: str = ""
    loan: Optional[LoanRecord] = None
    refresh: RefreshSignal = RefreshSignal.NONE
    server_message: Optional[str] = None

    @classmethod
    def failure(cls, reason: BorrowReason, message: Optional[str] = None,
                server_message: Optional[str] = None, refresh: RefreshSignal = RefreshSignal.NONE) -> "LoanOutcome":
        return cls(ok=False, reason=reason, message=message or REASON_MESSAGES[reason],
                   server_message=server_message, refresh=refresh)


@dataclass(frozen=True)
class LoanListOutcome:
    """Result of a loan listing. ``loans`` is only meaningful when ``ok``."""

    ok: bool
    loans: List[LoanRecord] = field(default_factory=list)
    reason: Optional[BorrowReason] = None
    message: str = ""


def classify_borrow_failure(error: LibraryClientError) -> Tuple[BorrowReason, str]:
    """Map a failed borrow request to a reason and the text shown to the user.

    Unrecognised 4xx messages are passed through verbatim so new server-side
    rules stay visible.
    """
    if isinstance(error, TransportError):
        return BorrowReason.TRANSPORT_ERROR, TRANSPORT_MESSAGE
    if isinstance(error, AuthorizationError):
        return BorrowReason.NOT_AUTHORIZED, REASON_MESSAGES[BorrowReason.NOT_AUTHORIZED]
    if isinstance(error, NotFoundError):
        return BorrowReason.ITEM_NOT_FOUND, REASON_MESSAGES[BorrowReason.ITEM_NOT_FOUND]

    text = (error.message or "").lower()
    if any(marker in text for marker in ALREADY_BORROWED_MARKERS):
        return BorrowReason.ALREADY_BORROWED, REASON_MESSAGES[BorrowReason.ALREADY_BORROWED]
    if any(marker in text for marker in NO_COPIES_MARKERS):
        return BorrowReason.NO_COPIES_AVAILABLE, REASON_MESSAGES[BorrowReason.NO_COPIES_AVAILABLE]
    return BorrowReason.UNKNOWN, error.message or REASON_MESSAGES[BorrowReason.UNKNOWN]


Confirmation = Callable[[], Union[bool, Awaitable[bool]]]


class BorrowCoordinator:
    """Runs borrow and return intents against the loan service.

    Outcomes are returned as values; expected failures never raise. After a
    successful mutation the relevant views are told to re-fetch through the
    refresh bus, the server staying the only source of loan and
    availability state.
    """

    def __init__(self, sessions: SessionManager, api: ApiClient, refresh_bus: Optional[RefreshBus] = None) -> None:
        self._sessions = sessions
        self._api = api
        self.refresh_bus = refresh_bus or RefreshBus()
        self._in_flight: Set[Hashable] = set()

    def is_busy(self, kind: str, key: Hashable) -> bool:
        """True while a borrow/return for ``key`` is in flight; used to disable the trigger."""
        return (kind, key) in self._in_flight

    def _claim(self, kind: str, key: Hashable) -> bool:
        # check and add run without an await in between
        if (kind, key) in self._in_flight:
            return False
        self._in_flight.add((kind, key))
        return True

    def _release(self, kind: str, key: Hashable) -> None:
        self._in_flight.discard((kind, key))

    @staticmethod
    def _parse_loan(response: httpx.Response) -> LoanRecord:
        try:
            return LoanRecord.model_validate(response.json())
        except ValueError as exc:
            raise MalformedResponseError(f"Malformed loan record: {exc}", response.status_code) from exc

    @staticmethod
    def _parse_loans(response: httpx.Response) -> List[LoanRecord]:
        try:
            payload = response.json()
            if not isinstance(payload, list):
                raise ValueError(f"expected a list, got {type(payload).__name__}")
            return [LoanRecord.model_validate(item) for item in payload]
        except ValueError as exc:
            raise MalformedResponseError(f"Malformed loan list: {exc}", response.status_code) from exc

    def _finish(self, loan: LoanRecord, signals: RefreshSignal, message: str) -> LoanOutcome:
        self.refresh_bus.emit(signals)
        return LoanOutcome(ok=True, loan=loan, refresh=signals, message=message)

    async def borrow(self, item_id: int, item: Optional[CatalogItem] = None) -> LoanOutcome:
        """Borrow one copy of ``item_id``.

        When the caller passes the ``CatalogItem`` it is showing, an item with
        no available copies is refused locally. The server still has the final
        word on availability.
        """
        session = self._sessions.session
        if not session.is_authenticated:
            return LoanOutcome.failure(BorrowReason.NOT_AUTHENTICATED, "Please log in to borrow a book.")
        if item is not None and item.id == item_id and not item.is_available:
            return LoanOutcome.failure(BorrowReason.NO_COPIES_AVAILABLE)
        if not self._claim("borrow", item_id):
            logger.info(f"Borrow of item {item_id} already in flight; ignoring duplicate")
            return LoanOutcome.failure(BorrowReason.IN_PROGRESS)

        signals = RefreshSignal.AVAILABILITY | RefreshSignal.MY_LOANS
        try:
            response = await self._api.post("/borrows", json={"bookId": item_id, "userId": session.user_id})
            loan = self._parse_loan(response)
        except MalformedResponseError as exc:
            # the borrow may have gone through; re-fetch rather than guess
            logger.error(f"Borrow of item {item_id} returned an unreadable record: {exc}")
            self.refresh_bus.emit(signals)
            return LoanOutcome.failure(BorrowReason.UNKNOWN, server_message=exc.message, refresh=signals)
        except LibraryClientError as exc:
            reason, message = classify_borrow_failure(exc)
            if reason is BorrowReason.TRANSPORT_ERROR:
                logger.error(f"Borrow of item {item_id} failed in transport: {exc}")
            else:
                logger.warning(f"Borrow of item {item_id} rejected: {reason.value} ({exc.message})")
            return LoanOutcome.failure(reason, message, server_message=exc.message)
        finally:
            self._release("borrow", item_id)

        logger.info(f"Borrowed item {item_id} as loan {loan.id}")
        return self._finish(loan, signals, f'Book "{loan.item_title or item_id}" borrowed successfully!')

    async def return_item(self, loan_id: int, confirm: Confirmation) -> LoanOutcome:
        """Return a loan after an explicit, cancelable confirmation.

        ``confirm`` is mandatory and runs before any request is sent; it may
        be a plain or an async callable.
        """
        if not self._sessions.is_authenticated:
            return LoanOutcome.failure(BorrowReason.NOT_AUTHENTICATED)
        if not self._claim("return", loan_id):
            return LoanOutcome.failure(BorrowReason.IN_PROGRESS)

        signals = RefreshSignal.MY_LOANS | RefreshSignal.ALL_LOANS | RefreshSignal.AVAILABILITY
        try:
            confirmed = confirm()
            if inspect.isawaitable(confirmed):
                confirmed = await confirmed
            if not confirmed:
                logger.info(f"Return of loan {loan_id} cancelled by user")
                return LoanOutcome.failure(BorrowReason.CANCELLED)

            response = await self._api.put(f"/borrows/{loan_id}/return")
            loan = self._parse_loan(response)
        except MalformedResponseError as exc:
            logger.error(f"Return of loan {loan_id} returned an unreadable record: {exc}")
            self.refresh_bus.emit(signals)
            return LoanOutcome.failure(BorrowReason.UNKNOWN, server_message=exc.message, refresh=signals)
        except TransportError as exc:
            logger.error(f"Return of loan {loan_id} failed in transport: {exc}")
            return LoanOutcome.failure(BorrowReason.TRANSPORT_ERROR, server_message=exc.message)
        except AuthorizationError as exc:
            return LoanOutcome.failure(BorrowReason.NOT_AUTHORIZED, server_message=exc.message)
        except LibraryClientError as exc:
            logger.warning(f"Return of loan {loan_id} rejected: {exc.message}")
            return LoanOutcome.failure(BorrowReason.UNKNOWN, exc.message, server_message=exc.message)
        finally:
            self._release("return", loan_id)

        logger.info(f"Returned loan {loan_id}")
        return self._finish(loan, signals, "Book returned successfully!")

    async def _list(self, path: str, what: str) -> LoanListOutcome:
        if not self._sessions.is_authenticated:
            return LoanListOutcome(
                ok=False,
                reason=BorrowReason.NOT_AUTHENTICATED,
                message=f"Please log in to view {what}.",
            )
        try:
            response = await self._api.get(path)
            loans = self._parse_loans(response)
        except TransportError as exc:
            logger.error(f"Loading {what} failed in transport: {exc}")
            return LoanListOutcome(ok=False, reason=BorrowReason.TRANSPORT_ERROR, message=TRANSPORT_MESSAGE)
        except AuthorizationError:
            return LoanListOutcome(ok=False, reason=BorrowReason.NOT_AUTHORIZED,
                                   message=REASON_MESSAGES[BorrowReason.NOT_AUTHORIZED])
        except LibraryClientError as exc:
            logger.warning(f"Loading {what} failed: {exc.message}")
            return LoanListOutcome(ok=False, reason=BorrowReason.UNKNOWN,
                                   message=f"Failed to load {what}: {exc.message}")
        return LoanListOutcome(ok=True, loans=loans)

    async def list_my_loans(self) -> LoanListOutcome:
        """Loan history of the signed-in user; the server derives identity from the token."""
        return await self._list("/borrows/my-borrows", "your borrowed books")

    async def list_all_loans(self) -> LoanListOutcome:
        """Every loan record (admin). The role check is left to the server."""
        return await self._list("/borrows/admin/all", "all borrow records")
