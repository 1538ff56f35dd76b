from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class WireModel(BaseModel):
    """Base for payloads coming from the library services (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")


class LoanStatus(str, Enum):
    BORROWED = "BORROWED"
    RETURNED = "RETURNED"
    OVERDUE = "OVERDUE"


class TokenResponse(WireModel):
    token: str = Field(min_length=1)
    type: str = "Bearer"


class UserProfile(WireModel):
    """Identity returned by ``GET /users/profile``."""

    id: int
    email: str
    name: str = ""
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber")
    city: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    registration_date: Optional[str] = Field(default=None, alias="registrationDate")
    account_non_locked: bool = Field(default=True, alias="accountNonLocked")

    @property
    def display_name(self) -> str:
        return self.name or self.email


class LoanRecord(WireModel):
    """A single borrow transaction as reported by the loan service."""

    id: int
    item_id: int = Field(alias="bookId")
    user_id: Optional[int] = Field(default=None, alias="userId")
    borrowed_at: datetime = Field(alias="borrowDate")
    due_at: datetime = Field(alias="dueDate")
    returned_at: Optional[datetime] = Field(default=None, alias="returnDate")
    status: LoanStatus

    # Display fields the loan service joins in from the catalog and identity services
    item_title: Optional[str] = Field(default=None, alias="bookTitle")
    item_author: Optional[str] = Field(default=None, alias="bookAuthor")
    user_name: Optional[str] = Field(default=None, alias="userName")
    user_email: Optional[str] = Field(default=None, alias="userEmail")

    @model_validator(mode="after")
    def _check_return_state(self) -> "LoanRecord":
        if self.returned_at is not None and self.status is not LoanStatus.RETURNED:
            raise ValueError("a loan with a return date must have status RETURNED")
        if self.status is LoanStatus.OVERDUE and self.returned_at is not None:
            raise ValueError("an overdue loan cannot have a return date")
        return self

    @property
    def is_active(self) -> bool:
        return self.status in (LoanStatus.BORROWED, LoanStatus.OVERDUE)

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        if self.status is LoanStatus.OVERDUE:
            return True
        if self.status is not LoanStatus.BORROWED:
            return False
        now = now or datetime.now(self.due_at.tzinfo)
        return now > self.due_at

    @property
    def title(self) -> str:
        return self.item_title or f"Book #{self.item_id}"


class CatalogItem(WireModel):
    """Read-only catalog entry with availability counts owned by the catalog service."""

    id: int
    title: str
    author: str = ""
    genre: Optional[str] = None
    published_date: Optional[str] = Field(default=None, alias="publishedDate")
    total_copies: int = Field(default=0, alias="numberOfCopies")
    available_copies: int = Field(default=0, alias="availableCopies")

    @property
    def is_available(self) -> bool:
        return self.available_copies > 0
