from datetime import date
from pathlib import Path
from typing import Dict, Optional

from elibrary.errors import ValidationError

MIN_PASSWORD_LENGTH = 6
ADMIN_MIN_PASSWORD_LENGTH = 8

# Upload types the catalog service accepts for book files
BOOK_FILE_TYPES = {".pdf": "application/pdf", ".epub": "application/epub+zip"}


class CredentialValidator:
    """Pre-submission guards for credential forms.

    These are structural checks that keep obviously broken input off the
    network. The server still decides whether credentials are valid.
    """

    @staticmethod
    def _is_blank(text: Optional[str]) -> bool:
        return text is None or not text.strip()

    @staticmethod
    def validate_email(email: Optional[str]) -> Optional[str]:
        if CredentialValidator._is_blank(email):
            return "Email is required."
        if "@" not in email:
            return "Email must contain an @ symbol."
        return None

    @staticmethod
    def validate_password(password: Optional[str], min_length: int = 0) -> Optional[str]:
        if not password:
            return "Password is required."
        if len(password) < min_length:
            return f"Password must be at least {min_length} characters long."
        return None

    @staticmethod
    def _raise_if_any(errors: Dict[str, Optional[str]], summary: str) -> None:
        found = {k: v for k, v in errors.items() if v}
        if found:
            raise ValidationError(summary, found)

    @classmethod
    def check_login(cls, email: Optional[str], password: Optional[str]) -> None:
        cls._raise_if_any(
            {
                "email": cls.validate_email(email),
                "password": cls.validate_password(password),
            },
            "Please enter valid login credentials.",
        )

    @classmethod
    def check_registration(cls, email: Optional[str], name: Optional[str],
                           password: Optional[str], confirm_password: Optional[str]) -> None:
        errors = {
            "email": cls.validate_email(email),
            "name": "Name is required." if cls._is_blank(name) else None,
            "password": cls.validate_password(password, MIN_PASSWORD_LENGTH),
        }
        if password and password != confirm_password:
            errors["confirm_password"] = "Passwords do not match."
        cls._raise_if_any(errors, "Please correct the form errors.")

    @classmethod
    def check_password_change(cls, current: Optional[str], new: Optional[str],
                              confirm: Optional[str]) -> None:
        errors = {
            "current_password": "Current password is required." if not current else None,
            "new_password": cls.validate_password(new, MIN_PASSWORD_LENGTH),
        }
        if new and new != confirm:
            errors["confirm_password"] = "New passwords do not match."
        elif new and current and new == current:
            errors["new_password"] = "New password must be different from the current password."
        cls._raise_if_any(errors, "Please correct the form errors.")

    @classmethod
    def check_profile(cls, name: Optional[str]) -> None:
        cls._raise_if_any(
            {"name": "Name is required." if cls._is_blank(name) else None},
            "Please correct the form errors.",
        )

    # ------------------------- Administration ------------------------- #
    @classmethod
    def check_admin_user_update(cls, name: Optional[str], phone_number: Optional[str]) -> None:
        errors = {"name": "Name is required." if cls._is_blank(name) else None}
        if phone_number and not (len(phone_number) == 10 and phone_number.isdigit()):
            errors["phone_number"] = "Phone number must be 10 digits."
        cls._raise_if_any(errors, "Please correct details form errors.")

    @classmethod
    def check_admin_password_reset(cls, new_password: Optional[str], confirm: Optional[str]) -> None:
        errors = {"new_password": cls.validate_password(new_password, ADMIN_MIN_PASSWORD_LENGTH)}
        if not confirm:
            errors["confirm_password"] = "Confirm new password is required."
        elif new_password != confirm:
            errors["confirm_password"] = "Passwords do not match."
        cls._raise_if_any(errors, "Please correct password form errors.")


class BookValidator:
    """Checks for the admin add/update book form."""

    @staticmethod
    def check_book(title: Optional[str], author: Optional[str], published_date: Optional[str],
                   copies: int, file_name: Optional[str] = None, require_file: bool = False) -> None:
        errors: Dict[str, Optional[str]] = {
            "title": "Title is required." if CredentialValidator._is_blank(title) else None,
            "author": "Author is required." if CredentialValidator._is_blank(author) else None,
            "published_date": None,
            "copies": "Copies must be at least 1." if copies < 1 else None,
        }
        if CredentialValidator._is_blank(published_date):
            errors["published_date"] = "Published Date is required."
        else:
            try:
                date.fromisoformat(published_date.strip())
            except ValueError:
                errors["published_date"] = "Published Date must be YYYY-MM-DD."
        if file_name is None:
            if require_file:
                errors["file"] = "Book file (PDF/EPUB) is required."
        elif Path(file_name).suffix.lower() not in BOOK_FILE_TYPES:
            errors["file"] = "Only PDF or EPUB files are allowed."
        CredentialValidator._raise_if_any(errors, "Please correct the form errors.")
