import logging
from typing import Optional

import httpx

from elibrary.errors import AuthenticationError, ConflictError, extract_message
from elibrary.services.http_client import ApiClient
from elibrary.services.session_manager import SessionManager
from elibrary.validators import CredentialValidator

logger = logging.getLogger(__name__)


def _response_text(response: httpx.Response, default: str) -> str:
    return extract_message(response) if response.content.strip() else default


class AccountService:
    """Registration and self-service profile management."""

    def __init__(self, sessions: SessionManager, api: ApiClient) -> None:
        self._sessions = sessions
        self._api = api

    async def register(self, email: str, name: str, password: str, confirm_password: str,
                       phone_number: Optional[str] = None, city: Optional[str] = None) -> str:
        """Create an account. Does not sign in; the caller logs in afterwards."""
        CredentialValidator.check_registration(email, name, password, confirm_password)
        response = await self._api.post(
            "/auth/register",
            json={
                "email": email.strip(),
                "name": name.strip(),
                "phoneNumber": phone_number or "",
                "city": city or "",
                "password": password,
                "confirmPassword": confirm_password,
            },
            authorized=False,
        )
        logger.info(f"Registered account for {email}")
        return _response_text(response, "Registration successful! Please log in.")

    async def update_profile(self, name: str, phone_number: Optional[str] = None,
                             city: Optional[str] = None) -> bool:
        """Update the signed-in user's profile, then reload the session identity."""
        CredentialValidator.check_profile(name)
        await self._api.put(
            "/users/profile",
            json={"name": name.strip(), "phoneNumber": phone_number or "", "city": city or ""},
        )
        logger.info("Profile updated; refreshing identity")
        return await self._sessions.refresh_identity()

    async def change_password(self, current_password: str, new_password: str, confirm_password: str) -> str:
        """Change the signed-in user's password.

        A rejected current password raises ``AuthenticationError``.
        """
        CredentialValidator.check_password_change(current_password, new_password, confirm_password)
        try:
            response = await self._api.post(
                "/auth/change-password",
                json={
                    "currentPassword": current_password,
                    "newPassword": new_password,
                    "confirmPassword": confirm_password,
                },
            )
        except ConflictError as exc:
            raise AuthenticationError(exc.message, exc.status_code) from exc
        logger.info("Password changed")
        return _response_text(response, "Password changed successfully.")
