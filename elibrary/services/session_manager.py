import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from elibrary.errors import (
    LibraryClientError,
    MalformedResponseError,
    TransportError,
)
from elibrary.events import Notifier
from elibrary.models import TokenResponse, UserProfile
from elibrary.services.http_client import ApiClient
from elibrary.session import Session, SessionStatus
from elibrary.token_store import TokenStore
from elibrary.validators import CredentialValidator

logger = logging.getLogger(__name__)

SESSION_EXPIRED_NOTICE = "Your session has expired or is invalid. Please sign in again."
SIGNED_OUT_DURING_LOGIN = "Signed out before login completed."


@dataclass(frozen=True)
class LoginResult:
    ok: bool
    reason: Optional[str] = None
    status_code: Optional[int] = None


class SessionManager:
    """Single owner of the client session.

    Handles credential exchange, token persistence, identity and role
    derivation, re-validation on startup and the forced logout that follows
    any authorization failure on an authorized call.

    Every reset bumps ``epoch``. Async work remembers the epoch it started
    in and drops its result if the epoch moved on, which is how a
    ``logout()`` issued while ``login()`` is still in flight wins.
    """

    def __init__(self, api: ApiClient, store: TokenStore, notifier: Optional[Notifier] = None,
                 on_session_expired: Optional[Callable[[], None]] = None) -> None:
        self._api = api
        self._store = store
        self._notifier = notifier or Notifier()
        self._on_session_expired = on_session_expired
        self._session = Session()
        self._epoch = 0
        self._initialized = asyncio.Event()
        api.bind_session(self._credentials, self.handle_authorization_failure)

    # ------------------------- Read-only state ------------------------- #
    @property
    def session(self) -> Session:
        return self._session

    @property
    def status(self) -> SessionStatus:
        return self._session.status

    @property
    def is_authenticated(self) -> bool:
        return self._session.is_authenticated

    @property
    def is_admin(self) -> bool:
        return self._session.is_admin

    @property
    def current_user(self) -> Optional[UserProfile]:
        return self._session.identity

    @property
    def token(self) -> Optional[str]:
        return self._session.token

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def initialized(self) -> bool:
        return self._initialized.is_set()

    @property
    def notifier(self) -> Notifier:
        return self._notifier

    def _credentials(self) -> Tuple[Optional[str], int]:
        return self._session.token, self._epoch

    # ------------------------- Lifecycle ------------------------- #
    async def initialize(self) -> Session:
        """Restore a persisted session, if any.

        Dependants must await this, or ``wait_initialized()``, before trusting
        session state. Without a persisted token no request is made.
        """
        token = self._store.load_token()
        if not token:
            logger.info("No persisted token; starting anonymous")
            self._initialized.set()
            return self._session

        epoch = self._epoch
        self._session = Session(token=token, status=SessionStatus.VERIFYING)
        logger.info("Persisted token found; verifying")
        try:
            await self._verify(token, epoch)
        finally:
            self._initialized.set()
        return self._session

    async def wait_initialized(self) -> Session:
        """Block until startup verification has finished, then return the session."""
        await self._initialized.wait()
        return self._session

    async def login(self, email: str, password: str) -> LoginResult:
        """Exchange credentials for a token and load the matching identity.

        Raises ``ValidationError`` for malformed input (nothing is sent) and
        ``TransportError`` when the outcome cannot be determined. Rejected
        credentials are reported through the result, not raised.
        """
        CredentialValidator.check_login(email, password)

        # start from a clean slate so a stale token never outlives a failed login
        self.logout()
        self._epoch += 1
        epoch = self._epoch
        self._session = Session(status=SessionStatus.VERIFYING)
        logger.info(f"Signing in as {email}")

        try:
            response = await self._api.post(
                "/auth/login",
                json={"email": email.strip(), "password": password},
                authorized=False,
            )
            token = TokenResponse.model_validate(response.json()).token
        except TransportError:
            self._abandon(epoch)
            raise
        except LibraryClientError as exc:
            self._abandon(epoch)
            logger.warning(f"Login rejected for {email}: {exc.message}")
            return LoginResult(ok=False, reason=exc.message or "Login failed.", status_code=exc.status_code)
        except ValueError as exc:
            self._abandon(epoch)
            logger.error(f"Malformed login response: {exc}")
            return LoginResult(ok=False, reason="Login failed: the server sent an unreadable response.")

        if epoch != self._epoch:
            logger.info("Signed out while login was in flight; discarding token")
            return LoginResult(ok=False, reason=SIGNED_OUT_DURING_LOGIN)

        self._store.save_token(token)
        self._session = Session(token=token, status=SessionStatus.VERIFYING)
        try:
            profile = await self._fetch_identity(token)
        except LibraryClientError as exc:
            if epoch != self._epoch:
                return LoginResult(ok=False, reason=SIGNED_OUT_DURING_LOGIN)
            logger.warning(f"Identity fetch after login failed: {exc.message}")
            self.logout()
            return LoginResult(ok=False, reason="Signed in, but your profile could not be loaded. Please try again.")

        if epoch != self._epoch:
            logger.info("Signed out while the profile was loading; discarding it")
            return LoginResult(ok=False, reason=SIGNED_OUT_DURING_LOGIN)

        self._adopt(token, profile)
        return LoginResult(ok=True)

    def logout(self) -> None:
        """Discard the persisted token and reset to anonymous. Idempotent."""
        active = self._session.status is not SessionStatus.ANONYMOUS or self._store.has_token()
        self._store.clear_token()
        if not active:
            return
        self._epoch += 1
        self._session = Session()
        logger.info("Session reset to anonymous")

    async def refresh_identity(self) -> bool:
        """Re-fetch the profile for the current token after profile changes."""
        token = self._session.token
        if not token:
            return False
        return await self._verify(token, self._epoch)

    def handle_authorization_failure(self, epoch: int) -> bool:
        """React to a 401/403 on an authorized call.

        Acts once per session: failures from requests sent before the last
        reset are ignored, so concurrent failures yield exactly one logout
        and one notice.
        """
        if epoch != self._epoch or self._session.token is None:
            logger.debug(f"Ignoring authorization failure from stale session epoch {epoch}")
            return False

        logger.warning("Authorization failure on an authorized call; ending session")
        self._session = Session(status=SessionStatus.INVALID)
        self.logout()
        self._notifier.notify(SESSION_EXPIRED_NOTICE, level="warning")
        if self._on_session_expired is not None:
            self._on_session_expired()
        return True

    # ------------------------- Internal helpers ------------------------- #
    async def _fetch_identity(self, token: str) -> UserProfile:
        # identity fetch never goes through the interceptor
        response = await self._api.get("/users/profile", token=token, intercept=False)
        try:
            return UserProfile.model_validate(response.json())
        except ValueError as exc:
            raise MalformedResponseError(f"Malformed profile response: {exc}", response.status_code) from exc

    async def _verify(self, token: str, epoch: int) -> bool:
        try:
            profile = await self._fetch_identity(token)
        except LibraryClientError as exc:
            logger.warning(f"Identity verification failed: {exc.message}")
            if epoch == self._epoch:
                self.logout()
            return False

        if epoch != self._epoch:
            logger.info("Session was reset during identity fetch; discarding profile")
            return False

        self._adopt(token, profile)
        return True

    def _adopt(self, token: str, profile: UserProfile) -> None:
        self._session = Session.authenticated(token, profile)
        logger.info(f"Authenticated as {profile.email} (roles: {', '.join(profile.roles) or 'none'})")

    def _abandon(self, epoch: int) -> None:
        if epoch == self._epoch:
            self._session = Session()
