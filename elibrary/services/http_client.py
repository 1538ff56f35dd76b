import logging
from typing import Any, Callable, Optional, Tuple

import httpx

from elibrary.config import settings
from elibrary.errors import TransportError, from_response

logger = logging.getLogger(__name__)

# Enable HTTP/2 only when the 'h2' package is installed
try:
    import h2  # type: ignore  # noqa: F401
    _HTTP2_AVAILABLE = True
except ImportError:
    _HTTP2_AVAILABLE = False
    logger.debug("HTTP/2 disabled: 'h2' package is not installed.")

AUTH_FAILURE_STATUSES = (401, 403)

CredentialsProvider = Callable[[], Tuple[Optional[str], int]]
AuthFailureHandler = Callable[[int], Any]


class ApiClient:
    """Pooled async HTTP client for the library gateway.

    Offers two channels over one connection pool:

    * public calls (``authorized=False``) carry no credential;
    * authorized calls get ``Authorization: Bearer <token>`` attached here,
      and a 401/403 answer is reported to the bound authorization-failure
      handler before ``AuthorizationError`` is raised.

    The credential provider returns ``(token, epoch)``; the epoch a request
    was sent under travels with the failure so the handler can ignore
    failures from a session that has already been reset.
    """

    def __init__(self, base_url: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: Optional[float] = None) -> None:
        limits = httpx.Limits(
            max_keepalive_connections=settings.max_connections,
            max_connections=settings.max_connections * 5,
            keepalive_expiry=30.0,
        )
        request_timeout = timeout if timeout is not None else settings.request_timeout
        timeouts = httpx.Timeout(
            timeout=request_timeout,
            connect=min(settings.connect_timeout, request_timeout),
        )
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            limits=limits,
            timeout=timeouts,
            follow_redirects=True,
            transport=transport,
            http2=_HTTP2_AVAILABLE and transport is None,
        )
        self._credentials: Optional[CredentialsProvider] = None
        self._on_auth_failure: Optional[AuthFailureHandler] = None

    def bind_session(self, credentials: CredentialsProvider, on_auth_failure: AuthFailureHandler) -> None:
        """Connect the authorized channel to the session that owns the token."""
        self._credentials = credentials
        self._on_auth_failure = on_auth_failure

    async def request(self, method: str, path: str, *, authorized: bool = True, intercept: bool = True,
                      token: Optional[str] = None, **kwargs) -> httpx.Response:
        """Send a request and return the successful response.

        Raises ``TransportError`` for network failures and timeouts, and the
        matching ``LibraryClientError`` subclass for any 4xx/5xx answer.
        ``intercept=False`` keeps a 401/403 away from the failure handler;
        the identity fetch uses it so its own failures never loop back.
        """
        epoch = 0
        headers = dict(kwargs.pop("headers", None) or {})
        if authorized:
            if self._credentials is not None:
                current_token, epoch = self._credentials()
                token = token or current_token
            if token:
                headers["Authorization"] = f"Bearer {token}"

        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            logger.error(f"{method} {path} timed out: {exc}")
            raise TransportError("The library service did not respond in time.") from exc
        except httpx.RequestError as exc:
            logger.error(f"{method} {path} failed: {exc}")
            raise TransportError(f"Could not reach the library service: {exc}") from exc

        if response.is_success:
            return response

        error = from_response(response)
        if authorized and response.status_code in AUTH_FAILURE_STATUSES:
            logger.warning(f"{method} {path} rejected with {response.status_code}: {error.message}")
            if intercept and self._on_auth_failure is not None:
                self._on_auth_failure(epoch)
        else:
            logger.info(f"{method} {path} returned {response.status_code}: {error.message}")
        raise error

    async def get(self, path: str, **kwargs) -> httpx.Response:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs) -> httpx.Response:
        return await self.request("POST", path, **kwargs)

    async def put(self, path: str, **kwargs) -> httpx.Response:
        return await self.request("PUT", path, **kwargs)

    async def delete(self, path: str, **kwargs) -> httpx.Response:
        return await self.request("DELETE", path, **kwargs)

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
