import logging
from typing import Dict, List, Optional

from elibrary.errors import MalformedResponseError
from elibrary.models import CatalogItem
from elibrary.services.http_client import ApiClient
from elibrary.services.session_manager import SessionManager

logger = logging.getLogger(__name__)


class CatalogService:
    """Read-only access to the catalog and its availability counts."""

    def __init__(self, sessions: SessionManager, api: ApiClient) -> None:
        self._sessions = sessions
        self._api = api

    async def browse(self, query: Optional[str] = None, genre: Optional[str] = None,
                     author: Optional[str] = None) -> List[CatalogItem]:
        """Search the catalog.

        Goes through the authorized channel when signed in and the public one
        otherwise. Errors propagate as ``LibraryClientError`` subclasses.
        """
        params: Dict[str, str] = {}
        if query:
            params["query"] = query.strip()
        if genre:
            params["genre"] = genre.strip()
        if author:
            params["author"] = author.strip()

        response = await self._api.get(
            "/books/browse",
            params=params,
            authorized=self._sessions.is_authenticated,
        )
        try:
            payload = response.json()
            if not isinstance(payload, list):
                raise ValueError(f"expected a list, got {type(payload).__name__}")
            items = [CatalogItem.model_validate(item) for item in payload]
        except ValueError as exc:
            raise MalformedResponseError(f"Malformed catalog response: {exc}", response.status_code) from exc

        logger.debug(f"Catalog browse {params or '(all)'} returned {len(items)} items")
        return items
