"""
Persistent token storage for the E-Library client.
Keeps exactly one opaque bearer token in a key-addressed JSON file that
survives restarts until logout or server-side rejection.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from elibrary.config import settings

logger = logging.getLogger(__name__)


class TokenStore:
    """Reads and writes the session token file.

    Only ``SessionManager`` writes through this class; everything else reads
    the token through the session.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None, key: Optional[str] = None) -> None:
        self.path = Path(path or settings.token_file)
        self.key = key or settings.token_key

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read token file {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

    def load_token(self) -> Optional[str]:
        """Return the persisted token, or None when absent or blank."""
        token = self._read().get(self.key)
        if isinstance(token, str) and token.strip():
            return token.strip()
        return None

    def has_token(self) -> bool:
        return self.load_token() is not None

    def save_token(self, token: str) -> None:
        data = self._read()
        data[self.key] = token
        self._write(data)
        logger.debug(f"Token saved to {self.path}")

    def clear_token(self) -> None:
        """Remove the token; safe to call when nothing is stored."""
        data = self._read()
        if self.key not in data:
            return
        del data[self.key]
        if data:
            self._write(data)
        else:
            self.path.unlink(missing_ok=True)
        logger.debug(f"Token removed from {self.path}")
