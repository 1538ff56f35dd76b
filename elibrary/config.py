import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_base_url: str = os.getenv("ELIBRARY_API_URL", "http://localhost:8080/api")
    request_timeout: float = float(os.getenv("ELIBRARY_TIMEOUT", "10"))
    connect_timeout: float = float(os.getenv("ELIBRARY_CONNECT_TIMEOUT", "5"))
    max_connections: int = int(os.getenv("ELIBRARY_MAX_CONNECTIONS", "20"))

    # Session persistence
    token_file: str = os.getenv(
        "ELIBRARY_TOKEN_FILE",
        str(Path.home() / ".elibrary" / "session.json"),
    )
    token_key: str = os.getenv("ELIBRARY_TOKEN_KEY", "jwtToken")

    # Authorization
    admin_role: str = os.getenv("ELIBRARY_ADMIN_ROLE", "ROLE_ADMIN")

    # Notices are transient; seconds a notice stays active
    notice_seconds: float = float(os.getenv("ELIBRARY_NOTICE_SECONDS", "5"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "E-Library")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "WARNING")
    debug: bool = _env_flag("DEBUG")
    output_mode: Optional[str] = os.getenv("LIB_CLI_OUTPUT")


settings = Settings()
