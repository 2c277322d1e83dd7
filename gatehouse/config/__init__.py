"""
Application settings.
"""

from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="GATEHOUSE_",
        env_file=".env",
        extra="ignore",
    )

    database_url: str = "sqlite+aiosqlite:///./data/gatehouse.db"
    data_dir: Path = Path("./data")

    # When unset, the issuer is derived from the incoming request's origin.
    issuer_url: Optional[str] = None

    access_token_ttl: int = 3600
    auth_code_ttl: int = 600
    refresh_token_ttl_days: int = 30
    # RFC 6749 reserves client_credentials for confidential clients.
    allow_public_client_credentials: bool = False

    session_cookie_name: str = "gatehouse_session"
    session_ttl_days: int = 7
    cookie_secure: bool = False
    login_path: str = "/login"
    consent_path: str = "/oauth/consent"

    federation_state_ttl: int = 600
    federation_http_timeout: float = 10.0
    federation_issuer_policy: Literal["strict", "lenient"] = "lenient"
    discovery_cache_ttl: int = 3600
    discovery_max_age: int = 3600
    jwks_cache_max_age: int = 86400

    @property
    def keys_dir(self) -> Path:
        return self.data_dir / "keys"


settings = Settings()
