import logging
import secrets
from functools import lru_cache

from fastapi import Depends
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Annotated

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = False
    log_level: str = "INFO"

    database_url: str = "sqlite+aiosqlite:///./taskboard.db"
    create_tables_on_startup: bool = False

    # empty DSN runs the cache process-local only
    redis_dsn: str = "redis://localhost:6379/0"
    redis_pool_size: int = 5
    cache_namespace: str = "taskboard:"
    l1_maxsize: int = 2048
    l1_ttl_seconds: int = 30
    entity_ttl_seconds: int = 3600
    listing_ttl_seconds: int = 60

    default_page_size: int = 10
    max_page_size: int = 100

    secret_key: str = ""
    jwt_algorithm: str = "HS256"
    token_expire_seconds: int = 60 * 60 * 24
    bcrypt_rounds: int = 12

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Generate a throwaway signing key in debug mode, refuse to start without one otherwise."""
        if not self.secret_key:
            if not self.debug:
                raise ValueError(
                    "SECRET_KEY is required. Set it in the environment or .env, "
                    "or set DEBUG=true for a generated development key."
                )
            self.secret_key = secrets.token_hex(32)
            logger.warning("Using a generated SECRET_KEY, tokens will not survive a restart")
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()


SettingsDep = Annotated[Settings, Depends(get_settings)]
