from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    PROJECT_NAME: str = "BlockFund API"
    VERSION: str = "1.0.0"

    DATABASE_URL: str = "sqlite:///./blockfund.db"
    DATABASE_ECHO: bool = False

    ALLOWED_ORIGINS: List[str] = ["*"]

    # Sessions for the local identity collaborator
    SESSION_COOKIE_NAME: str = "sid"
    SESSION_TTL_SECONDS: int = 7 * 24 * 60 * 60
    SESSION_COOKIE_SECURE: bool = False
    ENABLE_LOCAL_AUTH: bool = True

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_prefix="BLOCKFUND_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
