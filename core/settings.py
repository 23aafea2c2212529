from functools import lru_cache
from typing import Literal, Optional

from pydantic import BaseModel, Field, PostgresDsn, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CustomSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


class AppSettings(CustomSettings):
    ENVIRONMENT: Literal["local", "dev", "prod"] = Field(default="local")
    LOG_LEVEL: str = Field(default="INFO")
    JSON_LOGS: bool = Field(default=False)
    STORAGE_BACKEND: Literal["memory", "postgres"] = Field(default="memory")
    SEED_DEMO_DATA: bool = Field(default=True)


class PgDbSettings(CustomSettings):
    POSTGRES_ENGINE: str = Field(default="postgresql+asyncpg")
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: SecretStr = Field(default="postgres")
    POSTGRES_DB: str = Field(default="ragchat")
    POSTGRES_HOST: str = Field(default="localhost")
    POSTGRES_PORT: int = Field(default=5432)
    DATABASE_URL: PostgresDsn | str = Field(default="")
    AUTO_CREATE_SCHEMA: bool = Field(default=True)

    @model_validator(mode="before")
    def validate_postgres_dsn(cls, data: dict):
        if isinstance(data, dict) and not data.get("DATABASE_URL"):
            password = data.get("POSTGRES_PASSWORD", "postgres")
            if isinstance(password, SecretStr):
                password = password.get_secret_value()
            _built_uri = PostgresDsn.build(
                scheme=data.get("POSTGRES_ENGINE", "postgresql+asyncpg"),
                username=data.get("POSTGRES_USER", "postgres"),
                password=password,
                host=data.get("POSTGRES_HOST", "localhost"),
                port=int(data.get("POSTGRES_PORT", 5432)),
                path=data.get("POSTGRES_DB", "ragchat"),
            ).unicode_string()
            data["DATABASE_URL"] = _built_uri
        return data


class ChatSettings(CustomSettings):
    """Conversation and turn behaviour.

    Set via env vars (optional):
    - CHAT_TITLE_MAX_LENGTH
    - CHAT_TITLE_SUFFIX
    - CHAT_GENERATION_TIMEOUT_SECONDS
    - CHAT_SIMULATED_DELAY_SECONDS
    - CHAT_HISTORY_WINDOW
    - CHAT_PROFILE_QUERY_PARAM
    - CHAT_MAX_SESSIONS
    - CHAT_SESSION_IDLE_SECONDS (0 keeps idle sessions until evicted)
    """

    model_config = SettingsConfigDict(
        env_prefix="CHAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    TITLE_MAX_LENGTH: int = Field(default=50, ge=1)
    TITLE_SUFFIX: str = Field(default="...")
    GENERATION_TIMEOUT_SECONDS: float = Field(default=60.0, gt=0)
    SIMULATED_DELAY_SECONDS: float = Field(default=2.0, ge=0)
    HISTORY_WINDOW: int = Field(default=20, ge=0)
    PROFILE_QUERY_PARAM: str = Field(default="profile")
    MAX_SESSIONS: int = Field(default=1000, ge=0)
    SESSION_IDLE_SECONDS: float = Field(default=3600.0, ge=0)


class AuthSettings(CustomSettings):
    """Identity of the caller.

    Authentication itself happens upstream; the service trusts the user
    header set by the gateway. DEFAULT_USER_ID is meant for local runs only.
    """

    USER_HEADER: str = Field(default="X-User-Id")
    DEFAULT_USER_ID: Optional[str] = Field(default=None)


class Settings(BaseModel):
    APP: AppSettings = Field(default_factory=AppSettings)
    DATABASE: PgDbSettings = Field(default_factory=PgDbSettings)
    CHAT: ChatSettings = Field(default_factory=ChatSettings)
    AUTH: AuthSettings = Field(default_factory=AuthSettings)


@lru_cache
def get_settings() -> Settings:
    return Settings()


SETTINGS = get_settings()
