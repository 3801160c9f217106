from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, List

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_DENIED_EXTENSIONS = (
    "exe",
    "bat",
    "cmd",
    "com",
    "msi",
    "scr",
    "ps1",
    "vbs",
    "js",
    "jar",
    "sh",
    "apk",
    "dll",
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="Legion Chat", env="APP_NAME", description="Human readable service name")
    environment: str = Field(default="development", env="ENVIRONMENT", description="Deployment environment name")
    debug: bool = Field(default=True, env="DEBUG", description="Enable debug mode")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ],
        env="CORS_ORIGINS",
        description="List of allowed CORS origins",
    )

    platform_url: str = Field(
        default="http://localhost:54321",
        env="PLATFORM_URL",
        description="Base URL of the managed backend platform",
    )
    platform_anon_key: str = Field(
        default="anon",
        env="PLATFORM_ANON_KEY",
        description="Public API key sent with every platform request",
    )
    platform_jwt_secret: str = Field(
        default="changeme",
        env="PLATFORM_JWT_SECRET",
        description="Secret used to verify platform access tokens at the gateway",
    )
    platform_jwt_algorithm: str = Field(default="HS256", env="PLATFORM_JWT_ALGORITHM")
    platform_jwt_audience: str = Field(default="authenticated", env="PLATFORM_JWT_AUDIENCE")
    storage_bucket: str = Field(default="uploads", env="STORAGE_BUCKET")
    http_timeout_seconds: float = Field(default=10.0, env="HTTP_TIMEOUT_SECONDS")
    realtime_heartbeat_seconds: float = Field(
        default=25.0,
        env="REALTIME_HEARTBEAT_SECONDS",
        description="Interval between heartbeats sent on the realtime socket.",
    )

    chat_history_limit: int = Field(default=100, env="CHAT_HISTORY_LIMIT")
    chat_message_max_length: int = Field(default=2000, env="CHAT_MESSAGE_MAX_LENGTH")
    mention_page_size: int = Field(default=8, env="MENTION_PAGE_SIZE")
    max_upload_size: int = Field(
        default=10 * 1024 * 1024, env="MAX_UPLOAD_SIZE", description="Maximum upload size in bytes"
    )
    denied_upload_extensions: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_DENIED_EXTENSIONS),
        env="DENIED_UPLOAD_EXTENSIONS",
        description="File extensions rejected at selection time.",
    )
    pin_min_power_level: int = Field(
        default=70,
        env="PIN_MIN_POWER_LEVEL",
        description="Lowest rank power level offered the pin/unpin controls.",
    )
    professor_role_keys: dict[str, str] = Field(
        default_factory=dict,
        env="PROFESSOR_ROLE_KEYS",
        description="Mapping of server id to the role key allowed to upload course content.",
    )
    auth_check_timeout_seconds: float = Field(
        default=5.0,
        env="AUTH_CHECK_TIMEOUT_SECONDS",
        description="Give up on the session check after this many seconds.",
    )
    sign_in_path: str = Field(default="/sign-in", env="SIGN_IN_PATH")
    preferences_path: Path = Field(
        default=Path.home() / ".legion" / "preferences.json",
        env="PREFERENCES_PATH",
        description="File holding persisted UI flags and the session token.",
    )

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def rest_url(self) -> str:
        return f"{self.platform_url.rstrip('/')}/rest/v1"

    @property
    def storage_url(self) -> str:
        return f"{self.platform_url.rstrip('/')}/storage/v1"

    @property
    def auth_url(self) -> str:
        return f"{self.platform_url.rstrip('/')}/auth/v1"

    @property
    def realtime_url(self) -> str:
        base = self.platform_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/realtime/v1/websocket?apikey={self.platform_anon_key}&vsn=1.0.0"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v):  # type: ignore[override]
        if v in (None, "", Ellipsis):
            return v
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        if isinstance(v, (list, tuple, set)):
            return list(v)
        return v

    @field_validator("denied_upload_extensions", mode="before")
    @classmethod
    def normalize_extensions(cls, value: Any) -> list[str]:
        if value in (None, "", Ellipsis):
            return []
        if isinstance(value, str):
            value = value.split(",")
        return [str(item).strip().lstrip(".").lower() for item in value if str(item).strip()]

    @field_validator("preferences_path", mode="before")
    @classmethod
    def resolve_preferences_path(cls, value: str | Path) -> Path:
        return Path(value).expanduser()


@lru_cache
def get_settings() -> Settings:
    return Settings()
