from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration loaded from env vars and local env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_env: str = Field(default="local", alias="APP_ENV")
    log_level: str | None = Field(default=None, alias="LOG_LEVEL")

    chat_url: str = Field(default="http://localhost:8080", alias="CHAT_URL")
    chat_namespace: str = Field(default="/chat", alias="CHAT_NAMESPACE")
    chat_socketio_path: str = Field(default="socket.io", alias="CHAT_SOCKETIO_PATH")
    chat_transports: list[str] = Field(default_factory=lambda: ["websocket"], alias="CHAT_TRANSPORTS")
    chat_connect_timeout_seconds: float = Field(default=10.0, alias="CHAT_CONNECT_TIMEOUT_SECONDS", gt=0)
    chat_heartbeat_interval_seconds: float = Field(default=5.0, alias="CHAT_HEARTBEAT_INTERVAL_SECONDS", gt=0)
    chat_animation_interval_seconds: float = Field(default=1 / 60, alias="CHAT_ANIMATION_INTERVAL_SECONDS", ge=0)
    chat_reveal_divisor: int = Field(default=60, alias="CHAT_REVEAL_DIVISOR", ge=1)

    chat_ide_name: str = Field(default="default_ide", alias="CHAT_IDE_NAME")
    chat_ide_version: str = Field(default="", alias="CHAT_IDE_VERSION")
    chat_username: str = Field(default="", alias="CHAT_USERNAME")
    chat_display_name: str = Field(default="", alias="CHAT_DISPLAY_NAME")
    chat_token: str = Field(default="", alias="CHAT_TOKEN")

    @property
    def effective_log_level(self) -> str:
        if self.log_level:
            return self.log_level.upper()
        return "DEBUG" if self.app_env.lower() == "local" else "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
