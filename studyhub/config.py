"""Configuration management using pydantic-settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server settings
    app_name: str = "StudyHub API"
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"
    cors_origin: str = "http://localhost:5173"
    max_body_bytes: int = 1_048_576  # 1MB, JSON and form bodies

    # Database settings
    db_server: str = "localhost"
    db_name: str = "studyhub"
    db_user: str = "studyhub"
    db_password: str = ""
    db_port: int = 5432
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_connect_timeout: float = 10.0
    sql_echo: bool = False

    # JWT settings
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 1440

    # WebSocket settings
    ws_max_message_size: int = 65536  # 64KB max frame size
    ws_receive_timeout: float = 45.0
    ws_ping_timeout: float = 10.0  # Wait for any frame after a server ping
    ws_rate_limit_messages: int = 100  # Max messages per window
    ws_rate_limit_window: float = 10.0  # Window in seconds

    # Room coordination
    room_grace_period: float = 5.0  # Seconds an empty room survives; 0 deletes immediately
    room_strict_rejoin: bool = True  # Rejoining a joined room is an error

    # Presence (90s allows for two missed 30s pings plus jitter)
    presence_idle_timeout: float = 90.0
    presence_sweep_interval: float = 30.0

    # External calls (token verification, room lookups)
    external_call_timeout: float = 5.0
    external_retry_backoff: float = 0.2

    @property
    def database_url(self) -> str:
        """Build PostgreSQL async connection string."""
        from urllib.parse import quote_plus
        return (
            f"postgresql+asyncpg://{self.db_user}:{quote_plus(self.db_password)}"
            f"@{self.db_server}:{self.db_port}/{self.db_name}"
        )


# Global settings instance
settings = Settings()
