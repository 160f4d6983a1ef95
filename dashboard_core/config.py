from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Dashboard API settings
    DASHBOARD_API_URL: str = "http://localhost:5001"
    DASHBOARD_PUSH_URL: str | None = None

    # Credential (consumed only, never issued here)
    DASHBOARD_API_TOKEN: str | None = None
    DASHBOARD_TOKEN_FILE: str | None = None

    # =================================================================
    # LIVE SYNC SETTINGS
    # =================================================================
    SYNC_POLL_INTERVAL_SECONDS: float = 30.0
    SYNC_COALESCE_WINDOW_SECONDS: float = 0.5
    SYNC_RECONNECT_BASE_DELAY: float = 1.0
    SYNC_RECONNECT_MAX_DELAY: float = 30.0
    SYNC_RECONNECT_ESCALATION_THRESHOLD: int = 5
    PUSH_CONNECT_TIMEOUT: float = 10.0

    # =================================================================
    # HTTP CLIENT SETTINGS
    # =================================================================
    HTTP_REQUEST_TIMEOUT: float = 30.0
    HTTP_MAX_RETRIES: int = 3
    HTTP_BACKOFF_FACTOR: float = 1.0

    # Exports
    EXPORT_DIR: str = "exports"
    LOW_ATTENDANCE_THRESHOLD: int = 75

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def push_url(self) -> str:
        """Get the Socket.IO endpoint, defaulting to the API host."""
        if self.DASHBOARD_PUSH_URL:
            return self.DASHBOARD_PUSH_URL
        return self.DASHBOARD_API_URL.rstrip("/")

    def get_sync_config(self) -> dict:
        """
        Get live sync configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "poll_interval": self.SYNC_POLL_INTERVAL_SECONDS,
            "coalesce_window": self.SYNC_COALESCE_WINDOW_SECONDS,
            "reconnect_base_delay": self.SYNC_RECONNECT_BASE_DELAY,
            "reconnect_max_delay": self.SYNC_RECONNECT_MAX_DELAY,
            "escalation_threshold": self.SYNC_RECONNECT_ESCALATION_THRESHOLD,
            "connect_timeout": self.PUSH_CONNECT_TIMEOUT,
        }

        if self.environment == "development":
            # Local servers restart often, don't wait long between attempts
            config["reconnect_max_delay"] = min(config["reconnect_max_delay"], 10.0)

        return config

    def get_http_config(self) -> dict:
        """Get HTTP client configuration for the dashboard API."""
        config = {
            "base_url": self.DASHBOARD_API_URL.rstrip("/"),
            "timeout": self.HTTP_REQUEST_TIMEOUT,
            "max_retries": self.HTTP_MAX_RETRIES,
            "backoff_factor": self.HTTP_BACKOFF_FACTOR,
        }

        if self.environment == "development":
            config["timeout"] = min(config["timeout"], 15.0)

        return config


settings = Settings()
