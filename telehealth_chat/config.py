from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List
import os


class Settings(BaseSettings):
    """Chat client settings loaded from environment.
    - Keep defaults matching the hosted deployment.
    - Override via .env or real env vars.
    """

    APP_NAME: str = "telehealth_chat"
    APP_ENV: str = "dev"
    APP_DEBUG: bool = True
    LOG_DIR: str = "logs"

    # REST API base (all chat endpoints live under it)
    API_BASE_URL: str = "https://health-management-app-joj5.onrender.com/api"

    # Socket.IO origins; local hosts map to SOCKET_LOCAL_URL, everything else to production
    SOCKET_LOCAL_URL: str = "http://localhost:5001"
    SOCKET_PRODUCTION_URL: str = "https://health-management-app-joj5.onrender.com"
    # Comma-separated hostnames treated as local development
    LOCAL_HOSTS: str = "localhost,127.0.0.1"
    SOCKET_TRANSPORTS: str = "websocket,polling"

    # Reconnection policy: fixed delay, bounded attempts
    RECONNECTION_DELAY_SECONDS: float = 1.0
    RECONNECTION_ATTEMPTS: int = 5
    # How long to wait for the server's `authenticated` reply
    AUTHENTICATION_TIMEOUT_SECONDS: float = 10.0

    # REST request flow: per-request timeout, retry budget and linear backoff step
    REQUEST_TIMEOUT_SECONDS: float = 30.0
    REQUEST_RETRIES: int = 2
    RETRY_BACKOFF_SECONDS: float = 2.0

    # Window for a socket echo to confirm an optimistic message
    OPTIMISTIC_CONFIRM_SECONDS: float = 5.0
    # A same-text server copy older than the placeholder by more than this is a different message
    ECHO_MATCH_SKEW_SECONDS: float = 30.0
    # Placeholders still unconfirmed after this long are dropped on refresh
    PENDING_MAX_AGE_SECONDS: float = 60.0

    # Message viewport behaviour
    SCROLL_NEAR_BOTTOM_PX: int = 100
    SCROLL_DEBOUNCE_SECONDS: float = 0.3
    SCROLL_SETTLE_SECONDS: float = 0.1
    SCROLL_REENTRY_SECONDS: float = 0.5

    # Polling fallback
    CHAT_POLL_INTERVAL_SECONDS: float = 2.0
    DASHBOARD_POLL_INTERVAL_SECONDS: float = 30.0
    POLL_JITTER_SECONDS: float = 0.5

    # Persisted bearer token (written by the login flow)
    TOKEN_FILE: str = "~/.telehealth/auth_token"
    AUTH_TOKEN: str | None = None

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def local_hosts(self) -> List[str]:
        """Return local hostnames as a list, parsing the comma-separated env string."""
        raw = self.LOCAL_HOSTS or os.getenv("LOCAL_HOSTS", "") or ""
        return [h.strip().lower() for h in raw.split(",") if h.strip()]

    @property
    def socket_transports(self) -> List[str]:
        return [t.strip() for t in self.SOCKET_TRANSPORTS.split(",") if t.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
