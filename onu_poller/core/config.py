from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Application settings
    APP_NAME: str = "ONU Poller ZTE C320"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8081

    # SNMP settings
    SNMP_HOST: str = "127.0.0.1"
    SNMP_PORT: int = 161
    SNMP_COMMUNITY: str = "public"
    SNMP_TIMEOUT: float = 2.0  # seconds, per request
    SNMP_RETRIES: int = 3
    SNMP_BACKOFF: float = 0.5  # seconds, doubled on every retry
    # Set to True only when the transport multiplexes concurrent requests
    SNMP_CONCURRENT_REQUESTS: bool = False
    SNMP_MAX_CONCURRENCY: int = 4

    # Redis settings
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None
    REDIS_SOCKET_TIMEOUT: float = 5.0

    # Polling settings
    DEFAULT_MAX_STALENESS: float = 30.0  # seconds
    POLL_FANOUT_LIMIT: int = 8
    REQUEST_TIMEOUT: float = 30.0  # seconds

    # Logging settings
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def redis_url(self) -> str:
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


# Create settings instance
settings = Settings()
