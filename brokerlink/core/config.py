from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    LOG_LEVEL: str = "INFO"

    # Every broker call is bounded by this timeout
    REQUEST_TIMEOUT_SECONDS: float = 30.0

    # Shoonya (Finvasia), direct auth
    SHOONYA_BASE_URL: str = "https://api.shoonya.com/NorenWClientTP"
    SHOONYA_APK_VERSION: str = "1.0.0"

    # Fyers, OAuth authorization-code flow
    FYERS_API_URL: str = "https://api-t1.fyers.in/api/v3"
    FYERS_DATA_URL: str = "https://api-t1.fyers.in/data"
    FYERS_ACCESS_TOKEN_TTL_HOURS: int = 24
    FYERS_REFRESH_TOKEN_TTL_DAYS: int = 30

    # Shared utilities
    RATE_LIMIT_MAX_CALLS: int = 10
    RATE_LIMIT_WINDOW_SECONDS: float = 1.0
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 1.0

    # Empty list = every registered broker is enabled
    ENABLED_BROKERS: list[str] = []

    class Config:
        env_file = ".env"


settings = Settings()
