from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings with environment variable support (``SNTP_`` prefix)"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="SNTP_",
        case_sensitive=True,
        extra="ignore",
    )

    # Server Settings
    SERVER: str = "pool.ntp.org"
    PORT: int = Field(default=123, ge=1, le=65535)

    # Exchange Settings
    TIMEOUT: float = Field(default=1.0, gt=0)  # seconds
    MAX_DELAY: float = Field(default=1.0, gt=0)  # seconds, warn above this

    # Logging Settings
    LOG_LEVEL: str = "WARNING"

