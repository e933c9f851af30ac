from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from linkwatch.exceptions import ConfigurationError


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Built once at startup and handed to each component's constructor;
    components never read the environment themselves.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Discord
    DISCORD_TOKEN: str = ""
    GUILD_ID: str = ""
    CHANNEL_ID_1: str = ""
    CHANNEL_ID_2: str = ""

    # Storage
    DATABASE_URL: str = ""
    DATABASE_NAME: str = "twitterlinks"
    LINKS_TABLE: str = "links"
    TEST_MODE: bool = False

    # Historical scrape
    SCRAPE_HISTORY: bool = False
    SCRAPE_CUTOFF_DATE: str = ""
    BATCH_SIZE: int = Field(default=100, ge=1, le=100)
    BATCH_DELAY_MS: int = Field(default=1000, ge=0)

    # Shortener resolution
    RESOLVE_TIMEOUT_SECONDS: float = Field(default=5.0, gt=0)
    RESOLVE_MAX_REDIRECTS: int = Field(default=5, ge=0)

    # Live monitor
    QUEUE_MAXSIZE: int = Field(default=1000, ge=1)
    SUMMARY_EVERY: int = Field(default=10, ge=1)

    # Service
    LOG_LEVEL: str = "INFO"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    @property
    def channel_ids(self) -> list[str]:
        """Allow-listed channel ids, empty meaning every channel."""
        return [c for c in (self.CHANNEL_ID_1, self.CHANNEL_ID_2) if c]

    @property
    def guild_id(self) -> Optional[str]:
        return self.GUILD_ID or None

    @property
    def degraded(self) -> bool:
        return self.TEST_MODE

    def check_startup(self) -> None:
        """
        Validate the settings needed to start the bot.

        Raises:
            ConfigurationError: token missing, or no DATABASE_URL outside TEST_MODE
        """
        if not self.DISCORD_TOKEN:
            raise ConfigurationError("DISCORD_TOKEN environment variable is required")
        self.check_storage()

    def check_storage(self) -> None:
        """Raise ConfigurationError when a database is needed but DATABASE_URL is unset."""
        if not self.TEST_MODE and not self.DATABASE_URL:
            raise ConfigurationError(
                "DATABASE_URL environment variable is required when not in TEST_MODE"
            )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file more than once.
    """
    return Settings()
