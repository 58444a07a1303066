from typing import List

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, computed_field

# Load .env file from project root
load_dotenv()


class Settings(BaseSettings):
    """Base settings for the application."""

    model_config = SettingsConfigDict(
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application settings
    APP_NAME: str = "RDA Backend Core"
    APP_VERSION: str = "1.0.0"
    APP_DESCRIPTION: str = "Azure DevOps sync and RDA report preparation API"
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"

    DATABASE_URL: str = ""
    LOCAL_SQLITE_PATH: str = "sqlite+aiosqlite:///./local.db"

    @computed_field
    @property
    def effective_database_url(self) -> str:
        """Resolve the database URL for the application.

        Priority:
        1. Explicit DATABASE_URL (Postgres with pgvector in production)
        2. Local SQLite fallback for development: LOCAL_SQLITE_PATH
        """
        if self.DATABASE_URL and self.DATABASE_URL.strip():
            return self.DATABASE_URL.strip()
        if self.LOCAL_SQLITE_PATH and self.LOCAL_SQLITE_PATH.strip():
            return self.LOCAL_SQLITE_PATH.strip()
        return "sqlite+aiosqlite:///./local.db"

    # Azure DevOps settings
    AZURE_DEVOPS_ORG_URL: str = Field(default="", description="Organization URL (https://dev.azure.com/org)")
    AZURE_DEVOPS_PAT: str = Field(default="", description="Personal access token with Work Items (read) scope")
    AZURE_DEVOPS_PROJECT: str = ""
    AZURE_DEVOPS_TEAM: str = ""
    AZURE_DEVOPS_API_VERSION: str = "7.0"
    AZURE_DEVOPS_TIMEOUT_SECONDS: float = 30.0

    @computed_field
    @property
    def azure_configured(self) -> bool:
        """True when the Azure DevOps credentials needed for sync are present."""
        return bool(self.AZURE_DEVOPS_ORG_URL.strip() and self.AZURE_DEVOPS_PAT.strip())

    # OpenAI embedding settings
    OPENAI_API_KEY: str = ""
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-3-small"
    EMBEDDING_DIMENSIONS: int = 1536
    EMBEDDING_BATCH_SIZE: int = 20

    # Hybrid search defaults
    SEARCH_TOP_K: int = 10
    SEARCH_VECTOR_WEIGHT: float = 0.7
    SEARCH_FULLTEXT_WEIGHT: float = 0.3
    SEARCH_RRF_K: int = 60
    SEARCH_TEXT_LANGUAGE: str = "portuguese"

    # Work item sync settings
    SYNC_FETCH_BATCH_SIZE: int = 100  # Azure rejects batch fetches above 200 ids
    SYNC_ITEM_BATCH_SIZE: int = 50
    SYNC_BATCH_DELAY_MS: int = 500
    SYNC_DEFAULT_LOOKBACK_HOURS: int = 24
    BACKFILL_DAYS_BACK: int = 30
    TARGET_PROJECTS: str = ""  # Comma separated project names for backfill runs

    # Retry schedule for database reconnects at sync entrypoints
    DB_RETRY_DELAYS_MS: List[int] = [5000, 15000, 30000]

    # Monthly preparation settings
    MONTHLY_STALE_MINUTES: int = 15
    MONTHLY_STATUS_TTL_MINUTES: int = 120
    MONTHLY_STEP_RETRY_ATTEMPTS: int = 2
    MONTHLY_STEP_RETRY_DELAY_MS: int = 1000


settings = Settings()
