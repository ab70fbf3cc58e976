from typing import List

from dotenv import load_dotenv
from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    """Base settings for the application."""

    model_config = SettingsConfigDict(
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application settings
    APP_NAME: str = "Knowledge Base Backend"
    APP_VERSION: str = "1.0.0"
    APP_DESCRIPTION: str = "Knowledge indexing and retrieval API for ISMS records"
    CORS_ALLOW_ORIGINS: List[str] = ["*"]

    # Logging settings
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"

    DATABASE_URL: str = ""
    LOCAL_SQLITE_PATH: str = "sqlite+aiosqlite:///./local.db"

    POSTGRES_DATABASE_NAME: str = "postgres"
    POSTGRES_DATABASE_USER: str = "postgres"
    POSTGRES_DATABASE_PASSWORD: str = ""
    POSTGRES_DATABASE_HOST: str = ""
    POSTGRES_DATABASE_PORT: int = 5432
    DB_POOL_SIZE: int = Field(default=20, ge=1)

    @computed_field
    @property
    def effective_database_url(self) -> str:
        """Resolve the database URL for the application.

        Priority:
        1. Explicit DATABASE_URL (Postgres, SQLite, etc.)
        2. Postgres URL built from POSTGRES_* components
        3. Local SQLite fallback for development: LOCAL_SQLITE_PATH
        """
        if self.DATABASE_URL and self.DATABASE_URL.strip():
            return self.DATABASE_URL.strip()
        if self.POSTGRES_DATABASE_HOST and self.POSTGRES_DATABASE_HOST.strip() and self.POSTGRES_DATABASE_PASSWORD and self.POSTGRES_DATABASE_PASSWORD.strip():
            return (
                f"postgresql://{self.POSTGRES_DATABASE_USER}:{self.POSTGRES_DATABASE_PASSWORD}@"
                f"{self.POSTGRES_DATABASE_HOST}:{self.POSTGRES_DATABASE_PORT}/{self.POSTGRES_DATABASE_NAME}"
            )
        if self.LOCAL_SQLITE_PATH and self.LOCAL_SQLITE_PATH.strip():
            return self.LOCAL_SQLITE_PATH.strip()
        return "sqlite+aiosqlite:///./local.db"

    # OpenAI settings
    OPENAI_API_KEY: str = ""
    OPENAI_CHAT_MODEL: str = "gpt-4o-mini"
    OPENAI_TEMPERATURE: float = 0.2
    OPENAI_MAX_TOKENS: int = 1500

    # OpenAI embedding settings
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-3-small"
    OPENAI_EMBEDDING_DIMENSIONS: int = 1536
    EMBEDDING_BATCH_SIZE: int = Field(default=20, ge=1, description="Texts per embeddings request")

    # Chunking settings (sizes are in approximate tokens)
    CHUNK_SIZE_TOKENS: int = 800
    CHUNK_OVERLAP_TOKENS: int = 200
    CHARS_PER_TOKEN: int = 4
    MAX_SINGLE_CHUNK_CHARS: int = Field(
        default=24000,
        description="Records whose text fits in this many characters are embedded as one chunk",
    )

    # Sync job settings
    SYNC_PAGE_SIZE: int = Field(default=500, ge=1, description="Source records fetched per page")
    SYNC_PAGE_DELAY_SECONDS: float = Field(default=2.0, ge=0, description="Pause between pages")
    SYNC_COOLDOWN_SECONDS: int = Field(default=30, ge=0, description="Minimum gap between finished and new runs")
    SYNC_STALE_AFTER_SECONDS: int = Field(
        default=900,
        ge=1,
        description="A running job without a heartbeat for this long is treated as abandoned",
    )

    # Retrieval settings
    DEFAULT_SEARCH_LIMIT: int = 10
    DEFAULT_ASK_LIMIT: int = 8
    DEFAULT_SIMILAR_LIMIT: int = 5

    # iTop (ITSM source system) settings
    ITOP_BASE_URL: str = Field(default="", description="iTop REST endpoint, e.g. https://itop.example.com/webservices/rest.php")
    ITOP_USERNAME: str = ""
    ITOP_PASSWORD: str = ""
    ITOP_API_VERSION: str = "1.3"
    ITOP_TIMEOUT_SECONDS: float = 120.0


settings = Settings()
