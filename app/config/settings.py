from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, computed_field

load_dotenv()


class Settings(BaseSettings):
    """Base settings for the application."""

    model_config = SettingsConfigDict(
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application settings
    APP_NAME: str = "Knowledge Hub Backend"
    APP_VERSION: str = "1.0.0"
    APP_DESCRIPTION: str = "Document ingestion and tiered retrieval API"
    APP_AUTHOR: str = "Knowledge Hub Team"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str = ""
    LOCAL_SQLITE_PATH: str = "sqlite+aiosqlite:///./local.db"

    SUPABASE_DATABASE_NAME: str = "postgres"
    SUPABASE_DATABASE_USER: str = "postgres"
    SUPABASE_DATABASE_PASSWORD: str = ""
    SUPABASE_DATABASE_HOST: str = ""
    SUPABASE_DATABASE_PORT: int = 5432

    @computed_field
    @property
    def effective_database_url(self) -> str:
        """Resolve the database URL for the application.

        Priority:
        1. Explicit DATABASE_URL (Postgres, SQLite, etc.)
        2. Supabase Postgres URL built from SUPABASE_* components
        3. Local SQLite fallback for development: LOCAL_SQLITE_PATH
        """
        if self.DATABASE_URL and self.DATABASE_URL.strip():
            return self.DATABASE_URL.strip()
        if self.SUPABASE_DATABASE_HOST.strip() and self.SUPABASE_DATABASE_PASSWORD.strip():
            return (
                f"postgresql://{self.SUPABASE_DATABASE_USER}:{self.SUPABASE_DATABASE_PASSWORD}@"
                f"{self.SUPABASE_DATABASE_HOST}:{self.SUPABASE_DATABASE_PORT}/{self.SUPABASE_DATABASE_NAME}?sslmode=require"
            )
        if self.LOCAL_SQLITE_PATH and self.LOCAL_SQLITE_PATH.strip():
            return self.LOCAL_SQLITE_PATH.strip()
        return "sqlite+aiosqlite:///./local.db"

    # OpenAI settings (schema inference, relationship and intent inference)
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_ANALYSIS_TEMPERATURE: float = 0.1
    OPENAI_ANALYSIS_MAX_TOKENS: int = 4096
    OPENAI_INTENT_MAX_TOKENS: int = 500

    # OpenAI embedding settings
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-3-small"
    OPENAI_EMBEDDING_BATCH_SIZE: int = Field(default=100, ge=1, le=2048)
    OPENAI_EMBEDDING_MAX_INPUT_CHARS: int = Field(default=30000, ge=1)

    # Google Drive content provider
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_TOKEN_URL: str = "https://oauth2.googleapis.com/token"
    GOOGLE_DRIVE_API_URL: str = "https://www.googleapis.com/drive/v3"
    GOOGLE_SHEETS_API_URL: str = "https://sheets.googleapis.com/v4"
    GOOGLE_DRIVE_MAX_DEPTH: int = Field(default=10, ge=0)

    # External call budgets (seconds) and retry policy
    FETCH_TIMEOUT_SECONDS: float = 30.0
    INFERENCE_TIMEOUT_SECONDS: float = 60.0
    EMBEDDING_TIMEOUT_SECONDS: float = 60.0
    GENERATION_TIMEOUT_SECONDS: float = 90.0
    RETRY_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    RETRY_BASE_DELAY_SECONDS: float = 1.0
    RETRY_MAX_JITTER_SECONDS: float = 0.5

    # Ingestion pipeline
    CHUNK_MAX_CHARS: int = 12000
    CHUNK_MIN_CHARS: int = 100
    CHUNK_ROWS_PER_BATCH: int = 10
    ANALYSIS_SAMPLE_ROWS: int = 50
    PROCESS_BATCH_SIZE: int = 10
    FOLDER_LOCK_TTL_SECONDS: int = 30 * 60
    STALE_CLAIM_TIMEOUT_SECONDS: int = 30 * 60

    # Retrieval
    HOT_WINDOW_DAYS: int = 7
    MIN_RESULTS_PER_TIER: int = 3


settings = Settings()
