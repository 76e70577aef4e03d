"""Configuration management for the invoice bundle pipeline."""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "docsplit"
    postgres_password: str = "localdev"
    postgres_db: str = "docsplit"

    # Azure Document Intelligence (layout analysis)
    azure_di_endpoint: Optional[str] = None
    azure_di_key: Optional[str] = None
    layout_timeout_seconds: int = 300

    # Azure OpenAI / OpenAI (semantic inference)
    azure_openai_endpoint: Optional[str] = None
    azure_openai_key: Optional[str] = None
    azure_openai_deployment: str = "gpt-4o"
    azure_openai_api_version: str = "2024-02-01"
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    oracle_timeout_seconds: int = 120

    # Boundary detection
    page_text_budget: int = 2000
    fallback_confidence: float = 0.3

    # Field extraction
    query_batch_size: int = 20
    max_json_window_bytes: int = 30000
    table_chunk_rows: int = 25

    # Unit-price guardrail (ratio of unit_price * quantity to total_amount)
    guardrail_high: float = 50.0
    guardrail_low: float = 0.02

    # Storage
    split_dir: str = "./storage/split"

    # Logging
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """Construct async database URL."""
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def azure_openai_configured(self) -> bool:
        """Check whether Azure OpenAI credentials are present."""
        return bool(self.azure_openai_endpoint and self.azure_openai_key)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
