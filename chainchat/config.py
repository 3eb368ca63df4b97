"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "ChainChat API"
    api_version: str = "0.1.0"
    api_description: str = "Antelope chat assistant with metered usage and TLOS credits"

    # Auth - HS256 secret that signs user bearer tokens
    auth_jwt_secret: str = ""
    auth_token_ttl_hours: int = 24 * 7

    # Built-in LLM (the app's own key, metered through the credit ledger)
    builtin_llm_provider: str = "chutes"
    builtin_llm_model: str = ""
    builtin_llm_api_key: str = ""

    # Fallback model per provider, e.g. LLM_FALLBACK_MODELS='{"chutes": "deepseek-ai/DeepSeek-V3"}'
    llm_fallback_models: dict[str, str] = {}
    llm_request_timeout: float = 120.0

    # Message optimization
    keep_recent_tool_rounds: int = 2
    max_history_messages: int = 20

    # Payments - deposits are verified against Telos mainnet history
    payment_hyperion_url: str = "https://mainnet.telos.net"
    payment_settlement_contract: str = "eosio.token"
    payment_settlement_symbol: str = "TLOS"
    app_wallet_account: str = ""  # Used when app_config has no app_wallet_account row
    chain_request_timeout: float = 10.0
    app_config_ttl_seconds: float = 300.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "chainchat-api"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.keep_recent_tool_rounds < 0:
            errors.append("KEEP_RECENT_TOOL_ROUNDS cannot be negative")
        if self.max_history_messages < 1:
            errors.append("MAX_HISTORY_MESSAGES must be at least 1")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    @property
    def builtin_llm_available(self) -> bool:
        """Whether the app's own model credentials are configured."""
        return bool(
            self.builtin_llm_provider and self.builtin_llm_model and self.builtin_llm_api_key
        )


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
