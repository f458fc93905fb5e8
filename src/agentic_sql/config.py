"""
Configuration module for the agentic SQL assistant.

This module defines all configuration classes using Pydantic BaseModel and BaseSettings.
Configuration is loaded from environment variables with nested delimiter "__".

Example .env:
    LLM__OPENROUTER_API_KEY=sk-xxx
    STORAGE__BACKEND=local
    STORAGE__SNAPSHOT_DIR=.snapshots
    PIPELINE__MAX_FORCED_REGENERATIONS=1

Usage:
    from agentic_sql.config import get_settings
    settings = get_settings()
    print(settings.pipeline.max_generation_attempts)
"""

from functools import lru_cache
from typing import Literal, Optional

from agentic_sql.config_constants import (
    LogLevel,
    OPENROUTER_LLM_MODELS,
    OPEN_ROUTER_API_URL,
    SnapshotBackend,
)

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# EMBEDDED ENGINE CONFIGURATION
# =============================================================================

class EngineConfig(BaseModel):
    """
    Embedded SQLite engine configuration.

    Every database lives in-process as an in-memory connection keyed by
    database id; durability comes from snapshots written to the snapshot store.
    """

    # Maximum number of databases kept open at once
    # Opening another database beyond this limit is rejected
    max_open_databases: int = 32

    # Enforce FOREIGN KEY constraints on every connection
    # SQLite ships with enforcement off; on matches what users expect
    foreign_keys: bool = True

    # If True, loading a database id that has no stored snapshot creates it empty
    # If False, such requests fail with NOT_FOUND
    create_missing: bool = True


# =============================================================================
# SNAPSHOT STORAGE CONFIGURATION
# =============================================================================

class StorageConfig(BaseModel):
    """
    Snapshot persistence configuration.

    Snapshots are full byte images of a database, saved after every
    modifying statement. Stored either in a local directory or in a
    Supabase Storage bucket.
    """

    # Which snapshot store to use: "local" or "supabase"
    backend: SnapshotBackend = SnapshotBackend.LOCAL

    # Directory for the local snapshot store (created on first save)
    snapshot_dir: str = ".snapshots"

    # Supabase project URL (e.g., https://abcdef.supabase.co)
    # Required only when backend is "supabase"
    supabase_url: Optional[str] = None

    # Supabase API key (service_role key recommended for server-side access)
    supabase_key: Optional[str] = None

    # Storage bucket holding database snapshots
    default_bucket: str = "databases"

    # Maximum time (seconds) to establish HTTP connection to Supabase
    connect_timeout_seconds: int = 10

    # Maximum time (seconds) for snapshot upload operations
    upload_timeout_seconds: int = 60

    # Maximum time (seconds) for snapshot download operations
    download_timeout_seconds: int = 60

    # Maximum time (seconds) for write operations (create/update)
    write_timeout_seconds: int = 30

    # Maximum time (seconds) to wait for a connection from the pool
    pool_timeout_seconds: int = 5

    # Maximum total HTTP connections to Supabase
    max_connections: int = 20

    # Maximum idle connections to keep alive
    max_keepalive_connections: int = 5


# =============================================================================
# PIPELINE CONFIGURATION
# =============================================================================

class PipelineConfig(BaseModel):
    """
    Configuration for the agentic query pipeline.

    Controls generation retries, repair attempts, validation thresholds
    and how much of a result set is shown to the analysis step.
    """

    # Total generation attempts for one logical request (first try included)
    # Only transient and quota failures are retried
    max_generation_attempts: int = 3

    # Backoff base: delay after failed attempt k is base ** k seconds (2s, 4s, ...)
    backoff_base_seconds: float = 2.0

    # Number of forced-regeneration (repair) calls allowed when no valid
    # statement can be extracted from a response
    max_forced_regenerations: int = 1

    # Candidate statements must be longer than this many characters
    min_statement_length: int = 10

    # Rows embedded in the analysis prompt
    preview_rows: int = 20

    # Rows listed in the templated summary used when analysis fails
    fallback_preview_rows: int = 5

    # Maximum characters per cell in prompt previews (longer values are truncated)
    max_cell_chars: int = 100

    # Recently executed statements kept in the conversation context
    recent_queries_limit: int = 10

    # Sample rows requested per table in populate mode
    population_rows_per_table: int = 8


# =============================================================================
# LLM CONFIGURATION (OpenRouter)
# =============================================================================

class LLMConfig(BaseModel):
    """
    LLM client configuration for SQL generation and result narration.

    Uses OpenRouter API to access various LLM providers (Claude, GPT-4, Gemini).
    Temperature is kept low for consistent SQL output.
    """

    # OpenRouter API key (get from https://openrouter.ai/keys)
    # Empty key leaves the client disconnected; turns then report credential guidance
    openrouter_api_key: str = ""

    # Default model for SQL generation and analysis
    # Format: "provider/model-name"
    default_model: str = OPENROUTER_LLM_MODELS.GEMINI_25_FLASH

    # Sampling temperature (0.0-1.0)
    # Lower = more deterministic; forced regeneration always uses 0.0
    temperature: float = 0.3

    # Nucleus sampling parameter (0.0-1.0)
    top_p: float = 0.8

    # Maximum tokens in LLM response
    # Analysis narration is longer than SQL; 8192 leaves room for both
    max_tokens: int = 8192

    # Maximum characters allowed in LLM input (prompt + system prompt)
    # Protects against context window overflow; adjust per model limits
    max_input_chars: int = 50000

    # OpenRouter API base URL (don't change unless using proxy)
    base_url: str = OPEN_ROUTER_API_URL

    # Maximum time (seconds) to wait for LLM response
    timeout_seconds: int = 60

    # Retries performed inside the SDK itself
    # Kept at 0: the generation client owns retry/backoff policy
    max_retries: int = 0


# =============================================================================
# SERVER CONFIGURATION
# =============================================================================

class ServerConfig(BaseModel):
    """
    FastAPI/Uvicorn server configuration.

    Used by run_dev.py and run_prod.py scripts.
    """

    # Network interface to bind (0.0.0.0 = all interfaces)
    # Use 127.0.0.1 for local-only access
    host: str = "0.0.0.0"

    # Port number to listen on
    port: int = 8000

    # Python module path for FastAPI app
    # Format: "package.module:app_variable"
    app_module: str = "agentic_sql.main:app"

    # Enable hot reload on code changes (development only)
    reload: bool = True

    # Number of worker processes
    # Databases live in process memory, so a single worker keeps them consistent
    workers: int = 1


# =============================================================================
# APPLICATION CONFIGURATION
# =============================================================================

class AppConfig(BaseModel):
    """
    General application settings.

    Controls logging verbosity and other app-wide behavior.
    """

    # Logging level: DEBUG, INFO, WARNING, ERROR
    # DEBUG: verbose, includes SQL and prompts (development)
    # INFO: normal operation logging (production)
    log_level: LogLevel = LogLevel.INFO

    # Log rendering: "json" (pretty JSON, default) or "console" (colored one-liners)
    log_format: Literal["json", "console"] = "json"


# =============================================================================
# ROOT SETTINGS (Environment Loading)
# =============================================================================

class Settings(BaseSettings):
    """
    Root settings class that loads all configuration from environment.

    Environment variables use "__" (double underscore) as nested delimiter.
    Example: LLM__OPENROUTER_API_KEY sets settings.llm.openrouter_api_key

    Every section has defaults, so the application starts without any
    environment; generation stays unavailable until an API key is set.
    """

    # LLM client settings (OpenRouter)
    llm: LLMConfig = LLMConfig()

    # Embedded engine settings
    engine: EngineConfig = EngineConfig()

    # Snapshot persistence
    storage: StorageConfig = StorageConfig()

    # Agentic pipeline settings
    pipeline: PipelineConfig = PipelineConfig()

    # FastAPI server settings
    server: ServerConfig = ServerConfig()

    # Application-wide settings
    app: AppConfig = AppConfig()

    model_config = SettingsConfigDict(
        env_file=".env",            # Load from .env file in project root
        env_file_encoding="utf-8",  # UTF-8 encoding for .env file
        case_sensitive=False,       # ENV_VAR and env_var are equivalent
        env_nested_delimiter="__",  # Use __ for nested config (LLM__TEMPERATURE)
        extra="ignore",
    )


# =============================================================================
# SINGLETON ACCESSOR
# =============================================================================

@lru_cache
def get_settings() -> Settings:
    """
    Get cached Settings instance (singleton pattern).

    Settings are loaded once and cached for the lifetime of the application.

    Returns:
        Settings instance with all configuration loaded from environment
    """
    return Settings()
