from enum import Enum


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

class OPENROUTER_LLM_MODELS(str, Enum):
    # OpenAI models
    GPT_4O = "openai/gpt-4o"
    GPT_4O_MINI = "openai/gpt-4o-mini"

    # Anthropic Claude models
    ANTHROPIC_SONNET_45 = "anthropic/claude-4.5-sonnet"
    ANTHROPIC_HAIKU_45 = "anthropic/claude-haiku-4.5"

    # Google Gemini models
    GEMINI_25_FLASH = "google/gemini-2.5-flash"
    GEMINI_3_FLASH_PREVIEW = "google/gemini-3-flash-preview"

class SnapshotBackend(str, Enum):
    LOCAL = "local"
    SUPABASE = "supabase"

OPEN_ROUTER_API_URL = "https://openrouter.ai/api/v1"

# -------------------------
# Engine Constants
# -------------------------

# Keywords whose presence marks a statement as modifying persisted data or schema
MODIFYING_KEYWORDS = ("CREATE", "INSERT", "UPDATE", "DELETE", "DROP", "ALTER")

# File suffixes used by the local snapshot store
SNAPSHOT_FILE_SUFFIX = ".sqlite"
SNAPSHOT_METADATA_SUFFIX = ".json"
