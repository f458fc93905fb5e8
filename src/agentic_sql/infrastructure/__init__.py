"""
Infrastructure layer for external integrations.

This module contains clients for the embedded SQLite engine, the LLM
provider and Supabase Storage.
"""

from .engine_client import EngineClient
from .llm_client import LLMClient
from .storage_client import StorageClient

__all__ = ["EngineClient", "LLMClient", "StorageClient"]
