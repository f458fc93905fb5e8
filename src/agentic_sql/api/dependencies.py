"""
FastAPI dependencies for dependency injection.

Everything here is read from app.state, where the lifespan handler
stores the clients and services it builds at startup:
- Services (DatabaseService) for business logic
- Settings for configuration
- Optional client dependencies for health checks only

Routes should depend on services, not infrastructure clients directly.
"""

from typing import Annotated

from fastapi import Depends, Request

from ..config import Settings
from ..domain.errors import ServiceUnavailableError
from ..infrastructure.engine_client import EngineClient
from ..infrastructure.llm_client import LLMClient
from ..repositories.snapshot_store import SnapshotStore
from ..services.database_service import DatabaseService


def get_settings(request: Request) -> Settings:
    """
    Dependency to get the settings from app state.

    Raises:
        RuntimeError: If settings are not initialized
    """
    if not hasattr(request.app.state, "settings"):
        raise RuntimeError("Settings not initialized")

    return request.app.state.settings


# Optional dependency getters for health checks
def get_engine_client_optional(request: Request) -> EngineClient | None:
    """Get engine client if available, None otherwise."""
    return getattr(request.app.state, "engine_client", None)


def get_llm_client_optional(request: Request) -> LLMClient | None:
    """Get LLM client if available, None otherwise."""
    return getattr(request.app.state, "llm_client", None)


def get_snapshot_store_optional(request: Request) -> SnapshotStore | None:
    """Get snapshot store if available, None otherwise."""
    return getattr(request.app.state, "snapshot_store", None)


def get_database_service(request: Request) -> DatabaseService:
    """
    Dependency to get the DatabaseService built at startup.

    DatabaseService (lifecycle, direct execution, chat)
      ├── EngineClient (embedded databases)
      ├── SnapshotStore (persistence sink)
      └── ExecutionCoordinator (agentic turns)
            ├── GenerationClient → LLMClient
            ├── StatementExtractor
            ├── StatementValidator
            └── SQLExecutionRepository → EngineClient

    The service is shared: recent query logs and open databases live in it
    and in the engine client for the lifetime of the process.

    Raises:
        ServiceUnavailableError: If startup has not finished
    """
    service = getattr(request.app.state, "database_service", None)
    if service is None:
        raise ServiceUnavailableError("Database service not initialized")
    return service


# Type aliases for cleaner dependency injection
# Service dependencies (used in API routes)
DatabaseServiceDep = Annotated[DatabaseService, Depends(get_database_service)]
SettingsDep = Annotated[Settings, Depends(get_settings)]

# Optional client dependencies (used in health checks)
OptionalEngineClientDep = Annotated[EngineClient | None, Depends(get_engine_client_optional)]
OptionalLLMClientDep = Annotated[LLMClient | None, Depends(get_llm_client_optional)]
OptionalSnapshotStoreDep = Annotated[SnapshotStore | None, Depends(get_snapshot_store_optional)]
