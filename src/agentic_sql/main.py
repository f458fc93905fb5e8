"""
Main FastAPI application for the agentic SQL assistant.

This module sets up the FastAPI application with logging, tracing and
error handling middleware, builds the service graph at startup and
exposes the database and chat routes.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Union

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from .utils.logging import configure_logging, get_module_logger
from .utils.tracing import get_trace_id
from .config import get_settings
from .config_constants import SNAPSHOT_FILE_SUFFIX
from .domain.requests import ChatRequest, CreateDatabaseRequest, ExecuteRequest
from .domain.responses import (
    ChatResponse,
    DatabaseInfo,
    DatabaseListResponse,
    ExecuteResponse,
    HealthResponse,
    TableSchemaResponse,
    TablesResponse,
)
from .api.middleware import (
    trace_id_middleware,
    logging_middleware,
    register_exception_handlers,
    ERROR_RESPONSES,
)
from .api.dependencies import (
    DatabaseServiceDep,
    SettingsDep,
    OptionalEngineClientDep,
    OptionalLLMClientDep,
    OptionalSnapshotStoreDep,
)
from .infrastructure.engine_client import EngineClient
from .infrastructure.llm_client import LLMClient
from .repositories.generation import GenerationClient
from .repositories.prompt_builder import PromptBuilder
from .repositories.snapshot_store import create_snapshot_store
from .repositories.sql_execution import SQLExecutionRepository
from .repositories.sql_extraction import StatementExtractor
from .repositories.sql_validation import StatementValidator
from .services.database_service import DatabaseService
from .services.execution_coordinator import ExecutionCoordinator


APP_VERSION = "0.1.0"

# Configure logging on module import
configure_logging()
logger = get_module_logger()


def _errors(*codes: int) -> Dict:
    return {code: ERROR_RESPONSES[code] for code in codes}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting agentic SQL API server", version=APP_VERSION)

    settings = get_settings()
    app.state.settings = settings
    logger.info("Settings loaded successfully")

    engine_client = EngineClient(settings.engine)
    await engine_client.connect()

    # An empty API key leaves the client disconnected; turns report credential guidance
    llm_client = LLMClient(settings.llm)
    try:
        await llm_client.connect()
    except Exception as e:
        logger.error(f"Failed to connect LLM client: {e}")
        # Continue without LLM - health check will report status

    snapshot_store = create_snapshot_store(settings.storage)
    try:
        await snapshot_store.connect()
        logger.info("Snapshot store ready", backend=snapshot_store.backend.value)
    except Exception as e:
        logger.error(f"Failed to connect snapshot store: {e}")
        # Continue without persistence - saves fail with warnings, health check reports status

    pipeline_config = settings.pipeline
    coordinator = ExecutionCoordinator(
        generation_client=GenerationClient(llm_client, pipeline_config),
        statement_extractor=StatementExtractor(),
        statement_validator=StatementValidator(pipeline_config),
        execution_repository=SQLExecutionRepository(engine_client),
        engine_client=engine_client,
        snapshot_store=snapshot_store,
        prompt_builder=PromptBuilder(pipeline_config),
        config=pipeline_config,
    )

    app.state.engine_client = engine_client
    app.state.llm_client = llm_client
    app.state.snapshot_store = snapshot_store
    app.state.database_service = DatabaseService(
        engine_client=engine_client,
        snapshot_store=snapshot_store,
        coordinator=coordinator,
        engine_config=settings.engine,
        pipeline_config=pipeline_config,
    )

    yield

    logger.info("Shutting down agentic SQL API server")

    await app.state.engine_client.close()
    logger.info("Engine client closed")

    await app.state.llm_client.close()
    logger.info("LLM client closed")

    await app.state.snapshot_store.close()
    logger.info("Snapshot store closed")


# Create FastAPI application
app = FastAPI(
    title="Agentic SQL API",
    description="Natural language chat over embedded SQLite databases with automatic execution and analysis",
    version=APP_VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Last registered = first executed
app.middleware("http")(logging_middleware)
app.middleware("http")(trace_id_middleware)

register_exception_handlers(app)


# API Routes
@app.get("/", tags=["Root"])
async def root(settings: SettingsDep) -> Dict[str, Union[str, None]]:
    """
    Root endpoint returning basic API information.

    **Response**: Dict with message, version, trace_id, log_level
    """
    trace_id = get_trace_id()
    logger.info("Root endpoint accessed", trace_id=trace_id)

    return {
        "message": "Agentic SQL API",
        "version": APP_VERSION,
        "trace_id": trace_id,
        "log_level": settings.app.log_level
    }


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health(
    engine_client: OptionalEngineClientDep,
    llm_client: OptionalLLMClientDep,
    snapshot_store: OptionalSnapshotStoreDep,
) -> HealthResponse:
    """
    Health check endpoint with system status.

    **Response Model**: `HealthResponse`
    - status: Overall health (healthy/degraded)
    - engine_status, open_databases, llm_service_status, snapshot_store_status
    """
    trace_id = get_trace_id()
    logger.info("Health check endpoint accessed", trace_id=trace_id)

    engine_status = "not_configured"
    open_databases = 0
    if engine_client:
        engine_health = await engine_client.health_check()
        engine_status = engine_health.get("status", "unknown")
        open_databases = len(engine_client.list_databases())

    llm_status = "not_configured"
    if llm_client and llm_client.has_credentials:
        llm_status = "healthy" if llm_client.is_connected() else "unhealthy"

    store_status = "not_configured"
    if snapshot_store:
        store_health = await snapshot_store.health_check()
        store_status = store_health.get("status", "unknown")

    overall_status = "healthy" if (
        engine_status == "healthy" and
        llm_status == "healthy" and
        store_status == "healthy"
    ) else "degraded"

    return HealthResponse(
        status=overall_status,
        timestamp=datetime.now(timezone.utc),
        version=APP_VERSION,
        engine_status=engine_status,
        open_databases=open_databases,
        llm_service_status=llm_status,
        snapshot_store_status=store_status,
    )


# -------------------------
# Database Endpoints
# -------------------------

@app.post(
    "/databases",
    response_model=DatabaseInfo,
    status_code=201,
    tags=["Databases"],
    responses=_errors(409, 422, 500, 503),
)
async def create_database(
    request: CreateDatabaseRequest,
    database_service: DatabaseServiceDep,
) -> DatabaseInfo:
    """
    Open a database.

    When a snapshot is stored under the id, the database is restored from
    it (`restored=true`); otherwise an empty database is created and saved.

    **Possible Errors**:
    - 409: Database already open
    - 500: Stored snapshot could not be loaded
    - 503: Open-database limit reached or snapshot store unavailable
    """
    trace_id = get_trace_id()
    logger.info("Create database requested", database_id=request.database_id, trace_id=trace_id)
    return await database_service.create_database(request.database_id, request.name)


@app.get("/databases", response_model=DatabaseListResponse, tags=["Databases"])
async def list_databases(database_service: DatabaseServiceDep) -> DatabaseListResponse:
    """List open databases and the snapshots in the store, most recently modified first."""
    return await database_service.list_databases()


@app.delete("/databases/{database_id}", status_code=204, tags=["Databases"], responses=_errors(404, 503))
async def delete_database(database_id: str, database_service: DatabaseServiceDep) -> Response:
    """Close a database and delete its stored snapshot."""
    trace_id = get_trace_id()
    logger.info("Delete database requested", database_id=database_id, trace_id=trace_id)
    await database_service.delete_database(database_id)
    return Response(status_code=204)


@app.get(
    "/databases/{database_id}/tables",
    response_model=TablesResponse,
    tags=["Databases"],
    responses=_errors(404),
)
async def list_tables(database_id: str, database_service: DatabaseServiceDep) -> TablesResponse:
    """List user tables of a database, sorted by name."""
    tables = await database_service.list_tables(database_id)
    return TablesResponse(database_id=database_id, tables=tables)


@app.get(
    "/databases/{database_id}/tables/{table}/schema",
    response_model=TableSchemaResponse,
    tags=["Databases"],
    responses=_errors(404),
)
async def table_schema(database_id: str, table: str, database_service: DatabaseServiceDep) -> TableSchemaResponse:
    """Columns of a table in declaration order."""
    columns = await database_service.table_schema(database_id, table)
    return TableSchemaResponse(database_id=database_id, table=table, columns=columns)


@app.post(
    "/databases/{database_id}/execute",
    response_model=ExecuteResponse,
    tags=["Execution"],
    responses=_errors(400, 404, 422),
)
async def execute(
    database_id: str,
    request: ExecuteRequest,
    database_service: DatabaseServiceDep,
) -> ExecuteResponse:
    """
    Execute one or more ';'-separated statements directly.

    Statements run in order and the first engine error stops the script
    (statements before it stay applied). The database is saved after any
    modifying script; a failed save is reported in `warnings`.

    **Possible Errors**:
    - 400: Empty script, or the engine rejected a statement (engine text verbatim)
    - 404: Database not found
    """
    trace_id = get_trace_id()
    logger.info("Direct execution requested", database_id=database_id, sql_length=len(request.sql), trace_id=trace_id)
    return await database_service.execute_script(database_id, request.sql)


@app.get(
    "/databases/{database_id}/export",
    tags=["Databases"],
    responses={200: {"content": {"application/octet-stream": {}}}, **_errors(404, 500)},
)
async def export_database(database_id: str, database_service: DatabaseServiceDep) -> Response:
    """Download the database as a SQLite file."""
    data = await database_service.export(database_id)
    return Response(
        content=data,
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{database_id}{SNAPSHOT_FILE_SUFFIX}"'},
    )


# -------------------------
# Chat Endpoint
# -------------------------

@app.post(
    "/databases/{database_id}/chat",
    response_model=ChatResponse,
    tags=["Chat"],
    responses=_errors(404, 422),
)
async def chat(
    database_id: str,
    request: ChatRequest,
    database_service: DatabaseServiceDep,
) -> ChatResponse:
    """
    Run one chat turn against a database.

    The server builds the conversation context from live introspection
    plus the recent query log, then:

    1. **Generation**: one logical LLM call (transient and quota failures retried with backoff)
    2. **Extraction**: statement recovered by the first matching strategy
    3. **Validation**: plausibility gate; one forced regeneration when nothing valid is found
    4. **Execution**: at most one statement, engine errors reported verbatim
    5. **Persistence**: database saved after modifying statements
    6. **Analysis**: results narrated, or a templated summary when that call fails

    In `ask` mode the assistant only explains and suggests a query.

    Generation and execution failures are part of the result (`result.status`),
    not HTTP errors.

    **Possible Errors**:
    - 404: Database not found
    - 422: Invalid request
    """
    trace_id = get_trace_id()
    logger.info(
        "Chat turn requested",
        database_id=database_id,
        mode=request.mode.value,
        question_length=len(request.question),
        trace_id=trace_id,
    )

    response = await database_service.chat(database_id, request)

    logger.info(
        "Chat turn completed",
        database_id=database_id,
        status=response.result.status.value,
        invalidated_tables=response.invalidated_tables,
        trace_id=trace_id,
    )
    return response


# Use scripts/run_dev.py for development or uvicorn agentic_sql.main:app
