"""
Database Service for database lifecycle and direct statement execution.

This service sits between the HTTP surface and the engine:
- Opening databases (empty, or restored from the snapshot store)
- Direct multi-statement execution, persisting after modifications
- Building the ConversationContext a chat turn starts from
- Running chat turns through the ExecutionCoordinator

Recently executed statements are kept per database in a bounded log
so each turn's context can show them to the model.

Work that changes a database and then saves it (chat turns, direct
scripts, deletion) runs under a per-database lock, so an older image is
never saved over a newer one. Opening a database takes the same lock.
"""

import asyncio
import time
from collections import deque
from typing import Deque, Dict, List, Optional

from agentic_sql.config import EngineConfig, PipelineConfig
from agentic_sql.domain.context import ColumnInfo, ConversationContext, ForeignKeyInfo, IndexInfo
from agentic_sql.domain.errors import BadRequestError, DatabaseQueryError, NotFoundError
from agentic_sql.domain.requests import ChatRequest
from agentic_sql.domain.responses import (
    ChatResponse,
    DatabaseInfo,
    DatabaseListResponse,
    ExecuteResponse,
)
from agentic_sql.infrastructure.engine_client import EngineClient, split_statements
from agentic_sql.repositories.snapshot_store import SnapshotStore
from agentic_sql.repositories.sql_execution import is_modifying
from agentic_sql.services.execution_coordinator import ExecutionCoordinator
from agentic_sql.utils.logging import get_module_logger
from agentic_sql.utils.tracing import current_trace_id, get_trace_id

logger = get_module_logger()


class DatabaseService:
    """
    Service for database lifecycle, direct execution and chat turns.

    Usage:
        service = DatabaseService(engine_client, snapshot_store, coordinator, engine_config, pipeline_config)
        await service.create_database("sales", name="Sales playground")
        await service.execute_script("sales", "CREATE TABLE t (id INTEGER);")
        response = await service.chat("sales", ChatRequest(question="How many rows are in t?"))
    """

    def __init__(
        self,
        engine_client: EngineClient,
        snapshot_store: SnapshotStore,
        coordinator: ExecutionCoordinator,
        engine_config: EngineConfig,
        pipeline_config: PipelineConfig,
    ):
        self.engine_client = engine_client
        self.snapshot_store = snapshot_store
        self.coordinator = coordinator
        self.engine_config = engine_config
        self.pipeline_config = pipeline_config

        self._names: Dict[str, str] = {}
        self._recent_queries: Dict[str, Deque[str]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

        logger.info("DatabaseService initialized")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def _lock(self, database_id: str) -> asyncio.Lock:
        lock = self._locks.get(database_id)
        if lock is None:
            lock = self._locks[database_id] = asyncio.Lock()
        return lock

    async def create_database(self, database_id: str, name: Optional[str] = None) -> DatabaseInfo:
        """
        Open a database, restoring it from its stored snapshot when one exists.

        Raises:
            ConflictError: If the database is already open
        """
        async with self._lock(database_id):
            return await self._open(database_id, name)

    async def _open(self, database_id: str, name: Optional[str]) -> DatabaseInfo:
        trace_id = current_trace_id()
        restored = await self.snapshot_store.exists(database_id)

        if restored:
            snapshot = await self.snapshot_store.load(database_id)
            await self.engine_client.create_database(database_id, snapshot)
            self._names[database_id] = name or await self._stored_name(database_id)
        else:
            await self.engine_client.create_database(database_id)
            self._names[database_id] = name or database_id
            # Save the empty image so the database is listed from the start
            await self._persist(database_id)

        tables = await self.engine_client.introspect_tables(database_id)
        logger.info(
            "Database ready",
            database_id=database_id,
            restored=restored,
            table_count=len(tables),
            trace_id=trace_id,
        )
        return DatabaseInfo(
            database_id=database_id,
            name=self._names[database_id],
            tables=tables,
            restored=restored,
        )

    async def ensure_open(self, database_id: str) -> None:
        """
        Make sure a database is open before it is used.

        Restores from the snapshot store when possible; otherwise creates it
        empty if `create_missing` is set.

        Raises:
            NotFoundError: If the database is neither open nor stored and
                creating missing databases is disabled
        """
        if self.engine_client.has_database(database_id):
            return

        async with self._lock(database_id):
            # Another request may have opened it while this one waited
            if self.engine_client.has_database(database_id):
                return
            if not await self.snapshot_store.exists(database_id) and not self.engine_config.create_missing:
                raise NotFoundError(
                    f"Database '{database_id}' not found",
                    details={"database_id": database_id}
                )
            await self._open(database_id, None)

    async def _stored_name(self, database_id: str) -> str:
        for record in await self.snapshot_store.list():
            if record.database_id == database_id:
                return record.name
        return database_id

    async def list_databases(self) -> DatabaseListResponse:
        return DatabaseListResponse(
            open_databases=self.engine_client.list_databases(),
            snapshots=await self.snapshot_store.list(),
        )

    async def delete_database(self, database_id: str) -> None:
        """
        Close a database and delete its stored snapshot.

        Raises:
            NotFoundError: If the database is neither open nor stored
        """
        async with self._lock(database_id):
            was_open = self.engine_client.has_database(database_id)
            if was_open:
                await self.engine_client.close_database(database_id)

            stored = await self.snapshot_store.exists(database_id)
            if stored:
                await self.snapshot_store.delete(database_id)

        if not was_open and not stored:
            raise NotFoundError(
                f"Database '{database_id}' not found",
                details={"database_id": database_id}
            )

        self._names.pop(database_id, None)
        self._recent_queries.pop(database_id, None)
        logger.info(
            "Database deleted",
            database_id=database_id,
            was_open=was_open,
            snapshot_deleted=stored,
            trace_id=current_trace_id(),
        )

    # =========================================================================
    # Introspection
    # =========================================================================

    async def list_tables(self, database_id: str) -> List[str]:
        await self.ensure_open(database_id)
        return await self.engine_client.introspect_tables(database_id)

    async def table_schema(self, database_id: str, table: str) -> List[ColumnInfo]:
        await self.ensure_open(database_id)
        return await self.engine_client.introspect_schema(database_id, table)

    async def export(self, database_id: str) -> bytes:
        await self.ensure_open(database_id)
        return await self.engine_client.export_snapshot(database_id)

    def recent_queries(self, database_id: str) -> List[str]:
        return list(self._recent_queries.get(database_id, ()))

    def _record_queries(self, database_id: str, statements: List[str]) -> None:
        log = self._recent_queries.get(database_id)
        if log is None:
            log = deque(maxlen=max(self.pipeline_config.recent_queries_limit, 0))
            self._recent_queries[database_id] = log
        log.extend(statements)

    async def build_context(self, database_id: str, selected_table: Optional[str] = None) -> ConversationContext:
        """
        Snapshot the database for a chat turn.

        Schemas, foreign keys and indexes come from live introspection, in
        table order; the recent query log is trimmed to the configured bound.
        """
        await self.ensure_open(database_id)
        return await self._collect_context(database_id, selected_table)

    async def _collect_context(self, database_id: str, selected_table: Optional[str]) -> ConversationContext:
        tables = await self.engine_client.introspect_tables(database_id)

        schemas: Dict[str, List[ColumnInfo]] = {}
        foreign_keys: Dict[str, List[ForeignKeyInfo]] = {}
        indexes: Dict[str, List[IndexInfo]] = {}
        for table in tables:
            schemas[table] = await self.engine_client.introspect_schema(database_id, table)
            table_foreign_keys = await self.engine_client.introspect_foreign_keys(database_id, table)
            if table_foreign_keys:
                foreign_keys[table] = table_foreign_keys
            table_indexes = await self.engine_client.introspect_indexes(database_id, table)
            if table_indexes:
                indexes[table] = table_indexes

        context = ConversationContext(
            database_id=database_id,
            database_name=self._names.get(database_id),
            selected_table=selected_table,
            schemas=schemas,
            tables=tables,
            foreign_keys=foreign_keys,
            indexes=indexes,
            recent_queries=self.recent_queries(database_id),
        )
        return context.with_recent_queries_limit(self.pipeline_config.recent_queries_limit)

    # =========================================================================
    # Direct execution
    # =========================================================================

    async def _persist(self, database_id: str) -> Optional[str]:
        """Export and save the database. Returns a warning instead of raising."""
        try:
            data = await self.engine_client.export_snapshot(database_id)
            await self.snapshot_store.save(database_id, self._names.get(database_id), data)
        except Exception as e:
            logger.error(
                "Persisting database snapshot failed",
                database_id=database_id,
                error=str(e),
                error_type=type(e).__name__,
                trace_id=current_trace_id(),
            )
            return f"Changes were applied but could not be saved: {e}"
        return None

    async def execute_script(self, database_id: str, sql: str) -> ExecuteResponse:
        """
        Run a ';'-separated script in order.

        When any statement modifies the database, the database is persisted
        afterwards, also when a later statement failed (earlier statements
        stay applied).

        Raises:
            BadRequestError: If the script holds no statements
            DatabaseQueryError: First engine error, engine text verbatim
        """
        trace_id = get_trace_id()
        statements = split_statements(sql)
        if not statements:
            raise BadRequestError("SQL script contains no statements")

        await self.ensure_open(database_id)
        modifying = any(is_modifying(statement) for statement in statements)

        warnings: List[str] = []
        persisted: Optional[bool] = None
        async with self._lock(database_id):
            start = time.perf_counter()
            try:
                results = await self.engine_client.execute_sequence(database_id, sql)
            except DatabaseQueryError:
                if modifying:
                    await self._persist(database_id)
                raise
            elapsed_ms = (time.perf_counter() - start) * 1000

            self._record_queries(database_id, statements)

            if modifying:
                warning = await self._persist(database_id)
                persisted = warning is None
                if warning:
                    warnings.append(warning)

        logger.info(
            "Script executed",
            database_id=database_id,
            statement_count=len(results),
            modifying=modifying,
            persisted=persisted,
            trace_id=trace_id,
        )

        return ExecuteResponse(
            trace_id=trace_id,
            results=results,
            statement_count=len(results),
            modifying=modifying,
            persisted=persisted,
            warnings=warnings,
            execution_time_ms=elapsed_ms,
        )

    # =========================================================================
    # Chat
    # =========================================================================

    async def chat(self, database_id: str, request: ChatRequest) -> ChatResponse:
        """
        Run one chat turn against a database and report invalidated tables.

        Turns on the same database run one at a time, from context building
        through persistence, so each turn sees the previous turn's changes.
        """
        await self.ensure_open(database_id)
        invalidated: List[str] = []

        async with self._lock(database_id):
            context = await self._collect_context(database_id, request.selected_table)
            result = await self.coordinator.run_turn(
                request.question,
                context,
                mode=request.mode,
                on_table_invalidated=invalidated.append,
            )

            if result.execution is not None and result.execution.succeeded:
                self._record_queries(database_id, split_statements(result.execution.statement))

        return ChatResponse(result=result, invalidated_tables=invalidated)
