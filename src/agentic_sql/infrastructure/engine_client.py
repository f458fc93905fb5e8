"""
Embedded SQLite engine client.

This module keeps one in-memory SQLite connection per database id and
is the only code that talks to the engine. Each database has its own
asyncio.Lock, so statements against one database run one at a time
while different databases stay independent. Blocking engine calls run
in a worker thread.
"""

import asyncio
import sqlite3
import time
from typing import Any, Callable, Dict, List, Optional, TypeVar

from ..config import EngineConfig
from ..utils.logging import get_module_logger
from ..utils.tracing import current_trace_id
from ..domain.context import ColumnInfo, ForeignKeyInfo, IndexInfo
from ..domain.execution import QueryResult
from ..domain.errors import (
    ConflictError,
    DatabaseError,
    DatabaseQueryError,
    NotFoundError,
    SnapshotError,
)


logger = get_module_logger()

T = TypeVar("T")

_LIST_TABLES_SQL = (
    "SELECT name FROM sqlite_master "
    "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' "
    "ORDER BY name"
)


def quote_identifier(name: str) -> str:
    """Quote a table or column name for SQLite."""
    return '"' + name.replace('"', '""') + '"'


def _is_blank(sql: str) -> bool:
    """True when the text holds nothing but whitespace, ';' and line comments."""
    for line in sql.splitlines():
        stripped = line.strip().strip(";").strip()
        if stripped and not stripped.startswith("--"):
            return False
    return True


def split_statements(script: str) -> List[str]:
    """
    Split a script into complete statements.

    A ';' only ends a statement when sqlite3.complete_statement agrees, so
    semicolons inside string literals and trigger bodies do not split. A
    trailing statement without ';' is kept. Blank and comment-only pieces
    are dropped.
    """
    statements: List[str] = []
    buffer = ""
    for char in script:
        buffer += char
        if char == ";" and sqlite3.complete_statement(buffer):
            if not _is_blank(buffer):
                statements.append(buffer.strip())
            buffer = ""
    if not _is_blank(buffer):
        statements.append(buffer.strip())
    return statements


def _run_statement(conn: sqlite3.Connection, statement: str) -> QueryResult:
    cursor = conn.execute(statement)
    try:
        columns = [col[0] for col in cursor.description] if cursor.description else []
        rows = [tuple(row) for row in cursor.fetchall()]
    finally:
        cursor.close()
    return QueryResult(columns=columns, rows=rows)


def _run_sequence(conn: sqlite3.Connection, statements: List[str]) -> List[QueryResult]:
    return [_run_statement(conn, statement) for statement in statements]


def _list_tables(conn: sqlite3.Connection) -> List[str]:
    return [row[0] for row in conn.execute(_LIST_TABLES_SQL).fetchall()]


def _table_info(conn: sqlite3.Connection, table: str) -> List[ColumnInfo]:
    rows = conn.execute(f"PRAGMA table_info({quote_identifier(table)})").fetchall()
    return [
        ColumnInfo(
            cid=row[0],
            name=row[1],
            type=row[2] or "",
            not_null=bool(row[3]),
            primary_key=bool(row[5]),
            default_value=row[4],
        )
        for row in rows
    ]


def _foreign_key_list(conn: sqlite3.Connection, table: str) -> List[ForeignKeyInfo]:
    # Rows: id, seq, table, from, to, on_update, on_delete, match
    rows = conn.execute(f"PRAGMA foreign_key_list({quote_identifier(table)})").fetchall()
    return [
        ForeignKeyInfo(column=row[3], ref_table=row[2], ref_column=row[4] or None)
        for row in sorted(rows, key=lambda row: (row[0], row[1]))
    ]


def _index_list(conn: sqlite3.Connection, table: str) -> List[IndexInfo]:
    """Indexes of a table, skipping the implicit primary-key index."""
    indexes = []
    # Rows: seq, name, unique, origin, partial
    for row in conn.execute(f"PRAGMA index_list({quote_identifier(table)})").fetchall():
        name, unique, origin = row[1], bool(row[2]), row[3]
        if origin == "pk":
            continue
        info = conn.execute(f"PRAGMA index_info({quote_identifier(name)})").fetchall()
        columns = [col[2] or "<expression>" for col in sorted(info)]
        indexes.append(IndexInfo(name=name, unique=unique, columns=columns))
    return sorted(indexes, key=lambda index: index.name)


def _serialize(conn: sqlite3.Connection) -> bytes:
    return conn.serialize()


def _select_one() -> int:
    conn = sqlite3.connect(":memory:")
    try:
        return conn.execute("SELECT 1").fetchone()[0]
    finally:
        conn.close()


class EngineClient:
    """
    Registry of embedded SQLite databases keyed by database id.

    This is a thin infrastructure layer: it executes statements, introspects
    tables and exports/restores byte images. Deciding what to execute,
    when to persist and how to present errors belongs to the Repository
    and Service layers.

    Engine errors surface as DatabaseQueryError carrying the engine's
    message unaltered.

    Usage:
        client = EngineClient(config)
        await client.connect()

        await client.create_database("sales")
        await client.execute_sequence("sales", "CREATE TABLE t (id INTEGER); INSERT INTO t VALUES (1);")
        result = await client.execute("sales", "SELECT * FROM t")

        image = await client.export_snapshot("sales")

        await client.close()
    """

    def __init__(self, config: EngineConfig):
        """
        Initialize engine client with configuration.

        Args:
            config: Engine configuration
        """
        self.config = config
        self._connections: Dict[str, sqlite3.Connection] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._registry_lock = asyncio.Lock()
        self._is_connected = False

        logger.info(
            "EngineClient initialized",
            sqlite_version=sqlite3.sqlite_version,
            max_open_databases=config.max_open_databases,
            foreign_keys=config.foreign_keys,
            trace_id=current_trace_id()
        )

    async def connect(self) -> None:
        """Mark the engine ready to open databases."""
        if self._is_connected:
            logger.warning("Engine client already connected", trace_id=current_trace_id())
            return
        self._is_connected = True
        logger.info("Engine client ready", trace_id=current_trace_id())

    async def close(self) -> None:
        """Close every open database and release resources."""
        trace_id = current_trace_id()
        logger.info("Closing engine client", open_databases=len(self._connections), trace_id=trace_id)

        await self.close_all()

        self._is_connected = False
        logger.info("Engine client closed", trace_id=trace_id)

    async def close_all(self) -> int:
        """Close every open database; the client stays usable. Returns the count closed."""
        async with self._registry_lock:
            database_ids = list(self._connections)
            for database_id in database_ids:
                await self._close_locked(database_id)
        return len(database_ids)

    def is_connected(self) -> bool:
        """Check if the engine client is ready."""
        return self._is_connected

    async def health_check(self) -> Dict[str, Any]:
        """
        Perform health check on the embedded engine.

        Returns:
            Dictionary with status and engine details
        """
        if not self.is_connected():
            return {
                "status": "unhealthy",
                "connected": False,
                "error": "Engine client not connected"
            }

        try:
            if await asyncio.to_thread(_select_one) != 1:
                return {"status": "unhealthy", "connected": True, "error": "Health query failed"}
            return {
                "status": "healthy",
                "connected": True,
                "sqlite_version": sqlite3.sqlite_version,
                "open_databases": len(self._connections)
            }
        except sqlite3.Error as e:
            logger.error("Engine health check failed", error=str(e), trace_id=current_trace_id())
            return {"status": "unhealthy", "connected": True, "error": str(e)}

    # -------------------------------------------------------------------------
    # Database lifecycle
    # -------------------------------------------------------------------------

    def has_database(self, database_id: str) -> bool:
        return database_id in self._connections

    def list_databases(self) -> List[str]:
        return sorted(self._connections)

    async def create_database(self, database_id: str, snapshot: Optional[bytes] = None) -> None:
        """
        Open a database, empty or reconstructed from a byte image.

        Raises:
            ConflictError: If the id is already open
            DatabaseError: If the open-database limit is reached
            SnapshotError: If the image cannot be loaded
        """
        trace_id = current_trace_id()

        async with self._registry_lock:
            if database_id in self._connections:
                raise ConflictError(
                    f"Database '{database_id}' is already open",
                    details={"database_id": database_id}
                )
            if len(self._connections) >= self.config.max_open_databases:
                raise DatabaseError(
                    f"Too many open databases (limit {self.config.max_open_databases})",
                    details={"database_id": database_id}
                )

            conn = await asyncio.to_thread(self._open_connection, snapshot)
            self._connections[database_id] = conn
            self._locks[database_id] = asyncio.Lock()

        logger.info(
            "Database opened",
            database_id=database_id,
            restored=snapshot is not None,
            snapshot_bytes=len(snapshot) if snapshot else 0,
            trace_id=trace_id
        )

    def _open_connection(self, snapshot: Optional[bytes]) -> sqlite3.Connection:
        conn = sqlite3.connect(":memory:", check_same_thread=False, isolation_level=None)
        try:
            if snapshot is not None:
                conn.deserialize(snapshot)
                # deserialize() is lazy; touch the schema to surface a bad image now
                conn.execute("SELECT count(*) FROM sqlite_master").fetchone()
            else:
                # Write page 1; an empty database cannot be serialized without it
                conn.execute("PRAGMA user_version = 0")
            if self.config.foreign_keys:
                conn.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as e:
            conn.close()
            raise SnapshotError(f"Failed to load database snapshot: {e}") from e
        return conn

    async def close_database(self, database_id: str) -> None:
        """
        Close and forget an open database.

        Raises:
            NotFoundError: If the id is not open
        """
        async with self._registry_lock:
            if database_id not in self._connections:
                raise NotFoundError(
                    f"Database '{database_id}' is not open",
                    details={"database_id": database_id}
                )
            await self._close_locked(database_id)

        logger.info("Database closed", database_id=database_id, trace_id=current_trace_id())

    async def _close_locked(self, database_id: str) -> None:
        lock = self._locks[database_id]
        async with lock:
            conn = self._connections.pop(database_id)
            self._locks.pop(database_id, None)
            await asyncio.to_thread(conn.close)

    # -------------------------------------------------------------------------
    # Statements and introspection
    # -------------------------------------------------------------------------

    async def _run(self, database_id: str, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking engine call while holding the database's lock."""
        conn = self._connections.get(database_id)
        lock = self._locks.get(database_id)
        if conn is None or lock is None:
            raise NotFoundError(
                f"Database '{database_id}' is not open",
                details={"database_id": database_id}
            )

        async with lock:
            # The database may have been closed while waiting for the lock
            if self._connections.get(database_id) is not conn:
                raise NotFoundError(
                    f"Database '{database_id}' is not open",
                    details={"database_id": database_id}
                )
            try:
                return await asyncio.to_thread(fn, conn, *args)
            except sqlite3.Error as e:
                raise DatabaseQueryError(str(e), details={"database_id": database_id}) from e

    async def execute(self, database_id: str, statement: str) -> QueryResult:
        """
        Execute exactly one statement.

        Returns:
            QueryResult (empty columns and rows for statements without output)

        Raises:
            NotFoundError: If the database is not open
            DatabaseQueryError: Engine error, message is the engine text
                (including more than one statement in the text)
        """
        trace_id = current_trace_id()
        logger.info("Executing statement", database_id=database_id, statement=statement[:200], trace_id=trace_id)

        start = time.perf_counter()
        try:
            result = await self._run(database_id, _run_statement, statement)
        except DatabaseQueryError as e:
            logger.warning(
                "Statement rejected by engine",
                database_id=database_id,
                error=e.message,
                trace_id=trace_id
            )
            raise

        logger.info(
            "Statement executed",
            database_id=database_id,
            row_count=result.row_count,
            column_count=len(result.columns),
            execution_time_ms=round((time.perf_counter() - start) * 1000, 2),
            trace_id=trace_id
        )
        return result

    async def execute_sequence(self, database_id: str, script: str) -> List[QueryResult]:
        """
        Execute a ';'-separated script in order, one result per statement.

        Statements before a failing one stay applied.

        Raises:
            NotFoundError: If the database is not open
            DatabaseQueryError: First engine error, message is the engine text
        """
        statements = split_statements(script)
        trace_id = current_trace_id()
        logger.info(
            "Executing statement sequence",
            database_id=database_id,
            statement_count=len(statements),
            trace_id=trace_id
        )

        try:
            results = await self._run(database_id, _run_sequence, statements)
        except DatabaseQueryError as e:
            logger.warning(
                "Statement sequence stopped by engine error",
                database_id=database_id,
                error=e.message,
                trace_id=trace_id
            )
            raise

        logger.info(
            "Statement sequence executed",
            database_id=database_id,
            statement_count=len(results),
            trace_id=trace_id
        )
        return results

    async def introspect_tables(self, database_id: str) -> List[str]:
        """List user tables (internal sqlite_ tables excluded), sorted by name."""
        return await self._run(database_id, _list_tables)

    async def introspect_schema(self, database_id: str, table: str) -> List[ColumnInfo]:
        """
        Columns of a table in declaration order.

        Raises:
            NotFoundError: If the database is not open or the table does not exist
        """
        columns = await self._run(database_id, _table_info, table)
        if not columns:
            raise NotFoundError(
                f"Table '{table}' not found",
                details={"database_id": database_id, "table": table}
            )
        return columns

    async def introspect_foreign_keys(self, database_id: str, table: str) -> List[ForeignKeyInfo]:
        """Outgoing references of a table; empty when it has none or does not exist."""
        return await self._run(database_id, _foreign_key_list, table)

    async def introspect_indexes(self, database_id: str, table: str) -> List[IndexInfo]:
        """Indexes of a table sorted by name, without the implicit primary-key index."""
        return await self._run(database_id, _index_list, table)

    async def export_snapshot(self, database_id: str) -> bytes:
        """
        Full byte image of the database.

        Raises:
            NotFoundError: If the database is not open
            SnapshotError: If serialization fails
        """
        try:
            data = await self._run(database_id, _serialize)
        except DatabaseQueryError as e:
            raise SnapshotError(f"Failed to export database snapshot: {e.message}") from e

        logger.info("Snapshot exported", database_id=database_id, size_bytes=len(data), trace_id=current_trace_id())
        return data
