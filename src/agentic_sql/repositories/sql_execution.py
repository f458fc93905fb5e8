"""
SQL Execution Repository.

Executes one validated statement (or a validated script) against the
embedded engine and records the attempt, successful or not.

Responsibilities:
- Timing the execution
- Classifying the statement as modifying or read-only
- Detecting the table a statement operates on (for invalidation)
- Turning engine errors into an ExecutionAttempt carrying the engine's text verbatim

Usage:
    repo = SQLExecutionRepository(engine_client)
    attempt = await repo.execute("sales", "DELETE FROM orders WHERE id = 7")
    if attempt.succeeded and attempt.modifying:
        # persist the database
"""

import re
import time
from typing import List, Optional

from agentic_sql.config_constants import MODIFYING_KEYWORDS
from agentic_sql.domain.errors import DatabaseQueryError
from agentic_sql.domain.execution import ExecutionAttempt, QueryResult
from agentic_sql.infrastructure.engine_client import EngineClient, split_statements
from agentic_sql.repositories.sql_extraction import contains_word
from agentic_sql.utils.logging import get_module_logger
from agentic_sql.utils.tracing import current_trace_id

logger = get_module_logger()

_IDENTIFIER = r'(?:"(?:[^"]|"")+"|`[^`]+`|\[[^\]]+\]|[A-Za-z_][\w$]*)'
_QUALIFIED = rf"{_IDENTIFIER}(?:\s*\.\s*{_IDENTIFIER})?"

_TARGET_TABLE = re.compile(
    rf"\b(?:FROM|INTO|UPDATE|TABLE(?:\s+IF\s+(?:NOT\s+)?EXISTS)?)\s+({_QUALIFIED})",
    re.IGNORECASE,
)


_LEADING_COMMENTS = re.compile(r"\A(?:\s|--[^\n]*(?:\n|\Z)|/\*.*?\*/)*", re.DOTALL)
_KEYWORD = re.compile(r"[A-Za-z]+")


def leading_keyword(statement: str) -> str:
    """First keyword of a statement, uppercased, after any leading comments."""
    match = _KEYWORD.match(_LEADING_COMMENTS.sub("", statement, count=1))
    return match.group(0).upper() if match else ""


def is_modifying(statement: str) -> bool:
    """True when any modifying keyword appears as a whole word (`created_at` is not CREATE)."""
    return any(contains_word(statement, keyword) for keyword in MODIFYING_KEYWORDS)


def _unquote(identifier: str) -> str:
    identifier = identifier.strip()
    if identifier[:1] == '"' and identifier[-1:] == '"':
        return identifier[1:-1].replace('""', '"')
    if identifier[:1] in ("`", "[") and identifier[-1:] in ("`", "]"):
        return identifier[1:-1]
    return identifier


def target_table(statement: str) -> Optional[str]:
    """
    Table a statement operates on: the first name after FROM, INTO,
    UPDATE or TABLE. Schema qualifiers are dropped and quotes removed.
    """
    match = _TARGET_TABLE.search(statement)
    if not match:
        return None
    name = re.findall(_IDENTIFIER, match.group(1))[-1]
    return _unquote(name) or None


def target_tables(statements: List[str]) -> List[str]:
    """Distinct target tables of several statements, in first-seen order (case-insensitive)."""
    tables: List[str] = []
    seen = set()
    for statement in statements:
        table = target_table(statement)
        if table and table.lower() not in seen:
            seen.add(table.lower())
            tables.append(table)
    return tables


class SQLExecutionRepository:
    """
    Repository for statement execution.

    Never raises for engine errors; they are recorded on the attempt.
    Missing databases (NotFoundError) still propagate.
    """

    def __init__(self, engine_client: EngineClient):
        self.engine_client = engine_client

    async def execute(self, database_id: str, statement: str) -> ExecutionAttempt:
        """
        Execute one statement and record the attempt.

        Args:
            database_id: Target database
            statement: Validated statement text

        Returns:
            ExecutionAttempt with result or engine error text
        """
        trace_id = current_trace_id()
        modifying = is_modifying(statement)
        table = target_table(statement)

        logger.info(
            "Executing statement",
            database_id=database_id,
            modifying=modifying,
            target_table=table,
            trace_id=trace_id,
        )

        start = time.perf_counter()
        try:
            result = await self.engine_client.execute(database_id, statement)
        except DatabaseQueryError as e:
            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.warning(
                "Statement execution failed",
                database_id=database_id,
                error=e.message,
                execution_time_ms=round(elapsed_ms, 2),
                trace_id=trace_id,
            )
            return ExecutionAttempt(
                statement=statement,
                error=e.message,
                modifying=modifying,
                target_table=table,
                execution_time_ms=elapsed_ms,
            )

        elapsed_ms = (time.perf_counter() - start) * 1000
        attempt = ExecutionAttempt(
            statement=statement,
            result=result,
            modifying=modifying,
            target_table=table,
            execution_time_ms=elapsed_ms,
        )
        logger.info("Statement execution completed", **attempt.to_summary(), trace_id=trace_id)
        return attempt

    async def execute_script(self, database_id: str, script: str) -> ExecutionAttempt:
        """
        Execute a ';'-separated script in order and record it as one attempt.

        Statements before a failing one stay applied; the attempt then
        carries the engine's error text. `result` is the last statement's
        result, and `target_table` is set only when every statement
        targets the same table.
        """
        trace_id = current_trace_id()
        statements = split_statements(script)
        modifying = any(is_modifying(statement) for statement in statements)
        tables = target_tables(statements)
        table = tables[0] if len(tables) == 1 else None

        start = time.perf_counter()
        try:
            results = await self.engine_client.execute_sequence(database_id, script)
        except DatabaseQueryError as e:
            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.warning(
                "Script execution failed",
                database_id=database_id,
                statement_count=len(statements),
                error=e.message,
                trace_id=trace_id,
            )
            return ExecutionAttempt(
                statement=script,
                error=e.message,
                modifying=modifying,
                target_table=table,
                statement_count=len(statements),
                execution_time_ms=elapsed_ms,
            )

        attempt = ExecutionAttempt(
            statement=script,
            result=results[-1] if results else QueryResult(),
            modifying=modifying,
            target_table=table,
            statement_count=len(statements),
            execution_time_ms=(time.perf_counter() - start) * 1000,
        )
        logger.info(
            "Script execution completed",
            statement_count=attempt.statement_count,
            tables=tables,
            **attempt.to_summary(),
            trace_id=trace_id,
        )
        return attempt
