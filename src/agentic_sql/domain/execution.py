"""
Statement and execution models.

These models carry a statement from extraction through execution:
ExtractedStatement (what was recovered from model text and how),
QueryResult (what the engine returned) and ExecutionAttempt (the record
of one execution, successful or not).
"""

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .base_enums import ExtractionStrategy


class ExtractedStatement(BaseModel):
    """A candidate statement recovered from generated text."""

    model_config = ConfigDict(frozen=True)

    text: str = Field(..., description="Candidate statement text")
    strategy: ExtractionStrategy = Field(..., description="Strategy that recovered it")


class QueryResult(BaseModel):
    """Columns and rows returned by a single statement."""

    columns: List[str] = Field(default_factory=list, description="Column names, in result order")
    rows: List[tuple] = Field(default_factory=list, description="Row tuples, in result order")

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def is_empty(self) -> bool:
        return not self.rows


class ExecutionAttempt(BaseModel):
    """
    Record of one statement (or script) execution.

    Exactly one of `result` or `error` is set. `error` is the engine's
    message, unaltered.
    """

    model_config = ConfigDict(frozen=True)

    statement: str = Field(..., description="Statement as submitted to the engine")
    result: Optional[QueryResult] = Field(default=None, description="Engine result (success only)")
    error: Optional[str] = Field(default=None, description="Engine error text (failure only)")
    modifying: bool = Field(default=False, description="Whether the statement changes data or schema")
    target_table: Optional[str] = Field(default=None, description="Table the statement operates on, if detected")
    statement_count: int = Field(default=1, description="Statements in `statement` (scripts hold more than one)")
    execution_time_ms: float = Field(default=0.0, description="Wall time spent in the engine")

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_summary(self) -> dict[str, Any]:
        """Compact form used in log lines."""
        return {
            "succeeded": self.succeeded,
            "modifying": self.modifying,
            "target_table": self.target_table,
            "row_count": self.result.row_count if self.result else 0,
            "execution_time_ms": round(self.execution_time_ms, 2),
        }
