"""
Result and API response models for the agentic SQL assistant.

PipelineResult is the only artifact a chat turn hands back; the other
models define the structure of the HTTP responses.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .base_enums import (
    AssistantMode,
    ExtractionStrategy,
    FailureClassification,
    PipelineStatus,
)
from .context import ColumnInfo
from .execution import ExecutionAttempt, QueryResult


class PipelineResult(BaseModel):
    """
    Outcome of one chat turn.

    `content` is always user-presentable: the narrated answer on success
    or deterministic guidance on failure. `execution` is present only when
    the turn reached the engine.
    """

    status: PipelineStatus = Field(..., description="Terminal state of the turn")
    content: str = Field(..., description="Narrated answer or failure guidance")
    statement: Optional[str] = Field(default=None, description="Statement that was executed, if any")
    execution: Optional[ExecutionAttempt] = Field(default=None, description="Execution record, if any")
    mode: AssistantMode = Field(default=AssistantMode.AGENTIC, description="Mode the turn ran in")
    suggested_query: Optional[str] = Field(default=None, description="Query the user can run manually")
    extraction_strategy: Optional[ExtractionStrategy] = Field(
        default=None,
        description="Strategy that recovered the statement"
    )
    failure_classification: Optional[FailureClassification] = Field(
        default=None,
        description="Generation failure kind (GenerationFailed only)"
    )
    forced_regenerations: int = Field(default=0, description="Repair calls made during the turn")
    analysis_degraded: bool = Field(default=False, description="True when the templated summary replaced analysis")
    persisted: Optional[bool] = Field(
        default=None,
        description="Snapshot saved after a modification (None when nothing needed saving)"
    )
    warnings: List[str] = Field(default_factory=list, description="Non-fatal problems during the turn")
    trace_id: Optional[str] = Field(default=None, description="Trace ID of the turn")
    total_time_ms: float = Field(default=0.0, description="Total turn time in milliseconds")


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str = Field(..., description="Health status", examples=["healthy", "degraded"])
    timestamp: datetime = Field(..., description="Health check timestamp")
    version: str = Field(..., description="Application version")
    engine_status: str = Field(..., description="Embedded engine status")
    open_databases: int = Field(..., description="Databases currently open")
    llm_service_status: str = Field(..., description="LLM service status")
    snapshot_store_status: str = Field(..., description="Snapshot store status")


class ErrorResponse(BaseModel):
    """Response model for error responses."""

    error: str = Field(..., description="Error type or category")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Additional error details"
    )
    trace_id: Optional[str] = Field(
        default=None,
        description="Trace ID for debugging"
    )
    timestamp: datetime = Field(..., description="Error timestamp")


class SnapshotRecord(BaseModel):
    """Metadata of a stored database snapshot."""

    database_id: str = Field(..., description="Database identifier")
    name: str = Field(..., description="Human-readable database name")
    size_bytes: int = Field(..., description="Snapshot size in bytes")
    created_at: datetime = Field(..., description="When the snapshot was first saved")
    last_modified: datetime = Field(..., description="When the snapshot was last saved")


class DatabaseInfo(BaseModel):
    """An open database and its tables."""

    database_id: str = Field(..., description="Database identifier")
    name: str = Field(..., description="Human-readable database name")
    tables: List[str] = Field(default_factory=list, description="Table names")
    restored: bool = Field(default=False, description="True when opened from a stored snapshot")


class DatabaseListResponse(BaseModel):
    """Response model for listing databases."""

    open_databases: List[str] = Field(default_factory=list, description="Databases open in this process")
    snapshots: List[SnapshotRecord] = Field(default_factory=list, description="Snapshots in the store")


class TablesResponse(BaseModel):
    """Response model for listing tables."""

    database_id: str = Field(..., description="Database identifier")
    tables: List[str] = Field(..., description="Table names")


class TableSchemaResponse(BaseModel):
    """Response model for a table's columns."""

    database_id: str = Field(..., description="Database identifier")
    table: str = Field(..., description="Table name")
    columns: List[ColumnInfo] = Field(..., description="Columns in declaration order")


class ExecuteResponse(BaseModel):
    """Response model for direct statement submission."""

    trace_id: str = Field(..., description="Unique trace ID for this request")
    results: List[QueryResult] = Field(..., description="One result per executed statement")
    statement_count: int = Field(..., description="Number of statements executed")
    modifying: bool = Field(..., description="Whether any statement changed data or schema")
    persisted: Optional[bool] = Field(
        default=None,
        description="Snapshot saved after a modification (None when nothing needed saving)"
    )
    warnings: List[str] = Field(default_factory=list, description="Non-fatal problems")
    execution_time_ms: float = Field(..., description="Total execution time in milliseconds")


class ChatResponse(BaseModel):
    """Response model for a chat turn."""

    result: PipelineResult = Field(..., description="Turn outcome")
    invalidated_tables: List[str] = Field(
        default_factory=list,
        description="Tables whose displayed contents are stale after this turn"
    )
