"""
Domain package for the agentic SQL assistant.

This package contains all domain models, enums and value objects
used throughout the application for type safety and validation.
"""

from .base_enums import (
    AssistantMode,
    ExtractionStrategy,
    FailureClassification,
    GenerationIntent,
    PipelineStatus,
    PipelineStepName,
)
from .context import ColumnInfo, ConversationContext, ForeignKeyInfo, IndexInfo
from .execution import ExecutionAttempt, ExtractedStatement, QueryResult
from .generation import GenerationOutcome, GenerationRequest, RetryState
from .requests import ChatRequest, CreateDatabaseRequest, ExecuteRequest
from .responses import (
    ChatResponse,
    DatabaseInfo,
    DatabaseListResponse,
    ErrorResponse,
    ExecuteResponse,
    HealthResponse,
    PipelineResult,
    SnapshotRecord,
    TableSchemaResponse,
    TablesResponse,
)

__all__ = [
    # Enums
    "AssistantMode",
    "ExtractionStrategy",
    "FailureClassification",
    "GenerationIntent",
    "PipelineStatus",
    "PipelineStepName",

    # Context
    "ColumnInfo",
    "ConversationContext",
    "ForeignKeyInfo",
    "IndexInfo",

    # Generation
    "GenerationOutcome",
    "GenerationRequest",
    "RetryState",

    # Execution
    "ExecutionAttempt",
    "ExtractedStatement",
    "QueryResult",

    # Requests
    "ChatRequest",
    "CreateDatabaseRequest",
    "ExecuteRequest",

    # Responses
    "ChatResponse",
    "DatabaseInfo",
    "DatabaseListResponse",
    "ErrorResponse",
    "ExecuteResponse",
    "HealthResponse",
    "PipelineResult",
    "SnapshotRecord",
    "TableSchemaResponse",
    "TablesResponse",
]
