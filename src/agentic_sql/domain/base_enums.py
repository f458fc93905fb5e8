from enum import Enum


class AssistantMode(str, Enum):
    """How a chat turn is handled."""
    ASK = "ask"  # explain and suggest, never execute
    AGENTIC = "agentic"
    POPULATE = "populate"  # generate and run INSERTs filling every table with sample rows


class GenerationIntent(str, Enum):
    GENERATE = "generate"
    ANALYZE = "analyze"
    FORCE_REGENERATE = "force-regenerate"
    ASK = "ask"
    POPULATE = "populate"


class FailureClassification(str, Enum):
    """Closed set of generation failure kinds, decided once at the generation boundary."""
    TRANSIENT = "transient"
    QUOTA_EXCEEDED = "quota_exceeded"
    UNAUTHORIZED = "unauthorized"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in (FailureClassification.TRANSIENT, FailureClassification.QUOTA_EXCEEDED)


class ExtractionStrategy(str, Enum):
    FENCED_BLOCK = "fenced_block"
    STRUCTURED_FIELD = "structured_field"
    LINE_SCAN = "line_scan"
    PATTERN_SWEEP = "pattern_sweep"


class PipelineStatus(str, Enum):
    COMPLETED = "completed"
    EXTRACTION_FAILED = "extraction_failed"
    GENERATION_FAILED = "generation_failed"
    EXECUTION_FAILED = "execution_failed"


class PipelineStepName(str, Enum):
    """Pipeline step names for the agentic query pipeline."""
    GENERATING = "generating"
    EXTRACTING = "extracting"
    VALIDATING = "validating"
    FORCED_REGENERATE = "forced_regenerate"
    EXECUTING = "executing"
    PERSISTING = "persisting"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
