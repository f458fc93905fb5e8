import pytest
from agentic_sql.utils.logging import configure_logging, get_logger, get_module_logger
from agentic_sql.utils.tracing import (
    current_trace_id,
    generate_trace_id,
    get_trace_id,
    set_trace_id,
    trace_scope,
)


def test_logger_configuration():
    configure_logging()
    logger = get_logger("test")
    assert logger is not None


def test_module_logger():
    logger = get_module_logger()
    assert logger is not None


def test_trace_id_generation():
    trace_id = generate_trace_id()
    assert len(trace_id) == 36  # UUID format
    assert '-' in trace_id


def test_trace_id_context():
    test_id = "test-trace-123"
    set_trace_id(test_id)
    assert current_trace_id() == test_id
    assert get_trace_id() == test_id


class TestTraceScope:
    """trace_scope runs a block under a trace ID and restores the previous one."""

    def test_reuses_current_trace_id(self):
        """A turn started inside a request keeps the request's trace."""
        set_trace_id("request-trace")
        with trace_scope() as scoped:
            assert scoped == "request-trace"
            assert current_trace_id() == "request-trace"

    def test_explicit_id_restored_afterwards(self):
        set_trace_id("outer")
        with trace_scope("inner") as scoped:
            assert scoped == "inner"
            assert current_trace_id() == "inner"
        assert current_trace_id() == "outer"

    def test_generates_id_when_none_set(self):
        set_trace_id(None)
        with trace_scope() as scoped:
            assert len(scoped) == 36
        assert current_trace_id() is None
