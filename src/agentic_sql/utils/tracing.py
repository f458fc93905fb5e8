import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

# Context variable to store trace ID across async operations
trace_id_var: ContextVar[Optional[str]] = ContextVar('trace_id', default=None)


def generate_trace_id() -> str:
    """Generate a new trace ID."""
    return str(uuid.uuid4())


def set_trace_id(trace_id: str) -> None:
    """Set the trace ID for the current context."""
    trace_id_var.set(trace_id)


def current_trace_id() -> Optional[str]:
    """Get the current trace ID."""
    return trace_id_var.get()


def get_trace_id() -> str:
    """Get existing trace ID or create a new one."""
    trace_id = current_trace_id()
    if trace_id is None:
        trace_id = generate_trace_id()
        set_trace_id(trace_id)
    return trace_id


@contextmanager
def trace_scope(trace_id: Optional[str] = None) -> Iterator[str]:
    """
    Run a block under a trace ID, restoring the previous one afterwards.

    Reuses the current trace ID when one is already set (e.g. by the HTTP
    middleware) and no explicit ID is given, so a pipeline run started
    from a request keeps the request's trace.
    """
    scoped_id = trace_id or current_trace_id() or generate_trace_id()
    token = trace_id_var.set(scoped_id)
    try:
        yield scoped_id
    finally:
        trace_id_var.reset(token)
