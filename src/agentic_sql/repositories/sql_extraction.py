"""
SQL Extraction Repository.

Recovers one candidate statement from free-form model output. This is
pattern-based text recovery, not parsing: each strategy is a pure
function `(text, structured_query) -> Optional[str]`, tried in order,
first hit wins.

Strategies (in order):
1. Fenced block: first ```sql / ```sqlite fenced region, trimmed, otherwise verbatim
2. Structured field: out-of-band query, or a JSON object carrying "query"/"sql"
3. Line scan: first line starting with SELECT/DELETE/INSERT/UPDATE, extended
   until its companion clause (FROM/FROM/INTO/SET) or ';' appears
4. Pattern sweep: per-verb regexes over the whole text, earliest match wins

Strategies 2-4 normalize their result: whitespace runs collapse to one
space, ends are trimmed and one trailing ';' is dropped.

Usage:
    extractor = StatementExtractor()
    candidate = extractor.extract(response_text)
    if candidate is None:
        # nothing recoverable; ask for a forced regeneration
"""

import json
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from agentic_sql.domain.base_enums import ExtractionStrategy
from agentic_sql.domain.execution import ExtractedStatement
from agentic_sql.utils.logging import get_module_logger
from agentic_sql.utils.tracing import current_trace_id

logger = get_module_logger()

StrategyFn = Callable[[str, Optional[str]], Optional[str]]

_FENCED_BLOCK = re.compile(r"```[ \t]*(?:sqlite|sql)\b[^\n]*\n?(.*?)```", re.IGNORECASE | re.DOTALL)
_JSON_FENCE = re.compile(r"```[ \t]*json[ \t]*\n?(.*?)```", re.IGNORECASE | re.DOTALL)
_WHITESPACE = re.compile(r"\s+")

# Verb -> clause that must appear for the statement to be complete
COMPANION_CLAUSES: Dict[str, str] = {
    "SELECT": "FROM",
    "DELETE": "FROM",
    "INSERT": "INTO",
    "UPDATE": "SET",
}

_LINE_START = re.compile(r"^(SELECT|DELETE|INSERT|UPDATE)\b", re.IGNORECASE)

_SWEEP_PATTERNS: List[re.Pattern] = [
    re.compile(
        r"\bSELECT\s+[^;]+?\s+FROM\s+[^;\n]+(?:\n[ \t]*WHERE\s+[^;\n]+)?",
        re.IGNORECASE,
    ),
    re.compile(
        r"\bDELETE\s+FROM\s+[^;\n]+(?:\n[ \t]*WHERE\s+[^;\n]+)?",
        re.IGNORECASE,
    ),
    re.compile(
        r"\bINSERT\s+INTO\s+[^\s(;]+\s*"
        r"(?:\([^);]*\)\s*)?"
        r"(?:VALUES\s*\([^;]*?\)(?:\s*,\s*\([^;]*?\))*|SELECT\s+[^;]+)",
        re.IGNORECASE,
    ),
    re.compile(
        r"\bUPDATE\s+[^\s;]+\s+SET\s+[^;\n]+(?:\n[ \t]*WHERE\s+[^;\n]+)?",
        re.IGNORECASE,
    ),
]


def normalize_statement(text: str) -> str:
    """Collapse whitespace runs, trim, and drop one trailing ';'."""
    collapsed = _WHITESPACE.sub(" ", text).strip()
    if collapsed.endswith(";"):
        collapsed = collapsed[:-1].rstrip()
    return collapsed


def contains_word(text: str, word: str) -> bool:
    """Case-insensitive whole-word containment."""
    return re.search(rf"\b{re.escape(word)}\b", text, re.IGNORECASE) is not None


def _extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """
    Try to extract a JSON object from text that may contain extra content.

    Finds the first { and last } and tries to parse what's between.
    """
    start = text.find("{")
    end = text.rfind("}")

    if start == -1 or end == -1 or end <= start:
        return None

    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def fenced_block(text: str, structured_query: Optional[str] = None) -> Optional[str]:
    match = _FENCED_BLOCK.search(text)
    if not match:
        return None
    content = match.group(1).strip()
    return content or None


def structured_field(text: str, structured_query: Optional[str] = None) -> Optional[str]:
    if structured_query and structured_query.strip():
        return normalize_statement(structured_query) or None

    fenced = _JSON_FENCE.search(text)
    candidate_text = fenced.group(1) if fenced else text
    data = _extract_json_object(candidate_text)
    if not data:
        return None

    for key in ("query", "sql"):
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return normalize_statement(value) or None
    return None


def line_scan(text: str, structured_query: Optional[str] = None) -> Optional[str]:
    lines = text.splitlines()

    for index, line in enumerate(lines):
        stripped = line.strip()
        match = _LINE_START.match(stripped)
        if not match:
            continue

        companion = COMPANION_CLAUSES[match.group(1).upper()]
        collected = [stripped]
        if contains_word(stripped, companion) or stripped.endswith(";"):
            return normalize_statement(stripped) or None

        for following in lines[index + 1:]:
            part = following.strip()
            if not part or part.startswith("--"):
                continue
            collected.append(part)
            if contains_word(part, companion) or part.endswith(";"):
                return normalize_statement(" ".join(collected)) or None

        # Only the first statement-looking line is considered
        return None

    return None


def pattern_sweep(text: str, structured_query: Optional[str] = None) -> Optional[str]:
    earliest: Optional[re.Match] = None
    for pattern in _SWEEP_PATTERNS:
        match = pattern.search(text)
        if match and (earliest is None or match.start() < earliest.start()):
            earliest = match
    if earliest is None:
        return None
    return normalize_statement(earliest.group(0)) or None


DEFAULT_STRATEGIES: List[Tuple[ExtractionStrategy, StrategyFn]] = [
    (ExtractionStrategy.FENCED_BLOCK, fenced_block),
    (ExtractionStrategy.STRUCTURED_FIELD, structured_field),
    (ExtractionStrategy.LINE_SCAN, line_scan),
    (ExtractionStrategy.PATTERN_SWEEP, pattern_sweep),
]


class StatementExtractor:
    """
    Repository for recovering a candidate statement from model output.

    Pure and stateless; safe to share between turns.
    """

    def __init__(self, strategies: Optional[List[Tuple[ExtractionStrategy, StrategyFn]]] = None):
        self.strategies = strategies or DEFAULT_STRATEGIES

    def extract(self, response_text: str, structured_query: Optional[str] = None) -> Optional[ExtractedStatement]:
        """
        Run the strategy chain.

        Args:
            response_text: Raw model output
            structured_query: Query returned out-of-band by the service, if any

        Returns:
            ExtractedStatement from the first strategy that succeeds, or None
        """
        text = response_text or ""

        for strategy, fn in self.strategies:
            candidate = fn(text, structured_query)
            if candidate:
                logger.info(
                    "Statement extracted",
                    strategy=strategy.value,
                    statement=candidate[:200],
                    trace_id=current_trace_id(),
                )
                return ExtractedStatement(text=candidate, strategy=strategy)

        logger.info(
            "No statement found in response",
            response_length=len(text),
            trace_id=current_trace_id(),
        )
        return None
