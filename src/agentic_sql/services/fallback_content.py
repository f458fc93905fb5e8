"""
Fallback content for failed or degraded turns.

Every failure branch of the pipeline produces deterministic,
user-presentable text from here, so a turn always ends with something
the user can act on: guidance, a suggested manual query, or a templated
summary of real results.
"""

from typing import List, Optional, Tuple

from agentic_sql.domain.base_enums import AssistantMode, FailureClassification
from agentic_sql.domain.context import ConversationContext
from agentic_sql.domain.execution import QueryResult
from agentic_sql.utils.token_utils import format_cell

API_KEY_SETTING = "LLM__OPENROUTER_API_KEY"


def suggested_query(context: ConversationContext) -> Optional[str]:
    """
    A safe query the user can run by hand.

    - No selected table: list the tables (only if there are any)
    - Selected table with known columns: first three columns, LIMIT 10
    - Otherwise: SELECT * from the selected table, LIMIT 10
    """
    if not context.selected_table:
        if context.tables:
            return "SELECT name FROM sqlite_master WHERE type='table';"
        return None

    columns = context.columns_for(context.selected_table)
    if columns:
        names = ", ".join(col.name for col in columns[:3])
        return f'SELECT {names} FROM "{context.selected_table}" LIMIT 10;'

    return f'SELECT * FROM "{context.selected_table}" LIMIT 10;'


def _ask_mode_tips(question: str, context: ConversationContext) -> str:
    table = context.selected_table or "your_table"
    lowered = question.lower()

    if "join" in lowered:
        return """**JOIN query help:**

```sql
SELECT t1.column, t2.column
FROM table1 t1
INNER JOIN table2 t2 ON t1.id = t2.foreign_key;
```

- `INNER JOIN` keeps only matching rows
- `LEFT JOIN` keeps every row from the left table"""

    if any(word in lowered for word in ("insert", "add", "create")):
        return f"""**INSERT query help:**

```sql
INSERT INTO {table} (column1, column2)
VALUES ('value1', 'value2');
```"""

    return f"""**Common SQL operations:**
- `SELECT * FROM {table} LIMIT 10`
- `SELECT COUNT(*) FROM {table}`
- `SELECT DISTINCT column FROM {table}`
- `WHERE column = 'value'`, `ORDER BY column DESC`"""


def _agentic_mode_tips(context: ConversationContext) -> str:
    table = context.selected_table or (context.tables[0] if context.tables else "your_table")
    lines: List[str] = [
        "**Your database:**",
        f"- Tables: {', '.join(context.tables) or 'None loaded'}",
        f"- Selected table: {context.selected_table or 'None'}",
    ]

    if context.schemas:
        lines.append("")
        lines.append("**Table structures:**")
        for name, columns in list(context.schemas.items())[:3]:
            shown = ", ".join(col.name for col in columns[:3])
            suffix = "..." if len(columns) > 3 else ""
            lines.append(f"- {name}: {shown}{suffix}")
        if len(context.schemas) > 3:
            lines.append("- ...and more tables")

    lines.extend([
        "",
        "**Queries you can run yourself:**",
        "```sql",
        f"SELECT COUNT(*) AS total_rows FROM {table};",
        f"SELECT * FROM {table} LIMIT 10;",
        "```",
    ])
    return "\n".join(lines)


def mode_tips(mode: AssistantMode, question: str, context: ConversationContext) -> str:
    if mode == AssistantMode.ASK:
        return _ask_mode_tips(question, context)
    return _agentic_mode_tips(context)


def generation_failure_content(
    classification: FailureClassification,
    raw_error: Optional[str],
    mode: AssistantMode,
    question: str,
    context: ConversationContext,
) -> str:
    """User-facing content for a failed generation call, per classification."""
    if classification == FailureClassification.TRANSIENT:
        return f"""**The AI servers are currently experiencing high traffic**

Your request could not be processed because the service is overloaded. In the meantime:

{mode_tips(mode, question, context)}

Please try again in a few minutes."""

    if classification == FailureClassification.QUOTA_EXCEEDED:
        query = suggested_query(context)
        manual = f"\n**Suggested query:**\n```sql\n{query}\n```\n" if query else ""
        return f"""**Rate limit exceeded: API quota reached**

Your API usage has exceeded the current quota.
{manual}
{mode_tips(mode, question, context)}

**What you can do:**
- Wait for the quota to reset (usually hourly)
- Raise the quota or add credits with your LLM provider"""

    if classification == FailureClassification.UNAUTHORIZED:
        return f"""**AI service credentials rejected**

The assistant could not authenticate with the LLM provider, so no request was retried.

- Check that `{API_KEY_SETTING}` is set to a valid key
- Make sure the key has not been revoked or expired
- Restart the server after changing the key

You can still run SQL directly against your database."""

    return f"""**The AI request failed**

An unexpected error occurred while generating a response:

```
{raw_error or 'unknown error'}
```

Please try again. You can still run SQL directly against your database."""


def extraction_failure_content(question: str, raw_text: Optional[str]) -> str:
    """Content when no valid statement could be recovered, even after repair."""
    return f"""**No executable SQL statement could be found**

I could not turn your request into a single valid SQL statement, so nothing was executed.

Request: "{question}"

Model response:
{raw_text or '(empty response)'}

Try rephrasing the request with the table and columns you have in mind."""


def execution_failure_content(statement: str, error: str) -> str:
    """Content when the engine rejects the statement; the engine text is kept verbatim."""
    return f"""**Query execution failed**

```sql
{statement}
```

Error: {error}"""


def analysis_fallback_content(
    question: str,
    statement: str,
    result: QueryResult,
    preview_rows: int,
    max_cell_chars: int,
) -> str:
    """Templated summary of real results, used when the analysis call fails."""
    total = result.row_count
    header = f"""**Query results**

Based on your question "{question}", I executed:

```sql
{statement}
```

- **{total}** rows returned
- **Columns:** {', '.join(result.columns) or '(none)'}
"""

    if not total:
        return header + "\nThe query executed successfully but returned no rows. Try a broader filter."

    findings = [
        f"{index}. " + ", ".join(
            f"{col}: {format_cell(cell, max_cell_chars)}" for col, cell in zip(result.columns, row)
        )
        for index, row in enumerate(result.rows[:preview_rows], start=1)
    ]

    body = "\n**First rows:**\n" + "\n".join(findings)
    if total > preview_rows:
        body += f"\n... and {total - preview_rows} more rows"
    return header + body


def population_no_tables_content() -> str:
    return """**Nothing to populate yet**

This database has no tables. Create tables first, then ask again for sample data:

```sql
CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT NOT NULL, email TEXT UNIQUE);
```"""


def population_summary_content(statement_count: int, row_counts: List[Tuple[str, int]]) -> str:
    """Content after a population script ran: statements executed and rows now in each table."""
    lines = [
        "**Sample data added**",
        "",
        f"Executed {statement_count} INSERT statement{'s' if statement_count != 1 else ''}.",
    ]
    if row_counts:
        lines.extend(["", "**Rows now in each table:**"])
        lines.extend(f"- {table}: {count}" for table, count in row_counts)
    return "\n".join(lines)
