"""
Prompt Builder Repository.

Builds every prompt the pipeline sends to the LLM from the conversation
context: the schema-aware system prompt (columns, foreign keys and
indexes), the per-intent user prompts and the result analysis prompt.

All builders are pure (no I/O) so prompts are easy to assert on in tests.
"""

from typing import List, Optional

from agentic_sql.config import PipelineConfig
from agentic_sql.domain.base_enums import AssistantMode
from agentic_sql.domain.context import ConversationContext
from agentic_sql.domain.execution import QueryResult
from agentic_sql.utils.token_utils import format_cell


def format_rows(result: QueryResult, limit: int, max_cell_chars: int) -> List[str]:
    """Render the first `limit` rows as ' | '-joined lines."""
    return [
        " | ".join(format_cell(cell, max_cell_chars) for cell in row)
        for row in result.rows[:limit]
    ]


def population_order(context: ConversationContext) -> List[str]:
    """
    Tables ordered so each one comes after the tables it references.

    Self-references and references to unknown tables are ignored. Tables
    caught in a reference cycle keep their listed order at the end.
    """
    known = {table.lower() for table in context.tables}
    remaining = list(context.tables)
    ordered: List[str] = []

    while remaining:
        placed = {table.lower() for table in ordered}
        ready = [
            table for table in remaining
            if all(
                fk.ref_table.lower() in placed
                or fk.ref_table.lower() == table.lower()
                or fk.ref_table.lower() not in known
                for fk in context.foreign_keys.get(table, [])
            )
        ]
        if not ready:
            ordered.extend(remaining)
            break
        ordered.extend(ready)
        remaining = [table for table in remaining if table not in ready]

    return ordered


class PromptBuilder:
    """
    Builds prompts for each generation intent.

    The system prompt lists every table with its columns so the model
    can reference real names and joins.
    """

    def __init__(self, config: PipelineConfig):
        self.config = config

    def system_prompt(self, context: ConversationContext, mode: AssistantMode = AssistantMode.AGENTIC) -> str:
        """Schema-aware system prompt for the given mode."""
        tables = ", ".join(context.tables) or "None"

        prompt = f"""You are an expert SQL assistant working inside an embedded SQLite database. You help users write SQL statements, analyze their data and understand the results.

## DATABASE CONTEXT
- Database: {context.name_hint}
- Available tables: {tables}
- Selected table: {context.selected_table or 'None'}
"""

        schema_section = self._schema_section(context)
        if schema_section:
            prompt += f"\n## COMPLETE SCHEMA\n{schema_section}\n"

        selected_columns = context.columns_for(context.selected_table)
        if context.selected_table and selected_columns:
            prompt += f'\n## CURRENTLY SELECTED TABLE "{context.selected_table}"\n'
            prompt += "\n".join(f"  - {col.describe()}" for col in selected_columns) + "\n"

        if context.recent_queries:
            prompt += "\n## RECENTLY EXECUTED STATEMENTS (oldest first)\n"
            prompt += "\n".join(f"- {query}" for query in context.recent_queries) + "\n"

        prompt += """
## GUIDELINES
1. Generate syntactically correct SQLite statements only
2. Use ONLY the tables and columns listed above
3. Use the schema to find JOIN paths between tables
4. Be concise but thorough
"""

        if mode == AssistantMode.POPULATE:
            prompt += """
## MODE: POPULATE
- The statements you write are executed in order against the database
- Write INSERT statements only, all in one ```sql fenced block
- Insert into referenced tables before the tables that reference them
"""
        elif mode == AssistantMode.ASK:
            prompt += """
## MODE: ASK
- Answer SQL questions directly and explain concepts
- Suggest statements the user can run; you do NOT execute anything
- Put any suggested statement in a ```sql fenced block
"""
        else:
            prompt += """
## MODE: AGENTIC
- The statement you write is executed automatically against the database
- Answers are produced from the real results of that statement
- Write exactly ONE statement and put it in a ```sql fenced block
"""

        return prompt

    def _schema_section(self, context: ConversationContext) -> str:
        blocks = []
        for table_name, columns in context.schemas.items():
            lines = [f'Table "{table_name}":']
            lines.extend(f"  - {col.describe()}" for col in columns)
            foreign_keys = context.foreign_keys.get(table_name)
            if foreign_keys:
                lines.append("  Foreign keys:")
                lines.extend(f"    - {fk.describe()}" for fk in foreign_keys)
            indexes = context.indexes.get(table_name)
            if indexes:
                lines.append("  Indexes:")
                lines.extend(f"    - {index.describe()}" for index in indexes)
            blocks.append("\n".join(lines))
        return "\n\n".join(blocks)

    def generation_prompt(self, question: str) -> str:
        """Prompt asking for one executable statement answering the question."""
        return f"""## USER REQUEST
{question}

## RESPONSE FORMAT
1. One short sentence describing what the statement does
2. Exactly one SQLite statement in a ```sql fenced block

Do not write more than one statement. Do not invent tables or columns."""

    def forced_regeneration_prompt(self, question: str, previous_response: Optional[str] = None) -> str:
        """Stricter prompt used when no valid statement could be recovered."""
        prompt = f"""Your previous answer did not contain a usable SQL statement.

## USER REQUEST
{question}
"""
        if previous_response:
            prompt += f"""
## PREVIOUS ANSWER (unusable)
{previous_response[:2000]}
"""
        prompt += """
## STRICT RESPONSE FORMAT
Respond with exactly ONE complete SQLite statement inside a ```sql fenced block and NOTHING else.
- No explanations, no comments, no additional statements
- SELECT must include FROM, DELETE must include FROM, INSERT must include INTO, UPDATE must include SET

```sql
<statement>
```"""
        return prompt

    def ask_prompt(self, question: str) -> str:
        """Prompt for explanation-only turns."""
        return f"""## USER QUESTION
{question}

Please provide a helpful response. If you suggest SQL statements, format them in ```sql fenced blocks and explain what they do."""

    def population_prompt(self, question: str, context: ConversationContext) -> str:
        """Prompt asking for INSERT statements that fill every table, parents first."""
        order = "\n".join(
            f"{position}. {table}" for position, table in enumerate(population_order(context), start=1)
        )
        rows = self.config.population_rows_per_table

        return f"""## DATA POPULATION TASK
Create INSERT statements that fill the tables of this database with realistic sample data.

User request: {question}

## INSERT ORDER
{order}

## REQUIREMENTS
1. Generate {rows} rows per table
2. Keep referential integrity: every foreign key value must match a row inserted earlier
3. Use realistic names, emails, dates and amounts that fit each column type
4. Satisfy every NOT NULL and UNIQUE constraint
5. Use sequential integer ids starting from 1 for INTEGER PRIMARY KEY columns

## RESPONSE FORMAT
All INSERT statements, each ending with ';', inside ONE ```sql fenced block. No other kinds of statements."""

    def analysis_prompt(self, question: str, statement: str, result: QueryResult) -> str:
        """Prompt asking the model to answer the question from real results."""
        preview_rows = self.config.preview_rows
        total = result.row_count

        if total:
            preview = "\n".join(format_rows(result, preview_rows, self.config.max_cell_chars))
        else:
            preview = "No data returned"

        more = f"\n... and {total - preview_rows} more rows" if total > preview_rows else ""

        return f"""## QUERY RESULT ANALYSIS TASK

Original user question: "{question}"

Executed SQL statement:
```sql
{statement}
```

Query results:
- Columns: {', '.join(result.columns) or '(none)'}
- Total rows: {total}
- Sample data (first {preview_rows} rows):
{preview}{more}

## INSTRUCTIONS
1. Answer the original question using the actual results
2. Reference specific values from the data
3. Explain what the numbers mean
4. If the results are empty, explain why and suggest alternatives
5. Suggest one or two follow-up questions

Write naturally, as a data analyst explaining findings."""
