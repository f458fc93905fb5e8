"""
API request models for the agentic SQL assistant.

These models define the structure for all incoming API requests,
ensuring type safety and validation at API boundaries.

All fields include detailed descriptions that appear in Swagger/OpenAPI documentation.
"""

from typing import Optional

from pydantic import BaseModel, Field

from .base_enums import AssistantMode


class CreateDatabaseRequest(BaseModel):
    """Request model for opening a database (new, or restored from its snapshot)."""

    database_id: str = Field(
        ...,
        description="Identifier of the database. Used as the snapshot key in the store. "
                    "Letters, digits, '-' and '_' only.",
        min_length=1,
        max_length=128,
        pattern=r"^[A-Za-z0-9_\-]+$",
        json_schema_extra={"example": "sales"}
    )
    name: Optional[str] = Field(
        default=None,
        description="Human-readable database name stored with each snapshot. "
                    "Defaults to the database id.",
        max_length=256,
        json_schema_extra={"example": "Sales playground"}
    )


class ExecuteRequest(BaseModel):
    """
    Request model for direct statement submission.

    The script may hold several statements separated by ';'. They run in
    order; the first engine error stops the script.
    """

    sql: str = Field(
        ...,
        description="One or more SQL statements separated by ';'. "
                    "Example: \"CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT); "
                    "INSERT INTO users (name) VALUES ('Ada');\"",
        min_length=1,
        json_schema_extra={"example": "SELECT * FROM users LIMIT 10;"}
    )


class ChatRequest(BaseModel):
    """
    Request model for one chat turn against a database.

    In agentic mode the assistant generates a statement, runs it and
    explains the result. In ask mode it only explains and suggests. In
    populate mode it fills the tables with generated sample rows.
    """

    question: str = Field(
        ...,
        description="Natural language question about the database. "
                    "Examples: 'How many users signed up last month?', "
                    "'Delete the order with id 7'",
        min_length=1,
        max_length=4000,
        json_schema_extra={"example": "How many users signed up last month?"}
    )
    mode: AssistantMode = Field(
        default=AssistantMode.AGENTIC,
        description="'agentic' generates and executes a statement; "
                    "'ask' explains and suggests a statement without executing it; "
                    "'populate' generates and runs INSERT statements that fill the tables with sample rows."
    )
    selected_table: Optional[str] = Field(
        default=None,
        description="Table the user is currently viewing. Used to focus the prompt "
                    "and to report the table as invalidated after a modification.",
        json_schema_extra={"example": "users"}
    )
