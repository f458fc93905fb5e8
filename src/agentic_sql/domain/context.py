"""
Conversation context models.

A ConversationContext is an immutable snapshot of what the assistant knows
about a database when a turn starts: its schema and relationships, the
table the user is looking at, and the statements executed recently. The
caller owns it and passes it by value into the coordinator.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ColumnInfo(BaseModel):
    """One column as reported by `PRAGMA table_info`."""

    model_config = ConfigDict(frozen=True)

    cid: int = Field(default=0, description="Column ordinal position")
    name: str = Field(..., description="Column name")
    type: str = Field(default="", description="Declared column type (may be empty in SQLite)")
    not_null: bool = Field(default=False, description="Whether the column is declared NOT NULL")
    primary_key: bool = Field(default=False, description="Whether the column is part of the primary key")
    default_value: Optional[Any] = Field(default=None, description="Declared default value expression")

    def describe(self) -> str:
        """Render the column for a prompt, e.g. `id (INTEGER) [PRIMARY KEY]`."""
        text = f"{self.name} ({self.type or 'ANY'})"
        if self.primary_key:
            text += " [PRIMARY KEY]"
        if self.not_null:
            text += " [NOT NULL]"
        return text


class ForeignKeyInfo(BaseModel):
    """One column reference as reported by `PRAGMA foreign_key_list`."""

    model_config = ConfigDict(frozen=True)

    column: str = Field(..., description="Referencing column in this table")
    ref_table: str = Field(..., description="Referenced (parent) table")
    ref_column: Optional[str] = Field(default=None, description="Referenced column; None means the parent's primary key")

    def describe(self) -> str:
        """Render the reference for a prompt, e.g. `user_id -> users(id)`."""
        if self.ref_column:
            return f"{self.column} -> {self.ref_table}({self.ref_column})"
        return f"{self.column} -> {self.ref_table}"


class IndexInfo(BaseModel):
    """One index as reported by `PRAGMA index_list` and `PRAGMA index_info`."""

    model_config = ConfigDict(frozen=True)

    name: str
    unique: bool = False
    columns: List[str] = Field(default_factory=list)

    def describe(self) -> str:
        kind = "UNIQUE INDEX" if self.unique else "INDEX"
        return f"{kind} {self.name} ({', '.join(self.columns)})"


class ConversationContext(BaseModel):
    """
    Immutable per-turn snapshot of the database the user is talking about.

    `schemas` preserves table order and, within a table, column order.
    `recent_queries` holds the most recent statements, oldest first; the
    builder trims it to the configured bound.
    """

    model_config = ConfigDict(frozen=True)

    database_id: str = Field(..., min_length=1, description="Identifier of the target database")
    database_name: Optional[str] = Field(default=None, description="Human-readable name, used as the snapshot name hint")
    selected_table: Optional[str] = Field(default=None, description="Table currently viewed by the user")
    schemas: Dict[str, List[ColumnInfo]] = Field(default_factory=dict, description="Table name -> ordered columns")
    tables: List[str] = Field(default_factory=list, description="Known table names")
    foreign_keys: Dict[str, List[ForeignKeyInfo]] = Field(
        default_factory=dict, description="Table name -> outgoing references (tables without any are omitted)"
    )
    indexes: Dict[str, List[IndexInfo]] = Field(
        default_factory=dict, description="Table name -> explicit and UNIQUE-constraint indexes"
    )
    recent_queries: List[str] = Field(default_factory=list, description="Recently executed statements")

    @property
    def name_hint(self) -> str:
        return self.database_name or self.database_id

    def columns_for(self, table_name: Optional[str]) -> List[ColumnInfo]:
        """Columns of a table, matched case-insensitively; empty if unknown."""
        if not table_name:
            return []
        if table_name in self.schemas:
            return self.schemas[table_name]
        lowered = table_name.lower()
        for name, columns in self.schemas.items():
            if name.lower() == lowered:
                return columns
        return []

    def with_recent_queries_limit(self, limit: int) -> "ConversationContext":
        """Return a copy whose recent query list keeps only the last `limit` entries."""
        if len(self.recent_queries) <= limit:
            return self
        kept = self.recent_queries[-limit:] if limit > 0 else []
        return self.model_copy(update={"recent_queries": kept})
