"""App and app-table entity models.

An app is the tenant boundary: it owns workflows and the dynamic
``app_<appId>_<suffix>`` tables those workflows read and write.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from sqlmodel import Column, Field, Relationship, SQLModel, Text

if TYPE_CHECKING:
    from blockflow.models.user import User
    from blockflow.models.workflow import Workflow


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class AppStatus(str, Enum):
    """App lifecycle status."""

    DRAFT = "draft"
    PUBLISHED = "published"


class App(SQLModel, table=True):
    """App database entity.

    Integer identifiers keep the table prefix short and predictable.
    """

    __tablename__ = "app"

    id: int | None = Field(default=None, primary_key=True)
    owner_id: str = Field(
        foreign_key="user.id",
        index=True,
        description="Owner user ID",
    )
    name: str = Field(max_length=255, min_length=1)
    status: AppStatus = Field(default=AppStatus.DRAFT)
    created_at: datetime = Field(default_factory=utc_now)

    owner: "User" = Relationship(back_populates="apps")
    workflows: list["Workflow"] = Relationship(back_populates="app")
    tables: list["AppTable"] = Relationship(back_populates="app")


class AppTable(SQLModel, table=True):
    """Registry entry for a provisioned app-scoped table.

    Column metadata is informational; queries always rediscover the schema
    from the database catalog.
    """

    __tablename__ = "app_table"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
    )
    app_id: int = Field(foreign_key="app.id", index=True)
    table_name: str = Field(max_length=63, unique=True)
    columns: str = Field(
        default="[]",
        sa_column=Column(Text, nullable=False),
        description="JSON list of column descriptors",
    )
    created_at: datetime = Field(default_factory=utc_now)

    app: App = Relationship(back_populates="tables")

    def get_columns(self) -> list[dict[str, Any]]:
        """Parse the stored column descriptors."""
        return json.loads(self.columns)

    def set_columns(self, columns: list[dict[str, Any]]) -> None:
        """Store column descriptors as JSON."""
        self.columns = json.dumps(columns)


class AppCreate(SQLModel):
    """Schema for creating an app."""

    name: str = Field(min_length=1, max_length=255)


class AppRead(SQLModel):
    """Schema for reading app data."""

    id: int
    owner_id: str
    name: str
    status: AppStatus
    created_at: datetime


class AppTableRead(SQLModel):
    """Schema for reading a registered app table."""

    table_name: str
    columns: list[dict[str, Any]]
    created_at: datetime
