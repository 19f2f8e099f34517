import json
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone

from pydantic import BaseModel
from pydantic import Field as PydanticField
from sqlalchemy import Column, JSON
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    # Timestamp columns require timezone-aware values
    return datetime.now(timezone.utc)


class DataSource(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    type: str  # postgresql, clickhouse, sqlite, opensearch
    config: str = Field(default="{}")  # JSON string
    description: Optional[str] = Field(default=None)
    tags: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    is_active: bool = Field(default=True)
    created_by: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def config_dict(self) -> Dict[str, Any]:
        return json.loads(self.config or "{}")


class DataSourceRead(BaseModel):
    """API view of a DataSource, with the config decoded."""

    id: int
    name: str
    type: str
    config: Dict[str, Any]
    description: Optional[str] = None
    tags: List[str] = []
    is_active: bool
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, ds: DataSource) -> "DataSourceRead":
        return cls(
            id=ds.id,
            name=ds.name,
            type=ds.type,
            config=ds.config_dict(),
            description=ds.description,
            tags=ds.tags or [],
            is_active=ds.is_active,
            created_by=ds.created_by,
            created_at=ds.created_at,
            updated_at=ds.updated_at,
        )


class ConnectionTestResult(BaseModel):
    is_connected: bool
    message: str
    latency_ms: float = 0.0
    tested_at: datetime = PydanticField(default_factory=utcnow)
