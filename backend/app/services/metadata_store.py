import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import String, cast, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, func, select

from backend.app.core.db import build_engine
from backend.app.core.exceptions import ConfigurationError, DataVoyagerError, DuplicateDataSourceError
from backend.app.models.datasource import DataSource, utcnow

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"  # PostgreSQL SQLSTATE


def _is_unique_violation(e: IntegrityError) -> bool:
    pgcode = getattr(e.orig, "pgcode", None)
    if pgcode:
        return pgcode == UNIQUE_VIOLATION
    return "unique" in str(e.orig).lower()


def _integrity_error(e: IntegrityError, name: Any) -> DataVoyagerError:
    if _is_unique_violation(e):
        return DuplicateDataSourceError(f"datasource {name!r} already exists")
    return ConfigurationError(f"invalid datasource record: {e.orig}")


class DataSourceFilter(BaseModel):
    type: Optional[str] = None
    is_active: Optional[bool] = None
    created_by: Optional[str] = None
    tags: List[str] = []  # every tag must be present


class DataSourceStats(BaseModel):
    total: int
    active: int
    count_by_type: Dict[str, int]


class MetadataStore:
    """Persists DataSource records through SQLModel sessions."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def migrate(self):
        SQLModel.metadata.create_all(self.engine)
        logger.info("Metadata store schema is up to date")

    def create_datasource(self, datasource: DataSource) -> DataSource:
        with Session(self.engine) as session:
            session.add(datasource)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise _integrity_error(e, datasource.name) from e
            session.refresh(datasource)
            return datasource

    def get_datasource(self, datasource_id: int) -> Optional[DataSource]:
        with Session(self.engine) as session:
            return session.get(DataSource, datasource_id)

    def get_datasource_by_name(self, name: str) -> Optional[DataSource]:
        with Session(self.engine) as session:
            return session.exec(select(DataSource).where(DataSource.name == name)).first()

    def _filtered(self, query, ds_filter: Optional[DataSourceFilter]):
        if ds_filter is None:
            return query
        if ds_filter.type:
            query = query.where(DataSource.type == ds_filter.type)
        if ds_filter.is_active is not None:
            query = query.where(DataSource.is_active == ds_filter.is_active)
        if ds_filter.created_by:
            query = query.where(DataSource.created_by == ds_filter.created_by)
        for tag in ds_filter.tags:
            # tags are stored as a JSON array, so match the quoted element
            query = query.where(cast(DataSource.tags, String).like(f'%"{tag}"%'))
        return query

    def list_datasources(
        self,
        ds_filter: Optional[DataSourceFilter] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[DataSource]:
        query = self._filtered(select(DataSource), ds_filter).order_by(DataSource.id).offset(skip)
        if limit is not None:
            query = query.limit(limit)
        with Session(self.engine) as session:
            return list(session.exec(query).all())

    def count_datasources(self, ds_filter: Optional[DataSourceFilter] = None) -> int:
        query = self._filtered(select(DataSource), ds_filter)
        with Session(self.engine) as session:
            return session.exec(select(func.count()).select_from(query.subquery())).one()

    def update_datasource(self, datasource_id: int, changes: Dict[str, Any]) -> Optional[DataSource]:
        """Apply the given fields only; returns None when the record is gone."""
        with Session(self.engine) as session:
            datasource = session.get(DataSource, datasource_id)
            if datasource is None:
                return None
            for key, value in changes.items():
                setattr(datasource, key, value)
            datasource.updated_at = utcnow()
            session.add(datasource)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise _integrity_error(e, changes.get("name", datasource.name)) from e
            session.refresh(datasource)
            return datasource

    def delete_datasource(self, datasource_id: int) -> bool:
        with Session(self.engine) as session:
            datasource = session.get(DataSource, datasource_id)
            if datasource is None:
                return False
            session.delete(datasource)
            session.commit()
            return True

    def get_datasource_stats(self) -> DataSourceStats:
        with Session(self.engine) as session:
            total = session.exec(select(func.count()).select_from(DataSource)).one()
            active = session.exec(
                select(func.count()).select_from(DataSource).where(DataSource.is_active == True)  # noqa: E712
            ).one()
            by_type = session.exec(
                select(DataSource.type, func.count()).group_by(DataSource.type)
            ).all()
        return DataSourceStats(
            total=total,
            active=active,
            count_by_type={ds_type: count for ds_type, count in by_type},
        )

    def health_check(self):
        """Raise if the store cannot answer a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def close(self):
        self.engine.dispose()


def create_metadata_store(store_type: str, connection_url: str, migrate_on_start: bool = True) -> MetadataStore:
    store = MetadataStore(build_engine(store_type, connection_url))
    if migrate_on_start:
        store.migrate()
    logger.info(f"Metadata store ready ({store_type})")
    return store
