import json
import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError

from backend.app.core.exceptions import (
    ConfigurationError,
    ConnectionFailedError,
    DataVoyagerError,
    DuplicateDataSourceError,
    QueryExecutionError,
    UnsupportedDataSourceError,
)
from backend.app.models.datasource import DataSource, DataSourceRead
from backend.app.services.datasource_service import DataSourceService
from backend.app.services.metadata_store import DataSourceFilter, MetadataStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/datasources", tags=["datasources"])
system_router = APIRouter(tags=["system"])


class DataSourceCreate(BaseModel):
    name: str = Field(min_length=1)
    type: str
    config: Dict[str, Any] = {}
    description: Optional[str] = None
    tags: List[str] = []
    is_active: bool = True
    created_by: Optional[str] = None


class DataSourceUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    type: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    description: Optional[str] = None
    tags: Optional[List[str]] = None
    is_active: Optional[bool] = None

    @field_validator("name", "type", "config", "tags", "is_active")
    @classmethod
    def reject_null(cls, value):
        # Leave a field out to keep it; null is only meaningful for description
        if value is None:
            raise ValueError("may not be null")
        return value


class QueryRequest(BaseModel):
    query: str = Field(min_length=1)
    params: Optional[Union[List[Any], Dict[str, Any]]] = None
    limit: Optional[int] = Field(default=None, ge=0)


def get_store(request: Request) -> MetadataStore:
    return request.app.state.metadata_store


def get_service(request: Request) -> DataSourceService:
    return request.app.state.datasource_service


def _http_error(e: DataVoyagerError) -> HTTPException:
    if isinstance(e, ConnectionFailedError):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, DuplicateDataSourceError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (ConfigurationError, UnsupportedDataSourceError, QueryExecutionError)):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def _get_or_404(store: MetadataStore, datasource_id: int) -> DataSource:
    datasource = store.get_datasource(datasource_id)
    if not datasource:
        raise HTTPException(status_code=404, detail="DataSource not found")
    return datasource


def _get_active(store: MetadataStore, datasource_id: int) -> DataSource:
    datasource = _get_or_404(store, datasource_id)
    if not datasource.is_active:
        raise HTTPException(status_code=409, detail="DataSource is inactive")
    return datasource


@router.get("")
def read_datasources(
    type: Optional[str] = None,
    is_active: Optional[bool] = None,
    created_by: Optional[str] = None,
    tag: Optional[List[str]] = Query(default=None),
    skip: int = 0,
    limit: int = 100,
    store: MetadataStore = Depends(get_store),
):
    ds_filter = DataSourceFilter(type=type, is_active=is_active, created_by=created_by, tags=tag or [])
    datasources = store.list_datasources(ds_filter, skip=skip, limit=limit)
    return {
        "data": [DataSourceRead.from_model(ds) for ds in datasources],
        "total": store.count_datasources(ds_filter),
        "skip": skip,
        "limit": limit,
    }


@router.post("", status_code=201)
def create_datasource(
    payload: DataSourceCreate,
    store: MetadataStore = Depends(get_store),
    service: DataSourceService = Depends(get_service),
):
    try:
        config = service.normalize_config(payload.type, payload.config)
        datasource = store.create_datasource(DataSource(
            name=payload.name,
            type=payload.type,
            config=json.dumps(config.model_dump()),
            description=payload.description,
            tags=payload.tags,
            is_active=payload.is_active,
            created_by=payload.created_by,
        ))
    except DataVoyagerError as e:
        raise _http_error(e)

    logger.info(f"Created datasource {datasource.name} (id={datasource.id}, type={datasource.type})")
    return {"data": DataSourceRead.from_model(datasource)}


@router.get("/{datasource_id}")
def read_datasource(datasource_id: int, store: MetadataStore = Depends(get_store)):
    return {"data": DataSourceRead.from_model(_get_or_404(store, datasource_id))}


@router.put("/{datasource_id}")
def update_datasource(
    datasource_id: int,
    payload: DataSourceUpdate,
    store: MetadataStore = Depends(get_store),
    service: DataSourceService = Depends(get_service),
):
    datasource = _get_or_404(store, datasource_id)
    changes = payload.model_dump(exclude_unset=True)

    try:
        if "type" in changes or "config" in changes:
            # A new type must still accept the stored config, and vice versa
            ds_type = changes.get("type") or datasource.type
            raw = changes["config"] if "config" in changes else datasource.config_dict()
            config = service.normalize_config(ds_type, raw)
            changes["type"] = ds_type
            changes["config"] = json.dumps(config.model_dump())
        updated = store.update_datasource(datasource_id, changes)
    except DataVoyagerError as e:
        raise _http_error(e)

    if updated is None:
        raise HTTPException(status_code=404, detail="DataSource not found")
    logger.info(f"Updated datasource {updated.name} (id={updated.id}): {sorted(changes)}")
    return {"data": DataSourceRead.from_model(updated)}


@router.delete("/{datasource_id}", status_code=204)
def delete_datasource(datasource_id: int, store: MetadataStore = Depends(get_store)):
    if not store.delete_datasource(datasource_id):
        raise HTTPException(status_code=404, detail="DataSource not found")
    logger.info(f"Deleted datasource id={datasource_id}")
    return Response(status_code=204)


@router.post("/{datasource_id}/test")
def test_datasource(
    datasource_id: int,
    store: MetadataStore = Depends(get_store),
    service: DataSourceService = Depends(get_service),
):
    datasource = _get_or_404(store, datasource_id)
    return {"data": service.test_datasource(datasource)}


@router.get("/{datasource_id}/schema")
def get_datasource_schema(
    datasource_id: int,
    store: MetadataStore = Depends(get_store),
    service: DataSourceService = Depends(get_service),
):
    datasource = _get_active(store, datasource_id)
    try:
        return {"data": service.get_schema(datasource)}
    except DataVoyagerError as e:
        raise _http_error(e)


@router.get("/{datasource_id}/tables")
def get_datasource_tables(
    datasource_id: int,
    database: str = "",
    store: MetadataStore = Depends(get_store),
    service: DataSourceService = Depends(get_service),
):
    datasource = _get_active(store, datasource_id)
    try:
        return {"data": service.get_tables(datasource, database)}
    except DataVoyagerError as e:
        raise _http_error(e)


@router.post("/{datasource_id}/query")
def query_datasource(
    datasource_id: int,
    payload: QueryRequest,
    store: MetadataStore = Depends(get_store),
    service: DataSourceService = Depends(get_service),
):
    datasource = _get_active(store, datasource_id)
    try:
        return {"data": service.query(datasource, payload.query, payload.params, payload.limit)}
    except DataVoyagerError as e:
        raise _http_error(e)


@system_router.get("/datasource-types")
def read_datasource_types(service: DataSourceService = Depends(get_service)):
    plugins = service.registry.list()
    return {
        "data": [
            {"type": ds_type.value, "name": plugin.get_name()}
            for ds_type, plugin in plugins.items()
        ]
    }


@system_router.get("/datasource-stats")
def read_datasource_stats(store: MetadataStore = Depends(get_store)):
    return {"data": store.get_datasource_stats()}


@system_router.get("/health")
def health(service: DataSourceService = Depends(get_service)):
    try:
        service.health_check()
    except SQLAlchemyError as e:
        logger.error(f"Health check failed: {e}")
        raise HTTPException(status_code=503, detail="metadata store unavailable")
    return {"status": "ok"}
