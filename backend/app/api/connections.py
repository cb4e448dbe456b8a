from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException

from ..core.config import Settings
from ..core.errors import ConnectionUnresolved
from ..db.connections import SQLiteConnectionStore
from ..db.models import ConnectionRecord
from ..schemas.connections import ConnectionResponse, ConnectionTestResponse, CreateConnectionRequest
from ..services import connections as connection_checks
from .deps import get_connections, get_settings


router = APIRouter(prefix="/endpoints", tags=["connections"])


def _to_response(rec: ConnectionRecord) -> ConnectionResponse:
    return ConnectionResponse(
        connection_id=rec.connection_id,
        name=rec.name,
        host=rec.host,
        port=rec.port,
        database=rec.database,
        username=rec.username,
        ssl_mode=rec.ssl_mode,
        search_path=rec.search_path,
        has_password=rec.has_secret,
    )


@router.get("", response_model=List[ConnectionResponse])
def list_endpoints(store: SQLiteConnectionStore = Depends(get_connections)) -> List[ConnectionResponse]:
    return [_to_response(r) for r in store.list_connections()]


@router.post("", response_model=ConnectionResponse)
def create_endpoint(
    body: CreateConnectionRequest,
    store: SQLiteConnectionStore = Depends(get_connections),
) -> ConnectionResponse:
    rec = store.create_connection(
        name=body.name.strip(),
        host=body.host.strip(),
        port=body.port,
        database=body.database.strip() or "postgres",
        username=body.username or None,
        secret=body.password or None,
        ssl_mode=body.ssl_mode or None,
        search_path=body.search_path or None,
    )
    return _to_response(rec)


@router.delete("/{connection_id}")
def delete_endpoint(connection_id: int, store: SQLiteConnectionStore = Depends(get_connections)) -> dict:
    if not store.delete_connection(connection_id):
        raise HTTPException(status_code=404, detail="Connection not found")
    return {"ok": True}


@router.post("/{connection_id}/test", response_model=ConnectionTestResponse)
def test_endpoint(
    connection_id: int,
    store: SQLiteConnectionStore = Depends(get_connections),
    settings: Settings = Depends(get_settings),
) -> ConnectionTestResponse:
    try:
        conn = store.resolve(str(connection_id))
    except ConnectionUnresolved as e:
        raise HTTPException(status_code=404, detail=str(e))
    result = connection_checks.test_connection(
        conn,
        psql_bin=settings.psql_bin,
        timeout=settings.connection_test_timeout_seconds,
    )
    return ConnectionTestResponse(success=result.success, message=result.message, version=result.version)
