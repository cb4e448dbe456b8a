from __future__ import annotations

import asyncio
import json
from typing import AsyncIterator, List

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from ..core.errors import AlreadyStarted, InvalidState, JobStartError, NotFound
from ..db.connections import SQLiteConnectionStore
from ..schemas.jobs import (
    CommandPreviewResponse,
    JobStatusResponse,
    StartExportRequest,
    StartImportRequest,
    StartJobResponse,
)
from ..services.broadcast import StreamEnd, Subscription
from ..services.commands import DumpParams, RestoreParams, build_create_database_command, build_restore_command
from ..services.formats import DumpFormat
from ..services.jobs import JobRegistry, JobStatus
from .deps import get_connections, get_registry


router = APIRouter(prefix="/maintenance", tags=["jobs"])

SSE_KEEPALIVE_SECONDS = 15.0


def _restore_params(req: StartImportRequest) -> RestoreParams:
    return RestoreParams(
        target_database=req.target_database,
        clean=req.clean,
        create_db=req.create_db,
        data_only=req.data_only,
        schema_only=req.schema_only,
        disable_triggers=req.disable_triggers,
        single_transaction=req.single_transaction,
        verbose=req.verbose,
    )


def _status_response(request: Request, status: JobStatus) -> JobStatusResponse:
    def url(path: str) -> str:
        return str(request.base_url).rstrip("/") + f"/maintenance/jobs/{status.job_id}/{path}"

    return JobStatusResponse(
        job_id=status.job_id,
        kind=status.kind,
        status=status.state.value,
        error=status.error,
        created_at=status.created_at,
        started_at=status.started_at,
        ended_at=status.ended_at,
        command=status.command,
        connection_ref=status.connection_ref,
        format=status.file_format,
        log_url=url("download-log"),
        download_url=url("download") if status.artifact_available else None,
    )


@router.post("/import/preview", response_model=CommandPreviewResponse)
def preview_import(
    req: StartImportRequest,
    connections: SQLiteConnectionStore = Depends(get_connections),
    registry: JobRegistry = Depends(get_registry),
) -> CommandPreviewResponse:
    try:
        conn = connections.resolve(req.connection_ref)
    except JobStartError as e:
        raise HTTPException(status_code=400, detail=str(e))
    params = _restore_params(req)
    commands = []
    if params.create_db and params.target_database:
        commands.append(build_create_database_command(params.target_database, conn, registry.tools))
    commands.append(build_restore_command(DumpFormat(req.format), params, conn, req.file_path, registry.tools))
    return CommandPreviewResponse(command="\n".join(c.display for c in commands))


@router.post("/import", response_model=StartJobResponse)
def start_import(req: StartImportRequest, registry: JobRegistry = Depends(get_registry)) -> StartJobResponse:
    try:
        job = registry.create_import_job(
            file_path=req.file_path,
            fmt=DumpFormat(req.format),
            params=_restore_params(req),
            connection_ref=req.connection_ref,
        )
        # Start processing asynchronously on this machine.
        registry.start(job.job_id)
    except AlreadyStarted as e:
        raise HTTPException(status_code=409, detail=str(e))
    except JobStartError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return StartJobResponse(job_id=job.job_id)


@router.post("/export", response_model=StartJobResponse)
def start_export(req: StartExportRequest, registry: JobRegistry = Depends(get_registry)) -> StartJobResponse:
    params = DumpParams(
        scope=req.scope,
        format=DumpFormat(req.format),
        database=req.database,
        compress=req.compress,
        include_ownership=req.include_ownership,
        include_drop=req.include_drop,
        include_create_db=req.include_create_db,
        verbose=req.verbose,
        exclude_patterns=req.exclude_patterns,
        selected_tables=tuple(req.selected_tables),
    )
    try:
        job = registry.create_export_job(params=params, connection_ref=req.connection_ref)
        registry.start(job.job_id)
    except AlreadyStarted as e:
        raise HTTPException(status_code=409, detail=str(e))
    except JobStartError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return StartJobResponse(job_id=job.job_id)


@router.get("/jobs", response_model=List[JobStatusResponse])
def list_jobs(request: Request, limit: int = 50, registry: JobRegistry = Depends(get_registry)) -> List[JobStatusResponse]:
    return [_status_response(request, s) for s in registry.list_jobs(limit=max(1, min(limit, 500)))]


@router.get("/jobs/{job_id}/status", response_model=JobStatusResponse)
def get_job_status(job_id: str, request: Request, registry: JobRegistry = Depends(get_registry)) -> JobStatusResponse:
    try:
        status = registry.get_status(job_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    return _status_response(request, status)


@router.post("/jobs/{job_id}/cancel", response_model=JobStatusResponse)
def cancel_job(job_id: str, request: Request, registry: JobRegistry = Depends(get_registry)) -> JobStatusResponse:
    try:
        status = registry.cancel(job_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except InvalidState as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _status_response(request, status)


def sse_stream(sub: Subscription, keepalive: float = SSE_KEEPALIVE_SECONDS) -> AsyncIterator[str]:
    """Frame a subscription as server-sent events.

    Waits happen on the event loop: the producer wakes the stream through the
    subscription's notifier, so an idle viewer holds no worker thread.
    """

    async def event_generator() -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        ready = asyncio.Event()

        def wake() -> None:
            try:
                loop.call_soon_threadsafe(ready.set)
            except RuntimeError:
                # Event loop already closed.
                pass

        sub.set_notifier(wake)
        try:
            while True:
                ready.clear()
                batch = sub.next_batch(0)
                if not batch:
                    try:
                        await asyncio.wait_for(ready.wait(), keepalive)
                    except asyncio.TimeoutError:
                        # Keeps proxies and browsers from timing out an idle stream.
                        yield ": keepalive\n\n"
                    continue
                for event in batch:
                    if isinstance(event, StreamEnd):
                        data = json.dumps({"status": event.state, "error": event.error})
                        yield f"event: end\ndata: {data}\n\n"
                        return
                    yield f"data: {event}\n\n"
        finally:
            sub.set_notifier(None)
            sub.close()

    return event_generator()


@router.get("/jobs/{job_id}/logs")
def stream_logs(job_id: str, registry: JobRegistry = Depends(get_registry)) -> StreamingResponse:
    try:
        sub = registry.subscribe(job_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    return StreamingResponse(
        sse_stream(sub),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
