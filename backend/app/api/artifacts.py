from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse, StreamingResponse

from ..core.errors import NotFound
from ..services.jobs import JobRegistry
from .deps import get_registry


router = APIRouter(prefix="/maintenance/jobs", tags=["artifacts"])


@router.get("/{job_id}/download-log")
def download_log(job_id: str, registry: JobRegistry = Depends(get_registry)) -> StreamingResponse:
    try:
        chunks = registry.iter_log(job_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return StreamingResponse(
        chunks,
        media_type="text/plain; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{job_id}.log"'},
    )


@router.get("/{job_id}/download")
def download_export(job_id: str, registry: JobRegistry = Depends(get_registry)) -> FileResponse:
    try:
        path = registry.export_artifact(job_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return FileResponse(str(path), filename=path.name, media_type="application/octet-stream")
