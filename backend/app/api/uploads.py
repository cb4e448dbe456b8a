from __future__ import annotations

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from ..core.config import Settings
from ..core.errors import InvalidFormat, PayloadTooLarge, UploadError
from ..schemas.uploads import UploadResponse
from ..services.storage import LocalArtifactStorage
from ..services.uploads import save_upload
from .deps import get_settings, get_storage


router = APIRouter(prefix="/maintenance/import", tags=["uploads"])


@router.post("/upload", response_model=UploadResponse)
async def upload_dump(
    file: UploadFile = File(...),
    storage: LocalArtifactStorage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
) -> UploadResponse:
    try:
        saved = await save_upload(file, storage, settings.max_upload_bytes)
    except InvalidFormat as e:
        raise HTTPException(status_code=415, detail=str(e))
    except PayloadTooLarge as e:
        raise HTTPException(status_code=413, detail=str(e))
    except UploadError as e:
        raise HTTPException(status_code=500, detail=str(e))
    finally:
        await file.close()

    return UploadResponse(file_path=str(saved.file_path), file_size=saved.file_size, format=saved.format.value)
