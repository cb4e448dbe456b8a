from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from fastapi import UploadFile

from ..core.errors import PayloadTooLarge, UploadError
from .formats import SNIFF_BYTES, DumpFormat, detect_dump_format
from .storage import LocalArtifactStorage


logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class UploadedArtifact:
    file_path: Path
    file_size: int
    format: DumpFormat


async def save_upload(file: UploadFile, storage: LocalArtifactStorage, max_bytes: int) -> UploadedArtifact:
    """Classify an uploaded dump and write it unmodified to a fresh staging directory.

    Raises InvalidFormat before anything is written when the first bytes are not a
    recognized dump, and PayloadTooLarge (after removing the partial file) when the
    payload exceeds `max_bytes`.
    """
    name = storage.safe_filename(file.filename or "import.dump")

    head = await file.read(CHUNK_SIZE)
    chunk = head
    while chunk and len(head) < SNIFF_BYTES:
        chunk = await file.read(CHUNK_SIZE)
        head += chunk
    fmt = detect_dump_format(head[:SNIFF_BYTES], name)

    up_dir = storage.new_upload_dir()
    dest = up_dir / name
    size = 0
    try:
        with dest.open("wb") as out:
            chunk = head
            while chunk:
                size += len(chunk)
                if size > max_bytes:
                    raise PayloadTooLarge(f"Upload exceeds {max_bytes} bytes")
                out.write(chunk)
                chunk = await file.read(CHUNK_SIZE)
    except PayloadTooLarge:
        logger.warning("Rejected upload %s: larger than %d bytes", name, max_bytes)
        shutil.rmtree(up_dir, ignore_errors=True)
        raise
    except OSError as e:
        shutil.rmtree(up_dir, ignore_errors=True)
        raise UploadError(f"Failed to store upload: {e}") from e

    logger.info("File uploaded successfully: %s (%d bytes, format: %s)", dest, size, fmt.value)
    return UploadedArtifact(file_path=dest, file_size=size, format=fmt)
