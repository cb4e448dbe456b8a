from __future__ import annotations

from typing import Literal

from pydantic import BaseModel


class UploadResponse(BaseModel):
    file_path: str
    file_size: int
    format: Literal["plain", "custom", "tar"]
