from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class CreateConnectionRequest(BaseModel):
    name: str = Field(min_length=1)
    host: str = Field(min_length=1)
    port: int = Field(default=5432, ge=1, le=65535)
    database: str = "postgres"
    username: Optional[str] = None
    password: Optional[str] = None
    ssl_mode: Optional[str] = None
    search_path: Optional[str] = None


class ConnectionResponse(BaseModel):
    connection_id: int
    name: str
    host: str
    port: int
    database: str
    username: Optional[str] = None
    ssl_mode: Optional[str] = None
    search_path: Optional[str] = None
    has_password: bool = False


class ConnectionTestResponse(BaseModel):
    success: bool
    message: str
    version: Optional[str] = None
