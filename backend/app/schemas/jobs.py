from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class StartImportRequest(BaseModel):
    # From /maintenance/import/upload
    file_path: str = ""
    format: Literal["plain", "custom", "tar"]

    connection_ref: str
    target_database: str = ""

    clean: bool = False
    create_db: bool = False
    data_only: bool = False
    schema_only: bool = False
    disable_triggers: bool = False
    single_transaction: bool = False
    verbose: bool = False


class StartExportRequest(BaseModel):
    connection_ref: str
    database: str = ""
    scope: Literal["full", "schema", "data", "tables"] = "full"
    format: Literal["custom", "plain", "tar"] = "custom"
    compress: bool = False
    include_ownership: bool = False
    include_drop: bool = False
    include_create_db: bool = False
    verbose: bool = False
    exclude_patterns: Optional[str] = None
    selected_tables: List[str] = Field(default_factory=list)


class StartJobResponse(BaseModel):
    job_id: str


class CommandPreviewResponse(BaseModel):
    command: str


class JobStatusResponse(BaseModel):
    job_id: str
    kind: str
    status: Literal["Pending", "Running", "Completed", "Failed", "Cancelled"]
    error: Optional[str] = None
    created_at: str
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    command: Optional[str] = None
    connection_ref: str
    format: Optional[str] = None
    log_url: Optional[str] = None
    download_url: Optional[str] = None
