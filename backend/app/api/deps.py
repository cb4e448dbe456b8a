from __future__ import annotations

from fastapi import Request

from ..core.config import Settings
from ..db.connections import SQLiteConnectionStore
from ..services.jobs import JobRegistry
from ..services.storage import LocalArtifactStorage


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_storage(request: Request) -> LocalArtifactStorage:
    return request.app.state.storage


def get_connections(request: Request) -> SQLiteConnectionStore:
    return request.app.state.connections


def get_registry(request: Request) -> JobRegistry:
    return request.app.state.registry
