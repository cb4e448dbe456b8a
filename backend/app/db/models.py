from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class JobState(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})


@dataclass(frozen=True)
class JobRecord:
    job_id: str
    kind: str
    state: str
    connection_ref: str
    params_json: str
    created_at: str
    updated_at: str
    file_path: Optional[str] = None
    file_format: Optional[str] = None
    file_size: Optional[int] = None
    output_path: Optional[str] = None
    command: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None

    @property
    def job_state(self) -> JobState:
        return JobState(self.state)

    def params(self) -> Dict[str, Any]:
        try:
            data = json.loads(self.params_json or "{}")
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}


@dataclass(frozen=True)
class ConnectionRecord:
    connection_id: int
    name: str
    host: str
    port: int
    database: str
    username: Optional[str]
    ssl_mode: Optional[str]
    search_path: Optional[str]
    has_secret: bool
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class ResolvedConnection:
    """Connection fields as needed by the external tools.

    The secret is excluded from `repr` so the object can be logged safely.
    """

    host: str
    port: int
    database: str
    username: Optional[str] = None
    secret: Optional[str] = field(default=None, repr=False)
    ssl_mode: Optional[str] = None
    search_path: Optional[str] = None
