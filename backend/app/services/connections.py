from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from typing import Optional

from ..db.models import ResolvedConnection
from .commands import connection_args, connection_env


@dataclass(frozen=True)
class ConnectionTestResult:
    success: bool
    message: str
    version: Optional[str] = None


def test_connection(conn: ResolvedConnection, psql_bin: str = "psql", timeout: float = 10.0) -> ConnectionTestResult:
    """Ask the server for its version through psql.

    The secret only travels through the child environment and never appears in
    the returned message.
    """
    cmd = [psql_bin] + connection_args(conn, conn.database) + ["-Atc", "SHOW server_version"]
    env = dict(os.environ)
    env.update(connection_env(conn))
    env.setdefault("PGCONNECT_TIMEOUT", str(max(1, int(timeout))))
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, env=env, timeout=timeout)
    except FileNotFoundError:
        return ConnectionTestResult(success=False, message=f"{psql_bin} not found")
    except subprocess.TimeoutExpired:
        return ConnectionTestResult(success=False, message=f"Timed out after {timeout:g}s")

    if proc.returncode != 0:
        message = (proc.stderr or proc.stdout).strip() or f"psql exited with code {proc.returncode}"
        if conn.secret:
            message = message.replace(conn.secret, "*****")
        return ConnectionTestResult(success=False, message=message)
    version = proc.stdout.strip().splitlines()[0] if proc.stdout.strip() else None
    return ConnectionTestResult(success=True, message="Connection successful", version=version)
