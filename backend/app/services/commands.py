from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ..db.models import ResolvedConnection
from .formats import DumpFormat


SECRET_PLACEHOLDER = "*****"


@dataclass(frozen=True)
class ToolPaths:
    psql: str = "psql"
    pg_restore: str = "pg_restore"
    pg_dump: str = "pg_dump"
    maintenance_database: str = "postgres"


@dataclass(frozen=True)
class RestoreParams:
    target_database: str = ""
    clean: bool = False
    create_db: bool = False
    data_only: bool = False
    schema_only: bool = False
    disable_triggers: bool = False
    single_transaction: bool = False
    verbose: bool = False


@dataclass(frozen=True)
class DumpParams:
    scope: str = "full"  # full | schema | data | tables
    format: DumpFormat = DumpFormat.CUSTOM
    database: str = ""
    compress: bool = False
    include_ownership: bool = False
    include_drop: bool = False
    include_create_db: bool = False
    verbose: bool = False
    exclude_patterns: Optional[str] = None
    selected_tables: Tuple[str, ...] = ()


@dataclass(frozen=True)
class BuiltCommand:
    """An executable command line.

    `env` holds the variables the process needs on top of the server environment,
    including the secret. `display` is the only form that may be shown or logged.
    """

    argv: Tuple[str, ...]
    env: Dict[str, str] = field(repr=False)
    display: str

    @property
    def tool(self) -> str:
        return self.argv[0]


def connection_env(conn: ResolvedConnection) -> Dict[str, str]:
    env: Dict[str, str] = {}
    if conn.secret:
        env["PGPASSWORD"] = conn.secret
    if conn.ssl_mode:
        env["PGSSLMODE"] = conn.ssl_mode
    if conn.search_path:
        env["PGOPTIONS"] = f"-c search_path={conn.search_path}"
    return env


def connection_args(conn: ResolvedConnection, database: str) -> List[str]:
    args = ["-h", conn.host, "-p", str(conn.port)]
    if conn.username:
        args += ["-U", conn.username]
    args += ["-d", database]
    return args


def redact(argv: Tuple[str, ...], secret: Optional[str]) -> str:
    parts = list(argv)
    if secret:
        parts = [p.replace(secret, SECRET_PLACEHOLDER) for p in parts]
    rendered = " ".join(shlex.quote(p) for p in parts)
    if secret:
        # Quoting and joining can line up a secret across argument boundaries.
        rendered = rendered.replace(secret, SECRET_PLACEHOLDER)
    return f"PGPASSWORD={SECRET_PLACEHOLDER} {rendered}"


def _built(argv: List[str], conn: ResolvedConnection) -> BuiltCommand:
    frozen = tuple(argv)
    return BuiltCommand(argv=frozen, env=connection_env(conn), display=redact(frozen, conn.secret))


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def build_create_database_command(
    target_database: str,
    conn: ResolvedConnection,
    tools: ToolPaths = ToolPaths(),
) -> BuiltCommand:
    """psql on the maintenance database issuing CREATE DATABASE for the restore target."""
    argv = [tools.psql] + connection_args(conn, tools.maintenance_database)
    argv += ["-v", "ON_ERROR_STOP=1", "-c", f"CREATE DATABASE {quote_identifier(target_database)}"]
    return _built(argv, conn)


def build_restore_command(
    fmt: DumpFormat,
    params: RestoreParams,
    conn: ResolvedConnection,
    file_path: str,
    tools: ToolPaths = ToolPaths(),
) -> BuiltCommand:
    """Translate an import request into a psql or pg_restore invocation.

    Plain SQL dumps are fed to psql; archives (custom, tar) go through pg_restore,
    which always runs with --no-owner. Both restore into the target database;
    `create_db` is served by a separate `build_create_database_command` step run
    before this one.
    """
    target = params.target_database or conn.database

    if fmt is DumpFormat.PLAIN:
        argv = [tools.psql] + connection_args(conn, target)
        if params.single_transaction:
            argv += ["--single-transaction", "-v", "ON_ERROR_STOP=1"]
        argv += ["-f", file_path]
        return _built(argv, conn)

    argv = [tools.pg_restore] + connection_args(conn, target)
    if params.clean:
        argv.append("--clean")
    if params.data_only:
        argv.append("--data-only")
    if params.schema_only:
        argv.append("--schema-only")
    if params.disable_triggers:
        argv.append("--disable-triggers")
    if params.single_transaction:
        argv.append("--single-transaction")
    if params.verbose:
        argv.append("--verbose")
    argv.append("--no-owner")
    argv.append(file_path)
    return _built(argv, conn)


_DUMP_FORMAT_FLAGS = {
    DumpFormat.CUSTOM: "-Fc",
    DumpFormat.PLAIN: "-Fp",
    DumpFormat.TAR: "-Ft",
}


def build_dump_command(
    params: DumpParams,
    conn: ResolvedConnection,
    output_path: str,
    tools: ToolPaths = ToolPaths(),
) -> BuiltCommand:
    argv = [tools.pg_dump] + connection_args(conn, params.database or conn.database)
    argv += [_DUMP_FORMAT_FLAGS[params.format], "-f", output_path]

    if params.scope == "schema":
        argv.append("--schema-only")
    elif params.scope == "data":
        argv.append("--data-only")
    elif params.scope == "tables":
        for table in params.selected_tables:
            argv += ["-t", table]

    if params.compress:
        argv.append("-Z6")
    if not params.include_ownership:
        argv.append("--no-owner")
    if params.include_drop:
        argv.append("--clean")
    if params.include_create_db:
        argv.append("--create")
    if params.verbose:
        argv.append("--verbose")
    if params.exclude_patterns:
        for pattern in params.exclude_patterns.split(","):
            if pattern.strip():
                argv += ["--exclude-table-data", pattern.strip()]
    return _built(argv, conn)


def dump_extension(fmt: DumpFormat) -> str:
    return {DumpFormat.CUSTOM: ".dump", DumpFormat.PLAIN: ".sql", DumpFormat.TAR: ".tar"}[fmt]
