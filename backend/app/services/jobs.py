from __future__ import annotations

import logging
import os
import re
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, Iterator, List, Optional, Protocol

from ..core.config import Settings
from ..core.errors import AlreadyStarted, InvalidParams, InvalidState, NotFound, ProcessSpawnError
from ..db.models import JobRecord, JobState, ResolvedConnection
from ..db.sqlite import SQLiteJobStore
from .broadcast import LogBroadcaster, StreamEnd, Subscription, replay
from .commands import (
    BuiltCommand,
    DumpParams,
    RestoreParams,
    ToolPaths,
    build_create_database_command,
    build_dump_command,
    build_restore_command,
    dump_extension,
)
from .formats import DumpFormat
from .runner import ProcessOutcome, ProcessRunner
from .storage import JobPaths, LocalArtifactStorage


logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "interrupted: server restarted"

# Restore errors that are expected with --no-owner/--clean or on re-runs.
NON_CRITICAL_PATTERNS = [
    re.compile(p)
    for p in (
        r"unrecognized configuration parameter",
        r"role .* does not exist",
        r"already exists",
        r"must be owner of extension",
        r"must be superuser to create extension",
    )
]


def is_error_line(line: str) -> bool:
    return "error:" in line or "FATAL" in line or "ERROR" in line


def is_non_critical_error(line: str) -> bool:
    return any(p.search(line) for p in NON_CRITICAL_PATTERNS)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConnectionResolver(Protocol):
    def resolve(self, connection_ref: str) -> ResolvedConnection: ...


@dataclass(frozen=True)
class JobStatus:
    job_id: str
    kind: str
    state: JobState
    error: Optional[str]
    created_at: str
    started_at: Optional[str]
    ended_at: Optional[str]
    command: Optional[str]
    connection_ref: str
    file_format: Optional[str] = None
    artifact_available: bool = False

    @classmethod
    def from_record(cls, rec: JobRecord) -> "JobStatus":
        return cls(
            job_id=rec.job_id,
            kind=rec.kind,
            state=rec.job_state,
            error=rec.error,
            created_at=rec.created_at,
            started_at=rec.started_at,
            ended_at=rec.ended_at,
            command=rec.command,
            connection_ref=rec.connection_ref,
            file_format=rec.file_format,
            artifact_available=bool(
                rec.kind == "export"
                and rec.job_state is JobState.COMPLETED
                and rec.output_path
                and Path(rec.output_path).exists()
            ),
        )


@dataclass(frozen=True)
class SetupStep:
    """A command that must succeed before the job's main command runs."""

    command: BuiltCommand
    announce: str
    done: str
    failure: str


@dataclass
class Job:
    """In-memory record of a job started by this process.

    `lock` guards every field below it; state only moves forward.
    """

    job_id: str
    kind: str
    connection_ref: str
    command: BuiltCommand
    paths: JobPaths
    broadcaster: LogBroadcaster
    header: List[str]
    created_at: str
    staged_file: Optional[Path] = None
    file_format: Optional[DumpFormat] = None
    output_path: Optional[Path] = None
    setup: List[SetupStep] = field(default_factory=list)

    state: JobState = JobState.PENDING
    error: Optional[str] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    ended_ts: Optional[float] = None
    launched: bool = False
    cancel_requested: bool = False
    runner: Optional[ProcessRunner] = None
    error_lines: int = 0
    critical_error_lines: int = 0
    staged_released: bool = False
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    done: threading.Event = field(default_factory=threading.Event, repr=False)

    def status(self) -> JobStatus:
        with self.lock:
            return JobStatus(
                job_id=self.job_id,
                kind=self.kind,
                state=self.state,
                error=self.error,
                created_at=self.created_at,
                started_at=self.started_at,
                ended_at=self.ended_at,
                command=self.command.display,
                connection_ref=self.connection_ref,
                file_format=self.file_format.value if self.file_format else None,
                artifact_available=bool(
                    self.kind == "export"
                    and self.state is JobState.COMPLETED
                    and self.output_path is not None
                    and self.output_path.exists()
                ),
            )


def _iter_chunks(f: BinaryIO, limit: int, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
    with f:
        remaining = limit
        while remaining > 0:
            chunk = f.read(min(chunk_size, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk


class JobRegistry:
    """Owns job identity and lifecycle. The only component that changes job state.

    Jobs are independent: the registry lock only guards the id -> job map and the
    staged-file claims; every transition happens under the job's own lock.
    """

    def __init__(
        self,
        store: SQLiteJobStore,
        storage: LocalArtifactStorage,
        connections: ConnectionResolver,
        settings: Settings,
    ):
        self._store = store
        self._storage = storage
        self._connections = connections
        self._settings = settings
        self._tools = ToolPaths(
            psql=settings.psql_bin,
            pg_restore=settings.pg_restore_bin,
            pg_dump=settings.pg_dump_bin,
            maintenance_database=settings.maintenance_database,
        )
        self._lock = threading.Lock()
        self._jobs: Dict[str, Job] = {}
        self._claims: Dict[Path, str] = {}

    @property
    def tools(self) -> ToolPaths:
        return self._tools

    def recover(self) -> List[str]:
        """Fail jobs a previous process left unfinished."""
        job_ids = self._store.interrupt_unfinished(INTERRUPTED_ERROR)
        for job_id in job_ids:
            logger.warning("Job %s was interrupted by a restart", job_id)
        return job_ids

    # ----- creation -----

    def create_import_job(
        self,
        *,
        file_path: str,
        fmt: DumpFormat,
        params: RestoreParams,
        connection_ref: str,
    ) -> Job:
        staged = self._storage.staged_file(file_path)
        if staged is None:
            raise InvalidParams("Import file not found")
        if params.create_db and not params.target_database:
            raise InvalidParams("A target database name is required to create the database")
        conn = self._connections.resolve(connection_ref)

        job_id = f"import_{uuid.uuid4().hex}"
        command = build_restore_command(fmt, params, conn, str(staged), self._tools)
        setup: List[SetupStep] = []
        if params.create_db:
            name = params.target_database
            setup.append(
                SetupStep(
                    command=build_create_database_command(name, conn, self._tools),
                    announce=f"Creating database '{name}'...",
                    done=f"Database '{name}' created successfully",
                    failure=f"Failed to create database '{name}'",
                )
            )
        with self._lock:
            owner = self._claims.get(staged)
            if owner is not None:
                raise AlreadyStarted(f"File is already used by job {owner}")
            self._claims[staged] = job_id

        header = [
            "Starting PostgreSQL import...",
            f"File: {staged.name}",
            f"Format: {fmt.value}",
            f"Target: {params.target_database or conn.database}",
        ]
        header += [f"Setup: {step.command.display}" for step in setup]
        header += [f"Command: {command.display}", ""]
        job_params: Dict[str, Any] = asdict(params)
        job_params["format"] = fmt.value
        try:
            return self._register(
                job_id,
                kind="import",
                connection_ref=connection_ref,
                command=command,
                header=header,
                params=job_params,
                staged_file=staged,
                file_format=fmt,
                setup=setup,
            )
        except Exception:
            with self._lock:
                self._claims.pop(staged, None)
            raise

    def create_export_job(self, *, params: DumpParams, connection_ref: str) -> Job:
        if params.scope == "tables" and not params.selected_tables:
            raise InvalidParams("No tables selected")
        conn = self._connections.resolve(connection_ref)

        job_id = f"export_{uuid.uuid4().hex}"
        output_path = self._storage.job_paths(job_id).outputs_dir / f"{job_id}{dump_extension(params.format)}"
        command = build_dump_command(params, conn, str(output_path), self._tools)
        header = [
            "Starting PostgreSQL export...",
            f"Scope: {params.scope}",
            f"Format: {params.format.value}",
            f"Command: {command.display}",
            "",
        ]
        job_params: Dict[str, Any] = asdict(params)
        job_params["format"] = params.format.value
        job_params["selected_tables"] = list(params.selected_tables)
        return self._register(
            job_id,
            kind="export",
            connection_ref=connection_ref,
            command=command,
            header=header,
            params=job_params,
            output_path=output_path,
            file_format=params.format,
        )

    def _register(
        self,
        job_id: str,
        *,
        kind: str,
        connection_ref: str,
        command: BuiltCommand,
        header: List[str],
        params: Dict[str, Any],
        staged_file: Optional[Path] = None,
        file_format: Optional[DumpFormat] = None,
        output_path: Optional[Path] = None,
        setup: Optional[List[SetupStep]] = None,
    ) -> Job:
        paths = self._storage.job_paths(job_id).ensure()
        rec = self._store.create_job(
            job_id,
            kind=kind,
            connection_ref=connection_ref,
            params=params,
            command=command.display,
            file_path=str(staged_file) if staged_file else None,
            file_format=file_format.value if file_format else None,
            file_size=staged_file.stat().st_size if staged_file else None,
            output_path=str(output_path) if output_path else None,
        )
        job = Job(
            job_id=job_id,
            kind=kind,
            connection_ref=connection_ref,
            command=command,
            paths=paths,
            broadcaster=LogBroadcaster(paths.log_path),
            header=header,
            created_at=rec.created_at,
            staged_file=staged_file,
            file_format=file_format,
            output_path=output_path,
            setup=list(setup or []),
        )
        with self._lock:
            self._jobs[job_id] = job
        logger.info("Created %s job %s", kind, job_id)
        return job

    # ----- lifecycle -----

    def start(self, job_id: str) -> Job:
        job = self._live_job(job_id)
        with job.lock:
            if job.state.is_terminal:
                raise InvalidState(f"Job {job_id} is already {job.state.value}")
            if job.launched:
                raise AlreadyStarted(f"Job {job_id} was already started")
            job.launched = True
        t = threading.Thread(target=self._run, args=(job,), name=f"job-{job_id}", daemon=True)
        t.start()
        return job

    def _run(self, job: Job) -> None:
        try:
            self._execute(job)
        except Exception as e:
            logger.exception("Job %s crashed", job.job_id)
            if job.runner is not None:
                job.runner.abort()
            self._finalize(job, JobState.FAILED, f"Internal error: {type(e).__name__}: {e}")

    def _execute(self, job: Job) -> None:
        for line in job.header:
            job.broadcaster.publish(line)

        def on_line(line: str) -> None:
            if is_error_line(line):
                job.error_lines += 1
                if not is_non_critical_error(line):
                    job.critical_error_lines += 1
            job.broadcaster.publish(line)

        for step in job.setup:
            job.broadcaster.publish(step.announce)
            outcome = self._run_command(job, step.command, on_line)
            if outcome is None:
                return
            if not outcome.success:
                state, error, footer = self._judge(job, outcome, step.command, failure=step.failure)
                self._finalize(job, state, error, footer=footer)
                return
            job.broadcaster.publish(step.done)
            job.broadcaster.publish("")

        outcome = self._run_command(job, job.command, on_line)
        if outcome is None:
            return
        state, error, footer = self._judge(job, outcome, job.command)
        self._finalize(job, state, error, footer=footer)

    def _run_command(
        self, job: Job, command: BuiltCommand, on_line: Callable[[str], None]
    ) -> Optional[ProcessOutcome]:
        """Run `command` as the job's current process until it exits.

        Returns None when the job reached a terminal state instead of starting it.
        """
        runner = ProcessRunner(
            command,
            on_line,
            tail_lines=self._settings.output_tail_lines,
            cancel_grace=self._settings.cancel_grace_seconds,
            timeout=self._settings.job_timeout_seconds,
        )
        with job.lock:
            if job.state.is_terminal:
                return None
            if job.cancel_requested:
                # Cancelled between two steps; nothing is running.
                self._finalize(job, JobState.CANCELLED, None, footer=["", f"{job.kind.capitalize()} cancelled"])
                return None
            try:
                runner.spawn()
            except ProcessSpawnError as e:
                logger.error("Job %s: %s", job.job_id, e)
                self._finalize(job, JobState.FAILED, str(e), footer=str(e))
                return None
            job.runner = runner
            if job.state is JobState.PENDING:
                job.state = JobState.RUNNING
                job.started_at = _now_iso()
                self._store.mark_running(job.job_id, job.started_at)
        logger.info("Job %s running %s (pid %s)", job.job_id, os.path.basename(command.tool), runner.pid)
        return runner.pump()

    def _judge(
        self,
        job: Job,
        outcome: ProcessOutcome,
        command: BuiltCommand,
        *,
        failure: Optional[str] = None,
    ) -> tuple[JobState, Optional[str], List[str]]:
        label = job.kind.capitalize()
        tool = os.path.basename(command.tool)
        if outcome.success:
            footer = ["", f"{label} completed successfully"]
            if job.output_path is not None:
                footer.append(f"Dump file: {job.output_path.name}")
            return JobState.COMPLETED, None, footer
        if job.cancel_requested and outcome.terminated:
            return JobState.CANCELLED, None, ["", f"{label} cancelled ({outcome.describe()})"]

        if outcome.timed_out:
            error = f"{tool} timed out after {self._settings.job_timeout_seconds:g} seconds"
        else:
            error = f"{tool} {outcome.describe()}"
        if failure:
            error = f"{failure}: {error}"
        if job.error_lines and not job.critical_error_lines:
            error += f" ({job.error_lines} error line(s), all non-critical)"
        if outcome.tail:
            error += "\n" + "\n".join(outcome.tail)
        return JobState.FAILED, error, ["", f"{label} failed: {error.splitlines()[0]}"]

    def _finalize(
        self,
        job: Job,
        state: JobState,
        error: Optional[str],
        *,
        footer: Optional[List[str] | str] = None,
    ) -> bool:
        """Commit a terminal state. Only the first caller for a job wins; the winner
        closes the job's log stream with the committed state."""
        with job.lock:
            if job.state.is_terminal:
                return False
            if footer:
                for line in [footer] if isinstance(footer, str) else footer:
                    job.broadcaster.publish(line)
            ended_at = _now_iso()
            if not self._store.finalize_job(job.job_id, state, ended_at=ended_at, error=error):
                logger.warning("Job %s row was already final in the store", job.job_id)
            job.state = state
            job.error = error
            job.ended_at = ended_at
            job.ended_ts = time.time()
            job.broadcaster.close(StreamEnd(state=state.value, error=error))
        job.done.set()
        logger.info("Job %s finished: %s", job.job_id, state.value)
        return True

    def cancel(self, job_id: str) -> JobStatus:
        job = self._live_job(job_id)
        with job.lock:
            if job.state.is_terminal:
                raise InvalidState(f"Job {job_id} is already {job.state.value}")
            if not job.cancel_requested:
                job.cancel_requested = True
                if job.state is JobState.PENDING:
                    self._finalize(job, JobState.CANCELLED, None, footer=f"{job.kind.capitalize()} cancelled before start")
                elif job.runner is not None:
                    job.runner.terminate()
        logger.info("Cancellation requested for job %s", job_id)
        return job.status()

    def wait(self, job_id: str, timeout: Optional[float] = None) -> JobStatus:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is not None:
            job.done.wait(timeout)
        return self.get_status(job_id)

    # ----- queries -----

    def _live_job(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is not None:
            return job
        try:
            rec = self._store.get_job(job_id)
        except KeyError:
            raise NotFound(f"Job not found: {job_id}")
        raise InvalidState(f"Job {job_id} is already {rec.state}")

    def get_status(self, job_id: str) -> JobStatus:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is not None:
            return job.status()
        try:
            return JobStatus.from_record(self._store.get_job(job_id))
        except KeyError:
            raise NotFound(f"Job not found: {job_id}")

    def list_jobs(self, limit: int = 50) -> List[JobStatus]:
        statuses = []
        for rec in self._store.list_jobs(limit):
            with self._lock:
                job = self._jobs.get(rec.job_id)
            statuses.append(job.status() if job is not None else JobStatus.from_record(rec))
        return statuses

    def subscribe(self, job_id: str) -> Subscription:
        """Live log stream: backlog first, then new lines, then a StreamEnd."""
        with self._lock:
            job = self._jobs.get(job_id)
        if job is not None:
            return job.broadcaster.subscribe()
        try:
            rec = self._store.get_job(job_id)
        except KeyError:
            raise NotFound(f"Job not found: {job_id}")
        return replay(self._storage.job_paths(job_id).log_path, StreamEnd(state=rec.state, error=rec.error))

    def iter_log(self, job_id: str) -> Iterator[bytes]:
        """The persisted transcript as written so far, never ending mid-line."""
        with self._lock:
            job = self._jobs.get(job_id)
        if job is not None:
            log_path = job.paths.log_path
            limit: Optional[int] = None if job.broadcaster.closed else job.broadcaster.byte_count
        else:
            try:
                self._store.get_job(job_id)
            except KeyError:
                raise NotFound(f"Job not found: {job_id}")
            log_path = self._storage.job_paths(job_id).log_path
            limit = None
        try:
            f = log_path.open("rb")
            if limit is None:
                limit = os.fstat(f.fileno()).st_size
        except FileNotFoundError:
            raise NotFound("Log file not found")
        return _iter_chunks(f, limit)

    def export_artifact(self, job_id: str) -> Path:
        status = self.get_status(job_id)
        if not status.artifact_available:
            raise NotFound("Export file not found")
        with self._lock:
            job = self._jobs.get(job_id)
        if job is not None and job.output_path is not None:
            return job.output_path
        return Path(self._store.get_job(job_id).output_path or "")

    # ----- cleanup -----

    def claimed_files(self) -> List[Path]:
        with self._lock:
            return list(self._claims)

    def sweep(self, now: Optional[float] = None) -> None:
        """Release staged inputs after the grace period and drop expired jobs."""
        now = time.time() if now is None else now
        with self._lock:
            jobs = list(self._jobs.values())

        for job in jobs:
            with job.lock:
                if not job.state.is_terminal or job.ended_ts is None:
                    continue
                age = now - job.ended_ts
                release = job.staged_file is not None and not job.staged_released
                if release and age > self._settings.staged_file_grace_seconds:
                    job.staged_released = True
                else:
                    release = False
            if release and job.staged_file is not None:
                self._storage.remove_staged(job.staged_file)
                with self._lock:
                    self._claims.pop(job.staged_file, None)
                logger.info("Removed staged input of job %s", job.job_id)
            if age > self._settings.log_retention_seconds:
                self._forget(job.job_id)

        cutoff = datetime.fromtimestamp(now - self._settings.log_retention_seconds, tz=timezone.utc).isoformat()
        for rec in self._store.list_ended_before(cutoff):
            with self._lock:
                live = rec.job_id in self._jobs
            if not live:
                self._forget(rec.job_id)

        self._storage.expire_uploads(self._settings.upload_ttl_seconds, self.claimed_files(), now=now)

    def _forget(self, job_id: str) -> None:
        with self._lock:
            job = self._jobs.pop(job_id, None)
            if job is not None and job.staged_file is not None:
                self._claims.pop(job.staged_file, None)
        if job is not None and job.staged_file is not None:
            self._storage.remove_staged(job.staged_file)
        self._storage.remove_job(job_id)
        self._store.delete_job(job_id)
        logger.info("Removed expired job %s", job_id)

    def shutdown(self, timeout: float = 5.0) -> None:
        with self._lock:
            jobs = list(self._jobs.values())
        active = [j for j in jobs if not j.state.is_terminal]
        for job in active:
            try:
                self.cancel(job.job_id)
            except InvalidState:
                pass
        deadline = time.monotonic() + timeout
        for job in active:
            job.done.wait(max(0.0, deadline - time.monotonic()))
