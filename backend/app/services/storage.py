from __future__ import annotations

import logging
import os
import shutil
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobPaths:
    job_dir: Path
    outputs_dir: Path
    log_path: Path

    def ensure(self) -> "JobPaths":
        self.job_dir.mkdir(parents=True, exist_ok=True)
        self.outputs_dir.mkdir(parents=True, exist_ok=True)
        return self


class LocalArtifactStorage:
    """On-disk layout for staged uploads, job transcripts and export outputs.

    <root>/staging/<upload_id>/<file>   uploaded dumps waiting for (or used by) a job
    <root>/jobs/<job_id>/job.log        transcript, independent of the staged file
    <root>/jobs/<job_id>/outputs/       export artifacts
    """

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self.staging_root.mkdir(parents=True, exist_ok=True)
        self.jobs_root.mkdir(parents=True, exist_ok=True)

    @property
    def staging_root(self) -> Path:
        return self.root / "staging"

    @property
    def jobs_root(self) -> Path:
        return self.root / "jobs"

    def job_paths(self, job_id: str) -> JobPaths:
        job_dir = self.jobs_root / job_id
        return JobPaths(
            job_dir=job_dir,
            outputs_dir=job_dir / "outputs",
            log_path=job_dir / "job.log",
        )

    def new_upload_dir(self) -> Path:
        up_dir = self.staging_root / uuid.uuid4().hex
        up_dir.mkdir(parents=True, exist_ok=False)
        return up_dir

    def safe_filename(self, name: str) -> str:
        # Very small sanitization to avoid path traversal
        name = os.path.basename(name.replace("\\", "/"))
        name = name.replace("..", ".")
        return name or "import.dump"

    def staged_file(self, file_path: str) -> Optional[Path]:
        """Resolve a client supplied path to a staged upload, or None."""
        try:
            path = Path(file_path).resolve()
            staging = self.staging_root.resolve()
            rel = path.relative_to(staging)
        except (OSError, ValueError):
            return None
        # Exactly <staging>/<upload_id>/<file>
        if len(rel.parts) != 2 or not path.is_file():
            return None
        return path

    def remove_staged(self, path: Path) -> None:
        up_dir = path.parent
        if up_dir.parent.resolve() != self.staging_root.resolve():
            return
        shutil.rmtree(up_dir, ignore_errors=True)

    def remove_job(self, job_id: str) -> None:
        shutil.rmtree(self.job_paths(job_id).job_dir, ignore_errors=True)

    def expire_uploads(self, ttl_seconds: float, claimed: Iterable[Path], now: Optional[float] = None) -> List[Path]:
        """Delete upload directories older than `ttl_seconds` that no job has claimed."""
        now = time.time() if now is None else now
        keep = {p.resolve().parent for p in claimed}
        removed: List[Path] = []
        for up_dir in self.staging_root.iterdir():
            if not up_dir.is_dir() or up_dir.resolve() in keep:
                continue
            try:
                age = now - up_dir.stat().st_mtime
            except FileNotFoundError:
                continue
            if age > ttl_seconds:
                shutil.rmtree(up_dir, ignore_errors=True)
                removed.append(up_dir)
                logger.info("Expired unclaimed upload %s", up_dir.name)
        return removed
