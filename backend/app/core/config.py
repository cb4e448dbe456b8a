from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    app_name: str = "postgres-explorer"
    storage_root: Path = Path(os.getenv("PGX_STORAGE_ROOT", "/tmp/postgres-explorer"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Uploads
    max_upload_bytes: int = int(os.getenv("PGX_MAX_UPLOAD_BYTES", str(2 * 1024 * 1024 * 1024)))  # 2GB
    upload_ttl_seconds: int = int(os.getenv("PGX_UPLOAD_TTL_SECONDS", "86400"))  # 24h

    # External tools
    psql_bin: str = os.getenv("PGX_PSQL_BIN", "psql")
    pg_restore_bin: str = os.getenv("PGX_PG_RESTORE_BIN", "pg_restore")
    pg_dump_bin: str = os.getenv("PGX_PG_DUMP_BIN", "pg_dump")
    maintenance_database: str = os.getenv("PGX_MAINTENANCE_DB", "postgres")
    connection_test_timeout_seconds: float = float(os.getenv("PGX_CONNECTION_TEST_TIMEOUT_SECONDS", "10"))

    # Job supervision
    cancel_grace_seconds: float = float(os.getenv("PGX_CANCEL_GRACE_SECONDS", "10"))
    job_timeout_seconds: float = float(os.getenv("PGX_JOB_TIMEOUT_SECONDS", "14400"))  # 4h, 0 disables
    output_tail_lines: int = int(os.getenv("PGX_OUTPUT_TAIL_LINES", "20"))

    # Cleanup
    staged_file_grace_seconds: int = int(os.getenv("PGX_STAGED_FILE_GRACE_SECONDS", "3600"))  # 1h
    log_retention_seconds: int = int(os.getenv("PGX_LOG_RETENTION_SECONDS", str(7 * 86400)))
    cleanup_interval_seconds: float = float(os.getenv("PGX_CLEANUP_INTERVAL_SECONDS", "300"))

    # Connection secrets (Fernet key, base64 urlsafe 32 bytes). Generated under storage_root when empty.
    secrets_encryption_key: str = os.getenv("SECRETS_ENCRYPTION_KEY", "")

    @property
    def db_dir(self) -> Path:
        return self.storage_root / "db"

    @property
    def key_path(self) -> Path:
        return self.storage_root / "db.key"


settings = Settings()
