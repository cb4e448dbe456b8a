from __future__ import annotations

from enum import Enum

from ..core.errors import InvalidFormat


class DumpFormat(str, Enum):
    PLAIN = "plain"
    CUSTOM = "custom"
    TAR = "tar"

    @property
    def is_archive(self) -> bool:
        return self is not DumpFormat.PLAIN


# Bytes needed to classify an upload; covers the tar header magic at offset 257.
SNIFF_BYTES = 1024

CUSTOM_MAGIC = b"PGDMP"
TAR_MAGIC = b"ustar"
TAR_MAGIC_OFFSET = 257

SQL_MARKERS = ("CREATE", "INSERT", "COPY", "SET ", "BEGIN", "--")


def _as_text(head: bytes) -> str | None:
    if b"\x00" in head:
        return None
    try:
        return head.decode("utf-8")
    except UnicodeDecodeError as e:
        # The sniff window may cut a multi-byte character in half.
        if e.start >= len(head) - 3 and e.reason == "unexpected end of data":
            return head[: e.start].decode("utf-8", errors="strict")
        return None


def detect_dump_format(head: bytes, filename: str = "") -> DumpFormat:
    """Classify a dump from its first bytes and its file name.

    Pure: the same inputs always give the same answer.
    """
    if head.startswith(CUSTOM_MAGIC):
        return DumpFormat.CUSTOM
    if head[TAR_MAGIC_OFFSET : TAR_MAGIC_OFFSET + len(TAR_MAGIC)] == TAR_MAGIC:
        return DumpFormat.TAR

    text = _as_text(head)
    if text is not None and text.strip():
        if filename.lower().endswith(".sql"):
            return DumpFormat.PLAIN
        upper = text.upper()
        if any(marker in upper for marker in SQL_MARKERS):
            return DumpFormat.PLAIN

    raise InvalidFormat("File is neither a plain SQL dump nor a pg_dump archive (custom/tar)")
