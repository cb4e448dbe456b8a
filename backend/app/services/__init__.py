from .broadcast import LogBroadcaster, StreamEnd, Subscription
from .commands import BuiltCommand, DumpParams, RestoreParams, ToolPaths, build_dump_command, build_restore_command
from .formats import DumpFormat, detect_dump_format
from .jobs import Job, JobRegistry, JobStatus
from .runner import ProcessOutcome, ProcessRunner

__all__ = [
    "LogBroadcaster",
    "StreamEnd",
    "Subscription",
    "BuiltCommand",
    "DumpParams",
    "RestoreParams",
    "ToolPaths",
    "build_dump_command",
    "build_restore_command",
    "DumpFormat",
    "detect_dump_format",
    "Job",
    "JobRegistry",
    "JobStatus",
    "ProcessOutcome",
    "ProcessRunner",
]
