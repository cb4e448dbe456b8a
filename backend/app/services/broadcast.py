from __future__ import annotations

import itertools
import logging
import queue
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Union


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamEnd:
    """Terminal marker delivered after the last line of a job's transcript."""

    state: str
    error: Optional[str] = None


StreamEvent = Union[str, StreamEnd]

_READ_CHUNK = 64 * 1024


def split_lines(text: str) -> List[str]:
    """Normalize produced text into transcript lines (no CR, no embedded LF)."""
    return text.replace("\r", "").split("\n")


def _read_backlog(log_path: Path, limit: int) -> Iterator[str]:
    """Yield the lines contained in the first `limit` bytes of the transcript."""
    if limit <= 0:
        return
    try:
        f = log_path.open("rb")
    except FileNotFoundError:
        logger.warning("Transcript %s disappeared before replay", log_path)
        return
    with f:
        remaining = limit
        pending = b""
        while remaining > 0:
            chunk = f.read(min(_READ_CHUNK, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            pending += chunk
            *lines, pending = pending.split(b"\n")
            for raw in lines:
                yield raw.decode("utf-8")


class Subscription:
    """A live view of one job's transcript.

    Yields the backlog (read from the transcript file) followed by lines published
    after subscribing, then a StreamEnd. Closing the handle is safe at any time and
    never blocks the producer.
    """

    def __init__(self, log_path: Path, backlog_bytes: int, broadcaster: Optional["LogBroadcaster"] = None):
        self.id = 0
        self._queue: "queue.SimpleQueue[StreamEvent]" = queue.SimpleQueue()
        self._backlog: Optional[Iterator[str]] = _read_backlog(log_path, backlog_bytes)
        self._broadcaster = broadcaster
        self.end: Optional[StreamEnd] = None
        self._notify: Optional[Callable[[], None]] = None

    def set_notifier(self, notify: Optional[Callable[[], None]]) -> None:
        """Call `notify` from the producer thread whenever an event is queued.

        Lets an asyncio consumer poll with `next_batch(0)` instead of holding a
        thread in a blocking wait.
        """
        self._notify = notify

    def _push(self, item: StreamEvent) -> None:
        self._queue.put(item)
        notify = self._notify
        if notify is not None:
            notify()

    def next_event(self, timeout: Optional[float] = None) -> Optional[StreamEvent]:
        """Return the next line or the StreamEnd; None if nothing arrived within `timeout`."""
        if self._backlog is not None:
            line = next(self._backlog, None)
            if line is not None:
                return line
            self._backlog = None
        if self.end is not None:
            return self.end
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if isinstance(item, StreamEnd):
            self.end = item
            self._detach()
        return item

    def next_batch(self, timeout: Optional[float] = None, limit: int = 256) -> List[StreamEvent]:
        """Wait up to `timeout` for one event, then take whatever else is ready.

        A StreamEnd is always the last element of the batch it appears in.
        """
        first = self.next_event(timeout)
        if first is None:
            return []
        batch: List[StreamEvent] = [first]
        while len(batch) < limit and not isinstance(batch[-1], StreamEnd):
            event = self.next_event(0)
            if event is None:
                break
            batch.append(event)
        return batch

    def __iter__(self) -> Iterator[str]:
        while True:
            event = self.next_event()
            if isinstance(event, StreamEnd):
                return
            if event is not None:
                yield event

    def _detach(self) -> None:
        broadcaster, self._broadcaster = self._broadcaster, None
        if broadcaster is not None:
            broadcaster.unsubscribe(self)

    def close(self) -> None:
        self._detach()
        if self._backlog is not None:
            self._backlog.close()  # type: ignore[attr-defined]
            self._backlog = None

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class LogBroadcaster:
    """Single-writer transcript with fan-out to any number of subscribers.

    Every line is appended to the transcript file and flushed before it is handed
    to subscribers, all under one lock, so the file prefix captured at subscribe
    time plus the queued live lines is exactly the full sequence.
    """

    def __init__(self, log_path: Path):
        self.log_path = log_path
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = self.log_path.open("wb")
        self._lock = threading.Lock()
        self._subscribers: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._line_count = 0
        self._byte_count = 0
        self._end: Optional[StreamEnd] = None

    @property
    def closed(self) -> bool:
        return self._end is not None

    @property
    def line_count(self) -> int:
        return self._line_count

    @property
    def byte_count(self) -> int:
        return self._byte_count

    def publish(self, text: str) -> int:
        """Append `text` (split into lines) and deliver it. Returns the number of lines
        published; 0 once the broadcaster is closed."""
        lines = split_lines(text)
        published = 0
        with self._lock:
            if self._end is not None:
                return 0
            for line in lines:
                data = line.encode("utf-8") + b"\n"
                try:
                    self._fh.write(data)
                    self._fh.flush()
                except OSError as e:
                    # Lines missing from the transcript are not delivered either.
                    logger.error("Failed to write to log file %s: %s", self.log_path, e)
                    continue
                self._line_count += 1
                self._byte_count += len(data)
                for sub in self._subscribers.values():
                    sub._push(line)
                published += 1
            return published

    def subscribe(self) -> Subscription:
        with self._lock:
            sub = Subscription(self.log_path, self._byte_count, broadcaster=None if self._end else self)
            if self._end is not None:
                sub._push(self._end)
            else:
                sub.id = next(self._ids)
                self._subscribers[sub.id] = sub
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            self._subscribers.pop(sub.id, None)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def close(self, end: StreamEnd) -> bool:
        """Deliver the terminal marker to every subscriber and stop accepting lines."""
        with self._lock:
            if self._end is not None:
                return False
            self._end = end
            try:
                self._fh.close()
            except OSError as e:
                logger.error("Failed to close log file %s: %s", self.log_path, e)
            subscribers = list(self._subscribers.values())
            self._subscribers.clear()
            for sub in subscribers:
                sub._push(end)
        return True


def replay(log_path: Path, end: StreamEnd) -> Subscription:
    """Subscription over a finished transcript that has no live broadcaster."""
    try:
        size = log_path.stat().st_size
    except FileNotFoundError:
        size = 0
    sub = Subscription(log_path, size)
    sub._push(end)
    return sub
