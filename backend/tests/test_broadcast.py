from __future__ import annotations

import tempfile
import threading
import unittest
from pathlib import Path
from typing import List

from backend.app.services.broadcast import LogBroadcaster, StreamEnd, Subscription, replay, split_lines


def _drain(sub: Subscription, timeout: float = 5.0) -> List[object]:
    events: List[object] = []
    while True:
        event = sub.next_event(timeout)
        if event is None:
            raise AssertionError(f"stream stalled after {events!r}")
        events.append(event)
        if isinstance(event, StreamEnd):
            return events


class _FullDisk:
    def write(self, data: bytes) -> int:
        raise OSError(28, "No space left on device")

    def flush(self) -> None:
        pass


class TestLogBroadcaster(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.log_path = Path(self._td.name) / "job" / "job.log"
        self.b = LogBroadcaster(self.log_path)

    def tearDown(self) -> None:
        self.b.close(StreamEnd("Cancelled"))
        self._td.cleanup()

    def test_split_lines_normalizes_carriage_returns(self) -> None:
        self.assertEqual(split_lines("a\r\nb\rc\n"), ["a", "bc", ""])

    def test_lines_are_persisted_in_order(self) -> None:
        self.b.publish("one")
        self.b.publish("two\nthree")
        self.assertEqual(self.log_path.read_text(encoding="utf-8"), "one\ntwo\nthree\n")
        self.assertEqual(self.b.line_count, 3)
        self.assertEqual(self.b.byte_count, len("one\ntwo\nthree\n"))

    def test_every_subscriber_sees_the_full_sequence(self) -> None:
        self.b.publish("early 1")
        first = self.b.subscribe()
        self.b.publish("middle")
        second = self.b.subscribe()
        self.b.publish("late")
        self.b.close(StreamEnd("Completed"))

        expected = ["early 1", "middle", "late", StreamEnd("Completed")]
        self.assertEqual(_drain(first), expected)
        self.assertEqual(_drain(second), expected)

    def test_subscribing_after_close_replays_everything(self) -> None:
        self.b.publish("a")
        self.b.publish("b")
        self.b.close(StreamEnd("Failed", "psql exited with code 3"))
        sub = self.b.subscribe()
        self.assertEqual(_drain(sub), ["a", "b", StreamEnd("Failed", "psql exited with code 3")])
        self.assertEqual(self.b.subscriber_count, 0)

    def test_close_is_one_shot(self) -> None:
        sub = self.b.subscribe()
        self.assertTrue(self.b.close(StreamEnd("Completed")))
        self.assertFalse(self.b.close(StreamEnd("Failed", "late")))
        self.assertEqual(self.b.publish("ignored"), 0)
        self.assertEqual(_drain(sub), [StreamEnd("Completed")])
        self.assertNotIn("ignored", self.log_path.read_text(encoding="utf-8"))

    def test_unsubscribed_handle_stops_receiving(self) -> None:
        sub = self.b.subscribe()
        self.b.publish("x")
        sub.close()
        self.assertEqual(self.b.subscriber_count, 0)
        self.b.publish("y")
        self.assertEqual(sub.next_event(0.05), "x")
        self.assertIsNone(sub.next_event(0.05))

    def test_unwritten_line_is_not_delivered(self) -> None:
        sub = self.b.subscribe()
        self.b.publish("before")
        real = self.b._fh
        self.b._fh = _FullDisk()
        try:
            self.assertEqual(self.b.publish("lost"), 0)
        finally:
            self.b._fh = real
        self.b.publish("after")
        self.b.close(StreamEnd("Completed"))

        self.assertEqual(_drain(sub), ["before", "after", StreamEnd("Completed")])
        self.assertEqual(self.log_path.read_text(encoding="utf-8"), "before\nafter\n")
        self.assertEqual(self.b.line_count, 2)
        self.assertEqual(_drain(self.b.subscribe()), ["before", "after", StreamEnd("Completed")])

    def test_notifier_fires_for_each_event(self) -> None:
        sub = self.b.subscribe()
        woken: List[int] = []
        sub.set_notifier(lambda: woken.append(1))
        self.b.publish("a\nb")
        self.b.close(StreamEnd("Completed"))
        self.assertEqual(len(woken), 3)
        self.assertEqual(sub.next_batch(0), ["a", "b", StreamEnd("Completed")])

    def test_next_batch_stops_at_end(self) -> None:
        sub = self.b.subscribe()
        for i in range(5):
            self.b.publish(f"line {i}")
        self.b.close(StreamEnd("Completed"))
        batch = sub.next_batch(1.0)
        self.assertEqual(batch[-1], StreamEnd("Completed"))
        self.assertEqual(batch[:-1], [f"line {i}" for i in range(5)])

    def test_next_batch_times_out_empty(self) -> None:
        sub = self.b.subscribe()
        self.assertEqual(sub.next_batch(0.05), [])

    def test_iteration_yields_lines_only(self) -> None:
        sub = self.b.subscribe()
        self.b.publish("a\nb")
        self.b.close(StreamEnd("Completed"))
        self.assertEqual(list(sub), ["a", "b"])

    def test_concurrent_subscribers_get_exactly_once_delivery(self) -> None:
        total = 2000
        results: List[List[object]] = []
        lock = threading.Lock()
        started = threading.Barrier(5)

        def reader() -> None:
            started.wait()
            sub = self.b.subscribe()
            events = _drain(sub, timeout=10)
            with lock:
                results.append(events)

        def writer() -> None:
            started.wait()
            for i in range(total):
                self.b.publish(f"line {i}")
            self.b.close(StreamEnd("Completed"))

        threads = [threading.Thread(target=reader) for _ in range(4)] + [threading.Thread(target=writer)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        expected = [f"line {i}" for i in range(total)] + [StreamEnd("Completed")]
        self.assertEqual(len(results), 4)
        for events in results:
            self.assertEqual(events, expected)


class TestReplay(unittest.TestCase):
    def test_replay_of_finished_transcript(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            log_path = Path(td) / "job.log"
            log_path.write_text("x\n\ny\n", encoding="utf-8")
            sub = replay(log_path, StreamEnd("Completed"))
            self.assertEqual(_drain(sub), ["x", "", "y", StreamEnd("Completed")])

    def test_replay_of_missing_transcript(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            sub = replay(Path(td) / "missing.log", StreamEnd("Failed", "interrupted"))
            self.assertEqual(_drain(sub), [StreamEnd("Failed", "interrupted")])
