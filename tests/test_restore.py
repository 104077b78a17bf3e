import os
import tempfile
import threading
import time
import unittest
from unittest import mock

from sqlrestore.control import ControlSurface
from sqlrestore.restore import RestoreController, _file_size
from sqlrestore.types import (
    FileOpenError,
    IncompleteStatementError,
    Phase,
    RetryPolicy,
    RunCancelled,
    RunError,
    StreamReadError,
)

TWO_INSERTS = "INSERT INTO t VALUES (1);\nINSERT INTO t VALUES (2);\n"


class _FakeSession:
    def __init__(self, fail=None, on_execute=None):
        self.fail = fail or (lambda statement: False)
        self.on_execute = on_execute
        self.calls = []
        self.executed = []

    def ping(self):
        pass

    def execute(self, statement):
        self.calls.append(statement)
        if self.on_execute is not None:
            self.on_execute(statement)
        if self.fail(statement):
            raise RuntimeError("server said no")
        self.executed.append(statement)


class RestoreControllerTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.sleeps = []
        self.controller = RestoreController(
            RetryPolicy(max_attempts=3, interval=0.0),
            poll_interval=0.01,
            sleep=self.sleeps.append,
        )
        self.control = ControlSurface()

    def _dump(self, content):
        path = os.path.join(self.tmp.name, "dump.sql")
        with open(path, "w", encoding="utf-8", newline="") as fp:
            fp.write(content)
        return path

    def _phases(self):
        return [e.phase for e in self.control.drain()]

    def test_runs_all_statements_in_order(self):
        session = _FakeSession()
        state = self.controller.run(session, self._dump(TWO_INSERTS), 1, self.control)
        self.assertEqual(
            session.executed,
            ["INSERT INTO t VALUES (1);\n", "INSERT INTO t VALUES (2);\n"],
        )
        events = self.control.drain()
        self.assertEqual(
            [e.phase for e in events],
            [Phase.RUNNING, Phase.SUCCEEDED, Phase.RUNNING, Phase.SUCCEEDED, Phase.COMPLETED],
        )
        self.assertEqual(events[0].percent, 50.0)
        self.assertEqual(events[-1].percent, 100.0)
        self.assertEqual(state.statement_count, 2)
        self.assertEqual(state.current_line, 2)
        self.assertEqual(state.processed_bytes, 52)
        self.assertEqual(state.total_bytes, 52)

    def test_resume_line_skips_execution_only(self):
        session = _FakeSession()
        state = self.controller.run(session, self._dump(TWO_INSERTS), 2, self.control)
        self.assertEqual(session.executed, ["INSERT INTO t VALUES (2);\n"])
        self.assertEqual(state.statement_count, 1)
        self.assertEqual(state.processed_bytes, 52)
        self.assertEqual(state.current_line, 2)
        events = self.control.drain()
        self.assertEqual(events[0].line, 2)
        self.assertEqual(events[-1].phase, Phase.COMPLETED)

    def test_resume_past_end_executes_nothing(self):
        session = _FakeSession()
        state = self.controller.run(session, self._dump(TWO_INSERTS), 10, self.control)
        self.assertEqual(session.calls, [])
        self.assertEqual(state.processed_bytes, 52)
        self.assertEqual(self._phases(), [Phase.COMPLETED])

    def test_multi_line_statement(self):
        session = _FakeSession()
        self.controller.run(
            session,
            self._dump("CREATE TABLE t (\n  id INT\n);\nINSERT INTO t VALUES (1);\n"),
            1,
            self.control,
        )
        self.assertEqual(session.executed[0], "CREATE TABLE t (\n  id INT\n);\n")
        self.assertEqual(len(session.executed), 2)

    def test_percent_is_monotonic(self):
        content = "".join(f"INSERT INTO t VALUES ({i});\n" for i in range(25))
        self.controller.run(_FakeSession(), self._dump(content), 1, self.control)
        percents = [e.percent for e in self.control.drain()]
        self.assertEqual(percents, sorted(percents))
        self.assertEqual(percents[-1], 100.0)

    def test_retry_bound_then_run_error(self):
        session = _FakeSession(fail=lambda s: "(2)" in s)
        path = self._dump(TWO_INSERTS + "INSERT INTO t VALUES (3);\n")
        with self.assertLogs(level="WARNING") as logs:
            with self.assertRaises(RunError) as ctx:
                self.controller.run(session, path, 1, self.control)
        self.assertEqual(session.calls.count("INSERT INTO t VALUES (2);\n"), 3)
        self.assertNotIn("INSERT INTO t VALUES (3);\n", session.calls)
        self.assertEqual(ctx.exception.line, 2)
        self.assertEqual(ctx.exception.statement, "INSERT INTO t VALUES (2);\n")
        self.assertEqual(ctx.exception.resume_line, 2)
        self.assertEqual(len(self.sleeps), 2)
        attempts = [line for line in logs.output if "SQL failed at line 2" in line]
        self.assertEqual(len(attempts), 3)
        self.assertEqual(self._phases()[-1], Phase.FAILED)

    def test_missing_file(self):
        with self.assertRaises(FileOpenError):
            self.controller.run(_FakeSession(), os.path.join(self.tmp.name, "nope.sql"), 1, self.control)
        self.assertEqual(self._phases(), [Phase.FAILED])

    def test_trailing_statement_dropped_by_default(self):
        session = _FakeSession()
        self.controller.run(session, self._dump("SELECT 1;\nSELECT 2"), 1, self.control)
        self.assertEqual(session.executed, ["SELECT 1;\n"])
        self.assertEqual(self._phases()[-1], Phase.COMPLETED)

    def test_trailing_statement_execute_and_reject(self):
        path = self._dump("SELECT 1;\nSELECT 2")
        session = _FakeSession()
        controller = RestoreController(RetryPolicy(1, 0.0), trailing="execute")
        controller.run(session, path, 1, self.control)
        self.assertEqual(session.executed, ["SELECT 1;\n", "SELECT 2"])

        self.control.drain()
        controller = RestoreController(RetryPolicy(1, 0.0), trailing="reject")
        with self.assertRaises(IncompleteStatementError):
            controller.run(_FakeSession(), path, 1, self.control)
        self.assertEqual(self._phases()[-1], Phase.FAILED)

    def test_quote_aware_boundary(self):
        session = _FakeSession()
        controller = RestoreController(RetryPolicy(1, 0.0), boundary="quote-aware")
        controller.run(session, self._dump("INSERT INTO t VALUES ('a;\nb');\n"), 1, self.control)
        self.assertEqual(session.executed, ["INSERT INTO t VALUES ('a;\nb');\n"])

    def test_pause_twice_resume_once(self):
        session = _FakeSession()
        self.control.pause()
        self.control.pause()
        self.control.resume()
        self.controller.run(session, self._dump(TWO_INSERTS), 1, self.control)
        self.assertEqual(len(session.calls), 2)
        self.assertEqual(len(session.executed), 2)
        phases = self._phases()
        self.assertEqual(phases[:2], [Phase.PAUSED, Phase.RESUMED])
        self.assertEqual(phases[-1], Phase.COMPLETED)

    def test_pause_holds_worker_until_resume(self):
        session = _FakeSession()
        self.control.pause()
        worker = self.controller.start(session, self._dump(TWO_INSERTS), 1, self.control)
        time.sleep(0.1)
        self.assertEqual(session.calls, [])
        self.assertTrue(self.controller.snapshot().paused)
        self.assertTrue(worker.is_alive())
        self.control.resume()
        state = worker.wait(5)
        self.assertEqual(len(session.executed), 2)
        self.assertFalse(state.paused)

    def test_stop_while_paused(self):
        session = _FakeSession()
        self.control.pause()
        worker = self.controller.start(session, self._dump(TWO_INSERTS), 1, self.control)
        time.sleep(0.05)
        self.control.stop()
        with self.assertRaises(RunCancelled) as ctx:
            worker.wait(5)
        self.assertEqual(ctx.exception.resume_line, 1)
        self.assertEqual(session.calls, [])
        self.assertEqual(self._phases()[-1], Phase.CANCELLED)

    def test_stop_lets_current_statement_finish(self):
        session = _FakeSession(on_execute=lambda s: self.control.stop())
        with self.assertRaises(RunCancelled) as ctx:
            self.controller.run(session, self._dump(TWO_INSERTS), 1, self.control)
        self.assertEqual(session.executed, ["INSERT INTO t VALUES (1);\n"])
        self.assertEqual(ctx.exception.line, 2)
        self.assertEqual(ctx.exception.resume_line, 2)

    def test_stream_read_error_aborts(self):
        def broken_lines(fp):
            yield b"SELECT 1;\n"
            raise StreamReadError(2, OSError("bad sector"))

        session = _FakeSession()
        with mock.patch("sqlrestore.restore.read_lines", broken_lines):
            with self.assertRaises(StreamReadError):
                self.controller.run(session, self._dump(TWO_INSERTS), 1, self.control)
        self.assertEqual(session.executed, ["SELECT 1;\n"])
        events = self.control.drain()
        self.assertEqual(events[-1].phase, Phase.FAILED)
        self.assertEqual(events[-1].line, 2)

    def test_unknown_size_reports_zero_percent(self):
        with mock.patch("sqlrestore.restore._file_size", return_value=None):
            state = self.controller.run(_FakeSession(), self._dump(TWO_INSERTS), 1, self.control)
        self.assertIsNone(state.total_bytes)
        self.assertTrue(all(e.percent == 0.0 for e in self.control.drain()))

    @unittest.skipUnless(hasattr(os, "mkfifo"), "needs os.mkfifo")
    def test_fifo_reports_zero_percent(self):
        path = os.path.join(self.tmp.name, "dump.fifo")
        os.mkfifo(path)

        def feed():
            with open(path, "w", encoding="utf-8", newline="") as fp:
                fp.write(TWO_INSERTS)

        writer = threading.Thread(target=feed, daemon=True)
        writer.start()
        session = _FakeSession()
        state = self.controller.run(session, path, 1, self.control)
        writer.join(5)
        self.assertEqual(len(session.executed), 2)
        self.assertIsNone(state.total_bytes)
        self.assertEqual(state.processed_bytes, 52)
        events = self.control.drain()
        self.assertEqual(events[-1].phase, Phase.COMPLETED)
        self.assertTrue(all(e.percent == 0.0 for e in events))

    def test_file_size_only_for_regular_files(self):
        read_fd, write_fd = os.pipe()
        os.close(write_fd)
        with os.fdopen(read_fd, "rb") as fp:
            self.assertIsNone(_file_size(fp))
        with open(self._dump(TWO_INSERTS), "rb") as fp:
            self.assertEqual(_file_size(fp), 52)

    def test_bad_arguments(self):
        with self.assertRaises(ValueError):
            self.controller.run(_FakeSession(), self._dump(TWO_INSERTS), 0, self.control)
        with self.assertRaises(ValueError):
            RestoreController(RetryPolicy(), boundary="regex")

    def test_worker_reports_success(self):
        worker = self.controller.start(_FakeSession(), self._dump(TWO_INSERTS))
        state = worker.wait(5)
        self.assertEqual(state.statement_count, 2)


if __name__ == "__main__":
    unittest.main()
