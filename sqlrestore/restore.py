from __future__ import annotations

import dataclasses
import logging
import os
import stat
import threading
import time
from typing import BinaryIO, Callable, Iterator, Optional

from .control import ControlSurface
from .executor import execute_with_retry
from .parser import TRAILING_DROP, make_boundary, read_lines, statement_splitter
from .types import (
    FileOpenError,
    IncompleteStatementError,
    Phase,
    ProgressEvent,
    RetryExhausted,
    RetryPolicy,
    RunCancelled,
    RunError,
    RunState,
    StreamReadError,
)


def _file_size(fp: BinaryIO) -> Optional[int]:
    # This code here only trusts st_size for regular files; pipes report 0.
    try:
        st = os.fstat(fp.fileno())
    except (OSError, ValueError) as err:
        logging.warning("Cannot determine dump size (%s); progress stays at 0%%", err)
        return None
    if not stat.S_ISREG(st.st_mode):
        logging.info("Dump is not a regular file; progress stays at 0%")
        return None
    return st.st_size


class RestoreController:
    """
    Runs one dump file through the splitter and the retrying executor.

    Statements execute strictly in file order on the caller's connection.
    The first statement that exhausts its retries ends the run with RunError;
    nothing already applied is rolled back.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        boundary: str = "line-end",
        trailing: str = TRAILING_DROP,
        poll_interval: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        make_boundary(boundary)
        self.policy = policy
        self.boundary = boundary
        self.trailing = trailing
        self.poll_interval = poll_interval
        self.sleep = sleep
        self._lock = threading.Lock()
        self._state = RunState()
        self._control: Optional[ControlSurface] = None
        self._resume_point = 1

    def snapshot(self) -> RunState:
        control = self._control
        paused = control.is_paused if control is not None else False
        with self._lock:
            return dataclasses.replace(self._state, paused=paused)

    def start(
        self,
        conn,
        file_path: str,
        resume_line: int = 1,
        control: Optional[ControlSurface] = None,
    ) -> "RestoreWorker":
        # This code here keeps the run off the caller's thread so pause/resume stay live.
        worker = RestoreWorker(self, conn, file_path, resume_line, control or ControlSurface())
        worker.start()
        return worker

    def run(
        self,
        conn,
        file_path: str,
        resume_line: int = 1,
        control: Optional[ControlSurface] = None,
    ) -> RunState:
        if resume_line < 1:
            raise ValueError(f"resume_line must be >= 1, got {resume_line}")
        control = control or ControlSurface()
        self._control = control

        try:
            fp = open(file_path, "rb")
        except OSError as err:
            logging.error("Cannot open dump file %s: %s", file_path, err)
            control.publish(
                ProgressEvent(line=0, percent=0.0, phase=Phase.FAILED, message=str(err))
            )
            raise FileOpenError(file_path, err) from err

        with fp:
            total_bytes = _file_size(fp)
            with self._lock:
                self._state = RunState(resume_line=resume_line, total_bytes=total_bytes)
                self._resume_point = resume_line
            control.bind(self.snapshot)
            logging.info(
                "Restoring %s from line %d (%s bytes)",
                file_path,
                resume_line,
                total_bytes if total_bytes is not None else "unknown",
            )

            statements = statement_splitter(
                self._line_reader(fp, control),
                resume_line=resume_line,
                boundary=make_boundary(self.boundary),
                trailing=self.trailing,
            )
            try:
                for line_no, _, statement in statements:
                    self._execute(conn, control, line_no, statement)
            except RunCancelled as err:
                control.publish(self._event(Phase.CANCELLED, line=err.line))
                logging.warning(
                    "Restore cancelled before line %d (resume with line %d)", err.line, err.resume_line
                )
                raise
            except (StreamReadError, IncompleteStatementError) as err:
                control.publish(self._event(Phase.FAILED, line=err.line, message=str(err)))
                logging.error("Restore aborted: %s", err)
                raise

        final = self.snapshot()
        percent = 100.0 if final.total_bytes is not None else 0.0
        control.publish(
            ProgressEvent(line=final.current_line, percent=percent, phase=Phase.COMPLETED)
        )
        logging.info(
            "Restore complete: %d statement(s), %d line(s), %d bytes",
            final.statement_count,
            final.current_line,
            final.processed_bytes,
        )
        return final

    def _line_reader(self, fp: BinaryIO, control: ControlSurface) -> Iterator[bytes]:
        # This code here checks pause/stop before every line and keeps the counters moving.
        lines = read_lines(fp)
        line_no = 0
        while True:
            if not control.wait_until_runnable(self.poll_interval):
                raise RunCancelled(line_no + 1, resume_line=self._resume_point)
            try:
                raw = next(lines)
            except StopIteration:
                return
            line_no += 1
            with self._lock:
                state = self._state
                state.current_line = max(state.current_line, line_no)
                state.processed_bytes += len(raw)
                if state.total_bytes is not None and state.processed_bytes > state.total_bytes:
                    state.total_bytes = state.processed_bytes
            yield raw

    def _execute(self, conn, control: ControlSurface, line_no: int, statement: str) -> None:
        with self._lock:
            self._state.statement_count += 1
        control.publish(self._event(Phase.RUNNING, line=line_no))
        logging.debug("Executing statement ending at line %d", line_no)

        def on_failure(attempt: int, err: Exception) -> None:
            if attempt < self.policy.max_attempts:
                logging.warning(
                    "SQL failed at line %d (attempt %d/%d): %s; retrying in %.1fs",
                    line_no,
                    attempt,
                    self.policy.max_attempts,
                    err,
                    self.policy.interval,
                )
            else:
                logging.warning(
                    "SQL failed at line %d (attempt %d/%d): %s",
                    line_no,
                    attempt,
                    self.policy.max_attempts,
                    err,
                )

        try:
            execute_with_retry(conn, statement, self.policy, on_failure=on_failure, sleep=self.sleep)
        except RetryExhausted as err:
            control.publish(self._event(Phase.FAILED, line=line_no, message=str(err.last_error)))
            logging.error("Statement at line %d failed: %s", line_no, err)
            raise RunError(line_no, statement, err, resume_line=self._resume_point) from err
        self._resume_point = max(self._resume_point, line_no + 1)
        control.publish(self._event(Phase.SUCCEEDED, line=line_no))

    def _event(self, phase: Phase, line: int, message: str = "") -> ProgressEvent:
        with self._lock:
            percent = self._state.percent
        return ProgressEvent(line=line, percent=percent, phase=phase, message=message)


class RestoreWorker(threading.Thread):
    # This code here is the dedicated restore thread; result/error are read after join.
    def __init__(
        self,
        controller: RestoreController,
        conn,
        file_path: str,
        resume_line: int,
        control: ControlSurface,
    ) -> None:
        super().__init__(name="restore-worker", daemon=True)
        self.controller = controller
        self.conn = conn
        self.file_path = file_path
        self.resume_line = resume_line
        self.control = control
        self.result: Optional[RunState] = None
        self.error: Optional[BaseException] = None

    def run(self) -> None:
        try:
            self.result = self.controller.run(
                self.conn, self.file_path, self.resume_line, self.control
            )
        except Exception as err:
            self.error = err

    def wait(self, timeout: Optional[float] = None) -> RunState:
        # This code here joins and re-raises whatever ended the run.
        self.join(timeout)
        if self.is_alive():
            raise TimeoutError("restore worker still running")
        if self.error is not None:
            raise self.error
        if self.result is None:
            raise RuntimeError("restore worker finished without a result")
        return self.result
