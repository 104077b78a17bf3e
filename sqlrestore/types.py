from __future__ import annotations

import dataclasses
import datetime as dt
import enum
from typing import Optional


class Phase(str, enum.Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PAUSED = "paused"
    RESUMED = "resumed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (Phase.COMPLETED, Phase.FAILED, Phase.CANCELLED)


_PHASE_LABELS = {
    Phase.RUNNING: "running...",
    Phase.SUCCEEDED: "done",
    Phase.FAILED: "failed",
    Phase.PAUSED: "[PAUSE] paused, 'r' to resume",
    Phase.RESUMED: "[RESUME] resuming",
    Phase.COMPLETED: "restore complete",
    Phase.CANCELLED: "restore cancelled",
}


@dataclasses.dataclass(frozen=True)
class RetryPolicy:
    # This code here is the attempt/interval pair shared by connect and execute.
    max_attempts: int = 5
    interval: float = 5.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.interval < 0:
            raise ValueError(f"interval must be >= 0, got {self.interval}")


@dataclasses.dataclass
class RunState:
    # This code here is the live counters of one restore run.
    resume_line: int = 1
    current_line: int = 1
    processed_bytes: int = 0
    total_bytes: Optional[int] = None
    paused: bool = False
    statement_count: int = 0

    @property
    def percent(self) -> float:
        if self.total_bytes is None:
            return 0.0
        if self.total_bytes <= 0:
            return 100.0
        pct = min(self.processed_bytes / self.total_bytes, 1.0) * 100.0
        return round(pct, 2)


@dataclasses.dataclass(frozen=True)
class ProgressEvent:
    line: int
    percent: float
    phase: Phase
    message: str = ""
    timestamp: dt.datetime = dataclasses.field(default_factory=dt.datetime.now)

    def describe(self) -> str:
        # This code here renders the one-line status shown in the log view.
        ts = self.timestamp.strftime("%H:%M:%S")
        text = _PHASE_LABELS[self.phase]
        if self.phase is Phase.RUNNING:
            text = f"{text} (progress: {self.percent:.2f}%)"
        if self.message:
            text = f"{text}: {self.message}"
        if self.phase in (Phase.PAUSED, Phase.RESUMED, Phase.COMPLETED):
            return f"[{ts}]{text}"
        return f"[{ts}][line:{self.line}] {text}"


@dataclasses.dataclass
class RestoreOptions:
    # This code here is the full config blob for a restore.
    dump_file: str
    host: str = "localhost"
    port: int = 3306
    user: str = "root"
    password: Optional[str] = ""
    database: Optional[str] = None
    charset: str = "utf8mb4"
    resume_line: int = 1
    max_retries: int = 5
    retry_interval: float = 5.0
    boundary: str = "line-end"
    trailing_statement: str = "drop"
    progress_bar: bool = False
    progress_statements: int = 1000
    log_file: Optional[str] = None
    dry_run: bool = False
    ssl_ca: Optional[str] = None
    ssl_cert: Optional[str] = None
    ssl_key: Optional[str] = None
    ssl_disabled: bool = False

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.max_retries, interval=self.retry_interval)


class RestoreError(Exception):
    """Base error; ``line`` and ``statement`` point at where the run stopped."""

    def __init__(
        self,
        message: str,
        line: Optional[int] = None,
        statement: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.line = line
        self.statement = statement


class ParseError(RestoreError):
    pass


class FileOpenError(RestoreError):
    def __init__(self, path: str, reason: Exception) -> None:
        super().__init__(f"cannot open {path}: {reason}")
        self.path = path
        self.reason = reason


class StreamReadError(RestoreError):
    def __init__(self, line: int, reason: Exception) -> None:
        super().__init__(f"read error at line {line}: {reason}", line=line)
        self.reason = reason


class IncompleteStatementError(RestoreError):
    def __init__(self, line: int, statement: str) -> None:
        super().__init__(
            f"unterminated statement at end of file (line {line})",
            line=line,
            statement=statement,
        )


class DatabaseConnectionError(RestoreError):
    pass


class ExecutionError(RestoreError):
    pass


class RetryExhausted(ExecutionError):
    def __init__(self, attempts: int, last_error: Exception) -> None:
        super().__init__(f"retry limit reached after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class RunError(RestoreError):
    def __init__(
        self,
        line: int,
        statement: str,
        cause: Exception,
        resume_line: Optional[int] = None,
    ) -> None:
        super().__init__(f"SQL execution error at line {line}: {cause}", line=line, statement=statement)
        self.cause = cause
        # First line of the failed statement's chunk; safe value for --resume-line.
        self.resume_line = resume_line


class RunCancelled(RestoreError):
    def __init__(self, line: int, resume_line: Optional[int] = None) -> None:
        super().__init__(f"restore cancelled before line {line}", line=line)
        self.resume_line = resume_line if resume_line is not None else line
