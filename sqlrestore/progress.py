from __future__ import annotations

import logging
import sys
import threading
import time
from typing import Callable, Optional, TextIO

from .control import ControlSurface
from .types import Phase, ProgressEvent


def draw_progress_bar(percent: float, width: int = 40) -> str:
    percent = max(0.0, min(percent, 100.0))
    filled = int(percent / 100 * width)
    bar = "■" * filled + "□" * (width - filled)
    return f"[{bar}] {percent:.2f}%"


class ProgressPrinter(threading.Thread):
    # This code here eats control-surface events: log lines plus an optional live bar.
    def __init__(
        self,
        control: ControlSurface,
        bar: bool = False,
        width: int = 40,
        log_every: int = 1000,
        is_done: Optional[Callable[[], bool]] = None,
        stream: Optional[TextIO] = None,
    ) -> None:
        super().__init__(name="progress-printer", daemon=True)
        self.control = control
        self.bar = bar
        self.width = width
        self.log_every = log_every
        self.is_done = is_done
        self.stream = stream or sys.stderr
        self.succeeded = 0
        self.last_event: Optional[ProgressEvent] = None
        self.last_update = 0.0

    def run(self) -> None:
        while True:
            event = self.control.get_event(timeout=0.2)
            if event is None:
                if self.is_done is not None and self.is_done():
                    break
                continue
            self.handle(event)
            if event.phase.terminal:
                break
        self.finish()

    def handle(self, event: ProgressEvent) -> None:
        self.last_event = event
        if event.phase is Phase.SUCCEEDED:
            self.succeeded += 1
            logging.debug(event.describe())
            if self.log_every > 0 and self.succeeded % self.log_every == 0:
                logging.info(
                    "Progress: %.2f%% at line %d, %d statement(s) applied",
                    event.percent,
                    event.line,
                    self.succeeded,
                )
        elif event.phase is Phase.RUNNING:
            logging.debug(event.describe())
        elif event.phase is Phase.FAILED:
            logging.error(event.describe())
        elif event.phase is Phase.COMPLETED:
            logging.info("%s (%d statement(s) applied)", event.describe(), self.succeeded)
        else:
            logging.info(event.describe())
        self.redraw(event.percent, force=event.phase.terminal)

    def redraw(self, percent: float, force: bool = False) -> None:
        if not self.bar:
            return
        now = time.monotonic()
        if not force and now - self.last_update < 0.2:
            return
        self.last_update = now
        self.stream.write("\r" + draw_progress_bar(percent, self.width))
        self.stream.flush()

    def finish(self) -> None:
        if self.bar:
            self.stream.write("\n")
            self.stream.flush()


COMMANDS = {
    "p": "pause",
    "pause": "pause",
    "r": "resume",
    "resume": "resume",
    "q": "stop",
    "quit": "stop",
    "stop": "stop",
}


class CommandReader(threading.Thread):
    # This code here maps typed p/r/q lines onto the control surface.
    def __init__(self, control: ControlSurface, stream: Optional[TextIO] = None) -> None:
        super().__init__(name="command-reader", daemon=True)
        self.control = control
        self.stream = stream or sys.stdin

    def dispatch(self, line: str) -> Optional[str]:
        command = COMMANDS.get(line.strip().lower())
        if command is None:
            if line.strip():
                logging.info("Unknown command %r (use p=pause, r=resume, q=stop)", line.strip())
            return None
        getattr(self.control, command)()
        return command

    def run(self) -> None:
        for line in self.stream:
            if self.dispatch(line) == "stop":
                return
