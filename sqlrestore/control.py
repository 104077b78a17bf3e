from __future__ import annotations

import logging
import queue
import threading
from typing import Callable, Iterator, List, Optional

from .types import Phase, ProgressEvent, RunState


class ControlSurface:
    """
    Thread-safe pause/resume/stop switch plus the ordered event feed.

    The restore worker publishes ProgressEvents and blocks in
    wait_until_runnable() while paused; the operator side calls pause(),
    resume() and stop() and consumes events(). With max_events > 0 the feed
    is bounded and publish() blocks instead of dropping.
    """

    def __init__(self, max_events: int = 0) -> None:
        self._cond = threading.Condition()
        self._paused = False
        self._stopped = False
        self._events: "queue.Queue[ProgressEvent]" = queue.Queue(maxsize=max_events)
        self._state_source: Optional[Callable[[], RunState]] = None

    def bind(self, state_source: Callable[[], RunState]) -> None:
        # This code here lets pause/resume events report where the run is.
        with self._cond:
            self._state_source = state_source

    @property
    def is_paused(self) -> bool:
        with self._cond:
            return self._paused

    @property
    def is_stopped(self) -> bool:
        with self._cond:
            return self._stopped

    def pause(self) -> bool:
        with self._cond:
            if self._paused:
                return False
            self._paused = True
        logging.info("Restore paused")
        self._publish_transition(Phase.PAUSED)
        return True

    def resume(self) -> bool:
        with self._cond:
            if not self._paused:
                return False
            self._paused = False
            self._cond.notify_all()
        logging.info("Restore resumed")
        self._publish_transition(Phase.RESUMED)
        return True

    def stop(self) -> None:
        with self._cond:
            if self._stopped:
                return
            self._stopped = True
            self._cond.notify_all()
        logging.info("Stop requested; finishing the current statement")

    def wait_until_runnable(self, poll_interval: float = 0.2) -> bool:
        # This code here parks the worker while paused; False means stop was requested.
        with self._cond:
            while self._paused and not self._stopped:
                self._cond.wait(timeout=poll_interval)
            return not self._stopped

    def publish(self, event: ProgressEvent) -> None:
        self._events.put(event)

    def get_event(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[ProgressEvent]:
        out: List[ProgressEvent] = []
        while True:
            try:
                out.append(self._events.get_nowait())
            except queue.Empty:
                return out

    def events(self, timeout: Optional[float] = None) -> Iterator[ProgressEvent]:
        # This code here yields in publish order and stops after a terminal event.
        while True:
            event = self.get_event(timeout=timeout)
            if event is None:
                return
            yield event
            if event.phase.terminal:
                return

    def _publish_transition(self, phase: Phase) -> None:
        with self._cond:
            source = self._state_source
        if source is None:
            self.publish(ProgressEvent(line=1, percent=0.0, phase=phase))
            return
        state = source()
        self.publish(ProgressEvent(line=state.current_line, percent=state.percent, phase=phase))
