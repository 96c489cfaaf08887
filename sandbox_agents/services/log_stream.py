"""Incremental task log streaming.

Agent output arrives as arbitrary chunks from the sandbox. ``LineBuffer``
turns chunks into complete lines; ``TaskLogSink`` batches lines into the
task message table in arrival order.
"""

import logging
import threading
import time
from collections.abc import Callable
from uuid import UUID

from sandbox_agents.core.config import Settings, settings
from sandbox_agents.core.errors import redact
from sandbox_agents.services.task import TaskService

logger = logging.getLogger(__name__)

MAX_LINE_LENGTH = 20000


class LineBuffer:
    """Splits a chunked text stream on newlines, holding back partial lines."""

    def __init__(self):
        self._partial = ""

    def feed(self, chunk: str) -> list[str]:
        """Add a chunk and return the lines it completed."""
        if not chunk:
            return []
        data = self._partial + chunk
        lines = data.split("\n")
        self._partial = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        """Return any trailing partial line."""
        if not self._partial:
            return []
        line, self._partial = self._partial.rstrip("\r"), ""
        return [line]


class TaskLogSink:
    """Append-only, ordered log sink for one task.

    Lines are written in batches: when ``log_flush_max_lines`` accumulate,
    when ``log_flush_interval`` seconds have passed since the last write, or
    on an explicit ``flush()``. After ``start()`` a background thread applies
    the interval even while the agent prints nothing, so a quiet tail is not
    held back until the next line or the end of the run. A failed write
    keeps the batch for the next attempt, so lines are delivered at least
    once and never reordered.
    """

    def __init__(
        self,
        task_id: UUID,
        config: Settings = settings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.task_id = task_id
        self._flush_interval = config.log_flush_interval
        self._max_lines = config.log_flush_max_lines
        self._clock = clock
        self._pending: list[tuple[str, str, str]] = []
        self._lock = threading.Lock()
        self._last_flush = clock()
        self._stopped = threading.Event()
        self._flusher: threading.Thread | None = None
        self.closed = False

    def start(self) -> "TaskLogSink":
        """Start flushing on the interval from a daemon thread until ``close()``."""
        if self._flusher is None:
            self._flusher = threading.Thread(
                target=self._flush_periodically,
                name=f"log-flush-{self.task_id}",
                daemon=True,
            )
            self._flusher.start()
        return self

    def _flush_periodically(self) -> None:
        while not self._stopped.wait(self._flush_interval):
            self.flush_if_due()

    def append(self, line: str, stream: str = "stdout") -> None:
        """Queue one log line from agent output, with secrets masked."""
        self._queue("log", stream, redact(line, limit=MAX_LINE_LENGTH, paths=False))

    def event(self, message: str) -> None:
        """Record an orchestrator notice and write it out immediately."""
        self._queue("event", "system", message)
        self.flush()

    def _queue(self, kind: str, stream: str, content: str) -> None:
        if self.closed:
            logger.warning(f"Dropping message for closed sink of task {self.task_id}")
            return
        with self._lock:
            self._pending.append((kind, stream, content))
            due = (
                len(self._pending) >= self._max_lines
                or self._clock() - self._last_flush >= self._flush_interval
            )
        if due:
            self.flush()

    def flush_if_due(self) -> bool:
        """Flush if lines are waiting and the interval has passed since the last write."""
        with self._lock:
            due = (
                bool(self._pending)
                and self._clock() - self._last_flush >= self._flush_interval
            )
        if not due:
            return True
        return self.flush()

    def flush(self) -> bool:
        """Write pending lines. Returns False if the write failed."""
        with self._lock:
            if not self._pending:
                self._last_flush = self._clock()
                return True
            batch = list(self._pending)
            try:
                TaskService.append_messages(self.task_id, batch)
            except Exception as e:
                logger.warning(
                    f"Failed to persist {len(batch)} log lines for task {self.task_id}: {e}"
                )
                return False
            del self._pending[: len(batch)]
            self._last_flush = self._clock()
            return True

    def close(self) -> None:
        """Stop the flusher thread, flush what is left and stop accepting lines."""
        self._stopped.set()
        if self._flusher is not None:
            self._flusher.join()
            self._flusher = None
        if not self.flush():
            logger.error(
                f"Lost {len(self._pending)} log lines for task {self.task_id} on close"
            )
        self.closed = True

    @property
    def pending(self) -> int:
        return len(self._pending)
