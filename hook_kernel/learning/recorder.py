"""
Fire-and-forget persistence for execution records.

The engine hands records to the recorder and returns its Decision without
waiting; a daemon thread drains the queue into the Learning Store.
"""

import logging
import queue
import threading
from typing import Optional

from hook_kernel.learning.store import LearningStore
from hook_kernel.models.execution import ExecutionRecord

logger = logging.getLogger(__name__)

_STOP = object()


class AsyncRecorder:
    def __init__(self, store: LearningStore, max_queue: int = 10000):
        self.store = store
        self._queue: "queue.Queue" = queue.Queue(maxsize=max_queue)
        self._closed = False
        self.dropped = 0
        self._thread = threading.Thread(
            target=self._drain, name="hook-kernel-recorder", daemon=True
        )
        self._thread.start()

    def submit(self, record: ExecutionRecord) -> bool:
        """Queue one record. Never blocks; returns False if it was dropped."""
        if self._closed:
            logger.warning("Recorder closed, dropping record for rule %s", record.rule)
            self.dropped += 1
            return False
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self.dropped += 1
            logger.warning(
                "Recorder queue full, dropping record rule=%s action=%s",
                record.rule, record.action_id,
            )
            return False
        return True

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self.store.record_execution(item)
            except Exception:
                logger.exception("Unexpected failure persisting execution record")
            finally:
                self._queue.task_done()

    def pending(self) -> int:
        return self._queue.unfinished_tasks

    def flush(self, timeout: Optional[float] = 5.0) -> bool:
        """Wait until every queued record has been written. False on timeout."""
        done = threading.Event()

        def _join():
            self._queue.join()
            done.set()

        threading.Thread(target=_join, daemon=True).start()
        return done.wait(timeout)

    def close(self, timeout: Optional[float] = 5.0) -> None:
        if self._closed:
            return
        self.flush(timeout)
        self._closed = True
        self._queue.put(_STOP)
        self._thread.join(timeout)
