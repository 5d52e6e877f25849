"""
Background alert evaluation.

Status recording must not wait for threshold evaluation or notification
delivery, so transitions are handed to a bounded queue drained by a fixed
pool of worker threads. When the queue is full the transition is dropped
from alert evaluation (it is still recorded in history) and a warning is
logged.
"""

import logging
import queue
import threading
from typing import Callable, List, Optional

from devicemon.alerts import AlertContext, check_and_trigger_alerts
from devicemon.config import Settings, settings as default_settings
from devicemon.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)

_STOP = object()


class AlertQueue:
    """
    Bounded queue of AlertContexts drained by `workers` daemon threads.

    Each context is evaluated in its own session from `session_factory`.
    """

    def __init__(
        self,
        session_factory: Callable,
        settings: Settings = default_settings,
        maxsize: Optional[int] = None,
        workers: Optional[int] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.dispatcher = dispatcher or NotificationDispatcher(settings)
        self.workers = workers if workers is not None else settings.alert_workers
        self._queue: "queue.Queue" = queue.Queue(
            maxsize=maxsize if maxsize is not None else settings.alert_queue_size
        )
        self._threads: List[threading.Thread] = []
        self.dropped = 0

    def start(self) -> "AlertQueue":
        if self._threads:
            return self
        for i in range(max(self.workers, 1)):
            t = threading.Thread(target=self._run, name=f"alert-worker-{i}", daemon=True)
            t.start()
            self._threads.append(t)
        logger.info("Alert queue started with %d workers", len(self._threads))
        return self

    def submit(self, context: AlertContext) -> bool:
        """Queue `context` without blocking. Returns False if it was dropped."""
        try:
            self._queue.put_nowait(context)
        except queue.Full:
            self.dropped += 1
            logger.warning(
                "Alert queue full, dropping evaluation for device %s (%s -> %s)",
                context.device_id,
                context.previous_status,
                context.new_status,
                extra={"device_id": context.device_id},
            )
            return False
        return True

    def join(self) -> None:
        """Block until every queued context has been processed."""
        self._queue.join()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        for _ in self._threads:
            self._queue.put(_STOP)
        for t in self._threads:
            t.join(timeout)
        self._threads = []

    def process(self, context: AlertContext) -> None:
        db = self.session_factory()
        try:
            check_and_trigger_alerts(db, context, self.settings, self.dispatcher)
        except Exception:
            db.rollback()
            logger.exception(
                "Error checking alerts for device %s", context.device_id,
                extra={"device_id": context.device_id},
            )
        finally:
            db.close()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self.process(item)
            finally:
                self._queue.task_done()


_default_queue: Optional[AlertQueue] = None
_default_lock = threading.Lock()


def get_default_queue() -> AlertQueue:
    """The process-wide queue, started on first use."""
    global _default_queue
    with _default_lock:
        if _default_queue is None:
            from devicemon.database import SessionLocal

            _default_queue = AlertQueue(SessionLocal).start()
        return _default_queue
