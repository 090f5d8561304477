"""Utility functions."""

import logging
import queue
import threading
import traceback

logger = logging.getLogger(__name__)


class DeferredExecution:
    """A thread that accepts closures to run, and runs them as they are received"""

    def __init__(self, name):
        self.queue = queue.Queue()
        # this thread must be marked as daemon, otherwise it will prevent clients from exiting
        self.thread = threading.Thread(target=self._run, args=(), name=name, daemon=True)
        self.thread.start()

    def queueWork(self, runnable):
        """Queue up the work"""
        self.queue.put(runnable)

    def _run(self):
        while True:
            try:
                o = self.queue.get()
                o()
            except Exception:
                logger.error(
                    f"Unexpected error in deferred execution {traceback.format_exc()}"
                )
