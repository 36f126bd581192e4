"""
Snapshot listeners over MongoDB change streams.

A listener delivers the current result of a query once when started, then the
full current result again after every change on the watched collection. Errors
are reported once through `on_error` and end the listener; nothing is retried.
Change streams need a replica set or sharded cluster.
"""

import logging
import threading
from typing import Any, Callable, List, Optional

from pymongo.errors import PyMongoError

from database import DatabaseNotAvailable

logger = logging.getLogger(__name__)

# How long one poll of the change stream may block, so remove() is noticed
MAX_AWAIT_TIME_MS = 500


class SnapshotListener:
    def __init__(
        self,
        collection,
        fetch: Callable[[], Any],
        on_snapshot: Callable[[Any], None],
        on_error: Optional[Callable[[Exception], None]] = None,
        pipeline: Optional[List[dict]] = None,
        name: str = "snapshot-listener",
    ):
        self._collection = collection
        self._fetch = fetch
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._pipeline = pipeline or []
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    @property
    def active(self) -> bool:
        return self._thread.is_alive() and not self._stopped.is_set()

    def start(self) -> "SnapshotListener":
        self._thread.start()
        return self

    def stop(self) -> None:
        """Ask the listener to stop without waiting for its thread."""
        self._stopped.set()

    def remove(self, timeout: Optional[float] = None) -> None:
        self.stop()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    def _deliver(self) -> None:
        snapshot = self._fetch()
        if not self._stopped.is_set():
            self._on_snapshot(snapshot)

    def _run(self) -> None:
        try:
            # Open the stream before the first read so no change slips in between
            with self._collection.watch(self._pipeline, max_await_time_ms=MAX_AWAIT_TIME_MS) as stream:
                self._deliver()
                while not self._stopped.is_set():
                    if stream.try_next() is not None:
                        self._deliver()
        except (PyMongoError, DatabaseNotAvailable) as e:
            if self._stopped.is_set():
                return
            logger.warning("Listener %s failed: %s", self._thread.name, e)
            if self._on_error:
                self._on_error(e)
        finally:
            self._stopped.set()
