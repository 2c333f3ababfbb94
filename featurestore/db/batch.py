from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable

from ..errors import OperationCancelled
from .mutations import Mutation
from .tx import DbFactory

logger = logging.getLogger(__name__)

Emit = Callable[[Mutation], None]

_DONE = object()
# How often blocked queue operations wake up to check for cancel/abort.
_POLL_INTERVAL_S = 0.05


class BatchWriter:
    """
    Producer/consumer writer for derived rows too numerous to build as one list.

    The producer runs in its own thread and hands mutations to ``emit``;
    they go through a bounded queue to the calling thread, which groups
    them into chunks of ``chunk_size`` and commits each chunk in its own
    transaction.

    Design Principles:
    - The bounded queue is the only flow control; a slow writer blocks the producer
    - No ordering guarantee between rows
    - The first failure (producer or write) aborts the run
    - No partial-success reporting: chunks committed before a failure stay committed

    Usage:
        def producer(emit):
            for row in derive_rows():
                emit(Mutation.insert_or_update("BrowserFeatureSupportEvents", row))

        written = BatchWriter(client.factory).run(producer)
    """

    def __init__(
        self,
        factory: DbFactory,
        *,
        chunk_size: int = 500,
        queue_capacity: int = 1000,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if queue_capacity < 1:
            raise ValueError("queue_capacity must be >= 1")
        self.factory = factory
        self.chunk_size = chunk_size
        self.queue_capacity = queue_capacity

    def run(
        self,
        producer: Callable[[Emit], None],
        cancel: threading.Event | None = None,
    ) -> int:
        """
        Run the producer to completion and write everything it emitted.

        Args:
            producer: Called once, in a worker thread, with the emit function
            cancel: Optional event; when set both sides stop promptly and
                OperationCancelled is raised

        Returns:
            Number of mutations committed

        Raises:
            OperationCancelled: If cancel was set before the run finished
            Whatever the producer raised, or the first write failure
        """
        rows: queue.Queue = queue.Queue(maxsize=self.queue_capacity)
        abort = threading.Event()
        producer_errors: list[BaseException] = []

        def _stopped() -> bool:
            return abort.is_set() or (cancel is not None and cancel.is_set())

        def emit(mutation: Mutation) -> None:
            while True:
                if _stopped():
                    raise OperationCancelled("batch write stopped")
                try:
                    rows.put(mutation, timeout=_POLL_INTERVAL_S)
                    return
                except queue.Full:
                    continue

        def _produce() -> None:
            try:
                producer(emit)
            except BaseException as exc:  # noqa: BLE001 - handed to the consumer thread
                producer_errors.append(exc)
            finally:
                # The sentinel must get through unless the consumer is gone.
                while not abort.is_set():
                    try:
                        rows.put(_DONE, timeout=_POLL_INTERVAL_S)
                        break
                    except queue.Full:
                        continue

        thread = threading.Thread(target=_produce, name="featurestore-batch-producer", daemon=True)
        thread.start()

        written = 0
        chunk: list[Mutation] = []
        try:
            while True:
                if cancel is not None and cancel.is_set():
                    raise OperationCancelled("batch write cancelled")
                try:
                    item = rows.get(timeout=_POLL_INTERVAL_S)
                except queue.Empty:
                    continue
                if item is _DONE:
                    break
                chunk.append(item)
                if len(chunk) >= self.chunk_size:
                    written += self._flush(chunk, cancel)
                    chunk = []

            if producer_errors:
                raise producer_errors[0]
            if chunk:
                written += self._flush(chunk, cancel)
        except BaseException:
            abort.set()
            raise
        finally:
            thread.join()

        logger.info("batch writer committed %d mutations", written)
        return written

    def _flush(self, chunk: list[Mutation], cancel: threading.Event | None) -> int:
        self.factory.run_read_write(lambda session: session.buffer_write(chunk), cancel=cancel)
        logger.debug("batch writer flushed chunk of %d mutations", len(chunk))
        return len(chunk)
