"""Movement log writer.

Stock movements are written after the conditional updates that caused them,
off the deduction's critical path: entries go onto a bounded queue drained by
a single daemon thread with its own database session. When the queue is full
the entries are written inline instead of being dropped.

Write failures are logged and counted here, separately from deduction
failures. A movement that cannot be written does not undo the stock change.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from app.models.stock import InventoryMovement

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MovementEntry:
    """One stock change to be recorded as an ``InventoryMovement`` row."""
    inventory_item_id: int
    store_id: int
    reason: str
    quantity_before: Decimal
    quantity_after: Decimal
    qty_delta: Decimal
    sale_id: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None

    def to_model(self) -> InventoryMovement:
        return InventoryMovement(
            inventory_item_id=self.inventory_item_id,
            store_id=self.store_id,
            sale_id=self.sale_id,
            reason=self.reason,
            quantity_before=self.quantity_before,
            quantity_after=self.quantity_after,
            qty_delta=self.qty_delta,
            notes=self.notes,
            created_by=self.created_by,
        )


def write_movements(db: Session, entries: Iterable[MovementEntry]) -> int:
    """Persist *entries* in the given session and commit."""
    rows = [entry.to_model() for entry in entries]
    if not rows:
        return 0
    db.add_all(rows)
    db.commit()
    return len(rows)


_STOP = object()


class MovementRecorder:
    """Bounded background writer for movement entries."""

    def __init__(self, session_factory: Callable[[], Session], maxsize: int = 1000):
        self.session_factory = session_factory
        self._queue: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.written = 0
        self.failed_writes = 0
        self.inline_writes = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._thread = threading.Thread(
            target=self._run, name="movement-recorder", daemon=True
        )
        self._thread.start()
        logger.info("Movement recorder started")

    def stop(self, timeout: float = 10.0) -> None:
        """Write everything queued, then stop the worker thread."""
        if not self.running:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None
        logger.info(f"Movement recorder stopped ({self.written} written, {self.failed_writes} failed)")

    def submit(self, entries: List[MovementEntry]) -> None:
        """Queue *entries* for writing; never blocks on a full queue."""
        if not entries:
            return
        if not self.running:
            self._write(entries)
            return
        try:
            self._queue.put_nowait(list(entries))
        except queue.Full:
            logger.warning(f"Movement queue full, writing {len(entries)} entries inline")
            self.inline_writes += 1
            self._write(entries)

    def drain(self) -> None:
        """Block until every queued entry has been handled."""
        if self.running:
            self._queue.join()
        else:
            while True:
                try:
                    batch = self._queue.get_nowait()
                except queue.Empty:
                    break
                if batch is not _STOP:
                    self._write(batch)
                self._queue.task_done()

    def stats(self) -> Dict[str, int]:
        return {
            "queued": self._queue.qsize(),
            "written": self.written,
            "failed_writes": self.failed_writes,
            "inline_writes": self.inline_writes,
            "running": self.running,
        }

    def _run(self) -> None:
        while True:
            batch = self._queue.get()
            try:
                if batch is _STOP:
                    return
                self._write(batch)
            finally:
                self._queue.task_done()

    def _write(self, entries: List[MovementEntry]) -> None:
        db = self.session_factory()
        try:
            count = write_movements(db, entries)
            with self._lock:
                self.written += count
        except Exception:
            db.rollback()
            with self._lock:
                self.failed_writes += len(entries)
            logger.exception(
                f"Failed to write {len(entries)} stock movements "
                f"(sale {entries[0].sale_id if entries else '-'})"
            )
        finally:
            db.close()
