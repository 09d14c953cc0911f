"""
Durable retry queue for payloads that could not be delivered.

The queue is a single JSON array rewritten in full on every mutation. It is
bounded by item age and item count; evictions are the only way a payload is
dropped without being delivered, and they are logged as such. Writes made
from the daemon's event loop run in a worker thread.
"""

import asyncio
import json
import logging
import os
import secrets
import tempfile
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from pydantic import TypeAdapter, ValidationError

from shared.errors import LocalStorageError
from shared.models import PushStatsPayload, QueuedItem, QueueStats

MAX_QUEUE_SIZE = 100
MAX_ITEM_AGE = timedelta(days=7)

_ITEMS = TypeAdapter(List[QueuedItem])

PushFn = Callable[[PushStatsPayload], Awaitable[bool]]


def generate_item_id() -> str:
    """Unique ID that sorts roughly by creation time."""
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class RetryQueue:
    """On-disk FIFO of failed push payloads."""

    def __init__(
        self,
        queue_file: Path,
        max_size: int = MAX_QUEUE_SIZE,
        max_age: timedelta = MAX_ITEM_AGE,
        max_item_attempts: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.queue_file = Path(queue_file)
        self.max_size = max_size
        self.max_age = max_age
        self.max_item_attempts = max_item_attempts
        self.logger = logger or logging.getLogger(__name__)
        self.processing = False
        self._items: List[QueuedItem] = []
        self._write_lock = asyncio.Lock()

        self._load()

    def __len__(self) -> int:
        return len(self._items)

    def _load(self) -> None:
        """Load persisted items; a missing or unreadable file means an empty queue."""
        try:
            self.queue_file.parent.mkdir(parents=True, exist_ok=True)
            if not self.queue_file.exists():
                return
            text = self.queue_file.read_text(encoding="utf-8")
            self._items = _ITEMS.validate_json(text) if text.strip() else []
        except (OSError, ValueError, ValidationError) as e:
            self.logger.warning(f"Failed to load retry queue from {self.queue_file}, starting fresh: {e}")
            self._items = []
            return

        evicted = self.cleanup()
        self.logger.debug(f"Loaded {len(self._items)} item(s) from retry queue")
        if evicted:
            self._save()

    def _snapshot(self) -> list:
        return _ITEMS.dump_python(self._items, mode="json", by_alias=True, exclude_none=True)

    def _write(self, data: Optional[list] = None) -> None:
        """Replace the queue file atomically."""
        if data is None:
            data = self._snapshot()
        try:
            self.queue_file.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=".pending-", suffix=".json", dir=self.queue_file.parent
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                os.replace(tmp_path, self.queue_file)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise LocalStorageError(f"Could not write {self.queue_file}: {e}") from e

    def _save(self) -> None:
        try:
            self._write()
        except LocalStorageError as e:
            self.logger.error(f"Failed to save retry queue: {e}")

    async def _save_async(self) -> None:
        """Write the current items from a worker thread.

        The snapshot is taken under the write lock, so the last write to land
        always holds the newest state.
        """
        async with self._write_lock:
            data = self._snapshot()
            try:
                await asyncio.to_thread(self._write, data)
            except LocalStorageError as e:
                self.logger.error(f"Failed to save retry queue: {e}")

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """Evict items past the maximum age, then the oldest beyond the maximum size.

        Returns the number of items evicted.
        """
        now = now or datetime.now(timezone.utc)
        original_length = len(self._items)

        self._items = [item for item in self._items if now - item.created_at < self.max_age]
        expired = original_length - len(self._items)

        overflow = len(self._items) - self.max_size
        if overflow > 0:
            self._items = self._items[overflow:]

        evicted = original_length - len(self._items)
        if evicted:
            self.logger.warning(
                f"Evicted {evicted} undelivered queue item(s) "
                f"({expired} expired, {max(overflow, 0)} over capacity)"
            )
        return evicted

    def _append(self, payload: PushStatsPayload, reason: Optional[str]) -> QueuedItem:
        now = datetime.now(timezone.utc)
        item = QueuedItem(
            id=generate_item_id(),
            payload=payload,
            attempts=1,
            created_at=now,
            last_attempt_at=now,
            error=reason,
        )
        self._items.append(item)
        self.cleanup(now)
        self.logger.info(
            f"Queued {len(payload.commits)} commit(s) for retry "
            f"({len(self._items)} item(s) in queue)"
        )
        return item

    def _record_attempt(self, item_id: str, error: Optional[str]) -> bool:
        for index, item in enumerate(self._items):
            if item.id == item_id:
                self._items[index] = item.model_copy(
                    update={
                        "attempts": item.attempts + 1,
                        "last_attempt_at": datetime.now(timezone.utc),
                        "error": error,
                    }
                )
                return True
        return False

    def _discard(self, item_id: str) -> None:
        self._items = [item for item in self._items if item.id != item_id]

    # The synchronous mutators write on the calling thread and are meant for
    # the CLI. Code running on the daemon's event loop uses ``enqueue_async``.

    def enqueue(self, payload: PushStatsPayload, reason: Optional[str] = None) -> QueuedItem:
        """Queue a payload after its first failed delivery."""
        item = self._append(payload, reason)
        self._save()
        return item

    async def enqueue_async(
        self, payload: PushStatsPayload, reason: Optional[str] = None
    ) -> QueuedItem:
        """Like ``enqueue``, but the file write happens off the event loop."""
        item = self._append(payload, reason)
        await self._save_async()
        return item

    def mark_attempt(self, item_id: str, error: Optional[str] = None) -> None:
        if self._record_attempt(item_id, error):
            self._save()

    def remove(self, item_id: str) -> None:
        self._discard(item_id)
        self._save()

    def clear(self) -> None:
        self._items = []
        self._save()
        self.logger.info("Retry queue cleared")

    def get_items(self) -> List[QueuedItem]:
        return list(self._items)

    def get_item(self, item_id: str) -> Optional[QueuedItem]:
        return next((item for item in self._items if item.id == item_id), None)

    def get_stats(self) -> QueueStats:
        return QueueStats(
            pending=len(self._items),
            total_attempts=sum(item.attempts for item in self._items),
            oldest_item=self._items[0].created_at if self._items else None,
        )

    def is_empty(self) -> bool:
        return not self._items

    async def process_queue(self, push_fn: PushFn) -> int:
        """
        Redeliver queued payloads, oldest first.

        Walks a snapshot of the queue. A delivered item is removed; the first
        failure is recorded on its item and ends the pass, leaving later items
        untouched. With ``max_item_attempts`` set, an item that has reached
        that many attempts no longer ends the pass and is skipped instead.
        Overlapping calls are no-ops.

        Args:
            push_fn: Coroutine function returning True on delivery

        Returns:
            int: Number of items delivered in this pass
        """
        if self.processing or not self._items:
            return 0

        self.processing = True
        success_count = 0
        snapshot = list(self._items)

        try:
            self.logger.info(f"Processing retry queue ({len(snapshot)} item(s))")

            for item in snapshot:
                try:
                    delivered = await push_fn(item.payload)
                    error = None if delivered else "Push returned false"
                except Exception as e:
                    delivered = False
                    error = str(e) or type(e).__name__

                if delivered:
                    self._discard(item.id)
                    await self._save_async()
                    success_count += 1
                    self.logger.debug(f"Queue item {item.id} delivered")
                    continue

                if self._record_attempt(item.id, error):
                    await self._save_async()
                attempts = item.attempts + 1
                self.logger.warning(f"Queue item {item.id} failed (attempt {attempts}): {error}")

                if self.max_item_attempts is not None and attempts >= self.max_item_attempts:
                    self.logger.warning(
                        f"Queue item {item.id} reached {attempts} attempts; "
                        f"skipping it for the rest of this pass"
                    )
                    continue
                break
        finally:
            self.processing = False

        if success_count:
            self.logger.info(f"Delivered {success_count}/{len(snapshot)} queued item(s)")

        return success_count
