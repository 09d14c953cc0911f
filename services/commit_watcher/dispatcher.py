"""
Dispatcher wiring repository watchers to the delivery client.

Watchers publish ``CommitBatch`` messages into one bounded channel. The
dispatcher reads the channel in order and delivers each batch while holding
its project's lock, so a repository's batches go out in the order they were
found while different repositories are delivered concurrently. Failed
payloads go to the retry queue, which a periodic timer drains when the
connection is healthy.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Set, Tuple

from shared.errors import WatcherStartError
from shared.models import ActiveSession, CommitBatch, ConnectionState, ProjectConfig, PushStatsPayload

from .client import DeliveryClient
from .retry_queue import RetryQueue
from .watcher import RepositoryWatcher

DEFAULT_QUEUE_INTERVAL = 60.0
DEFAULT_SESSION_TTL = 30.0
DEFAULT_CHANNEL_SIZE = 100


class Dispatcher:
    """Runs one watcher per project and delivers what they find."""

    def __init__(
        self,
        client: DeliveryClient,
        retry_queue: RetryQueue,
        debounce_ms: int = 2000,
        initial_commit_limit: int = 5,
        queue_interval: float = DEFAULT_QUEUE_INTERVAL,
        session_ttl: float = DEFAULT_SESSION_TTL,
        channel_size: int = DEFAULT_CHANNEL_SIZE,
        logger: Optional[logging.Logger] = None,
    ):
        self.client = client
        self.retry_queue = retry_queue
        self.debounce_ms = debounce_ms
        self.initial_commit_limit = initial_commit_limit
        self.queue_interval = queue_interval
        self.session_ttl = session_ttl
        self.logger = logger or logging.getLogger(__name__)

        self.channel: "asyncio.Queue[CommitBatch]" = asyncio.Queue(maxsize=channel_size)
        self.watchers: List[RepositoryWatcher] = []

        self._project_locks: Dict[str, asyncio.Lock] = {}
        self._session_cache: Dict[str, Tuple[float, Optional[ActiveSession]]] = {}
        self._delivery_tasks: Set[asyncio.Task] = set()
        self._consumer_task: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None

    async def start(self, projects: List[ProjectConfig]) -> int:
        """
        Start a watcher for every project plus the delivery and drain loops.

        A project whose watcher fails to start is logged and skipped.

        Returns:
            int: Number of watchers started
        """
        for project in projects:
            watcher = RepositoryWatcher(
                project,
                self.channel,
                debounce_ms=self.debounce_ms,
                initial_commit_limit=self.initial_commit_limit,
                logger=self.logger.getChild("watcher"),
            )
            try:
                await watcher.start()
            except WatcherStartError as e:
                self.logger.error(f"Failed to start watcher for {project.path}: {e}")
                continue
            self.watchers.append(watcher)

        self._consumer_task = asyncio.create_task(self._consume())
        self._timer_task = asyncio.create_task(self._drain_periodically())
        return len(self.watchers)

    async def stop(self) -> None:
        """
        Stop watchers and background loops.

        Deliveries in flight finish. Batches still waiting in the channel are
        written to the retry queue, so nothing a watcher published is lost.
        """
        for watcher in self.watchers:
            await watcher.stop()
        self.watchers = []

        for task in (self._timer_task, self._consumer_task):
            if task is not None:
                task.cancel()
        await asyncio.gather(
            *(t for t in (self._timer_task, self._consumer_task) if t is not None),
            return_exceptions=True,
        )
        self._timer_task = self._consumer_task = None

        if self._delivery_tasks:
            await asyncio.gather(*list(self._delivery_tasks), return_exceptions=True)

        leftover = 0
        while True:
            try:
                batch = self.channel.get_nowait()
            except asyncio.QueueEmpty:
                break
            self.channel.task_done()
            payload = self.build_payload(batch, self._cached_session(batch.project))
            await self.retry_queue.enqueue_async(payload, "Stopped before delivery")
            leftover += 1

        if leftover:
            self.logger.warning(f"Queued {leftover} undelivered batch(es) at shutdown")

    def _cached_session(self, project: ProjectConfig) -> Optional[ActiveSession]:
        cached = self._session_cache.get(project.name)
        return cached[1] if cached is not None else None

    async def _consume(self) -> None:
        while True:
            batch = await self.channel.get()
            task = asyncio.create_task(self._deliver_in_order(batch))
            self._delivery_tasks.add(task)
            task.add_done_callback(self._delivery_tasks.discard)
            self.channel.task_done()

    async def _deliver_in_order(self, batch: CommitBatch) -> None:
        lock = self._project_locks.setdefault(batch.project.path, asyncio.Lock())
        async with lock:
            await self.handle_batch(batch)

    async def _lookup_session(self, project: ProjectConfig) -> Optional[ActiveSession]:
        cached = self._session_cache.get(project.name)
        now = time.monotonic()
        if cached is not None and now - cached[0] < self.session_ttl:
            return cached[1]

        session = await self.client.get_active_session(project.name)
        self._session_cache[project.name] = (now, session)
        return session

    def build_payload(
        self, batch: CommitBatch, session: Optional[ActiveSession]
    ) -> PushStatsPayload:
        project_id = batch.project.project_id
        if session is not None and session.project_id:
            project_id = session.project_id

        return PushStatsPayload(
            project_id=project_id,
            project_name=batch.project.name,
            session_id=session.session_id if session else None,
            commits=batch.commits,
        )

    async def handle_batch(self, batch: CommitBatch) -> bool:
        """Deliver one batch, queueing it for retry if delivery fails."""
        session = None
        try:
            session = await self._lookup_session(batch.project)
        except Exception as e:
            self.logger.warning(f"Session lookup failed for {batch.project.name}: {e}")

        payload = self.build_payload(batch, session)

        try:
            result = await self.client.push_stats_detailed(payload)
            delivered, reason = result.success, result.error
        except Exception as e:
            self.logger.error(f"Delivery for {batch.project.name} raised: {e}")
            delivered, reason = False, str(e)

        if not delivered:
            await self.retry_queue.enqueue_async(payload, reason)
        return delivered

    async def drain_queue(self) -> int:
        """
        Redeliver queued payloads if the connection looks usable.

        When the client is disconnected a single health check decides whether
        this pass runs at all.

        Returns:
            int: Number of queued payloads delivered
        """
        if self.retry_queue.is_empty():
            return 0

        if self.client.health.state == ConnectionState.DISCONNECTED:
            if not await self.client.health_check():
                self.logger.debug("Collection service still unreachable; skipping queue pass")
                return 0
            self.logger.info("Collection service reachable again")

        return await self.retry_queue.process_queue(self.client.push_stats)

    async def _drain_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.queue_interval)
            try:
                await self.drain_queue()
            except Exception as e:
                self.logger.error(f"Retry queue pass failed: {e}")
