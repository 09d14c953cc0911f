"""
CommitRelay daemon.

Builds the delivery client, the durable retry queue and the dispatcher from
settings, starts one repository watcher per configured project and runs until
SIGINT or SIGTERM.
"""

import asyncio
import logging
import signal
from datetime import timedelta
from typing import Optional

from config.settings import Settings, get_settings

from .client import DeliveryClient
from .dispatcher import Dispatcher
from .retry_queue import RetryQueue

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO", log_format: Optional[str] = None) -> None:
    """Configure root logging for the daemon process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=log_format or '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_client(settings: Settings) -> DeliveryClient:
    token = settings.api.auth_token.get_secret_value() if settings.api.auth_token else None
    return DeliveryClient(
        settings.api.url,
        auth_token=token,
        retry_policy=settings.retry.to_policy(),
        request_timeout=settings.api.request_timeout,
        health_check_timeout=settings.api.health_check_timeout,
        failure_threshold=settings.retry.failure_threshold,
    )


def build_queue(settings: Settings) -> RetryQueue:
    return RetryQueue(
        settings.queue.queue_file,
        max_size=settings.queue.max_size,
        max_age=timedelta(days=settings.queue.max_age_days),
        max_item_attempts=settings.queue.max_item_attempts,
    )


class CommitRelayDaemon:
    """Long-running process that watches projects and delivers their commits."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.client: Optional[DeliveryClient] = None
        self.retry_queue: Optional[RetryQueue] = None
        self.dispatcher: Optional[Dispatcher] = None
        self._stop_event = asyncio.Event()

    def request_stop(self) -> None:
        if not self._stop_event.is_set():
            logger.info("Shutdown requested")
            self._stop_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                # Not available on this platform or outside the main thread
                logger.debug(f"Signal handler for {sig.name} not installed")

    async def start(self) -> int:
        """
        Start delivery components and all project watchers.

        Returns:
            int: Number of watchers running
        """
        settings = self.settings
        self.client = build_client(settings)
        self.retry_queue = build_queue(settings)
        self.dispatcher = Dispatcher(
            self.client,
            self.retry_queue,
            debounce_ms=settings.watcher.debounce_ms,
            initial_commit_limit=settings.watcher.initial_commit_limit,
            queue_interval=settings.queue.process_interval,
            session_ttl=settings.watcher.session_poll_interval,
        )

        logger.info(f"Starting {settings.app_name} v{settings.version}")

        if await self.client.health_check():
            logger.info(f"Connected to collection service at {settings.api.url}")
        else:
            logger.warning(
                f"Collection service at {settings.api.url} is not reachable; "
                f"commits will be queued until it is"
            )

        pending = len(self.retry_queue)
        if pending:
            logger.info(f"{pending} payload(s) waiting in the retry queue")

        started = await self.dispatcher.start(settings.projects)
        logger.info(f"Watching {started}/{len(settings.projects)} project(s)")
        return started

    async def stop(self) -> None:
        if self.dispatcher is not None:
            await self.dispatcher.stop()
        if self.client is not None:
            await self.client.aclose()
        logger.info("Daemon stopped")

    async def run(self) -> None:
        """Run until a stop is requested."""
        self._install_signal_handlers()
        try:
            started = await self.start()
            if started == 0:
                logger.warning("No projects are being watched")
            await self._stop_event.wait()
        finally:
            await self.stop()


def run_daemon(settings: Optional[Settings] = None) -> None:
    """Blocking entry point for the daemon."""
    settings = settings or get_settings()
    configure_logging(settings.monitoring.log_level, settings.monitoring.log_format)
    asyncio.run(CommitRelayDaemon(settings).run())


if __name__ == "__main__":
    run_daemon()
