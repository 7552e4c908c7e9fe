"""
Media publishing worker.

Runs up to PUBLISHER_CONCURRENCY publish jobs at a time, a daily cleanup sweep
for detached assets, and (optionally) the HTTP surface from api.upload_api,
all in one event loop.

Shutdown (SIGTERM/SIGINT, or an unhandled exception in a background task):
1. Stop claiming new jobs and cancel the cleanup timer
2. Wait for in-flight jobs to finish or record their failure
3. Stop the HTTP server (uvicorn restores the process signal handlers on exit)
4. Close the database pool
"""

import asyncio
import logging
import signal
import time
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from databases import Database

from api import ledger
from api.upload_api import create_app
from config import (
    CLEANUP_INITIAL_DELAY,
    CLEANUP_INTERVAL,
    CONCURRENCY,
    HTTP_ENABLED,
    HTTP_PORT,
    POLL_INTERVAL,
    STALE_JOB_TIMEOUT,
    configure_logging,
    validate_config,
)
from worker.cleanup import CleanupProcessor
from worker.job_processor import JobProcessor
from worker.origin_client import OriginClient
from worker.storage import StorageClient

logger = logging.getLogger(__name__)

# Pause after an error in the main loop
LOOP_ERROR_PAUSE = 5.0
# How often jobs stuck in 'processing' are looked for
STALE_CHECK_INTERVAL = 300.0


class WorkerState:
    """Mutable state of one worker instance, shared with the HTTP health check."""

    def __init__(self):
        self.shutdown_requested = False
        self.active_jobs = 0
        self.jobs_processed = 0
        self.last_cleanup: Optional[datetime] = None
        self.shutdown_event: Optional[asyncio.Event] = None

    def request_shutdown(self):
        """Request graceful shutdown of the worker."""
        self.shutdown_requested = True
        # Wake up the poll sleep and the cleanup timer
        if self.shutdown_event is not None:
            self.shutdown_event.set()


class MediaPublisher:
    """Owns the job and cleanup processors and drives them until shutdown."""

    # Seconds between checks while draining in-flight jobs
    drain_poll_interval = 1.0

    def __init__(
        self,
        db: Optional[Database] = None,
        origin: Optional[OriginClient] = None,
        storage: Optional[StorageClient] = None,
        state: Optional[WorkerState] = None,
        job_processor: Optional[JobProcessor] = None,
        cleanup_processor: Optional[CleanupProcessor] = None,
        concurrency: int = CONCURRENCY,
        poll_interval: float = POLL_INTERVAL,
        cleanup_initial_delay: float = CLEANUP_INITIAL_DELAY,
        cleanup_interval: float = CLEANUP_INTERVAL,
        http_enabled: bool = HTTP_ENABLED,
        http_port: int = HTTP_PORT,
        install_signal_handlers: bool = True,
    ):
        self.db = db if db is not None else ledger.database
        self.origin = origin or OriginClient()
        self.storage = storage or StorageClient()
        self.state = state or WorkerState()
        self.job_processor = job_processor or JobProcessor(self.origin, self.storage)
        self.cleanup_processor = cleanup_processor or CleanupProcessor(self.storage)
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.cleanup_initial_delay = cleanup_initial_delay
        self.cleanup_interval = cleanup_interval
        self.http_enabled = http_enabled
        self.http_port = http_port
        self.install_signal_handlers = install_signal_handlers

        self._cleanup_task: Optional[asyncio.Task] = None
        self._server: Optional[uvicorn.Server] = None
        self._server_task: Optional[asyncio.Task] = None
        self._signals_installed = False
        self._last_stale_check = 0.0

    # -------------------------------------------------------------------------
    # Job slots
    # -------------------------------------------------------------------------

    async def process_next_job(self) -> bool:
        """Run one slot: claim and process a single job. Returns True if a job was claimed."""
        if self.state.shutdown_requested:
            return False

        self.state.active_jobs += 1
        try:
            processed = await self.job_processor.process_job()
        finally:
            self.state.active_jobs -= 1

        if processed:
            self.state.jobs_processed += 1
        return processed

    async def run_iteration(self) -> int:
        """
        Run all slots concurrently and wait for every one of them.

        Returns:
            Number of slots that claimed a job

        Raises:
            The first slot error, once all slots have finished
        """
        results = await asyncio.gather(
            *(self.process_next_job() for _ in range(self.concurrency)),
            return_exceptions=True,
        )
        errors = [result for result in results if isinstance(result, BaseException)]
        if errors:
            raise errors[0]
        return sum(1 for result in results if result)

    async def _wait(self, seconds: float) -> None:
        """Sleep, waking early on shutdown."""
        if self.state.shutdown_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(self.state.shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _check_stale_jobs(self) -> None:
        self._last_stale_check = time.monotonic()
        recovered = await ledger.reset_stale_jobs(STALE_JOB_TIMEOUT)
        if recovered:
            logger.warning(f"Recovered {recovered} stale publish job(s)")

    # -------------------------------------------------------------------------
    # Cleanup timer
    # -------------------------------------------------------------------------

    async def run_cleanup(self) -> int:
        cleaned = await self.cleanup_processor.process_cleanup()
        self.state.last_cleanup = datetime.now(timezone.utc)
        return cleaned

    async def _cleanup_loop(self) -> None:
        delay = self.cleanup_initial_delay
        while not self.state.shutdown_requested:
            await self._wait(delay)
            if self.state.shutdown_requested:
                break
            try:
                logger.info("Running scheduled cleanup")
                await self.run_cleanup()
            except Exception:
                logger.exception("Cleanup sweep failed")
            delay = self.cleanup_interval

    # -------------------------------------------------------------------------
    # Signals, HTTP server, lifecycle
    # -------------------------------------------------------------------------

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, finishing in-flight jobs and shutting down...")
        self.state.request_shutdown()

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exc = context.get("exception")
        logger.error(f"Unhandled exception in event loop: {context.get('message')}", exc_info=exc)
        if exc is not None:
            self.state.request_shutdown()

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError) as e:
                logger.warning(f"Cannot install handler for {sig.name}: {e}")
                continue
            self._signals_installed = True
        loop.set_exception_handler(self._handle_loop_exception)

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._signals_installed:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            self._signals_installed = False
        loop.set_exception_handler(None)

    async def _start_http_server(self) -> None:
        app = create_app(storage=self.storage, state=self.state)
        config = uvicorn.Config(app, host="0.0.0.0", port=self.http_port, log_config=None, access_log=False)
        self._server = uvicorn.Server(config)
        self._server_task = asyncio.create_task(self._server.serve())

        while not self._server.started:
            if self._server_task.done():
                # Startup failed (e.g. port in use); surface the error
                server_task = self._server_task
                self._server = None
                self._server_task = None
                server_task.result()
                raise RuntimeError(f"HTTP server failed to start on port {self.http_port}")
            await asyncio.sleep(0.05)
        logger.info(f"HTTP server listening on port {self.http_port}")

    async def _stop_http_server(self) -> None:
        if self._server is None:
            return
        self._server.should_exit = True
        if self._server_task is not None:
            await self._server_task
        self._server = None
        self._server_task = None
        logger.info("HTTP server closed")

    async def start(self) -> None:
        """Connect, recover stale jobs and start the background tasks."""
        await self.db.connect()
        self.state.shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        await self._check_stale_jobs()

        if self.http_enabled:
            await self._start_http_server()

        # uvicorn installs its own signal handlers while serving; ours go in after it has started
        if self.install_signal_handlers:
            self._install_signal_handlers(loop)

        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(
            f"Media publisher started (concurrency={self.concurrency}, poll_interval={self.poll_interval}s)"
        )

    async def shutdown(self) -> None:
        """
        Stop background tasks, drain in-flight jobs, then close the database.

        Safe to call after a partial start().
        """
        logger.info("Shutting down gracefully...")
        self.state.request_shutdown()

        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        while self.state.active_jobs > 0:
            logger.info(f"Waiting for {self.state.active_jobs} active job(s) to finish...")
            await asyncio.sleep(self.drain_poll_interval)

        # Our signal handlers stay in place until the drain is over
        await self._stop_http_server()

        self._remove_signal_handlers(asyncio.get_running_loop())
        await self.origin.close()
        await self.db.disconnect()
        logger.info(f"Worker stopped gracefully ({self.state.jobs_processed} job(s) processed)")

    async def run(self) -> None:
        """Main loop: run the job slots until shutdown is requested."""
        try:
            await self.start()
            while not self.state.shutdown_requested:
                try:
                    if time.monotonic() - self._last_stale_check > STALE_CHECK_INTERVAL:
                        await self._check_stale_jobs()

                    processed = await self.run_iteration()
                    if processed == 0:
                        await self._wait(self.poll_interval)
                    else:
                        logger.debug(f"Processed {processed} job(s)")
                except Exception:
                    logger.exception("Worker loop error")
                    await self._wait(LOOP_ERROR_PAUSE)
        finally:
            await self.shutdown()


def main() -> None:
    configure_logging()
    validate_config()
    asyncio.run(MediaPublisher().run())


if __name__ == "__main__":
    main()
