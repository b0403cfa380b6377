"""
kickback.worker.pool — Poll / dispatch / drain loop
===================================================

States::

    starting → acquiring_lock → polling ⇄ draining → stopped

The loop runs on ``asyncio``; every database call (claims, stats, job
processing) is shipped to a bounded :class:`ThreadPoolExecutor` through
:func:`~kickback.database.engine.run_db`, so in-flight work can never
exceed ``concurrency`` and the loop stays responsive to signals.

Shutdown: the first SIGTERM/SIGINT stops claiming and waits up to
``drain_timeout`` for in-flight jobs.  A second signal stops waiting.
Jobs still running at that point keep their ``processing`` lock and are
handed out again by stale-lock recovery.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import signal
from concurrent.futures import ThreadPoolExecutor

from kickback.config import WorkerConfig
from kickback.database.engine import run_db
from kickback.services.job_store import ChatJobStore, ClaimedJob
from kickback.worker.lock import SingletonLock
from kickback.worker.processor import ChatJobProcessor

logger = logging.getLogger(__name__)


class WorkerState(enum.StrEnum):
    STARTING = "starting"
    ACQUIRING_LOCK = "acquiring_lock"
    POLLING = "polling"
    DRAINING = "draining"
    STOPPED = "stopped"


class ChatWorker:
    """Single-process chat-queue consumer.

    Parameters
    ----------
    config:
        Worker knobs (batch size, poll interval, concurrency …).
    store:
        Queue access.
    processor:
        Handles one claimed job; its exceptions become ``store.fail``.
    lock:
        Process-wide singleton lock.
    """

    def __init__(
        self,
        config: WorkerConfig,
        store: ChatJobStore,
        processor: ChatJobProcessor,
        lock: SingletonLock,
    ) -> None:
        self.config = config
        self.store = store
        self.processor = processor
        self.lock = lock

        self.state = WorkerState.STARTING
        self.processed = 0
        self.errors = 0
        self.abandoned = 0

        self._in_flight: set[asyncio.Task] = set()
        self._signals = 0
        self._stop: asyncio.Event | None = None
        self._force: asyncio.Event | None = None
        self._executor: ThreadPoolExecutor | None = None

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def run(self) -> int:
        """Run until stopped.  Returns the process exit status."""
        self._stop = asyncio.Event()
        self._force = asyncio.Event()
        cfg = self.config
        logger.info(
            "Starting chat worker: batch_size=%d, poll_interval=%.0fms, concurrency=%d",
            cfg.batch_size, cfg.poll_interval * 1000, cfg.concurrency,
        )

        self.state = WorkerState.ACQUIRING_LOCK
        if not await asyncio.to_thread(self.lock.acquire):
            logger.info("Another chat worker is running, exiting")
            self.state = WorkerState.STOPPED
            return 0

        # +2: the claim/stats calls and failure bookkeeping
        self._executor = ThreadPoolExecutor(
            max_workers=cfg.concurrency + 2, thread_name_prefix="chat-worker"
        )
        self._install_signal_handlers()
        try:
            self.state = WorkerState.POLLING
            await self._poll_loop()
            self.state = WorkerState.DRAINING
            await self._drain()
        finally:
            self._remove_signal_handlers()
            await asyncio.to_thread(self.lock.release)
            self._executor.shutdown(wait=False, cancel_futures=True)
            self.state = WorkerState.STOPPED
            logger.info("Chat worker stopped: processed=%d, errors=%d, abandoned=%d",
                        self.processed, self.errors, self.abandoned)
        return 0

    def request_stop(self, sig: signal.Signals | None = None) -> None:
        """First call drains; any further call forces exit."""
        self._signals += 1
        name = sig.name if sig is not None else "stop request"
        if self._signals == 1:
            logger.info("Received %s, draining in-flight jobs", name)
            if self._stop is not None:
                self._stop.set()
        else:
            logger.warning("Received %s again, forcing exit", name)
            if self._force is not None:
                self._force.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_stop, sig)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handler for %s unavailable", sig.name)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------
    async def _poll_loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_stats = loop.time() + self.config.stats_interval

        while not self._stop.is_set():
            delay = self.config.poll_interval
            try:
                await self._fill()
                if loop.time() >= next_stats:
                    await self._log_stats()
                    next_stats = loop.time() + self.config.stats_interval
            except Exception:
                logger.exception("Error in worker loop")
                delay = self.config.poll_interval * 2
            await self._sleep(delay)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def _fill(self) -> int:
        """Claim up to the free capacity and dispatch.  Returns jobs claimed."""
        capacity = self.config.concurrency - len(self._in_flight)
        if capacity <= 0:
            return 0
        jobs = await run_db(
            self.store.claim_batch,
            min(self.config.batch_size, capacity),
            self.config.stale_lock_seconds,
            executor=self._executor,
        )
        for job in jobs:
            task = asyncio.create_task(self._handle(job), name=f"chat-job-{job.id}")
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
        return len(jobs)

    async def _handle(self, job: ClaimedJob) -> None:
        try:
            await run_db(self.processor.process, job, executor=self._executor)
        except Exception as exc:
            self.errors += 1
            message = str(exc) or type(exc).__name__
            logger.error("Error processing job %d (attempt %d): %s", job.id, job.attempts,
                         message, exc_info=self.config.verbose)
            await run_db(
                self.store.fail, job.id, message, job.attempts, self.config.max_attempts,
                executor=self._executor,
            )
        else:
            self.processed += 1

    async def _log_stats(self) -> None:
        stats = await run_db(
            self.store.stats, self.config.stale_lock_seconds, executor=self._executor
        )
        logger.info(
            "Queue: pending=%d, processing=%d, completed=%d, failed=%d, stale=%d"
            " | this worker: processed=%d, errors=%d, in_flight=%d",
            stats.pending, stats.processing, stats.completed, stats.failed,
            stats.stale_locks, self.processed, self.errors, len(self._in_flight),
        )

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------
    async def _drain(self) -> None:
        if not self._in_flight:
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.drain_timeout
        logger.info("Waiting up to %.0fs for %d in-flight job(s)",
                    self.config.drain_timeout, len(self._in_flight))

        force_waiter = asyncio.create_task(self._force.wait())
        try:
            while self._in_flight and not self._force.is_set():
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                await asyncio.wait(
                    {*self._in_flight, force_waiter},
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
        finally:
            force_waiter.cancel()

        self.abandoned = len(self._in_flight)
        if self.abandoned:
            logger.warning(
                "Abandoning %d in-flight job(s); stale-lock recovery will reclaim them",
                self.abandoned,
            )
            for task in list(self._in_flight):
                task.cancel()
