from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
import random
import time
from typing import Any

from annuaire_workers.core.telemetry import worker_span
from annuaire_workers.jobs.publisher import process_task
from annuaire_workers.jobs.scheduler import Scheduler
from annuaire_workers.services.directory_client import DirectoryClient

logger = logging.getLogger(__name__)


class WorkerPool:
    """One dispatcher polling the engine API, N consumers publishing to the directory.

    The claim call is the only gate: a task listed by the dispatcher may be
    claimed by another process first, in which case the consumer skips it.
    Periodic engine actions run in their own loop so a long reconciliation
    never holds up polling.
    """

    def __init__(
        self,
        client: Any,
        directory: DirectoryClient,
        *,
        concurrency: int = 4,
        poll_interval_seconds: float = 2.0,
        poll_batch_size: int = 20,
        max_backoff_seconds: float = 15.0,
        stale_reap_batch_size: int = 100,
        scheduler: Scheduler | None = None,
        scheduler_interval_seconds: float = 30.0,
    ) -> None:
        self.client = client
        self.directory = directory
        self.concurrency = max(1, concurrency)
        self.poll_interval_seconds = poll_interval_seconds
        self.poll_batch_size = poll_batch_size
        self.max_backoff_seconds = max_backoff_seconds
        self.stale_reap_batch_size = stale_reap_batch_size
        self.scheduler = scheduler
        self.scheduler_interval_seconds = scheduler_interval_seconds
        self._in_flight: set[str] = set()

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        stop = stop_event or asyncio.Event()
        await self._reap_at_startup()

        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self.concurrency * 2)
        background = [asyncio.create_task(self._consume(queue)) for _ in range(self.concurrency)]
        if self.scheduler is not None:
            background.append(asyncio.create_task(self._schedule(self.scheduler, stop)))
        try:
            await self._dispatch(queue, stop)
            await queue.join()
        finally:
            for job in background:
                job.cancel()
            await asyncio.gather(*background, return_exceptions=True)

    async def handle_task(self, summary: dict[str, Any]) -> dict[str, Any] | None:
        task_id = summary["id"]
        with worker_span("worker.process_task", task_id=task_id, entry_id=summary.get("entry_id", "")):
            claimed = await self.client.claim_task(task_id)
            if claimed is None:
                logger.debug("task already claimed elsewhere id=%s", task_id)
                return None

            task = claimed["task"]
            try:
                result = await process_task(claimed, self.directory)
            except Exception as exc:
                logger.exception("publication crashed for task id=%s", task_id)
                result = {"outcome": "transient_error", "error": f"worker error: {exc}", "content_hash": None}

            return await self.client.submit_result(
                task_id,
                claim_id=task["claim_id"],
                version=task["version"],
                outcome=result["outcome"],
                error=result["error"],
                content_hash=result["content_hash"],
            )

    async def _reap_at_startup(self) -> None:
        try:
            requeued = await self.client.reap_stale_tasks(limit=self.stale_reap_batch_size)
        except Exception:  # pragma: no cover - the periodic reaper retries
            logger.exception("startup stale claim recovery failed")
            return
        if requeued:
            logger.info("requeued stale publication claims at startup: %s", requeued)

    async def _dispatch(self, queue: asyncio.Queue[dict[str, Any]], stop: asyncio.Event) -> None:
        backoff = self.poll_interval_seconds
        while not stop.is_set():
            try:
                with worker_span("worker.poll_cycle"):
                    tasks = await self.client.get_tasks(limit=self.poll_batch_size)
                    fresh = [task for task in tasks if task["id"] not in self._in_flight]
                    for task in fresh:
                        self._in_flight.add(task["id"])
                        await queue.put(task)
                backoff = self.poll_interval_seconds
                if not fresh:
                    await _sleep_until_stopped(stop, self.poll_interval_seconds)
            except Exception as exc:
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), self.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await _sleep_until_stopped(stop, sleep_for)
                backoff = sleep_for

    async def _schedule(self, scheduler: Scheduler, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                with worker_span("worker.scheduler_tick"):
                    await scheduler.tick(now=datetime.now(timezone.utc), monotonic_now=time.monotonic())
            except Exception:
                logger.exception("scheduler tick failed; retry in %.1fs", self.scheduler_interval_seconds)
            await _sleep_until_stopped(stop, self.scheduler_interval_seconds)

    async def _consume(self, queue: asyncio.Queue[dict[str, Any]]) -> None:
        while True:
            summary = await queue.get()
            try:
                await self.handle_task(summary)
            except Exception:
                logger.exception("task handling failed id=%s", summary.get("id"))
            finally:
                self._in_flight.discard(summary["id"])
                queue.task_done()


async def _sleep_until_stopped(stop: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass
