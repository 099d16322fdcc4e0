"""Async worker pool that drains the stage queues."""
import asyncio
from typing import Dict, Optional, Set

from utils.logger import setup_logger
from pipeline.job_queue import Job, JobQueue
from pipeline.stages import Stage
import config

logger = setup_logger(__name__)


def default_concurrency() -> Dict[str, int]:
    return {
        "segmentation": config.SEGMENTATION_WORKERS,
        "analysis": config.ANALYSIS_WORKERS,
        "discovery": config.DISCOVERY_WORKERS,
    }


class WorkerPool:
    """Runs queued stage jobs with a per-stage concurrency limit."""

    def __init__(
        self,
        queue: JobQueue,
        stages: Dict[str, Stage],
        concurrency: Optional[Dict[str, int]] = None,
        poll_interval: float = config.QUEUE_POLL_INTERVAL,
    ):
        self.queue = queue
        self.stages = stages
        self.concurrency = {**default_concurrency(), **(concurrency or {})}
        self.poll_interval = poll_interval
        self._active: Dict[str, int] = {name: 0 for name in stages}
        self._tasks: Set[asyncio.Task] = set()

    async def _process(self, job: Job) -> None:
        stage = self.stages[job.stage]
        logger.info(f"Running job {job.id} (attempt {job.attempts}/{job.max_attempts})")
        try:
            await stage.run(job.payload)
        except Exception as e:
            if not self.queue.fail(job, e):
                stage.on_failed(job.document_id, e)
        else:
            self.queue.complete(job.id)
            logger.info(f"Job {job.id} completed")
        finally:
            self._active[job.stage] -= 1

    def _claim_jobs(self) -> int:
        """Start as many jobs as free worker slots allow."""
        started = 0
        for name in self.stages:
            while self._active[name] < self.concurrency.get(name, 1):
                job = self.queue.claim(name)
                if job is None:
                    break
                self._active[name] += 1
                task = asyncio.create_task(self._process(job))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                started += 1
        return started

    def _sleep_time(self) -> float:
        next_at = self.queue.next_available_at(list(self.stages))
        if next_at is None:
            return self.poll_interval
        delay = next_at - self.queue.clock()
        # Runnable jobs left unclaimed are waiting for a free slot
        if delay <= 0:
            return self.poll_interval
        return min(self.poll_interval, delay)

    async def run(self, stop_when_idle: bool = False, stop_event: Optional[asyncio.Event] = None) -> None:
        """Poll the queues until stopped.

        Args:
            stop_when_idle: Return once no job is queued or running
            stop_event: Return once this event is set
        """
        logger.info(f"Worker pool started: {self.concurrency}")
        try:
            while not (stop_event and stop_event.is_set()):
                started = self._claim_jobs()

                if stop_when_idle and not self._tasks and self.queue.live_count(list(self.stages)) == 0:
                    break

                if started:
                    # Let new jobs start before polling again
                    await asyncio.sleep(0)
                    continue

                if self._tasks:
                    await asyncio.wait(set(self._tasks), timeout=self._sleep_time(), return_when=asyncio.FIRST_COMPLETED)
                else:
                    await asyncio.sleep(self._sleep_time())
        finally:
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            logger.info("Worker pool stopped")

    async def run_until_idle(self) -> None:
        await self.run(stop_when_idle=True)
