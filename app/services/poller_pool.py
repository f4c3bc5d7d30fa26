import asyncio
from dataclasses import dataclass
from typing import Dict, List, Optional

from loguru import logger
from sqlalchemy import select

from app.core.config import settings
from app.models.job import Job, JOB_NON_TERMINAL_STATUSES, JOB_TERMINAL_STATUSES
from app.schemas.job import JobPollResponse
from app.services.poller import JobPoller


@dataclass
class TrackedJob:
    interval_s: float
    latest: Optional[JobPollResponse] = None
    handle: Optional[asyncio.TimerHandle] = None


class JobPollerPool:
    """
    Серверный опрос незавершённых задач: не зависит от того,
    держит ли клиент страницу открытой.

    Интервал на задачу растёт вдвое, пока статус не меняется,
    и сбрасывается к базовому при смене статуса.
    """

    def __init__(
            self,
            poller: JobPoller,
            *,
            workers: Optional[int] = None,
            base_interval_s: Optional[float] = None,
            max_interval_s: Optional[float] = None
    ):
        self.poller = poller
        self.workers = workers or settings.POLLER_WORKERS
        self.base_interval_s = base_interval_s or settings.POLLER_BASE_INTERVAL_S
        self.max_interval_s = max_interval_s or settings.POLLER_MAX_INTERVAL_S

        self._queue: asyncio.Queue = asyncio.Queue()
        self._jobs: Dict[str, TrackedJob] = {}
        self._tasks: List[asyncio.Task] = []

    def track(self, job_id: str):
        if job_id in self._jobs:
            return
        self._jobs[job_id] = TrackedJob(interval_s=self.base_interval_s)
        self._queue.put_nowait(job_id)

    def untrack(self, job_id: str):
        tracked = self._jobs.pop(job_id, None)
        if tracked and tracked.handle:
            tracked.handle.cancel()

    def is_tracked(self, job_id: str) -> bool:
        return job_id in self._jobs

    def latest(self, job_id: str) -> Optional[JobPollResponse]:
        tracked = self._jobs.get(job_id)
        return tracked.latest if tracked else None

    def next_interval(self, tracked: TrackedJob, response: Optional[JobPollResponse]) -> float:
        previous = tracked.latest.status if tracked.latest else None
        if response is not None and response.status != previous:
            return self.base_interval_s
        return min(tracked.interval_s * 2, self.max_interval_s)

    async def resume(self, session_factory) -> int:
        """
        После рестарта подхватываем всё незавершённое из базы.
        """
        async with session_factory() as db:
            result = await db.execute(select(Job.id).where(Job.status.in_(JOB_NON_TERMINAL_STATUSES)))
            job_ids = list(result.scalars().all())

        for job_id in job_ids:
            self.track(job_id)
        if job_ids:
            logger.info(f'[Poll] resumed polling of {len(job_ids)} job(s)')
        return len(job_ids)

    def start(self):
        if self._tasks:
            return
        for n in range(self.workers):
            self._tasks.append(asyncio.create_task(self._worker(n)))
        logger.info(f'[Poll] poller pool started with {self.workers} worker(s)')

    async def stop(self):
        for tracked in self._jobs.values():
            if tracked.handle:
                tracked.handle.cancel()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info('[Poll] poller pool stopped')

    def _schedule(self, job_id: str, tracked: TrackedJob):
        loop = asyncio.get_running_loop()
        tracked.handle = loop.call_later(tracked.interval_s, self._queue.put_nowait, job_id)

    async def poll_once(self, job_id: str) -> Optional[JobPollResponse]:
        tracked = self._jobs.get(job_id)
        if tracked is None:
            return None

        try:
            response = await self.poller.poll(job_id)
        except Exception as e:
            logger.warning(f'[Poll] pool poll of {job_id} failed: {e}')
            response = tracked.latest

        if response is None or response.status in JOB_TERMINAL_STATUSES:
            tracked.latest = response
            self.untrack(job_id)
            return response

        tracked.interval_s = self.next_interval(tracked, response)
        tracked.latest = response
        return response

    async def _worker(self, n: int):
        while True:
            try:
                job_id = await self._queue.get()
            except asyncio.CancelledError:
                break

            try:
                await self.poll_once(job_id)
                tracked = self._jobs.get(job_id)
                if tracked is not None:
                    self._schedule(job_id, tracked)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f'[Poll] pool worker {n} error: {e}')
            finally:
                self._queue.task_done()
