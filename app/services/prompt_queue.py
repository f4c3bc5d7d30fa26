"""
Очередь генерации промптов.

Один экземпляр на процесс (app.state.prompt_queue). Цикл раз в
PROMPT_QUEUE_INTERVAL_S: восстановление зависших, затем claim пачками
по PROMPT_QUEUE_BATCH_SIZE, пока хранилище отдаёт полные пачки.
"""
import math
import asyncio
from datetime import timedelta
from typing import List, Optional, Set

import httpx
from loguru import logger
from sqlalchemy import select, update, func, case
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.errors import PromptGenerationError
from app.db.base import utcnow
from app.models.prompt_job import PromptGenerationJob
from app.services.storage import sign_path
from app.services.store import (
    claim_prompt_jobs,
    update_dependent_jobs,
    update_prompt_job_status,
)
from app.services.vision_llm import XaiVisionClient


PROCESSING_STUCK_AFTER = timedelta(minutes=30)
QUEUED_BOOST_AFTER = timedelta(hours=1)
QUEUED_EXPIRE_AFTER = timedelta(hours=24)
MAX_PRIORITY = 10
PRIORITY_BOOST = 2


def compute_backoff_ms(retry_count: int, *, network: bool = False) -> int:
    base = settings.PROMPT_RETRY_NETWORK_BASE_DELAY_MS if network else settings.PROMPT_RETRY_BASE_DELAY_MS
    delay = base * (settings.PROMPT_RETRY_BACKOFF_MULTIPLIER ** retry_count)
    return int(min(delay, settings.PROMPT_RETRY_MAX_DELAY_MS))


def is_network_failure(error: BaseException) -> bool:
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException, httpx.NetworkError)):
        return True
    text = str(error).lower()
    return 'timeout' in text or 'timed out' in text or 'network' in text or 'econnreset' in text


async def _resolve_image_url(value: Optional[str]) -> Optional[str]:
    """
    В задаче лежат пути хранилища или готовые URL. Пути подписываем
    в момент обработки, чтобы подпись не протухла в очереди.
    """
    if not value:
        return None
    if value.startswith(('http://', 'https://')) and '/storage/signed/' not in value:
        return value
    return await sign_path(value, int(settings.PROMPT_LLM_TIMEOUT_S) + 600)


class PromptQueue:
    def __init__(
            self,
            *,
            session_factory: async_sessionmaker,
            llm: Optional[XaiVisionClient] = None,
            trigger=None,
            interval_s: Optional[float] = None,
            batch_size: Optional[int] = None,
            autostart: bool = True
    ):
        self.session_factory = session_factory
        self.llm = llm or XaiVisionClient()
        # DispatchTrigger: после готового промпта зависимые Job можно отправлять
        self.trigger = trigger
        self.interval_s = interval_s or settings.PROMPT_QUEUE_INTERVAL_S
        self.batch_size = batch_size or settings.PROMPT_QUEUE_BATCH_SIZE
        self.autostart = autostart

        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()
        self._retry_handles: Set[asyncio.TimerHandle] = set()

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info('[PromptQueue] processing started')

    async def stop_processing(self):
        for handle in list(self._retry_handles):
            handle.cancel()
        self._retry_handles.clear()

        tasks = [t for t in [self._task, *self._pending] if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._task = None
        self._pending.clear()
        logger.info('[PromptQueue] processing stopped')

    async def _loop(self):
        while True:
            try:
                await self.process_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f'[PromptQueue] loop error: {e}')

            await asyncio.sleep(self.interval_s)

    def kick(self):
        """
        Внеочередной проход, например после истечения backoff.
        """
        task = asyncio.create_task(self.process_once())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _schedule_retry(self, delay_ms: int):
        loop = asyncio.get_running_loop()

        def fire():
            self._retry_handles.discard(handle)
            self.kick()

        handle = loop.call_later(delay_ms / 1000, fire)
        self._retry_handles.add(handle)

    async def wait_idle(self):
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # enqueue
    # ------------------------------------------------------------------

    async def _insert(self, job: PromptGenerationJob, db: Optional[AsyncSession]) -> str:
        if db is not None:
            db.add(job)
            await db.commit()
        else:
            async with self.session_factory() as session:
                session.add(job)
                await session.commit()

        logger.info(f'[PromptQueue] enqueued {job.operation} job {job.id} (priority {job.priority})')
        if self.autostart:
            self.start()
        return job.id

    async def enqueue_generation(
            self,
            *,
            user_id: str,
            ref_urls: List[str],
            target_url: str,
            swap_mode: str = 'face-hair',
            model_id: Optional[str] = None,
            row_id: Optional[str] = None,
            variant_row_id: Optional[str] = None,
            priority: int = 5,
            db: Optional[AsyncSession] = None
    ) -> str:
        job = PromptGenerationJob(
            user_id=user_id,
            model_id=model_id,
            row_id=row_id,
            variant_row_id=variant_row_id,
            operation='generate',
            swap_mode=swap_mode,
            ref_urls=list(ref_urls or []),
            target_url=target_url,
            status='queued',
            priority=priority,
            max_retries=settings.PROMPT_MAX_RETRIES
        )
        return await self._insert(job, db)

    async def enqueue_enhancement(
            self,
            *,
            user_id: str,
            existing_prompt: str,
            user_instructions: str,
            ref_urls: Optional[List[str]] = None,
            target_url: Optional[str] = None,
            model_id: Optional[str] = None,
            row_id: Optional[str] = None,
            variant_row_id: Optional[str] = None,
            priority: int = 5,
            db: Optional[AsyncSession] = None
    ) -> str:
        job = PromptGenerationJob(
            user_id=user_id,
            model_id=model_id,
            row_id=row_id,
            variant_row_id=variant_row_id,
            operation='enhance',
            ref_urls=list(ref_urls or []),
            target_url=target_url,
            existing_prompt=existing_prompt,
            user_instructions=user_instructions,
            status='queued',
            priority=priority,
            max_retries=settings.PROMPT_MAX_RETRIES
        )
        return await self._insert(job, db)

    # ------------------------------------------------------------------
    # processing
    # ------------------------------------------------------------------

    async def process_once(self) -> int:
        """
        Один проход. Если проход уже идёт, новый не запускается.
        """
        if self._lock.locked():
            return 0

        async with self._lock:
            await self._recover_stuck()

            total = 0
            while True:
                async with self.session_factory() as db:
                    jobs = await claim_prompt_jobs(db=db, limit=self.batch_size)
                if not jobs:
                    break

                logger.info(f'[PromptQueue] claimed {len(jobs)} job(s)')
                results = await asyncio.gather(*(self._process(job) for job in jobs), return_exceptions=True)
                for job, result in zip(jobs, results):
                    if isinstance(result, BaseException):
                        logger.error(f'[PromptQueue] job {job.id} crashed: {result!r}')

                total += len(jobs)
                if len(jobs) < self.batch_size:
                    break
            return total

    async def _call_llm(self, job: PromptGenerationJob) -> str:
        refs = await asyncio.gather(*(_resolve_image_url(u) for u in (job.ref_urls or [])))
        ref_urls = [u for u in refs if u]
        target_url = await _resolve_image_url(job.target_url)

        if job.operation == 'enhance':
            if not job.existing_prompt:
                raise PromptGenerationError('Prompt generation failed: nothing to enhance')
            return await self.llm.enhance_prompt(
                existing_prompt=job.existing_prompt,
                user_instructions=job.user_instructions or '',
                ref_urls=ref_urls,
                target_url=target_url
            )

        if not target_url:
            raise PromptGenerationError('Target image not found or cannot be accessed')
        return await self.llm.generate_prompt(ref_urls=ref_urls, target_url=target_url, swap_mode=job.swap_mode)

    async def _process(self, job: PromptGenerationJob):
        try:
            text = await asyncio.wait_for(self._call_llm(job), timeout=settings.PROMPT_LLM_TIMEOUT_S)
        except Exception as e:
            await self._handle_failure(job, e)
            return

        async with self.session_factory() as db:
            await update_prompt_job_status(db=db, job_id=job.id, status='completed', generated_prompt=text)
            updated = await update_dependent_jobs(db=db, prompt_job_id=job.id, generated_prompt=text)

        logger.info(f'[PromptQueue] job {job.id} completed ({len(text)} chars)')
        if updated and self.trigger is not None:
            self.trigger.request('prompt-completed')

    async def _handle_failure(self, job: PromptGenerationJob, error: BaseException):
        network = is_network_failure(error)
        if isinstance(error, asyncio.TimeoutError):
            message = 'timeout: prompt generation timed out'
        else:
            message = str(error) or error.__class__.__name__

        if job.retry_count < job.max_retries:
            delay_ms = compute_backoff_ms(job.retry_count, network=network)
            async with self.session_factory() as db:
                await db.execute(
                    update(PromptGenerationJob)
                    .where(PromptGenerationJob.id == job.id)
                    .values(
                        status='queued',
                        retry_count=PromptGenerationJob.retry_count + 1,
                        error=message,
                        next_attempt_at=utcnow() + timedelta(milliseconds=delay_ms),
                        started_at=None,
                        updated_at=utcnow()
                    )
                    .execution_options(synchronize_session=False)
                )
                await db.commit()

            logger.warning(
                f'[PromptQueue] job {job.id} failed ({message}), retry {job.retry_count + 1}/{job.max_retries} '
                f'in {delay_ms}ms'
            )
            self._schedule_retry(delay_ms)
            return

        logger.error(f'[PromptQueue] job {job.id} failed permanently: {message}')
        await self._fail(job.id, message)

    async def _fail(self, job_id: str, message: str):
        async with self.session_factory() as db:
            await update_prompt_job_status(db=db, job_id=job_id, status='failed', error=message)
            await update_dependent_jobs(db=db, prompt_job_id=job_id, error=message)

    async def _recover_stuck(self):
        now = utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(PromptGenerationJob).where(
                    PromptGenerationJob.status == 'processing',
                    func.coalesce(PromptGenerationJob.started_at, PromptGenerationJob.updated_at)
                    < now - PROCESSING_STUCK_AFTER
                )
            )
            stuck = list(result.scalars().all())

            expired_result = await db.execute(
                select(PromptGenerationJob.id).where(
                    PromptGenerationJob.status == 'queued',
                    PromptGenerationJob.created_at < now - QUEUED_EXPIRE_AFTER
                )
            )
            expired = list(expired_result.scalars().all())

            to_fail = []
            for job in stuck:
                if job.retry_count < job.max_retries:
                    job.status = 'queued'
                    job.retry_count += 1
                    job.started_at = None
                    job.error = 'timeout: processing exceeded 30 minutes'
                    job.updated_at = now
                else:
                    to_fail.append(job.id)

            boosted = await db.execute(
                update(PromptGenerationJob)
                .where(
                    PromptGenerationJob.status == 'queued',
                    PromptGenerationJob.created_at < now - QUEUED_BOOST_AFTER,
                    PromptGenerationJob.created_at >= now - QUEUED_EXPIRE_AFTER,
                    PromptGenerationJob.priority < MAX_PRIORITY
                )
                .values(priority=case(
                    (PromptGenerationJob.priority + PRIORITY_BOOST > MAX_PRIORITY, MAX_PRIORITY),
                    else_=PromptGenerationJob.priority + PRIORITY_BOOST
                ))
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        for job_id in to_fail:
            await self._fail(job_id, 'timeout: processing exceeded 30 minutes, retries exhausted')
        for job_id in expired:
            await self._fail(job_id, 'timeout: stuck in queue for 24+ hours')

        if stuck or expired or boosted.rowcount:
            logger.info(
                f'[PromptQueue] recovery: stuck={len(stuck)} expired={len(expired)} boosted={boosted.rowcount}'
            )

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    async def get_prompt_status(self, prompt_job_id: str) -> Optional[PromptGenerationJob]:
        async with self.session_factory() as db:
            return await db.get(PromptGenerationJob, prompt_job_id)

    async def cancel_prompt_job(self, prompt_job_id: str) -> bool:
        async with self.session_factory() as db:
            job = await db.get(PromptGenerationJob, prompt_job_id)
            if job is None or job.status not in ('queued', 'processing'):
                return False

        await self._fail(prompt_job_id, 'Cancelled by user')
        logger.info(f'[PromptQueue] job {prompt_job_id} cancelled')
        return True

    async def get_queue_stats(self) -> dict:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PromptGenerationJob.status, func.count(PromptGenerationJob.id))
                .group_by(PromptGenerationJob.status)
            )
            counts = {status: count for status, count in result.all()}

            waits = await db.execute(
                select(PromptGenerationJob.created_at, PromptGenerationJob.started_at).where(
                    PromptGenerationJob.status == 'completed',
                    PromptGenerationJob.started_at.is_not(None),
                    PromptGenerationJob.completed_at >= utcnow() - timedelta(hours=24)
                )
            )
            samples = [(started - created).total_seconds() for created, started in waits.all()]

        queued = counts.get('queued', 0)
        processing = counts.get('processing', 0)
        average_wait = sum(samples) / len(samples) if samples else 0.0
        estimated_wait = 0 if queued == 0 else math.ceil((queued + processing) * 60 / self.batch_size)

        return {
            'total_queued': queued,
            'total_processing': processing,
            'total_completed': counts.get('completed', 0),
            'total_failed': counts.get('failed', 0),
            'average_wait_time': average_wait,
            'estimated_wait_time': estimated_wait,
        }
