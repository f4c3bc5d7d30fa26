import time
import asyncio
from typing import Optional, Set

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.errors import JobProcessingError
from app.models.job import Job
from app.models.prompt_job import PromptGenerationJob
from app.services.error_taxonomy import (
    ErrorCategory,
    categorize_error,
    format_job_error,
    validate_prompt,
)
from app.services.provider_client import WaveSpeedClient, extract_provider_id
from app.services.provider_models import build_provider_request
from app.services.storage import sign_path
from app.services.store import (
    claim_jobs_with_capacity,
    cleanup_quick_pass,
    cleanup_stuck_jobs,
    fail_job,
    mark_rows_running,
    mark_variant_rows_running,
    requeue_job,
    set_job_submitted,
)


class DispatchState:
    """
    Состояние процесса: когда последний раз запускался цикл очистки.
    Создаётся один раз при старте, после рестарта начинается заново.
    """

    def __init__(self, cleanup_interval_s: Optional[float] = None):
        self.cleanup_interval_s = (
            settings.DISPATCH_CLEANUP_INTERVAL_S if cleanup_interval_s is None else cleanup_interval_s
        )
        self.last_cleanup_at: Optional[float] = None

    def claim_cleanup_slot(self, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now
        if self.last_cleanup_at is not None and now - self.last_cleanup_at < self.cleanup_interval_s:
            return False
        self.last_cleanup_at = now
        return True


class Dispatcher:
    """
    claim -> submit. Каждая задача обрабатывается в своей сессии,
    ошибка одной не ломает остальные.
    """

    def __init__(
            self,
            *,
            session_factory: async_sessionmaker,
            provider: Optional[WaveSpeedClient] = None,
            state: Optional[DispatchState] = None,
            max_concurrency: Optional[int] = None,
            active_window_ms: Optional[int] = None,
            stale_max_ms: Optional[int] = None
    ):
        self.session_factory = session_factory
        self.provider = provider or WaveSpeedClient()
        self.state = state or DispatchState()
        self.max_concurrency = max_concurrency or settings.DISPATCH_MAX_CONCURRENCY
        self.active_window_ms = active_window_ms or settings.DISPATCH_ACTIVE_WINDOW_MS
        self.stale_max_ms = stale_max_ms or settings.DISPATCH_STALE_MAX_MS
        # выставляется DispatchTrigger
        self.trigger = None
        self._background: Set[asyncio.Task] = set()

    async def dispatch(self, *, source: str = 'api') -> int:
        """
        Возвращает количество забранных задач. Наружу выходит только ClaimError.
        """
        await self._quick_cleanup()

        async with self.session_factory() as db:
            jobs = await claim_jobs_with_capacity(
                db=db,
                max_concurrency=self.max_concurrency,
                active_window_ms=self.active_window_ms
            )

        logger.info(f'[Dispatch] source={source} claimed={len(jobs)}')

        progressed = 0
        if jobs:
            await self._mark_parents_running(jobs)
            results = await asyncio.gather(
                *(self._process_job(job.id) for job in jobs),
                return_exceptions=True
            )
            for job, result in zip(jobs, results):
                if isinstance(result, BaseException):
                    logger.error(f'[Dispatch] job {job.id} processing crashed: {result!r}')
                    progressed += 1
                elif result:
                    progressed += 1

        self._schedule_cleanup_cycle()

        # все забранные задачи ждут промпт: drain не нужен
        if progressed and self.trigger is not None:
            self.trigger.request('drain')

        return len(jobs)

    async def _quick_cleanup(self):
        try:
            async with self.session_factory() as db:
                await cleanup_quick_pass(db=db, stale_max_ms=self.stale_max_ms)
        except Exception as e:
            logger.warning(f'[Cleanup] quick pass failed: {e}')

    async def _mark_parents_running(self, jobs):
        try:
            async with self.session_factory() as db:
                await mark_rows_running(db=db, row_ids=[j.row_id for j in jobs])
                await mark_variant_rows_running(db=db, variant_row_ids=[j.variant_row_id for j in jobs])
        except Exception as e:
            logger.warning(f'[Dispatch] failed to mark rows running: {e}')

    def _schedule_cleanup_cycle(self):
        if not self.state.claim_cleanup_slot():
            return
        task = asyncio.create_task(self._run_cleanup_cycle())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_cleanup_cycle(self):
        try:
            async with self.session_factory() as db:
                await asyncio.wait_for(
                    cleanup_stuck_jobs(db=db),
                    timeout=settings.DISPATCH_CLEANUP_TIMEOUT_S
                )
        except asyncio.TimeoutError:
            logger.warning('[Cleanup] cycle timed out')
        except Exception as e:
            logger.warning(f'[Cleanup] cycle failed: {e}')

    async def wait_background(self):
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _process_job(self, job_id: str) -> bool:
        """
        False - задача вернулась в queued ждать промпт.
        """
        async with self.session_factory() as db:
            job = await db.get(Job, job_id)
            if job is None:
                return False
            try:
                return await self._submit_job(db=db, job=job)
            except Exception as e:
                categorized = categorize_error(e)
                logger.error(f'[Dispatch] job {job.id} failed: {categorized.category.value}: {categorized.message}')
                await db.rollback()
                job = await db.get(Job, job_id, populate_existing=True)
                if job is not None:
                    await fail_job(db=db, job=job, error=categorized.as_job_error())
                return True

    async def _resolve_prompt_dependency(
            self,
            *,
            db: AsyncSession,
            job: Job
    ) -> str:
        """
        ready - промпт подставлен, отправляем в этом же проходе;
        failed - задача провалена; waiting - вернули в queued.
        """
        prompt_job = await db.get(PromptGenerationJob, job.prompt_job_id)

        failure = None
        if prompt_job is None:
            failure = 'prompt job not found'
        elif prompt_job.status == 'failed':
            failure = prompt_job.error or 'unknown error'
        elif prompt_job.status == 'completed' and not (prompt_job.generated_prompt or '').strip():
            failure = 'empty prompt returned'

        if failure is not None:
            await fail_job(
                db=db,
                job=job,
                error=format_job_error(
                    ErrorCategory.PROMPT_GENERATION_FAILED,
                    f'Prompt generation failed: {failure}'
                ),
                prompt_status='failed'
            )
            return 'failed'

        if prompt_job.status == 'completed':
            payload = dict(job.request_payload or {})
            payload['prompt'] = prompt_job.generated_prompt
            job.request_payload = payload
            job.prompt_status = 'completed'
            await db.commit()
            return 'ready'

        # промпт ещё генерируется
        await requeue_job(db=db, job=job)
        logger.info(f'[Dispatch] job {job.id} waiting for prompt {job.prompt_job_id}, requeued')
        return 'waiting'

    async def _submit_job(
            self,
            *,
            db: AsyncSession,
            job: Job
    ) -> bool:
        if job.prompt_job_id and job.prompt_status == 'generating':
            state = await self._resolve_prompt_dependency(db=db, job=job)
            if state != 'ready':
                return state == 'failed'

        payload = job.request_payload or {}
        prompt = payload.get('prompt')
        invalid = validate_prompt(prompt)
        if invalid:
            raise JobProcessingError(invalid.category, invalid.message)

        ttl = settings.PROVIDER_SIGN_TTL_S
        ref_paths = [p for p in (payload.get('ref_paths') or []) if p]
        target_path = payload.get('target_path')

        signed = await asyncio.gather(
            *(sign_path(p, ttl) for p in ref_paths),
            sign_path(target_path, ttl)
        )
        ref_urls = [u for u in signed[:-1] if u]
        target_url = signed[-1]

        if len(ref_urls) < len(ref_paths):
            logger.warning(
                f'[Dispatch] job {job.id}: dropped {len(ref_paths) - len(ref_urls)} unsignable reference path(s)'
            )
        if not target_url:
            raise JobProcessingError(
                ErrorCategory.IMAGE_MISSING,
                f'Target image not found or cannot be accessed: {target_path}'
            )

        request = build_provider_request(
            model_id=job.generation_model or payload.get('generation_model'),
            prompt=prompt,
            ref_urls=ref_urls,
            target_url=target_url,
            width=payload.get('width'),
            height=payload.get('height')
        )
        logger.info(
            f'[Dispatch] job {job.id}: {"face-swap" if ref_urls else "target-only"} '
            f'refs={len(ref_urls)} endpoint={request.endpoint}'
        )

        response = await self.provider.submit(request)

        provider_id = extract_provider_id(response)
        if not provider_id:
            raise JobProcessingError(
                ErrorCategory.PROVIDER_ID_MISSING,
                'No provider request ID returned from provider'
            )

        await set_job_submitted(db=db, job=job, provider_request_id=provider_id)
        logger.info(f'[WaveSpeed] job {job.id} submitted, provider id {provider_id}')
        return True
