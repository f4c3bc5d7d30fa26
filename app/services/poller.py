import os
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.attributes import set_committed_value

from app.db.base import utcnow
from app.models.generated_image import GeneratedImage
from app.models.job import Job, JOB_TERMINAL_STATUSES
from app.models.variant_row_image import VariantRowImage
from app.schemas.job import JobPollResponse
from app.services.error_taxonomy import categorize_provider_error
from app.services.provider_client import WaveSpeedClient, extract_output_urls
from app.services.storage import fetch_and_save_to_outputs
from app.services.store import (
    begin_finalize,
    complete_finalize,
    count_queue_position,
    fail_job,
    mark_job_running,
    recompute_parent_status,
    revert_finalize,
)
from app.services.thumbnails import create_thumbnail


PROVIDER_PENDING_STATUSES = ('', 'created', 'processing')
PROVIDER_SUCCESS_STATUSES = ('succeeded', 'completed')

# длина общего префикса имени файла, при которой соседний результат считается дублем
DUPLICATE_PREFIX_LEN = 12

QUEUED_RETRIGGER_AFTER_S = 10
QUEUED_RETRIGGER_EVERY_S = 20
SUBMITTED_NO_ID_TIMEOUT_S = 30
NO_ID_TIMEOUT_S = 60
QUEUED_TIMEOUT_S = 120
SAVING_TIMEOUT_S = 600


def _filename_stem(url: Optional[str]) -> str:
    if not url:
        return ''
    return os.path.splitext(os.path.basename(urlsplit(url).path))[0]


def is_probable_duplicate(new_url: str, existing_url: Optional[str]) -> bool:
    """
    Эвристика: одинаковый префикс имени файла у удалённых URL.
    Может ошибаться на разных результатах с похожими именами.
    """
    new_stem = _filename_stem(new_url)
    old_stem = _filename_stem(existing_url)
    if len(new_stem) < DUPLICATE_PREFIX_LEN or len(old_stem) < DUPLICATE_PREFIX_LEN:
        return False
    return new_stem[:DUPLICATE_PREFIX_LEN] == old_stem[:DUPLICATE_PREFIX_LEN]


def _step_for(job: Job) -> str:
    if job.status == 'queued':
        return 'waiting_for_prompt' if job.prompt_status == 'generating' else 'queued'
    if job.status == 'submitted':
        return 'submitting' if not job.provider_request_id else 'submitted'
    if job.status == 'running':
        return 'generating'
    if job.status == 'saving':
        return 'saving'
    return 'done'


class JobPoller:
    """
    Продвигает одну задачу по жизненному циклу провайдера за вызов.
    Используется и эндпоинтом /jobs/{id}/poll, и JobPollerPool.
    """

    def __init__(
            self,
            *,
            session_factory: async_sessionmaker,
            provider: Optional[WaveSpeedClient] = None,
            trigger=None
    ):
        self.session_factory = session_factory
        self.provider = provider or WaveSpeedClient()
        self.trigger = trigger

    def _retrigger(self, reason: str):
        if self.trigger is None:
            return
        try:
            self.trigger.request(reason)
        except Exception as e:
            logger.warning(f'[Poll] dispatch re-trigger failed: {e}')

    async def _response(self, *, db: AsyncSession, job: Job) -> JobPollResponse:
        position = None
        if job.status in ('queued', 'submitted', 'running'):
            position = await count_queue_position(db=db, job=job)
        return JobPollResponse(status=job.status, queue_position=position, step=_step_for(job), error=job.error)

    async def _fail(self, *, db: AsyncSession, job: Job, error: str) -> JobPollResponse:
        logger.warning(f'[Poll] job {job.id} failed: {error}')
        await fail_job(db=db, job=job, error=error)
        self._retrigger('poll-failed')
        return JobPollResponse(status='failed', step='done', error=job.error)

    async def poll(self, job_id: str) -> Optional[JobPollResponse]:
        async with self.session_factory() as db:
            job = await db.get(Job, job_id)
            if job is None:
                return None

            if job.status in JOB_TERMINAL_STATUSES:
                return JobPollResponse(status=job.status, step='done', error=job.error)

            now = utcnow()
            if job.status == 'saving' and (now - job.updated_at).total_seconds() > SAVING_TIMEOUT_S:
                return await self._fail(db=db, job=job, error='timeout: stuck in saving')

            if not job.provider_request_id:
                return await self._poll_without_provider_id(db=db, job=job)

            try:
                return await self._poll_provider(db=db, job=job)
            except Exception as e:
                logger.warning(f'[Poll] job {job_id}: transient error, reporting running: {e}')
                return JobPollResponse(status='running', step='generating')

    async def _poll_without_provider_id(self, *, db: AsyncSession, job: Job) -> JobPollResponse:
        age = (utcnow() - job.created_at).total_seconds()

        if job.status == 'queued' and age > QUEUED_RETRIGGER_AFTER_S and age % QUEUED_RETRIGGER_EVERY_S < 2:
            self._retrigger('poll-queued')

        if job.status == 'submitted' and age > SUBMITTED_NO_ID_TIMEOUT_S:
            return await self._fail(db=db, job=job, error='timeout: submitted without provider request id')

        if job.status in ('queued', 'saving') and age > NO_ID_TIMEOUT_S:
            return await self._fail(db=db, job=job, error='timeout: no provider request id')

        if job.status == 'queued' and age > QUEUED_TIMEOUT_S:
            return await self._fail(db=db, job=job, error='timeout: stuck in queue too long')

        return await self._response(db=db, job=job)

    async def _poll_provider(self, *, db: AsyncSession, job: Job) -> JobPollResponse:
        # без ретраев: повторный GET может задвоить финализацию
        data = await self.provider.get_prediction_result(job.provider_request_id)
        status = str((data or {}).get('status') or '').lower()

        if status in PROVIDER_PENDING_STATUSES:
            if job.status == 'submitted':
                await mark_job_running(db=db, job_id=job.id)
                set_committed_value(job, 'status', 'running')
            response = await self._response(db=db, job=job)
            response.status = 'running'
            return response

        if status in PROVIDER_SUCCESS_STATUSES:
            return await self._finalize(db=db, job=job, data=data)

        categorized = categorize_provider_error({'data': data})
        return await self._fail(db=db, job=job, error=categorized.as_job_error())

    async def _finalize(self, *, db: AsyncSession, job: Job, data: Dict[str, Any]) -> JobPollResponse:
        job_id = job.id
        if job.status == 'succeeded':
            return JobPollResponse(status='succeeded', step='done')

        if not await begin_finalize(db=db, job_id=job.id):
            logger.info(f'[Poll] job {job.id} already being finalized')
            return JobPollResponse(status='succeeded', step='done')

        try:
            # провайдер отдаёт не больше одного изображения на запрос
            urls = extract_output_urls(data)[:1]
            if not urls:
                logger.error(f'[Poll] job {job.id}: provider succeeded without outputs')
                return await self._fail(db=db, job=job, error='unknown: provider returned no outputs')

            if await self._output_exists(db=db, job=job):
                logger.info(f'[Poll] job {job.id}: output already stored, skipping insert')
            else:
                for url in urls:
                    if not job.variant_row_id and await self._sibling_duplicate(db=db, job=job, url=url):
                        logger.info(f'[Poll] job {job.id}: sibling duplicate detected, skipping')
                        continue
                    await self._store_output(db=db, job=job, url=url)

            await complete_finalize(db=db, job_id=job.id)
            set_committed_value(job, 'status', 'succeeded')
            await recompute_parent_status(db=db, row_id=job.row_id, variant_row_id=job.variant_row_id)
            self._retrigger('poll-succeeded')
            logger.info(f'[Poll] job {job.id} succeeded')
            return JobPollResponse(status='succeeded', step='done')

        except Exception as e:
            logger.exception(f'[Poll] job {job_id}: finalization failed: {e}')
            await db.rollback()
            await revert_finalize(db=db, job_id=job_id)
            return JobPollResponse(status='running', step='generating')

    async def _output_exists(self, *, db: AsyncSession, job: Job) -> bool:
        model = VariantRowImage if job.variant_row_id else GeneratedImage
        result = await db.execute(select(model.id).where(model.job_id == job.id).limit(1))
        return result.first() is not None

    async def _sibling_duplicate(self, *, db: AsyncSession, job: Job, url: str) -> bool:
        if not job.row_id:
            return False
        result = await db.execute(
            select(GeneratedImage.source_url).where(
                GeneratedImage.row_id == job.row_id,
                GeneratedImage.source_url.is_not(None)
            )
        )
        return any(is_probable_duplicate(url, existing) for existing in result.scalars().all())

    async def _store_output(self, *, db: AsyncSession, job: Job, url: str):
        output_path, content = await fetch_and_save_to_outputs(url, job.user_id)
        thumbnail_path = await create_thumbnail(output_path, content)

        if job.variant_row_id:
            image = VariantRowImage(
                job_id=job.id,
                variant_row_id=job.variant_row_id,
                output_path=output_path,
                thumbnail_path=thumbnail_path,
                source_url=url,
                is_generated=True
            )
            if image.is_generated is not True:
                image.is_generated = True
        else:
            image = GeneratedImage(
                job_id=job.id,
                row_id=job.row_id,
                model_id=job.model_id,
                team_id=job.team_id,
                user_id=job.user_id,
                output_path=output_path,
                thumbnail_path=thumbnail_path,
                source_url=url
            )

        db.add(image)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            await db.refresh(job)
            logger.info(f'[Poll] job {job.id}: duplicate output prevented by unique job_id')
            return

        if isinstance(image, VariantRowImage):
            await db.refresh(image)
            if image.is_generated is not True:
                logger.warning(f'[Poll] job {job.id}: is_generated lost on insert, fixing')
                image.is_generated = True
                await db.commit()
