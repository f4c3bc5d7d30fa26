from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import (
    get_db,
    get_current_user_id,
    get_poller,
    get_poller_pool,
    get_prompt_queue,
    get_trigger,
)
from app.core.config import settings
from app.models.job import Job
from app.schemas.job import (
    ActiveJobResponse,
    CleanupResponse,
    JobCreateRequest,
    JobCreateResponse,
    JobPollResponse,
)
from app.services.job_service import create_job, list_active_jobs
from app.services.store import cleanup_stuck_jobs


router = APIRouter(prefix='/jobs', tags=['jobs'])


@router.post('', response_model=JobCreateResponse)
async def create(
    payload: JobCreateRequest,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    prompt_queue=Depends(get_prompt_queue),
    trigger=Depends(get_trigger),
    poller_pool=Depends(get_poller_pool)
):
    job = await create_job(
        db=db,
        user_id=user_id,
        row_id=payload.row_id,
        variant_row_id=payload.variant_row_id,
        use_ai_prompt=payload.use_ai_prompt,
        swap_mode=payload.swap_mode,
        prompt_queue=prompt_queue
    )

    trigger.request('job-created')
    if settings.POLLER_ENABLED:
        poller_pool.track(job.id)

    return JobCreateResponse(job_id=job.id, status=job.status, prompt_job_id=job.prompt_job_id)


@router.get('/active', response_model=list[ActiveJobResponse])
async def active_jobs(
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id)
):
    return await list_active_jobs(db=db, user_id=user_id)


@router.get('/{job_id}/poll', response_model=JobPollResponse)
async def poll(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    poller=Depends(get_poller)
):
    job = await db.get(Job, job_id)
    if not job:
        raise HTTPException(status_code=404, detail='Job not found')
    if job.user_id != user_id:
        raise HTTPException(status_code=403, detail='Forbidden')

    result = await poller.poll(job_id)
    if result is None:
        raise HTTPException(status_code=404, detail='Job not found')
    return result


@router.post('/cleanup', response_model=CleanupResponse)
async def cleanup(
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id)
):
    counts = await cleanup_stuck_jobs(db=db)
    return CleanupResponse(ok=True, counts=counts)
