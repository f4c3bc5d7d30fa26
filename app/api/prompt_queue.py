from fastapi import APIRouter, Depends, HTTPException

from app.api.deps import get_current_user_id, get_prompt_queue
from app.schemas.prompt_job import (
    PromptEnhanceRequest,
    PromptJobResponse,
    PromptQueueRequest,
    PromptQueueResponse,
    PromptQueueStats,
)
from app.services.prompt_queue import PromptQueue


router = APIRouter(prefix='/prompt', tags=['prompt'])


@router.post('/queue', response_model=PromptQueueResponse)
async def enqueue_generation(
    payload: PromptQueueRequest,
    user_id: str = Depends(get_current_user_id),
    queue: PromptQueue = Depends(get_prompt_queue)
):
    job_id = await queue.enqueue_generation(
        user_id=user_id,
        ref_urls=payload.ref_urls,
        target_url=payload.target_url,
        swap_mode=payload.swap_mode,
        model_id=payload.model_id,
        row_id=payload.row_id,
        variant_row_id=payload.variant_row_id,
        priority=payload.priority
    )
    return PromptQueueResponse(prompt_job_id=job_id)


@router.post('/enhance/queue', response_model=PromptQueueResponse)
async def enqueue_enhancement(
    payload: PromptEnhanceRequest,
    user_id: str = Depends(get_current_user_id),
    queue: PromptQueue = Depends(get_prompt_queue)
):
    job_id = await queue.enqueue_enhancement(
        user_id=user_id,
        existing_prompt=payload.existing_prompt,
        user_instructions=payload.user_instructions,
        ref_urls=payload.ref_urls,
        target_url=payload.target_url,
        model_id=payload.model_id,
        row_id=payload.row_id,
        variant_row_id=payload.variant_row_id,
        priority=payload.priority
    )
    return PromptQueueResponse(prompt_job_id=job_id)


@router.get('/queue/stats', response_model=PromptQueueStats)
async def queue_stats(
    user_id: str = Depends(get_current_user_id),
    queue: PromptQueue = Depends(get_prompt_queue)
):
    return await queue.get_queue_stats()


async def _get_owned(queue: PromptQueue, prompt_job_id: str, user_id: str):
    job = await queue.get_prompt_status(prompt_job_id)
    if not job:
        raise HTTPException(status_code=404, detail='Prompt job not found')
    if job.user_id != user_id:
        raise HTTPException(status_code=403, detail='Forbidden')
    return job


@router.get('/queue/{prompt_job_id}', response_model=PromptJobResponse)
async def prompt_status(
    prompt_job_id: str,
    user_id: str = Depends(get_current_user_id),
    queue: PromptQueue = Depends(get_prompt_queue)
):
    return await _get_owned(queue, prompt_job_id, user_id)


@router.delete('/queue/{prompt_job_id}')
async def cancel(
    prompt_job_id: str,
    user_id: str = Depends(get_current_user_id),
    queue: PromptQueue = Depends(get_prompt_queue)
):
    await _get_owned(queue, prompt_job_id, user_id)
    if not await queue.cancel_prompt_job(prompt_job_id):
        raise HTTPException(status_code=409, detail='Prompt job already finished')
    return {'ok': True}
