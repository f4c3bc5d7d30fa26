from typing import Optional, Tuple

from fastapi import HTTPException
from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.job import Job, JOB_NON_TERMINAL_STATUSES
from app.models.model import Model
from app.models.model_row import ModelRow
from app.models.variant_row import VariantRow
from app.services.error_taxonomy import validate_prompt


async def _payload_for_row(
        *,
        db: AsyncSession,
        row_id: str,
        user_id: str
) -> Tuple[dict, dict]:
    row = await db.get(ModelRow, row_id)
    if not row:
        raise HTTPException(status_code=404, detail='Row not found')

    model = await db.get(Model, row.model_id)
    if not model:
        raise HTTPException(status_code=404, detail='Model not found')
    if model.owner_id != user_id:
        raise HTTPException(status_code=403, detail='Forbidden')

    # референсы строки, иначе дефолтный хедшот модели
    ref_paths = list(row.ref_image_paths or [])
    if not ref_paths and model.default_ref_headshot_path:
        ref_paths = [model.default_ref_headshot_path]

    generation_model = row.generation_model or model.generation_model or settings.DEFAULT_GENERATION_MODEL
    payload = {
        'ref_paths': ref_paths,
        'target_path': row.target_image_path,
        'prompt': (row.prompt_override or model.default_prompt or '').strip(),
        'width': model.width,
        'height': model.height,
        'generation_model': generation_model,
    }
    fields = {
        'row_id': row.id,
        'model_id': model.id,
        'team_id': model.team_id,
        'generation_model': generation_model,
    }
    return payload, fields


async def _payload_for_variant(
        *,
        db: AsyncSession,
        variant_row_id: str,
        user_id: str
) -> Tuple[dict, dict]:
    variant = await db.get(VariantRow, variant_row_id)
    if not variant:
        raise HTTPException(status_code=404, detail='Variant row not found')
    if variant.user_id != user_id:
        raise HTTPException(status_code=403, detail='Forbidden')

    generation_model = variant.generation_model or settings.DEFAULT_GENERATION_MODEL
    payload = {
        'ref_paths': list(variant.ref_image_paths or []),
        'target_path': variant.target_image_path,
        'prompt': (variant.prompt or '').strip(),
        'width': variant.width,
        'height': variant.height,
        'generation_model': generation_model,
        'variant_row_id': variant.id,
    }
    fields = {
        'variant_row_id': variant.id,
        'team_id': variant.team_id,
        'generation_model': generation_model,
    }
    return payload, fields


async def create_job(
        *,
        db: AsyncSession,
        user_id: str,
        row_id: Optional[str] = None,
        variant_row_id: Optional[str] = None,
        use_ai_prompt: bool = False,
        swap_mode: str = 'face-hair',
        prompt_queue=None
) -> Job:
    """
    Создаёт одну queued-задачу для строки модели или строки вариантов.
    С use_ai_prompt сначала ставит задачу генерации промпта и связывает их.
    """
    if bool(row_id) == bool(variant_row_id):
        raise HTTPException(status_code=400, detail='Exactly one of row_id or variant_row_id is required')

    if row_id:
        payload, fields = await _payload_for_row(db=db, row_id=row_id, user_id=user_id)
    else:
        payload, fields = await _payload_for_variant(db=db, variant_row_id=variant_row_id, user_id=user_id)

    if not payload['target_path']:
        raise HTTPException(status_code=400, detail='Missing target image')

    job = Job(user_id=user_id, request_payload=payload, status='queued', **fields)

    if use_ai_prompt:
        if prompt_queue is None:
            raise HTTPException(status_code=503, detail='Prompt queue is not available')
        job.prompt_job_id = await prompt_queue.enqueue_generation(
            user_id=user_id,
            ref_urls=payload['ref_paths'],
            target_url=payload['target_path'],
            swap_mode=swap_mode,
            model_id=fields.get('model_id'),
            row_id=fields.get('row_id'),
            variant_row_id=fields.get('variant_row_id'),
            db=db
        )
        job.prompt_status = 'generating'
    else:
        invalid = validate_prompt(payload['prompt'])
        if invalid:
            raise HTTPException(status_code=400, detail=invalid.message)

    db.add(job)

    parent = await db.get(ModelRow, row_id) if row_id else await db.get(VariantRow, variant_row_id)
    parent.status = 'queued'

    await db.commit()
    await db.refresh(job)

    logger.info(f'[Dispatch] job {job.id} created for {"row " + row_id if row_id else "variant " + variant_row_id}')
    return job


async def list_active_jobs(
        *,
        db: AsyncSession,
        user_id: str
) -> list[Job]:
    result = await db.execute(
        select(Job)
        .where(
            Job.user_id == user_id,
            Job.status.in_(JOB_NON_TERMINAL_STATUSES)
        )
        .order_by(Job.created_at.asc())
    )
    return list(result.scalars().all())
