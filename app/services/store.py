"""
Атомарные процедуры хранилища.

Каждая функция выполняется в одной транзакции и коммитит сама. Только две из
них дают гарантии конкурентности: claim_jobs_with_capacity (лимит слотов
провайдера) и begin_finalize (однократная финализация). Остальное best-effort.
"""
from datetime import timedelta
from typing import Iterable, List, Optional, Tuple

from loguru import logger
from sqlalchemy import select, update, func, or_, and_, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from app.core.errors import ClaimError
from app.db.base import utcnow
from app.models.job import (
    Job,
    JOB_ACTIVE_STATUSES,
    JOB_FINALIZABLE_STATUSES,
    JOB_NON_TERMINAL_STATUSES,
)
from app.models.model_row import ModelRow
from app.models.prompt_job import PromptGenerationJob
from app.models.variant_row import VariantRow


# ключ pg_advisory_xact_lock для сериализации claim
CLAIM_LOCK_KEY = 727001


def _is_postgres(db: AsyncSession) -> bool:
    return db.bind.dialect.name == 'postgresql'


# ---------------------------------------------------------------------------
# capacity claim
# ---------------------------------------------------------------------------

async def count_active_jobs(
        *,
        db: AsyncSession,
        active_window_ms: int
) -> int:
    window_start = utcnow() - timedelta(milliseconds=active_window_ms)
    result = await db.execute(
        select(func.count(Job.id)).where(
            Job.status.in_(JOB_ACTIVE_STATUSES),
            Job.created_at >= window_start
        )
    )
    return result.scalar_one()


async def _acquire_claim_lock(db: AsyncSession):
    """
    Сериализует claim между процессами. В PostgreSQL advisory lock,
    в остальных БД транзакция начинается с записи и держит write lock до commit.
    """
    if _is_postgres(db):
        await db.execute(text('SELECT pg_advisory_xact_lock(:key)'), {'key': CLAIM_LOCK_KEY})
        return
    await db.execute(
        update(Job)
        .where(Job.status == '__claim_lock__')
        .values(status=Job.status)
        .execution_options(synchronize_session=False)
    )


async def claim_jobs_with_capacity(
        *,
        db: AsyncSession,
        max_concurrency: int,
        active_window_ms: int
) -> List[Job]:
    """
    Считает активные задачи в окне и забирает не больше свободных слотов
    из queued, переводя их в submitted в той же транзакции.
    Переход queued -> submitted идёт через CAS: возвращаются только строки,
    которые этот вызов действительно перевёл.
    """
    try:
        await _acquire_claim_lock(db)

        active = await count_active_jobs(db=db, active_window_ms=active_window_ms)
        capacity = max_concurrency - active
        if capacity <= 0:
            await db.commit()
            return []

        stmt = (
            select(Job.id)
            .where(Job.status == 'queued')
            .order_by(Job.created_at.asc())
            .limit(capacity)
        )
        if _is_postgres(db):
            stmt = stmt.with_for_update(skip_locked=True)

        result = await db.execute(stmt)
        candidate_ids = list(result.scalars().all())

        now = utcnow()
        claimed_ids = []
        for job_id in candidate_ids:
            changed = await db.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == 'queued')
                .values(status='submitted', updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if changed.rowcount == 1:
                claimed_ids.append(job_id)

        jobs = []
        if claimed_ids:
            result = await db.execute(
                select(Job)
                .where(Job.id.in_(claimed_ids), Job.status == 'submitted')
                .order_by(Job.created_at.asc())
                .execution_options(populate_existing=True)
            )
            jobs = list(result.scalars().all())

        await db.commit()
        return jobs

    except SQLAlchemyError as e:
        await db.rollback()
        raise ClaimError(str(e)) from e


async def requeue_job(
        *,
        db: AsyncSession,
        job: Job
):
    job.status = 'queued'
    job.updated_at = utcnow()
    await db.commit()


async def set_job_submitted(
        *,
        db: AsyncSession,
        job: Job,
        provider_request_id: str
):
    job.provider_request_id = provider_request_id
    job.status = 'submitted'
    job.error = None
    job.updated_at = utcnow()
    await db.commit()


async def mark_job_running(
        *,
        db: AsyncSession,
        job_id: str
) -> bool:
    result = await db.execute(
        update(Job)
        .where(Job.id == job_id, Job.status == 'submitted')
        .values(status='running', updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# finalization
# ---------------------------------------------------------------------------

async def begin_finalize(
        *,
        db: AsyncSession,
        job_id: str
) -> bool:
    """
    CAS running|submitted -> saving. False: кто-то уже финализирует.
    """
    result = await db.execute(
        update(Job)
        .where(Job.id == job_id, Job.status.in_(JOB_FINALIZABLE_STATUSES))
        .values(status='saving', updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def complete_finalize(
        *,
        db: AsyncSession,
        job_id: str
) -> bool:
    result = await db.execute(
        update(Job)
        .where(Job.id == job_id, Job.status == 'saving')
        .values(status='succeeded', error=None, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def revert_finalize(
        *,
        db: AsyncSession,
        job_id: str
) -> bool:
    """
    saving -> running, чтобы следующий poll повторил финализацию.
    """
    result = await db.execute(
        update(Job)
        .where(Job.id == job_id, Job.status == 'saving')
        .values(status='running', updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def fail_job(
        *,
        db: AsyncSession,
        job: Job,
        error: str,
        prompt_status: Optional[str] = None
) -> bool:
    """
    Переводит незавершённую задачу в failed и пересчитывает родителя.
    Терминальные задачи не трогает.
    """
    values = {'status': 'failed', 'error': error, 'updated_at': utcnow()}
    if prompt_status:
        values['prompt_status'] = prompt_status

    result = await db.execute(
        update(Job)
        .where(Job.id == job.id, Job.status.in_(JOB_NON_TERMINAL_STATUSES))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    changed = result.rowcount == 1
    if changed:
        for key, value in values.items():
            set_committed_value(job, key, value)
        await recompute_parent_status(db=db, row_id=job.row_id, variant_row_id=job.variant_row_id)
    return changed


# ---------------------------------------------------------------------------
# aggregates
# ---------------------------------------------------------------------------

def aggregate_status(statuses: Iterable[str], success_label: str) -> Optional[str]:
    statuses = list(statuses)
    if not statuses:
        return None
    if any(s in JOB_NON_TERMINAL_STATUSES for s in statuses):
        return 'partial'
    if any(s == 'succeeded' for s in statuses):
        return success_label
    return 'error'


async def update_model_row_status(
        *,
        db: AsyncSession,
        row_id: str
) -> Optional[str]:
    result = await db.execute(select(Job.status).where(Job.row_id == row_id))
    status = aggregate_status(result.scalars().all(), 'done')
    if status is None:
        return None

    await db.execute(
        update(ModelRow)
        .where(ModelRow.id == row_id)
        .values(status=status, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return status


async def update_variant_row_status(
        *,
        db: AsyncSession,
        variant_row_id: str
) -> Optional[str]:
    result = await db.execute(select(Job.status).where(Job.variant_row_id == variant_row_id))
    status = aggregate_status(result.scalars().all(), 'succeeded')
    if status is None:
        return None

    await db.execute(
        update(VariantRow)
        .where(VariantRow.id == variant_row_id)
        .values(status=status, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return status


async def recompute_parent_status(
        *,
        db: AsyncSession,
        row_id: Optional[str] = None,
        variant_row_id: Optional[str] = None
) -> Optional[str]:
    if variant_row_id:
        return await update_variant_row_status(db=db, variant_row_id=variant_row_id)
    if row_id:
        return await update_model_row_status(db=db, row_id=row_id)
    return None


async def mark_rows_running(
        *,
        db: AsyncSession,
        row_ids: Iterable[str]
):
    row_ids = sorted(set(r for r in row_ids if r))
    if not row_ids:
        return
    await db.execute(
        update(ModelRow)
        .where(ModelRow.id.in_(row_ids))
        .values(status='running', updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def mark_variant_rows_running(
        *,
        db: AsyncSession,
        variant_row_ids: Iterable[str]
):
    variant_row_ids = sorted(set(r for r in variant_row_ids if r))
    if not variant_row_ids:
        return
    await db.execute(
        update(VariantRow)
        .where(VariantRow.id.in_(variant_row_ids))
        .values(status='running', updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()


# ---------------------------------------------------------------------------
# queue position
# ---------------------------------------------------------------------------

async def count_queue_position(
        *,
        db: AsyncSession,
        job: Job
) -> int:
    """
    Сколько queued/submitted задач той же команды создано раньше этой.
    Без команды считаем по пользователю.
    """
    scope = Job.team_id == job.team_id if job.team_id else Job.user_id == job.user_id
    result = await db.execute(
        select(func.count(Job.id)).where(
            scope,
            Job.status.in_(('queued', 'submitted')),
            Job.created_at < job.created_at
        )
    )
    return result.scalar_one()


# ---------------------------------------------------------------------------
# cleanup
# ---------------------------------------------------------------------------

async def _fail_matching(
        *,
        db: AsyncSession,
        condition,
        error: str
) -> List[Tuple[Optional[str], Optional[str]]]:
    """
    Валит все незавершённые задачи по условию.
    Возвращает (row_id, variant_row_id) затронутых задач.
    """
    result = await db.execute(
        select(Job.id, Job.row_id, Job.variant_row_id).where(
            Job.status.in_(JOB_NON_TERMINAL_STATUSES),
            condition
        )
    )
    rows = result.all()
    if not rows:
        return []

    await db.execute(
        update(Job)
        .where(Job.id.in_([r.id for r in rows]), Job.status.in_(JOB_NON_TERMINAL_STATUSES))
        .values(status='failed', error=error, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return [(r.row_id, r.variant_row_id) for r in rows]


async def _recompute_parents(
        *,
        db: AsyncSession,
        parents: Iterable[Tuple[Optional[str], Optional[str]]]
):
    for row_id, variant_row_id in sorted(set(parents), key=lambda p: (p[0] or '', p[1] or '')):
        await recompute_parent_status(db=db, row_id=row_id, variant_row_id=variant_row_id)


async def cleanup_quick_pass(
        *,
        db: AsyncSession,
        stale_max_ms: int
) -> int:
    """
    Самолечение перед каждым claim.
    """
    now = utcnow()
    parents = []

    parents += await _fail_matching(
        db=db,
        condition=and_(
            Job.status.in_(('running', 'saving')),
            Job.provider_request_id.is_(None),
            Job.created_at < now - timedelta(minutes=2)
        ),
        error='timeout: no provider request id'
    )
    parents += await _fail_matching(
        db=db,
        condition=Job.created_at < now - timedelta(milliseconds=stale_max_ms),
        error='stale: auto-cleanup'
    )
    parents += await _fail_matching(
        db=db,
        condition=and_(
            Job.status == 'queued',
            Job.created_at < now - timedelta(minutes=2)
        ),
        error='timeout: stuck in queue'
    )

    if parents:
        logger.info(f'[Cleanup] quick pass failed {len(parents)} job(s)')
        await _recompute_parents(db=db, parents=parents)
    return len(parents)


async def cleanup_stuck_jobs(
        *,
        db: AsyncSession
) -> dict:
    """
    Периодический цикл очистки. Возвращает количество по каждому правилу.
    """
    now = utcnow()
    rules = [
        (
            'queued',
            and_(
                Job.status == 'queued',
                Job.created_at < now - timedelta(minutes=2)
            ),
            'timeout: stuck in queue for 2+ minutes'
        ),
        (
            'submitted',
            and_(
                Job.status == 'submitted',
                Job.provider_request_id.is_(None),
                Job.created_at < now - timedelta(seconds=90)
            ),
            'timeout: submitted without provider request id'
        ),
        (
            'running',
            and_(
                Job.status == 'running',
                Job.provider_request_id.is_(None),
                Job.created_at < now - timedelta(minutes=5)
            ),
            'timeout: running without provider request id'
        ),
        (
            'saving',
            and_(Job.status == 'saving', Job.updated_at < now - timedelta(minutes=10)),
            'timeout: stuck in saving for 10+ minutes'
        ),
        (
            'stale',
            Job.created_at < now - timedelta(hours=1),
            'timeout: job exceeded 1 hour'
        ),
    ]

    counts = {}
    parents = []
    for name, condition, error in rules:
        affected = await _fail_matching(db=db, condition=condition, error=error)
        counts[name] = len(affected)
        parents += affected

    await _recompute_parents(db=db, parents=parents)
    counts['total'] = len(parents)

    if parents:
        logger.info(f'[Cleanup] cycle failed {len(parents)} job(s): {counts}')
    return counts


# ---------------------------------------------------------------------------
# prompt jobs
# ---------------------------------------------------------------------------

async def claim_prompt_jobs(
        *,
        db: AsyncSession,
        limit: int
) -> List[PromptGenerationJob]:
    """
    queued -> processing, по приоритету, затем старейшие.
    Задачи с next_attempt_at в будущем ждут своего backoff.
    """
    now = utcnow()
    stmt = (
        select(PromptGenerationJob)
        .where(
            PromptGenerationJob.status == 'queued',
            or_(
                PromptGenerationJob.next_attempt_at.is_(None),
                PromptGenerationJob.next_attempt_at <= now
            )
        )
        .order_by(PromptGenerationJob.priority.desc(), PromptGenerationJob.created_at.asc())
        .limit(limit)
    )
    if _is_postgres(db):
        stmt = stmt.with_for_update(skip_locked=True)

    result = await db.execute(stmt)
    jobs = list(result.scalars().all())

    for job in jobs:
        job.status = 'processing'
        job.started_at = now
        job.updated_at = now

    await db.commit()
    return jobs


async def update_prompt_job_status(
        *,
        db: AsyncSession,
        job_id: str,
        status: str,
        error: Optional[str] = None,
        generated_prompt: Optional[str] = None
):
    now = utcnow()
    values = {'status': status, 'updated_at': now}
    if status in ('completed', 'failed'):
        values['completed_at'] = now
    if error is not None:
        values['error'] = error
    if generated_prompt is not None:
        values['generated_prompt'] = generated_prompt

    await db.execute(
        update(PromptGenerationJob)
        .where(PromptGenerationJob.id == job_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def update_dependent_jobs(
        *,
        db: AsyncSession,
        prompt_job_id: str,
        generated_prompt: Optional[str] = None,
        error: Optional[str] = None
) -> int:
    """
    Переносит результат промпт-задачи во все ждущие её Job.
    """
    result = await db.execute(
        select(Job).where(
            Job.prompt_job_id == prompt_job_id,
            Job.status.in_(('queued', 'submitted'))
        )
    )
    jobs = list(result.scalars().all())
    if not jobs:
        return 0

    now = utcnow()
    for job in jobs:
        if generated_prompt is not None:
            payload = dict(job.request_payload or {})
            payload['prompt'] = generated_prompt
            job.request_payload = payload
            job.prompt_status = 'completed'
        else:
            job.status = 'failed'
            job.prompt_status = 'failed'
            job.error = f'prompt_generation_failed: Prompt generation failed: {error or "unknown error"}'
        job.updated_at = now

    await db.commit()

    if generated_prompt is None:
        await _recompute_parents(db=db, parents=[(j.row_id, j.variant_row_id) for j in jobs])

    logger.info(f'[PromptQueue] updated {len(jobs)} dependent job(s) of {prompt_job_id}')
    return len(jobs)
