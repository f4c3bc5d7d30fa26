import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy import update

from app.core.config import settings
from app.core.errors import PromptGenerationError
from app.db.base import utcnow
from app.models.job import Job
from app.models.prompt_job import PromptGenerationJob
from app.models.variant_row import VariantRow
from app.services.prompt_queue import PromptQueue, compute_backoff_ms, is_network_failure


GENERATED = 'Replace the face and hair of the person in the last image with the reference person'


@pytest.fixture
def llm():
    client = Mock()
    client.generate_prompt = AsyncMock(return_value=GENERATED)
    client.enhance_prompt = AsyncMock(return_value='A brighter, warmer version of the same portrait')
    return client


@pytest.fixture
async def queue(session_factory, llm):
    queue = PromptQueue(session_factory=session_factory, llm=llm, trigger=Mock(), batch_size=3, autostart=False)
    yield queue
    await queue.stop_processing()


async def _dependent_job(queue, seed, variant, **kwargs):
    prompt_job_id = await queue.enqueue_generation(
        user_id='u1',
        ref_urls=['https://cdn.test/ref.jpg'],
        target_url='https://cdn.test/target.jpg',
        variant_row_id=variant.id,
        **kwargs
    )
    job = await seed.job(
        variant=variant,
        prompt_job_id=prompt_job_id,
        prompt_status='generating',
        payload={'target_path': 'uploads/u1/target.jpg', 'prompt': ''}
    )
    return prompt_job_id, job


@pytest.mark.parametrize('retry_count, network, expected', [
    (0, False, 1000),
    (2, False, 4000),
    (1, True, 1000),
    (10, False, 30000),
])
def test_compute_backoff(retry_count, network, expected):
    assert compute_backoff_ms(retry_count, network=network) == expected


def test_network_failure_detection():
    assert is_network_failure(asyncio.TimeoutError())
    assert is_network_failure(RuntimeError('read ECONNRESET'))
    assert not is_network_failure(PromptGenerationError('Empty prompt generated by grok-4'))


async def test_success_updates_dependent_jobs(queue, seed, llm):
    variant = await seed.variant_row(prompt=None)
    prompt_job_id, job = await _dependent_job(queue, seed, variant, swap_mode='face')

    assert await queue.process_once() == 1

    llm.generate_prompt.assert_awaited_once_with(
        ref_urls=['https://cdn.test/ref.jpg'],
        target_url='https://cdn.test/target.jpg',
        swap_mode='face'
    )
    prompt_job = await seed.get(PromptGenerationJob, prompt_job_id)
    assert prompt_job.status == 'completed'
    assert prompt_job.generated_prompt == GENERATED
    assert prompt_job.completed_at is not None

    stored = await seed.get(Job, job.id)
    assert stored.status == 'queued'
    assert stored.prompt_status == 'completed'
    assert stored.request_payload['prompt'] == GENERATED
    queue.trigger.request.assert_called_once_with('prompt-completed')


async def test_failure_is_retried_with_backoff(queue, seed, llm):
    llm.generate_prompt.side_effect = PromptGenerationError('Prompt generation failed: grok-4: boom')
    variant = await seed.variant_row(prompt=None)
    prompt_job_id, job = await _dependent_job(queue, seed, variant)

    await queue.process_once()

    prompt_job = await seed.get(PromptGenerationJob, prompt_job_id)
    assert prompt_job.status == 'queued'
    assert prompt_job.retry_count == 1
    assert prompt_job.next_attempt_at > utcnow()
    assert 'boom' in prompt_job.error
    assert (await seed.get(Job, job.id)).status == 'queued'

    # backoff ещё не истёк
    assert await queue.process_once() == 0


async def test_exhausted_retries_fail_dependents(queue, seed, session_factory, llm):
    llm.generate_prompt.side_effect = PromptGenerationError('Prompt generation failed: all models failed')
    variant = await seed.variant_row(prompt=None)
    prompt_job_id, job = await _dependent_job(queue, seed, variant)
    async with session_factory() as db:
        await db.execute(
            update(PromptGenerationJob).where(PromptGenerationJob.id == prompt_job_id).values(max_retries=0)
        )
        await db.commit()

    await queue.process_once()

    prompt_job = await seed.get(PromptGenerationJob, prompt_job_id)
    assert prompt_job.status == 'failed'

    stored = await seed.get(Job, job.id)
    assert stored.status == 'failed'
    assert stored.prompt_status == 'failed'
    assert stored.error.startswith('prompt_generation_failed: Prompt generation failed:')
    assert (await seed.get(VariantRow, variant.id)).status == 'error'
    queue.trigger.request.assert_not_called()


async def test_llm_timeout_is_a_failure(queue, seed, session_factory, llm, monkeypatch):
    async def slow(**kwargs):
        await asyncio.sleep(1)
        return GENERATED

    monkeypatch.setattr(settings, 'PROMPT_LLM_TIMEOUT_S', 0.05)
    llm.generate_prompt.side_effect = slow
    prompt_job = await seed.prompt_job(max_retries=0)

    await queue.process_once()

    stored = await seed.get(PromptGenerationJob, prompt_job.id)
    assert stored.status == 'failed'
    assert stored.error == 'timeout: prompt generation timed out'


async def test_enhancement(queue, seed, llm):
    prompt_job_id = await queue.enqueue_enhancement(
        user_id='u1',
        existing_prompt='Swap the face onto the target',
        user_instructions='make the lighting warmer',
        target_url='https://cdn.test/target.jpg'
    )

    await queue.process_once()

    llm.enhance_prompt.assert_awaited_once()
    stored = await seed.get(PromptGenerationJob, prompt_job_id)
    assert stored.operation == 'enhance'
    assert stored.status == 'completed'


async def test_batches_drain_until_short(session_factory, seed, llm):
    queue = PromptQueue(session_factory=session_factory, llm=llm, batch_size=2, autostart=False)
    for _ in range(5):
        await seed.prompt_job()

    assert await queue.process_once() == 5
    assert llm.generate_prompt.await_count == 5


async def test_cancel(queue, seed):
    variant = await seed.variant_row(prompt=None)
    prompt_job_id, job = await _dependent_job(queue, seed, variant)

    assert await queue.cancel_prompt_job(prompt_job_id) is True
    assert await queue.cancel_prompt_job(prompt_job_id) is False

    prompt_job = await seed.get(PromptGenerationJob, prompt_job_id)
    assert prompt_job.status == 'failed'
    assert prompt_job.error == 'Cancelled by user'
    assert (await seed.get(Job, job.id)).status == 'failed'


async def test_recovery(queue, seed):
    now = utcnow()
    stuck = await seed.prompt_job(status='processing', started_at=now - timedelta(minutes=31))
    exhausted = await seed.prompt_job(
        status='processing',
        started_at=now - timedelta(minutes=31),
        retry_count=3,
        max_retries=3
    )
    expired = await seed.prompt_job(created_at=now - timedelta(hours=25))
    old = await seed.prompt_job(created_at=now - timedelta(hours=2), priority=9)

    await queue._recover_stuck()

    stuck = await seed.get(PromptGenerationJob, stuck.id)
    assert stuck.status == 'queued'
    assert stuck.retry_count == 1

    assert (await seed.get(PromptGenerationJob, exhausted.id)).status == 'failed'

    expired = await seed.get(PromptGenerationJob, expired.id)
    assert expired.status == 'failed'
    assert expired.error == 'timeout: stuck in queue for 24+ hours'

    assert (await seed.get(PromptGenerationJob, old.id)).priority == 10


async def test_queue_stats(queue, seed):
    now = utcnow()
    await seed.prompt_job()
    await seed.prompt_job()
    await seed.prompt_job(
        status='completed',
        created_at=now - timedelta(seconds=30),
        started_at=now - timedelta(seconds=20),
        completed_at=now
    )
    await seed.prompt_job(status='failed')

    stats = await queue.get_queue_stats()

    assert stats['total_queued'] == 2
    assert stats['total_processing'] == 0
    assert stats['total_completed'] == 1
    assert stats['total_failed'] == 1
    assert stats['average_wait_time'] == pytest.approx(10.0)
    assert stats['estimated_wait_time'] == 40


async def test_queue_stats_when_empty(queue):
    stats = await queue.get_queue_stats()
    assert stats['estimated_wait_time'] == 0
    assert stats['average_wait_time'] == 0
