import asyncio
import json
from unittest.mock import Mock

import httpx
import pytest

from app.core.errors import ClaimError
from app.models.job import Job
from app.models.variant_row import VariantRow
from app.services.dispatcher import Dispatcher, DispatchState
from app.services.dispatch_trigger import DispatchTrigger


@pytest.fixture
def images(put_file):
    put_file('uploads/u1/ref.jpg')
    put_file('uploads/u1/target.jpg')


def build_dispatcher(session_factory, provider, **kwargs):
    dispatcher = Dispatcher(
        session_factory=session_factory,
        provider=provider,
        state=DispatchState(cleanup_interval_s=60),
        max_concurrency=kwargs.pop('max_concurrency', 3),
        **kwargs
    )
    dispatcher.trigger = Mock()
    return dispatcher


def test_cleanup_slot_is_rate_limited():
    state = DispatchState(cleanup_interval_s=60)
    assert state.claim_cleanup_slot(now=100.0) is True
    assert state.claim_cleanup_slot(now=130.0) is False
    assert state.claim_cleanup_slot(now=161.0) is True


async def test_submit_retries_once_and_records_provider_id(session_factory, seed, provider_factory, images):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(json.loads(request.content))
        if len(calls) == 1:
            return httpx.Response(503, json={'message': 'busy'})
        return httpx.Response(200, json={'code': 200, 'data': {'id': 'abc', 'status': 'created'}})

    variant = await seed.variant_row(ref_paths=['uploads/u1/ref.jpg'])
    job = await seed.job(variant=variant)
    dispatcher = build_dispatcher(session_factory, provider_factory(handler))

    claimed = await dispatcher.dispatch(source='test')
    await dispatcher.wait_background()

    assert claimed == 1
    assert len(calls) == 2

    body = calls[-1]
    assert '/storage/signed/uploads/u1/ref.jpg' in body['images'][0]
    assert '/storage/signed/uploads/u1/target.jpg' in body['images'][1]
    assert body['size'] == '2048*2048'
    assert body['enable_sync_mode'] is False

    stored = await seed.get(Job, job.id)
    assert stored.status == 'submitted'
    assert stored.provider_request_id == 'abc'
    assert (await seed.get(VariantRow, variant.id)).status == 'running'
    dispatcher.trigger.request.assert_called_once_with('drain')


async def test_non_retriable_error_fails_job(session_factory, seed, provider_factory, images):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(401, json={'message': 'invalid api key'})

    variant = await seed.variant_row()
    job = await seed.job(variant=variant)
    dispatcher = build_dispatcher(session_factory, provider_factory(handler))

    await dispatcher.dispatch()
    await dispatcher.wait_background()

    assert len(calls) == 1
    stored = await seed.get(Job, job.id)
    assert stored.status == 'failed'
    assert stored.error == 'api_unauthorized: invalid api key'
    assert (await seed.get(VariantRow, variant.id)).status == 'error'


async def test_missing_provider_id_fails_job(session_factory, seed, provider_factory, images):
    variant = await seed.variant_row()
    job = await seed.job(variant=variant)
    provider = provider_factory(lambda request: httpx.Response(200, json={'code': 200, 'data': {}}))
    dispatcher = build_dispatcher(session_factory, provider)

    await dispatcher.dispatch()
    await dispatcher.wait_background()

    stored = await seed.get(Job, job.id)
    assert stored.status == 'failed'
    assert stored.error.startswith('provider_id_missing:')


async def test_missing_target_fails_without_calling_provider(session_factory, seed, provider_factory, put_file):
    put_file('uploads/u1/ref.jpg')
    handler = Mock(side_effect=AssertionError('provider must not be called'))

    variant = await seed.variant_row()
    job = await seed.job(variant=variant)
    dispatcher = build_dispatcher(session_factory, provider_factory(handler))

    await dispatcher.dispatch()
    await dispatcher.wait_background()

    handler.assert_not_called()
    stored = await seed.get(Job, job.id)
    assert stored.status == 'failed'
    assert stored.error.startswith('image_missing:')


async def test_short_prompt_fails_job(session_factory, seed, provider_factory, images):
    handler = Mock(side_effect=AssertionError('provider must not be called'))

    variant = await seed.variant_row()
    job = await seed.job(
        variant=variant,
        payload={'ref_paths': [], 'target_path': 'uploads/u1/target.jpg', 'prompt': 'hi'}
    )
    dispatcher = build_dispatcher(session_factory, provider_factory(handler))

    await dispatcher.dispatch()
    await dispatcher.wait_background()

    stored = await seed.get(Job, job.id)
    assert stored.error == 'prompt_empty: Prompt is too short (minimum 5 characters)'


async def test_completed_prompt_is_spliced_before_submit(session_factory, seed, provider_factory, images):
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={'data': {'id': 'p-1'}})

    generated = 'Place the face and hair from the first image onto the person in the last image'
    prompt_job = await seed.prompt_job(status='completed', generated_prompt=generated)
    variant = await seed.variant_row(prompt=None)
    job = await seed.job(
        variant=variant,
        prompt_job_id=prompt_job.id,
        prompt_status='generating',
        payload={'ref_paths': ['uploads/u1/ref.jpg'], 'target_path': 'uploads/u1/target.jpg', 'prompt': ''}
    )
    dispatcher = build_dispatcher(session_factory, provider_factory(handler))

    await dispatcher.dispatch()
    await dispatcher.wait_background()

    assert bodies[0]['prompt'] == generated
    stored = await seed.get(Job, job.id)
    assert stored.status == 'submitted'
    assert stored.prompt_status == 'completed'
    assert stored.request_payload['prompt'] == generated


async def test_failed_prompt_fails_dependent_job(session_factory, seed, provider_factory, images):
    handler = Mock(side_effect=AssertionError('provider must not be called'))

    prompt_job = await seed.prompt_job(status='failed', error='all models failed')
    variant = await seed.variant_row(prompt=None)
    job = await seed.job(variant=variant, prompt_job_id=prompt_job.id, prompt_status='generating')
    dispatcher = build_dispatcher(session_factory, provider_factory(handler))

    await dispatcher.dispatch()
    await dispatcher.wait_background()

    stored = await seed.get(Job, job.id)
    assert stored.status == 'failed'
    assert stored.prompt_status == 'failed'
    assert stored.error == 'prompt_generation_failed: Prompt generation failed: all models failed'


async def test_pending_prompt_requeues_job(session_factory, seed, provider_factory, images):
    handler = Mock(side_effect=AssertionError('provider must not be called'))

    prompt_job = await seed.prompt_job(status='processing')
    variant = await seed.variant_row(prompt=None)
    job = await seed.job(variant=variant, prompt_job_id=prompt_job.id, prompt_status='generating')
    dispatcher = build_dispatcher(session_factory, provider_factory(handler))

    await dispatcher.dispatch()
    await dispatcher.wait_background()

    stored = await seed.get(Job, job.id)
    assert stored.status == 'queued'
    assert stored.prompt_status == 'generating'
    dispatcher.trigger.request.assert_not_called()


async def test_prompt_waiting_job_does_not_keep_workers_spinning(session_factory, seed, provider_factory, images):
    handler = Mock(side_effect=AssertionError('provider must not be called'))

    prompt_job = await seed.prompt_job(status='processing')
    variant = await seed.variant_row(prompt=None)
    await seed.job(variant=variant, prompt_job_id=prompt_job.id, prompt_status='generating')
    dispatcher = build_dispatcher(session_factory, provider_factory(handler))

    passes = []
    dispatch = dispatcher.dispatch

    async def counting_dispatch(*, source):
        passes.append(source)
        return await dispatch(source=source)

    dispatcher.dispatch = counting_dispatch
    trigger = DispatchTrigger(dispatcher, workers=2, queue_size=4, tick_interval_s=0)
    trigger.start()
    trigger.request('job-created')

    await asyncio.wait_for(trigger.queue.join(), timeout=2)
    await asyncio.sleep(0.05)
    await trigger.stop()

    assert passes == ['job-created']


async def test_completed_prompt_without_text_fails_job(session_factory, seed, provider_factory, images):
    handler = Mock(side_effect=AssertionError('provider must not be called'))

    prompt_job = await seed.prompt_job(status='completed', generated_prompt='   ')
    variant = await seed.variant_row(prompt=None)
    job = await seed.job(variant=variant, prompt_job_id=prompt_job.id, prompt_status='generating')
    dispatcher = build_dispatcher(session_factory, provider_factory(handler))

    await dispatcher.dispatch()
    await dispatcher.wait_background()

    stored = await seed.get(Job, job.id)
    assert stored.status == 'failed'
    assert stored.prompt_status == 'failed'
    assert stored.error == 'prompt_generation_failed: Prompt generation failed: empty prompt returned'
    dispatcher.trigger.request.assert_called_once_with('drain')


async def test_no_capacity_claims_nothing(session_factory, seed, provider_factory, images):
    handler = Mock(side_effect=AssertionError('provider must not be called'))

    variant = await seed.variant_row()
    await seed.job(variant=variant, status='running', provider_request_id='p')
    queued = await seed.job(variant=variant)
    dispatcher = build_dispatcher(session_factory, provider_factory(handler), max_concurrency=1)

    assert await dispatcher.dispatch() == 0
    await dispatcher.wait_background()

    assert (await seed.get(Job, queued.id)).status == 'queued'
    dispatcher.trigger.request.assert_not_called()


async def test_claim_failure_surfaces(session_factory, provider_factory, monkeypatch):
    async def broken_claim(**kwargs):
        raise ClaimError('connection lost')

    monkeypatch.setattr('app.services.dispatcher.claim_jobs_with_capacity', broken_claim)
    dispatcher = build_dispatcher(session_factory, provider_factory(lambda r: httpx.Response(500)))

    with pytest.raises(ClaimError):
        await dispatcher.dispatch()
