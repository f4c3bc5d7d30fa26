from loguru import logger
from fastapi import FastAPI
from contextlib import asynccontextmanager

from app.core.config import settings
from app.core.errors import install_exception_handlers
from app.core.logging import setup_logging
from app.db.session import AsyncSessionLocal, dispose_engine
from app.services.dispatch_trigger import DispatchTrigger
from app.services.dispatcher import Dispatcher, DispatchState
from app.services.poller import JobPoller
from app.services.poller_pool import JobPollerPool
from app.services.prompt_queue import PromptQueue
from app.services.provider_client import WaveSpeedClient
from app.services.vision_llm import XaiVisionClient

from app.api.dispatch import router as dispatch_router
from app.api.jobs import router as jobs_router
from app.api.prompt_queue import router as prompt_router
from app.api.storage import router as storage_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    # STARTUP
    app.state.dispatch_trigger.start()

    if settings.POLLER_ENABLED:
        await app.state.poller_pool.resume(app.state.session_factory)
        app.state.poller_pool.start()

    app.state.prompt_queue.start()
    app.state.dispatch_trigger.request('startup')

    yield

    # SHUTDOWN
    await app.state.prompt_queue.stop_processing()
    await app.state.poller_pool.stop()
    await app.state.dispatch_trigger.stop()

    if app.state.session_factory is AsyncSessionLocal:
        await dispose_engine()


def build_runtime(
        app: FastAPI,
        *,
        session_factory=None,
        provider: WaveSpeedClient | None = None,
        llm: XaiVisionClient | None = None
):
    """
    Состояние процесса: одно на приложение, после рестарта создаётся заново.
    """
    session_factory = session_factory or AsyncSessionLocal
    provider = provider or WaveSpeedClient()

    dispatcher = Dispatcher(session_factory=session_factory, provider=provider, state=DispatchState())
    trigger = DispatchTrigger(dispatcher)
    poller = JobPoller(session_factory=session_factory, provider=provider, trigger=trigger)

    app.state.session_factory = session_factory
    app.state.dispatcher = dispatcher
    app.state.dispatch_trigger = trigger
    app.state.poller = poller
    app.state.poller_pool = JobPollerPool(poller)
    app.state.prompt_queue = PromptQueue(session_factory=session_factory, llm=llm, trigger=trigger)


def create_app(
        *,
        session_factory=None,
        provider: WaveSpeedClient | None = None,
        llm: XaiVisionClient | None = None
) -> FastAPI:
    setup_logging()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        lifespan=lifespan,
        debug=settings.DEBAG
    )

    build_runtime(app, session_factory=session_factory, provider=provider, llm=llm)
    install_exception_handlers(app)

    @app.get('/health', tags=['system'])
    def health_check():
        return {'status': 'Ok'}

    app.include_router(dispatch_router)
    app.include_router(jobs_router)
    app.include_router(prompt_router)
    app.include_router(storage_router)

    logger.info('Application started')
    return app


app = create_app()
