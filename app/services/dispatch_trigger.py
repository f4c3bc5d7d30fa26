import asyncio
from typing import List, Optional

from loguru import logger

from app.core.config import settings
from app.services.dispatcher import Dispatcher


class DispatchTrigger:
    """
    Внутренний повторный запуск диспетчера без HTTP.

    request() кладёт заявку в ограниченную очередь и никогда не ждёт:
    если очередь полна, заявка сливается с уже стоящими. Воркеры вызывают
    Dispatcher.dispatch() напрямую, лимит слотов держит тот же claim.
    """

    def __init__(
            self,
            dispatcher: Dispatcher,
            *,
            workers: Optional[int] = None,
            queue_size: Optional[int] = None,
            tick_interval_s: Optional[float] = None
    ):
        self.dispatcher = dispatcher
        self.workers = workers or settings.DISPATCH_WORKERS
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size or settings.DISPATCH_QUEUE_SIZE)
        self.tick_interval_s = tick_interval_s if tick_interval_s is not None else settings.DISPATCH_CLEANUP_INTERVAL_S
        self._tasks: List[asyncio.Task] = []

        dispatcher.trigger = self

    def request(self, reason: str = 'internal') -> bool:
        try:
            self.queue.put_nowait(reason)
            return True
        except asyncio.QueueFull:
            logger.debug(f'[Dispatch] trigger queue full, coalescing "{reason}"')
            return False

    def start(self):
        if self._tasks:
            return
        for n in range(self.workers):
            self._tasks.append(asyncio.create_task(self._worker(n)))
        if self.tick_interval_s > 0:
            self._tasks.append(asyncio.create_task(self._ticker()))
        logger.info(f'[Dispatch] trigger started with {self.workers} worker(s)')

    async def stop(self):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.dispatcher.wait_background()
        logger.info('[Dispatch] trigger stopped')

    async def _worker(self, n: int):
        while True:
            try:
                reason = await self.queue.get()
            except asyncio.CancelledError:
                break

            try:
                await self.dispatcher.dispatch(source=reason)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f'[Dispatch] worker {n} error: {e}')
            finally:
                self.queue.task_done()

    async def _ticker(self):
        """
        Периодический запуск: очистка и добор слотов без клиентов.
        """
        while True:
            try:
                await asyncio.sleep(self.tick_interval_s)
            except asyncio.CancelledError:
                break
            self.request('tick')
