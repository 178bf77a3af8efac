import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List

logger = logging.getLogger(__name__)


def _consume_result(future: asyncio.Future) -> None:
    # Ошибку уже записал воркер; здесь только помечаем её как полученную
    if not future.cancelled():
        future.exception()


class TicketSyncQueue:
    """Очередь синхронизации с блокировкой по номеру тикета.

    Один тикет никогда не синхронизируется двумя воркерами одновременно,
    разные тикеты обрабатываются параллельно. Повторная постановка тикета,
    который ещё ждёт в очереди, возвращает тот же future.
    """

    def __init__(self, handler: Callable[[str], Awaitable[Any]], workers: int = 4):
        self.handler = handler
        self.workers = max(1, workers)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pending: Dict[str, asyncio.Future] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = defaultdict(int)
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._worker(index), name=f"ticket-sync-{index}")
            for index in range(self.workers)
        ]
        logger.info(f"Запущено воркеров синхронизации: {self.workers}")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        for future in self._pending.values():
            if not future.done():
                future.cancel()
        self._pending.clear()
        logger.info("Воркеры синхронизации остановлены")

    def submit(self, ticket_id: str) -> asyncio.Future:
        """Ставит тикет в очередь и сразу возвращает future с результатом синхронизации"""
        future = self._pending.get(ticket_id)
        if future is not None:
            return future
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_result)
        self._pending[ticket_id] = future
        self._queue.put_nowait(ticket_id)
        return future

    async def run(self, ticket_id: str) -> Any:
        """Ставит тикет в очередь и ждёт окончания синхронизации"""
        return await self.submit(ticket_id)

    async def join(self) -> None:
        await self._queue.join()

    def is_pending(self, ticket_id: str) -> bool:
        return ticket_id in self._pending

    @asynccontextmanager
    async def _ticket_lock(self, ticket_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(ticket_id, asyncio.Lock())
        self._lock_users[ticket_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[ticket_id] -= 1
            if self._lock_users[ticket_id] == 0:
                del self._lock_users[ticket_id]
                self._locks.pop(ticket_id, None)

    async def _worker(self, index: int) -> None:
        while True:
            ticket_id = await self._queue.get()
            # Новые события после этого момента поставят тикет в очередь заново
            future = self._pending.pop(ticket_id, None)
            try:
                async with self._ticket_lock(ticket_id):
                    result = await self.handler(ticket_id)
            except asyncio.CancelledError:
                if future is not None and not future.done():
                    future.cancel()
                raise
            except Exception as e:
                logger.error(f"Ошибка синхронизации тикета {ticket_id}: {e}", exc_info=True)
                if future is not None and not future.done():
                    future.set_exception(e)
            else:
                if future is not None and not future.done():
                    future.set_result(result)
            finally:
                self._queue.task_done()
