import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

from bridge.errors import BridgeError, FatalError
from bridge.services.attachments import AttachmentPipeline
from bridge.services.mapping_store import MappingStore
from bridge.services.status_manager import StatusManager
from bridge.services.sync_queue import TicketSyncQueue
from bridge.services.sync_service import SyncOutcome, SyncService
from bridge.services.whmcs import WhmcsService

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    checked: int = 0
    synced: int = 0
    failed: int = 0
    duration: float = 0.0


class SyncScheduler:
    """Периодически сверяет все активные тикеты"""

    def __init__(self, sync_service: SyncService, queue: TicketSyncQueue, store: MappingStore,
                 statuses: StatusManager, whmcs: WhmcsService, attachments: AttachmentPipeline,
                 interval: float = 300, clock: Callable[[], float] = time.monotonic):
        self.sync_service = sync_service
        self.queue = queue
        self.store = store
        self.statuses = statuses
        self.whmcs = whmcs
        self.attachments = attachments
        self.interval = interval
        self.clock = clock
        self._task: Optional[asyncio.Task] = None

    async def _run_batch(self, ticket_ids: Sequence[str]) -> List[Any]:
        futures = [self.queue.submit(ticket_id) for ticket_id in ticket_ids]
        return await asyncio.gather(*futures, return_exceptions=True)

    async def sweep(self) -> SweepResult:
        """Один проход по привязанным тикетам в активных статусах"""
        started = self.clock()
        active = await self.statuses.active_status_names()
        mappings = await self.store.get_active_ticket_mappings(active)
        ticket_ids = [mapping.whmcs_ticket_id for mapping in mappings]
        logger.info(f"Периодическая синхронизация: тикетов к проверке {len(ticket_ids)}")

        result = SweepResult(checked=len(ticket_ids))
        for ticket_id, outcome in zip(ticket_ids, await self._run_batch(ticket_ids)):
            if isinstance(outcome, BaseException):
                result.failed += 1
            else:
                result.synced += 1

        await self.attachments.cleanup_stale()
        result.duration = self.clock() - started
        logger.info(
            f"Периодическая синхронизация завершена: проверено {result.checked}, "
            f"ошибок {result.failed}, за {result.duration:.1f} сек."
        )
        return result

    async def sync_all(self) -> int:
        """Полная синхронизация: новые открытые тикеты и закрытые тикеты с каналами.

        Returns:
            int: Число тикетов, синхронизированных без ошибок
        """
        try:
            await self.sync_service.sync_departments()
        except FatalError:
            raise
        except BridgeError as e:
            logger.error(f"Не удалось синхронизировать отделы: {e}")

        summaries = await self.whmcs.list_tickets()
        logger.info(f"WHMCS вернул тикетов: {len(summaries)}")

        ticket_ids = []
        for summary in summaries:
            if not summary.tid or summary.tid in ticket_ids:
                continue
            if self.statuses.is_open_like(summary.status):
                ticket_ids.append(summary.tid)
            elif await self.store.get_ticket_mapping(summary.tid) is not None:
                logger.info(f"Тикет {summary.tid} закрыт, удаляем его канал")
                ticket_ids.append(summary.tid)

        synced = 0
        created = 0
        for outcome in await self._run_batch(ticket_ids):
            if isinstance(outcome, BaseException):
                continue
            synced += 1
            if outcome in (SyncOutcome.CREATED, SyncOutcome.RECREATED):
                created += 1

        await self.attachments.cleanup_stale()
        logger.info(f"Полная синхронизация завершена: {synced} из {len(ticket_ids)}, новых каналов {created}")
        return synced

    async def _loop(self) -> None:
        while True:
            started = self.clock()
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except FatalError:
                logger.critical("Фатальная ошибка периодической синхронизации", exc_info=True)
                raise
            except Exception as e:
                logger.error(f"Ошибка периодической синхронизации: {e}", exc_info=True)
            elapsed = self.clock() - started
            await asyncio.sleep(max(0.0, self.interval - elapsed))

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="sync-scheduler")
            logger.info(f"Периодическая синхронизация запущена с интервалом {self.interval} сек.")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Периодическая синхронизация остановлена")
