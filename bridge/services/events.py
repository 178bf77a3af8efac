import asyncio
import logging
from typing import Optional

from bridge.services.sync_ledger import SourceToChat, SyncLedger
from bridge.services.sync_queue import TicketSyncQueue

logger = logging.getLogger(__name__)

TICKET_ACTIONS = ("opened", "updated", "closed", "deleted")


class TicketEvents:
    """Точки входа для событий WHMCS: всё сводится к синхронизации тикета"""

    def __init__(self, queue: TicketSyncQueue, ledger: SyncLedger):
        self.queue = queue
        self.ledger = ledger

    def on_ticket_event(self, action: str, ticket_id: str) -> Optional[asyncio.Future]:
        """Обрабатывает событие тикета (opened, updated, closed, deleted)"""
        if action not in TICKET_ACTIONS:
            logger.warning(f"Неизвестное событие тикета: {action} ({ticket_id})")
            return None
        logger.info(f"Событие {action} для тикета {ticket_id}")
        return self.queue.submit(ticket_id)

    async def on_reply_event(self, ticket_id: str, reply_id: Optional[str]) -> Optional[asyncio.Future]:
        """Обрабатывает новый ответ; ответы, уже показанные в Discord, пропускаются"""
        if reply_id and isinstance(await self.ledger.find_by_reply(ticket_id, reply_id), SourceToChat):
            logger.info(f"Ответ {reply_id} тикета {ticket_id} уже синхронизирован")
            return None
        logger.info(f"Новый ответ {reply_id} в тикете {ticket_id}")
        return self.queue.submit(ticket_id)
