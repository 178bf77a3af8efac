import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from bridge.models.models import MessageSync, SyncDirection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncEntry:
    ticket_id: str
    reply_id: Optional[str]
    message_id: str
    synced_at: Optional[datetime] = None


@dataclass(frozen=True)
class SourceToChat(SyncEntry):
    """Ответ WHMCS уже показан в Discord"""


@dataclass(frozen=True)
class ChatToSource(SyncEntry):
    """Сообщение из Discord отправлено в WHMCS и ждёт возврата оттуда"""


def _to_entry(row: MessageSync) -> SyncEntry:
    kind = SourceToChat if row.direction == SyncDirection.WHMCS_TO_DISCORD else ChatToSource
    return kind(
        ticket_id=row.whmcs_ticket_id,
        reply_id=row.whmcs_reply_id,
        message_id=row.discord_message_id,
        synced_at=row.synced_at,
    )


class SyncLedger:
    """Журнал зеркалированных сообщений с направлением синхронизации"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def find_by_reply(self, ticket_id: str, reply_id: str) -> Optional[SyncEntry]:
        """Ищет запись об ответе; запись WHMCS → Discord имеет приоритет"""
        async with self.session_factory() as session:
            rows = list(await session.scalars(
                select(MessageSync).where(
                    MessageSync.whmcs_ticket_id == ticket_id,
                    MessageSync.whmcs_reply_id == reply_id,
                )
            ))
        if not rows:
            return None
        rows.sort(key=lambda r: r.direction != SyncDirection.WHMCS_TO_DISCORD)
        return _to_entry(rows[0])

    async def has_reply(self, reply_id: str, ticket_id: Optional[str] = None) -> bool:
        async with self.session_factory() as session:
            query = select(MessageSync.id).where(MessageSync.whmcs_reply_id == reply_id)
            if ticket_id is not None:
                query = query.where(MessageSync.whmcs_ticket_id == ticket_id)
            return await session.scalar(query.limit(1)) is not None

    async def find_by_message(self, message_id: str) -> Optional[SyncEntry]:
        async with self.session_factory() as session:
            row = await session.scalar(
                select(MessageSync).where(MessageSync.discord_message_id == message_id)
            )
        return _to_entry(row) if row else None

    async def entries_for_ticket(self, ticket_id: str) -> List[SyncEntry]:
        async with self.session_factory() as session:
            rows = await session.scalars(
                select(MessageSync).where(MessageSync.whmcs_ticket_id == ticket_id).order_by(MessageSync.id)
            )
            return [_to_entry(row) for row in rows]

    async def _record(self, ticket_id: str, reply_id: Optional[str], message_id: str,
                      direction: SyncDirection) -> bool:
        async with self.session_factory() as session:
            session.add(MessageSync(
                whmcs_ticket_id=ticket_id,
                whmcs_reply_id=reply_id,
                discord_message_id=message_id,
                direction=direction,
            ))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(
                    f"Запись журнала уже существует: тикет {ticket_id}, ответ {reply_id}, "
                    f"сообщение {message_id} ({direction.value})"
                )
                return False
            return True

    async def record_source_to_chat(self, ticket_id: str, reply_id: str, message_id: str) -> bool:
        """Фиксирует, что ответ WHMCS опубликован в Discord"""
        return await self._record(ticket_id, reply_id, message_id, SyncDirection.WHMCS_TO_DISCORD)

    async def record_chat_to_source(self, ticket_id: str, reply_id: Optional[str], message_id: str) -> bool:
        """Фиксирует, что сообщение Discord отправлено в WHMCS"""
        return await self._record(ticket_id, reply_id, message_id, SyncDirection.DISCORD_TO_WHMCS)

    async def replace_with_source_to_chat(self, entry: ChatToSource, message_id: str) -> bool:
        """Заменяет запись Discord → WHMCS на запись WHMCS → Discord одной транзакцией"""
        async with self.session_factory() as session:
            await session.execute(
                delete(MessageSync).where(
                    MessageSync.discord_message_id == entry.message_id,
                    MessageSync.direction == SyncDirection.DISCORD_TO_WHMCS,
                )
            )
            session.add(MessageSync(
                whmcs_ticket_id=entry.ticket_id,
                whmcs_reply_id=entry.reply_id,
                discord_message_id=message_id,
                direction=SyncDirection.WHMCS_TO_DISCORD,
            ))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(f"Ответ {entry.reply_id} тикета {entry.ticket_id} уже заменён параллельно")
                return False
            return True

    async def purge_ticket(self, ticket_id: str) -> int:
        """Удаляет все записи тикета (например, после пересоздания канала)"""
        async with self.session_factory() as session:
            result = await session.execute(delete(MessageSync).where(MessageSync.whmcs_ticket_id == ticket_id))
            await session.commit()
            return result.rowcount
