import asyncio
import enum
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Tuple

from bridge.errors import BridgeError, ConflictError, FatalError, MalformedReplyError, TicketNotFoundError
from bridge.models.models import DepartmentMapping, TicketMapping
from bridge.services.attachments import AttachmentPipeline, TicketContext
from bridge.services.discord import DiscordService
from bridge.services.mapping_store import MappingStore
from bridge.services.status_manager import StatusManager
from bridge.services.sync_ledger import ChatToSource, SourceToChat, SyncLedger
from bridge.services.whmcs import TicketReply, WhmcsService, WhmcsTicket
from bridge.utils.ticket_utils import (
    create_reply_embed,
    create_status_update_embed,
    create_ticket_actions,
    create_ticket_embed,
    format_category_name,
    format_channel_name,
)

logger = logging.getLogger(__name__)


class SyncOutcome(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    RECREATED = "recreated"
    REMOVED = "removed"
    SKIPPED = "skipped"


class SyncService:
    """Сводит состояние тикета WHMCS и его канала в Discord"""

    def __init__(self, whmcs: WhmcsService, discord: DiscordService, store: MappingStore,
                 ledger: SyncLedger, statuses: StatusManager, attachments: AttachmentPipeline):
        self.whmcs = whmcs
        self.discord = discord
        self.store = store
        self.ledger = ledger
        self.statuses = statuses
        self.attachments = attachments
        self._department_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def sync_one(self, ticket_id: str) -> SyncOutcome:
        """Синхронизирует один тикет. Вызывать только под блокировкой тикета."""
        try:
            ticket = await self.whmcs.get_ticket(ticket_id)
        except TicketNotFoundError:
            logger.warning(f"Тикет {ticket_id} не найден в WHMCS, удаляем его канал и данные")
            removed = await self.remove_ticket(ticket_id)
            return SyncOutcome.REMOVED if removed else SyncOutcome.SKIPPED

        mapping = await self.store.get_ticket_mapping(ticket_id)
        if mapping is None:
            if not self.statuses.is_open_like(ticket.status):
                logger.debug(f"Тикет {ticket_id} в статусе {ticket.status}, канал не нужен")
                return SyncOutcome.SKIPPED
            created = await self._create_ticket_channel(ticket)
            return SyncOutcome.CREATED if created else SyncOutcome.SKIPPED

        channel = await self.discord.get_channel(mapping.discord_channel_id)
        if channel is None:
            if self.statuses.is_closed_like(ticket.status):
                await self.cleanup_ticket_data(ticket_id)
                logger.info(f"Канал закрытого тикета {ticket_id} уже удалён, привязка очищена")
                return SyncOutcome.REMOVED
            logger.warning(f"Канал {mapping.discord_channel_id} тикета {ticket_id} пропал, пересоздаём")
            await self._recreate_channel(ticket, mapping)
            return SyncOutcome.RECREATED

        if not await self._apply_changes(ticket, mapping):
            return SyncOutcome.REMOVED

        await self.sync_replies(ticket, mapping.discord_channel_id)
        return SyncOutcome.UPDATED

    async def remove_ticket(self, ticket_id: str) -> bool:
        """Удаляет канал тикета и все локальные записи о нём"""
        mapping = await self.store.get_ticket_mapping(ticket_id)
        if mapping is None:
            return False
        await self.discord.delete_channel(mapping.discord_channel_id, reason=f"Ticket {ticket_id} closed")
        await self.cleanup_ticket_data(ticket_id)
        logger.info(f"Канал и данные тикета {ticket_id} удалены")
        return True

    async def cleanup_ticket_data(self, ticket_id: str) -> None:
        """Удаляет привязку тикета; записи журнала удаляются вместе с ней"""
        await self.store.delete_ticket_mapping(ticket_id)

    async def sync_departments(self) -> int:
        """Создаёт категории для всех отделов WHMCS, у которых их ещё нет"""
        mapped = 0
        for department in await self.whmcs.get_departments():
            try:
                await self.resolve_department(department.id, department.name)
                mapped += 1
            except FatalError:
                raise
            except BridgeError as e:
                logger.error(f"Не удалось привязать отдел {department.name}: {e}")
        logger.info(f"Синхронизировано отделов: {mapped}")
        return mapped

    async def resolve_department(self, department_id: int, department_name: str) -> DepartmentMapping:
        """Получает категорию отдела, при необходимости создавая её"""
        mapping = await self.store.get_department_mapping(department_id)
        if mapping:
            return mapping

        async with self._department_locks[department_id]:
            mapping = await self.store.get_department_mapping(department_id)
            if mapping:
                return mapping

            category, created = await self._find_or_create_category(department_id, department_name)
            mapping, own = await self.store.create_department_mapping(
                department_id, department_name, category["id"]
            )
            if not own and created:
                await self.discord.delete_channel(category["id"], reason="Duplicate department category")
            if mapping is None:
                raise ConflictError(f"Category {category['id']} is mapped to another department")
            logger.info(f"Отдел {department_name} привязан к категории {category['name']}")
            return mapping

    async def _find_or_create_category(self, department_id: int,
                                       department_name: str) -> Tuple[Dict[str, Any], bool]:
        category_name = format_category_name(department_name)
        category = await self.discord.get_category_by_name(category_name)
        if category:
            owner = await self.store.get_department_mapping_by_category(category["id"])
            if owner is None or owner.whmcs_department_id == department_id:
                return category, False
            # Категория с таким именем уже принадлежит другому отделу
            category_name = f"{category_name} - {department_id}"
            category = await self.discord.get_category_by_name(category_name)
            if category:
                return category, False
            logger.warning(f"Конфликт имён категорий, создаём {category_name}")
        return await self.discord.create_category(category_name), True

    async def _create_ticket_channel(self, ticket: WhmcsTicket) -> bool:
        department = await self.resolve_department(ticket.department_id, ticket.department_name)
        role_ids = await self.store.get_department_role_ids(ticket.department_id)
        channel = await self.discord.create_ticket_channel(
            department.discord_category_id,
            format_channel_name(ticket.priority, ticket.department_name, ticket.tid),
            topic=f"WHMCS Ticket #{ticket.tid} - {ticket.subject}",
            role_ids=role_ids,
        )

        try:
            mapping = await self.store.create_ticket_mapping(
                whmcs_ticket_id=ticket.tid,
                whmcs_internal_id=ticket.internal_id,
                discord_channel_id=channel["id"],
                discord_category_id=department.discord_category_id,
                department_id=ticket.department_id,
                department_name=ticket.department_name,
                priority=ticket.priority,
                status=ticket.status,
                last_synced_at=datetime.utcnow(),
            )
        except Exception:
            await self.discord.delete_channel(channel["id"], reason=f"Ticket {ticket.tid} mapping failed")
            raise

        if mapping is None:
            await self.discord.delete_channel(channel["id"], reason=f"Ticket {ticket.tid} already mapped")
            logger.info(f"Тикет {ticket.tid} уже привязан к другому каналу, лишний канал удалён")
            return False

        if ticket.internal_id is None:
            logger.warning(f"У тикета {ticket.tid} нет внутреннего ID, ответы из Discord пока недоступны")

        await self._post_summary(ticket, channel["id"])
        await self.sync_replies(ticket, channel["id"])
        logger.info(f"Создан канал {channel['name']} для тикета {ticket.tid}")
        return True

    async def _recreate_channel(self, ticket: WhmcsTicket, mapping: TicketMapping) -> None:
        department = await self.resolve_department(ticket.department_id, ticket.department_name)
        role_ids = await self.store.get_department_role_ids(ticket.department_id)
        channel = await self.discord.create_ticket_channel(
            department.discord_category_id,
            format_channel_name(ticket.priority, ticket.department_name, ticket.tid),
            topic=f"WHMCS Ticket #{ticket.tid} - {ticket.subject}",
            role_ids=role_ids,
        )

        try:
            # Сообщения старого канала потеряны вместе с ним
            await self.ledger.purge_ticket(ticket.tid)
            await self.store.update_ticket_mapping(
                ticket.tid,
                whmcs_internal_id=ticket.internal_id or mapping.whmcs_internal_id,
                discord_channel_id=channel["id"],
                discord_category_id=department.discord_category_id,
                department_id=ticket.department_id,
                department_name=ticket.department_name,
                priority=ticket.priority,
                status=ticket.status,
                last_synced_at=datetime.utcnow(),
            )
        except Exception:
            await self.discord.delete_channel(channel["id"], reason=f"Ticket {ticket.tid} mapping failed")
            raise

        await self._post_summary(ticket, channel["id"])
        await self.sync_replies(ticket, channel["id"])
        logger.info(f"Канал тикета {ticket.tid} пересоздан: {channel['name']}")

    async def _post_summary(self, ticket: WhmcsTicket, channel_id: str) -> None:
        client = None
        if ticket.user_id:
            try:
                client = await self.whmcs.get_client(ticket.user_id)
            except FatalError:
                raise
            except BridgeError as e:
                logger.warning(f"Не удалось получить данные клиента {ticket.user_id}: {e}")

        await self.discord.send_message(
            channel_id,
            embeds=[create_ticket_embed(ticket, client)],
            components=create_ticket_actions(ticket.tid),
        )

    async def _apply_changes(self, ticket: WhmcsTicket, mapping: TicketMapping) -> bool:
        """Применяет изменения статуса и приоритета; False, если канал удалён"""
        channel_id = mapping.discord_channel_id

        if mapping.status != ticket.status:
            await self.discord.send_message(
                channel_id,
                embeds=[create_status_update_embed(ticket.tid, mapping.status, ticket.status)],
            )
            logger.info(f"Статус тикета {ticket.tid} изменён: {mapping.status} → {ticket.status}")

        if self.statuses.is_closed_like(ticket.status):
            await self.discord.delete_channel(channel_id, reason=f"Ticket {ticket.tid} closed")
            await self.cleanup_ticket_data(ticket.tid)
            logger.info(f"Тикет {ticket.tid} закрыт, канал и данные удалены")
            return False

        if mapping.priority != ticket.priority:
            await self.discord.rename_channel(
                channel_id, format_channel_name(ticket.priority, mapping.department_name, ticket.tid)
            )

        updates: Dict[str, Any] = {
            "status": ticket.status,
            "priority": ticket.priority,
            "last_synced_at": datetime.utcnow(),
        }
        if ticket.internal_id is not None and mapping.whmcs_internal_id != ticket.internal_id:
            updates["whmcs_internal_id"] = ticket.internal_id
        await self.store.update_ticket_mapping(ticket.tid, **updates)
        return True

    async def sync_replies(self, ticket: WhmcsTicket, channel_id: str) -> int:
        """Публикует в канале ответы, которых там ещё нет. Возвращает число опубликованных."""
        posted = 0
        for reply in ticket.replies:
            try:
                reply_id = reply.reply_id
            except MalformedReplyError as e:
                logger.warning(f"Ответ тикета {ticket.tid} пропущен: {e}")
                continue

            entry = await self.ledger.find_by_reply(ticket.tid, reply_id)
            if isinstance(entry, SourceToChat):
                continue

            try:
                message_id = await self._post_reply(ticket, reply, reply_id, channel_id)
            except FatalError:
                raise
            except BridgeError as e:
                logger.error(f"Не удалось опубликовать ответ {reply_id} тикета {ticket.tid}: {e}")
                continue

            if isinstance(entry, ChatToSource):
                recorded = await self.ledger.replace_with_source_to_chat(entry, message_id)
            else:
                recorded = await self.ledger.record_source_to_chat(ticket.tid, reply_id, message_id)
            if not recorded:
                logger.warning(f"Ответ {reply_id} тикета {ticket.tid} уже был записан в журнал")
            posted += 1

        if posted:
            logger.info(f"Тикет {ticket.tid}: опубликовано ответов {posted}")
        return posted

    async def _post_reply(self, ticket: WhmcsTicket, reply: TicketReply, reply_id: str,
                          channel_id: str) -> str:
        context = TicketContext(ticket_id=ticket.tid, internal_id=ticket.internal_id, reply_id=reply_id)
        async with self.attachments.stage(reply.attachments, context) as staged:
            return await self.discord.send_message(
                channel_id,
                embeds=[create_reply_embed(reply, staged.unavailable)],
                files=staged.files,
            )
