import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from bridge.errors import BridgeError, FatalError, MissingInternalIdError
from bridge.models.models import TicketMapping
from bridge.services.discord import DiscordService
from bridge.services.mapping_store import MappingStore
from bridge.services.permissions import PermissionService, PropagationResult
from bridge.services.sync_service import SyncOutcome
from bridge.services.whmcs import WhmcsService
from bridge.utils.text_utils import parse_custom_id
from bridge.utils.ticket_utils import PRIORITY_PREFIX, format_ticket_info

logger = logging.getLogger(__name__)

OUTCOME_TEXT = {
    SyncOutcome.CREATED: "канал создан",
    SyncOutcome.UPDATED: "канал обновлён",
    SyncOutcome.RECREATED: "канал пересоздан",
    SyncOutcome.REMOVED: "канал удалён",
    SyncOutcome.SKIPPED: "изменений нет",
}

NOT_LINKED = "Этот канал не связан с тикетом WHMCS."
STAFF_ONLY = "Эта команда доступна только персоналу поддержки."


@dataclass
class CommandRequest:
    name: str
    channel_id: str
    user_id: str
    options: Dict[str, str] = field(default_factory=dict)
    subcommand: Optional[str] = None


class CommandService:
    """Команды и кнопки персонала. Каждая отвечает одной короткой строкой."""

    def __init__(self, store: MappingStore, whmcs: WhmcsService, discord: DiscordService,
                 permissions: PermissionService,
                 request_sync: Callable[[str], Any],
                 run_sync: Callable[[str], Awaitable[SyncOutcome]],
                 sync_all: Callable[[], Awaitable[int]]):
        self.store = store
        self.whmcs = whmcs
        self.discord = discord
        self.permissions = permissions
        self.request_sync = request_sync
        self.run_sync = run_sync
        self.sync_all = sync_all
        self._commands = {
            "syncticket": self._sync_ticket,
            "syncall": self._sync_all,
            "ticketinfo": self._ticket_info,
            "assignticket": self._assign_ticket,
            "priority": self._change_priority,
            "wtb": self._wtb,
        }

    async def handle_command(self, request: CommandRequest) -> str:
        handler = self._commands.get(request.name)
        if handler is None:
            return f"Неизвестная команда: {request.name}"
        if not await self.discord.is_staff_member(request.user_id):
            return STAFF_ONLY
        try:
            return await handler(request)
        except FatalError:
            raise
        except MissingInternalIdError:
            return "У тикета ещё нет внутреннего ID WHMCS, попробуйте позже."
        except BridgeError as e:
            logger.error(f"Ошибка команды {request.name}: {e}")
            return f"Не удалось выполнить команду: {e}"

    async def handle_button(self, custom_id: str, user_id: str) -> str:
        parsed = parse_custom_id(custom_id)
        if parsed is None or parsed[0] not in ("close", "hold"):
            return "Неизвестное действие."
        action, ticket_id = parsed
        if not await self.discord.is_staff_member(user_id):
            return "Управлять тикетами может только персонал поддержки."
        try:
            if action == "close":
                return await self._set_status(ticket_id, "Closed", f"Тикет #{ticket_id} закрыт, канал будет удалён.")
            return await self._set_status(ticket_id, "On Hold", f"Тикет #{ticket_id} отложен.")
        except FatalError:
            raise
        except MissingInternalIdError:
            return "Привязка тикета не найдена или у неё нет внутреннего ID."
        except BridgeError as e:
            logger.error(f"Ошибка кнопки {custom_id}: {e}")
            return "Не удалось изменить статус тикета."

    async def _mapping_for_channel(self, channel_id: str) -> Optional[TicketMapping]:
        return await self.store.get_ticket_mapping_by_channel(channel_id)

    @staticmethod
    def _internal_id(mapping: TicketMapping) -> int:
        if not mapping.whmcs_internal_id:
            raise MissingInternalIdError(mapping.whmcs_ticket_id)
        return mapping.whmcs_internal_id

    async def _set_status(self, ticket_id: str, status: str, done_text: str) -> str:
        mapping = await self.store.get_ticket_mapping(ticket_id)
        if mapping is None:
            raise MissingInternalIdError(ticket_id)
        await self.whmcs.update_ticket(self._internal_id(mapping), status=status)
        logger.info(f"Статус тикета {ticket_id} изменён на {status} из Discord")
        # Канал обновит (или удалит) синхронизация
        self.request_sync(ticket_id)
        return done_text

    async def _sync_ticket(self, request: CommandRequest) -> str:
        ticket_id = (request.options.get("ticketid") or "").strip()
        if not ticket_id:
            return "Укажите номер тикета."
        outcome = await self.run_sync(ticket_id)
        return f"Тикет #{ticket_id} синхронизирован: {OUTCOME_TEXT[outcome]}."

    async def _sync_all(self, request: CommandRequest) -> str:
        count = await self.sync_all()
        return f"Синхронизировано тикетов из WHMCS: {count}."

    async def _ticket_info(self, request: CommandRequest) -> str:
        mapping = await self._mapping_for_channel(request.channel_id)
        if not mapping:
            return NOT_LINKED
        ticket = await self.whmcs.get_ticket(mapping.whmcs_ticket_id)
        return format_ticket_info(ticket, mapping)

    async def _assign_ticket(self, request: CommandRequest) -> str:
        mapping = await self._mapping_for_channel(request.channel_id)
        if not mapping:
            return NOT_LINKED
        username = request.options.get("admin") or ""
        admin = next((a for a in await self.whmcs.get_admin_users() if a.get("username") == username), None)
        if admin is None:
            return f"Администратор «{username}» не найден."
        await self.whmcs.update_ticket(self._internal_id(mapping), flag=admin["id"])
        return f"Тикет назначен на {username}."

    async def _change_priority(self, request: CommandRequest) -> str:
        mapping = await self._mapping_for_channel(request.channel_id)
        if not mapping:
            return NOT_LINKED
        priority = request.options.get("level") or ""
        if priority not in PRIORITY_PREFIX:
            return f"Неизвестный приоритет. Допустимы: {', '.join(PRIORITY_PREFIX)}."
        await self.whmcs.update_ticket(self._internal_id(mapping), priority=priority)
        # Переименование канала выполнит синхронизация под блокировкой тикета
        await self.run_sync(mapping.whmcs_ticket_id)
        return f"Приоритет тикета изменён на {priority}."

    async def _wtb(self, request: CommandRequest) -> str:
        subcommand = request.subcommand
        department_name = request.options.get("department")

        department = None
        if department_name:
            department = await self.permissions.find_department(department_name)
            if department is None:
                return f"Отдел не найден: {department_name}"

        if subcommand == "list":
            grouped = await self.permissions.list_department_roles(department.id if department else None)
            if not grouped:
                scope = f"У отдела «{department_name}»" if department_name else "В системе"
                return f"{scope} нет настроенных ролей."
            lines = ["📋 **Роли отделов**", ""]
            for name, mappings in grouped.items():
                lines.append(f"**{name}**")
                lines.extend(f"└ <@&{m.discord_role_id}>" for m in mappings)
                lines.append("")
            return "\n".join(lines).rstrip()

        if subcommand not in ("add", "remove"):
            return "Используйте: wtb add | remove | list"
        role_id = request.options.get("role")
        if department is None or not role_id:
            return "Укажите отдел и роль."

        if subcommand == "add":
            result = await self.permissions.add_department_role(
                department.id, department.name, role_id, request.options.get("role_name")
            )
            if result is None:
                return f"Роль <@&{role_id}> уже есть у отдела «{department.name}»."
            return f"✅ Роль <@&{role_id}> добавлена отделу «{department.name}». {self._propagation_text(result)}"

        result = await self.permissions.remove_department_role(department.id, role_id)
        if result is None:
            return f"У отдела «{department.name}» нет роли <@&{role_id}>."
        return f"✅ Роль <@&{role_id}> удалена из отдела «{department.name}». {self._propagation_text(result)}"

    @staticmethod
    def _propagation_text(result: PropagationResult) -> str:
        text = f"Обновлено каналов: {result.updated}"
        if result.failed:
            text += f", ошибок: {result.failed}"
        return text + "."
