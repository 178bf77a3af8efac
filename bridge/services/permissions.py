import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional

from bridge.errors import BridgeError, FatalError
from bridge.models.models import DepartmentRoleMapping
from bridge.services.discord import DiscordService
from bridge.services.mapping_store import MappingStore
from bridge.services.whmcs import Department, WhmcsService

logger = logging.getLogger(__name__)


@dataclass
class PropagationResult:
    updated: int = 0
    failed: int = 0


class PermissionService:
    """Доступ ролей Discord к каналам тикетов по отделам"""

    def __init__(self, store: MappingStore, discord: DiscordService, whmcs: WhmcsService):
        self.store = store
        self.discord = discord
        self.whmcs = whmcs

    async def find_department(self, name: str) -> Optional[Department]:
        """Ищет отдел WHMCS по названию"""
        for department in await self.whmcs.get_departments():
            if department.name == name:
                return department
        return None

    async def add_department_role(self, department_id: int, department_name: str, role_id: str,
                                  role_name: Optional[str] = None) -> Optional[PropagationResult]:
        """Выдаёт роли доступ к отделу; None, если доступ уже был"""
        if not await self.store.add_department_role(department_id, department_name, role_id, role_name):
            return None
        logger.info(f"Роль {role_name or role_id} добавлена отделу {department_name}")
        return await self.propagate(department_id)

    async def remove_department_role(self, department_id: int, role_id: str) -> Optional[PropagationResult]:
        """Отзывает доступ роли к отделу; None, если доступа не было"""
        if not await self.store.remove_department_role(department_id, role_id):
            return None
        logger.info(f"Роль {role_id} удалена из отдела {department_id}")
        return await self.propagate(department_id)

    async def list_department_roles(self, department_id: Optional[int] = None) -> Dict[str, List[DepartmentRoleMapping]]:
        """Роли, сгруппированные по названию отдела"""
        grouped: Dict[str, List[DepartmentRoleMapping]] = OrderedDict()
        for mapping in await self.store.get_department_role_mappings(department_id):
            grouped.setdefault(mapping.department_name, []).append(mapping)
        return grouped

    async def propagate(self, department_id: int) -> PropagationResult:
        """Переприменяет полный набор прав ко всем каналам отдела"""
        result = PropagationResult()
        mappings = await self.store.get_ticket_mappings_by_department(department_id)
        if not mappings:
            logger.info(f"У отдела {department_id} нет открытых каналов")
            return result

        role_ids = await self.store.get_department_role_ids(department_id)
        for mapping in mappings:
            try:
                await self.discord.update_channel_permissions(mapping.discord_channel_id, role_ids)
                result.updated += 1
            except FatalError:
                raise
            except BridgeError as e:
                logger.error(f"Не удалось обновить права канала {mapping.discord_channel_id}: {e}")
                result.failed += 1

        logger.info(
            f"Права обновлены для {result.updated} каналов отдела {department_id}, ошибок: {result.failed}"
        )
        return result
