import logging
from datetime import datetime
from typing import Any, List, Optional, Sequence, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from bridge.models.models import DepartmentMapping, DepartmentRoleMapping, MessageSync, TicketMapping

logger = logging.getLogger(__name__)


class MappingStore:
    """Соответствия тикет ⇄ канал, отдел ⇄ категория и отдел ⇄ роль"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get_ticket_mapping(self, ticket_id: str) -> Optional[TicketMapping]:
        """Получает привязку тикета по внешнему номеру WHMCS"""
        async with self.session_factory() as session:
            return await session.scalar(
                select(TicketMapping).where(TicketMapping.whmcs_ticket_id == ticket_id)
            )

    async def get_ticket_mapping_by_channel(self, channel_id: str) -> Optional[TicketMapping]:
        """Получает привязку тикета по ID канала Discord"""
        async with self.session_factory() as session:
            return await session.scalar(
                select(TicketMapping).where(TicketMapping.discord_channel_id == channel_id)
            )

    async def create_ticket_mapping(self, **fields: Any) -> Optional[TicketMapping]:
        """Создаёт привязку тикета; None, если параллельный вызов успел раньше"""
        async with self.session_factory() as session:
            existing = await session.scalar(
                select(TicketMapping).where(TicketMapping.whmcs_ticket_id == fields["whmcs_ticket_id"])
            )
            if existing:
                return None
            mapping = TicketMapping(**fields)
            session.add(mapping)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(f"Привязка тикета {fields['whmcs_ticket_id']} уже создана параллельно")
                return None
            return mapping

    async def update_ticket_mapping(self, ticket_id: str, **fields: Any) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                update(TicketMapping)
                .where(TicketMapping.whmcs_ticket_id == ticket_id)
                .values(**fields, updated_at=datetime.utcnow())
            )
            await session.commit()
            return result.rowcount > 0

    async def delete_ticket_mapping(self, ticket_id: str) -> bool:
        """Удаляет привязку тикета вместе со всеми записями журнала синхронизации"""
        async with self.session_factory() as session:
            await session.execute(delete(MessageSync).where(MessageSync.whmcs_ticket_id == ticket_id))
            result = await session.execute(
                delete(TicketMapping).where(TicketMapping.whmcs_ticket_id == ticket_id)
            )
            await session.commit()
            return result.rowcount > 0

    async def get_active_ticket_mappings(self, statuses: Sequence[str]) -> List[TicketMapping]:
        """Получает привязки тикетов в активных статусах"""
        async with self.session_factory() as session:
            return list(await session.scalars(
                select(TicketMapping)
                .where(TicketMapping.status.in_(list(statuses)))
                .order_by(TicketMapping.last_synced_at)
            ))

    async def get_ticket_mappings_by_department(self, department_id: int) -> List[TicketMapping]:
        async with self.session_factory() as session:
            return list(await session.scalars(
                select(TicketMapping).where(TicketMapping.department_id == department_id)
            ))

    async def get_department_mapping(self, department_id: int) -> Optional[DepartmentMapping]:
        async with self.session_factory() as session:
            return await session.scalar(
                select(DepartmentMapping).where(DepartmentMapping.whmcs_department_id == department_id)
            )

    async def get_department_mapping_by_category(self, category_id: str) -> Optional[DepartmentMapping]:
        async with self.session_factory() as session:
            return await session.scalar(
                select(DepartmentMapping).where(DepartmentMapping.discord_category_id == category_id)
            )

    async def create_department_mapping(self, department_id: int, department_name: str,
                                        category_id: str) -> Tuple[Optional[DepartmentMapping], bool]:
        """Создаёт привязку отдела к категории.

        Returns:
            Tuple[Optional[DepartmentMapping], bool]: привязка и признак того,
            что её создал именно этот вызов
        """
        async with self.session_factory() as session:
            mapping = DepartmentMapping(
                whmcs_department_id=department_id,
                department_name=department_name,
                discord_category_id=category_id,
            )
            session.add(mapping)
            try:
                await session.commit()
                return mapping, True
            except IntegrityError:
                await session.rollback()
        existing = await self.get_department_mapping(department_id)
        if existing is None:
            logger.error(f"Категория {category_id} уже занята другим отделом, отдел {department_name} не привязан")
        return existing, False

    async def get_department_role_mappings(self, department_id: Optional[int] = None) -> List[DepartmentRoleMapping]:
        async with self.session_factory() as session:
            query = select(DepartmentRoleMapping).order_by(
                DepartmentRoleMapping.department_name, DepartmentRoleMapping.id
            )
            if department_id is not None:
                query = query.where(DepartmentRoleMapping.whmcs_department_id == department_id)
            return list(await session.scalars(query))

    async def get_department_role_ids(self, department_id: int) -> List[str]:
        return [m.discord_role_id for m in await self.get_department_role_mappings(department_id)]

    async def add_department_role(self, department_id: int, department_name: str,
                                  role_id: str, role_name: Optional[str] = None) -> bool:
        """Добавляет роль отделу; False, если такая пара уже есть"""
        async with self.session_factory() as session:
            existing = await session.scalar(
                select(DepartmentRoleMapping).where(
                    DepartmentRoleMapping.whmcs_department_id == department_id,
                    DepartmentRoleMapping.discord_role_id == role_id,
                )
            )
            if existing:
                return False
            session.add(DepartmentRoleMapping(
                whmcs_department_id=department_id,
                department_name=department_name,
                discord_role_id=role_id,
                discord_role_name=role_name,
            ))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True

    async def remove_department_role(self, department_id: int, role_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(DepartmentRoleMapping).where(
                    DepartmentRoleMapping.whmcs_department_id == department_id,
                    DepartmentRoleMapping.discord_role_id == role_id,
                )
            )
            await session.commit()
            return result.rowcount > 0
