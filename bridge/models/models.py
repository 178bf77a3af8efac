import enum
from sqlalchemy import Column, Integer, String, DateTime, Enum, Index, UniqueConstraint
from datetime import datetime
from ..database import Base

class SyncDirection(str, enum.Enum):
    WHMCS_TO_DISCORD = "whmcs_to_discord"
    DISCORD_TO_WHMCS = "discord_to_whmcs"

class TicketMapping(Base):
    __tablename__ = "ticket_mappings"

    id = Column(Integer, primary_key=True)
    whmcs_ticket_id = Column(String, unique=True, nullable=False)
    whmcs_internal_id = Column(Integer, nullable=True)  # Заполняется позже, если при создании неизвестен
    discord_channel_id = Column(String, unique=True, nullable=False)
    discord_category_id = Column(String, nullable=False)
    department_id = Column(Integer, nullable=False, index=True)
    department_name = Column(String, nullable=False)
    priority = Column(String, nullable=False)
    status = Column(String, nullable=False)
    last_synced_at = Column(DateTime, default=datetime.utcnow)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

class DepartmentMapping(Base):
    __tablename__ = "department_mappings"

    id = Column(Integer, primary_key=True)
    whmcs_department_id = Column(Integer, unique=True, nullable=False)
    department_name = Column(String, nullable=False)
    discord_category_id = Column(String, unique=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

class DepartmentRoleMapping(Base):
    __tablename__ = "department_role_mappings"

    id = Column(Integer, primary_key=True)
    whmcs_department_id = Column(Integer, nullable=False, index=True)
    department_name = Column(String, nullable=False)
    discord_role_id = Column(String, nullable=False)
    discord_role_name = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("whmcs_department_id", "discord_role_id", name="uq_department_role"),
    )

class MessageSync(Base):
    __tablename__ = "message_syncs"

    id = Column(Integer, primary_key=True)
    whmcs_ticket_id = Column(String, nullable=False, index=True)
    whmcs_reply_id = Column(String, nullable=True)  # Пусто, пока WHMCS не присвоил ID ответу из Discord
    discord_message_id = Column(String, unique=True, nullable=False)
    direction = Column(
        Enum(SyncDirection, name="sync_direction", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    synced_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        # Один ответ WHMCS попадает в Discord не больше одного раза
        Index(
            "uq_message_sync_whmcs_reply",
            "whmcs_ticket_id",
            "whmcs_reply_id",
            unique=True,
            postgresql_where=(direction == SyncDirection.WHMCS_TO_DISCORD),
            sqlite_where=(direction == SyncDirection.WHMCS_TO_DISCORD),
        ),
    )
