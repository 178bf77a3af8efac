"""initial schema

Revision ID: 001
Revises:
Create Date: 2025-03-02 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

sync_direction = sa.Enum('whmcs_to_discord', 'discord_to_whmcs', name='sync_direction')


def upgrade() -> None:
    # Привязки тикетов к каналам
    op.create_table(
        'ticket_mappings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('whmcs_ticket_id', sa.String(), nullable=False),
        sa.Column('whmcs_internal_id', sa.Integer(), nullable=True),
        sa.Column('discord_channel_id', sa.String(), nullable=False),
        sa.Column('discord_category_id', sa.String(), nullable=False),
        sa.Column('department_id', sa.Integer(), nullable=False),
        sa.Column('department_name', sa.String(), nullable=False),
        sa.Column('priority', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('whmcs_ticket_id'),
        sa.UniqueConstraint('discord_channel_id'),
    )
    op.create_index('ix_ticket_mappings_department_id', 'ticket_mappings', ['department_id'])

    # Привязки отделов к категориям
    op.create_table(
        'department_mappings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('whmcs_department_id', sa.Integer(), nullable=False),
        sa.Column('department_name', sa.String(), nullable=False),
        sa.Column('discord_category_id', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('whmcs_department_id'),
        sa.UniqueConstraint('discord_category_id'),
    )

    # Роли с доступом к каналам отдела
    op.create_table(
        'department_role_mappings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('whmcs_department_id', sa.Integer(), nullable=False),
        sa.Column('department_name', sa.String(), nullable=False),
        sa.Column('discord_role_id', sa.String(), nullable=False),
        sa.Column('discord_role_name', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('whmcs_department_id', 'discord_role_id', name='uq_department_role'),
    )
    op.create_index(
        'ix_department_role_mappings_whmcs_department_id',
        'department_role_mappings',
        ['whmcs_department_id'],
    )

    # Журнал синхронизации сообщений
    op.create_table(
        'message_syncs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('whmcs_ticket_id', sa.String(), nullable=False),
        sa.Column('whmcs_reply_id', sa.String(), nullable=True),
        sa.Column('discord_message_id', sa.String(), nullable=False),
        sa.Column('direction', sync_direction, nullable=False),
        sa.Column('synced_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('discord_message_id'),
    )
    op.create_index('ix_message_syncs_whmcs_ticket_id', 'message_syncs', ['whmcs_ticket_id'])
    op.create_index(
        'uq_message_sync_whmcs_reply',
        'message_syncs',
        ['whmcs_ticket_id', 'whmcs_reply_id'],
        unique=True,
        postgresql_where=sa.text("direction = 'whmcs_to_discord'"),
        sqlite_where=sa.text("direction = 'whmcs_to_discord'"),
    )


def downgrade() -> None:
    op.drop_index('uq_message_sync_whmcs_reply', table_name='message_syncs')
    op.drop_index('ix_message_syncs_whmcs_ticket_id', table_name='message_syncs')
    op.drop_table('message_syncs')
    sync_direction.drop(op.get_bind(), checkfirst=True)
    op.drop_index('ix_department_role_mappings_whmcs_department_id', table_name='department_role_mappings')
    op.drop_table('department_role_mappings')
    op.drop_table('department_mappings')
    op.drop_index('ix_ticket_mappings_department_id', table_name='ticket_mappings')
    op.drop_table('ticket_mappings')
