from datetime import datetime
from typing import Any, Dict, List, Optional
import re

from bridge.models.models import TicketMapping
from bridge.services.status_manager import StatusManager
from bridge.services.whmcs import TicketReply, WhmcsTicket
from bridge.utils.text_utils import slugify, truncate_text

PRIORITY_PREFIX = {
    'Low': '🟢',
    'Medium': '🟡',
    'High': '🟠',
    'Urgent': '🔴',
}

PRIORITY_COLOR = {
    'Low': 0x28a745,
    'Medium': 0xffc107,
    'High': 0xfd7e14,
    'Urgent': 0xdc3545,
}

DEFAULT_COLOR = 0x6c757d
STAFF_COLOR = 0x0099ff
CLIENT_COLOR = 0x7289da
STATUS_UPDATE_COLOR = 0xffc107

BUTTON_STYLE_SECONDARY = 2
BUTTON_STYLE_DANGER = 4

def format_channel_name(priority: str, department_name: str, ticket_id: str) -> str:
    """
    Формирует имя канала тикета: <метка приоритета>-<отдел>-<номер тикета>

    Args:
        priority: Приоритет тикета
        department_name: Название отдела
        ticket_id: Внешний номер тикета

    Returns:
        str: Имя канала; одинаковые аргументы всегда дают одинаковое имя
    """
    prefix = PRIORITY_PREFIX.get(priority, '⚪')
    return f"{prefix}-{slugify(department_name, 20)}-{slugify(ticket_id)}"

def format_category_name(department_name: str) -> str:
    """Название категории отдела без символов, запрещённых в Discord"""
    clean_name = re.sub(r'[@#:`~]', '', department_name or '')
    clean_name = re.sub(r'\s+', ' ', clean_name).strip()[:100]
    return clean_name or 'General Support'

def _iso_timestamp(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    for fmt in ('%Y-%m-%d %H:%M:%S', '%Y-%m-%dT%H:%M:%S'):
        try:
            return datetime.strptime(value, fmt).isoformat()
        except ValueError:
            continue
    return None

def create_ticket_embed(ticket: WhmcsTicket, client: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Карточка тикета, публикуемая при создании канала"""
    fields = [
        {'name': 'Статус', 'value': f"{StatusManager.status_emoji(ticket.status)} {ticket.status}", 'inline': True},
        {'name': 'Приоритет', 'value': ticket.priority or 'Medium', 'inline': True},
        {'name': 'Отдел', 'value': ticket.department_name or 'General', 'inline': True},
    ]
    if client:
        full_name = f"{client.get('firstname', '')} {client.get('lastname', '')}".strip()
        fields.extend([
            {'name': 'Клиент', 'value': full_name or '—', 'inline': True},
            {'name': 'Email', 'value': client.get('email') or '—', 'inline': True},
            {'name': 'Компания', 'value': client.get('companyname') or '—', 'inline': True},
        ])
    if ticket.last_reply:
        fields.append({'name': 'Последний ответ', 'value': ticket.last_reply, 'inline': False})

    embed = {
        'title': truncate_text(f"Тикет #{ticket.tid} - {ticket.subject}", 256),
        'color': PRIORITY_COLOR.get(ticket.priority, DEFAULT_COLOR),
        'fields': fields,
    }
    timestamp = _iso_timestamp(ticket.date)
    if timestamp:
        embed['timestamp'] = timestamp
    return embed

def create_ticket_actions(ticket_id: str) -> List[Dict[str, Any]]:
    """Кнопки управления тикетом под карточкой"""
    return [{
        'type': 1,
        'components': [
            {'type': 2, 'style': BUTTON_STYLE_DANGER, 'label': 'Закрыть тикет',
             'custom_id': f"close_{ticket_id}", 'emoji': {'name': '🔒'}},
            {'type': 2, 'style': BUTTON_STYLE_SECONDARY, 'label': 'Отложить',
             'custom_id': f"hold_{ticket_id}", 'emoji': {'name': '⏸️'}},
        ],
    }]

def create_reply_embed(reply: TicketReply, unavailable_files: Optional[List[str]] = None) -> Dict[str, Any]:
    """Сообщение с ответом из WHMCS"""
    is_admin = reply.is_admin
    embed = {
        'color': STAFF_COLOR if is_admin else CLIENT_COLOR,
        'author': {
            'name': reply.author or ('Поддержка' if is_admin else 'Клиент'),
            'icon_url': f"https://cdn.discordapp.com/embed/avatars/{0 if is_admin else 1}.png",
        },
        'description': truncate_text(reply.message or '—', 4096),
    }
    timestamp = _iso_timestamp(reply.date)
    if timestamp:
        embed['timestamp'] = timestamp
    if unavailable_files:
        embed['fields'] = [{
            'name': 'Вложения',
            'value': truncate_text(
                '📎 Файлы недоступны: ' + ', '.join(unavailable_files), 1024
            ),
            'inline': False,
        }]
    return embed

def create_status_update_embed(ticket_id: str, old_status: str, new_status: str,
                               updated_by: str = 'Система') -> Dict[str, Any]:
    """Уведомление о смене статуса тикета"""
    return {
        'title': 'Статус тикета изменён',
        'description': f"Тикет #{ticket_id}: статус изменён",
        'color': STATUS_UPDATE_COLOR,
        'fields': [
            {'name': 'Было', 'value': f"{StatusManager.status_emoji(old_status)} {old_status}", 'inline': True},
            {'name': 'Стало', 'value': f"{StatusManager.status_emoji(new_status)} {new_status}", 'inline': True},
            {'name': 'Кем', 'value': updated_by, 'inline': True},
        ],
        'timestamp': datetime.utcnow().isoformat(),
    }

def format_ticket_info(ticket: WhmcsTicket, mapping: TicketMapping) -> str:
    """
    Форматирует информацию о тикете для команды ticketinfo

    Args:
        ticket: Текущее состояние тикета в WHMCS
        mapping: Привязка тикета к каналу

    Returns:
        str: Отформатированная строка с информацией о тикете
    """
    synced = mapping.last_synced_at.strftime('%d.%m.%Y %H:%M') if mapping.last_synced_at else '—'
    return (
        f"{StatusManager.status_emoji(ticket.status)} **Тикет #{ticket.tid}**\n"
        f"Тема: {ticket.subject}\n"
        f"Статус: {ticket.status}\n"
        f"Приоритет: {ticket.priority}\n"
        f"Отдел: {ticket.department_name}\n"
        f"Последнее обновление: {ticket.last_reply or ticket.date or '—'}\n"
        f"Последняя синхронизация: {synced}"
    )
