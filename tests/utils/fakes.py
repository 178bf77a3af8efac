"""In-memory stand-ins for the WHMCS API and the Discord REST API."""

import itertools
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from bridge.errors import DiscordApiError, TicketNotFoundError, TransientError, WhmcsApiError
from bridge.services.discord import CHANNEL_TYPE_CATEGORY, CHANNEL_TYPE_TEXT, DiscordFile
from bridge.services.whmcs import Department, TicketReply, TicketSummary, WhmcsTicket


def make_reply(reply_id: Optional[str], message: str = "Hello", admin: str = "",
               attachments: Optional[List[Dict[str, Any]]] = None, **extra: Any) -> TicketReply:
    raw: Dict[str, Any] = {
        "message": message,
        "admin": admin,
        "name": admin or "Client",
        "date": "2025-01-01 10:00:00",
        "attachments": attachments or [],
        **extra,
    }
    if reply_id is not None:
        raw["replyid"] = reply_id
    return TicketReply(raw)


def make_ticket(tid: str = "T-100", internal_id: Optional[int] = 100, status: str = "Open",
                priority: str = "High", department_id: int = 1, department_name: str = "Billing",
                replies: Optional[List[TicketReply]] = None, **extra: Any) -> WhmcsTicket:
    return WhmcsTicket(
        tid=tid,
        internal_id=internal_id,
        subject=extra.pop("subject", "Invoice question"),
        status=status,
        priority=priority,
        department_id=department_id,
        department_name=department_name,
        user_id=extra.pop("user_id", 7),
        date="2025-01-01 09:00:00",
        replies=list(replies or []),
    )


class FakeWhmcs:
    def __init__(self):
        self.tickets: Dict[str, WhmcsTicket] = {}
        self.departments: List[Department] = [Department(1, "Billing"), Department(2, "Technical")]
        self.statuses: List[str] = ["Open", "Answered", "Customer-Reply", "On Hold", "Closed"]
        self.attachments: Dict[Tuple[str, str, int], Union[bytes, Exception, List[Any]]] = {}
        self.attachment_calls: List[Tuple[str, str, int]] = []
        self.replies_added: List[Dict[str, Any]] = []
        self.updates: List[Tuple[int, Dict[str, Any]]] = []
        self.admin_users: List[Dict[str, Any]] = [{"id": 3, "username": "alice"}]
        self.next_reply_id = itertools.count(500)
        self.get_ticket_calls = 0

    def put(self, ticket: WhmcsTicket) -> WhmcsTicket:
        self.tickets[ticket.tid] = ticket
        return ticket

    async def verify(self) -> None:
        return None

    async def get_ticket(self, ticket_id: str) -> WhmcsTicket:
        self.get_ticket_calls += 1
        if ticket_id not in self.tickets:
            raise TicketNotFoundError(ticket_id)
        return self.tickets[ticket_id]

    async def list_tickets(self, status: Optional[str] = None, page_size: int = 100) -> List[TicketSummary]:
        return [
            TicketSummary(t.tid, t.internal_id, t.status, t.priority, t.department_id)
            for t in self.tickets.values()
            if status is None or t.status == status
        ]

    async def get_departments(self) -> List[Department]:
        return list(self.departments)

    async def get_statuses(self) -> List[str]:
        return list(self.statuses)

    async def get_client(self, client_id: int) -> Optional[Dict[str, Any]]:
        return {"firstname": "Jane", "lastname": "Doe", "email": "jane@example.com", "companyname": "ACME"}

    async def get_admin_users(self) -> List[Dict[str, Any]]:
        return list(self.admin_users)

    async def add_reply(self, internal_id: int, message: str, admin_username: str,
                        attachments: Optional[List[Dict[str, str]]] = None) -> Optional[str]:
        reply_id = str(next(self.next_reply_id))
        self.replies_added.append({
            "internal_id": internal_id,
            "message": message,
            "admin": admin_username,
            "attachments": attachments or [],
            "reply_id": reply_id,
        })
        return reply_id

    async def update_ticket(self, internal_id: int, **fields: Any) -> None:
        self.updates.append((internal_id, fields))
        for ticket in self.tickets.values():
            if ticket.internal_id == internal_id:
                if "status" in fields:
                    ticket.status = fields["status"]
                if "priority" in fields:
                    ticket.priority = fields["priority"]

    async def get_attachment(self, related_id: str, scope: str, index: int,
                             timeout: Optional[float] = None) -> Tuple[str, bytes]:
        key = (scope, str(related_id), int(index))
        self.attachment_calls.append(key)
        outcome = self.attachments.get(key)
        if isinstance(outcome, list):
            # One outcome per attempt
            outcome = outcome.pop(0) if outcome else WhmcsApiError("exhausted")
        if outcome is None:
            raise WhmcsApiError(f"No attachment {key}")
        if isinstance(outcome, Exception):
            raise outcome
        return "file", outcome


class FakeDiscord:
    def __init__(self, guild_id: str = "100", staff_role_id: str = "200"):
        self.guild_id = guild_id
        self.staff_role_id = staff_role_id
        self.channels: Dict[str, Dict[str, Any]] = {}
        self.messages: Dict[str, List[Dict[str, Any]]] = {}
        self.deleted_messages: List[Tuple[str, str]] = []
        self.reactions: List[Tuple[str, str, str]] = []
        self.permission_updates: List[Tuple[str, List[str]]] = []
        self.staff: Set[str] = {"staff-1"}
        self.downloads: Dict[str, Union[bytes, Exception]] = {}
        self.failing_channels: Set[str] = set()
        self.send_failures: Dict[str, int] = {}
        self._ids = itertools.count(1000)

    def _new_id(self) -> str:
        return str(next(self._ids))

    async def verify(self) -> Dict[str, Any]:
        return {"id": self.guild_id, "name": "Test guild"}

    def text_channels(self) -> List[Dict[str, Any]]:
        return [c for c in self.channels.values() if c["type"] == CHANNEL_TYPE_TEXT]

    async def list_channels(self) -> List[Dict[str, Any]]:
        return list(self.channels.values())

    async def get_category_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        for channel in self.channels.values():
            if channel["type"] == CHANNEL_TYPE_CATEGORY and channel["name"] == name:
                return channel
        return None

    async def create_category(self, name: str) -> Dict[str, Any]:
        category = {"id": self._new_id(), "name": name, "type": CHANNEL_TYPE_CATEGORY}
        self.channels[category["id"]] = category
        return category

    async def create_ticket_channel(self, category_id: str, name: str, topic: str = "",
                                    role_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        channel = {
            "id": self._new_id(),
            "name": name,
            "type": CHANNEL_TYPE_TEXT,
            "parent_id": category_id,
            "topic": topic,
            "role_ids": list(role_ids or []),
        }
        self.channels[channel["id"]] = channel
        self.messages[channel["id"]] = []
        return channel

    async def get_channel(self, channel_id: str) -> Optional[Dict[str, Any]]:
        return self.channels.get(channel_id)

    async def rename_channel(self, channel_id: str, name: str) -> None:
        self.channels[channel_id]["name"] = name

    async def update_channel_permissions(self, channel_id: str, role_ids: List[str]) -> None:
        if channel_id in self.failing_channels:
            raise DiscordApiError("Missing Access", status=403)
        self.permission_updates.append((channel_id, list(role_ids)))
        if channel_id in self.channels:
            self.channels[channel_id]["role_ids"] = list(role_ids)

    async def delete_channel(self, channel_id: str, reason: Optional[str] = None) -> bool:
        return self.channels.pop(channel_id, None) is not None

    async def send_message(self, channel_id: str, content: Optional[str] = None,
                           embeds: Optional[List[Dict[str, Any]]] = None,
                           components: Optional[List[Dict[str, Any]]] = None,
                           files: Optional[List[DiscordFile]] = None,
                           reply_to: Optional[str] = None) -> str:
        if self.send_failures.get(channel_id):
            self.send_failures[channel_id] -= 1
            raise TransientError("send failed")
        if channel_id not in self.channels:
            raise DiscordApiError("Unknown Channel", status=404)
        file_contents = []
        for f in files or []:
            with open(f.path, "rb") as handle:
                file_contents.append((f.filename, handle.read()))
        message = {
            "id": self._new_id(),
            "content": content,
            "embeds": embeds or [],
            "components": components or [],
            "files": file_contents,
            "file_paths": [f.path for f in files or []],
        }
        self.messages.setdefault(channel_id, []).append(message)
        return message["id"]

    async def delete_message(self, channel_id: str, message_id: str) -> None:
        self.deleted_messages.append((channel_id, message_id))

    async def add_reaction(self, channel_id: str, message_id: str, emoji: str) -> None:
        self.reactions.append((channel_id, message_id, emoji))

    async def is_staff_member(self, user_id: str) -> bool:
        return user_id in self.staff

    async def download_attachment(self, url: str, timeout: float = 30.0) -> bytes:
        outcome = self.downloads.get(url)
        if outcome is None:
            raise TransientError(f"download failed: {url}")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


async def link_ticket(store, discord: FakeDiscord, tid: str = "T-100", internal_id: Optional[int] = 100,
                      channel_id: str = "c-1", department_id: int = 1, status: str = "Open"):
    """Create a channel in FakeDiscord and map the ticket to it without running a sync."""
    discord.channels[channel_id] = {
        "id": channel_id, "name": f"ticket-{tid.lower()}", "type": CHANNEL_TYPE_TEXT,
        "parent_id": "cat-1", "topic": "", "role_ids": [],
    }
    discord.messages.setdefault(channel_id, [])
    return await store.create_ticket_mapping(
        whmcs_ticket_id=tid,
        whmcs_internal_id=internal_id,
        discord_channel_id=channel_id,
        discord_category_id="cat-1",
        department_id=department_id,
        department_name="Billing",
        priority="High",
        status=status,
    )
