import asyncio
import base64
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from bridge.errors import (
    AuthenticationError,
    MalformedReplyError,
    TicketNotFoundError,
    TransientError,
    WhmcsApiError,
)

logger = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = "Ticket ID Not Found"
AUTH_FAILED_MESSAGE = "Authentication Failed"


def _as_list(container: Any, key: str) -> List[Any]:
    """WHMCS отдаёт списки как {"reply": [...]}, {"reply": {...}} или пустую строку"""
    if not container:
        return []
    if isinstance(container, list):
        return container
    items = container.get(key) if isinstance(container, dict) else None
    if not items:
        return []
    if isinstance(items, dict):
        return [items]
    return list(items)


def _as_int(value: Any) -> Optional[int]:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


@dataclass
class TicketReply:
    raw: Dict[str, Any]

    @property
    def reply_id(self) -> str:
        """ID ответа: сначала replyid, затем id"""
        for key in ("replyid", "id"):
            value = self.raw.get(key)
            if value is not None and value != "":
                return str(value)
        raise MalformedReplyError(f"Reply without id: {self.raw!r}")

    @property
    def message(self) -> str:
        return self.raw.get("message") or ""

    @property
    def author(self) -> str:
        return self.raw.get("name") or self.raw.get("requestor_name") or ""

    @property
    def is_admin(self) -> bool:
        return bool(self.raw.get("admin"))

    @property
    def date(self) -> Optional[str]:
        return self.raw.get("date")

    @property
    def attachments(self) -> List[Dict[str, Any]]:
        attachments = self.raw.get("attachments")
        if isinstance(attachments, list):
            return attachments
        return []


@dataclass
class WhmcsTicket:
    tid: str
    internal_id: Optional[int]
    subject: str
    status: str
    priority: str
    department_id: int
    department_name: str
    user_id: Optional[int] = None
    date: Optional[str] = None
    last_reply: Optional[str] = None
    replies: List[TicketReply] = field(default_factory=list)

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "WhmcsTicket":
        """Собирает тикет из ответа GetTicket.

        Внутренний числовой ID берётся только из поля ticketid.
        """
        return cls(
            tid=str(data.get("tid") or ""),
            internal_id=_as_int(data.get("ticketid")),
            subject=data.get("subject") or "",
            status=data.get("status") or "",
            priority=data.get("priority") or "Medium",
            department_id=int(data.get("deptid") or 0),
            department_name=data.get("deptname") or "General",
            user_id=_as_int(data.get("userid")),
            date=data.get("date"),
            last_reply=data.get("lastreply"),
            replies=[TicketReply(raw) for raw in _as_list(data.get("replies"), "reply") if isinstance(raw, dict)],
        )


@dataclass
class TicketSummary:
    tid: str
    internal_id: Optional[int]
    status: str
    priority: str
    department_id: int


@dataclass
class Department:
    id: int
    name: str


class WhmcsService:
    def __init__(self, api_url: str, identifier: str, secret: str, timeout: float = 30.0):
        self.api_url = api_url
        self.identifier = identifier
        self.secret = secret
        self.timeout = timeout

    async def _call(self, action: str, params: Optional[Dict[str, Any]] = None,
                    timeout: Optional[float] = None) -> Dict[str, Any]:
        """Выполняет запрос к WHMCS API и возвращает разобранный JSON"""
        data = {
            **(params or {}),
            "action": action,
            "identifier": self.identifier,
            "secret": self.secret,
            "responsetype": "json",
        }
        client_timeout = aiohttp.ClientTimeout(total=timeout or self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.post(self.api_url, data=data) as response:
                    status = response.status
                    try:
                        result = await response.json(content_type=None)
                    except (json.JSONDecodeError, aiohttp.ContentTypeError):
                        raise WhmcsApiError(f"{action}: invalid JSON response", status=status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientError(f"WHMCS {action} failed: {e}") from e

        if not isinstance(result, dict):
            raise WhmcsApiError(f"{action}: unexpected response", status=status)
        if result.get("result") == "error":
            message = result.get("message") or "WHMCS API error"
            if message == NOT_FOUND_MESSAGE:
                raise TicketNotFoundError(str(params.get("ticketnum") if params else ""))
            if message == AUTH_FAILED_MESSAGE or status in (401, 403):
                raise AuthenticationError(f"WHMCS: {message}")
            raise WhmcsApiError(f"{action}: {message}", status=status)
        if status >= 400:
            raise WhmcsApiError(f"{action}: HTTP {status}", status=status)
        return result

    async def verify(self) -> None:
        """Проверяет учётные данные API при запуске"""
        await self._call("GetSupportDepartments")
        logger.info("Подключение к WHMCS API проверено")

    async def get_ticket(self, ticket_id: str) -> WhmcsTicket:
        """Получает тикет по внешнему номеру (tid)"""
        data = await self._call("GetTicket", {"ticketnum": ticket_id})
        return WhmcsTicket.from_response(data)

    async def list_tickets(self, status: Optional[str] = None, page_size: int = 100) -> List[TicketSummary]:
        """Получает все тикеты постранично"""
        tickets: List[TicketSummary] = []
        start = 0
        while True:
            params: Dict[str, Any] = {"limitstart": start, "limitnum": page_size}
            if status:
                params["status"] = status
            data = await self._call("GetTickets", params)
            page = _as_list(data.get("tickets"), "ticket")
            for raw in page:
                tickets.append(TicketSummary(
                    tid=str(raw.get("tid") or ""),
                    internal_id=_as_int(raw.get("id") or raw.get("ticketid")),
                    status=raw.get("status") or "",
                    priority=raw.get("priority") or "Medium",
                    department_id=int(raw.get("deptid") or 0),
                ))
            start += len(page)
            total = int(data.get("totalresults") or 0)
            if not page or start >= total:
                break
        return tickets

    async def get_departments(self) -> List[Department]:
        data = await self._call("GetSupportDepartments")
        return [
            Department(id=int(raw["id"]), name=raw.get("name") or "General")
            for raw in _as_list(data.get("departments"), "department")
        ]

    async def get_statuses(self) -> List[str]:
        """Получает каталог статусов (основные и пользовательские)"""
        data = await self._call("GetSupportStatuses")
        return [raw["title"] for raw in _as_list(data.get("statuses"), "status") if raw.get("title")]

    async def add_reply(self, internal_id: int, message: str, admin_username: str,
                        attachments: Optional[List[Dict[str, str]]] = None) -> Optional[str]:
        """Добавляет ответ к тикету от имени администратора.

        Args:
            internal_id: Внутренний числовой ID тикета
            message: Текст ответа
            admin_username: Имя, под которым ответ появится в WHMCS
            attachments: Список {"name", "data"}, data уже в base64

        Returns:
            Optional[str]: ID созданного ответа, если WHMCS его вернул
        """
        params: Dict[str, Any] = {
            "ticketid": internal_id,
            "message": message,
            "adminusername": admin_username,
        }
        if attachments:
            # WHMCS ждёт base64 от JSON-списка [{"name": ..., "data": ...}]
            payload = json.dumps([{"name": a["name"], "data": a["data"]} for a in attachments])
            params["attachments"] = base64.b64encode(payload.encode()).decode()
            logger.info(f"Добавляем {len(attachments)} вложений к ответу в тикет {internal_id}")
        data = await self._call("AddTicketReply", params)
        reply_id = data.get("replyid")
        return str(reply_id) if reply_id else None

    async def update_ticket(self, internal_id: int, **fields: Any) -> None:
        """Обновляет поля тикета (status, priority, flag)"""
        await self._call("UpdateTicket", {"ticketid": internal_id, **fields})

    async def get_attachment(self, related_id: str, scope: str, index: int,
                             timeout: Optional[float] = None) -> Tuple[str, bytes]:
        """Скачивает вложение тикета или ответа по индексу"""
        data = await self._call(
            "GetTicketAttachment",
            {"relatedid": related_id, "type": scope, "index": index},
            timeout=timeout,
        )
        encoded = data.get("data")
        if not encoded:
            raise WhmcsApiError(f"Attachment {scope}/{related_id}#{index} has no data")
        try:
            content = base64.b64decode(encoded)
        except (TypeError, ValueError) as e:
            raise WhmcsApiError(f"Attachment {scope}/{related_id}#{index} has invalid data") from e
        return data.get("filename") or "", content

    async def get_client(self, client_id: int) -> Optional[Dict[str, Any]]:
        data = await self._call("GetClientsDetails", {"clientid": client_id})
        return data.get("client")

    async def get_admin_users(self) -> List[Dict[str, Any]]:
        data = await self._call("GetAdminUsers")
        return data.get("admin_users") or []
