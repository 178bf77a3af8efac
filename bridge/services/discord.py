import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

import aiohttp

from bridge.errors import AuthenticationError, DiscordApiError, TransientError

logger = logging.getLogger(__name__)

API_BASE = "https://discord.com/api/v10"

CHANNEL_TYPE_TEXT = 0
CHANNEL_TYPE_CATEGORY = 4

OVERWRITE_ROLE = 0

VIEW_CHANNEL = 1 << 10
SEND_MESSAGES = 1 << 11
MANAGE_MESSAGES = 1 << 13
READ_MESSAGE_HISTORY = 1 << 16
MANAGE_CHANNELS = 1 << 4

STAFF_CHANNEL_PERMISSIONS = VIEW_CHANNEL | SEND_MESSAGES | READ_MESSAGE_HISTORY | MANAGE_MESSAGES
STAFF_CATEGORY_PERMISSIONS = VIEW_CHANNEL | SEND_MESSAGES | READ_MESSAGE_HISTORY | MANAGE_CHANNELS


@dataclass
class DiscordFile:
    """Файл, подготовленный к отправке в канал"""
    path: str
    filename: str
    description: Optional[str] = None


class DiscordService:
    def __init__(self, token: str, guild_id: str, staff_role_id: str,
                 timeout: float = 30.0, max_rate_limit_retries: int = 3):
        self.guild_id = guild_id
        self.staff_role_id = staff_role_id
        self.headers = {
            "Authorization": f"Bot {token}",
        }
        self.timeout = timeout
        self.max_rate_limit_retries = max_rate_limit_retries

    async def _request(self, method: str, path: str, *, json_body: Any = None,
                       form: Optional[Callable[[], aiohttp.FormData]] = None, reason: Optional[str] = None) -> Any:
        """Выполняет запрос к Discord REST API с учётом rate limit"""
        url = f"{API_BASE}{path}"
        headers = dict(self.headers)
        if reason:
            headers["X-Audit-Log-Reason"] = quote(reason)
        client_timeout = aiohttp.ClientTimeout(total=self.timeout)

        for attempt in range(self.max_rate_limit_retries + 1):
            try:
                async with aiohttp.ClientSession(timeout=client_timeout) as session:
                    data = form() if form else None
                    async with session.request(method, url, json=json_body, data=data, headers=headers) as response:
                        if response.status == 429 and attempt < self.max_rate_limit_retries:
                            body = await response.json(content_type=None)
                            retry_after = float(body.get("retry_after", 1.0))
                            logger.warning(f"Discord rate limit на {method} {path}, ждём {retry_after} сек.")
                            await asyncio.sleep(retry_after)
                            continue
                        if response.status == 401:
                            raise AuthenticationError("Discord rejected the bot token")
                        if response.status == 204:
                            return None
                        text = await response.text()
                        if response.status >= 400:
                            raise DiscordApiError(
                                f"{method} {path} failed: {response.status} {text}",
                                status=response.status,
                            )
                        return json.loads(text) if text else None
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise TransientError(f"Discord {method} {path} failed: {e}") from e
        raise DiscordApiError(f"{method} {path} is rate limited", status=429)

    async def verify(self) -> Dict[str, Any]:
        """Проверяет токен бота и доступ к серверу"""
        user = await self._request("GET", "/users/@me")
        guild = await self._request("GET", f"/guilds/{self.guild_id}")
        logger.info(f"Discord бот {user.get('username')} подключён к серверу {guild.get('name')}")
        return guild

    def build_overwrites(self, role_ids: List[str], category: bool = False) -> List[Dict[str, Any]]:
        """Полный набор прав: @everyone не видит канал, персонал и роли отдела видят"""
        staff_allow = STAFF_CATEGORY_PERMISSIONS if category else STAFF_CHANNEL_PERMISSIONS
        overwrites = [
            {"id": self.guild_id, "type": OVERWRITE_ROLE, "allow": "0", "deny": str(VIEW_CHANNEL)},
            {"id": self.staff_role_id, "type": OVERWRITE_ROLE, "allow": str(staff_allow), "deny": "0"},
        ]
        for role_id in role_ids:
            if role_id in (self.guild_id, self.staff_role_id):
                continue
            overwrites.append(
                {"id": role_id, "type": OVERWRITE_ROLE, "allow": str(STAFF_CHANNEL_PERMISSIONS), "deny": "0"}
            )
        return overwrites

    async def list_channels(self) -> List[Dict[str, Any]]:
        return await self._request("GET", f"/guilds/{self.guild_id}/channels") or []

    async def get_category_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        for channel in await self.list_channels():
            if channel.get("type") == CHANNEL_TYPE_CATEGORY and channel.get("name") == name:
                return channel
        return None

    async def create_category(self, name: str) -> Dict[str, Any]:
        category = await self._request("POST", f"/guilds/{self.guild_id}/channels", json_body={
            "name": name,
            "type": CHANNEL_TYPE_CATEGORY,
            "permission_overwrites": self.build_overwrites([], category=True),
        })
        logger.info(f"Создана категория: {category['name']}")
        return category

    async def create_ticket_channel(self, category_id: str, name: str, topic: str = "",
                                    role_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        """Создаёт текстовый канал тикета в категории отдела"""
        role_ids = role_ids or []
        channel = await self._request("POST", f"/guilds/{self.guild_id}/channels", json_body={
            "name": name,
            "type": CHANNEL_TYPE_TEXT,
            "parent_id": category_id,
            "topic": topic[:1024],
            "permission_overwrites": self.build_overwrites(role_ids),
        })
        logger.info(f"Создан канал тикета: {channel['name']} (ролей отдела: {len(role_ids)})")
        return channel

    async def get_channel(self, channel_id: str) -> Optional[Dict[str, Any]]:
        """Получает канал; None означает, что канала больше нет"""
        try:
            return await self._request("GET", f"/channels/{channel_id}")
        except DiscordApiError as e:
            if e.status == 404:
                return None
            raise

    async def rename_channel(self, channel_id: str, name: str) -> None:
        await self._request("PATCH", f"/channels/{channel_id}", json_body={"name": name})
        logger.info(f"Канал {channel_id} переименован в {name}")

    async def update_channel_permissions(self, channel_id: str, role_ids: List[str]) -> None:
        """Заменяет набор прав канала целиком"""
        await self._request("PATCH", f"/channels/{channel_id}", json_body={
            "permission_overwrites": self.build_overwrites(role_ids),
        })

    async def delete_channel(self, channel_id: str, reason: Optional[str] = None) -> bool:
        """Удаляет канал; False, если его уже нет"""
        try:
            await self._request("DELETE", f"/channels/{channel_id}", reason=reason)
        except DiscordApiError as e:
            if e.status == 404:
                logger.warning(f"Канал {channel_id} не найден для удаления")
                return False
            raise
        logger.info(f"Канал {channel_id} удалён")
        return True

    async def send_message(self, channel_id: str, content: Optional[str] = None,
                           embeds: Optional[List[Dict[str, Any]]] = None,
                           components: Optional[List[Dict[str, Any]]] = None,
                           files: Optional[List[DiscordFile]] = None,
                           reply_to: Optional[str] = None) -> str:
        """Отправляет сообщение и возвращает его ID"""
        payload: Dict[str, Any] = {}
        if content:
            payload["content"] = content
        if embeds:
            payload["embeds"] = embeds
        if components:
            payload["components"] = components
        if reply_to:
            payload["message_reference"] = {"message_id": reply_to}

        if not files:
            message = await self._request("POST", f"/channels/{channel_id}/messages", json_body=payload)
            return message["id"]

        payload["attachments"] = [
            {"id": index, "filename": f.filename, **({"description": f.description} if f.description else {})}
            for index, f in enumerate(files)
        ]

        def read_files() -> List[Tuple[str, bytes]]:
            contents = []
            for f in files:
                with open(f.path, "rb") as handle:
                    contents.append((f.filename, handle.read()))
            return contents

        contents = await asyncio.to_thread(read_files)

        def build_form() -> aiohttp.FormData:
            # FormData нельзя отправить дважды, при повторе после 429 собираем заново
            form = aiohttp.FormData()
            form.add_field("payload_json", json.dumps(payload), content_type="application/json")
            for index, (filename, data) in enumerate(contents):
                form.add_field(f"files[{index}]", data, filename=filename)
            return form

        message = await self._request("POST", f"/channels/{channel_id}/messages", form=build_form)
        return message["id"]

    async def delete_message(self, channel_id: str, message_id: str) -> None:
        try:
            await self._request("DELETE", f"/channels/{channel_id}/messages/{message_id}")
        except DiscordApiError as e:
            if e.status != 404:
                raise

    async def add_reaction(self, channel_id: str, message_id: str, emoji: str) -> None:
        await self._request("PUT", f"/channels/{channel_id}/messages/{message_id}/reactions/{quote(emoji)}/@me")

    async def is_staff_member(self, user_id: str) -> bool:
        try:
            member = await self._request("GET", f"/guilds/{self.guild_id}/members/{user_id}")
        except DiscordApiError as e:
            if e.status == 404:
                return False
            raise
        return self.staff_role_id in (member.get("roles") or [])

    async def download_attachment(self, url: str, timeout: float = 30.0) -> bytes:
        """Скачивает вложение сообщения Discord по CDN-ссылке"""
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        raise DiscordApiError(f"Attachment download failed: {response.status}", status=response.status)
                    return await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientError(f"Attachment download failed: {e}") from e
