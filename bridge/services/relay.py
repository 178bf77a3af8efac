import asyncio
import base64
import enum
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from bridge.errors import BridgeError, FatalError, MissingInternalIdError
from bridge.models.models import TicketMapping
from bridge.services.discord import DiscordService
from bridge.services.mapping_store import MappingStore
from bridge.services.sync_ledger import SyncLedger
from bridge.services.whmcs import WhmcsService

logger = logging.getLogger(__name__)

RELAY_ALLOWED_EXTENSIONS = ['.jpg', '.gif', '.jpeg', '.png', '.txt', '.pdf']
RELAY_MAX_ATTACHMENT_SIZE = 2 * 1024 * 1024
NOTICE_LIFETIME = 5.0
WARNING_LIFETIME = 10.0


@dataclass
class ChatAttachment:
    filename: str
    url: str
    size: int = 0


@dataclass
class ChatMessage:
    id: str
    channel_id: str
    author_id: str
    author_name: str
    content: str = ""
    attachments: List[ChatAttachment] = field(default_factory=list)
    is_bot: bool = False


class RelayOutcome(str, enum.Enum):
    IGNORED = "ignored"
    REJECTED = "rejected"
    RELAYED = "relayed"
    FAILED = "failed"


class ReplyRelay:
    """Пересылает ответы персонала из канала Discord в тикет WHMCS"""

    def __init__(self, discord: DiscordService, whmcs: WhmcsService, store: MappingStore,
                 ledger: SyncLedger, request_sync: Callable[[str], Any],
                 admin_prefix: str = "[Поддержка] ", delete_delay: float = 2.0,
                 allowed_extensions: Iterable[str] = RELAY_ALLOWED_EXTENSIONS,
                 max_attachment_size: int = RELAY_MAX_ATTACHMENT_SIZE,
                 download_timeout: float = 30.0):
        self.discord = discord
        self.whmcs = whmcs
        self.store = store
        self.ledger = ledger
        self.request_sync = request_sync
        self.admin_prefix = admin_prefix
        self.delete_delay = delete_delay
        self.allowed_extensions = [ext.lower() for ext in allowed_extensions]
        self.max_attachment_size = max_attachment_size
        self.download_timeout = download_timeout
        self._background: Set[asyncio.Task] = set()

    async def handle_message(self, message: ChatMessage) -> RelayOutcome:
        """Обрабатывает новое сообщение в канале Discord"""
        if message.is_bot:
            return RelayOutcome.IGNORED

        mapping = await self.store.get_ticket_mapping_by_channel(message.channel_id)
        if not mapping:
            return RelayOutcome.IGNORED

        if not await self.discord.is_staff_member(message.author_id):
            await self.discord.delete_message(message.channel_id, message.id)
            await self._notice(message.channel_id, "Отвечать в тикетах может только персонал поддержки.")
            logger.info(f"Сообщение {message.author_name} в канале тикета {mapping.whmcs_ticket_id} удалено")
            return RelayOutcome.REJECTED

        try:
            return await self._relay(message, mapping)
        except MissingInternalIdError as e:
            logger.error(str(e))
            await self._fail(message, "Не удалось отправить ответ: у тикета ещё нет внутреннего ID WHMCS.")
            # Следующая синхронизация заполнит внутренний ID
            self.request_sync(mapping.whmcs_ticket_id)
            return RelayOutcome.FAILED
        except FatalError:
            raise
        except BridgeError as e:
            logger.error(f"Не удалось отправить ответ в тикет {mapping.whmcs_ticket_id}: {e}")
            await self._fail(message, "Не удалось отправить ответ в WHMCS.")
            return RelayOutcome.FAILED

    async def _relay(self, message: ChatMessage, mapping: TicketMapping) -> RelayOutcome:
        if not mapping.whmcs_internal_id:
            raise MissingInternalIdError(mapping.whmcs_ticket_id)

        content = message.content or ""
        attachments: List[Dict[str, str]] = []
        invalid_files: List[str] = []

        for attachment in message.attachments:
            extension = os.path.splitext(attachment.filename)[1].lower()
            if extension not in self.allowed_extensions:
                logger.warning(f"Вложение {attachment.filename} имеет недопустимый тип: {extension}")
                invalid_files.append(f"{attachment.filename} (недопустимый тип файла: {extension})")
                continue
            if attachment.size > self.max_attachment_size:
                size_mb = attachment.size / 1024 / 1024
                logger.warning(f"Вложение {attachment.filename} слишком большое: {size_mb:.2f} МБ")
                invalid_files.append(f"{attachment.filename} (слишком большой: {size_mb:.2f} МБ)")
                continue
            try:
                data = await self.discord.download_attachment(attachment.url, timeout=self.download_timeout)
            except FatalError:
                raise
            except BridgeError as e:
                logger.error(f"Не удалось скачать вложение {attachment.filename}: {e}")
                content = self._append(content, f"📎 {attachment.filename} (не удалось загрузить, ссылка: {attachment.url})")
                continue
            attachments.append({"name": attachment.filename, "data": base64.b64encode(data).decode()})

        if attachments:
            content = self._append(content, f"📎 Прикреплено файлов: {len(attachments)}")

        if invalid_files:
            allowed = ", ".join(self.allowed_extensions)
            limit_mb = self.max_attachment_size // 1024 // 1024
            await self._notice(
                message.channel_id,
                "⚠️ **Не все файлы загружены в WHMCS**\n"
                + "\n".join(f"• {f}" for f in invalid_files)
                + f"\n\nДопустимы: {allowed}, не больше {limit_mb} МБ",
                lifetime=WARNING_LIFETIME,
                reply_to=message.id,
            )

        if not content.strip():
            logger.warning("Пустое сообщение без вложений, пропускаем")
            await self.discord.add_reaction(message.channel_id, message.id, "⚠️")
            return RelayOutcome.IGNORED

        reply_id = await self.whmcs.add_reply(
            mapping.whmcs_internal_id,
            content,
            f"{self.admin_prefix}{message.author_name}",
            attachments,
        )
        await self.ledger.record_chat_to_source(mapping.whmcs_ticket_id, reply_id, message.id)
        logger.info(
            f"Сообщение {message.id} отправлено в тикет {mapping.whmcs_ticket_id} как ответ {reply_id}"
        )

        await self.discord.add_reaction(message.channel_id, message.id, "✅")
        # Исходное сообщение заменит оформленный ответ из WHMCS
        self._later(self.delete_delay, message.channel_id, message.id)
        self.request_sync(mapping.whmcs_ticket_id)
        return RelayOutcome.RELAYED

    @staticmethod
    def _append(content: str, line: str) -> str:
        return f"{content}\n\n{line}" if content else line

    async def _fail(self, message: ChatMessage, text: str) -> None:
        try:
            await self.discord.add_reaction(message.channel_id, message.id, "❌")
            await self._notice(message.channel_id, text)
        except BridgeError as e:
            logger.warning(f"Не удалось сообщить об ошибке в канал {message.channel_id}: {e}")

    async def _notice(self, channel_id: str, text: str, lifetime: float = NOTICE_LIFETIME,
                      reply_to: Optional[str] = None) -> None:
        """Отправляет служебное сообщение, которое удалится само"""
        notice_id = await self.discord.send_message(channel_id, content=text, reply_to=reply_to)
        self._later(lifetime, channel_id, notice_id)

    def _later(self, delay: float, channel_id: str, message_id: str) -> None:
        """Удаляет сообщение через delay секунд, не блокируя обработку"""

        async def run() -> None:
            await asyncio.sleep(delay)
            try:
                await self.discord.delete_message(channel_id, message_id)
            except BridgeError as e:
                logger.warning(f"Отложенное удаление сообщения не удалось: {e}")

        task = asyncio.create_task(run())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def close(self) -> None:
        """Отменяет отложенные удаления при остановке"""
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()
