import asyncio
import base64
import logging
import os
import secrets
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

from bridge.errors import MalformedDataError, RemoteApiError, TransientError
from bridge.services.discord import DiscordFile
from bridge.services.whmcs import WhmcsService

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = [
    '.jpg', '.jpeg', '.png', '.gif', '.webp', '.svg',
    '.pdf', '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx',
    '.txt', '.rtf', '.csv', '.zip', '.rar', '.7z',
    '.mp3', '.mp4', '.avi', '.mov', '.wmv',
]


@dataclass
class TicketContext:
    ticket_id: str
    internal_id: Optional[int]
    reply_id: Optional[str] = None


@dataclass
class StagedAttachments:
    files: List[DiscordFile] = field(default_factory=list)
    unavailable: List[str] = field(default_factory=list)


class AttachmentRejected(Exception):
    """Вложение не прошло проверку типа или размера"""


class AttachmentPipeline:
    """Скачивает вложения из WHMCS и готовит их к отправке в Discord"""

    def __init__(self, whmcs: WhmcsService, temp_dir: str,
                 max_file_size: int = 25 * 1024 * 1024,
                 allowed_extensions: Iterable[str] = ALLOWED_EXTENSIONS,
                 timeout: float = 30.0, retries: int = 3, backoff: float = 1.0,
                 max_age: float = 3600):
        self.whmcs = whmcs
        self.temp_dir = temp_dir
        self.max_file_size = max_file_size
        self.allowed_extensions = {ext.lower() for ext in allowed_extensions}
        self.timeout = timeout
        self.retries = max(1, retries)
        self.backoff = backoff
        self.max_age = max_age

    def is_allowed_file(self, filename: str) -> bool:
        return os.path.splitext(filename)[1].lower() in self.allowed_extensions

    def is_file_size_allowed(self, size: int) -> bool:
        return size <= self.max_file_size

    @asynccontextmanager
    async def stage(self, attachments: List[Dict[str, Any]],
                    context: TicketContext) -> AsyncIterator[StagedAttachments]:
        """Готовит вложения ответа; все временные файлы удаляются при выходе из блока"""
        staged = StagedAttachments()
        try:
            for descriptor in attachments:
                name = self._display_name(descriptor)
                try:
                    staged.files.append(await self._stage_one(descriptor, context))
                except MalformedDataError as e:
                    logger.warning(f"Неизвестный формат вложения в тикете {context.ticket_id}: {e}")
                    staged.unavailable.append(name)
                except AttachmentRejected as e:
                    logger.warning(f"Вложение {name} тикета {context.ticket_id} пропущено: {e}")
                    staged.unavailable.append(name)
                except (TransientError, RemoteApiError) as e:
                    logger.error(f"Не удалось получить вложение {name} тикета {context.ticket_id}: {e}")
                    staged.unavailable.append(name)
            yield staged
        finally:
            for staged_file in staged.files:
                await self._remove(staged_file.path)

    @staticmethod
    def _display_name(descriptor: Any) -> str:
        if isinstance(descriptor, dict):
            return str(descriptor.get('filename') or descriptor.get('name') or 'attachment')
        return 'attachment'

    async def _stage_one(self, descriptor: Any, context: TicketContext) -> DiscordFile:
        filename, data = await self._fetch(descriptor, context)
        if not self.is_file_size_allowed(len(data)):
            raise AttachmentRejected(f"file is too large ({len(data)} bytes)")
        path = await self._write_temp(data, filename)
        logger.info(f"Вложение {filename} подготовлено ({len(data)} байт)")
        return DiscordFile(path=path, filename=filename, description='Вложение из тикета WHMCS')

    async def _fetch(self, descriptor: Any, context: TicketContext) -> Tuple[str, bytes]:
        if not isinstance(descriptor, dict):
            raise MalformedDataError(repr(descriptor))

        if descriptor.get('filename') and descriptor.get('index') is not None:
            filename, index = str(descriptor['filename']), descriptor['index']
        elif descriptor.get('id') is not None and descriptor.get('filename'):
            filename, index = str(descriptor['filename']), descriptor['id']
        elif descriptor.get('data') and descriptor.get('name'):
            filename = str(descriptor['name'])
            self._check_declared(filename, descriptor)
            try:
                return filename, base64.b64decode(descriptor['data'])
            except (ValueError, TypeError) as e:
                raise MalformedDataError(f"invalid base64 in {filename}") from e
        else:
            raise MalformedDataError(f"keys: {sorted(descriptor)}")

        self._check_declared(filename, descriptor)
        try:
            index = int(index)
        except (TypeError, ValueError) as e:
            raise MalformedDataError(f"invalid index {index!r} for {filename}") from e
        data = await self._fetch_with_strategies(index, context)
        return filename, data

    def _check_declared(self, filename: str, descriptor: Dict[str, Any]) -> None:
        if not self.is_allowed_file(filename):
            raise AttachmentRejected("extension is not allowed")
        size = descriptor.get('size')
        if size is None:
            return
        try:
            size = int(size)
        except (TypeError, ValueError) as e:
            raise MalformedDataError(f"invalid size {size!r} for {filename}") from e
        if not self.is_file_size_allowed(size):
            raise AttachmentRejected(f"file is too large ({size} bytes)")

    def _strategies(self, context: TicketContext) -> List[Tuple[str, str]]:
        """Порядок поиска: сначала в ответе, затем в самом тикете"""
        strategies = []
        if context.reply_id is not None:
            strategies.append(('reply', str(context.reply_id)))
        if context.internal_id is not None:
            strategies.append(('ticket', str(context.internal_id)))
        return strategies

    async def _fetch_with_strategies(self, index: int, context: TicketContext) -> bytes:
        strategies = self._strategies(context)
        if not strategies:
            raise RemoteApiError(f"no lookup scope for ticket {context.ticket_id}")

        last_error: Optional[Exception] = None
        for scope, related_id in strategies:
            try:
                return await self._fetch_with_retries(scope, related_id, index)
            except (TransientError, RemoteApiError) as e:
                logger.info(f"Вложение #{index} не найдено через {scope}/{related_id}: {e}")
                last_error = e
        raise last_error

    async def _fetch_with_retries(self, scope: str, related_id: str, index: int) -> bytes:
        for attempt in range(self.retries):
            try:
                _, data = await asyncio.wait_for(
                    self.whmcs.get_attachment(related_id, scope, index, timeout=self.timeout),
                    timeout=self.timeout,
                )
                return data
            except (TransientError, asyncio.TimeoutError) as e:
                if attempt == self.retries - 1:
                    raise TransientError(f"{scope}/{related_id}#{index}: {e}") from e
                delay = self.backoff * (2 ** attempt)
                logger.warning(
                    f"Попытка {attempt + 1}/{self.retries} скачать вложение не удалась, повтор через {delay} сек."
                )
                await asyncio.sleep(delay)
        raise TransientError(f"{scope}/{related_id}#{index}: no attempts made")

    async def _write_temp(self, data: bytes, filename: str) -> str:
        extension = os.path.splitext(filename)[1]
        path = os.path.join(self.temp_dir, f"{secrets.token_hex(16)}{extension}")

        def write() -> None:
            os.makedirs(self.temp_dir, exist_ok=True)
            with open(path, 'wb') as handle:
                handle.write(data)

        await asyncio.to_thread(write)
        return path

    async def _remove(self, path: str) -> None:
        try:
            await asyncio.to_thread(os.remove, path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Не удалось удалить временный файл {path}: {e}")

    async def cleanup_stale(self) -> int:
        """Удаляет временные файлы старше max_age"""

        def sweep() -> int:
            if not os.path.isdir(self.temp_dir):
                return 0
            removed = 0
            now = time.time()
            for entry in os.scandir(self.temp_dir):
                if not entry.is_file():
                    continue
                try:
                    if now - entry.stat().st_mtime > self.max_age:
                        os.remove(entry.path)
                        removed += 1
                except OSError as e:
                    logger.warning(f"Не удалось удалить старый временный файл {entry.name}: {e}")
            return removed

        removed = await asyncio.to_thread(sweep)
        if removed:
            logger.info(f"Удалено {removed} устаревших временных файлов")
        return removed
