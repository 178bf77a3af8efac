import logging
import time
from typing import Callable, Dict, Iterable, List, Optional

from bridge.errors import BridgeError
from bridge.services.whmcs import WhmcsService

logger = logging.getLogger(__name__)

# Базовые статусы WHMCS на случай, если каталог недоступен
BASIC_STATUSES = ["Open", "Answered", "Customer-Reply", "Closed"]

STATUS_EMOJI: Dict[str, str] = {
    "Open": "🟢",
    "Answered": "💬",
    "Customer-Reply": "📨",
    "Closed": "🔒",
    "On Hold": "⏸️",
    "In Progress": "🔄",
    "Pending": "⏳",
    "Escalated": "🔺",
    "Resolved": "✅",
    "Cancelled": "❌",
}


class StatusManager:
    """Классифицирует статусы тикетов WHMCS на открытые и закрытые"""

    def __init__(self, whmcs: WhmcsService, ttl: float = 600,
                 closed_statuses: Iterable[str] = ("Closed",),
                 clock: Callable[[], float] = time.monotonic):
        self.whmcs = whmcs
        self.ttl = ttl
        self.closed_statuses = {s.strip().lower() for s in closed_statuses}
        self.clock = clock
        self._cache: Optional[List[str]] = None
        self._cache_expiry = 0.0

    async def get_all_statuses(self) -> List[str]:
        """Получает все статусы (основные и пользовательские) с кэшированием"""
        if self._cache is not None and self._cache_expiry > self.clock():
            return self._cache
        try:
            statuses = await self.whmcs.get_statuses()
        except BridgeError as e:
            logger.error(f"Не удалось получить статусы WHMCS: {e}")
            return self._cache or list(BASIC_STATUSES)
        if not statuses:
            statuses = list(BASIC_STATUSES)
        self._cache = statuses
        self._cache_expiry = self.clock() + self.ttl
        logger.info(f"Загружено {len(statuses)} статусов из WHMCS")
        return statuses

    def is_closed_like(self, status: Optional[str]) -> bool:
        return (status or "").strip().lower() in self.closed_statuses

    def is_open_like(self, status: Optional[str]) -> bool:
        return bool(status) and not self.is_closed_like(status)

    async def active_status_names(self) -> List[str]:
        """Названия статусов, тикеты в которых нужно синхронизировать"""
        return [s for s in await self.get_all_statuses() if self.is_open_like(s)]

    @staticmethod
    def status_emoji(status: Optional[str]) -> str:
        return STATUS_EMOJI.get(status or "", "❓")

    def clear_cache(self) -> None:
        self._cache = None
        self._cache_expiry = 0.0
        logger.info("Кэш статусов очищен")
