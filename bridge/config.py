from pydantic_settings import BaseSettings
from typing import List, Optional

class Settings(BaseSettings):
    # Discord
    DISCORD_TOKEN: str
    DISCORD_GUILD_ID: str
    DISCORD_STAFF_ROLE_ID: str
    DISCORD_RELAY_TOKEN: str  # Токен шлюза, пересылающего события Discord в наши вебхуки

    # WHMCS
    WHMCS_API_URL: str
    WHMCS_API_IDENTIFIER: str
    WHMCS_API_SECRET: str
    WHMCS_ADMIN_PREFIX: str = "[Поддержка] "
    WEBHOOK_SECRET: str

    # PostgreSQL
    POSTGRES_USER: str = "bridge"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "bridge"
    DATABASE_URL: Optional[str] = None  # Если задан, перекрывает POSTGRES_*

    # Синхронизация
    SYNC_INTERVAL: int = 300  # Интервал периодической синхронизации в секундах
    SYNC_WORKERS: int = 4
    STATUS_CACHE_TTL: int = 600  # Время жизни кэша статусов WHMCS (10 минут)
    CLOSED_STATUSES: List[str] = ["Closed"]

    # Вложения
    ATTACHMENT_TEMP_DIR: str = "./temp"
    ATTACHMENT_MAX_SIZE: int = 25 * 1024 * 1024  # Лимит Discord 25MB
    ATTACHMENT_TIMEOUT: float = 30.0
    ATTACHMENT_RETRIES: int = 3
    ATTACHMENT_MAX_AGE: int = 3600  # Временные файлы старше часа удаляются

    # Дополнительные настройки
    RELAY_DELETE_DELAY: float = 2.0
    LOG_LEVEL: str = "INFO"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

settings = Settings()
