import logging
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

class Base(DeclarativeBase):
    pass

engine: Optional[AsyncEngine] = None
async_session: Optional[async_sessionmaker] = None

def create_session_factory(database_url: str) -> async_sessionmaker:
    """Создаёт движок и фабрику сессий для указанной базы"""
    global engine, async_session
    engine = create_async_engine(database_url, pool_pre_ping=True)
    async_session = async_sessionmaker(engine, expire_on_commit=False)
    return async_session

async def init_db(database_url: str) -> async_sessionmaker:
    """Подключается к базе и создаёт недостающие таблицы"""
    session_factory = create_session_factory(database_url)
    # Регистрируем модели в метаданных
    from bridge.models import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("База данных инициализирована")
    return session_factory

async def close_db() -> None:
    global engine, async_session
    if engine is not None:
        await engine.dispose()
        logger.info("Соединение с базой данных закрыто")
    engine = None
    async_session = None
