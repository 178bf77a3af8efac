import asyncio
import logging
from typing import Dict, Optional

from fastapi import FastAPI

from bridge.config import settings
from bridge.container import BridgeContainer, build_container
from bridge.database import close_db, init_db
from bridge.errors import BridgeError, FatalError
from bridge.handlers import discord, whmcs

logger = logging.getLogger(__name__)

app = FastAPI(title="WHMCS Discord Bridge")
initial_sync_task: Optional[asyncio.Task] = None

# Регистрация роутеров вебхуков WHMCS и шлюза Discord
app.include_router(whmcs.router, prefix="/api")
app.include_router(discord.router, prefix="/api")


async def verify_credentials(container: BridgeContainer) -> None:
    """Проверяет доступ к WHMCS и Discord; без него работать нельзя"""
    try:
        await container.whmcs.verify()
        await container.discord.verify()
    except FatalError:
        logger.critical("Учётные данные WHMCS или Discord отклонены")
        raise
    except BridgeError as e:
        raise FatalError(f"Startup check failed: {e}") from e


async def initial_sync(container: BridgeContainer) -> None:
    """Первая полная синхронизация, после неё запускается периодическая"""
    try:
        count = await container.scheduler.sync_all()
        logger.info(f"Начальная синхронизация завершена: {count} тикетов")
    except FatalError:
        logger.critical("Фатальная ошибка начальной синхронизации", exc_info=True)
        raise
    except Exception as e:
        logger.error(f"Ошибка начальной синхронизации: {e}", exc_info=True)
    container.scheduler.start()


@app.on_event("startup")
async def startup_event():
    global initial_sync_task
    session_factory = await init_db(settings.database_url)
    container = build_container(settings, session_factory)
    app.state.container = container

    await verify_credentials(container)
    container.queue.start()
    initial_sync_task = asyncio.create_task(initial_sync(container))
    logger.info("Мост WHMCS ⇄ Discord запущен")


@app.on_event("shutdown")
async def shutdown_event():
    global initial_sync_task
    logger.info("Начало процесса завершения работы...")
    container: Optional[BridgeContainer] = getattr(app.state, "container", None)

    if initial_sync_task:
        initial_sync_task.cancel()
        try:
            await initial_sync_task
        except asyncio.CancelledError:
            pass
        except FatalError:
            logger.error("Начальная синхронизация завершилась фатальной ошибкой")
        initial_sync_task = None

    if container is not None:
        await container.scheduler.stop()
        await container.queue.stop()
        await container.relay.close()
    await close_db()
    logger.info("Завершение работы выполнено успешно")


@app.get("/health")
async def health() -> Dict[str, str]:
    container: Optional[BridgeContainer] = getattr(app.state, "container", None)
    if container is None or not container.queue.running:
        return {"status": "starting"}
    return {"status": "ok"}
