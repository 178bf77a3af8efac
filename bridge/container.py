from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from bridge.config import Settings
from bridge.services.attachments import AttachmentPipeline
from bridge.services.commands import CommandService
from bridge.services.discord import DiscordService
from bridge.services.events import TicketEvents
from bridge.services.mapping_store import MappingStore
from bridge.services.permissions import PermissionService
from bridge.services.relay import ReplyRelay
from bridge.services.scheduler import SyncScheduler
from bridge.services.status_manager import StatusManager
from bridge.services.sync_ledger import SyncLedger
from bridge.services.sync_queue import TicketSyncQueue
from bridge.services.sync_service import SyncService
from bridge.services.whmcs import WhmcsService


@dataclass
class BridgeContainer:
    settings: Settings
    whmcs: WhmcsService
    discord: DiscordService
    store: MappingStore
    ledger: SyncLedger
    statuses: StatusManager
    attachments: AttachmentPipeline
    sync_service: SyncService
    queue: TicketSyncQueue
    scheduler: SyncScheduler
    events: TicketEvents
    permissions: PermissionService
    relay: ReplyRelay
    commands: CommandService


def build_container(config: Settings, session_factory: async_sessionmaker) -> BridgeContainer:
    """Собирает все сервисы моста; единственное место, где они создаются"""
    whmcs = WhmcsService(config.WHMCS_API_URL, config.WHMCS_API_IDENTIFIER, config.WHMCS_API_SECRET)
    discord = DiscordService(config.DISCORD_TOKEN, config.DISCORD_GUILD_ID, config.DISCORD_STAFF_ROLE_ID)
    store = MappingStore(session_factory)
    ledger = SyncLedger(session_factory)
    statuses = StatusManager(whmcs, ttl=config.STATUS_CACHE_TTL, closed_statuses=config.CLOSED_STATUSES)
    attachments = AttachmentPipeline(
        whmcs,
        temp_dir=config.ATTACHMENT_TEMP_DIR,
        max_file_size=config.ATTACHMENT_MAX_SIZE,
        timeout=config.ATTACHMENT_TIMEOUT,
        retries=config.ATTACHMENT_RETRIES,
        max_age=config.ATTACHMENT_MAX_AGE,
    )
    sync_service = SyncService(whmcs, discord, store, ledger, statuses, attachments)
    queue = TicketSyncQueue(sync_service.sync_one, workers=config.SYNC_WORKERS)
    scheduler = SyncScheduler(
        sync_service, queue, store, statuses, whmcs, attachments, interval=config.SYNC_INTERVAL
    )
    permissions = PermissionService(store, discord, whmcs)
    relay = ReplyRelay(
        discord, whmcs, store, ledger,
        request_sync=queue.submit,
        admin_prefix=config.WHMCS_ADMIN_PREFIX,
        delete_delay=config.RELAY_DELETE_DELAY,
    )
    commands = CommandService(
        store, whmcs, discord, permissions,
        request_sync=queue.submit,
        run_sync=queue.run,
        sync_all=scheduler.sync_all,
    )
    return BridgeContainer(
        settings=config,
        whmcs=whmcs,
        discord=discord,
        store=store,
        ledger=ledger,
        statuses=statuses,
        attachments=attachments,
        sync_service=sync_service,
        queue=queue,
        scheduler=scheduler,
        events=TicketEvents(queue, ledger),
        permissions=permissions,
        relay=relay,
        commands=commands,
    )


def get_container(request: Request) -> BridgeContainer:
    """Зависимость FastAPI: контейнер сервисов приложения"""
    return request.app.state.container
