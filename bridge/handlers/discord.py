import hmac
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from bridge.container import BridgeContainer, get_container
from bridge.services.commands import CommandRequest
from bridge.services.relay import ChatAttachment, ChatMessage

router = APIRouter()
logger = logging.getLogger(__name__)


class RelayEvent(BaseModel):
    token: str


class AttachmentPayload(BaseModel):
    filename: str
    url: str
    size: int = 0


class MessageEvent(RelayEvent):
    id: str
    channel_id: str
    author_id: str
    author_name: str
    content: str = ""
    attachments: List[AttachmentPayload] = Field(default_factory=list)
    is_bot: bool = False


class CommandEvent(RelayEvent):
    name: str
    channel_id: str
    user_id: str
    subcommand: Optional[str] = None
    options: Dict[str, str] = Field(default_factory=dict)


class ButtonEvent(RelayEvent):
    custom_id: str
    channel_id: str
    user_id: str


def check_token(event: RelayEvent, container: BridgeContainer) -> None:
    """Проверяет токен шлюза Discord"""
    if not hmac.compare_digest(event.token.encode(), container.settings.DISCORD_RELAY_TOKEN.encode()):
        logger.error("Неверный токен шлюза Discord")
        raise HTTPException(status_code=403, detail="Invalid token")


@router.post("/webhook/discord/message")
async def message_webhook(
    event: MessageEvent,
    container: BridgeContainer = Depends(get_container)
) -> Dict[str, str]:
    """
    Обработчик сообщений из каналов тикетов.
    Ответы персонала пересылаются в WHMCS, сообщения остальных удаляются.
    """
    check_token(event, container)
    message = ChatMessage(
        id=event.id,
        channel_id=event.channel_id,
        author_id=event.author_id,
        author_name=event.author_name,
        content=event.content,
        attachments=[ChatAttachment(a.filename, a.url, a.size) for a in event.attachments],
        is_bot=event.is_bot,
    )
    outcome = await container.relay.handle_message(message)
    return {"status": "ok", "result": outcome.value}


@router.post("/webhook/discord/command")
async def command_webhook(
    event: CommandEvent,
    container: BridgeContainer = Depends(get_container)
) -> Dict[str, str]:
    """Обработчик команд персонала"""
    check_token(event, container)
    logger.info(f"Команда {event.name} {event.subcommand or ''} от {event.user_id}")
    content = await container.commands.handle_command(CommandRequest(
        name=event.name,
        channel_id=event.channel_id,
        user_id=event.user_id,
        options=event.options,
        subcommand=event.subcommand,
    ))
    return {"status": "ok", "content": content}


@router.post("/webhook/discord/button")
async def button_webhook(
    event: ButtonEvent,
    container: BridgeContainer = Depends(get_container)
) -> Dict[str, str]:
    """Обработчик кнопок под карточкой тикета"""
    check_token(event, container)
    content = await container.commands.handle_button(event.custom_id, event.user_id)
    return {"status": "ok", "content": content}
