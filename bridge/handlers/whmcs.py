import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from bridge.container import BridgeContainer, get_container

router = APIRouter()
logger = logging.getLogger(__name__)


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Проверяет HMAC-SHA256 подпись тела запроса"""
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


async def _read_signed_payload(request: Request, container: BridgeContainer) -> Dict[str, Any]:
    body = await request.body()
    if not verify_signature(body, request.headers.get("X-WHMCS-Signature"), container.settings.WEBHOOK_SECRET):
        logger.warning("Неверная подпись вебхука WHMCS")
        raise HTTPException(status_code=401, detail="Invalid signature")
    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(payload, dict) or not payload.get("ticket_id"):
        raise HTTPException(status_code=400, detail="No ticket_id provided")
    return payload


@router.post("/webhook/ticket")
async def ticket_webhook(
    request: Request,
    container: BridgeContainer = Depends(get_container)
) -> Dict[str, str]:
    """
    Обработчик событий тикета от WHMCS (opened, updated, closed, deleted).
    Синхронизация ставится в очередь, ответ возвращается сразу.
    """
    payload = await _read_signed_payload(request, container)
    ticket_id = str(payload["ticket_id"])
    action = str(payload.get("action") or "")
    logger.info(f"Получен вебхук тикета: {action} для {ticket_id}")

    if container.events.on_ticket_event(action, ticket_id) is None:
        return {"status": "ok", "message": "Unhandled action"}
    return {"status": "ok"}


@router.post("/webhook/reply")
async def reply_webhook(
    request: Request,
    container: BridgeContainer = Depends(get_container)
) -> Dict[str, str]:
    """Обработчик нового ответа в тикете WHMCS"""
    payload = await _read_signed_payload(request, container)
    ticket_id = str(payload["ticket_id"])
    reply_id = payload.get("reply_id")
    logger.info(f"Получен вебхук ответа {reply_id} для тикета {ticket_id}")

    if await container.events.on_reply_event(ticket_id, str(reply_id) if reply_id else None) is None:
        return {"status": "ok", "message": "Already synced"}
    return {"status": "ok"}
