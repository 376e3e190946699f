"""
Payment provider webhooks.

Keep this thin: signature checks, dedup and routing live in WebhookDispatcher.
The body is read raw because signatures cover the exact bytes sent.
"""
from __future__ import annotations

import ipaddress

from fastapi import APIRouter, Depends, HTTPException, Request, status

from application.services.webhook_service import WebhookDispatcher
from api.dependencies import get_webhook_dispatcher
from core.logging_config import get_logger
from core.response import success_response
from core.settings import payment_settings


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


def _ip_permitted(remote_ip: str, allowlist: list[str]) -> bool:
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if "/" in entry:
                if rip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif rip == ipaddress.ip_address(entry):
                return True
        except ValueError:
            logger.warning("webhook_allowlist_entry_invalid", entry=entry)
    return False


@router.post("/webhooks/{provider}", summary="Receive a provider webhook")
async def receive_webhook(
    provider: str,
    request: Request,
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
):
    allowlist = payment_settings.webhook.ip_allowlist or []
    if allowlist:
        remote_ip = request.client.host if request.client else ""
        if not _ip_permitted(remote_ip, allowlist):
            logger.warning("webhook_ip_rejected", provider=provider, remote_ip=remote_ip)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Source address not allowed")

    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}
    ack = await dispatcher.dispatch(provider, headers, raw_body)
    return success_response(data=ack.model_dump(), message=f"Webhook {ack.status}")
