"""
Webhook intake - verifies, de-duplicates and routes provider events.
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping, Optional

from application.dtos.ledger import WebhookAck
from application.dtos.payments import WebhookEvent, WebhookEventKind
from application.ports.idempotency import IdempotencyGuard
from application.ports.payment_gateway import PaymentGateway
from application.services.commission_service import CommissionApplicationService
from application.services.order_ledger_service import OrderLedgerApplicationService
from domain.common.exceptions import UnknownWebhookProviderException
from core.logging_config import get_logger


logger = get_logger(__name__)

Handler = Callable[[WebhookEvent], Awaitable[Any]]


class WebhookDispatcher:
    """
    Webhook dispatcher

    An event id is claimed before its handler runs and released again when
    the handler raises, so provider retries of a failed delivery are
    processed while duplicates of a handled one are acknowledged only.
    """

    def __init__(
        self,
        gateway_resolver: Callable[[str], PaymentGateway],
        guard: IdempotencyGuard,
        orders: OrderLedgerApplicationService,
        commissions: CommissionApplicationService,
        *,
        providers: tuple[str, ...] = ("stripe", "paypal", "mercadopago"),
    ):
        self._resolve_gateway = gateway_resolver
        self._guard = guard
        self._providers = providers
        self._handlers: dict[WebhookEventKind, Handler] = {
            WebhookEventKind.ORDER_APPROVED: orders.handle_order_approved,
            WebhookEventKind.PAYMENT_COMPLETED: orders.complete_payment,
            WebhookEventKind.PAYMENT_FAILED: orders.fail_payment,
            WebhookEventKind.PAYMENT_CANCELLED: orders.cancel_payment,
            WebhookEventKind.PAYMENT_REFUNDED: orders.refund_payment,
            WebhookEventKind.TRANSFER_CONFIRMED: commissions.handle_transfer_confirmed,
            WebhookEventKind.TRANSFER_REVERSED: commissions.handle_transfer_reversed,
            WebhookEventKind.ACCOUNT_UPDATED: commissions.handle_account_updated,
        }

    async def dispatch(self, provider: str, headers: Mapping[str, Any], body: bytes) -> WebhookAck:
        name = (provider or "").lower()
        if name not in self._providers:
            raise UnknownWebhookProviderException(provider)
        gateway = self._resolve_gateway(name)
        # signature failures propagate as PaymentSignatureError
        event = await gateway.parse_webhook(dict(headers), body)

        log = logger.bind(provider=name, event_id=event.id, event_type=event.type)
        if event.kind is None:
            log.info("webhook_ignored")
            return WebhookAck(status="ignored", event_id=event.id)

        key = event.dedup_key
        if not await self._guard.claim(key):
            log.info("webhook_duplicate")
            return WebhookAck(status="duplicate", event_id=event.id, kind=event.kind.value)

        try:
            await self._handlers[event.kind](event)
        except Exception:
            log.exception("webhook_handler_failed", kind=event.kind.value)
            await self._release(key)
            raise
        log.info("webhook_processed", kind=event.kind.value)
        return WebhookAck(status="processed", event_id=event.id, kind=event.kind.value)

    async def _release(self, key: str) -> None:
        try:
            await self._guard.release(key)
        except Exception as exc:
            logger.error("webhook_release_failed", event_key=key, error=str(exc))

    def handler_for(self, kind: WebhookEventKind) -> Optional[Handler]:
        return self._handlers.get(kind)
