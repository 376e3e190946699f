"""
已处理 webhook 事件记录 - SQLAlchemy 实现
"""
from datetime import datetime

from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from domain.common.exceptions import WebhookEventClaimedException
from infrastructure.models.webhook_event import ProcessedWebhookEventModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyWebhookEventRepository:

    def __init__(self, session: AsyncSession):
        self.session = session

    async def exists(self, event_key: str, now: datetime) -> bool:
        result = await self.session.execute(
            select(ProcessedWebhookEventModel.event_key).where(
                ProcessedWebhookEventModel.event_key == event_key,
                ProcessedWebhookEventModel.expires_at > now,
            )
        )
        return result.scalar_one_or_none() is not None

    async def claim(self, event_key: str, provider: str, *, now: datetime, expires_at: datetime) -> None:
        """写入标记；已有未过期标记时抛出 WebhookEventClaimedException"""
        # 已过期的标记不再占用该键
        await self.session.execute(
            delete(ProcessedWebhookEventModel).where(
                ProcessedWebhookEventModel.event_key == event_key,
                ProcessedWebhookEventModel.expires_at <= now,
            )
        )
        try:
            self.session.add(ProcessedWebhookEventModel(
                event_key=event_key,
                provider=provider,
                expires_at=expires_at,
                created_at=now,
            ))
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            logger.info("webhook_event_already_claimed", event_key=event_key)
            raise WebhookEventClaimedException(event_key)

    async def release(self, event_key: str) -> None:
        await self.session.execute(
            delete(ProcessedWebhookEventModel).where(ProcessedWebhookEventModel.event_key == event_key)
        )

    async def purge_expired(self, now: datetime) -> int:
        result = await self.session.execute(
            delete(ProcessedWebhookEventModel).where(ProcessedWebhookEventModel.expires_at <= now)
        )
        return result.rowcount or 0
