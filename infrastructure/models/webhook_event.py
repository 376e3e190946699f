"""
已处理的 webhook 事件 - 数据库幂等守卫的存储表
"""
from sqlalchemy import Column, String, DateTime
from datetime import datetime, timezone

from .base import Base


class ProcessedWebhookEventModel(Base):
    __tablename__ = "processed_webhook_events"

    event_key = Column(String(255), primary_key=True, comment="去重键: <provider>:<event id>")
    provider = Column(String(30), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
