"""Celery beat schedule.

The reconciliation sweep follows PAYOUT__SWEEP_INTERVAL_SECONDS; expired
webhook dedup markers are purged every WEBHOOK__PURGE_INTERVAL_SECONDS.
"""
from __future__ import annotations

from core.settings import payment_settings


def build_beat_schedule(interval_seconds: int, purge_interval_seconds: int = 3600) -> dict:
    return {
        "payouts-reconcile": {
            "task": "payouts.reconcile",
            "schedule": float(interval_seconds),
            # a run that waited longer than one interval is superseded by the next
            "options": {"queue": "payouts", "expires": float(interval_seconds)},
        },
        "webhooks-purge-expired": {
            "task": "webhooks.purge_expired",
            "schedule": float(purge_interval_seconds),
            "options": {"queue": "default", "expires": float(purge_interval_seconds)},
        },
    }


CELERY_BEAT_SCHEDULE = build_beat_schedule(
    payment_settings.payout.sweep_interval_seconds,
    payment_settings.webhook.purge_interval_seconds,
)
