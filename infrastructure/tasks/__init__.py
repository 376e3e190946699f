"""Celery task infrastructure package.

Importing this module wires together the configured Celery app and the
dispatcher that the application layer sees through LedgerTaskDispatcher.
"""
from .config.celery import celery_app
from .utils.dispatcher import CeleryTaskDispatcher

__all__ = ["celery_app", "CeleryTaskDispatcher"]
