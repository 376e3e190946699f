"""Task modules grouped by domain.

Import side effects register Celery tasks once this package is imported.
"""
from . import orders  # noqa: F401 to register tasks
from . import payouts  # noqa: F401
from . import webhooks  # noqa: F401

__all__ = ["orders", "payouts", "webhooks"]
