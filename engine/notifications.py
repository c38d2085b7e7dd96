"""Notification collaborator.

The engine decides *that* someone must be reminded; delivery (push, SMS,
e-mail) belongs to an external service plugged in through Notifier.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from loguru import logger


class Notifier(ABC):
    """Delivery interface for human-facing reminders."""

    @abstractmethod
    def notify(self, recipient: Optional[str], title: str, message: str,
               payload: Optional[Dict[str, Any]] = None) -> None:
        pass


class LogNotifier(Notifier):
    """Default notifier: writes reminders to the log."""

    def notify(self, recipient: Optional[str], title: str, message: str,
               payload: Optional[Dict[str, Any]] = None) -> None:
        logger.info(f"[notify:{recipient or 'unassigned'}] {title}: {message}")
