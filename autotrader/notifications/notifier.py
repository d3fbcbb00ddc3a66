"""Strategy notifications.

Delivery is fire-and-forget: ``NotificationDispatcher.notify`` schedules the
send as a background task and returns immediately. A failing notifier is
logged and never propagates into the trading loop.
"""
import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

import structlog
from pydantic import BaseModel, Field

from autotrader.core.config import NotificationConfig, notification_config
from autotrader.core.models import NotificationSettings

logger = structlog.get_logger(__name__)


class NotificationType(str, Enum):
    TRADE_EXECUTED = "trade_executed"
    ERROR = "error"
    RISK_BREACH = "risk_breach"
    EMERGENCY_STOP = "emergency_stop"
    STRATEGY_STATUS = "strategy_status"


class NotificationEvent(BaseModel):
    """A strategy event addressed to the portfolio owner."""
    type: NotificationType
    portfolio_id: str
    strategy_id: Optional[str] = None
    message: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class Notifier(ABC):
    """Delivery channel for notification events."""

    @abstractmethod
    async def send(self, event: NotificationEvent) -> None:
        ...


class LoggingNotifier(Notifier):
    """Writes every event to the structured log."""

    async def send(self, event: NotificationEvent) -> None:
        log = logger.warning if event.type in (
            NotificationType.ERROR,
            NotificationType.RISK_BREACH,
            NotificationType.EMERGENCY_STOP,
        ) else logger.info
        log(
            f"notification.{event.type.value}",
            portfolio_id=event.portfolio_id,
            strategy_id=event.strategy_id,
            message=event.message,
            **event.payload,
        )


class NotificationDispatcher:
    """Filters events by settings and delivers them in the background."""

    def __init__(
        self,
        notifiers: Optional[List[Notifier]] = None,
        config: Optional[NotificationConfig] = None,
    ):
        self.notifiers = notifiers if notifiers is not None else [LoggingNotifier()]
        self.config = config or notification_config
        self._tasks: Set[asyncio.Task] = set()

    def should_send(
        self,
        event: NotificationEvent,
        settings: Optional[NotificationSettings] = None,
    ) -> bool:
        if not self.config.notifications_enabled:
            return False
        if settings is not None and not settings.enabled:
            return False

        if event.type == NotificationType.TRADE_EXECUTED:
            return self.config.notify_on_trade and (settings is None or settings.on_trade)
        if event.type == NotificationType.ERROR:
            return self.config.notify_on_error and (settings is None or settings.on_error)
        if event.type in (NotificationType.RISK_BREACH, NotificationType.EMERGENCY_STOP):
            return self.config.notify_on_risk_breach and (
                settings is None or settings.on_risk_breach
            )
        return True

    def notify(
        self,
        event: NotificationEvent,
        settings: Optional[NotificationSettings] = None,
    ) -> Optional[asyncio.Task]:
        """Schedule delivery; returns the background task, or None if filtered out."""
        if not self.should_send(event, settings):
            return None

        try:
            task = asyncio.get_running_loop().create_task(self._deliver(event))
        except RuntimeError:
            logger.warning("notification.no_event_loop", type=event.type.value)
            return None

        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(self, event: NotificationEvent):
        for notifier in self.notifiers:
            try:
                await notifier.send(event)
            except Exception as e:
                logger.error(
                    "notification.delivery_failed",
                    notifier=type(notifier).__name__,
                    type=event.type.value,
                    error=str(e),
                )

    async def drain(self):
        """Wait for in-flight deliveries."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
