"""
Post-commit notification channel.

Services enqueue notifications only after their transaction has committed;
a background worker delivers them. Enqueueing never awaits delivery, and a
failed delivery is logged and dropped, so a mail outage can never undo or
delay a payment.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from registrar.services import email_service

logger = logging.getLogger(__name__)

Notifier = Callable[[str, str, Dict[str, Any]], Awaitable[bool]]


@dataclass
class Notification:
    template_key: str
    recipient_email: str
    context: Dict[str, Any] = field(default_factory=dict)


class NotificationDispatcher:
    """Queue of pending notifications drained by a background worker."""

    def __init__(self, notifier: Optional[Notifier] = None):
        self._notifier = notifier
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def is_running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    def enqueue(self, template_key: str, recipient_email: str, context: Optional[Dict[str, Any]] = None) -> None:
        """Queue a notification. Returns immediately."""
        if not recipient_email:
            logger.warning(f"Dropping {template_key} notification with no recipient")
            return
        self._queue.put_nowait(Notification(template_key, recipient_email, dict(context or {})))

    def start(self) -> None:
        """Start the background delivery worker."""
        if not self.is_running:
            # A queue is bound to the loop that first waits on it; rebuild it for this loop
            pending = []
            while not self._queue.empty():
                pending.append(self._queue.get_nowait())
            self._queue = asyncio.Queue()
            for notification in pending:
                self._queue.put_nowait(notification)
            self._worker_task = asyncio.create_task(self._worker_loop())
            logger.info("Notification dispatcher started")

    def stop(self) -> None:
        """Stop the background delivery worker."""
        if self.is_running:
            self._worker_task.cancel()
            logger.info("Notification dispatcher stopped")
        self._worker_task = None

    async def drain(self) -> None:
        """
        Wait until every queued notification has been attempted.

        Without a running worker (scripts, tests) the queue is delivered inline.
        """
        if self.is_running:
            await self._queue.join()
            return
        while not self._queue.empty():
            notification = self._queue.get_nowait()
            try:
                await self._deliver(notification)
            finally:
                self._queue.task_done()

    async def _worker_loop(self) -> None:
        while True:
            notification = await self._queue.get()
            try:
                await self._deliver(notification)
            finally:
                self._queue.task_done()

    async def _deliver(self, notification: Notification) -> None:
        notifier = self._notifier or email_service.notify
        try:
            sent = await notifier(
                notification.template_key, notification.recipient_email, notification.context
            )
            if not sent:
                logger.warning(
                    f"Notification {notification.template_key} to {notification.recipient_email} was not sent"
                )
        except Exception as e:
            logger.warning(
                f"Notification {notification.template_key} to {notification.recipient_email} failed: {e}",
                exc_info=True,
            )


# Global singleton
_dispatcher = NotificationDispatcher()


def get_notification_dispatcher() -> NotificationDispatcher:
    """Get the global notification dispatcher instance."""
    return _dispatcher
