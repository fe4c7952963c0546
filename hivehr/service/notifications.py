"""Outbound notification queue.

Best-effort mails (welcome, new-account credentials, operator alerts) are
queued here instead of being sent inline, so a slow or failing SMTP server
never blocks or fails the request that triggered them. A background worker
drains the queue, retries failed deliveries and records what could not be
delivered; failures are escalated to the operator address when one is
configured.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, Optional

from hivehr.config import Settings
from hivehr.logging import get_logger
from hivehr.service.email import EmailService

logger = get_logger(__name__)

MAX_QUEUE_DEPTH = 1000
MAX_FAILED_RECORDS = 200

WELCOME = "welcome"
ACCOUNT_CREATED = "account_created"
ADMIN_ALERT = "admin_alert"


@dataclass
class Notification:
    kind: str
    recipient: str
    payload: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


class NotificationQueue:
    def __init__(
        self,
        email: EmailService,
        settings: Settings,
        *,
        maxsize: int = MAX_QUEUE_DEPTH,
    ) -> None:
        self.email = email
        self.settings = settings
        self.max_attempts = max(1, settings.notification_max_attempts)
        self.retry_delay = settings.notification_retry_delay_seconds
        self._queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=maxsize)
        self.failed: Deque[Notification] = deque(maxlen=MAX_FAILED_RECORDS)
        self.delivered = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def enqueue(self, kind: str, recipient: str, **payload: Any) -> bool:
        """Queue a notification; never raises."""
        notification = Notification(kind=kind, recipient=recipient, payload=payload)
        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull:
            notification.last_error = "queue_full"
            self.failed.append(notification)
            logger.error("notification_queue_full", kind=kind, depth=self._queue.qsize())
            return False
        logger.debug("notification_enqueued", kind=kind, depth=self._queue.qsize())
        return True

    def alert_operator(self, subject: str, message: str) -> bool:
        if not self.settings.admin_email:
            logger.warning("operator_alert_unrouted", subject=subject)
            return False
        return self.enqueue(ADMIN_ALERT, self.settings.admin_email, subject=subject, message=message)

    async def start(self) -> None:
        if self._running:
            logger.warning("notification_worker_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("notification_worker_started", max_attempts=self.max_attempts)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("notification_worker_stopped", pending=self._queue.qsize())

    async def process_pending(self) -> int:
        """Deliver everything currently queued; returns how many were delivered."""
        delivered = 0
        while True:
            try:
                notification = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return delivered
            try:
                if await self._deliver(notification):
                    delivered += 1
            finally:
                self._queue.task_done()

    async def _run_loop(self) -> None:
        while self._running:
            notification = await self._queue.get()
            try:
                await self._deliver(notification)
            except Exception as exc:
                logger.error(
                    "notification_worker_error",
                    kind=notification.kind,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            finally:
                self._queue.task_done()

    async def _deliver(self, notification: Notification) -> bool:
        while notification.attempts < self.max_attempts:
            notification.attempts += 1
            try:
                sent = await asyncio.to_thread(self._send, notification)
            except (KeyError, TypeError, ValueError) as exc:
                # Malformed payloads never succeed on retry
                notification.last_error = f"{type(exc).__name__}: {exc}"
                break
            if sent:
                self.delivered += 1
                logger.info(
                    "notification_delivered",
                    kind=notification.kind,
                    attempts=notification.attempts,
                )
                return True
            notification.last_error = "send_failed"
            logger.warning(
                "notification_attempt_failed",
                kind=notification.kind,
                attempt=notification.attempts,
                max_attempts=self.max_attempts,
            )
            if notification.attempts < self.max_attempts and self.retry_delay > 0:
                await asyncio.sleep(self.retry_delay)

        self.failed.append(notification)
        logger.error(
            "notification_failed",
            kind=notification.kind,
            attempts=notification.attempts,
            error=notification.last_error,
        )
        await self._escalate(notification)
        return False

    async def _escalate(self, notification: Notification) -> None:
        admin_email = self.settings.admin_email
        if notification.kind == ADMIN_ALERT or not admin_email:
            return
        message = (
            f"A {notification.kind} notification could not be delivered after "
            f"{notification.attempts} attempts ({notification.last_error})."
        )
        sent = await asyncio.to_thread(
            self.email.send_admin_alert, admin_email, "Notification delivery failed", message
        )
        if not sent:
            logger.error("notification_escalation_failed", kind=notification.kind)

    def _send(self, notification: Notification) -> bool:
        payload = notification.payload
        if notification.kind == WELCOME:
            return self.email.send_welcome(notification.recipient, **payload)
        if notification.kind == ACCOUNT_CREATED:
            return self.email.send_account_created(notification.recipient, **payload)
        if notification.kind == ADMIN_ALERT:
            return self.email.send_admin_alert(
                notification.recipient, payload["subject"], payload["message"]
            )
        raise ValueError(f"unknown notification kind: {notification.kind}")
