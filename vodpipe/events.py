"""
Fire-and-forget notifications: event fan-out to sinks and reviewer email.

Every delivery failure is logged and swallowed; the pipeline never fails
because a listener did.
"""

import asyncio
import logging
from email.message import EmailMessage
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import aiosmtplib
import httpx

from .config import NotificationsConfig
from .models import EventMessage

logger = logging.getLogger(__name__)

EventSink = Callable[[EventMessage], Awaitable[None]]

# Event names
UPLOAD_INITIATED = "video-upload-initiated"
UPLOAD_PROGRESS = "video-upload-progress"
UPLOAD_COMPLETED = "video-upload-completed"
UPLOAD_ABORTED = "video-upload-aborted"
PROCESSING_STARTED = "video-processing-started"
PROCESSING_PROGRESS = "video-processing-progress"
PROCESSING_COMPLETED = "video-processing-completed"
PROCESSING_FAILED = "video-processing-failed"
REPROCESS_STARTED = "video-reprocess-started"
QUALITY_REGENERATION_STARTED = "video-quality-regeneration-started"
QUALITY_REGENERATED = "video-quality-regenerated"
QUALITY_REGENERATION_FAILED = "video-quality-regeneration-failed"


class EventPublisher:
    """
    Delivers pipeline events to registered sinks (WebSocket, webhook) and email.

    Sinks run in the background by default so a slow listener never holds up
    the caller; each sink still sees events in the order they were emitted.
    """

    def __init__(self, config: Optional[NotificationsConfig] = None):
        self.config = config or NotificationsConfig()
        self._sinks: List[Tuple[EventSink, bool]] = []
        self._sink_locks: Dict[int, asyncio.Lock] = {}
        self._pending: Set[asyncio.Task] = set()

        if self.config.webhook_url:
            self.register_sink(self._send_webhook)

    def register_sink(self, sink: EventSink, inline: bool = False) -> None:
        """
        Register an async callable receiving every EventMessage.

        Inline sinks are awaited by `emit` itself; keep them fast.
        """
        self._sinks.append((sink, inline))

    async def emit(self, event: str, payload: Dict[str, Any]) -> None:
        """Deliver `event` to every sink. Never raises."""
        message = EventMessage(event=event, payload=payload)
        logger.debug(f"[Events] {event}: {payload}")

        for index, (sink, inline) in enumerate(list(self._sinks)):
            if inline:
                await self._deliver(sink, message)
            else:
                self.spawn(self._deliver_in_order(index, sink, message))

    async def _deliver(self, sink: EventSink, message: EventMessage) -> None:
        try:
            await sink(message)
        except Exception as e:
            logger.warning(f"[Events] Sink failed for {message.event}: {e}")

    async def _deliver_in_order(self, index: int, sink: EventSink, message: EventMessage) -> None:
        # asyncio.Lock wakes waiters first-in first-out
        lock = self._sink_locks.setdefault(index, asyncio.Lock())
        async with lock:
            await self._deliver(sink, message)

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        """Run a notification in the background, keeping a reference until it finishes."""
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for background deliveries and notifications started so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _send_webhook(self, message: EventMessage) -> None:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                self.config.webhook_url,
                json=message.model_dump(mode="json"),
                timeout=self.config.webhook_timeout,
            )
            response.raise_for_status()
        logger.debug(f"[Events] Webhook delivered {message.event}")

    def email_configured(self) -> bool:
        return bool(self.config.smtp_host)

    async def send_email(self, recipient: str, subject: str, html: str) -> bool:
        """Send an HTML email. Returns True on success, False on any failure."""
        if not self.email_configured():
            logger.debug(f"[Events] SMTP not configured, skipping email '{subject}'")
            return False

        msg = EmailMessage()
        msg["From"] = f"{self.config.smtp_from_name} <{self.config.smtp_from_email}>"
        msg["To"] = recipient
        msg["Subject"] = subject
        msg.set_content(html, subtype="html")

        try:
            await aiosmtplib.send(
                msg,
                hostname=self.config.smtp_host,
                port=self.config.smtp_port,
                username=self.config.smtp_username,
                password=self.config.smtp_password,
                start_tls=self.config.smtp_start_tls,
                timeout=15,
            )
        except Exception as e:
            logger.error(f"[Events] SMTP delivery to {recipient} failed: {e}")
            return False

        logger.info(f"[Events] Sent '{subject}' to {recipient}")
        return True

    def notify_reviewer(self, subject: str, html: str) -> None:
        """Email the configured reviewer in the background, if there is one."""
        if not self.config.reviewer_email:
            return
        self.spawn(self.send_email(self.config.reviewer_email, subject, html))
