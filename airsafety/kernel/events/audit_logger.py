"""
Audit logger for login attempts.

Entries go to the configured webhook when there is one, otherwise to the
"airsafety.audit" logger. Recording never raises into the caller, and a
webhook POST runs in the background so it never delays the login response.
"""

import asyncio
from functools import partial
from typing import Any, Optional, Set

import httpx

from airsafety.kernel.events.event_types import ClientInfo, LoginAuditEvent, LoginOutcome
from airsafety.logging_config import AUDIT_LOGGER_NAME, get_logger

logger = get_logger(__name__)
audit_log = get_logger(AUDIT_LOGGER_NAME)


class AuditLogger:
    """
    Best-effort audit sink.

    Usage:
        audit = AuditLogger(webhook_url=settings.audit_webhook_url)
        await audit.record(
            LoginOutcome.INVALID_PASSWORD,
            email="pilot@example.com",
            client=ClientInfo(ip_address="203.0.113.7"),
            reason="password_mismatch",
        )
        ...
        await audit.drain()  # on shutdown
    """

    def __init__(
        self,
        webhook_url: str = "",
        timeout_seconds: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        # Strong references to in-flight webhook deliveries
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def record(
        self,
        outcome: LoginOutcome,
        *,
        email: Optional[str] = None,
        client: Optional[ClientInfo] = None,
        **fields: Any,
    ) -> Optional[LoginAuditEvent]:
        """
        Build one audit entry and hand it to the sink.

        Webhook delivery is scheduled, not awaited; the local log is written
        before returning.

        Returns:
            The entry, or None if it could not even be built
        """
        client = client or ClientInfo()
        try:
            event = LoginAuditEvent(
                outcome=outcome,
                email=email,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                request_id=client.request_id,
                **{key: value for key, value in fields.items() if value is not None},
            )
        except Exception:
            logger.exception("Could not build audit entry", extra={"outcome": str(outcome)})
            return None

        if self.webhook_url:
            task = asyncio.create_task(self.deliver(event))
            self._pending.add(task)
            task.add_done_callback(partial(self._on_delivered, event))
            return event

        try:
            await self.deliver(event)
        except Exception as exc:
            self._delivery_failed(event, exc)
        return event

    async def deliver(self, event: LoginAuditEvent) -> None:
        payload = event.model_dump(mode="json", exclude_none=True)
        if not self.webhook_url:
            audit_log.info("login %s", payload["outcome"], extra={"audit": payload})
            return

        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            response = await client.post(self.webhook_url, json=payload)
            response.raise_for_status()

    async def drain(self) -> None:
        """Wait for every scheduled webhook delivery to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _on_delivered(self, event: LoginAuditEvent, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            self._delivery_failed(event, asyncio.CancelledError())
            return
        exc = task.exception()
        if exc is not None:
            self._delivery_failed(event, exc)

    def _delivery_failed(self, event: LoginAuditEvent, exc: BaseException) -> None:
        # Keep the entry in the process log so it is not lost
        logger.warning(
            "Audit delivery failed",
            extra={"error": type(exc).__name__, "audit": event.model_dump(mode="json", exclude_none=True)},
        )
