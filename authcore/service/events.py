"""Security events and their asynchronous delivery.

Side effects of an auth flow (security log lines, alert e-mails) are emitted
as events and delivered off the request path. A handler that keeps failing
is retried with exponential backoff and finally abandoned; the request that
emitted the event never sees the failure.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Set

from authcore.logging import get_logger, log_security_event
from authcore.service.email import EmailService
from authcore.storage.models import utcnow

logger = get_logger(__name__)

USER_LOGIN = "user_login"
SUSPICIOUS_LOGIN = "suspicious_login"
LOGIN_FAILED = "login_failed"
SECOND_FACTOR_CHALLENGE = "second_factor_challenge"
SECOND_FACTOR_FAILED = "second_factor_failed"
SECOND_FACTOR_ENABLED = "second_factor_enabled"
SECOND_FACTOR_DISABLED = "second_factor_disabled"
BACKUP_CODES_REGENERATED = "backup_codes_regenerated"
SESSION_REVOKED = "session_revoked"
SESSIONS_REVOKED = "sessions_revoked"
SUSPICIOUS_SESSIONS_DETECTED = "suspicious_sessions_detected"
PASSWORD_CHANGED = "password_changed"
ACCOUNT_STATUS_CHANGED = "account_status_changed"
ACCOUNT_REGISTERED = "account_registered"


@dataclass
class SecurityEvent:
    name: str
    account_id: Optional[str]
    severity: str = "info"
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    # Recipient and one-time values for notification handlers; never logged
    notify: Dict[str, Any] = field(default_factory=dict, repr=False)


class EventHandler(Protocol):
    name: str

    def accepts(self, event: SecurityEvent) -> bool: ...

    async def handle(self, event: SecurityEvent) -> None: ...


class SecurityLogHandler:
    name = "security_log"

    def accepts(self, event: SecurityEvent) -> bool:
        return True

    async def handle(self, event: SecurityEvent) -> None:
        log_security_event(
            event.name,
            severity=event.severity,
            event_id=event.id,
            account_id=event.account_id,
            occurred_at=event.occurred_at.isoformat(),
            **event.payload,
        )


class LoginAlertHandler:
    """E-mails the account owner when a login was scored suspicious."""

    name = "login_alert"

    def __init__(self, email: EmailService) -> None:
        self.email = email

    def accepts(self, event: SecurityEvent) -> bool:
        return event.name == SUSPICIOUS_LOGIN and bool(event.notify.get("email"))

    async def handle(self, event: SecurityEvent) -> None:
        sent = await asyncio.to_thread(
            self.email.send_login_alert,
            event.notify["email"],
            device_type=event.payload.get("device_type"),
            ip_address=event.payload.get("ip_address"),
            flags=list(event.payload.get("flags", [])),
        )
        if not sent:
            raise RuntimeError("login alert e-mail was not delivered")


class AccountNotificationHandler:
    """Account lifecycle e-mails: verification codes and security changes."""

    name = "account_notification"

    _EVENTS = frozenset(
        {ACCOUNT_REGISTERED, PASSWORD_CHANGED, SECOND_FACTOR_ENABLED, SECOND_FACTOR_DISABLED}
    )

    def __init__(self, email: EmailService, *, verification_ttl_minutes: int = 30) -> None:
        self.email = email
        self.verification_ttl_minutes = verification_ttl_minutes

    def accepts(self, event: SecurityEvent) -> bool:
        return event.name in self._EVENTS and bool(event.notify.get("email"))

    async def handle(self, event: SecurityEvent) -> None:
        to_email = event.notify["email"]
        if event.name == ACCOUNT_REGISTERED:
            sent = await asyncio.to_thread(
                self.email.send_email_verification,
                to_email,
                event.notify["verification_code"],
                ttl_minutes=self.verification_ttl_minutes,
            )
        elif event.name == PASSWORD_CHANGED:
            sent = await asyncio.to_thread(self.email.send_password_changed, to_email)
        else:
            sent = await asyncio.to_thread(
                self.email.send_second_factor_changed,
                to_email,
                enabled=event.name == SECOND_FACTOR_ENABLED,
            )
        if not sent:
            raise RuntimeError(f"{event.name} e-mail was not delivered")


class EventDispatcher:
    """Fans events out to handlers with at-least-once, retried delivery."""

    def __init__(
        self,
        handlers: Optional[List[EventHandler]] = None,
        *,
        max_attempts: int = 3,
        base_delay_seconds: float = 0.5,
    ) -> None:
        self.handlers: List[EventHandler] = list(handlers or [])
        self.max_attempts = max(1, max_attempts)
        self.base_delay_seconds = base_delay_seconds
        self._pending: Set[asyncio.Task] = set()

    def register(self, handler: EventHandler) -> None:
        self.handlers.append(handler)

    def emit(self, event: SecurityEvent) -> None:
        """Schedule delivery and return immediately; never raises."""
        targets = [h for h in self.handlers if h.accepts(event)]
        if not targets:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Synchronous callers (CLI scripts) deliver inline
            asyncio.run(self._deliver_all(targets, event))
            return
        for handler in targets:
            task = loop.create_task(self._deliver(handler, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver_all(self, handlers: List[EventHandler], event: SecurityEvent) -> None:
        await asyncio.gather(*(self._deliver(h, event) for h in handlers))

    async def _deliver(self, handler: EventHandler, event: SecurityEvent) -> None:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await handler.handle(event)
                return
            except Exception as exc:
                logger.warning(
                    "event_delivery_failed",
                    handler=handler.name,
                    event_name=event.name,
                    event_id=event.id,
                    attempt=attempt,
                    error=str(exc),
                )
            if attempt < self.max_attempts:
                await asyncio.sleep(self.base_delay_seconds * (2 ** (attempt - 1)))
        logger.error(
            "event_delivery_abandoned",
            handler=handler.name,
            event_name=event.name,
            event_id=event.id,
            attempts=self.max_attempts,
        )

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight deliveries scheduled on the current loop."""
        loop = asyncio.get_running_loop()
        tasks = [t for t in self._pending if t.get_loop() is loop]
        if not tasks:
            return
        done, still_pending = await asyncio.wait(tasks, timeout=timeout)
        if still_pending:
            logger.warning("event_drain_timeout", pending=len(still_pending))
