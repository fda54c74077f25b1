from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional
from urllib import request
from urllib.error import HTTPError, URLError

from referralme.app.models import OutboxMessage, OutboxStatus
from referralme.app.settings import Settings
from referralme.app.store import EventStore, NotificationIntent

if TYPE_CHECKING:
    from referralme.app.observability import MetricsRegistry

logger = logging.getLogger("referralme.notifications")

BREVO_SEND_URL = "https://api.brevo.com/v3/smtp/email"

SUBJECTS = {
    "referral_requested": "New referral request for {job_title}",
    "referral_accepted": "Your referral request was accepted",
    "referral_rejected": "Update on your referral request",
    "session_booked": "Mentorship session confirmed: {service_title}",
    "session_cancelled": "Mentorship session cancelled: {service_title}",
    "payment_acknowledgement_requested": "Please confirm a UPI payment for {service_title}",
}


class TransientDeliveryError(Exception):
    pass


class PermanentDeliveryError(Exception):
    pass


def render_subject(event_type: str, payload: dict[str, Any]) -> str:
    template = SUBJECTS.get(event_type, "ReferralMe update")
    try:
        return template.format(**payload)
    except KeyError:
        return "ReferralMe update"


def render_body(event_type: str, payload: dict[str, Any]) -> str:
    lines = [render_subject(event_type, payload), ""]
    for key in sorted(payload):
        lines.append(f"{key.replace('_', ' ')}: {payload[key]}")
    return "\n".join(lines)


class LoggingSender:
    def send(
        self, *, to_email: Optional[str], subject: str, body: str, message: OutboxMessage
    ) -> None:
        logger.info(
            "notification_logged id=%s event=%s recipient=%s email=%s subject=%r",
            message.id,
            message.event_type,
            message.recipient,
            to_email,
            subject,
        )


class BrevoEmailSender:
    def __init__(self, *, api_key: str, sender_email: str, timeout_seconds: int = 8) -> None:
        self.api_key = api_key
        self.sender_email = sender_email
        self.timeout_seconds = timeout_seconds

    def send(
        self, *, to_email: Optional[str], subject: str, body: str, message: OutboxMessage
    ) -> None:
        if not to_email:
            raise PermanentDeliveryError(f"recipient {message.recipient} has no email address")
        encoded = json.dumps(
            {
                "sender": {"email": self.sender_email, "name": "ReferralMe"},
                "to": [{"email": to_email}],
                "subject": subject,
                "textContent": body,
            }
        ).encode("utf-8")
        req = request.Request(
            BREVO_SEND_URL,
            data=encoded,
            method="POST",
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "api-key": self.api_key,
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response.read()
        except HTTPError as exc:
            if 400 <= exc.code < 500 and exc.code != 429:
                raise PermanentDeliveryError(
                    f"email provider rejected message: http {exc.code}"
                ) from exc
            raise TransientDeliveryError(f"email provider error: http {exc.code}") from exc
        except URLError as exc:
            raise TransientDeliveryError("email provider unreachable") from exc


@dataclass
class DispatchResult:
    delivered: int = 0
    retry_pending: int = 0
    failed: int = 0


class NotificationDispatcher:
    """
    Delivers outbox messages written by the store alongside lifecycle changes.

    Delivery is at-least-once with bounded retries. Failures are recorded on the
    message and logged; they are never raised to the caller that triggered them.
    """

    def __init__(
        self,
        store: EventStore,
        sender,
        *,
        max_attempts: int = 5,
        backoff_seconds: int = 60,
        claim_seconds: int = 120,
        metrics: Optional["MetricsRegistry"] = None,
    ) -> None:
        self.store = store
        self.sender = sender
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.claim_seconds = claim_seconds
        self.metrics = metrics

    def notify(self, event_type: str, recipient: str, payload: dict[str, Any]) -> OutboxMessage:
        return self.store.enqueue_notification(
            NotificationIntent(event_type=event_type, recipient=recipient, payload=payload)
        )

    def dispatch_pending(self, now: Optional[datetime] = None) -> DispatchResult:
        result = DispatchResult()
        for message in self.store.claim_outbox_due(now, lease_seconds=self.claim_seconds):
            updated = self._deliver(message)
            if updated.status == OutboxStatus.delivered:
                result.delivered += 1
            elif updated.status == OutboxStatus.retry_pending:
                result.retry_pending += 1
            else:
                result.failed += 1
        return result

    def dispatch_quietly(self) -> None:
        try:
            self.dispatch_pending()
        except Exception:
            logger.exception("notification_dispatch_failed")

    def _deliver(self, message: OutboxMessage) -> OutboxMessage:
        profile = self.store.find_profile(message.recipient)
        to_email = profile.email if profile else None
        subject = render_subject(message.event_type, message.payload)
        body = render_body(message.event_type, message.payload)
        try:
            self.sender.send(to_email=to_email, subject=subject, body=body, message=message)
        except PermanentDeliveryError as exc:
            logger.warning(
                "notification_rejected id=%s event=%s recipient=%s error=%s",
                message.id,
                message.event_type,
                message.recipient,
                exc,
            )
            self._count("notification", "failed")
            return self.store.record_outbox_attempt(
                message.id,
                success=False,
                error=str(exc),
                max_attempts=1,
                backoff_seconds=self.backoff_seconds,
            )
        except Exception as exc:
            logger.warning(
                "notification_retry id=%s event=%s recipient=%s attempt=%s error=%s",
                message.id,
                message.event_type,
                message.recipient,
                message.attempts + 1,
                exc,
            )
            updated = self.store.record_outbox_attempt(
                message.id,
                success=False,
                error=str(exc),
                max_attempts=self.max_attempts,
                backoff_seconds=self.backoff_seconds,
            )
            self._count("notification", updated.status.value)
            return updated
        self._count("notification", "delivered")
        return self.store.record_outbox_attempt(message.id, success=True)

    def _count(self, name: str, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment(name, outcome)


def build_sender(settings: Settings):
    if settings.brevo_api_key:
        return BrevoEmailSender(
            api_key=settings.brevo_api_key,
            sender_email=settings.notify_sender_email,
        )
    return LoggingSender()
