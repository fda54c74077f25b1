from __future__ import annotations

from datetime import timedelta

from referralme.app.models import OutboxStatus, ProfileUpsertRequest, utc_now
from referralme.app.observability import MetricsRegistry
from referralme.app.services.notifications import (
    BrevoEmailSender,
    LoggingSender,
    NotificationDispatcher,
    PermanentDeliveryError,
    TransientDeliveryError,
    render_subject,
)
from referralme.app.store import EventStore


class RecordingSender:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.sent: list[tuple[str | None, str]] = []

    def send(self, *, to_email, subject, body, message) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append((to_email, subject))


def later():
    return utc_now() + timedelta(hours=1)


def test_delivery_resolves_recipient_email() -> None:
    store = EventStore()
    store.upsert_profile(
        "seeker-1", ProfileUpsertRequest(display_name="Meera", email="meera@example.com")
    )
    sender = RecordingSender()
    dispatcher = NotificationDispatcher(store, sender)
    dispatcher.notify("referral_accepted", "seeker-1", {"request_id": "ref_1"})

    result = dispatcher.dispatch_pending()
    assert result.delivered == 1
    assert sender.sent == [("meera@example.com", "Your referral request was accepted")]
    assert store.list_outbox()[0].status == OutboxStatus.delivered


def test_transient_failures_retry_then_fail() -> None:
    store = EventStore()
    metrics = MetricsRegistry()
    dispatcher = NotificationDispatcher(
        store,
        RecordingSender(TransientDeliveryError("provider timeout")),
        max_attempts=3,
        backoff_seconds=60,
        metrics=metrics,
    )
    message = dispatcher.notify("session_booked", "mentor-1", {"service_title": "Resume Review"})

    first = dispatcher.dispatch_pending()
    assert first.retry_pending == 1
    assert dispatcher.dispatch_pending().retry_pending == 0

    assert dispatcher.dispatch_pending(later()).retry_pending == 1
    third = dispatcher.dispatch_pending(later())
    assert third.failed == 1

    stored = store.list_outbox()[0]
    assert stored.id == message.id
    assert stored.status == OutboxStatus.failed
    assert stored.attempts == 3
    assert stored.last_error == "provider timeout"
    assert dispatcher.dispatch_pending(later()).failed == 0
    assert metrics.event_count("notification", "failed") == 1


def test_permanent_failure_is_not_retried() -> None:
    store = EventStore()
    dispatcher = NotificationDispatcher(
        store, RecordingSender(PermanentDeliveryError("mailbox does not exist"))
    )
    dispatcher.notify("referral_rejected", "seeker-1", {})
    result = dispatcher.dispatch_pending()
    assert result.failed == 1
    assert store.list_outbox()[0].attempts == 1


def test_brevo_sender_requires_an_address() -> None:
    store = EventStore()
    dispatcher = NotificationDispatcher(
        store, BrevoEmailSender(api_key="key", sender_email="noreply@example.com")
    )
    dispatcher.notify("referral_requested", "no-profile", {"job_title": "SRE"})
    assert dispatcher.dispatch_pending().failed == 1


def test_dispatch_quietly_never_raises(monkeypatch) -> None:
    store = EventStore()
    dispatcher = NotificationDispatcher(store, LoggingSender())

    def explode(now=None, **kwargs):
        raise RuntimeError("store offline")

    monkeypatch.setattr(store, "claim_outbox_due", explode)
    dispatcher.dispatch_quietly()


def test_overlapping_drains_deliver_each_message_once() -> None:
    store = EventStore()
    sender = RecordingSender()
    dispatcher = NotificationDispatcher(store, sender)
    nested: list = []
    original_send = sender.send

    def send_while_another_drain_runs(**kwargs) -> None:
        nested.append(dispatcher.dispatch_pending())
        original_send(**kwargs)

    sender.send = send_while_another_drain_runs
    dispatcher.notify("session_booked", "mentor-1", {"service_title": "Resume Review"})

    result = dispatcher.dispatch_pending()
    assert result.delivered == 1
    assert len(nested) == 1
    assert (nested[0].delivered, nested[0].retry_pending, nested[0].failed) == (0, 0, 0)
    assert len(sender.sent) == 1
    stored = store.list_outbox()[0]
    assert stored.status == OutboxStatus.delivered
    assert stored.attempts == 1


def test_lapsed_claim_makes_message_due_again() -> None:
    store = EventStore()
    dispatcher = NotificationDispatcher(store, RecordingSender())
    dispatcher.notify("referral_accepted", "seeker-1", {})

    claimed = store.claim_outbox_due(lease_seconds=120)
    assert len(claimed) == 1
    assert store.claim_outbox_due() == []
    assert [message.id for message in store.claim_outbox_due(later())] == [claimed[0].id]


def test_subject_rendering_falls_back_on_missing_fields() -> None:
    assert render_subject("referral_requested", {"job_title": "SRE"}) == (
        "New referral request for SRE"
    )
    assert render_subject("referral_requested", {}) == "ReferralMe update"
    assert render_subject("unknown_event", {}) == "ReferralMe update"


def test_referral_request_notifies_referrer_after_response(client) -> None:
    job = client.post(
        "/jobs",
        json={"title": "SRE", "company": "Heron", "location": "Remote", "description": "Pager"},
        headers={"X-User-Id": "referrer-1"},
    ).json()
    client.post(
        "/referrals",
        json={
            "job_posting_id": job["id"],
            "application": {"resume_ref": "cv.pdf", "experience_level": "mid"},
        },
        headers={"X-User-Id": "seeker-1"},
    )
    outbox = client.app.state.store.list_outbox(recipient="referrer-1")
    assert [message.event_type for message in outbox] == ["referral_requested"]
    assert outbox[0].status == OutboxStatus.delivered

    flush = client.post("/notifications/dispatch")
    assert flush.status_code == 200
    assert flush.json() == {"delivered": 0, "retry_pending": 0, "failed": 0}
