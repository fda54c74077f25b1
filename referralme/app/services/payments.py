"""
Mentorship booking and payment confirmation.

A booking moves through ``selecting_service -> scheduling -> awaiting_payment
-> materialized``. Only the last step writes to the event store: the earlier
steps are an immutable ``BookingWorkflow`` value owned by the caller, and an
awaiting-payment attempt lives in this process's attempt registry until it is
confirmed, cancelled or expires. Nothing needs cleaning up when a buyer walks
away.

Two payment channels are supported:

* gateway: the order is created with the payment gateway and the callback
  signature is verified server-side. Sessions booked this way are marked
  ``payment_verified``.
* self-attested transfer: the buyer is shown a UPI payment link and then
  asserts that they paid. There is no independent proof, so the assertion is
  logged for audit, the session is stored with ``payment_verified=False`` and
  the mentor is asked to acknowledge receipt. The assertion must arrive before
  the attempt deadline; once the deadline passes the attempt fails and a late
  confirmation is rejected.

Materialization is idempotent on ``(channel, external reference)``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from threading import Lock
from typing import TYPE_CHECKING, Callable, Optional
from urllib.parse import urlencode
from uuid import uuid4

from referralme.app.models import (
    MentorshipServiceOffer,
    MentorshipSessionRecord,
    PaymentChannel,
    PaymentStatus,
    SessionStatus,
    ensure_utc,
    utc_now,
)
from referralme.app.services.errors import (
    BookingValidationError,
    ConflictError,
    InvalidTransitionError,
    PaymentTimeoutError,
    PaymentVerificationFailedError,
    PermissionDeniedError,
    SlotUnavailableError,
)
from referralme.app.services.gateway import GatewayOrder, PaymentGateway
from referralme.app.services.workflow import SESSION_TRANSITIONS
from referralme.app.store import (
    EventStore,
    NotificationIntent,
    StoreConflictError,
    StoreNotFoundError,
)

if TYPE_CHECKING:
    from referralme.app.observability import MetricsRegistry

logger = logging.getLogger("referralme.payments")

SELF_ATTESTED_TIMEOUT_SECONDS = 300
GATEWAY_ATTEMPT_TTL_SECONDS = 3600
FINISHED_ATTEMPT_RETENTION = timedelta(hours=1)
FAILURE_ERRORS = {"slot_unavailable": SlotUnavailableError}


class BookingStep(str, Enum):
    selecting_service = "selecting_service"
    scheduling = "scheduling"
    awaiting_payment = "awaiting_payment"
    materialized = "materialized"


class AttemptState(str, Enum):
    awaiting_payment = "awaiting_payment"
    confirmed = "confirmed"
    failed = "failed"
    cancelled = "cancelled"


@dataclass(frozen=True)
class BookingWorkflow:
    mentor_id: str
    mentee_id: str
    step: BookingStep = BookingStep.selecting_service
    service: Optional[MentorshipServiceOffer] = None
    scheduled_at_utc: Optional[datetime] = None


@dataclass(frozen=True)
class Quote:
    mentor_id: str
    mentee_id: str
    service_id: str
    service_title: str
    duration_minutes: int
    scheduled_at_utc: datetime
    amount: float
    amount_minor: int
    currency: str


@dataclass
class PaymentAttempt:
    id: str
    channel: PaymentChannel
    workflow: BookingWorkflow
    quote: Quote
    state: AttemptState
    created_at_utc: datetime
    expires_at_utc: Optional[datetime] = None
    order_id: Optional[str] = None
    session_id: Optional[str] = None
    failure_reason: Optional[str] = None
    finished_at_utc: Optional[datetime] = None
    lock: Lock = field(default_factory=Lock, repr=False, compare=False)


@dataclass(frozen=True)
class GatewayCheckout:
    attempt_id: str
    key_id: str
    order: GatewayOrder


@dataclass(frozen=True)
class SelfAttestedRequest:
    attempt_id: str
    payment_link: str
    payee_id: str
    payee_name: str
    amount: float
    currency: str
    note: str
    expires_at_utc: datetime


@dataclass(frozen=True)
class BookingResult:
    session: MentorshipSessionRecord
    duplicate: bool = False


def to_minor_units(amount: float) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def build_upi_link(
    *, payee_id: str, payee_name: str, amount: float, currency: str, note: str
) -> str:
    params = {
        "pa": payee_id,
        "pn": payee_name,
        "am": f"{Decimal(str(amount)):.2f}",
        "cu": currency,
        "tn": note,
    }
    return f"upi://pay?{urlencode(params)}"


def payment_key(channel: PaymentChannel, external_ref: str) -> str:
    return f"{channel.value}:{external_ref}"


class PaymentConfirmationCoordinator:
    def __init__(
        self,
        store: EventStore,
        gateway: PaymentGateway,
        *,
        currency: str = "INR",
        self_attested_timeout_seconds: int = SELF_ATTESTED_TIMEOUT_SECONDS,
        gateway_attempt_ttl_seconds: int = GATEWAY_ATTEMPT_TTL_SECONDS,
        meeting_base_url: str = "https://referralme.daily.co",
        clock: Callable[[], datetime] = utc_now,
        metrics: Optional["MetricsRegistry"] = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.currency = currency
        self.self_attested_timeout = timedelta(seconds=self_attested_timeout_seconds)
        self.gateway_attempt_ttl = timedelta(seconds=gateway_attempt_ttl_seconds)
        self.meeting_base_url = meeting_base_url.rstrip("/")
        self.clock = clock
        self.metrics = metrics
        self._registry_lock = Lock()
        self._attempts: dict[str, PaymentAttempt] = {}
        self._attempts_by_order: dict[str, str] = {}

    # Wizard steps

    def select_service(self, *, mentor_id: str, mentee_id: str, service_id: str) -> BookingWorkflow:
        if mentor_id == mentee_id:
            raise BookingValidationError("mentors cannot book their own sessions")
        mentor = self.store.get_profile(mentor_id)
        service = next(
            (item for item in mentor.services if item.id == service_id and item.is_active),
            None,
        )
        if service is None:
            raise BookingValidationError(f"mentor {mentor_id} has no active service {service_id}")
        return BookingWorkflow(
            mentor_id=mentor_id,
            mentee_id=mentee_id,
            step=BookingStep.scheduling,
            service=service,
        )

    def schedule(self, workflow: BookingWorkflow, scheduled_at: datetime) -> BookingWorkflow:
        if workflow.service is None:
            raise BookingValidationError("select a service before scheduling")
        scheduled_at = ensure_utc(scheduled_at)
        if scheduled_at <= self.clock():
            raise BookingValidationError("sessions must be scheduled in the future")
        self._ensure_slot_free(workflow.mentor_id, scheduled_at, workflow.service.duration_minutes)
        return replace(workflow, step=BookingStep.awaiting_payment, scheduled_at_utc=scheduled_at)

    def quote(self, workflow: BookingWorkflow) -> Quote:
        if workflow.service is None or workflow.scheduled_at_utc is None:
            raise BookingValidationError("select a service and a time before paying")
        service = workflow.service
        currency = service.currency or self.currency
        return Quote(
            mentor_id=workflow.mentor_id,
            mentee_id=workflow.mentee_id,
            service_id=service.id,
            service_title=service.title,
            duration_minutes=service.duration_minutes,
            scheduled_at_utc=workflow.scheduled_at_utc,
            amount=service.price,
            amount_minor=to_minor_units(service.price),
            currency=currency,
        )

    # Gateway channel

    def start_gateway_payment(self, workflow: BookingWorkflow) -> GatewayCheckout:
        self.expire_attempts()
        quote = self._payable_quote(workflow)
        now = self.clock()
        receipt = f"rcpt_{workflow.mentee_id}_{int(now.timestamp())}"
        order = self.gateway.create_order(
            amount_minor=quote.amount_minor,
            currency=quote.currency,
            receipt=receipt,
            notes={
                "mentor_id": workflow.mentor_id,
                "mentee_id": workflow.mentee_id,
                "service_id": quote.service_id,
            },
        )
        attempt = PaymentAttempt(
            id=self._new_attempt_id(),
            channel=PaymentChannel.gateway,
            workflow=workflow,
            quote=quote,
            state=AttemptState.awaiting_payment,
            created_at_utc=now,
            expires_at_utc=now + self.gateway_attempt_ttl,
            order_id=order.id,
        )
        with self._registry_lock:
            self._attempts[attempt.id] = attempt
            self._attempts_by_order[order.id] = attempt.id
        logger.info(
            "gateway_order_created attempt=%s order_id=%s mentee=%s mentor=%s amount_minor=%s",
            attempt.id,
            order.id,
            workflow.mentee_id,
            workflow.mentor_id,
            quote.amount_minor,
        )
        self._count("gateway_order", "created")
        return GatewayCheckout(attempt_id=attempt.id, key_id=self.gateway.key_id, order=order)

    def confirm_gateway_payment(
        self, *, order_id: str, payment_id: str, signature: str
    ) -> BookingResult:
        if not self.gateway.verify_signature(order_id, payment_id, signature):
            logger.warning(
                "gateway_signature_rejected order_id=%s payment_id=%s", order_id, payment_id
            )
            self._fail_order(order_id, reason="signature_mismatch")
            self._count("payment_verification", "failed")
            raise PaymentVerificationFailedError(
                f"gateway signature verification failed for order {order_id}"
            )
        self._count("payment_verification", "ok")
        return self._confirm_verified_order(order_id=order_id, payment_id=payment_id)

    def handle_captured_payment(self, *, order_id: str, payment_id: str) -> BookingResult:
        """Materialize from a gateway webhook whose body signature was already verified."""
        return self._confirm_verified_order(order_id=order_id, payment_id=payment_id)

    def _confirm_verified_order(self, *, order_id: str, payment_id: str) -> BookingResult:
        key = payment_key(PaymentChannel.gateway, order_id)
        existing = self.store.find_session_by_payment_key(key)
        if existing:
            return self._duplicate(existing, key)

        attempt = self._attempt_for_order(order_id)
        with attempt.lock:
            if attempt.state == AttemptState.confirmed and attempt.session_id:
                return self._duplicate(self.store.get_session(attempt.session_id), key)
            if attempt.state == AttemptState.cancelled:
                raise ConflictError(f"payment attempt {attempt.id} was cancelled")
            # A verified capture books the slot even after an earlier forged callback failed it.
            logger.info(
                "gateway_payment_confirmed attempt=%s order_id=%s payment_id=%s",
                attempt.id,
                order_id,
                payment_id,
            )
            return self._materialize(
                attempt,
                idempotency_key=key,
                external_ref=order_id,
                verified=True,
            )

    # Self-attested channel

    def start_self_attested_payment(self, workflow: BookingWorkflow) -> SelfAttestedRequest:
        self.expire_attempts()
        quote = self._payable_quote(workflow)
        mentor = self.store.get_profile(workflow.mentor_id)
        if not mentor.payment_setup_completed or not mentor.upi_id:
            raise BookingValidationError(f"mentor {workflow.mentor_id} has no UPI payee set up")
        now = self.clock()
        attempt = PaymentAttempt(
            id=self._new_attempt_id(),
            channel=PaymentChannel.self_attested_transfer,
            workflow=workflow,
            quote=quote,
            state=AttemptState.awaiting_payment,
            created_at_utc=now,
            expires_at_utc=now + self.self_attested_timeout,
        )
        note = f"{quote.service_title} session booking {attempt.id}"
        payee_name = mentor.payee_name or mentor.display_name
        with self._registry_lock:
            self._attempts[attempt.id] = attempt
        logger.info(
            "self_attested_payment_started attempt=%s mentee=%s mentor=%s amount=%s expires=%s",
            attempt.id,
            workflow.mentee_id,
            workflow.mentor_id,
            quote.amount,
            attempt.expires_at_utc.isoformat(),
        )
        return SelfAttestedRequest(
            attempt_id=attempt.id,
            payment_link=build_upi_link(
                payee_id=mentor.upi_id,
                payee_name=payee_name,
                amount=quote.amount,
                currency=quote.currency,
                note=note,
            ),
            payee_id=mentor.upi_id,
            payee_name=payee_name,
            amount=quote.amount,
            currency=quote.currency,
            note=note,
            expires_at_utc=attempt.expires_at_utc,
        )

    def confirm_self_attested_payment(
        self, attempt_id: str, *, actor_id: str, transaction_id: str
    ) -> BookingResult:
        attempt = self.get_attempt(attempt_id)
        if attempt.channel != PaymentChannel.self_attested_transfer:
            raise BookingValidationError(f"attempt {attempt_id} is not a self-attested payment")
        if actor_id != attempt.workflow.mentee_id:
            raise PermissionDeniedError("only the paying mentee can confirm this payment")

        key = payment_key(PaymentChannel.self_attested_transfer, transaction_id.strip())
        with attempt.lock:
            if attempt.state == AttemptState.confirmed and attempt.session_id:
                return self._duplicate(self.store.get_session(attempt.session_id), key)
            if attempt.state == AttemptState.cancelled:
                raise ConflictError(f"payment attempt {attempt_id} was cancelled")
            if attempt.state == AttemptState.failed:
                error = FAILURE_ERRORS.get(attempt.failure_reason, PaymentTimeoutError)
                raise error(f"payment attempt {attempt_id} already failed: {attempt.failure_reason}")
            now = self.clock()
            if attempt.expires_at_utc is not None and now > attempt.expires_at_utc:
                self._finish(attempt, AttemptState.failed, reason="timeout", now=now)
                self._count("self_attested_payment", "timeout")
                raise PaymentTimeoutError(f"payment window for attempt {attempt_id} has closed")

            # No proof of payment exists on this channel; keep a full audit trail.
            logger.warning(
                "self_attested_payment_asserted attempt=%s mentee=%s mentor=%s amount=%s "
                "currency=%s transaction_id=%s asserted_at=%s",
                attempt.id,
                attempt.workflow.mentee_id,
                attempt.workflow.mentor_id,
                attempt.quote.amount,
                attempt.quote.currency,
                transaction_id,
                now.isoformat(),
            )
            self._count("self_attested_payment", "asserted")
            return self._materialize(
                attempt,
                idempotency_key=key,
                external_ref=transaction_id.strip(),
                verified=False,
            )

    # Attempt registry

    def get_attempt(self, attempt_id: str) -> PaymentAttempt:
        with self._registry_lock:
            attempt = self._attempts.get(attempt_id)
        if not attempt:
            raise StoreNotFoundError(f"payment attempt not found: {attempt_id}")
        return attempt

    def cancel_attempt(self, attempt_id: str, *, actor_id: str) -> PaymentAttempt:
        attempt = self.get_attempt(attempt_id)
        if actor_id != attempt.workflow.mentee_id:
            raise PermissionDeniedError("only the paying mentee can cancel this payment")
        with attempt.lock:
            if attempt.state == AttemptState.awaiting_payment:
                self._finish(attempt, AttemptState.cancelled, reason="cancelled_by_user")
                logger.info("payment_attempt_cancelled attempt=%s", attempt.id)
                self._count("payment_attempt", "cancelled")
            elif attempt.state == AttemptState.confirmed:
                raise ConflictError(
                    "payment already confirmed; cancel the session instead of the payment"
                )
        return attempt

    def expire_attempts(self) -> int:
        """
        Fail attempts whose deadline has passed and drop finished ones.

        Self-attested attempts fail with ``timeout``; abandoned gateway
        checkouts fail with ``abandoned``. Finished attempts are forgotten after
        ``FINISHED_ATTEMPT_RETENTION``, so the registry only holds recent work.
        """
        now = self.clock()
        with self._registry_lock:
            attempts = list(self._attempts.values())
        expired = 0
        for attempt in attempts:
            with attempt.lock:
                if (
                    attempt.state == AttemptState.awaiting_payment
                    and attempt.expires_at_utc is not None
                    and now > attempt.expires_at_utc
                ):
                    reason = "abandoned" if attempt.channel == PaymentChannel.gateway else "timeout"
                    self._finish(attempt, AttemptState.failed, reason=reason, now=now)
                    self._count("payment_attempt", reason)
                    expired += 1
        if expired:
            logger.info("payment_attempts_expired count=%s", expired)
        self._prune(now)
        return expired

    def tracked_attempts(self) -> int:
        with self._registry_lock:
            return len(self._attempts)

    # Session lifecycle

    def start_session(self, session_id: str, *, actor_id: str) -> MentorshipSessionRecord:
        session = self.store.get_session(session_id)
        if actor_id != session.mentor_id:
            raise PermissionDeniedError("only the mentor can start the session")
        return self._move_session(session, SessionStatus.in_progress)

    def complete_session(self, session_id: str, *, actor_id: str) -> MentorshipSessionRecord:
        session = self.store.get_session(session_id)
        if actor_id != session.mentor_id:
            raise PermissionDeniedError("only the mentor can complete the session")
        return self._move_session(session, SessionStatus.completed)

    def cancel_session(self, session_id: str, *, actor_id: str) -> MentorshipSessionRecord:
        session = self.store.get_session(session_id)
        if actor_id not in {session.mentor_id, session.mentee_id}:
            raise PermissionDeniedError("only the mentor or mentee can cancel the session")
        other = session.mentee_id if actor_id == session.mentor_id else session.mentor_id
        return self._move_session(
            session,
            SessionStatus.cancelled,
            notifications=[
                NotificationIntent(
                    event_type="session_cancelled",
                    recipient=other,
                    payload={
                        "session_id": session.id,
                        "service_title": session.service_title,
                        "cancelled_by": actor_id,
                    },
                )
            ],
        )

    def acknowledge_payment(self, session_id: str, *, actor_id: str) -> MentorshipSessionRecord:
        session = self.store.get_session(session_id)
        if actor_id != session.mentor_id:
            raise PermissionDeniedError("only the payee can acknowledge the payment")
        if session.payment_channel != PaymentChannel.self_attested_transfer:
            raise BookingValidationError("only self-attested payments need acknowledgement")
        if session.payee_acknowledged_at_utc is not None:
            return session
        updated = self._cas_session(
            session, {"payee_acknowledged_at_utc": self.clock()}
        )
        logger.info(
            "self_attested_payment_acknowledged session=%s mentor=%s ref=%s",
            session.id,
            actor_id,
            session.external_payment_ref,
        )
        return updated

    def rate_session(
        self, session_id: str, *, actor_id: str, rating: int, feedback: Optional[str] = None
    ) -> MentorshipSessionRecord:
        session = self.store.get_session(session_id)
        if actor_id != session.mentee_id:
            raise PermissionDeniedError("only the mentee can rate the session")
        if session.status != SessionStatus.completed:
            raise InvalidTransitionError("only completed sessions can be rated")
        if session.rating is not None:
            raise ConflictError(f"session {session_id} was already rated")
        return self._cas_session(session, {"rating": rating, "feedback": feedback})

    # Internals

    def _payable_quote(self, workflow: BookingWorkflow) -> Quote:
        if workflow.step != BookingStep.awaiting_payment:
            raise BookingValidationError(f"booking is not ready for payment: {workflow.step.value}")
        quote = self.quote(workflow)
        self._ensure_slot_free(workflow.mentor_id, quote.scheduled_at_utc, quote.duration_minutes)
        return quote

    def _ensure_slot_free(self, mentor_id: str, start: datetime, duration_minutes: int) -> None:
        if self.store.has_slot_conflict(
            mentor_id=mentor_id, start=start, duration_minutes=duration_minutes
        ):
            raise SlotUnavailableError(
                f"mentor {mentor_id} is already booked at {start.isoformat()}"
            )

    def _materialize(
        self,
        attempt: PaymentAttempt,
        *,
        idempotency_key: str,
        external_ref: str,
        verified: bool,
    ) -> BookingResult:
        quote = attempt.quote
        channel = attempt.channel

        def build(session_id: str) -> MentorshipSessionRecord:
            now = utc_now()
            return MentorshipSessionRecord(
                id=session_id,
                mentor_id=quote.mentor_id,
                mentee_id=quote.mentee_id,
                service_id=quote.service_id,
                service_title=quote.service_title,
                duration_minutes=quote.duration_minutes,
                price=quote.amount,
                currency=quote.currency,
                scheduled_at_utc=quote.scheduled_at_utc,
                status=SessionStatus.confirmed,
                payment_status=PaymentStatus.paid,
                payment_channel=channel,
                payment_verified=verified,
                external_payment_ref=external_ref,
                idempotency_key=idempotency_key,
                meeting_ref=f"{self.meeting_base_url}/mentorship-{session_id}",
                created_at_utc=now,
                updated_at_utc=now,
            )

        def notifications(session: MentorshipSessionRecord) -> list[NotificationIntent]:
            payload = {
                "session_id": session.id,
                "service_title": session.service_title,
                "scheduled_at_utc": session.scheduled_at_utc.isoformat(),
                "meeting_ref": session.meeting_ref,
            }
            intents = [
                NotificationIntent("session_booked", session.mentor_id, dict(payload)),
                NotificationIntent("session_booked", session.mentee_id, dict(payload)),
            ]
            if not session.payment_verified:
                intents.append(
                    NotificationIntent(
                        "payment_acknowledgement_requested",
                        session.mentor_id,
                        {**payload, "transaction_id": session.external_payment_ref},
                    )
                )
            return intents

        try:
            session, created = self.store.materialize_session(
                idempotency_key=idempotency_key,
                build=build,
                notifications=notifications,
            )
        except StoreConflictError as exc:
            self._finish(attempt, AttemptState.failed, reason="slot_unavailable")
            logger.error(
                "materialize_slot_conflict attempt=%s key=%s mentor=%s; payment needs refund",
                attempt.id,
                idempotency_key,
                quote.mentor_id,
            )
            self._count("materialize", "slot_unavailable")
            raise SlotUnavailableError(str(exc)) from exc

        if not created and (
            session.mentee_id != quote.mentee_id or session.mentor_id != quote.mentor_id
        ):
            logger.warning(
                "payment_reference_reused attempt=%s key=%s session=%s",
                attempt.id,
                idempotency_key,
                session.id,
            )
            raise ConflictError("payment reference already used for another booking")

        attempt.session_id = session.id
        self._finish(attempt, AttemptState.confirmed, reason=None)
        if not created:
            return self._duplicate(session, idempotency_key)
        logger.info(
            "session_materialized session=%s key=%s channel=%s verified=%s",
            session.id,
            idempotency_key,
            channel.value,
            verified,
        )
        self._count("materialize", "created")
        return BookingResult(session=session, duplicate=False)

    def _duplicate(self, session: MentorshipSessionRecord, key: str) -> BookingResult:
        logger.info("duplicate_payment key=%s session=%s", key, session.id)
        self._count("materialize", "duplicate")
        return BookingResult(session=session, duplicate=True)

    def _move_session(
        self,
        session: MentorshipSessionRecord,
        target: SessionStatus,
        notifications: Optional[list[NotificationIntent]] = None,
    ) -> MentorshipSessionRecord:
        if target not in SESSION_TRANSITIONS[session.status]:
            raise InvalidTransitionError(
                f"invalid session transition {session.status.value} -> {target.value}"
            )
        updated = self._cas_session(session, {"status": target}, notifications or [])
        logger.info(
            "session_transitioned session=%s from=%s to=%s",
            session.id,
            session.status.value,
            target.value,
        )
        return updated

    def _cas_session(
        self,
        session: MentorshipSessionRecord,
        updates: dict,
        notifications: Optional[list[NotificationIntent]] = None,
    ) -> MentorshipSessionRecord:
        try:
            return self.store.compare_and_set_session(
                session.id,
                expected_version=session.version,
                updates=updates,
                notifications=notifications or [],
            )
        except StoreConflictError as exc:
            raise ConflictError(str(exc)) from exc

    def _fail_order(self, order_id: str, *, reason: str) -> None:
        attempt = self._find_order_attempt(order_id)
        if attempt is None:
            return
        with attempt.lock:
            if attempt.state == AttemptState.awaiting_payment:
                self._finish(attempt, AttemptState.failed, reason=reason)

    def _find_order_attempt(self, order_id: str) -> Optional[PaymentAttempt]:
        with self._registry_lock:
            attempt_id = self._attempts_by_order.get(order_id)
            return self._attempts.get(attempt_id) if attempt_id else None

    def _attempt_for_order(self, order_id: str) -> PaymentAttempt:
        attempt = self._find_order_attempt(order_id)
        if not attempt:
            raise StoreNotFoundError(f"no payment attempt for order: {order_id}")
        return attempt

    def _finish(
        self,
        attempt: PaymentAttempt,
        state: AttemptState,
        *,
        reason: Optional[str],
        now: Optional[datetime] = None,
    ) -> None:
        attempt.state = state
        attempt.failure_reason = reason
        attempt.finished_at_utc = now or self.clock()

    def _prune(self, now: datetime) -> None:
        cutoff = now - FINISHED_ATTEMPT_RETENTION
        with self._registry_lock:
            stale = [
                attempt
                for attempt in self._attempts.values()
                if attempt.finished_at_utc is not None and attempt.finished_at_utc < cutoff
            ]
            for attempt in stale:
                self._attempts.pop(attempt.id, None)
                if attempt.order_id:
                    self._attempts_by_order.pop(attempt.order_id, None)

    @staticmethod
    def _new_attempt_id() -> str:
        return f"pay_{uuid4().hex[:12]}"

    def _count(self, name: str, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment(name, outcome)
