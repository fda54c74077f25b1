from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from threading import RLock
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional
from uuid import uuid4

from referralme.app.models import (
    ApplicationPayload,
    ChangeEvent,
    ChangeEventType,
    Collection,
    JobPostingCreateRequest,
    JobPostingRecord,
    MentorshipSessionRecord,
    OutboxMessage,
    OutboxStatus,
    ProfileUpsertRequest,
    ReferralAuditNote,
    ReferralRequestRecord,
    ReferralStatus,
    SessionStatus,
    UserProfileRecord,
    WebhookDeliveryRecord,
    WebhookProcessingStatus,
    utc_now,
)

if TYPE_CHECKING:
    from referralme.app.persistence import SnapshotPersistence

logger = logging.getLogger("referralme.store")

CHANGE_LOG_LIMIT = 5000
ACTIVE_SESSION_STATUSES = {SessionStatus.confirmed, SessionStatus.in_progress}


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


class StoreConflictError(Exception):
    pass


class StoreNotFoundError(Exception):
    pass


@dataclass(frozen=True)
class NotificationIntent:
    event_type: str
    recipient: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class Subscription:
    id: str
    callback: Callable[[ChangeEvent], None]
    collections: Optional[frozenset[Collection]]
    predicate: Optional[Callable[[ChangeEvent], bool]]
    _store: Optional["EventStore"] = None

    def matches(self, event: ChangeEvent) -> bool:
        if self.collections is not None and event.collection not in self.collections:
            return False
        if self.predicate is not None and not self.predicate(event):
            return False
        return True

    def close(self) -> None:
        if self._store is not None:
            self._store.unsubscribe(self.id)
            self._store = None


class EventStore:
    def __init__(self, persistence: Optional["SnapshotPersistence"] = None) -> None:
        self._lock = RLock()
        self.persistence = persistence
        self.job_postings: dict[str, JobPostingRecord] = {}
        self.referral_requests: dict[str, ReferralRequestRecord] = {}
        self.mentorship_sessions: dict[str, MentorshipSessionRecord] = {}
        self.user_profiles: dict[str, UserProfileRecord] = {}
        self.audit_notes: list[ReferralAuditNote] = []
        self.outbox: dict[str, OutboxMessage] = {}
        self.webhook_deliveries: dict[str, WebhookDeliveryRecord] = {}
        self.changes: list[ChangeEvent] = []
        self._sequence = 0
        self._sessions_by_payment_key: dict[str, str] = {}
        self._subscriptions: dict[str, Subscription] = {}

        if self.persistence:
            snapshot = self.persistence.load_snapshot()
            if snapshot:
                self._hydrate_from_snapshot(snapshot)
            for delivery in self.persistence.list_webhook_deliveries():
                self.webhook_deliveries[delivery.key] = delivery

    # Subscriptions and change feed

    def subscribe(
        self,
        callback: Callable[[ChangeEvent], None],
        *,
        collections: Optional[Iterable[Collection]] = None,
        predicate: Optional[Callable[[ChangeEvent], bool]] = None,
    ) -> Subscription:
        subscription = Subscription(
            id=new_id("sub"),
            callback=callback,
            collections=frozenset(collections) if collections is not None else None,
            predicate=predicate,
            _store=self,
        )
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        return subscription

    def unsubscribe(self, subscription_id: str) -> None:
        with self._lock:
            self._subscriptions.pop(subscription_id, None)

    def list_changes(
        self,
        *,
        since: int = 0,
        collection: Optional[Collection] = None,
        limit: int = 200,
    ) -> list[ChangeEvent]:
        with self._lock:
            events = [event for event in self.changes if event.sequence > since]
        if collection:
            events = [event for event in events if event.collection == collection]
        safe_limit = max(1, min(limit, 1000))
        return events[:safe_limit]

    @property
    def last_sequence(self) -> int:
        return self._sequence

    # User profiles

    def upsert_profile(self, user_id: str, request: ProfileUpsertRequest) -> UserProfileRecord:
        with self._lock:
            now = utc_now()
            existing = self.user_profiles.get(user_id)
            if existing:
                profile = existing.model_copy(
                    update={
                        "display_name": request.display_name.strip(),
                        "email": request.email,
                        "roles": request.roles,
                        "upi_id": request.upi_id,
                        "payee_name": request.payee_name,
                        "services": request.services,
                        "version": existing.version + 1,
                        "updated_at_utc": now,
                    }
                )
            else:
                profile = UserProfileRecord(
                    id=user_id,
                    display_name=request.display_name.strip(),
                    email=request.email,
                    roles=request.roles,
                    upi_id=request.upi_id,
                    payee_name=request.payee_name,
                    services=request.services,
                    created_at_utc=now,
                    updated_at_utc=now,
                )
            self.user_profiles[user_id] = profile
            event = self._append_change(
                Collection.user_profiles,
                ChangeEventType.profile_updated,
                profile.id,
                profile.version,
                {"user_id": profile.id},
            )
            self._persist_state()
        self._publish(event)
        return profile

    def get_profile(self, user_id: str) -> UserProfileRecord:
        profile = self.user_profiles.get(user_id)
        if not profile:
            raise StoreNotFoundError(f"user profile not found: {user_id}")
        return profile

    def find_profile(self, user_id: str) -> Optional[UserProfileRecord]:
        return self.user_profiles.get(user_id)

    def list_profiles(self) -> list[UserProfileRecord]:
        with self._lock:
            return list(self.user_profiles.values())

    def record_profile_view(self, user_id: str) -> UserProfileRecord:
        with self._lock:
            profile = self.get_profile(user_id)
            profile = profile.model_copy(
                update={
                    "profile_views": profile.profile_views + 1,
                    "version": profile.version + 1,
                    "updated_at_utc": utc_now(),
                }
            )
            self.user_profiles[user_id] = profile
            event = self._append_change(
                Collection.user_profiles,
                ChangeEventType.profile_updated,
                profile.id,
                profile.version,
                {"user_id": profile.id},
            )
            self._persist_state()
        self._publish(event)
        return profile

    # Job postings

    def create_job_posting(
        self, owner_id: str, request: JobPostingCreateRequest
    ) -> JobPostingRecord:
        with self._lock:
            now = utc_now()
            job = JobPostingRecord(
                id=new_id("job"),
                owner_id=owner_id,
                title=request.title.strip(),
                company=request.company.strip(),
                location=request.location.strip(),
                description=request.description,
                requirements=request.requirements,
                salary=request.salary,
                created_at_utc=now,
                updated_at_utc=now,
            )
            self.job_postings[job.id] = job
            event = self._append_change(
                Collection.job_postings,
                ChangeEventType.job_posting_created,
                job.id,
                job.version,
                {"owner_id": owner_id},
            )
            self._persist_state()
        self._publish(event)
        return job

    def get_job_posting(self, job_id: str) -> JobPostingRecord:
        job = self.job_postings.get(job_id)
        if not job:
            raise StoreNotFoundError(f"job posting not found: {job_id}")
        return job

    def set_job_posting_active(self, job_id: str, is_active: bool) -> JobPostingRecord:
        with self._lock:
            job = self.get_job_posting(job_id)
            if job.is_active == is_active:
                return job
            job = job.model_copy(
                update={
                    "is_active": is_active,
                    "version": job.version + 1,
                    "updated_at_utc": utc_now(),
                }
            )
            self.job_postings[job_id] = job
            event = self._append_change(
                Collection.job_postings,
                ChangeEventType.job_posting_updated,
                job.id,
                job.version,
                {"owner_id": job.owner_id, "is_active": is_active},
            )
            self._persist_state()
        self._publish(event)
        return job

    def list_job_postings(
        self, *, owner_id: Optional[str] = None, active_only: bool = False
    ) -> list[JobPostingRecord]:
        with self._lock:
            records = list(self.job_postings.values())
        if owner_id:
            records = [job for job in records if job.owner_id == owner_id]
        if active_only:
            records = [job for job in records if job.is_active]
        records.sort(key=lambda item: item.created_at_utc, reverse=True)
        return records

    # Referral requests

    def create_referral_request(
        self,
        *,
        job_posting_id: str,
        seeker_id: str,
        application: ApplicationPayload,
    ) -> ReferralRequestRecord:
        with self._lock:
            job = self.get_job_posting(job_posting_id)
            if not job.is_active:
                raise StoreConflictError(f"job posting is closed: {job_posting_id}")
            for existing in self.referral_requests.values():
                if existing.job_posting_id == job_posting_id and existing.seeker_id == seeker_id:
                    raise StoreConflictError(
                        f"referral already requested for job {job_posting_id} by {seeker_id}"
                    )
            now = utc_now()
            request = ReferralRequestRecord(
                id=new_id("ref"),
                job_posting_id=job.id,
                seeker_id=seeker_id,
                referrer_id=job.owner_id,
                status=ReferralStatus.pending,
                application=application,
                created_at_utc=now,
                updated_at_utc=now,
            )
            self.referral_requests[request.id] = request
            self._add_audit_note(
                request_id=request.id,
                actor_id=seeker_id,
                from_status=None,
                to_status=ReferralStatus.pending,
                note="referral_requested",
                evidence_ref=None,
            )
            self._enqueue_notification(
                NotificationIntent(
                    event_type="referral_requested",
                    recipient=job.owner_id,
                    payload={
                        "request_id": request.id,
                        "job_posting_id": job.id,
                        "job_title": job.title,
                        "seeker_id": seeker_id,
                    },
                )
            )
            event = self._append_change(
                Collection.referral_requests,
                ChangeEventType.referral_created,
                request.id,
                request.version,
                {
                    "referrer_id": request.referrer_id,
                    "seeker_id": request.seeker_id,
                    "status": request.status.value,
                },
            )
            self._persist_state()
        self._publish(event)
        return request

    def get_referral_request(self, request_id: str) -> ReferralRequestRecord:
        request = self.referral_requests.get(request_id)
        if not request:
            raise StoreNotFoundError(f"referral request not found: {request_id}")
        return request

    def list_referral_requests(
        self,
        *,
        seeker_id: Optional[str] = None,
        referrer_id: Optional[str] = None,
        job_posting_id: Optional[str] = None,
        status: Optional[ReferralStatus] = None,
    ) -> list[ReferralRequestRecord]:
        with self._lock:
            records = list(self.referral_requests.values())
        if seeker_id:
            records = [item for item in records if item.seeker_id == seeker_id]
        if referrer_id:
            records = [item for item in records if item.referrer_id == referrer_id]
        if job_posting_id:
            records = [item for item in records if item.job_posting_id == job_posting_id]
        if status:
            records = [item for item in records if item.status == status]
        records.sort(key=lambda item: item.created_at_utc, reverse=True)
        return records

    def compare_and_set_referral_status(
        self,
        request_id: str,
        *,
        expected_status: ReferralStatus,
        new_status: ReferralStatus,
        actor_id: str,
        note: Optional[str] = None,
        evidence_ref: Optional[str] = None,
        notifications: Iterable[NotificationIntent] = (),
    ) -> ReferralRequestRecord:
        with self._lock:
            request = self.get_referral_request(request_id)
            if request.status != expected_status:
                raise StoreConflictError(
                    f"referral {request_id} is {request.status.value}, "
                    f"expected {expected_status.value}"
                )
            updated = request.model_copy(
                update={
                    "status": new_status,
                    "version": request.version + 1,
                    "updated_at_utc": utc_now(),
                }
            )
            self.referral_requests[request_id] = updated
            self._add_audit_note(
                request_id=request_id,
                actor_id=actor_id,
                from_status=expected_status,
                to_status=new_status,
                note=note,
                evidence_ref=evidence_ref,
            )
            for intent in notifications:
                self._enqueue_notification(intent)
            event = self._append_change(
                Collection.referral_requests,
                ChangeEventType.referral_transitioned,
                updated.id,
                updated.version,
                {
                    "referrer_id": updated.referrer_id,
                    "seeker_id": updated.seeker_id,
                    "from_status": expected_status.value,
                    "status": new_status.value,
                },
            )
            self._persist_state()
        self._publish(event)
        return updated

    def list_audit_notes(self, request_id: str) -> list[ReferralAuditNote]:
        with self._lock:
            return [note for note in self.audit_notes if note.request_id == request_id]

    # Mentorship sessions

    def find_session_by_payment_key(self, idempotency_key: str) -> Optional[MentorshipSessionRecord]:
        with self._lock:
            session_id = self._sessions_by_payment_key.get(idempotency_key)
            return self.mentorship_sessions.get(session_id) if session_id else None

    def has_slot_conflict(
        self,
        *,
        mentor_id: str,
        start: datetime,
        duration_minutes: int,
        exclude_session_id: Optional[str] = None,
    ) -> bool:
        end = start + timedelta(minutes=duration_minutes)
        with self._lock:
            sessions = list(self.mentorship_sessions.values())
        for session in sessions:
            if session.mentor_id != mentor_id or session.id == exclude_session_id:
                continue
            if session.status not in ACTIVE_SESSION_STATUSES:
                continue
            other_end = session.scheduled_at_utc + timedelta(minutes=session.duration_minutes)
            if start < other_end and session.scheduled_at_utc < end:
                return True
        return False

    def materialize_session(
        self,
        *,
        idempotency_key: str,
        build: Callable[[str], MentorshipSessionRecord],
        notifications: Callable[[MentorshipSessionRecord], Iterable[NotificationIntent]],
    ) -> tuple[MentorshipSessionRecord, bool]:
        """
        Create the session for a confirmed payment, exactly once per idempotency key.

        Returns ``(session, created)``. When the key was already materialized the
        existing session is returned with ``created=False`` and nothing is written.
        Raises StoreConflictError when the mentor's slot was taken meanwhile.
        """
        with self._lock:
            existing_id = self._sessions_by_payment_key.get(idempotency_key)
            if existing_id:
                return self.mentorship_sessions[existing_id], False
            session = build(new_id("ses"))
            if self.has_slot_conflict(
                mentor_id=session.mentor_id,
                start=session.scheduled_at_utc,
                duration_minutes=session.duration_minutes,
            ):
                raise StoreConflictError(
                    f"mentor {session.mentor_id} already booked at "
                    f"{session.scheduled_at_utc.isoformat()}"
                )
            self.mentorship_sessions[session.id] = session
            self._sessions_by_payment_key[idempotency_key] = session.id
            for intent in notifications(session):
                self._enqueue_notification(intent)
            event = self._append_change(
                Collection.mentorship_sessions,
                ChangeEventType.session_materialized,
                session.id,
                session.version,
                {
                    "mentor_id": session.mentor_id,
                    "mentee_id": session.mentee_id,
                    "payment_channel": session.payment_channel.value,
                },
            )
            self._persist_state()
        self._publish(event)
        return session, True

    def get_session(self, session_id: str) -> MentorshipSessionRecord:
        session = self.mentorship_sessions.get(session_id)
        if not session:
            raise StoreNotFoundError(f"mentorship session not found: {session_id}")
        return session

    def list_sessions(
        self, *, mentor_id: Optional[str] = None, mentee_id: Optional[str] = None
    ) -> list[MentorshipSessionRecord]:
        with self._lock:
            records = list(self.mentorship_sessions.values())
        if mentor_id:
            records = [item for item in records if item.mentor_id == mentor_id]
        if mentee_id:
            records = [item for item in records if item.mentee_id == mentee_id]
        records.sort(key=lambda item: item.scheduled_at_utc)
        return records

    def compare_and_set_session(
        self,
        session_id: str,
        *,
        expected_version: int,
        updates: dict[str, Any],
        notifications: Iterable[NotificationIntent] = (),
    ) -> MentorshipSessionRecord:
        with self._lock:
            session = self.get_session(session_id)
            if session.version != expected_version:
                raise StoreConflictError(
                    f"session {session_id} is at version {session.version}, "
                    f"expected {expected_version}"
                )
            updated = session.model_copy(
                update={**updates, "version": session.version + 1, "updated_at_utc": utc_now()}
            )
            self.mentorship_sessions[session_id] = updated
            for intent in notifications:
                self._enqueue_notification(intent)
            event = self._append_change(
                Collection.mentorship_sessions,
                ChangeEventType.session_updated,
                updated.id,
                updated.version,
                {"status": updated.status.value},
            )
            self._persist_state()
        self._publish(event)
        return updated

    # Notification outbox

    def enqueue_notification(self, intent: NotificationIntent) -> OutboxMessage:
        with self._lock:
            message = self._enqueue_notification(intent)
            self._persist_state()
            return message

    def claim_outbox_due(
        self, now: Optional[datetime] = None, *, lease_seconds: int = 120
    ) -> list[OutboxMessage]:
        """
        Return the messages due for delivery and lease them to the caller.

        A claimed message is pushed out of the due window for ``lease_seconds``,
        so a concurrent drain skips it. Recording the attempt replaces the lease;
        if the claimer dies first, the message becomes due again when it lapses.
        """
        moment = now or utc_now()
        lease_until = moment + timedelta(seconds=lease_seconds)
        with self._lock:
            due = [
                message
                for message in self.outbox.values()
                if message.status in {OutboxStatus.pending, OutboxStatus.retry_pending}
                and (message.next_attempt_utc is None or message.next_attempt_utc <= moment)
            ]
            due.sort(key=lambda item: item.created_at_utc)
            for message in due:
                self.outbox[message.id] = message.model_copy(
                    update={"next_attempt_utc": lease_until}
                )
        return due

    def list_outbox(self, *, recipient: Optional[str] = None) -> list[OutboxMessage]:
        with self._lock:
            messages = list(self.outbox.values())
        if recipient:
            messages = [message for message in messages if message.recipient == recipient]
        messages.sort(key=lambda item: item.created_at_utc)
        return messages

    def record_outbox_attempt(
        self,
        message_id: str,
        *,
        success: bool,
        error: Optional[str] = None,
        max_attempts: int = 5,
        backoff_seconds: int = 60,
    ) -> OutboxMessage:
        with self._lock:
            message = self.outbox.get(message_id)
            if not message:
                raise StoreNotFoundError(f"outbox message not found: {message_id}")

            attempts = message.attempts + 1
            if success:
                status = OutboxStatus.delivered
                next_attempt = None
                last_error = None
            else:
                last_error = error or "unknown notification delivery error"
                if attempts < max_attempts:
                    status = OutboxStatus.retry_pending
                    next_attempt = utc_now() + timedelta(seconds=backoff_seconds * attempts)
                else:
                    status = OutboxStatus.failed
                    next_attempt = None

            updated = message.model_copy(
                update={
                    "attempts": attempts,
                    "status": status,
                    "last_error": last_error,
                    "next_attempt_utc": next_attempt,
                    "updated_at_utc": utc_now(),
                }
            )
            self.outbox[message_id] = updated
            self._persist_state()
            return updated

    # Inbound gateway webhooks

    def ensure_webhook_delivery(self, *, channel: str, event_id: str) -> WebhookDeliveryRecord:
        with self._lock:
            key = self._webhook_key(channel=channel, event_id=event_id)
            existing = self.webhook_deliveries.get(key)
            if existing:
                return existing
            now = utc_now()
            record = WebhookDeliveryRecord(
                id=new_id("whk"),
                key=key,
                channel=channel,
                event_id=event_id,
                status=WebhookProcessingStatus.received,
                attempts=0,
                last_error=None,
                created_at_utc=now,
                updated_at_utc=now,
            )
            self.webhook_deliveries[key] = record
            self._persist_webhook_delivery(record)
            return record

    def record_webhook_attempt(
        self,
        *,
        channel: str,
        event_id: str,
        success: bool,
        error: Optional[str] = None,
    ) -> WebhookDeliveryRecord:
        with self._lock:
            record = self.ensure_webhook_delivery(channel=channel, event_id=event_id)
            updated = record.model_copy(
                update={
                    "attempts": record.attempts + 1,
                    "status": (
                        WebhookProcessingStatus.processed
                        if success
                        else WebhookProcessingStatus.failed
                    ),
                    "last_error": None if success else (error or "unknown webhook error"),
                    "updated_at_utc": utc_now(),
                }
            )
            self.webhook_deliveries[record.key] = updated
            self._persist_webhook_delivery(updated)
            return updated

    # Internals

    def _add_audit_note(
        self,
        *,
        request_id: str,
        actor_id: str,
        from_status: Optional[ReferralStatus],
        to_status: ReferralStatus,
        note: Optional[str],
        evidence_ref: Optional[str],
    ) -> None:
        self.audit_notes.append(
            ReferralAuditNote(
                id=new_id("aud"),
                request_id=request_id,
                actor_id=actor_id,
                from_status=from_status,
                to_status=to_status,
                note=note,
                evidence_ref=evidence_ref,
                created_at_utc=utc_now(),
            )
        )

    def _enqueue_notification(self, intent: NotificationIntent) -> OutboxMessage:
        now = utc_now()
        message = OutboxMessage(
            id=new_id("ntf"),
            event_type=intent.event_type,
            recipient=intent.recipient,
            payload=dict(intent.payload),
            status=OutboxStatus.pending,
            attempts=0,
            created_at_utc=now,
            updated_at_utc=now,
        )
        self.outbox[message.id] = message
        return message

    def _append_change(
        self,
        collection: Collection,
        event_type: ChangeEventType,
        document_id: str,
        version: int,
        data: dict[str, Any],
    ) -> ChangeEvent:
        self._sequence += 1
        event = ChangeEvent(
            sequence=self._sequence,
            collection=collection,
            event_type=event_type,
            document_id=document_id,
            version=version,
            data=data,
            created_at_utc=utc_now(),
        )
        self.changes.append(event)
        if len(self.changes) > CHANGE_LOG_LIMIT:
            del self.changes[: len(self.changes) - CHANGE_LOG_LIMIT]
        return event

    def _publish(self, event: ChangeEvent) -> None:
        with self._lock:
            subscribers = [sub for sub in self._subscriptions.values() if sub.matches(event)]
        for subscription in subscribers:
            try:
                subscription.callback(event)
            except Exception:
                logger.exception(
                    "listener_failed subscription=%s event=%s document=%s",
                    subscription.id,
                    event.event_type.value,
                    event.document_id,
                )

    def _persist_webhook_delivery(self, record: WebhookDeliveryRecord) -> None:
        if self.persistence:
            self.persistence.upsert_webhook_delivery(record)

    def _persist_state(self) -> None:
        if not self.persistence:
            return
        with self._lock:
            self.persistence.save_snapshot(self._snapshot_data())

    def _snapshot_data(self) -> dict:
        return {
            "sequence": self._sequence,
            "job_postings": [
                record.model_dump(mode="json") for record in self.job_postings.values()
            ],
            "referral_requests": [
                record.model_dump(mode="json") for record in self.referral_requests.values()
            ],
            "mentorship_sessions": [
                record.model_dump(mode="json") for record in self.mentorship_sessions.values()
            ],
            "user_profiles": [
                record.model_dump(mode="json") for record in self.user_profiles.values()
            ],
            "audit_notes": [record.model_dump(mode="json") for record in self.audit_notes],
            "outbox": [record.model_dump(mode="json") for record in self.outbox.values()],
        }

    def _hydrate_from_snapshot(self, snapshot: dict) -> None:
        self._sequence = int(snapshot.get("sequence", 0))
        self.job_postings = {
            record["id"]: JobPostingRecord.model_validate(record)
            for record in snapshot.get("job_postings", [])
        }
        self.referral_requests = {
            record["id"]: ReferralRequestRecord.model_validate(record)
            for record in snapshot.get("referral_requests", [])
        }
        self.mentorship_sessions = {
            record["id"]: MentorshipSessionRecord.model_validate(record)
            for record in snapshot.get("mentorship_sessions", [])
        }
        self.user_profiles = {
            record["id"]: UserProfileRecord.model_validate(record)
            for record in snapshot.get("user_profiles", [])
        }
        self.audit_notes = [
            ReferralAuditNote.model_validate(record) for record in snapshot.get("audit_notes", [])
        ]
        self.outbox = {
            record["id"]: OutboxMessage.model_validate(record)
            for record in snapshot.get("outbox", [])
        }
        self._sessions_by_payment_key = {
            session.idempotency_key: session.id for session in self.mentorship_sessions.values()
        }

    @staticmethod
    def _webhook_key(*, channel: str, event_id: str) -> str:
        return f"{channel}:{event_id}"
