from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from referralme.app.models import (
    ApplicationPayload,
    ReferralParty,
    ReferralRequestRecord,
    ReferralStatus,
)
from referralme.app.services.errors import (
    ConflictError,
    InvalidTransitionError,
    PermissionDeniedError,
)
from referralme.app.services.workflow import (
    NOTIFY_SEEKER_ON,
    TRANSITION_AUTHORITY,
    is_allowed_transition,
)
from referralme.app.store import EventStore, NotificationIntent, StoreConflictError

if TYPE_CHECKING:
    from referralme.app.observability import MetricsRegistry

logger = logging.getLogger("referralme.referrals")


def party_of(request: ReferralRequestRecord, actor_id: str) -> Optional[ReferralParty]:
    if actor_id == request.referrer_id:
        return ReferralParty.referrer
    if actor_id == request.seeker_id:
        return ReferralParty.seeker
    return None


class ReferralLifecycleController:
    """
    Owns the referral request state machine.

    Referrers decide on pending requests; seekers self-report the milestones
    that follow. Every write is a compare-and-set on the status that was
    validated, so a concurrent writer surfaces as ConflictError instead of
    silently overwriting.
    """

    def __init__(self, store: EventStore, metrics: Optional["MetricsRegistry"] = None) -> None:
        self.store = store
        self.metrics = metrics

    def create_request(
        self,
        *,
        job_posting_id: str,
        seeker_id: str,
        application: ApplicationPayload,
    ) -> ReferralRequestRecord:
        job = self.store.get_job_posting(job_posting_id)
        if job.owner_id == seeker_id:
            raise PermissionDeniedError("cannot request a referral on your own job posting")
        try:
            request = self.store.create_referral_request(
                job_posting_id=job_posting_id,
                seeker_id=seeker_id,
                application=application,
            )
        except StoreConflictError as exc:
            raise ConflictError(str(exc)) from exc
        logger.info(
            "referral_created request_id=%s job_id=%s seeker=%s referrer=%s",
            request.id,
            job.id,
            seeker_id,
            request.referrer_id,
        )
        self._count("referral_created", "ok")
        return request

    def transition(
        self,
        request_id: str,
        *,
        actor_id: str,
        target_status: ReferralStatus,
        note: Optional[str] = None,
        evidence_ref: Optional[str] = None,
        expected_status: Optional[ReferralStatus] = None,
    ) -> ReferralRequestRecord:
        request = self.store.get_referral_request(request_id)
        current = request.status

        party = party_of(request, actor_id)
        if party is None:
            self._reject("permission_denied", request_id, actor_id, current, target_status)
            raise PermissionDeniedError(f"{actor_id} is not a party to referral {request_id}")

        if expected_status is not None and expected_status != current:
            self._reject("conflict", request_id, actor_id, current, target_status)
            raise ConflictError(
                f"referral {request_id} is {current.value}, caller expected {expected_status.value}"
            )

        if not is_allowed_transition(current, target_status):
            self._reject("invalid_transition", request_id, actor_id, current, target_status)
            raise InvalidTransitionError(
                f"invalid transition {current.value} -> {target_status.value}"
            )

        required = TRANSITION_AUTHORITY[target_status]
        if party != required:
            self._reject("permission_denied", request_id, actor_id, current, target_status)
            raise PermissionDeniedError(
                f"only the {required.value} may move a referral to {target_status.value}"
            )

        notifications = []
        if (current, target_status) in NOTIFY_SEEKER_ON:
            notifications.append(
                NotificationIntent(
                    event_type=f"referral_{target_status.value}",
                    recipient=request.seeker_id,
                    payload={
                        "request_id": request.id,
                        "job_posting_id": request.job_posting_id,
                        "referrer_id": request.referrer_id,
                        "note": note or "",
                    },
                )
            )

        try:
            updated = self.store.compare_and_set_referral_status(
                request_id,
                expected_status=current,
                new_status=target_status,
                actor_id=actor_id,
                note=note,
                evidence_ref=evidence_ref,
                notifications=notifications,
            )
        except StoreConflictError as exc:
            self._reject("conflict", request_id, actor_id, current, target_status)
            raise ConflictError(str(exc)) from exc

        logger.info(
            "referral_transitioned request_id=%s actor=%s from=%s to=%s",
            request_id,
            actor_id,
            current.value,
            target_status.value,
        )
        self._count("referral_transition", "ok")
        return updated

    def _reject(
        self,
        reason: str,
        request_id: str,
        actor_id: str,
        current: ReferralStatus,
        target: ReferralStatus,
    ) -> None:
        logger.info(
            "referral_transition_rejected reason=%s request_id=%s actor=%s from=%s to=%s",
            reason,
            request_id,
            actor_id,
            current.value,
            target.value,
        )
        self._count("referral_transition", reason)

    def _count(self, name: str, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment(name, outcome)
