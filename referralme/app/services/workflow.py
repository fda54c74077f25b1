from __future__ import annotations

from referralme.app.models import ReferralParty, ReferralStatus, SessionStatus

REFERRAL_STATUS_RANK = {
    ReferralStatus.pending: 0,
    ReferralStatus.accepted: 1,
    ReferralStatus.rejected: 1,
    ReferralStatus.referral_confirmed: 2,
    ReferralStatus.sent_to_hr: 3,
    ReferralStatus.interview_scheduled: 4,
    ReferralStatus.completed: 5,
}

SEEKER_MILESTONES = (
    ReferralStatus.referral_confirmed,
    ReferralStatus.sent_to_hr,
    ReferralStatus.interview_scheduled,
    ReferralStatus.completed,
)


def _forward_milestones(current: ReferralStatus) -> set[ReferralStatus]:
    rank = REFERRAL_STATUS_RANK[current]
    return {status for status in SEEKER_MILESTONES if REFERRAL_STATUS_RANK[status] > rank}


# Seekers may skip intermediate milestones, so every milestone of higher rank is reachable.
ALLOWED_TRANSITIONS = {
    ReferralStatus.pending: {ReferralStatus.accepted, ReferralStatus.rejected},
    ReferralStatus.accepted: _forward_milestones(ReferralStatus.accepted),
    ReferralStatus.referral_confirmed: _forward_milestones(ReferralStatus.referral_confirmed),
    ReferralStatus.sent_to_hr: _forward_milestones(ReferralStatus.sent_to_hr),
    ReferralStatus.interview_scheduled: _forward_milestones(ReferralStatus.interview_scheduled),
    ReferralStatus.completed: set(),
    ReferralStatus.rejected: set(),
}

TRANSITION_AUTHORITY = {
    ReferralStatus.accepted: ReferralParty.referrer,
    ReferralStatus.rejected: ReferralParty.referrer,
    ReferralStatus.referral_confirmed: ReferralParty.seeker,
    ReferralStatus.sent_to_hr: ReferralParty.seeker,
    ReferralStatus.interview_scheduled: ReferralParty.seeker,
    ReferralStatus.completed: ReferralParty.seeker,
}

TERMINAL_REFERRAL_STATUSES = {ReferralStatus.completed, ReferralStatus.rejected}

# Decisions taken by the referrer that the seeker is told about.
NOTIFY_SEEKER_ON = {
    (ReferralStatus.pending, ReferralStatus.accepted),
    (ReferralStatus.pending, ReferralStatus.rejected),
}

SESSION_TRANSITIONS = {
    SessionStatus.pending: {SessionStatus.confirmed, SessionStatus.cancelled},
    SessionStatus.confirmed: {SessionStatus.in_progress, SessionStatus.cancelled},
    SessionStatus.in_progress: {SessionStatus.completed},
    SessionStatus.completed: set(),
    SessionStatus.cancelled: set(),
}


def is_allowed_transition(current: ReferralStatus, target: ReferralStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]
