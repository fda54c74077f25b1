from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock
from typing import TYPE_CHECKING, Iterable, Optional

from referralme.app.models import (
    ChangeEvent,
    Collection,
    PlatformStats,
    ReferralStatus,
    UserRole,
    UserStats,
)
from referralme.app.store import EventStore, Subscription

if TYPE_CHECKING:
    from referralme.app.observability import MetricsRegistry

logger = logging.getLogger("referralme.stats")

IMPACT_PER_REFERRAL = 10
IMPACT_PER_PLACEMENT = 25
POINTS_PER_LEVEL = 100
POINTS_PER_ACHIEVEMENT = 50
SUCCESSFUL_STATUSES = {ReferralStatus.accepted, ReferralStatus.completed}
STATS_COLLECTIONS = (
    Collection.job_postings,
    Collection.referral_requests,
    Collection.user_profiles,
)


@dataclass(frozen=True)
class Achievement:
    id: str
    title: str
    metric: str
    threshold: int


ACHIEVEMENTS = (
    Achievement("first_job_post", "First Job Post", "jobs_posted", 1),
    Achievement("job_poster", "Job Poster", "jobs_posted", 5),
    Achievement("prolific_poster", "Prolific Poster", "jobs_posted", 10),
    Achievement("first_referral", "First Referral", "referrals_given", 1),
    Achievement("referral_expert", "Referral Expert", "referrals_given", 10),
    Achievement("placement_master", "Placement Master", "successful_placements", 5),
    Achievement("impact_leader", "Impact Leader", "impact_score", 500),
    Achievement("legend", "Legend", "impact_score", 1000),
)

REPUTATION_TIERS = (
    (100, "newcomer"),
    (500, "helper"),
    (2000, "expert"),
)


def impact_score(referrals_given: int, successful_placements: int) -> int:
    return referrals_given * IMPACT_PER_REFERRAL + successful_placements * IMPACT_PER_PLACEMENT


def reputation_for(impact: int) -> str:
    for ceiling, tier in REPUTATION_TIERS:
        if impact < ceiling:
            return tier
    return "legend"


def earned_achievements(metrics: dict[str, int]) -> set[str]:
    return {
        achievement.id
        for achievement in ACHIEVEMENTS
        if metrics.get(achievement.metric, 0) >= achievement.threshold
    }


def build_user_stats(
    user_id: str,
    *,
    jobs_posted: int,
    referrals_given: int,
    successful_placements: int,
    profile_views: int,
    unlocked: Iterable[str],
) -> UserStats:
    unlocked_ids = set(unlocked)
    achievements = [item.id for item in ACHIEVEMENTS if item.id in unlocked_ids]
    impact = impact_score(referrals_given, successful_placements)
    total_points = (
        impact
        + jobs_posted * 10
        + referrals_given * 15
        + successful_placements * 50
        + POINTS_PER_ACHIEVEMENT * len(achievements)
    )
    return UserStats(
        user_id=user_id,
        jobs_posted=jobs_posted,
        referrals_given=referrals_given,
        successful_placements=successful_placements,
        impact_score=impact,
        profile_views=profile_views,
        achievements=achievements,
        total_points=total_points,
        level=total_points // POINTS_PER_LEVEL + 1,
        points_to_next_level=POINTS_PER_LEVEL - total_points % POINTS_PER_LEVEL,
        reputation=reputation_for(impact),
    )


class StatisticsAggregator:
    """
    Keeps per-user stats and achievements in step with the store.

    Each relevant change triggers a full rescan of the affected user's postings
    and requests, so the result never depends on the order events arrive in.
    Unlocked achievements are remembered here and never revoked. The
    aggregator only reads from the store.
    """

    def __init__(self, store: EventStore, metrics: Optional["MetricsRegistry"] = None) -> None:
        self.store = store
        self.metrics = metrics
        self._lock = Lock()
        self._cache: dict[str, UserStats] = {}
        self._unlocked: dict[str, set[str]] = {}
        self._sequences: dict[str, int] = {}
        self._subscription: Optional[Subscription] = None

    def attach(self) -> Subscription:
        if self._subscription is None:
            self._subscription = self.store.subscribe(self.on_event, collections=STATS_COLLECTIONS)
        return self._subscription

    def detach(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    def on_event(self, event: ChangeEvent) -> None:
        for user_id in self._affected_users(event):
            try:
                self.recompute_user(user_id)
            except Exception:
                logger.exception(
                    "stats_recompute_failed user=%s event=%s document=%s",
                    user_id,
                    event.event_type.value,
                    event.document_id,
                )
                self._count("stats_recompute", "failed")

    def recompute_user(self, user_id: str) -> tuple[UserStats, list[str]]:
        """
        Rescan the user's documents; returns the stats and the newly unlocked ids.

        Scans can overlap when writers commit concurrently. Each scan is tagged
        with the change sequence read before it started, and a scan never
        replaces counters cached by a scan that started later.
        """
        sequence = self.store.last_sequence
        jobs = self.store.list_job_postings(owner_id=user_id)
        given = self.store.list_referral_requests(referrer_id=user_id)
        placements = sum(1 for item in given if item.status == ReferralStatus.completed)
        profile = self.store.find_profile(user_id)
        counters = {
            "jobs_posted": len(jobs),
            "referrals_given": len(given),
            "successful_placements": placements,
            "impact_score": impact_score(len(given), placements),
        }
        earned = earned_achievements(counters)

        with self._lock:
            previous = self._unlocked.get(user_id, set())
            newly = [item.id for item in ACHIEVEMENTS if item.id in earned - previous]
            unlocked = previous | earned
            cached = self._cache.get(user_id)
            if cached is not None and self._sequences.get(user_id, -1) > sequence:
                # A newer scan already landed; only the unlocked set may grow.
                stats = build_user_stats(
                    user_id,
                    jobs_posted=cached.jobs_posted,
                    referrals_given=cached.referrals_given,
                    successful_placements=cached.successful_placements,
                    profile_views=cached.profile_views,
                    unlocked=unlocked,
                )
            else:
                stats = build_user_stats(
                    user_id,
                    jobs_posted=counters["jobs_posted"],
                    referrals_given=counters["referrals_given"],
                    successful_placements=placements,
                    profile_views=profile.profile_views if profile else 0,
                    unlocked=unlocked,
                )
                self._sequences[user_id] = sequence
            self._unlocked[user_id] = unlocked
            self._cache[user_id] = stats

        for achievement_id in newly:
            logger.info("achievement_unlocked user=%s achievement=%s", user_id, achievement_id)
            self._count("achievement_unlocked", achievement_id)
        return stats, newly

    def get_stats(self, user_id: str) -> UserStats:
        with self._lock:
            cached = self._cache.get(user_id)
        if cached is not None:
            return cached
        stats, _ = self.recompute_user(user_id)
        return stats

    def platform_stats(self) -> PlatformStats:
        profiles = [
            profile
            for profile in self.store.list_profiles()
            if profile.roles and (profile.display_name or profile.email)
        ]
        requests = self.store.list_referral_requests()
        return PlatformStats(
            total_users=len(profiles),
            active_job_postings=len(self.store.list_job_postings(active_only=True)),
            total_referral_requests=len(requests),
            active_referrers=sum(1 for item in profiles if UserRole.referrer in item.roles),
            active_seekers=sum(1 for item in profiles if UserRole.seeker in item.roles),
            successful_referrals=sum(1 for item in requests if item.status in SUCCESSFUL_STATUSES),
        )

    @staticmethod
    def _affected_users(event: ChangeEvent) -> list[str]:
        if event.collection == Collection.job_postings:
            keys = ("owner_id",)
        elif event.collection == Collection.referral_requests:
            keys = ("referrer_id",)
        elif event.collection == Collection.user_profiles:
            keys = ("user_id",)
        else:
            # Mentorship bookings do not feed referral stats.
            return []
        return [event.data[key] for key in keys if event.data.get(key)]

    def _count(self, name: str, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment(name, outcome)
