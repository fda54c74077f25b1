from __future__ import annotations

import pytest

from referralme.app.models import (
    ApplicationPayload,
    JobPostingCreateRequest,
    ProfileUpsertRequest,
    ReferralStatus,
    UserRole,
)
from referralme.app.services.referrals import ReferralLifecycleController
from referralme.app.services.stats import StatisticsAggregator, build_user_stats, reputation_for
from referralme.app.store import EventStore

REFERRER = "referrer-ravi"


def post_job(store: EventStore, owner_id: str, index: int):
    return store.create_job_posting(
        owner_id,
        JobPostingCreateRequest(
            title=f"Engineer {index}",
            company="Kestrel",
            location="Pune",
            description="Build things",
        ),
    )


def application() -> ApplicationPayload:
    return ApplicationPayload(resume_ref="resume.pdf", experience_level="junior")


@pytest.fixture()
def store() -> EventStore:
    return EventStore()


@pytest.fixture()
def aggregator(store: EventStore) -> StatisticsAggregator:
    aggregator = StatisticsAggregator(store)
    aggregator.attach()
    return aggregator


def seed_busy_referrer(store: EventStore) -> None:
    controller = ReferralLifecycleController(store)
    jobs = [post_job(store, REFERRER, index) for index in range(5)]
    requests = [
        controller.create_request(
            job_posting_id=jobs[index % 5].id,
            seeker_id=f"seeker-{index}",
            application=application(),
        )
        for index in range(10)
    ]
    for request in requests:
        controller.transition(request.id, actor_id=REFERRER, target_status=ReferralStatus.accepted)
    for request in requests[:5]:
        controller.transition(
            request.id, actor_id=request.seeker_id, target_status=ReferralStatus.completed
        )


def test_busy_referrer_stats(store, aggregator) -> None:
    seed_busy_referrer(store)
    stats = aggregator.get_stats(REFERRER)

    assert stats.jobs_posted == 5
    assert stats.referrals_given == 10
    assert stats.successful_placements == 5
    assert stats.impact_score == 225
    assert stats.achievements == [
        "first_job_post",
        "job_poster",
        "first_referral",
        "referral_expert",
        "placement_master",
    ]
    assert stats.total_points == 925
    assert stats.level == 10
    assert stats.points_to_next_level == 75
    assert stats.reputation == "helper"


def test_event_order_does_not_change_the_result(store, aggregator) -> None:
    seed_busy_referrer(store)
    replayed = StatisticsAggregator(store)
    for event in reversed(store.list_changes(limit=1000)):
        replayed.on_event(event)
    assert replayed.get_stats(REFERRER) == aggregator.get_stats(REFERRER)


def test_unlocked_achievements_are_never_revoked(store, aggregator, monkeypatch) -> None:
    post_job(store, REFERRER, 1)
    controller = ReferralLifecycleController(store)
    job = store.list_job_postings(owner_id=REFERRER)[0]
    controller.create_request(job_posting_id=job.id, seeker_id="seeker-1", application=application())
    assert "first_referral" in aggregator.get_stats(REFERRER).achievements

    monkeypatch.setattr(store, "list_referral_requests", lambda **kwargs: [])
    stats, newly = aggregator.recompute_user(REFERRER)
    assert stats.referrals_given == 0
    assert "first_referral" in stats.achievements
    assert newly == []


def test_slow_scan_cannot_overwrite_a_newer_one(store, aggregator, monkeypatch) -> None:
    job = post_job(store, REFERRER, 1)
    controller = ReferralLifecycleController(store)
    assert aggregator.get_stats(REFERRER).referrals_given == 0

    original = store.list_referral_requests
    interleaved: list[bool] = []

    def commit_during_scan(**kwargs):
        snapshot = original(**kwargs)
        if not interleaved:
            interleaved.append(True)
            # Runs the listener-driven recompute to completion mid-scan.
            controller.create_request(
                job_posting_id=job.id, seeker_id="seeker-1", application=application()
            )
        return snapshot

    monkeypatch.setattr(store, "list_referral_requests", commit_during_scan)
    stale, _ = aggregator.recompute_user(REFERRER)

    assert interleaved == [True]
    assert stale.referrals_given == 1
    assert stale.impact_score == 10
    cached = aggregator.get_stats(REFERRER)
    assert cached.referrals_given == 1
    assert cached.impact_score == 10
    assert cached.achievements == ["first_job_post", "first_referral"]


def test_newly_unlocked_reported_once(store) -> None:
    aggregator = StatisticsAggregator(store)
    post_job(store, REFERRER, 1)
    _, first = aggregator.recompute_user(REFERRER)
    _, second = aggregator.recompute_user(REFERRER)
    assert first == ["first_job_post"]
    assert second == []


def test_failing_recompute_keeps_previous_stats(store, aggregator, monkeypatch) -> None:
    post_job(store, "broken-user", 1)
    assert aggregator.get_stats("broken-user").jobs_posted == 1

    original = store.list_job_postings

    def flaky(*, owner_id=None, active_only=False):
        if owner_id == "broken-user":
            raise RuntimeError("index unavailable")
        return original(owner_id=owner_id, active_only=active_only)

    monkeypatch.setattr(store, "list_job_postings", flaky)
    post_job(store, "broken-user", 2)
    post_job(store, REFERRER, 3)

    assert aggregator.get_stats("broken-user").jobs_posted == 1
    assert aggregator.get_stats(REFERRER).jobs_posted == 1
    assert len(original(owner_id="broken-user")) == 2


def test_profile_views_flow_into_stats(store, aggregator) -> None:
    store.upsert_profile(REFERRER, ProfileUpsertRequest(display_name="Ravi", roles=[UserRole.referrer]))
    store.record_profile_view(REFERRER)
    store.record_profile_view(REFERRER)
    assert aggregator.get_stats(REFERRER).profile_views == 2


def test_detached_aggregator_stops_listening(store, aggregator) -> None:
    post_job(store, REFERRER, 1)
    aggregator.detach()
    post_job(store, REFERRER, 2)
    assert aggregator.get_stats(REFERRER).jobs_posted == 1


def test_platform_stats(store, aggregator) -> None:
    store.upsert_profile(REFERRER, ProfileUpsertRequest(display_name="Ravi", roles=[UserRole.referrer]))
    store.upsert_profile("seeker-1", ProfileUpsertRequest(display_name="Meera", roles=[UserRole.seeker]))
    store.upsert_profile("lurker", ProfileUpsertRequest(display_name="No Role"))
    controller = ReferralLifecycleController(store)
    job = post_job(store, REFERRER, 1)
    closed = post_job(store, REFERRER, 2)
    request = controller.create_request(
        job_posting_id=job.id, seeker_id="seeker-1", application=application()
    )
    controller.create_request(job_posting_id=closed.id, seeker_id="seeker-2", application=application())
    store.set_job_posting_active(closed.id, False)
    controller.transition(request.id, actor_id=REFERRER, target_status=ReferralStatus.accepted)

    stats = aggregator.platform_stats()
    assert stats.total_users == 2
    assert stats.active_job_postings == 1
    assert stats.total_referral_requests == 2
    assert stats.active_referrers == 1
    assert stats.active_seekers == 1
    assert stats.successful_referrals == 1


def test_platform_stats_endpoint(client) -> None:
    response = client.get("/stats/platform")
    assert response.status_code == 200
    assert response.json()["total_users"] == 0


def test_level_and_reputation_edges() -> None:
    stats = build_user_stats(
        "u",
        jobs_posted=0,
        referrals_given=0,
        successful_placements=0,
        profile_views=0,
        unlocked=[],
    )
    assert stats.level == 1
    assert stats.points_to_next_level == 100
    assert reputation_for(99) == "newcomer"
    assert reputation_for(100) == "helper"
    assert reputation_for(1999) == "expert"
    assert reputation_for(2000) == "legend"
