from __future__ import annotations


def test_metrics_endpoint_exposes_counters(client) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text
    assert "referralme_requests_total" in body
    assert "referralme_requests_5xx_total" in body


def test_lifecycle_events_are_counted(client) -> None:
    job = client.post(
        "/jobs",
        json={"title": "SRE", "company": "Heron", "location": "Remote", "description": "Pager"},
        headers={"X-User-Id": "referrer-1"},
    ).json()
    request = client.post(
        "/referrals",
        json={
            "job_posting_id": job["id"],
            "application": {"resume_ref": "cv.pdf", "experience_level": "mid"},
        },
        headers={"X-User-Id": "seeker-1"},
    ).json()
    client.post(
        f"/referrals/{request['id']}/transition",
        json={"target_status": "completed"},
        headers={"X-User-Id": "seeker-1"},
    )

    body = client.get("/metrics").text
    assert 'referralme_events_total{event="referral_created",outcome="ok"} 1' in body
    assert (
        'referralme_events_total{event="referral_transition",outcome="invalid_transition"} 1'
        in body
    )


def test_readiness_endpoint(client) -> None:
    response = client.get("/health/ready")
    assert response.status_code == 200
    assert response.json()["status"] == "ready"
