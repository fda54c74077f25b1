from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
from fastapi.testclient import TestClient

from referralme.app.main import create_app

JOB = {"title": "SRE", "company": "Heron", "location": "Remote", "description": "Pager"}


def _token(secret: str, subject: str, roles: list[str]) -> str:
    payload = {
        "sub": subject,
        "roles": roles,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def _secured_client(monkeypatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "true")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    return TestClient(create_app())


def _bearer(subject: str, roles: list[str]) -> dict[str, str]:
    return {"Authorization": f"Bearer {_token('test-secret', subject, roles)}"}


def test_auth_blocks_missing_token_when_enabled(monkeypatch) -> None:
    client = _secured_client(monkeypatch)
    response = client.post("/jobs", json=JOB)
    assert response.status_code == 401


def test_auth_rejects_token_signed_with_other_secret(monkeypatch) -> None:
    client = _secured_client(monkeypatch)
    token = _token("wrong-secret", "referrer-1", ["referrer"])
    response = client.post("/jobs", json=JOB, headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_seeker_token_cannot_post_jobs(monkeypatch) -> None:
    client = _secured_client(monkeypatch)
    response = client.post("/jobs", json=JOB, headers=_bearer("seeker-1", ["seeker"]))
    assert response.status_code == 403


def test_referrer_token_posts_as_its_subject(monkeypatch) -> None:
    client = _secured_client(monkeypatch)
    response = client.post("/jobs", json=JOB, headers=_bearer("referrer-1", ["referrer"]))
    assert response.status_code == 201
    assert response.json()["owner_id"] == "referrer-1"


def test_dev_user_header_is_ignored_when_auth_enabled(monkeypatch) -> None:
    client = _secured_client(monkeypatch)
    headers = {**_bearer("referrer-1", ["referrer"]), "X-User-Id": "impersonated"}
    response = client.post("/jobs", json=JOB, headers=headers)
    assert response.json()["owner_id"] == "referrer-1"


def test_non_party_cannot_read_referral(monkeypatch) -> None:
    client = _secured_client(monkeypatch)
    job = client.post("/jobs", json=JOB, headers=_bearer("referrer-1", ["referrer"])).json()
    request = client.post(
        "/referrals",
        json={
            "job_posting_id": job["id"],
            "application": {"resume_ref": "cv.pdf", "experience_level": "mid"},
        },
        headers=_bearer("seeker-1", ["seeker"]),
    ).json()

    outsider = client.get(
        f"/referrals/{request['id']}", headers=_bearer("seeker-2", ["seeker"])
    )
    assert outsider.status_code == 403
    party = client.get(f"/referrals/{request['id']}", headers=_bearer("seeker-1", ["seeker"]))
    assert party.status_code == 200


def test_profiles_are_owner_editable_only(monkeypatch) -> None:
    client = _secured_client(monkeypatch)
    response = client.put(
        "/users/mentor-1/profile",
        json={"display_name": "Not Me"},
        headers=_bearer("mentor-2", ["mentor"]),
    )
    assert response.status_code == 403


def test_platform_stats_are_public(monkeypatch) -> None:
    client = _secured_client(monkeypatch)
    assert client.get("/stats/platform").status_code == 200


def test_change_feed_requires_service_role(monkeypatch) -> None:
    client = _secured_client(monkeypatch)
    denied = client.get("/changes", headers=_bearer("seeker-1", ["seeker"]))
    assert denied.status_code == 403
    allowed = client.get("/changes", headers=_bearer("projector", ["service"]))
    assert allowed.status_code == 200
