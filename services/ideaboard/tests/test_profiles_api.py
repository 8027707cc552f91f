from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from ideaboard.main import create_app

pytestmark = pytest.mark.integration


@pytest.fixture
def client(tmp_path: Path):
    db_path = tmp_path / "ideaboard.sqlite3"
    app = create_app(database_path=str(db_path), admin_user_ids={"user_admin"})
    with TestClient(app) as test_client:
        yield test_client


def test_profile_sync_derives_username_from_names(client: TestClient) -> None:
    response = client.post(
        "/profiles",
        json={
            "profile_id": "user_abcdefgh12",
            "email": "ana@example.com",
            "first_name": "Ana",
            "last_name": "Lee",
        },
    )

    assert response.status_code == 200
    assert response.json()["username"] == "analeegh12"
    assert response.headers.get("x-audit-event-id")


def test_profile_sync_keeps_existing_username(client: TestClient) -> None:
    client.post(
        "/profiles",
        json={"profile_id": "user_0001", "email": "ana@example.com", "first_name": "Ana"},
    )
    renamed = client.post(
        "/profiles",
        json={
            "profile_id": "user_0001",
            "email": "ana@example.com",
            "first_name": "Anastasia",
            "last_name": "Lee",
        },
    )

    assert renamed.status_code == 200
    assert renamed.json()["username"] == "ana0001"
    assert renamed.json()["last_name"] == "Lee"


def test_profile_sync_prefers_explicit_username(client: TestClient) -> None:
    response = client.post(
        "/profiles",
        json={"profile_id": "user_0002", "email": "x@example.com", "username": "chosenname"},
    )

    assert response.json()["username"] == "chosenname"


def test_profile_sync_reports_duplicate_username_as_conflict(client: TestClient) -> None:
    client.post(
        "/profiles",
        json={"profile_id": "user_aaaa1234", "email": "sam@example.com", "first_name": "Sam"},
    )
    clash = client.post(
        "/profiles",
        json={"profile_id": "user_bbbb1234", "email": "sam@other.com", "first_name": "Sam"},
    )

    assert clash.status_code == 409
    assert client.get("/profiles/user_bbbb1234").status_code == 404


def test_generate_username_for_profile_without_one(client: TestClient) -> None:
    client.post(
        "/profiles",
        json={"profile_id": "user_x9z8", "email": "J.Doe99@example.com"},
    )
    # Clear the username so the profile looks like one created before handles existed.
    client.app.state.repository.connection.execute(
        "UPDATE profiles SET username = NULL WHERE profile_id = 'user_x9z8'"
    )
    client.app.state.repository.connection.commit()

    first = client.post("/profiles/me/username", headers={"x-user-id": "user_x9z8"})
    second = client.post("/profiles/me/username", headers={"x-user-id": "user_x9z8"})

    assert first.status_code == 200
    assert first.json() == {"username": "jdoe99x9z8", "generated": True}
    assert second.json() == {"username": "jdoe99x9z8", "generated": False}


def test_generate_username_requires_known_profile(client: TestClient) -> None:
    missing = client.post("/profiles/me/username", headers={"x-user-id": "user_ghost"})
    anonymous = client.post("/profiles/me/username")

    assert missing.status_code == 404
    assert anonymous.status_code == 401


def test_admin_migration_backfills_missing_usernames(client: TestClient) -> None:
    for profile_id, email in (("user_aa11", "kim@example.com"), ("user_bb22", "@example.com")):
        client.app.state.repository.connection.execute(
            """
            INSERT INTO profiles (profile_id, email, created_at, updated_at)
            VALUES (?, ?, '2026-01-01T00:00:00+00:00', '2026-01-01T00:00:00+00:00')
            """,
            (profile_id, email),
        )
    client.app.state.repository.connection.commit()

    denied = client.post("/admin/usernames/migrate", headers={"x-user-id": "user_aa11"})
    allowed = client.post("/admin/usernames/migrate", headers={"x-user-id": "user_admin"})
    rerun = client.post("/admin/usernames/migrate", headers={"x-user-id": "user_admin"})

    assert denied.status_code == 403
    assert allowed.status_code == 200
    body = allowed.json()
    assert body["total"] == 2
    assert body["updated"] == 2
    assert {item["username"] for item in body["results"]} == {"kimaa11", "useruserbb22"}
    assert body["failed"] == []
    assert rerun.json()["message"] == "No profiles need migration"


def test_admin_migration_skips_conflicting_handles(client: TestClient) -> None:
    client.post(
        "/profiles",
        json={"profile_id": "user_one_1234", "email": "lee@example.com"},
    )
    client.app.state.repository.connection.execute(
        """
        INSERT INTO profiles (profile_id, email, created_at, updated_at)
        VALUES ('user_two_1234', 'lee@elsewhere.com', '2026-01-01T00:00:00+00:00',
                '2026-01-01T00:00:00+00:00')
        """
    )
    client.app.state.repository.connection.commit()

    response = client.post("/admin/usernames/migrate", headers={"x-user-id": "user_admin"})

    body = response.json()
    assert response.status_code == 200
    assert body["updated"] == 0
    assert [item["profile_id"] for item in body["failed"]] == ["user_two_1234"]


def test_scope_enforcement_for_profile_sync(tmp_path: Path) -> None:
    app = create_app(
        database_path=str(tmp_path / "secure.sqlite3"),
        api_tokens={"token-profiles": {"profiles:write"}, "token-ideas": {"ideas:write"}},
    )
    payload = {"profile_id": "user_1111", "email": "a@example.com"}
    with TestClient(app) as client:
        missing = client.post("/profiles", json=payload)
        wrong_scope = client.post("/profiles", json=payload, headers={"x-api-key": "token-ideas"})
        allowed = client.post("/profiles", json=payload, headers={"x-api-key": "token-profiles"})

    assert missing.status_code == 401
    assert wrong_scope.status_code == 403
    assert allowed.status_code == 200


def test_provider_username_is_folded_into_handle_alphabet(client: TestClient) -> None:
    response = client.post(
        "/profiles",
        json={"profile_id": "user_0003", "email": "g@example.com", "username": "Grace_Hopper-1"},
    )
    too_short = client.post(
        "/profiles",
        json={"profile_id": "user_0004", "email": "bo@example.com", "username": "_B_"},
    )

    assert response.status_code == 200
    assert response.json()["username"] == "gracehopper1"
    assert too_short.status_code == 200
    assert too_short.json()["username"] == "bo0004"


def test_public_profile_lists_published_ideas_and_stats(client: TestClient) -> None:
    client.post(
        "/profiles",
        json={
            "profile_id": "user_abcdefgh12",
            "email": "ana@example.com",
            "first_name": "Ana",
            "last_name": "Lee",
        },
    )
    client.post(
        "/ideas",
        json={
            "ideas": [
                {
                    "id": "idea-old",
                    "title": "Seed library",
                    "description": "Borrow seeds, return seeds.",
                    "category": "secondary",
                    "owner_id": "user_abcdefgh12",
                    "upvotes": 5,
                    "downvotes": 1,
                    "potential_score": 40,
                    "created_at": "2026-01-01T00:00:00+00:00",
                },
                {
                    "id": "idea-new",
                    "title": "Repair cafe",
                    "description": "Monthly volunteer repairs.",
                    "category": "secondary",
                    "owner_id": "user_abcdefgh12",
                    "upvotes": 2,
                    "downvotes": 3,
                    "potential_score": 70,
                    "created_at": "2026-02-01T00:00:00+00:00",
                },
                {
                    "id": "idea-draft",
                    "title": "Unfinished",
                    "description": "Not ready.",
                    "category": "secondary",
                    "owner_id": "user_abcdefgh12",
                    "status": "draft",
                    "upvotes": 50,
                },
                {
                    "id": "idea-other",
                    "title": "Someone else",
                    "description": "Different owner.",
                    "category": "primary",
                    "owner_id": "user_other",
                    "upvotes": 9,
                },
            ]
        },
    )

    response = client.get("/profiles/by-username/analeegh12")
    missing = client.get("/profiles/by-username/nobody")

    assert response.status_code == 200
    body = response.json()
    assert body["profile"]["profile_id"] == "user_abcdefgh12"
    assert body["display_name"] == "Ana Lee"
    assert [idea["id"] for idea in body["ideas"]] == ["idea-new", "idea-old"]
    assert body["stats"] == {
        "total_ideas": 2,
        "total_upvotes": 7,
        "total_downvotes": 4,
        "net_votes": 3,
        "average_potential_score": 55,
        "top_potential_score": 70,
        "median_potential_score": 70,
    }
    assert missing.status_code == 404
