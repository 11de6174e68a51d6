from datetime import time, timedelta

import pytest
from fastapi.testclient import TestClient

from studio_api.dependencies import Actor, get_actor, get_clock, get_db_session
from studio_api.main import app

ADMIN = Actor(role="admin", member_id=None, user_id=1, is_admin=True, is_staff=True)
STAFF = Actor(role="reception", member_id=None, user_id=2, is_admin=False, is_staff=True)
ANONYMOUS = Actor(role="", member_id=None, user_id=None, is_admin=False, is_staff=False)


def as_member(member_id: int) -> Actor:
    return Actor(role="member", member_id=member_id, user_id=None, is_admin=False, is_staff=False)


@pytest.fixture
def caller():
    return {"actor": ANONYMOUS}


@pytest.fixture
def client(session_factory, clock, caller):
    def _db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db_session] = _db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_actor] = lambda: caller["actor"]
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def member_with_sessions(factory, studio):
    member = factory.member("Vera")
    factory.subscription(member, {studio["group"]: 2})
    return member


@pytest.mark.api
def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}
    assert response.headers["X-Request-ID"]


@pytest.mark.api
class TestAuth:
    def test_member_routes_need_a_member(self, client):
        assert client.post("/api/registrations", json={"course_id": 1}).status_code == 401

    def test_admin_routes_reject_staff(self, client, caller):
        caller["actor"] = STAFF
        response = client.post("/api/admin/registrations/bulk", json={"course_id": 1, "member_ids": []})
        assert response.status_code == 403

    def test_checkin_rejects_members(self, client, caller):
        caller["actor"] = as_member(1)
        assert client.post("/api/checkins", json={"token": "x"}).status_code == 403


@pytest.mark.api
class TestScheduleRoutes:
    def _payload(self, studio, **extra):
        payload = {
            "class_id": studio["class"].id,
            "trainer_id": studio["trainer"].id,
            "repetition_type": "weekly",
            "day_of_week": 1,
            "start_date": "2024-01-01",
            "end_date": "2024-01-31",
            "start_time": "09:00",
            "end_time": "10:00",
        }
        payload.update(extra)
        return payload

    def test_create_and_read_schedule(self, client, caller, studio):
        caller["actor"] = ADMIN

        created = client.post("/api/admin/schedules", json=self._payload(studio))

        assert created.status_code == 201
        body = created.json()
        assert body["courses_created"] == 5
        schedule_id = body["schedule"]["id"]

        detail = client.get(f"/api/admin/schedules/{schedule_id}").json()
        assert [c["course_date"] for c in detail["courses"]] == [
            "2024-01-01",
            "2024-01-08",
            "2024-01-15",
            "2024-01-22",
            "2024-01-29",
        ]
        assert detail["courses"][0]["spots_left"] == 12

    def test_invalid_schedule_is_422(self, client, caller, studio):
        caller["actor"] = ADMIN
        response = client.post(
            "/api/admin/schedules",
            json=self._payload(studio, repetition_type="once"),
        )
        assert response.status_code == 422
        assert response.json()["type"] == "VALIDATION_ERROR"

    def test_locked_schedule_is_rejected(self, client, caller, studio, member_with_sessions):
        caller["actor"] = ADMIN
        body = client.post("/api/admin/schedules", json=self._payload(studio)).json()
        course_id = body["course_ids"][1]

        caller["actor"] = as_member(member_with_sessions.id)
        assert client.post("/api/registrations", json={"course_id": course_id}).status_code == 201

        caller["actor"] = ADMIN
        response = client.put(
            f"/api/admin/schedules/{body['schedule']['id']}", json={"start_time": "07:00"}
        )
        assert response.status_code == 400
        assert response.json()["type"] == "SCHEDULE_LOCKED"
        assert response.json()["details"]["total_registrations"] == 1

    def test_null_is_active_does_not_deactivate(self, client, caller, studio):
        caller["actor"] = ADMIN
        body = client.post("/api/admin/schedules", json=self._payload(studio)).json()
        schedule_id = body["schedule"]["id"]

        response = client.put(
            f"/api/admin/schedules/{schedule_id}", json={"is_active": None, "max_participants": 5}
        )

        assert response.status_code == 422
        assert response.json()["type"] == "VALIDATION_ERROR"
        assert response.json()["details"] == {"field": "is_active"}
        detail = client.get(f"/api/admin/schedules/{schedule_id}").json()
        assert detail["schedule"]["is_active"] is True
        assert len(detail["courses"]) == 5
        assert all(c["is_active"] for c in detail["courses"])
        assert all(c["max_participants"] == 12 for c in detail["courses"])

    def test_public_course_listing(self, client, factory, studio):
        factory.course(studio["class"])
        response = client.get("/api/courses", params={"date_from": "2024-01-02"})
        assert response.status_code == 200
        assert len(response.json()["courses"]) == 1


@pytest.mark.api
class TestRegistrationRoutes:
    def test_member_books_and_cancels(self, client, caller, factory, studio, member_with_sessions):
        course = factory.course(studio["class"])
        caller["actor"] = as_member(member_with_sessions.id)

        booked = client.post("/api/registrations", json={"course_id": course.id})
        assert booked.status_code == 201
        registration = booked.json()["registration"]
        assert registration["status"] == "registered"
        assert registration["admin_override"] is False

        balances = client.get("/api/member/entitlements").json()["allocations"]
        assert balances[0]["sessions_remaining"] == 1

        cancelled = client.post(f"/api/registrations/{registration['id']}/cancel")
        assert cancelled.status_code == 200
        assert cancelled.json()["refunded"] is True
        assert cancelled.json()["message"] == "Session refunded to your account."

    def test_error_body_carries_the_reason(self, client, caller, factory, studio):
        member = factory.member("NoPlan")
        course = factory.course(studio["class"])
        caller["actor"] = as_member(member.id)

        response = client.post("/api/registrations", json={"course_id": course.id})

        assert response.status_code == 409
        assert response.json() == {
            "ok": False,
            "error": "No active subscription found",
            "type": "NO_ACTIVE_SUBSCRIPTION",
            "details": {"member_id": member.id},
        }

    def test_overlap_check_then_force(self, client, caller, factory, studio, member_with_sessions):
        first = factory.course(studio["class"], start=time(10, 0), end=time(11, 0))
        second = factory.course(studio["class"], start=time(10, 30), end=time(11, 30))
        caller["actor"] = as_member(member_with_sessions.id)
        client.post("/api/registrations", json={"course_id": first.id})

        check = client.get("/api/registrations/overlaps", params={"course_id": second.id}).json()
        assert check["has_overlap"] is True
        assert check["conflicts"][0]["course_id"] == first.id

        refused = client.post("/api/registrations", json={"course_id": second.id})
        assert refused.status_code == 409
        assert refused.json()["type"] == "OVERLAP"

        forced = client.post("/api/registrations/force", json={"course_id": second.id})
        assert forced.status_code == 201

    def test_admin_bulk_and_forced_refund(self, client, caller, clock, factory, studio, member_with_sessions):
        course = factory.course(studio["class"], capacity=1)
        other = factory.member("Other")
        caller["actor"] = ADMIN

        bulk = client.post(
            "/api/admin/registrations/bulk",
            json={"course_id": course.id, "member_ids": [member_with_sessions.id, other.id]},
        ).json()
        assert bulk["ok"] is False
        assert len(bulk["registered"]) == 1
        assert bulk["subscription_issues"][0]["member_id"] == other.id

        registration_id = bulk["registered"][0]["id"]
        clock.now = course.starts_at - timedelta(hours=2)
        cancelled = client.post(
            f"/api/admin/registrations/{registration_id}/cancel", json={"force_refund": True}
        ).json()
        assert cancelled["refunded"] is True
        assert cancelled["within_cutoff"] is True

    def test_admin_checks_member_sessions(self, client, caller, factory, studio, member_with_sessions):
        course = factory.course(studio["class"])
        caller["actor"] = ADMIN

        response = client.post(
            "/api/admin/registrations/check-member-sessions",
            json={"member_id": member_with_sessions.id, "course_id": course.id},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["can_register"] is True
        assert body["remaining_sessions"] == 2
        assert body["group_name"] == "Pole Pack"

        missing = client.post(
            "/api/admin/registrations/check-member-sessions",
            json={"member_id": member_with_sessions.id, "course_id": 9999},
        )
        assert missing.status_code == 404
        assert missing.json()["error"] == "Course not found"

        caller["actor"] = STAFF
        forbidden = client.post(
            "/api/admin/registrations/check-member-sessions",
            json={"member_id": member_with_sessions.id, "course_id": course.id},
        )
        assert forbidden.status_code == 403


@pytest.mark.api
class TestCheckinRoutes:
    def test_scan_then_repeat(self, client, caller, factory, studio, member_with_sessions):
        course = factory.course(studio["class"])
        caller["actor"] = as_member(member_with_sessions.id)
        token = client.post("/api/registrations", json={"course_id": course.id}).json()["registration"]["qr_code"]

        caller["actor"] = STAFF
        first = client.post("/api/checkins", json={"token": token})
        again = client.post("/api/checkins", json={"token": token})

        assert first.status_code == 201
        assert again.status_code == 200
        assert again.json()["checkin"]["created"] is False

    def test_unknown_token_is_404(self, client, caller):
        caller["actor"] = STAFF
        response = client.post("/api/checkins", json={"token": "REG_nope"})
        assert response.status_code == 404
        assert response.json()["type"] == "INVALID_TOKEN"

    def test_admin_looks_up_token_without_checking_in(self, client, caller, factory, studio, member_with_sessions):
        course = factory.course(studio["class"])
        caller["actor"] = as_member(member_with_sessions.id)
        token = client.post("/api/registrations", json={"course_id": course.id}).json()["registration"]["qr_code"]

        caller["actor"] = STAFF
        assert client.get(f"/api/admin/checkins/qr/{token}").status_code == 403

        caller["actor"] = ADMIN
        response = client.get(f"/api/admin/checkins/qr/{token}")
        assert response.status_code == 200
        body = response.json()
        assert body["member"]["name"] == "Vera"
        assert body["course"]["id"] == course.id
        assert body["already_checked_in"] is False

        missing = client.get("/api/admin/checkins/qr/REG_nope")
        assert missing.status_code == 404
        assert missing.json()["error"] == "QR code not found or invalid"


@pytest.mark.api
def test_admin_audit_trail(client, caller, factory, studio):
    course = factory.course(studio["class"])
    caller["actor"] = ADMIN
    client.delete(f"/api/admin/courses/{course.id}")

    entries = client.get("/api/admin/audit", params={"table_name": "courses"}).json()["entries"]

    assert [e["action"] for e in entries] == ["COURSE_DELETE"]
    assert entries[0]["record_id"] == course.id
    assert entries[0]["actor_id"] == ADMIN.user_id
    assert entries[0]["old_values"]["class_name"] == "Pole Basics"
