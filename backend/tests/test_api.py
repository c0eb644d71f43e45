"""
Backend API Tests for the Dose Reconciliation service
Tests: schedule, dose marking, caregiver overview, status and adherence endpoints
"""
import pytest
from fastapi.testclient import TestClient
from jose import jwt

import server
from conftest import FakeDoseStore, make_log, make_medication, make_reminder, utc
from dose_status import DoseReconciler

# 11:00 in Chicago, so this morning's 08:00 doses are past the grace period.
NOW = utc(2026, 6, 15, 16, 0)


def token_for(user_id):
    return jwt.encode({"sub": user_id}, server.SECRET_KEY, algorithm=server.ALGORITHM)


def auth(user_id):
    return {"Authorization": f"Bearer {token_for(user_id)}"}


@pytest.fixture
def store():
    return FakeDoseStore(
        medications=[
            make_medication("med_a", "p1", name="Lisinopril"),
            make_medication("med_b", "p1", name="Metformin"),
            make_medication("med_c", "p2", name="Donepezil"),
        ],
        reminders=[
            make_reminder("r1", "p1", "med_a", ["08:00"]),
            make_reminder("r2", "p1", "med_b", ["08:00", "20:00"]),
            make_reminder("r3", "p2", "med_c", ["21:00"]),
        ],
        profiles=[
            {"user_id": "p1", "preferred_name": "Rosa", "email": "rosa@example.com", "timezone": "America/Chicago"},
            {"user_id": "p2", "first_name": "Walter", "email": "walter@example.com", "timezone": "Bad/Zone"},
        ],
        care_links=[
            {"caregiver_id": "cg1", "patient_id": "p1", "status": "accepted", "permission": "edit"},
            {"caregiver_id": "cg1", "patient_id": "p2", "status": "accepted", "permission": "view"},
            {"caregiver_id": "cg2", "patient_id": "p1", "status": "pending", "permission": "edit"},
        ],
    )


@pytest.fixture
def api_client(store):
    """TestClient wired to the in-memory store and a fixed clock"""
    server.app.dependency_overrides[server.get_dose_store] = lambda: store
    server.app.dependency_overrides[server.get_reconciler] = lambda: DoseReconciler(store, clock=lambda: NOW)
    yield TestClient(server.app)
    server.app.dependency_overrides.clear()


class TestHealthAndAuth:
    """Health check and authentication tests"""

    def test_api_root(self, api_client):
        response = api_client.get("/api/")
        assert response.status_code == 200
        assert response.json()["message"] == "Dose Reconciliation API"

    def test_schedule_without_token(self, api_client):
        """Unauthenticated requests are rejected"""
        response = api_client.get("/api/medications/schedule/today")
        assert response.status_code == 401

    def test_schedule_with_bad_token(self, api_client):
        response = api_client.get(
            "/api/medications/schedule/today",
            headers={"Authorization": "Bearer not-a-token"}
        )
        assert response.status_code == 401

    def test_token_from_cookie(self, api_client):
        response = api_client.get(
            "/api/medications/schedule/today",
            headers={"Cookie": f"access_token={token_for('p1')}"}
        )
        assert response.status_code == 200


class TestScheduleAPI:
    """Today's schedule and dose marking tests"""

    def test_get_today_schedule(self, api_client):
        response = api_client.get("/api/medications/schedule/today", headers=auth("p1"))
        assert response.status_code == 200
        data = response.json()
        assert data["date"] == "2026-06-15"
        assert data["timezone"] == "America/Chicago"
        assert data["summary"] == {"total": 3, "taken": 0, "skipped": 0, "pending": 1, "missed": 2}
        assert data["next_due"] == {"medication_id": "med_b", "name": "Metformin", "time": "20:00"}

    def test_mark_dose_is_idempotent(self, api_client, store):
        """Marking the same dose twice keeps a single log entry"""
        body = {"medication_id": "med_a", "scheduled_time": "08:00", "action": "taken"}
        first = api_client.post("/api/medications/schedule/mark", json=body, headers=auth("p1"))
        assert first.status_code == 201
        assert first.json()["status"] == "created"
        assert first.json()["scheduled_date"] == "2026-06-15"
        assert first.json()["id"] == "dose_med_a_20260615_0800"

        second = api_client.post("/api/medications/schedule/mark", json=body, headers=auth("p1"))
        assert second.status_code == 200
        assert second.json()["status"] == "unchanged"
        assert second.json()["idempotent"] is True
        assert len(store.logs) == 1

        schedule = api_client.get("/api/medications/schedule/today", headers=auth("p1")).json()
        assert schedule["summary"]["taken"] == 1

    def test_mark_dose_changes_action(self, api_client):
        body = {"medication_id": "med_a", "scheduled_time": "08:00", "action": "taken"}
        api_client.post("/api/medications/schedule/mark", json=body, headers=auth("p1"))
        response = api_client.post(
            "/api/medications/schedule/mark",
            json={**body, "action": "skipped"},
            headers=auth("p1")
        )
        assert response.status_code == 200
        assert response.json()["status"] == "updated"
        assert response.json()["previous_action"] == "taken"

    def test_mark_other_patients_medication(self, api_client):
        response = api_client.post(
            "/api/medications/schedule/mark",
            json={"medication_id": "med_c", "scheduled_time": "21:00", "action": "taken"},
            headers=auth("p1")
        )
        assert response.status_code == 404

    @pytest.mark.parametrize("body", [
        {"medication_id": "med_a", "scheduled_time": "8:00", "action": "taken"},
        {"medication_id": "med_a", "scheduled_time": "08:00", "action": "snoozed"},
        {"medication_id": "", "scheduled_time": "08:00", "action": "taken"},
    ])
    def test_mark_dose_validation(self, api_client, body):
        response = api_client.post("/api/medications/schedule/mark", json=body, headers=auth("p1"))
        assert response.status_code == 422

    def test_caregiver_with_edit_permission_can_mark(self, api_client, store):
        response = api_client.post(
            "/api/medications/schedule/mark",
            json={"medication_id": "med_a", "scheduled_time": "08:00", "action": "taken", "target_user_id": "p1"},
            headers=auth("cg1")
        )
        assert response.status_code == 201
        assert store.logs[0]["user_id"] == "p1"

    def test_caregiver_with_view_permission_cannot_mark(self, api_client):
        response = api_client.post(
            "/api/medications/schedule/mark",
            json={"medication_id": "med_c", "scheduled_time": "21:00", "action": "taken", "target_user_id": "p2"},
            headers=auth("cg1")
        )
        assert response.status_code == 403

    def test_mark_batch(self, api_client, store):
        body = {
            "action": "taken",
            "doses": [
                {"medication_id": "med_a", "scheduled_time": "08:00"},
                {"medication_id": "med_b", "scheduled_time": "08:00"},
                {"medication_id": "med_b", "scheduled_time": "08:00"},
                {"medication_id": "med_c", "scheduled_time": "21:00"},
            ],
        }
        response = api_client.post("/api/medications/schedule/mark-batch", json=body, headers=auth("p1"))
        assert response.status_code == 201
        data = response.json()
        assert len(data["results"]) == 2
        assert data["duplicate_inputs_ignored"] == 1
        assert data["errors"] == [{"medication_id": "med_c", "scheduled_time": "21:00", "error": "forbidden"}]
        assert len(store.logs) == 2

        again = api_client.post("/api/medications/schedule/mark-batch", json=body, headers=auth("p1"))
        assert again.status_code == 200
        assert all(r["idempotent"] for r in again.json()["results"])


class TestCaregiverAPI:
    """Caregiver overview, status and adherence tests"""

    def test_overview_reports_missed_doses(self, api_client):
        response = api_client.get("/api/care/overview", headers=auth("cg1"))
        assert response.status_code == 200
        patients = {p["user_id"]: p for p in response.json()["patients"]}
        assert set(patients) == {"p1", "p2"}

        rosa = patients["p1"]
        assert rosa["name"] == "Rosa"
        assert rosa["medications_today"]["missed"] == 2
        assert rosa["alerts"][0]["type"] == "missed_dose"
        assert rosa["alerts"][0]["message"] == "2 missed doses today"

        walter = patients["p2"]
        assert walter["name"] == "Walter"
        assert walter["timezone"] == "America/Chicago"
        assert walter["medications_today"]["pending"] == 1
        assert walter["alerts"] == []

    def test_overview_marks_unavailable_patients(self, api_client, store):
        store.failing_patients = {"p2"}
        response = api_client.get("/api/care/overview", headers=auth("cg1"))
        assert response.status_code == 200
        patients = {p["user_id"]: p for p in response.json()["patients"]}
        assert patients["p2"]["medication_status_unavailable"] is True
        assert patients["p2"]["medications_today"] is None
        assert patients["p1"]["medication_status_unavailable"] is False

    def test_overview_without_links(self, api_client):
        response = api_client.get("/api/care/overview", headers=auth("p1"))
        assert response.json() == {"patients": []}

    def test_medication_status(self, api_client):
        response = api_client.get("/api/care/patients/p1/medication-status", headers=auth("cg1"))
        assert response.status_code == 200
        data = response.json()
        assert data["medications_active"] == 2
        assert data["summary"]["total"] == 3
        assert data["alerts"][0]["priority"] == "high"

    def test_medication_status_requires_accepted_link(self, api_client):
        response = api_client.get("/api/care/patients/p1/medication-status", headers=auth("cg2"))
        assert response.status_code == 403

    def test_medication_status_outage(self, api_client, store):
        store.failing_fields = {"created_at", "logged_at"}
        response = api_client.get("/api/care/patients/p1/medication-status", headers=auth("cg1"))
        assert response.status_code == 500

    def test_medication_adherence(self, api_client, store):
        store.logs = [
            make_log("l1", "p1", "med_a", "taken", "08:00", utc(2026, 6, 15, 13, 5), scheduled_date="2026-06-15"),
            make_log("l2", "p1", "med_a", "taken", "08:00", utc(2026, 6, 14, 13, 5), scheduled_date="2026-06-14"),
            make_log("l3", "p1", "med_b", "skipped", "08:00", utc(2026, 6, 14, 13, 6), scheduled_date="2026-06-14"),
        ]
        response = api_client.get(
            "/api/care/patients/p1/medication-adherence",
            params={"days": 7},
            headers=auth("cg1")
        )
        assert response.status_code == 200
        data = response.json()
        assert data["period"]["days"] == 7
        assert data["period"]["timezone"] == "America/Chicago"
        assert data["overall"]["total_doses"] == 21
        assert data["overall"]["taken_doses"] == 2
        assert data["overall"]["skipped_doses"] == 1
        assert len(data["calendar"]) == 7

        filtered = api_client.get(
            "/api/care/patients/p1/medication-adherence",
            params={"days": 7, "medication_id": "med_a"},
            headers=auth("cg1")
        ).json()
        assert filtered["overall"]["total_doses"] == 7
        assert [m["medication_id"] for m in filtered["by_medication"]] == ["med_a"]
