"""
Shared fixtures for the dose reconciliation tests.

FakeDoseStore mirrors the query surface of MongoDoseStore in memory so the
reconciliation logic can be exercised without a running MongoDB. It counts
queries and can simulate missing indexes or failing batch queries.
"""

import asyncio
import copy
from collections import Counter
from datetime import datetime, timezone

import pytest

from dose_logs import parse_timestamp
from dose_store import LOG_DATE_FIELDS, format_timestamp


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def iso(value: datetime) -> str:
    return format_timestamp(value)


def run(coro):
    return asyncio.run(coro)


class FakeDoseStore:
    def __init__(self, medications=None, reminders=None, logs=None, profiles=None, care_links=None):
        self.medications = list(medications or [])
        self.reminders = list(reminders or [])
        self.logs = list(logs or [])
        self.profiles = list(profiles or [])
        self.care_links = list(care_links or [])
        self.failing_fields = set()
        self.fail_batches = False
        self.failing_patients = set()
        self.calls = Counter()

    def _track(self, kind, ids):
        self.calls[kind] += 1
        if self.fail_batches and len(ids) > 1:
            raise RuntimeError(f"{kind} batch query unavailable")
        if self.failing_patients & set(ids):
            raise RuntimeError(f"{kind} query failed")

    async def list_active_medications(self, patient_ids):
        ids = list(patient_ids)
        self._track("medications", ids)
        return [
            copy.deepcopy(m) for m in self.medications
            if m.get("user_id") in ids and m.get("active") is True and not m.get("deleted_at")
        ]

    async def list_reminders(self, patient_ids, include_disabled=False):
        ids = list(patient_ids)
        self._track("reminders", ids)
        found = []
        for r in self.reminders:
            if r.get("user_id") not in ids:
                continue
            if not include_disabled and (r.get("enabled") is not True or r.get("deleted_at")):
                continue
            found.append(copy.deepcopy(r))
        return found

    async def list_dose_logs(self, patient_ids, start_at, end_at, date_field, medication_id=None):
        ids = list(patient_ids)
        self._track(f"logs:{date_field}", ids)
        if date_field not in LOG_DATE_FIELDS:
            raise ValueError(date_field)
        if date_field in self.failing_fields:
            raise RuntimeError(f"missing index for {date_field}")
        found = []
        for log in self.logs:
            if log.get("user_id") not in ids:
                continue
            if medication_id and log.get("medication_id") != medication_id:
                continue
            stamp = parse_timestamp(log.get(date_field))
            if stamp is None or not (start_at <= stamp <= end_at):
                continue
            found.append(copy.deepcopy(log))
        return found

    async def get_medication(self, medication_id):
        return next((copy.deepcopy(m) for m in self.medications if m.get("id") == medication_id), None)

    async def get_dose_log(self, log_id):
        return next((copy.deepcopy(l) for l in self.logs if l.get("id") == log_id), None)

    async def find_completion_logs(self, patient_id, medication_id, scheduled_date, scheduled_time):
        return [
            copy.deepcopy(l) for l in self.logs
            if l.get("user_id") == patient_id
            and l.get("medication_id") == medication_id
            and l.get("scheduled_date") == scheduled_date
            and l.get("scheduled_time") == scheduled_time
            and l.get("action") in ("taken", "skipped")
        ]

    async def upsert_dose_log(self, log_id, fields, insert_fields):
        self.calls["upsert"] += 1
        for log in self.logs:
            if log.get("id") == log_id:
                previous = copy.deepcopy(log)
                log.update(fields)
                return previous
        self.logs.append({"id": log_id, **insert_fields, **fields})
        return None

    async def update_dose_log(self, log_id, fields):
        self.calls["update"] += 1
        for log in self.logs:
            if log.get("id") == log_id:
                log.update(fields)

    async def get_user_profiles(self, user_ids):
        ids = list(user_ids)
        return {p["user_id"]: dict(p) for p in self.profiles if p.get("user_id") in ids}

    async def list_accepted_patient_links(self, caregiver_id):
        return [
            dict(l) for l in self.care_links
            if l.get("caregiver_id") == caregiver_id and l.get("status") == "accepted"
        ]

    async def get_care_link(self, caregiver_id, patient_id):
        return next(
            (
                dict(l) for l in self.care_links
                if l.get("caregiver_id") == caregiver_id
                and l.get("patient_id") == patient_id
                and l.get("status") == "accepted"
            ),
            None
        )


def make_medication(med_id, user_id, name=None, active=True, deleted_at=None):
    return {
        "id": med_id,
        "user_id": user_id,
        "name": name or med_id.title(),
        "dose": "10mg",
        "active": active,
        "deleted_at": deleted_at,
    }


def make_reminder(reminder_id, user_id, medication_id, times, enabled=True, deleted_at=None):
    return {
        "id": reminder_id,
        "user_id": user_id,
        "medication_id": medication_id,
        "times": times,
        "enabled": enabled,
        "deleted_at": deleted_at,
    }


def make_log(log_id, user_id, medication_id, action, scheduled_time, at, scheduled_date=None, **extra):
    doc = {
        "id": log_id,
        "user_id": user_id,
        "medication_id": medication_id,
        "action": action,
        "scheduled_time": scheduled_time,
        "scheduled_date": scheduled_date,
        "created_at": iso(at),
        "logged_at": iso(at),
    }
    doc.update(extra)
    return doc


@pytest.fixture
def store():
    return FakeDoseStore()
