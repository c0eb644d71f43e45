from datetime import datetime
from typing import Dict, Iterable, List, Optional

from pymongo import ReturnDocument

from day_window import ensure_utc

LOG_DATE_FIELDS = ("created_at", "logged_at")


def format_timestamp(value: datetime) -> str:
    """Fixed-width ISO string so lexical range queries match time order."""
    return ensure_utc(value).isoformat(timespec="milliseconds")


def build_log_range_query(
    patient_ids: Iterable[str],
    start_at: datetime,
    end_at: datetime,
    date_field: str,
    medication_id: Optional[str] = None
) -> dict:
    """
    Range filter on one log date field.

    Entries written by this service store ISO strings, older clients wrote
    BSON dates or epoch milliseconds. Range operators only compare values of
    the same BSON type, so each stored form gets its own bound.
    """
    if date_field not in LOG_DATE_FIELDS:
        raise ValueError(f"Unsupported log date field: {date_field}")
    start_at = ensure_utc(start_at)
    end_at = ensure_utc(end_at)
    query = {
        "user_id": {"$in": list(patient_ids)},
        "$or": [
            {date_field: {"$gte": format_timestamp(start_at), "$lte": format_timestamp(end_at)}},
            {date_field: {"$gte": start_at, "$lte": end_at}},
            {date_field: {"$gte": int(start_at.timestamp() * 1000), "$lte": int(end_at.timestamp() * 1000)}},
        ]
    }
    if medication_id:
        query["medication_id"] = medication_id
    return query


class MongoDoseStore:
    """Read/write access to medications, reminders and dose logs."""

    def __init__(self, db, max_per_patient: int = 300, max_logs: int = 8000):
        self.db = db
        self.max_per_patient = max_per_patient
        self.max_logs = max_logs

    async def ensure_indexes(self) -> None:
        # Concurrent upserts on the same id only collapse into one entry with a unique index.
        await self.db.medication_logs.create_index("id", unique=True)
        await self.db.medication_logs.create_index([("user_id", 1), ("created_at", 1)])
        await self.db.medication_logs.create_index([("user_id", 1), ("logged_at", 1)])
        await self.db.medication_reminders.create_index("user_id")
        await self.db.medications.create_index("user_id")

    async def list_active_medications(self, patient_ids: Iterable[str]) -> List[dict]:
        ids = list(patient_ids)
        return await self.db.medications.find(
            {"user_id": {"$in": ids}, "active": True, "deleted_at": None},
            {"_id": 0}
        ).to_list(self.max_per_patient * max(1, len(ids)))

    async def list_reminders(self, patient_ids: Iterable[str], include_disabled: bool = False) -> List[dict]:
        ids = list(patient_ids)
        query = {"user_id": {"$in": ids}}
        if not include_disabled:
            query["enabled"] = True
            query["deleted_at"] = None
        return await self.db.medication_reminders.find(query, {"_id": 0}).to_list(
            self.max_per_patient * max(1, len(ids))
        )

    async def list_dose_logs(
        self,
        patient_ids: Iterable[str],
        start_at: datetime,
        end_at: datetime,
        date_field: str,
        medication_id: Optional[str] = None
    ) -> List[dict]:
        query = build_log_range_query(patient_ids, start_at, end_at, date_field, medication_id)
        return await self.db.medication_logs.find(query, {"_id": 0}).to_list(self.max_logs)

    async def get_medication(self, medication_id: str) -> Optional[dict]:
        return await self.db.medications.find_one({"id": medication_id}, {"_id": 0})

    async def get_dose_log(self, log_id: str) -> Optional[dict]:
        return await self.db.medication_logs.find_one({"id": log_id}, {"_id": 0})

    async def find_completion_logs(
        self,
        patient_id: str,
        medication_id: str,
        scheduled_date: str,
        scheduled_time: str
    ) -> List[dict]:
        return await self.db.medication_logs.find(
            {
                "user_id": patient_id,
                "medication_id": medication_id,
                "scheduled_date": scheduled_date,
                "scheduled_time": scheduled_time,
                "action": {"$in": ["taken", "skipped"]}
            },
            {"_id": 0}
        ).to_list(50)

    async def upsert_dose_log(self, log_id: str, fields: dict, insert_fields: dict) -> Optional[dict]:
        """Create or overwrite the entry with this id; returns the entry as it was before, if any."""
        return await self.db.medication_logs.find_one_and_update(
            {"id": log_id},
            {"$set": fields, "$setOnInsert": insert_fields},
            projection={"_id": 0},
            upsert=True,
            return_document=ReturnDocument.BEFORE
        )

    async def update_dose_log(self, log_id: str, fields: dict) -> None:
        await self.db.medication_logs.update_one({"id": log_id}, {"$set": fields})

    async def get_user_profiles(self, user_ids: Iterable[str]) -> Dict[str, dict]:
        ids = list(user_ids)
        profiles = await self.db.user_profiles.find({"user_id": {"$in": ids}}, {"_id": 0}).to_list(max(1, len(ids)))
        return {p["user_id"]: p for p in profiles if p.get("user_id")}

    async def list_accepted_patient_links(self, caregiver_id: str) -> List[dict]:
        return await self.db.care_links.find(
            {"caregiver_id": caregiver_id, "status": "accepted"},
            {"_id": 0}
        ).to_list(200)

    async def get_care_link(self, caregiver_id: str, patient_id: str) -> Optional[dict]:
        return await self.db.care_links.find_one(
            {"patient_id": patient_id, "caregiver_id": caregiver_id, "status": "accepted"},
            {"_id": 0}
        )
