import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from dose_models import HHMM_PATTERN

logger = logging.getLogger(__name__)

HHMM_RE = re.compile(HHMM_PATTERN)


def is_valid_hhmm(value: Any) -> bool:
    return isinstance(value, str) and bool(HHMM_RE.match(value))


def is_schedulable_medication(medication: dict) -> bool:
    return medication.get("active") is True and not medication.get("deleted_at")


def schedulable_medications(medications: Iterable[dict]) -> List[dict]:
    return [m for m in medications if m.get("id") and is_schedulable_medication(m)]


def is_reminder_in_effect(reminder: dict) -> bool:
    return reminder.get("enabled") is True and not reminder.get("deleted_at")


def normalize_reminder_times(raw_times: Any, reminder_id: Optional[str] = None, user_id: Optional[str] = None) -> List[str]:
    """Keep the valid HH:MM entries of a reminder's `times` field."""
    if isinstance(raw_times, str):
        if is_valid_hhmm(raw_times):
            return [raw_times]
        logger.warning(f"Ignoring invalid reminder time '{raw_times}' for reminder {reminder_id} (user {user_id})")
        return []

    if not isinstance(raw_times, list):
        if raw_times is not None:
            logger.warning(f"Ignoring malformed reminder times for reminder {reminder_id} (user {user_id})")
        return []

    valid = [t for t in raw_times if is_valid_hhmm(t)]
    if len(valid) != len(raw_times):
        logger.warning(
            f"Dropped {len(raw_times) - len(valid)} invalid reminder time(s) for reminder {reminder_id} (user {user_id})"
        )
    return valid


def build_reminder_map(reminders: Iterable[dict], include_disabled: bool = False) -> Dict[str, List[str]]:
    """Map medication id to the sorted union of its reminders' valid times."""
    times_by_med: Dict[str, set] = {}
    for reminder in reminders:
        if not include_disabled and not is_reminder_in_effect(reminder):
            continue
        med_id = reminder.get("medication_id")
        if not isinstance(med_id, str) or not med_id:
            continue
        times = normalize_reminder_times(reminder.get("times"), reminder.get("id"), reminder.get("user_id"))
        if not times:
            continue
        times_by_med.setdefault(med_id, set()).update(times)
    return {med_id: sorted(times) for med_id, times in times_by_med.items()}


def group_by_patient(docs: Iterable[dict], patient_ids: Optional[Iterable[str]] = None) -> Dict[str, List[dict]]:
    # Attribution comes from each document's own user_id, never its position in a batch.
    grouped: Dict[str, List[dict]] = {pid: [] for pid in (patient_ids or [])}
    allowed = set(grouped) if patient_ids is not None else None
    for doc in docs:
        owner = doc.get("user_id")
        if not owner or (allowed is not None and owner not in allowed):
            continue
        grouped.setdefault(owner, []).append(doc)
    return grouped
