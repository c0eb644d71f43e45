import asyncio
import logging
import math
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from day_window import ensure_utc
from dose_models import COMPLETION_ACTIONS, DoseCompletionResult, ResolvedDoseLog
from dose_schedule import is_valid_hhmm
from dose_store import LOG_DATE_FIELDS, format_timestamp

logger = logging.getLogger(__name__)

MAX_BATCH_MARK_DOSES = 20

_LOG_STRING_FIELDS = (
    "user_id",
    "medication_id",
    "medication_name",
    "action",
    "scheduled_time",
    "scheduled_date",
)


class InvalidDoseCompletionError(ValueError):
    pass


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Read a stored timestamp (ISO string, datetime or epoch millis) as UTC."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        try:
            return ensure_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def resolve_log_entry(doc: dict, primary_field: str) -> Optional[ResolvedDoseLog]:
    """Attach the timestamp of the field the entry was queried by."""
    log_id = doc.get("id")
    if not isinstance(log_id, str) or not log_id:
        logger.warning("Ignoring dose log without an id")
        return None

    stamps = {
        "created_at": parse_timestamp(doc.get("created_at")),
        "logged_at": parse_timestamp(doc.get("logged_at")),
    }
    secondary_field = "logged_at" if primary_field == "created_at" else "created_at"
    resolved_at = stamps[primary_field] or stamps[secondary_field]
    if resolved_at is None:
        logger.warning(f"Ignoring dose log {log_id} without a readable timestamp")
        return None

    fields = {k: doc.get(k) if isinstance(doc.get(k), str) else None for k in _LOG_STRING_FIELDS}
    return ResolvedDoseLog(
        id=log_id,
        created_at=stamps["created_at"],
        logged_at=stamps["logged_at"],
        snooze_until=parse_timestamp(doc.get("snooze_until")),
        resolved_at=resolved_at,
        **fields
    )


def merge_resolved_logs(*groups: Iterable[ResolvedDoseLog]) -> List[ResolvedDoseLog]:
    merged: Dict[str, ResolvedDoseLog] = {}
    for group in groups:
        for entry in group:
            existing = merged.get(entry.id)
            if existing is None or entry.resolved_at > existing.resolved_at:
                merged[entry.id] = entry
    return sorted(merged.values(), key=lambda e: e.resolved_at)


async def resolve_dose_logs(
    store,
    patient_ids: Iterable[str],
    start_at: datetime,
    end_at: datetime,
    medication_id: Optional[str] = None
) -> List[ResolvedDoseLog]:
    """
    Load dose logs for a window by created_at and by logged_at.

    Both queries run together; an entry found by both keeps the later
    timestamp. One failing query is tolerated, both failing raises the
    created_at error so an outage never reads as "no doses".
    """
    ids = list(patient_ids)
    results = await asyncio.gather(
        *(store.list_dose_logs(ids, start_at, end_at, field, medication_id) for field in LOG_DATE_FIELDS),
        return_exceptions=True
    )

    errors = [r for r in results if isinstance(r, Exception)]
    if len(errors) == len(results):
        raise errors[0]

    groups = []
    for field, result in zip(LOG_DATE_FIELDS, results):
        if isinstance(result, Exception):
            logger.warning(f"Dose log query by {field} failed, using the remaining field: {result}")
            continue
        groups.append([entry for entry in (resolve_log_entry(doc, field) for doc in result) if entry])
    return merge_resolved_logs(*groups)


def build_dose_log_id(medication_id: str, scheduled_date: str, scheduled_time: str) -> str:
    return f"dose_{medication_id}_{scheduled_date.replace('-', '')}_{scheduled_time.replace(':', '')}"


def _doc_timestamp(doc: dict) -> datetime:
    return (
        parse_timestamp(doc.get("logged_at"))
        or parse_timestamp(doc.get("created_at"))
        or datetime.min.replace(tzinfo=timezone.utc)
    )


def validate_completion(scheduled_time: str, scheduled_date: str, action: str) -> None:
    if action not in COMPLETION_ACTIONS:
        raise InvalidDoseCompletionError("Action must be 'taken' or 'skipped'")
    if not is_valid_hhmm(scheduled_time):
        raise InvalidDoseCompletionError("scheduled_time must use HH:MM")
    try:
        date.fromisoformat(scheduled_date)
    except (TypeError, ValueError):
        raise InvalidDoseCompletionError("scheduled_date must use YYYY-MM-DD")


async def record_dose_completion(
    store,
    patient_id: str,
    medication_id: str,
    scheduled_time: str,
    scheduled_date: str,
    action: str,
    medication_name: Optional[str] = None,
    now: Optional[datetime] = None
) -> DoseCompletionResult:
    """Upsert the single taken/skipped entry for one scheduled dose."""
    validate_completion(scheduled_time, scheduled_date, action)
    stamp = format_timestamp(now or datetime.now(timezone.utc))
    log_id = build_dose_log_id(medication_id, scheduled_date, scheduled_time)

    existing = await store.get_dose_log(log_id)
    if existing is None:
        # Entries written before deterministic ids carry random ids.
        legacy = await store.find_completion_logs(patient_id, medication_id, scheduled_date, scheduled_time)
        if legacy:
            existing = max(legacy, key=_doc_timestamp)

    if existing:
        previous_action = existing.get("action") if existing.get("action") in COMPLETION_ACTIONS else None
        if previous_action == action:
            return DoseCompletionResult(id=existing["id"], status="unchanged")

        update = {
            "user_id": patient_id,
            "medication_id": medication_id,
            "action": action,
            "scheduled_time": scheduled_time,
            "scheduled_date": scheduled_date,
            "logged_at": stamp,
            "updated_at": stamp,
        }
        if medication_name:
            update["medication_name"] = medication_name
        await store.update_dose_log(existing["id"], update)
        logger.info(f"Updated dose {existing['id']} from {previous_action} to {action}")
        return DoseCompletionResult(id=existing["id"], status="updated", previous_action=previous_action)

    # A concurrent writer may have created the entry since the lookup above.
    previous = await store.upsert_dose_log(
        log_id,
        {
            "user_id": patient_id,
            "medication_id": medication_id,
            "medication_name": medication_name,
            "action": action,
            "scheduled_time": scheduled_time,
            "scheduled_date": scheduled_date,
            "logged_at": stamp,
            "updated_at": stamp,
        },
        {"created_at": stamp},
    )
    if previous is None:
        logger.info(f"Recorded {action} for dose {log_id}")
        return DoseCompletionResult(id=log_id, status="created")

    previous_action = previous.get("action") if previous.get("action") in COMPLETION_ACTIONS else None
    if previous_action == action:
        return DoseCompletionResult(id=log_id, status="unchanged")
    logger.info(f"Updated dose {log_id} from {previous_action} to {action}")
    return DoseCompletionResult(id=log_id, status="updated", previous_action=previous_action)


async def record_dose_completions(
    store,
    patient_id: str,
    doses: List[dict],
    scheduled_date: str,
    action: str,
    now: Optional[datetime] = None
) -> dict:
    """Mark several doses of one day with the same action ("mark all")."""
    if not doses or len(doses) > MAX_BATCH_MARK_DOSES:
        raise InvalidDoseCompletionError(f"Between 1 and {MAX_BATCH_MARK_DOSES} doses can be marked at once")

    seen = set()
    unique_doses = []
    for dose in doses:
        key = (dose.get("medication_id"), dose.get("scheduled_time"))
        if key in seen:
            continue
        seen.add(key)
        unique_doses.append(dose)

    results = []
    errors = []
    medication_cache: Dict[str, Optional[dict]] = {}
    for dose in unique_doses:
        med_id = dose.get("medication_id")
        scheduled_time = dose.get("scheduled_time")
        if med_id not in medication_cache:
            medication_cache[med_id] = await store.get_medication(med_id)
        medication = medication_cache[med_id]
        if not medication:
            errors.append({"medication_id": med_id, "scheduled_time": scheduled_time, "error": "not_found"})
            continue
        if medication.get("user_id") != patient_id:
            errors.append({"medication_id": med_id, "scheduled_time": scheduled_time, "error": "forbidden"})
            continue
        try:
            result = await record_dose_completion(
                store,
                patient_id=patient_id,
                medication_id=med_id,
                scheduled_time=scheduled_time,
                scheduled_date=scheduled_date,
                action=action,
                medication_name=medication.get("name"),
                now=now,
            )
        except Exception as exc:
            logger.error(f"Failed to mark dose {med_id} at {scheduled_time}: {exc}")
            errors.append({"medication_id": med_id, "scheduled_time": scheduled_time, "error": "failed"})
            continue
        results.append({
            "id": result.id,
            "medication_id": med_id,
            "medication_name": medication.get("name"),
            "scheduled_time": scheduled_time,
            "action": action,
            "status": result.status,
            "idempotent": result.status == "unchanged",
            "previous_action": result.previous_action,
        })

    logger.info(
        f"Batch marked {len(results)} doses as {action} for {patient_id} "
        f"({len(errors)} errors, {len(doses) - len(unique_doses)} duplicates ignored)"
    )
    return {
        "results": results,
        "errors": errors,
        "duplicate_inputs_ignored": len(doses) - len(unique_doses),
    }
