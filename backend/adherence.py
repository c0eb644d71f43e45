import asyncio
import logging
from datetime import date
from typing import Dict, List, Optional

from day_window import hhmm_to_minutes, local_midnight_utc, shift_local_date
from dose_classifier import log_local_date
from dose_logs import resolve_dose_logs
from dose_models import COMPLETION_ACTIONS, DayWindow, ResolvedDoseLog
from dose_schedule import build_reminder_map, schedulable_medications

logger = logging.getLogger(__name__)

MIN_DAYS = 1
MAX_DAYS = 365
WEEKEND_GAP_THRESHOLD = 15
LOW_ADHERENCE_THRESHOLD = 70
STREAK_INSIGHT_DAYS = 7

TIME_OF_DAY_BUCKETS = ["morning", "afternoon", "evening", "night"]


def clamp_days(value: Optional[int], default_value: int = 30) -> int:
    try:
        days = int(value)
    except (TypeError, ValueError):
        return default_value
    return max(MIN_DAYS, min(days, MAX_DAYS))


def time_of_day_bucket(hhmm: str) -> str:
    minutes = hhmm_to_minutes(hhmm)
    if 5 * 60 <= minutes < 12 * 60:
        return "morning"
    if 12 * 60 <= minutes < 17 * 60:
        return "afternoon"
    if 17 * 60 <= minutes < 21 * 60:
        return "evening"
    return "night"


def percent(part: int, whole: int) -> int:
    return round((part / whole) * 100) if whole > 0 else 0


def taken_streak(taken_dates: set, today: str, days: int) -> int:
    """Consecutive local dates with a taken dose, counting back from today."""
    streak = 0
    for offset in range(days):
        if shift_local_date(today, -offset) not in taken_dates:
            break
        streak += 1
    return streak


def detect_patterns(
    calendar: List[dict],
    by_medication: List[dict],
    schedule: Dict[str, dict],
    logs: List[ResolvedDoseLog],
    days: int,
    expected_doses: int,
    total_logged: int
) -> dict:
    patterns = {"best_time_of_day": None, "worst_time_of_day": None, "insights": []}

    weekend = [c for c in calendar if date.fromisoformat(c["date"]).weekday() >= 5]
    weekday = [c for c in calendar if date.fromisoformat(c["date"]).weekday() < 5]
    weekend_scheduled = sum(c["scheduled"] for c in weekend)
    weekday_scheduled = sum(c["scheduled"] for c in weekday)
    if weekend_scheduled > 0 and weekday_scheduled > 0:
        weekend_rate = sum(c["taken"] for c in weekend) / weekend_scheduled * 100
        weekday_rate = sum(c["taken"] for c in weekday) / weekday_scheduled * 100
        if weekday_rate - weekend_rate > WEEKEND_GAP_THRESHOLD:
            patterns["insights"].append("Lower adherence on weekends")
        elif weekend_rate - weekday_rate > WEEKEND_GAP_THRESHOLD:
            patterns["insights"].append("Better adherence on weekends")

    bucket_expected = {b: 0 for b in TIME_OF_DAY_BUCKETS}
    bucket_taken = {b: 0 for b in TIME_OF_DAY_BUCKETS}
    for med in schedule.values():
        for hhmm in med["times"]:
            bucket_expected[time_of_day_bucket(hhmm)] += days
    for entry in logs:
        med = schedule.get(entry.medication_id)
        if entry.action != "taken" or not med or entry.scheduled_time not in med["times"]:
            continue
        bucket_taken[time_of_day_bucket(entry.scheduled_time)] += 1
    rates = {b: bucket_taken[b] / bucket_expected[b] for b in TIME_OF_DAY_BUCKETS if bucket_expected[b] > 0}
    if len(rates) >= 2:
        patterns["best_time_of_day"] = max(rates, key=rates.get)
        patterns["worst_time_of_day"] = min(rates, key=rates.get)

    best_streak = max([m["streak"] for m in by_medication] + [0])
    if best_streak >= STREAK_INSIGHT_DAYS:
        patterns["insights"].append(f"{best_streak}-day streak active")

    low = [m for m in by_medication if m["adherence_rate"] < LOW_ADHERENCE_THRESHOLD and m["total_doses"] > 0]
    if low:
        patterns["insights"].append(f"{len(low)} medication(s) below {LOW_ADHERENCE_THRESHOLD}% adherence")

    if expected_doses == 0 and total_logged > 0:
        patterns["insights"].append("No medication schedules set up - showing logged data only")

    return patterns


def analyze_adherence(
    medications: List[dict],
    reminders: List[dict],
    logs: List[ResolvedDoseLog],
    window: DayWindow,
    days: int,
    medication_id: Optional[str] = None
) -> dict:
    """Fold a multi-day window of schedules and logs into adherence stats."""
    reminder_map = build_reminder_map(reminders)
    schedule = {}
    for med in schedulable_medications(medications):
        if medication_id and med["id"] != medication_id:
            continue
        schedule[med["id"]] = {"name": med.get("name") or "Unknown", "times": reminder_map.get(med["id"], [])}

    today = window.local_date
    dates = [shift_local_date(today, -offset) for offset in range(days)]
    in_period = set(dates)

    completions = []
    for entry in logs:
        if entry.action not in COMPLETION_ACTIONS or not entry.medication_id:
            continue
        if medication_id and entry.medication_id != medication_id:
            continue
        entry_date = log_local_date(entry, window.timezone)
        if entry_date not in in_period:
            continue
        completions.append((entry_date, entry))

    taken_count = sum(1 for _, e in completions if e.action == "taken")
    skipped_count = sum(1 for _, e in completions if e.action == "skipped")
    total_logged = taken_count + skipped_count

    doses_per_day = sum(len(med["times"]) for med in schedule.values())
    expected_doses = doses_per_day * days
    effective_expected = expected_doses if expected_doses > 0 else total_logged
    if effective_expected > 0:
        adherence_rate = percent(taken_count, effective_expected)
    else:
        adherence_rate = 100 if taken_count > 0 else 0

    by_medication = []
    logged_med_ids = {e.medication_id for _, e in completions}
    for med_id, med in schedule.items():
        med_entries = [(d, e) for d, e in completions if e.medication_id == med_id]
        taken = sum(1 for _, e in med_entries if e.action == "taken")
        skipped = sum(1 for _, e in med_entries if e.action == "skipped")
        expected = len(med["times"]) * days if med["times"] else taken + skipped
        taken_dates = {d for d, e in med_entries if e.action == "taken"}
        by_medication.append({
            "medication_id": med_id,
            "medication_name": med["name"],
            "total_doses": expected,
            "taken_doses": taken,
            "skipped_doses": skipped,
            "adherence_rate": percent(taken, expected) if expected > 0 else 100,
            "streak": taken_streak(taken_dates, today, days),
        })
        logged_med_ids.discard(med_id)

    # Logged but no longer scheduled, e.g. discontinued medications.
    for med_id in sorted(logged_med_ids):
        med_entries = [e for _, e in completions if e.medication_id == med_id]
        taken = sum(1 for e in med_entries if e.action == "taken")
        skipped = sum(1 for e in med_entries if e.action == "skipped")
        name = next((e.medication_name for e in med_entries if e.medication_name), None)
        by_medication.append({
            "medication_id": med_id,
            "medication_name": name or "Unknown Medication",
            "total_doses": taken + skipped,
            "taken_doses": taken,
            "skipped_doses": skipped,
            "adherence_rate": percent(taken, taken + skipped) if taken + skipped > 0 else 100,
            "streak": 0,
        })

    by_medication.sort(key=lambda m: m["adherence_rate"])

    calendar = []
    for day in dates:
        day_entries = [e for d, e in completions if d == day]
        taken = sum(1 for e in day_entries if e.action == "taken")
        skipped = sum(1 for e in day_entries if e.action == "skipped")
        scheduled = doses_per_day if doses_per_day > 0 else taken + skipped
        calendar.append({
            "date": day,
            "scheduled": scheduled,
            "taken": taken,
            "skipped": skipped,
            "missed": max(0, scheduled - taken - skipped),
        })

    patterns = detect_patterns(
        calendar,
        by_medication,
        schedule,
        [e for _, e in completions],
        days,
        expected_doses,
        total_logged
    )

    return {
        "overall": {
            "total_doses": effective_expected,
            "taken_doses": taken_count,
            "skipped_doses": skipped_count,
            "missed_doses": max(0, effective_expected - total_logged),
            "adherence_rate": adherence_rate,
        },
        "by_medication": by_medication,
        "calendar": calendar,
        "patterns": patterns,
    }


async def compute_adherence(
    store,
    patient_id: str,
    window: DayWindow,
    days: int = 30,
    medication_id: Optional[str] = None
) -> dict:
    days = clamp_days(days)
    first_day = date.fromisoformat(shift_local_date(window.local_date, -(days - 1)))
    start_at = local_midnight_utc(first_day, window.timezone)

    medications, reminders, logs = await asyncio.gather(
        store.list_active_medications([patient_id]),
        store.list_reminders([patient_id]),
        resolve_dose_logs(store, [patient_id], start_at, window.end_at, medication_id),
    )

    result = analyze_adherence(medications, reminders, logs, window, days, medication_id)
    result["period"] = {
        "days": days,
        "from": start_at.isoformat(),
        "to": window.now.isoformat(),
        "timezone": window.timezone,
    }
    logger.info(
        f"Adherence for {patient_id} over {days} days: {result['overall']['adherence_rate']}% "
        f"({result['overall']['taken_doses']}/{result['overall']['total_doses']})"
    )
    return result
