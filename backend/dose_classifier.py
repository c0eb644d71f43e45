from typing import Dict, Iterable, List, Optional, Tuple

from day_window import hhmm_to_minutes, local_date_string
from dose_models import COMPLETION_ACTIONS, ClassifiedDose, DayWindow, DoseStatusSummary, ResolvedDoseLog
from dose_schedule import schedulable_medications

OVERDUE_GRACE_MINUTES = 120

DoseKey = Tuple[str, str]


def log_local_date(entry: ResolvedDoseLog, timezone_name: str) -> str:
    """The calendar date a log was intended for, in the patient's zone."""
    if entry.scheduled_date and entry.scheduled_date.strip():
        return entry.scheduled_date.strip()
    return local_date_string(entry.resolved_at, timezone_name)


def index_logs_for_day(
    logs: Iterable[ResolvedDoseLog],
    window: DayWindow
) -> Tuple[Dict[DoseKey, ResolvedDoseLog], Dict[DoseKey, ResolvedDoseLog]]:
    """Latest completion and latest snooze per (medication, time) on the window's date."""
    completions: Dict[DoseKey, ResolvedDoseLog] = {}
    snoozes: Dict[DoseKey, ResolvedDoseLog] = {}
    for entry in logs:
        if not entry.medication_id or not entry.scheduled_time:
            continue
        if log_local_date(entry, window.timezone) != window.local_date:
            continue
        key = (entry.medication_id, entry.scheduled_time)
        if entry.action in COMPLETION_ACTIONS:
            target = completions
        elif entry.action == "snoozed":
            target = snoozes
        else:
            continue
        existing = target.get(key)
        if existing is None or entry.resolved_at >= existing.resolved_at:
            target[key] = entry
    return completions, snoozes


def classify_dose(
    scheduled_time: str,
    completion: Optional[ResolvedDoseLog],
    snooze: Optional[ResolvedDoseLog],
    window: DayWindow,
    grace_minutes: int = OVERDUE_GRACE_MINUTES
) -> str:
    if completion is not None:
        return completion.action
    if snooze is not None and snooze.snooze_until is not None and snooze.snooze_until > window.now:
        return "pending"
    if window.current_minutes > hhmm_to_minutes(scheduled_time) + grace_minutes:
        return "missed"
    return "pending"


def classify_doses(
    medications: Iterable[dict],
    reminder_map: Dict[str, List[str]],
    logs: Iterable[ResolvedDoseLog],
    window: DayWindow,
    grace_minutes: int = OVERDUE_GRACE_MINUTES
) -> List[ClassifiedDose]:
    completions, snoozes = index_logs_for_day(logs, window)

    doses = []
    for med in schedulable_medications(medications):
        med_id = med["id"]
        for scheduled_time in reminder_map.get(med_id, []):
            key = (med_id, scheduled_time)
            completion = completions.get(key)
            snooze = snoozes.get(key)
            status = classify_dose(scheduled_time, completion, snooze, window, grace_minutes)

            snoozed_until = None
            if status == "pending" and snooze is not None and snooze.snooze_until and snooze.snooze_until > window.now:
                snoozed_until = snooze.snooze_until.isoformat()

            doses.append(ClassifiedDose(
                medication_id=med_id,
                medication_name=med.get("name"),
                dose=med.get("dose"),
                scheduled_time=scheduled_time,
                status=status,
                log_id=completion.id if completion else None,
                action_at=completion.resolved_at.isoformat() if completion else None,
                snoozed_until=snoozed_until,
            ))

    doses.sort(key=lambda d: (d.scheduled_time, d.medication_name or "", d.medication_id))
    return doses


def summarize(doses: Iterable[ClassifiedDose]) -> DoseStatusSummary:
    summary = DoseStatusSummary()
    for dose in doses:
        summary.total += 1
        setattr(summary, dose.status, getattr(summary, dose.status) + 1)
    return summary
