import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from adherence import compute_adherence
from day_window import DEFAULT_TIMEZONE, compute_day_window, ensure_utc, minutes_to_hhmm, resolve_timezone
from dose_batching import DEFAULT_CHUNK_SIZE, batched_fetch, unique_ids
from dose_classifier import OVERDUE_GRACE_MINUTES, classify_doses, summarize
from dose_logs import record_dose_completion, resolve_dose_logs
from dose_models import ClassifiedDose, DayWindow, DoseCompletionResult, DoseSnapshots, DoseStatusSummary, ResolvedDoseLog
from dose_schedule import build_reminder_map, group_by_patient

logger = logging.getLogger(__name__)


def restrict_to_window(entry: ResolvedDoseLog, window: DayWindow) -> Optional[ResolvedDoseLog]:
    """
    Re-resolve an entry loaded through a wider shared window.

    A single-patient query only sees an entry through the date fields that
    fall inside that patient's window, so keep the latest of those.
    """
    in_window = [ts for ts in (entry.created_at, entry.logged_at) if window.contains(ts)]
    if not in_window:
        return None
    resolved_at = max(in_window)
    if resolved_at == entry.resolved_at:
        return entry
    return entry.model_copy(update={"resolved_at": resolved_at})


def pick_next_due(doses: List[ClassifiedDose], window: DayWindow) -> Optional[ClassifiedDose]:
    current_hhmm = minutes_to_hhmm(window.current_minutes)
    for candidates in (
        [d for d in doses if d.status == "pending" and d.scheduled_time >= current_hhmm],
        [d for d in doses if d.status == "missed"],
        [d for d in doses if d.status == "pending"],
    ):
        if candidates:
            return candidates[0]
    return None


class DoseReconciler:
    """Derives today's dose status, batch overviews and adherence for patients."""

    def __init__(
        self,
        store,
        default_timezone: str = DEFAULT_TIMEZONE,
        grace_minutes: int = OVERDUE_GRACE_MINUTES,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.default_timezone = default_timezone
        self.grace_minutes = grace_minutes
        self.chunk_size = chunk_size
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def day_window(self, timezone_name: Optional[str] = None, now: Optional[datetime] = None) -> DayWindow:
        return compute_day_window(resolve_timezone(timezone_name, self.default_timezone), now or self.clock())

    async def _load_today_sources(
        self,
        patient_id: str,
        window: DayWindow,
        snapshots: Optional[DoseSnapshots]
    ) -> Tuple[List[dict], List[dict], List[ResolvedDoseLog]]:
        snapshots = snapshots or DoseSnapshots()

        async def medications():
            if snapshots.medications is not None:
                return snapshots.medications
            return await self.store.list_active_medications([patient_id])

        async def reminders():
            if snapshots.reminders is not None:
                return snapshots.reminders
            return await self.store.list_reminders([patient_id])

        async def logs():
            if snapshots.logs is not None:
                return snapshots.logs
            return await resolve_dose_logs(self.store, [patient_id], window.start_at, window.end_at)

        return await asyncio.gather(medications(), reminders(), logs())

    async def classify_today(
        self,
        patient_id: str,
        timezone: Optional[str] = None,
        now: Optional[datetime] = None,
        snapshots: Optional[DoseSnapshots] = None
    ) -> Tuple[DayWindow, List[ClassifiedDose]]:
        window = self.day_window(timezone, now)
        medications, reminders, logs = await self._load_today_sources(patient_id, window, snapshots)
        doses = classify_doses(medications, build_reminder_map(reminders), logs, window, self.grace_minutes)
        return window, doses

    async def compute_today_status(
        self,
        patient_id: str,
        timezone: Optional[str] = None,
        now: Optional[datetime] = None,
        snapshots: Optional[DoseSnapshots] = None
    ) -> DoseStatusSummary:
        _, doses = await self.classify_today(patient_id, timezone, now, snapshots)
        return summarize(doses)

    async def get_today_schedule(
        self,
        patient_id: str,
        timezone: Optional[str] = None,
        now: Optional[datetime] = None,
        snapshots: Optional[DoseSnapshots] = None
    ) -> dict:
        window, doses = await self.classify_today(patient_id, timezone, now, snapshots)
        summary = summarize(doses)
        next_due = pick_next_due(doses, window)
        logger.info(
            f"Schedule for {patient_id} on {window.local_date}: "
            f"{summary.total} doses, {summary.taken} taken, {summary.missed} missed"
        )
        return {
            "date": window.local_date,
            "timezone": window.timezone,
            "schedule": [d.model_dump() for d in doses],
            "summary": summary.model_dump(),
            "next_due": (
                {"medication_id": next_due.medication_id, "name": next_due.medication_name, "time": next_due.scheduled_time}
                if next_due else None
            ),
        }

    async def compute_today_status_batch(
        self,
        patient_ids: Iterable[str],
        timezone_by_patient: Dict[str, str],
        now: Optional[datetime] = None
    ) -> Dict[str, DoseStatusSummary]:
        """
        Today's summary for many patients with chunked queries.

        Each chunk issues one medication, one reminder and one dual-field log
        query; a failing chunk degrades to per-patient queries. Patients whose
        per-patient queries fail as well are left out of the result.
        """
        ids = unique_ids(patient_ids)
        if not ids:
            return {}

        reference = ensure_utc(now or self.clock())
        windows = {pid: self.day_window(timezone_by_patient.get(pid), reference) for pid in ids}

        async def fetch_chunk_logs(chunk: List[str]) -> List[ResolvedDoseLog]:
            start_at = min(windows[pid].start_at for pid in chunk)
            end_at = max(windows[pid].end_at for pid in chunk)
            return await resolve_dose_logs(self.store, chunk, start_at, end_at)

        async def fetch_patient_logs(pid: str) -> List[ResolvedDoseLog]:
            return await resolve_dose_logs(self.store, [pid], windows[pid].start_at, windows[pid].end_at)

        meds_result, reminders_result, logs_result = await asyncio.gather(
            batched_fetch(
                ids,
                self.chunk_size,
                self.store.list_active_medications,
                lambda pid: self.store.list_active_medications([pid]),
                label="medications",
            ),
            batched_fetch(
                ids,
                self.chunk_size,
                self.store.list_reminders,
                lambda pid: self.store.list_reminders([pid]),
                label="reminders",
            ),
            batched_fetch(ids, self.chunk_size, fetch_chunk_logs, fetch_patient_logs, label="dose logs"),
        )

        failed = set(meds_result.failed_ids) | set(reminders_result.failed_ids) | set(logs_result.failed_ids)
        if failed:
            logger.error(f"Dose status unavailable for {len(failed)} patient(s): {sorted(failed)}")

        meds_by_patient = group_by_patient(meds_result.items, ids)
        reminders_by_patient = group_by_patient(reminders_result.items, ids)
        logs_by_patient: Dict[str, List[ResolvedDoseLog]] = {pid: [] for pid in ids}
        for entry in logs_result.items:
            if entry.user_id in logs_by_patient:
                logs_by_patient[entry.user_id].append(entry)

        summaries = {}
        for pid in ids:
            if pid in failed:
                continue
            window = windows[pid]
            own_logs = [e for e in (restrict_to_window(entry, window) for entry in logs_by_patient[pid]) if e]
            doses = classify_doses(
                meds_by_patient[pid],
                build_reminder_map(reminders_by_patient[pid]),
                own_logs,
                window,
                self.grace_minutes,
            )
            summaries[pid] = summarize(doses)
        return summaries

    async def compute_adherence(
        self,
        patient_id: str,
        days: int = 30,
        medication_id: Optional[str] = None,
        timezone: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> dict:
        return await compute_adherence(self.store, patient_id, self.day_window(timezone, now), days, medication_id)

    async def record_dose_completion(
        self,
        patient_id: str,
        medication_id: str,
        scheduled_time: str,
        scheduled_date: str,
        action: str,
        medication_name: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> DoseCompletionResult:
        return await record_dose_completion(
            self.store,
            patient_id=patient_id,
            medication_id=medication_id,
            scheduled_time=scheduled_time,
            scheduled_date=scheduled_date,
            action=action,
            medication_name=medication_name,
            now=now or self.clock(),
        )
