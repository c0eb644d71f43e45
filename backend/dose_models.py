from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

COMPLETION_ACTIONS = {"taken", "skipped"}

HHMM_PATTERN = r"^([01]\d|2[0-3]):([0-5]\d)$"


class DayWindow(BaseModel):
    """One local calendar day of a patient, pinned to absolute instants."""
    model_config = ConfigDict(frozen=True)
    timezone: str
    local_date: str  # YYYY-MM-DD
    start_at: datetime
    end_at: datetime
    now: datetime
    current_minutes: int  # 0..1439

    def contains(self, instant: Optional[datetime]) -> bool:
        return instant is not None and self.start_at <= instant <= self.end_at


class ResolvedDoseLog(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    user_id: Optional[str] = None
    medication_id: Optional[str] = None
    medication_name: Optional[str] = None
    action: Optional[str] = None
    scheduled_time: Optional[str] = None
    scheduled_date: Optional[str] = None
    created_at: Optional[datetime] = None
    logged_at: Optional[datetime] = None
    snooze_until: Optional[datetime] = None
    resolved_at: datetime


class ClassifiedDose(BaseModel):
    medication_id: str
    medication_name: Optional[str] = None
    dose: Optional[str] = None
    scheduled_time: str
    status: Literal["taken", "skipped", "missed", "pending"]
    log_id: Optional[str] = None
    action_at: Optional[str] = None
    snoozed_until: Optional[str] = None


class DoseStatusSummary(BaseModel):
    total: int = 0
    taken: int = 0
    skipped: int = 0
    pending: int = 0
    missed: int = 0


class DoseSnapshots(BaseModel):
    """Already-loaded query results; a None slot is fetched from the store."""
    medications: Optional[List[dict]] = None
    reminders: Optional[List[dict]] = None
    logs: Optional[List[ResolvedDoseLog]] = None


class DoseCompletionResult(BaseModel):
    id: str
    status: Literal["created", "updated", "unchanged"]
    previous_action: Optional[str] = None


class DoseMarkRequest(BaseModel):
    medication_id: str = Field(min_length=1)
    scheduled_time: str = Field(pattern=HHMM_PATTERN)
    action: Literal["taken", "skipped"]
    target_user_id: Optional[str] = None


class DoseMarkItem(BaseModel):
    medication_id: str = Field(min_length=1)
    scheduled_time: str = Field(pattern=HHMM_PATTERN)


class DoseMarkBatchRequest(BaseModel):
    doses: List[DoseMarkItem] = Field(min_length=1, max_length=20)
    action: Literal["taken", "skipped"]
    target_user_id: Optional[str] = None
