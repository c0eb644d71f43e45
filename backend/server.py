from fastapi import FastAPI, APIRouter, HTTPException, Depends, Request, Response
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from typing import List, Optional
from jose import JWTError, jwt

from day_window import DEFAULT_TIMEZONE, resolve_timezone
from dose_batching import DEFAULT_CHUNK_SIZE
from dose_classifier import OVERDUE_GRACE_MINUTES
from dose_logs import InvalidDoseCompletionError, record_dose_completions
from dose_models import DoseMarkBatchRequest, DoseMarkRequest, DoseSnapshots, DoseStatusSummary
from dose_status import DoseReconciler
from dose_store import MongoDoseStore

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Auth Configuration
SECRET_KEY = os.environ.get("JWT_SECRET_KEY", "fallback_secret_key_change_in_production")
ALGORITHM = "HS256"

# Dose reconciliation configuration
DEFAULT_USER_TIMEZONE = os.environ.get("DEFAULT_TIMEZONE", DEFAULT_TIMEZONE)
DOSE_OVERDUE_GRACE_MINUTES = int(os.environ.get("DOSE_OVERDUE_GRACE_MINUTES", str(OVERDUE_GRACE_MINUTES)))
DOSE_QUERY_CHUNK_SIZE = int(os.environ.get("DOSE_QUERY_CHUNK_SIZE", str(DEFAULT_CHUNK_SIZE)))

# MongoDB connection
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ.get('DB_NAME', 'dose_reconciliation')]

# Create the main app without a prefix
app = FastAPI()

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

dose_store = MongoDoseStore(db)


def get_dose_store() -> MongoDoseStore:
    return dose_store


def get_reconciler(store: MongoDoseStore = Depends(get_dose_store)) -> DoseReconciler:
    return DoseReconciler(
        store,
        default_timezone=DEFAULT_USER_TIMEZONE,
        grace_minutes=DOSE_OVERDUE_GRACE_MINUTES,
        chunk_size=DOSE_QUERY_CHUNK_SIZE
    )


def build_medication_alerts(summary: DoseStatusSummary) -> List[dict]:
    alerts = []
    if summary.missed > 0:
        alerts.append({
            "type": "missed_dose",
            "priority": "high",
            "message": f"{summary.missed} missed dose{'s' if summary.missed > 1 else ''} today"
        })
    return alerts


async def get_current_user_id(request: Request) -> str:
    """Get current user id from JWT token in cookie or Authorization header"""
    token = request.cookies.get("access_token")

    # Fallback to Authorization header
    if not token:
        auth_header = request.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.split(" ")[1]

    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid authentication token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid authentication token")
    return user_id


async def resolve_target_user_id(
    store: MongoDoseStore,
    current_user_id: str,
    target_user_id: Optional[str] = None,
    require_write: bool = False
) -> str:
    """Resolve patient user_id from an accepted caregiver link."""
    if not target_user_id or target_user_id == current_user_id:
        return current_user_id

    link = await store.get_care_link(current_user_id, target_user_id)
    if not link:
        raise HTTPException(status_code=403, detail="Access denied for this patient")

    if require_write and link.get("permission") != "edit":
        raise HTTPException(status_code=403, detail="Read-only access for this patient")

    return target_user_id


async def get_patient_timezone(store: MongoDoseStore, patient_id: str) -> str:
    profiles = await store.get_user_profiles([patient_id])
    return resolve_timezone(profiles.get(patient_id, {}).get("timezone"), DEFAULT_USER_TIMEZONE, patient_id)


# ==================== MEDICATION SCHEDULE ====================

@api_router.get("/medications/schedule/today", response_model=dict)
async def get_today_schedule(
    current_user_id: str = Depends(get_current_user_id),
    store: MongoDoseStore = Depends(get_dose_store),
    reconciler: DoseReconciler = Depends(get_reconciler)
):
    user_timezone = await get_patient_timezone(store, current_user_id)
    try:
        return await reconciler.get_today_schedule(current_user_id, timezone=user_timezone)
    except Exception as e:
        logger.error(f"Error fetching schedule for {current_user_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch medication schedule")


@api_router.post("/medications/schedule/mark", response_model=dict)
async def mark_scheduled_dose(
    payload: DoseMarkRequest,
    response: Response,
    current_user_id: str = Depends(get_current_user_id),
    store: MongoDoseStore = Depends(get_dose_store),
    reconciler: DoseReconciler = Depends(get_reconciler)
):
    owner_id = await resolve_target_user_id(store, current_user_id, payload.target_user_id, require_write=True)
    medication = await store.get_medication(payload.medication_id)
    if not medication or medication.get("user_id") != owner_id:
        raise HTTPException(status_code=404, detail="Medication not found")

    user_timezone = await get_patient_timezone(store, owner_id)
    scheduled_date = reconciler.day_window(user_timezone).local_date
    try:
        result = await reconciler.record_dose_completion(
            patient_id=owner_id,
            medication_id=payload.medication_id,
            scheduled_time=payload.scheduled_time,
            scheduled_date=scheduled_date,
            action=payload.action,
            medication_name=medication.get("name")
        )
    except InvalidDoseCompletionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error marking dose {payload.medication_id} at {payload.scheduled_time}: {e}")
        raise HTTPException(status_code=500, detail="Failed to mark dose")

    response.status_code = 201 if result.status == "created" else 200
    return {
        "id": result.id,
        "medication_id": payload.medication_id,
        "action": payload.action,
        "scheduled_time": payload.scheduled_time,
        "scheduled_date": scheduled_date,
        "status": result.status,
        "idempotent": result.status == "unchanged",
        "previous_action": result.previous_action
    }


@api_router.post("/medications/schedule/mark-batch", response_model=dict)
async def mark_scheduled_doses(
    payload: DoseMarkBatchRequest,
    response: Response,
    current_user_id: str = Depends(get_current_user_id),
    store: MongoDoseStore = Depends(get_dose_store),
    reconciler: DoseReconciler = Depends(get_reconciler)
):
    owner_id = await resolve_target_user_id(store, current_user_id, payload.target_user_id, require_write=True)
    user_timezone = await get_patient_timezone(store, owner_id)
    try:
        outcome = await record_dose_completions(
            store,
            patient_id=owner_id,
            doses=[d.model_dump() for d in payload.doses],
            scheduled_date=reconciler.day_window(user_timezone).local_date,
            action=payload.action,
            now=reconciler.clock()
        )
    except InvalidDoseCompletionError as e:
        raise HTTPException(status_code=400, detail=str(e))

    created = any(r["status"] == "created" for r in outcome["results"])
    response.status_code = 201 if created else 200
    return outcome


# ==================== CAREGIVER VIEWS ====================

@api_router.get("/care/overview", response_model=dict)
async def get_care_overview(
    current_user_id: str = Depends(get_current_user_id),
    store: MongoDoseStore = Depends(get_dose_store),
    reconciler: DoseReconciler = Depends(get_reconciler)
):
    links = await store.list_accepted_patient_links(current_user_id)
    patient_ids = list(dict.fromkeys(l["patient_id"] for l in links if l.get("patient_id")))
    if not patient_ids:
        return {"patients": []}

    profiles = await store.get_user_profiles(patient_ids)
    timezone_by_patient = {
        pid: resolve_timezone(profiles.get(pid, {}).get("timezone"), DEFAULT_USER_TIMEZONE, pid)
        for pid in patient_ids
    }
    try:
        summaries = await reconciler.compute_today_status_batch(patient_ids, timezone_by_patient)
    except Exception as e:
        logger.error(f"Error fetching care overview for {current_user_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch care overview")

    patients = []
    for pid in patient_ids:
        profile = profiles.get(pid, {})
        summary = summaries.get(pid)
        patients.append({
            "user_id": pid,
            "name": profile.get("preferred_name") or profile.get("first_name") or "Unknown",
            "email": profile.get("email"),
            "timezone": timezone_by_patient[pid],
            "medications_today": summary.model_dump() if summary else None,
            "medication_status_unavailable": summary is None,
            "alerts": build_medication_alerts(summary) if summary else []
        })
    return {"patients": patients}


@api_router.get("/care/patients/{patient_id}/medication-status", response_model=dict)
async def get_patient_medication_status(
    patient_id: str,
    current_user_id: str = Depends(get_current_user_id),
    store: MongoDoseStore = Depends(get_dose_store),
    reconciler: DoseReconciler = Depends(get_reconciler)
):
    owner_id = await resolve_target_user_id(store, current_user_id, patient_id)
    user_timezone = await get_patient_timezone(store, owner_id)
    try:
        medications = await store.list_active_medications([owner_id])
        schedule = await reconciler.get_today_schedule(
            owner_id,
            timezone=user_timezone,
            snapshots=DoseSnapshots(medications=medications)
        )
    except Exception as e:
        logger.error(f"Error fetching medication status for {owner_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch medication status")

    schedule["medications_active"] = len(medications)
    schedule["alerts"] = build_medication_alerts(DoseStatusSummary(**schedule["summary"]))
    return schedule


@api_router.get("/care/patients/{patient_id}/medication-adherence", response_model=dict)
async def get_patient_medication_adherence(
    patient_id: str,
    days: int = 30,
    medication_id: Optional[str] = None,
    current_user_id: str = Depends(get_current_user_id),
    store: MongoDoseStore = Depends(get_dose_store),
    reconciler: DoseReconciler = Depends(get_reconciler)
):
    owner_id = await resolve_target_user_id(store, current_user_id, patient_id)
    user_timezone = await get_patient_timezone(store, owner_id)
    medication_filter = medication_id.strip() if medication_id and medication_id.strip() else None
    try:
        return await reconciler.compute_adherence(
            owner_id,
            days=days,
            medication_id=medication_filter,
            timezone=user_timezone
        )
    except Exception as e:
        logger.error(f"Error fetching medication adherence for {owner_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch medication adherence")


@api_router.get("/")
async def root():
    return {"message": "Dose Reconciliation API"}

# Include the router in the main app
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def create_indexes():
    await dose_store.ensure_indexes()

@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
