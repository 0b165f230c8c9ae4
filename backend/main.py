import os
import logging
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.orm import Session

from shared import ledger
from shared.config import LOG_FORMAT, LOG_LEVEL
from shared.database import SessionLocal, engine
from shared.lifecycle import LifecycleError, finish_journey, start_journey
from shared.models import Base
from shared.timeutils import utcnow
from worker.reconciler import list_stuck_journeys, reconcile_overdue_journeys

from . import crud

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Fleet Backend API",
    description="Driver journeys, odometer ledger and automatic journey reconciliation",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# DB dependencies
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    return SessionLocal


def lifecycle_http_error(e: LifecycleError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=str(e))


# --- Request bodies ---

class StartJourneyIn(BaseModel):
    vehicle_id: int
    operator_id: int
    supervisor_id: Optional[int] = None
    start_km: int = Field(ge=0)
    notes: Optional[str] = None


class FinishJourneyIn(BaseModel):
    actor_id: int
    end_km: int = Field(ge=0)
    notes: Optional[str] = None


class VehicleIn(BaseModel):
    plate: str = Field(min_length=1, max_length=16)
    model: Optional[str] = None
    initial_km: int = Field(default=0, ge=0)


class OdometerIn(BaseModel):
    km: int = Field(gt=0)
    source: str = Field(pattern="^(fuel_up|maintenance|manual)$")
    origin_id: Optional[str] = None


# --- Health ---

@app.get("/healthz")
def healthz():
    """Liveness probe."""
    return {"ok": True}


@app.get("/dbping")
def db_ping(db: Session = Depends(get_db)):
    """Checks the database connection."""
    try:
        db.execute(text("SELECT 1"))
        return {"db": "ok"}
    except Exception as e:
        logger.error("DB error: %s", e)
        return {"db": "error", "detail": str(e)}


# --- Journeys ---

@app.get("/journeys")
def get_journeys(open_only: bool = Query(False, alias="open"), vehicle_id: Optional[int] = None, limit: int = 100, db: Session = Depends(get_db)):
    return [j.as_dict() for j in crud.list_journeys(db, open_only=open_only, vehicle_id=vehicle_id, limit=limit)]


@app.get("/journeys/stuck")
def get_stuck_journeys(db: Session = Depends(get_db)):
    """Open journeys that exhausted automatic closure retries."""
    return [j.as_dict() for j in list_stuck_journeys(db)]


@app.post("/journeys", status_code=201)
def post_journey(body: StartJourneyIn, db: Session = Depends(get_db)):
    try:
        j = start_journey(
            db,
            vehicle_id=body.vehicle_id,
            operator_id=body.operator_id,
            supervisor_id=body.supervisor_id,
            start_km=body.start_km,
            notes=body.notes,
        )
        db.commit()
    except LifecycleError as e:
        db.rollback()
        raise lifecycle_http_error(e)
    return j.as_dict()


@app.post("/journeys/{journey_id}/finish")
def post_finish(journey_id: int, body: FinishJourneyIn, db: Session = Depends(get_db)):
    try:
        j = finish_journey(db, journey_id, actor_id=body.actor_id, end_km=body.end_km, notes=body.notes)
        db.commit()
    except LifecycleError as e:
        db.rollback()
        raise lifecycle_http_error(e)
    return j.as_dict()


@app.post("/journeys/reconcile", status_code=202)
def post_reconcile(background: BackgroundTasks, session_factory=Depends(get_session_factory)):
    """Triggers an automatic closure pass; results are visible on the journeys afterwards."""
    background.add_task(reconcile_overdue_journeys, session_factory=session_factory)
    return {"message": "Reconciliation triggered.", "timestamp": utcnow().isoformat()}


# --- Vehicles / odometer ledger ---

@app.post("/vehicles", status_code=201)
def post_vehicle(body: VehicleIn, db: Session = Depends(get_db)):
    try:
        v = crud.onboard_vehicle(db, body.plate, body.model, body.initial_km)
        db.commit()
    except LifecycleError as e:
        db.rollback()
        raise lifecycle_http_error(e)
    return v.as_dict()


@app.post("/vehicles/{vehicle_id}/odometer", status_code=201)
def post_odometer(vehicle_id: int, body: OdometerIn, db: Session = Depends(get_db)):
    try:
        entry = crud.report_odometer(db, vehicle_id, body.km, body.source, body.origin_id)
        db.commit()
    except LifecycleError as e:
        db.rollback()
        raise lifecycle_http_error(e)
    return {"recorded": entry is not None, "current_km": ledger.latest_verified_mileage(db, vehicle_id)}


@app.get("/vehicles/{vehicle_id}/mileage")
def get_mileage(vehicle_id: int, db: Session = Depends(get_db)):
    return {
        "vehicle_id": vehicle_id,
        "current_km": ledger.latest_verified_mileage(db, vehicle_id),
        "entries": [e.as_dict() for e in ledger.entries_for(db, vehicle_id, limit=20)],
    }


# --- Startup (for uvicorn) ---

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "backend.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=False
    )
