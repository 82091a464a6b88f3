import logging
import secrets
from contextlib import asynccontextmanager
from typing import Dict

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from forecast.config import (
    APP_ORIGIN,
    BACKEND_API_KEY,
    BACKEND_INTERNAL_URL,
    CANCEL_SUPERSEDED_JOBS,
    COMPLETION_SENTINEL,
    DATABASE_URL,
    JOB_STATUS_TTL_SECONDS,
    PREDICT_SCRIPT,
    PREDICTION_TIMEOUT_SECONDS,
    PYTHON_EXECUTABLE,
)
from forecast.labels import format_date, format_label, parse_label
from forecast.launcher import PredictionLauncher
from forecast.models import (
    HourDataPush,
    PollRequest,
    PollResponse,
    PredictData,
    PredictRequest,
    SeriesPoint,
    TimeSeriesRecord,
)
from forecast.state import JobStatusTable
from forecast.storage import RecordStore, user_data_type

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("forecast-backend")

# --- Collaborators (overridable through app.dependency_overrides) ---
store = RecordStore(DATABASE_URL)
status_table = JobStatusTable(ttl_seconds=JOB_STATUS_TTL_SECONDS)
child_env = {"BACKEND_INTERNAL_URL": BACKEND_INTERNAL_URL}
if BACKEND_API_KEY:
    child_env["BACKEND_API_KEY"] = BACKEND_API_KEY
launcher = PredictionLauncher(
    store,
    status_table,
    script=PREDICT_SCRIPT,
    python=PYTHON_EXECUTABLE,
    sentinel=COMPLETION_SENTINEL,
    timeout_seconds=PREDICTION_TIMEOUT_SECONDS,
    cancel_superseded=CANCEL_SUPERSEDED_JOBS,
    child_env=child_env,
)


def get_store() -> RecordStore:
    return store


def get_status_table() -> JobStatusTable:
    return status_table


def get_launcher() -> PredictionLauncher:
    return launcher


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Record store: %s", store.backend)
    logger.info("Prediction script: %s", PREDICT_SCRIPT)
    yield
    running = launcher.running()
    if running:
        logger.warning("Shutting down with %d prediction job(s) still running", running)
    status_table.clear()


app = FastAPI(title="Energy Forecast API", lifespan=lifespan)

# --- API Key Authentication ---
# Set BACKEND_API_KEY env var to enable authentication.
_PUBLIC_PATHS = frozenset(["/healthz"])


async def verify_api_key(request: Request):
    """Dependency that verifies API key for protected endpoints."""
    if not BACKEND_API_KEY:
        return

    if request.url.path in _PUBLIC_PATHS:
        return

    api_key = request.headers.get("x-api-key")
    if not api_key:
        raise HTTPException(status_code=401, detail="Missing API key")

    # Timing-safe comparison
    if not secrets.compare_digest(api_key, BACKEND_API_KEY):
        raise HTTPException(status_code=401, detail="Invalid API key")


app.add_middleware(
    CORSMiddleware,
    allow_origins=[APP_ORIGIN, "http://127.0.0.1:3000", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-API-Key"],
)


# --- Error handling ---
@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError):
    logger.warning("Record store error on %s: %s", request.url.path, exc)
    return JSONResponse({"error": str(exc)}, status_code=400)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse({"error": str(exc)}, status_code=400)


@app.get("/healthz")
def healthz(
    store: RecordStore = Depends(get_store),
    table: JobStatusTable = Depends(get_status_table),
):
    return {"ok": True, "storage": store.backend, "jobs": len(table)}


# --- Prediction jobs ---
@app.post("/predict", dependencies=[Depends(verify_api_key)])
def predict(req: PredictRequest, launcher: PredictionLauncher = Depends(get_launcher)):
    token = launcher.start(req.username, req.from_date, req.from_time, req.to_date, req.to_time)
    return {"token": token}


@app.post("/load/day-data", response_model=PollResponse, dependencies=[Depends(verify_api_key)])
def load_day_data(
    req: PollRequest,
    store: RecordStore = Depends(get_store),
    table: JobStatusTable = Depends(get_status_table),
):
    if not table.is_current(req.username, req.token):
        return PollResponse(data=[], end=False)
    days = []
    for rec in store.find(user_data_type(req.username)):
        date = format_date(rec.year, rec.month, rec.day)
        # Consecutive same-day records collapse into one daily total
        if days and days[-1].date == date:
            days[-1].yhat += rec.value
        else:
            days.append(SeriesPoint(date=date, yhat=rec.value))
    return PollResponse(data=days, end=table.is_complete(req.username))


@app.post("/load/hour-data", response_model=PollResponse, dependencies=[Depends(verify_api_key)])
def load_hour_data(
    req: PollRequest,
    store: RecordStore = Depends(get_store),
    table: JobStatusTable = Depends(get_status_table),
):
    if not table.is_current(req.username, req.token):
        return PollResponse(data=[], end=False)
    hours = [
        SeriesPoint(date=format_label(rec.hour, rec.year, rec.month, rec.day), yhat=rec.value)
        for rec in store.find(user_data_type(req.username))
    ]
    return PollResponse(data=hours, end=table.is_complete(req.username))


@app.post("/add/hour-data", dependencies=[Depends(verify_api_key)])
def add_hour_data(
    req: HourDataPush,
    store: RecordStore = Depends(get_store),
    table: JobStatusTable = Depends(get_status_table),
):
    if not table.is_current(req.username, req.token):
        # Tells a superseded job to stop pushing
        return {"message": "STOP"}
    data_type = user_data_type(req.username)
    records = []
    for entry in req.data:
        year, month, day, hour = parse_label(entry.date_time)
        if year is None:
            raise ValueError(f"dateTime must carry a date: {entry.date_time!r}")
        records.append(
            TimeSeriesRecord(data_type=data_type, year=year, month=month, day=day, hour=hour, value=entry.yhat)
        )
    inserted = store.replace([data_type], records)
    return {"ok": True, "inserted": inserted}


# --- Cached series ---
@app.get("/", dependencies=[Depends(verify_api_key)])
def list_records(store: RecordStore = Depends(get_store)):
    return [rec.model_dump(by_alias=True) for rec in store.find()]


@app.post("/load/temp", dependencies=[Depends(verify_api_key)])
def load_temp(store: RecordStore = Depends(get_store)):
    return {format_label(rec.hour, rec.year, rec.month, rec.day): rec.value for rec in store.find("temp")}


@app.post("/add/temp", dependencies=[Depends(verify_api_key)])
def add_temp(payload: Dict[str, float], store: RecordStore = Depends(get_store)):
    records = []
    for label, value in payload.items():
        year, month, day, hour = parse_label(label)
        records.append(TimeSeriesRecord(data_type="temp", year=year, month=month, day=day, hour=hour, value=value))
    inserted = store.replace(["temp"], records)
    return {"ok": True, "inserted": inserted}


@app.post("/load/predict-data", dependencies=[Depends(verify_api_key)])
def load_predict_data(store: RecordStore = Depends(get_store)):
    pred: Dict[str, Dict[str, float]] = {}
    for rec in store.find("act", "avg"):
        label = format_label(rec.hour, rec.year, rec.month, rec.day)
        pred.setdefault(rec.data_type, {})[label] = rec.value
    return pred


@app.post("/add/predict-data", dependencies=[Depends(verify_api_key)])
def add_predict_data(req: PredictData, store: RecordStore = Depends(get_store)):
    records = []
    for data_type, series in (("act", req.act), ("avg", req.avg)):
        for label, value in series.items():
            year, month, day, hour = parse_label(label)
            records.append(
                TimeSeriesRecord(data_type=data_type, year=year, month=month, day=day, hour=hour, value=value)
            )
    inserted = store.replace(["act", "avg"], records)
    return {"ok": True, "inserted": inserted}
