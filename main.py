import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from auth import bearer_token, check_admin_token, generate_api_key, hash_api_key, resolve_user_id
from config import AppConfig
from database import Database, as_query_time, as_utc, serialize, utcnow
from errors import TrackerError, Unauthorized
from events import ChangeNotifier, QueryCache
from schemas import HEX_COLOR, ApiKey, Project, Settings
from timeline import (
    TimeRangeOption,
    format_duration,
    generate_markers,
    marker_interval_hours,
    place_entry,
    query_window,
    resolve_range,
)
from webhook import TimerService, WebhookResult

config = AppConfig.from_env()

logging.basicConfig(
    level=config.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    state = app.state
    if getattr(state, "config", None) is None:
        state.config = config
    owns_database = getattr(state, "database", None) is None
    if owns_database:
        state.database = Database.connect(state.config.database_url, state.config.database_name)
    state.database.ensure_indexes()
    if getattr(state, "clock", None) is None:
        state.clock = utcnow

    state.notifier = ChangeNotifier()
    state.cache = QueryCache()
    state.cache.invalidate_on(state.notifier, "timeentry", "summary:{user_id}:")
    state.cache.invalidate_on(state.notifier, "project", "summary:{user_id}:")
    # summary windows follow the user's timezone
    state.cache.invalidate_on(state.notifier, "settings", "summary:{user_id}:")
    logger.info("Focus Dial time tracker started (%s)", state.config.app_env)
    try:
        yield
    finally:
        if owns_database:
            state.database.close()


app = FastAPI(title="Focus Dial Time Tracker API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TrackerError)
async def tracker_error_handler(request: Request, exc: TrackerError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    content = {"error": "internal_error", "detail": "Internal server error"}
    if not request.app.state.config.is_production:
        content["details"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# Helper utilities

def get_database(request: Request) -> Database:
    return request.app.state.database


def current_user(request: Request, authorization: Optional[str]) -> str:
    return resolve_user_id(get_database(request), bearer_token(authorization))


def publish(request: Request, collection: str, operation: str, document_id: str, user_id: str) -> None:
    request.app.state.notifier.publish(collection, operation, document_id, user_id)


def user_settings(database: Database, user_id: str) -> Settings:
    doc = database["settings"].find_one({"user_id": user_id}) or {}
    return Settings(**{k: v for k, v in doc.items() if k in Settings.model_fields})


def user_now(request: Request, user_id: str) -> datetime:
    """Current time in the user's configured timezone."""
    tz_name = user_settings(get_database(request), user_id).timezone
    try:
        tz = ZoneInfo(tz_name)
    except ZoneInfoNotFoundError:
        logger.warning("Unknown timezone %r for user %s, using UTC", tz_name, user_id)
        tz = ZoneInfo("UTC")
    return request.app.state.clock().astimezone(tz)


def parse_range(value: str) -> TimeRangeOption:
    return TimeRangeOption.parse(value)


def entry_duration(start: datetime, end: Optional[datetime]) -> Optional[int]:
    if end is None:
        return None
    return int((as_utc(end) - as_utc(start)).total_seconds())


def projects_by_id(database: Database, user_id: str) -> Dict[str, dict]:
    return {p["_id"]: p for p in database.get_documents("project", {"user_id": user_id})}


def with_project(entry: dict, projects: Dict[str, dict]) -> dict:
    project = projects.get(entry.get("project_id"))
    entry["project"] = {"_id": project["_id"], "name": project["name"], "color": project["color"]} if project else None
    return entry


# Request models

class ApiKeyIn(BaseModel):
    name: str
    user_id: Optional[str] = None


class ProjectIn(BaseModel):
    name: str = Field(..., min_length=1)
    color: str = Field(..., pattern=HEX_COLOR)
    device_project_id: Optional[str] = None


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    color: Optional[str] = Field(None, pattern=HEX_COLOR)


class TimeEntryIn(BaseModel):
    project_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    description: Optional[str] = None


class TimeEntryUpdate(BaseModel):
    project_id: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    description: Optional[str] = None


@app.get("/")
def read_root():
    return {"message": "Focus Dial time tracker backend is running"}


@app.get("/test")
def test_database(request: Request):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    database = getattr(request.app.state, "database", None)
    if database is None:
        response["database"] = "⚠️ Available but not initialized"
        return response

    response["database_name"] = database.name
    try:
        response["collections"] = database.collection_names()[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response


# Settings (one document per user in collection "settings")
@app.get("/api/settings")
def get_settings(request: Request, authorization: Optional[str] = Header(None)):
    user_id = current_user(request, authorization)
    return user_settings(get_database(request), user_id).model_dump()


@app.put("/api/settings")
def update_settings(payload: Settings, request: Request, authorization: Optional[str] = Header(None)):
    user_id = current_user(request, authorization)
    try:
        ZoneInfo(payload.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise HTTPException(status_code=400, detail=f"Unknown timezone: {payload.timezone}")
    get_database(request)["settings"].update_one(
        {"user_id": user_id}, {"$set": {**payload.model_dump(), "updated_at": utcnow()}}, upsert=True
    )
    publish(request, "settings", "update", user_id, user_id)
    return payload.model_dump()


# API keys
@app.post("/api/api-keys", status_code=201)
def create_api_key(
    payload: ApiKeyIn,
    request: Request,
    authorization: Optional[str] = Header(None),
    x_admin_token: Optional[str] = Header(None),
):
    database = get_database(request)
    if check_admin_token(request.app.state.config.admin_token, x_admin_token):
        if not payload.user_id:
            raise HTTPException(status_code=400, detail="user_id is required when using the admin token")
        user_id = payload.user_id
    else:
        user_id = current_user(request, authorization)
        if payload.user_id and payload.user_id != user_id:
            raise HTTPException(status_code=403, detail="Cannot create keys for another user")

    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="API Key name cannot be empty.")

    raw_key = generate_api_key()
    doc = ApiKey(user_id=user_id, key_name=name, key_hash=hash_api_key(raw_key))
    try:
        key_id = database.create_document("apikey", doc.model_dump())
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="An API key with this name already exists")
    logger.info("Created API key %s (%s) for user %s", key_id, name, user_id)
    # the raw key is only ever returned here
    return {"_id": key_id, "user_id": user_id, "key_name": name, "api_key": raw_key}


@app.get("/api/api-keys")
def list_api_keys(request: Request, authorization: Optional[str] = Header(None)):
    user_id = current_user(request, authorization)
    cursor = get_database(request)["apikey"].find({"user_id": user_id}, {"key_hash": 0}).sort("created_at", DESCENDING)
    return [serialize(d) for d in cursor]


@app.delete("/api/api-keys/{key_id}")
def revoke_api_key(key_id: str, request: Request, authorization: Optional[str] = Header(None)):
    user_id = current_user(request, authorization)
    if not get_database(request).delete_document("apikey", key_id, user_id=user_id):
        raise HTTPException(status_code=404, detail="API key not found")
    logger.info("Revoked API key %s for user %s", key_id, user_id)
    return {"message": "API key revoked"}


# Projects
@app.get("/api/projects")
def list_projects(request: Request, q: Optional[str] = None, authorization: Optional[str] = Header(None)):
    user_id = current_user(request, authorization)
    flt = {"user_id": user_id}
    if q:
        flt["name"] = {"$regex": re.escape(q), "$options": "i"}
    return get_database(request).get_documents("project", flt, sort=[("name", ASCENDING)])


@app.post("/api/projects", status_code=201)
def create_project(payload: ProjectIn, request: Request, authorization: Optional[str] = Header(None)):
    user_id = current_user(request, authorization)
    database = get_database(request)
    if database["project"].count_documents({"user_id": user_id, "name": payload.name}) > 0:
        raise HTTPException(status_code=409, detail="A project with this name already exists")

    project = Project(user_id=user_id, **payload.model_dump())
    try:
        new_id = database.create_document("project", project.model_dump(exclude_none=True))
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="A project with this device project id already exists")
    publish(request, "project", "insert", new_id, user_id)
    return database.get_document("project", new_id)


@app.get("/api/projects/{project_id}")
def get_project(project_id: str, request: Request, authorization: Optional[str] = Header(None)):
    user_id = current_user(request, authorization)
    doc = get_database(request).get_document("project", project_id, user_id=user_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Project not found")
    return doc


@app.put("/api/projects/{project_id}")
def update_project(
    project_id: str, payload: ProjectUpdate, request: Request, authorization: Optional[str] = Header(None)
):
    user_id = current_user(request, authorization)
    database = get_database(request)
    doc = database.get_document("project", project_id, user_id=user_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Project not found")

    update = payload.model_dump(exclude_none=True)
    if not update:
        raise HTTPException(status_code=400, detail="No valid fields to update")
    if "name" in update and update["name"] != doc["name"]:
        if database["project"].count_documents({"user_id": user_id, "name": update["name"]}) > 0:
            raise HTTPException(status_code=409, detail="A project with this name already exists")

    database.update_document("project", project_id, update, user_id=user_id)
    publish(request, "project", "update", project_id, user_id)
    return database.get_document("project", project_id)


@app.delete("/api/projects/{project_id}")
def delete_project(project_id: str, request: Request, authorization: Optional[str] = Header(None)):
    user_id = current_user(request, authorization)
    database = get_database(request)
    if not database.get_document("project", project_id, user_id=user_id):
        raise HTTPException(status_code=404, detail="Project not found")

    count = database["timeentry"].count_documents({"user_id": user_id, "project_id": project_id})
    if count > 0:
        raise HTTPException(
            status_code=409,
            detail=f"Cannot delete project with associated time entries ({count})",
        )
    database.delete_document("project", project_id, user_id=user_id)
    publish(request, "project", "delete", project_id, user_id)
    return {"message": "Project deleted successfully"}


# Time Entries
@app.get("/api/time-entries")
def list_time_entries(
    request: Request,
    project_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    range_option: Optional[str] = Query(None, alias="range", description="Named range, e.g. 'Today'"),
    authorization: Optional[str] = Header(None),
):
    user_id = current_user(request, authorization)
    database = get_database(request)
    flt = {"user_id": user_id}
    if project_id:
        flt["project_id"] = project_id

    bounds = {}
    if range_option:
        window = query_window(parse_range(range_option), user_now(request, user_id))
        bounds = {"$gte": as_query_time(window.start), "$lte": as_query_time(window.end)}
    if start_date:
        bounds["$gte"] = as_query_time(start_date)
    if end_date:
        bounds["$lte"] = as_query_time(end_date)
    if bounds:
        flt["start_time"] = bounds

    projects = projects_by_id(database, user_id)
    docs = database.get_documents("timeentry", flt, sort=[("start_time", DESCENDING)])
    return [with_project(d, projects) for d in docs]


@app.get("/api/time-entries/active")
def list_active_entries(request: Request, authorization: Optional[str] = Header(None)):
    user_id = current_user(request, authorization)
    database = get_database(request)
    projects = projects_by_id(database, user_id)
    docs = database.get_documents(
        "timeentry", {"user_id": user_id, "end_time": None}, sort=[("start_time", DESCENDING)]
    )
    return [with_project(d, projects) for d in docs]


@app.post("/api/time-entries", status_code=201)
def create_time_entry(payload: TimeEntryIn, request: Request, authorization: Optional[str] = Header(None)):
    user_id = current_user(request, authorization)
    database = get_database(request)
    if not database.get_document("project", payload.project_id, user_id=user_id):
        raise HTTPException(status_code=404, detail="Project not found")
    if payload.end_time is not None and as_utc(payload.end_time) < as_utc(payload.start_time):
        raise HTTPException(status_code=400, detail="end_time must not be before start_time")

    data = payload.model_dump()
    data["user_id"] = user_id
    data["start_time"] = as_utc(payload.start_time)
    data["end_time"] = as_utc(payload.end_time)
    data["duration"] = entry_duration(payload.start_time, payload.end_time)

    new_id = database.create_document("timeentry", data)
    publish(request, "timeentry", "insert", new_id, user_id)
    return database.get_document("timeentry", new_id)


@app.get("/api/time-entries/{entry_id}")
def get_time_entry(entry_id: str, request: Request, authorization: Optional[str] = Header(None)):
    user_id = current_user(request, authorization)
    database = get_database(request)
    doc = database.get_document("timeentry", entry_id, user_id=user_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Time entry not found")
    return with_project(doc, projects_by_id(database, user_id))


@app.patch("/api/time-entries/{entry_id}")
def update_time_entry(
    entry_id: str, payload: TimeEntryUpdate, request: Request, authorization: Optional[str] = Header(None)
):
    user_id = current_user(request, authorization)
    database = get_database(request)
    doc = database.get_document("timeentry", entry_id, user_id=user_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Time entry not found")

    update = payload.model_dump(exclude_unset=True)
    if not update:
        raise HTTPException(status_code=400, detail="No valid fields to update")
    if update.get("start_time") is None:
        update.pop("start_time", None)
    if "project_id" in update:
        if not update["project_id"] or not database.get_document("project", update["project_id"], user_id=user_id):
            raise HTTPException(status_code=400, detail="Project not found")

    start = as_utc(update.get("start_time", doc["start_time"]))
    end = as_utc(update["end_time"]) if "end_time" in update else doc.get("end_time")
    if end is not None and end < start:
        raise HTTPException(status_code=400, detail="end_time must not be before start_time")
    if "start_time" in update:
        update["start_time"] = start
    if "end_time" in update:
        update["end_time"] = end
    # recompute duration
    update["duration"] = entry_duration(start, end)

    database.update_document("timeentry", entry_id, update, user_id=user_id)
    publish(request, "timeentry", "update", entry_id, user_id)
    return with_project(database.get_document("timeentry", entry_id), projects_by_id(database, user_id))


@app.delete("/api/time-entries/{entry_id}")
def delete_time_entry(entry_id: str, request: Request, authorization: Optional[str] = Header(None)):
    user_id = current_user(request, authorization)
    if not get_database(request).delete_document("timeentry", entry_id, user_id=user_id):
        raise HTTPException(status_code=404, detail="Time entry not found")
    publish(request, "timeentry", "delete", entry_id, user_id)
    return {"message": "Time entry deleted successfully"}


# Dashboard
@app.get("/api/summary")
def get_summary(
    request: Request,
    range_option: str = Query("Today", alias="range"),
    authorization: Optional[str] = Header(None),
):
    user_id = current_user(request, authorization)
    database = get_database(request)
    option = parse_range(range_option)
    now = user_now(request, user_id)
    window = query_window(option, now)
    in_window = {
        "user_id": user_id,
        "start_time": {"$gte": as_query_time(window.start), "$lte": as_query_time(window.end)},
    }

    # finished entries only change through writes, running ones grow with the clock
    cache = request.app.state.cache
    scope = f"summary:{user_id}:{option.value}:"
    key = scope + window.start.isoformat()
    finished = cache.get(key)
    if finished is None:
        finished = {}
        for entry in database["timeentry"].find({**in_window, "end_time": {"$ne": None}}):
            finished[entry["project_id"]] = finished.get(entry["project_id"], 0) + (entry.get("duration") or 0)
        cache.set(key, finished, replaces=scope)

    totals = dict(finished)
    running = database.get_documents("timeentry", {**in_window, "end_time": None}, sort=[("start_time", DESCENDING)])
    for entry in running:
        elapsed = max(0, int((as_utc(now) - entry["start_time"]).total_seconds()))
        totals[entry["project_id"]] = totals.get(entry["project_id"], 0) + elapsed

    projects = projects_by_id(database, user_id)
    by_project: List[dict] = []
    for project_id, seconds in sorted(totals.items(), key=lambda item: item[1], reverse=True):
        project = projects.get(project_id, {})
        by_project.append({
            "project_id": project_id,
            "name": project.get("name", "Unknown Project"),
            "color": project.get("color", "#808080"),
            "duration": seconds,
        })

    total = sum(totals.values())
    return {
        "range": {"option": option.value, "start": window.start, "end": window.end},
        "projects": len(projects),
        "total_duration": total,
        "total_formatted": format_duration(total),
        "active": [with_project(e, projects) for e in running],
        "by_project": by_project,
    }


@app.get("/api/timeline")
def get_timeline(
    request: Request,
    range_option: str = Query("Today", alias="range"),
    authorization: Optional[str] = Header(None),
):
    user_id = current_user(request, authorization)
    database = get_database(request)
    option = parse_range(range_option)
    now = user_now(request, user_id)
    window = query_window(option, now)
    entries = database.get_documents(
        "timeentry",
        {"user_id": user_id, "start_time": {"$gte": as_query_time(window.start), "$lte": as_query_time(window.end)}},
        sort=[("start_time", ASCENDING)],
    )

    workday_start = request.app.state.config.workday_start_hour
    resolved = resolve_range(option, now, entries, workday_start_hour=workday_start)
    bars = [bar for bar in (place_entry(e, resolved, now) for e in entries) if bar is not None]
    projects = projects_by_id(database, user_id)
    return {
        "option": option.value,
        "range": resolved,
        "interval_hours": marker_interval_hours(resolved, option),
        "markers": generate_markers(resolved, option),
        "bars": bars,
        "entries": [with_project(e, projects) for e in entries],
    }


# Focus Dial webhook
def timer_service(request: Request) -> TimerService:
    state = request.app.state
    return TimerService(
        state.database,
        clock=state.clock,
        metadata_policy=state.config.project_metadata_update,
        notifier=state.notifier,
        hide_internal_errors=state.config.is_production,
    )


def process_webhook(service: TimerService, authorization: Optional[str], body) -> WebhookResult:
    try:
        user_id = resolve_user_id(service.database, bearer_token(authorization))
    except Unauthorized as e:
        logger.warning("Webhook rejected: %s", e.message)
        return WebhookResult.failure(e)
    logger.info("Webhook call from user %s: %s", user_id, body)
    return service.handle(body if isinstance(body, dict) else {}, user_id)


@app.post("/api/webhook")
async def receive_webhook(request: Request, authorization: Optional[str] = Header(None)):
    try:
        body = await request.json()
    except ValueError:
        body = {}
    result = await run_in_threadpool(process_webhook, timer_service(request), authorization, body)
    return JSONResponse(status_code=result.status_code, content=result.to_response())


@app.get("/api/webhook")
def webhook_status():
    return {
        "status": "ready",
        "message": "Focus Dial webhook endpoint is ready to receive data",
        "timestamp": utcnow().isoformat(),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.port)
