from fastapi import FastAPI, Depends, Response, Request, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from prometheus_client import Counter, Histogram
from typing import Any, Dict, List
import time
import logging
import json
import uuid
from identity_sync import pipeline
from identity_sync.api.events import router as events_router
from identity_sync.config import get_settings
from identity_sync.errors import (
    InvalidEventError,
    StoreUnavailableError,
    UnknownDestinationTypeError,
    UnknownUserError,
    WorkspaceMismatchError,
)
from identity_sync.expression import validate_condition_expr
from identity_sync.identity_graph import delete_profile, get_live_user, set_operator_traits, user_identifiers
from identity_sync.infrastructure import db
from identity_sync.infrastructure.db import healthcheck
from identity_sync.read_model import workspace_stats
from identity_sync.segments import upsert_segment_definition
from identity_sync.sync_queue import retry_failed

REQUESTS = Counter('api_requests_total', 'API Requests', ['endpoint'])
LATENCY = Histogram('api_request_latency_seconds', 'API request latency', ['endpoint'], buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5))

app = FastAPI(title="Identity Sync API", version="0.1.0")
app.include_router(events_router)


def _log(level: int, **fields):
    logging.getLogger("app").log(level, json.dumps(fields, default=str))


def _error(request: Request, status: int, error: str, detail: str, headers: dict | None = None):
    cid = getattr(request.state, "correlation_id", "n/a")
    return JSONResponse(status_code=status, content={"error": error, "detail": detail, "correlation_id": cid}, headers=headers)


@app.exception_handler(InvalidEventError)
async def invalid_event_handler(request: Request, exc: InvalidEventError):
    return _error(request, 422, "invalid_event", exc.reason)


@app.exception_handler(WorkspaceMismatchError)
async def workspace_mismatch_handler(request: Request, exc: WorkspaceMismatchError):
    _log(logging.WARNING, event="workspace_mismatch", path=request.url.path, detail=str(exc))
    return _error(request, 409, "workspace_mismatch", str(exc))


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
    _log(logging.ERROR, event="store_unavailable", path=request.url.path, detail=str(exc))
    return _error(request, 503, "store_unavailable", str(exc), headers={"Retry-After": str(exc.retry_after)})


@app.exception_handler(UnknownUserError)
async def unknown_user_handler(request: Request, exc: UnknownUserError):
    return _error(request, 404, "unknown_user", str(exc))


@app.exception_handler(UnknownDestinationTypeError)
async def unknown_destination_type_handler(request: Request, exc: UnknownDestinationTypeError):
    return _error(request, 422, "unknown_destination_type", str(exc))


@app.exception_handler(LookupError)
async def not_found_handler(request: Request, exc: LookupError):
    return _error(request, 404, "not_found", str(exc))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    cid = getattr(request.state, "correlation_id", "n/a")
    logging.getLogger("app").error(json.dumps({
        "event": "error",
        "path": request.url.path,
        "detail": str(exc),
        "correlation_id": cid,
        "type": exc.__class__.__name__,
    }))
    return Response(content=json.dumps({"error": "internal_error", "correlation_id": cid}), media_type="application/json", status_code=500)


@app.middleware("http")
async def correlation_and_metrics(request: Request, call_next):
    request.state.correlation_id = request.headers.get("X-Correlation-ID") or uuid.uuid4().hex
    start = time.time()
    response = await call_next(request)
    route = request.scope.get("route")
    # route templates keep label cardinality bounded
    endpoint = route.path if route is not None else "unmatched"
    REQUESTS.labels(endpoint=endpoint).inc()
    LATENCY.labels(endpoint=endpoint).observe(time.time() - start)
    response.headers["X-Correlation-ID"] = request.state.correlation_id
    response.headers.setdefault('X-Content-Type-Options', 'nosniff')
    response.headers.setdefault('Cache-Control', 'no-store')
    return response


def get_db():
    session = db.get_session()
    try:
        yield session
    finally:
        session.close()


@app.on_event("startup")
def startup():
    settings = get_settings()
    logger = logging.getLogger("app")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('%(message)s'))  # already JSON
        logger.addHandler(handler)
    logger.setLevel(settings.log_level.upper())
    logging.getLogger("identity_sync").setLevel(settings.log_level.upper())


@app.get("/health")
def health():
    return {"db": healthcheck(), "status": "ok"}


@app.get("/metrics")
def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------------------------------------------------------------- profiles


class TraitsIn(BaseModel):
    traits: Dict[str, Any] = Field(default_factory=dict)


@app.get("/profiles/{user_id}")
def get_profile(user_id: int, workspace_id: str = Query(...), session: Session = Depends(get_db)):
    user = get_live_user(session, workspace_id, user_id)
    return {
        **user_identifiers(user),
        "traits": dict(user.traits or {}),
        "computed": dict(user.computed or {}),
        "merged_from": list(user.merged_from or []),
        "last_computed_at": user.last_computed_at.isoformat() if user.last_computed_at else None,
    }


@app.patch("/profiles/{user_id}/traits")
def patch_traits(user_id: int, body: TraitsIn, workspace_id: str = Query(...), session: Session = Depends(get_db)):
    traits = set_operator_traits(session, workspace_id, user_id, body.traits)
    pipeline.recompute_one(workspace_id, user_id, trigger="operator")
    return {"user_id": user_id, "traits": traits}


@app.delete("/profiles/{user_id}")
def remove_profile(user_id: int, workspace_id: str = Query(...), session: Session = Depends(get_db)):
    return delete_profile(session, workspace_id, user_id)


# ---------------------------------------------------------------- destinations


class DestinationIn(BaseModel):
    workspace_id: str = Field(min_length=1, max_length=64)
    name: str
    type: str
    config: Dict[str, Any] = Field(default_factory=dict)
    event_mapping: Dict[str, str] = Field(default_factory=dict)
    property_mapping: Dict[str, Any] = Field(default_factory=dict)
    blocked_events: List[str] = Field(default_factory=list)
    track_events: bool = True
    enabled: bool = True
    max_concurrency: int | None = Field(None, ge=1)


@app.post("/destinations", status_code=201)
def create_destination(body: DestinationIn):
    dest = pipeline.create_destination(
        body.workspace_id, body.name, body.type, body.config,
        event_mapping=body.event_mapping, property_mapping=body.property_mapping,
        blocked_events=body.blocked_events, track_events=body.track_events,
        enabled=body.enabled, max_concurrency=body.max_concurrency,
    )
    return {"id": dest.id, "workspace_id": dest.workspace_id, "type": dest.type, "enabled": dest.enabled}


@app.post("/destinations/{destination_id}/enable")
def enable_destination(destination_id: int, workspace_id: str = Query(...)):
    return pipeline.set_destination_enabled(workspace_id, destination_id, True)


@app.post("/destinations/{destination_id}/disable")
def disable_destination(destination_id: int, workspace_id: str = Query(...)):
    return pipeline.set_destination_enabled(workspace_id, destination_id, False)


# ---------------------------------------------------------------- segments


class SegmentIn(BaseModel):
    expression: Dict[str, Any]
    workspace_id: str | None = None
    name: str | None = None
    description: str | None = None
    active: bool = True


@app.put("/segments/{key}")
def put_segment(key: str, body: SegmentIn, session: Session = Depends(get_db)):
    ok, reason = validate_condition_expr(body.expression)
    if not ok:
        raise HTTPException(status_code=422, detail=f"invalid expression: {reason}")
    row = upsert_segment_definition(session, key, body.expression, body.workspace_id, body.name, body.description, body.active)
    session.commit()
    return {"id": row.id, "key": row.key, "workspace_id": row.workspace_id, "active": row.active}


# ---------------------------------------------------------------- operations


class RetryIn(BaseModel):
    workspace_id: str
    job_ids: List[int] | None = None


@app.get("/workspaces/{workspace_id}/stats")
def stats(workspace_id: str, session: Session = Depends(get_db)):
    return workspace_stats(session, workspace_id)


@app.post("/ops/drain")
def ops_drain(workspace_id: str | None = None, max_jobs: int | None = Query(None, ge=1)):
    return pipeline.force_drain(workspace_id=workspace_id, max_jobs=max_jobs)


@app.post("/ops/recompute")
def ops_recompute(workspace_id: str = Query(...)):
    return pipeline.recompute_workspace(workspace_id)


@app.post("/ops/retry-failed")
def ops_retry_failed(body: RetryIn, session: Session = Depends(get_db)):
    return {"requeued": retry_failed(session, body.workspace_id, body.job_ids)}
