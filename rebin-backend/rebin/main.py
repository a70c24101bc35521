import logging
import os
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel, Field

from .db import dispose_db, get_recent_usage, get_usage_summary, init_db, log_usage_event
from .engine import SorterEngine
from .errors import (
    AccessDeniedError,
    CapacityExhaustedError,
    DuplicateContainerError,
    MalformedSnapshotError,
    ResyncRequiredError,
    SorterError,
)
from .storage import registry

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

app = FastAPI(title="Rebin Station Backend v1")

# -------------------------------------------------------------------
# Auth configuration
# -------------------------------------------------------------------
JWT_SECRET = os.getenv("JWT_SECRET") or os.getenv("AUTH_SECRET") or "dev-change-me"
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", "720"))

security = HTTPBearer(auto_error=False)


class TokenPayload(BaseModel):
    sub: str
    exp: int


def create_access_token(workstation_id: str) -> str:
    expire = datetime.utcnow() + timedelta(minutes=JWT_EXPIRE_MINUTES)
    payload = {"sub": workstation_id, "exp": expire}
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def get_current_workstation(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header",
        )

    try:
        payload = jwt.decode(credentials.credentials, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        token_data = TokenPayload(**payload)
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")

    return token_data.sub


def get_station(workstation_id: str = Depends(get_current_workstation)) -> SorterEngine:
    engine = registry.load(workstation_id)
    if engine is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Station session expired")
    return engine


# -------------------------------------------------------------------
# Error mapping
# -------------------------------------------------------------------
def _status_for(exc: SorterError) -> int:
    if isinstance(exc, AccessDeniedError):
        return status.HTTP_403_FORBIDDEN
    if isinstance(exc, (CapacityExhaustedError, DuplicateContainerError, ResyncRequiredError)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, MalformedSnapshotError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    return status.HTTP_400_BAD_REQUEST


def _reject(exc: SorterError, engine: Optional[SorterEngine], category: str) -> HTTPException:
    workstation_id = engine.workstation_id if engine else None
    log_usage_event(category, exc.to_dict(), workstation_id=workstation_id)
    return HTTPException(status_code=_status_for(exc), detail=exc.to_dict())


# -------------------------------------------------------------------
# CORS
# -------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -------------------------------------------------------------------
# Startup
# -------------------------------------------------------------------
@app.on_event("startup")
async def on_startup() -> None:
    init_db()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    dispose_db()


# -------------------------------------------------------------------
# Health
# -------------------------------------------------------------------
@app.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


# -------------------------------------------------------------------
# Auth API (workstation sessions)
# -------------------------------------------------------------------
class LoginPayload(BaseModel):
    workstation_id: str
    snapshot: Dict[str, Any]


@app.post("/api/auth/login")
async def api_login(payload: LoginPayload) -> Dict[str, Any]:
    """
    Open (or reopen) a workstation with its first snapshot.

    The client fetches the station snapshot itself and posts it here; a
    signed bearer token for the workstation comes back on success.
    """
    workstation_id = payload.workstation_id.strip()
    if not workstation_id:
        raise HTTPException(status_code=400, detail="Workstation barcode required")

    try:
        engine = registry.open(workstation_id, payload.snapshot)
    except MalformedSnapshotError as exc:
        raise _reject(exc, None, "SNAPSHOT_REJECTED")

    log_usage_event("STATION_LOGIN", {"generation": engine.generation.number}, workstation_id=workstation_id)
    return {
        "success": True,
        "workstation_id": workstation_id,
        "token": create_access_token(workstation_id),
        "station": engine.summary(),
    }


@app.post("/api/auth/logout")
async def api_logout(workstation_id: str = Depends(get_current_workstation)) -> Dict[str, Any]:
    closed = registry.close(workstation_id)
    log_usage_event("STATION_LOGOUT", {"closed": closed}, workstation_id=workstation_id)
    return {"success": True, "closed": closed}


# -------------------------------------------------------------------
# Station state API
# -------------------------------------------------------------------
class ScanPayload(BaseModel):
    code: str


class ResyncPayload(BaseModel):
    reason: Optional[str] = None


class ContainerListPayload(BaseModel):
    containers: List[str] = Field(default_factory=list)


class ContainerPayload(BaseModel):
    container: str


@app.get("/api/station")
async def api_station(engine: SorterEngine = Depends(get_station)) -> Dict[str, Any]:
    return engine.summary()


@app.post("/api/station/snapshot")
async def api_station_snapshot(
    snapshot: Dict[str, Any],
    engine: SorterEngine = Depends(get_station),
) -> Dict[str, Any]:
    """Rebuild the station from a fresh server snapshot; local edits are dropped."""
    try:
        generation = engine.apply_snapshot(snapshot)
    except MalformedSnapshotError as exc:
        raise _reject(exc, engine, "SNAPSHOT_REJECTED")

    log_usage_event(
        "SNAPSHOT_APPLIED",
        {"generation": generation.number, "orders": len(generation.orders), "grids": len(generation.grids)},
        workstation_id=engine.workstation_id,
    )
    return engine.summary()


@app.post("/api/station/resync")
async def api_station_resync(
    payload: Optional[ResyncPayload] = None,
    engine: SorterEngine = Depends(get_station),
) -> Dict[str, Any]:
    """
    Called by the client when a feedback call failed. Scans are refused
    until the next snapshot arrives.
    """
    reason = payload.reason if payload else None
    engine.request_resync(reason)
    log_usage_event("RESYNC_REQUESTED", {"reason": reason}, workstation_id=engine.workstation_id)
    return {"resync_required": True, "generation": engine.generation.number}


@app.get("/api/station/inventory")
async def api_station_inventory(engine: SorterEngine = Depends(get_station)) -> Dict[str, Any]:
    return {
        "source_container": engine.source_container,
        "source_complete": engine.is_source_container_complete(),
        "containers": engine.container_report(),
    }


@app.get("/api/station/history")
async def api_station_history(engine: SorterEngine = Depends(get_station)) -> Dict[str, Any]:
    return {"codes": engine.history.recent(), "capacity": engine.history.capacity}


# -------------------------------------------------------------------
# Scanning API
# -------------------------------------------------------------------
@app.post("/api/station/source")
async def api_source_scan(
    payload: ScanPayload,
    engine: SorterEngine = Depends(get_station),
) -> Dict[str, Any]:
    try:
        container = engine.activate_container(payload.code)
    except SorterError as exc:
        raise _reject(exc, engine, "SOURCE_REJECTED")

    return {
        "source_container": container,
        "skus": sorted(engine.generation.inventory.skus_for(container)),
        "source_complete": engine.is_source_container_complete(),
    }


@app.delete("/api/station/source")
async def api_source_clear(engine: SorterEngine = Depends(get_station)) -> Dict[str, Any]:
    engine.clear_container()
    return {"source_container": None}


@app.post("/api/station/scan")
async def api_scan(
    payload: ScanPayload,
    engine: SorterEngine = Depends(get_station),
) -> Dict[str, Any]:
    """
    Sort one item. The response lists the completion events and the
    feedback payloads the client should now send (drop, order, wave).
    """
    try:
        outcome = engine.record_scan(payload.code)
    except SorterError as exc:
        raise _reject(exc, engine, "SCAN_REJECTED")

    detail = {
        "sku": outcome.sku,
        "grid_id": outcome.grid_id,
        "order_id": outcome.order_id,
        "source_container": outcome.source_container,
        "generation": outcome.generation,
    }
    log_usage_event("SCAN_ACCEPTED", detail, workstation_id=engine.workstation_id)
    if outcome.grid_complete:
        log_usage_event("GRID_COMPLETE", detail, workstation_id=engine.workstation_id)
    if outcome.wave_complete:
        log_usage_event("WAVE_COMPLETE", detail, workstation_id=engine.workstation_id)
    if outcome.container_complete:
        log_usage_event("CONTAINER_COMPLETE", detail, workstation_id=engine.workstation_id)

    return outcome.model_dump(mode="json")


# -------------------------------------------------------------------
# Destination container API
# -------------------------------------------------------------------
@app.post("/api/station/containers/autofill")
async def api_containers_autofill(
    payload: ContainerListPayload,
    engine: SorterEngine = Depends(get_station),
) -> Dict[str, Any]:
    try:
        filled = engine.auto_fill_containers(payload.containers)
    except SorterError as exc:
        raise _reject(exc, engine, "AUTOFILL_REJECTED")
    return {"filled": filled, "stats": engine.grid_stats()}


@app.put("/api/station/grids/{grid_id}/container")
async def api_grid_container(
    grid_id: str,
    payload: ContainerPayload,
    engine: SorterEngine = Depends(get_station),
) -> Dict[str, Any]:
    try:
        grid = engine.change_container(grid_id, payload.container)
    except SorterError as exc:
        raise _reject(exc, engine, "CONTAINER_REJECTED")
    return grid.model_dump(mode="json")


# -------------------------------------------------------------------
# Usage analytics API
# -------------------------------------------------------------------
@app.get("/api/usage/recent")
async def api_usage_recent(
    limit: int = Query(100, ge=1, le=1000),
    workstation_id: str = Depends(get_current_workstation),
) -> List[Dict[str, Any]]:
    return get_recent_usage(limit=limit, workstation_id=workstation_id)


@app.get("/api/usage/summary")
async def api_usage_summary(
    days: int = Query(7, ge=1, le=30),
    workstation_id: str = Depends(get_current_workstation),
) -> Dict[str, Any]:
    return {"days": days, "series": get_usage_summary(days=days, workstation_id=workstation_id)}
