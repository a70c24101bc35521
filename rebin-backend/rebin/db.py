import json
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import Column, DateTime, Integer, Text, create_engine, func
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()
engine = None
SessionLocal: Optional[sessionmaker] = None


def init_db(database_url: Optional[str] = None) -> None:
    """
    Initialise the usage ledger and create its table.

    NOTE:
    - Station state never lives here; the ledger only records what happened
      (snapshots, scans, completions) for later analysis.
    - Without DATABASE_URL the ledger stays off and every helper below is
      a no-op.
    """
    global engine, SessionLocal
    url = database_url or os.getenv("DATABASE_URL")
    if not url:
        logger.warning("[LEDGER_INIT] DATABASE_URL is not set; usage ledger disabled")
        return
    if engine is not None:
        return

    kwargs: Dict[str, Any] = {}
    if url.startswith("sqlite"):
        # One shared connection so an in-memory database survives across requests.
        kwargs = {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    engine = create_engine(url, **kwargs)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)


def dispose_db() -> None:
    global engine, SessionLocal
    if engine is not None:
        engine.dispose()
    engine = None
    SessionLocal = None


def get_session() -> Session:
    if SessionLocal is None:
        raise RuntimeError("DB not initialised")
    return SessionLocal()


# --- Models ---


class UsageEvent(Base):
    """
    One ledger row per station event.

    Typical categories:
      - SNAPSHOT_APPLIED  → detail: generation, orders, grids
      - SCAN_ACCEPTED     → detail: sku, grid_id, order_id, source_container
      - SCAN_REJECTED     → detail: code, error code
      - GRID_COMPLETE / WAVE_COMPLETE / CONTAINER_COMPLETE
      - RESYNC_REQUESTED  → detail: reason
    """
    __tablename__ = "usage_events"
    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    workstation_id = Column(Text, nullable=True, index=True)
    category = Column(Text, nullable=False)
    detail = Column(Text, nullable=True)


# --- Ledger helpers ---


def log_usage_event(
    category: str,
    detail: Optional[Dict[str, Any]] = None,
    workstation_id: Optional[str] = None,
) -> None:
    if engine is None:
        return
    session = get_session()
    try:
        session.add(
            UsageEvent(
                category=category,
                workstation_id=workstation_id,
                detail=json.dumps(detail or {}, default=str),
            )
        )
        session.commit()
    finally:
        session.close()


def get_recent_usage(limit: int = 100, workstation_id: Optional[str] = None) -> List[Dict[str, Any]]:
    if engine is None:
        return []
    session = get_session()
    try:
        q = session.query(UsageEvent)
        if workstation_id:
            q = q.filter(UsageEvent.workstation_id == workstation_id)
        q = q.order_by(UsageEvent.id.desc()).limit(limit)
        results: List[Dict[str, Any]] = []
        for r in list(q):
            det: Dict[str, Any] = {}
            if r.detail:
                try:
                    det = json.loads(r.detail)
                except ValueError:
                    det = {}
            results.append(
                {
                    "id": r.id,
                    "created_at": None if r.created_at is None else r.created_at.isoformat(),
                    "category": r.category,
                    "workstation_id": r.workstation_id,
                    "detail": det,
                }
            )
        return results
    finally:
        session.close()


def get_usage_summary(
    days: int = 7,
    workstation_id: Optional[str] = None,
    category: str = "SCAN_ACCEPTED",
) -> List[Dict[str, Any]]:
    """Daily counts of `category` events over the last `days` days, oldest first."""
    if engine is None:
        return []
    now = datetime.now(timezone.utc)
    cutoff = now - timedelta(days=days)
    session = get_session()
    try:
        q = (
            session.query(UsageEvent)
            .filter(UsageEvent.category == category)
            .filter(UsageEvent.created_at >= cutoff)
        )
        if workstation_id:
            q = q.filter(UsageEvent.workstation_id == workstation_id)
        counts: Dict[str, int] = {}
        for evt in q.order_by(UsageEvent.created_at.asc()):
            if not evt.created_at:
                continue
            d = evt.created_at.date().isoformat()
            counts[d] = counts.get(d, 0) + 1

        series = []
        for offset in range(days - 1, -1, -1):
            day = (now - timedelta(days=offset)).date().isoformat()
            series.append({"date": day, "count": counts.get(day, 0)})
        return series
    finally:
        session.close()
