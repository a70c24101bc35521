# rebin/storage.py
import logging
import threading
from typing import Any, Dict, Optional

from .engine import SorterEngine

logger = logging.getLogger(__name__)


class StationRegistry:
    """
    One SorterEngine per workstation, kept for the life of the process.

    Nothing here is written to disk: a restarted service rebuilds each
    station from its next snapshot.
    """

    def __init__(self) -> None:
        self._engines: Dict[str, SorterEngine] = {}
        self._lock = threading.Lock()

    def load(self, workstation_id: str) -> Optional[SorterEngine]:
        return self._engines.get(workstation_id)

    def open(self, workstation_id: str, snapshot: Any) -> SorterEngine:
        """
        Map `snapshot` into the workstation's engine, creating it first if
        needed. A malformed snapshot raises before a new engine is stored.
        """
        with self._lock:
            engine = self._engines.get(workstation_id)
            if engine is None:
                engine = SorterEngine(workstation_id=workstation_id)
                engine.apply_snapshot(snapshot)
                self._engines[workstation_id] = engine
                logger.info("[STATION] opened %s", workstation_id)
            else:
                engine.apply_snapshot(snapshot)
            return engine

    def close(self, workstation_id: str) -> bool:
        with self._lock:
            return self._engines.pop(workstation_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._engines.clear()


registry = StationRegistry()
