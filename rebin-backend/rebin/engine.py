# rebin/engine.py
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from .allocation import Allocation, resolve_grid_for_scan
from .completion import is_container_complete, is_grid_complete, is_wave_complete
from .errors import (
    AccessDeniedError,
    ContainerChangeError,
    DuplicateContainerError,
    ResyncRequiredError,
    ScanRejectedError,
)
from .feedback import build_drop_feedback, build_order_feedback, build_wave_feedback
from .history import MAX_HISTORY_SIZE, ScanHistory
from .inventory import container_progress
from .mapper import DEFAULT_GRID_COUNT, Generation, empty_generation, map_snapshot
from .models import EMPTY_CONTAINER_MARKERS, Grid, GridStatus, ScanLogEntry, ScanOutcome, normalize_code

logger = logging.getLogger(__name__)

TEST_MODE = os.getenv("REBIN_TEST_MODE", "").strip().lower() in {"1", "true", "yes"}
SORTER_TYPE = "SORTER"


class SorterEngine:
    """
    In-memory rebin station for one workstation.

    Owns the current Generation, the active source container and the scan
    history. All mutation goes through the methods below; each one either
    applies fully or raises a SorterError having changed nothing.

    `access_gate` overrides the default "sorter_type is SORTER (or test
    mode)" check; it is called with no arguments before every mutating call.
    """

    def __init__(
        self,
        workstation_id: Optional[str] = None,
        access_gate: Optional[Callable[[], bool]] = None,
        test_mode: bool = TEST_MODE,
        history_capacity: int = MAX_HISTORY_SIZE,
        grid_count: int = DEFAULT_GRID_COUNT,
    ) -> None:
        self.workstation_id = workstation_id
        self.access_gate = access_gate
        self.test_mode = test_mode
        self.history = ScanHistory(history_capacity)
        self.source_container: Optional[str] = None
        self.resync_required = False
        self.resync_reason: Optional[str] = None
        self._generation = empty_generation(grid_count=grid_count)
        self._lock = threading.RLock()

    # ---------------------------------------------------------------
    # Generation
    # ---------------------------------------------------------------
    @property
    def generation(self) -> Generation:
        return self._generation

    def apply_snapshot(self, payload: Any) -> Generation:
        """
        Replace grids, orders and inventory with a freshly mapped snapshot.

        A malformed payload raises MalformedSnapshotError and leaves the
        current generation in place.
        """
        with self._lock:
            generation = map_snapshot(payload, number=self._generation.number + 1)
            self._generation = generation
            self.resync_required = False
            self.resync_reason = None
            return generation

    def request_resync(self, reason: Optional[str] = None) -> None:
        """A feedback call failed downstream; refuse scans until the next snapshot."""
        with self._lock:
            self.resync_required = True
            self.resync_reason = reason
            logger.warning("[RESYNC] generation %s marked stale: %s", self._generation.number, reason)

    # ---------------------------------------------------------------
    # Access gate
    # ---------------------------------------------------------------
    def is_action_allowed(self) -> bool:
        if self.access_gate is not None:
            return bool(self.access_gate())
        return self.test_mode or self._generation.sorter_type == SORTER_TYPE

    def _require_mutable(self) -> None:
        if not self.is_action_allowed():
            raise AccessDeniedError("Station is read-only", detail=self._generation.sorter_type)
        if self.resync_required:
            raise ResyncRequiredError("Station must reload before accepting scans", detail=self.resync_reason)

    # ---------------------------------------------------------------
    # Source container
    # ---------------------------------------------------------------
    def activate_container(self, code: str) -> str:
        container = normalize_code(code)
        if not container:
            raise ScanRejectedError("Empty container scan", detail=code)
        with self._lock:
            if not self._generation.inventory.has_container(container):
                logger.info("[SCAN_REJECT] unknown source container %s", container)
                raise ScanRejectedError("Container is not on this station", detail=container)
            self.history.append(container)
            self.source_container = container
            logger.info("[SOURCE] active container %s", container)
            return container

    def clear_container(self) -> None:
        with self._lock:
            self.source_container = None

    def is_source_container_complete(self) -> bool:
        return is_container_complete(self._generation, self.source_container)

    # ---------------------------------------------------------------
    # Scan cascade
    # ---------------------------------------------------------------
    def record_scan(self, code: str) -> ScanOutcome:
        """
        Sort one scanned SKU from the active source container.

        Stages: validate -> history -> allocate -> apply -> completion
        checks. Validation and allocation failures raise before anything
        is mutated.
        """
        with self._lock:
            self._require_mutable()
            generation = self._generation
            sku = self._validate_sku(code)
            self.history.append(sku)
            allocation = resolve_grid_for_scan(generation, sku)
            self._apply_scan(allocation, sku)
            return self._evaluate(generation, allocation, sku)

    def _validate_sku(self, code: str) -> str:
        sku = normalize_code(code)
        if not sku:
            raise ScanRejectedError("Empty item scan", detail=code)
        if not self.source_container:
            raise ScanRejectedError("No source container is active", detail=sku)
        if not self._generation.inventory.contains(self.source_container, sku):
            logger.info("[SCAN_REJECT] %s is not in container %s", sku, self.source_container)
            raise ScanRejectedError(f"Item is not in container {self.source_container}", detail=sku)
        return sku

    def _apply_scan(self, allocation: Allocation, sku: str) -> None:
        grid, order = allocation.grid, allocation.order
        grid.scanned_items[sku] = grid.scanned(sku) + 1
        grid.logs.insert(0, ScanLogEntry(time=datetime.now(timezone.utc), sku=sku))

        for ref in order.picking_source_refs:
            if ref.sku == sku and ref.container == self.source_container and not ref.is_done:
                ref.worked_qty += 1
                break
        else:
            logger.debug(
                "[SOURCE] no open picking ref for %s from %s on order %s; worked qty waits for next snapshot",
                sku, self.source_container, order.order_id,
            )

    def _evaluate(self, generation: Generation, allocation: Allocation, sku: str) -> ScanOutcome:
        grid, order = allocation.grid, allocation.order
        outcome = ScanOutcome(
            sku=sku,
            source_container=self.source_container or "",
            grid_id=grid.id,
            order_id=order.order_id,
            newly_allocated=allocation.newly_allocated,
            scanned_qty=grid.scanned(sku),
            required_qty=order.required(sku),
            generation=generation.number,
            events=["scan"],
        )

        drop = build_drop_feedback(generation, grid, sku, self.source_container)
        if drop is not None:
            outcome.feedback["drop"] = drop

        if is_grid_complete(generation, grid):
            grid.status = GridStatus.COMPLETE
            outcome.grid_complete = True
            outcome.events.append("grid_complete")
            logger.info("[GRID_COMPLETE] %s order=%s", grid.id, order.order_id)
            order_payload = build_order_feedback(generation, grid)
            if order_payload is not None:
                outcome.feedback["order"] = order_payload

            if is_wave_complete(generation):
                outcome.wave_complete = True
                outcome.events.append("wave_complete")
                logger.info("[WAVE_COMPLETE] workflow=%s", generation.workflow_id)
                wave_payload = build_wave_feedback(generation)
                if wave_payload is not None:
                    outcome.feedback["wave"] = wave_payload

        if is_container_complete(generation, self.source_container):
            outcome.container_complete = True
            outcome.events.append("container_complete")
            logger.info("[CONTAINER_COMPLETE] %s", self.source_container)

        return outcome

    # ---------------------------------------------------------------
    # Destination containers
    # ---------------------------------------------------------------
    def auto_fill_containers(self, available: Iterable[str]) -> int:
        """
        Give every grid without a destination the next unused container
        from `available`, marked provisional. Returns how many were filled.
        """
        with self._lock:
            self._require_mutable()
            grids = self._generation.grids
            in_use = {g.dest_container for g in grids if not g.needs_container}
            pending = [g for g in grids if g.needs_container]
            candidates = iter(
                c for c in ((c or "").strip() for c in available)
                if c not in EMPTY_CONTAINER_MARKERS and c not in in_use
            )

            filled = 0
            for grid in pending:
                container = next(candidates, None)
                if container is None:
                    break
                grid.dest_container = container
                grid.is_provisional_container = True
                in_use.add(container)
                filled += 1

            logger.info("[AUTOFILL] %s of %s grids received a provisional container", filled, len(pending))
            return filled

    def change_container(self, grid_id: str, code: str) -> Grid:
        """Replace a provisional destination container with an operator-chosen one."""
        with self._lock:
            self._require_mutable()
            grid = self._generation.grid(grid_id)
            if grid is None or not grid.is_provisional_container:
                raise ContainerChangeError("This grid's container cannot be changed", detail=grid_id)

            container = (code or "").strip()
            if container in EMPTY_CONTAINER_MARKERS:
                raise ContainerChangeError("Container code is required", detail=grid_id)

            for other in self._generation.grids:
                if other.id != grid.id and other.dest_container == container:
                    raise DuplicateContainerError(f"Container already used by {other.id}", detail=container)

            grid.dest_container = container
            logger.info("[CONTAINER] %s -> %s", grid.id, container)
            return grid

    # ---------------------------------------------------------------
    # Read models
    # ---------------------------------------------------------------
    def grid_stats(self) -> Dict[str, int]:
        stats = {"empty": 0, "active": 0, "complete": 0}
        for grid in self._generation.grids:
            stats[grid.status.value.lower()] += 1
        return stats

    def grid_progress(self, grid: Grid) -> Dict[str, int]:
        order = self._generation.order(grid.assigned_order_id)
        required = order.total_required if order else 0
        scanned = sum(grid.scanned_items.values())
        return {"scanned": scanned, "required": required}

    def container_report(self) -> List[Dict[str, Any]]:
        return container_progress(self._generation.inventory, self._generation.orders)

    def summary(self) -> Dict[str, Any]:
        generation = self._generation
        grids = []
        for grid in generation.grids:
            row = grid.model_dump(mode="json")
            row["progress"] = self.grid_progress(grid)
            grids.append(row)
        return {
            "workstation_id": self.workstation_id,
            "generation": generation.number,
            "station_id": generation.station_id,
            "sorter_type": generation.sorter_type,
            "workflow_id": generation.workflow_id,
            "workflow_name": generation.workflow_name,
            "action_allowed": self.is_action_allowed(),
            "resync_required": self.resync_required,
            "source_container": self.source_container,
            "stats": self.grid_stats(),
            "grids": grids,
            "orders": [o.model_dump(mode="json") for o in generation.orders],
        }
