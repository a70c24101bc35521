# rebin/mapper.py
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from .errors import MalformedSnapshotError
from .inventory import InventoryIndex
from .models import (
    Grid,
    GridStatus,
    Order,
    PickingSourceRef,
    ServerOrder,
    ServerSnapshot,
    SkuInfo,
    SkuKey,
    grid_id_for,
)

logger = logging.getLogger(__name__)

DEFAULT_GRID_COUNT = int(os.getenv("REBIN_GRID_COUNT", "20"))
STATE_FIELD = "fc_order_assorting_station_state"


@dataclass(frozen=True)
class Generation:
    """
    Everything derived from one server snapshot.

    The engine never merges two generations: a new snapshot produces a new
    Generation and the old one is dropped along with any local-only edits
    (provisional containers, optimistic scan counts). Grids and orders are
    mutated in place by scans until that happens.
    """

    number: int
    grids: List[Grid]
    orders: List[Order]
    inventory: InventoryIndex
    station_id: Optional[str] = None
    sorter_type: Optional[str] = None
    workflow_id: Optional[str] = None
    workflow_name: Optional[str] = None
    total_cell_count: int = DEFAULT_GRID_COUNT
    _grid_by_id: Dict[str, Grid] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._grid_by_id.update({g.id: g for g in self.grids})

    def grid(self, grid_id: str) -> Optional[Grid]:
        return self._grid_by_id.get(grid_id)

    def order(self, order_id: Optional[str]) -> Optional[Order]:
        if order_id is None:
            return None
        for o in self.orders:
            if o.order_id == order_id:
                return o
        return None

    def grid_for_order(self, order_id: str) -> Optional[Grid]:
        for g in self.grids:
            if g.assigned_order_id == order_id:
                return g
        return None

    def state_dump(self) -> Dict[str, Any]:
        """Grids, orders and inventory as plain data (used for equality checks and the API)."""
        return {
            "grids": [g.model_dump(mode="json") for g in self.grids],
            "orders": [o.model_dump(mode="json") for o in self.orders],
            "inventory": self.inventory.as_dict(),
        }


def empty_generation(number: int = 0, grid_count: int = DEFAULT_GRID_COUNT) -> Generation:
    grids = [Grid(id=grid_id_for(i + 1)) for i in range(grid_count)]
    return Generation(number=number, grids=grids, orders=[], inventory=InventoryIndex(), total_cell_count=grid_count)


def extract_station_state(payload: Any) -> Dict[str, Any]:
    """
    Accept either the bare station-state object or the GraphQL response
    wrapping it, and return the bare object.
    """
    if not isinstance(payload, dict):
        raise MalformedSnapshotError("Snapshot payload must be an object")

    if "data" not in payload and "errors" not in payload:
        return payload

    errors = payload.get("errors") or []
    if errors:
        first = errors[0]
        message = first.get("message") if isinstance(first, dict) else str(first)
        raise MalformedSnapshotError(message or "Snapshot query failed", detail=STATE_FIELD)

    data = payload.get("data") or {}
    state = data.get(STATE_FIELD) if isinstance(data, dict) else None
    if not isinstance(state, dict):
        raise MalformedSnapshotError("Invalid response structure", detail=STATE_FIELD)
    return state


def map_snapshot(
    payload: Union[Dict[str, Any], ServerSnapshot],
    number: int = 1,
) -> Generation:
    """
    Build a fresh Generation from one server snapshot.

    Only the first order reported for a grid position is honoured; grid
    positions outside 1..grid_count are skipped. Raises
    MalformedSnapshotError when the payload cannot be read at all.
    """
    if isinstance(payload, ServerSnapshot):
        snapshot = payload
    else:
        state = extract_station_state(payload)
        try:
            snapshot = ServerSnapshot.model_validate(state)
        except ValidationError as exc:
            logger.warning("[SNAPSHOT] rejected malformed payload: %s", exc.errors()[:3])
            raise MalformedSnapshotError("Snapshot is missing required fields", detail=str(exc.errors()[0]["loc"])) from exc

    grid_count = snapshot.total_cell_count or DEFAULT_GRID_COUNT
    grids = [Grid(id=grid_id_for(i + 1)) for i in range(grid_count)]
    orders: List[Order] = []
    workflow_id: Optional[str] = None
    workflow_name: Optional[str] = None

    for server_grid in snapshot.grids or []:
        idx = server_grid.grid - 1
        if idx < 0 or idx >= grid_count:
            logger.info("[SNAPSHOT] ignoring grid %s outside 1..%s", server_grid.grid, grid_count)
            continue
        if not server_grid.orders:
            continue

        target = grids[idx]
        if target.assigned_order_id is not None:
            logger.warning("[SNAPSHOT] grid %s reported twice; keeping order %s", target.id, target.assigned_order_id)
            continue

        if len(server_grid.orders) > 1:
            logger.warning(
                "[SNAPSHOT] grid %s reports %s orders; only %s is used",
                target.id, len(server_grid.orders), server_grid.orders[0].order_id,
            )

        server_order = server_grid.orders[0]
        orders.append(_bind_order(server_order, target))

        if workflow_id is None and server_order.order_workflow_id:
            workflow_id = server_order.order_workflow_id
            workflow_name = server_order.workflow_name

    inventory = InventoryIndex.from_orders(orders)
    generation = Generation(
        number=number,
        grids=grids,
        orders=orders,
        inventory=inventory,
        station_id=snapshot.station_id,
        sorter_type=snapshot.sorter_type,
        workflow_id=workflow_id,
        workflow_name=workflow_name,
        total_cell_count=grid_count,
    )
    logger.info(
        "[SNAPSHOT] generation=%s grids=%s orders=%s containers=%s workflow=%s",
        number, grid_count, len(orders), len(inventory), workflow_id,
    )
    return generation


def _bind_order(server_order: ServerOrder, grid: Grid) -> Order:
    grid.status = GridStatus.ACTIVE
    grid.assigned_order_id = server_order.order_id
    grid.dest_container = server_order.assorted_tote or None
    grid.is_provisional_container = False

    order = Order(
        order_id=server_order.order_id,
        oms_order_id=server_order.oms_order_id,
        allocated_slot=grid.id,
    )
    is_complete = True

    for item in server_order.order_item_list:
        sku = SkuKey.for_item(item.barcode, item.sku_id)
        order.required_items[sku] = item.total_qty
        order.sku_info[sku] = SkuInfo(id=item.sku_id, barcode=item.barcode)
        grid.scanned_items[sku] = item.total_worked_qty

        if item.total_worked_qty < item.total_qty:
            is_complete = False

        for pt in item.picking_tote_list or []:
            order.picking_source_refs.append(
                PickingSourceRef(sku=sku, container=pt.picking_tote, qty=pt.qty, worked_qty=pt.worked_qty)
            )

    if is_complete:
        grid.status = GridStatus.COMPLETE
    order.is_complete = is_complete
    return order
