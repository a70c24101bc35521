# rebin/allocation.py
import logging
from typing import NamedTuple, Optional

from .errors import CapacityExhaustedError, NoDemandError
from .mapper import Generation
from .models import Grid, GridStatus, Order

logger = logging.getLogger(__name__)


class Allocation(NamedTuple):
    grid: Grid
    order: Order
    newly_allocated: bool


def find_existing_grid(generation: Generation, sku: str) -> Optional[Allocation]:
    """First ACTIVE grid (grid-id order) whose order still needs more of `sku`."""
    for grid in generation.grids:
        if grid.status != GridStatus.ACTIVE:
            continue
        order = generation.order(grid.assigned_order_id)
        if order is None:
            continue
        if grid.scanned(sku) < order.required(sku):
            return Allocation(grid, order, False)
    return None


def find_candidate_order(generation: Generation, sku: str) -> Optional[Order]:
    """First unbound, incomplete order (order-list order) with demand for `sku`."""
    for order in generation.orders:
        if order.allocated_slot or order.is_complete:
            continue
        if order.required(sku) > 0:
            return order
    return None


def find_empty_grid(generation: Generation) -> Optional[Grid]:
    for grid in generation.grids:
        if grid.status == GridStatus.EMPTY:
            return grid
    return None


def resolve_grid_for_scan(generation: Generation, sku: str) -> Allocation:
    """
    Pick the grid a scanned `sku` should drop into.

    An in-progress grid with open demand wins over opening a new one. A new
    binding takes the first EMPTY grid and leaves its destination container
    unset. Raises NoDemandError / CapacityExhaustedError without touching
    state when nothing fits.
    """
    existing = find_existing_grid(generation, sku)
    if existing is not None:
        return existing

    order = find_candidate_order(generation, sku)
    if order is None:
        raise NoDemandError("No order needs this item", detail=sku)

    grid = find_empty_grid(generation)
    if grid is None:
        logger.warning("[ALLOCATE] no empty grid for order %s (sku=%s)", order.order_id, sku)
        raise CapacityExhaustedError("All grids are in use", detail=sku)

    grid.status = GridStatus.ACTIVE
    grid.assigned_order_id = order.order_id
    grid.dest_container = None
    grid.is_provisional_container = False
    order.allocated_slot = grid.id
    logger.info("[ALLOCATE] order %s -> %s (sku=%s)", order.order_id, grid.id, sku)
    return Allocation(grid, order, True)
