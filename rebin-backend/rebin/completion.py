# rebin/completion.py
from typing import Optional

from .mapper import Generation
from .models import Grid


# Every predicate here recomputes from the current generation; nothing is cached.


def is_grid_complete(generation: Generation, grid: Grid) -> bool:
    order = generation.order(grid.assigned_order_id)
    if order is None:
        return False
    for sku, required in order.required_items.items():
        if grid.scanned(sku) < required:
            return False
    return True


def is_wave_complete(generation: Generation) -> bool:
    """
    Every order is server-complete, or its bound grid is complete locally.

    An empty order pool is not a finished wave.
    """
    if not generation.orders:
        return False
    for order in generation.orders:
        if order.is_complete:
            continue
        grid = generation.grid_for_order(order.order_id)
        if grid is None or not is_grid_complete(generation, grid):
            return False
    return True


def is_container_complete(generation: Generation, container: Optional[str]) -> bool:
    """All picking refs pointing at `container` have been worked off."""
    if not container:
        return False
    for order in generation.orders:
        for ref in order.picking_source_refs:
            if ref.container == container and not ref.is_done:
                return False
    return True
