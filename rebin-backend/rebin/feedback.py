# rebin/feedback.py
import os
from typing import Any, Dict, Optional

from .mapper import Generation
from .models import Grid

CENTER_ID = os.getenv("REBIN_CENTER_ID", "5")
FINISHED = "FINISHED"


def build_drop_feedback(
    generation: Generation,
    grid: Grid,
    sku: str,
    source_container: Optional[str],
) -> Optional[Dict[str, Any]]:
    """Payload for one physical drop of `sku` into `grid`."""
    if not generation.station_id:
        return None
    order = generation.order(grid.assigned_order_id)
    if order is None:
        return None

    return {
        "pickingContainerNo": source_container,
        "skuNo": order.canonical_sku_id(sku),
        "containerNo": grid.dest_container,
        "waveNo": generation.workflow_id,
        "orderNo": grid.assigned_order_id,
        "gridNo": grid.number,
        "stationId": str(generation.station_id),
        "centerId": CENTER_ID,
    }


def build_order_feedback(generation: Generation, grid: Grid) -> Optional[Dict[str, Any]]:
    """Payload closing out a finished grid, with the full sorted manifest."""
    if not generation.station_id:
        return None
    order = generation.order(grid.assigned_order_id)
    if order is None:
        return None

    details = [
        {"skuNo": order.canonical_sku_id(sku), "sortedQuantity": qty}
        for sku, qty in grid.scanned_items.items()
    ]
    return {
        "containerNo": grid.dest_container,
        "gridNo": grid.number,
        "orderNo": grid.assigned_order_id,
        "status": FINISHED,
        "waveNo": generation.workflow_id,
        "stationId": str(generation.station_id),
        "centerId": CENTER_ID,
        "details": details,
    }


def build_wave_feedback(generation: Generation) -> Optional[Dict[str, Any]]:
    if not generation.station_id or not generation.workflow_id:
        return None
    return {
        "waveNo": str(generation.workflow_id),
        "status": FINISHED,
        "stationId": str(generation.station_id),
        "centerId": CENTER_ID,
    }
