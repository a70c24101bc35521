from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

from rebin.engine import SorterEngine


def _item(
    sku_id: str,
    qty: int,
    worked: int = 0,
    barcode: Optional[str] = None,
    totes: Sequence[Tuple[str, int, int]] = (),
) -> Dict[str, Any]:
    return {
        "order_item_id": f"item-{sku_id}",
        "sku_id": sku_id,
        "barcode": barcode,
        "total_qty": qty,
        "total_worked_qty": worked,
        "picking_tote_list": [
            {"picking_tote": tote, "qty": tq, "worked_qty": tw} for tote, tq, tw in totes
        ],
    }


def _order(
    order_id: str,
    items: List[Dict[str, Any]],
    workflow_id: Optional[str] = "WF-1",
    workflow_name: Optional[str] = "Wave 1",
    assorted_tote: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "order_id": order_id,
        "oms_order_id": f"OMS-{order_id}",
        "order_workflow_id": workflow_id,
        "workflow_name": workflow_name,
        "assorted_tote": assorted_tote,
        "order_item_list": items,
    }


def _snapshot(
    grids: Dict[int, List[Dict[str, Any]]],
    total_cell_count: Optional[int] = 4,
    sorter_type: str = "SORTER",
    station_id: Optional[str] = "77",
) -> Dict[str, Any]:
    return {
        "station_id": station_id,
        "total_cell_count": total_cell_count,
        "sorter_type": sorter_type,
        "grids": [{"grid": idx, "orders": orders} for idx, orders in grids.items()],
    }


@pytest.fixture
def item():
    return _item


@pytest.fixture
def order():
    return _order


@pytest.fixture
def snapshot():
    return _snapshot


@pytest.fixture
def two_grid_snapshot():
    """Grid 1 holds O1 needing two of A (all in tote C1); grid 2 is empty."""
    return _snapshot(
        {1: [_order("O1", [_item("SKU-A", 2, barcode="A", totes=[("C1", 2, 0)])])]},
        total_cell_count=2,
    )


@pytest.fixture
def engine_factory():
    def make(payload: Optional[Dict[str, Any]] = None, **kwargs: Any) -> SorterEngine:
        engine = SorterEngine(workstation_id="WS-1", **kwargs)
        if payload is not None:
            engine.apply_snapshot(payload)
        return engine

    return make
