import pytest

from rebin.allocation import find_existing_grid, resolve_grid_for_scan
from rebin.errors import CapacityExhaustedError, NoDemandError
from rebin.mapper import map_snapshot
from rebin.models import GridStatus


def test_existing_grid_with_open_demand_wins(snapshot, order, item):
    gen = map_snapshot(
        snapshot(
            {
                1: [order("O1", [item("SKU-X", 2, worked=1, barcode="X")])],
                2: [order("O2", [item("SKU-X", 2, barcode="X")])],
            }
        )
    )
    allocation = resolve_grid_for_scan(gen, "X")
    assert allocation.grid.id == "GRID-01"
    assert allocation.order.order_id == "O1"
    assert allocation.newly_allocated is False


def test_grid_with_demand_met_is_skipped(snapshot, order, item):
    gen = map_snapshot(
        snapshot(
            {
                1: [order("O1", [item("SKU-X", 1, worked=1, barcode="X"), item("SKU-Y", 1, barcode="Y")])],
                2: [order("O2", [item("SKU-X", 2, barcode="X")])],
            }
        )
    )
    assert find_existing_grid(gen, "X").grid.id == "GRID-02"


def test_unbound_order_gets_first_empty_grid(snapshot, order, item):
    gen = map_snapshot(snapshot({}, total_cell_count=3))
    o = map_snapshot(snapshot({1: [order("O1", [item("SKU-X", 1, barcode="X")])]})).orders[0]
    o.allocated_slot = None
    gen.orders.append(o)

    allocation = resolve_grid_for_scan(gen, "X")
    assert allocation.newly_allocated is True
    assert allocation.grid.id == "GRID-01"
    assert allocation.grid.status == GridStatus.ACTIVE
    assert allocation.grid.assigned_order_id == "O1"
    assert allocation.grid.dest_container is None
    assert o.allocated_slot == "GRID-01"


def test_no_demand_is_rejected_without_mutation(snapshot, order, item):
    gen = map_snapshot(snapshot({1: [order("O1", [item("SKU-X", 1, barcode="X")])]}))
    before = gen.state_dump()
    with pytest.raises(NoDemandError) as exc:
        resolve_grid_for_scan(gen, "Z")
    assert exc.value.detail == "Z"
    assert gen.state_dump() == before


def test_capacity_exhaustion_leaves_state_unchanged(snapshot, order, item):
    gen = map_snapshot(
        snapshot(
            {
                1: [order("O1", [item("SKU-A", 1, barcode="A")])],
                2: [order("O2", [item("SKU-B", 1, barcode="B")])],
            },
            total_cell_count=2,
        )
    )
    waiting = map_snapshot(snapshot({1: [order("O3", [item("SKU-X", 1, barcode="X")])]})).orders[0]
    waiting.allocated_slot = None
    gen.orders.append(waiting)
    before = gen.state_dump()

    with pytest.raises(CapacityExhaustedError):
        resolve_grid_for_scan(gen, "X")
    assert gen.state_dump() == before
