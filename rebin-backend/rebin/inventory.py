# rebin/inventory.py
from typing import Any, Dict, Iterable, List, Optional, Set

from .models import Order


class InventoryIndex:
    """
    Source container id -> set of SKU keys physically in that container.

    Derived from every order's picking source refs; rebuilt with each
    snapshot and never edited by scans.
    """

    def __init__(self) -> None:
        self._by_container: Dict[str, Set[str]] = {}

    @classmethod
    def from_orders(cls, orders: Iterable[Order]) -> "InventoryIndex":
        index = cls()
        for order in orders:
            for ref in order.picking_source_refs:
                index.add(ref.container, ref.sku)
        return index

    def add(self, container: str, sku: str) -> None:
        self._by_container.setdefault(container, set()).add(sku)

    def has_container(self, container: Optional[str]) -> bool:
        return bool(container) and container in self._by_container

    def skus_for(self, container: Optional[str]) -> Set[str]:
        if not container:
            return set()
        return set(self._by_container.get(container, set()))

    def contains(self, container: Optional[str], sku: str) -> bool:
        if not container:
            return False
        return sku in self._by_container.get(container, set())

    def containers(self) -> List[str]:
        return sorted(self._by_container)

    def __len__(self) -> int:
        return len(self._by_container)

    def __contains__(self, container: object) -> bool:
        return container in self._by_container

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, InventoryIndex):
            return NotImplemented
        return self._by_container == other._by_container

    def as_dict(self) -> Dict[str, List[str]]:
        """Stable, JSON-friendly form (sorted containers and SKUs)."""
        return {c: sorted(self._by_container[c]) for c in self.containers()}


def container_progress(index: InventoryIndex, orders: List[Order]) -> List[Dict[str, Any]]:
    """
    Per-container, per-SKU worked/required totals across all orders.

    Containers come back sorted by id. A SKU row is `done` once its worked
    total reaches its required total.
    """
    report: List[Dict[str, Any]] = []
    for container in index.containers():
        rows: List[Dict[str, Any]] = []
        for sku in sorted(index.skus_for(container)):
            canonical_id, barcode = sku, sku
            total_qty = 0
            worked_qty = 0
            for order in orders:
                info = order.sku_info.get(sku)
                if info is not None:
                    canonical_id, barcode = info.id, info.barcode or sku
                for ref in order.picking_source_refs:
                    if ref.container == container and ref.sku == sku:
                        total_qty += ref.qty
                        worked_qty += ref.worked_qty
            rows.append(
                {
                    "sku": sku,
                    "sku_id": canonical_id,
                    "barcode": barcode,
                    "qty": total_qty,
                    "worked_qty": worked_qty,
                    "done": worked_qty >= total_qty,
                }
            )
        report.append({"container": container, "sku_count": len(rows), "skus": rows})
    return report
