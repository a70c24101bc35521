# rebin/models.py
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


GRID_ID_PREFIX = "GRID-"

# Values the station UI historically wrote into an unset destination slot.
EMPTY_CONTAINER_MARKERS = {"", "-", "undefined"}


def grid_id_for(index: int) -> str:
    """1-based grid number -> stable grid id, e.g. 2 -> 'GRID-02'."""
    return f"{GRID_ID_PREFIX}{index:02d}"


def grid_number(grid_id: str) -> str:
    """'GRID-02' -> '2' (the form the feedback endpoints expect)."""
    return grid_id.replace(GRID_ID_PREFIX, "").lstrip("0")


def normalize_code(raw: Optional[str]) -> str:
    """Scanner input is trimmed and upper-cased before any lookup."""
    return (raw or "").strip().upper()


class SkuKey(str):
    """
    Key used for every SKU-keyed mapping (required, scanned, inventory).

    Items are keyed by barcode when the server sends one, else by the
    canonical SKU id. Build it once with `for_item` and pass it around;
    never recompute the rule at a lookup site.
    """

    @classmethod
    def for_item(cls, barcode: Optional[str], sku_id: Optional[str]) -> "SkuKey":
        return cls(barcode or sku_id or "")


class GridStatus(str, Enum):
    EMPTY = "EMPTY"
    ACTIVE = "ACTIVE"
    COMPLETE = "COMPLETE"


# -------------------------------------------------------------------
# Wire snapshot (GraphQL field names)
# -------------------------------------------------------------------
class ServerPickingTote(BaseModel):
    picking_tote: str
    qty: int = 0
    worked_qty: int = 0

    class Config:
        extra = "allow"
        coerce_numbers_to_str = True


class ServerOrderItem(BaseModel):
    order_item_id: Optional[str] = None
    sku_id: str
    barcode: Optional[str] = None
    total_qty: int
    total_worked_qty: int = 0
    picking_tote_list: Optional[List[ServerPickingTote]] = None

    class Config:
        extra = "allow"
        coerce_numbers_to_str = True


class ServerOrder(BaseModel):
    order_id: str
    oms_order_id: Optional[str] = None
    order_workflow_id: Optional[str] = None
    workflow_name: Optional[str] = None
    assorted_tote: Optional[str] = None
    order_item_list: List[ServerOrderItem] = Field(default_factory=list)

    class Config:
        extra = "allow"
        coerce_numbers_to_str = True


class ServerGrid(BaseModel):
    grid: int
    orders: Optional[List[ServerOrder]] = None

    class Config:
        extra = "allow"


class ServerSnapshot(BaseModel):
    """
    One `fc_order_assorting_station_state` payload.

    Unknown keys are kept so that a newer server does not break mapping.
    `grids` and `sorter_type` must be present, though either may be null.
    """

    station_id: Optional[str] = None
    total_cell_count: Optional[int] = Field(default=None, ge=0)
    sorter_type: Optional[str]
    grids: Optional[List[ServerGrid]]

    class Config:
        extra = "allow"
        coerce_numbers_to_str = True


# -------------------------------------------------------------------
# Local entities
# -------------------------------------------------------------------
class ScanLogEntry(BaseModel):
    time: datetime
    sku: str


class SkuInfo(BaseModel):
    id: str
    barcode: Optional[str] = None


class PickingSourceRef(BaseModel):
    sku: str
    container: str
    qty: int = 0
    worked_qty: int = 0

    @property
    def is_done(self) -> bool:
        return self.worked_qty >= self.qty


class Grid(BaseModel):
    id: str
    status: GridStatus = GridStatus.EMPTY
    dest_container: Optional[str] = None
    is_provisional_container: bool = False
    assigned_order_id: Optional[str] = None
    scanned_items: Dict[str, int] = Field(default_factory=dict)
    logs: List[ScanLogEntry] = Field(default_factory=list)

    @property
    def number(self) -> str:
        return grid_number(self.id)

    @property
    def needs_container(self) -> bool:
        return self.dest_container is None or self.dest_container in EMPTY_CONTAINER_MARKERS

    def scanned(self, sku: str) -> int:
        return self.scanned_items.get(sku, 0)


class Order(BaseModel):
    order_id: str
    oms_order_id: Optional[str] = None
    required_items: Dict[str, int] = Field(default_factory=dict)
    sku_info: Dict[str, SkuInfo] = Field(default_factory=dict)
    picking_source_refs: List[PickingSourceRef] = Field(default_factory=list)
    allocated_slot: Optional[str] = None
    is_complete: bool = False

    def required(self, sku: str) -> int:
        return self.required_items.get(sku, 0)

    def canonical_sku_id(self, sku: str) -> str:
        info = self.sku_info.get(sku)
        return info.id if info else sku

    @property
    def total_required(self) -> int:
        return sum(self.required_items.values())


# -------------------------------------------------------------------
# Scan cascade outcome
# -------------------------------------------------------------------
class ScanOutcome(BaseModel):
    """
    Result of one accepted SKU scan.

    The three flags are the completion predicates evaluated after the
    scan; `feedback` holds the payloads the caller should send, keyed by
    "drop" / "order" / "wave" (missing keys mean "do not send").
    """

    sku: str
    source_container: str
    grid_id: str
    order_id: str
    newly_allocated: bool = False
    scanned_qty: int = 0
    required_qty: int = 0
    grid_complete: bool = False
    wave_complete: bool = False
    container_complete: bool = False
    generation: int = 0
    events: List[str] = Field(default_factory=list)
    feedback: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
