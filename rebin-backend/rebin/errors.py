# rebin/errors.py
from typing import Optional


class SorterError(Exception):
    """
    Base class for every refusal raised by the sorting engine.

    `code` is a stable machine string for the caller; `detail` carries the
    offending value (scan code, grid id, container) for operator display.
    A raised SorterError always means no state was changed.
    """

    code = "SORTER_ERROR"

    def __init__(self, message: str, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "detail": self.detail}


class MalformedSnapshotError(SorterError):
    code = "MALFORMED_SNAPSHOT"


class ScanRejectedError(SorterError):
    code = "SCAN_REJECTED"


class NoDemandError(ScanRejectedError):
    code = "NO_DEMAND"


class CapacityExhaustedError(SorterError):
    code = "CAPACITY_EXHAUSTED"


class AccessDeniedError(SorterError):
    code = "ACCESS_DENIED"


class ResyncRequiredError(SorterError):
    code = "RESYNC_REQUIRED"


class ContainerChangeError(SorterError):
    code = "CONTAINER_CHANGE_REJECTED"


class DuplicateContainerError(ContainerChangeError):
    code = "DUPLICATE_CONTAINER"
