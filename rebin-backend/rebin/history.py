# rebin/history.py
import os
from collections import deque
from typing import Deque, List, Optional

MAX_HISTORY_SIZE = int(os.getenv("REBIN_HISTORY_SIZE", "50"))


class ScanHistory:
    """
    Last N accepted scan codes, oldest first, with an up/down recall cursor.

    The cursor sits one past the newest entry after every append; `back()`
    walks toward older codes and `forward()` toward newer ones, falling off
    the end into an empty input.
    """

    def __init__(self, capacity: int = MAX_HISTORY_SIZE) -> None:
        self._codes: Deque[str] = deque(maxlen=capacity)
        self.cursor = 0

    @property
    def capacity(self) -> int:
        return self._codes.maxlen or 0

    def append(self, code: str) -> None:
        self._codes.append(code)
        self.cursor = len(self._codes)

    def back(self) -> Optional[str]:
        if self.cursor > 0:
            self.cursor -= 1
            return self._codes[self.cursor]
        return None

    def forward(self) -> str:
        if self.cursor < len(self._codes) - 1:
            self.cursor += 1
            return self._codes[self.cursor]
        self.cursor = len(self._codes)
        return ""

    def codes(self) -> List[str]:
        return list(self._codes)

    def recent(self) -> List[str]:
        """Newest first, the order the station shows them in."""
        return list(reversed(self._codes))

    def clear(self) -> None:
        self._codes.clear()
        self.cursor = 0

    def __len__(self) -> int:
        return len(self._codes)
