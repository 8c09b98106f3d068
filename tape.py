from __future__ import annotations
from typing import Dict, Tuple

import numpy as np
from numpy.typing import NDArray


class Tape:
    """Sparse, unbounded cell storage keyed by signed index.

    Untouched cells read as 0 without being stored; only ``set`` and
    ``modify`` materialize a cell. Values are plain ints and are never
    wrapped here.
    """

    __slots__ = ("_cells",)

    def __init__(self) -> None:
        self._cells: Dict[int, int] = {}

    def get(self, index: int) -> int:
        return self._cells.get(index, 0)

    def set(self, index: int, value: int) -> None:
        self._cells[index] = value

    def modify(self, index: int, delta: int) -> None:
        cells = self._cells
        cells[index] = cells.get(index, 0) + delta

    def __len__(self) -> int:
        return len(self._cells)

    def snapshot(self) -> Dict[int, int]:
        return dict(self._cells)

    def bounds(self) -> Tuple[int, int]:
        if not self._cells:
            return (0, 0)
        return (min(self._cells), max(self._cells))

    def window(self, low: int, high: int) -> NDArray[np.int64]:
        # Dense copy of [low, high]; cells outside int64 are a documented limitation.
        if high < low:
            return np.zeros(0, dtype=np.int64)
        out = np.zeros(high - low + 1, dtype=np.int64)
        for index, value in self._cells.items():
            if low <= index <= high:
                out[index - low] = value
        return out
