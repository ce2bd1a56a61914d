from __future__ import annotations

import threading
from collections.abc import Iterable

from app.api.models import Cell, CommittedMutation
from app.errors import CanvasRejection, GridStoreUnavailable, RejectionReason


class GridStore:
    """Authoritative (x, y) -> Cell map for one canvas.

    `set` is the only mutator. A `threading.Lock` guards the map and the commit
    counter so `get`/`snapshot` from any thread see a prefix of the commit sequence.

    The store refuses writes until `load()` has been called with the last
    persisted state (an empty list is a valid load).
    """

    def __init__(self, *, width: int, height: int) -> None:
        if width <= 0 or height <= 0:
            raise ValueError("Grid dimensions must be positive")
        self.width = width
        self.height = height
        self._cells: dict[tuple[int, int], Cell] = {}
        self._seq = 0
        self._ready = False
        self._lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def seq(self) -> int:
        with self._lock:
            return self._seq

    def in_bounds(self, x: int, y: int) -> bool:
        return 0 <= x < self.width and 0 <= y < self.height

    def require_in_bounds(self, x: int, y: int) -> None:
        if not self.in_bounds(x, y):
            raise CanvasRejection(
                RejectionReason.out_of_bounds,
                f"({x}, {y}) is outside {self.width}x{self.height}",
            )

    def load(self, cells: Iterable[Cell], *, seq: int = 0) -> int:
        """Replace in-memory state with a persisted snapshot and open the store for writes.

        Cells outside the current bounds are dropped (the canvas may have been resized).
        `seq` resumes the commit counter where the previous process left off.
        """

        loaded: dict[tuple[int, int], Cell] = {}
        for cell in cells:
            if self.in_bounds(cell.x, cell.y):
                loaded[(cell.x, cell.y)] = cell
        with self._lock:
            self._cells = loaded
            self._seq = max(seq, 0)
            self._ready = True
        return len(loaded)

    def get(self, x: int, y: int) -> Cell | None:
        with self._lock:
            return self._cells.get((x, y))

    def set(self, x: int, y: int, color: str, painted_by: str, ts: int) -> CommittedMutation:
        self.require_in_bounds(x, y)
        with self._lock:
            if not self._ready:
                raise GridStoreUnavailable()
            prev = self._cells.get((x, y))
            # committed_at never goes backwards for a given cell.
            committed_at = ts if prev is None else max(ts, prev.committed_at)
            cell = Cell(x=x, y=y, color=color, painted_by=painted_by, committed_at=committed_at)
            self._cells[(x, y)] = cell
            self._seq += 1
            return CommittedMutation(
                x=x,
                y=y,
                color=color,
                painted_by=painted_by,
                committed_at=committed_at,
                seq=self._seq,
            )

    def snapshot(self) -> list[Cell]:
        with self._lock:
            cells = list(self._cells.values())
        cells.sort(key=lambda c: (c.y, c.x))
        return cells

    def snapshot_with_seq(self) -> tuple[list[Cell], int]:
        with self._lock:
            cells = list(self._cells.values())
            seq = self._seq
        cells.sort(key=lambda c: (c.y, c.x))
        return cells, seq

    def __len__(self) -> int:
        with self._lock:
            return len(self._cells)
