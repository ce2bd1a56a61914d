from __future__ import annotations

from dataclasses import dataclass, field

from app.api.models import Cell, CommittedMutation, Snapshot
from app.canvas.grid_store import GridStore


def take_snapshot(*, grid: GridStore, now: int) -> Snapshot:
    cells, seq = grid.snapshot_with_seq()
    return Snapshot(width=grid.width, height=grid.height, cells=cells, now=now, seq=seq)


@dataclass(slots=True)
class CanvasReplica:
    """An observer's local reconstruction of the canvas.

    Apply a snapshot first, then mutations as they arrive. Mutations already covered
    by the snapshot (or applied before) are ignored, so redelivery is harmless.
    `gap_detected` flips when a mutation arrives out of sequence; the observer
    should then fetch a fresh snapshot.
    """

    width: int = 0
    height: int = 0
    seq: int = 0
    gap_detected: bool = False
    cells: dict[tuple[int, int], Cell] = field(default_factory=dict)

    def apply_snapshot(self, snapshot: Snapshot) -> None:
        self.width = snapshot.width
        self.height = snapshot.height
        self.cells = {(c.x, c.y): c for c in snapshot.cells}
        self.seq = snapshot.seq
        self.gap_detected = False

    def apply(self, mutation: CommittedMutation) -> bool:
        if mutation.seq <= self.seq:
            return False
        if mutation.seq != self.seq + 1:
            self.gap_detected = True
        self.cells[(mutation.x, mutation.y)] = mutation.as_cell()
        self.seq = mutation.seq
        return True

    def color_at(self, x: int, y: int) -> str | None:
        cell = self.cells.get((x, y))
        return cell.color if cell is not None else None
