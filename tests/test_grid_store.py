from __future__ import annotations

import threading

import pytest

from app.api.models import Cell
from app.canvas.grid_store import GridStore
from app.errors import CanvasRejection, GridStoreUnavailable, RejectionReason


def _loaded(width: int = 4, height: int = 4) -> GridStore:
    g = GridStore(width=width, height=height)
    g.load([])
    return g


def test_set_then_get_returns_committed_cell() -> None:
    g = _loaded()
    m = g.set(1, 1, "#ff0000", "P1", 1000)

    assert (m.x, m.y, m.color, m.painted_by, m.committed_at, m.seq) == (1, 1, "#ff0000", "P1", 1000, 1)
    cell = g.get(1, 1)
    assert cell == Cell(x=1, y=1, color="#ff0000", painted_by="P1", committed_at=1000)
    assert g.get(0, 0) is None


def test_writes_overwrite_and_seq_counts_commits() -> None:
    g = _loaded()
    g.set(2, 3, "#000000", "P1", 10)
    m2 = g.set(2, 3, "#ffffff", "P2", 20)

    assert m2.seq == 2
    assert g.get(2, 3).color == "#ffffff"  # type: ignore[union-attr]
    assert g.get(2, 3).painted_by == "P2"  # type: ignore[union-attr]
    assert len(g) == 1


def test_committed_at_never_goes_backwards_per_cell() -> None:
    g = _loaded()
    g.set(0, 0, "#111111", "P1", 5_000)
    m = g.set(0, 0, "#222222", "P2", 4_000)

    assert m.committed_at == 5_000
    assert g.get(0, 0).color == "#222222"  # type: ignore[union-attr]


@pytest.mark.parametrize("x,y", [(-1, 0), (0, -1), (4, 0), (0, 4), (100, 100)])
def test_out_of_bounds_set_is_rejected_and_changes_nothing(x: int, y: int) -> None:
    g = _loaded()
    with pytest.raises(CanvasRejection) as e:
        g.set(x, y, "#ff0000", "P1", 1)
    assert e.value.reason == RejectionReason.out_of_bounds
    assert g.snapshot() == []
    assert g.seq == 0


def test_store_refuses_writes_until_loaded() -> None:
    g = GridStore(width=4, height=4)
    assert not g.ready
    with pytest.raises(GridStoreUnavailable):
        g.set(0, 0, "#ff0000", "P1", 1)

    g.load([Cell(x=0, y=0, color="#00ff00", painted_by="P9", committed_at=1)], seq=7)
    assert g.ready
    assert g.get(0, 0).color == "#00ff00"  # type: ignore[union-attr]
    assert g.set(1, 0, "#ff0000", "P1", 2).seq == 8


def test_load_drops_cells_outside_current_bounds() -> None:
    g = GridStore(width=2, height=2)
    n = g.load(
        [
            Cell(x=1, y=1, color="#ffffff", painted_by="a", committed_at=1),
            Cell(x=5, y=5, color="#ffffff", painted_by="a", committed_at=1),
        ]
    )
    assert n == 1
    assert [(c.x, c.y) for c in g.snapshot()] == [(1, 1)]


def test_snapshot_is_row_major_and_only_non_empty() -> None:
    g = _loaded()
    g.set(3, 0, "#000001", "a", 1)
    g.set(0, 2, "#000002", "a", 1)
    g.set(1, 0, "#000003", "a", 1)

    assert [(c.x, c.y) for c in g.snapshot()] == [(1, 0), (3, 0), (0, 2)]


def test_concurrent_sets_on_one_cell_leave_one_whole_winner() -> None:
    g = _loaded()
    colors = [f"#0000{i:02x}" for i in range(32)]

    def _write(color: str) -> None:
        for _ in range(50):
            g.set(1, 2, color, color, 1)

    threads = [threading.Thread(target=_write, args=(c,)) for c in colors]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    cell = g.get(1, 2)
    assert cell is not None
    # No torn writes: color and author always come from the same set() call.
    assert cell.color == cell.painted_by
    assert g.seq == 32 * 50
