"""
Grid geometry for guestbook notes.

Every note covers a half-open rectangle ``[row_start, row_end) x
[col_start, col_end)`` on the grid of one page.  Grids on different pages
never interact.
"""

from __future__ import annotations

from dataclasses import dataclass

COL_MIN = 1
COL_MAX = 10
ROW_MIN = 1
ROW_MAX = 17
MIN_ROW_SPAN = 1
MIN_COL_SPAN = 2
GRID_CELLS = (COL_MAX - COL_MIN) * (ROW_MAX - ROW_MIN)  # 9 x 16 = 144


@dataclass(frozen=True)
class Bounds:
    row_start: int
    row_end: int
    col_start: int
    col_end: int

    @property
    def row_span(self) -> int:
        return self.row_end - self.row_start

    @property
    def col_span(self) -> int:
        return self.col_end - self.col_start

    @property
    def area(self) -> int:
        return self.row_span * self.col_span

    def to_dict(self) -> dict[str, int]:
        return {
            "row_start": self.row_start,
            "row_end": self.row_end,
            "col_start": self.col_start,
            "col_end": self.col_end,
        }


def overlaps(a, b) -> bool:
    """
    True when two half-open rectangles share at least one cell.

    Works on anything with the four bound attributes (``Bounds``, ``Note``).
    Rectangles that only touch along an edge do *not* overlap.
    """
    return (
        a.row_start < b.row_end
        and a.row_end > b.row_start
        and a.col_start < b.col_end
        and a.col_end > b.col_start
    )


class OccupancyMap:
    """
    Rasterised set of occupied ``(row, col)`` cells for one page.

    Advisory only: it is rebuilt from a snapshot of notes and goes stale
    as soon as another writer inserts.  The store's conditional insert is
    what keeps notes apart.
    """

    def __init__(self, notes=()):
        self._occupied: set[tuple[int, int]] = set()
        for note in notes:
            self.add_note(note)

    def add_note(self, note) -> None:
        for r in range(note.row_start, note.row_end):
            for c in range(note.col_start, note.col_end):
                self._occupied.add((r, c))

    def is_region_free(
        self, row_start: int, row_end: int, col_start: int, col_end: int
    ) -> bool:
        for r in range(row_start, row_end):
            for c in range(col_start, col_end):
                if (r, c) in self._occupied:
                    return False
        return True

    @property
    def occupied_cells(self) -> int:
        return len(self._occupied)

    def occupancy(self, total_cells: int = GRID_CELLS) -> float:
        if total_cells <= 0:
            return 0.0
        return len(self._occupied) / total_cells
