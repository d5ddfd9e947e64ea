"""Line-based win detection for classic bingo."""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional


@dataclass(frozen=True)
class Line:
    type: str  # row, col or diag
    index: int
    cells: tuple

    def to_dict(self):
        return {'type': self.type, 'index': self.index, 'cells': list(self.cells)}


@dataclass
class WinResult:
    won: bool
    lines: Optional[List[Line]] = field(default=None)

    def to_dict(self):
        return {
            'won': self.won,
            'lines': [line.to_dict() for line in self.lines] if self.lines is not None else None,
        }


def all_lines(grid_size: int) -> List[Line]:
    """Every row, column and both diagonals (``2N + 2`` lines)."""
    n = grid_size
    lines = [Line('row', r, tuple(r * n + c for c in range(n))) for r in range(n)]
    lines += [Line('col', c, tuple(r * n + c for r in range(n))) for c in range(n)]
    lines.append(Line('diag', 0, tuple(i * n + i for i in range(n))))
    lines.append(Line('diag', 1, tuple(i * n + (n - 1 - i) for i in range(n))))
    return lines


def check_win(claims: Iterable, team_index: int, grid_size: int, required_lines: int = 1) -> WinResult:
    """Check whether ``team_index`` covers at least ``required_lines`` full lines.

    ``claims`` are objects (or dicts) with ``cell_index`` and ``team_index``;
    claims of other teams and cells outside the grid are ignored.
    """
    total = grid_size * grid_size
    covered = set()
    for claim in claims:
        if isinstance(claim, dict):
            cell, team = claim['cell_index'], claim['team_index']
        else:
            cell, team = claim.cell_index, claim.team_index
        if team == team_index and 0 <= cell < total:
            covered.add(cell)

    if len(covered) < grid_size:
        return WinResult(won=False)

    full = [line for line in all_lines(grid_size) if covered.issuperset(line.cells)]
    if len(full) >= max(1, required_lines):
        return WinResult(won=True, lines=full)
    return WinResult(won=False)
