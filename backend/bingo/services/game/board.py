"""Deterministic board layout from a room's seed and item pool."""

from dataclasses import dataclass, asdict
from functools import cmp_to_key
from typing import Iterable, List, Optional, Sequence

from .errors import ValidationError
from .rng import seeded_random

GRID_SIZES = {0: 5, 50: 7, 100: 10}


def grid_size_for(board_size: int) -> int:
    """Map the stored board size class to the grid edge length."""
    return GRID_SIZES.get(board_size, 5)


@dataclass
class Cell:
    title: str
    locked: bool = False
    disabled: bool = False
    favorite: bool = False

    def to_dict(self):
        return asdict(self)


def usable_items(pool: Iterable[str]) -> List[str]:
    return [item for item in pool if isinstance(item, str) and item.strip()]


def select_items(seed: str, grid_size: int, pool: Sequence[str]) -> List[str]:
    """Pick exactly ``grid_size ** 2`` titles from ``pool``.

    Blank entries are dropped first. An exact-sized pool is used in order;
    a larger one is ordered by a comparator returning ``random() - 0.5``
    from the seeded generator and truncated. That shuffle is not uniform,
    but stored seeds depend on it producing the same boards.
    """
    required = grid_size * grid_size
    candidates = usable_items(pool)
    if len(candidates) < required:
        raise ValidationError(
            f'Not enough bingo items provided. Need at least {required} items for a '
            f'{grid_size}x{grid_size} board, but only {len(candidates)} valid items were provided.'
        )
    if len(candidates) == required:
        return list(candidates)

    random = seeded_random(seed)
    shuffled = sorted(candidates, key=cmp_to_key(lambda a, b: random() - 0.5))
    return shuffled[:required]


def generate_board(seed: str, grid_size: int, pool: Sequence[str]) -> List[Cell]:
    return [Cell(title=title) for title in select_items(seed, grid_size, pool)]


def overlay_board(
    cells: Sequence[Cell],
    claims: Iterable,
    marked: Iterable[int] = (),
    finished: bool = False,
    winning_cells: Optional[Iterable[int]] = None,
) -> List[dict]:
    """Merge live claim/mark state into generated cells for rendering."""
    claimed_by = {}
    for claim in claims:
        claimed_by.setdefault(claim.cell_index, []).append(claim.team_index)
    marked = set(marked)
    winning = set(winning_cells or ())
    out = []
    for index, cell in enumerate(cells):
        data = cell.to_dict()
        data['index'] = index
        data['claimed_by_teams'] = sorted(claimed_by.get(index, []))
        data['marked'] = index in marked
        data['locked'] = cell.locked or finished
        data['winning'] = index in winning
        out.append(data)
    return out
