"""Game mode variants, resolved once from the mode tag at room creation."""

import enum
import re
from dataclasses import dataclass

_CLASSIC_LINES = re.compile(r'classic-(\d+)')


class ModeKind(str, enum.Enum):
    CLASSIC = 'classic'
    LOCKOUT = 'lockout'
    # Declared in the mode catalogue but without an engine win rule
    UNRULED = 'unruled'


class ClaimScope(str, enum.Enum):
    TEAM = 'team'
    PLAYER = 'player'


@dataclass(frozen=True)
class GameMode:
    tag: str
    kind: ModeKind
    required_lines: int = 1

    @property
    def claim_scope(self) -> ClaimScope:
        return ClaimScope.PLAYER if self.kind is ModeKind.LOCKOUT else ClaimScope.TEAM

    @property
    def has_line_win(self) -> bool:
        return self.kind is ModeKind.CLASSIC

    @property
    def display_name(self) -> str:
        if 'battleship' in self.tag:
            return 'Battleship Bingo'
        if self.kind is ModeKind.LOCKOUT:
            return 'Lockout Bingo'
        if self.kind is ModeKind.CLASSIC:
            return 'Classic Bingo'
        return 'Bingo'


def parse_game_mode(tag: str) -> GameMode:
    """Resolve a mode tag such as ``classic-3`` or ``lockout``."""
    tag = (tag or '').strip().lower()
    if 'lockout' in tag:
        return GameMode(tag=tag, kind=ModeKind.LOCKOUT)
    if 'classic' in tag:
        match = _CLASSIC_LINES.search(tag)
        lines = int(match.group(1)) if match else 1
        return GameMode(tag=tag, kind=ModeKind.CLASSIC, required_lines=max(1, lines))
    return GameMode(tag=tag, kind=ModeKind.UNRULED)
