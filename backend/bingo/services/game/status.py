"""Read-side match status, reconstructed from rooms, players and the activity log.

A room only keeps the claims of its current board, so a match that was won
and then reset survives only in the activity log. ``match_records`` replays
the log to recover those finished matches next to the live one.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Sequence

from bingo import db
from bingo.models import Activity, Player, Room, User, utcnow

NOT_STARTED = 'not_started'
IN_PROGRESS = 'in_progress'
FINISHED_WON = 'finished_won'
FINISHED_LOST = 'finished_lost'
CANCELLED = 'cancelled'

DEFAULT_INACTIVE_AFTER = timedelta(hours=1)


@dataclass
class Projection:
    status: str
    winning_team: Optional[int] = None


def ordered(activities: Sequence) -> list:
    """Chronological order; insertion id breaks timestamp ties."""
    return sorted(activities, key=lambda a: (a.created_at, a.id))


def last_standing_win(activities: Sequence):
    """The latest ``win`` not followed by a ``board-reset``, if any."""
    win = None
    for activity in ordered(activities):
        if activity.action == 'win':
            win = activity
        elif activity.action == 'board-reset':
            win = None
    return win


def framed(winning_team: int, viewer_team: Optional[int]) -> str:
    if viewer_team is not None and viewer_team != winning_team:
        return FINISHED_LOST
    return FINISHED_WON


def project_status(room, players: Sequence, activities: Sequence, viewer_team: Optional[int] = None,
                   now=None, inactive_after: timedelta = DEFAULT_INACTIVE_AFTER) -> Projection:
    now = now or utcnow()
    if players and all(now - p.last_active > inactive_after for p in players):
        return Projection(CANCELLED)
    if not players:
        return Projection(NOT_STARTED)

    winner = None
    if room.game_finished and room.winning_team is not None:
        winner = room.winning_team
    else:
        win = last_standing_win(activities)
        if win is not None and win.team_index is not None:
            winner = win.team_index
    if winner is not None:
        return Projection(framed(winner, viewer_team), winner)
    return Projection(IN_PROGRESS)


def team_stats(room, players: Sequence, claims: Sequence) -> List[dict]:
    """Per-team stats from live state."""
    stats = []
    for index, team in enumerate(room.teams):
        members = [p for p in players if p.team_index == index]
        stats.append({
            'name': team['name'],
            'color': team['color'],
            'player_count': len(members),
            'claimed': len({c.cell_index for c in claims if c.team_index == index}),
            'marked': sum(len(p.marked_items) for p in members),
        })
    return stats


def replay_team_stats(room, history: Sequence, board_start: int, upto: int) -> tuple:
    """Rebuild team stats from ``history`` (ordered) as of position ``upto``.

    Membership replays from the start of the log; claims and marks only from
    ``board_start``, the first activity after the preceding board reset.
    Returns ``(stats, teams_by_user)``.
    """
    members = {}
    claimed = {}
    marked = {}
    for pos, activity in enumerate(history[:upto + 1]):
        action = activity.action
        if action in ('joined', 'team-changed', 'reconnected'):
            if activity.team_index is not None:
                members[activity.user_id] = activity.team_index
        elif action in ('left', 'kicked'):
            members.pop(activity.user_id, None)
        if pos < board_start or activity.cell_index is None:
            continue
        if action == 'claimed':
            claimed.setdefault(activity.team_index, set()).add(activity.cell_index)
        elif action == 'unclaimed':
            claimed.get(activity.team_index, set()).discard(activity.cell_index)
        elif action == 'marked':
            marked.setdefault(activity.user_id, set()).add(activity.cell_index)
        elif action == 'unmarked':
            marked.get(activity.user_id, set()).discard(activity.cell_index)

    stats = []
    for index, team in enumerate(room.teams):
        team_users = [uid for uid, t in members.items() if t == index]
        stats.append({
            'name': team['name'],
            'color': team['color'],
            'player_count': len(team_users),
            'claimed': len(claimed.get(index, ())),
            'marked': sum(len(marked.get(uid, ())) for uid in team_users),
        })
    return stats, members


def _record(room, match_id, status, winning_team, teams, activity_count, player_count, last_updated, finished_at=None):
    return {
        'id': match_id,
        'room_id': room.id,
        'room_name': room.room_name,
        'game_mode': room.mode.display_name,
        'board_size': room.board_size,
        'owner_id': room.owner_id,
        'status': status,
        'winning_team': winning_team,
        'finished_at': finished_at.isoformat() + 'Z' if finished_at else None,
        'player_count': player_count,
        'activity_count': activity_count,
        'last_updated': last_updated.isoformat() + 'Z' if last_updated else None,
        'teams': teams,
    }


def match_records(room, players: Sequence, activities: Sequence, claims: Sequence = (),
                  viewer_id: Optional[str] = None, now=None,
                  inactive_after: timedelta = DEFAULT_INACTIVE_AFTER) -> List[dict]:
    """Logical matches played in ``room``, finished ones first, current last.

    Every ``win`` later followed by a ``board-reset`` yields a finished match
    with stats frozen at the win; the board since the last reset is the
    current match, described from live state.
    """
    history = ordered(activities)
    records = []
    board_start = 0
    win_pos = None
    for pos, activity in enumerate(history):
        if activity.action == 'win' and win_pos is None:
            win_pos = pos
        elif activity.action == 'board-reset':
            if win_pos is not None:
                win = history[win_pos]
                stats, members = replay_team_stats(room, history, board_start, win_pos)
                records.append(_record(
                    room,
                    f"{room.id}:{win.id}",
                    framed(win.team_index, members.get(viewer_id)),
                    win.team_index,
                    stats,
                    activity_count=win_pos - board_start + 1,
                    player_count=len(members),
                    last_updated=win.created_at,
                    finished_at=win.created_at,
                ))
            win_pos = None
            board_start = pos + 1

    current = history[board_start:]
    viewer = next((p for p in players if p.user_id == viewer_id), None)
    projection = project_status(room, players, current, viewer.team_index if viewer else None,
                                now=now, inactive_after=inactive_after)
    finished_at = None
    if win_pos is not None:
        finished_at = history[win_pos].created_at
    records.append(_record(
        room,
        str(room.id),
        projection.status,
        projection.winning_team,
        team_stats(room, players, claims),
        activity_count=len(current),
        player_count=len(players),
        last_updated=room.last_updated,
        finished_at=finished_at,
    ))
    return records


def recent_matches(viewer_id: Optional[str], limit: int = 50, now=None,
                   inactive_after: timedelta = DEFAULT_INACTIVE_AFTER) -> List[dict]:
    """Match records of the most recently updated rooms."""
    out = []
    for room in Room.query.order_by(Room.last_updated.desc(), Room.id.desc()).limit(limit).all():
        players = Player.query.filter_by(room_id=room.id).all()
        activities = Activity.query.filter_by(room_id=room.id).all()
        owner = db.session.get(User, room.owner_id) if room.owner_id else None
        for record in match_records(room, players, activities, room.claims.all(), viewer_id,
                                    now=now, inactive_after=inactive_after):
            record['owner_name'] = (owner.name if owner else None) or 'Unknown'
            out.append(record)
    return out
