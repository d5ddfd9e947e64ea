"""Room state machine: membership, claims, marks, wins, resets and restarts.

Every mutating operation takes the acting ``Identity`` explicitly, commits
once, and only then publishes its room events.
"""

import math
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from bingo import db
from bingo.models import Activity, Claim, MarkedItem, Player, RestartVote, Room, User, utcnow
from .board import GRID_SIZES, generate_board, overlay_board, select_items
from .broadcast import publish
from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from .modes import ClaimScope, parse_game_mode
from .scheduler import restart_scheduler
from .store import add_unique_row, toggle_row
from .win import check_win

MAX_TEAMS = 8
MAX_NAME_LENGTH = 32
CONNECTION_ACTIONS = ('disconnected', 'reconnected')


@dataclass(frozen=True)
class Identity:
    """The already-authenticated caller of an operation."""
    user_id: str
    display_name: str = 'Unknown'
    avatar_url: str = ''

    @classmethod
    def from_user(cls, user) -> 'Identity':
        return cls(user_id=user.id, display_name=user.name or 'Unknown', avatar_url=user.image or '')


# ---- lookups and shared steps ----

def get_room(room_id) -> Room:
    room = db.session.get(Room, room_id)
    if not room:
        raise NotFoundError('Room not found')
    return room


def find_player(room_id, user_id) -> Optional[Player]:
    return Player.query.filter_by(room_id=room_id, user_id=user_id).first()


def _require_owner(room: Room, actor: Identity, message: str = 'Forbidden') -> None:
    if room.owner_id != actor.user_id:
        raise ForbiddenError(message)


def _require_member(room: Room, actor: Identity) -> Player:
    player = find_player(room.id, actor.user_id)
    if not player:
        raise ForbiddenError('Player not in room')
    return player


def _require_cell(room: Room, cell_index) -> int:
    if cell_index is None:
        raise ValidationError('Cell index is required')
    if isinstance(cell_index, bool) or not isinstance(cell_index, int):
        raise ValidationError('Cell index must be an integer')
    if not 0 <= cell_index < room.grid_size * room.grid_size:
        raise NotFoundError('Cell not found')
    return cell_index


def _log(room_id, user_id, user_name, action, now=None, **fields) -> Activity:
    activity = Activity(
        room_id=room_id,
        user_id=user_id,
        user_name=user_name or 'Unknown',
        action=action,
        created_at=now or utcnow(),
        **fields,
    )
    db.session.add(activity)
    return activity


def _cell_title(room: Room, cell_index: int) -> Optional[str]:
    titles = select_items(room.seed, room.grid_size, room.items)
    return titles[cell_index] if cell_index < len(titles) else None


def _item_title(room: Room, cell_index: int, item_title=None) -> Optional[str]:
    """The board's title for the cell; a client title only fills a gap."""
    if item_title is not None and not isinstance(item_title, str):
        raise ValidationError('Item title must be a string')
    return _cell_title(room, cell_index) or item_title


def _touch_unfinished(room: Room, now) -> None:
    """Stamp the room, or raise if a winner has already been committed."""
    touched = Room.query.filter_by(id=room.id, game_finished=False).update(
        {'last_updated': now}, synchronize_session=False)
    if not touched:
        raise ConflictError('Game is finished')


def _delete_players(query) -> None:
    ids = select(Player.id).where(query)
    MarkedItem.query.filter(MarkedItem.player_id.in_(ids)).delete(synchronize_session=False)
    Player.query.filter(query).delete(synchronize_session=False)


def _clear_board(room: Room, now) -> None:
    """Back to the lobby: claims, finish state, votes, schedule and marks."""
    Claim.query.filter_by(room_id=room.id).delete(synchronize_session=False)
    RestartVote.query.filter_by(room_id=room.id).delete(synchronize_session=False)
    player_ids = select(Player.id).where(Player.room_id == room.id)
    MarkedItem.query.filter(MarkedItem.player_id.in_(player_ids)).delete(synchronize_session=False)
    Room.query.filter_by(id=room.id).update({
        'game_finished': False,
        'winning_team': None,
        'restart_countdown': None,
        'restart_scheduled': None,
        'last_updated': now,
    }, synchronize_session=False)


# ---- room configuration ----

def _validate_teams(teams):
    if not isinstance(teams, list) or not 1 <= len(teams) <= MAX_TEAMS:
        raise ValidationError(f'Rooms need between 1 and {MAX_TEAMS} teams')
    cleaned = []
    for team in teams:
        if not isinstance(team, dict):
            raise ValidationError('Each team needs a name and a color')
        name = team.get('name')
        color = team.get('color')
        if not isinstance(name, str) or not 1 <= len(name) <= MAX_NAME_LENGTH:
            raise ValidationError(f'Team names must be 1 to {MAX_NAME_LENGTH} characters')
        if not isinstance(color, str) or len(color) not in (4, 7) or not color.startswith('#'):
            raise ValidationError('Team colors must look like #rgb or #rrggbb')
        cleaned.append({'name': name, 'color': color})
    return cleaned


def create_room(actor: Identity, room_name, game_mode, board_size, teams, items,
                seed=None, room_password=None) -> Room:
    if not isinstance(room_name, str) or not 1 <= len(room_name.strip()) <= MAX_NAME_LENGTH:
        raise ValidationError(f'Room name must be 1 to {MAX_NAME_LENGTH} characters')
    if not isinstance(game_mode, str) or not game_mode.strip() or len(game_mode) > 32:
        raise ValidationError('Game mode is required')
    if board_size not in GRID_SIZES:
        raise ValidationError('Board size must be one of 0, 50 or 100')
    if not isinstance(items, list):
        raise ValidationError('bingoItems must be an array')
    if seed is not None and (not isinstance(seed, str) or not seed):
        raise ValidationError('Seed must be a non-empty string')
    teams = _validate_teams(teams)
    seed = seed or secrets.token_hex(8)
    mode = parse_game_mode(game_mode)
    # Reject undersized pools before anything is stored
    select_items(seed, GRID_SIZES[board_size], items)

    room = Room(
        room_name=room_name.strip(),
        room_password=room_password,
        seed=seed,
        game_mode=mode.tag,
        mode_kind=mode.kind.value,
        required_lines=mode.required_lines,
        board_size=board_size,
        owner_id=actor.user_id,
        game_finished=False,
    )
    room.teams = teams
    room.items = items
    db.session.add(room)
    db.session.commit()
    current_app.logger.info(f"[room-create] room={room.id} mode={room.game_mode} grid={room.grid_size} owner={actor.user_id}")
    return room


def update_items(actor: Identity, room_id, items) -> list:
    """Replace the item pool; the board is regenerated from the same seed."""
    if not isinstance(items, list):
        raise ValidationError('bingoItems must be an array')
    room = get_room(room_id)
    _require_owner(room, actor, 'Only the room owner can update bingo items')
    titles = select_items(room.seed, room.grid_size, items)
    room.items = items
    room.last_updated = utcnow()
    db.session.commit()
    publish(room.id, 'bingo-items-updated', {'bingoItems': titles})
    return titles


def delete_room(actor: Identity, room_id) -> None:
    room = get_room(room_id)
    _require_owner(room, actor)
    restart_scheduler.cancel(room.id)
    _delete_players(Player.room_id == room.id)
    Claim.query.filter_by(room_id=room.id).delete(synchronize_session=False)
    RestartVote.query.filter_by(room_id=room.id).delete(synchronize_session=False)
    Activity.query.filter_by(room_id=room.id).delete(synchronize_session=False)
    db.session.delete(room)
    db.session.commit()
    current_app.logger.info(f"[room-delete] room={room_id} by={actor.user_id}")
    publish(room_id, 'room-deleted', {'roomId': room_id})


# ---- membership ----

def join_room(actor: Identity, room_id, team_index=None) -> Player:
    room = get_room(room_id)
    if team_index is not None:
        if isinstance(team_index, bool) or not isinstance(team_index, int) or not 0 <= team_index < len(room.teams):
            raise ValidationError('Invalid team index')
    now = utcnow()
    player = find_player(room.id, actor.user_id)

    if player:
        if team_index is not None and team_index != player.team_index:
            player.team_index = team_index
            player.last_active = now
            _log(room.id, actor.user_id, actor.display_name, 'team-changed', now, team_index=team_index)
            db.session.commit()
            publish(room.id, 'team-changed', {
                'userId': actor.user_id,
                'userName': actor.display_name,
                'teamIndex': team_index,
            })
        else:
            player.last_active = now
            db.session.commit()
        return player

    team = team_index if team_index is not None else 0
    try:
        with db.session.begin_nested():
            player = Player(room_id=room.id, user_id=actor.user_id, team_index=team, joined_at=now, last_active=now)
            db.session.add(player)
    except IntegrityError:
        raise ConflictError('Already in this room')
    _log(room.id, actor.user_id, actor.display_name, 'joined', now, team_index=team)
    db.session.commit()
    publish(room.id, 'player-joined', {'userId': actor.user_id, 'userName': actor.display_name})
    return player


def leave_room(actor: Identity, room_id) -> bool:
    room = get_room(room_id)
    player = find_player(room.id, actor.user_id)
    if not player:
        return False
    _log(room.id, actor.user_id, actor.display_name, 'left', team_index=player.team_index)
    _delete_players(Player.id == player.id)
    RestartVote.query.filter_by(room_id=room.id, user_id=actor.user_id).delete(synchronize_session=False)
    db.session.commit()
    publish(room.id, 'player-left', {'userId': actor.user_id, 'userName': actor.display_name})
    return True


def kick_player(actor: Identity, room_id, user_id) -> bool:
    if not user_id:
        raise ValidationError('User ID required')
    room = get_room(room_id)
    _require_owner(room, actor, 'Only the room owner can kick players')
    if user_id == actor.user_id:
        raise ValidationError('Cannot kick yourself')
    player = find_player(room.id, user_id)
    if not player:
        return False
    user = db.session.get(User, user_id)
    user_name = (user.name if user else None) or 'Unknown'
    _log(room.id, user_id, user_name, 'kicked', team_index=player.team_index)
    _delete_players(Player.id == player.id)
    RestartVote.query.filter_by(room_id=room.id, user_id=user_id).delete(synchronize_session=False)
    db.session.commit()
    publish(room.id, 'player-kicked', {'userId': user_id, 'userName': user_name})
    return True


def record_connection(actor: Identity, room_id, action) -> bool:
    if action not in CONNECTION_ACTIONS:
        raise ValidationError('Invalid action')
    room = get_room(room_id)
    player = find_player(room.id, actor.user_id)
    if not player:
        if action == 'reconnected':
            raise ForbiddenError('Player not in room')
        return False
    now = utcnow()
    if action == 'reconnected':
        player.last_active = now
    _log(room.id, actor.user_id, actor.display_name, action, now, team_index=player.team_index)
    db.session.commit()
    event = 'player-disconnected' if action == 'disconnected' else 'player-reconnected'
    publish(room.id, event, {'userId': actor.user_id, 'userName': actor.display_name})
    return True


# ---- claims and marks ----

def toggle_cell(actor: Identity, room_id, cell_index, item_title=None) -> dict:
    """Claim for the caller's team or mark for the caller, per the room's mode."""
    room = get_room(room_id)
    if room.mode.claim_scope is ClaimScope.PLAYER:
        return mark_cell(actor, room_id, cell_index, item_title)
    return claim_cell(actor, room_id, cell_index, item_title)


def claim_cell(actor: Identity, room_id, cell_index, item_title=None) -> dict:
    room = get_room(room_id)
    if room.mode.claim_scope is not ClaimScope.TEAM:
        raise ConflictError('This room uses per-player marks')
    _require_cell(room, cell_index)
    if room.game_finished:
        raise ConflictError('Game is finished')
    player = _require_member(room, actor)
    if player.team_index is None:
        raise ConflictError('Join a team before claiming')

    team = player.team_index
    grid_size = room.grid_size
    now = utcnow()
    title = _item_title(room, cell_index, item_title)
    _touch_unfinished(room, now)
    added = toggle_row(
        Claim,
        {'room_id': room.id, 'cell_index': cell_index, 'team_index': team},
        claimed_at=now,
        claimed_by=actor.user_id,
    )
    player.last_active = now
    _log(room.id, actor.user_id, actor.display_name, 'claimed' if added else 'unclaimed', now,
         item_title=title, cell_index=cell_index, team_index=team)

    win = None
    if added and room.mode.has_line_win:
        result = check_win(Claim.query.filter_by(room_id=room.id, team_index=team).all(),
                           team, grid_size, room.required_lines)
        if result.won:
            # Only the first finishing claim flips the room; later ones see zero rows
            finished = Room.query.filter_by(id=room.id, game_finished=False).update(
                {'game_finished': True, 'winning_team': team, 'last_updated': now},
                synchronize_session=False,
            )
            if finished:
                win = result
                _log(room.id, actor.user_id, actor.display_name, 'win', now, team_index=team)
    db.session.commit()

    publish(room.id, 'item-claimed', {
        'userId': actor.user_id,
        'userName': actor.display_name,
        'cellIndex': cell_index,
        'itemTitle': title,
        'teamIndex': team,
        'claimed': added,
    })
    if win:
        current_app.logger.info(f"[win] room={room.id} team={team} lines={len(win.lines)}")
        publish(room.id, 'team-won', {
            'teamIndex': team,
            'teamName': room.teams[team]['name'] if team < len(room.teams) else None,
            'userId': actor.user_id,
            'userName': actor.display_name,
            'winningLines': [line.to_dict() for line in win.lines],
        })

    return {
        'claimed': added,
        'claimed_items': [c.to_dict() for c in room.claims.order_by(Claim.id)],
        'win_detected': win is not None,
        'winning_team': team if win else None,
        'winning_lines': [line.to_dict() for line in win.lines] if win else None,
    }


def mark_cell(actor: Identity, room_id, cell_index, item_title=None) -> dict:
    room = get_room(room_id)
    if room.mode.claim_scope is not ClaimScope.PLAYER:
        raise ConflictError('This room uses team claims')
    _require_cell(room, cell_index)
    if room.game_finished:
        raise ConflictError('Game is finished')
    player = _require_member(room, actor)

    now = utcnow()
    title = _item_title(room, cell_index, item_title)
    _touch_unfinished(room, now)
    added = toggle_row(MarkedItem, {'player_id': player.id, 'cell_index': cell_index})
    player.last_active = now
    _log(room.id, actor.user_id, actor.display_name, 'marked' if added else 'unmarked', now,
         item_title=title, cell_index=cell_index, team_index=player.team_index)
    db.session.commit()

    publish(room.id, 'item-marked', {
        'userId': actor.user_id,
        'userName': actor.display_name,
        'cellIndex': cell_index,
        'itemTitle': title,
        'marked': added,
    })
    return {'marked': added, 'marked_items': player.marked_items}


# ---- reset and restart ----

def reset_board(actor: Identity, room_id) -> None:
    room = get_room(room_id)
    _require_owner(room, actor, 'Only the room owner can reset the board')
    restart_scheduler.cancel(room.id)
    now = utcnow()
    _clear_board(room, now)
    _log(room.id, actor.user_id, actor.display_name, 'board-reset', now)
    db.session.commit()
    publish(room.id, 'board-reset', {'userId': actor.user_id, 'userName': actor.display_name})


def _claim_schedule(room: Room, countdown: int):
    """Persist a restart schedule unless one is already set."""
    scheduled_at = utcnow() + timedelta(seconds=countdown)
    updated = Room.query.filter(Room.id == room.id, Room.restart_scheduled.is_(None)).update(
        {'restart_countdown': countdown, 'restart_scheduled': scheduled_at},
        synchronize_session=False,
    )
    return (scheduled_at if updated else None)


def _start_countdown(room_id, countdown: int, scheduled_at, actor: Identity, **extra) -> None:
    restart_scheduler.schedule(room_id, countdown, actor.user_id)
    payload = {'countdown': countdown, 'scheduledAt': scheduled_at.isoformat() + 'Z'}
    payload.update(extra)
    publish(room_id, 'restart-scheduled', payload)


def vote_restart(actor: Identity, room_id) -> dict:
    room = get_room(room_id)
    if not room.game_finished:
        raise ConflictError('Game is not finished')
    _require_member(room, actor)
    add_unique_row(RestartVote, {'room_id': room.id, 'user_id': actor.user_id}, 'Already voted')

    votes = RestartVote.query.filter_by(room_id=room.id).count()
    player_count = Player.query.filter_by(room_id=room.id).count()
    majority = math.ceil(player_count / 2)
    countdown = int(current_app.config.get('RESTART_COUNTDOWN_SEC', 10))
    scheduled_at = None
    if votes >= majority:
        scheduled_at = _claim_schedule(room, countdown)
    db.session.commit()

    if scheduled_at:
        _start_countdown(room.id, countdown, scheduled_at, actor)
    result = {
        'votes': votes,
        'player_count': player_count,
        'majority': majority,
        'restart_scheduled': scheduled_at.isoformat() + 'Z' if scheduled_at else None,
        'countdown': countdown if scheduled_at else None,
    }
    publish(room.id, 'restart-vote', {
        'userId': actor.user_id,
        'votes': votes,
        'playerCount': player_count,
        'majority': majority,
        'restartScheduled': result['restart_scheduled'],
        'countdown': result['countdown'],
    })
    return result


def owner_restart(actor: Identity, room_id, instant=False, countdown=None) -> dict:
    room = get_room(room_id)
    _require_owner(room, actor, 'Only the room owner can restart')
    if not room.game_finished:
        raise ConflictError('Game is not finished')

    default = int(current_app.config.get('RESTART_COUNTDOWN_SEC', 10))
    if instant:
        seconds = countdown if countdown is not None else int(current_app.config.get('INSTANT_RESTART_COUNTDOWN_SEC', 5))
        if isinstance(seconds, bool) or not isinstance(seconds, int) or not 1 <= seconds <= default:
            raise ValidationError(f'Instant countdown must be between 1 and {default} seconds')
    else:
        seconds = default

    scheduled_at = _claim_schedule(room, seconds)
    db.session.commit()
    if not scheduled_at:
        room = get_room(room_id)
        return {
            'scheduled': False,
            'countdown': room.restart_countdown,
            'scheduled_at': room.restart_scheduled.isoformat() + 'Z' if room.restart_scheduled else None,
        }
    _start_countdown(room.id, seconds, scheduled_at, actor, instant=bool(instant))
    return {'scheduled': True, 'countdown': seconds, 'scheduled_at': scheduled_at.isoformat() + 'Z'}


def run_scheduled_restart(room_id, actor_id) -> bool:
    """Countdown expiry: the same transition as a reset."""
    try:
        room = db.session.get(Room, room_id)
        if not room or room.restart_scheduled is None:
            current_app.logger.info(f"[restart-abort] room={room_id} no longer scheduled")
            return False
        user = db.session.get(User, actor_id)
        user_name = (user.name if user else None) or 'Unknown'
        now = utcnow()
        _clear_board(room, now)
        _log(room.id, actor_id, user_name, 'board-reset', now)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception(f"[restart-failed] room={room_id}")
        return False
    publish(room_id, 'board-reset', {'userId': actor_id, 'userName': user_name})
    return True


# ---- reads ----

def list_players(room_id) -> list:
    get_room(room_id)
    return Player.query.filter_by(room_id=room_id).order_by(Player.joined_at, Player.id).all()


def list_activities(room_id, limit=50) -> list:
    """Most recent activities first."""
    get_room(room_id)
    return (
        Activity.query.filter_by(room_id=room_id)
        .order_by(Activity.created_at.desc(), Activity.id.desc())
        .limit(limit)
        .all()
    )


def board_view(room_id, viewer_id=None) -> list:
    room = get_room(room_id)
    cells = generate_board(room.seed, room.grid_size, room.items)
    claims = room.claims.all()
    winning_cells = ()
    if room.game_finished and room.mode.has_line_win:
        result = check_win(claims, room.winning_team, room.grid_size, room.required_lines)
        if result.won:
            winning_cells = {cell for line in result.lines for cell in line.cells}
    marked = ()
    if viewer_id:
        player = find_player(room.id, viewer_id)
        if player:
            marked = player.marked_items
    return overlay_board(cells, claims, marked=marked, finished=room.game_finished, winning_cells=winning_cells)


def owned_room_summary(actor: Identity) -> Optional[dict]:
    room = Room.query.filter_by(owner_id=actor.user_id).order_by(Room.last_updated.desc()).first()
    if not room:
        return None
    return {
        'id': room.id,
        'room_name': room.room_name,
        'game_mode': room.mode.display_name,
        'player_count': Player.query.filter_by(room_id=room.id).count(),
        'activity_count': Activity.query.filter_by(room_id=room.id).count(),
    }
