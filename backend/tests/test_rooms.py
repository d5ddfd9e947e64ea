import pytest

from bingo import db
from bingo.models import Activity, Claim, MarkedItem, Player, RestartVote, Room
from bingo.services.game import broadcast, rooms
from bingo.services.game import scheduler as scheduler_module
from bingo.services.game.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from bingo.services.game.store import toggle_row
from conftest import ITEMS_25


@pytest.fixture()
def published(monkeypatch):
    events = []

    def _record(room_id, event, payload):
        events.append((room_id, event, payload))
        return True

    monkeypatch.setattr(rooms, 'publish', _record)
    monkeypatch.setattr(scheduler_module, 'publish', _record)
    return events


def names(events):
    return [e[1] for e in events]


def actions(room_id):
    return [a.action for a in Activity.query.filter_by(room_id=room_id).order_by(Activity.created_at, Activity.id)]


def assert_finish_invariant(room_id):
    room = db.session.get(Room, room_id)
    assert room.game_finished == (room.winning_team is not None)


def finish_game(room, actor, team=0):
    rooms.join_room(actor, room.id, team)
    for cell in range(5):
        result = rooms.claim_cell(actor, room.id, cell)
    assert result['win_detected']
    return result


# ---- creation and membership ----

def test_create_room_starts_in_lobby(make_room, owner):
    room = make_room(game_mode='Classic-2')
    assert room.game_finished is False
    assert room.winning_team is None
    assert room.claims.count() == 0
    assert room.mode_kind == 'classic'
    assert room.required_lines == 2
    assert room.owner_id == owner.user_id
    assert room.grid_size == 5


@pytest.mark.parametrize('overrides, message', [
    ({'teams': []}, 'teams'),
    ({'teams': [{'name': f'T{i}', 'color': '#fff'} for i in range(9)]}, 'teams'),
    ({'teams': [{'name': 'Red', 'color': 'red'}]}, 'colors'),
    ({'teams': [{'name': '', 'color': '#fff'}]}, 'names'),
    ({'items': ['only', 'a', 'few']}, 'Not enough bingo items'),
    ({'board_size': 50}, 'Not enough bingo items'),
])
def test_create_room_validation(make_room, overrides, message):
    with pytest.raises(ValidationError) as exc:
        make_room(**overrides)
    assert message in exc.value.message
    assert Room.query.count() == 0


def test_create_room_rejects_unknown_board_size(owner):
    with pytest.raises(ValidationError):
        rooms.create_room(owner, 'Room', 'classic', 25, [{'name': 'A', 'color': '#000'}], ['x'] * 25)


def test_join_defaults_to_first_team(make_room, users, published):
    room = make_room()
    player = rooms.join_room(users[1], room.id)
    assert player.team_index == 0
    assert actions(room.id) == ['joined']
    assert names(published) == ['player-joined']


def test_rejoin_with_new_team_changes_team(make_room, users, published):
    room = make_room()
    rooms.join_room(users[1], room.id)
    rooms.join_room(users[1], room.id, 1)
    rooms.join_room(users[1], room.id, 1)
    assert Player.query.filter_by(room_id=room.id).count() == 1
    assert rooms.find_player(room.id, users[1].user_id).team_index == 1
    assert actions(room.id) == ['joined', 'team-changed']
    assert names(published) == ['player-joined', 'team-changed']


def test_join_rejects_team_out_of_range(make_room, users):
    room = make_room()
    with pytest.raises(ValidationError):
        rooms.join_room(users[1], room.id, 2)


def test_actions_on_missing_room(users):
    with pytest.raises(NotFoundError):
        rooms.join_room(users[0], 999)
    with pytest.raises(NotFoundError):
        rooms.claim_cell(users[0], 999, 0)


def test_leave_and_kick(make_room, owner, users, published):
    room = make_room(game_mode='lockout')
    rooms.join_room(users[1], room.id)
    rooms.join_room(users[2], room.id)
    rooms.mark_cell(users[2], room.id, 4)

    with pytest.raises(ForbiddenError):
        rooms.kick_player(users[1], room.id, users[2].user_id)
    with pytest.raises(ValidationError):
        rooms.kick_player(owner, room.id, owner.user_id)

    assert rooms.kick_player(owner, room.id, users[2].user_id) is True
    assert rooms.leave_room(users[1], room.id) is True
    assert rooms.leave_room(users[1], room.id) is False
    assert Player.query.filter_by(room_id=room.id).count() == 0
    assert MarkedItem.query.count() == 0
    assert actions(room.id)[-2:] == ['kicked', 'left']
    assert names(published)[-2:] == ['player-kicked', 'player-left']


def test_departed_players_votes_do_not_count(make_room, owner, users, scheduler):
    room = make_room()
    for user in users[1:4]:
        rooms.join_room(user, room.id, 1)
    finish_game(room, owner)

    assert rooms.vote_restart(users[1], room.id)['majority'] == 2
    rooms.leave_room(users[1], room.id)
    assert RestartVote.query.count() == 0

    result = rooms.vote_restart(users[2], room.id)
    assert (result['votes'], result['player_count']) == (1, 3)
    assert result['restart_scheduled'] is None
    assert not scheduler.is_pending(room.id)

    rooms.kick_player(owner, room.id, users[2].user_id)
    assert RestartVote.query.filter_by(room_id=room.id).count() == 0


def test_connection_events(make_room, users, published):
    room = make_room()
    with pytest.raises(ForbiddenError):
        rooms.record_connection(users[1], room.id, 'reconnected')
    assert rooms.record_connection(users[1], room.id, 'disconnected') is False
    with pytest.raises(ValidationError):
        rooms.record_connection(users[1], room.id, 'vanished')

    rooms.join_room(users[1], room.id)
    rooms.record_connection(users[1], room.id, 'disconnected')
    rooms.record_connection(users[1], room.id, 'reconnected')
    assert actions(room.id) == ['joined', 'disconnected', 'reconnected']
    assert names(published)[-2:] == ['player-disconnected', 'player-reconnected']


# ---- claims ----

def test_claim_requires_membership_and_valid_cell(make_room, users):
    room = make_room()
    with pytest.raises(ForbiddenError):
        rooms.claim_cell(users[1], room.id, 0)
    rooms.join_room(users[1], room.id)
    with pytest.raises(NotFoundError):
        rooms.claim_cell(users[1], room.id, 25)
    with pytest.raises(ValidationError):
        rooms.claim_cell(users[1], room.id, None)


def test_claim_requires_a_team(make_room, users):
    room = make_room()
    player = rooms.join_room(users[1], room.id)
    player.team_index = None
    db.session.commit()
    with pytest.raises(ConflictError):
        rooms.claim_cell(users[1], room.id, 0)


@pytest.mark.parametrize('attempts', [1, 2, 3, 4, 5])
def test_repeated_toggles_leave_parity(make_room, users, attempts):
    room = make_room()
    rooms.join_room(users[1], room.id)
    rooms.join_room(users[2], room.id)
    for i in range(attempts):
        # teammates toggling the same cell share one team claim
        rooms.claim_cell(users[1 + i % 2], room.id, 7)
    assert Claim.query.filter_by(room_id=room.id, cell_index=7, team_index=0).count() == attempts % 2


def test_teams_hold_claims_on_the_same_cell(make_room, users, published):
    room = make_room()
    rooms.join_room(users[1], room.id, 0)
    rooms.join_room(users[2], room.id, 1)
    first = rooms.claim_cell(users[1], room.id, 12)
    second = rooms.claim_cell(users[2], room.id, 12)
    assert first['claimed'] and second['claimed']
    assert sorted(c['team_index'] for c in second['claimed_items']) == [0, 1]

    undo = rooms.claim_cell(users[1], room.id, 12)
    assert undo['claimed'] is False
    assert [c['team_index'] for c in undo['claimed_items']] == [1]
    assert actions(room.id)[-3:] == ['claimed', 'claimed', 'unclaimed']
    first_claim = Activity.query.filter_by(room_id=room.id, action='claimed').first()
    assert first_claim.item_title == 'Item 12'
    assert first_claim.cell_index == 12
    assert [p['claimed'] for _, e, p in published if e == 'item-claimed'] == [True, True, False]


def test_claim_title_defaults_to_board_cell(make_room, users):
    room = make_room()
    rooms.join_room(users[1], room.id)
    rooms.claim_cell(users[1], room.id, 3)
    assert Activity.query.filter_by(action='claimed').one().item_title == 'Item 3'


def test_board_title_wins_over_client_title(make_room, users):
    room = make_room()
    rooms.join_room(users[1], room.id)
    rooms.claim_cell(users[1], room.id, 0, 'Item 24')
    assert Activity.query.filter_by(action='claimed').one().item_title == 'Item 0'


def test_non_string_title_is_rejected(make_room, users):
    room = make_room()
    rooms.join_room(users[1], room.id)
    with pytest.raises(ValidationError):
        rooms.claim_cell(users[1], room.id, 0, {'x': 1})
    assert Claim.query.count() == 0


def test_long_item_titles_are_logged_whole(make_room, users):
    long_title = 'x' * 300
    room = make_room(items=[long_title] + ITEMS_25[1:])
    rooms.join_room(users[1], room.id)
    rooms.claim_cell(users[1], room.id, 0)
    assert Activity.query.filter_by(action='claimed').one().item_title == long_title
    assert isinstance(Activity.__table__.c.item_title.type, db.Text)


class _RacyClaim:
    """Claim stand-in whose first delete misses a row a concurrent writer just added."""
    deletes = 0

    class _Query:
        def filter_by(self, **key):
            real = Claim.query.filter_by(**key)

            class _Q:
                def delete(self, **kwargs):
                    _RacyClaim.deletes += 1
                    if _RacyClaim.deletes == 1:
                        return Claim.query.filter(Claim.id == -1).delete(**kwargs)
                    return real.delete(**kwargs)
            return _Q()

    query = _Query()

    def __new__(cls, **values):
        return Claim(**values)


def test_toggle_loses_insert_race_and_removes(make_room, owner):
    room = make_room()
    db.session.add(Claim(room_id=room.id, cell_index=5, team_index=0, claimed_by='racer'))
    db.session.commit()

    _RacyClaim.deletes = 0
    added = toggle_row(_RacyClaim, {'room_id': room.id, 'cell_index': 5, 'team_index': 0}, claimed_by=owner.user_id)
    db.session.commit()
    assert added is False
    assert Claim.query.filter_by(room_id=room.id, cell_index=5).count() == 0


# ---- wins ----

def test_row_completion_wins_exactly_once(make_room, owner, published):
    room = make_room(seed='abc')
    rooms.join_room(owner, room.id, 0)
    published.clear()

    for cell in range(4):
        result = rooms.claim_cell(owner, room.id, cell)
        assert result['win_detected'] is False
        assert 'team-won' not in names(published)
        assert 'win' not in actions(room.id)

    result = rooms.claim_cell(owner, room.id, 4)
    assert result['win_detected'] is True
    assert result['winning_team'] == 0
    assert result['winning_lines'] == [{'type': 'row', 'index': 0, 'cells': [0, 1, 2, 3, 4]}]

    room = db.session.get(Room, room.id)
    assert room.game_finished is True
    assert room.winning_team == 0
    assert actions(room.id).count('win') == 1
    assert names(published).count('team-won') == 1
    won = [p for _, e, p in published if e == 'team-won'][0]
    assert won['teamName'] == 'Red'


def test_claims_rejected_after_finish(make_room, owner, users):
    room = make_room()
    finish_game(room, owner)
    rooms.join_room(users[1], room.id, 1)
    with pytest.raises(ConflictError):
        rooms.claim_cell(users[1], room.id, 20)


def test_unclaim_never_triggers_win(make_room, owner):
    room = make_room(game_mode='classic-2')
    rooms.join_room(owner, room.id, 0)
    for cell in range(5):
        assert rooms.claim_cell(owner, room.id, cell)['win_detected'] is False
    rooms.claim_cell(owner, room.id, 4)
    assert db.session.get(Room, room.id).game_finished is False


def test_claim_racing_a_committed_win_is_rejected(make_room, users, published):
    room = make_room()
    rooms.join_room(users[1], room.id, 0)
    rooms.join_room(users[2], room.id, 1)
    for cell in range(5, 9):
        rooms.claim_cell(users[2], room.id, cell)

    # team 0 finishes behind the back of an already-loaded room
    stale = db.session.get(Room, room.id)
    assert stale.game_finished is False
    Room.query.filter_by(id=room.id).update(
        {'game_finished': True, 'winning_team': 0}, synchronize_session=False)

    with pytest.raises(ConflictError):
        rooms.claim_cell(users[2], room.id, 9)
    db.session.expire_all()
    assert Claim.query.filter_by(room_id=room.id, cell_index=9).count() == 0
    assert db.session.get(Room, room.id).winning_team == 0
    assert actions(room.id)[-1] == 'claimed'
    assert Activity.query.filter_by(room_id=room.id, cell_index=9).count() == 0
    assert 'team-won' not in names(published)


def test_mark_racing_a_finish_is_rejected(make_room, users):
    room = make_room(game_mode='lockout')
    rooms.join_room(users[1], room.id)
    assert db.session.get(Room, room.id).game_finished is False
    Room.query.filter_by(id=room.id).update(
        {'game_finished': True, 'winning_team': 0}, synchronize_session=False)
    with pytest.raises(ConflictError):
        rooms.mark_cell(users[1], room.id, 2)
    assert MarkedItem.query.count() == 0


def test_unruled_modes_never_finish(make_room, owner):
    room = make_room(game_mode='battleship')
    rooms.join_room(owner, room.id, 0)
    for cell in range(25):
        assert rooms.claim_cell(owner, room.id, cell)['win_detected'] is False
    assert db.session.get(Room, room.id).game_finished is False


def test_finish_invariant_across_lifecycle(make_room, owner):
    room = make_room()
    assert_finish_invariant(room.id)
    rooms.join_room(owner, room.id, 0)
    rooms.claim_cell(owner, room.id, 0)
    assert_finish_invariant(room.id)
    for cell in range(1, 5):
        rooms.claim_cell(owner, room.id, cell)
    assert_finish_invariant(room.id)
    rooms.reset_board(owner, room.id)
    assert_finish_invariant(room.id)


# ---- lockout marks ----

def test_lockout_marks_are_per_player(make_room, users, published):
    room = make_room(game_mode='lockout')
    rooms.join_room(users[1], room.id, 0)
    rooms.join_room(users[2], room.id, 1)
    assert rooms.toggle_cell(users[1], room.id, 9)['marked'] is True
    assert rooms.mark_cell(users[2], room.id, 9)['marked'] is True
    assert rooms.mark_cell(users[1], room.id, 2)['marked_items'] == [9, 2]
    assert rooms.mark_cell(users[1], room.id, 9)['marked_items'] == [2]
    assert rooms.find_player(room.id, users[2].user_id).marked_items == [9]
    assert Claim.query.count() == 0
    with pytest.raises(ConflictError):
        rooms.claim_cell(users[1], room.id, 3)
    assert actions(room.id)[-4:] == ['marked', 'marked', 'marked', 'unmarked']
    assert 'item-marked' in names(published)


def test_mark_rejected_in_team_modes(make_room, users):
    room = make_room()
    rooms.join_room(users[1], room.id)
    with pytest.raises(ConflictError):
        rooms.mark_cell(users[1], room.id, 0)


# ---- reset, votes, restarts ----

def test_reset_clears_board_but_keeps_config(make_room, owner, users, published):
    room = make_room()
    rooms.join_room(users[1], room.id)
    finish_game(room, owner)
    rooms.vote_restart(owner, room.id)
    seed, teams, owner_id = room.seed, room.teams, room.owner_id

    with pytest.raises(ForbiddenError):
        rooms.reset_board(users[1], room.id)
    rooms.reset_board(owner, room.id)

    room = db.session.get(Room, room.id)
    assert room.claims.count() == 0
    assert room.game_finished is False
    assert room.winning_team is None
    assert RestartVote.query.count() == 0
    assert room.restart_scheduled is None and room.restart_countdown is None
    assert (room.seed, room.teams, room.owner_id) == (seed, teams, owner_id)
    assert actions(room.id)[-1] == 'board-reset'
    assert names(published)[-1] == 'board-reset'


def test_reset_clears_every_players_marks(make_room, owner, users):
    room = make_room(game_mode='lockout')
    for user in users[1:3]:
        rooms.join_room(user, room.id)
        rooms.mark_cell(user, room.id, 1)
    rooms.reset_board(owner, room.id)
    assert all(p.marked_items == [] for p in Player.query.filter_by(room_id=room.id))


def test_vote_requires_finished_game_and_single_vote(make_room, owner, users):
    room = make_room()
    rooms.join_room(users[1], room.id)
    with pytest.raises(ConflictError):
        rooms.vote_restart(users[1], room.id)
    finish_game(room, owner)
    with pytest.raises(ForbiddenError):
        rooms.vote_restart(users[4], room.id)
    rooms.vote_restart(users[1], room.id)
    with pytest.raises(ConflictError) as exc:
        rooms.vote_restart(users[1], room.id)
    assert exc.value.message == 'Already voted'


def test_majority_of_five_needs_three_votes(make_room, owner, users, scheduler, published):
    room = make_room()
    for user in users[1:]:
        rooms.join_room(user, room.id, 1)
    finish_game(room, owner)
    assert Player.query.filter_by(room_id=room.id).count() == 5

    first = rooms.vote_restart(users[1], room.id)
    second = rooms.vote_restart(users[2], room.id)
    assert (first['majority'], second['votes']) == (3, 2)
    assert second['restart_scheduled'] is None
    assert not scheduler.is_pending(room.id)
    assert 'restart-scheduled' not in names(published)

    third = rooms.vote_restart(users[3], room.id)
    assert third['votes'] == 3
    assert third['countdown'] == 10
    assert third['restart_scheduled'] is not None
    assert scheduler.is_pending(room.id)
    assert names(published).count('restart-scheduled') == 1

    # further votes do not schedule a second countdown
    rooms.vote_restart(users[4], room.id)
    assert names(published).count('restart-scheduled') == 1
    assert scheduler.remaining(room.id) == 10


def test_countdown_expiry_resets_board(make_room, owner, users, scheduler, published):
    room = make_room()
    rooms.join_room(users[1], room.id, 1)
    finish_game(room, owner)
    rooms.vote_restart(users[1], room.id)
    assert scheduler.is_pending(room.id)

    scheduler.advance(9)
    assert db.session.get(Room, room.id).game_finished is True
    scheduler.advance(1)

    room = db.session.get(Room, room.id)
    assert room.game_finished is False
    assert room.claims.count() == 0
    assert room.restart_scheduled is None
    assert not scheduler.is_pending(room.id)
    countdowns = [p['countdown'] for _, e, p in published if e == 'restart-countdown']
    assert countdowns == list(range(9, -1, -1))
    assert names(published)[-1] == 'board-reset'
    reset = Activity.query.filter_by(room_id=room.id, action='board-reset').one()
    assert reset.user_id == users[1].user_id


def test_owner_restart(make_room, owner, users, scheduler):
    room = make_room()
    rooms.join_room(users[1], room.id, 1)
    with pytest.raises(ConflictError):
        rooms.owner_restart(owner, room.id)
    finish_game(room, owner)
    with pytest.raises(ForbiddenError):
        rooms.owner_restart(users[1], room.id)
    with pytest.raises(ValidationError):
        rooms.owner_restart(owner, room.id, instant=True, countdown=60)

    result = rooms.owner_restart(owner, room.id, instant=True, countdown=3)
    assert result == {'scheduled': True, 'countdown': 3, 'scheduled_at': result['scheduled_at']}
    again = rooms.owner_restart(owner, room.id)
    assert again['scheduled'] is False
    assert again['countdown'] == 3

    scheduler.advance(3)
    assert db.session.get(Room, room.id).game_finished is False


def test_owner_restart_defaults(make_room, owner, scheduler):
    room = make_room()
    finish_game(room, owner)
    assert rooms.owner_restart(owner, room.id)['countdown'] == 10
    rooms.reset_board(owner, room.id)
    finish_game(room, owner)
    assert rooms.owner_restart(owner, room.id, instant=True)['countdown'] == 5


def test_reset_cancels_pending_countdown(make_room, owner, scheduler, published):
    room = make_room()
    finish_game(room, owner)
    rooms.owner_restart(owner, room.id)
    rooms.reset_board(owner, room.id)
    assert not scheduler.is_pending(room.id)
    scheduler.advance(10)
    assert actions(room.id).count('board-reset') == 1


def test_delete_room_is_owner_only_and_total(make_room, owner, users, scheduler, published):
    room = make_room()
    rooms.join_room(users[1], room.id, 1)
    finish_game(room, owner)
    rooms.vote_restart(users[1], room.id)
    with pytest.raises(ForbiddenError):
        rooms.delete_room(users[1], room.id)

    rooms.delete_room(owner, room.id)
    assert Room.query.count() == 0
    assert Player.query.count() == 0
    assert Claim.query.count() == 0
    assert Activity.query.count() == 0
    assert RestartVote.query.count() == 0
    assert not scheduler.is_pending(room.id)
    assert names(published)[-1] == 'room-deleted'


def test_update_items_regenerates_board(make_room, owner, users, published):
    room = make_room()
    pool = [f'New {i}' for i in range(40)]
    with pytest.raises(ForbiddenError):
        rooms.update_items(users[1], room.id, pool)
    with pytest.raises(ValidationError):
        rooms.update_items(owner, room.id, pool[:10])

    titles = rooms.update_items(owner, room.id, pool)
    assert len(titles) == 25 and set(titles) <= set(pool)
    assert [c['title'] for c in rooms.board_view(room.id)] == titles
    assert published[-1][1] == 'bingo-items-updated'


def test_board_view_highlights_winning_line(make_room, owner):
    room = make_room()
    finish_game(room, owner)
    view = rooms.board_view(room.id, owner.user_id)
    assert [c['index'] for c in view if c['winning']] == [0, 1, 2, 3, 4]
    assert all(c['locked'] for c in view)
    assert view[0]['claimed_by_teams'] == [0]


def test_broadcast_failure_keeps_mutation(make_room, owner, monkeypatch):
    room = make_room()
    rooms.join_room(owner, room.id, 0)

    def _boom(*args, **kwargs):
        raise RuntimeError('transport down')

    monkeypatch.setattr(broadcast.socketio, 'emit', _boom)
    result = rooms.claim_cell(owner, room.id, 0)
    assert result['claimed'] is True
    assert Claim.query.filter_by(room_id=room.id).count() == 1


def test_activity_listing_is_newest_first(make_room, owner):
    room = make_room()
    rooms.join_room(owner, room.id, 0)
    rooms.claim_cell(owner, room.id, 0)
    rooms.claim_cell(owner, room.id, 0)
    listed = [a.action for a in rooms.list_activities(room.id, limit=2)]
    assert listed == ['unclaimed', 'claimed']
