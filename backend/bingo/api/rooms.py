from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user
from bingo import db
from bingo.services.game import rooms as svc
from bingo.services.game.errors import GameError
from bingo.services.game.rooms import Identity


rooms = Blueprint('rooms', __name__)


def _actor() -> Identity:
    return Identity.from_user(current_user)


@rooms.errorhandler(GameError)
def handle_game_error(exc):
    db.session.rollback()
    return jsonify(exc.to_dict()), exc.status_code


@rooms.route('', methods=['POST'])
@login_required
def create_room():
    data = request.get_json(silent=True) or {}
    room = svc.create_room(
        _actor(),
        room_name=data.get('room_name'),
        game_mode=data.get('game_mode'),
        board_size=data.get('board_size', 0),
        teams=data.get('teams'),
        items=data.get('bingo_items'),
        seed=data.get('seed'),
        room_password=data.get('room_password'),
    )
    return jsonify(room.to_dict()), 201


@rooms.route('/stats', methods=['GET'])
@login_required
def owned_room_stats():
    """Summary of the room the caller owns, if any."""
    return jsonify({'room': svc.owned_room_summary(_actor())})


@rooms.route('/<int:room_id>', methods=['GET'])
def get_room(room_id):
    return jsonify(svc.get_room(room_id).to_dict())


@rooms.route('/<int:room_id>', methods=['DELETE'])
@login_required
def delete_room(room_id):
    svc.delete_room(_actor(), room_id)
    return jsonify({'success': True})


@rooms.route('/<int:room_id>/board', methods=['GET'])
def get_board(room_id):
    viewer_id = current_user.id if current_user.is_authenticated else None
    return jsonify(svc.board_view(room_id, viewer_id))


@rooms.route('/<int:room_id>/bingo-items', methods=['PUT'])
@login_required
def update_bingo_items(room_id):
    data = request.get_json(silent=True) or {}
    titles = svc.update_items(_actor(), room_id, data.get('bingo_items'))
    return jsonify({'success': True, 'bingo_items': titles})


@rooms.route('/<int:room_id>/join', methods=['POST'])
@login_required
def join_room(room_id):
    data = request.get_json(silent=True) or {}
    player = svc.join_room(_actor(), room_id, data.get('team_index'))
    return jsonify({'success': True, 'player': player.to_dict()})


@rooms.route('/<int:room_id>/leave', methods=['POST'])
@login_required
def leave_room(room_id):
    svc.leave_room(_actor(), room_id)
    return jsonify({'success': True})


@rooms.route('/<int:room_id>/kick', methods=['POST'])
@login_required
def kick_player(room_id):
    data = request.get_json(silent=True) or {}
    svc.kick_player(_actor(), room_id, data.get('user_id'))
    return jsonify({'success': True})


@rooms.route('/<int:room_id>/connection', methods=['POST'])
@login_required
def connection_event(room_id):
    data = request.get_json(silent=True) or {}
    svc.record_connection(_actor(), room_id, data.get('action'))
    return jsonify({'success': True})


@rooms.route('/<int:room_id>/mark', methods=['POST'])
@login_required
def mark_cell(room_id):
    """Claim (team modes) or mark (lockout) a cell; toggles on repeat."""
    data = request.get_json(silent=True) or {}
    result = svc.toggle_cell(_actor(), room_id, data.get('cell_index'), data.get('item_title'))
    result['success'] = True
    return jsonify(result)


@rooms.route('/<int:room_id>/reset', methods=['POST'])
@login_required
def reset_board(room_id):
    svc.reset_board(_actor(), room_id)
    return jsonify({'success': True})


@rooms.route('/<int:room_id>/vote-restart', methods=['POST'])
@login_required
def vote_restart(room_id):
    result = svc.vote_restart(_actor(), room_id)
    result['success'] = True
    return jsonify(result)


@rooms.route('/<int:room_id>/restart-game', methods=['POST'])
@login_required
def restart_game(room_id):
    data = request.get_json(silent=True) or {}
    result = svc.owner_restart(_actor(), room_id, instant=bool(data.get('instant', False)), countdown=data.get('countdown'))
    result['success'] = True
    return jsonify(result)


@rooms.route('/<int:room_id>/players', methods=['GET'])
def list_players(room_id):
    return jsonify([p.to_dict() for p in svc.list_players(room_id)])


@rooms.route('/<int:room_id>/activities', methods=['GET'])
def list_activities(room_id):
    default = int(current_app.config.get('ACTIVITY_LIMIT', 50))
    limit = request.args.get('limit', default, type=int)
    return jsonify([a.to_dict() for a in svc.list_activities(room_id, max(1, limit))])
