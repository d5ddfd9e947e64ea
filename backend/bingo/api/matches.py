from datetime import timedelta

from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user
from bingo.services.game.status import recent_matches


matches = Blueprint('matches', __name__)


@matches.route('', methods=['GET'])
@login_required
def list_matches():
    """
    Returns recent matches framed for the caller: won/lost against their team,
    with finished matches recovered from rooms that have since been reset.
    """
    cfg = current_app.config
    limit = request.args.get('limit', int(cfg.get('MATCHES_LIMIT', 50)), type=int)
    inactive_after = timedelta(seconds=int(cfg.get('INACTIVE_AFTER_SEC', 3600)))
    return jsonify({'matches': recent_matches(current_user.id, limit=max(1, limit), inactive_after=inactive_after)})
