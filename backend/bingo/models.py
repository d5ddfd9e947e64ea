from bingo import db
from flask_login import UserMixin
from datetime import datetime, timezone
import json


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo so everything is stored naive."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() + 'Z' if value else None


class User(UserMixin, db.Model):
    __tablename__ = 'user'
    id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(128), nullable=True)
    image = db.Column(db.String(512), nullable=True)
    created = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name or 'Unknown',
            'image': self.image or '',
        }


class Room(db.Model):
    __tablename__ = 'room'
    __table_args__ = (
        db.CheckConstraint(
            '(game_finished = true AND winning_team IS NOT NULL) OR '
            '(game_finished = false AND winning_team IS NULL)',
            name='ck_room_finished_has_winner',
        ),
    )
    id = db.Column(db.Integer, primary_key=True)
    room_name = db.Column(db.String(32), nullable=False)
    room_password = db.Column(db.String(128), nullable=True)
    seed = db.Column(db.String(128), nullable=False)
    game_mode = db.Column(db.String(32), nullable=False)  # tag as chosen, e.g. classic-2
    mode_kind = db.Column(db.String(16), nullable=False)  # resolved at creation
    required_lines = db.Column(db.Integer, nullable=False, default=1)
    board_size = db.Column(db.Integer, nullable=False, default=0)  # 0, 50, 100
    teams_json = db.Column(db.Text, nullable=False)  # JSON-encoded list of {name, color}
    items_json = db.Column(db.Text, nullable=False)  # JSON-encoded list of item titles
    owner_id = db.Column(db.String(64), db.ForeignKey('user.id'), nullable=False, index=True)
    game_finished = db.Column(db.Boolean, nullable=False, default=False)
    winning_team = db.Column(db.Integer, nullable=True)
    restart_countdown = db.Column(db.Integer, nullable=True)
    restart_scheduled = db.Column(db.DateTime, nullable=True)
    last_updated = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow, index=True)

    claims = db.relationship('Claim', back_populates='room', lazy='dynamic')
    players = db.relationship('Player', back_populates='room')

    @property
    def teams(self):
        return json.loads(self.teams_json) if self.teams_json else []

    @teams.setter
    def teams(self, value):
        self.teams_json = json.dumps([{'name': t['name'], 'color': t['color']} for t in value])

    @property
    def items(self):
        return json.loads(self.items_json) if self.items_json else []

    @items.setter
    def items(self, value):
        self.items_json = json.dumps(list(value))

    @property
    def mode(self):
        from bingo.services.game.modes import GameMode, ModeKind
        return GameMode(tag=self.game_mode, kind=ModeKind(self.mode_kind), required_lines=self.required_lines)

    @property
    def grid_size(self):
        from bingo.services.game.board import grid_size_for
        return grid_size_for(self.board_size)

    def to_dict(self):
        return {
            'id': self.id,
            'room_name': self.room_name,
            'seed': self.seed,
            'game_mode': self.game_mode,
            'mode_kind': self.mode_kind,
            'required_lines': self.required_lines,
            'board_size': self.board_size,
            'grid_size': self.grid_size,
            'teams': self.teams,
            'owner_id': self.owner_id,
            'game_finished': self.game_finished,
            'winning_team': self.winning_team,
            'claimed_items': [c.to_dict() for c in self.claims.order_by(Claim.id)],
            'restart_votes': [v.user_id for v in RestartVote.query.filter_by(room_id=self.id).order_by(RestartVote.id)],
            'restart_countdown': self.restart_countdown,
            'restart_scheduled': _iso(self.restart_scheduled),
            'last_updated': _iso(self.last_updated),
        }


class Claim(db.Model):
    __tablename__ = 'claim'
    __table_args__ = (
        db.UniqueConstraint('room_id', 'cell_index', 'team_index', name='uq_claim_room_cell_team'),
    )
    id = db.Column(db.Integer, primary_key=True)
    room_id = db.Column(db.Integer, db.ForeignKey('room.id'), nullable=False, index=True)
    cell_index = db.Column(db.Integer, nullable=False)
    team_index = db.Column(db.Integer, nullable=False)
    claimed_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    claimed_by = db.Column(db.String(64), nullable=False)
    room = db.relationship('Room', back_populates='claims')

    def to_dict(self):
        return {
            'cell_index': self.cell_index,
            'team_index': self.team_index,
            'claimed_at': _iso(self.claimed_at),
            'claimed_by': self.claimed_by,
        }


class Player(db.Model):
    __tablename__ = 'player'
    __table_args__ = (
        db.UniqueConstraint('room_id', 'user_id', name='uq_player_room_user'),
    )
    id = db.Column(db.Integer, primary_key=True)
    room_id = db.Column(db.Integer, db.ForeignKey('room.id'), nullable=False, index=True)
    user_id = db.Column(db.String(64), db.ForeignKey('user.id'), nullable=False)
    team_index = db.Column(db.Integer, nullable=True)
    joined_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    last_active = db.Column(db.DateTime, nullable=False, default=utcnow)
    room = db.relationship('Room', back_populates='players')
    user = db.relationship('User')
    marks = db.relationship('MarkedItem', order_by='MarkedItem.id', lazy='dynamic')

    @property
    def marked_items(self):
        return [m.cell_index for m in self.marks]

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'user_name': (self.user.name if self.user else None) or 'Unknown',
            'user_image': (self.user.image if self.user else None) or '',
            'team_index': self.team_index,
            'marked_items': self.marked_items,
            'joined_at': _iso(self.joined_at),
            'last_active': _iso(self.last_active),
        }


class MarkedItem(db.Model):
    __tablename__ = 'marked_item'
    __table_args__ = (
        db.UniqueConstraint('player_id', 'cell_index', name='uq_marked_item_player_cell'),
    )
    id = db.Column(db.Integer, primary_key=True)
    player_id = db.Column(db.Integer, db.ForeignKey('player.id'), nullable=False, index=True)
    cell_index = db.Column(db.Integer, nullable=False)


class RestartVote(db.Model):
    __tablename__ = 'restart_vote'
    __table_args__ = (
        db.UniqueConstraint('room_id', 'user_id', name='uq_restart_vote_room_user'),
    )
    id = db.Column(db.Integer, primary_key=True)
    room_id = db.Column(db.Integer, db.ForeignKey('room.id'), nullable=False, index=True)
    user_id = db.Column(db.String(64), nullable=False)


class Activity(db.Model):
    __tablename__ = 'activity'
    id = db.Column(db.Integer, primary_key=True)
    room_id = db.Column(db.Integer, db.ForeignKey('room.id'), nullable=False, index=True)
    user_id = db.Column(db.String(64), nullable=False)
    user_name = db.Column(db.String(128), nullable=False)
    action = db.Column(db.String(32), nullable=False)
    item_title = db.Column(db.Text, nullable=True)
    cell_index = db.Column(db.Integer, nullable=True)
    team_index = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'user_name': self.user_name,
            'action': self.action,
            'item_title': self.item_title,
            'cell_index': self.cell_index,
            'team_index': self.team_index,
            'created_at': _iso(self.created_at),
        }
