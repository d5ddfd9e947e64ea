import os
import sys
import pytest
from flask import g

# Ensure the backend root (containing the `bingo` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from bingo import create_app, db, socketio
from bingo.models import User
from bingo.services.game.rooms import Identity
from bingo.services.game.scheduler import restart_scheduler


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    CORS_ORIGINS = ['http://localhost:3000']
    RESTART_COUNTDOWN_SEC = 10
    INSTANT_RESTART_COUNTDOWN_SEC = 5
    RESTART_SCHEDULER = 'manual'
    INACTIVE_AFTER_SEC = 3600
    MATCHES_LIMIT = 50
    ACTIVITY_LIMIT = 50


ITEMS_25 = [f'Item {i}' for i in range(25)]
TEAMS = [{'name': 'Red', 'color': '#ff0000'}, {'name': 'Blue', 'color': '#00f'}]


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)

    @application.teardown_request
    def _forget_login_user(exc):
        # requests share the fixture's app context; drop Flask-Login's cached caller
        g.pop('_login_user', None)

    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def scheduler(flask_app):
    return restart_scheduler


@pytest.fixture()
def users(flask_app):
    """Five users, user-1 .. user-5, as Identity objects."""
    out = []
    for i, name in enumerate(['Alice', 'Bob', 'Cara', 'Dan', 'Eve'], start=1):
        user = User(id=f'user-{i}', name=name)
        db.session.add(user)
        out.append(Identity(user_id=user.id, display_name=name))
    db.session.commit()
    return out


@pytest.fixture()
def owner(users):
    return users[0]


def auth(identity):
    return {'X-User-Id': identity.user_id}


@pytest.fixture()
def make_room(owner):
    from bingo.services.game import rooms

    def _make(game_mode='classic-1', items=None, teams=None, seed='abc', board_size=0, actor=None):
        return rooms.create_room(
            actor or owner,
            room_name='Test Room',
            game_mode=game_mode,
            board_size=board_size,
            teams=teams if teams is not None else TEAMS,
            items=items if items is not None else list(ITEMS_25),
            seed=seed,
        )
    return _make


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass
