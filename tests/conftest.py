"""
Pytest configuration and fixtures for mix lobby tests.
"""
import os
import sys
import uuid
import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# Set testing environment before importing app
os.environ['FLASK_ENV'] = 'testing'

from mixlobby.app import create_app
from mixlobby.models import db, Player
from mixlobby.veto import turn_for


@pytest.fixture(scope='session')
def app():
    """Create application for testing. Tables are created by the factory."""
    app = create_app('testing')
    yield app

    with app.app_context():
        db.drop_all()


@pytest.fixture(autouse=True)
def clean_tables(app):
    """Empty every table before each test."""
    with app.app_context():
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        db.session.remove()


@pytest.fixture(autouse=True)
def mock_redis(app, mocker):
    """Replace the change channel's Redis connection."""
    return mocker.patch.object(app.notifier, 'redis')


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """
    Hold an app context for tests that call services directly.

    HTTP tests must not use this: the login manager caches the caller on
    ``g``, which lives as long as the app context.
    """
    with app.app_context():
        yield db.session
        db.session.rollback()
        db.session.remove()


@pytest.fixture
def registry(app):
    return app.registry


@pytest.fixture
def make_player(app):
    """Factory creating a player and returning its id."""
    def _make(nickname='player', gc_level=0, faceit_level=0, elo_interno=0):
        player_id = str(uuid.uuid4())
        with app.app_context():
            db.session.add(Player(
                id=player_id,
                nickname=nickname,
                gc_level=gc_level,
                faceit_level=faceit_level,
                elo_interno=elo_interno
            ))
            db.session.commit()
        return player_id
    return _make


@pytest.fixture
def players(make_player):
    """Ten players with powers 1000, 900, ..., 100 in creation order."""
    return [make_player(f'player{i + 1}', gc_level=10 - i) for i in range(10)]


@pytest.fixture
def creator_id(players):
    return players[0]


@pytest.fixture
def sample_mix(app, players):
    """A waiting mix created by the first player."""
    with app.app_context():
        return app.registry.create_mix(players[0]).id


@pytest.fixture
def full_mix(app, players, sample_mix):
    """A waiting mix with all ten players joined."""
    with app.app_context():
        for player_id in players[1:]:
            app.registry.slots.join(sample_mix, player_id)
    return sample_mix


@pytest.fixture
def sorting_mix(app, players, full_mix):
    """A balanced mix with the veto open."""
    with app.app_context():
        app.registry.balance(full_mix, players[0])
    return full_mix


@pytest.fixture
def ban_in_turn(app):
    """Factory banning a map as a member of the side whose turn it is."""
    def _ban(mix_id, map_id):
        with app.app_context():
            mix = app.registry.get_mix(mix_id)
            side = mix.team_a if turn_for(len(mix.banned_maps)) == 'A' else mix.team_b
            return app.registry.veto.ban(mix_id, map_id, side[0])
    return _ban


@pytest.fixture
def live_mix(app, sorting_mix, ban_in_turn):
    """A mix whose veto finished; de_overpass is the final map."""
    for map_id in app.config['MAP_POOL'][:-1]:
        ban_in_turn(sorting_mix, map_id)
    return sorting_mix


@pytest.fixture
def finished_mix(app, players, live_mix):
    """A live mix finalized with Team A as the winner."""
    with app.app_context():
        app.registry.finalize(live_mix, players[0], 'A')
    return live_mix


@pytest.fixture
def team_ids(app):
    """Return (team_a, team_b) player ids of a balanced mix."""
    def _teams(mix_id):
        with app.app_context():
            mix = app.registry.get_mix(mix_id)
            return list(mix.team_a), list(mix.team_b)
    return _teams


@pytest.fixture
def elo_of(app):
    def _elo(player_id):
        with app.app_context():
            return db.session.get(Player, player_id).elo_interno
    return _elo
