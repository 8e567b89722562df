import hmac
import os
import logging
from flask import Flask, request, jsonify
from flask_login import LoginManager
from sqlalchemy.exc import SQLAlchemyError

from shared.errors import AuthenticationError, AuthorizationError, MixError, ValidationError
from shared.pubsub import PubSubClient
from .config import config
from .lookups import validate_id
from .mix_registry import MixRegistry
from .models import db, Player
from .player_directory import PlayerDirectory

logger = logging.getLogger(__name__)

login_manager = LoginManager()


@login_manager.request_loader
def load_player_from_request(req):
    """
    Resolve the calling player from the X-Player-Id header.

    The header is set by the upstream login gateway after it validated the
    player's session; this service only looks the player up.
    """
    player_id = req.headers.get('X-Player-Id')
    if not player_id:
        return None
    try:
        player_id = validate_id(player_id, 'player_id')
    except ValidationError:
        return None
    return db.session.get(Player, player_id)


def require_sync_key(app: Flask):
    """
    Profile writes come only from the level-sync service, which sends the
    shared key in X-Sync-Key. An empty SYNC_API_KEY disables the endpoint.
    """
    expected = app.config.get('SYNC_API_KEY') or ''
    if not expected:
        raise AuthorizationError("Profile sync is disabled")
    supplied = request.headers.get('X-Sync-Key', '')
    if not supplied or not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise AuthenticationError("Valid sync key required")


def create_app(config_name: str = None, notifier: PubSubClient = None) -> Flask:
    """Application factory for the mix lobby service."""
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])

    # Initialize extensions
    db.init_app(app)
    login_manager.init_app(app)

    # Initialize services
    notifier = notifier or PubSubClient(app.config['REDIS_URL'], timeout=app.config['REDIS_TIMEOUT'])
    registry = MixRegistry(notifier)
    players = PlayerDirectory()

    # Create tables
    with app.app_context():
        db.create_all()

    # Store services on app for access in routes
    app.notifier = notifier
    app.registry = registry
    app.players = players

    register_error_handlers(app)
    register_api_routes(app)

    from .routes import mixes
    app.register_blueprint(mixes.bp)

    return app


def register_error_handlers(app: Flask):

    @app.errorhandler(MixError)
    def handle_mix_error(error: MixError):
        if error.status_code >= 500:
            logger.error(f"{error.error_type}: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(SQLAlchemyError)
    def handle_store_error(error: SQLAlchemyError):
        db.session.rollback()
        logger.error(f"Unhandled record store error: {error}")
        return jsonify({'error': 'StorageError', 'message': 'Record store unavailable'}), 503

    @app.errorhandler(404)
    def handle_not_found(error):
        return jsonify({'error': 'NotFound', 'message': 'Resource not found'}), 404


def history_entry(mix) -> dict:
    entry = mix.to_dict()
    entry['stats'] = [s.to_dict() for s in mix.stats]
    entry['mvp'] = next((s.player_id for s in mix.stats if s.is_mvp), None)
    return entry


def register_api_routes(app: Flask):
    """Register player, leaderboard and service routes."""

    # ==================== Players ====================

    @app.route('/api/v1/players/<player_id>', methods=['PUT'])
    def api_upsert_player(player_id: str):
        """Create or refresh a player profile from the level-sync flow."""
        require_sync_key(app)
        data = request.get_json(silent=True) or {}
        player = app.players.upsert(
            player_id=player_id,
            nickname=data.get('nickname'),
            steam_id=data.get('steam_id'),
            faceit_level=data.get('faceit_level', 0),
            gc_level=data.get('gc_level', 0),
            avatar_url=data.get('avatar_url')
        )
        return jsonify(player.to_dict())

    @app.route('/api/v1/players/<player_id>', methods=['GET'])
    def api_get_player(player_id: str):
        return jsonify(app.players.get_player(player_id).to_dict())

    @app.route('/api/v1/players/<player_id>/matches', methods=['GET'])
    def api_player_matches(player_id: str):
        """Finished mixes for a player."""
        limit = request.args.get('limit', 20, type=int)
        mixes = app.players.match_history(player_id, limit=limit)
        return jsonify({
            'player_id': player_id,
            'matches': [history_entry(m) for m in mixes],
            'count': len(mixes)
        })

    @app.route('/api/v1/players/<player_id>/summary', methods=['GET'])
    def api_player_summary(player_id: str):
        return jsonify(app.players.career(player_id))

    @app.route('/api/v1/leaderboard', methods=['GET'])
    def api_leaderboard():
        limit = request.args.get('limit', 50, type=int)
        standings = app.players.leaderboard(limit=limit)
        return jsonify({'players': standings, 'count': len(standings)})

    @app.route('/api/v1/maps', methods=['GET'])
    def api_map_pool():
        return jsonify({'maps': list(app.config['MAP_POOL'])})

    # ==================== Health Check ====================

    @app.route('/health')
    def health_check():
        """Health check endpoint."""
        redis_ok = app.notifier.ping()

        try:
            db.session.execute(db.text('SELECT 1'))
            db_ok = True
        except SQLAlchemyError:
            db.session.rollback()
            db_ok = False

        status = 'healthy' if (redis_ok and db_ok) else 'unhealthy'
        code = 200 if status == 'healthy' else 503

        return jsonify({
            'status': status,
            'redis': 'connected' if redis_ok else 'disconnected',
            'database': 'connected' if db_ok else 'disconnected'
        }), code
