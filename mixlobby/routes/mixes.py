from flask import Blueprint, request, jsonify, Response, current_app
from flask_login import current_user

from shared.errors import AuthenticationError, ValidationError

bp = Blueprint('mixes', __name__)


def acting_player_id() -> str:
    """Identity of the caller, resolved by the login manager's request loader."""
    if not current_user.is_authenticated:
        raise AuthenticationError()
    return current_user.id


def json_body() -> dict:
    return request.get_json(silent=True) or {}


# --- Routes ---

@bp.route('/api/v1/mixes', methods=['POST'])
def create_mix():
    mix = current_app.registry.create_mix(acting_player_id())
    return jsonify(current_app.registry.describe(mix.id)), 201


@bp.route('/api/v1/mixes', methods=['GET'])
def list_mixes():
    status = request.args.get('status')
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    mixes = current_app.registry.list_mixes(status=status, limit=limit, offset=offset)
    return jsonify({
        'mixes': [m.to_dict() for m in mixes],
        'count': len(mixes),
        'limit': limit,
        'offset': offset
    })


@bp.route('/api/v1/mixes/<mix_id>')
def get_mix(mix_id):
    return jsonify(current_app.registry.describe(mix_id))


@bp.route('/api/v1/mixes/<mix_id>/roster')
def get_roster(mix_id):
    roster = current_app.registry.slots.get_roster(mix_id)
    return jsonify({
        'mix_id': mix_id,
        'players': [p.to_dict() for p in roster],
        'count': len(roster)
    })


@bp.route('/api/v1/mixes/<mix_id>/join', methods=['POST'])
def join_mix(mix_id):
    roster = current_app.registry.slots.join(mix_id, acting_player_id())
    return jsonify({
        'mix_id': mix_id,
        'players': [p.to_dict() for p in roster],
        'count': len(roster)
    })


@bp.route('/api/v1/mixes/<mix_id>/balance', methods=['POST'])
def balance_mix(mix_id):
    result = current_app.registry.balance(mix_id, acting_player_id())
    return jsonify({
        'message': 'Teams balanced',
        'balance': result.to_dict(),
        'mix': current_app.registry.describe(mix_id)
    })


@bp.route('/api/v1/mixes/<mix_id>/veto')
def get_veto(mix_id):
    return jsonify(current_app.registry.veto.get_state(mix_id).to_dict())


@bp.route('/api/v1/mixes/<mix_id>/bans', methods=['POST'])
def ban_map(mix_id):
    player_id = acting_player_id()
    data = json_body()

    map_id = data.get('map_id')
    if not map_id:
        raise ValidationError('map_id is required')

    expected_count = data.get('expected_count')
    if expected_count is not None and (isinstance(expected_count, bool) or not isinstance(expected_count, int)):
        raise ValidationError('expected_count must be an integer')

    state = current_app.registry.veto.ban(mix_id, map_id, player_id, expected_count=expected_count)
    return jsonify(state.to_dict())


@bp.route('/api/v1/mixes/<mix_id>/server', methods=['PUT'])
def set_server(mix_id):
    player_id = acting_player_id()
    mix = current_app.registry.set_server_ip(mix_id, player_id, json_body().get('server_ip'))
    return jsonify({'message': 'Server address updated', 'server_ip': mix.server_ip})


@bp.route('/api/v1/mixes/<mix_id>/finalize', methods=['POST'])
def finalize_mix(mix_id):
    player_id = acting_player_id()
    result = current_app.registry.finalize(mix_id, player_id, json_body().get('winner'))
    return jsonify({
        'message': f'Mix finished, Team {result.winner} won',
        'result': result.to_dict()
    })


@bp.route('/api/v1/mixes/<mix_id>/stats', methods=['POST'])
def record_stats(mix_id):
    player_id = acting_player_id()
    data = json_body()
    sheet = current_app.registry.stats.record(
        mix_id,
        player_id,
        score_a=data.get('score_a'),
        score_b=data.get('score_b'),
        players=data.get('players')
    )
    return jsonify(sheet.to_dict())


@bp.route('/api/v1/mixes/<mix_id>/stats')
def get_stats(mix_id):
    return jsonify(current_app.registry.stats.sheet(mix_id).to_dict())


@bp.route('/api/v1/mixes/<mix_id>/events')
def mix_events(mix_id):
    """SSE stream of payload-free change signals for one mix."""
    mix = current_app.registry.get_mix(mix_id)
    notifier = current_app.notifier
    keepalive = current_app.config.get('SSE_KEEPALIVE_SECONDS', 30)
    mix_id = mix.id

    def generate():
        for event in notifier.stream_mix(mix_id, keepalive=keepalive):
            if event is None:
                yield ": keepalive\n\n"
            else:
                yield f"data: {event.to_json()}\n\n"

    return Response(generate(), mimetype='text/event-stream', headers={
        'Cache-Control': 'no-cache',
        'X-Accel-Buffering': 'no'
    })
