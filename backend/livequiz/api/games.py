from flask import Blueprint, jsonify, request

from livequiz import get_services

games = Blueprint('games', __name__)


@games.route('/games/active', methods=['GET'])
def active_games():
    services = get_services()
    summaries = []
    for game in services.sessions.list_games():
        with game.lock:
            summary = game.summary()
        summary.pop('players', None)
        summaries.append(summary)
    return jsonify(summaries)


@games.route('/games/<string:pin>', methods=['GET'])
def game_state(pin):
    game = get_services().sessions.get_game(pin)
    if game is None:
        return jsonify({'error': 'Game not found'}), 404
    with game.lock:
        return jsonify(game.summary())


@games.route('/results', methods=['GET'])
def recent_results():
    try:
        limit = int(request.args.get('limit', 20))
    except (TypeError, ValueError):
        return jsonify({'error': 'limit must be an integer'}), 400
    limit = max(1, min(limit, 100))
    rows = get_services().results.recent(limit)
    return jsonify([row.to_dict(include_payload=False) for row in rows])


@games.route('/results/<string:pin>', methods=['GET'])
def results_for_pin(pin):
    rows = get_services().results.for_pin(pin)
    if not rows:
        return jsonify({'error': 'No results for that PIN'}), 404
    return jsonify([row.to_dict() for row in rows])
