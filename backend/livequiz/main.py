from flask import Blueprint, jsonify

from livequiz import get_services

main = Blueprint('main', __name__)


@main.route('/health')
def health():
    services = get_services()
    return jsonify({'status': 'ok', **services.stats()})
