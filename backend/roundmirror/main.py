from flask import Blueprint, jsonify

from roundmirror.services.rounds.hub import hub
from roundmirror.services.rounds.modes import MODES

main = Blueprint('main', __name__)

@main.route('/')
def index():
    return jsonify({'service': 'roundmirror', 'modes': sorted(MODES)})

@main.route('/health', methods=['GET', 'OPTIONS'])
def health():
    status = hub.diagnostics()
    status['status'] = 'ok'
    return jsonify(status), 200
