from flask import Blueprint, jsonify, request, current_app

from roundmirror.services.rounds.errors import (
    ActionConflict,
    ActionRejected,
    ReadyCheckExpired,
    UnknownTopic,
)
from roundmirror.services.rounds.hub import HTTP_HOLDER, hub
from roundmirror.services.rounds.modes import parse_topic


rounds = Blueprint('rounds', __name__)


def _session_or_error(topic: str):
    try:
        parse_topic(topic)
    except UnknownTopic as exc:
        return None, (jsonify({'error': str(exc)}), 404)
    session = hub.get(topic)
    if session is None:
        return None, (jsonify({'error': f"topic '{topic}' is not subscribed"}), 404)
    return session, None


@rounds.route('/<topic>/subscribe', methods=['POST'])
def subscribe_topic(topic):
    try:
        session = hub.subscribe(topic)
    except UnknownTopic as exc:
        return jsonify({'error': str(exc)}), 404
    return jsonify(session.view()), 201


@rounds.route('/<topic>/unsubscribe', methods=['POST'])
def unsubscribe_topic(topic):
    if not hub.holds(topic, HTTP_HOLDER):
        return jsonify({'error': f"topic '{topic}' has no HTTP subscription"}), 404
    released = hub.unsubscribe(topic, HTTP_HOLDER)
    return jsonify({'topic': topic, 'released': released}), 200


@rounds.route('/<topic>/state', methods=['GET'])
def get_state(topic):
    session, err = _session_or_error(topic)
    if err:
        return err
    return jsonify(session.view(user=request.args.get('wallet'))), 200


@rounds.route('/<topic>/actions', methods=['POST'])
def submit_action(topic):
    session, err = _session_or_error(topic)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    wallet = data.get('wallet')
    kind = data.get('kind')
    if not all([wallet, kind]):
        return jsonify({'error': 'wallet and kind are required'}), 400
    payload = data.get('payload') or {}
    if not isinstance(payload, dict):
        return jsonify({'error': 'payload must be an object'}), 400
    try:
        action = session.submit(wallet, kind, payload)
    except ValueError as exc:
        return jsonify({'error': str(exc)}), 400
    except ActionConflict as exc:
        return jsonify({'error': str(exc)}), 409
    current_app.logger.info(
        f"[http-action] topic={topic} wallet={wallet} kind={kind} status={action.status.value}"
    )
    return jsonify(action.to_dict()), 202


@rounds.route('/<topic>/actions/acknowledge', methods=['POST'])
def acknowledge_action(topic):
    session, err = _session_or_error(topic)
    if err:
        return err
    wallet = (request.get_json(silent=True) or {}).get('wallet')
    if not wallet:
        return jsonify({'error': 'wallet is required'}), 400
    return jsonify({'acknowledged': session.acknowledge(wallet)}), 200


@rounds.route('/<topic>/ready', methods=['POST'])
def respond_ready(topic):
    session, err = _session_or_error(topic)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    wallet = data.get('wallet')
    ready = data.get('ready')
    if not wallet or not isinstance(ready, bool):
        return jsonify({'error': 'wallet and a boolean ready are required'}), 400
    try:
        status = session.respond_ready(wallet, ready)
    except ReadyCheckExpired as exc:
        return jsonify({'error': str(exc), 'status': 'not_ready'}), 410
    except (ActionConflict, ActionRejected) as exc:
        return jsonify({'error': str(exc)}), 409
    return jsonify({'status': status.value}), 200


@rounds.route('/<topic>/odds', methods=['GET'])
def get_odds(topic):
    session, err = _session_or_error(topic)
    if err:
        return err
    side = request.args.get('side')
    if not side:
        return jsonify({'error': 'side is required'}), 400
    try:
        amount = float(request.args.get('amount', 0))
    except ValueError:
        return jsonify({'error': 'amount must be a number'}), 400
    quote = session.odds(side, amount=amount, user=request.args.get('wallet'))
    if quote is None:
        return jsonify({'error': 'no round to quote'}), 404
    return jsonify(quote.to_dict()), 200


@rounds.route('/<topic>/diagnostics', methods=['GET'])
def get_diagnostics(topic):
    session, err = _session_or_error(topic)
    if err:
        return err
    return jsonify(session.diagnostics()), 200


@rounds.route('/<topic>/resync', methods=['POST'])
def force_resync(topic):
    session, err = _session_or_error(topic)
    if err:
        return err
    hub.resync(topic)
    return jsonify(session.diagnostics()), 202
