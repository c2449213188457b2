import logging

from flask import Blueprint, current_app, jsonify, request

from config import QUESTION_CATEGORIES
from credit_ledger.routes import error_status, request_wallet
from tokenomics import get_schedule

logger = logging.getLogger(__name__)

quiz_bp = Blueprint('quiz', __name__, url_prefix='/quiz')


def _get_manager():
    return current_app.extensions['quiz_manager']


def _wallet_required():
    return jsonify({'success': False, 'error': 'Valid wallet_address required', 'error_type': 'invalid_input'}), 400


def _respond(result: dict):
    return jsonify(result), error_status(result)


@quiz_bp.route('/api/categories')
def get_categories():
    return jsonify({'success': True, 'categories': QUESTION_CATEGORIES})


@quiz_bp.route('/api/tokenomics')
def get_tokenomics():
    """Per-level cost and reward table for client-side previews"""
    response = jsonify({'success': True, 'schedule': get_schedule()})
    response.headers['Cache-Control'] = 'public, max-age=300'
    return response


@quiz_bp.route('/api/challenge')
def get_challenge():
    """402 Payment Required with the price and nonce for one question"""
    try:
        level = request.args.get('level', 0)
        result = _get_manager().request_challenge(level)
        if not result.get('success'):
            return _respond(result)
        return jsonify(result), 402

    except Exception as e:
        logger.error(f"❌ Error issuing payment challenge: {e}")
        return jsonify({'success': False, 'error': 'Failed to issue payment challenge'}), 500


@quiz_bp.route('/api/next-question', methods=['POST'])
def next_question():
    try:
        data = request.get_json(silent=True) or {}
        wallet = request_wallet(data)
        if not wallet:
            return _wallet_required()

        return _respond(_get_manager().next_question(wallet, data))

    except Exception as e:
        logger.error(f"❌ Error delivering question: {e}")
        return jsonify({'success': False, 'error': 'Failed to deliver question'}), 500


@quiz_bp.route('/api/answer', methods=['POST'])
def submit_answer():
    try:
        data = request.get_json(silent=True) or {}
        wallet = request_wallet(data)
        if not wallet:
            return _wallet_required()

        result = _get_manager().submit_answer(wallet, data.get('run_id'), data.get('selected_index'))
        return _respond(result)

    except Exception as e:
        logger.error(f"❌ Error submitting answer: {e}")
        return jsonify({'success': False, 'error': 'Failed to submit answer'}), 500


@quiz_bp.route('/api/timeout', methods=['POST'])
def report_timeout():
    try:
        data = request.get_json(silent=True) or {}
        wallet = request_wallet(data)
        if not wallet:
            return _wallet_required()

        return _respond(_get_manager().report_timeout(wallet, data.get('run_id')))

    except Exception as e:
        logger.error(f"❌ Error reporting timeout: {e}")
        return jsonify({'success': False, 'error': 'Failed to end run'}), 500


@quiz_bp.route('/api/stop', methods=['POST'])
def stop_run():
    """Cash out a run"""
    try:
        data = request.get_json(silent=True) or {}
        wallet = request_wallet(data)
        if not wallet:
            return _wallet_required()

        result = _get_manager().stop_run(wallet, data.get('run_id'),
                                         allow_early_stop=bool(data.get('allow_early_stop', False)))
        return _respond(result)

    except Exception as e:
        logger.error(f"❌ Error stopping run: {e}")
        return jsonify({'success': False, 'error': 'Failed to stop run'}), 500


@quiz_bp.route('/api/abort', methods=['POST'])
def abort_run():
    try:
        data = request.get_json(silent=True) or {}
        wallet = request_wallet(data)
        if not wallet:
            return _wallet_required()

        return _respond(_get_manager().abort_run(wallet, data.get('run_id')))

    except Exception as e:
        logger.error(f"❌ Error aborting run: {e}")
        return jsonify({'success': False, 'error': 'Failed to abort run'}), 500
