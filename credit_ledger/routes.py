import logging

from flask import Blueprint, current_app, jsonify, request, session

from blockchain import is_valid_address
from tokenomics import to_units

logger = logging.getLogger(__name__)

credits_bp = Blueprint('credits', __name__, url_prefix='/credits')

ERROR_STATUS = {
    'invalid_input': 400,
    'not_authenticated': 401,
    'forbidden': 403,
    'run_not_found': 404,
    'insufficient_credits': 402,
    'payment_pending': 402,
    'payment_rejected': 402,
    'challenge_not_found': 402,
    'challenge_used': 402,
    'challenge_expired': 402,
    'payout_failed': 502,
    'not_configured': 503,
}


def error_status(result: dict) -> int:
    """HTTP status for a service result dict"""
    if result.get('success'):
        return 200
    return ERROR_STATUS.get(result.get('error_type'), 400)


def request_wallet(data: dict = None):
    """Wallet from the session, else from the request; None if missing or invalid"""
    wallet = session.get('wallet') or session.get('wallet_address')
    if not wallet:
        wallet = (data or {}).get('wallet_address') or request.args.get('wallet_address')
    if not is_valid_address(wallet):
        return None
    return wallet.strip().lower()


def _wallet_required():
    return jsonify({'success': False, 'error': 'Valid wallet_address required', 'error_type': 'invalid_input'}), 400


def _get_ledger():
    return current_app.extensions['credit_ledger']


@credits_bp.route('/api/top-up-info')
def top_up_info():
    """Recipient and suggested amount for a one-time top-up"""
    ledger = _get_ledger()
    if not ledger.recipient_address:
        return jsonify({'success': False, 'error': 'Platform recipient not configured',
                        'error_type': 'not_configured'}), 503

    return jsonify({
        'success': True,
        'recipient': ledger.recipient_address,
        'suggested_amount_micro': ledger.top_up_suggested_micro,
        'suggested_amount': to_units(ledger.top_up_suggested_micro),
        'min_withdraw_micro': ledger.min_withdraw_micro,
    })


@credits_bp.route('/api/balance')
def get_balance():
    try:
        wallet = request_wallet()
        if not wallet:
            return _wallet_required()

        ledger = _get_ledger()
        if not ledger.is_configured:
            return jsonify({'success': False, 'error': 'Credits unavailable', 'error_type': 'not_configured'}), 503

        balance = ledger.get_balance(wallet)
        response = jsonify({'success': True, 'credits_micro': balance, 'credits': to_units(balance)})
        response.headers['Cache-Control'] = 'no-store'
        return response

    except Exception as e:
        logger.error(f"❌ Error getting credit balance: {e}")
        return jsonify({'success': False, 'error': 'Failed to load balance'}), 500


@credits_bp.route('/api/history')
def get_history():
    """Credit transaction audit trail, newest first"""
    try:
        wallet = request_wallet()
        if not wallet:
            return _wallet_required()

        ledger = _get_ledger()
        if not ledger.is_configured:
            return jsonify({'success': False, 'error': 'Credits unavailable', 'error_type': 'not_configured'}), 503

        transactions = ledger.get_history(wallet, request.args.get('limit', 50))
        return jsonify({'success': True, 'transactions': transactions})

    except Exception as e:
        logger.error(f"❌ Error getting credit history: {e}")
        return jsonify({'success': False, 'error': 'Failed to load history'}), 500


@credits_bp.route('/api/top-up', methods=['POST'])
def top_up():
    """Credit a confirmed on-chain transfer to the platform wallet (idempotent by tx_id)"""
    try:
        data = request.get_json(silent=True) or {}
        tx_id = data.get('tx_id')
        if not isinstance(tx_id, str) or not tx_id.strip():
            return jsonify({'success': False, 'error': 'tx_id required', 'error_type': 'invalid_input'}), 400

        ledger = _get_ledger()
        if not ledger.is_configured:
            return jsonify({'success': False, 'error': 'Credits unavailable', 'error_type': 'not_configured'}), 503

        result = ledger.confirm_top_up(tx_id, wait=bool(data.get('wait', False)))
        return jsonify(result), error_status(result)

    except Exception as e:
        logger.error(f"❌ Error applying top-up: {e}")
        return jsonify({'success': False, 'error': 'Failed to apply top-up'}), 500


@credits_bp.route('/api/withdraw', methods=['POST'])
def withdraw():
    try:
        data = request.get_json(silent=True) or {}
        wallet = request_wallet(data)
        if not wallet:
            return _wallet_required()

        ledger = _get_ledger()
        if not ledger.is_configured:
            return jsonify({'success': False, 'error': 'Credits unavailable', 'error_type': 'not_configured'}), 503

        result = ledger.withdraw(wallet, data.get('amount_micro'))
        return jsonify(result), error_status(result)

    except Exception as e:
        logger.error(f"❌ Error processing withdrawal: {e}")
        return jsonify({'success': False, 'error': 'Withdrawal failed'}), 500
