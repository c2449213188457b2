import logging

from .credits_service import CreditLedger, LedgerContentionError, LedgerUnavailableError, log_transaction
from .routes import credits_bp, error_status, request_wallet

logger = logging.getLogger(__name__)


def init_credits(app, ledger: CreditLedger):
    """Initialize the credit ledger and its routes"""
    try:
        app.extensions['credit_ledger'] = ledger
        app.register_blueprint(credits_bp)
        logger.info("✅ Credits system initialized")
        return True
    except Exception as e:
        logger.error(f"❌ Credits initialization failed: {e}")
        return False


__all__ = [
    'CreditLedger',
    'LedgerContentionError',
    'LedgerUnavailableError',
    'log_transaction',
    'credits_bp',
    'error_status',
    'request_wallet',
    'init_credits',
]
