import logging
from datetime import timedelta

from flask import Flask, jsonify
from flask_compress import Compress

from blockchain import ChainPaymentService
from cache_utils import ExpirySweeper, KeyValueStoreError, get_kv_store
from config import LOG_LEVEL, PORT, QUIZ_CONFIG, REDIS_URL, SECRET_KEY
from credit_ledger import CreditLedger, init_credits
from quiz_run import (
    PaymentChallengeStore,
    QuestionBatchCache,
    QuestionSupplier,
    QuizManager,
    RunSettlement,
    RunStateStore,
    init_quiz,
)
from supabase_client import get_supabase_client

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)

# Reduce noisy third-party logging
logging.getLogger('werkzeug').setLevel(logging.ERROR)
logging.getLogger('httpx').setLevel(logging.ERROR)
logging.getLogger('urllib3').setLevel(logging.WARNING)

compress = Compress()


def create_app(kv_store=None, supabase=None, chain_service=None, start_sweeper: bool = True, clock=None):
    """Build the Flask app and wire the quiz services together"""
    app = Flask(__name__)
    app.secret_key = SECRET_KEY
    app.permanent_session_lifetime = timedelta(hours=24)
    app.config['SESSION_COOKIE_HTTPONLY'] = True
    app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
    compress.init_app(app)

    kv_store = kv_store if kv_store is not None else get_kv_store(REDIS_URL, QUIZ_CONFIG['RUN_TTL_SECONDS'])
    supabase = supabase if supabase is not None else get_supabase_client()
    chain_service = chain_service if chain_service is not None else ChainPaymentService()
    clock_kwargs = {'clock': clock} if clock else {}

    ledger = CreditLedger(supabase=supabase, chain_service=chain_service)
    supplier = QuestionSupplier(supabase=supabase)
    batch_cache = QuestionBatchCache(kv_store, supplier)
    run_state = RunStateStore(kv_store, **clock_kwargs)
    challenges = PaymentChallengeStore(kv_store, recipient_address=chain_service.recipient_address, **clock_kwargs)
    settlement = RunSettlement(ledger, batch_cache, supabase=supabase)
    quiz_manager = QuizManager(run_state, challenges, batch_cache, supplier, ledger, chain_service, settlement)

    app.extensions['kv_store'] = kv_store

    if init_credits(app, ledger):
        logger.info("💳 Credits routes ready")
    else:
        logger.error("❌ Credits routes failed to initialize")

    if init_quiz(app, quiz_manager):
        logger.info("🧠 Quiz routes ready")
    else:
        logger.error("❌ Quiz routes failed to initialize")

    if start_sweeper:
        sweeper = ExpirySweeper(kv_store, interval=QUIZ_CONFIG['SWEEP_INTERVAL_SECONDS'])
        sweeper.start()
        app.extensions['kv_sweeper'] = sweeper

    @app.route("/health")
    def health_check():
        """Health check endpoint for deployment"""
        store = app.extensions['kv_store']
        try:
            store_ok = store.ping()
        except KeyValueStoreError as e:
            logger.warning(f"⚠️ Health check: key-value store unreachable: {e}")
            store_ok = False

        return jsonify({
            "status": "healthy" if store_ok else "degraded",
            "service": "Pay-per-question Quiz",
            "kv_backend": store.backend,
            "credits_enabled": ledger.is_configured,
            "payments_enabled": chain_service.payments_enabled,
            "payouts_enabled": chain_service.payouts_enabled,
        }), 200 if store_ok else 503

    return app


if __name__ == "__main__":
    logger.info("🚀 Starting Pay-per-question Quiz...")
    app = create_app()
    logger.info(f"🌐 Starting Flask server on http://0.0.0.0:{PORT}")
    app.run(host="0.0.0.0", port=PORT, debug=False, threaded=True, use_reloader=False)
