import os
import logging
import time
import threading
from functools import wraps

from supabase import create_client, Client

logger = logging.getLogger(__name__)

# Supabase configuration
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY") or os.getenv("SUPABASE_ANON_KEY")

supabase: Client = None
supabase_enabled = False
_client_lock = threading.Lock()

CONNECTION_ERROR_KEYWORDS = ('server disconnected', 'connection', 'timeout', 'network')


def retry_on_connection_error(max_retries=3, delay=1):
    """Decorator to retry read-only database operations on connection errors"""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            last_exception = None

            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    last_exception = e
                    error_msg = str(e).lower()

                    if not any(keyword in error_msg for keyword in CONNECTION_ERROR_KEYWORDS):
                        raise

                    if attempt < max_retries - 1:
                        logger.warning(f"⚠️ Connection error on attempt {attempt + 1}/{max_retries}: {e}")
                        time.sleep(delay * (attempt + 1))
                    else:
                        logger.error(f"❌ All {max_retries} connection attempts failed: {e}")

            raise last_exception
        return wrapper
    return decorator


def get_supabase_client():
    """Get Supabase client instance, created once per process"""
    global supabase, supabase_enabled

    if supabase_enabled and supabase:
        return supabase

    if not SUPABASE_URL or not SUPABASE_KEY:
        logger.warning("⚠️ Supabase not configured - set SUPABASE_URL and SUPABASE_KEY")
        return None

    with _client_lock:
        if supabase_enabled and supabase:
            return supabase
        try:
            supabase = create_client(SUPABASE_URL, SUPABASE_KEY)
            supabase_enabled = True
            logger.info("✅ Supabase client initialized successfully")
        except Exception as e:
            logger.error(f"❌ Supabase initialization failed: {e}")
            supabase_enabled = False
            return None
    return supabase


def safe_supabase_operation(operation, fallback_result=None, operation_name="database operation"):
    """
    Execute a Supabase operation, logging and returning fallback_result on failure.

    Only for reads where a fallback is acceptable. Ledger writes must not use this.
    """
    try:
        return operation()
    except Exception as e:
        logger.error(f"❌ Error in {operation_name}: {e}")
        return fallback_result


def is_duplicate_key_error(error: Exception) -> bool:
    """True for a PostgreSQL unique violation surfaced through PostgREST"""
    if getattr(error, 'code', None) == '23505':
        return True
    return 'duplicate key' in str(error).lower()


# SQL COMMANDS TO RUN IN YOUR SUPABASE SQL EDITOR:
"""
-- 1. Players and their credit balance (micro-units, never negative)
CREATE TABLE IF NOT EXISTS quiz_players (
    wallet_address VARCHAR(42) PRIMARY KEY,
    credits_micro BIGINT NOT NULL DEFAULT 0 CHECK (credits_micro >= 0),
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

-- 2. Append-only audit trail, one row per balance mutation
CREATE TABLE IF NOT EXISTS credit_transactions (
    id BIGSERIAL PRIMARY KEY,
    wallet_address VARCHAR(42) NOT NULL REFERENCES quiz_players(wallet_address),
    type VARCHAR(20) NOT NULL, -- 'top_up', 'deduct', 'refund', 'profit', 'loss', 'milestone_bonus', 'withdraw'
    amount_micro BIGINT NOT NULL,
    balance_after_micro BIGINT NOT NULL,
    ref_tx_id VARCHAR(100),
    ref_run_id VARCHAR(64),
    metadata JSONB,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_credit_transactions_wallet ON credit_transactions(wallet_address, id DESC);

-- 3. Applied top-ups, the idempotency key for crediting on-chain transfers
CREATE TABLE IF NOT EXISTS credit_top_ups (
    id BIGSERIAL PRIMARY KEY,
    tx_id VARCHAR(100) UNIQUE NOT NULL,
    wallet_address VARCHAR(42) NOT NULL,
    amount_micro BIGINT NOT NULL,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

-- 4. Settled run history
CREATE TABLE IF NOT EXISTS quiz_runs (
    id BIGSERIAL PRIMARY KEY,
    run_id VARCHAR(64) UNIQUE NOT NULL,
    wallet_address VARCHAR(42) NOT NULL,
    outcome VARCHAR(20) NOT NULL, -- 'incorrect', 'timed_out', 'stopped'
    score NUMERIC NOT NULL,
    spent_micro BIGINT NOT NULL,
    earned_micro BIGINT NOT NULL,
    profit_micro BIGINT NOT NULL,
    milestone_bonus_micro BIGINT NOT NULL DEFAULT 0,
    completed_levels INTEGER NOT NULL,
    category VARCHAR(50),
    question_ids JSONB,
    question_details JSONB,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_quiz_runs_wallet ON quiz_runs(wallet_address, created_at DESC);

-- 5. Optional authored questions (read-only for this service)
CREATE TABLE IF NOT EXISTS quiz_questions (
    id BIGSERIAL PRIMARY KEY,
    question_id VARCHAR(64) UNIQUE NOT NULL,
    category VARCHAR(50) NOT NULL,
    difficulty INTEGER NOT NULL,
    question TEXT NOT NULL,
    answer_a TEXT NOT NULL,
    answer_b TEXT NOT NULL,
    answer_c TEXT NOT NULL,
    answer_d TEXT NOT NULL,
    correct CHAR(1) NOT NULL, -- 'A'..'D'
    estimated_solve_time_sec INTEGER,
    reasoning TEXT
);
"""
