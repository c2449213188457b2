"""
Application Configuration
"""
import os
import random


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key')
PORT = _env_int('PORT', 5000)
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

# Shared key-value store for runs, challenges and batches. Empty = local memory.
REDIS_URL = os.getenv('REDIS_URL', '')

# Celo network
CELO_RPC_URL = os.getenv('CELO_RPC_URL', 'https://forno.celo.org')
CHAIN_ID = _env_int('CHAIN_ID', 42220)
EXPLORER_TX_URL = os.getenv('EXPLORER_TX_URL', 'https://explorer.celo.org/mainnet/tx/')

# Platform wallet that receives question payments and top-ups
PLATFORM_RECIPIENT_ADDRESS = os.getenv('PLATFORM_RECIPIENT_ADDRESS', '')

# Private key used to pay out withdrawals (optional)
PAYOUT_KEY = os.getenv('PAYOUT_KEY', '')

# 1 currency unit = 1,000,000 micro-units; on-chain value is 18 decimals
MICRO_PER_UNIT = 1_000_000
WEI_PER_MICRO = 10 ** 12

# ============================
# Quiz Run Settings
# ============================
QUIZ_CONFIG = {
    'DIFFICULTY_LEVELS': 10,          # levels 0..9
    'MAX_QUESTIONS': 10,              # correct answers for a full run
    'MIN_LEVEL_BEFORE_STOP': _env_int('MIN_LEVEL_BEFORE_STOP', 4),
    'RUN_TTL_SECONDS': _env_int('RUN_TTL_SECONDS', 30 * 60),
    'CHALLENGE_EXPIRY_SECONDS': _env_int('CHALLENGE_EXPIRY_SECONDS', 15 * 60),
    'DEFAULT_SOLVE_TIME_SEC': 60,
    'QUESTION_TIME_CAP_SEC': 90,
    'FULL_BATCH_SIZE': 25,
    'PRACTICE_BATCH_SIZE': 10,        # one question per level
    'REFILL_THRESHOLD': 6,
    'SWEEP_INTERVAL_SECONDS': _env_int('SWEEP_INTERVAL_SECONDS', 60),
}

# ============================
# Tokenomics
# ============================
TOKENOMICS_CONFIG = {
    # Volume knob: scales money amounts only. 100 = base table.
    'SCALE_K': max(1, min(2000, _env_int('SCALE_K', 100))),
    # Platform fee in basis points, applied identically on every settlement path
    'PLATFORM_FEE_BPS': max(0, min(10_000, _env_int('PLATFORM_FEE_BPS', 0))),
    # Milestone pool in units at K=100
    'BONUS_POOL': _env_float('BONUS_POOL', 4.5),
    'MILESTONE_RATIO': 0.7,
    'MIN_WITHDRAW_MICRO': _env_int('MIN_WITHDRAW_MICRO', 10_000),
    'TOP_UP_SUGGESTED_MICRO': _env_int('TOP_UP_SUGGESTED_MICRO', 50_000),
    # 1 point = 0.01 units
    'POINT_VALUE_MICRO': 10_000,
}

# ============================
# Payment verification
# ============================
PAYMENT_CONFIG = {
    'POLL_ATTEMPTS': _env_int('PAYMENT_POLL_ATTEMPTS', 24),
    'POLL_INTERVAL_SECONDS': _env_float('PAYMENT_POLL_INTERVAL_SECONDS', 5.0),
    'MEMO_PREFIX_LENGTH': 34,
    'PAYOUT_GAS_LIMIT': 60_000,
    'RECEIPT_TIMEOUT_SECONDS': 120,
}

# ============================
# Question categories
# ============================
QUESTION_CATEGORIES = [
    'Everyday Logic',
    'Smart Math',
    'How Things Work',
    'Patterns & Sequences',
    'What Would Break?',
    'Fast Thinking',
    'Trade-offs',
    'Minimal Change',
]


def is_valid_category(value) -> bool:
    return value in QUESTION_CATEGORIES


def get_random_category() -> str:
    return random.choice(QUESTION_CATEGORIES)
