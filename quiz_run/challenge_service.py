import logging
import time
import uuid
from typing import Callable, Optional

from cache_utils import KEEP
from config import QUIZ_CONFIG
from tokenomics import clamp_level, cost_micro

logger = logging.getLogger(__name__)

# Keep used/expired entries around briefly so their status stays reportable
STATUS_GRACE_SECONDS = 300


class PaymentChallengeStore:
    """
    One-time nonces binding an on-chain payment to a single question request.

    The nonce goes into the transfer memo. consume() flips the used flag in a
    single store update, so one payment can unlock at most one question.
    """

    def __init__(self, store, recipient_address: Optional[str] = None,
                 expiry_seconds: int = None, clock: Callable[[], float] = time.time):
        self.store = store
        self.recipient_address = recipient_address
        self.expiry_seconds = expiry_seconds or QUIZ_CONFIG['CHALLENGE_EXPIRY_SECONDS']
        self.clock = clock

    @staticmethod
    def _key(nonce: str) -> str:
        return f"challenge:{nonce}"

    def issue_challenge(self, level) -> dict:
        level = clamp_level(level)
        nonce = uuid.uuid4().hex
        expires_at = self.clock() + self.expiry_seconds
        challenge = {
            'amount_micro': cost_micro(level),
            'recipient': self.recipient_address,
            'level': level,
            'used': False,
            'expires_at': expires_at,
        }
        self.store.set(self._key(nonce), challenge, ttl=self.expiry_seconds + STATUS_GRACE_SECONDS)
        logger.info(f"🔐 Payment challenge issued for level {level}: {challenge['amount_micro']} micro")
        return {
            'nonce': nonce,
            'amount_micro': challenge['amount_micro'],
            'recipient': self.recipient_address,
            'level': level,
            'expires_at': expires_at,
        }

    def get_challenge(self, nonce: str) -> Optional[dict]:
        if not nonce or not isinstance(nonce, str):
            return None
        return self.store.get(self._key(nonce))

    def _status_of(self, challenge: Optional[dict]) -> str:
        if challenge is None:
            return 'not_found'
        if challenge.get('used'):
            return 'used'
        if self.clock() >= challenge['expires_at']:
            return 'expired'
        return 'valid'

    def get_status(self, nonce: str) -> str:
        """valid | used | expired | not_found"""
        return self._status_of(self.get_challenge(nonce))

    def consume(self, nonce: str) -> dict:
        """Mark the nonce used if it is still valid. At most one caller succeeds."""
        if not nonce or not isinstance(nonce, str):
            return {'success': False, 'status': 'not_found', 'error_type': 'challenge_not_found',
                    'error': 'Payment challenge not found'}

        def mutate(challenge):
            status = self._status_of(challenge)
            if status != 'valid':
                return KEEP, (status, challenge)
            consumed = dict(challenge)
            consumed['used'] = True
            return consumed, (status, consumed)

        remaining = self.expiry_seconds + STATUS_GRACE_SECONDS
        status, challenge = self.store.update(self._key(nonce), mutate, ttl=remaining)

        if status != 'valid':
            logger.warning(f"⚠️ Payment challenge {nonce[:8]}... not consumable: {status}")
            return {
                'success': False,
                'status': status,
                'error_type': f'challenge_{status}',
                'error': f'Payment challenge {status.replace("_", " ")}',
            }

        return {'success': True, 'status': 'used', 'challenge': challenge}
