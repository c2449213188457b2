import logging
from datetime import datetime, timezone
from typing import Optional

from blockchain import mask_wallet_address, normalize_address
from config import TOKENOMICS_CONFIG
from supabase_client import get_supabase_client, is_duplicate_key_error, retry_on_connection_error

logger = logging.getLogger(__name__)

TX_TYPES = ('top_up', 'deduct', 'refund', 'profit', 'loss', 'milestone_bonus', 'withdraw')

MAX_HISTORY_LIMIT = 100


class LedgerContentionError(Exception):
    """Balance kept changing under us for every compare-and-swap attempt"""


class LedgerUnavailableError(Exception):
    """No durable storage configured for the ledger"""


def log_transaction(tx_type: str, wallet_address: str, amount_micro: int, balance_after_micro: int, ref=None):
    """One audit line per balance mutation"""
    logger.info(
        f"[TX] {tx_type} wallet={mask_wallet_address(wallet_address)} "
        f"amount={amount_micro:+d} balance={balance_after_micro} ref={ref or '-'}"
    )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _validate_amount(amount_micro, allow_zero: bool = False) -> int:
    if isinstance(amount_micro, bool) or not isinstance(amount_micro, int):
        raise ValueError(f"amount must be an integer number of micro-units, got {amount_micro!r}")
    if amount_micro < 0 or (amount_micro == 0 and not allow_zero):
        raise ValueError(f"amount must be positive, got {amount_micro}")
    return amount_micro


class CreditLedger:
    """
    Pre-funded credit balances in micro-units.

    Every balance change is a compare-and-swap UPDATE on quiz_players
    (WHERE credits_micro = <observed>), retried a bounded number of times.
    A balance never goes below zero, and every change appends exactly one
    row to credit_transactions carrying the resulting balance.
    """

    def __init__(self, supabase=None, chain_service=None, max_cas_retries: int = 5):
        self.supabase = supabase if supabase is not None else get_supabase_client()
        self.chain_service = chain_service
        self.max_cas_retries = max_cas_retries
        self.min_withdraw_micro = TOKENOMICS_CONFIG['MIN_WITHDRAW_MICRO']
        self.top_up_suggested_micro = TOKENOMICS_CONFIG['TOP_UP_SUGGESTED_MICRO']

        if self.supabase is None:
            logger.warning("⚠️ Credit ledger has no database - credit features disabled")
        else:
            logger.info("💳 Credit ledger initialized")

    @property
    def is_configured(self) -> bool:
        return self.supabase is not None

    @property
    def recipient_address(self) -> Optional[str]:
        return getattr(self.chain_service, 'recipient_address', None)

    def _db(self):
        if self.supabase is None:
            raise LedgerUnavailableError("Credit ledger database not configured")
        return self.supabase

    # ------------------------------------------------------------------
    # Balance primitives
    # ------------------------------------------------------------------

    @retry_on_connection_error(max_retries=3, delay=1)
    def _read_balance(self, wallet: str) -> Optional[int]:
        result = self._db().table('quiz_players')\
            .select('credits_micro')\
            .eq('wallet_address', wallet)\
            .limit(1)\
            .execute()
        if not result.data:
            return None
        return int(result.data[0]['credits_micro'])

    def ensure_player(self, wallet_address: str) -> int:
        """Create the player row with a zero balance if missing; return the balance"""
        wallet = normalize_address(wallet_address)
        balance = self._read_balance(wallet)
        if balance is not None:
            return balance

        try:
            self._db().table('quiz_players').insert({
                'wallet_address': wallet,
                'credits_micro': 0,
                'created_at': _now_iso(),
                'updated_at': _now_iso(),
            }).execute()
            logger.info(f"👤 New quiz player {mask_wallet_address(wallet)}")
        except Exception as e:
            # Another request created it first
            if not is_duplicate_key_error(e):
                raise

        return self._read_balance(wallet) or 0

    def get_balance(self, wallet_address: str) -> int:
        balance = self._read_balance(normalize_address(wallet_address))
        return balance if balance is not None else 0

    def _compare_and_swap(self, wallet: str, delta: int) -> Optional[int]:
        """
        Apply delta to the balance as one conditional UPDATE.

        Returns the new balance, or None when the result would be negative.
        """
        for attempt in range(self.max_cas_retries):
            current = self._read_balance(wallet)
            if current is None:
                if delta < 0:
                    return None
                current = self.ensure_player(wallet)

            new_balance = current + delta
            if new_balance < 0:
                return None

            result = self._db().table('quiz_players')\
                .update({'credits_micro': new_balance, 'updated_at': _now_iso()})\
                .eq('wallet_address', wallet)\
                .eq('credits_micro', current)\
                .execute()

            if result.data:
                return new_balance

            logger.debug(f"Balance changed under CAS for {mask_wallet_address(wallet)}, attempt {attempt + 1}")

        logger.error(f"❌ Balance contention for {mask_wallet_address(wallet)} after {self.max_cas_retries} attempts")
        raise LedgerContentionError(f"Could not update balance for {wallet}")

    def add_credits(self, wallet_address: str, amount_micro: int) -> int:
        """Unconditional increment; creates the player if needed. Returns the new balance."""
        amount = _validate_amount(amount_micro, allow_zero=True)
        return self._compare_and_swap(normalize_address(wallet_address), amount)

    def deduct_credits(self, wallet_address: str, amount_micro: int) -> Optional[int]:
        """Conditional decrement. Returns the new balance, or None if funds are insufficient."""
        amount = _validate_amount(amount_micro)
        return self._compare_and_swap(normalize_address(wallet_address), -amount)

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def record_transaction(self, wallet_address: str, tx_type: str, amount_micro: int,
                           balance_after_micro: int, ref_tx_id: str = None,
                           ref_run_id: str = None, metadata: dict = None) -> Optional[int]:
        """Append one audit row. Rows are never updated or deleted."""
        if tx_type not in TX_TYPES:
            raise ValueError(f"Unknown transaction type: {tx_type}")

        wallet = normalize_address(wallet_address)
        row = {
            'wallet_address': wallet,
            'type': tx_type,
            'amount_micro': int(amount_micro),
            'balance_after_micro': int(balance_after_micro),
            'ref_tx_id': ref_tx_id,
            'ref_run_id': ref_run_id,
            'metadata': metadata or {},
            'created_at': _now_iso(),
        }
        result = self._db().table('credit_transactions').insert(row).execute()
        log_transaction(tx_type, wallet, int(amount_micro), int(balance_after_micro), ref_tx_id or ref_run_id)

        if result.data:
            return result.data[0].get('id')
        return None

    def _apply_delta(self, wallet: str, delta: int, tx_type: str, ref_tx_id: str = None,
                     ref_run_id: str = None, metadata: dict = None) -> Optional[int]:
        """
        Change the balance and append its audit row as one step.

        When the audit row cannot be written the balance change is reversed and
        the error re-raised, so transaction amounts keep summing to the balance.
        Returns the new balance, or None when funds are insufficient.
        """
        balance = self._compare_and_swap(wallet, delta)
        if balance is None:
            return None

        try:
            self.record_transaction(wallet, tx_type, delta, balance, ref_tx_id=ref_tx_id,
                                    ref_run_id=ref_run_id, metadata=metadata)
        except Exception as e:
            logger.error(f"❌ AUDIT ROW MISSING wallet={wallet} type={tx_type} amount={delta:+d} "
                         f"balance_after={balance} ref={ref_tx_id or ref_run_id or '-'}: {e}")
            self._revert(wallet, delta, tx_type)
            raise

        return balance

    def _revert(self, wallet: str, delta: int, tx_type: str):
        try:
            reverted = self._compare_and_swap(wallet, -delta)
        except Exception as e:
            logger.error(f"❌ Revert of {tx_type} {delta:+d} failed for {wallet}: {e}")
            reverted = None

        if reverted is None:
            logger.error(f"❌ Balance of {wallet} includes an unaudited {tx_type} of {delta:+d} "
                         f"- needs manual reconciliation")
        else:
            logger.warning(f"↩️ Reverted unaudited {tx_type} of {delta:+d} for {mask_wallet_address(wallet)}, "
                           f"balance back to {reverted}")

    @retry_on_connection_error(max_retries=3, delay=1)
    def get_history(self, wallet_address: str, limit: int = 20) -> list:
        """Newest first"""
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            limit = 20
        limit = max(1, min(limit, MAX_HISTORY_LIMIT))

        result = self._db().table('credit_transactions')\
            .select('*')\
            .eq('wallet_address', normalize_address(wallet_address))\
            .order('id', desc=True)\
            .limit(limit)\
            .execute()
        return result.data or []

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def insufficient_credits_result(self, required_micro: int, balance_micro: int) -> dict:
        return {
            'success': False,
            'error': 'Insufficient credits - top up to continue',
            'error_type': 'insufficient_credits',
            'required_micro': required_micro,
            'balance_micro': balance_micro,
            'suggested_amount_micro': max(self.top_up_suggested_micro, required_micro - balance_micro),
            'recipient': self.recipient_address,
        }

    def apply_top_up(self, tx_id: str, wallet_address: str, amount_micro: int) -> dict:
        """
        Credit a confirmed on-chain top-up exactly once per tx_id.

        A tx_id that was already applied is a success with already_applied=True
        and the balance left untouched.
        """
        amount = _validate_amount(amount_micro)
        wallet = normalize_address(wallet_address)
        tx_key = tx_id.strip().lower()

        existing = self._db().table('credit_top_ups')\
            .select('tx_id')\
            .eq('tx_id', tx_key)\
            .limit(1)\
            .execute()
        if existing.data:
            logger.info(f"⏭️ Top-up {tx_key[:16]}... already applied")
            return {'success': True, 'already_applied': True, 'credited_micro': 0,
                    'balance_micro': self.get_balance(wallet)}

        try:
            self._db().table('credit_top_ups').insert({
                'tx_id': tx_key,
                'wallet_address': wallet,
                'amount_micro': amount,
                'created_at': _now_iso(),
            }).execute()
        except Exception as e:
            if is_duplicate_key_error(e):
                logger.info(f"⏭️ Top-up {tx_key[:16]}... claimed by a concurrent request")
                return {'success': True, 'already_applied': True, 'credited_micro': 0,
                        'balance_micro': self.get_balance(wallet)}
            raise

        try:
            balance = self._apply_delta(wallet, amount, 'top_up', ref_tx_id=tx_key)
        except Exception:
            # Release the claim so the same tx can be applied again
            logger.error(f"❌ Top-up {tx_key[:16]}... claimed but not credited, releasing claim")
            self._db().table('credit_top_ups').delete().eq('tx_id', tx_key).execute()
            raise

        logger.info(f"✅ Top-up applied: {amount} micro to {mask_wallet_address(wallet)}")
        return {'success': True, 'already_applied': False, 'credited_micro': amount, 'balance_micro': balance}

    def confirm_top_up(self, tx_id: str, wait: bool = False, sleep=None) -> dict:
        """Verify an on-chain top-up and credit it to the sender"""
        if self.chain_service is None or not self.chain_service.payments_enabled:
            return {'success': False, 'error': 'Platform recipient not configured', 'error_type': 'not_configured'}
        if not tx_id or not isinstance(tx_id, str):
            return {'success': False, 'error': 'tx_id required', 'error_type': 'invalid_input'}

        tx_id = tx_id.strip()

        def check():
            return self.chain_service.verify_top_up(tx_id, self.chain_service.recipient_address)

        if wait:
            kwargs = {'sleep': sleep} if sleep else {}
            verification = self.chain_service.wait_for_confirmation(check, **kwargs)
        else:
            verification = check()

        if not verification.get('success'):
            logger.warning(f"⚠️ Top-up verification failed tx={tx_id[:16]}... reason={verification.get('reason')}")
            return {
                'success': False,
                'error': verification.get('error'),
                'error_type': 'payment_pending' if verification.get('retryable') else 'payment_rejected',
                'reason': verification.get('reason'),
                'retryable': verification.get('retryable', False),
                'timed_out_waiting': verification.get('timed_out_waiting', False),
            }

        result = self.apply_top_up(tx_id, verification['sender_address'], verification['amount_micro'])
        result['wallet_address'] = normalize_address(verification['sender_address'])
        return result

    def charge_question(self, wallet_address: str, amount_micro: int, level: int, run_id: str = None) -> dict:
        """Deduct the price of one question"""
        amount = _validate_amount(amount_micro)
        wallet = normalize_address(wallet_address)
        balance = self._apply_delta(wallet, -amount, 'deduct', ref_run_id=run_id, metadata={'level': level})
        if balance is None:
            return self.insufficient_credits_result(amount, self.get_balance(wallet))
        return {'success': True, 'charged_micro': amount, 'balance_micro': balance}

    def refund_question(self, wallet_address: str, amount_micro: int, run_id: str = None, reason: str = None) -> dict:
        """Give back a question price when the question could not be delivered"""
        amount = _validate_amount(amount_micro)
        wallet = normalize_address(wallet_address)
        balance = self._apply_delta(wallet, amount, 'refund', ref_run_id=run_id,
                                    metadata={'reason': reason} if reason else None)
        logger.warning(f"↩️ Refunded {amount_micro} micro to {mask_wallet_address(wallet)} ({reason})")
        return {'success': True, 'refunded_micro': amount_micro, 'balance_micro': balance}

    def apply_settlement(self, wallet_address: str, run_id: str, net_earned_micro: int,
                         profit_micro: int, milestone_bonus_micro: int = 0, metadata: dict = None) -> dict:
        """
        Credit a finished run.

        Question prices were collected up front, so the run's net earnings are
        credited as one row: profit when it adds to the balance, loss when the
        run earned nothing. The run's profit against its spend is kept in
        metadata. A milestone bonus is a separate row.
        """
        net = _validate_amount(net_earned_micro, allow_zero=True)
        wallet = normalize_address(wallet_address)
        details = dict(metadata or {})
        details['profit_micro'] = profit_micro
        details['run_result'] = 'profit' if profit_micro >= 0 else 'loss'

        tx_type = 'profit' if net > 0 else 'loss'
        balance = self._apply_delta(wallet, net, tx_type, ref_run_id=run_id, metadata=details)

        if milestone_bonus_micro > 0:
            balance = self._apply_delta(wallet, milestone_bonus_micro, 'milestone_bonus', ref_run_id=run_id,
                                        metadata={'completed_levels': details.get('completed_levels')})

        return {
            'success': True,
            'credited_micro': net_earned_micro + max(0, milestone_bonus_micro),
            'balance_micro': balance,
        }

    def withdraw(self, wallet_address: str, amount_micro) -> dict:
        """
        Debit the ledger, then pay out on-chain.

        The debit is not reverted when the payout fails; the failure comes back
        as payout_failed with balance_debited=True for manual reconciliation.
        """
        try:
            amount = _validate_amount(amount_micro)
        except ValueError as e:
            return {'success': False, 'error': str(e), 'error_type': 'invalid_input'}

        if amount < self.min_withdraw_micro:
            return {
                'success': False,
                'error': f'Minimum withdrawal is {self.min_withdraw_micro} micro-units',
                'error_type': 'invalid_input',
                'min_withdraw_micro': self.min_withdraw_micro,
            }

        wallet = normalize_address(wallet_address)
        balance = self._apply_delta(wallet, -amount, 'withdraw')
        if balance is None:
            result = self.insufficient_credits_result(amount, self.get_balance(wallet))
            result['error'] = 'Insufficient credits for this withdrawal'
            return result

        if self.chain_service is None or not self.chain_service.payouts_enabled:
            logger.info(f"📝 Withdrawal of {amount} micro recorded for off-line payout to {mask_wallet_address(wallet)}")
            return {'success': True, 'withdrawn_micro': amount, 'balance_micro': balance, 'payout_status': 'queued'}

        payout = self.chain_service.send_transfer(wallet, amount)
        if not payout.get('success'):
            logger.error(
                f"❌ Payout failed after debit: wallet={mask_wallet_address(wallet)} amount={amount} "
                f"reason={payout.get('reason')} - needs manual reconciliation"
            )
            return {
                'success': False,
                'error': 'Withdrawal payout failed. Your balance was debited; support will complete the transfer.',
                'error_type': 'payout_failed',
                'reason': payout.get('reason'),
                'balance_debited': True,
                'withdrawn_micro': amount,
                'balance_micro': balance,
            }

        return {
            'success': True,
            'withdrawn_micro': amount,
            'balance_micro': balance,
            'payout_status': 'sent',
            'tx_id': payout.get('tx_id'),
            'explorer_url': payout.get('explorer_url'),
        }
