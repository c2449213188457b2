import logging
import time
from datetime import datetime
from typing import Callable, Optional

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception

from config import (
    CELO_RPC_URL,
    CHAIN_ID,
    EXPLORER_TX_URL,
    PAYMENT_CONFIG,
    PAYOUT_KEY,
    PLATFORM_RECIPIENT_ADDRESS,
    WEI_PER_MICRO,
)

logger = logging.getLogger(__name__)

# Lookup failures worth polling again
LOOKUP_ERRORS = (requests.exceptions.RequestException, Web3Exception, ConnectionError, TimeoutError)

RETRYABLE_REASONS = ('not_found', 'pending', 'lookup_error')


def mask_wallet_address(wallet_address: str) -> str:
    """Mask wallet address for logging"""
    if not wallet_address or len(wallet_address) < 10:
        return wallet_address
    return wallet_address[:6] + "..." + wallet_address[-4:]


def is_valid_address(wallet_address) -> bool:
    return isinstance(wallet_address, str) and Web3.is_address(wallet_address)


def normalize_address(wallet_address: str) -> str:
    """Lower-case form used as the storage key for a wallet"""
    return wallet_address.strip().lower()


def decode_memo(input_data) -> str:
    """Transaction input data as UTF-8 text, NUL padding removed"""
    if not input_data:
        return ''
    if isinstance(input_data, str):
        hex_data = input_data[2:] if input_data.startswith('0x') else input_data
        try:
            raw = bytes.fromhex(hex_data)
        except ValueError:
            return ''
    else:
        raw = bytes(input_data)
    return raw.decode('utf-8', errors='ignore').replace('\x00', '').strip()


def _failure(reason: str, error: str, **extra) -> dict:
    result = {
        'success': False,
        'reason': reason,
        'retryable': reason in RETRYABLE_REASONS,
        'error': error,
    }
    result.update(extra)
    return result


class ChainPaymentService:
    """Verifies incoming native CELO payments and sends payouts"""

    def __init__(self, w3: Web3 = None, recipient_address: str = None,
                 payout_key: str = None, chain_id: int = None):
        self.chain_id = chain_id or CHAIN_ID
        self.w3 = w3 or Web3(Web3.HTTPProvider(CELO_RPC_URL, request_kwargs={'timeout': 15}))

        recipient = recipient_address if recipient_address is not None else PLATFORM_RECIPIENT_ADDRESS
        if recipient and Web3.is_address(recipient):
            self.recipient_address = Web3.to_checksum_address(recipient)
            logger.info(f"✅ Payment recipient configured: {mask_wallet_address(self.recipient_address)}")
        else:
            self.recipient_address = None
            logger.warning("⚠️ PLATFORM_RECIPIENT_ADDRESS not configured - on-chain payments disabled")

        key = payout_key if payout_key is not None else PAYOUT_KEY
        if key:
            if not key.startswith('0x'):
                key = '0x' + key
            self.payout_account = Account.from_key(key)
            self.payout_address = self.payout_account.address
            logger.info(f"💸 Payout wallet configured: {mask_wallet_address(self.payout_address)}")
        else:
            self.payout_account = None
            self.payout_address = None
            logger.warning("⚠️ PAYOUT_KEY not configured - withdrawals are paid out off-line")

    @property
    def payments_enabled(self) -> bool:
        return self.recipient_address is not None

    @property
    def payouts_enabled(self) -> bool:
        return self.payout_account is not None

    def get_transaction(self, tx_id: str) -> dict:
        """
        Look up a transaction and describe it as a transfer.

        Returns {'status': pending|success|failed|not_found, 'sender_address', 'transfer'}
        where transfer is {'recipient_address', 'amount_wei', 'amount_micro', 'memo'}
        or None for anything that is not a native value transfer.
        Network failures propagate to the caller.
        """
        try:
            tx = self.w3.eth.get_transaction(tx_id)
        except TransactionNotFound:
            return {'status': 'not_found', 'sender_address': None, 'transfer': None}

        if tx is None:
            return {'status': 'not_found', 'sender_address': None, 'transfer': None}

        sender = tx.get('from')
        to_address = tx.get('to')
        value = int(tx.get('value') or 0)
        transfer = None
        if to_address and value > 0:
            transfer = {
                'recipient_address': to_address,
                'amount_wei': value,
                'amount_micro': value // WEI_PER_MICRO,
                'memo': decode_memo(tx.get('input')),
            }

        if tx.get('blockNumber') is None:
            return {'status': 'pending', 'sender_address': sender, 'transfer': transfer}

        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_id)
        except TransactionNotFound:
            receipt = None

        if receipt is None:
            status = 'pending'
        elif receipt.get('status') == 1:
            status = 'success'
        else:
            status = 'failed'

        return {'status': status, 'sender_address': sender, 'transfer': transfer}

    def _lookup_transfer(self, tx_id: str, recipient: str):
        """Shared status handling. Returns (lookup, None) or (None, failure dict)."""
        if not tx_id or not isinstance(tx_id, str):
            return None, _failure('not_found', 'Transaction id required')

        try:
            lookup = self.get_transaction(tx_id)
        except LOOKUP_ERRORS as e:
            logger.warning(f"⚠️ Transaction lookup failed for {tx_id[:16]}...: {e}")
            return None, _failure('lookup_error', 'Could not reach the network to verify the transaction')

        status = lookup['status']
        if status == 'not_found':
            return None, _failure('not_found', 'Transaction not found yet')
        if status == 'pending':
            return None, _failure('pending', 'Transaction is not confirmed yet')
        if status != 'success':
            return None, _failure('wrong_status', 'Transaction failed on blockchain')

        transfer = lookup['transfer']
        if transfer is None:
            return None, _failure('not_a_transfer', 'Transaction is not a value transfer')

        if not recipient or transfer['recipient_address'].lower() != recipient.lower():
            return None, _failure('recipient_mismatch', 'Transaction was sent to a different address')

        return lookup, None

    def verify_payment(self, tx_id: str, recipient: str, amount_micro: int, nonce: str) -> dict:
        """Verify a per-question payment bound to a challenge nonce"""
        logger.info(f"🔍 Verifying payment {str(tx_id)[:16]}... for {amount_micro} micro")

        lookup, failure = self._lookup_transfer(tx_id, recipient)
        if failure:
            return failure

        transfer = lookup['transfer']
        if transfer['amount_wei'] != int(amount_micro) * WEI_PER_MICRO:
            return _failure(
                'amount_mismatch',
                'Transaction amount does not match the question price',
                expected_micro=int(amount_micro),
                received_micro=transfer['amount_micro'],
            )

        memo = transfer['memo']
        prefix = nonce[:PAYMENT_CONFIG['MEMO_PREFIX_LENGTH']]
        if not memo or memo not in (nonce, prefix):
            return _failure('memo_mismatch', 'Transaction memo does not match the payment challenge')

        logger.info(f"✅ Payment verified from {mask_wallet_address(lookup['sender_address'])}")
        return {
            'success': True,
            'tx_id': tx_id,
            'sender_address': lookup['sender_address'],
            'amount_micro': transfer['amount_micro'],
        }

    def verify_top_up(self, tx_id: str, recipient: str = None) -> dict:
        """Verify a free-form top-up transfer to the platform wallet"""
        logger.info(f"🔍 Verifying top-up {str(tx_id)[:16]}...")

        lookup, failure = self._lookup_transfer(tx_id, recipient or self.recipient_address)
        if failure:
            return failure

        amount = lookup['transfer']['amount_micro']
        if amount <= 0:
            return _failure('amount_mismatch', 'Top-up amount is below one micro-unit')

        logger.info(f"✅ Top-up verified: {amount} micro from {mask_wallet_address(lookup['sender_address'])}")
        return {
            'success': True,
            'tx_id': tx_id,
            'sender_address': lookup['sender_address'],
            'amount_micro': amount,
        }

    def wait_for_confirmation(self, check: Callable[[], dict], attempts: int = None,
                              interval: float = None, sleep: Callable[[float], None] = time.sleep) -> dict:
        """
        Poll a verification call while it fails with a retryable reason.

        Terminal results return immediately. When attempts run out the last
        retryable failure comes back with timed_out_waiting=True, since the
        payment may still confirm later.
        """
        attempts = attempts or PAYMENT_CONFIG['POLL_ATTEMPTS']
        interval = PAYMENT_CONFIG['POLL_INTERVAL_SECONDS'] if interval is None else interval

        result = None
        for attempt in range(attempts):
            result = check()
            if result.get('success') or not result.get('retryable'):
                return result
            if attempt < attempts - 1:
                logger.debug(f"⏳ Waiting for confirmation ({result.get('reason')}), attempt {attempt + 1}/{attempts}")
                sleep(interval)

        logger.warning(f"⚠️ Gave up waiting for confirmation after {attempts} attempts: {result.get('reason')}")
        timed_out = dict(result)
        timed_out['timed_out_waiting'] = True
        return timed_out

    def send_transfer(self, recipient_address: str, amount_micro: int, memo: Optional[str] = None) -> dict:
        """Send a native payout from the payout wallet and wait for its receipt"""
        if not self.payouts_enabled:
            return {'success': False, 'reason': 'not_configured', 'error': 'Payout wallet not configured'}

        try:
            logger.info(f"💸 Sending payout: {amount_micro} micro to {mask_wallet_address(recipient_address)}")

            nonce = self.w3.eth.get_transaction_count(self.payout_address)
            gas_price = int(self.w3.eth.gas_price * 1.2)

            transaction = {
                'from': self.payout_address,
                'to': Web3.to_checksum_address(recipient_address),
                'value': int(amount_micro) * WEI_PER_MICRO,
                'nonce': nonce,
                'gas': PAYMENT_CONFIG['PAYOUT_GAS_LIMIT'],
                'gasPrice': gas_price,
                'chainId': self.chain_id,
            }
            if memo:
                transaction['data'] = '0x' + memo.encode('utf-8').hex()

            signed_txn = self.w3.eth.account.sign_transaction(transaction, private_key=self.payout_account.key)

            tx_hash = self.w3.eth.send_raw_transaction(signed_txn.raw_transaction)
            tx_hash_hex = tx_hash.hex()
            if not tx_hash_hex.startswith('0x'):
                tx_hash_hex = '0x' + tx_hash_hex
            logger.info(f"🔗 Payout sent: {tx_hash_hex}")

            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=PAYMENT_CONFIG['RECEIPT_TIMEOUT_SECONDS']
            )

            if receipt.get('status') == 1:
                logger.info(f"✅ Payout confirmed: {amount_micro} micro - TX: {tx_hash_hex}")
                return {
                    'success': True,
                    'tx_id': tx_hash_hex,
                    'explorer_url': f"{EXPLORER_TX_URL}{tx_hash_hex}",
                    'timestamp': datetime.now().isoformat(),
                }

            logger.error(f"❌ Payout failed on-chain: {tx_hash_hex}")
            return {'success': False, 'reason': 'wrong_status', 'error': 'Transaction failed on blockchain',
                    'tx_id': tx_hash_hex}

        except Exception as e:
            logger.error(f"❌ Payout error: {e}")
            if 'insufficient funds' in str(e).lower():
                logger.error("❌ Payout wallet needs CELO for value and gas!")
                return {'success': False, 'reason': 'insufficient_gas',
                        'error': 'Payout wallet temporarily unavailable'}
            return {'success': False, 'reason': 'send_failed', 'error': str(e)}
