"""On-chain verification tests against a mocked web3 client."""
from unittest.mock import MagicMock

import pytest
import requests
from web3.exceptions import TransactionNotFound

from blockchain import ChainPaymentService, decode_memo, mask_wallet_address
from config import WEI_PER_MICRO
from tokenomics import cost_micro
from tests.conftest import RECIPIENT, WALLET

TX_ID = '0x' + 'fe' * 32
NONCE = 'a3' * 16


def make_service(tx=None, receipt=None, lookup_error=None, payout_key=''):
    w3 = MagicMock()
    if lookup_error is not None:
        w3.eth.get_transaction.side_effect = lookup_error
    else:
        w3.eth.get_transaction.return_value = tx
    w3.eth.get_transaction_receipt.return_value = receipt
    return ChainPaymentService(w3=w3, recipient_address=RECIPIENT, payout_key=payout_key, chain_id=42220)


def transfer_tx(amount_micro, memo=NONCE, to=RECIPIENT, block=123):
    return {
        'from': WALLET,
        'to': to,
        'value': amount_micro * WEI_PER_MICRO,
        'input': memo.encode('utf-8') if memo else b'',
        'blockNumber': block,
    }


class TestDecodeMemo:

    def test_bytes_and_hex(self):
        assert decode_memo(b'hello\x00\x00') == 'hello'
        assert decode_memo('0x' + b'hello'.hex()) == 'hello'
        assert decode_memo(None) == ''
        assert decode_memo('0xzz') == ''

    def test_mask(self):
        assert mask_wallet_address(WALLET) == WALLET[:6] + '...' + WALLET[-4:]


class TestVerifyPayment:

    def test_confirmed_payment(self):
        price = cost_micro(0)
        service = make_service(transfer_tx(price), {'status': 1})
        result = service.verify_payment(TX_ID, RECIPIENT, price, NONCE)
        assert result['success'] is True
        assert result['sender_address'] == WALLET
        assert result['amount_micro'] == price

    def test_memo_prefix_accepted(self):
        nonce = 'b' * 40
        price = cost_micro(1)
        service = make_service(transfer_tx(price, memo=nonce[:34]), {'status': 1})
        assert service.verify_payment(TX_ID, RECIPIENT, price, nonce)['success'] is True

    def test_not_found_is_retryable(self):
        service = make_service(lookup_error=TransactionNotFound('unknown'))
        result = service.verify_payment(TX_ID, RECIPIENT, 1, NONCE)
        assert result['reason'] == 'not_found'
        assert result['retryable'] is True

    def test_unmined_is_pending(self):
        service = make_service(transfer_tx(1, block=None))
        result = service.verify_payment(TX_ID, RECIPIENT, 1, NONCE)
        assert result['reason'] == 'pending'
        assert result['retryable'] is True

    def test_missing_receipt_is_pending(self):
        service = make_service(transfer_tx(1), None)
        assert service.verify_payment(TX_ID, RECIPIENT, 1, NONCE)['reason'] == 'pending'

    def test_network_error_is_retryable(self):
        service = make_service(lookup_error=requests.exceptions.ConnectionError('down'))
        result = service.verify_payment(TX_ID, RECIPIENT, 1, NONCE)
        assert result['reason'] == 'lookup_error'
        assert result['retryable'] is True

    @pytest.mark.parametrize('tx,receipt,reason', [
        (transfer_tx(720_000), {'status': 0}, 'wrong_status'),
        (transfer_tx(720_001), {'status': 1}, 'amount_mismatch'),
        (transfer_tx(720_000, to='0x' + '99' * 20), {'status': 1}, 'recipient_mismatch'),
        (transfer_tx(720_000, memo='other'), {'status': 1}, 'memo_mismatch'),
        (transfer_tx(720_000, memo=None), {'status': 1}, 'memo_mismatch'),
        (dict(transfer_tx(720_000), value=0), {'status': 1}, 'not_a_transfer'),
    ])
    def test_terminal_failures(self, tx, receipt, reason):
        service = make_service(tx, receipt)
        result = service.verify_payment(TX_ID, RECIPIENT, 720_000, NONCE)
        assert result['success'] is False
        assert result['reason'] == reason
        assert result['retryable'] is False


class TestVerifyTopUp:

    def test_free_form_amount_without_memo(self):
        service = make_service(transfer_tx(5_000_000, memo=None), {'status': 1})
        result = service.verify_top_up(TX_ID)
        assert result['success'] is True
        assert result['amount_micro'] == 5_000_000

    def test_sub_micro_wei_is_floored(self):
        tx = transfer_tx(5, memo=None)
        tx['value'] += WEI_PER_MICRO - 1
        service = make_service(tx, {'status': 1})
        assert service.verify_top_up(TX_ID)['amount_micro'] == 5


class TestWaitForConfirmation:

    def test_polls_until_success(self):
        service = make_service()
        results = iter([
            {'success': False, 'reason': 'pending', 'retryable': True},
            {'success': False, 'reason': 'pending', 'retryable': True},
            {'success': True},
        ])
        sleeps = []
        result = service.wait_for_confirmation(lambda: next(results), attempts=5, interval=2, sleep=sleeps.append)
        assert result == {'success': True}
        assert sleeps == [2, 2]

    def test_terminal_failure_stops_polling(self):
        service = make_service()
        check = MagicMock(return_value={'success': False, 'reason': 'amount_mismatch', 'retryable': False})
        result = service.wait_for_confirmation(check, attempts=5, interval=1, sleep=lambda s: None)
        assert check.call_count == 1
        assert 'timed_out_waiting' not in result

    def test_gives_up_after_attempts(self):
        service = make_service()
        check = MagicMock(return_value={'success': False, 'reason': 'pending', 'retryable': True})
        sleeps = []
        result = service.wait_for_confirmation(check, attempts=3, interval=5, sleep=sleeps.append)
        assert check.call_count == 3
        assert sleeps == [5, 5]
        assert result['timed_out_waiting'] is True
        assert result['reason'] == 'pending'


class TestSendTransfer:

    def test_not_configured(self):
        result = make_service().send_transfer(WALLET, 10_000)
        assert result['success'] is False
        assert result['reason'] == 'not_configured'

    def test_signed_native_transfer(self):
        service = make_service(payout_key='11' * 32)
        service.w3.eth.get_transaction_count.return_value = 7
        service.w3.eth.gas_price = 1_000_000_000
        service.w3.eth.send_raw_transaction.return_value = b'\x12' * 32
        service.w3.eth.wait_for_transaction_receipt.return_value = {'status': 1}

        result = service.send_transfer(WALLET, 10_000)

        assert result['success'] is True
        assert result['tx_id'] == '0x' + '12' * 32
        sent = service.w3.eth.account.sign_transaction.call_args[0][0]
        assert sent['value'] == 10_000 * WEI_PER_MICRO
        assert sent['nonce'] == 7
        assert sent['chainId'] == 42220

    def test_failed_receipt(self):
        service = make_service(payout_key='11' * 32)
        service.w3.eth.gas_price = 1
        service.w3.eth.send_raw_transaction.return_value = b'\x34' * 32
        service.w3.eth.wait_for_transaction_receipt.return_value = {'status': 0}

        result = service.send_transfer(WALLET, 10_000)
        assert result['success'] is False
        assert result['reason'] == 'wrong_status'
