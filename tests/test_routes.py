"""HTTP surface tests through the Flask test client."""
import pytest

from main import create_app
from tests.conftest import WALLET

TOP_UP_TX = '0x' + '99' * 32


@pytest.fixture
def app(kv_store, fake_db, chain_service, clock):
    app = create_app(kv_store=kv_store, supabase=fake_db, chain_service=chain_service,
                     start_sweeper=False, clock=clock)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def funded(app):
    app.extensions['credit_ledger'].apply_top_up(TOP_UP_TX, WALLET, 50_000_000)


class TestHealthAndInfo:

    def test_health(self, client):
        response = client.get('/health')
        body = response.get_json()
        assert response.status_code == 200
        assert body['status'] == 'healthy'
        assert body['kv_backend'] == 'local'
        assert body['credits_enabled'] is True

    def test_categories_and_tokenomics(self, client):
        assert len(client.get('/quiz/api/categories').get_json()['categories']) > 0
        schedule = client.get('/quiz/api/tokenomics').get_json()['schedule']
        assert schedule['levels'][0]['cost_micro'] == 720_000

    def test_top_up_info(self, client, chain_service):
        body = client.get('/credits/api/top-up-info').get_json()
        assert body['recipient'] == chain_service.recipient_address


class TestCredits:

    def test_balance_requires_valid_wallet(self, client):
        assert client.get('/credits/api/balance?wallet_address=nope').status_code == 400

    def test_balance_and_history(self, client, funded):
        balance = client.get(f'/credits/api/balance?wallet_address={WALLET}').get_json()
        assert balance['credits_micro'] == 50_000_000
        history = client.get(f'/credits/api/history?wallet_address={WALLET}').get_json()
        assert [t['type'] for t in history['transactions']] == ['top_up']

    def test_top_up_needs_tx_id(self, client):
        assert client.post('/credits/api/top-up', json={}).status_code == 400

    def test_top_up_pending_is_402(self, client, chain_service):
        chain_service.verify_top_up.return_value = {
            'success': False, 'reason': 'pending', 'retryable': True, 'error': 'not confirmed',
        }
        response = client.post('/credits/api/top-up', json={'tx_id': TOP_UP_TX})
        assert response.status_code == 402
        assert response.get_json()['error_type'] == 'payment_pending'

    def test_withdraw_below_minimum(self, client, funded):
        response = client.post('/credits/api/withdraw', json={'wallet_address': WALLET, 'amount_micro': 1})
        assert response.status_code == 400

    def test_session_wallet_wins(self, client, funded):
        with client.session_transaction() as sess:
            sess['wallet'] = WALLET
        body = client.get('/credits/api/balance?wallet_address=' + '0x' + 'ee' * 20).get_json()
        assert body['credits_micro'] == 50_000_000


class TestQuizRoutes:

    def test_challenge_is_payment_required(self, client):
        response = client.get('/quiz/api/challenge?level=2')
        body = response.get_json()
        assert response.status_code == 402
        assert body['level'] == 2
        assert len(body['nonce']) == 32

    def test_insufficient_credits_is_402(self, client):
        response = client.post('/quiz/api/next-question', json={'wallet_address': WALLET})
        assert response.status_code == 402
        assert response.get_json()['error_type'] == 'insufficient_credits'

    def test_run_over_http(self, client, app, funded, clock):
        started = client.post('/quiz/api/next-question', json={'wallet_address': WALLET}).get_json()
        run_id = started['run_id']
        assert 'correct_index' not in started['question']

        clock.advance(2)
        correct = app.extensions['quiz_manager'].run_state.get_run(run_id)['correct_index']
        answered = client.post('/quiz/api/answer', json={
            'wallet_address': WALLET, 'run_id': run_id, 'selected_index': correct,
        }).get_json()
        assert answered['outcome'] == 'correct'

        early = client.post('/quiz/api/stop', json={'wallet_address': WALLET, 'run_id': run_id})
        assert early.status_code == 400
        assert early.get_json()['error_type'] == 'min_levels_not_reached'

        stopped = client.post('/quiz/api/stop', json={
            'wallet_address': WALLET, 'run_id': run_id, 'allow_early_stop': True,
        })
        assert stopped.status_code == 200
        assert stopped.get_json()['settlement']['ledger_applied'] is True

    def test_unknown_run_is_404(self, client):
        response = client.post('/quiz/api/answer', json={
            'wallet_address': WALLET, 'run_id': 'missing', 'selected_index': 0,
        })
        assert response.status_code == 404

    def test_abort(self, client, funded):
        run_id = client.post('/quiz/api/next-question', json={'wallet_address': WALLET}).get_json()['run_id']
        response = client.post('/quiz/api/abort', json={'wallet_address': WALLET, 'run_id': run_id})
        assert response.status_code == 200
        assert response.get_json()['aborted'] is True
