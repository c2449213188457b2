from unittest.mock import MagicMock

import pytest

from cache_utils import LocalKeyValueStore
from credit_ledger import CreditLedger
from quiz_run import (
    PaymentChallengeStore,
    QuestionBatchCache,
    QuestionSupplier,
    QuizManager,
    RunSettlement,
    RunStateStore,
)
from tests.fake_supabase import FakeSupabase

WALLET = '0x' + 'ab' * 20
OTHER_WALLET = '0x' + 'cd' * 20
RECIPIENT = '0x' + '12' * 20


class FakeClock:
    """Manually advanced wall clock"""

    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv_store(clock):
    return LocalKeyValueStore(default_ttl=1800, clock=clock)


@pytest.fixture
def fake_db():
    return FakeSupabase()


@pytest.fixture
def chain_service():
    chain = MagicMock()
    chain.recipient_address = RECIPIENT
    chain.payments_enabled = True
    chain.payouts_enabled = False
    return chain


@pytest.fixture
def ledger(fake_db, chain_service):
    return CreditLedger(supabase=fake_db, chain_service=chain_service)


@pytest.fixture
def supplier(fake_db):
    return QuestionSupplier(supabase=fake_db)


@pytest.fixture
def batch_cache(kv_store, supplier):
    return QuestionBatchCache(kv_store, supplier)


@pytest.fixture
def run_state(kv_store, clock):
    return RunStateStore(kv_store, clock=clock)


@pytest.fixture
def challenges(kv_store, clock):
    return PaymentChallengeStore(kv_store, recipient_address=RECIPIENT, clock=clock)


@pytest.fixture
def settlement(ledger, batch_cache, fake_db):
    return RunSettlement(ledger, batch_cache, supabase=fake_db)


@pytest.fixture
def quiz_manager(run_state, challenges, batch_cache, supplier, ledger, chain_service, settlement):
    return QuizManager(run_state, challenges, batch_cache, supplier, ledger, chain_service, settlement)
