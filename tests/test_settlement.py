"""Run settlement tests: one ledger credit per run, history written once, batch released."""
from unittest.mock import MagicMock

from quiz_run import RunSettlement
from tokenomics import cost_micro, milestone_bonus_micro
from tests.conftest import WALLET
from tests.fake_supabase import FakeAPIError


def snapshot(outcome='incorrect', completed=2, points=150.0, spent=None, practice=False, run_id='run-1'):
    return {
        'run_id': run_id,
        'wallet_address': WALLET,
        'outcome': outcome,
        'completed_levels': completed,
        'total_points': points,
        'spent_micro': sum(cost_micro(level) for level in range(completed + 1)) if spent is None else spent,
        'practice': practice,
        'category': 'Smart Math',
        'question_ids': ['q0', 'q1', 'q2'],
        'question_details': [],
        'results': [],
    }


class TestRunSettlement:

    def test_wrong_answer_credits_net_earnings(self, settlement, ledger, fake_db, batch_cache):
        batch_cache.set_batch('run-1', 'Smart Math', [{'question_id': 'x'}])

        result = settlement.settle(snapshot())

        assert result['net_earned_micro'] == 1_500_000
        assert result['profit_micro'] == 1_500_000 - result['spent_micro']
        assert result['milestone_bonus_micro'] == 0
        assert result['ledger_applied'] is True
        assert result['history_saved'] is True
        assert ledger.get_balance(WALLET) == 1_500_000
        tx = fake_db.rows('credit_transactions')
        assert [t['type'] for t in tx] == ['profit']
        assert tx[0]['amount_micro'] == 1_500_000
        assert tx[0]['metadata']['profit_micro'] == result['profit_micro']
        assert tx[0]['metadata']['run_result'] == 'loss'
        assert batch_cache.get_batch_size('run-1') == 0

    def test_profitable_run_is_profit(self, settlement, fake_db):
        settlement.settle(snapshot(points=500.0, completed=1))
        assert fake_db.rows('credit_transactions')[0]['type'] == 'profit'

    def test_run_with_no_earnings_is_loss(self, settlement, fake_db):
        settlement.settle(snapshot(points=0.0, completed=0))
        row = fake_db.rows('credit_transactions')[0]
        assert row['type'] == 'loss'
        assert row['amount_micro'] == 0
        assert row['metadata']['profit_micro'] == -cost_micro(0)

    def test_milestone_bonus_only_on_stop(self, settlement, fake_db, ledger):
        stopped = settlement.settle(snapshot(outcome='stopped', completed=7, points=100.0, run_id='a'))
        wrong = settlement.settle(snapshot(outcome='incorrect', completed=7, points=100.0, run_id='b'))

        assert stopped['milestone_bonus_micro'] == milestone_bonus_micro(7)
        assert stopped['milestone_tier'] == 'high'
        assert wrong['milestone_bonus_micro'] == 0
        types = [t['type'] for t in fake_db.rows('credit_transactions')]
        assert types.count('milestone_bonus') == 1
        assert ledger.get_balance(WALLET) == 2 * 1_000_000 + milestone_bonus_micro(7)

    def test_same_formula_for_every_ending(self, settlement):
        results = [
            settlement.settle(snapshot(outcome=outcome, completed=3, points=321.5, run_id=outcome))
            for outcome in ('incorrect', 'timed_out', 'stopped')
        ]
        assert len({r['net_earned_micro'] for r in results}) == 1
        assert len({r['profit_micro'] for r in results}) == 1

    def test_practice_has_no_ledger_effect(self, settlement, fake_db, batch_cache):
        batch_cache.set_batch('run-1', 'Smart Math', [{'question_id': 'x'}])
        result = settlement.settle(snapshot(practice=True, points=900.0))

        assert result['settled'] is False
        assert fake_db.rows('credit_transactions') == []
        assert fake_db.rows('quiz_runs') == []
        assert batch_cache.get_batch_size('run-1') == 0

    def test_history_row(self, settlement, fake_db):
        settlement.settle(snapshot(outcome='stopped', completed=4, points=400.0))
        row = fake_db.rows('quiz_runs')[0]
        assert row['run_id'] == 'run-1'
        assert row['outcome'] == 'stopped'
        assert row['score'] == 400.0
        assert row['question_ids'] == ['q0', 'q1', 'q2']

    def test_history_failure_keeps_ledger_and_is_logged(self, settlement, fake_db, ledger, caplog):
        fake_db.failures[('quiz_runs', 'insert')] = FakeAPIError('connection reset')

        result = settlement.settle(snapshot())

        assert result['ledger_applied'] is True
        assert result['history_saved'] is False
        assert ledger.get_balance(WALLET) == 1_500_000
        assert any('Run history not saved' in r.getMessage() for r in caplog.records)

    def test_ledger_failure_is_logged_and_batch_released(self, batch_cache, fake_db, caplog):
        ledger = MagicMock()
        ledger.apply_settlement.side_effect = RuntimeError('database down')
        settlement = RunSettlement(ledger, batch_cache, supabase=fake_db)
        batch_cache.set_batch('run-1', 'Smart Math', [{'question_id': 'x'}])

        result = settlement.settle(snapshot())

        assert result['ledger_applied'] is False
        assert any('SETTLEMENT NOT APPLIED' in r.getMessage() for r in caplog.records)
        assert batch_cache.get_batch_size('run-1') == 0
