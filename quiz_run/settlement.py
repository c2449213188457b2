import logging
from datetime import datetime, timezone

from blockchain import mask_wallet_address
from tokenomics import milestone_bonus_micro, milestone_tier, settlement_summary, to_units

logger = logging.getLogger(__name__)


class RunSettlement:
    """
    Turns a finished run into ledger credits and a history row.

    Steps: compute earnings, credit profit/loss, credit any milestone bonus
    (voluntary stop only), write quiz_runs, clear the batch. They are not one
    transaction. A failure after the ledger step is logged at ERROR with the
    full figures and is not retried.
    """

    def __init__(self, ledger, batch_cache, supabase=None):
        self.ledger = ledger
        self.batch_cache = batch_cache
        self.supabase = supabase if supabase is not None else getattr(ledger, 'supabase', None)

    def settle(self, snapshot: dict) -> dict:
        run_id = snapshot['run_id']
        wallet = snapshot['wallet_address']
        outcome = snapshot['outcome']

        try:
            if snapshot.get('practice'):
                logger.info(f"🎓 Practice run {run_id[:8]} finished ({outcome}) - no ledger effect")
                return {
                    'practice': True,
                    'settled': False,
                    'total_points': snapshot['total_points'],
                    'completed_levels': snapshot['completed_levels'],
                }

            summary = settlement_summary(snapshot['total_points'], snapshot['spent_micro'])
            bonus = milestone_bonus_micro(snapshot['completed_levels']) if outcome == 'stopped' else 0

            result = dict(summary)
            result.update({
                'practice': False,
                'settled': True,
                'outcome': outcome,
                'total_points': snapshot['total_points'],
                'completed_levels': snapshot['completed_levels'],
                'milestone_bonus_micro': bonus,
                'milestone_tier': milestone_tier(snapshot['completed_levels']) if bonus else None,
                'earned': to_units(summary['net_earned_micro'] + bonus),
            })

            result['ledger_applied'] = self._apply_to_ledger(snapshot, summary, bonus, result)
            result['history_saved'] = self._save_history(snapshot, summary, bonus)
            return result
        finally:
            self.batch_cache.clear_run_batch(run_id)

    def _apply_to_ledger(self, snapshot: dict, summary: dict, bonus: int, result: dict) -> bool:
        run_id = snapshot['run_id']
        wallet = snapshot['wallet_address']
        try:
            applied = self.ledger.apply_settlement(
                wallet,
                run_id,
                summary['net_earned_micro'],
                summary['profit_micro'],
                milestone_bonus_micro=bonus,
                metadata={
                    'outcome': snapshot['outcome'],
                    'completed_levels': snapshot['completed_levels'],
                    'spent_micro': summary['spent_micro'],
                    'gross_earned_micro': summary['gross_earned_micro'],
                },
            )
        except Exception as e:
            logger.error(
                f"❌ SETTLEMENT NOT APPLIED run={run_id} wallet={wallet} net={summary['net_earned_micro']} "
                f"profit={summary['profit_micro']} bonus={bonus}: {e}"
            )
            return False

        result['balance_micro'] = applied['balance_micro']
        logger.info(
            f"💰 Run {run_id[:8]} settled for {mask_wallet_address(wallet)}: "
            f"net={summary['net_earned_micro']} profit={summary['profit_micro']} bonus={bonus}"
        )
        return True

    def _save_history(self, snapshot: dict, summary: dict, bonus: int) -> bool:
        if self.supabase is None:
            logger.warning(f"⚠️ No database - history for run {snapshot['run_id'][:8]} not saved")
            return False
        try:
            self.supabase.table('quiz_runs').insert({
                'run_id': snapshot['run_id'],
                'wallet_address': snapshot['wallet_address'],
                'outcome': snapshot['outcome'],
                'score': snapshot['total_points'],
                'spent_micro': summary['spent_micro'],
                'earned_micro': summary['net_earned_micro'] + bonus,
                'profit_micro': summary['profit_micro'] + bonus,
                'milestone_bonus_micro': bonus,
                'completed_levels': snapshot['completed_levels'],
                'category': snapshot.get('category'),
                'question_ids': snapshot.get('question_ids', []),
                'question_details': snapshot.get('question_details', []),
                'created_at': datetime.now(timezone.utc).isoformat(),
            }).execute()
            return True
        except Exception as e:
            logger.error(
                f"❌ Run history not saved run={snapshot['run_id']} wallet={snapshot['wallet_address']} "
                f"score={snapshot['total_points']} spent={summary['spent_micro']} "
                f"earned={summary['net_earned_micro'] + bonus}: {e}"
            )
            return False
