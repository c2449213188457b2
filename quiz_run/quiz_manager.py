import logging

from blockchain import mask_wallet_address
from config import QUIZ_CONFIG, is_valid_category
from tokenomics import clamp_level, cost_micro, to_units
from .question_supplier import allowed_time_sec, generate_question

logger = logging.getLogger(__name__)

PAYMENT_MODES = ('credits', 'payment', 'practice')


def public_question(question: dict) -> dict:
    """Question as sent to the player, without the answer"""
    return {
        'question_id': question.get('question_id'),
        'question': question.get('question'),
        'options': question.get('options'),
        'difficulty': question.get('difficulty'),
        'category': question.get('category'),
    }


class QuizManager:
    """Pay-per-question run flow: payment, question delivery, grading, settlement"""

    def __init__(self, run_state, challenges, batch_cache, supplier, ledger, chain_service, settlement):
        self.run_state = run_state
        self.challenges = challenges
        self.batch_cache = batch_cache
        self.supplier = supplier
        self.ledger = ledger
        self.chain_service = chain_service
        self.settlement = settlement
        self.max_questions = QUIZ_CONFIG['MAX_QUESTIONS']
        logger.info("🧠 Quiz manager initialized")

    # ------------------------------------------------------------------
    # Payment
    # ------------------------------------------------------------------

    def request_challenge(self, level) -> dict:
        """Price and nonce for paying one question on-chain"""
        if self.chain_service is None or not self.chain_service.payments_enabled:
            return {'success': False, 'error': 'On-chain payments not configured', 'error_type': 'not_configured'}
        challenge = self.challenges.issue_challenge(level)
        challenge['success'] = True
        challenge['amount'] = to_units(challenge['amount_micro'])
        return challenge

    def _pay_on_chain(self, level: int, tx_id: str, nonce: str, wait: bool, sleep=None) -> dict:
        if self.chain_service is None or not self.chain_service.payments_enabled:
            return {'success': False, 'error': 'On-chain payments not configured', 'error_type': 'not_configured'}
        if not tx_id or not nonce:
            return {'success': False, 'error': 'tx_id and nonce required', 'error_type': 'invalid_input'}

        status = self.challenges.get_status(nonce)
        if status != 'valid':
            return {'success': False, 'error': f'Payment challenge {status.replace("_", " ")}',
                    'error_type': f'challenge_{status}'}

        challenge = self.challenges.get_challenge(nonce)
        price = cost_micro(level)
        if challenge['amount_micro'] != price:
            return {'success': False, 'error': 'Payment challenge was issued for a different level',
                    'error_type': 'payment_rejected', 'reason': 'amount_mismatch', 'retryable': False}

        def check():
            return self.chain_service.verify_payment(tx_id, challenge['recipient'], price, nonce)

        if wait:
            kwargs = {'sleep': sleep} if sleep else {}
            verification = self.chain_service.wait_for_confirmation(check, **kwargs)
        else:
            verification = check()

        if not verification.get('success'):
            retryable = verification.get('retryable', False)
            return {
                'success': False,
                'error': verification.get('error'),
                'error_type': 'payment_pending' if retryable else 'payment_rejected',
                'reason': verification.get('reason'),
                'retryable': retryable,
                'timed_out_waiting': verification.get('timed_out_waiting', False),
            }

        consumed = self.challenges.consume(nonce)
        if not consumed.get('success'):
            logger.error(f"❌ Verified payment not applied: tx={tx_id} nonce={nonce} amount={price} "
                         f"reason={consumed['error_type']} - needs manual refund")
            return {'success': False, 'error': consumed['error'], 'error_type': consumed['error_type'],
                    'tx_id': tx_id}

        return {'success': True, 'tx_id': tx_id, 'sender_address': verification.get('sender_address')}

    def _collect_payment(self, wallet: str, mode: str, level: int, run_id: str, data: dict) -> dict:
        price = cost_micro(level)
        if mode == 'practice':
            return {'success': True, 'charged_micro': 0}

        if mode == 'credits':
            if not self.ledger.is_configured:
                return {'success': False, 'error': 'Credits unavailable', 'error_type': 'not_configured'}
            return self.ledger.charge_question(wallet, price, level, run_id)

        paid = self._pay_on_chain(level, data.get('tx_id'), data.get('nonce'), bool(data.get('wait')))
        if paid.get('success'):
            paid['charged_micro'] = price
        return paid

    def _refund(self, wallet: str, mode: str, price: int, run_id: str, reason: str):
        if mode == 'credits' and price > 0:
            return self.ledger.refund_question(wallet, price, run_id, reason)
        if mode == 'payment':
            logger.error(f"❌ Paid question not delivered wallet={wallet} run={run_id} "
                         f"amount={price} reason={reason} - needs manual refund")
        return None

    # ------------------------------------------------------------------
    # Questions
    # ------------------------------------------------------------------

    def _next_from_batch(self, run: dict) -> tuple:
        """
        Queued question for the run's level, as (question, from_queue).

        Entries below the level are stale and dropped. An entry above the level
        goes back to the head and the supplier covers the gap.
        """
        level = run['level']
        while True:
            question = self.batch_cache.pop_question(run['run_id'])
            if question is None:
                break
            difficulty = question.get('difficulty')
            if difficulty is None or difficulty == level:
                return question, True
            if difficulty > level:
                self.batch_cache.return_question(run['run_id'], question)
                break
            logger.debug(f"Dropping stale level {difficulty} question from run {run['run_id'][:8]}")

        supplied = self.supplier.get_batch(run['category'], level, 1)
        return (supplied[0] if supplied else generate_question(run['category'], level)), False

    def next_question(self, wallet_address: str, data: dict) -> dict:
        """
        Deliver the first question of a new run, or the next one of a live run.

        The question price is collected before delivery (credits deduction or a
        verified on-chain payment). If delivery then fails, credits are refunded.
        """
        mode = data.get('payment_mode') or 'credits'
        if mode not in PAYMENT_MODES:
            return {'success': False, 'error': f'payment_mode must be one of {", ".join(PAYMENT_MODES)}',
                    'error_type': 'invalid_input'}

        run_id = data.get('run_id')
        run = None
        if run_id:
            run = self.run_state.get_run(run_id)
            if run is None:
                return {'success': False, 'error': 'Run not found or expired', 'error_type': 'run_not_found'}
            if run['wallet_address'] != wallet_address:
                return {'success': False, 'error': 'Run belongs to another wallet', 'error_type': 'forbidden'}
            if run.get('correct_index') is not None:
                return {'success': False, 'error': 'Answer the current question first',
                        'error_type': 'question_outstanding'}
            if run['completed_levels'] >= self.max_questions:
                return {'success': False, 'error': 'Run complete - stop to collect your earnings',
                        'error_type': 'run_complete'}
            # A run keeps the payment mode it started with when it is a practice run
            if run.get('practice'):
                mode = 'practice'
            elif mode == 'practice':
                return {'success': False, 'error': 'Cannot switch a paid run to practice',
                        'error_type': 'invalid_input'}
            level = run['level']
            category = run['category']
        else:
            level = 0
            category = data.get('category') or self.batch_cache.pick_category()
            if not is_valid_category(category):
                return {'success': False, 'error': 'Unknown category', 'error_type': 'invalid_input'}

        price = 0 if mode == 'practice' else cost_micro(level)
        payment = self._collect_payment(wallet_address, mode, level, run_id, data)
        if not payment.get('success'):
            return payment

        try:
            if run is None:
                batch = self.batch_cache.create_initial_batch(category, practice=(mode == 'practice'))
                question = batch['first']
                allowed = allowed_time_sec(question)
                run_id = self.run_state.create_run(
                    wallet_address, level, question['correct_index'], price, allowed,
                    category, practice=(mode == 'practice'), question=question,
                )
                self.batch_cache.set_batch(run_id, category, batch['rest'], practice=(mode == 'practice'))
                spent = price
            else:
                question, from_queue = self._next_from_batch(run)
                allowed = allowed_time_sec(question)
                stored = self.run_state.set_question_for_run(
                    run_id, level, question['correct_index'], price, allowed, question=question,
                )
                if not stored.get('success'):
                    # A concurrent request delivered first; keep the queue in step with the level
                    if from_queue and stored.get('error_type') == 'question_outstanding':
                        self.batch_cache.return_question(run_id, question)
                    refund = self._refund(wallet_address, mode, price, run_id, stored['error_type'])
                    if refund:
                        stored['refunded_micro'] = refund['refunded_micro']
                        stored['balance_micro'] = refund['balance_micro']
                    return stored
                spent = stored['spent_micro']
                self.batch_cache.refill_if_needed(run_id, level, category, practice=(mode == 'practice'))
        except Exception as e:
            logger.error(f"❌ Question delivery failed for {mask_wallet_address(wallet_address)}: {e}")
            refund = self._refund(wallet_address, mode, price, run_id, 'question_unavailable')
            result = {'success': False, 'error': 'Could not deliver a question', 'error_type': 'question_unavailable'}
            if refund:
                result['refunded_micro'] = refund['refunded_micro']
                result['balance_micro'] = refund['balance_micro']
            return result

        logger.info(f"❓ Level {level} question delivered to {mask_wallet_address(wallet_address)} "
                    f"(run {run_id[:8]}, {mode})")
        result = {
            'success': True,
            'run_id': run_id,
            'level': level,
            'category': category,
            'practice': mode == 'practice',
            'payment_mode': mode,
            'question': public_question(question),
            'allowed_sec': allowed,
            'cost_micro': price,
            'spent_micro': spent,
        }
        if 'balance_micro' in payment:
            result['balance_micro'] = payment['balance_micro']
        if payment.get('tx_id'):
            result['tx_id'] = payment['tx_id']
        return result

    # ------------------------------------------------------------------
    # Run outcomes
    # ------------------------------------------------------------------

    def _finish(self, snapshot: dict) -> dict:
        settlement = self.settlement.settle(snapshot)
        return {
            'success': True,
            'run_ended': True,
            'outcome': snapshot['outcome'],
            'run_id': snapshot['run_id'],
            'completed_levels': snapshot['completed_levels'],
            'total_points': snapshot['total_points'],
            'spent_micro': snapshot['spent_micro'],
            'results': snapshot['results'],
            'correct_index': snapshot.get('correct_index'),
            'correct_option': snapshot.get('correct_option'),
            'reasoning': snapshot.get('reasoning'),
            'settlement': settlement,
        }

    def submit_answer(self, wallet_address: str, run_id: str, selected_index) -> dict:
        if not run_id:
            return {'success': False, 'error': 'run_id required', 'error_type': 'invalid_input'}

        result = self.run_state.submit_answer(run_id, selected_index, wallet_address=wallet_address)
        if not result.get('success') or not result.get('run_ended'):
            return result
        return self._finish(result)

    def report_timeout(self, wallet_address: str, run_id: str) -> dict:
        if not run_id:
            return {'success': False, 'error': 'run_id required', 'error_type': 'invalid_input'}

        result = self.run_state.time_out(run_id, wallet_address=wallet_address)
        if not result.get('success'):
            return result
        return self._finish(result)

    def stop_run(self, wallet_address: str, run_id: str, allow_early_stop: bool = False) -> dict:
        if not run_id:
            return {'success': False, 'error': 'run_id required', 'error_type': 'invalid_input'}

        result = self.run_state.stop_run(run_id, allow_early_stop=allow_early_stop, wallet_address=wallet_address)
        if not result.get('success'):
            return result
        return self._finish(result)

    def abort_run(self, wallet_address: str, run_id: str) -> dict:
        if not run_id:
            return {'success': False, 'error': 'run_id required', 'error_type': 'invalid_input'}

        result = self.run_state.abort(run_id, wallet_address=wallet_address)
        if result.get('success'):
            self.batch_cache.clear_run_batch(run_id)
        return result
