"""
Run State Store

Per-run state machine kept in the key-value store:

    no run -> awaiting answer -> correct: awaiting answer at the next level
                              -> incorrect / timed_out / stopped / aborted: removed

Every operation is a single store.update(), so the expiry check and the
mutation happen in one step. The store never touches the credit ledger;
terminal operations hand back a snapshot for settlement.
"""
import logging
import time
import uuid
from typing import Callable, Optional

from cache_utils import DELETE, KEEP
from config import QUIZ_CONFIG
from tokenomics import clamp_level, is_timeout, points_earned

logger = logging.getLogger(__name__)

OPTION_COUNT = 4


def _not_found():
    return {'success': False, 'error': 'Run not found or expired', 'error_type': 'run_not_found'}


def _forbidden():
    return {'success': False, 'error': 'Run belongs to another wallet', 'error_type': 'forbidden'}


class RunStateStore:

    def __init__(self, store, ttl_seconds: int = None, clock: Callable[[], float] = time.time,
                 min_level_before_stop: int = None):
        self.store = store
        self.ttl_seconds = ttl_seconds or QUIZ_CONFIG['RUN_TTL_SECONDS']
        self.clock = clock
        self.max_questions = QUIZ_CONFIG['MAX_QUESTIONS']
        self.min_level_before_stop = (
            QUIZ_CONFIG['MIN_LEVEL_BEFORE_STOP'] if min_level_before_stop is None else min_level_before_stop
        )

    @staticmethod
    def _key(run_id: str) -> str:
        return f"run:{run_id}"

    def _question_entry(self, level: int, correct_index: int, question: Optional[dict]) -> dict:
        question = question or {}
        return {
            'question_id': question.get('question_id'),
            'level': level,
            'question': question.get('question'),
            'options': list(question.get('options') or []),
            'correct_index': correct_index,
            'reasoning': question.get('reasoning'),
        }

    def create_run(self, wallet_address: str, level, correct_index: int, spent_micro: int,
                   allowed_sec: float, category: str, practice: bool = False,
                   question: dict = None) -> str:
        """Start a run with its first question already delivered"""
        run_id = uuid.uuid4().hex
        level = clamp_level(level)
        entry = self._question_entry(level, correct_index, question)
        now = self.clock()
        run = {
            'run_id': run_id,
            'wallet_address': wallet_address,
            'level': level,
            'correct_index': correct_index,
            'completed_levels': 0,
            'spent_micro': int(spent_micro),
            'total_points': 0.0,
            'question_delivered_at': now,
            'allowed_sec': float(allowed_sec),
            'category': category,
            'practice': bool(practice),
            'question_ids': [entry['question_id']] if entry['question_id'] else [],
            'results': [],
            'question_details': [entry],
            'created_at': now,
        }
        self.store.set(self._key(run_id), run, ttl=self.ttl_seconds)
        logger.info(f"🎯 Run {run_id[:8]} started at level {level} ({category}{', practice' if practice else ''})")
        return run_id

    def get_run(self, run_id: str) -> Optional[dict]:
        if not run_id or not isinstance(run_id, str):
            return None
        return self.store.get(self._key(run_id))

    def set_question_for_run(self, run_id: str, level, correct_index: int, additional_spent_micro: int,
                             allowed_sec: float, question: dict = None) -> dict:
        """
        Attach the next question to a live run and add its price to the spend.

        Fails without mutation when the run is gone, still has an unanswered
        question, or is already complete. Callers must not retry blindly.
        """
        level = clamp_level(level)

        def mutate(run):
            if run is None:
                return KEEP, _not_found()
            if run.get('correct_index') is not None:
                return KEEP, {'success': False, 'error': 'Answer the current question first',
                              'error_type': 'question_outstanding'}
            if run['completed_levels'] >= self.max_questions:
                return KEEP, {'success': False, 'error': 'Run complete - stop to collect your earnings',
                              'error_type': 'run_complete'}

            entry = self._question_entry(level, correct_index, question)
            run['level'] = level
            run['correct_index'] = correct_index
            run['spent_micro'] += int(additional_spent_micro)
            run['question_delivered_at'] = self.clock()
            run['allowed_sec'] = float(allowed_sec)
            if entry['question_id']:
                run['question_ids'].append(entry['question_id'])
            run['question_details'].append(entry)
            return run, {'success': True, 'level': level, 'spent_micro': run['spent_micro']}

        return self.store.update(self._key(run_id), mutate, ttl=self.ttl_seconds)

    def _snapshot(self, run: dict, outcome: str) -> dict:
        current = run['question_details'][-1] if run['question_details'] else {}
        correct_index = run.get('correct_index')
        if correct_index is None:
            correct_index = current.get('correct_index')
        options = current.get('options') or []
        correct_option = options[correct_index] if correct_index is not None and 0 <= correct_index < len(options) else None

        return {
            'success': True,
            'run_ended': True,
            'outcome': outcome,
            'run_id': run['run_id'],
            'wallet_address': run['wallet_address'],
            'level': run['level'],
            'completed_levels': run['completed_levels'],
            'spent_micro': run['spent_micro'],
            'total_points': run['total_points'],
            'category': run.get('category'),
            'practice': run.get('practice', False),
            'question_ids': run['question_ids'],
            'results': run['results'],
            'question_details': run['question_details'],
            'correct_index': correct_index,
            'correct_option': correct_option,
            'reasoning': current.get('reasoning'),
        }

    def _end_outstanding(self, run: dict, outcome: str, selected_index=None) -> dict:
        current = run['question_details'][-1] if run['question_details'] else {}
        run['results'].append({
            'question_id': current.get('question_id'),
            'level': run['level'],
            'selected_index': selected_index,
            'points': 0.0,
            'outcome': outcome,
        })
        snapshot = self._snapshot(run, outcome)
        logger.info(f"🏁 Run {run['run_id'][:8]} ended: {outcome} after {run['completed_levels']} levels")
        return snapshot

    def submit_answer(self, run_id: str, selected_index, wallet_address: str = None) -> dict:
        """
        Grade the outstanding question using server-side elapsed time.

        correct: points added, level advanced, run continues.
        incorrect, or answered after the allowed time: run removed, snapshot returned.
        """
        if isinstance(selected_index, bool) or not isinstance(selected_index, int) \
                or not 0 <= selected_index < OPTION_COUNT:
            return {'success': False, 'error': 'selected_index must be 0-3', 'error_type': 'invalid_input'}

        def mutate(run):
            if run is None:
                return KEEP, _not_found()
            if wallet_address and run['wallet_address'] != wallet_address:
                return KEEP, _forbidden()
            if run.get('correct_index') is None:
                return KEEP, {'success': False, 'error': 'No question awaiting an answer',
                              'error_type': 'no_outstanding_question'}

            elapsed = max(0.0, self.clock() - run['question_delivered_at'])
            if is_timeout(elapsed, run['allowed_sec']):
                return DELETE, self._end_outstanding(run, 'timed_out', selected_index)

            if selected_index != run['correct_index']:
                return DELETE, self._end_outstanding(run, 'incorrect', selected_index)

            points = points_earned(run['level'], elapsed, run['allowed_sec'])
            current = run['question_details'][-1] if run['question_details'] else {}
            run['results'].append({
                'question_id': current.get('question_id'),
                'level': run['level'],
                'selected_index': selected_index,
                'points': points,
                'outcome': 'correct',
            })
            run['total_points'] = round(run['total_points'] + points, 4)
            run['completed_levels'] += 1
            run['level'] = clamp_level(run['level'] + 1)
            run['correct_index'] = None

            return run, {
                'success': True,
                'outcome': 'correct',
                'run_ended': False,
                'points_earned': points,
                'solve_time_sec': round(elapsed, 3),
                'next_level': run['level'],
                'completed_levels': run['completed_levels'],
                'total_points': run['total_points'],
                'spent_micro': run['spent_micro'],
                'run_complete': run['completed_levels'] >= self.max_questions,
                'reasoning': current.get('reasoning'),
            }

        return self.store.update(self._key(run_id), mutate, ttl=self.ttl_seconds)

    def time_out(self, run_id: str, wallet_address: str = None) -> dict:
        """End the run because the outstanding question ran out of time"""
        def mutate(run):
            if run is None:
                return KEEP, _not_found()
            if wallet_address and run['wallet_address'] != wallet_address:
                return KEEP, _forbidden()
            if run.get('correct_index') is None:
                return KEEP, {'success': False, 'error': 'No question awaiting an answer',
                              'error_type': 'no_outstanding_question'}
            return DELETE, self._end_outstanding(run, 'timed_out')

        return self.store.update(self._key(run_id), mutate, ttl=self.ttl_seconds)

    def stop_run(self, run_id: str, allow_early_stop: bool = False, wallet_address: str = None) -> dict:
        """Voluntary cash-out; an unanswered question is forfeited"""
        def mutate(run):
            if run is None:
                return KEEP, _not_found()
            if wallet_address and run['wallet_address'] != wallet_address:
                return KEEP, _forbidden()
            if not run.get('practice') and not allow_early_stop \
                    and run['completed_levels'] < self.min_level_before_stop:
                return KEEP, {
                    'success': False,
                    'error': f'Complete at least {self.min_level_before_stop} levels before stopping',
                    'error_type': 'min_levels_not_reached',
                    'completed_levels': run['completed_levels'],
                    'min_level_before_stop': self.min_level_before_stop,
                }
            logger.info(f"🛑 Run {run['run_id'][:8]} stopped after {run['completed_levels']} levels")
            return DELETE, self._snapshot(run, 'stopped')

        return self.store.update(self._key(run_id), mutate, ttl=self.ttl_seconds)

    def abort(self, run_id: str, wallet_address: str = None) -> dict:
        """Drop the run with no snapshot and no settlement"""
        def mutate(run):
            if run is None:
                return KEEP, _not_found()
            if wallet_address and run['wallet_address'] != wallet_address:
                return KEEP, _forbidden()
            return DELETE, {'success': True, 'aborted': True, 'run_id': run['run_id']}

        result = self.store.update(self._key(run_id), mutate, ttl=self.ttl_seconds)
        if result.get('success'):
            logger.info(f"🚫 Run {run_id[:8]} aborted")
        return result
