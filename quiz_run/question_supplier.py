import logging
import random
import uuid
from typing import Dict, List, Optional

from config import QUIZ_CONFIG, is_valid_category
from supabase_client import get_supabase_client, retry_on_connection_error, safe_supabase_operation
from tokenomics import clamp_level

logger = logging.getLogger(__name__)

DEFAULT_SOLVE_TIME_SEC = QUIZ_CONFIG['DEFAULT_SOLVE_TIME_SEC']
QUESTION_TIME_CAP_SEC = QUIZ_CONFIG['QUESTION_TIME_CAP_SEC']


def allowed_time_sec(question: dict) -> int:
    """Time allowed for a question, capped"""
    try:
        estimate = int(question.get('estimated_solve_time_sec') or DEFAULT_SOLVE_TIME_SEC)
    except (TypeError, ValueError):
        estimate = DEFAULT_SOLVE_TIME_SEC
    return max(1, min(estimate, QUESTION_TIME_CAP_SEC))


def _shuffle_options(rng: random.Random, correct, distractors) -> tuple:
    options = [str(correct)] + [str(d) for d in distractors]
    rng.shuffle(options)
    return options, options.index(str(correct))


def _distractors(rng: random.Random, answer: int, spread: int) -> List[int]:
    seen = {answer}
    values = []
    while len(values) < 3:
        candidate = answer + rng.choice([-1, 1]) * rng.randint(1, max(2, spread))
        if candidate not in seen:
            seen.add(candidate)
            values.append(candidate)
    return values


def generate_question(category: str, level: int, index: int = 0) -> dict:
    """
    Procedural question for (category, level, index).

    Same inputs give the same question, so fallback batches are reproducible.
    """
    level = clamp_level(level)
    rng = random.Random(f"{category}:{level}:{index}")
    kind = index % 3

    if kind == 0:
        a = rng.randint(2 + level * 3, 9 + level * 6)
        b = rng.randint(2 + level, 6 + level * 2)
        c = rng.randint(1, 20 + level * 10)
        answer = a * b + c
        text = f"What is {a} × {b} + {c}?"
        reasoning = f"{a} × {b} = {a * b}, plus {c} gives {answer}."
    elif kind == 1:
        start = rng.randint(1, 10 + level * 5)
        step = rng.randint(2, 4 + level * 2)
        terms = [start + step * i for i in range(4)]
        answer = start + step * 4
        text = f"What comes next: {', '.join(str(t) for t in terms)}, ?"
        reasoning = f"Each term adds {step}, so the next is {terms[-1]} + {step} = {answer}."
    else:
        price = rng.randint(10, 40 + level * 20)
        qty = rng.randint(2, 5 + level)
        paid = price * qty + rng.randint(1, 50) * 5
        answer = paid - price * qty
        text = f"You buy {qty} items at {price} each and pay with {paid}. How much change do you get?"
        reasoning = f"{qty} × {price} = {price * qty}; {paid} - {price * qty} = {answer}."

    options, correct_index = _shuffle_options(rng, answer, _distractors(rng, answer, 3 + level * 4))
    return {
        'question_id': f"gen-{uuid.uuid5(uuid.NAMESPACE_URL, f'{category}:{level}:{index}').hex[:12]}",
        'question': text,
        'options': options,
        'correct_index': correct_index,
        'difficulty': level,
        'category': category,
        'estimated_solve_time_sec': DEFAULT_SOLVE_TIME_SEC,
        'reasoning': reasoning,
    }


def get_fallback_batch(category: str, start_level: int, count: int, offset: int = 0) -> List[dict]:
    """Generated questions of rising difficulty starting at start_level"""
    start_level = clamp_level(start_level)
    return [
        generate_question(category, min(start_level + i, QUIZ_CONFIG['DIFFICULTY_LEVELS'] - 1), offset + i)
        for i in range(count)
    ]


class QuestionSupplier:
    """Question payloads per (category, level): quiz_questions rows first, generated otherwise"""

    def __init__(self, supabase=None):
        self.supabase = supabase if supabase is not None else get_supabase_client()
        self._rng = random.Random()

    @retry_on_connection_error(max_retries=2, delay=1)
    def _fetch_rows(self, category: str) -> list:
        result = self.supabase.table('quiz_questions')\
            .select('*')\
            .eq('category', category)\
            .execute()
        return result.data or []

    @staticmethod
    def _row_to_payload(row: dict) -> Optional[dict]:
        try:
            options = [row['answer_a'], row['answer_b'], row['answer_c'], row['answer_d']]
            correct_index = ord(str(row['correct']).upper()) - ord('A')
        except (KeyError, TypeError):
            return None
        if not 0 <= correct_index < 4:
            return None
        return {
            'question_id': row.get('question_id'),
            'question': row.get('question'),
            'options': options,
            'correct_index': correct_index,
            'difficulty': clamp_level(row.get('difficulty')),
            'category': row.get('category'),
            'estimated_solve_time_sec': row.get('estimated_solve_time_sec') or DEFAULT_SOLVE_TIME_SEC,
            'reasoning': row.get('reasoning'),
        }

    def _stored_by_level(self, category: str) -> Dict[int, List[dict]]:
        if self.supabase is None:
            return {}
        rows = safe_supabase_operation(
            lambda: self._fetch_rows(category),
            fallback_result=[],
            operation_name=f"loading questions for {category}",
        )
        by_level: Dict[int, List[dict]] = {}
        for row in rows:
            payload = self._row_to_payload(row)
            if payload:
                by_level.setdefault(payload['difficulty'], []).append(payload)
        return by_level

    def get_batch(self, category: str, start_level: int, count: int) -> List[dict]:
        """count questions for one category, difficulty rising from start_level"""
        if not is_valid_category(category) or count <= 0:
            return []

        start_level = clamp_level(start_level)
        stored = self._stored_by_level(category)
        offset = self._rng.randint(0, 10_000)
        batch = []
        used = set()

        for i in range(count):
            level = min(start_level + i, QUIZ_CONFIG['DIFFICULTY_LEVELS'] - 1)
            choices = [q for q in stored.get(level, []) if q['question_id'] not in used]
            if choices:
                question = self._rng.choice(choices)
                used.add(question['question_id'])
            else:
                question = generate_question(category, level, offset + i)
            batch.append(question)

        from_store = len(used)
        logger.info(f"📚 Supplied {len(batch)} questions for {category} from level {start_level} "
                    f"({from_store} stored, {len(batch) - from_store} generated)")
        return batch
