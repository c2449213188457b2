import logging
from typing import List, Optional

from cache_utils import KeyValueStoreError, LocalKeyValueStore
from config import QUIZ_CONFIG, get_random_category
from .question_supplier import get_fallback_batch

logger = logging.getLogger(__name__)


class QuestionBatchCache:
    """
    Per-run queue of pre-selected questions, one category per run.

    Uses the shared store when it works. On the first shared-store failure it
    switches to local memory for the rest of the process (single instance).
    """

    def __init__(self, store, supplier, ttl_seconds: int = None):
        self.store = store
        self.supplier = supplier
        self.ttl_seconds = ttl_seconds or QUIZ_CONFIG['RUN_TTL_SECONDS']
        self.full_batch_size = QUIZ_CONFIG['FULL_BATCH_SIZE']
        self.practice_batch_size = QUIZ_CONFIG['PRACTICE_BATCH_SIZE']
        self.refill_threshold = QUIZ_CONFIG['REFILL_THRESHOLD']
        self.degraded = False

    @staticmethod
    def _queue_key(run_id: str) -> str:
        return f"batch:{run_id}"

    @staticmethod
    def _meta_key(run_id: str) -> str:
        return f"batch_meta:{run_id}"

    def _call(self, method: str, *args, **kwargs):
        try:
            return getattr(self.store, method)(*args, **kwargs)
        except KeyValueStoreError as e:
            if self.degraded:
                raise
            logger.warning(f"⚠️ Shared batch cache unavailable ({e}) - using local memory")
            self.store = LocalKeyValueStore(default_ttl=self.ttl_seconds)
            self.degraded = True
            return getattr(self.store, method)(*args, **kwargs)

    @staticmethod
    def pick_category() -> str:
        return get_random_category()

    def create_initial_batch(self, category: str, practice: bool = False) -> dict:
        """Returns {'first': question, 'rest': [...]}; practice batches hold one question per level"""
        size = self.practice_batch_size if practice else self.full_batch_size
        batch = self.supplier.get_batch(category, 0, size)
        if not batch:
            logger.warning(f"⚠️ Supplier returned no questions for {category}, using generated batch")
            batch = get_fallback_batch(category, 0, size)
        if not batch:
            raise ValueError(f"No questions available for category {category}")
        return {'first': batch[0], 'rest': batch[1:]}

    def set_batch(self, run_id: str, category: str, questions: List[dict], practice: bool = False) -> None:
        """Replace the run's queue"""
        self._call('delete', self._queue_key(run_id))
        self._call('set', self._meta_key(run_id), {'category': category, 'practice': practice}, ttl=self.ttl_seconds)
        if questions:
            self._call('rpush', self._queue_key(run_id), questions, ttl=self.ttl_seconds)

    def append_to_batch(self, run_id: str, questions: List[dict]) -> int:
        if not questions:
            return self.get_batch_size(run_id)
        return self._call('rpush', self._queue_key(run_id), questions, ttl=self.ttl_seconds)

    def pop_question(self, run_id: str) -> Optional[dict]:
        return self._call('lpop', self._queue_key(run_id))

    def return_question(self, run_id: str, question: dict) -> int:
        """Put an undelivered question back at the head of the queue"""
        return self._call('lpush', self._queue_key(run_id), [question], ttl=self.ttl_seconds)

    def get_batch_size(self, run_id: str) -> int:
        return self._call('llen', self._queue_key(run_id))

    def get_category(self, run_id: str) -> Optional[str]:
        meta = self._call('get', self._meta_key(run_id))
        return meta.get('category') if meta else None

    def refill_if_needed(self, run_id: str, level: int, category: str = None, practice: bool = False) -> int:
        """Top the queue back up once it runs low, continuing past the queued levels"""
        if practice:
            return 0
        size = self.get_batch_size(run_id)
        if size > self.refill_threshold:
            return 0

        category = category or self.get_category(run_id)
        if not category:
            return 0

        # Queued questions already cover the levels after this one
        start = level + size + 1
        questions = self.supplier.get_batch(category, start, self.full_batch_size - size)
        if not questions:
            questions = get_fallback_batch(category, start, self.full_batch_size - size)
        self.append_to_batch(run_id, questions)
        logger.info(f"🔄 Run batch {run_id[:8]} refilled with {len(questions)} questions")
        return len(questions)

    def clear_run_batch(self, run_id: str) -> None:
        """Idempotent"""
        self._call('delete', self._queue_key(run_id))
        self._call('delete', self._meta_key(run_id))
