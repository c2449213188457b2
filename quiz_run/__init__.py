import logging

from .challenge_service import PaymentChallengeStore
from .question_supplier import QuestionSupplier, generate_question, get_fallback_batch
from .quiz_manager import QuizManager
from .routes import quiz_bp
from .run_batch import QuestionBatchCache
from .run_state import RunStateStore
from .settlement import RunSettlement

logger = logging.getLogger(__name__)


def init_quiz(app, quiz_manager: QuizManager):
    """Initialize the pay-per-question quiz routes"""
    try:
        app.extensions['quiz_manager'] = quiz_manager
        app.register_blueprint(quiz_bp)
        logger.info("✅ Quiz system initialized")
        return True
    except Exception as e:
        logger.error(f"❌ Quiz initialization failed: {e}")
        return False


__all__ = [
    'PaymentChallengeStore',
    'QuestionSupplier',
    'QuestionBatchCache',
    'QuizManager',
    'RunSettlement',
    'RunStateStore',
    'generate_question',
    'get_fallback_batch',
    'quiz_bp',
    'init_quiz',
]
