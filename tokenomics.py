"""
Tokenomics for the pay-per-question ladder.

- Levels 0-9, cost and base reward rise with the level.
- Timer buckets: <=60% of allowed time -> 1.5x, <=90% -> 1.2x, otherwise 1.0x.
  Running past the allowed time is a timeout and ends the run.
- Settlement: gross = points * point value, net = gross - platform fee,
  profit = net - spent. The same formula is used for every way a run ends.
- SCALE_K only scales money amounts, it never changes the shape of the curve.

Everything here is pure so the same inputs always give the same outputs;
client-side previews rely on that.
"""
import math
from typing import Dict, Optional

from config import MICRO_PER_UNIT, QUIZ_CONFIG, TOKENOMICS_CONFIG

DIFFICULTY_LEVELS = QUIZ_CONFIG['DIFFICULTY_LEVELS']
MAX_QUESTIONS = QUIZ_CONFIG['MAX_QUESTIONS']
MIN_LEVEL_BEFORE_STOP = QUIZ_CONFIG['MIN_LEVEL_BEFORE_STOP']

SCALE_K = TOKENOMICS_CONFIG['SCALE_K']
PLATFORM_FEE_BPS = TOKENOMICS_CONFIG['PLATFORM_FEE_BPS']
POINT_VALUE_MICRO = TOKENOMICS_CONFIG['POINT_VALUE_MICRO']
MIN_WITHDRAW_MICRO = TOKENOMICS_CONFIG['MIN_WITHDRAW_MICRO']
TOP_UP_SUGGESTED_MICRO = TOKENOMICS_CONFIG['TOP_UP_SUGGESTED_MICRO']

# Units per level at K=100
COST_BY_LEVEL = (0.72, 1.44, 2.16, 2.88, 4.32, 6.48, 9.36, 12.96, 17.28, 22.32)
# 1:1 with cost, so the best case (1.5x) nets about half the cost
BASE_REWARD_BY_LEVEL = (0.72, 1.44, 2.16, 2.88, 4.32, 6.48, 9.36, 12.96, 17.28, 22.32)

MULTIPLIER_BUCKETS = (
    (0.6, 1.5),
    (0.9, 1.2),
)
DEFAULT_MULTIPLIER = 1.0


def clamp_level(level) -> int:
    try:
        level = int(level)
    except (TypeError, ValueError):
        level = 0
    return max(0, min(level, DIFFICULTY_LEVELS - 1))


def _scaled_micro(units: float) -> int:
    return int(round(units * (SCALE_K / 100) * MICRO_PER_UNIT))


def cost_micro(level) -> int:
    """Price of unlocking a question at this level, in micro-units."""
    return _scaled_micro(COST_BY_LEVEL[clamp_level(level)])


def base_points(level) -> float:
    """Points for a correct answer before the time multiplier."""
    return _scaled_micro(BASE_REWARD_BY_LEVEL[clamp_level(level)]) / POINT_VALUE_MICRO


def time_multiplier(solve_time_sec: float, allowed_sec: float) -> float:
    if allowed_sec <= 0 or solve_time_sec <= 0:
        return MULTIPLIER_BUCKETS[0][1]
    # solve <= fraction x allowed, compared without dividing
    for upper, multiplier in MULTIPLIER_BUCKETS:
        if solve_time_sec <= upper * allowed_sec:
            return multiplier
    return DEFAULT_MULTIPLIER


def is_timeout(solve_time_sec: float, allowed_sec: float) -> bool:
    return allowed_sec > 0 and solve_time_sec > allowed_sec


def points_earned(level, solve_time_sec: float, allowed_sec: float, correct: bool = True) -> float:
    if not correct:
        return 0.0
    return round(base_points(level) * time_multiplier(solve_time_sec, allowed_sec), 4)


def gross_earned_micro(total_points: float) -> int:
    return int(round(total_points * POINT_VALUE_MICRO))


def net_earned_micro(gross_micro: int) -> int:
    fee = gross_micro * PLATFORM_FEE_BPS // 10_000
    return gross_micro - fee


def profit_micro(net_micro: int, spent_micro: int) -> int:
    return net_micro - spent_micro


def milestone_threshold() -> int:
    return math.ceil(TOKENOMICS_CONFIG['MILESTONE_RATIO'] * MAX_QUESTIONS)


def milestone_tier(completed_levels: int) -> Optional[str]:
    if completed_levels >= MAX_QUESTIONS:
        return 'full'
    if completed_levels >= milestone_threshold():
        return 'high'
    return None


def milestone_bonus_micro(completed_levels: int) -> int:
    """Fixed bonus: a quarter of the pool at 70% completion, the whole pool at 100%."""
    pool = _scaled_micro(TOKENOMICS_CONFIG['BONUS_POOL'])
    tier = milestone_tier(completed_levels)
    if tier == 'full':
        return pool
    if tier == 'high':
        return pool // 4
    return 0


def settlement_summary(total_points: float, spent_micro: int) -> Dict[str, int]:
    gross = gross_earned_micro(total_points)
    net = net_earned_micro(gross)
    return {
        'gross_earned_micro': gross,
        'net_earned_micro': net,
        'profit_micro': profit_micro(net, spent_micro),
        'spent_micro': spent_micro,
    }


def to_units(micro: int) -> float:
    return micro / MICRO_PER_UNIT


def get_schedule() -> Dict[str, object]:
    """Per-level table for client previews."""
    return {
        'scale_k': SCALE_K,
        'platform_fee_bps': PLATFORM_FEE_BPS,
        'point_value_micro': POINT_VALUE_MICRO,
        'min_level_before_stop': MIN_LEVEL_BEFORE_STOP,
        'max_questions': MAX_QUESTIONS,
        'multiplier_buckets': [
            {'max_ratio': upper, 'multiplier': multiplier}
            for upper, multiplier in MULTIPLIER_BUCKETS
        ] + [{'max_ratio': None, 'multiplier': DEFAULT_MULTIPLIER}],
        'levels': [
            {
                'level': level,
                'cost_micro': cost_micro(level),
                'base_points': base_points(level),
            }
            for level in range(DIFFICULTY_LEVELS)
        ],
        'milestones': {
            'high_threshold': milestone_threshold(),
            'high_bonus_micro': milestone_bonus_micro(milestone_threshold()),
            'full_bonus_micro': milestone_bonus_micro(MAX_QUESTIONS),
        },
    }
