"""
Strategy optimizer

Searches the preset bucket allocations for the smallest corpus, expressed as
an Income Stability Ratio (ISR = corpus / first-year expense), that keeps the
Monte Carlo success rate above a target.  Also measures how the required ISR
moves as the growth bucket becomes more volatile.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Tuple, Union

import numpy as np
from loguru import logger

from core import (
    SimulationParameters,
    StrategyType,
    calculate_required_funds,
    resolve_bucket_config,
    run_monte_carlo,
)

ALLOCATION_PRESETS = [
    ("Conservative (60/30/10)", (0.60, 0.30, 0.10)),
    ("Balanced (33/33/33)", (0.3333, 0.3333, 0.3334)),
    ("Growth (10/30/60)", (0.10, 0.30, 0.60)),
    ("Aggressive (0/20/80)", (0.0, 0.20, 0.80)),
    ("Ultra Safe (80/20/0)", (0.80, 0.20, 0.0)),
    ("Barbell (40/10/50)", (0.40, 0.10, 0.50)),
]

TWO_BUCKET_PRESETS = [
    ("Safe (80/20)", (0.80, 0.20, 0.0)),
    ("Conservative (60/40)", (0.60, 0.40, 0.0)),
    ("Balanced (50/50)", (0.50, 0.50, 0.0)),
    ("Growth (40/60)", (0.40, 0.60, 0.0)),
    ("Aggressive (20/80)", (0.20, 0.80, 0.0)),
    ("Equity Heavy (10/90)", (0.10, 0.90, 0.0)),
]

# ISR search window and sample sizes for the preset search
MIN_ISR = 15
MAX_ISR = 60
TARGET_SUCCESS = 85.0
SEARCH_TRIALS = 500
VERIFY_TRIALS = 2000
# A verified rate this far under target is still accepted
VERIFY_TOLERANCE = 0.5

FIXED_ISR_TRIALS = 2000

# Volatility sweep
VOLATILITY_TARGET_SUCCESS = 90.0
VOLATILITY_TRIALS = 250
VOLATILITY_MAX_ISR = 100
# How far below the previous answer the next search may start
VOLATILITY_BACKOFF = 5

SeedLike = Union[int, np.random.SeedSequence, None]

logger.disable(__name__)


def _seed_root(seed: SeedLike) -> np.random.SeedSequence:
    if isinstance(seed, np.random.SeedSequence):
        return seed
    return np.random.SeedSequence(seed)


@dataclass(frozen=True)
class OptimizationResult:
    allocation_name: str
    allocation: Tuple[float, float, float]
    isr: int
    success_rate: float
    total_funds_required: float


@dataclass(frozen=True)
class VolatilityPoint:
    volatility: float  # percent
    min_isr: int


def presets_for(strategy_type: StrategyType) -> list:
    """Allocation presets searched for ``strategy_type``."""
    if StrategyType(strategy_type) is StrategyType.THREE_BUCKET:
        return ALLOCATION_PRESETS
    return TWO_BUCKET_PRESETS


def volatility_steps() -> List[float]:
    """B3 volatility levels (percent) swept by ``volatility_impact``.

    Coarse 1% steps at both ends with 0.5% steps through 9-15%.
    """
    steps = [float(v) for v in range(5, 9)]
    steps += [9 + 0.5 * i for i in range(13)]
    steps += [float(v) for v in range(16, 26)]
    return steps


def _success_rate(
    base: SimulationParameters,
    isr: float,
    allocation: Tuple[float, float, float],
    num_trials: int,
    seed_seq: np.random.SeedSequence,
    workers: int,
    bucket_overrides: Optional[dict] = None,
) -> float:
    changes = {
        "total_funds": calculate_required_funds(base.monthly_expense, isr),
        "bucket_allocations": allocation,
        "num_trials": num_trials,
    }
    if bucket_overrides is not None:
        changes["bucket_overrides"] = bucket_overrides
    params = replace(base, **changes)
    return run_monte_carlo(params, seed=seed_seq.spawn(1)[0], workers=workers).success_rate


def _min_isr(
    succeeds: Callable[[int], bool], low: int, high: int
) -> Optional[int]:
    """Smallest integer ISR in ``[low, high]`` for which ``succeeds`` holds.

    Assumes success is monotone in ISR.  Returns ``None`` when even ``high``
    fails.
    """
    found = None
    while low <= high:
        mid = (low + high) // 2
        if succeeds(mid):
            found = mid
            high = mid - 1
        else:
            low = mid + 1
    return found


def find_optimal_strategy(
    base: SimulationParameters,
    *,
    target_success: float = TARGET_SUCCESS,
    search_trials: int = SEARCH_TRIALS,
    verify_trials: int = VERIFY_TRIALS,
    isr_range: Tuple[int, int] = (MIN_ISR, MAX_ISR),
    seed: SeedLike = None,
    workers: int = 1,
) -> List[OptimizationResult]:
    """Find the lowest ISR each allocation preset needs to hit ``target_success``.

    ``base`` supplies expense, horizon, inflation, strategy, rebalancing, tax
    and bucket overrides; its corpus and allocation are replaced per run.
    Every preset's minimum is re-checked with ``verify_trials`` and dropped
    unless the verified rate is within ``VERIFY_TOLERANCE`` of the target.

    Results are ordered by ISR ascending, then success rate descending.
    """
    root = _seed_root(seed)
    results = []
    for name, allocation in presets_for(base.strategy_type):

        def succeeds(isr: int) -> bool:
            rate = _success_rate(base, isr, allocation, search_trials, root, workers)
            return rate >= target_success

        isr = _min_isr(succeeds, *isr_range)
        if isr is None:
            logger.info("{}: no ISR in {}-{} reaches {:.0f}%", name, *isr_range, target_success)
            continue

        verified = _success_rate(base, isr, allocation, verify_trials, root, workers)
        if verified < target_success - VERIFY_TOLERANCE:
            logger.info(
                "{}: ISR {} rejected on verification ({:.1f}%)", name, isr, verified
            )
            continue

        logger.info("{}: ISR {} verified at {:.1f}%", name, isr, verified)
        results.append(
            OptimizationResult(
                allocation_name=name,
                allocation=allocation,
                isr=isr,
                success_rate=verified,
                total_funds_required=calculate_required_funds(base.monthly_expense, isr),
            )
        )

    return sorted(results, key=lambda r: (r.isr, -r.success_rate))


def analyze_fixed_isr_strategies(
    base: SimulationParameters,
    isr: float,
    *,
    num_trials: int = FIXED_ISR_TRIALS,
    seed: SeedLike = None,
    workers: int = 1,
) -> List[OptimizationResult]:
    """Success rate of every preset at a fixed ``isr``, best first."""
    root = _seed_root(seed)
    total_funds = calculate_required_funds(base.monthly_expense, isr)
    results = []
    for name, allocation in presets_for(base.strategy_type):
        rate = _success_rate(base, isr, allocation, num_trials, root, workers)
        logger.info("{} at ISR {}: {:.1f}%", name, isr, rate)
        results.append(
            OptimizationResult(
                allocation_name=name,
                allocation=allocation,
                isr=isr,
                success_rate=rate,
                total_funds_required=total_funds,
            )
        )
    return sorted(results, key=lambda r: -r.success_rate)


def volatility_impact(
    base: SimulationParameters,
    *,
    steps: Optional[List[float]] = None,
    target_success: float = VOLATILITY_TARGET_SUCCESS,
    num_trials: int = VOLATILITY_TRIALS,
    seed: SeedLike = None,
    workers: int = 1,
    progress: Optional[Callable[[int, int], None]] = None,
) -> List[VolatilityPoint]:
    """Minimum ISR reaching ``target_success`` for each b3 volatility level.

    b3 keeps its (possibly overridden) mean return; only its volatility is
    swept.  Each search starts ``VOLATILITY_BACKOFF`` below the previous
    answer, never under ``MIN_ISR``.  A level that cannot reach the target
    within ``VOLATILITY_MAX_ISR`` is reported at that cap.
    """
    root = _seed_root(seed)
    steps = volatility_steps() if steps is None else steps
    b3_return = resolve_bucket_config(3, base.bucket_overrides).return_rate

    points = []
    lower = MIN_ISR
    for i, vol in enumerate(steps):
        overrides = dict(base.bucket_overrides)
        overrides[3] = {"return_rate": b3_return, "volatility": vol / 100}

        def succeeds(isr: int) -> bool:
            rate = _success_rate(
                base, isr, base.bucket_allocations, num_trials, root, workers, overrides
            )
            return rate >= target_success

        found = _min_isr(succeeds, lower, VOLATILITY_MAX_ISR)
        if found is None:
            found = VOLATILITY_MAX_ISR
        lower = max(MIN_ISR, found - VOLATILITY_BACKOFF)

        logger.info("B3 volatility {:.1f}%: minimum ISR {}", vol, found)
        points.append(VolatilityPoint(volatility=vol, min_isr=found))
        if progress is not None:
            progress(i + 1, len(steps))
    return points
