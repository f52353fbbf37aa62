"""Core functionality for three-bucket retirement drawdown simulations."""

from __future__ import annotations

import json
import math
import multiprocessing
import os
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Callable, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
from loguru import logger
from numba import njit


class BucketProfile(NamedTuple):
    """Annual mean return and annual volatility (standard deviation) of a bucket."""

    return_rate: float
    volatility: float


# Default bucket profiles.  Return and volatility rise from the stable income
# bucket (1) through the low volatility bucket (2) to growth/equity (3).
BUCKETS = {
    1: BucketProfile(return_rate=0.055, volatility=0.01),
    2: BucketProfile(return_rate=0.09, volatility=0.05),
    3: BucketProfile(return_rate=0.13, volatility=0.14),
}

BUCKET_NAMES = {
    1: "Stable Income",
    2: "Low Volatility",
    3: "Growth/Equity",
}

DEFAULT_ALLOCATIONS = (0.3333, 0.3333, 0.3334)
DEFAULT_YEARS = 30
DEFAULT_INFLATION_RATE = 7.0  # percent per year
DEFAULT_NUM_TRIALS = 1000

# Income Stability Ratio presets (corpus as a multiple of annual expense)
FIRE_MODES = {
    "Lean": 20,
    "Chubby": 24,
    "Fat": 33,
    "Custom": 25,
}

# A bucket below 3 years of expense pulls 1 year of expense from the next one
REPLENISH_TRIGGER_YEARS = 3
REPLENISH_PULL_YEARS = 1

# Dynamic-aggressive buffers, in years of expense
DYNAMIC_B1_YEARS = 4
DYNAMIC_B2_YEARS = 6

# A total below this after returns counts as depleted
ZERO_FUNDS_EPSILON = 0.01

# Floor for the uniform draw fed to the logarithm in Box-Muller
UNIFORM_EPSILON = 1e-300

# FY24-25 new-regime income tax slabs: lower bound of each slab and the
# marginal rate applied above it.
SLAB_BRACKETS = [0, 300_000, 700_000, 1_000_000, 1_200_000, 1_500_000]
SLAB_RATES = [0.0, 0.05, 0.10, 0.15, 0.20, 0.30]
REBATE_LIMIT = 700_000  # rebate u/s 87A zeroes tax up to this income
CESS_RATE = 0.04  # health & education cess

# Long-term capital gains
LTCG_EXEMPTION = 125_000  # per assessee
LTCG_RATE = 0.125

# Percentile trials reported alongside the median
REPRESENTATIVE_PERCENTILES = (10, 25, 75, 90)

CONFIG_FILE = "config.json"

# Silent when used as a library; the CLI enables it
logger.disable(__name__)


class StrategyType(str, Enum):
    THREE_BUCKET = "three-bucket"
    TWO_BUCKET = "two-bucket"
    DYNAMIC_AGGRESSIVE = "dynamic-aggressive"


class Rule(str, Enum):
    """Rules that can fire while a month is simulated."""

    B1_LOW = "b1_low"
    B2_LOW = "b2_low"
    B1_EMPTY = "b1_empty"
    B2_EMPTY = "b2_empty"
    BANKRUPTCY = "bankruptcy"
    TAX = "tax"
    BANKRUPTCY_TAX = "bankruptcy_tax"
    DYNAMIC_RESET = "dynamic_reset"
    REBALANCED = "rebalanced"
    BANKRUPTCY_ZERO_FUNDS = "bankruptcy_zero_funds"


class RuleEvent(NamedTuple):
    rule: Rule
    amount: Optional[float] = None


class SimulationAborted(RuntimeError):
    """Raised when a Monte Carlo run is cancelled between trials."""


def parse_percent(val: str) -> float:
    """Convert a percentage string like '10%' to a float 0.10."""

    try:
        pct = float(val.strip().rstrip("%")) / 100
    except ValueError as exc:  # pragma: no cover - error path simple
        raise ValueError(f"Invalid percentage: {val!r}") from exc
    if not 0 <= pct <= 1:
        raise ValueError("Percentage must be between 0% and 100%")
    return pct


def parse_dollars(val: str) -> float:
    """Convert a currency string like '₹1,20,000' or '$1,234' to a float."""

    cleaned = val.replace("$", "").replace("₹", "").replace(",", "").strip()
    try:
        amt = float(cleaned)
    except ValueError as exc:  # pragma: no cover - error path simple
        raise ValueError(f"Invalid amount: {val!r}") from exc
    if amt < 0:
        raise ValueError("Amount cannot be negative")
    return amt


def parse_allocation(val: str) -> Tuple[float, float, float]:
    """Convert '50,30,20' or '50%,30%,20%' to three bucket fractions."""

    parts = [p for p in val.split(",") if p.strip()]
    if len(parts) != 3:
        raise ValueError(f"Allocation needs three comma-separated values: {val!r}")
    b1, b2, b3 = (parse_percent(p) for p in parts)
    return b1, b2, b3


def calculate_required_funds(monthly_expense: float, isr: float) -> float:
    """Corpus needed for a given Income Stability Ratio."""
    return monthly_expense * 12 * isr


# ---------------------------------------------------------------------------
# Tax calculator
# ---------------------------------------------------------------------------


@njit(cache=True)
def _slab_tax_jit(
    income: float,
    bracket_arr: np.ndarray,
    rate_arr: np.ndarray,
    cumulative_tax: np.ndarray,
    rebate_limit: float,
    cess_rate: float,
) -> float:
    """JIT-compiled slab tax kernel."""
    if income <= rebate_limit:
        return 0.0

    bracket_idx = np.searchsorted(bracket_arr, income, side='right') - 1
    if bracket_idx < 0:
        bracket_idx = 0
    if bracket_idx >= len(rate_arr):
        bracket_idx = len(rate_arr) - 1

    tax = cumulative_tax[bracket_idx] + \
        (income - bracket_arr[bracket_idx]) * rate_arr[bracket_idx]
    return tax * (1.0 + cess_rate)


def _cumulative_tax(brackets: Sequence[float], rates: Sequence[float]) -> np.ndarray:
    """Tax owed at each bracket boundary."""
    cumulative = np.zeros(len(brackets), dtype=np.float64)
    for i in range(1, len(brackets)):
        cumulative[i] = cumulative[i - 1] + (brackets[i] - brackets[i - 1]) * rates[i - 1]
    return cumulative


_BRACKET_ARR = np.array(SLAB_BRACKETS, dtype=np.float64)
_RATE_ARR = np.array(SLAB_RATES, dtype=np.float64)
_CUMULATIVE_TAX = _cumulative_tax(SLAB_BRACKETS, SLAB_RATES)


def progressive_tax(annual_income: float) -> float:
    """Income tax owed on ``annual_income`` under the new-regime slabs.

    Income up to the rebate limit owes nothing (the cess does not apply
    either).  Above it, tax is accumulated slab by slab and the 4% cess is
    added on top.
    """
    return float(
        _slab_tax_jit(
            float(annual_income),
            _BRACKET_ARR,
            _RATE_ARR,
            _CUMULATIVE_TAX,
            float(REBATE_LIMIT),
            CESS_RATE,
        )
    )


def capital_gains_tax(
    gain: float, exemption: float = LTCG_EXEMPTION, rate: float = LTCG_RATE
) -> float:
    """Long-term capital gains tax on the part of ``gain`` above ``exemption``."""
    return max(0.0, gain - exemption) * rate


def annual_tax(
    ordinary_income: float, capital_gain: float, is_joint: bool = False
) -> Tuple[float, float]:
    """Return ``(slab_tax, gains_tax)`` for one year of withdrawals.

    Joint assessment splits ordinary income evenly across two assessees and
    doubles the capital gains exemption.
    """
    assessees = 2 if is_joint else 1
    gains_tax = capital_gains_tax(capital_gain, LTCG_EXEMPTION * assessees)
    slab_tax = progressive_tax(ordinary_income / assessees) * assessees
    return slab_tax, gains_tax


# ---------------------------------------------------------------------------
# Random source
# ---------------------------------------------------------------------------


class GaussianSampler:
    """Standard normal deviates via the Box-Muller transform.

    Each trial owns one sampler wrapping its own ``numpy.random.Generator`` so
    trials never share random state.  Only the cosine deviate of each pair is
    used; the sine deviate is dropped.
    """

    def __init__(self, rng: np.random.Generator):
        self.rng = rng

    @classmethod
    def from_seed(
        cls, seed: Union[int, np.random.SeedSequence, None] = None
    ) -> "GaussianSampler":
        return cls(np.random.default_rng(seed))

    def sample(self) -> float:
        u1 = max(self.rng.random(), UNIFORM_EPSILON)
        u2 = self.rng.random()
        return math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)


# ---------------------------------------------------------------------------
# Parameters and configuration
# ---------------------------------------------------------------------------


def resolve_bucket_config(bucket_id: int, overrides: Optional[dict] = None) -> BucketProfile:
    """Return the profile for ``bucket_id`` with any override applied.

    An override may be a full ``BucketProfile`` or a mapping holding
    ``return_rate`` and/or ``volatility``; missing keys fall back to the
    defaults.
    """
    if bucket_id not in BUCKETS:
        raise ValueError(f"Unknown bucket id: {bucket_id}")
    base = BUCKETS[bucket_id]
    override = (overrides or {}).get(bucket_id)
    if override is None:
        return base
    if isinstance(override, BucketProfile):
        return override
    unknown = set(override) - set(BucketProfile._fields)
    if unknown:
        raise ValueError(
            f"Unknown keys in override for bucket {bucket_id}: {', '.join(sorted(unknown))}"
        )
    return base._replace(**{k: float(v) for k, v in override.items()})


@dataclass
class SimulationParameters:
    total_funds: float
    monthly_expense: float
    years: int = DEFAULT_YEARS
    inflation_rate: float = DEFAULT_INFLATION_RATE
    bucket_allocations: Tuple[float, float, float] = DEFAULT_ALLOCATIONS
    bucket_overrides: dict = field(default_factory=dict)
    strategy_type: StrategyType = StrategyType.THREE_BUCKET
    annual_rebalancing: bool = False
    tax_enabled: bool = False
    is_joint: bool = False
    num_trials: int = DEFAULT_NUM_TRIALS
    # Keep b1's above-threshold gain in b1 instead of dropping it
    retain_b1_skim: bool = False
    start_age: Optional[int] = None
    # Derived values
    months: int = field(default=0, init=False)
    normalized_allocations: Tuple[float, float, float] = field(
        default=(0.0, 0.0, 0.0), init=False
    )
    monthly_returns: dict = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.total_funds > 0:
            raise ValueError("Total funds must be positive")
        if not self.monthly_expense > 0:
            raise ValueError("Monthly expense must be positive")
        if int(self.years) != self.years or self.years <= 0:
            raise ValueError("Years must be a positive whole number")
        self.years = int(self.years)
        if int(self.num_trials) != self.num_trials or self.num_trials <= 0:
            raise ValueError("Number of trials must be positive")
        self.num_trials = int(self.num_trials)

        allocations = tuple(float(a) for a in self.bucket_allocations)
        if len(allocations) != 3:
            raise ValueError("Bucket allocations must have exactly three entries")
        if any(a < 0 for a in allocations):
            raise ValueError("Bucket allocations cannot be negative")
        total_alloc = sum(allocations)
        if not total_alloc > 0:
            raise ValueError("Bucket allocations must not sum to zero")
        self.bucket_allocations = allocations
        self.normalized_allocations = tuple(a / total_alloc for a in allocations)

        try:
            self.strategy_type = StrategyType(self.strategy_type)
        except ValueError:
            raise ValueError(f"Unknown strategy type: {self.strategy_type!r}") from None

        raw_overrides = {int(k): v for k, v in (self.bucket_overrides or {}).items()}
        self.bucket_overrides = {
            bucket_id: resolve_bucket_config(bucket_id, raw_overrides)
            for bucket_id in sorted(raw_overrides)
        }

        self._compute_monthly_equivalents()

    def _compute_monthly_equivalents(self) -> None:
        """Convert yearly parameters to monthly equivalents for internal simulation."""
        self.months = self.years * 12

        # monthly_mean = annual_mean / 12, monthly_std = annual_std / sqrt(12)
        sqrt_12 = math.sqrt(12)
        self.monthly_returns = {}
        for bucket_id in BUCKETS:
            profile = resolve_bucket_config(bucket_id, self.bucket_overrides)
            if profile.volatility < 0:
                raise ValueError(f"Volatility for bucket {bucket_id} cannot be negative")
            self.monthly_returns[bucket_id] = (
                profile.return_rate / 12,
                profile.volatility / sqrt_12,
            )

    def bucket_profile(self, bucket_id: int) -> BucketProfile:
        return resolve_bucket_config(bucket_id, self.bucket_overrides)

    @property
    def isr(self) -> float:
        """Initial corpus as a multiple of the first year's expense."""
        return self.total_funds / (self.monthly_expense * 12)

    def to_dict(self) -> dict:
        return {
            "simulation": {
                "total_funds": self.total_funds,
                "monthly_expense": self.monthly_expense,
                "years": self.years,
                "inflation_rate": self.inflation_rate,
                "num_trials": self.num_trials,
                "start_age": self.start_age,
            },
            "strategy": {
                "bucket_allocations": list(self.bucket_allocations),
                "strategy_type": self.strategy_type.value,
                "annual_rebalancing": self.annual_rebalancing,
                "retain_b1_skim": self.retain_b1_skim,
            },
            "tax": {
                "tax_enabled": self.tax_enabled,
                "is_joint": self.is_joint,
            },
            "buckets": {
                str(bucket_id): profile._asdict()
                for bucket_id, profile in self.bucket_overrides.items()
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SimulationParameters":
        """Build parameters from the sectioned layout written by ``to_dict``."""
        merged: dict = {}
        for section in ("simulation", "strategy", "tax"):
            merged.update(data.get(section) or {})
        buckets = data.get("buckets") or {}
        if buckets:
            merged["bucket_overrides"] = {int(k): v for k, v in buckets.items()}
        if "bucket_allocations" in merged:
            merged["bucket_allocations"] = tuple(merged["bucket_allocations"])

        known = {f.name for f in fields(cls) if f.init}
        unknown = set(merged) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
        for required in ("total_funds", "monthly_expense"):
            if required not in merged:
                raise ValueError(f"Missing required configuration key: {required}")
        return cls(**merged)


def load_config(path: str = CONFIG_FILE) -> dict:
    """Load saved configuration if available."""

    if os.path.exists(path):
        with open(path) as f:
            return json.load(f)
    return {}


def save_config(params: SimulationParameters, path: str = CONFIG_FILE) -> None:
    """Persist the provided parameters to disk."""

    with open(path, "w") as f:
        json.dump(params.to_dict(), f, indent=2)


# ---------------------------------------------------------------------------
# Bucket transition engine
# ---------------------------------------------------------------------------


@dataclass
class BucketTriple:
    b1: float = 0.0
    b2: float = 0.0
    b3: float = 0.0

    @property
    def total(self) -> float:
        return self.b1 + self.b2 + self.b3


@dataclass(frozen=True)
class MonthRecord:
    month: int
    bucket1: float
    bucket2: float
    bucket3: float
    total_funds: float
    expense: float
    pull_to_b1: float
    push_to_b1: float
    pull_to_b2: float
    push_to_b2: float
    withdrawal_b1: float
    withdrawal_b2: float
    withdrawal_b3: float
    tax_paid: float
    return_b1: float
    return_b2: float
    return_b3: float
    skim_discarded_b1: float
    events: Tuple[RuleEvent, ...]
    is_failed: bool

    @property
    def skim_to_b1(self) -> float:
        """Net inflow to b1 from b2 (pull plus excess-return push)."""
        return self.pull_to_b1 + self.push_to_b1

    @property
    def skim_to_b2(self) -> float:
        return self.pull_to_b2 + self.push_to_b2


@dataclass
class TrialState:
    """Mutable state of one trial between months."""

    buckets: BucketTriple
    monthly_expense: float
    # Withdrawals per bucket since the last tax settlement
    year_withdrawals: list = field(default_factory=lambda: [0.0, 0.0, 0.0])
    failed: bool = False


def _dynamic_targets(total: float, annual_expense: float) -> Tuple[float, float, float]:
    """Split ``total`` into 4y/6y expense buffers, filling b1 then b2 then b3."""
    target_b1 = DYNAMIC_B1_YEARS * annual_expense
    target_b2 = DYNAMIC_B2_YEARS * annual_expense
    if total >= target_b1 + target_b2:
        return target_b1, target_b2, total - target_b1 - target_b2
    if total >= target_b1:
        return target_b1, total - target_b1, 0.0
    return total, 0.0, 0.0


def _replenish(b: BucketTriple, annual_expense: float, events: list) -> Tuple[float, float]:
    trigger = REPLENISH_TRIGGER_YEARS * annual_expense
    wanted = REPLENISH_PULL_YEARS * annual_expense

    pull_to_b1 = 0.0
    if b.b1 < trigger:
        amount = min(wanted, b.b2)
        if amount > 0:
            b.b1 += amount
            b.b2 -= amount
            pull_to_b1 = amount
        events.append(RuleEvent(Rule.B1_LOW, pull_to_b1))

    # b2 is checked after it may have fed b1
    pull_to_b2 = 0.0
    if b.b2 < trigger:
        amount = min(wanted, b.b3)
        if amount > 0:
            b.b2 += amount
            b.b3 -= amount
            pull_to_b2 = amount
        events.append(RuleEvent(Rule.B2_LOW, pull_to_b2))

    return pull_to_b1, pull_to_b2


def _draw_down(b: BucketTriple, amount: float) -> Tuple[float, float, float, float]:
    """Take ``amount`` from b1, then b2, then b3.

    Returns the amount taken from each bucket and the unmet shortfall.
    """
    remaining = amount
    taken = []
    for attr in ("b1", "b2", "b3"):
        available = getattr(b, attr)
        take = min(available, remaining)
        setattr(b, attr, available - take)
        remaining -= take
        taken.append(take)
    return taken[0], taken[1], taken[2], remaining


def _withdraw(b: BucketTriple, expense: float, events: list) -> Tuple[float, float, float, bool]:
    if b.b1 < expense:
        events.append(RuleEvent(Rule.B1_EMPTY))
        if b.b1 + b.b2 < expense:
            events.append(RuleEvent(Rule.B2_EMPTY))
    w1, w2, w3, shortfall = _draw_down(b, expense)
    if shortfall > 0:
        events.append(RuleEvent(Rule.BANKRUPTCY, shortfall))
        return w1, w2, w3, True
    return w1, w2, w3, False


def _settle_tax(b: BucketTriple, state: TrialState, is_joint: bool, events: list) -> Tuple[float, bool]:
    w1, w2, w3 = state.year_withdrawals
    slab_tax, gains_tax = annual_tax(w1 + w2, w3, is_joint)
    total_tax = slab_tax + gains_tax
    if total_tax > 0:
        events.append(RuleEvent(Rule.TAX, total_tax))
    _, _, _, shortfall = _draw_down(b, total_tax)
    if shortfall > 0:
        events.append(RuleEvent(Rule.BANKRUPTCY_TAX, shortfall))
        return total_tax, True
    return total_tax, False


def _rebalance(b: BucketTriple, annual_expense: float, params: SimulationParameters, events: list) -> None:
    total = b.total
    if total <= 0:
        return
    if params.strategy_type is StrategyType.DYNAMIC_AGGRESSIVE:
        b.b1, b.b2, b.b3 = _dynamic_targets(total, annual_expense)
        events.append(RuleEvent(Rule.DYNAMIC_RESET))
    elif params.annual_rebalancing:
        a1, a2, a3 = params.normalized_allocations
        b.b1, b.b2, b.b3 = total * a1, total * a2, total * a3
        events.append(RuleEvent(Rule.REBALANCED))


def _apply_return(
    balance: float, monthly_mean: float, monthly_vol: float, sampler: GaussianSampler
) -> Tuple[float, float, float]:
    """Grow one bucket for a month.

    Returns ``(grown_balance, skim, profit)``.  ``skim`` is the part of the
    gain earned above one sigma over the mean; the caller moves it out of the
    bucket.
    """
    if balance <= 0:
        return 0.0, 0.0, 0.0
    z = sampler.sample()
    actual_return = monthly_mean + z * monthly_vol
    profit = balance * actual_return
    grown = max(0.0, balance + profit)

    threshold = monthly_mean + monthly_vol
    skim = 0.0
    if actual_return > threshold:
        skim = min(balance * (actual_return - threshold), grown)
    return grown, skim, profit


def advance_month(
    state: TrialState, month: int, params: SimulationParameters, sampler: GaussianSampler
) -> MonthRecord:
    """Simulate ``month`` (1-based) of a trial and return its record.

    The steps run in a fixed order: inflation, proactive replenishment,
    withdrawal cascade, year-end tax settlement, year-end rebalancing, then
    stochastic returns with excess-return skimming from b3 down to b1.  When
    the returned record is flagged failed the trial is over and
    ``state.failed`` is set.
    """
    b = state.buckets
    if month > 1 and (month - 1) % 12 == 0:
        state.monthly_expense *= 1 + params.inflation_rate / 100
    expense = state.monthly_expense
    annual_expense = expense * 12
    events: list = []

    pull_to_b1, pull_to_b2 = _replenish(b, annual_expense, events)

    w1, w2, w3, failed = _withdraw(b, expense, events)
    state.year_withdrawals[0] += w1
    state.year_withdrawals[1] += w2
    state.year_withdrawals[2] += w3

    tax_paid = 0.0
    if month % 12 == 0:
        if params.tax_enabled and not failed:
            tax_paid, failed = _settle_tax(b, state, params.is_joint, events)
        state.year_withdrawals = [0.0, 0.0, 0.0]
        if not failed:
            _rebalance(b, annual_expense, params, events)

    if failed:
        b.b1 = b.b2 = b.b3 = 0.0
        state.failed = True
        return MonthRecord(
            month=month,
            bucket1=0.0,
            bucket2=0.0,
            bucket3=0.0,
            total_funds=0.0,
            expense=expense,
            pull_to_b1=pull_to_b1,
            push_to_b1=0.0,
            pull_to_b2=pull_to_b2,
            push_to_b2=0.0,
            withdrawal_b1=w1,
            withdrawal_b2=w2,
            withdrawal_b3=w3,
            tax_paid=tax_paid,
            return_b1=0.0,
            return_b2=0.0,
            return_b3=0.0,
            skim_discarded_b1=0.0,
            events=tuple(events),
            is_failed=True,
        )

    # b3's skim lands in b2 before b2 grows, b2's skim in b1 before b1 grows
    grown, push_to_b2, return_b3 = _apply_return(b.b3, *params.monthly_returns[3], sampler)
    b.b3 = grown - push_to_b2
    b.b2 += push_to_b2

    grown, push_to_b1, return_b2 = _apply_return(b.b2, *params.monthly_returns[2], sampler)
    b.b2 = grown - push_to_b1
    b.b1 += push_to_b1

    grown, skim_b1, return_b1 = _apply_return(b.b1, *params.monthly_returns[1], sampler)
    if params.retain_b1_skim:
        b.b1 = grown
        skim_b1 = 0.0
    else:
        # No bucket below b1: the excess leaves the portfolio
        b.b1 = grown - skim_b1

    total = b.total
    if total < ZERO_FUNDS_EPSILON:
        events.append(RuleEvent(Rule.BANKRUPTCY_ZERO_FUNDS))
        state.failed = True

    return MonthRecord(
        month=month,
        bucket1=b.b1,
        bucket2=b.b2,
        bucket3=b.b3,
        total_funds=total,
        expense=expense,
        pull_to_b1=pull_to_b1,
        push_to_b1=push_to_b1,
        pull_to_b2=pull_to_b2,
        push_to_b2=push_to_b2,
        withdrawal_b1=w1,
        withdrawal_b2=w2,
        withdrawal_b3=w3,
        tax_paid=tax_paid,
        return_b1=return_b1,
        return_b2=return_b2,
        return_b3=return_b3,
        skim_discarded_b1=skim_b1,
        events=tuple(events),
        is_failed=state.failed,
    )


# ---------------------------------------------------------------------------
# Trials and aggregation
# ---------------------------------------------------------------------------


@dataclass
class TrialResult:
    trial_index: int
    months_lasted: int
    is_success: bool
    history: list
    final_amount: float


class TrialSummary(NamedTuple):
    trial_index: int
    months_lasted: int
    is_success: bool
    final_amount: float


def initial_buckets(params: SimulationParameters) -> BucketTriple:
    """Split the starting corpus across the buckets at month 0."""
    if params.strategy_type is StrategyType.DYNAMIC_AGGRESSIVE:
        return BucketTriple(*_dynamic_targets(params.total_funds, params.monthly_expense * 12))
    a1, a2, a3 = params.normalized_allocations
    return BucketTriple(
        params.total_funds * a1,
        params.total_funds * a2,
        params.total_funds * a3,
    )


def run_trial(
    params: SimulationParameters, sampler: GaussianSampler, trial_index: int = 0
) -> TrialResult:
    """Run one trial until the horizon ends or the portfolio is depleted."""
    state = TrialState(buckets=initial_buckets(params), monthly_expense=params.monthly_expense)
    history = []
    for month in range(1, params.months + 1):
        record = advance_month(state, month, params, sampler)
        history.append(record)
        if record.is_failed:
            break

    failed = state.failed
    return TrialResult(
        trial_index=trial_index,
        months_lasted=len(history),
        is_success=not failed,
        history=history,
        final_amount=0.0 if failed else history[-1].total_funds,
    )


def _run_seeded_trial(
    params: SimulationParameters, seed_seq: np.random.SeedSequence, trial_index: int
) -> TrialResult:
    sampler = GaussianSampler(np.random.default_rng(seed_seq))
    return run_trial(params, sampler, trial_index)


def _summarize_trial(task: tuple) -> TrialSummary:
    """Pool worker: run one trial and keep only its outcome."""
    params, seed_seq, trial_index = task
    result = _run_seeded_trial(params, seed_seq, trial_index)
    return TrialSummary(
        trial_index=result.trial_index,
        months_lasted=result.months_lasted,
        is_success=result.is_success,
        final_amount=result.final_amount,
    )


def _as_seed_sequence(seed: Union[int, np.random.SeedSequence, None]) -> np.random.SeedSequence:
    if isinstance(seed, np.random.SeedSequence):
        return seed
    return np.random.SeedSequence(seed)


@dataclass
class AggregateResult:
    success_rate: float
    total_trials: int
    seed: int
    median: TrialResult
    percentiles: dict
    final_amounts: np.ndarray

    @property
    def history(self) -> list:
        return self.median.history

    @property
    def months_lasted(self) -> int:
        return self.median.months_lasted

    @property
    def is_success(self) -> bool:
        return self.median.is_success

    @property
    def final_amount(self) -> float:
        return self.median.final_amount

    @property
    def history_worst(self) -> list:
        return self.percentiles[10].history

    @property
    def history_best(self) -> list:
        return self.percentiles[90].history


def _check_abort(should_abort: Optional[Callable[[], bool]], completed: int, total: int) -> None:
    if should_abort is not None and should_abort():
        logger.warning("Monte Carlo run aborted after {} of {} trials", completed, total)
        raise SimulationAborted(f"Simulation aborted after {completed} of {total} trials")


def run_monte_carlo(
    params: SimulationParameters,
    num_trials: Optional[int] = None,
    *,
    seed: Union[int, np.random.SeedSequence, None] = None,
    workers: int = 1,
    should_abort: Optional[Callable[[], bool]] = None,
) -> AggregateResult:
    """Run independent trials and summarise them.

    Every trial draws from its own generator spawned off one root
    ``SeedSequence``, so the outcome depends only on ``seed`` and not on
    ``workers``.  ``should_abort`` is polled between trials.  The median and
    percentile trials (ranked by final amount) are replayed from their seeds
    to recover their month-by-month histories.
    """
    n_trials = params.num_trials if num_trials is None else num_trials
    if int(n_trials) != n_trials or n_trials <= 0:
        raise ValueError("Number of trials must be positive")
    n_trials = int(n_trials)
    if workers < 1:
        raise ValueError("Number of workers must be at least 1")

    root = _as_seed_sequence(seed)
    children = root.spawn(n_trials)
    logger.debug(
        "Running {} trials of {} months (entropy={}, workers={})",
        n_trials, params.months, root.entropy, workers,
    )

    summaries: list = []
    if workers == 1:
        for trial_index, child in enumerate(children):
            _check_abort(should_abort, trial_index, n_trials)
            summaries.append(_summarize_trial((params, child, trial_index)))
    else:
        tasks = ((params, child, i) for i, child in enumerate(children))
        chunksize = max(1, n_trials // (workers * 4))
        with multiprocessing.Pool(processes=workers) as pool:
            for summary in pool.imap(_summarize_trial, tasks, chunksize=chunksize):
                _check_abort(should_abort, len(summaries), n_trials)
                summaries.append(summary)

    success_count = sum(1 for s in summaries if s.is_success)
    success_rate = success_count / n_trials * 100

    # Stable sort: equal final amounts keep trial order
    ranked = sorted(summaries, key=lambda s: s.final_amount)
    replayed: dict = {}

    def _replay(position: int) -> TrialResult:
        trial_index = ranked[min(position, n_trials - 1)].trial_index
        if trial_index not in replayed:
            replayed[trial_index] = _run_seeded_trial(params, children[trial_index], trial_index)
        return replayed[trial_index]

    median = _replay(n_trials // 2)
    percentiles = {p: _replay(n_trials * p // 100) for p in REPRESENTATIVE_PERCENTILES}

    logger.debug(
        "Success rate {:.1f}% ({} of {}); median final amount {:,.0f}",
        success_rate, success_count, n_trials, median.final_amount,
    )
    return AggregateResult(
        success_rate=success_rate,
        total_trials=n_trials,
        seed=root.entropy,
        median=median,
        percentiles=percentiles,
        final_amounts=np.array([s.final_amount for s in summaries], dtype=np.float64),
    )
