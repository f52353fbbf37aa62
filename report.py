"""Text and table views of simulation results."""

from __future__ import annotations

from dataclasses import fields
from typing import Iterable, List, Optional

import pandas as pd

from core import (
    BUCKET_NAMES,
    BUCKETS,
    AggregateResult,
    MonthRecord,
    Rule,
    RuleEvent,
    SimulationParameters,
    StrategyType,
    progressive_tax,
)

RULE_LABELS = {
    Rule.B1_LOW: "B1 Low (<3yr Exp)",
    Rule.B2_LOW: "B2 Low (<3yr Exp)",
    Rule.B1_EMPTY: "B1 Empty",
    Rule.B2_EMPTY: "B2 Empty",
    Rule.BANKRUPTCY: "Bankruptcy",
    Rule.BANKRUPTCY_TAX: "Bankruptcy (Tax)",
    Rule.DYNAMIC_RESET: "DynAgg Reset",
    Rule.REBALANCED: "Rebalanced",
    Rule.BANKRUPTCY_ZERO_FUNDS: "Bankruptcy (Zero Funds)",
}

# Columns summed per year; balances use the year's last month instead
_FLOW_COLUMNS = [
    "return_b1",
    "return_b2",
    "return_b3",
    "withdrawal_b1",
    "withdrawal_b2",
    "withdrawal_b3",
    "tax_paid",
    "pull_to_b1",
    "push_to_b1",
    "pull_to_b2",
    "push_to_b2",
    "skim_discarded_b1",
]


def format_currency(amount: float) -> str:
    """Format rupees in crore (Cr) or lakh (L) above 1 lakh, plain below."""
    sign = "-" if amount < 0 else ""
    value = abs(amount)
    if value >= 10_000_000:
        return f"{sign}₹{value / 10_000_000:.2f} Cr"
    if value >= 100_000:
        return f"{sign}₹{value / 100_000:.2f} L"
    return f"{sign}₹{value:,.0f}"


def _event_label(event: RuleEvent) -> str:
    if event.rule is Rule.TAX:
        return f"Tax: {(event.amount or 0.0) / 1000:.0f}k"
    return RULE_LABELS[event.rule]


def render_rule_log(events: Iterable[RuleEvent]) -> str:
    return " | ".join(_event_label(e) for e in events)


def history_frame(history: List[MonthRecord], start_age: Optional[int] = None) -> pd.DataFrame:
    """One row per simulated month.

    ``year`` is zero-based; ``age`` is added when ``start_age`` is known.
    """
    columns = [f.name for f in fields(MonthRecord) if f.name != "events"]
    rows = []
    for record in history:
        row = {name: getattr(record, name) for name in columns}
        row["year"] = (record.month - 1) // 12
        row["rule_log"] = render_rule_log(record.events)
        rows.append(row)

    df = pd.DataFrame(rows, columns=["year"] + columns + ["rule_log"])
    if start_age is not None:
        df.insert(1, "age", start_age + df["year"])
    return df


def yearly_summary(history: List[MonthRecord], start_age: Optional[int] = None) -> pd.DataFrame:
    """Roll monthly records up into one row per simulated year.

    Balances are taken at the last simulated month of each year, flows are
    summed and ``expense`` is the monthly expense in force that year.
    """
    monthly = history_frame(history)
    if monthly.empty:
        return monthly

    grouped = monthly.groupby("year", sort=True)
    yearly = grouped[_FLOW_COLUMNS].sum()
    last = grouped[["bucket1", "bucket2", "bucket3", "total_funds", "is_failed"]].last()
    yearly = yearly.join(last)
    yearly["expense"] = grouped["expense"].first()
    yearly = yearly.rename(
        columns={
            "bucket1": "end_b1",
            "bucket2": "end_b2",
            "bucket3": "end_b3",
            "total_funds": "end_total",
        }
    ).reset_index()

    if start_age is not None:
        yearly.insert(1, "age", start_age + yearly["year"])
    return yearly


def summary_lines(result: AggregateResult, params: SimulationParameters) -> List[str]:
    """Headline numbers of a Monte Carlo run, one per line."""
    lines = [
        f"Success rate: {result.success_rate:.1f}% of {result.total_trials} trials",
        f"Median final amount: {format_currency(result.final_amount)}",
        f"Median trial lasted {result.months_lasted / 12:.1f} of {params.years} years",
    ]
    for p, trial in sorted(result.percentiles.items()):
        lines.append(
            f"{p}th percentile final amount: {format_currency(trial.final_amount)}"
        )
    if not result.is_success:
        lines.append(
            f"Warning: the median trial runs out of money in month {result.months_lasted}."
        )
    lines.append(f"Seed: {result.seed}")
    return lines


def build_explanation(params: SimulationParameters) -> str:
    """Return a detailed explanation of inputs and derived values."""
    allocation = "/".join(f"{a * 100:.0f}" for a in params.normalized_allocations)
    annual_expense = params.monthly_expense * 12
    explanation = [
        "Input values:",
        f"  Number of simulations: {params.num_trials}",
        f"  Total funds: {format_currency(params.total_funds)}",
        f"  Monthly expense: {format_currency(params.monthly_expense)}",
        f"  Years: {params.years}",
        f"  Inflation: {params.inflation_rate:.2f}%",
        f"  Strategy: {params.strategy_type.value}",
        f"  Bucket allocation: {allocation}",
        f"  Annual rebalancing: {'Yes' if params.annual_rebalancing else 'No'}",
        f"  Tax: {'Enabled' if params.tax_enabled else 'Disabled'}"
        + (f" ({'joint' if params.is_joint else 'single'})" if params.tax_enabled else ""),
        f"  Starting age: {params.start_age}" if params.start_age is not None else "",
        "",
        "Buckets:",
    ]
    for bucket_id in BUCKETS:
        profile = params.bucket_profile(bucket_id)
        mean, std = params.monthly_returns[bucket_id]
        explanation.append(
            f"  B{bucket_id} {BUCKET_NAMES[bucket_id]}: "
            f"{profile.return_rate * 100:.2f}% (σ {profile.volatility * 100:.2f}%), "
            f"monthly {mean * 100:.3f}% (σ {std * 100:.3f}%)"
        )

    explanation += [
        "",
        "Derived values:",
        f"  Months simulated: {params.months}",
        f"  Income Stability Ratio: {params.isr:.1f} years of expense",
        f"  First-year expense: {format_currency(annual_expense)}",
        (
            "  Final-year monthly expense after inflation: "
            f"{format_currency(params.monthly_expense * (1 + params.inflation_rate / 100) ** (params.years - 1))}"
        ),
    ]
    if params.tax_enabled:
        explanation.append(
            f"  Slab tax on first-year expense: {format_currency(progressive_tax(annual_expense))}"
        )

    explanation += [
        "",
        "Rules:",
        "  Each month a bucket holding under 3 years of expense pulls 1 year",
        "  of expense from the next bucket; expenses come out of B1, then B2,",
        "  then B3.  Returns above one standard deviation are skimmed from B3",
        "  into B2 and from B2 into B1.",
    ]
    if params.strategy_type is StrategyType.DYNAMIC_AGGRESSIVE:
        explanation.append(
            "  Every year end B1 is reset to 4 years and B2 to 6 years of expense."
        )
    elif params.annual_rebalancing:
        explanation.append("  Every year end the buckets are rebalanced to the allocation.")
    return "\n".join(explanation)
