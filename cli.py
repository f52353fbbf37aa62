"""Command line entry point for the bucket drawdown simulator."""

from __future__ import annotations

import argparse
import signal
import sys
import threading

from loguru import logger

from core import (
    CONFIG_FILE,
    FIRE_MODES,
    SimulationAborted,
    SimulationParameters,
    StrategyType,
    calculate_required_funds,
    load_config,
    parse_allocation,
    parse_dollars,
    run_monte_carlo,
    save_config,
)
from optimizer import analyze_fixed_isr_strategies, find_optimal_strategy, volatility_impact
from report import build_explanation, format_currency, summary_lines, yearly_summary


def _percent_value(val: str) -> float:
    """'7%' or '7' -> 7.0 (kept as a percentage)."""
    try:
        return float(val.strip().rstrip("%"))
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid percentage: {val!r}") from None


def _argtype(parser_fn):
    def convert(val: str):
        try:
            return parser_fn(val)
        except ValueError as exc:
            raise argparse.ArgumentTypeError(str(exc)) from None

    return convert


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bucket-sim", description="Three-bucket retirement drawdown simulator"
    )
    parser.add_argument("--config", help=f"Load parameters from a JSON file (e.g. {CONFIG_FILE})")
    parser.add_argument("--save-config", metavar="PATH", help="Write the resolved parameters to PATH")

    corpus = parser.add_mutually_exclusive_group()
    corpus.add_argument("--funds", type=_argtype(parse_dollars), help="Starting corpus, e.g. 3,00,00,000")
    corpus.add_argument("--isr", type=float, help="Corpus as a multiple of annual expense")
    corpus.add_argument("--mode", choices=sorted(FIRE_MODES), help="FIRE mode ISR preset")

    parser.add_argument("--expense", type=_argtype(parse_dollars), help="Monthly expense")
    parser.add_argument("--years", type=int, help="Horizon in years")
    parser.add_argument("--inflation", type=_percent_value, help="Annual inflation, e.g. 7 or 7%%")
    parser.add_argument("--allocation", type=_argtype(parse_allocation), help="Bucket split, e.g. 50,30,20")
    parser.add_argument("--strategy", choices=[s.value for s in StrategyType])
    parser.add_argument(
        "--bucket",
        nargs=3,
        action="append",
        metavar=("ID", "RETURN", "VOLATILITY"),
        help="Override a bucket's annual return and volatility in percent; repeatable",
    )
    parser.add_argument("--rebalance", action="store_true", default=None, help="Rebalance to the allocation every year")
    parser.add_argument("--tax", action="store_true", default=None, help="Deduct income and capital gains tax yearly")
    parser.add_argument("--joint", action="store_true", default=None, help="Assess tax across two people")
    parser.add_argument("--retain-b1-skim", action="store_true", default=None, help="Keep B1's excess return in B1")
    parser.add_argument("--start-age", type=int, help="Age at the start of the simulation")

    parser.add_argument("--trials", type=int, help="Number of Monte Carlo trials")
    parser.add_argument("--seed", type=int, help="Random seed for reproducibility")
    parser.add_argument("--workers", type=int, default=1, help="Worker processes (default: 1)")

    parser.add_argument("--yearly", action="store_true", help="Print the median trial's yearly table")
    parser.add_argument("--explain", action="store_true", help="Print an explanation of the inputs")
    parser.add_argument("--optimize", action="store_true", help="Search presets for the lowest ISR")
    parser.add_argument("--fixed-isr", type=float, metavar="ISR", help="Compare presets at a fixed ISR")
    parser.add_argument("--volatility", action="store_true", help="Sweep B3 volatility against required ISR")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def _resolve_params(args: argparse.Namespace) -> SimulationParameters:
    data = load_config(args.config) if args.config else {}
    if args.config and not data:
        raise ValueError(f"Config file not found or empty: {args.config}")

    sim = dict(data.get("simulation") or {})
    strategy = dict(data.get("strategy") or {})
    tax = dict(data.get("tax") or {})
    buckets = dict(data.get("buckets") or {})

    overrides = {
        "monthly_expense": args.expense,
        "years": args.years,
        "inflation_rate": args.inflation,
        "num_trials": args.trials,
        "start_age": args.start_age,
    }
    sim.update({k: v for k, v in overrides.items() if v is not None})
    if "monthly_expense" not in sim:
        raise ValueError("A monthly expense is required (--expense or a config file)")

    if args.funds is not None:
        sim["total_funds"] = args.funds
    elif args.isr is not None or args.mode is not None:
        isr = args.isr if args.isr is not None else FIRE_MODES[args.mode]
        sim["total_funds"] = calculate_required_funds(sim["monthly_expense"], isr)
    elif "total_funds" not in sim:
        sim["total_funds"] = calculate_required_funds(sim["monthly_expense"], FIRE_MODES["Custom"])

    overrides = {
        "bucket_allocations": args.allocation,
        "strategy_type": args.strategy,
        "annual_rebalancing": args.rebalance,
        "retain_b1_skim": args.retain_b1_skim,
    }
    strategy.update({k: v for k, v in overrides.items() if v is not None})
    if args.tax is not None:
        tax["tax_enabled"] = True
    if args.joint is not None:
        tax["is_joint"] = True

    for bucket_id, ret, vol in args.bucket or []:
        buckets[str(int(bucket_id))] = {
            "return_rate": float(ret.strip().rstrip("%")) / 100,
            "volatility": float(vol.strip().rstrip("%")) / 100,
        }

    return SimulationParameters.from_dict(
        {"simulation": sim, "strategy": strategy, "tax": tax, "buckets": buckets}
    )


def _print_optimization(results) -> None:
    if not results:
        print("No preset reaches the target success rate.")
        return
    for r in results:
        print(
            f"{r.allocation_name:<26} ISR {r.isr:>5g}  "
            f"{r.success_rate:5.1f}%  {format_currency(r.total_funds_required)}"
        )


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if args.verbose else "WARNING")
    for module in ("core", "optimizer"):
        logger.enable(module)

    if args.workers < 1:
        print("--workers must be >= 1", file=sys.stderr)
        return 2

    try:
        params = _resolve_params(args)
    except (ValueError, OSError) as exc:
        print(f"Invalid parameters: {exc}", file=sys.stderr)
        return 2

    if args.save_config:
        save_config(params, args.save_config)
        print(f"Saved configuration to {args.save_config}")

    if args.explain:
        print(build_explanation(params))
        print()

    # --trials only overrides the analyses' own sample sizes when given
    trials = {"num_trials": args.trials} if args.trials else {}
    if args.optimize:
        search = (
            {"search_trials": args.trials, "verify_trials": args.trials} if args.trials else {}
        )
        _print_optimization(
            find_optimal_strategy(params, seed=args.seed, workers=args.workers, **search)
        )
        return 0
    if args.fixed_isr is not None:
        _print_optimization(
            analyze_fixed_isr_strategies(
                params, args.fixed_isr, seed=args.seed, workers=args.workers, **trials
            )
        )
        return 0
    if args.volatility:
        for point in volatility_impact(params, seed=args.seed, workers=args.workers, **trials):
            print(f"B3 volatility {point.volatility:5.1f}%  minimum ISR {point.min_isr}")
        return 0

    interrupted = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda signum, frame: interrupted.set())
    try:
        result = run_monte_carlo(
            params, seed=args.seed, workers=args.workers, should_abort=interrupted.is_set
        )
    except SimulationAborted as exc:
        print(str(exc), file=sys.stderr)
        return 1
    finally:
        signal.signal(signal.SIGINT, previous)

    print("\n".join(summary_lines(result, params)))
    if args.yearly:
        table = yearly_summary(result.history, params.start_age)
        print()
        print(table.to_string(index=False, float_format=lambda x: f"{x:,.0f}"))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
