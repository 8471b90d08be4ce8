"""MarginPilot — command-line entry point.

Sub-commands:

    validate <file>              check a strategy document, print field errors
    strategies                   list the registered strategies
    recommend --candle-dir DIR   print recommendation, regime, sizing and
                                 chart context as JSON
"""

import argparse
import dataclasses
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Optional

from marginpilot.config import load_config
from marginpilot.data import load_snapshots
from marginpilot.risk.sizing import calculate_entry_size
from marginpilot.strategy.chart_context import build_chart_context
from marginpilot.strategy.loader import load_strategy_file
from marginpilot.strategy.recommendation import generate_recommendation
from marginpilot.strategy.regime import detect_market_regime
from marginpilot.strategy.registry import load_builtin_registry

logger = logging.getLogger("marginpilot")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _to_json(value: Any) -> str:
    if dataclasses.is_dataclass(value):
        value = dataclasses.asdict(value)
    return json.dumps(value, indent=2, default=str)


# ── Commands ─────────────────────────────────────────────────────────────


def _cmd_validate(args: argparse.Namespace) -> int:
    result = load_strategy_file(args.file)
    if result.ok:
        print(f"OK: {result.strategy.name} ({result.strategy.meta.version})")
        return 0
    for error in result.errors:
        print(str(error))
    return 1


def _cmd_strategies(args: argparse.Namespace) -> int:
    extra = Path(args.strategy_dir) if args.strategy_dir else None
    registry = load_builtin_registry(extra)
    for name in registry.names():
        strategy = registry.get(name)
        print(f"{name}\t{strategy.meta.type}\t{strategy.meta.description}")
    return 0


def _cmd_recommend(args: argparse.Namespace, config) -> int:
    strategy_dir = args.strategy_dir or config.strategy_dir
    registry = load_builtin_registry(Path(strategy_dir) if strategy_dir else None)
    strategy = registry.get(args.strategy or config.default_strategy)

    candle_dir = args.candle_dir or config.candle_dir
    snapshots = load_snapshots(candle_dir)

    ind4h = snapshots["4h"].indicators if "4h" in snapshots else None
    ind1h = snapshots["1h"].indicators if "1h" in snapshots else None
    regime = detect_market_regime(ind4h, ind1h, strategy.regime)

    fib_config = strategy.fibonacci if strategy.fibonacci.enabled else None
    chart = build_chart_context(
        {interval: list(s.candles) for interval, s in snapshots.items()},
        config.trade_pair,
        fib_config,
    )

    recommendation = generate_recommendation(
        snapshots,
        strategy,
        regime=regime,
        chart_context=chart,
        knife_gating=config.knife_gating,
    )
    if recommendation is None:
        logger.error("Not enough candle data in %s for a recommendation", candle_dir)
        return 1

    sizing = None
    if recommendation.action != "WAIT":
        price = snapshots["15m"].candles[-1].close
        sizing = calculate_entry_size(
            recommendation.confidence, price, config.available_margin, strategy.position_sizing,
            size_multiplier=recommendation.size_multiplier,
        )

    print(_to_json({
        "strategy": strategy.name,
        "recommendation": dataclasses.asdict(recommendation),
        "regime": dataclasses.asdict(regime) if regime else None,
        "sizing": dataclasses.asdict(sizing) if sizing else None,
        "chart_context": dataclasses.asdict(chart),
    }))
    return 0


# ── CLI ──────────────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="marginpilot", description="MarginPilot decision engine")
    parser.add_argument("--env-file", help="Path to a .env file (default: ./.env)")
    sub = parser.add_subparsers(dest="command", required=True)

    p_validate = sub.add_parser("validate", help="Validate a strategy JSON document")
    p_validate.add_argument("file", help="Strategy JSON file")

    p_list = sub.add_parser("strategies", help="List registered strategies")
    p_list.add_argument("--strategy-dir", help="Extra directory of strategy documents")

    p_rec = sub.add_parser("recommend", help="Recommend a trade from candle CSV files")
    p_rec.add_argument("--candle-dir", help="Directory holding <interval>.csv files")
    p_rec.add_argument("--strategy", help="Strategy name (default: DEFAULT_STRATEGY)")
    p_rec.add_argument("--strategy-dir", help="Extra directory of strategy documents")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Parse CLI arguments and dispatch to the sub-command."""
    args = build_parser().parse_args(argv)

    config = None
    if args.command == "recommend":
        config = load_config(args.env_file)
        level = config.log_level
    else:
        level = os.environ.get("LOG_LEVEL", "INFO")

    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)

    if args.command == "validate":
        return _cmd_validate(args)
    if args.command == "strategies":
        return _cmd_strategies(args)
    return _cmd_recommend(args, config)


if __name__ == "__main__":
    sys.exit(main())
