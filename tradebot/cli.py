"""CLI tool for admin operations.

Usage:
    python -m tradebot.cli init-db
    python -m tradebot.cli add-pair BTC USDT --step 0.00001 --tick 0.01 --min 0.0001
    python -m tradebot.cli set-credential binance
    python -m tradebot.cli set-setting OPENROUTER_ENABLED true
    python -m tradebot.cli run-once
"""

import argparse
import asyncio
import getpass
import json
import sys

from pydantic import ValidationError

from tradebot.database import create_db_and_tables
from tradebot.models.trading_pair import TradingPair
from tradebot.schemas.trading_pair import TradingPairCreate
from tradebot.services.store import TradingStore
from tradebot.utils.logging import setup_logging


def init_db(args):
    create_db_and_tables()
    print("Database initialized.")


def add_pair(args):
    create_db_and_tables()
    strategy = None
    if args.strategy:
        with open(args.strategy) as fh:
            strategy = json.load(fh)
    try:
        schema = TradingPairCreate(
            symbol=args.symbol or "",
            base_asset=args.base,
            quote_asset=args.quote,
            margin_enabled=args.margin or args.isolated,
            margin_is_isolated=args.isolated,
            price_precision=args.price_precision,
            quantity_precision=args.quantity_precision,
            min_trade_size=args.min,
            max_trade_size=args.max,
            tick_size=args.tick,
            step_size=args.step,
            strategy_config=strategy,
        )
    except ValidationError as e:
        print(f"Invalid pair: {e}")
        sys.exit(1)

    pair = TradingStore().add_pair(TradingPair(**schema.model_dump()))
    print(f"Added pair {pair.symbol} (id={pair.id}).")


def set_credential(args):
    create_db_and_tables()
    api_key = getpass.getpass("API key: ").strip()
    if not api_key:
        print("API key cannot be empty.")
        sys.exit(1)
    api_secret = getpass.getpass("API secret (blank if none): ").strip() or None
    TradingStore().set_credential(args.service, api_key, api_secret)
    print(f"Stored credential for {args.service}.")


def set_setting(args):
    create_db_and_tables()
    row = TradingStore().set_setting(args.key, args.value, args.description)
    print(f"{row.key} = {row.value}")


def run_once(args):
    create_db_and_tables()

    async def _run():
        from tradebot.engine.bootstrap import build_engine

        engine = await build_engine()
        try:
            summary = await engine.controller.run_once()
        finally:
            await engine.close()
        return summary

    summary = asyncio.run(_run())
    print(json.dumps(summary.to_dict() if summary else None, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tradebot")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="create database tables").set_defaults(func=init_db)

    p = sub.add_parser("add-pair", help="register a trading pair")
    p.add_argument("base")
    p.add_argument("quote")
    p.add_argument("--symbol")
    p.add_argument("--step", type=float)
    p.add_argument("--tick", type=float)
    p.add_argument("--min", type=float, default=0.0)
    p.add_argument("--max", type=float)
    p.add_argument("--price-precision", type=int, default=2)
    p.add_argument("--quantity-precision", type=int, default=6)
    p.add_argument("--margin", action="store_true")
    p.add_argument("--isolated", action="store_true")
    p.add_argument("--strategy", help="path to a strategy config JSON file")
    p.set_defaults(func=add_pair)

    p = sub.add_parser("set-credential", help="store an encrypted API key")
    p.add_argument("service", choices=["binance", "openai", "openrouter"])
    p.set_defaults(func=set_credential)

    p = sub.add_parser("set-setting", help="set a runtime setting")
    p.add_argument("key")
    p.add_argument("value")
    p.add_argument("--description")
    p.set_defaults(func=set_setting)

    sub.add_parser("run-once", help="run a single trading pass").set_defaults(func=run_once)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging()
    args.func(args)


if __name__ == "__main__":
    main()
