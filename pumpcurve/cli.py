"""
Command-line tool for the bonding curve.

Quotes trades against arbitrary reserves, inspects curves stored in a
database, serves their metrics and writes a default configuration file.
"""
import argparse
import json
import sys
import time
from pathlib import Path
from typing import Optional

from pumpcurve import curve_math
from pumpcurve.config import Config
from pumpcurve.controller import curve_summary
from pumpcurve.db import DB
from pumpcurve.errors import ValidationError
from pumpcurve.monitoring import CurveMonitor
from pumpcurve.store import CurveStore


def quote(side: str, amount: int, base_reserve: int, asset_reserve: int,
          fee_bps: int, slippage_bps: int) -> dict:
    """Price one trade and the minimum output to pass for it."""
    if side == "buy":
        result = curve_math.buy_quote(amount, base_reserve, asset_reserve, fee_bps)
    else:
        result = curve_math.sell_quote(amount, base_reserve, asset_reserve, fee_bps)

    return {
        'side': side,
        'amount_in': result.amount_in,
        'raw_amount_out': result.raw_amount_out,
        'fee': result.fee,
        'amount_out': result.amount_out,
        'min_amount_out': curve_math.min_amount_out(result.amount_out, slippage_bps),
        'new_base_reserve': result.new_base_reserve,
        'new_asset_reserve': result.new_asset_reserve,
        'graduated': side == "buy" and curve_math.is_graduated(result.new_base_reserve),
    }


def _open_store(db_path: str, config: Config) -> CurveStore:
    if not Path(db_path).exists():
        raise FileNotFoundError(f"Database path '{db_path}' does not exist")
    db = DB(db_path, create_if_missing=False,
            write_buffer_size=config.database.write_buffer_size,
            max_open_files=config.database.max_open_files)
    return CurveStore(db)


def show_curve(db_path: str, mint_hex: str, config: Config) -> dict:
    store = _open_store(db_path, config)
    try:
        curve = store.get_curve(bytes.fromhex(mint_hex))
        if curve is None:
            raise ValidationError(f"No bonding curve for mint {mint_hex}")
        return curve_summary(curve, config.curve)
    finally:
        store.db.close()


def list_curves(db_path: str, config: Config) -> list[dict]:
    store = _open_store(db_path, config)
    try:
        return [curve_summary(curve, config.curve) for curve in store.list_curves()]
    finally:
        store.db.close()


def serve(config: Config, db_path: str, interval: float = 15.0,
          iterations: Optional[int] = None) -> CurveMonitor:
    """
    Expose metrics for the curves in a database until interrupted.

    The endpoint comes from config.monitoring, which must be enabled.
    """
    store = _open_store(db_path, config)
    try:
        monitor = CurveMonitor.from_config(config.monitoring)
        if monitor is None:
            raise ValueError("Monitoring is disabled in the configuration")
        try:
            tick = 0
            while True:
                monitor.update(store.list_curves())
                tick += 1
                if iterations is not None and tick >= iterations:
                    break
                time.sleep(interval)
        except KeyboardInterrupt:
            print("Stopping metrics server")
        finally:
            monitor.stop_server()
        return monitor
    finally:
        store.db.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pumpcurve", description="Bonding curve tool")
    parser.add_argument("--config", type=str, default=None, help="Path to JSON config file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    parser_quote = subparsers.add_parser("quote", help="Quote a trade against given reserves")
    parser_quote.add_argument("side", choices=["buy", "sell"])
    parser_quote.add_argument("amount", type=int, help="Base units for a buy, asset units for a sell")
    parser_quote.add_argument("--base-reserve", type=int, default=None)
    parser_quote.add_argument("--asset-reserve", type=int, default=None)
    parser_quote.add_argument("--fee-bps", type=int, default=None)
    parser_quote.add_argument("--slippage-bps", type=int, default=None)

    db_help = "Path to the curve database (defaults to database.path from the config)"

    parser_curve = subparsers.add_parser("curve", help="Show one stored curve")
    parser_curve.add_argument("--db", type=str, default=None, help=db_help)
    parser_curve.add_argument("mint", type=str, help="Mint identity as hex")

    parser_curves = subparsers.add_parser("curves", help="List stored curves")
    parser_curves.add_argument("--db", type=str, default=None, help=db_help)

    parser_serve = subparsers.add_parser("serve", help="Serve Prometheus metrics for stored curves")
    parser_serve.add_argument("--db", type=str, default=None, help=db_help)
    parser_serve.add_argument("--interval", type=float, default=15.0, help="Seconds between refreshes")
    parser_serve.add_argument("--iterations", type=int, default=None, help="Stop after this many refreshes")

    parser_config = subparsers.add_parser("config", help="Configuration helpers")
    config_sub = parser_config.add_subparsers(dest="config_command", required=True)
    parser_write = config_sub.add_parser("write", help="Write the default configuration")
    parser_write.add_argument("path", type=str)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config = Config.from_file(args.config) if args.config else Config.default()
    config.logging.apply()
    db_path = getattr(args, 'db', None) or config.database.path

    try:
        if args.command == "quote":
            curve_config = config.curve
            result = quote(
                args.side,
                args.amount,
                args.base_reserve if args.base_reserve is not None else curve_config.initial_virtual_base_reserve,
                args.asset_reserve if args.asset_reserve is not None else curve_config.initial_virtual_asset_reserve,
                args.fee_bps if args.fee_bps is not None else curve_config.protocol_fee_bps,
                args.slippage_bps if args.slippage_bps is not None else curve_config.default_slippage_bps,
            )
            print(json.dumps(result, indent=2))
        elif args.command == "curve":
            print(json.dumps(show_curve(db_path, args.mint, config), indent=2))
        elif args.command == "curves":
            curves = list_curves(db_path, config)
            print(json.dumps(curves, indent=2))
            print(f"{len(curves)} curve(s)", file=sys.stderr)
        elif args.command == "serve":
            serve(config, db_path, args.interval, args.iterations)
        elif args.command == "config":
            config.to_file(args.path)
            print(f"Wrote default configuration to: {args.path}")
    except (ValidationError, FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
