"""qs CLI entrypoint.

Subcommands: watch (stream quotes, and optionally candles, to stdout).

The session token comes from QS_SECRET_SESSION_TOKEN; other settings from
QUOTESTREAM_* variables (see StreamClientConfig.from_env).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Optional, TextIO

from quotestream.adapters.env_provider import SESSION_TOKEN, EnvSecretsProvider, MissingSecretError
from quotestream.feed.config import MarketDataConfig, StreamClientConfig
from quotestream.feed.errors import ConfigurationError
from quotestream.market.service import MarketDataService
from quotestream.ports.secrets_provider import SecretsProvider
from quotestream.types.types import CandleRecord, Quote

APP_VERSION = "0.1.0"

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """
    Return the top-level CLI argument parser.
    """
    p = argparse.ArgumentParser(prog="qs")
    p.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    sub = p.add_subparsers(dest="command", required=True)

    watch = sub.add_parser("watch", help="Stream live quotes for one or more symbols")
    watch.add_argument("symbols", nargs="+", metavar="SYMBOL", help="Symbols to watch")
    watch.add_argument("--candles", metavar="PERIOD", help="Also stream candles, e.g. 1m or 5m")
    watch.add_argument(
        "--duration",
        type=float,
        default=None,
        metavar="S",
        help="Stop after S seconds (default: run until interrupted)",
    )
    watch.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    return p


def format_quote(quote: Quote) -> str:
    return (
        f"{quote.last_updated} {quote.symbol:<8} last={quote.last:.2f} "
        f"bid={quote.bid:.2f} ask={quote.ask:.2f} "
        f"chg={quote.change:+.2f} ({quote.change_percent:+.2f}%) vol={quote.volume:g}"
    )


def format_candle(candle: CandleRecord) -> str:
    return (
        f"{candle.iso_timestamp} {candle.symbol:<8} [{candle.period}] "
        f"O={candle.open:.2f} H={candle.high:.2f} L={candle.low:.2f} "
        f"C={candle.close:.2f} V={candle.volume:g}"
    )


async def run_watch(
    service: MarketDataService,
    symbols: list[str],
    candles: Optional[str] = None,
    duration: Optional[float] = None,
    out: TextIO = sys.stdout,
    tick_s: float = 1.0,
) -> int:
    """Stream to `out` until `duration` elapses (or forever)."""
    stream_started = await service.start_streaming(symbols)
    if not stream_started:
        print(f"Streaming unavailable: {service.error}", file=sys.stderr)
        await service.stop_streaming()
        return 1

    if candles:
        await service.start_candle_streaming(symbols[0], candles)

    printed: dict[str, Quote] = {}
    elapsed = 0.0
    try:
        while duration is None or elapsed < duration:
            await asyncio.sleep(tick_s)
            elapsed += tick_s
            for symbol in symbols:
                quote = service.get_quote(symbol)
                if quote is not None and printed.get(symbol) != quote:
                    printed[symbol] = quote
                    print(format_quote(quote), file=out)
            if candles:
                latest = service.get_candles(symbols[0], candles)
                if latest:
                    print(format_candle(latest[-1]), file=out)
            if not service.is_streaming:
                print(f"Streaming stopped: {service.error}", file=sys.stderr)
                return 1
    finally:
        await service.stop_streaming()
    return 0


def main(argv: list[str] | None = None, secrets: SecretsProvider | None = None) -> int:
    """CLI entrypoint wrapper compatible with setuptools scripts."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    secrets = secrets or EnvSecretsProvider()
    try:
        session_token = secrets.get(SESSION_TOKEN)
        config = MarketDataConfig(stream=StreamClientConfig.from_env())
    except (MissingSecretError, ConfigurationError) as e:
        print(f"qs: {e}", file=sys.stderr)
        return 2

    if args.command == "watch":
        service = MarketDataService(session_token, config)
        try:
            return asyncio.run(run_watch(service, args.symbols, args.candles, args.duration))
        except KeyboardInterrupt:
            return 130

    print(f"Command '{args.command}' not implemented", file=sys.stderr)
    return 2


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
