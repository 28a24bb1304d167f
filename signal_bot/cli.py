from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional

from market_data import DEFAULT_INSTRUMENTS, MarketDataConfig, MarketDataProvider
from market_data.models import InstrumentSpec

from .config import (
    BotConfig,
    CacheSettings,
    SchedulerSettings,
    SignalSettings,
    apply_instrument_overrides,
    load_env_config,
    split_instrument_settings,
)
from .generator import SignalGenerator
from .price_tracker import PriceTracker
from .scheduler import SignalScheduler
from .signal_cache import SignalCache
from .telegram_client import DryRunPublisher, Publisher, TelegramClient, TelegramConfig

JOB_NAMES = ("signals", "tracker", "review", "daily_recap", "weekly_recap")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate, track and publish trading signals on a fixed schedule.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--env-file", type=Path, default=Path(".env"), help="Optional KEY=VALUE file.")
    parser.add_argument("--symbols", help="Comma-separated symbols to generate signals for.")
    parser.add_argument("--data-dir", type=Path, default=Path("./data"), help="Directory holding signals.json.")
    parser.add_argument("--max-history", type=int, default=100, help="Signals kept in the cache.")
    parser.add_argument("--save-debounce", type=float, default=0.1, help="Seconds to coalesce cache writes.")

    # Signal knobs
    parser.add_argument("--risk-reward", type=float, default=2.5, help="Reward-to-risk ratio for TP2.")
    parser.add_argument("--expiry-minutes", type=int, default=240, help="Minutes before a signal expires.")
    parser.add_argument("--gold-stop-loss-pips", type=float, default=150.0, help="Stop distance for XAU/USD.")
    parser.add_argument(
        "--instrument",
        action="append",
        metavar="SYMBOL=PIP:SL_PIPS[:DECIMALS]",
        help="Pip size, stop-loss pips and price decimals for one instrument (repeatable).",
    )

    # Scheduling
    parser.add_argument("--generation-interval", type=int, default=240, help="Minutes between signal runs.")
    parser.add_argument(
        "--generation-offset", type=int, default=120, help="Minutes past the interval boundary for signal runs."
    )
    parser.add_argument("--tracker-interval", type=int, default=15, help="Minutes between price checks.")
    parser.add_argument("--run-once", choices=JOB_NAMES, help="Run a single job immediately and exit.")

    # Market data
    parser.add_argument("--api-key", help="Twelve Data API key (mock data when absent).")
    parser.add_argument("--api-base-url", help="Override the Twelve Data base URL.")
    parser.add_argument("--rate-limit", type=int, default=8, help="Market-data calls per minute.")
    parser.add_argument("--price-cache-ttl", type=float, default=30.0, help="Seconds to reuse a fetched price.")

    # Telegram
    parser.add_argument("--telegram-token", help="Telegram bot token (see BotFather).")
    parser.add_argument("--telegram-chat-id", help="Target chat or channel ID.")
    parser.add_argument("--telegram-proxy", help="Proxy URL for Telegram requests (optional).")
    parser.add_argument("--telegram-timeout", type=float, default=10.0, help="Telegram request timeout in seconds.")
    parser.add_argument("--dry-run", action="store_true", help="Log messages instead of sending them.")
    parser.add_argument(
        "--publish-mock-signals",
        action="store_true",
        help="Also publish messages for signals built from mock market data.",
    )

    parser.add_argument("--log-level", default="INFO", help="Logging level.")
    return parser


def apply_env_defaults(args: argparse.Namespace, config: Dict[str, str]) -> argparse.Namespace:
    """Fill options not given on the command line from environment values."""
    if config["api_key"] and not args.api_key:
        args.api_key = config["api_key"]
    if config["base_url"] and not args.api_base_url:
        args.api_base_url = config["base_url"]
    if config["rate_limit"]:
        args.rate_limit = int(config["rate_limit"])
    if config["price_cache_ttl"]:
        args.price_cache_ttl = float(config["price_cache_ttl"])
    if config["symbols"] and not args.symbols:
        args.symbols = config["symbols"]
    if config["risk_reward"]:
        args.risk_reward = float(config["risk_reward"])
    if config["expiry_minutes"]:
        args.expiry_minutes = int(config["expiry_minutes"])
    if config["gold_stop_loss_pips"]:
        args.gold_stop_loss_pips = float(config["gold_stop_loss_pips"])
    if config["instruments"] and not args.instrument:
        args.instrument = split_instrument_settings(config["instruments"])
    if config["data_dir"]:
        args.data_dir = Path(config["data_dir"])
    if config["max_history"]:
        args.max_history = int(config["max_history"])
    if config["save_debounce"]:
        args.save_debounce = float(config["save_debounce"])
    if config["generation_interval"]:
        args.generation_interval = int(config["generation_interval"])
    if config["generation_offset"]:
        args.generation_offset = int(config["generation_offset"])
    if config["tracker_interval"]:
        args.tracker_interval = int(config["tracker_interval"])
    if config["telegram_token"] and not args.telegram_token:
        args.telegram_token = config["telegram_token"]
    if config["telegram_chat_id"] and not args.telegram_chat_id:
        args.telegram_chat_id = config["telegram_chat_id"]
    if config["telegram_proxy"] and not args.telegram_proxy:
        args.telegram_proxy = config["telegram_proxy"]
    return args


def resolve_symbols_argument(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [token.strip().upper() for token in value.split(",") if token.strip()]


def build_config(args: argparse.Namespace) -> BotConfig:
    instruments: Dict[str, InstrumentSpec] = dict(DEFAULT_INSTRUMENTS)
    instruments["XAU/USD"] = replace(instruments["XAU/USD"], stop_loss_pips=args.gold_stop_loss_pips)
    instruments = apply_instrument_overrides(instruments, args.instrument or [])
    symbols = resolve_symbols_argument(args.symbols)
    signal_settings = SignalSettings(
        instruments=instruments,
        risk_reward_ratio=args.risk_reward,
        expiry_minutes=args.expiry_minutes,
        **({"symbols": tuple(symbols)} if symbols else {}),
    )

    market_kwargs = {}
    if args.api_base_url:
        market_kwargs["base_url"] = args.api_base_url
    market_config = MarketDataConfig(
        api_key=args.api_key or "",
        rate_limit_per_minute=args.rate_limit,
        price_cache_ttl_seconds=args.price_cache_ttl,
        **market_kwargs,
    )

    telegram: Optional[TelegramConfig] = None
    if args.telegram_token and args.telegram_chat_id:
        telegram = TelegramConfig(
            bot_token=args.telegram_token,
            chat_id=args.telegram_chat_id,
            proxy=args.telegram_proxy,
            timeout=args.telegram_timeout,
        )
    elif not args.dry_run:
        raise ValueError(
            "Telegram bot token and chat ID are required "
            "(--telegram-token/TELEGRAM_BOT_TOKEN, --telegram-chat-id/TELEGRAM_CHAT_ID) unless --dry-run is set."
        )

    return BotConfig(
        market_data=market_config,
        signals=signal_settings,
        scheduler=SchedulerSettings(
            generation_interval_minutes=args.generation_interval,
            generation_offset_minutes=args.generation_offset,
            tracker_interval_minutes=args.tracker_interval,
        ),
        cache=CacheSettings(
            data_dir=args.data_dir,
            max_history=args.max_history,
            save_debounce_seconds=args.save_debounce,
        ),
        telegram=telegram,
        dry_run=args.dry_run,
        publish_mock_signals=args.publish_mock_signals,
    )


def build_scheduler(config: BotConfig, market_data: MarketDataProvider) -> SignalScheduler:
    cache = SignalCache(
        config.cache.signals_file,
        max_history=config.cache.max_history,
        debounce_seconds=config.cache.save_debounce_seconds,
        max_retry_seconds=config.scheduler.idle_sleep_seconds,
        logger=logging.getLogger("signal_bot.cache"),
    )
    publisher: Publisher
    if config.dry_run or config.telegram is None:
        publisher = DryRunPublisher(logger=logging.getLogger("signal_bot.publisher"))
    else:
        publisher = TelegramClient(config.telegram, logger=logging.getLogger("signal_bot.telegram"))

    generator = SignalGenerator(
        market_data, config.signals, logger=logging.getLogger("signal_bot.generator")
    )
    tracker = PriceTracker(
        cache, market_data, config.signals, logger=logging.getLogger("signal_bot.tracker")
    )
    return SignalScheduler(
        generator=generator,
        tracker=tracker,
        cache=cache,
        publisher=publisher,
        signal_settings=config.signals,
        settings=config.scheduler,
        publish_mock_signals=config.publish_mock_signals,
        logger=logging.getLogger("signal_bot.scheduler"),
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logger = logging.getLogger("signal_bot")

    args = apply_env_defaults(args, load_env_config(args.env_file))
    try:
        config = build_config(args)
    except ValueError as exc:
        parser.error(str(exc))

    logger.info("Symbols: %s", ", ".join(config.signals.symbols))
    logger.info("Market data: %s", "live" if config.market_data.live else "mock (no API key)")
    logger.info("Delivery: %s", "dry run" if config.dry_run else f"Telegram chat {config.telegram.chat_id}")

    market_data = MarketDataProvider(
        config.market_data,
        instruments=config.signals.instruments,
        logger=logging.getLogger("signal_bot.market_data"),
    )
    scheduler = build_scheduler(config, market_data)
    try:
        if args.run_once:
            scheduler.run_job(args.run_once)
            scheduler.flush()
        else:
            scheduler.run()
    finally:
        market_data.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
