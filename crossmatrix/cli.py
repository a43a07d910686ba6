"""Command line entry point: ``crossmatrix run|tick|latest|on-demand|add-coin``."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import dataclass
from typing import Any

from .anchors import AnchorTracker
from .annotate import DiffAnnotator, FlipTolerance, FrozenThresholds
from .config import load_config
from .config_schema import EngineConfigModel
from .errors import MatrixEngineError
from .logging_utils import add_file_logging, setup_stdout_logging
from .lru import TTLCache
from .market_data import AvailabilityResolver, BinanceClient
from .models import STORED_TYPES, MatrixType
from .prices import PriceResolver
from .scheduler import TickScheduler
from .service import MatricesService, fetch_series, on_demand, series_metrics
from .store import SnapshotStore
from .universe import default_provider

log = logging.getLogger(__name__)


@dataclass
class Engine:
    config: EngineConfigModel
    store: SnapshotStore
    client: BinanceClient
    scheduler: TickScheduler
    service: MatricesService

    async def close(self) -> None:
        await self.client.close()
        await self.store.close()


def build_engine(cfg: EngineConfigModel) -> Engine:
    store = SnapshotStore(cfg.db_url)
    client = BinanceClient(
        cfg.binance_base_url,
        retry_attempts=cfg.retry_attempts,
        retry_backoff=cfg.retry_backoff,
        concurrency=cfg.http_concurrency,
        cache=TTLCache(maxsize=4, ttl=cfg.exchange_info_ttl),
    )
    scheduler = TickScheduler(
        universe=default_provider(
            store, quote=cfg.quote, bases=cfg.bases, fallback=cfg.fallback_bases
        ),
        client=client,
        store=store,
        resolver=PriceResolver(tuple(cfg.bridges)),
        anchors=AnchorTracker(store),
        interval=cfg.tick_interval,
        deadline=cfg.tick_deadline,
    )
    annotator = DiffAnnotator(
        FrozenThresholds(cfg.frozen.recent, cfg.frozen.mid, cfg.frozen.long),
        FlipTolerance(cfg.flip_abs_eps, cfg.flip_rel_eps),
    )
    service = MatricesService(
        store,
        annotator=annotator,
        availability=AvailabilityResolver(client),
        history_limit=cfg.history_limit,
    )
    return Engine(cfg, store, client, scheduler, service)


def _coins_arg(value: str) -> list[str]:
    return [part.strip().upper() for part in value.split(",") if part.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Cross-asset matrix engine")
    parser.add_argument("--config", default=None, help="Path to a TOML or YAML config file")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    parser.add_argument("--log-file", default=None, help="Also write logs to a rotating file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Run the periodic tick scheduler")
    subparsers.add_parser("tick", help="Compute and commit a single tick")

    latest_p = subparsers.add_parser("latest", help="Print the latest matrices as JSON")
    latest_p.add_argument("--coins", type=_coins_arg, required=True, help="Comma separated coins")
    latest_p.add_argument(
        "--types",
        type=_coins_arg,
        default=[t.value for t in STORED_TYPES],
        help="Comma separated matrix types",
    )

    od_p = subparsers.add_parser("on-demand", help="Compute metrics from recent klines")
    od_p.add_argument("--coins", type=_coins_arg, required=True)
    od_p.add_argument("--interval", default="1h")
    od_p.add_argument("--limit", type=int, default=25)

    coin_p = subparsers.add_parser("add-coin", help="Enable or disable a coin in the database universe")
    coin_p.add_argument("base")
    coin_p.add_argument("--disable", action="store_true")
    coin_p.add_argument("--sort-order", type=int, default=None)
    return parser


def _dump(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=False, default=str))


async def _run(engine: Engine) -> None:
    loop = asyncio.get_running_loop()
    task = engine.scheduler.start()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(engine.scheduler.stop()))
        except (NotImplementedError, RuntimeError):
            pass
    await task


async def _dispatch(args: argparse.Namespace, engine: Engine) -> int:
    cfg = engine.config
    if args.command == "run":
        await _run(engine)
    elif args.command == "tick":
        result = await engine.scheduler.tick()
        if result is None:
            log.warning("tick produced no snapshot")
            return 1
        _dump({"ts": result.ts_ms, "resolved": result.resolved, "rows": result.rows})
    elif args.command == "latest":
        types = [MatrixType.parse(t.lower()) for t in args.types]
        _dump(await engine.service.latest(args.coins, types))
    elif args.command == "on-demand":
        series = await fetch_series(
            engine.client, args.coins, cfg.quote, interval=args.interval, limit=args.limit
        )
        matrices = on_demand(series, cfg.quote)
        _dump(
            {
                "symbols": [series_metrics(c, rows).as_dict() for c, rows in series.items()],
                "matrices": {mt.value: grid for mt, grid in matrices.grids.items()},
            }
        )
    elif args.command == "add-coin":
        await engine.store.upsert_coin(
            args.base, cfg.quote, enabled=not args.disable, sort_order=args.sort_order
        )
    return 0


async def _amain(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    setup_stdout_logging(
        level=args.log_level or cfg.log_level, json_logs=args.json_logs or cfg.log_json
    )
    if args.log_file:
        add_file_logging(args.log_file, level=args.log_level or cfg.log_level)
    engine = build_engine(cfg)
    try:
        return await _dispatch(args, engine)
    finally:
        await engine.close()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_stdout_logging(level=args.log_level, json_logs=args.json_logs or None)
    try:
        return asyncio.run(_amain(args))
    except MatrixEngineError as exc:
        log.error("%s", exc)
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
