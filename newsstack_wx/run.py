"""Entry point: ``python -m newsstack_wx.run``

One-shot aggregation (prints JSON to stdout) or a standalone polling
loop (``--loop``) that re-exports the result every ``POLL_INTERVAL_S``.
Hosts that serve HTTP should construct ``AggregationEngine`` directly.

Environment variables (see ``config.Config``):
    NEWSAPI_KEY       enables the NewsAPI source
    SOURCES_PATH      JSON file replacing the built-in source catalog
    STATE_PATH        SQLite file for health/cache persistence
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from typing import Sequence

from .common_types import CATEGORIES, PRIORITIES, AggregationQuery
from .config import Config
from .errors import AggregationFailure, ConfigError
from .export import export_result, item_to_dict, result_to_dict
from .log_redaction import apply_global_log_redaction
from .pipeline import AggregationEngine

logger = logging.getLogger(__name__)


def _csv(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def build_parser(cfg: Config) -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="newsstack-wx", description="Aggregate weather news from all configured sources.")
    p.add_argument("--categories", type=_csv, default=None,
                   help=f"comma-separated subset of: {', '.join(CATEGORIES)}")
    p.add_argument("--priority", choices=[*PRIORITIES, "all"], default=None,
                   help="high, high+medium, low only, or all")
    p.add_argument("--sources", type=_csv, default=None, help="comma-separated source ids")
    p.add_argument("--max-items", type=int, default=cfg.default_max_items)
    p.add_argument("--max-age", type=float, default=cfg.default_max_age_hours, help="hours")
    p.add_argument("--featured", action="store_true", help="print only the featured story")
    p.add_argument("--loop", action="store_true", help="poll forever, exporting each cycle")
    p.add_argument("--export", default=None, metavar="PATH",
                   help=f"write result JSON atomically (loop default: {cfg.export_path})")
    return p


def _run_loop(engine: AggregationEngine, query: AggregationQuery, path: str, interval_s: float) -> None:
    logger.info("Polling every %.0fs, exporting to %s", interval_s, path)
    while True:
        t0 = time.monotonic()
        try:
            result = engine.refresh(query)
            export_result(path, result, meta={"generated_at": time.time()})
        except AggregationFailure as exc:
            logger.warning("Cycle failed: %s", exc)
        time.sleep(max(1.0, interval_s - (time.monotonic() - t0)))


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    apply_global_log_redaction()
    cfg = Config()
    args = build_parser(cfg).parse_args(argv)

    try:
        query = AggregationQuery(
            categories=args.categories,
            priority=args.priority,
            sources=args.sources,
            max_items=args.max_items,
            max_age_hours=args.max_age,
        )
        engine = AggregationEngine(cfg)
    except (ValueError, ConfigError) as exc:
        logger.error("Invalid arguments: %s", exc)
        return 2

    with engine:
        logger.info("Active sources: %s", [s.id for s in engine.registry.enabled()])
        if args.loop:
            try:
                _run_loop(engine, query, args.export or cfg.export_path, cfg.poll_interval_s)
            except KeyboardInterrupt:
                logger.info("Stopped.")
            return 0

        if args.featured:
            story = engine.get_featured_story()
            json.dump(item_to_dict(story) if story else None, sys.stdout, indent=2)
            sys.stdout.write("\n")
            return 0 if story else 1

        try:
            result = engine.aggregate_news(query)
        except AggregationFailure as exc:
            logger.error("%s", exc)
            return 1
        if args.export:
            export_result(args.export, result)
        json.dump(result_to_dict(result), sys.stdout, indent=2, ensure_ascii=False)
        sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
