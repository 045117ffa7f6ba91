#!/usr/bin/env python3
"""
Single Round Fetch Script
=========================

Standalone script that runs one fetch round against a live radar server.

This script:
    1. Builds the pipeline from config.yaml / environment variables
    2. Fetches the observed frames and the forecast tail once
    3. Reports per-frame states and a final summary

Prerequisites:
    - Network access to the radar server
    - Install the package: pip install -e .

Usage:
    python scripts/fetch_once.py
    python scripts/fetch_once.py --count 6 --interval 10 --no-forecast
    python scripts/fetch_once.py --no-cache --timeout 60
"""

import argparse
import asyncio
import logging
import os
import sys
import time

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from radarloop.config import load_config
from radarloop.main import create_cache, create_orchestrator


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
    force=True,
)
logger = logging.getLogger(__name__)


async def run_round(args: argparse.Namespace) -> dict:
    """
    Run one round and report.

    Args:
        args: Parsed command line arguments

    Returns:
        Summary dict
    """
    config = load_config(args.config)
    if args.count is not None:
        config.sequence.image_count = args.count
    if args.interval is not None:
        config.sequence.interval_minutes = args.interval
    if args.no_forecast:
        config.sequence.forecast_enabled = False
    if args.no_cache:
        config.cache.enabled = False

    logger.info("=" * 60)
    logger.info("Radar Fetch Round")
    logger.info("=" * 60)
    logger.info(f"Observed URL base: {config.radar.base_url}")
    logger.info(f"Forecast URL base: {config.radar.forecast_base_url}")
    logger.info(f"Frames: {config.sequence.image_count} every {config.sequence.interval_minutes} min")
    logger.info(f"Forecast: {config.sequence.forecast_enabled}")
    logger.info("=" * 60)

    cache = create_cache(config)
    orchestrator = create_orchestrator(config, cache=cache)

    start_time = time.time()
    orchestrator.refresh(force=True)
    try:
        await asyncio.wait_for(orchestrator.wait_idle(), timeout=args.timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Round did not finish within {args.timeout}s")
    finally:
        await orchestrator.aclose()
        await orchestrator.client.aclose()
        if cache is not None:
            await cache.aclose()

    total_time = time.time() - start_time
    sequence = orchestrator.sequence

    logger.info("-" * 40)
    for record in sequence:
        duration = f"{record.load_duration:.2f}s" if record.load_duration is not None else "-"
        logger.info(
            f"  {record.key.cache_key:<28} {record.state.phase.value:<9} "
            f"source={record.image_source.value:<8} attempts={record.attempt_count} time={duration}"
        )

    snapshot = orchestrator.snapshot()
    logger.info("=" * 60)
    logger.info("FINAL SUMMARY")
    logger.info("=" * 60)
    logger.info(f"Total runtime: {total_time:.1f} seconds")
    logger.info(f"Loaded frames: {snapshot.loaded_count}/{snapshot.total_count}")
    logger.info(f"Error: {snapshot.error_message}")
    logger.info(f"Pipeline metrics: {orchestrator.metrics.to_dict()}")
    logger.info(f"Fetch metrics: {orchestrator.client.metrics.to_dict()}")
    logger.info("=" * 60)

    return {
        "duration": total_time,
        "loaded_count": snapshot.loaded_count,
        "total_count": snapshot.total_count,
        "error_message": snapshot.error_message,
    }


def main():
    parser = argparse.ArgumentParser(description="Fetch one round of radar frames")
    parser.add_argument("--config", type=str, default=None, help="Path to config.yaml")
    parser.add_argument("--count", type=int, default=None, help="Observed frames to fetch")
    parser.add_argument("--interval", type=int, default=None, help="Minutes between frames")
    parser.add_argument("--no-forecast", action="store_true", help="Skip the forecast tail")
    parser.add_argument("--no-cache", action="store_true", help="Bypass the image cache")
    parser.add_argument(
        "--timeout",
        type=float,
        default=120.0,
        help="Seconds to wait for the round (default: 120)",
    )

    args = parser.parse_args()

    result = asyncio.run(run_round(args))

    sys.exit(0 if result["loaded_count"] > 0 else 1)


if __name__ == "__main__":
    main()
