#!/usr/bin/env python3
"""
Prefetch entry point.

Runs one prefetch of the feed graph with the process configuration, logs a
summary, and optionally writes the resulting tree to PREFETCH_OUTPUT as JSON.
Exits non-zero when the prefetch fails at the orchestration level.
"""

import asyncio
import json
import sys
import time
from pathlib import Path
from typing import Optional

from config import config, get_logger
from errors import PrefetchError
from fetcher import FeedFetcher
from models import PrefetchTree
from prefetcher import PrefetchOrchestrator
from telemetry import init_telemetry, trace_span
from utils import format_duration

# Module-specific logger
logger = get_logger("main")
init_telemetry("feed-prefetcher")


def write_tree(tree: PrefetchTree, output_path: str) -> Path:
    """Write the prefetch tree to a JSON file, creating parent directories."""
    target = Path(output_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(tree, indent=2, sort_keys=True), encoding="utf-8")
    return target


@trace_span("run_prefetch", tracer_name="main")
async def run_prefetch(output_path: Optional[str] = None) -> bool:
    """Prefetch every feed once; True on success (including partial trees)."""
    logger.info("Starting prefetch: %s", config.get_config_summary())
    started = time.monotonic()
    async with FeedFetcher() as fetcher:
        cutoff = fetcher.cache.cutoff()
        logger.info(
            "Cached feeds not modified since %s will be refetched",
            cutoff.isoformat() if cutoff is not None else "never",
        )
        orchestrator = PrefetchOrchestrator(fetcher)
        try:
            tree = await orchestrator.prefetch_all()
        except PrefetchError as e:
            logger.error(f"Prefetch failed: {e}")
            return False

        if fetcher.cache_write_failures:
            logger.warning(f"{len(fetcher.cache_write_failures)} response(s) could not be cached")
        logger.info(
            "Prefetch finished in %s: %d feeds, %d queue timeouts",
            format_duration(time.monotonic() - started),
            len(tree),
            fetcher.queue.timeouts,
        )

    if output_path:
        target = write_tree(tree, output_path)
        logger.info(f"Wrote prefetch tree to {target}")
    return True


def main():
    """Run a single prefetch and exit with its status."""
    try:
        success = asyncio.run(run_prefetch(config.PREFETCH_OUTPUT))
        sys.exit(0 if success else 1)
    except KeyboardInterrupt:
        logger.info("Prefetch interrupted")
    except OSError as e:
        logger.error(f"Could not write prefetch output: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
