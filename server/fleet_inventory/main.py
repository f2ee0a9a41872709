"""Main entry point: run one inventory snapshot and emit it as JSON."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from .core.config import Settings, settings
from .core.config_validation import run_config_checks
from .services.inventory_service import InventoryRunError, create_inventory_service
from .services.output_sink import JsonSink, OutputSink

logger = logging.getLogger(__name__)


def configure_logging(config: Settings) -> None:
    # Logs go to stderr so stdout carries only the JSON snapshot.
    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


async def run_snapshot(config: Settings, sink: Optional[OutputSink] = None) -> int:
    """Run the inventory and hand the aggregate to ``sink``; returns an exit code."""

    service = create_inventory_service(config)
    try:
        aggregate = await service.run()
    except InventoryRunError as exc:
        logger.error("Inventory run aborted: %s", exc)
        return 1

    if sink is None:
        sink = JsonSink(Path(config.output_path) if config.output_path else None)
    sink.write(aggregate)
    return 0


def main() -> int:
    configure_logging(settings)
    logger.info("Starting %s", settings.app_name)

    validation = run_config_checks(force=True)
    for issue in validation.warnings:
        logger.warning("Configuration warning: %s %s", issue.message, issue.hint or "")
    if validation.has_errors:
        for issue in validation.errors:
            logger.error("Configuration error: %s %s", issue.message, issue.hint or "")
        return 2

    return asyncio.run(run_snapshot(settings))


if __name__ == "__main__":
    sys.exit(main())
