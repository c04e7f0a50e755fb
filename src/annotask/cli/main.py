# src/annotask/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, runs the startup sequence
(migration + load + render), then the console REPL if enabled.
"""

from __future__ import annotations

import asyncio
import logging

from ..cli.bootstrap import create_initial_state, startup
from ..config import get_settings
from ..connectors.console_connector import run_console_loop
from ..core.state import AppState
from ..errors import AnnotaskError
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)


async def _run(state: AppState, *, console: bool) -> int:
    try:
        await startup(state)
    except AnnotaskError:
        # Corrupt or unreadable tasks.json: refuse to start rather than overwrite it.
        logger.exception("Startup failed for %s", state.files)
        return 1

    if console:
        await run_console_loop(state)
    else:
        logger.info("Console disabled. Startup sequence finished.")
    return 0


def main() -> int:
    settings = get_settings()

    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    setup_logging(log_dir=getattr(settings, "log_dir", ".local/annotask"), console_level=console_level)

    logger.info("Starting %s...", getattr(settings, "app_name", "annotask"))

    # IMPORTANT: reuse same settings object
    state = create_initial_state(settings=settings)

    try:
        code = asyncio.run(_run(state, console=settings.console_enabled))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down...")
        code = 130

    logger.info("Bye.")
    return code


if __name__ == "__main__":
    raise SystemExit(main())
