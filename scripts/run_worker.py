#!/usr/bin/env python3
"""
Start the background worker that drains classification and draft jobs.
Stops cleanly on SIGINT/SIGTERM; unacknowledged jobs are recovered on the
next start.
"""

import asyncio
import signal
import sys
from pathlib import Path

# Add the project root to the path
project_root = Path(__file__).parent.parent
sys.path.append(str(project_root))

from helpdesk_ai.app_logging import init_logging
from helpdesk_ai.engine import get_engine


async def main():
    init_logging()
    engine = get_engine()
    await engine.startup()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    runner = engine.build_job_runner()
    try:
        await runner.run_forever(stop_event)
    finally:
        await engine.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
