#!/usr/bin/env python3
"""Scheduler worker runner"""
import asyncio
import logging
import signal

from dumpvault import create_app
from dumpvault.scheduler import build_coordinator

logger = logging.getLogger('dumpvault.worker')


async def main():
    app = create_app()
    coordinator = build_coordinator(app)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    with app.app_context():
        coordinator.initialize_all()
    coordinator.start()

    for job in coordinator.get_scheduled_jobs():
        logger.info(f"  - {job['id']}: {job['name']} (next run: {job['next_run'] or 'N/A'})")

    await stop_event.wait()
    coordinator.shutdown()


if __name__ == '__main__':
    asyncio.run(main())
