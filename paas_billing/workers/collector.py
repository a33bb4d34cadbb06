"""Usage event collector worker.

Usage:
    python -m paas_billing.workers.collector --once
    python -m paas_billing.workers.collector --loop

Reads CF_API_ADDRESS / CF_CLIENT_TOKEN, MANAGED_METRICS_API_TOKEN (optional)
and the COLLECTOR_* settings.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import Dict

from dotenv import load_dotenv

from paas_billing.core.config import Settings
from paas_billing.core.database import create_all_tables, init_engine
from paas_billing.core.logging import configure_logging
from paas_billing.features.context import BillingContext, build_context

logger = logging.getLogger("paas_billing")


async def collect_once(context: BillingContext) -> Dict[str, int]:
    """One tick per collector; returns events stored per kind."""
    return {collector.kind: await collector.collect() for collector in context.collectors}


async def collect_forever(context: BillingContext) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass
    await asyncio.gather(*(collector.run(stop) for collector in context.collectors))


async def _run(settings_obj: Settings, once: bool) -> Dict[str, int]:
    engine = init_engine(settings_obj)
    create_all_tables(engine)
    context = build_context(engine, settings_obj, with_collectors=True)
    try:
        if once:
            return await collect_once(context)
        await collect_forever(context)
        return {}
    finally:
        await context.aclose_clients()
        engine.dispose()


def main() -> int:
    parser = argparse.ArgumentParser(description="Collect upstream usage events into the raw event store.")
    parser.add_argument("--once", action="store_true", help="Run one tick per event kind and exit")
    parser.add_argument("--loop", action="store_true", help="Run until interrupted (default)")
    args = parser.parse_args()

    load_dotenv()
    settings = Settings()
    configure_logging(settings.ENV, settings.LOG_LEVEL)
    stored = asyncio.run(_run(settings, once=args.once and not args.loop))
    if args.once:
        print(stored)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
