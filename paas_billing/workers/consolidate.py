"""Freeze closed months.

Usage:
    python -m paas_billing.workers.consolidate               # every eligible month
    python -m paas_billing.workers.consolidate --month 2018-01
"""
import argparse
import logging
from typing import List, Optional

from dotenv import load_dotenv

from paas_billing.core.config import Settings
from paas_billing.core.database import create_all_tables, init_engine
from paas_billing.core.logging import configure_logging
from paas_billing.features.context import build_context

logger = logging.getLogger("paas_billing")


def run_consolidation(settings_obj: Settings, month: Optional[str] = None) -> List[str]:
    engine = init_engine(settings_obj)
    create_all_tables(engine)
    try:
        context = build_context(engine, settings_obj)
        if month:
            context.consolidator.consolidate_month(month)
            return [month]
        return context.consolidator.consolidate_all()
    finally:
        engine.dispose()


def main() -> int:
    parser = argparse.ArgumentParser(description="Consolidate billable events of closed months.")
    parser.add_argument("--month", help="Consolidate a single month (YYYY-MM)")
    args = parser.parse_args()

    load_dotenv()
    settings = Settings()
    configure_logging(settings.ENV, settings.LOG_LEVEL)
    months = run_consolidation(settings, args.month)
    logger.info("consolidation.run_complete", extra={"months": months})
    print(months)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
