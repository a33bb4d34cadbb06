"""Validate and install a pricing configuration document.

Usage:
    python -m paas_billing.workers.refresh_config --path config.json
"""
import argparse
from typing import Optional

from dotenv import load_dotenv

from paas_billing.core.config import Settings
from paas_billing.core.database import create_all_tables, init_engine
from paas_billing.core.logging import configure_logging
from paas_billing.features.context import build_context
from paas_billing.features.pricing.config_loader import InstalledConfig


def refresh_config(settings_obj: Settings, path: str, ignore_missing_plans: Optional[bool] = None) -> InstalledConfig:
    engine = init_engine(settings_obj)
    create_all_tables(engine)
    try:
        context = build_context(engine, settings_obj)
        return context.refresher.refresh_from_path(path, ignore_missing_plans)
    finally:
        engine.dispose()


def main() -> int:
    load_dotenv()
    settings = Settings()
    parser = argparse.ArgumentParser(description="Install a pricing configuration.")
    parser.add_argument("--path", default=settings.BILLING_CONFIG_PATH, help="Configuration document (JSON)")
    parser.add_argument("--ignore-missing-plans", dest="ignore_missing_plans", action="store_true", default=None,
                        help="Price usage of unknown plans at zero instead of failing")
    args = parser.parse_args()

    configure_logging(settings.ENV, settings.LOG_LEVEL)
    installed = refresh_config(settings, args.path, args.ignore_missing_plans)
    print({"version": installed.version, "ignore_missing_plans": installed.ignore_missing_plans})
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
