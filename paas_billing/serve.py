"""
Run the billing API (and, with COLLECTOR_ENABLED, the collectors) under uvicorn.

    python -m paas_billing.serve
"""
import uvicorn
from dotenv import load_dotenv

from paas_billing.core.config import Settings
from paas_billing.main import build_app


def main() -> int:
    load_dotenv()
    settings_obj = Settings()
    uvicorn.run(
        build_app(settings_obj),
        host=settings_obj.LISTEN_HOST,
        port=settings_obj.PORT,
        log_level="info",
        access_log=False,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
