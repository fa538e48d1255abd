import logging
import os

import uvicorn

from acs_dashboard.config import settings
from acs_dashboard.logging_config import configure_logging

logger = logging.getLogger("acs.dashboard.run")


def main() -> None:
    """
    Uvicorn launcher.
    - PORT/HOST from env; 8080 locally since the remote backend owns 8000.
    - Auto-reload only for DEBUG outside production.
    """

    # Before uvicorn.run() so workers inherit the handlers.
    configure_logging()

    port = int(os.environ.get("PORT", 8080))
    host = os.environ.get("HOST", "0.0.0.0")
    reload = settings.debug and not settings.is_production

    logger.info("Serving %s on %s:%d (reload=%s)", settings.app_name, host, port, reload)
    uvicorn.run(
        "acs_dashboard.main:app",
        host=host,
        port=port,
        reload=reload,
        log_config=None,  # keep the dictConfig from configure_logging
        use_colors=False,
    )


if __name__ == "__main__":
    main()
