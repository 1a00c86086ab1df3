from __future__ import annotations

import uvicorn

from forumai.apps.api.main import create_app
from forumai.core.config import get_settings


def main() -> None:
    # Serves the admin API for the forum's settings pages and external wake-up timers.
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
