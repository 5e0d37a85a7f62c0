"""
Entrypoint module for uvicorn.

Run as:

    uvicorn weathermap.main:app

or, using HOST/PORT from the settings:

    python -m weathermap.main
"""

import uvicorn

from weathermap.api import app  # FastAPI app
from weathermap.config import settings, setup_logging


def main() -> None:
    setup_logging()
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
