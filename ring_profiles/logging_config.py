from __future__ import annotations

import logging


def configure_logging(level: str = "INFO") -> None:
    """Dev-friendly logging setup.

    Uvicorn config can override this, but this gives us sane defaults when running locally.
    """
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
