from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """
    Root logger config for the API process.
    Safe to call more than once (uvicorn reload imports main twice).
    """
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    else:
        root.setLevel(level.upper())

    # SQL echo is noisy; keep it at WARNING unless explicitly asked
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
