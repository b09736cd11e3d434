# hospital_billing/db/init_db.py
from __future__ import annotations

import logging

from sqlalchemy.engine import Engine

from hospital_billing.db.base import Base
from hospital_billing.db.session import engine as default_engine

# Import all models so metadata is complete
from hospital_billing.models import audit, billing  # noqa: F401

logger = logging.getLogger(__name__)


def init_db(engine: Engine | None = None) -> None:
    eng = engine or default_engine
    Base.metadata.create_all(bind=eng)
    logger.info("Billing tables ensured: %s", sorted(Base.metadata.tables))


if __name__ == "__main__":
    logging.basicConfig(level="INFO")
    init_db()
