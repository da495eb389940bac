from __future__ import annotations

import logging

from sqlalchemy.engine import Engine

from fulfillment.db.models import Base

logger = logging.getLogger(__name__)


def init_db(bind: Engine) -> list[str]:
    Base.metadata.create_all(bind=bind)
    table_names = sorted(Base.metadata.tables)
    logger.info("event=fulfillment_tables_ready tables=%s", ",".join(table_names))
    return table_names


if __name__ == "__main__":
    from fulfillment.db.session import engine

    created = init_db(engine)
    print(f"Fulfillment tables ready: {', '.join(created)}")
