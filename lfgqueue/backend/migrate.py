"""Apply SQL schema for the PostgreSQL queue store."""

from __future__ import annotations

import logging
from pathlib import Path

from lfgqueue.backend.config import load_settings
from lfgqueue.backend.log import setup_logging

logger = logging.getLogger(__name__)


def main() -> None:
    settings = load_settings()
    setup_logging("lfgqueue-migrate", verbose=settings.verbose)
    if not settings.database_url:
        raise RuntimeError("LFGQUEUE_DATABASE_URL is required for migration")

    import psycopg

    schema_path = Path(__file__).with_name("db_schema.sql")
    schema_sql = schema_path.read_text(encoding="utf-8")

    with psycopg.connect(settings.database_url) as conn:
        with conn.cursor() as cur:
            cur.execute(schema_sql)
        conn.commit()
    logger.info("Applied %s", schema_path.name)


if __name__ == "__main__":
    main()
