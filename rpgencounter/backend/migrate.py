"""Create the encounter tables in PostgreSQL.

``db_schema.sql`` holds the saved-session slot, its revision snapshots and
the concluded-encounter archive used by ``PostgresSessionStore``. Every
statement is idempotent, so running ``rpgencounter migrate`` against an
already migrated database is harmless.
"""

from __future__ import annotations

import logging
from pathlib import Path

from rpgencounter.backend.config import load_settings
from rpgencounter.backend.errors import PersistenceError

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("db_schema.sql")


def apply_schema(database_url: str, schema_path: Path = SCHEMA_PATH) -> None:
    import psycopg

    schema_sql = schema_path.read_text(encoding="utf-8")
    try:
        with psycopg.connect(database_url) as conn:
            with conn.cursor() as cur:
                cur.execute(schema_sql)
            conn.commit()
    except Exception as exc:
        raise PersistenceError(f"cannot create encounter tables: {exc}") from exc
    logger.info("Encounter tables ready (%s)", schema_path.name)


def main() -> None:
    settings = load_settings()
    if not settings.database_url:
        raise PersistenceError(
            "set RPGENCOUNTER_DATABASE_URL to migrate; file and in-memory session stores need no schema"
        )
    apply_schema(settings.database_url)


if __name__ == "__main__":
    main()
