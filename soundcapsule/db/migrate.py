from __future__ import annotations

import argparse
import logging
from pathlib import Path

import psycopg

from soundcapsule.db.connection import get_connection

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


def migration_files() -> list[Path]:
    """All migration scripts, in the order they must run."""
    return sorted(MIGRATIONS_DIR.glob("*.sql"))


def _ensure_migrations_table(conn) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version TEXT PRIMARY KEY,
                applied_at TIMESTAMPTZ DEFAULT NOW()
            )
            """
        )
    conn.commit()


def _applied_versions(conn) -> set[str]:
    with conn.cursor() as cur:
        cur.execute("SELECT version FROM schema_migrations")
        return {row[0] for row in cur.fetchall()}


def pending_migrations(conn) -> list[Path]:
    _ensure_migrations_table(conn)
    applied = _applied_versions(conn)
    return [path for path in migration_files() if path.name not in applied]


def _apply_migration(conn, path: Path) -> None:
    # Script and bookkeeping row commit together.
    with conn.cursor() as cur:
        cur.execute(path.read_text(encoding="utf-8"))
        cur.execute("INSERT INTO schema_migrations (version) VALUES (%s)", (path.name,))
    conn.commit()


def apply_pending(verbose: bool = True) -> list[str]:
    """
    Apply every migration not yet recorded in schema_migrations.

    Args:
        verbose: Log progress at INFO instead of DEBUG

    Returns:
        Versions (file names) applied by this call
    """
    level = logging.INFO if verbose else logging.DEBUG
    applied_now: list[str] = []

    with get_connection() as conn:
        for path in pending_migrations(conn):
            logger.log(level, f"Applying migration {path.name}")
            try:
                _apply_migration(conn, path)
            except psycopg.Error as exc:
                logger.error(f"Migration {path.name} failed: {exc}")
                raise
            applied_now.append(path.name)

    if not applied_now:
        logger.log(level, "Schema is up to date")
    return applied_now


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Apply Sound Capsule schema migrations")
    parser.add_argument(
        "--status", action="store_true", help="List pending migrations without applying them"
    )
    parser.add_argument("--log-level", default="info", help="Logging level")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not migration_files():
        logger.error(f"No migration files found in {MIGRATIONS_DIR}")
        return 1

    if args.status:
        with get_connection() as conn:
            pending = pending_migrations(conn)
        for path in pending:
            logger.info(f"Pending: {path.name}")
        logger.info(f"{len(pending)} pending migration(s)")
        return 0

    applied = apply_pending()
    logger.info(f"Migrations complete, {len(applied)} applied")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
