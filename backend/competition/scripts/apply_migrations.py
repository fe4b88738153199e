"""Utility for applying Alembic migrations with development-friendly defaults."""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from alembic import command
from alembic.config import Config


REPO_ROOT = Path(__file__).resolve().parents[3]
BACKEND_DIR = REPO_ROOT / "backend" / "competition"
ALEMBIC_INI = BACKEND_DIR / "alembic.ini"


def build_config(database_url: str) -> Config:
    cfg = Config(str(ALEMBIC_INI))
    cfg.set_main_option("script_location", str(BACKEND_DIR / "alembic"))
    cfg.set_main_option("sqlalchemy.url", database_url)
    return cfg


def run_migrations(database_url: str, revision: str = "head") -> None:
    if str(REPO_ROOT) not in sys.path:
        sys.path.insert(0, str(REPO_ROOT))
    command.upgrade(build_config(database_url), revision)


def main() -> None:
    parser = argparse.ArgumentParser(description="Apply Alembic migrations")
    parser.add_argument(
        "--database-url",
        dest="database_url",
        default=None,
        help="Database URL to migrate (falls back to DATABASE_URL env var)",
    )
    parser.add_argument("--revision", default="head", help="Target revision (default: head)")
    args = parser.parse_args()

    db_url = (
        args.database_url
        or os.environ.get("STORAGE__DATABASE_URL")
        or os.environ.get("DATABASE_URL")
    )
    if not db_url:
        parser.error("DATABASE_URL must be provided via flag or environment variable")

    run_migrations(db_url, args.revision)


if __name__ == "__main__":
    main()
