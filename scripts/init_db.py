#!/usr/bin/env python3
"""Install the auth schema into a Postgres database.

Usage:
    DATABASE_URL=postgresql://localhost:5432/kleroteria python scripts/init_db.py

    # Or with an explicit DSN:
    python scripts/init_db.py --dsn postgresql://localhost:5432/kleroteria
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

import psycopg

SCHEMA_PATH = (
    Path(__file__).resolve().parent.parent / "kleroteria" / "storage" / "schema.sql"
)


def apply_schema(dsn: str, schema_path: Path = SCHEMA_PATH) -> None:
    statements = schema_path.read_text()
    with psycopg.connect(dsn) as conn:
        conn.execute(statements)
        conn.commit()


def main() -> int:
    parser = argparse.ArgumentParser(description="Install the auth schema")
    parser.add_argument(
        "--dsn",
        default=os.getenv("DATABASE_URL"),
        help="Postgres connection string (defaults to DATABASE_URL)",
    )
    args = parser.parse_args()

    if not args.dsn:
        print("Error: --dsn or DATABASE_URL is required", file=sys.stderr)
        return 1

    try:
        apply_schema(args.dsn)
    except psycopg.Error as exc:
        print(f"Error: failed to apply schema: {exc}", file=sys.stderr)
        return 1

    print(f"Schema applied from {SCHEMA_PATH.name}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
