#!/usr/bin/env python3
"""
Apply pending schema migrations.
Run this from the project root: python scripts/run_migrations.py
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from gigjobs.config import settings
from gigjobs.db import Database
from gigjobs.logging import setup_logging
from gigjobs.models.migrations import run_migrations


def main() -> int:
    setup_logging(settings.log_level)
    database = Database(settings.database_url, settings)
    try:
        applied = run_migrations(database.engine)
    finally:
        database.dispose()
    print(f"Applied {len(applied)} migration(s): {applied}" if applied else "Schema is up to date")
    return 0


if __name__ == '__main__':
    sys.exit(main())
