#!/usr/bin/env python3
"""
Expire pending invitations whose expires_at has passed.
Cron-friendly; safe to run while the API's own sweeper is running.
Run this from the project root: python scripts/expire_invitations.py
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from gigjobs.config import settings
from gigjobs.db import Database
from gigjobs.errors import Unavailable
from gigjobs.logging import setup_logging
from gigjobs.services.invitations import expire_stale


def main() -> int:
    setup_logging(settings.log_level)
    database = Database(settings.database_url, settings)
    db = database.session()
    try:
        count = expire_stale(db)
    except Unavailable as e:
        print(f"ERROR: {e}")
        return 1
    finally:
        db.close()
        database.dispose()
    print(f"Expired {count} invitation(s)")
    return 0


if __name__ == '__main__':
    sys.exit(main())
