#!/usr/bin/env python3
"""
Create a single-use admin key from the command line.

Use this to bootstrap the first admin session without exposing the
key issuance endpoint.

Usage:
    python -m scripts.create_admin_key
"""

import logging
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from audit import log_action
from auth import admin_auth
from database import init_db

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def main():
    """Create an admin key and print it."""
    init_db()

    created = admin_auth.create_key()
    log_action(
        actor="cli",
        action="admin_key_created",
        target_type="admin_key",
        target_id=str(created["id"])
    )
    logger.info(f"Admin key {created['id']} expires {created['expires_at']}")
    print(created["key"])
    return created


if __name__ == "__main__":
    main()
