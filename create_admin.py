"""
Seed the first administrator account.

    ADMIN_EMAIL=admin@college.edu ADMIN_PASSWORD=... python create_admin.py
"""

import logging
import os
import sys

import database
from database import USERS, ensure_indexes
from users import create_user, normalize_email

logger = logging.getLogger("create_admin")


def seed_admin(db, email: str, password: str, name: str = "System Administrator") -> bool:
    """Create the admin unless the email is taken. Returns True when one was created."""
    if db[USERS].find_one({"email": normalize_email(email)}, {"_id": 1}):
        logger.info("Admin user %s already exists", email)
        return False
    admin = create_user(db, name, email, password, "admin")
    logger.info("Admin user created: %s (%s)", admin["email"], admin["userId"])
    return True


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    if database.db is None:
        logger.error("DATABASE_URL is not set")
        return 1
    email = os.getenv("ADMIN_EMAIL", "admin@college.edu")
    password = os.getenv("ADMIN_PASSWORD")
    if not password:
        logger.error("ADMIN_PASSWORD is not set")
        return 1
    ensure_indexes(database.db)
    seed_admin(database.db, email, password, os.getenv("ADMIN_NAME", "System Administrator"))
    return 0


if __name__ == "__main__":
    sys.exit(main())
