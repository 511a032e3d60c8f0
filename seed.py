"""
Seed staff users and, on request, a sample menu.

Existing users and menu items (matched by email / name) are left untouched,
so the script is safe to run against a live database.

    python seed.py [--menu]
"""
import argparse
import logging
import os

from pymongo.database import Database

from auth import hash_password
from database import create_document, get_db, get_documents
from schemas import Fooditem, User

logger = logging.getLogger(__name__)

USERS_TO_SEED = [
    {"email": "admin@tableorder.app", "role": "admin"},
    {"email": "chef@tableorder.app", "role": "chef"},
]

SAMPLE_MENU = [
    Fooditem(name="Paneer Tikka", price=180.0, type="veg", category="Starters"),
    Fooditem(name="Masala Dosa", price=80.0, type="veg", category="Mains"),
    Fooditem(name="Chicken Biryani", price=240.0, type="non-veg", category="Mains"),
    Fooditem(name="Fresh Lime Soda", price=60.0, type="veg", category="Drinks"),
]


def seed_users(database: Database, password: str) -> int:
    created = 0
    for entry in USERS_TO_SEED:
        email = entry["email"].lower()
        if get_documents(database, "user", {"email": email}, limit=1):
            logger.info("User already exists: %s", email)
            continue
        create_document(database, "user", User(email=email, password_hash=hash_password(password), role=entry["role"]))
        logger.info("Created user: %s (%s)", email, entry["role"])
        created += 1
    return created


def seed_menu(database: Database) -> int:
    created = 0
    for item in SAMPLE_MENU:
        if get_documents(database, "fooditem", {"name": item.name}, limit=1):
            continue
        create_document(database, "fooditem", item)
        created += 1
    logger.info("Created %d menu items", created)
    return created


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--menu", action="store_true", help="also seed the sample menu")
    args = parser.parse_args(argv)

    password = os.getenv("SEED_STAFF_PASSWORD")
    if not password:
        parser.error("SEED_STAFF_PASSWORD must be set")

    database = get_db()
    seed_users(database, password)
    if args.menu:
        seed_menu(database)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    main()
