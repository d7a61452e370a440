"""
Reset the database to a demo state: one admin, one customer, catalog products.

    python seed.py
"""

import logging

import database
from auth import register_user
from catalog_sync import sync_products

logger = logging.getLogger(__name__)

DEMO_PASSWORD = "password123"
DEMO_USERS = [
    ("Administrador", "admin@example.com", "ADMIN"),
    ("Juan Cliente", "cliente@example.com", "CUSTOMER"),
]


def seed(client=None):
    db = database.get_db()
    for name in ("order", "product", "user"):
        db[name].delete_many({})

    for name, email, role in DEMO_USERS:
        register_user(name, email, DEMO_PASSWORD, role)

    created = sync_products(client)
    logger.info("Seeded %d users and %d products", len(DEMO_USERS), created)
    return created


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    seed()
