"""
Seeds the product collection from the external product catalog API.

The provider is best effort: any failure is logged and swallowed so the
product listing keeps working with whatever is already stored.
"""

import logging
import random
from typing import List, Optional

import httpx

import database
from config import PRODUCT_CATALOG_TIMEOUT, PRODUCT_CATALOG_URL
from schemas import Product

logger = logging.getLogger(__name__)


class CatalogClient:
    def __init__(self, base_url: str = PRODUCT_CATALOG_URL, timeout: float = PRODUCT_CATALOG_TIMEOUT,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def fetch_products(self) -> List[dict]:
        with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
            resp = client.get("/products")
            resp.raise_for_status()
            data = resp.json()
        if not isinstance(data, list):
            raise ValueError("Unexpected catalog payload")
        return data


def _to_product(item: dict) -> Product:
    return Product(
        name=item["title"],
        description=item.get("description") or "",
        price=item["price"],
        stock=random.randint(10, 109),
        image_url=item.get("image"),
    )


def sync_products(client: Optional[CatalogClient] = None) -> int:
    """Insert every catalog product not already stored under the same name."""
    client = client or CatalogClient()
    products = database.get_db()["product"]
    try:
        items = client.fetch_products()
    except (httpx.HTTPError, ValueError) as e:
        logger.error("Product catalog fetch failed: %s", e)
        return 0

    created = 0
    for item in items:
        try:
            product = _to_product(item)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping malformed catalog item %r: %s", item.get("id") if isinstance(item, dict) else item, e)
            continue
        if products.find_one({"name": product.name}):
            continue
        database.create_document("product", product)
        created += 1
    logger.info("Synced %d products from %s", created, client.base_url)
    return created


def sync_products_if_empty(client: Optional[CatalogClient] = None) -> int:
    if database.get_db()["product"].count_documents({}) > 0:
        return 0
    return sync_products(client)
