"""
Order and inventory mutations.

Product stock tracks the quantities of orders that still exist: placing an
order takes stock, editing a pending order's quantity moves stock by the
difference, and deleting an order gives its quantity back. A status change
never touches stock, CANCELLED included; stock only comes back on delete.

Stock checks are folded into the write as a conditional `$inc`
(`stock >= n`), so two concurrent orders cannot both pass the check and
oversell. Order and product are still two documents written separately
with no multi-document transaction: when the second write fails the first
is compensated, but a crash in between can leave them out of step.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Optional

import pydantic
from pymongo import ReturnDocument

import database
from auth import is_privileged
from errors import Forbidden, InsufficientStock, InvalidQuantity, InvalidState, NotFound, Unauthorized, ValidationError
from schemas import ORDER_STATUSES, Identity, Order, Product

logger = logging.getLogger(__name__)

# Admins may move an order between any two statuses; nothing is terminal.
STATUS_TRANSITIONS = {status: frozenset(ORDER_STATUSES) for status in ORDER_STATUSES}

PRODUCT_FIELDS = ("name", "description", "price", "stock", "image_url")


def calculate_total(price: float, quantity: int) -> float:
    return round(price * quantity, 2)


def _now():
    return datetime.now(timezone.utc)


def _products():
    return database.get_db()["product"]


def _orders():
    return database.get_db()["order"]


def _find(collection, doc_id, what: str) -> dict:
    oid = database.to_object_id(doc_id)
    doc = collection.find_one({"_id": oid}) if oid is not None else None
    if doc is None:
        raise NotFound(f"{what} not found")
    return doc


def _actor_id(actor: Identity):
    oid = database.to_object_id(actor.id)
    if oid is None:
        raise Unauthorized()
    return oid


def _is_owner(actor: Identity, order: dict) -> bool:
    return str(order["user_id"]) == actor.id


def _take_stock(product_id, quantity: int) -> Optional[dict]:
    """Atomically decrement stock if at least `quantity` is available.

    Returns the product as it was before the decrement, or None when there
    was not enough stock.
    """
    return _products().find_one_and_update(
        {"_id": product_id, "stock": {"$gte": quantity}},
        {"$inc": {"stock": -quantity}, "$set": {"updated_at": _now()}},
        return_document=ReturnDocument.BEFORE,
    )


def _return_stock(product_id, quantity: int) -> bool:
    result = _products().update_one(
        {"_id": product_id},
        {"$inc": {"stock": quantity}, "$set": {"updated_at": _now()}},
    )
    return result.matched_count > 0


def _public_user(user: Optional[dict]) -> Optional[dict]:
    if user is None:
        return None
    user = database.doc_to_dict(user)
    user.pop("password", None)
    return user


def serialize_order(order: dict) -> dict:
    db = database.get_db()
    out = database.doc_to_dict(order)
    product = db["product"].find_one({"_id": order["product_id"]})
    out["product"] = database.doc_to_dict(product) if product else None
    out["user"] = _public_user(db["user"].find_one({"_id": order["user_id"]}))
    return out


# --------------- Orders ---------------------------------------------------

def place_order(actor: Identity, product_id: str, quantity: int) -> dict:
    if quantity < 1:
        raise InvalidQuantity()
    user_id = _actor_id(actor)
    product = _find(_products(), product_id, "Product")

    before = _take_stock(product["_id"], quantity)
    if before is None:
        raise InsufficientStock()

    order = Order(
        user_id=user_id,
        product_id=product["_id"],
        quantity=quantity,
        total=calculate_total(before["price"], quantity),
    )
    try:
        order_id = database.create_document("order", order)
    except Exception:
        logger.exception("Order insert failed, returning %d units to product %s", quantity, product["_id"])
        _return_stock(product["_id"], quantity)
        raise

    logger.info("Order %s placed by %s: %d x %s", order_id, actor.email, quantity, product["_id"])
    return serialize_order(_orders().find_one({"_id": database.to_object_id(order_id)}))


def update_order_quantity(actor: Identity, order_id: str, new_quantity: int) -> dict:
    order = _find(_orders(), order_id, "Order")
    if not _is_owner(actor, order):
        raise Forbidden("Only the customer who placed the order can change its quantity")
    if order["status"] != "PENDING":
        raise InvalidState("Quantity can only be changed on pending orders")
    if new_quantity < 1:
        raise InvalidQuantity()

    product = _find(_products(), order["product_id"], "Product")
    delta = new_quantity - order["quantity"]
    if delta > 0:
        if _take_stock(product["_id"], delta) is None:
            raise InsufficientStock()
    elif delta < 0:
        _return_stock(product["_id"], -delta)

    result = _orders().update_one(
        {"_id": order["_id"], "status": "PENDING", "quantity": order["quantity"]},
        {"$set": {
            "quantity": new_quantity,
            "total": calculate_total(product["price"], new_quantity),
            "updated_at": _now(),
        }},
    )
    if result.matched_count == 0:
        # someone else changed the order first; put the stock back
        if delta > 0:
            _return_stock(product["_id"], delta)
        elif delta < 0 and _take_stock(product["_id"], -delta) is None:
            logger.warning("Could not take back %d units of product %s after a failed update of order %s; stock is now too high",
                           -delta, product["_id"], order["_id"])
        raise InvalidState("Order was modified concurrently")

    logger.info("Order %s quantity %d -> %d (stock delta %d)", order["_id"], order["quantity"], new_quantity, -delta)
    return serialize_order(_orders().find_one({"_id": order["_id"]}))


def update_order_status(actor: Identity, order_id: str, new_status: str) -> dict:
    order = _find(_orders(), order_id, "Order")
    if not is_privileged(actor):
        raise Forbidden("Only administrators can change order status")
    if new_status not in ORDER_STATUSES:
        raise ValidationError("Invalid status")
    if new_status not in STATUS_TRANSITIONS[order["status"]]:
        raise InvalidState(f"Cannot move order from {order['status']} to {new_status}")

    _orders().update_one({"_id": order["_id"]}, {"$set": {"status": new_status, "updated_at": _now()}})
    logger.info("Order %s status %s -> %s by %s", order["_id"], order["status"], new_status, actor.email)
    return serialize_order(_orders().find_one({"_id": order["_id"]}))


def delete_order(actor: Identity, order_id: str) -> None:
    """Delete an order and give its quantity back to the product.

    Stock is restored for every deleted order regardless of status, so an
    admin deleting a shipped or delivered order puts units back that have
    already left the warehouse.
    """
    order = _find(_orders(), order_id, "Order")
    admin = is_privileged(actor)
    if not admin and not _is_owner(actor, order):
        raise Forbidden("You cannot delete this order")
    if not admin and order["status"] != "PENDING":
        raise InvalidState("Only pending orders can be deleted")

    query = {"_id": order["_id"]}
    if not admin:
        query["status"] = "PENDING"
    deleted = _orders().find_one_and_delete(query)
    if deleted is None:
        raise InvalidState("Order was modified concurrently")

    if not _return_stock(deleted["product_id"], deleted["quantity"]):
        logger.warning("Product %s of deleted order %s no longer exists", deleted["product_id"], deleted["_id"])
    logger.info("Order %s deleted by %s, %d units restocked", deleted["_id"], actor.email, deleted["quantity"])


def get_order(actor: Identity, order_id: str) -> dict:
    order = _find(_orders(), order_id, "Order")
    if not is_privileged(actor) and not _is_owner(actor, order):
        raise Forbidden("You cannot view this order")
    return serialize_order(order)


def list_orders(actor: Identity) -> list:
    query = {} if is_privileged(actor) else {"user_id": _actor_id(actor)}
    return [serialize_order(o) for o in database.get_documents("order", query)]


# --------------- Products -------------------------------------------------

def list_products(search: Optional[str] = None) -> list:
    query = {}
    if search:
        pattern = re.escape(search)
        query = {"$or": [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]}
    return [database.doc_to_dict(p) for p in database.get_documents("product", query)]


def get_product(product_id: str) -> dict:
    return database.doc_to_dict(_find(_products(), product_id, "Product"))


def create_product(**fields) -> dict:
    try:
        product = Product(**fields)
    except pydantic.ValidationError as e:
        raise ValidationError(str(e.errors()[0]["msg"]))
    product_id = database.create_document("product", product)
    logger.info("Product %s created: %s", product_id, product.name)
    return get_product(product_id)


def update_product(product_id: str, changes: dict) -> dict:
    """Apply only the fields present in `changes`."""
    product = _find(_products(), product_id, "Product")
    changes = {k: v for k, v in changes.items() if k in PRODUCT_FIELDS}
    try:
        validated = Product(**{**{k: product.get(k) for k in PRODUCT_FIELDS if k in product}, **changes})
    except pydantic.ValidationError as e:
        raise ValidationError(str(e.errors()[0]["msg"]))
    changes = {k: getattr(validated, k) for k in changes}
    if changes:
        _products().update_one({"_id": product["_id"]}, {"$set": {**changes, "updated_at": _now()}})
        logger.info("Product %s updated: %s", product["_id"], ", ".join(sorted(changes)))
    return get_product(product_id)


def delete_product(product_id: str) -> None:
    product = _find(_products(), product_id, "Product")
    _products().delete_one({"_id": product["_id"]})
    removed = _orders().delete_many({"product_id": product["_id"]}).deleted_count
    logger.info("Product %s deleted along with %d orders", product["_id"], removed)
