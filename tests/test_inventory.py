import logging
import threading

import mongomock
import pytest

import database
import inventory
from errors import Forbidden, InsufficientStock, InvalidQuantity, InvalidState, NotFound, ValidationError
from schemas import ORDER_STATUSES
from tests.conftest import stock_of


def _order_doc(db, order):
    return db["order"].find_one({"_id": database.to_object_id(order["id"])})


# --------------- place_order ----------------------------------------------

def test_place_order_reserves_stock(customer, product):
    order = inventory.place_order(customer, product["id"], 3)
    assert order["status"] == "PENDING"
    assert order["quantity"] == 3
    assert order["total"] == 15.0
    assert order["user_id"] == customer.id
    assert order["product"]["id"] == product["id"]
    assert "password" not in order["user"]
    assert stock_of(product["id"]) == 7


def test_place_order_insufficient_stock_leaves_stock(customer, product):
    with pytest.raises(InsufficientStock):
        inventory.place_order(customer, product["id"], 11)
    assert stock_of(product["id"]) == 10


def test_place_order_unknown_product(customer):
    with pytest.raises(NotFound):
        inventory.place_order(customer, "65f000000000000000000000", 1)
    with pytest.raises(NotFound):
        inventory.place_order(customer, "garbage", 1)


def test_place_order_rejects_non_positive_quantity(customer, product):
    with pytest.raises(InvalidQuantity):
        inventory.place_order(customer, product["id"], 0)
    assert stock_of(product["id"]) == 10


def test_place_order_can_take_all_stock(customer, product):
    inventory.place_order(customer, product["id"], 10)
    assert stock_of(product["id"]) == 0
    with pytest.raises(InsufficientStock):
        inventory.place_order(customer, product["id"], 1)


def test_second_order_cannot_oversell(customer, other_customer, product):
    # Stock is checked and taken in one conditional update, so of two orders
    # for 6 against a stock of 10 at most one goes through.
    inventory.place_order(customer, product["id"], 6)
    with pytest.raises(InsufficientStock):
        inventory.place_order(other_customer, product["id"], 6)
    assert stock_of(product["id"]) == 4


def test_stale_read_cannot_oversell(customer, other_customer, product):
    seen = inventory.get_product(product["id"])
    assert seen["stock"] >= 6
    inventory.place_order(other_customer, product["id"], 6)
    # a caller acting on the stale read still gets refused
    with pytest.raises(InsufficientStock):
        inventory.place_order(customer, product["id"], 6)
    assert stock_of(product["id"]) == 4


def test_failed_order_insert_returns_stock(monkeypatch, customer, product):
    def boom(collection_name, data):
        raise RuntimeError("insert failed")

    monkeypatch.setattr(database, "create_document", boom)
    with pytest.raises(RuntimeError):
        inventory.place_order(customer, product["id"], 4)
    assert stock_of(product["id"]) == 10


# --------------- update_order_quantity -----------------------------------

def test_scenario_quantity_edit_then_cancel(customer, admin, product):
    order = inventory.place_order(customer, product["id"], 3)
    assert order["total"] == 15.0
    assert stock_of(product["id"]) == 7

    order = inventory.update_order_quantity(customer, order["id"], 5)
    assert order["quantity"] == 5
    assert order["total"] == 25.0
    assert stock_of(product["id"]) == 5

    # cancelling through a status change does not restock; only delete does
    order = inventory.update_order_status(admin, order["id"], "CANCELLED")
    assert order["status"] == "CANCELLED"
    assert stock_of(product["id"]) == 5


def test_lowering_quantity_returns_stock(customer, product):
    order = inventory.place_order(customer, product["id"], 5)
    order = inventory.update_order_quantity(customer, order["id"], 2)
    assert order["total"] == 10.0
    assert stock_of(product["id"]) == 8


def test_same_quantity_is_a_no_op_on_stock(customer, product):
    order = inventory.place_order(customer, product["id"], 4)
    inventory.update_order_quantity(customer, order["id"], 4)
    assert stock_of(product["id"]) == 6


def test_total_uses_current_price(customer, product):
    order = inventory.place_order(customer, product["id"], 2)
    inventory.update_product(product["id"], {"price": 7.5})
    order = inventory.update_order_quantity(customer, order["id"], 3)
    assert order["total"] == 22.5


def test_quantity_increase_needs_stock(customer, product):
    order = inventory.place_order(customer, product["id"], 3)
    with pytest.raises(InsufficientStock):
        inventory.update_order_quantity(customer, order["id"], 11)
    assert stock_of(product["id"]) == 7
    order = inventory.update_order_quantity(customer, order["id"], 10)
    assert stock_of(product["id"]) == 0


def test_quantity_edit_on_non_pending_order(db, customer, admin, product):
    order = inventory.place_order(customer, product["id"], 3)
    for status in ORDER_STATUSES:
        if status == "PENDING":
            continue
        inventory.update_order_status(admin, order["id"], status)
        before = _order_doc(db, order)
        with pytest.raises(InvalidState):
            inventory.update_order_quantity(customer, order["id"], 1)
        after = _order_doc(db, order)
        assert (after["quantity"], after["total"]) == (before["quantity"], before["total"])
        assert stock_of(product["id"]) == 7


def test_quantity_edit_requires_owner(customer, other_customer, admin, product):
    order = inventory.place_order(customer, product["id"], 3)
    with pytest.raises(Forbidden):
        inventory.update_order_quantity(other_customer, order["id"], 1)
    with pytest.raises(Forbidden):
        inventory.update_order_quantity(admin, order["id"], 1)
    assert stock_of(product["id"]) == 7


def test_quantity_must_be_positive(customer, product):
    order = inventory.place_order(customer, product["id"], 3)
    with pytest.raises(InvalidQuantity):
        inventory.update_order_quantity(customer, order["id"], 0)
    assert stock_of(product["id"]) == 7


# --------------- update_order_status -------------------------------------

def test_status_change_is_admin_only(customer, product):
    order = inventory.place_order(customer, product["id"], 1)
    with pytest.raises(Forbidden):
        inventory.update_order_status(customer, order["id"], "SHIPPED")


def test_status_must_be_known(admin, customer, product):
    order = inventory.place_order(customer, product["id"], 1)
    with pytest.raises(ValidationError):
        inventory.update_order_status(admin, order["id"], "LOST")


def test_status_can_move_backwards(admin, customer, product):
    order = inventory.place_order(customer, product["id"], 1)
    inventory.update_order_status(admin, order["id"], "DELIVERED")
    order = inventory.update_order_status(admin, order["id"], "PENDING")
    assert order["status"] == "PENDING"
    assert stock_of(product["id"]) == 9


def test_transition_table_has_no_guards():
    for source in ORDER_STATUSES:
        assert inventory.STATUS_TRANSITIONS[source] == frozenset(ORDER_STATUSES)


# --------------- delete_order --------------------------------------------

def test_create_then_delete_restores_stock(customer, product):
    order = inventory.place_order(customer, product["id"], 4)
    inventory.delete_order(customer, order["id"])
    assert stock_of(product["id"]) == 10
    with pytest.raises(NotFound):
        inventory.get_order(customer, order["id"])


def test_admin_delete_restocks_any_status(admin, customer, product):
    order = inventory.place_order(customer, product["id"], 4)
    inventory.update_order_status(admin, order["id"], "DELIVERED")
    inventory.delete_order(admin, order["id"])
    # delivered units are counted back in as well
    assert stock_of(product["id"]) == 10


def test_delete_after_cancel_restocks_exactly_once(admin, customer, product):
    order = inventory.place_order(customer, product["id"], 4)
    inventory.update_order_status(admin, order["id"], "CANCELLED")
    inventory.delete_order(admin, order["id"])
    assert stock_of(product["id"]) == 10


def test_owner_cannot_delete_processed_order(admin, customer, product):
    order = inventory.place_order(customer, product["id"], 2)
    inventory.update_order_status(admin, order["id"], "PROCESSING")
    with pytest.raises(InvalidState):
        inventory.delete_order(customer, order["id"])
    assert stock_of(product["id"]) == 8


def test_stranger_cannot_delete_order(customer, other_customer, product):
    order = inventory.place_order(customer, product["id"], 2)
    with pytest.raises(Forbidden):
        inventory.delete_order(other_customer, order["id"])
    assert stock_of(product["id"]) == 8


def test_delete_order_of_deleted_product(admin, customer, product, db):
    order = inventory.place_order(customer, product["id"], 2)
    db["product"].delete_one({"_id": database.to_object_id(product["id"])})
    inventory.delete_order(admin, order["id"])
    assert db["order"].count_documents({}) == 0


# --------------- visibility ----------------------------------------------

def test_list_orders_scoped_to_owner(admin, customer, other_customer, product):
    inventory.place_order(customer, product["id"], 1)
    inventory.place_order(other_customer, product["id"], 2)
    assert [o["quantity"] for o in inventory.list_orders(customer)] == [1]
    assert len(inventory.list_orders(admin)) == 2


def test_get_order_permissions(admin, customer, other_customer, product):
    order = inventory.place_order(customer, product["id"], 1)
    assert inventory.get_order(customer, order["id"])["id"] == order["id"]
    assert inventory.get_order(admin, order["id"])["id"] == order["id"]
    with pytest.raises(Forbidden):
        inventory.get_order(other_customer, order["id"])


# --------------- products ------------------------------------------------

def test_create_product_validates():
    with pytest.raises(ValidationError):
        inventory.create_product(name="Bad", price=-1, stock=1)
    with pytest.raises(ValidationError):
        inventory.create_product(name="Bad", price=1, stock=-1)


def test_update_product_is_partial(product):
    updated = inventory.update_product(product["id"], {"stock": 3})
    assert updated["stock"] == 3
    assert updated["name"] == "Widget"
    assert updated["price"] == 5.0
    assert updated["description"] == "A widget"


def test_update_product_rejects_negative_values(product):
    with pytest.raises(ValidationError):
        inventory.update_product(product["id"], {"price": -0.01})
    with pytest.raises(ValidationError):
        inventory.update_product(product["id"], {"stock": -1})
    assert stock_of(product["id"]) == 10


def test_delete_product_removes_its_orders(db, customer, product):
    inventory.place_order(customer, product["id"], 1)
    inventory.delete_product(product["id"])
    with pytest.raises(NotFound):
        inventory.get_product(product["id"])
    assert db["order"].count_documents({}) == 0


def test_search_products(product):
    inventory.create_product(name="Gadget", description="Shiny", price=1, stock=1)
    assert [p["name"] for p in inventory.list_products("widg")] == ["Widget"]
    assert [p["name"] for p in inventory.list_products("SHINY")] == ["Gadget"]
    assert len(inventory.list_products()) == 2


def test_stock_never_negative(customer, other_customer, admin, product):
    a = inventory.place_order(customer, product["id"], 4)
    b = inventory.place_order(other_customer, product["id"], 5)
    with pytest.raises(InsufficientStock):
        inventory.update_order_quantity(customer, a["id"], 6)
    inventory.update_order_quantity(customer, a["id"], 5)
    inventory.update_order_status(admin, b["id"], "SHIPPED")
    with pytest.raises(InsufficientStock):
        inventory.place_order(customer, product["id"], 1)
    assert stock_of(product["id"]) == 0


def test_update_product_stores_coerced_values(db, product):
    inventory.update_product(product["id"], {"price": "7.5", "stock": "3"})
    stored = db["product"].find_one({"_id": database.to_object_id(product["id"])})
    assert stored["price"] == 7.5 and isinstance(stored["price"], float)
    assert stored["stock"] == 3 and isinstance(stored["stock"], int)


def test_failed_rollback_is_logged(monkeypatch, caplog, db, customer, product):
    order = inventory.place_order(customer, product["id"], 5)
    oid = database.to_object_id(order["id"])
    return_stock = inventory._return_stock

    def return_then_interfere(product_id, quantity):
        # another request ships the order and sells out the product meanwhile
        returned = return_stock(product_id, quantity)
        db["order"].update_one({"_id": oid}, {"$set": {"status": "SHIPPED"}})
        db["product"].update_one({"_id": product_id}, {"$set": {"stock": 0}})
        return returned

    monkeypatch.setattr(inventory, "_return_stock", return_then_interfere)
    with caplog.at_level(logging.WARNING, logger="inventory"):
        with pytest.raises(InvalidState):
            inventory.update_order_quantity(customer, order["id"], 2)
    assert "Could not take back 3 units" in caplog.text
    assert db["order"].find_one({"_id": oid})["quantity"] == 5


def test_concurrent_orders_cannot_oversell(monkeypatch, db, customer, other_customer, product):
    # MongoDB applies find_one_and_update atomically; mongomock reads and
    # writes in two steps, so serialize it the way the server would.
    lock = threading.Lock()
    find_one_and_update = mongomock.Collection.find_one_and_update

    def atomic_find_one_and_update(self, *args, **kwargs):
        with lock:
            return find_one_and_update(self, *args, **kwargs)

    monkeypatch.setattr(mongomock.Collection, "find_one_and_update", atomic_find_one_and_update)

    # both requests see stock 10 before either one takes any
    barrier = threading.Barrier(2, timeout=5)
    find = inventory._find

    def find_then_wait(collection, doc_id, what):
        doc = find(collection, doc_id, what)
        if what == "Product":
            barrier.wait()
        return doc

    monkeypatch.setattr(inventory, "_find", find_then_wait)

    results = []

    def order(actor):
        try:
            inventory.place_order(actor, product["id"], 6)
            results.append("placed")
        except InsufficientStock:
            results.append("insufficient")

    threads = [threading.Thread(target=order, args=(actor,)) for actor in (customer, other_customer)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert sorted(results) == ["insufficient", "placed"]
    assert db["product"].find_one({"_id": database.to_object_id(product["id"])})["stock"] == 4
    assert db["order"].count_documents({}) == 1
