import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from tillpoint.errors import InsufficientStock, NotFoundError, ValidationError
from tillpoint.models import Product
from tillpoint.services.inventory_guard import InventoryGuard


def test_decrement_returns_before_and_after(db_session, make_product):
    p = make_product(stock=10)
    guard = InventoryGuard(db_session)

    change = guard.reserve_and_decrement(p.id, 3)
    db_session.commit()

    assert (change.previous_stock, change.new_stock, change.delta) == (10, 7, -3)
    assert db_session.get(Product, p.id).stock_quantity == 7


def test_decrement_beyond_stock_changes_nothing(db_session, make_product):
    p = make_product(stock=2)
    guard = InventoryGuard(db_session)

    with pytest.raises(InsufficientStock) as exc_info:
        guard.reserve_and_decrement(p.id, 3)

    assert exc_info.value.details == {"product_id": p.id, "requested_quantity": 3, "available_quantity": 2}
    assert guard.available(p.id) == 2


def test_decrement_to_exactly_zero(db_session, make_product):
    p = make_product(stock=4)
    change = InventoryGuard(db_session).reserve_and_decrement(p.id, 4)
    assert change.new_stock == 0


def test_decrement_many_restores_earlier_lines_on_failure(db_session, make_product):
    a = make_product(stock=5)
    b = make_product(stock=1)
    guard = InventoryGuard(db_session)

    with pytest.raises(InsufficientStock):
        guard.decrement_many({a.id: 3, b.id: 2})

    assert guard.available(a.id) == 5
    assert guard.available(b.id) == 1


def test_increment_and_loaded_objects_see_new_value(db_session, make_product):
    p = make_product(stock=1)
    loaded = db_session.get(Product, p.id)
    assert loaded.stock_quantity == 1

    change = InventoryGuard(db_session).increment(p.id, 4)

    assert change.new_stock == 5
    assert loaded.stock_quantity == 5


def test_unknown_product(db_session):
    guard = InventoryGuard(db_session)
    with pytest.raises(NotFoundError):
        guard.increment(404, 1)
    with pytest.raises(NotFoundError):
        guard.reserve_and_decrement(404, 1)


@pytest.mark.parametrize("qty", [0, -1, True, 1.0])
def test_quantity_must_be_positive_integer(db_session, make_product, qty):
    p = make_product(stock=5)
    with pytest.raises(ValidationError):
        InventoryGuard(db_session).reserve_and_decrement(p.id, qty)


def test_database_refuses_negative_stock(db_session, make_product):
    p = make_product(stock=1)
    with pytest.raises(IntegrityError):
        db_session.execute(update(Product).where(Product.id == p.id).values(stock_quantity=-1))
        db_session.flush()
    db_session.rollback()
