"""
FIFO BATCH MODEL TESTS
Tests for the batch lifecycle methods on the Product entity.

This test module covers:
- FIFO ordering (soonest expiry first, undated batches last)
- Greedy deduction and depleted batches
- All-or-nothing behaviour when stock is short
- Expired batches being skipped and written off
- Untracked stock covering the shortfall after batches
- Batch number and product code generation
"""

from datetime import datetime

import pytest

from app import (
    BATCH_ACTIVE,
    BATCH_DEPLETED,
    BATCH_EXPIRED,
    InsufficientStockError,
    Product,
    ValidationError,
    create_app,
    db,
    generate_batch_number,
    generate_product_code,
)

NOW = datetime(2026, 1, 15, 12, 0)


@pytest.fixture
def app():
    """
    Create test Flask application with in-memory database.
    """
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SECRET_KEY': 'test-secret',
    })

    with app.app_context():
        db.create_all()
        yield app


@pytest.fixture
def product(app):
    """Chicken with three batches: A (exp 1 Mar), B (exp 1 Feb), C (no expiry)."""
    p = Product(name='Chicken Breast', category='chicken', price=10.0, cost_price=6.0, unit='kg', stock=0)
    db.session.add(p)
    p.add_batch(5, batch_number='A', received_date=datetime(2026, 1, 1), expiry_date=datetime(2026, 3, 1),
                unit_cost=6.0)
    p.add_batch(4, batch_number='B', received_date=datetime(2026, 1, 5), expiry_date=datetime(2026, 2, 1),
                unit_cost=5.0)
    p.add_batch(10, batch_number='C', received_date=datetime(2025, 12, 20), unit_cost=4.0)
    db.session.commit()
    return p


def _batch(product, number):
    return next(b for b in product.batches if b.batch_number == number)


def test_add_batch_increases_stock_and_sets_first_stock_date(product):
    assert product.stock == 19
    assert product.first_stock_date == datetime(2026, 1, 1)
    a = _batch(product, 'A')
    assert a.status == BATCH_ACTIVE
    assert a.remaining_quantity == a.quantity == 5


def test_add_batch_rejects_non_positive_quantity(product):
    with pytest.raises(ValidationError):
        product.add_batch(0)
    assert product.stock == 19


def test_add_batch_rejects_expiry_before_receipt(product):
    with pytest.raises(ValidationError):
        product.add_batch(3, received_date=datetime(2026, 1, 10), expiry_date=datetime(2026, 1, 9))


def test_fifo_order_is_expiry_then_received_with_undated_last(product):
    order = [b.batch_number for b in product.fifo_batches(NOW)]
    assert order == ['B', 'A', 'C']


def test_same_expiry_falls_back_to_received_date(product):
    product.add_batch(2, batch_number='B-early', received_date=datetime(2026, 1, 2),
                      expiry_date=datetime(2026, 2, 1))
    order = [b.batch_number for b in product.fifo_batches(NOW)]
    assert order == ['B-early', 'B', 'A', 'C']


def test_deduct_consumes_oldest_first_and_marks_depleted(product):
    allocations = product.deduct_stock(6, now=NOW)

    assert [(a['batch_number'], a['quantity']) for a in allocations] == [('B', 4), ('A', 2)]
    assert _batch(product, 'B').remaining_quantity == 0
    assert _batch(product, 'B').status == BATCH_DEPLETED
    assert _batch(product, 'A').remaining_quantity == 3
    assert _batch(product, 'A').status == BATCH_ACTIVE
    assert product.stock == 13


def test_depleted_batches_are_not_consumed_again(product):
    product.deduct_stock(4, now=NOW)
    allocations = product.deduct_stock(1, now=NOW)
    assert allocations[0]['batch_number'] == 'A'


def test_deduct_more_than_stock_changes_nothing(product):
    with pytest.raises(InsufficientStockError):
        product.deduct_stock(20, now=NOW)

    assert product.stock == 19
    assert [b.remaining_quantity for b in product.fifo_batches(NOW)] == [4, 5, 10]


def test_deduct_rejects_non_positive_quantity(product):
    with pytest.raises(ValidationError):
        product.deduct_stock(0, now=NOW)


def test_expired_batches_are_skipped(product):
    product.add_batch(3, batch_number='D', received_date=datetime(2025, 11, 1), expiry_date=datetime(2026, 1, 10))
    assert product.stock == 22
    assert product.sellable_stock(NOW) == 19

    allocations = product.deduct_stock(5, now=NOW)
    assert 'D' not in [a['batch_number'] for a in allocations]
    assert _batch(product, 'D').remaining_quantity == 3

    # Units locked in the expired batch cannot be sold
    with pytest.raises(InsufficientStockError):
        product.deduct_stock(17, now=NOW)


def test_expire_batches_writes_off_remaining(product):
    product.add_batch(3, batch_number='D', received_date=datetime(2025, 11, 1), expiry_date=datetime(2026, 1, 10))

    expired = product.expire_batches(NOW)

    assert [b.batch_number for b in expired] == ['D']
    assert _batch(product, 'D').status == BATCH_EXPIRED
    assert _batch(product, 'D').remaining_quantity == 3
    assert product.stock == 19
    assert product.expire_batches(NOW) == []


def test_untracked_stock_covers_shortfall_after_batches(app):
    p = Product(name='Legacy Beef', category='beef', price=12.0, unit='kg', stock=5)
    db.session.add(p)
    p.add_batch(3, batch_number='L1', received_date=datetime(2026, 1, 1), unit_cost=7.0)
    assert p.stock == 8
    assert p.untracked_stock() == 5

    allocations = p.deduct_stock(6, now=NOW)

    assert allocations[0] == {'batch_number': 'L1', 'quantity': 3, 'unit_cost': 7.0, 'expiry_date': None}
    assert allocations[1]['batch_number'] is None
    assert allocations[1]['quantity'] == 3
    assert allocations[1]['unit_cost'] == 12.0
    assert p.stock == 2


def test_stock_status_and_near_expiry(product):
    product.min_stock = 10
    assert product.stock_status == 'good'
    assert product.is_near_expiry(NOW) is False
    assert product.is_near_expiry(datetime(2026, 1, 28)) is True

    product.deduct_stock(12, now=NOW)
    assert product.stock == 7
    assert product.stock_status == 'low'
    assert product.is_low_stock


def test_is_expired_only_counts_batches_with_stock(product):
    assert product.is_expired(datetime(2026, 2, 2)) is True
    product.deduct_stock(4, now=NOW)
    # B is depleted, A still valid on 2 Feb
    assert product.is_expired(datetime(2026, 2, 2)) is False


def test_inventory_value_uses_batch_costs(product):
    # A 5 x 6.0 + B 4 x 5.0 + C 10 x 4.0
    assert product.inventory_value() == pytest.approx(90.0)
    product.deduct_stock(4, now=NOW)
    assert product.inventory_value() == pytest.approx(70.0)


def test_update_batch_quantity_moves_stock(product):
    a = _batch(product, 'A')
    product.deduct_stock(7, now=NOW)  # B 4, A 3
    assert a.remaining_quantity == 2

    with pytest.raises(ValidationError):
        product.update_batch(a, quantity=2)

    product.update_batch(a, quantity=8)
    assert a.remaining_quantity == 5
    assert product.stock == 15


def test_remove_batch_takes_unsold_units_out_of_stock(product):
    product.remove_batch(_batch(product, 'C'))
    db.session.commit()
    assert product.stock == 9
    assert [b.batch_number for b in product.batches] == ['A', 'B']


def test_generate_batch_number_is_sequential_per_day(app):
    p = Product(name='Prawns', category='seafood', price=20.0, unit='kg', stock=0)
    db.session.add(p)
    day = datetime(2026, 2, 3, 9, 30)
    first = p.add_batch(2, received_date=day)
    second = p.add_batch(2, received_date=day)

    assert first.batch_number == 'BATCH-20260203-00001'
    assert second.batch_number == 'BATCH-20260203-00002'
    assert generate_batch_number(datetime(2026, 2, 4)) == 'BATCH-20260204-00001'


def test_generate_product_code(app):
    assert generate_product_code() == 'P01'
    db.session.add(Product(code='P09', name='Milk', category='dairy', price=1.0, unit='box'))
    db.session.commit()
    assert generate_product_code() == 'P10'
    db.session.add(Product(code='P99', name='Cheese', category='dairy', price=1.0, unit='box'))
    db.session.commit()
    assert generate_product_code() == 'P100'
