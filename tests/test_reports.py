from datetime import timedelta

import pytest

from app import Product, User, create_app, db, utcnow


@pytest.fixture
def app():
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SECRET_KEY': 'test-secret',
    })
    with app.app_context():
        db.create_all()
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def staff_client(client):
    with client.application.app_context():
        user = User(username='analyst', role='staff')
        user.set_password('pw')
        db.session.add(user)
        db.session.commit()
    client.post('/login', json={'username': 'analyst', 'password': 'pw'})
    return client


@pytest.fixture
def stocked(staff_client):
    """Chicken with two costed batches, an empty seafood product and expiring dairy."""
    now = utcnow()
    with staff_client.application.app_context():
        chicken = Product(name='Chicken Wings', category='chicken', price=8.0, unit='kg', stock=0, min_stock=2)
        prawns = Product(name='Prawns', category='seafood', price=30.0, unit='kg', stock=0, min_stock=2)
        cheese = Product(name='Cheddar', category='dairy', price=6.0, unit='pack', stock=0, min_stock=5)
        db.session.add_all([chicken, prawns, cheese])
        chicken.add_batch(5, batch_number='CH-1', received_date=now - timedelta(days=5),
                          expiry_date=now + timedelta(days=40), unit_cost=3.0)
        chicken.add_batch(5, batch_number='CH-2', received_date=now - timedelta(days=1),
                          expiry_date=now + timedelta(days=80), unit_cost=4.0)
        cheese.add_batch(3, batch_number='CD-1', received_date=now - timedelta(days=2),
                         expiry_date=now + timedelta(days=10), unit_cost=2.0)
        db.session.commit()
        return chicken.id


def test_reports_require_login(client):
    assert client.get('/api/reports/summary').status_code == 401
    assert client.get('/api/reports/inventory').status_code == 401


def test_reports_are_staff_only(client):
    client.post('/signup', json={'username': 'shopper', 'password': 'pw'})
    client.post('/login', json={'username': 'shopper', 'password': 'pw'})
    assert client.get('/api/reports/summary').status_code == 403


def test_summary_on_empty_database(staff_client):
    data = staff_client.get('/api/reports/summary').get_json()['data']
    assert data['total_sales_txns'] == 0
    assert data['total_sales_amount'] == 0
    assert data['gross_profit'] == 0
    assert data['total_restock_txns'] == 0


def test_summary_uses_fifo_cost_of_goods(staff_client, stocked):
    staff_client.post('/api/sales', json={'product_id': stocked, 'quantity': 7, 'price': 10})

    data = staff_client.get('/api/reports/summary').get_json()['data']
    assert data['total_sales_txns'] == 1
    assert data['total_sales_qty'] == 7
    assert data['total_sales_amount'] == 70.0
    # 5 units from CH-1 at 3.0, 2 from CH-2 at 4.0
    assert data['cost_of_goods_sold'] == 23.0
    assert data['gross_profit'] == 47.0
    assert data['total_restock_txns'] == 3
    assert data['total_restock_qty'] == 13
    assert data['total_restock_cost'] == 5 * 3.0 + 5 * 4.0 + 3 * 2.0


def test_inventory_report_by_category(staff_client, stocked):
    data = staff_client.get('/api/reports/inventory').get_json()['data']
    assert data['total_products'] == 3
    assert data['out_of_stock_items'] == 1
    assert data['low_stock_items'] == 1
    assert data['expiring_items'] == 1
    assert data['total_value'] == 35.0 + 6.0
    assert data['by_category']['chicken'] == {'count': 1, 'total_stock': 10, 'total_value': 35.0}
    assert data['by_category']['seafood']['total_stock'] == 0


def test_inventory_report_category_filter(staff_client, stocked):
    data = staff_client.get('/api/reports/inventory?category=Dairy').get_json()['data']
    assert data['total_products'] == 1
    assert list(data['by_category']) == ['dairy']
