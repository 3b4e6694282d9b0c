"""
EXPIRY TESTS
Tests for batch expiry monitoring, write-offs and expiry discounts.

Scenario used throughout (relative to now):
- STALE: expired yesterday, 4 units
- SOON: expires in 5 days, 3 units
- LATER: expires in 20 days, 6 units
- FAR: expires in 90 days, 2 units
"""

from datetime import timedelta

import pytest

from app import (
    InventoryLog,
    Product,
    ProductBatch,
    Promotion,
    User,
    create_app,
    db,
    expiry_discount_percentage,
    utcnow,
)


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
    client = app.test_client()
    with app.app_context():
        user = User(username='qa', role='admin')
        user.set_password('pw')
        db.session.add(user)
        db.session.commit()
    client.post('/login', json={'username': 'qa', 'password': 'pw'})
    return client


@pytest.fixture
def product_ids(client):
    now = utcnow()
    with client.application.app_context():
        milk = Product(name='Milk', category='dairy', price=3.0, cost_price=1.0, unit='box', stock=0)
        fish = Product(name='Cod', category='seafood', price=15.0, cost_price=9.0, unit='kg', stock=0)
        db.session.add_all([milk, fish])
        milk.add_batch(4, batch_number='STALE', received_date=now - timedelta(days=30),
                       expiry_date=now - timedelta(days=1))
        milk.add_batch(3, batch_number='SOON', received_date=now - timedelta(days=3),
                       expiry_date=now + timedelta(days=5))
        fish.add_batch(6, batch_number='LATER', received_date=now - timedelta(days=1),
                       expiry_date=now + timedelta(days=20))
        fish.add_batch(2, batch_number='FAR', received_date=now - timedelta(days=1),
                       expiry_date=now + timedelta(days=90))
        db.session.commit()
        return milk.id, fish.id


@pytest.mark.parametrize('days, percentage', [(1, 50), (7, 50), (8, 40), (14, 40), (15, 30), (30, 30)])
def test_expiry_discount_tiers(days, percentage):
    assert expiry_discount_percentage(days) == percentage


def test_check_marks_expired_and_writes_off_stock(client, product_ids):
    milk_id, _ = product_ids
    resp = client.post('/api/expiry/check')
    body = resp.get_json()
    assert body['data']['expired_count'] == 1
    assert body['data']['expiring_count'] == 1
    assert body['message'] == '1 batches marked as expired'

    with client.application.app_context():
        stale = ProductBatch.query.filter_by(batch_number='STALE').one()
        assert stale.status == 'expired'
        assert db.session.get(Product, milk_id).stock == 3
        log = InventoryLog.query.filter_by(action='expired').one()
        assert (log.previous_stock, log.new_stock, log.quantity) == (7, 3, 4)

    # Running again changes nothing
    assert client.post('/api/expiry/check').get_json()['data']['expired_count'] == 0


def test_dashboard_counts(client, product_ids):
    data = client.get('/api/expiry/dashboard').get_json()['data']
    assert data['critical'] == 1
    assert data['warning'] == 2
    assert data['expired'] == 1
    assert data['critical_products'][0]['product']['name'] == 'Milk'
    assert data['critical_products'][0]['days_to_expiry'] == 5
    assert [p['product']['name'] for p in data['warning_products']] == ['Milk', 'Cod']


def test_expiring_products_respects_days(client, product_ids):
    resp = client.get('/api/expiry/products?days=10')
    assert resp.get_json()['results'] == 1
    resp = client.get('/api/expiry/products?days=100')
    products = resp.get_json()['data']
    assert resp.get_json()['results'] == 2
    cod = products[1]
    assert cod['nearest_expiry']['batch_number'] == 'LATER'
    assert [b['batch_number'] for b in cod['expiring_batches']] == ['LATER', 'FAR']


def test_batch_report_buckets(client, product_ids):
    report = client.get('/api/expiry/report').get_json()['data']
    assert [b['batch_number'] for b in report['expired']] == ['STALE']
    assert [b['batch_number'] for b in report['critical']] == ['SOON']
    assert [b['batch_number'] for b in report['warning']] == ['LATER']
    assert report['summary'] == {
        'total_expired': 1,
        'total_critical': 1,
        'total_warning': 1,
        'total_value': 4 * 1.0 + 3 * 1.0 + 6 * 9.0,
    }


def test_apply_discounts_once_per_product(client, product_ids):
    milk_id, fish_id = product_ids
    resp = client.post('/api/expiry/apply-discounts')
    body = resp.get_json()
    assert body['message'] == 'Applied 2 expiry discounts'

    with client.application.app_context():
        milk_promo = Promotion.query.filter_by(product_id=milk_id).one()
        assert milk_promo.discount_percentage == 50
        assert milk_promo.name == 'Expiry Sale - Milk'
        assert Promotion.query.filter_by(product_id=fish_id).one().discount_percentage == 30

    resp = client.post('/api/expiry/apply-discounts')
    assert resp.get_json()['data']['discounts_applied'] == 0


def test_cleanup_removes_expired_batches(client, product_ids):
    milk_id, _ = product_ids
    resp = client.post('/api/expiry/cleanup')
    assert resp.get_json()['message'] == 'Cleaned up 1 expired batches'
    assert resp.get_json()['data']['units_removed'] == 4

    with client.application.app_context():
        milk = db.session.get(Product, milk_id)
        assert [b.batch_number for b in milk.batches] == ['SOON']
        assert milk.stock == 3


def test_check_expiry_command(app, product_ids):
    runner = app.test_cli_runner()
    result = runner.invoke(args=['check-expiry'])
    assert result.exit_code == 0
    assert '1 batches marked as expired' in result.output
    assert '2 expiry discounts applied' in result.output


def test_expiry_endpoints_are_staff_only(app):
    client = app.test_client()
    client.post('/signup', json={'username': 'c', 'password': 'pw'})
    client.post('/login', json={'username': 'c', 'password': 'pw'})
    assert client.post('/api/expiry/check').status_code == 403


def test_promotions_can_be_listed_and_switched_off(client, product_ids):
    milk_id, fish_id = product_ids
    client.post('/api/expiry/apply-discounts')

    resp = client.get('/api/promotions?type=expiry_discount&active=true')
    promotions = resp.get_json()['data']
    assert resp.get_json()['results'] == 2
    milk_promo = next(p for p in promotions if p['product_id'] == milk_id)
    assert milk_promo['product_name'] == 'Milk'
    assert milk_promo['is_running'] is True

    detail = client.get(f'/api/products/{milk_id}').get_json()['data']
    assert detail['expiry_discount']['discount_percentage'] == 50
    assert detail['expiry_discount']['discounted_price'] == 1.5

    resp = client.put(f"/api/promotions/{milk_promo['id']}", json={'is_active': False})
    assert resp.get_json()['message'] == 'Promotion updated successfully'
    assert resp.get_json()['data']['is_active'] is False
    assert client.get(f'/api/products/{milk_id}').get_json()['data']['expiry_discount'] is None
    assert client.get('/api/promotions?active=false').get_json()['results'] == 1
    assert client.get(f'/api/promotions?product_id={fish_id}').get_json()['results'] == 1

    # A switched-off discount no longer blocks a fresh one
    assert client.post('/api/expiry/apply-discounts').get_json()['data']['discounts_applied'] == 1


def test_promotion_toggle_and_lookup(client, product_ids):
    client.post('/api/expiry/apply-discounts')
    promo_id = client.get('/api/promotions').get_json()['data'][0]['id']

    assert client.put(f'/api/promotions/{promo_id}', json={}).get_json()['data']['is_active'] is False
    assert client.put(f'/api/promotions/{promo_id}', json={}).get_json()['data']['is_active'] is True
    assert client.get(f'/api/promotions/{promo_id}').get_json()['data']['id'] == promo_id
    assert client.get('/api/promotions/999').status_code == 404
