# Trading Company Inventory Back-Office
# This file contains the Flask application with models, FIFO batch logic, JSON routes and CLI commands

import csv
import io
import logging
import math
import os
from datetime import datetime, timedelta, timezone
from functools import wraps

import click
from flask import Flask, Response, abort, current_app, g, jsonify, request, session
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import text
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

# Initialize SQLAlchemy database instance
# This will be configured and bound to the Flask app later
db = SQLAlchemy()

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'

# Allowed values for product master data
CATEGORIES = ('chicken', 'beef', 'pork', 'seafood', 'vegetables', 'dairy', 'other')
UNITS = ('kg', 'g', 'lbs', 'piece', 'pack', 'box')

# Account roles; staff roles may touch stock
ROLES = ('admin', 'staff', 'client', 'b2b')
STAFF_ROLES = ('admin', 'staff')

# Batch lifecycle
BATCH_ACTIVE = 'active'
BATCH_DEPLETED = 'depleted'
BATCH_EXPIRED = 'expired'

ADJUSTMENT_TYPES = ('add', 'remove', 'set')
LOG_ACTIONS = ('add', 'remove', 'sale', 'damage', 'expired', 'return', 'adjustment')
REVIEW_STATUSES = ('pending', 'approved', 'rejected')


# ==================== ERRORS ====================

class InventoryError(Exception):
    """Base class for domain errors; carries the HTTP status the API answers with."""

    status_code = 400

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(InventoryError):
    """Raised when request data or an operation argument is invalid."""

    status_code = 400


class InsufficientStockError(InventoryError):
    """Raised when a deduction asks for more than the sellable stock."""

    status_code = 409


# ==================== TIME HELPERS ====================

def utcnow():
    """Naive UTC timestamp; SQLite hands datetimes back without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def days_until(moment, now):
    """Whole days (rounded up) from now until moment; negative once passed."""
    return math.ceil((moment - now).total_seconds() / 86400)


def _iso(value):
    return value.isoformat() if value is not None else None


# ==================== DATABASE MODELS ====================

class User(db.Model):
    """
    User model for authentication and role-based access.
    Stores user credentials with secure password hashing.
    """
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    role = db.Column(db.String(20), nullable=False, default='client')
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def set_password(self, password):
        """Hash and store the user's password using Werkzeug."""
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        """Return True if the provided password matches the stored hash."""
        return check_password_hash(self.password_hash, password)

    @property
    def is_staff(self):
        return self.role in STAFF_ROLES

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'role': self.role,
            'is_active': self.is_active,
            'created_at': _iso(self.created_at),
        }


class Product(db.Model):
    """
    Product entity with its batch collection.

    Stock is held in batches (one per restock). Sales and removals consume
    batches oldest-first: soonest expiry, then earliest arrival. Stock that
    was never batch-tracked (initial legacy quantities, 'set' increases) is
    consumed only after every sellable batch is exhausted.
    """
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(20), unique=True, index=True)  # Auto-generated product code (P01, P02, etc.)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500), nullable=True)
    category = db.Column(db.String(30), nullable=False, default='other', index=True)
    price = db.Column(db.Float, nullable=False, default=0.0)  # Selling price per unit
    cost_price = db.Column(db.Float, nullable=True)  # Default purchase cost for new batches
    unit = db.Column(db.String(10), nullable=False, default='kg')
    stock = db.Column(db.Integer, nullable=False, default=0, index=True)
    min_stock = db.Column(db.Integer, nullable=False, default=10)  # Reorder level
    max_stock = db.Column(db.Integer, nullable=False, default=1000)
    supplier_name = db.Column(db.String(120), nullable=True)
    supplier_contact = db.Column(db.String(120), nullable=True)
    supplier_country = db.Column(db.String(80), nullable=True)
    storage_location = db.Column(db.String(120), nullable=True)
    storage_temperature = db.Column(db.Float, nullable=True, default=-18.0)  # Celsius
    shelf_life_days = db.Column(db.Integer, nullable=True, default=365)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    rating_average = db.Column(db.Float, nullable=False, default=0.0)  # Cached from approved reviews
    rating_count = db.Column(db.Integer, nullable=False, default=0)
    first_stock_date = db.Column(db.DateTime, nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    updated_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    batches = db.relationship(
        'ProductBatch',
        back_populates='product',
        cascade='all, delete-orphan',
        order_by='ProductBatch.received_date',
    )
    logs = db.relationship('InventoryLog', back_populates='product', cascade='all, delete-orphan')
    sales = db.relationship('Sale', back_populates='product', cascade='all, delete-orphan')
    reviews = db.relationship('Review', back_populates='product', cascade='all, delete-orphan')
    promotions = db.relationship('Promotion', back_populates='product', cascade='all, delete-orphan')

    # ---------- stock status ----------

    @property
    def is_low_stock(self):
        return (self.stock or 0) <= (self.min_stock or 0)

    @property
    def stock_status(self):
        """'out' at zero, 'low' at or below the reorder level, 'good' otherwise."""
        stock = self.stock or 0
        if stock == 0:
            return 'out'
        if stock <= (self.min_stock or 0):
            return 'low'
        return 'good'

    @property
    def default_unit_cost(self):
        return self.cost_price if self.cost_price is not None else (self.price or 0.0)

    # ---------- FIFO batches ----------

    def fifo_batches(self, now=None):
        """Sellable batches in the order deductions consume them."""
        now = now or utcnow()
        return sorted((b for b in self.batches if b.is_sellable(now)), key=_fifo_sort_key)

    def tracked_stock(self):
        """Units still sitting in active batches, expired or not."""
        return sum(b.remaining_quantity for b in self.batches if b.status == BATCH_ACTIVE)

    def untracked_stock(self):
        return max(0, (self.stock or 0) - self.tracked_stock())

    def sellable_stock(self, now=None):
        """Stock a deduction may draw from: unexpired batches plus untracked units."""
        now = now or utcnow()
        in_batches = sum(b.remaining_quantity for b in self.fifo_batches(now))
        return min(self.stock or 0, in_batches + self.untracked_stock())

    def add_batch(self, quantity, expiry_date=None, received_date=None, unit_cost=None,
                  supplier_reference=None, notes=None, batch_number=None, created_by=None):
        """
        Receive a new batch and add its quantity to stock.

        Args:
            quantity (int): Units received; must be positive.
            expiry_date (datetime, optional): Best-before date of the batch.
            received_date (datetime, optional): Arrival time, defaults to now.
            unit_cost (float, optional): Purchase cost per unit, defaults to the product's cost price.
            batch_number (str, optional): Explicit batch number, otherwise generated.

        Returns:
            ProductBatch: The new active batch.
        """
        if quantity is None or quantity <= 0:
            raise ValidationError('Batch quantity must be positive.')

        received_date = received_date or utcnow()
        if expiry_date is not None and expiry_date <= received_date:
            raise ValidationError('Expiry date must be after the received date.')

        batch = ProductBatch(
            batch_number=batch_number or generate_batch_number(received_date),
            quantity=quantity,
            remaining_quantity=quantity,
            unit_cost=unit_cost if unit_cost is not None else self.default_unit_cost,
            received_date=received_date,
            expiry_date=expiry_date,
            supplier_reference=supplier_reference,
            status=BATCH_ACTIVE,
            notes=notes or f'Restocked {quantity} {self.unit}',
            created_by=created_by,
        )
        self.batches.append(batch)
        self.stock = (self.stock or 0) + quantity

        # Remember when the product first had stock
        if self.first_stock_date is None:
            self.first_stock_date = received_date
        return batch

    def deduct_stock(self, quantity, now=None):
        """
        Remove quantity units from stock, consuming batches oldest-first.

        Each batch gives up to its remaining quantity; a batch emptied by the
        deduction becomes 'depleted'. Untracked stock covers what the batches
        cannot. Nothing is changed when the request exceeds sellable stock.

        Returns:
            list[dict]: One allocation per batch touched (batch_number is None
            for the untracked portion).
        """
        if quantity is None or quantity <= 0:
            raise ValidationError('Quantity must be positive.')

        now = now or utcnow()
        available = self.sellable_stock(now)
        if quantity > available:
            raise InsufficientStockError(
                f'Not enough stock for {self.name}: requested {quantity}, available {available}.'
            )

        allocations = []
        still_needed = quantity
        for batch in self.fifo_batches(now):
            if still_needed <= 0:
                break
            take = min(batch.remaining_quantity, still_needed)
            batch.remaining_quantity -= take
            still_needed -= take
            if batch.remaining_quantity == 0:
                batch.status = BATCH_DEPLETED
            allocations.append({
                'batch_number': batch.batch_number,
                'quantity': take,
                'unit_cost': batch.unit_cost,
                'expiry_date': _iso(batch.expiry_date),
            })

        if still_needed > 0:
            allocations.append({
                'batch_number': None,
                'quantity': still_needed,
                'unit_cost': self.default_unit_cost,
                'expiry_date': None,
            })

        self.stock = (self.stock or 0) - quantity
        return allocations

    def expire_batches(self, now=None):
        """Mark active batches past their expiry as expired and write their units off stock."""
        now = now or utcnow()
        expired = []
        for batch in self.batches:
            if batch.status == BATCH_ACTIVE and batch.is_past_expiry(now):
                batch.status = BATCH_EXPIRED
                self.stock = max(0, (self.stock or 0) - batch.remaining_quantity)
                expired.append(batch)
        return expired

    def update_batch(self, batch, quantity=None, batch_number=None, expiry_date=None):
        """Edit a batch; a quantity change moves both remaining quantity and stock."""
        if batch_number:
            batch.batch_number = batch_number
        if expiry_date is not None:
            if batch.received_date is not None and expiry_date <= batch.received_date:
                raise ValidationError('Expiry date must be after the received date.')
            batch.expiry_date = expiry_date
        if quantity is not None:
            consumed = batch.quantity - batch.remaining_quantity
            if quantity < consumed:
                raise ValidationError(
                    f'Batch quantity cannot drop below the {consumed} units already consumed.'
                )
            difference = quantity - batch.quantity
            batch.quantity = quantity
            batch.remaining_quantity += difference
            if batch.status != BATCH_EXPIRED:
                self.stock = max(0, (self.stock or 0) + difference)
                batch.status = BATCH_ACTIVE if batch.remaining_quantity > 0 else BATCH_DEPLETED
        return batch

    def remove_batch(self, batch):
        """Delete a batch, taking its unsold units out of stock."""
        if batch.status == BATCH_ACTIVE:
            self.stock = max(0, (self.stock or 0) - batch.remaining_quantity)
        self.batches.remove(batch)

    # ---------- expiry status ----------

    def nearest_expiry(self):
        """The active batch with stock left that expires first, or None."""
        dated = [
            b for b in self.batches
            if b.status == BATCH_ACTIVE and b.remaining_quantity > 0 and b.expiry_date is not None
        ]
        return min(dated, key=lambda b: b.expiry_date) if dated else None

    def is_near_expiry(self, now=None, days=7):
        batch = self.nearest_expiry()
        if batch is None:
            return False
        remaining_days = days_until(batch.expiry_date, now or utcnow())
        return 0 < remaining_days <= days

    def is_expired(self, now=None):
        now = now or utcnow()
        return any(
            b.is_past_expiry(now) and b.remaining_quantity > 0 and b.status != BATCH_DEPLETED
            for b in self.batches
        )

    def active_expiry_discount(self, now=None):
        """The running expiry promotion for this product, or None."""
        now = now or utcnow()
        running = [
            p for p in self.promotions
            if p.promotion_type == 'expiry_discount' and p.is_running(now)
        ]
        return max(running, key=lambda p: p.start_date) if running else None

    def inventory_value(self):
        """FIFO valuation: unsold batch units at their own cost plus untracked units at default cost."""
        value = sum(
            b.remaining_quantity * (b.unit_cost or 0.0)
            for b in self.batches if b.status == BATCH_ACTIVE
        )
        return value + self.untracked_stock() * self.default_unit_cost

    def to_dict(self, include_batches=False, now=None):
        now = now or utcnow()
        data = {
            'id': self.id,
            'code': self.code,
            'name': self.name,
            'description': self.description,
            'category': self.category,
            'price': self.price,
            'cost_price': self.cost_price,
            'unit': self.unit,
            'stock': self.stock,
            'min_stock': self.min_stock,
            'max_stock': self.max_stock,
            'supplier': {
                'name': self.supplier_name,
                'contact': self.supplier_contact,
                'country': self.supplier_country,
            },
            'storage': {
                'location': self.storage_location,
                'temperature': self.storage_temperature,
                'shelf_life': self.shelf_life_days,
            },
            'is_active': self.is_active,
            'rating': {'average': self.rating_average, 'count': self.rating_count},
            'first_stock_date': _iso(self.first_stock_date),
            'stock_status': self.stock_status,
            'is_low_stock': self.is_low_stock,
            'is_near_expiry': self.is_near_expiry(now),
            'is_expired': self.is_expired(now),
            'expiry_discount': None,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }
        discount = self.active_expiry_discount(now)
        if discount is not None:
            data['expiry_discount'] = {
                'promotion_id': discount.id,
                'discount_percentage': discount.discount_percentage,
                'discounted_price': round((self.price or 0.0) * (100 - discount.discount_percentage) / 100, 2),
                'end_date': _iso(discount.end_date),
            }
        if include_batches:
            active = self.fifo_batches(now)
            data['batches'] = {
                'active': [dict(b.to_dict(now), fifo_order=i + 1) for i, b in enumerate(active)],
                'depleted': [b.to_dict(now) for b in self.batches if b.status == BATCH_DEPLETED],
                'expired': [
                    b.to_dict(now) for b in self.batches
                    if b.status == BATCH_EXPIRED or (b.status == BATCH_ACTIVE and b.is_past_expiry(now))
                ],
            }
            data['untracked_stock'] = self.untracked_stock()
        return data


def _fifo_sort_key(batch):
    # Dated batches first by expiry, undated ones after them by arrival
    received = batch.received_date or datetime.min
    if batch.expiry_date is None:
        return (1, received, received, batch.id or 0)
    return (0, batch.expiry_date, received, batch.id or 0)


class ProductBatch(db.Model):
    """
    One received lot of a product.
    remaining_quantity drops as sales consume the batch in FIFO order.
    """
    __tablename__ = 'product_batch'

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=False, index=True)
    batch_number = db.Column(db.String(40), unique=True, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)  # Originally received quantity
    remaining_quantity = db.Column(db.Integer, nullable=False)
    unit_cost = db.Column(db.Float, nullable=False, default=0.0)
    received_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    expiry_date = db.Column(db.DateTime, nullable=True, index=True)
    supplier_reference = db.Column(db.String(120), nullable=True)
    status = db.Column(db.String(20), nullable=False, default=BATCH_ACTIVE, index=True)
    notes = db.Column(db.String(255), nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)

    product = db.relationship('Product', back_populates='batches')

    def is_past_expiry(self, now):
        return self.expiry_date is not None and self.expiry_date < now

    def is_sellable(self, now):
        return (
            self.status == BATCH_ACTIVE
            and self.remaining_quantity > 0
            and not self.is_past_expiry(now)
        )

    def to_dict(self, now=None):
        now = now or utcnow()
        return {
            'id': self.id,
            'batch_number': self.batch_number,
            'quantity': self.quantity,
            'remaining_quantity': self.remaining_quantity,
            'unit_cost': self.unit_cost,
            'received_date': _iso(self.received_date),
            'expiry_date': _iso(self.expiry_date),
            'days_to_expiry': days_until(self.expiry_date, now) if self.expiry_date else None,
            'supplier_reference': self.supplier_reference,
            'status': self.status,
            'notes': self.notes,
        }


class InventoryLog(db.Model):
    """Audit trail of every stock movement."""
    __tablename__ = 'inventory_log'

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=False, index=True)
    action = db.Column(db.String(20), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    previous_stock = db.Column(db.Integer, nullable=False)
    new_stock = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(200), nullable=False)
    batch_number = db.Column(db.String(500), nullable=True)  # Comma separated when several batches moved
    reference = db.Column(db.String(80), nullable=True)
    reference_type = db.Column(db.String(20), nullable=True)  # order, purchase, manual, system, adjustment
    cost = db.Column(db.Float, nullable=True)
    total_cost = db.Column(db.Float, nullable=True)
    performed_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    notes = db.Column(db.String(500), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    product = db.relationship('Product', back_populates='logs')
    user = db.relationship('User')

    def to_dict(self):
        return {
            'id': self.id,
            'product': {'id': self.product_id, 'name': self.product.name if self.product else None},
            'action': self.action,
            'quantity': self.quantity,
            'previous_stock': self.previous_stock,
            'new_stock': self.new_stock,
            'reason': self.reason,
            'batch_number': self.batch_number,
            'reference': self.reference,
            'reference_type': self.reference_type,
            'cost': self.cost,
            'total_cost': self.total_cost,
            'performed_by': self.user.username if self.user else None,
            'notes': self.notes,
            'created_at': _iso(self.created_at),
        }


class Sale(db.Model):
    """
    Sales transaction. Stock is consumed FIFO and the cost of the consumed
    batches is kept in cost_total.
    """
    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Float, nullable=False)  # Sale price per unit
    cost_total = db.Column(db.Float, nullable=False, default=0.0)  # FIFO cost of goods sold
    performed_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    timestamp = db.Column(db.DateTime, nullable=False, default=utcnow)

    product = db.relationship('Product', back_populates='sales')

    @property
    def revenue(self):
        return self.quantity * self.price

    def to_dict(self):
        return {
            'id': self.id,
            'product': {'id': self.product_id, 'name': self.product.name if self.product else None},
            'customer_id': self.customer_id,
            'quantity': self.quantity,
            'price': self.price,
            'revenue': round(self.revenue, 2),
            'cost_total': self.cost_total,
            'gross_profit': round(self.revenue - self.cost_total, 2),
            'timestamp': _iso(self.timestamp),
        }


review_helpful = db.Table(
    'review_helpful',
    db.Column('review_id', db.Integer, db.ForeignKey('review.id'), primary_key=True),
    db.Column('user_id', db.Integer, db.ForeignKey('user.id'), primary_key=True),
)


class Review(db.Model):
    """Customer review; one per user and product."""
    __table_args__ = (db.UniqueConstraint('product_id', 'user_id', name='uq_review_product_user'),)

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    rating = db.Column(db.Integer, nullable=False)
    title = db.Column(db.String(100), nullable=True)
    comment = db.Column(db.String(1000), nullable=True)
    is_verified_purchase = db.Column(db.Boolean, nullable=False, default=False)
    helpful = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default='approved', index=True)
    moderated_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    moderated_at = db.Column(db.DateTime, nullable=True)
    moderation_notes = db.Column(db.String(500), nullable=True)
    response_comment = db.Column(db.String(1000), nullable=True)
    responded_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    responded_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    product = db.relationship('Product', back_populates='reviews')
    user = db.relationship('User', foreign_keys=[user_id])
    helpful_by = db.relationship('User', secondary=review_helpful)

    def mark_helpful(self, user):
        """Count a helpful vote once per user. Returns False for a repeated vote."""
        if user in self.helpful_by:
            return False
        self.helpful_by.append(user)
        self.helpful = (self.helpful or 0) + 1
        return True

    def to_dict(self):
        return {
            'id': self.id,
            'product_id': self.product_id,
            'user': {'id': self.user_id, 'username': self.user.username if self.user else None},
            'rating': self.rating,
            'title': self.title,
            'comment': self.comment,
            'is_verified_purchase': self.is_verified_purchase,
            'helpful': self.helpful,
            'status': self.status,
            'response': {
                'comment': self.response_comment,
                'responded_by': self.responded_by,
                'responded_at': _iso(self.responded_at),
            } if self.response_comment else None,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class Promotion(db.Model):
    """Time-boxed product discount; expiry runs create 'expiry_discount' promotions."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.String(300), nullable=True)
    promotion_type = db.Column(db.String(30), nullable=False, default='expiry_discount')
    discount_percentage = db.Column(db.Float, nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id'), nullable=False, index=True)
    start_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    end_date = db.Column(db.DateTime, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)

    product = db.relationship('Product', back_populates='promotions')

    def is_running(self, now=None):
        now = now or utcnow()
        started = self.start_date is None or self.start_date <= now
        return bool(self.is_active) and started and self.end_date is not None and now <= self.end_date

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'type': self.promotion_type,
            'discount_percentage': self.discount_percentage,
            'product_id': self.product_id,
            'product_name': self.product.name if self.product else None,
            'start_date': _iso(self.start_date),
            'end_date': _iso(self.end_date),
            'is_active': self.is_active,
            'is_running': self.is_running(),
        }


# ==================== NUMBER GENERATORS ====================

def generate_product_code():
    """
    Generate the next sequential product code like P01, P02, ... P100.
    Finds the highest existing numeric suffix and increments it by 1.
    """
    existing_codes = [row[0] for row in db.session.query(Product.code).filter(Product.code.isnot(None)).all()]
    numeric_vals = [int(c[1:]) for c in existing_codes if c.startswith('P') and c[1:].isdigit()]
    next_num = (max(numeric_vals) + 1) if numeric_vals else 1

    # Zero-pad numbers below 100
    code_val = f"P{next_num:02d}" if next_num < 100 else f"P{next_num}"
    while db.session.query(Product.id).filter_by(code=code_val).first() is not None:
        next_num += 1
        code_val = f"P{next_num:02d}" if next_num < 100 else f"P{next_num}"
    return code_val


def generate_batch_number(day=None):
    """Next free batch number for the day, formatted BATCH-YYYYMMDD-NNNNN."""
    prefix = f"BATCH-{(day or utcnow()):%Y%m%d}-"
    existing = db.session.query(ProductBatch.batch_number).filter(
        ProductBatch.batch_number.like(f'{prefix}%')
    ).all()
    counters = [int(row[0][len(prefix):]) for row in existing if row[0][len(prefix):].isdigit()]
    next_counter = (max(counters) + 1) if counters else 1
    return f'{prefix}{next_counter:05d}'


# ==================== INVENTORY OPERATIONS ====================

def record_movement(product, action, quantity, previous_stock, reason, user=None, batch_number=None,
                    reference=None, reference_type='manual', cost=None, total_cost=None, notes=None,
                    new_stock=None):
    """Append an InventoryLog row describing a stock change already applied to product."""
    log = InventoryLog(
        product=product,
        action=action,
        quantity=quantity,
        previous_stock=previous_stock,
        new_stock=product.stock if new_stock is None else new_stock,
        reason=reason,
        batch_number=batch_number,
        reference=reference,
        reference_type=reference_type,
        cost=cost,
        total_cost=total_cost,
        performed_by=user.id if user else None,
        notes=notes,
    )
    db.session.add(log)
    return log


def _batch_numbers(allocations):
    numbers = [a['batch_number'] for a in allocations if a['batch_number']]
    return ', '.join(numbers) or None


def _allocation_cost(allocations):
    return round(sum(a['quantity'] * (a['unit_cost'] or 0.0) for a in allocations), 2)


def adjust_stock(product, adjustment_type, quantity, reason, user=None, notes=None,
                 expiry_date=None, supplier_ref=None, unit_cost=None, now=None):
    """
    Unified stock adjustment.

    'add' receives a new batch, 'remove' consumes FIFO (clamped to what is
    sellable), 'set' moves stock to quantity, consuming FIFO when lowering
    and adding untracked units when raising.

    Returns:
        tuple: (batch or None, allocations, InventoryLog)
    """
    if adjustment_type not in ADJUSTMENT_TYPES:
        raise ValidationError('Invalid adjustment type. Use: add, remove, or set')
    if quantity is None or quantity < 0 or (quantity == 0 and adjustment_type != 'set'):
        raise ValidationError('Quantity must be positive.')

    now = now or utcnow()
    # Work on current stock: lapsed batches leave stock before the adjustment is applied
    write_off_expired(product, now, user=user)
    previous_stock = product.stock or 0
    batch = None
    allocations = []

    if adjustment_type == 'add':
        batch = product.add_batch(
            quantity,
            expiry_date=expiry_date,
            received_date=now,
            unit_cost=unit_cost,
            supplier_reference=supplier_ref,
            notes=notes,
            created_by=user.id if user else None,
        )
        action, moved = 'add', quantity
    elif adjustment_type == 'remove':
        moved = min(quantity, product.sellable_stock(now))
        if moved > 0:
            allocations = product.deduct_stock(moved, now=now)
        action = 'remove'
    else:
        if quantity < previous_stock:
            to_deduct = min(previous_stock - quantity, product.sellable_stock(now))
            if to_deduct > 0:
                allocations = product.deduct_stock(to_deduct, now=now)
        product.stock = quantity
        action, moved = 'adjustment', abs(quantity - previous_stock)

    log = record_movement(
        product,
        action,
        moved,
        previous_stock,
        reason,
        user=user,
        batch_number=batch.batch_number if batch else _batch_numbers(allocations),
        reference_type='purchase' if batch else 'adjustment',
        cost=batch.unit_cost if batch else None,
        total_cost=round(batch.unit_cost * quantity, 2) if batch else _allocation_cost(allocations),
        notes=notes,
    )
    logger.info('Stock %s on %s: %s -> %s (%s)', adjustment_type, product.code or product.id,
                previous_stock, product.stock, reason)
    return batch, allocations, log


def record_sale(product, quantity, price=None, user=None, customer=None, now=None):
    """Sell quantity units of product, consuming batches FIFO. Returns (sale, allocations)."""
    if not product.is_active:
        raise ValidationError('Product is not available for sale.')

    previous_stock = product.stock or 0
    allocations = product.deduct_stock(quantity, now=now)
    cost_total = _allocation_cost(allocations)

    sale = Sale(
        product=product,
        customer_id=customer.id if customer else None,
        quantity=quantity,
        price=price if price is not None else product.price,
        cost_total=cost_total,
        performed_by=user.id if user else None,
    )
    db.session.add(sale)
    db.session.flush()

    record_movement(
        product,
        'sale',
        quantity,
        previous_stock,
        f'Sale #{sale.id}',
        user=user,
        batch_number=_batch_numbers(allocations),
        reference=str(sale.id),
        reference_type='order',
        total_cost=cost_total,
    )
    logger.info('Sale #%s: %s x %s from batches %s', sale.id, quantity, product.name,
                _batch_numbers(allocations) or 'untracked stock')
    return sale, allocations


def bulk_import(items, user=None, now=None):
    """Restock several products by name; each item becomes a batch. Failures do not stop the run."""
    results = {'successful': 0, 'failed': 0, 'details': []}
    for item in items:
        if not isinstance(item, dict):
            results['failed'] += 1
            results['details'].append({'product_name': None, 'success': False,
                                       'error': 'Item must be an object'})
            continue

        name = str(item.get('product_name') or '').strip()
        try:
            quantity = _parse_int(item.get('quantity'), 'quantity')
            expiry_date = _parse_datetime(item.get('expiry_date'), 'expiry_date')
            product = Product.query.filter(db.func.lower(Product.name) == name.lower()).first() if name else None
            if product is None:
                raise ValidationError('Product not found')

            batch, _, log = adjust_stock(
                product, 'add', quantity, 'restock', user=user, expiry_date=expiry_date,
                supplier_ref=f'Bulk Import {(now or utcnow()):%Y-%m-%d}', now=now,
            )
        except InventoryError as exc:
            logger.warning('Bulk import item %r failed: %s', name, exc.message)
            results['failed'] += 1
            results['details'].append({'product_name': name, 'success': False, 'error': exc.message})
            continue

        results['successful'] += 1
        results['details'].append({
            'product_name': name,
            'success': True,
            'old_stock': log.previous_stock,
            'new_stock': product.stock,
            'batch_number': batch.batch_number,
            'quantity_added': quantity,
        })
    return results


# ==================== EXPIRY OPERATIONS ====================

def expiry_discount_percentage(days_to_expiry):
    """Deeper discounts the closer a batch is to its expiry date."""
    if days_to_expiry <= 7:
        return 50
    if days_to_expiry <= 14:
        return 40
    return 30


def write_off_expired(product, now=None, user=None):
    """
    Expire the product's stale batches and log one 'expired' movement per batch.
    The logged quantity is what actually left stock, so previous - new == quantity.
    """
    now = now or utcnow()
    running_stock = product.stock or 0
    expired = product.expire_batches(now)
    for batch in expired:
        after = max(0, running_stock - batch.remaining_quantity)
        record_movement(
            product, 'expired', running_stock - after, running_stock,
            f'Batch {batch.batch_number} expired', user=user, batch_number=batch.batch_number,
            reference_type='system', new_stock=after,
        )
        logger.warning('Expired: %s - %s (%s units written off)', product.name,
                       batch.batch_number, running_stock - after)
        running_stock = after
    return expired


def check_expired_batches(now=None):
    """
    Mark every active batch past its expiry as expired and write it off stock.
    Also counts batches expiring within the critical window.
    """
    now = now or utcnow()
    critical_days = current_app.config['EXPIRY_CRITICAL_DAYS']

    stale = ProductBatch.query.filter(
        ProductBatch.status == BATCH_ACTIVE,
        ProductBatch.expiry_date.isnot(None),
        ProductBatch.expiry_date < now,
    ).all()

    expired_count = 0
    for product in sorted({b.product for b in stale}, key=lambda p: p.id):
        expired_count += len(write_off_expired(product, now))

    expiring_count = ProductBatch.query.filter(
        ProductBatch.status == BATCH_ACTIVE,
        ProductBatch.remaining_quantity > 0,
        ProductBatch.expiry_date > now,
        ProductBatch.expiry_date <= now + timedelta(days=critical_days),
    ).count()

    logger.info('Expiry check: %d batches marked expired, %d expiring within %d days',
                expired_count, expiring_count, critical_days)
    return {'expired_count': expired_count, 'expiring_count': expiring_count, 'checked_at': _iso(now)}


def cleanup_expired_batches(now=None):
    """Expire what is due, then delete every expired batch."""
    now = now or utcnow()
    check_expired_batches(now)

    expired = ProductBatch.query.filter(ProductBatch.status == BATCH_EXPIRED).all()
    units = 0
    for batch in expired:
        units += batch.remaining_quantity
        batch.product.remove_batch(batch)
    logger.info('Removed %d expired batches (%d units)', len(expired), units)
    return {'batches_removed': len(expired), 'units_removed': units}


def products_expiring_within(days, now=None):
    """Active products holding stock in batches that expire within the next days."""
    now = now or utcnow()
    threshold = now + timedelta(days=days)

    products = Product.query.join(ProductBatch).filter(
        Product.is_active.is_(True),
        ProductBatch.status == BATCH_ACTIVE,
        ProductBatch.remaining_quantity > 0,
        ProductBatch.expiry_date >= now,
        ProductBatch.expiry_date <= threshold,
    ).distinct().all()

    results = []
    for product in products:
        expiring = sorted(
            (
                b for b in product.batches
                if b.status == BATCH_ACTIVE and b.remaining_quantity > 0
                and b.expiry_date is not None and now <= b.expiry_date <= threshold
            ),
            key=lambda b: b.expiry_date,
        )
        nearest = expiring[0]
        results.append({
            'product': product.to_dict(now=now),
            'nearest_expiry': nearest.to_dict(now),
            'days_to_expiry': days_until(nearest.expiry_date, now),
            'expiring_batches': [b.to_dict(now) for b in expiring],
        })
    results.sort(key=lambda r: r['days_to_expiry'])
    return results


def expiry_dashboard(now=None):
    now = now or utcnow()
    critical = products_expiring_within(current_app.config['EXPIRY_CRITICAL_DAYS'], now)
    warning = products_expiring_within(current_app.config['EXPIRY_WARNING_DAYS'], now)
    expired = [p for p in Product.query.filter_by(is_active=True).all() if p.is_expired(now)]
    return {
        'critical': len(critical),
        'warning': len(warning),
        'expired': len(expired),
        'critical_products': critical,
        'warning_products': warning,
        'expired_products': [p.to_dict(now=now) for p in expired],
    }


def expiring_batches_report(now=None):
    """Batch-level expiry report split into expired, critical and warning, soonest first."""
    now = now or utcnow()
    critical_until = now + timedelta(days=current_app.config['EXPIRY_CRITICAL_DAYS'])
    warning_until = now + timedelta(days=current_app.config['EXPIRY_WARNING_DAYS'])

    rows = ProductBatch.query.join(Product).filter(
        Product.is_active.is_(True),
        ProductBatch.expiry_date.isnot(None),
        ProductBatch.status != BATCH_DEPLETED,
    ).order_by(ProductBatch.expiry_date.asc()).all()

    report = {'expired': [], 'critical': [], 'warning': []}
    total_value = 0.0
    for batch in rows:
        entry = {
            'product_id': batch.product_id,
            'product_name': batch.product.name,
            'category': batch.product.category,
            'unit': batch.product.unit,
            **batch.to_dict(now),
        }
        if batch.expiry_date < now:
            bucket = 'expired'
        elif batch.expiry_date <= critical_until:
            bucket = 'critical'
        elif batch.expiry_date <= warning_until:
            bucket = 'warning'
        else:
            continue
        report[bucket].append(entry)
        total_value += batch.remaining_quantity * (batch.unit_cost or 0.0)

    report['summary'] = {
        'total_expired': len(report['expired']),
        'total_critical': len(report['critical']),
        'total_warning': len(report['warning']),
        'total_value': round(total_value, 2),
    }
    return report


def apply_expiry_discounts(user=None, now=None):
    """Create an expiry promotion for each product with stock close to expiry, unless one is running."""
    now = now or utcnow()
    expiring = products_expiring_within(current_app.config['EXPIRY_WARNING_DAYS'], now)

    created = []
    for entry in expiring:
        product_id = entry['product']['id']
        name = entry['product']['name']
        days = entry['days_to_expiry']

        existing = Promotion.query.filter(
            Promotion.product_id == product_id,
            Promotion.promotion_type == 'expiry_discount',
            Promotion.is_active.is_(True),
            Promotion.end_date >= now,
        ).first()
        if existing is not None:
            logger.info('Skipping %s - already has expiry promotion', name)
            continue

        percentage = expiry_discount_percentage(days)
        promotion = Promotion(
            name=f'Expiry Sale - {name}',
            description=f'Wholesale discount - Product expiring in {days} days',
            promotion_type='expiry_discount',
            discount_percentage=percentage,
            product_id=product_id,
            start_date=now,
            end_date=now + timedelta(days=days),
            created_by=user.id if user else None,
        )
        db.session.add(promotion)
        created.append(promotion)
        logger.info('Applied %s%% discount to %s (expires in %s days)', percentage, name, days)

    db.session.flush()
    return {
        'discounts_applied': len(created),
        'promotions': [p.to_dict() for p in created],
        'expiring_products': len(expiring),
    }


# ==================== REVIEW AGGREGATION ====================

def calculate_average_rating(product_id):
    """Average (one decimal), count and 1..5 distribution over approved reviews."""
    rows = (
        db.session.query(Review.rating, db.func.count(Review.id))
        .filter(Review.product_id == product_id, Review.status == 'approved')
        .group_by(Review.rating)
        .all()
    )
    distribution = {rating: 0 for rating in range(1, 6)}
    total = 0
    score = 0
    for rating, count in rows:
        distribution[rating] = count
        total += count
        score += rating * count

    # Half-up rounding to one decimal
    average = math.floor(score / total * 10 + 0.5) / 10 if total else 0
    return {'average_rating': average, 'total_reviews': total, 'distribution': distribution}


def refresh_product_rating(product):
    db.session.flush()
    stats = calculate_average_rating(product.id)
    product.rating_average = stats['average_rating']
    product.rating_count = stats['total_reviews']
    return stats


# ==================== REQUEST PARSING ====================

def _payload():
    """JSON body when present, form fields otherwise."""
    data = request.get_json(silent=True)
    if data is None:
        data = request.form.to_dict()
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object.')
    return data


def _parse_int(value, field, default=None):
    if value is None or value == '':
        return default
    # int() would truncate 2.9 to 2 and accept True as 1
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(f'{field} must be a whole number.')
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be a whole number.')


def _parse_float(value, field, default=None):
    if value is None or value == '':
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be a number.')


def _parse_bool(value, default=None):
    if value is None or value == '':
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def _parse_datetime(value, field):
    """Accept YYYY-MM-DD or an ISO timestamp; aware values are converted to naive UTC."""
    if value is None or value == '':
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError(f'{field} must be an ISO date (YYYY-MM-DD).')
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _apply_product_fields(product, data, creating):
    """Validate product master fields from data and copy them onto product."""
    if creating or 'name' in data:
        name = str(data.get('name') or '').strip()
        if not name:
            raise ValidationError('Product name is required.')
        if len(name) > 100:
            raise ValidationError('Product name cannot exceed 100 characters.')
        product.name = name

    if 'description' in data:
        description = str(data.get('description') or '').strip() or None
        if description and len(description) > 500:
            raise ValidationError('Description cannot exceed 500 characters.')
        product.description = description

    if creating or 'category' in data:
        category = str(data.get('category') or '').strip().lower()
        if category not in CATEGORIES:
            raise ValidationError(f"Category must be one of: {', '.join(CATEGORIES)}.")
        product.category = category

    if creating or 'unit' in data:
        unit = str(data.get('unit') or 'kg').strip()
        if unit not in UNITS:
            raise ValidationError(f"Unit must be one of: {', '.join(UNITS)}.")
        product.unit = unit

    if creating or 'price' in data:
        price = _parse_float(data.get('price'), 'price')
        if price is None:
            raise ValidationError('Price is required.')
        if price < 0:
            raise ValidationError('Price cannot be negative.')
        product.price = price

    if 'cost_price' in data:
        cost_price = _parse_float(data.get('cost_price'), 'cost_price')
        if cost_price is not None and cost_price < 0:
            raise ValidationError('Cost price cannot be negative.')
        product.cost_price = cost_price

    for field in ('min_stock', 'max_stock', 'shelf_life_days'):
        if field in data:
            value = _parse_int(data.get(field), field)
            if value is not None and value < 0:
                raise ValidationError(f'{field} cannot be negative.')
            if value is not None:
                setattr(product, field, value)

    if 'storage_temperature' in data:
        product.storage_temperature = _parse_float(data.get('storage_temperature'), 'storage_temperature')

    for field in ('supplier_name', 'supplier_contact', 'supplier_country', 'storage_location'):
        if field in data:
            setattr(product, field, str(data.get(field) or '').strip() or None)

    if 'is_active' in data:
        product.is_active = _parse_bool(data.get('is_active'), True)


def _ok(data=None, message=None, status=200, **extra):
    body = {'status': 'success'}
    if message:
        body['message'] = message
    if data is not None:
        body['data'] = data
    body.update(extra)
    return jsonify(body), status


def _error(message, status):
    return jsonify({'status': 'error', 'message': message}), status


# ==================== LOGGING ====================

def configure_logging(app):
    """Apply LOG_LEVEL and a single formatter to the root and application loggers."""
    level = logging.getLevelName(str(app.config.get('LOG_LEVEL') or ('DEBUG' if app.debug else 'INFO')).upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)
    app.logger.setLevel(level)

    if level > logging.DEBUG:
        for noisy in ('werkzeug', 'sqlalchemy.engine'):
            logging.getLogger(noisy).setLevel(logging.WARNING)

    formatter = logging.Formatter(LOG_FORMAT)
    for handler in logging.getLogger().handlers + app.logger.handlers:
        handler.setFormatter(formatter)


# ==================== APPLICATION FACTORY ====================

def create_app(test_config=None):
    """
    Application factory function that creates and configures the Flask application.

    Args:
        test_config (dict, optional): Configuration dictionary for testing.
                                    If provided, overrides default config settings.

    Returns:
        Flask: Configured Flask application instance ready to run.
    """
    app = Flask(__name__)

    # ==================== APPLICATION CONFIGURATION ====================
    # SQLite database in the project root unless DATABASE_URL points elsewhere
    project_root = os.path.abspath(os.path.dirname(__file__))
    db_path = os.path.join(project_root, 'inventory.db')
    app.config.from_mapping(
        SECRET_KEY=os.environ.get('FLASK_SECRET', 'dev-secret'),
        SQLALCHEMY_DATABASE_URI=os.environ.get('DATABASE_URL', f"sqlite:///{db_path}"),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        LOG_LEVEL=os.environ.get('LOG_LEVEL'),
        EXPIRY_WARNING_DAYS=int(os.environ.get('EXPIRY_WARNING_DAYS', '30')),
        EXPIRY_CRITICAL_DAYS=int(os.environ.get('EXPIRY_CRITICAL_DAYS', '7')),
        LOW_STOCK_THRESHOLD=int(os.environ.get('LOW_STOCK_THRESHOLD', '10')),
    )

    # Override config with test settings if provided
    if test_config:
        app.config.update(test_config)

    configure_logging(app)
    db.init_app(app)

    with app.app_context():
        db.create_all()

    # ==================== ERROR HANDLERS ====================

    @app.errorhandler(InventoryError)
    def handle_inventory_error(exc):
        db.session.rollback()
        return _error(exc.message, exc.status_code)

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        return _error(exc.description, exc.code)

    # ==================== AUTHENTICATION & SESSION MANAGEMENT ====================

    @app.before_request
    def load_current_user():
        """Load the logged-in user into g.current_user before each request."""
        user_id = session.get('user_id')
        g.current_user = None
        if user_id is not None:
            user = db.session.get(User, user_id)
            if user is not None and user.is_active:
                g.current_user = user

    def login_required(fn):
        """Reject requests without a logged-in user with 401."""
        @wraps(fn)
        def wrapped(*args, **kwargs):
            if g.get('current_user') is None:
                return _error('You must be logged in to access that resource.', 401)
            return fn(*args, **kwargs)

        return wrapped

    def roles_required(*roles):
        """Allow only logged-in users whose role is in roles (403 otherwise)."""
        def decorator(fn):
            @wraps(fn)
            def wrapped(*args, **kwargs):
                user = g.get('current_user')
                if user is None:
                    return _error('You must be logged in to access that resource.', 401)
                if user.role not in roles:
                    return _error('You do not have permission to perform this action.', 403)
                return fn(*args, **kwargs)

            return wrapped

        return decorator

    def get_product_or_404(product_id):
        product = db.session.get(Product, product_id)
        if product is None:
            abort(404, description='Product not found')
        return product

    def is_staff_request():
        user = g.get('current_user')
        return user is not None and user.is_staff

    # ==================== HEALTH ====================

    @app.route('/health')
    def health():
        db.session.execute(text('SELECT 1'))
        return _ok({'database': 'ok', 'time': _iso(utcnow())})

    # ==================== AUTHENTICATION ROUTES ====================

    @app.route('/signup', methods=['POST'])
    def signup():
        """Register a client account."""
        data = _payload()
        username = str(data.get('username') or '').strip()
        password = str(data.get('password') or '')

        if not username or not password:
            raise ValidationError('Username and password are required.')
        if User.query.filter_by(username=username).first():
            raise ValidationError('Username already exists.')

        user = User(username=username, role='client')
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        logger.info('New account %s', username)
        return _ok(user.to_dict(), 'Account created successfully. Please log in.', 201)

    @app.route('/login', methods=['POST'])
    def login():
        """Authenticate and start a session."""
        data = _payload()
        username = str(data.get('username') or '').strip()
        password = str(data.get('password') or '')

        user = User.query.filter_by(username=username).first()
        if user is None or not user.is_active or not user.check_password(password):
            return _error('Invalid username or password.', 401)

        session.clear()
        session['user_id'] = user.id
        return _ok(user.to_dict(), 'Logged in.')

    @app.route('/logout', methods=['POST', 'GET'])
    def logout():
        session.clear()
        return _ok(message='You have been logged out.')

    @app.route('/me')
    @login_required
    def me():
        return _ok(g.current_user.to_dict())

    # ==================== PRODUCT ROUTES ====================

    @app.route('/api/products')
    def list_products():
        """Product catalogue; inactive products are visible to staff only."""
        query = Product.query
        if not is_staff_request() or not _parse_bool(request.args.get('include_inactive'), False):
            query = query.filter(Product.is_active.is_(True))

        category = request.args.get('category')
        if category and category != 'all':
            query = query.filter(Product.category == category.lower())

        search = (request.args.get('search') or '').strip()
        if search:
            pattern = f'%{search}%'
            query = query.filter(db.or_(Product.name.ilike(pattern), Product.description.ilike(pattern)))

        items = query.order_by(Product.name).all()
        return _ok([p.to_dict() for p in items], results=len(items))

    @app.route('/api/products/<int:product_id>')
    def get_product(product_id):
        product = get_product_or_404(product_id)
        if not product.is_active and not is_staff_request():
            abort(404, description='Product not found')
        return _ok(product.to_dict(include_batches=is_staff_request()))

    @app.route('/api/products', methods=['POST'])
    @roles_required(*STAFF_ROLES)
    def create_product():
        """
        Create a product with an auto-generated code.
        An initial 'stock' is received as the first batch.
        """
        data = _payload()
        product = Product(code=generate_product_code(), created_by=g.current_user.id)
        _apply_product_fields(product, data, creating=True)

        initial_stock = _parse_int(data.get('stock'), 'stock', 0)
        if initial_stock < 0:
            raise ValidationError('Stock cannot be negative.')

        db.session.add(product)
        if initial_stock > 0:
            product.stock = 0
            adjust_stock(
                product, 'add', initial_stock, 'initial stock', user=g.current_user,
                expiry_date=_parse_datetime(data.get('expiry_date'), 'expiry_date'),
                unit_cost=_parse_float(data.get('unit_cost'), 'unit_cost'),
            )
        db.session.commit()
        logger.info('Product %s (%s) created', product.code, product.name)
        return _ok(product.to_dict(include_batches=True), 'Product added.', 201)

    @app.route('/api/products/<int:product_id>', methods=['PUT'])
    @roles_required(*STAFF_ROLES)
    def update_product(product_id):
        """Update master data; stock moves only through adjustments and sales."""
        product = get_product_or_404(product_id)
        data = _payload()
        if 'stock' in data:
            raise ValidationError('Stock cannot be edited directly; use an inventory adjustment.')
        _apply_product_fields(product, data, creating=False)
        product.updated_by = g.current_user.id
        db.session.commit()
        return _ok(product.to_dict(include_batches=True), 'Product updated.')

    @app.route('/api/products/<int:product_id>', methods=['DELETE'])
    @roles_required('admin')
    def delete_product(product_id):
        """Delete a product together with its batches, logs, sales and reviews."""
        product = get_product_or_404(product_id)
        db.session.delete(product)
        db.session.commit()
        logger.info('Product %s deleted', product_id)
        return _ok(message='Product deleted.')

    # ==================== BATCH ROUTES ====================

    @app.route('/api/products/<int:product_id>/batches', methods=['POST'])
    @roles_required(*STAFF_ROLES)
    def add_batch(product_id):
        product = get_product_or_404(product_id)
        data = _payload()
        quantity = _parse_int(data.get('quantity'), 'quantity')
        if quantity is None:
            raise ValidationError('Quantity is required.')

        batch_number = str(data.get('batch_number') or '').strip() or None
        if batch_number and ProductBatch.query.filter_by(batch_number=batch_number).first():
            raise ValidationError(f'Batch number {batch_number} already exists.')

        previous_stock = product.stock
        batch = product.add_batch(
            quantity,
            expiry_date=_parse_datetime(data.get('expiry_date'), 'expiry_date'),
            received_date=_parse_datetime(data.get('received_date'), 'received_date'),
            unit_cost=_parse_float(data.get('unit_cost'), 'unit_cost'),
            supplier_reference=data.get('supplier_reference'),
            notes=data.get('notes'),
            batch_number=batch_number,
            created_by=g.current_user.id,
        )
        record_movement(product, 'add', quantity, previous_stock, 'restock', user=g.current_user,
                        batch_number=batch.batch_number, reference_type='purchase',
                        cost=batch.unit_cost, total_cost=round(batch.unit_cost * quantity, 2))
        db.session.commit()
        return _ok(product.to_dict(include_batches=True), 'Batch info added successfully', 201)

    @app.route('/api/products/<int:product_id>/batches/<int:batch_id>', methods=['PUT'])
    @roles_required(*STAFF_ROLES)
    def update_batch(product_id, batch_id):
        product = get_product_or_404(product_id)
        batch = db.session.get(ProductBatch, batch_id)
        if batch is None or batch.product_id != product.id:
            abort(404, description='Batch not found')

        data = _payload()
        batch_number = str(data.get('batch_number') or '').strip() or None
        if batch_number and batch_number != batch.batch_number and \
                ProductBatch.query.filter_by(batch_number=batch_number).first():
            raise ValidationError(f'Batch number {batch_number} already exists.')

        previous_stock = product.stock
        old_quantity = batch.quantity
        product.update_batch(
            batch,
            quantity=_parse_int(data.get('quantity'), 'quantity'),
            batch_number=batch_number,
            expiry_date=_parse_datetime(data.get('expiry_date'), 'expiry_date'),
        )
        if batch.quantity != old_quantity:
            record_movement(product, 'adjustment', abs(batch.quantity - old_quantity), previous_stock,
                            f'Batch {batch.batch_number} quantity corrected', user=g.current_user,
                            batch_number=batch.batch_number, reference_type='adjustment')
        db.session.commit()
        return _ok(product.to_dict(include_batches=True), 'Batch info updated successfully')

    @app.route('/api/products/<int:product_id>/batches/<int:batch_id>', methods=['DELETE'])
    @roles_required(*STAFF_ROLES)
    def delete_batch(product_id, batch_id):
        product = get_product_or_404(product_id)
        batch = db.session.get(ProductBatch, batch_id)
        if batch is None or batch.product_id != product.id:
            abort(404, description='Batch not found')

        previous_stock = product.stock
        removed = batch.remaining_quantity if batch.status == BATCH_ACTIVE else 0
        batch_number = batch.batch_number
        product.remove_batch(batch)
        if removed:
            record_movement(product, 'remove', removed, previous_stock, f'Batch {batch_number} deleted',
                            user=g.current_user, batch_number=batch_number, reference_type='adjustment')
        db.session.commit()
        return _ok(product.to_dict(include_batches=True), 'Batch info deleted successfully')

    # ==================== INVENTORY ROUTES ====================

    @app.route('/api/inventory/overview')
    @roles_required(*STAFF_ROLES)
    def inventory_overview():
        products = Product.query.filter_by(is_active=True).all()
        recently_updated = Product.query.filter(Product.is_active.is_(True)) \
            .order_by(Product.updated_at.desc()).limit(5).all()
        return _ok({
            'overview': {
                'total_products': len(products),
                'low_stock_products': sum(1 for p in products if p.stock_status == 'low'),
                'out_of_stock_products': sum(1 for p in products if p.stock_status == 'out'),
                'total_value': round(sum(p.inventory_value() for p in products), 2),
            },
            'recently_updated': [
                {'id': p.id, 'name': p.name, 'stock': p.stock, 'price': p.price,
                 'updated_at': _iso(p.updated_at)}
                for p in recently_updated
            ],
        })

    @app.route('/api/inventory/list')
    @roles_required(*STAFF_ROLES)
    def inventory_list():
        query = Product.query.filter(Product.is_active.is_(True))
        category = request.args.get('category')
        if category and category != 'all':
            query = query.filter(Product.category == category.lower())
        search = (request.args.get('search') or '').strip()
        if search:
            pattern = f'%{search}%'
            query = query.filter(db.or_(Product.name.ilike(pattern), Product.description.ilike(pattern)))

        products = query.order_by(Product.name).all()
        status = request.args.get('status')
        if status in ('low', 'out', 'good'):
            products = [p for p in products if p.stock_status == status]

        items = []
        for p in products:
            item = p.to_dict()
            item['stock_percentage'] = round(p.stock / (p.min_stock * 3) * 100) if p.min_stock else None
            items.append(item)
        return _ok(items, results=len(items))

    @app.route('/api/inventory/alerts')
    @roles_required(*STAFF_ROLES)
    def inventory_alerts():
        """Out-of-stock products first (critical), then low stock (warning)."""
        products = Product.query.filter_by(is_active=True).order_by(Product.stock.asc()).all()
        alerts = [
            {'id': p.id, 'name': p.name, 'category': p.category, 'stock': p.stock,
             'min_stock': p.min_stock, 'severity': 'critical', 'message': 'Out of stock'}
            for p in products if p.stock_status == 'out'
        ]
        alerts += [
            {'id': p.id, 'name': p.name, 'category': p.category, 'stock': p.stock,
             'min_stock': p.min_stock, 'severity': 'warning',
             'message': f'Low stock ({p.stock} units remaining)'}
            for p in products if p.stock_status == 'low'
        ]
        return _ok(alerts, count=len(alerts))

    @app.route('/api/inventory/low-stock')
    @roles_required(*STAFF_ROLES)
    def low_stock():
        threshold = _parse_int(request.args.get('threshold'), 'threshold',
                               app.config['LOW_STOCK_THRESHOLD'])
        products = Product.query.filter(Product.is_active.is_(True), Product.stock <= threshold) \
            .order_by(Product.stock.asc()).all()
        return _ok({'products': [p.to_dict() for p in products], 'threshold': threshold,
                    'count': len(products)})

    @app.route('/api/inventory/history')
    @roles_required(*STAFF_ROLES)
    def inventory_history():
        limit = _parse_int(request.args.get('limit'), 'limit', 50)
        query = InventoryLog.query
        product_id = _parse_int(request.args.get('product_id'), 'product_id')
        if product_id is not None:
            query = query.filter(InventoryLog.product_id == product_id)
        logs = query.order_by(InventoryLog.created_at.desc(), InventoryLog.id.desc()).limit(limit).all()
        return _ok([log.to_dict() for log in logs], results=len(logs))

    @app.route('/api/inventory/adjust', methods=['POST'])
    @roles_required(*STAFF_ROLES)
    def inventory_adjust():
        """
        Unified stock adjustment (add / remove / set).
        'add' creates a FIFO batch and reports its batch number.
        """
        data = _payload()
        product_id = _parse_int(data.get('product_id'), 'product_id')
        adjustment_type = data.get('adjustment_type')
        quantity = _parse_int(data.get('quantity'), 'quantity')
        reason = str(data.get('reason') or '').strip()

        if product_id is None or not adjustment_type or quantity is None or not reason:
            raise ValidationError('Missing required fields: product_id, adjustment_type, quantity, reason')

        product = get_product_or_404(product_id)
        batch, allocations, log = adjust_stock(
            product,
            adjustment_type,
            quantity,
            reason,
            user=g.current_user,
            notes=data.get('notes'),
            expiry_date=_parse_datetime(data.get('expiry_date'), 'expiry_date'),
            supplier_ref=data.get('supplier_ref'),
            unit_cost=_parse_float(data.get('unit_cost'), 'unit_cost'),
        )
        db.session.commit()

        verb = {'add': 'added', 'remove': 'removed', 'set': 'updated'}[adjustment_type]
        message = f'Stock {verb} successfully'
        if batch is not None:
            message += f' (Batch: {batch.batch_number})'
        return _ok({
            'product': {
                'id': product.id,
                'name': product.name,
                'old_stock': log.previous_stock,
                'new_stock': product.stock,
                'unit': product.unit,
                'batch_number': batch.batch_number if batch else None,
            },
            'allocations': allocations,
            'adjustment': log.to_dict(),
        }, message)

    @app.route('/api/inventory/bulk-import', methods=['POST'])
    @roles_required(*STAFF_ROLES)
    def inventory_bulk_import():
        data = _payload()
        items = data.get('items')
        if not isinstance(items, list) or not items:
            raise ValidationError('Items array is required')

        results = bulk_import(items, user=g.current_user)
        db.session.commit()
        return _ok(
            results['details'],
            f"Bulk import completed: {results['successful']} successful, {results['failed']} failed",
            successful=results['successful'],
            failed=results['failed'],
        )

    @app.route('/api/inventory/export')
    @roles_required(*STAFF_ROLES)
    def inventory_export():
        """Download the stock list as CSV."""
        status_labels = {'out': 'Out of Stock', 'low': 'Low Stock', 'good': 'In Stock'}
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(['Product Name', 'Category', 'Current Stock', 'Min Stock', 'Unit', 'Price',
                         'Total Value', 'Status'])
        for p in Product.query.order_by(Product.name).all():
            writer.writerow([p.name, p.category, p.stock, p.min_stock or 0, p.unit, f'{p.price:.2f}',
                             f'{p.stock * p.price:.2f}', status_labels[p.stock_status]])

        filename = f'inventory-{utcnow():%Y-%m-%d}.csv'
        return Response(buffer.getvalue(), mimetype='text/csv',
                        headers={'Content-Disposition': f'attachment; filename={filename}'})

    # ==================== SALES ROUTES ====================

    @app.route('/api/sales')
    @roles_required(*STAFF_ROLES)
    def list_sales():
        items = Sale.query.order_by(Sale.timestamp.desc(), Sale.id.desc()).all()
        return _ok([s.to_dict() for s in items], results=len(items))

    @app.route('/api/sales', methods=['POST'])
    @roles_required(*STAFF_ROLES)
    def create_sale():
        """Record a sale, consuming stock from the oldest batches first."""
        data = _payload()
        product_id = _parse_int(data.get('product_id'), 'product_id')
        quantity = _parse_int(data.get('quantity'), 'quantity', 0)
        price = _parse_float(data.get('price'), 'price')
        if product_id is None:
            raise ValidationError('product_id is required.')
        if quantity <= 0:
            raise ValidationError('Quantity must be positive.')
        if price is not None and price < 0:
            raise ValidationError('Price cannot be negative.')

        product = get_product_or_404(product_id)
        customer = None
        customer_id = _parse_int(data.get('customer_id'), 'customer_id')
        if customer_id is not None:
            customer = db.session.get(User, customer_id)
            if customer is None:
                abort(404, description='Customer not found')

        sale, allocations = record_sale(product, quantity, price, user=g.current_user, customer=customer)
        db.session.commit()
        return _ok({'sale': sale.to_dict(), 'allocations': allocations, 'new_stock': product.stock},
                   'Sale recorded', 201)

    # ==================== EXPIRY ROUTES ====================

    @app.route('/api/expiry/dashboard')
    @roles_required(*STAFF_ROLES)
    def expiry_dashboard_view():
        return _ok(expiry_dashboard())

    @app.route('/api/expiry/products')
    @roles_required(*STAFF_ROLES)
    def expiring_products():
        days = _parse_int(request.args.get('days'), 'days', app.config['EXPIRY_WARNING_DAYS'])
        products = products_expiring_within(days)
        return _ok(products, results=len(products))

    @app.route('/api/expiry/report')
    @roles_required(*STAFF_ROLES)
    def expiry_report():
        return _ok(expiring_batches_report())

    @app.route('/api/expiry/check', methods=['POST'])
    @roles_required(*STAFF_ROLES)
    def expiry_check():
        result = check_expired_batches()
        db.session.commit()
        return _ok(result, f"{result['expired_count']} batches marked as expired")

    @app.route('/api/expiry/cleanup', methods=['POST'])
    @roles_required(*STAFF_ROLES)
    def expiry_cleanup():
        result = cleanup_expired_batches()
        db.session.commit()
        return _ok(result, f"Cleaned up {result['batches_removed']} expired batches")

    @app.route('/api/expiry/apply-discounts', methods=['POST'])
    @roles_required(*STAFF_ROLES)
    def expiry_apply_discounts():
        result = apply_expiry_discounts(user=g.current_user)
        db.session.commit()
        return _ok(result, f"Applied {result['discounts_applied']} expiry discounts")

    # ==================== PROMOTION ROUTES ====================

    def get_promotion_or_404(promotion_id):
        promotion = db.session.get(Promotion, promotion_id)
        if promotion is None:
            abort(404, description='Promotion not found')
        return promotion

    @app.route('/api/promotions')
    @roles_required(*STAFF_ROLES)
    def list_promotions():
        """Promotions, newest first; filter with ?type=, ?active= and ?product_id=."""
        query = Promotion.query
        promotion_type = request.args.get('type')
        if promotion_type:
            query = query.filter(Promotion.promotion_type == promotion_type)
        active = _parse_bool(request.args.get('active'))
        if active is not None:
            query = query.filter(Promotion.is_active.is_(active))
        product_id = _parse_int(request.args.get('product_id'), 'product_id')
        if product_id is not None:
            query = query.filter(Promotion.product_id == product_id)

        promotions = query.order_by(Promotion.start_date.desc(), Promotion.id.desc()).all()
        return _ok([p.to_dict() for p in promotions], results=len(promotions))

    @app.route('/api/promotions/<int:promotion_id>')
    @roles_required(*STAFF_ROLES)
    def get_promotion(promotion_id):
        return _ok(get_promotion_or_404(promotion_id).to_dict())

    @app.route('/api/promotions/<int:promotion_id>', methods=['PUT'])
    @roles_required(*STAFF_ROLES)
    def update_promotion(promotion_id):
        """Switch a promotion on or off; without is_active in the body the flag is toggled."""
        promotion = get_promotion_or_404(promotion_id)
        data = _payload()
        if 'is_active' in data:
            promotion.is_active = _parse_bool(data.get('is_active'), promotion.is_active)
        else:
            promotion.is_active = not promotion.is_active
        db.session.commit()
        logger.info('Promotion %s %s by %s', promotion.id,
                    'activated' if promotion.is_active else 'deactivated', g.current_user.username)
        return _ok(promotion.to_dict(), 'Promotion updated successfully')

    # ==================== REVIEW ROUTES ====================

    def get_review_or_404(review_id):
        review = db.session.get(Review, review_id)
        if review is None:
            abort(404, description='Review not found')
        return review

    def parse_review_fields(data, review):
        if 'rating' in data or review.rating is None:
            rating = _parse_int(data.get('rating'), 'rating')
            if rating is None:
                raise ValidationError('Product ID and rating are required')
            if not 1 <= rating <= 5:
                raise ValidationError('Rating must be between 1 and 5.')
            review.rating = rating
        if 'title' in data:
            title = str(data.get('title') or '').strip() or None
            if title and len(title) > 100:
                raise ValidationError('Title cannot exceed 100 characters.')
            review.title = title
        if 'comment' in data:
            comment = str(data.get('comment') or '').strip() or None
            if comment and len(comment) > 1000:
                raise ValidationError('Comment cannot exceed 1000 characters.')
            review.comment = comment

    @app.route('/api/reviews/product/<int:product_id>')
    def product_reviews(product_id):
        """Approved reviews of a product with rating statistics."""
        get_product_or_404(product_id)
        page = max(1, _parse_int(request.args.get('page'), 'page', 1))
        limit = max(1, _parse_int(request.args.get('limit'), 'limit', 10))
        query = Review.query.filter_by(product_id=product_id, status='approved')
        rating = _parse_int(request.args.get('rating'), 'rating')
        if rating is not None:
            query = query.filter(Review.rating == rating)

        total = query.count()
        reviews = query.order_by(Review.created_at.desc(), Review.id.desc()) \
            .offset((page - 1) * limit).limit(limit).all()
        return _ok({
            'reviews': [r.to_dict() for r in reviews],
            'stats': calculate_average_rating(product_id),
            'pagination': {'page': page, 'limit': limit, 'total': total,
                           'pages': math.ceil(total / limit)},
        })

    @app.route('/api/reviews', methods=['POST'])
    @login_required
    def create_review():
        data = _payload()
        product_id = _parse_int(data.get('product_id'), 'product_id')
        if product_id is None or data.get('rating') in (None, ''):
            raise ValidationError('Product ID and rating are required')
        product = get_product_or_404(product_id)

        if Review.query.filter_by(product_id=product.id, user_id=g.current_user.id).first():
            raise ValidationError('You have already reviewed this product. You can edit your existing review.')

        review = Review(product=product, user_id=g.current_user.id, status='approved')
        parse_review_fields(data, review)
        review.is_verified_purchase = Sale.query.filter_by(
            product_id=product.id, customer_id=g.current_user.id).first() is not None
        db.session.add(review)
        refresh_product_rating(product)
        db.session.commit()
        return _ok(review.to_dict(), 'Review submitted successfully', 201)

    @app.route('/api/reviews/<int:review_id>', methods=['PUT'])
    @login_required
    def update_review(review_id):
        review = get_review_or_404(review_id)
        if review.user_id != g.current_user.id:
            return _error('You can only edit your own reviews.', 403)
        parse_review_fields(_payload(), review)
        refresh_product_rating(review.product)
        db.session.commit()
        return _ok(review.to_dict(), 'Review updated successfully')

    @app.route('/api/reviews/<int:review_id>', methods=['DELETE'])
    @login_required
    def delete_review(review_id):
        review = get_review_or_404(review_id)
        if review.user_id != g.current_user.id and g.current_user.role != 'admin':
            return _error('You can only delete your own reviews.', 403)
        product = review.product
        db.session.delete(review)
        refresh_product_rating(product)
        db.session.commit()
        return _ok(message='Review deleted successfully')

    @app.route('/api/reviews/<int:review_id>/helpful', methods=['POST'])
    @login_required
    def mark_review_helpful(review_id):
        review = get_review_or_404(review_id)
        review.mark_helpful(g.current_user)
        db.session.commit()
        return _ok({'helpful': review.helpful}, 'Marked as helpful')

    @app.route('/api/reviews/mine')
    @login_required
    def my_reviews():
        reviews = Review.query.filter_by(user_id=g.current_user.id).order_by(Review.created_at.desc()).all()
        return _ok([r.to_dict() for r in reviews])

    @app.route('/api/reviews/pending')
    @roles_required(*STAFF_ROLES)
    def pending_reviews():
        reviews = Review.query.filter_by(status='pending').order_by(Review.created_at.asc()).all()
        return _ok([r.to_dict() for r in reviews], count=len(reviews))

    @app.route('/api/reviews/<int:review_id>/response', methods=['POST'])
    @roles_required(*STAFF_ROLES)
    def respond_to_review(review_id):
        review = get_review_or_404(review_id)
        comment = str(_payload().get('comment') or '').strip()
        if not comment:
            raise ValidationError('Response comment is required.')
        review.response_comment = comment
        review.responded_by = g.current_user.id
        review.responded_at = utcnow()
        db.session.commit()
        return _ok(review.to_dict(), 'Response added successfully')

    @app.route('/api/reviews/<int:review_id>/moderate', methods=['PUT'])
    @roles_required(*STAFF_ROLES)
    def moderate_review(review_id):
        review = get_review_or_404(review_id)
        data = _payload()
        status = data.get('status')
        if status not in REVIEW_STATUSES:
            raise ValidationError(f"Status must be one of: {', '.join(REVIEW_STATUSES)}.")
        review.status = status
        review.moderated_by = g.current_user.id
        review.moderated_at = utcnow()
        review.moderation_notes = data.get('notes')
        refresh_product_rating(review.product)
        db.session.commit()
        return _ok(review.to_dict(), f'Review {status}')

    # ==================== REPORTS ROUTES ====================

    @app.route('/api/reports/summary')
    @roles_required(*STAFF_ROLES)
    def reports_summary():
        """
        Sales and restock KPIs.
        Gross profit uses the FIFO cost of the batches each sale consumed.
        """
        total_sales_txns = db.session.query(db.func.count(Sale.id)).scalar() or 0
        total_sales_qty = db.session.query(db.func.coalesce(db.func.sum(Sale.quantity), 0)).scalar() or 0
        total_sales_amount = db.session.query(
            db.func.coalesce(db.func.sum(Sale.quantity * Sale.price), 0.0)
        ).scalar() or 0.0
        cost_of_goods_sold = db.session.query(db.func.coalesce(db.func.sum(Sale.cost_total), 0.0)).scalar() or 0.0

        total_restock_txns = db.session.query(db.func.count(ProductBatch.id)).scalar() or 0
        total_restock_qty = db.session.query(db.func.coalesce(db.func.sum(ProductBatch.quantity), 0)).scalar() or 0
        total_restock_cost = db.session.query(
            db.func.coalesce(db.func.sum(ProductBatch.quantity * ProductBatch.unit_cost), 0.0)
        ).scalar() or 0.0

        return _ok({
            'total_sales_txns': total_sales_txns,
            'total_sales_qty': total_sales_qty,
            'total_sales_amount': round(total_sales_amount, 2),
            'cost_of_goods_sold': round(cost_of_goods_sold, 2),
            'gross_profit': round(total_sales_amount - cost_of_goods_sold, 2),
            'total_restock_txns': total_restock_txns,
            'total_restock_qty': total_restock_qty,
            'total_restock_cost': round(total_restock_cost, 2),
        })

    @app.route('/api/reports/inventory')
    @roles_required(*STAFF_ROLES)
    def reports_inventory():
        now = utcnow()
        warning_days = app.config['EXPIRY_WARNING_DAYS']
        query = Product.query.filter(Product.is_active.is_(True))
        category = request.args.get('category')
        if category:
            query = query.filter(Product.category == category.lower())

        stats = {'total_products': 0, 'total_value': 0.0, 'low_stock_items': 0,
                 'out_of_stock_items': 0, 'expiring_items': 0, 'by_category': {}}
        for product in query.order_by(Product.name).all():
            value = product.inventory_value()
            stats['total_products'] += 1
            stats['total_value'] += value
            if product.stock_status == 'out':
                stats['out_of_stock_items'] += 1
            elif product.stock_status == 'low':
                stats['low_stock_items'] += 1
            if product.is_near_expiry(now, days=warning_days):
                stats['expiring_items'] += 1

            bucket = stats['by_category'].setdefault(
                product.category, {'count': 0, 'total_stock': 0, 'total_value': 0.0})
            bucket['count'] += 1
            bucket['total_stock'] += product.stock
            bucket['total_value'] = round(bucket['total_value'] + value, 2)

        stats['total_value'] = round(stats['total_value'], 2)
        return _ok(stats)

    # ==================== CLI COMMANDS ====================

    @app.cli.command('create-admin')
    @click.argument('username')
    @click.argument('password')
    @click.option('--role', type=click.Choice(STAFF_ROLES), default='admin', show_default=True)
    def create_admin_command(username, password, role):
        """Create a back-office account (admin or staff)."""
        if User.query.filter_by(username=username).first():
            raise click.ClickException(f'User {username} already exists.')
        user = User(username=username, role=role)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        click.echo(f'Created {role} account {username}.')

    @app.cli.command('check-expiry')
    def check_expiry_command():
        """Mark expired batches and create expiry discounts; meant for a daily scheduler."""
        checked = check_expired_batches()
        discounts = apply_expiry_discounts()
        db.session.commit()
        click.echo(f"{checked['expired_count']} batches marked as expired, "
                   f"{checked['expiring_count']} expiring soon, "
                   f"{discounts['discounts_applied']} expiry discounts applied.")

    return app


# ==================== APPLICATION ENTRY POINT ====================

if __name__ == '__main__':
    create_app().run(debug=True, host='127.0.0.1', port=5000)
