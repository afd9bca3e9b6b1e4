from decimal import Decimal

from ..extensions import db
from .mixins import TimestampMixin


class Product(TimestampMixin, db.Model):
    """Catalog item whose ``quantity_in_stock`` is owned by the inventory ledger.

    The catalog may edit names, prices and reorder settings freely; stock
    quantity and ``version`` change only through
    ``stockledger.services.inventory_ledger``.
    """

    __tablename__ = 'product'

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False, unique=True)
    barcode = db.Column(db.String(64), nullable=True, unique=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(128), nullable=True, index=True)
    location = db.Column(db.String(128), nullable=True, index=True)  # aisle/bin used for cycle count scopes

    # PRICING
    base_price = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0.00'))
    cost_price = db.Column(db.Numeric(12, 2), nullable=True)
    tax_rate = db.Column(db.Numeric(5, 2), nullable=False, default=Decimal('0.00'))  # percent

    # STOCK
    quantity_in_stock = db.Column(db.Integer, nullable=False, default=0)
    reorder_level = db.Column(db.Integer, nullable=False, default=0)
    reorder_quantity = db.Column(db.Integer, nullable=False, default=0)
    version = db.Column(db.Integer, nullable=False, default=0)  # compare-and-swap token

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    __table_args__ = (
        db.Index('ix_product_category_active', 'category', 'is_active'),
    )

    @property
    def is_low_stock(self) -> bool:
        return (self.quantity_in_stock or 0) <= (self.reorder_level or 0)

    @property
    def is_out_of_stock(self) -> bool:
        return (self.quantity_in_stock or 0) <= 0

    def catalog_snapshot(self) -> dict:
        """Frozen copy of the selling attributes stored on transaction lines."""
        return {
            'sku': self.sku,
            'name': self.name,
            'base_price': str(self.base_price if self.base_price is not None else Decimal('0.00')),
            'tax_rate': str(self.tax_rate if self.tax_rate is not None else Decimal('0.00')),
            'category_name': self.category,
        }

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'sku': self.sku,
            'barcode': self.barcode,
            'name': self.name,
            'category': self.category,
            'location': self.location,
            'base_price': str(self.base_price) if self.base_price is not None else None,
            'cost_price': str(self.cost_price) if self.cost_price is not None else None,
            'tax_rate': str(self.tax_rate) if self.tax_rate is not None else None,
            'quantity_in_stock': self.quantity_in_stock,
            'reorder_level': self.reorder_level,
            'reorder_quantity': self.reorder_quantity,
            'is_active': self.is_active,
            'is_low_stock': self.is_low_stock,
        }

    def __repr__(self):
        return f'<Product {self.sku} qty={self.quantity_in_stock}>'
