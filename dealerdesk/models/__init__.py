"""
SQLAlchemy Models for the Dealership Sales Pipeline
"""
from datetime import datetime
from decimal import Decimal
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, Numeric, JSON,
    ForeignKey, Index, UniqueConstraint, CheckConstraint, event
)
from sqlalchemy.orm import relationship, object_session
import enum
import logging

from dealerdesk.core.database import Base
from dealerdesk.core.exceptions import ImmutableRecordError

logger = logging.getLogger(__name__)


# ==================== ENUMS ====================

class ContactType(enum.Enum):
    CUSTOMER = "customer"
    SUPPLIER = "supplier"
    EMPLOYEE = "employee"


class ItemType(enum.Enum):
    CAR = "car"
    PART = "part"


class StockStatus(enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DISCONTINUED = "discontinued"
    OUT_OF_STOCK = "out_of_stock"


class UnitStatus(enum.Enum):
    ACTIVE = "active"
    HOLD = "hold"
    SOLD = "sold"
    INACTIVE = "inactive"


class QuotationStatus(enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    REVIEW = "review"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    APPROVED = "approved"
    CONFIRMED = "confirmed"
    CONVERTED = "converted"


class DiscountType(enum.Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class InvoiceStatus(enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class PaymentStatus(enum.Enum):
    DUE = "due"
    PARTIALLY_PAID = "partially_paid"
    FULLY_PAID = "fully_paid"


class ExpenseStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"


# ==================== DIRECTORY ====================

class Contact(Base):
    """Customer/supplier directory entry (maintained by the directory service)"""
    __tablename__ = 'contacts'

    id = Column(Integer, primary_key=True)
    contact_type = Column(String(20), nullable=False, default=ContactType.CUSTOMER.value)
    customer_code = Column(String(50), nullable=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    address = Column(Text, nullable=True)
    country_code = Column(String(10), nullable=True)
    trn = Column(String(50), nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('ix_contacts_contact_type', 'contact_type'),
    )


class Company(Base):
    """Company profile; the owner row supplies VAT and letterhead"""
    __tablename__ = 'companies'

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    address = Column(Text, nullable=True)
    phone = Column(String(50), nullable=True)
    email = Column(String(255), nullable=True)
    trn = Column(String(50), nullable=True)
    vat_percent = Column(Numeric(5, 2), default=Decimal("0.00"))
    bank_name = Column(String(255), nullable=True)
    bank_account = Column(String(100), nullable=True)
    iban = Column(String(100), nullable=True)
    bank_currency = Column(String(10), nullable=True)
    is_owner = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


# ==================== INVENTORY ====================

class StockItem(Base):
    """Stock item; vehicles carry one UnitRecord per chassis number"""
    __tablename__ = 'stock_items'

    id = Column(Integer, primary_key=True)
    sku = Column(String(100), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    item_type = Column(String(20), default=ItemType.CAR.value)
    category = Column(String(100), nullable=True)
    brand = Column(String(100), nullable=True)
    model = Column(String(100), nullable=True)
    year = Column(Integer, nullable=True)
    color = Column(String(50), nullable=True)
    description = Column(Text, nullable=True)
    cost_price = Column(Numeric(15, 2), default=Decimal("0.00"))
    selling_price = Column(Numeric(15, 2), default=Decimal("0.00"))
    currency = Column(String(10), default="AED")
    quantity = Column(Integer, nullable=False, default=0)
    min_stock_level = Column(Integer, default=0)
    status = Column(String(20), default=StockStatus.ACTIVE.value)
    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    units = relationship("UnitRecord", back_populates="stock_item", cascade="all, delete-orphan",
                         order_by="UnitRecord.id")

    __table_args__ = (
        CheckConstraint('quantity >= 0', name='ck_stock_items_quantity_non_negative'),
        Index('ix_stock_items_status', 'status'),
    )

    @property
    def is_serialized(self) -> bool:
        return len(self.units) > 0


class UnitRecord(Base):
    """One physical vehicle, identified by chassis number within its stock item"""
    __tablename__ = 'stock_units'

    id = Column(Integer, primary_key=True)
    stock_item_id = Column(Integer, ForeignKey('stock_items.id', ondelete='CASCADE'), nullable=False)
    chassis_number = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default=UnitStatus.ACTIVE.value)
    # quotation_ref of the quotation holding or having sold the unit
    hold_ref = Column(String(50), nullable=True, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    stock_item = relationship("StockItem", back_populates="units")

    __table_args__ = (
        UniqueConstraint('stock_item_id', 'chassis_number', name='uq_stock_unit_chassis'),
        Index('ix_stock_units_status', 'status'),
    )


# ==================== QUOTATIONS ====================

class Quotation(Base):
    """Priced proposal to a customer, driven through the approval workflow"""
    __tablename__ = 'quotations'

    id = Column(Integer, primary_key=True)
    quotation_number = Column(String(50), nullable=False, unique=True)
    quotation_ref = Column(String(50), nullable=False, unique=True)

    # Customer snapshot
    customer_id = Column(Integer, ForeignKey('contacts.id', ondelete='SET NULL'), nullable=True)
    customer_code = Column(String(50), nullable=True)
    customer_name = Column(String(255), nullable=False)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)
    customer_address = Column(Text, nullable=True)
    customer_country_code = Column(String(10), nullable=True)
    customer_trn = Column(String(50), nullable=True)

    title = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    export_to = Column(String(100), nullable=True)
    currency = Column(String(10), nullable=False, default="AED")
    valid_till = Column(DateTime, nullable=False)

    # Money summary
    subtotal = Column(Numeric(15, 2), default=Decimal("0.00"))
    discount_value = Column(Numeric(15, 2), default=Decimal("0.00"))
    discount_type = Column(String(20), default=DiscountType.PERCENTAGE.value)
    discount_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    additional_expenses = Column(JSON, default=list)
    vat_percent = Column(Numeric(5, 2), default=Decimal("0.00"))
    vat_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    total_amount = Column(Numeric(15, 2), default=Decimal("0.00"))

    status = Column(String(20), nullable=False, default=QuotationStatus.DRAFT.value)
    created_by = Column(String(100), nullable=True)
    updated_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    items = relationship("QuotationItem", back_populates="quotation", cascade="all, delete-orphan",
                         order_by="QuotationItem.position")
    status_history = relationship("QuotationStatusHistory", back_populates="quotation",
                                  cascade="all, delete-orphan",
                                  order_by="QuotationStatusHistory.id")
    invoice = relationship("Invoice", back_populates="quotation", uselist=False)

    __table_args__ = (
        Index('ix_quotations_status', 'status'),
        Index('ix_quotations_customer_id', 'customer_id'),
        Index('ix_quotations_created_at', 'created_at'),
    )


class QuotationItem(Base):
    """Quotation line with a snapshot of the stock item's attributes"""
    __tablename__ = 'quotation_items'

    id = Column(Integer, primary_key=True)
    quotation_id = Column(Integer, ForeignKey('quotations.id', ondelete='CASCADE'), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    stock_item_id = Column(Integer, ForeignKey('stock_items.id', ondelete='SET NULL'), nullable=True)
    name = Column(String(255), nullable=False)
    item_type = Column(String(20), nullable=True)
    brand = Column(String(100), nullable=True)
    model = Column(String(100), nullable=True)
    year = Column(Integer, nullable=True)
    color = Column(String(50), nullable=True)
    description = Column(Text, nullable=True)
    unit_price = Column(Numeric(15, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    chassis_numbers = Column(JSON, default=list)
    total_price = Column(Numeric(15, 2), nullable=False)

    quotation = relationship("Quotation", back_populates="items")
    stock_item = relationship("StockItem")


class QuotationStatusHistory(Base):
    """Append-only status event of a quotation"""
    __tablename__ = 'quotation_status_history'

    id = Column(Integer, primary_key=True)
    quotation_id = Column(Integer, ForeignKey('quotations.id', ondelete='CASCADE'), nullable=False)
    status = Column(String(20), nullable=False)
    changed_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    actor_id = Column(String(100), nullable=True)
    note = Column(Text, nullable=True)

    quotation = relationship("Quotation", back_populates="status_history")


# ==================== INVOICES ====================

class Invoice(Base):
    """Customer invoice created from exactly one approved quotation"""
    __tablename__ = 'invoices'

    id = Column(Integer, primary_key=True)
    invoice_number = Column(String(50), nullable=False, unique=True)
    quotation_id = Column(Integer, ForeignKey('quotations.id', ondelete='SET NULL'), nullable=True, unique=True)
    quotation_number = Column(String(50), nullable=False)

    # Customer snapshot
    customer_id = Column(Integer, nullable=True)
    customer_code = Column(String(50), nullable=True)
    customer_name = Column(String(255), nullable=False)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)
    customer_address = Column(Text, nullable=True)
    customer_trn = Column(String(50), nullable=True)

    # Letterhead / bank snapshot
    company_name = Column(String(255), nullable=True)
    company_address = Column(Text, nullable=True)
    company_trn = Column(String(50), nullable=True)
    bank_name = Column(String(255), nullable=True)
    bank_account = Column(String(100), nullable=True)
    iban = Column(String(100), nullable=True)
    bank_currency = Column(String(10), nullable=True)

    title = Column(String(255), nullable=True)
    export_to = Column(String(100), nullable=True)
    currency = Column(String(10), nullable=False)

    # Money summary copied from the quotation
    subtotal = Column(Numeric(15, 2), default=Decimal("0.00"))
    discount_value = Column(Numeric(15, 2), default=Decimal("0.00"))
    discount_type = Column(String(20), default=DiscountType.PERCENTAGE.value)
    discount_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    additional_expenses = Column(JSON, default=list)
    vat_percent = Column(Numeric(5, 2), default=Decimal("0.00"))
    vat_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    total_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    more_expense_description = Column(String(255), nullable=True)
    more_expense_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    final_total = Column(Numeric(15, 2), default=Decimal("0.00"))

    # Payment
    payment_status = Column(String(20), default=PaymentStatus.DUE.value)
    payment_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    payment_method = Column(String(20), nullable=True)
    payment_date = Column(DateTime, nullable=True)
    payment_notes = Column(Text, nullable=True)

    due_date = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default=InvoiceStatus.DRAFT.value)
    notes = Column(Text, nullable=True)
    quotation_created_by = Column(String(100), nullable=True)
    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    quotation = relationship("Quotation", back_populates="invoice")
    items = relationship("InvoiceItem", back_populates="invoice", cascade="all, delete-orphan",
                         order_by="InvoiceItem.position")
    status_history = relationship("InvoiceStatusHistory", back_populates="invoice",
                                  cascade="all, delete-orphan",
                                  order_by="InvoiceStatusHistory.id")

    __table_args__ = (
        Index('ix_invoices_created_at', 'created_at'),
        Index('ix_invoices_status', 'status'),
        Index('ix_invoices_currency', 'currency'),
    )


class InvoiceItem(Base):
    """Invoice line copied from the quotation line"""
    __tablename__ = 'invoice_items'

    id = Column(Integer, primary_key=True)
    invoice_id = Column(Integer, ForeignKey('invoices.id', ondelete='CASCADE'), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    stock_item_id = Column(Integer, ForeignKey('stock_items.id', ondelete='SET NULL'), nullable=True)
    name = Column(String(255), nullable=False)
    item_type = Column(String(20), nullable=True)
    brand = Column(String(100), nullable=True)
    model = Column(String(100), nullable=True)
    year = Column(Integer, nullable=True)
    color = Column(String(50), nullable=True)
    description = Column(Text, nullable=True)
    unit_price = Column(Numeric(15, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    chassis_numbers = Column(JSON, default=list)
    total_price = Column(Numeric(15, 2), nullable=False)

    invoice = relationship("Invoice", back_populates="items")
    stock_item = relationship("StockItem")


class InvoiceStatusHistory(Base):
    """Append-only status event of an invoice"""
    __tablename__ = 'invoice_status_history'

    id = Column(Integer, primary_key=True)
    invoice_id = Column(Integer, ForeignKey('invoices.id', ondelete='CASCADE'), nullable=False)
    status = Column(String(20), nullable=False)
    changed_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    actor_id = Column(String(100), nullable=True)
    note = Column(Text, nullable=True)

    invoice = relationship("Invoice", back_populates="status_history")


# ==================== EXPENSES ====================

class Expense(Base):
    """Business expense (maintained by the expense module, read for totals)"""
    __tablename__ = 'expenses'

    id = Column(Integer, primary_key=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    amount = Column(Numeric(15, 2), nullable=False)
    currency = Column(String(10), default="AED")
    category = Column(String(100), nullable=True)
    status = Column(String(20), default=ExpenseStatus.PENDING.value)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('ix_expenses_created_at', 'created_at'),
    )


# ==================== HISTORY IMMUTABILITY ====================

def _owner_is_being_deleted(target, owner_model, owner_id) -> bool:
    """History rows may only disappear together with their owning document."""
    session = object_session(target)
    if session is None:
        return False
    return any(
        isinstance(obj, owner_model) and obj.id == owner_id
        for obj in session.deleted
    )


def _reject_history_update(mapper, connection, target):
    logger.error(
        "History row update blocked: %s id=%s",
        type(target).__name__, target.id
    )
    raise ImmutableRecordError(type(target).__name__, target.id, "UPDATE")


def _reject_history_delete(mapper, connection, target):
    if isinstance(target, QuotationStatusHistory):
        if _owner_is_being_deleted(target, Quotation, target.quotation_id):
            return
    elif isinstance(target, InvoiceStatusHistory):
        if _owner_is_being_deleted(target, Invoice, target.invoice_id):
            return

    logger.error(
        "History row delete blocked: %s id=%s",
        type(target).__name__, target.id
    )
    raise ImmutableRecordError(type(target).__name__, target.id, "DELETE")


def register_history_listeners():
    """Register append-only enforcement on status history tables (idempotent)."""
    for model in (QuotationStatusHistory, InvoiceStatusHistory):
        if not event.contains(model, "before_update", _reject_history_update):
            event.listen(model, "before_update", _reject_history_update)
        if not event.contains(model, "before_delete", _reject_history_delete):
            event.listen(model, "before_delete", _reject_history_delete)
