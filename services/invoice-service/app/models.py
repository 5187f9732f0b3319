from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func
import uuid

from .database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class Customer(Base):
    """Customer record, owned by the customer CRUD layer; read here for existence checks"""
    __tablename__ = "customers"

    id = Column(String(36), primary_key=True, index=True, default=_uuid)
    region_id = Column(String, nullable=True, index=True)
    business_name = Column(String, nullable=False)
    contact_name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    deleted_at = Column(DateTime, nullable=True)  # soft delete
    created_at = Column(DateTime, server_default=func.now())


class Invoice(Base):
    """Region-numbered customer invoice"""
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("region_id", "invoice_number", name="uq_invoices_region_number"),
    )

    id = Column(String(36), primary_key=True, index=True, default=_uuid)
    invoice_number = Column(Integer, nullable=False, index=True)
    region_id = Column(String, nullable=False, index=True)
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=False, index=True)

    # Dates (naive local time)
    invoice_date = Column(DateTime, nullable=False, index=True)
    due_date = Column(DateTime, nullable=False, index=True)
    paid_date = Column(DateTime, nullable=True)

    status = Column(String, nullable=False, default="DRAFT", index=True)

    # Ordered list of line item dicts, money stored as decimal strings
    line_items = Column(JSON, nullable=False, default=list)

    # Financial Information
    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    gst_amount = Column(Numeric(12, 2), nullable=False, default=0)
    pst_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False, default=0)

    # Configuration captured at creation time
    gst_rate = Column(Numeric(6, 4), nullable=False)
    pst_rate = Column(Numeric(6, 4), nullable=False)
    payment_terms_days = Column(Integer, nullable=False)

    payment_method = Column(String, nullable=True)
    emailed_at = Column(DateTime, nullable=True)
    emailed_to = Column(String, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class InvoiceSequence(Base):
    """Per-region invoice number counter"""
    __tablename__ = "invoice_sequences"

    id = Column(String(36), primary_key=True, default=_uuid)
    region_id = Column(String, nullable=False, unique=True, index=True)
    last_invoice_number = Column(Integer, nullable=False)
    prefix = Column(String, nullable=True)
    suffix = Column(String, nullable=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Setting(Base):
    """Settings row; a NULL region_id is the global default"""
    __tablename__ = "settings"

    id = Column(String(36), primary_key=True, default=_uuid)
    category = Column(String, nullable=False, index=True)
    key = Column(String, nullable=False, index=True)
    region_id = Column(String, nullable=True, index=True)
    value = Column(JSON, nullable=False)
    description = Column(Text, nullable=True)
    is_system = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
