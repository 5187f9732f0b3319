from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from typing import Any, Dict, List, Optional
from datetime import datetime
from decimal import Decimal
from enum import Enum


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


class ServiceType(str, Enum):
    RESURFACING = "RESURFACING"
    NEW_BOARD = "NEW_BOARD"
    STAINLESS_INSERT = "STAINLESS_INSERT"
    STAINLESS_CLAMPS = "STAINLESS_CLAMPS"
    BOARD_MODIFICATIONS = "BOARD_MODIFICATIONS"
    SPECIAL = "SPECIAL"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    CHEQUE = "CHEQUE"
    E_TRANSFER = "E_TRANSFER"
    CREDIT_CARD = "CREDIT_CARD"
    DEBIT = "DEBIT"
    OTHER = "OTHER"


TERMINAL_STATUSES = frozenset({InvoiceStatus.PAID, InvoiceStatus.CANCELLED})

# Invoices start out as drafts or already sent; every other status is reached through an action
INITIAL_STATUSES = frozenset({InvoiceStatus.DRAFT, InvoiceStatus.SENT})


def to_local_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Invoice dates are stored as naive local time; convert aware input"""
    if value is not None and value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


# === LINE ITEM SCHEMAS ===
class InvoiceLineItem(BaseModel):
    id: Optional[str] = None
    service_type: ServiceType
    description: str = Field(default="", max_length=500)
    quantity: int = Field(..., ge=0)
    unit_price: Decimal = Field(..., ge=0, decimal_places=3, description="Unit price, up to 3 decimals")
    total_price: Decimal = Field(default=Decimal("0.00"), description="Derived: quantity x unit price")


class InvoiceTotals(BaseModel):
    subtotal: Decimal
    gst_amount: Decimal
    pst_amount: Decimal
    total: Decimal


# === SETTINGS SCHEMAS ===
class TaxRates(BaseModel):
    """GST and PST as decimal fractions applied independently to the subtotal."""
    gst: Decimal = Field(default=Decimal("0.05"), ge=0, le=1)
    pst: Decimal = Field(default=Decimal("0.07"), ge=0, le=1)


class TaxRatesUpdate(BaseModel):
    gst: Optional[Decimal] = Field(None, ge=0, le=1)
    pst: Optional[Decimal] = Field(None, ge=0, le=1)


class InvoiceDefaults(BaseModel):
    next_invoice_number: int = Field(default=10001, ge=1)
    payment_terms_days: int = Field(default=30, ge=0, le=365)
    default_notes: Optional[str] = "Thank you for your business!"
    email_subject: Optional[str] = "Invoice #{invoiceNumber} from Cutting Board Guys"
    email_body: Optional[str] = "Please find attached your invoice. Payment is due within {paymentTerms} days."


class InvoiceDefaultsUpdate(BaseModel):
    next_invoice_number: Optional[int] = Field(None, ge=1)
    payment_terms_days: Optional[int] = Field(None, ge=0, le=365)
    default_notes: Optional[str] = None
    email_subject: Optional[str] = None
    email_body: Optional[str] = None


class CompanyInfo(BaseModel):
    name: str = "Cutting Board Guys B.C inc."
    address: str = "701 West Georgia suite 1400"
    city: str = "Vancouver"
    province: str = "B.C."
    postal_code: str = "V7Y1C6"
    email: str = "info@cuttingboardguys.ca"
    phone: str = "604 468 8234"
    website: str = "cuttingboardguys.ca"
    gst_number: str = "756290169RT0001"
    logo: Optional[str] = None


class CompanyInfoUpdate(BaseModel):
    name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    postal_code: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    gst_number: Optional[str] = None
    logo: Optional[str] = None


class ServicePricing(BaseModel):
    service_type: ServiceType
    unit_price: Decimal = Field(..., ge=0, decimal_places=3)
    description: str


class ServicePricingUpdate(BaseModel):
    unit_price: Optional[Decimal] = Field(None, ge=0, decimal_places=3)
    description: Optional[str] = None


DEFAULT_SERVICE_PRICING: List[ServicePricing] = [
    ServicePricing(service_type=ServiceType.RESURFACING, unit_price=Decimal("0.065"), description="Board resurfacing service"),
    ServicePricing(service_type=ServiceType.NEW_BOARD, unit_price=Decimal("0.10"), description="New cutting board sales"),
    ServicePricing(service_type=ServiceType.STAINLESS_INSERT, unit_price=Decimal("450.00"), description="Stainless steel insert installation"),
    ServicePricing(service_type=ServiceType.STAINLESS_CLAMPS, unit_price=Decimal("25.00"), description="Stainless steel clamps"),
    ServicePricing(service_type=ServiceType.BOARD_MODIFICATIONS, unit_price=Decimal("10.00"), description="Board modifications and customization"),
    ServicePricing(service_type=ServiceType.SPECIAL, unit_price=Decimal("25.00"), description="Special services"),
]


class AllSettings(BaseModel):
    company_info: CompanyInfo
    service_pricing: Dict[ServiceType, ServicePricing]
    tax_rates: TaxRates
    invoice_defaults: InvoiceDefaults


class RawSetting(BaseModel):
    category: str
    key: str
    region_id: Optional[str] = None
    value: Any
    description: Optional[str] = None
    is_system: bool = False

    model_config = ConfigDict(from_attributes=True)


class RawSettingUpdate(BaseModel):
    value: Any
    description: Optional[str] = None


# === INVOICE SCHEMAS ===
class InvoiceCreate(BaseModel):
    customer_id: str
    line_items: List[InvoiceLineItem] = Field(..., min_length=1, description="Invoice line items")
    invoice_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=2000)
    status: Optional[InvoiceStatus] = None

    @field_validator("invoice_date", "due_date")
    @classmethod
    def normalize_dates(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_local_naive(v)

    @field_validator("status")
    @classmethod
    def validate_initial_status(cls, v: Optional[InvoiceStatus]) -> Optional[InvoiceStatus]:
        if v is not None and v not in INITIAL_STATUSES:
            raise ValueError("new invoices must be DRAFT or SENT")
        return v


class InvoiceUpdate(BaseModel):
    """Partial update; only fields present in the payload are applied."""
    customer_id: Optional[str] = None
    invoice_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    paid_date: Optional[datetime] = None
    status: Optional[InvoiceStatus] = None
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = Field(None, max_length=2000)
    line_items: Optional[List[InvoiceLineItem]] = None

    @field_validator("invoice_date", "due_date", "paid_date")
    @classmethod
    def normalize_dates(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_local_naive(v)


class Invoice(BaseModel):
    id: str
    invoice_number: int
    region_id: str
    customer_id: str

    invoice_date: datetime
    due_date: datetime
    paid_date: Optional[datetime] = None
    status: InvoiceStatus

    line_items: List[InvoiceLineItem] = []

    subtotal: Decimal
    gst_amount: Decimal
    pst_amount: Decimal
    total: Decimal
    gst_rate: Decimal
    pst_rate: Decimal
    payment_terms_days: int

    payment_method: Optional[PaymentMethod] = None
    emailed_at: Optional[datetime] = None
    emailed_to: Optional[str] = None
    notes: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class InvoiceFilter(BaseModel):
    status: Optional[InvoiceStatus] = None
    customer_id: Optional[str] = None
    region_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    search_term: Optional[str] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_dates(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_local_naive(v)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class InvoiceList(BaseModel):
    data: List[Invoice]
    pagination: Pagination


class MarkSentRequest(BaseModel):
    email_to: Optional[EmailStr] = None


class MarkPaidRequest(BaseModel):
    payment_method: PaymentMethod
    paid_date: Optional[datetime] = None

    @field_validator("paid_date")
    @classmethod
    def normalize_dates(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_local_naive(v)


class BulkStatusUpdate(BaseModel):
    invoice_ids: List[str] = Field(..., min_length=1)
    status: InvoiceStatus


class CountResponse(BaseModel):
    count: int
    message: str


# === REPORTING SCHEMAS ===
class InvoiceSummary(BaseModel):
    total_invoices: int
    total_revenue: Decimal
    paid_invoices: int
    unpaid_invoices: int
    overdue_invoices: int
    average_invoice_value: Decimal
    revenue_by_service: Dict[ServiceType, Decimal]
    revenue_by_month: Dict[str, Decimal]
