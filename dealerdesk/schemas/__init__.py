"""
Pydantic Schemas for API Validation
"""
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator
from typing import Any, Dict, List, Optional
from datetime import datetime
from decimal import Decimal
from enum import Enum

from dealerdesk.services.pricing import normalize_expenses


# ==================== ENUMS ====================

class DiscountTypeEnum(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class PaymentMethodEnum(str, Enum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CHEQUE = "cheque"
    OTHER = "other"


class GroupByEnum(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"
    NONE = "none"


# ==================== SHARED ====================

class AdditionalExpense(BaseModel):
    category: str = "other"
    description: str = ""
    amount: Decimal = Field(..., gt=0)
    currency: Optional[str] = None


def _normalize_expense_input(value):
    return [AdditionalExpense(**e) for e in normalize_expenses(value)]


class MessageResponse(BaseModel):
    success: bool = True
    message: str


# ==================== INVENTORY SCHEMAS ====================

class StockItemBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    item_type: str = Field(default="car", pattern="^(car|part)$")
    category: Optional[str] = Field(None, max_length=100)
    brand: Optional[str] = Field(None, max_length=100)
    model: Optional[str] = Field(None, max_length=100)
    year: Optional[int] = Field(None, ge=1900, le=2100)
    color: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = None
    cost_price: Decimal = Field(default=Decimal("0.00"), ge=0)
    selling_price: Decimal = Field(default=Decimal("0.00"), ge=0)
    currency: str = Field(default="AED", min_length=3, max_length=3)
    min_stock_level: int = Field(default=0, ge=0)


class StockItemCreate(StockItemBase):
    """Normalized stock item as produced by the bulk importer"""
    sku: str = Field(..., min_length=1, max_length=100)
    quantity: int = Field(default=0, ge=0)
    chassis_numbers: List[str] = []

    @field_validator("chassis_numbers")
    @classmethod
    def unique_chassis_numbers(cls, value: List[str]) -> List[str]:
        cleaned = [c.strip() for c in value if c and c.strip()]
        if len(cleaned) != len(set(cleaned)):
            raise ValueError("Duplicate chassis numbers")
        return cleaned


class StockItemUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    category: Optional[str] = Field(None, max_length=100)
    brand: Optional[str] = Field(None, max_length=100)
    model: Optional[str] = Field(None, max_length=100)
    year: Optional[int] = Field(None, ge=1900, le=2100)
    color: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = None
    cost_price: Optional[Decimal] = Field(None, ge=0)
    selling_price: Optional[Decimal] = Field(None, ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    min_stock_level: Optional[int] = Field(None, ge=0)
    status: Optional[str] = Field(None, pattern="^(active|inactive|discontinued)$")


class UnitRecordResponse(BaseModel):
    id: int
    chassis_number: str
    status: str
    hold_ref: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class StockItemResponse(StockItemBase):
    id: int
    sku: str
    quantity: int
    status: str
    units: List[UnitRecordResponse] = []
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ChassisRequest(BaseModel):
    stock_item_id: int
    chassis_numbers: List[str] = Field(..., min_length=1)


class ReservationFailureResponse(BaseModel):
    stock_item_id: int
    chassis_number: Optional[str] = None
    reason: str
    detail: Optional[str] = None


class ReservationResultResponse(BaseModel):
    ok: bool
    reserved: Dict[int, List[str]] = {}
    failed: List[ReservationFailureResponse] = []
    skipped: Dict[int, List[str]] = {}


class UnitHolderResponse(BaseModel):
    chassis_number: str
    hold_ref: Optional[str] = None
    quotation_id: Optional[int] = None
    quotation_number: Optional[str] = None
    quotation_status: Optional[str] = None
    customer_name: Optional[str] = None


# ==================== QUOTATION SCHEMAS ====================

class QuotationItemCreate(BaseModel):
    stock_item_id: int
    quantity: Optional[int] = Field(None, ge=1)
    unit_price: Optional[Decimal] = Field(None, ge=0)
    chassis_numbers: List[str] = []
    description: Optional[str] = None

    @model_validator(mode="after")
    def quantity_matches_chassis(self):
        self.chassis_numbers = [c.strip() for c in self.chassis_numbers if c and c.strip()]
        if len(self.chassis_numbers) != len(set(self.chassis_numbers)):
            raise ValueError("Duplicate chassis numbers on one line")
        if self.quantity is None:
            self.quantity = len(self.chassis_numbers) or 1
        elif self.chassis_numbers and self.quantity != len(self.chassis_numbers):
            raise ValueError(
                f"Quantity {self.quantity} does not match {len(self.chassis_numbers)} chassis numbers"
            )
        return self


class QuotationCreate(BaseModel):
    customer_id: int
    title: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = None
    export_to: Optional[str] = Field(None, max_length=100)
    currency: str = Field(default="AED", min_length=3, max_length=3)
    items: List[QuotationItemCreate] = Field(..., min_length=1)
    discount_value: Decimal = Field(default=Decimal("0.00"), ge=0)
    discount_type: DiscountTypeEnum = DiscountTypeEnum.PERCENTAGE
    additional_expenses: List[AdditionalExpense] = []

    @field_validator("additional_expenses", mode="before")
    @classmethod
    def normalize_additional_expenses(cls, value):
        return _normalize_expense_input(value)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def chassis_on_one_line_only(self):
        seen = set()
        for item in self.items:
            repeated = seen.intersection(item.chassis_numbers)
            if repeated:
                raise ValueError(f"Chassis numbers listed on more than one line: {', '.join(sorted(repeated))}")
            seen.update(item.chassis_numbers)
        return self


class QuotationPricingUpdate(BaseModel):
    discount_value: Optional[Decimal] = Field(None, ge=0)
    discount_type: Optional[DiscountTypeEnum] = None
    additional_expenses: Optional[List[AdditionalExpense]] = None

    @field_validator("additional_expenses", mode="before")
    @classmethod
    def normalize_additional_expenses(cls, value):
        if value is None:
            return None
        return _normalize_expense_input(value)


class QuotationItemResponse(BaseModel):
    id: int
    stock_item_id: Optional[int]
    name: str
    item_type: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    color: Optional[str] = None
    description: Optional[str] = None
    unit_price: Decimal
    quantity: int
    chassis_numbers: List[str] = []
    total_price: Decimal

    model_config = ConfigDict(from_attributes=True)


class StatusHistoryResponse(BaseModel):
    status: str
    changed_at: datetime
    actor_id: Optional[str] = None
    note: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class QuotationResponse(BaseModel):
    id: int
    quotation_number: str
    quotation_ref: str
    customer_id: Optional[int]
    customer_code: Optional[str] = None
    customer_name: str
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    customer_trn: Optional[str] = None
    title: Optional[str] = None
    notes: Optional[str] = None
    export_to: Optional[str] = None
    currency: str
    valid_till: datetime
    subtotal: Decimal
    discount_value: Decimal
    discount_type: str
    discount_amount: Decimal
    additional_expenses: List[AdditionalExpense] = []
    vat_percent: Decimal
    vat_amount: Decimal
    total_amount: Decimal
    status: str
    created_by: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("additional_expenses", mode="before")
    @classmethod
    def normalize_additional_expenses(cls, value):
        return _normalize_expense_input(value)


class QuotationWithItems(QuotationResponse):
    items: List[QuotationItemResponse] = []
    status_history: List[StatusHistoryResponse] = []


class ExpireResponse(BaseModel):
    expired: int
    quotation_numbers: List[str] = []


class QuotationDuplicateRequest(BaseModel):
    """Units for the copy keyed by line position; lines left out get the first available units"""
    title: Optional[str] = Field(None, max_length=255)
    chassis_numbers: Dict[int, List[str]] = {}


class QuotationCountsResponse(BaseModel):
    by_status: Dict[str, int] = {}
    by_currency: Dict[str, int] = {}
    by_customer: List[Dict[str, Any]] = []
    by_creator: Dict[str, int] = {}


# ==================== CURRENCY SCHEMAS ====================

class ConversionRequest(BaseModel):
    amount: Decimal
    from_currency: str = Field(..., min_length=3, max_length=3)
    to_currency: str = Field(..., min_length=3, max_length=3)


class ConversionResponse(BaseModel):
    original_amount: Decimal
    converted_amount: Decimal
    from_currency: str
    to_currency: str
    rate: Decimal

    model_config = ConfigDict(from_attributes=True)


class QuotationPayloadConversionRequest(BaseModel):
    payload: QuotationCreate
    target_currency: str = Field(..., min_length=3, max_length=3)


class QuotationPayloadConversionResponse(BaseModel):
    payload: QuotationCreate
    rate: Decimal


# ==================== INVOICE SCHEMAS ====================

class MoreExpense(BaseModel):
    description: Optional[str] = Field(None, max_length=255)
    amount: Decimal = Field(default=Decimal("0.00"), ge=0)


class PaymentDetails(BaseModel):
    """Payment taken at invoicing; the payment status follows from the amount"""
    amount: Decimal = Field(default=Decimal("0.00"), ge=0)
    method: Optional[PaymentMethodEnum] = None
    payment_date: Optional[datetime] = None
    notes: Optional[str] = None


class InvoiceCreate(BaseModel):
    quotation_id: int
    more_expense: Optional[MoreExpense] = None
    payment: Optional[PaymentDetails] = None
    due_date: Optional[datetime] = None
    notes: Optional[str] = None


class RecordPaymentRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    method: PaymentMethodEnum = PaymentMethodEnum.BANK_TRANSFER
    payment_date: Optional[datetime] = None
    notes: Optional[str] = None


class InvoiceItemResponse(QuotationItemResponse):
    pass


class InvoiceResponse(BaseModel):
    id: int
    invoice_number: str
    quotation_id: Optional[int]
    quotation_number: str
    customer_id: Optional[int] = None
    customer_name: str
    customer_email: Optional[str] = None
    customer_trn: Optional[str] = None
    company_name: Optional[str] = None
    company_trn: Optional[str] = None
    bank_name: Optional[str] = None
    iban: Optional[str] = None
    currency: str
    subtotal: Decimal
    discount_amount: Decimal
    additional_expenses: List[AdditionalExpense] = []
    vat_percent: Decimal
    vat_amount: Decimal
    total_amount: Decimal
    more_expense_description: Optional[str] = None
    more_expense_amount: Decimal
    final_total: Decimal
    payment_status: str
    payment_amount: Decimal
    payment_method: Optional[str] = None
    payment_date: Optional[datetime] = None
    due_date: datetime
    status: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("additional_expenses", mode="before")
    @classmethod
    def normalize_additional_expenses(cls, value):
        return _normalize_expense_input(value)


class InvoiceWithItems(InvoiceResponse):
    items: List[InvoiceItemResponse] = []
    status_history: List[StatusHistoryResponse] = []


# ==================== ANALYTICS SCHEMAS ====================

class SalesAnalyticsResponse(BaseModel):
    """Sales analytics report; money values are serialized as strings"""
    summary: Dict[str, Any]
    currency_summaries: Dict[str, Dict[str, Any]]
    time_series: List[Dict[str, Any]]
    currency_time_series: Dict[str, List[Dict[str, Any]]]
    additional: Dict[str, Any]
    filters: Dict[str, Any]


class QuotationAnalyticsResponse(BaseModel):
    """Quotation analytics report per quotation status; money values are serialized as strings"""
    summary: Dict[str, Any]
    status_summaries: Dict[str, Dict[str, Any]]
    time_series: List[Dict[str, Any]]
    status_time_series: Dict[str, List[Dict[str, Any]]]
    additional: Dict[str, Any]
    filters: Dict[str, Any]
