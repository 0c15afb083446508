from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, List, Any

from sqlalchemy import Column, JSON, Index, CheckConstraint, UniqueConstraint, text
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SheetStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class PaymentChannel(str, Enum):
    CASH = "cash"
    UPI = "upi"


class TransactionType(str, Enum):
    SALE = "sale"
    PAYMENT = "payment"
    ADJUSTMENT = "adjustment"


class InvoiceStatus(str, Enum):
    PAID = "paid"
    PARTIAL = "partial"
    PENDING = "pending"


# ---------------- Tables ----------------
class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    password_hash: str
    role: str = "DRIVER"  # ADMIN, BILLING, ACCOUNTS, DRIVER
    is_active: bool = True


class Route(SQLModel, table=True):
    id: str = Field(primary_key=True)
    name: str
    is_active: bool = True


class Product(SQLModel, table=True):
    id: str = Field(primary_key=True)
    name: str
    default_price: Optional[float] = None


class Customer(SQLModel, table=True):
    id: str = Field(primary_key=True)  # 6-digit customer code
    name: str = Field(index=True)
    phone: Optional[str] = None
    route_id: Optional[str] = Field(default=None, foreign_key="route.id", index=True)
    opening_balance: float = 0.0
    outstanding_amount: float = 0.0  # positive = customer owes, negative = credit


class CustomerPrice(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("customer_id", "product_id", name="uq_customerprice_pair"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    customer_id: str = Field(foreign_key="customer.id", index=True)
    product_id: str = Field(foreign_key="product.id", index=True)
    price: float


class DeliverySheet(SQLModel, table=True):
    __table_args__ = (
        # at most one active sheet per route, enforced by storage
        Index(
            "uq_deliverysheet_active_route",
            "route_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        CheckConstraint("status IN ('active', 'closed')", name="ck_deliverysheet_status"),
    )

    id: str = Field(primary_key=True)  # ROUTE-YYYYMMDD-HHMMSS-<route>
    route_id: str = Field(index=True)
    route_name: str
    customers: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    route_outstanding: float = 0.0
    delivery_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    amount_received: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    notes: str = ""
    status: str = Field(default=SheetStatus.ACTIVE.value, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Invoice(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("sheet_id", "customer_id", name="uq_invoice_sheet_customer"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    invoice_no: str = Field(index=True, unique=True)
    sheet_id: Optional[str] = Field(default=None, foreign_key="deliverysheet.id", index=True)
    customer_id: str = Field(foreign_key="customer.id", index=True)
    customer_name: str
    route_id: Optional[str] = None
    items: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    subtotal: float = 0.0
    total_amount: float = 0.0
    amount_received: float = 0.0
    cash_amount: float = 0.0
    upi_amount: float = 0.0
    balance_change: float = 0.0
    customer_final_balance: float = 0.0
    status: str = InvoiceStatus.PENDING.value
    date: datetime = Field(default_factory=utcnow)


class LedgerTransaction(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("sheet_id", "customer_id", name="uq_ledgertransaction_sheet_customer"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    reference_no: str = Field(index=True, unique=True)
    sheet_id: Optional[str] = Field(default=None, foreign_key="deliverysheet.id", index=True)
    customer_id: str = Field(foreign_key="customer.id", index=True)
    customer_name: str
    type: str = Field(index=True)  # sale / payment / adjustment
    items: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    total_amount: float = 0.0
    amount_received: float = 0.0
    balance_change: float = 0.0  # positive increases what the customer owes
    invoice_no: Optional[str] = None
    date: datetime = Field(default_factory=utcnow)


# ---------------- Sheet values ----------------
class CustomerSnapshot(SQLModel):
    id: str
    name: str
    phone: Optional[str] = None
    route_id: Optional[str] = None
    outstanding_amount: float = 0.0
    product_prices: Dict[str, float] = Field(default_factory=dict)


class DeliveryLine(SQLModel):
    quantity: int = 0
    amount: float = 0.0


class PaymentSplit(SQLModel):
    cash: float = 0.0
    upi: float = 0.0
    total: float = 0.0


class SheetState(SQLModel):
    """Editable value of a delivery sheet, detached from the database row."""

    id: Optional[str] = None
    route_id: str
    route_name: str = ""
    status: SheetStatus = SheetStatus.ACTIVE
    customers: List[CustomerSnapshot] = Field(default_factory=list)
    route_outstanding: float = 0.0
    delivery_data: Dict[str, Dict[str, DeliveryLine]] = Field(default_factory=dict)
    amount_received: Dict[str, PaymentSplit] = Field(default_factory=dict)
    notes: str = ""

    def customer(self, customer_id: str) -> Optional[CustomerSnapshot]:
        for c in self.customers:
            if c.id == customer_id:
                return c
        return None


class SheetSummary(SQLModel):
    sheet_id: Optional[str] = None
    route_id: str
    status: SheetStatus
    total_sale: float = 0.0
    total_cash: float = 0.0
    total_upi: float = 0.0
    total_collected: float = 0.0
    old_route_outstanding: float = 0.0
    total_due: float = 0.0
    amount_pending: float = 0.0
    new_route_outstanding: float = 0.0


class CloseResult(SQLModel):
    sheet_id: str
    invoices: List[str] = Field(default_factory=list)
    transactions: List[str] = Field(default_factory=list)
    balances: Dict[str, float] = Field(default_factory=dict)


# ---------------- Request payloads ----------------
class SheetCreate(SQLModel):
    route_id: str
    notes: str = ""


class SheetUpdate(SQLModel):
    delivery_data: Dict[str, Dict[str, DeliveryLine]] = Field(default_factory=dict)
    amount_received: Dict[str, PaymentSplit] = Field(default_factory=dict)
    notes: str = ""


class LineUpdate(SQLModel):
    customer_id: str
    product_id: str
    quantity: int


class PaymentUpdate(SQLModel):
    customer_id: str
    channel: PaymentChannel
    amount: float


class StandalonePayment(SQLModel):
    customer_id: str
    amount: float
    mode: PaymentChannel = PaymentChannel.CASH
    note: Optional[str] = None
