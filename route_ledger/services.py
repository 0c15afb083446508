from __future__ import annotations
from typing import Dict, Mapping, Optional, Any

from .errors import MissingPrice, NegativeAmount, NegativeQuantity, UnknownCustomer, UnknownProduct
from .models import (
    CustomerSnapshot, DeliveryLine, DeliverySheet, PaymentChannel, PaymentSplit,
    Product, SheetState, SheetStatus, SheetSummary,
)

TOLERANCE = 0.01


def money(x: float) -> float:
    return round(float(x or 0.0), 2)


# ---------------- Price Resolver ----------------
def resolve_rate(customer: CustomerSnapshot, product: Optional[Product]) -> float:
    if product is None:
        return 0.0
    override = customer.product_prices.get(product.id)
    if override is not None and override > 0:
        return float(override)
    return float(product.default_price or 0.0)


# ---------------- Delivery Line Calculator ----------------
def line_amount(quantity: int, rate: float) -> float:
    return money(quantity * rate)


def set_quantity(
    sheet: SheetState,
    customer_id: str,
    product_id: str,
    quantity: int,
    products: Mapping[str, Product],
) -> SheetState:
    """Return a copy of ``sheet`` with one delivery line set and its amount derived."""
    if quantity < 0:
        raise NegativeQuantity(customer_id, product_id, actual=quantity,
                               message=f"Customer {customer_id}: negative quantity for product {product_id}")
    customer = sheet.customer(customer_id)
    if customer is None:
        raise UnknownCustomer(customer_id, product_id,
                              message=f"Customer {customer_id} is not on sheet {sheet.id}")
    product = products.get(product_id)
    if product is None:
        raise UnknownProduct(customer_id, product_id, message=f"Product {product_id} not found")
    rate = resolve_rate(customer, product)
    if quantity > 0 and rate <= 0:
        raise MissingPrice(customer_id, product_id,
                           message=f"No valid price for {product.name} (customer {customer_id})")

    out = sheet.model_copy(deep=True)
    out.delivery_data.setdefault(customer_id, {})[product_id] = DeliveryLine(
        quantity=quantity, amount=line_amount(quantity, rate)
    )
    return out


def customer_total(sheet: SheetState, customer_id: str) -> float:
    lines = sheet.delivery_data.get(customer_id, {})
    return money(sum(ln.amount for ln in lines.values()))


def sheet_total(sheet: SheetState) -> float:
    return money(sum(customer_total(sheet, cid) for cid in sheet.delivery_data))


# ---------------- Payment Split Tracker ----------------
def set_received(sheet: SheetState, customer_id: str, channel: PaymentChannel, amount: float) -> SheetState:
    channel = PaymentChannel(channel)
    if amount < 0:
        raise NegativeAmount(customer_id, actual=amount,
                             message=f"Customer {customer_id}: negative {channel.value} amount")
    if sheet.customer(customer_id) is None:
        raise UnknownCustomer(customer_id, message=f"Customer {customer_id} is not on sheet {sheet.id}")

    out = sheet.model_copy(deep=True)
    split = out.amount_received.get(customer_id) or PaymentSplit()
    setattr(split, channel.value, money(amount))
    split.total = money(split.cash + split.upi)
    out.amount_received[customer_id] = split
    return out


def received_total(sheet: SheetState, customer_id: str) -> float:
    split = sheet.amount_received.get(customer_id)
    return split.total if split else 0.0


def migrate_amount_received(raw: Optional[Mapping[str, Any]]) -> Dict[str, Dict[str, float]]:
    """Normalise stored payments to ``{cash, upi, total}``.

    Sheets saved by older builds kept a bare number per customer. That number
    is read as cash. Entries already in the split shape keep whatever values
    they carry so the validator still sees stored inconsistencies.
    """
    out: Dict[str, Dict[str, float]] = {}
    for customer_id, value in (raw or {}).items():
        if isinstance(value, (int, float)):
            out[customer_id] = {"cash": float(value), "upi": 0.0, "total": float(value)}
            continue
        value = value or {}
        cash = float(value.get("cash") or 0.0)
        upi = float(value.get("upi") or 0.0)
        total = value.get("total")
        out[customer_id] = {"cash": cash, "upi": upi, "total": float(total) if total is not None else cash + upi}
    return out


# ---------------- Record <-> value ----------------
def sheet_state(record: DeliverySheet) -> SheetState:
    return SheetState(
        id=record.id,
        route_id=record.route_id,
        route_name=record.route_name,
        status=record.status,
        customers=record.customers or [],
        route_outstanding=record.route_outstanding or 0.0,
        delivery_data=record.delivery_data or {},
        amount_received=migrate_amount_received(record.amount_received),
        notes=record.notes or "",
    )


def dump_delivery_data(sheet: SheetState) -> Dict[str, Any]:
    return {cid: {pid: ln.model_dump() for pid, ln in lines.items()} for cid, lines in sheet.delivery_data.items()}


def dump_amount_received(sheet: SheetState) -> Dict[str, Any]:
    return {cid: split.model_dump() for cid, split in sheet.amount_received.items()}


# ---------------- Summary ----------------
def summarize(sheet: SheetState, live_balances: Mapping[str, float]) -> SheetSummary:
    """Derive the display totals of a sheet. Never stored."""
    total_sale = sheet_total(sheet)
    total_cash = money(sum(p.cash for p in sheet.amount_received.values()))
    total_upi = money(sum(p.upi for p in sheet.amount_received.values()))
    total_collected = money(sum(p.total for p in sheet.amount_received.values()))
    old = money(sheet.route_outstanding)
    total_due = money(old + total_sale)

    new = 0.0
    for c in sheet.customers:
        live = live_balances.get(c.id, c.outstanding_amount)
        if sheet.status == SheetStatus.ACTIVE:
            live += customer_total(sheet, c.id) - received_total(sheet, c.id)
        new += live

    return SheetSummary(
        sheet_id=sheet.id,
        route_id=sheet.route_id,
        status=sheet.status,
        total_sale=total_sale,
        total_cash=total_cash,
        total_upi=total_upi,
        total_collected=total_collected,
        old_route_outstanding=old,
        total_due=total_due,
        amount_pending=money(total_due - total_collected),
        new_route_outstanding=money(new),
    )
