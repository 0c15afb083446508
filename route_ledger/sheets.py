"""Delivery sheet lifecycle: create, edit, close, delete.

A sheet is ``active`` while the route's deliveries and collections are being
entered and becomes ``closed`` exactly once. Closing is the only place that
turns a sheet into invoices, ledger transactions and balance changes, and it
does so in one database transaction:

1. flip the status with ``UPDATE ... WHERE status = 'active'``; if no row
   changed, somebody else already closed it (``AlreadyClosed``);
2. validate the sheet;
3. write one invoice per customer with deliveries and one ledger transaction
   per customer with any activity;
4. add each customer's net change to their *current* outstanding amount;
5. commit.

Any failure rolls the whole thing back, including the status flip, so a
retry either finds the sheet still active or finds it fully closed.
Invoices and transactions are unique per (sheet, customer), which makes a
double application impossible even if two closes race.
"""

from __future__ import annotations
import logging
from datetime import datetime
from typing import Dict, List, Mapping, Optional

from sqlalchemy import Integer, cast, delete, func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from .balances import apply_balance_change, customer_prices, list_customers_by_route, live_balances
from .errors import (
    AlreadyClosed, ClosedSheetImmutable, CustomerNotFound, DuplicateActiveSheet,
    LedgerError, LedgerStorageError, RouteNotFound, SheetNotFound,
)
from .models import (
    CloseResult, Customer, CustomerSnapshot, DeliverySheet, Invoice, InvoiceStatus,
    LedgerTransaction, PaymentChannel, Product, Route, SheetState, SheetStatus,
    SheetSummary, TransactionType, utcnow,
)
from .services import (
    customer_total, dump_amount_received, dump_delivery_data, money,
    received_total, resolve_rate, set_quantity, set_received, sheet_state, summarize,
)
from .validation import ensure_valid

log = logging.getLogger(__name__)

ACTIVE = SheetStatus.ACTIVE.value
CLOSED = SheetStatus.CLOSED.value


# ---------------- Helpers ----------------
def sheet_id_for(route_id: str, when: datetime) -> str:
    return f"ROUTE-{when.strftime('%Y%m%d')}-{when.strftime('%H%M%S')}-{route_id}"


def next_invoice_no(session: Session) -> str:
    # compare numerically, INV100000 sorts before INV99999 as text
    last = session.exec(
        select(func.max(cast(func.substr(Invoice.invoice_no, 4), Integer)))
        .where(Invoice.invoice_no.like("INV%"))
    ).one()
    return "INV" + str((last or 0) + 1).zfill(5)


def invoice_status(balance_change: float, amount_received: float) -> InvoiceStatus:
    if balance_change <= 0:
        return InvoiceStatus.PAID
    if amount_received > 0:
        return InvoiceStatus.PARTIAL
    return InvoiceStatus.PENDING


def load_products(session: Session) -> Dict[str, Product]:
    return {p.id: p for p in session.exec(select(Product)).all()}


def _require(session: Session, sheet_id: str) -> DeliverySheet:
    rec = session.get(DeliverySheet, sheet_id, populate_existing=True)
    if not rec:
        raise SheetNotFound(sheet_id)
    return rec


# ---------------- Queries ----------------
def get_sheet(session: Session, sheet_id: str) -> SheetState:
    return sheet_state(_require(session, sheet_id))


def list_sheets(session: Session, route_id: Optional[str] = None, status: Optional[str] = None) -> List[SheetState]:
    q = select(DeliverySheet)
    if route_id:
        q = q.where(DeliverySheet.route_id == route_id)
    if status:
        q = q.where(DeliverySheet.status == SheetStatus(status).value)
    rows = session.exec(q.order_by(DeliverySheet.created_at.desc())).all()
    return [sheet_state(r) for r in rows]


def find_active_sheet(session: Session, route_id: str) -> Optional[SheetState]:
    rec = session.exec(
        select(DeliverySheet).where(DeliverySheet.route_id == route_id, DeliverySheet.status == ACTIVE)
    ).first()
    return sheet_state(rec) if rec else None


def sheet_summary(session: Session, sheet_id: str) -> SheetSummary:
    sheet = get_sheet(session, sheet_id)
    return summarize(sheet, live_balances(session, [c.id for c in sheet.customers]))


# ---------------- Create ----------------
def create_sheet(session: Session, route_id: str, notes: str = "") -> SheetState:
    route = session.get(Route, route_id)
    if not route:
        raise RouteNotFound(route_id)

    existing = find_active_sheet(session, route_id)
    if existing:
        log.warning("Create refused: route %s already has active sheet %s", route_id, existing.id)
        raise DuplicateActiveSheet(existing.id, route_id, existing.route_name)

    customers = list_customers_by_route(session, route_id)
    prices = customer_prices(session, [c.id for c in customers])
    snapshot = [
        CustomerSnapshot(
            id=c.id,
            name=c.name,
            phone=c.phone,
            route_id=c.route_id,
            outstanding_amount=money(c.outstanding_amount),
            product_prices=prices.get(c.id, {}),
        ).model_dump()
        for c in customers
    ]
    now = utcnow()
    sheet_id = sheet_id_for(route_id, now)
    n = 1
    while session.get(DeliverySheet, sheet_id + (f"-{n}" if n > 1 else "")):
        n += 1
    if n > 1:
        sheet_id = f"{sheet_id}-{n}"
    rec = DeliverySheet(
        id=sheet_id,
        route_id=route_id,
        route_name=route.name,
        customers=snapshot,
        route_outstanding=money(sum(c["outstanding_amount"] for c in snapshot)),
        delivery_data={},
        amount_received={},
        notes=notes or "",
        status=ACTIVE,
        created_at=now,
        updated_at=now,
    )
    try:
        session.add(rec)
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        existing = find_active_sheet(session, route_id)
        if existing:
            log.warning("Create lost race on route %s to sheet %s", route_id, existing.id)
            raise DuplicateActiveSheet(existing.id, route_id, existing.route_name) from exc
        raise LedgerStorageError("create") from exc
    session.refresh(rec)
    log.info("Sheet %s created for route %s with %d customers (outstanding %.2f)",
             rec.id, route_id, len(snapshot), rec.route_outstanding)
    return sheet_state(rec)


# ---------------- Update ----------------
def _check_editable(session: Session, sheet_id: str, action: str) -> DeliverySheet:
    rec = _require(session, sheet_id)
    if rec.status != ACTIVE:
        log.warning("Refused to %s closed sheet %s", action, sheet_id)
        raise ClosedSheetImmutable(sheet_id, action)
    return rec


def save_sheet(session: Session, sheet: SheetState, products: Mapping[str, Product] = None) -> SheetState:
    """Persist the editable fields of an active sheet after validating them.

    Never creates invoices or transactions and never touches balances.
    """
    _check_editable(session, sheet.id, "update")
    ensure_valid(sheet, products if products is not None else load_products(session))

    res = session.connection().execute(
        update(DeliverySheet)
        .where(DeliverySheet.id == sheet.id, DeliverySheet.status == ACTIVE)
        .values(
            delivery_data=dump_delivery_data(sheet),
            amount_received=dump_amount_received(sheet),
            notes=sheet.notes or "",
            updated_at=utcnow(),
        )
    )
    if res.rowcount != 1:
        session.rollback()
        raise ClosedSheetImmutable(sheet.id, "update")
    session.commit()
    log.info("Sheet %s saved", sheet.id)
    return get_sheet(session, sheet.id)


def update_sheet(session: Session, sheet_id: str, delivery_data, amount_received, notes: str = "") -> SheetState:
    current = get_sheet(session, sheet_id)
    candidate = SheetState(
        id=current.id,
        route_id=current.route_id,
        route_name=current.route_name,
        status=current.status,
        customers=current.customers,
        route_outstanding=current.route_outstanding,
        delivery_data=delivery_data or {},
        amount_received=amount_received or {},
        notes=notes or "",
    )
    return save_sheet(session, candidate)


def set_sheet_quantity(session: Session, sheet_id: str, customer_id: str, product_id: str, quantity: int) -> SheetState:
    _check_editable(session, sheet_id, "update")
    products = load_products(session)
    sheet = set_quantity(get_sheet(session, sheet_id), customer_id, product_id, quantity, products)
    return save_sheet(session, sheet, products)


def set_sheet_received(session: Session, sheet_id: str, customer_id: str, channel: PaymentChannel, amount: float) -> SheetState:
    _check_editable(session, sheet_id, "update")
    sheet = set_received(get_sheet(session, sheet_id), customer_id, channel, amount)
    return save_sheet(session, sheet)


def set_sheet_notes(session: Session, sheet_id: str, notes: str) -> SheetState:
    sheet = get_sheet(session, sheet_id).model_copy(update={"notes": notes or ""})
    return save_sheet(session, sheet)


# ---------------- Close ----------------
def _invoice_items(sheet: SheetState, customer: CustomerSnapshot, products: Mapping[str, Product]) -> List[dict]:
    items = []
    for product_id, ln in sheet.delivery_data.get(customer.id, {}).items():
        if ln.quantity <= 0:
            continue
        product = products[product_id]
        items.append({
            "product_id": product_id,
            "product_name": product.name,
            "quantity": ln.quantity,
            "price": resolve_rate(customer, product),
            "total": money(ln.amount),
        })
    return items


def close_sheet(session: Session, sheet_id: str) -> CloseResult:
    now = utcnow()
    try:
        flipped = session.connection().execute(
            update(DeliverySheet)
            .where(DeliverySheet.id == sheet_id, DeliverySheet.status == ACTIVE)
            .values(status=CLOSED, updated_at=now)
        )
        if flipped.rowcount != 1:
            session.rollback()
            _require(session, sheet_id)
            log.warning("Close refused: sheet %s already closed", sheet_id)
            raise AlreadyClosed(sheet_id)

        sheet = sheet_state(_require(session, sheet_id))
        products = load_products(session)
        ensure_valid(sheet, products)

        result = CloseResult(sheet_id=sheet_id)
        next_no = next_invoice_no(session)
        for customer in sheet.customers:
            delivered = customer_total(sheet, customer.id)
            split = sheet.amount_received.get(customer.id)
            received = received_total(sheet, customer.id)
            if delivered <= 0 and received <= 0:
                continue
            if session.get(Customer, customer.id) is None:
                raise CustomerNotFound(customer.id)

            balance_change = money(delivered - received)
            new_balance = apply_balance_change(session, customer.id, balance_change)
            items = _invoice_items(sheet, customer, products)

            invoice_no = None
            if items:
                invoice_no = next_no
                next_no = "INV" + str(int(next_no[3:]) + 1).zfill(5)
                session.add(Invoice(
                    invoice_no=invoice_no,
                    sheet_id=sheet_id,
                    customer_id=customer.id,
                    customer_name=customer.name,
                    route_id=sheet.route_id,
                    items=items,
                    subtotal=delivered,
                    total_amount=delivered,
                    amount_received=received,
                    cash_amount=split.cash if split else 0.0,
                    upi_amount=split.upi if split else 0.0,
                    balance_change=balance_change,
                    customer_final_balance=new_balance,
                    status=invoice_status(balance_change, received).value,
                    date=now,
                ))
                result.invoices.append(invoice_no)

            tx_type = TransactionType.SALE if balance_change > 0 else TransactionType.PAYMENT
            prefix = "SALE" if tx_type is TransactionType.SALE else "PAY"
            reference_no = f"{prefix}-{sheet_id}-{customer.id}"
            session.add(LedgerTransaction(
                reference_no=reference_no,
                sheet_id=sheet_id,
                customer_id=customer.id,
                customer_name=customer.name,
                type=tx_type.value,
                items=items,
                total_amount=delivered,
                amount_received=received,
                balance_change=balance_change,
                invoice_no=invoice_no,
                date=now,
            ))
            result.transactions.append(reference_no)
            result.balances[customer.id] = new_balance

        session.commit()
    except IntegrityError as exc:
        session.rollback()
        rec = _require(session, sheet_id)
        if rec.status == CLOSED:
            log.warning("Close of sheet %s lost a race; already closed", sheet_id)
            raise AlreadyClosed(sheet_id) from exc
        log.error("Close of sheet %s rolled back: %s", sheet_id, exc)
        raise LedgerStorageError("close", sheet_id) from exc
    except LedgerError:
        session.rollback()
        raise
    except SQLAlchemyError as exc:
        session.rollback()
        log.error("Close of sheet %s rolled back: %s", sheet_id, exc)
        raise LedgerStorageError("close", sheet_id) from exc
    except Exception:
        session.rollback()
        log.exception("Close of sheet %s rolled back after unexpected error", sheet_id)
        raise

    log.info("Sheet %s closed: %d invoice(s), %d transaction(s)",
             sheet_id, len(result.invoices), len(result.transactions))
    return result


# ---------------- Delete ----------------
def delete_sheet(session: Session, sheet_id: str) -> None:
    rec = _require(session, sheet_id)
    res = session.connection().execute(
        delete(DeliverySheet).where(DeliverySheet.id == sheet_id, DeliverySheet.status == ACTIVE)
    )
    if res.rowcount != 1:
        session.rollback()
        _require(session, sheet_id)
        log.warning("Refused to delete closed sheet %s", sheet_id)
        raise ClosedSheetImmutable(sheet_id, "delete")
    session.expunge(rec)
    session.commit()
    log.info("Sheet %s deleted", sheet_id)


def count_sheets(session: Session, status: Optional[str] = None) -> int:
    q = select(func.count()).select_from(DeliverySheet)
    if status:
        q = q.where(DeliverySheet.status == SheetStatus(status).value)
    return session.exec(q).one()
