"""Customer balance ledger.

``outstanding_amount`` on :class:`Customer` is the system of record for what
each customer owes. Only two paths write it: closing a delivery sheet and a
standalone payment entry. Both go through :func:`apply_balance_change`, which
increments the column inside the database instead of writing back a value
read earlier, so a stale read can never overwrite a concurrent change.
"""

from __future__ import annotations
import logging
import secrets
from datetime import datetime
from typing import Dict, List

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from .errors import CustomerNotFound, LedgerStorageError, NegativeAmount
from .models import Customer, CustomerPrice, LedgerTransaction, PaymentChannel, TransactionType, utcnow
from .services import money

log = logging.getLogger(__name__)


def get_outstanding(session: Session, customer_id: str) -> float:
    c = session.get(Customer, customer_id, populate_existing=True)
    if not c:
        raise CustomerNotFound(customer_id)
    return money(c.outstanding_amount)


def apply_balance_change(session: Session, customer_id: str, delta: float) -> float:
    """Add ``delta`` to the customer's outstanding amount and return the new balance.

    Runs inside the caller's transaction and does not commit.
    """
    res = session.connection().execute(
        update(Customer)
        .where(Customer.id == customer_id)
        .values(outstanding_amount=Customer.outstanding_amount + money(delta))
    )
    if res.rowcount != 1:
        raise CustomerNotFound(customer_id)
    return get_outstanding(session, customer_id)


def payment_reference(customer_id: str, when: datetime) -> str:
    return f"PAY-MANUAL-{customer_id}-{when.strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(4)}"


def record_payment(
    session: Session,
    customer_id: str,
    amount: float,
    mode: PaymentChannel = PaymentChannel.CASH,
    note: str = None,
) -> LedgerTransaction:
    """Standalone payment entry: one payment transaction plus the balance decrease."""
    mode = PaymentChannel(mode)
    if amount <= 0:
        raise NegativeAmount(customer_id, actual=amount,
                             message=f"Customer {customer_id}: payment amount must be positive")
    c = session.get(Customer, customer_id)
    if not c:
        raise CustomerNotFound(customer_id)

    now = utcnow()
    tx = LedgerTransaction(
        reference_no=payment_reference(customer_id, now),
        customer_id=customer_id,
        customer_name=c.name,
        type=TransactionType.PAYMENT.value,
        items=[{"mode": mode.value, "note": note}] if note else [{"mode": mode.value}],
        total_amount=0.0,
        amount_received=money(amount),
        balance_change=-money(amount),
        date=now,
    )
    try:
        session.add(tx)
        new_balance = apply_balance_change(session, customer_id, -amount)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        log.error("Payment for customer %s rolled back: %s", customer_id, exc)
        raise LedgerStorageError("payment") from exc
    session.refresh(tx)
    log.info("Payment %s: customer %s paid %.2f (%s), outstanding now %.2f",
             tx.reference_no, customer_id, amount, mode.value, new_balance)
    return tx


def customer_prices(session: Session, customer_ids: List[str]) -> Dict[str, Dict[str, float]]:
    prices: Dict[str, Dict[str, float]] = {cid: {} for cid in customer_ids}
    if not customer_ids:
        return prices
    rows = session.exec(select(CustomerPrice).where(CustomerPrice.customer_id.in_(customer_ids))).all()
    for pp in rows:
        prices[pp.customer_id][pp.product_id] = float(pp.price)
    return prices


def list_customers_by_route(session: Session, route_id: str) -> List[Customer]:
    return session.exec(select(Customer).where(Customer.route_id == route_id).order_by(Customer.id)).all()


def live_balances(session: Session, customer_ids: List[str]) -> Dict[str, float]:
    """Current balances for display. Never used for rate or amount calculations."""
    if not customer_ids:
        return {}
    rows = session.exec(select(Customer).where(Customer.id.in_(customer_ids))).all()
    return {c.id: money(c.outstanding_amount) for c in rows}
