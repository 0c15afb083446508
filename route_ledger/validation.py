from __future__ import annotations
from typing import List, Mapping

from .errors import SheetValidationError, Violation, ViolationCode
from .models import Product, SheetState
from .services import TOLERANCE, resolve_rate


def validate(sheet: SheetState, products: Mapping[str, Product]) -> List[Violation]:
    """Check every delivery line and payment entry; report all problems found."""
    found: List[Violation] = []

    for customer_id, lines in sheet.delivery_data.items():
        customer = sheet.customer(customer_id)
        if customer is None:
            found.append(Violation(ViolationCode.UNKNOWN_CUSTOMER, customer_id,
                                   message=f"Customer {customer_id}: not on this sheet"))
            continue
        for product_id, ln in lines.items():
            if ln.quantity < 0:
                found.append(Violation(ViolationCode.NEGATIVE_QUANTITY, customer_id, product_id,
                                       actual=ln.quantity,
                                       message=f"Customer {customer_id}: negative quantity for product {product_id}"))
            if ln.amount < 0:
                found.append(Violation(ViolationCode.NEGATIVE_AMOUNT, customer_id, product_id,
                                       actual=ln.amount,
                                       message=f"Customer {customer_id}: negative amount for product {product_id}"))

            product = products.get(product_id)
            if product is None:
                if ln.quantity != 0 or ln.amount != 0:
                    found.append(Violation(ViolationCode.UNKNOWN_PRODUCT, customer_id, product_id,
                                           message=f"Customer {customer_id}: unknown product {product_id}"))
                continue

            rate = resolve_rate(customer, product)
            if ln.quantity > 0 and rate <= 0:
                found.append(Violation(ViolationCode.MISSING_PRICE, customer_id, product_id,
                                       message=f"Customer {customer_id}: no valid price for {product.name}"))
                continue

            expected = ln.quantity * rate
            if abs(ln.amount - expected) > TOLERANCE:
                found.append(Violation(ViolationCode.AMOUNT_MISMATCH, customer_id, product_id,
                                       expected=round(expected, 2), actual=ln.amount,
                                       message=f"Customer {customer_id}: amount mismatch for product {product_id}. "
                                               f"Expected: {expected:.2f}, Got: {ln.amount:.2f}"))

    for customer_id, split in sheet.amount_received.items():
        if sheet.customer(customer_id) is None:
            found.append(Violation(ViolationCode.UNKNOWN_CUSTOMER, customer_id,
                                   message=f"Customer {customer_id}: payment recorded but not on this sheet"))
            continue
        if split.cash < 0:
            found.append(Violation(ViolationCode.NEGATIVE_PAYMENT, customer_id, actual=split.cash,
                                   message=f"Customer {customer_id}: negative cash amount"))
        if split.upi < 0:
            found.append(Violation(ViolationCode.NEGATIVE_PAYMENT, customer_id, actual=split.upi,
                                   message=f"Customer {customer_id}: negative UPI amount"))
        expected = split.cash + split.upi
        if abs(split.total - expected) > TOLERANCE:
            found.append(Violation(ViolationCode.PAYMENT_TOTAL_MISMATCH, customer_id,
                                   expected=round(expected, 2), actual=split.total,
                                   message=f"Customer {customer_id}: payment total mismatch. "
                                           f"Expected: {expected:.2f}, Got: {split.total:.2f}"))

    return found


def ensure_valid(sheet: SheetState, products: Mapping[str, Product]) -> None:
    violations = validate(sheet, products)
    if violations:
        raise SheetValidationError(violations)
