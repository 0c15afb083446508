"""Exception hierarchy for the delivery sheet ledger.

Every error exposes ``code`` and ``to_dict()`` so the HTTP layer (or any
other caller) can show the operator enough detail to fix the problem without
looking at storage: the customer and product involved, expected and actual
amounts, or the id of the sheet that is in the way.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence


class ViolationCode(str, Enum):
    NEGATIVE_QUANTITY = "NegativeQuantity"
    NEGATIVE_AMOUNT = "NegativeAmount"
    NEGATIVE_PAYMENT = "NegativePayment"
    AMOUNT_MISMATCH = "AmountMismatch"
    PAYMENT_TOTAL_MISMATCH = "PaymentTotalMismatch"
    MISSING_PRICE = "MissingPrice"
    UNKNOWN_CUSTOMER = "UnknownCustomer"
    UNKNOWN_PRODUCT = "UnknownProduct"


@dataclass(frozen=True)
class Violation:
    """A single consistency problem found on a sheet."""

    code: ViolationCode
    customer_id: str
    product_id: Optional[str] = None
    expected: Optional[float] = None
    actual: Optional[float] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["code"] = self.code.value
        return data


class LedgerError(Exception):
    """Base class for every error raised by the ledger."""

    code = "LedgerError"

    def to_dict(self) -> Dict[str, Any]:
        return {}


class SheetValidationError(LedgerError):
    """A write was blocked because the sheet has one or more violations."""

    code = "SheetValidationError"

    def __init__(self, violations: Sequence[Violation]):
        self.violations: List[Violation] = list(violations)
        summary = "; ".join(v.message for v in self.violations[:5])
        more = len(self.violations) - 5
        if more > 0:
            summary += f" (+{more} more)"
        super().__init__(f"{len(self.violations)} violation(s): {summary}")

    def to_dict(self) -> Dict[str, Any]:
        return {"violations": [v.to_dict() for v in self.violations]}


class _SingleViolation(SheetValidationError):
    violation_code: ViolationCode

    def __init__(self, customer_id: str, product_id: Optional[str] = None,
                 expected: Optional[float] = None, actual: Optional[float] = None,
                 message: str = ""):
        violation = Violation(self.violation_code, customer_id, product_id, expected, actual, message)
        self.violation = violation
        super().__init__([violation])


class NegativeQuantity(_SingleViolation):
    code = "NegativeQuantity"
    violation_code = ViolationCode.NEGATIVE_QUANTITY


class NegativeAmount(_SingleViolation):
    code = "NegativeAmount"
    violation_code = ViolationCode.NEGATIVE_AMOUNT


class MissingPrice(_SingleViolation):
    code = "MissingPrice"
    violation_code = ViolationCode.MISSING_PRICE


class UnknownCustomer(_SingleViolation):
    code = "UnknownCustomer"
    violation_code = ViolationCode.UNKNOWN_CUSTOMER


class UnknownProduct(_SingleViolation):
    code = "UnknownProduct"
    violation_code = ViolationCode.UNKNOWN_PRODUCT


class LifecycleError(LedgerError):
    """The requested transition is not allowed in the sheet's current state."""

    def __init__(self, sheet_id: str, message: str):
        self.sheet_id = sheet_id
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"sheet_id": self.sheet_id}


class DuplicateActiveSheet(LifecycleError):
    code = "DuplicateActiveSheet"

    def __init__(self, sheet_id: str, route_id: str, route_name: str):
        self.route_id = route_id
        self.route_name = route_name
        super().__init__(sheet_id, f"Route {route_name} already has active sheet {sheet_id}")

    def to_dict(self) -> Dict[str, Any]:
        return {"sheet_id": self.sheet_id, "route_id": self.route_id, "route_name": self.route_name}


class ClosedSheetImmutable(LifecycleError):
    code = "ClosedSheetImmutable"

    def __init__(self, sheet_id: str, action: str = "modify"):
        self.action = action
        super().__init__(sheet_id, f"Sheet {sheet_id} is closed; cannot {action} it")

    def to_dict(self) -> Dict[str, Any]:
        return {"sheet_id": self.sheet_id, "action": self.action}


class AlreadyClosed(LifecycleError):
    code = "AlreadyClosed"

    def __init__(self, sheet_id: str):
        super().__init__(sheet_id, f"Sheet {sheet_id} is already closed")


class NotFoundError(LedgerError):
    code = "NotFound"
    kind = "record"

    def __init__(self, ident: str):
        self.ident = ident
        super().__init__(f"{self.kind.capitalize()} {ident} not found")

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.ident}


class SheetNotFound(NotFoundError):
    code = "SheetNotFound"
    kind = "sheet"


class RouteNotFound(NotFoundError):
    code = "RouteNotFound"
    kind = "route"


class CustomerNotFound(NotFoundError):
    code = "CustomerNotFound"
    kind = "customer"


class LedgerStorageError(LedgerError):
    """Storage failed mid-operation; nothing was persisted and a retry is safe."""

    code = "LedgerStorageError"

    def __init__(self, operation: str, sheet_id: Optional[str] = None):
        self.operation = operation
        self.sheet_id = sheet_id
        super().__init__(f"Storage failure during {operation}" + (f" of sheet {sheet_id}" if sheet_id else ""))

    def to_dict(self) -> Dict[str, Any]:
        return {"operation": self.operation, "sheet_id": self.sheet_id}
