from __future__ import annotations
import logging
import os
from typing import Optional

from fastapi import FastAPI, Request, Form, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlmodel import Session, select

from . import balances, sheets
from .auth import COOKIE, authenticate, create_token, ensure_admin, require_roles
from .db import engine, init_db
from .errors import LedgerError, LifecycleError, NotFoundError, SheetValidationError, LedgerStorageError
from .models import (
    Customer, Invoice, LedgerTransaction,
    SheetCreate, SheetUpdate, LineUpdate, PaymentUpdate, StandalonePayment,
)
from .validation import validate

log = logging.getLogger(__name__)

ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")

app = FastAPI(title="Route Ledger")

# Drivers enter the day's sheet, billing closes it, accounts takes walk-in payments
signed_in = require_roles()
can_edit = require_roles("ADMIN", "BILLING", "DRIVER")
can_close = require_roles("ADMIN", "BILLING")
can_collect = require_roles("ADMIN", "ACCOUNTS")


@app.on_event("startup")
def _startup():
    init_db(engine)
    # Create default admin on first run
    with Session(engine) as s:
        ensure_admin(s, ADMIN_PASSWORD)


# ---------------- Errors ----------------
def _status_for(exc: LedgerError) -> int:
    if isinstance(exc, SheetValidationError):
        return 422
    if isinstance(exc, LifecycleError):
        return 409
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, LedgerStorageError):
        return 503
    return 400


@app.exception_handler(LedgerError)
def ledger_error_handler(request: Request, exc: LedgerError):
    return JSONResponse(
        status_code=_status_for(exc),
        content={"error": exc.code, "message": str(exc), "detail": exc.to_dict()},
    )


# ---------------- Login / Logout ----------------
@app.post("/login")
def login(username: str = Form(...), password: str = Form(...)):
    with Session(engine) as s:
        u = authenticate(s, username, password)
        if not u:
            raise HTTPException(401, "Invalid username or password")
        token = create_token(u.username, u.role)

    resp = JSONResponse({"token": token, "role": u.role})
    resp.set_cookie(COOKIE, token, httponly=True, samesite="lax")
    return resp


@app.get("/logout")
def logout():
    resp = JSONResponse({"ok": True})
    resp.delete_cookie(COOKIE)
    return resp


# ---------------- Sheets ----------------
@app.get("/sheets")
def sheets_list(route_id: Optional[str] = None, status: Optional[str] = None, u=Depends(signed_in)):
    if status and status not in ("active", "closed"):
        raise HTTPException(400, "status must be 'active' or 'closed'")
    with Session(engine) as s:
        return sheets.list_sheets(s, route_id=route_id, status=status)


@app.get("/routes/{route_id}/active-sheet")
def route_active_sheet(route_id: str, u=Depends(signed_in)):
    with Session(engine) as s:
        found = sheets.find_active_sheet(s, route_id)
    return {"route_id": route_id, "active_sheet_id": found.id if found else None}


@app.post("/sheets", status_code=201)
def sheet_create(payload: SheetCreate, u=Depends(can_edit)):
    with Session(engine) as s:
        return sheets.create_sheet(s, payload.route_id, payload.notes)


@app.get("/sheets/{sheet_id}")
def sheet_view(sheet_id: str, u=Depends(signed_in)):
    with Session(engine) as s:
        return sheets.get_sheet(s, sheet_id)


@app.put("/sheets/{sheet_id}")
def sheet_update(sheet_id: str, payload: SheetUpdate, u=Depends(can_edit)):
    with Session(engine) as s:
        return sheets.update_sheet(s, sheet_id, payload.delivery_data, payload.amount_received, payload.notes)


@app.put("/sheets/{sheet_id}/lines")
def sheet_set_line(sheet_id: str, payload: LineUpdate, u=Depends(can_edit)):
    with Session(engine) as s:
        return sheets.set_sheet_quantity(s, sheet_id, payload.customer_id, payload.product_id, payload.quantity)


@app.put("/sheets/{sheet_id}/payments")
def sheet_set_payment(sheet_id: str, payload: PaymentUpdate, u=Depends(can_edit)):
    with Session(engine) as s:
        return sheets.set_sheet_received(s, sheet_id, payload.customer_id, payload.channel, payload.amount)


@app.post("/sheets/{sheet_id}/validate")
def sheet_validate(sheet_id: str, u=Depends(signed_in)):
    with Session(engine) as s:
        found = validate(sheets.get_sheet(s, sheet_id), sheets.load_products(s))
    return {"sheet_id": sheet_id, "valid": not found, "violations": [v.to_dict() for v in found]}


@app.post("/sheets/{sheet_id}/close")
def sheet_close(sheet_id: str, u=Depends(can_close)):
    with Session(engine) as s:
        return sheets.close_sheet(s, sheet_id)


@app.delete("/sheets/{sheet_id}")
def sheet_delete(sheet_id: str, u=Depends(can_close)):
    with Session(engine) as s:
        sheets.delete_sheet(s, sheet_id)
    return {"deleted": sheet_id}


@app.get("/sheets/{sheet_id}/summary")
def sheet_summary(sheet_id: str, u=Depends(signed_in)):
    with Session(engine) as s:
        return sheets.sheet_summary(s, sheet_id)


@app.get("/sheets/{sheet_id}/invoices")
def sheet_invoices(sheet_id: str, u=Depends(signed_in)):
    with Session(engine) as s:
        sheets.get_sheet(s, sheet_id)
        return s.exec(select(Invoice).where(Invoice.sheet_id == sheet_id).order_by(Invoice.id)).all()


# ---------------- Balances / payments ----------------
@app.get("/customers/{customer_id}/balance")
def customer_balance(customer_id: str, u=Depends(signed_in)):
    with Session(engine) as s:
        return {"customer_id": customer_id, "outstanding_amount": balances.get_outstanding(s, customer_id)}


@app.get("/customers/{customer_id}/transactions")
def customer_transactions(customer_id: str, u=Depends(signed_in)):
    with Session(engine) as s:
        if not s.get(Customer, customer_id):
            raise HTTPException(404, "Customer not found")
        return s.exec(
            select(LedgerTransaction)
            .where(LedgerTransaction.customer_id == customer_id)
            .order_by(LedgerTransaction.date.desc())
        ).all()


@app.post("/payments", status_code=201)
def add_payment(payload: StandalonePayment, u=Depends(can_collect)):
    with Session(engine) as s:
        return balances.record_payment(s, payload.customer_id, payload.amount, payload.mode, payload.note)
