"""Shared pytest fixtures for the route ledger tests."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterator

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session

from route_ledger import db
from route_ledger.models import Customer, CustomerPrice, Product, Route, SheetState, CustomerSnapshot


def seed(session: Session) -> None:
    """Route R1 with two customers, route R2 with one, and three products.

    * ``P1`` default 20, ``C2`` has an override of 18
    * ``P2`` default 35
    * ``P3`` has no default price and no override anywhere
    """

    session.add(Route(id="R1", name="North Market"))
    session.add(Route(id="R2", name="Harbour Road"))
    session.add(Product(id="P1", name="Milk 1L", default_price=20.0))
    session.add(Product(id="P2", name="Curd 500g", default_price=35.0))
    session.add(Product(id="P3", name="Paneer 200g", default_price=None))
    session.commit()

    session.add(Customer(id="C1", name="Asha Stores", route_id="R1", outstanding_amount=100.0))
    session.add(Customer(id="C2", name="Bala Tea Stall", route_id="R1", outstanding_amount=-20.0))
    session.add(Customer(id="C3", name="Coastal Mart", route_id="R2", outstanding_amount=0.0))
    session.commit()

    session.add(CustomerPrice(customer_id="C2", product_id="P1", price=18.0))
    session.commit()


@pytest.fixture
def engine() -> Iterator[Engine]:
    """In-memory SQLite shared across threads through a single connection."""

    eng = db.make_engine("sqlite://", poolclass=StaticPool)
    db.init_db(eng)
    with Session(eng) as s:
        seed(s)
    yield eng
    eng.dispose()


@pytest.fixture
def file_engine(tmp_path: Path) -> Iterator[Engine]:
    """File-backed SQLite so concurrent sessions use separate connections."""

    eng = db.make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    db.init_db(eng)
    with Session(eng) as s:
        seed(s)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine: Engine) -> Iterator[Session]:
    with Session(engine) as s:
        yield s


@pytest.fixture
def products() -> dict:
    return {
        "P1": Product(id="P1", name="Milk 1L", default_price=20.0),
        "P2": Product(id="P2", name="Curd 500g", default_price=35.0),
        "P3": Product(id="P3", name="Paneer 200g", default_price=None),
    }


@pytest.fixture
def sheet_factory() -> Callable[..., SheetState]:
    """Build an in-memory sheet value without touching storage."""

    def _make(**overrides) -> SheetState:
        data = dict(
            id="ROUTE-20250101-080000-R1",
            route_id="R1",
            route_name="North Market",
            customers=[
                CustomerSnapshot(id="C1", name="Asha Stores", route_id="R1", outstanding_amount=100.0),
                CustomerSnapshot(id="C2", name="Bala Tea Stall", route_id="R1", outstanding_amount=-20.0,
                                 product_prices={"P1": 18.0}),
            ],
            route_outstanding=80.0,
        )
        data.update(overrides)
        return SheetState(**data)

    return _make
