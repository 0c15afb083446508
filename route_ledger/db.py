import os

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

DB_URL = os.getenv("DB_URL", "sqlite:///./route_ledger.db")
DB_ECHO = os.getenv("DB_ECHO", "0") == "1"


def make_engine(url: str = DB_URL, **kwargs) -> Engine:
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", 30)
        kwargs["connect_args"] = connect_args
    eng = create_engine(url, echo=DB_ECHO, **kwargs)
    if url.startswith("sqlite"):
        event.listen(eng, "connect", _sqlite_pragmas)
    return eng


def _sqlite_pragmas(dbapi_conn, _record):
    cur = dbapi_conn.cursor()
    cur.execute("PRAGMA foreign_keys=ON")
    cur.close()


engine = make_engine()


def init_db(eng: Engine = None):
    SQLModel.metadata.create_all(eng or engine)

