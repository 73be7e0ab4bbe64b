from __future__ import annotations

import os

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    func,
)
from sqlalchemy.engine import Engine

DEFAULT_DATABASE_URL = "sqlite:///./ledger.db"
MONEY = Numeric(38, 18)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("default_account_id", String(36)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(20), nullable=False, server_default="cash"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

account_assets = Table(
    "account_assets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
    Column("currency", String(16), nullable=False),
    Column("amount", MONEY, nullable=False),
    UniqueConstraint("account_id", "currency", name="uq_account_assets_account_currency"),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("direction", String(20), nullable=False),
    Column("account_id", String(36), ForeignKey("accounts.id"), nullable=False),
    Column("from_account_id", String(36), ForeignKey("accounts.id")),
    Column("to_account_id", String(36), ForeignKey("accounts.id")),
    Column("amount", MONEY, nullable=False),
    Column("currency", String(16), nullable=False),
    Column("converted_amount", MONEY),
    Column("convert_to_currency", String(16)),
    Column("trade_type", String(4)),
    Column("trade_base_currency", String(16)),
    Column("trade_base_amount", MONEY),
    Column("trade_quote_currency", String(16)),
    Column("trade_quote_amount", MONEY),
    Column("execution_price", MONEY),
    Column("trade_fee_currency", String(16)),
    Column("trade_fee_amount", MONEY),
    Column("description", String(500)),
    Column("raw_text", Text),
    Column("transaction_date", DateTime, nullable=False, server_default=func.now()),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)


def get_database_url(default: str | None = None) -> str | None:
    return os.getenv("DATABASE_URL") or default


def create_db_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, connect_args=connect_args)
