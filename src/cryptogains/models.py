from __future__ import annotations
import datetime
from decimal import Decimal
from sqlalchemy import Boolean, Date, DateTime, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# ---------- Base ----------
class Base(DeclarativeBase):
    pass

# ---------- Decimal helper (exact, stored as text) ----------
class DecimalText(TypeDecorator):
    """Crypto quantities need more than a fixed scale (satoshi, 18-dp tokens), so keep the exact string."""
    impl = String(64)
    cache_ok = True
    def process_bind_param(self, value, dialect):
        if value is None: return None
        return format(Decimal(value), "f")
    def process_result_value(self, value, dialect):
        if value is None: return None
        return Decimal(value)

# ---------- ORM models ----------
class LedgerTransaction(Base):
    """Transaction ledger table, written by the sync collaborators and keyed by source."""
    __tablename__ = "transactions"
    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    source_id: Mapped[str] = mapped_column(String(64), nullable=False, default="", index=True)

    # Store as naive UTC datetimes in SQLite
    timestamp: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    # Use String to avoid Enum friction with CSV/parser; validated when read back
    kind: Mapped[str] = mapped_column(String(32), nullable=False, index=True)

    asset: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    price_usd: Mapped[Decimal | None] = mapped_column(DecimalText, nullable=True)
    price_krw: Mapped[Decimal | None] = mapped_column(DecimalText, nullable=True)

    fee: Mapped[Decimal | None] = mapped_column(DecimalText, nullable=True)
    fee_asset: Mapped[str | None] = mapped_column(String(32), nullable=True)

    counter_asset: Mapped[str | None] = mapped_column(String(32), nullable=True)
    counter_amount: Mapped[Decimal | None] = mapped_column(DecimalText, nullable=True)
    internal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=False),
        nullable=False,
        default=lambda: datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None),
    )

Index("idx_transactions_ts", LedgerTransaction.timestamp, LedgerTransaction.source_id, LedgerTransaction.id)

# Daily USDKRW reference rates
class FxRate(Base):
    __tablename__ = "fx_rates"
    # Use the calendar date as the logical key
    date: Mapped[datetime.date] = mapped_column(Date, primary_key=True)
    krw_per_usd: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    source: Mapped[str | None] = mapped_column(String(64), nullable=True)

# Historical USD quotes used when a reward/airdrop/transfer lacks a price
class PriceQuote(Base):
    __tablename__ = "price_quotes"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    asset: Mapped[str] = mapped_column(String(32), nullable=False)
    timestamp: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    price_usd: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)

Index("idx_price_quotes_asset_ts", PriceQuote.asset, PriceQuote.timestamp)
