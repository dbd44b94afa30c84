from __future__ import annotations

"""
Pydantic schemas (data models) used by the engine, the exporters and the API.

- TransactionRecord is the immutable shape supplied by the ledger collaborator.
- DisposalResult / TaxYearSummary are what the engine hands back; nothing here is persisted
  by the engine itself.

Why Decimal? Money + floating-point is dangerous. Every amount, price and total in these
models is an exact Decimal; rounding only happens in the exporters.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


class TxKind(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    SWAP = "SWAP"
    STAKE = "STAKE"
    UNSTAKE = "UNSTAKE"
    REWARD = "REWARD"
    AIRDROP = "AIRDROP"
    FEE = "FEE"


# Kinds that create a lot / realize a gain. SWAP is both (split into two legs by the normalizer).
ACQUISITION_KINDS = frozenset({TxKind.BUY, TxKind.TRANSFER_IN, TxKind.REWARD, TxKind.AIRDROP})
DISPOSAL_KINDS = frozenset({TxKind.SELL, TxKind.TRANSFER_OUT, TxKind.SWAP})


class LotMethod(str, Enum):
    FIFO = "FIFO"
    LIFO = "LIFO"
    HIFO = "HIFO"


class DiagnosticCode(str, Enum):
    MALFORMED_RECORD = "MALFORMED_RECORD"
    INSUFFICIENT_BASIS = "INSUFFICIENT_BASIS"
    PRICE_UNAVAILABLE = "PRICE_UNAVAILABLE"
    UNMATCHED_SWAP_LEG = "UNMATCHED_SWAP_LEG"


def dec_to_str(v: Decimal) -> str:
    s = format(v, "f")
    return s.rstrip("0").rstrip(".") if "." in s else s


class TransactionRecord(BaseModel):
    """
    One ledger row as synchronized from an exchange or wallet.

    Fields:
      id: unique ledger id.
      asset: symbol of the asset that moves (the input asset for a swap).
      kind: closed set of transaction kinds (TxKind).
      amount: non-negative magnitude; the normalizer rejects amount <= 0.
      price_usd / price_krw: unit price of `asset` at `timestamp`, either may be absent.
      fee, fee_asset: fee quantity and its asset (defaults to `asset`).
      timestamp: exact instant; naive values are taken as UTC.
      source_id: exchange/wallet origin, used for ordering and traceability.
      counter_asset, counter_amount: output leg of a swap.
      internal: set by the sync collaborator on transfers between the user's own accounts.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str = Field(..., min_length=1)
    asset: str = Field(..., min_length=1, description="Asset symbol, e.g. BTC")
    kind: TxKind
    amount: Decimal
    price_usd: Optional[Decimal] = None
    price_krw: Optional[Decimal] = None
    fee: Optional[Decimal] = None
    fee_asset: Optional[str] = None
    timestamp: datetime = Field(..., description="Instant of the transaction (UTC)")
    source_id: str = ""
    counter_asset: Optional[str] = None
    counter_amount: Optional[Decimal] = None
    internal: bool = False

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, v):
        if isinstance(v, TxKind) or v is None:
            return v
        s = str(v).strip().upper().replace("-", "_").replace(" ", "_")
        # "TransferIn" style keys from the ledger
        if s in {"TRANSFERIN", "TRANSFEROUT"}:
            s = s[:8] + "_" + s[8:]
        return s

    @field_validator("asset", "fee_asset", "counter_asset", mode="before")
    @classmethod
    def _upper_assets(cls, v):
        if v is None:
            return None
        s = str(v).strip().upper()
        return s or None

    @field_validator("source_id", mode="before")
    @classmethod
    def _source_str(cls, v):
        return "" if v is None else str(v).strip()

    @field_validator("timestamp")
    @classmethod
    def _as_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @property
    def effective_fee_asset(self) -> str:
        return self.fee_asset or self.asset

    @field_serializer("amount", "price_usd", "price_krw", "fee", "counter_amount")
    def _dec_to_str(self, v: Decimal | None) -> str | None:
        return None if v is None else dec_to_str(v)


class Diagnostic(BaseModel):
    """A skipped or flagged transaction, surfaced to the user next to the report."""

    model_config = ConfigDict(frozen=True)

    code: DiagnosticCode
    transaction_id: Optional[str] = None
    message: str


class LotTake(BaseModel):
    """How much of one lot a disposal consumed (audit trail)."""

    model_config = ConfigDict(frozen=True)

    lot_id: str
    quantity_taken: Decimal
    unit_cost: Decimal
    acquired_at: datetime
    unit_cost_krw: Optional[Decimal] = None

    @property
    def cost(self) -> Decimal:
        return self.quantity_taken * self.unit_cost


class DisposalResult(BaseModel):
    """
    Realized gain/loss for one disposal leg.

    gain_loss = proceeds_usd - cost_basis_consumed - fee_usd
    gain_loss_krw = proceeds_krw - cost_basis_krw - fee in KRW, where cost_basis_krw uses each
    lot's KRW cost at acquisition. None when some KRW figure could not be established.
    """

    model_config = ConfigDict(frozen=True)

    transaction_id: str
    asset: str
    kind: TxKind
    timestamp: datetime
    quantity: Decimal
    proceeds_usd: Decimal
    proceeds_krw: Optional[Decimal] = None
    cost_basis_consumed: Decimal
    cost_basis_krw: Optional[Decimal] = None
    fee_usd: Decimal = Decimal("0")
    gain_loss: Decimal
    gain_loss_krw: Optional[Decimal] = None
    lots_consumed: List[LotTake] = Field(default_factory=list)
    unmatched_quantity: Decimal = Decimal("0")
    warnings: List[Diagnostic] = Field(default_factory=list)

    @property
    def has_insufficient_basis(self) -> bool:
        return any(w.code == DiagnosticCode.INSUFFICIENT_BASIS for w in self.warnings)


class TaxLawParameters(BaseModel):
    """Statutory figures for one tax year. flat_rate_percent=22 means 22 %."""

    model_config = ConfigDict(frozen=True)

    year: int
    deduction_amount: Decimal = Field(..., ge=0)
    flat_rate_percent: Decimal = Field(..., ge=0, le=100)
    currency: Literal["KRW", "USD"] = "KRW"


class CalcConfig(BaseModel):
    year: int
    method: LotMethod = LotMethod.FIFO
    jurisdiction: Literal["KR"] = "KR"
    rule_version: str = "2025.1"
    workers: int = Field(1, ge=1, le=32)
    timezone: str = "UTC"  # calendar used to decide which year a disposal belongs to
    # KRW per USD used when neither the record nor the FX table gives a rate
    fallback_krw_per_usd: Decimal = Field(Decimal("1350"), gt=0)


class TaxYearSummary(BaseModel):
    """
    The report contract handed to rendering/export collaborators.

    All figures are in `currency` and unrounded; exporters round for display.
    """

    year: int
    method: LotMethod
    jurisdiction: str = "KR"
    rule_version: str = ""
    currency: Literal["KRW", "USD"]
    total_gains: Decimal
    total_losses: Decimal
    net_gains: Decimal
    deduction: Decimal
    taxable_gains: Decimal
    estimated_tax: Decimal
    flat_rate_percent: Decimal
    disposals: List[DisposalResult] = Field(default_factory=list)
    diagnostics: List[Diagnostic] = Field(default_factory=list)


class CSVPreviewResponse(BaseModel):
    """
    API response model for /upload/csv (preview only).
    """

    filename: str
    total_valid: int
    total_errors: int
    preview_first_5: List[TransactionRecord]
    errors: List[Any]


class ImportCSVResponse(BaseModel):
    """
    API response model for /import/csv (persists to the ledger).
    """

    filename: str
    inserted: int
    skipped_duplicates: int
    skipped_errors: int
    note: str
