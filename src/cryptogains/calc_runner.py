from __future__ import annotations

"""
One report run: ledger snapshot -> normalize -> per-asset disposal processing -> aggregate.

Lot consumption is sequential within an asset but independent across assets, so the leg
stream is sharded by asset. Shards run in a thread pool when config.workers > 1; results are
merged back in global stream order so the summary is identical to a serial run.

Every run owns its inventories. A cancelled or failed run leaves nothing behind.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from .aggregator import aggregate
from .disposal_engine import ProcessOutcome, process
from .fx_utils import FxConverter, PriceLookup, load_fx_table, load_price_table
from .ledger import load_ledger
from .lots import LotInventory
from .normalizer import Leg, normalize
from .rules import TaxLawTable, load_law_table
from .schemas import CalcConfig, Diagnostic, DisposalResult, TaxYearSummary, TransactionRecord

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    summary: TaxYearSummary
    inventory: LotInventory
    all_disposals: List[DisposalResult]


def shard_by_asset(legs: Iterable[Leg]) -> Dict[str, List[Leg]]:
    shards: Dict[str, List[Leg]] = {}
    for leg in legs:
        shards.setdefault(leg.asset, []).append(leg)
    return shards


def _process_shards(
    shards: Dict[str, List[Leg]],
    config: CalcConfig,
    prices: Optional[PriceLookup],
    fx: Optional[FxConverter],
    cancel: Optional[threading.Event],
) -> List[Tuple[str, ProcessOutcome]]:
    assets = sorted(shards)

    def run(asset: str) -> ProcessOutcome:
        return process(
            shards[asset],
            config.method,
            prices=prices,
            fx=fx,
            cancel=cancel,
            fallback_krw_per_usd=config.fallback_krw_per_usd,
        )

    if config.workers <= 1 or len(assets) <= 1:
        return [(asset, run(asset)) for asset in assets]

    with ThreadPoolExecutor(max_workers=config.workers, thread_name_prefix="cryptogains") as pool:
        futures = [(asset, pool.submit(run, asset)) for asset in assets]
        try:
            return [(asset, fut.result()) for asset, fut in futures]
        except BaseException:
            # Stop the remaining shards before the pool joins them.
            if cancel is not None:
                cancel.set()
            for _, fut in futures:
                fut.cancel()
            raise


def compute(
    records: Iterable[TransactionRecord],
    config: CalcConfig,
    law_table: TaxLawTable,
    prices: Optional[PriceLookup] = None,
    fx: Optional[FxConverter] = None,
    cancel: Optional[threading.Event] = None,
    extra_diagnostics: Iterable[Diagnostic] = (),
) -> RunResult:
    """Full run over an in-memory record set; returns the summary plus the final inventory."""
    # Missing law parameters are fatal; fail before doing any work.
    law_table.parameters(config.year)

    logger.info("Run start: year=%s method=%s workers=%s", config.year, config.method.value, config.workers)
    legs, diagnostics = normalize(records)
    diagnostics = list(extra_diagnostics) + diagnostics
    sequence_of = {leg.leg_id: leg.sequence for leg in legs}
    # Diagnostics are keyed by record id; a swap's legs share it.
    record_sequence: Dict[str, int] = {}
    for leg in legs:
        record_sequence.setdefault(leg.record_id, leg.sequence)

    outcomes = _process_shards(shard_by_asset(legs), config, prices, fx, cancel)

    inventory = LotInventory()
    disposals: List[DisposalResult] = []
    engine_diagnostics: List[Diagnostic] = []
    for _, outcome in outcomes:
        inventory.merge(outcome.inventory)
        disposals.extend(outcome.disposals)
        engine_diagnostics.extend(outcome.diagnostics)

    disposals.sort(key=lambda d: sequence_of[d.transaction_id])
    # Stable sort: diagnostics of the same record keep their shard order.
    engine_diagnostics.sort(key=lambda d: record_sequence.get(d.transaction_id or "", -1))
    diagnostics.extend(engine_diagnostics)

    summary = aggregate(
        disposals,
        config.year,
        law_table,
        config.method,
        diagnostics=diagnostics,
        tz=config.timezone,
        rule_version=config.rule_version,
        fallback_krw_per_usd=config.fallback_krw_per_usd,
    )
    logger.info(
        "Run finish: year=%s method=%s disposals=%d (all years %d) diagnostics=%d",
        config.year, config.method.value, len(summary.disposals), len(disposals), len(summary.diagnostics),
    )
    return RunResult(summary=summary, inventory=inventory, all_disposals=disposals)


def run_report(
    records: Iterable[TransactionRecord],
    config: CalcConfig,
    law_table: TaxLawTable,
    prices: Optional[PriceLookup] = None,
    fx: Optional[FxConverter] = None,
    cancel: Optional[threading.Event] = None,
) -> TaxYearSummary:
    return compute(records, config, law_table, prices=prices, fx=fx, cancel=cancel).summary


def run_calculation(
    session: Session,
    cfg: CalcConfig,
    law_table: Optional[TaxLawTable] = None,
    cancel: Optional[threading.Event] = None,
) -> TaxYearSummary:
    """
    Read the ledger, FX and price tables once (snapshot), then run without touching the
    session again. Rows that fail validation are reported, not raised.
    """
    law_table = law_table if law_table is not None else load_law_table(cfg.jurisdiction)
    records, load_errors = load_ledger(session)
    fx = load_fx_table(session)
    prices = load_price_table(session)
    return compute(
        records, cfg, law_table, prices=prices, fx=fx, cancel=cancel, extra_diagnostics=load_errors
    ).summary
