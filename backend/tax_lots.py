"""
FIFO lot matching for realized gains.

Acquisitions open lots, disposals consume the oldest open lots first
(by date, then insertion order). Only disposals inside the slice's window
produce matches; earlier disposals just use up lots.
"""

from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

from valuation_service import RealizedGainSlice, LotEvent

CENT = Decimal("0.01")
LONG_TERM_DAYS = 365


@dataclass
class OpenLot:
    transaction_id: int
    acquired: date
    qty: Decimal
    unit_cost: Decimal


@dataclass
class LotMatch:
    disposal_id: int
    acquisition_id: Optional[int]  # None for quantity with no matching lot
    symbol: str
    acquired: Optional[date]
    disposed: date
    qty: Decimal
    proceeds: Decimal
    cost_basis: Decimal
    gain: Decimal
    is_long_term: bool


@dataclass
class FifoResult:
    account_id: int
    is_taxable: bool
    is_tax_deferred: bool
    matches: List[LotMatch] = field(default_factory=list)
    unmatched_qty: Dict[int, Decimal] = field(default_factory=dict)  # disposal id -> qty

    @property
    def realized_gain(self) -> Decimal:
        return sum((m.gain for m in self.matches), Decimal("0")).quantize(CENT)

    @property
    def short_term_gain(self) -> Decimal:
        return sum((m.gain for m in self.matches if not m.is_long_term), Decimal("0")).quantize(CENT)

    @property
    def long_term_gain(self) -> Decimal:
        return sum((m.gain for m in self.matches if m.is_long_term), Decimal("0")).quantize(CENT)

    @property
    def reportable(self) -> bool:
        """Tax-deferred accounts do not realize gains for the year."""
        return self.is_taxable and not self.is_tax_deferred


def _unit_cost(event: LotEvent) -> Decimal:
    if event.qty == 0:
        return Decimal("0")
    if event.cost is not None:
        total = abs(event.cost)
    elif event.amount:
        total = abs(event.amount)
    elif event.price is not None:
        total = abs(event.price) * event.qty
    else:
        total = Decimal("0")
    return total / event.qty


def _proceeds(event: LotEvent) -> Decimal:
    if event.amount:
        return abs(event.amount)
    if event.price is not None:
        return abs(event.price) * event.qty
    return Decimal("0")


def match_fifo(gain_slice: RealizedGainSlice) -> FifoResult:
    """Match every in-window disposal against the oldest open lots."""
    result = FifoResult(
        account_id=gain_slice.account_id,
        is_taxable=gain_slice.is_taxable,
        is_tax_deferred=gain_slice.is_tax_deferred,
    )
    in_window = {d.transaction_id for d in gain_slice.disposals}

    events = [(e.trans_date, e.transaction_id, +1, e) for e in gain_slice.acquisitions]
    events += [(e.trans_date, e.transaction_id, -1, e) for e in gain_slice.prior_disposals]
    events += [(e.trans_date, e.transaction_id, -1, e) for e in gain_slice.disposals]
    events.sort(key=lambda item: (item[0], item[1]))

    lots: Dict[int, deque] = defaultdict(deque)

    for trans_date, transaction_id, direction, event in events:
        if direction > 0:
            lots[event.asset_id].append(OpenLot(transaction_id, trans_date, event.qty, _unit_cost(event)))
            continue

        remaining = event.qty
        unit_proceeds = _proceeds(event) / event.qty if event.qty else Decimal("0")
        queue = lots[event.asset_id]

        while remaining > 0 and queue:
            lot = queue[0]
            taken = min(lot.qty, remaining)
            lot.qty -= taken
            remaining -= taken
            if lot.qty == 0:
                queue.popleft()

            if transaction_id in in_window:
                proceeds = (unit_proceeds * taken).quantize(CENT)
                cost_basis = (lot.unit_cost * taken).quantize(CENT)
                result.matches.append(LotMatch(
                    disposal_id=transaction_id,
                    acquisition_id=lot.transaction_id,
                    symbol=event.symbol,
                    acquired=lot.acquired,
                    disposed=trans_date,
                    qty=taken,
                    proceeds=proceeds,
                    cost_basis=cost_basis,
                    gain=proceeds - cost_basis,
                    is_long_term=(trans_date - lot.acquired).days > LONG_TERM_DAYS,
                ))

        if remaining > 0 and transaction_id in in_window:
            # Selling more than was ever acquired here: report, never invent a basis
            result.unmatched_qty[transaction_id] = remaining

    return result
