"""
Ledger folds
============
Pure computations over an ordered list of ledger entries:

- inventory positions per (category, subcategory) with weighted-average cost
- vendor balances, clamped at zero after every event
- the daily summary report

Nothing in this module touches the database. Entries are always consumed in
(business_date, id) order, so the same entries give the same output no matter
how the caller ordered them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from meatshop.models import (
    EVENT_HOTEL_SALE,
    EVENT_PURCHASE,
    EVENT_RETAIL_SALE,
    EVENT_VENDOR_PAYMENT,
    SALE_KINDS,
)

ZERO = Decimal("0")

WINDOW_CUMULATIVE = "cumulative"
WINDOW_DAY = "day"


@dataclass(frozen=True)
class LedgerEntry:
    id: int
    kind: str
    business_date: date
    recorded_at: datetime
    category: Optional[str] = None
    subcategory: Optional[str] = None
    quantity_kg: Decimal = ZERO
    rate_per_kg: Decimal = ZERO
    total: Decimal = ZERO
    amount: Decimal = ZERO
    vendor_id: Optional[int] = None
    hotel_id: Optional[int] = None
    hotel_bill_id: Optional[int] = None
    product_id: Optional[int] = None
    notes: Optional[str] = None

    @property
    def partition(self) -> tuple[str, str]:
        return (self.category or "", self.subcategory or "")

    def to_dict(self) -> dict:
        return {
            "event_id": self.id,
            "kind": self.kind,
            "business_date": self.business_date.isoformat(),
            "recorded_at": self.recorded_at.isoformat(),
            "vendor_id": self.vendor_id,
            "hotel_id": self.hotel_id,
            "hotel_bill_id": self.hotel_bill_id,
            "product_id": self.product_id,
            "category": self.category,
            "subcategory": self.subcategory,
            "quantity_kg": float(self.quantity_kg) if self.kind != EVENT_VENDOR_PAYMENT else None,
            "rate_per_kg": float(self.rate_per_kg) if self.kind != EVENT_VENDOR_PAYMENT else None,
            "total": float(self.total) if self.kind != EVENT_VENDOR_PAYMENT else None,
            "amount": float(self.amount) if self.kind == EVENT_VENDOR_PAYMENT else None,
            "notes": self.notes,
        }


def ordered(entries: Iterable[LedgerEntry]) -> list[LedgerEntry]:
    return sorted(entries, key=lambda e: (e.business_date, e.id))


@dataclass
class InventoryPosition:
    category: str
    subcategory: str
    purchased_kg: Decimal = ZERO
    sold_kg: Decimal = ZERO
    purchase_cost: Decimal = ZERO

    @property
    def remaining_kg(self) -> Decimal:
        return self.purchased_kg - self.sold_kg

    @property
    def avg_cost_per_kg(self) -> Decimal:
        if not self.purchased_kg:
            return ZERO
        return self.purchase_cost / self.purchased_kg

    @property
    def stock_value(self) -> Decimal:
        return self.remaining_kg * self.avg_cost_per_kg

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "subcategory": self.subcategory,
            "purchased_kg": float(self.purchased_kg),
            "sold_kg": float(self.sold_kg),
            "remaining_kg": float(self.remaining_kg),
            "avg_cost_per_kg": float(round(self.avg_cost_per_kg, 4)),
            "stock_value": float(round(self.stock_value, 2)),
        }


def aggregate_inventory(
    entries: Iterable[LedgerEntry],
    primary_category: str = "chicken",
) -> list[InventoryPosition]:
    positions: dict[tuple[str, str], InventoryPosition] = {}
    for entry in ordered(entries):
        if entry.kind == EVENT_VENDOR_PAYMENT:
            continue
        key = entry.partition
        position = positions.get(key)
        if position is None:
            position = positions[key] = InventoryPosition(category=key[0], subcategory=key[1])
        if entry.kind == EVENT_PURCHASE:
            position.purchased_kg += entry.quantity_kg
            position.purchase_cost += entry.quantity_kg * entry.rate_per_kg
        elif entry.kind in SALE_KINDS:
            position.sold_kg += entry.quantity_kg
    # Stable sort keeps first-seen subcategory order inside each category.
    return sorted(
        positions.values(),
        key=lambda p: (p.category != primary_category, p.category),
    )


def position_for(
    entries: Iterable[LedgerEntry],
    category: str,
    subcategory: str,
) -> InventoryPosition:
    matching = [e for e in entries if e.partition == (category, subcategory)]
    positions = aggregate_inventory(matching)
    if positions:
        return positions[0]
    return InventoryPosition(category=category, subcategory=subcategory)


def inventory_window(
    entries: Iterable[LedgerEntry],
    business_date: date,
    window: str = WINDOW_CUMULATIVE,
    primary_category: str = "chicken",
) -> list[InventoryPosition]:
    if window == WINDOW_CUMULATIVE:
        selected = [e for e in entries if e.business_date <= business_date]
    elif window == WINDOW_DAY:
        selected = [e for e in entries if e.business_date == business_date]
    else:
        raise ValueError(f"unknown inventory window: {window}")
    return aggregate_inventory(selected, primary_category)


@dataclass(frozen=True)
class StatementLine:
    event_id: int
    kind: str
    business_date: date
    delta: Decimal
    balance: Decimal

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "kind": self.kind,
            "business_date": self.business_date.isoformat(),
            "delta": float(self.delta),
            "balance": float(self.balance),
        }


def _balance_delta(entry: LedgerEntry) -> Decimal:
    if entry.kind == EVENT_PURCHASE:
        return entry.total
    if entry.kind == EVENT_VENDOR_PAYMENT:
        return -entry.amount
    return ZERO


def fold_vendor_statement(entries: Iterable[LedgerEntry]) -> list[StatementLine]:
    """Running balance after each purchase/payment.

    The clamp at zero is applied at every step, so an overpayment is lost
    rather than carried forward as credit. Because of that the fold has to be
    replayed from the start whenever an earlier event disappears.
    """
    balance = ZERO
    lines: list[StatementLine] = []
    for entry in ordered(entries):
        if entry.kind not in (EVENT_PURCHASE, EVENT_VENDOR_PAYMENT):
            continue
        delta = _balance_delta(entry)
        balance = max(ZERO, balance + delta)
        lines.append(
            StatementLine(
                event_id=entry.id,
                kind=entry.kind,
                business_date=entry.business_date,
                delta=delta,
                balance=balance,
            )
        )
    return lines


def fold_vendor_balance(entries: Iterable[LedgerEntry]) -> Decimal:
    lines = fold_vendor_statement(entries)
    return lines[-1].balance if lines else ZERO


@dataclass
class DailySummary:
    business_date: date
    total_purchased_kg: Decimal = ZERO
    total_purchase_cost: Decimal = ZERO
    total_retail_sales_kg: Decimal = ZERO
    total_retail_revenue: Decimal = ZERO
    retail_profit: Decimal = ZERO
    total_hotel_sales_kg: Decimal = ZERO
    total_hotel_revenue: Decimal = ZERO
    hotel_profit: Decimal = ZERO
    vendor_payments_total: Decimal = ZERO
    remaining_kg: Decimal = ZERO
    positions: list[InventoryPosition] = field(default_factory=list)
    day_positions: list[InventoryPosition] = field(default_factory=list)
    transactions: list[LedgerEntry] = field(default_factory=list)

    @property
    def total_sold_kg(self) -> Decimal:
        return self.total_retail_sales_kg + self.total_hotel_sales_kg

    @property
    def net_profit(self) -> Decimal:
        return self.retail_profit + self.hotel_profit

    def to_dict(self) -> dict:
        return {
            "business_date": self.business_date.isoformat(),
            "total_purchased_kg": float(self.total_purchased_kg),
            "total_purchase_cost": float(self.total_purchase_cost),
            "total_retail_sales_kg": float(self.total_retail_sales_kg),
            "total_retail_revenue": float(self.total_retail_revenue),
            "retail_profit": float(round(self.retail_profit, 2)),
            "total_hotel_sales_kg": float(self.total_hotel_sales_kg),
            "total_hotel_revenue": float(self.total_hotel_revenue),
            "hotel_profit": float(round(self.hotel_profit, 2)),
            "total_sold_kg": float(self.total_sold_kg),
            "remaining_kg": float(self.remaining_kg),
            "net_profit": float(round(self.net_profit, 2)),
            "vendor_payments_total": float(self.vendor_payments_total),
            "positions": [p.to_dict() for p in self.positions],
            "day_positions": [p.to_dict() for p in self.day_positions],
            "transactions": [t.to_dict() for t in self.transactions],
        }


def compile_daily_summary(
    entries: Iterable[LedgerEntry],
    business_date: date,
    primary_category: str = "chicken",
) -> DailySummary:
    history = [e for e in entries if e.business_date <= business_date]
    positions = inventory_window(history, business_date, WINDOW_CUMULATIVE, primary_category)
    day_positions = inventory_window(history, business_date, WINDOW_DAY, primary_category)
    avg_cost = {(p.category, p.subcategory): p.avg_cost_per_kg for p in positions}

    summary = DailySummary(
        business_date=business_date,
        positions=positions,
        day_positions=day_positions,
        remaining_kg=sum((p.remaining_kg for p in positions), ZERO),
    )
    day_entries = [e for e in history if e.business_date == business_date]
    for entry in day_entries:
        if entry.kind == EVENT_PURCHASE:
            summary.total_purchased_kg += entry.quantity_kg
            summary.total_purchase_cost += entry.total
        elif entry.kind == EVENT_VENDOR_PAYMENT:
            summary.vendor_payments_total += entry.amount
        elif entry.kind in SALE_KINDS:
            profit = entry.total - entry.quantity_kg * avg_cost.get(entry.partition, ZERO)
            if entry.kind == EVENT_RETAIL_SALE:
                summary.total_retail_sales_kg += entry.quantity_kg
                summary.total_retail_revenue += entry.total
                summary.retail_profit += profit
            elif entry.kind == EVENT_HOTEL_SALE:
                summary.total_hotel_sales_kg += entry.quantity_kg
                summary.total_hotel_revenue += entry.total
                summary.hotel_profit += profit
    summary.transactions = sorted(day_entries, key=lambda e: (e.recorded_at, e.id))
    return summary


def compile_range_summaries(
    entries: Iterable[LedgerEntry],
    date_from: date,
    date_to: date,
    primary_category: str = "chicken",
) -> list[DailySummary]:
    history = [e for e in entries if e.business_date <= date_to]
    summaries = []
    day = date_from
    while day <= date_to:
        summaries.append(compile_daily_summary(history, day, primary_category))
        day += timedelta(days=1)
    return summaries
