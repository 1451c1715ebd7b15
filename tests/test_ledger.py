from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from meatshop.ledger import (
    WINDOW_DAY,
    LedgerEntry,
    aggregate_inventory,
    compile_daily_summary,
    fold_vendor_balance,
    fold_vendor_statement,
    inventory_window,
    position_for,
)

D1 = date(2026, 10, 18)
D2 = date(2026, 10, 19)
T0 = datetime(2026, 10, 18, 6, 0, tzinfo=timezone.utc)


def _entry(
    event_id: int,
    kind: str,
    day: date = D2,
    qty: str = "0",
    rate: str = "0",
    category: str = "chicken",
    subcategory: str = "whole",
    amount: str = "0",
    vendor_id: int = 1,
) -> LedgerEntry:
    quantity, price = Decimal(qty), Decimal(rate)
    return LedgerEntry(
        id=event_id,
        kind=kind,
        business_date=day,
        recorded_at=T0 + timedelta(minutes=event_id),
        category=None if kind == "vendor_payment" else category,
        subcategory=None if kind == "vendor_payment" else subcategory,
        quantity_kg=quantity,
        rate_per_kg=price,
        total=(quantity * price).quantize(Decimal("0.01")),
        amount=Decimal(amount),
        vendor_id=vendor_id,
    )


def test_weighted_average_cost() -> None:
    entries = [
        _entry(1, "purchase", qty="2", rate="100"),
        _entry(2, "purchase", qty="3", rate="150"),
    ]
    position = position_for(entries, "chicken", "whole")
    assert position.purchased_kg == Decimal("5")
    assert position.avg_cost_per_kg == Decimal("130")


def test_avg_cost_is_zero_without_purchases() -> None:
    position = position_for([_entry(1, "retail_sale", qty="1", rate="300")], "chicken", "whole")
    assert position.avg_cost_per_kg == 0
    assert position.remaining_kg == Decimal("-1")


def test_positions_sort_primary_category_first() -> None:
    entries = [
        _entry(1, "purchase", qty="1", rate="900", category="mutton", subcategory="whole"),
        _entry(2, "purchase", qty="1", rate="400", category="beef", subcategory="mince"),
        _entry(3, "purchase", qty="1", rate="300", category="chicken", subcategory="whole"),
        _entry(4, "purchase", qty="1", rate="450", category="chicken", subcategory="breast"),
        _entry(5, "purchase", qty="1", rate="350", category="chicken", subcategory="leg"),
    ]
    keys = [(p.category, p.subcategory) for p in aggregate_inventory(entries)]
    assert keys == [
        ("chicken", "whole"),
        ("chicken", "breast"),
        ("chicken", "leg"),
        ("beef", "mince"),
        ("mutton", "whole"),
    ]


def test_aggregation_is_deterministic_regardless_of_input_order() -> None:
    entries = [
        _entry(1, "purchase", qty="2", rate="100"),
        _entry(2, "purchase", qty="1", rate="400", subcategory="leg"),
        _entry(3, "retail_sale", qty="1", rate="200"),
        _entry(4, "hotel_sale", qty="0.5", rate="500", subcategory="leg"),
    ]
    forward = [p.to_dict() for p in aggregate_inventory(entries)]
    backward = [p.to_dict() for p in aggregate_inventory(list(reversed(entries)))]
    assert forward == backward
    assert forward[0]["sold_kg"] == 1.0
    assert forward[1]["remaining_kg"] == 0.5


def test_inventory_windows() -> None:
    entries = [
        _entry(1, "purchase", day=D1, qty="4", rate="200"),
        _entry(2, "purchase", day=D2, qty="1", rate="250"),
        _entry(3, "retail_sale", day=D2, qty="2", rate="300"),
    ]
    cumulative = inventory_window(entries, D2)
    day_only = inventory_window(entries, D2, WINDOW_DAY)
    assert cumulative[0].remaining_kg == Decimal("3")
    assert day_only[0].purchased_kg == Decimal("1")
    assert day_only[0].remaining_kg == Decimal("-1")
    with pytest.raises(ValueError):
        inventory_window(entries, D2, "week")


def test_balance_never_negative_at_any_prefix() -> None:
    entries = [
        _entry(1, "purchase", qty="10", rate="100"),
        _entry(2, "vendor_payment", amount="400"),
        _entry(3, "vendor_payment", amount="900"),
        _entry(4, "purchase", qty="1", rate="250"),
        _entry(5, "vendor_payment", amount="1000"),
    ]
    lines = fold_vendor_statement(entries)
    assert [line.balance for line in lines] == [
        Decimal("1000"),
        Decimal("600"),
        Decimal("0"),
        Decimal("250"),
        Decimal("0"),
    ]
    assert all(line.balance >= 0 for line in lines)


def test_balance_refold_after_removing_payment() -> None:
    purchase = _entry(1, "purchase", qty="10", rate="100")
    overpay = _entry(2, "vendor_payment", amount="1200")
    extra = _entry(3, "vendor_payment", amount="500")
    assert fold_vendor_balance([purchase, overpay, extra]) == 0
    # A point adjustment would give +500 here; the replay keeps the clamp.
    assert fold_vendor_balance([purchase, overpay]) == 0


def test_balance_fold_orders_by_business_date_then_id() -> None:
    late_purchase = _entry(1, "purchase", day=D2, qty="1", rate="100")
    early_payment = _entry(2, "vendor_payment", day=D1, amount="100")
    # Payment on D1 clamps against an empty balance before the D2 purchase.
    assert fold_vendor_balance([late_purchase, early_payment]) == Decimal("100")


def test_daily_summary_profit_split() -> None:
    entries = [
        _entry(1, "purchase", qty="2", rate="100"),
        _entry(2, "purchase", qty="3", rate="150"),
        _entry(3, "retail_sale", qty="1", rate="120"),
        _entry(4, "hotel_sale", qty="2", rate="200"),
        _entry(5, "vendor_payment", amount="300"),
    ]
    summary = compile_daily_summary(entries, D2)
    assert summary.retail_profit == Decimal("-10")
    assert summary.hotel_profit == Decimal("140")
    assert summary.net_profit == Decimal("130")
    assert summary.total_sold_kg == Decimal("3")
    assert summary.remaining_kg == Decimal("2")
    assert summary.vendor_payments_total == Decimal("300")
    assert [t.id for t in summary.transactions] == [1, 2, 3, 4, 5]


def test_daily_summary_uses_cumulative_cost_and_ignores_later_days() -> None:
    entries = [
        _entry(1, "purchase", day=D1, qty="4", rate="200"),
        _entry(2, "retail_sale", day=D2, qty="1", rate="260"),
        _entry(3, "purchase", day=date(2026, 10, 20), qty="10", rate="50"),
    ]
    summary = compile_daily_summary(entries, D2)
    assert summary.total_purchased_kg == 0
    assert summary.retail_profit == Decimal("60")
    assert summary.remaining_kg == Decimal("3")
    assert [t.id for t in summary.transactions] == [2]


def test_daily_summary_is_idempotent() -> None:
    entries = [
        _entry(1, "purchase", qty="3", rate="333.33"),
        _entry(2, "retail_sale", qty="1.25", rate="410"),
    ]
    assert compile_daily_summary(entries, D2).to_dict() == compile_daily_summary(entries, D2).to_dict()
