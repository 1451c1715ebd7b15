"""
Ledger event store
==================
The write and read paths over ``ledger_event``. Every write:

1. validates its input (ValidationError / NotFound, nothing persisted)
2. takes the partition lock (sales) and/or vendor lock
3. checks stock against all committed events when it records a sale
4. writes inside one session transaction and re-folds the vendor balance
5. commits, or rolls back and re-raises

Derived state (inventory positions, summaries) is never stored. The only
cached aggregate is ``vendor.balance``; it is rewritten from a full re-fold
whenever one of that vendor's purchases or payments is added or deleted.
"""

from __future__ import annotations

import threading
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterator, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from meatshop.config import settings
from meatshop.errors import InsufficientStock, LedgerError, NotFound, StoreUnavailable, ValidationError
from meatshop.ledger import (
    ZERO,
    DailySummary,
    InventoryPosition,
    LedgerEntry,
    StatementLine,
    compile_daily_summary,
    compile_range_summaries,
    fold_vendor_balance,
    fold_vendor_statement,
    inventory_window,
    position_for,
)
from meatshop.loggers import get_logger
from meatshop.models import (
    EVENT_HOTEL_SALE,
    EVENT_KINDS,
    EVENT_PURCHASE,
    EVENT_RETAIL_SALE,
    EVENT_VENDOR_PAYMENT,
    SALE_KINDS,
    Hotel,
    HotelBill,
    LedgerEvent,
    Product,
    Vendor,
)
from meatshop.orders import OrderLine, next_bill_number, payment_due_date, resolve_order_suggestions

logger = get_logger("meatshop.store")

CENT = Decimal("0.01")
GRAM = Decimal("0.001")
SALE_KIND_BY_NAME = {"retail": EVENT_RETAIL_SALE, "hotel": EVENT_HOTEL_SALE}


class KeyedLocks:
    """One lock per key, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Any, threading.Lock] = {}

    def get(self, key: Any) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, *keys: Any) -> Iterator[None]:
        # Sorted acquisition so two writers never wait on each other in a cycle.
        with ExitStack() as stack:
            for key in sorted(set(keys), key=repr):
                stack.enter_context(self.get(key))
            yield


partition_locks = KeyedLocks()
vendor_locks = KeyedLocks()
bill_number_locks = KeyedLocks()


@dataclass(frozen=True)
class SaleLine:
    quantity_kg: Decimal
    rate_per_kg: Decimal
    category: Optional[str] = None
    subcategory: Optional[str] = None
    product_id: Optional[int] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def store_call(db: Session, action: str) -> Iterator[None]:
    try:
        yield
    except (OperationalError, PoolTimeoutError) as exc:
        db.rollback()
        logger.error("store unavailable during %s: %s", action, exc)
        raise StoreUnavailable(f"ledger store unavailable during {action}") from exc
    except IntegrityError as exc:
        db.rollback()
        logger.warning("integrity error during %s: %s", action, exc.orig)
        raise ValidationError(f"{action} violates a store constraint") from exc
    except LedgerError:
        db.rollback()
        raise


def _decimal(value: Any) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _positive(name: str, value: Any, step: Decimal = CENT) -> Decimal:
    # Returned values are exactly what the column stores.
    try:
        number = _decimal(value)
    except (ArithmeticError, ValueError) as exc:
        raise ValidationError(f"{name} must be a number") from exc
    if not number.is_finite() or number <= 0:
        raise ValidationError(f"{name} must be greater than zero")
    try:
        scaled = number.quantize(step)
    except ArithmeticError as exc:
        raise ValidationError(f"{name} is out of range") from exc
    if scaled != number:
        raise ValidationError(f"{name} allows at most {-step.as_tuple().exponent} decimal places")
    return scaled


def _label(value: Optional[str], name: str) -> str:
    text = (value or "").strip().lower()
    if not text:
        raise ValidationError(f"{name} is required")
    return text


def _line_total(quantity_kg: Decimal, rate_per_kg: Decimal) -> Decimal:
    return (quantity_kg * rate_per_kg).quantize(CENT, rounding=ROUND_HALF_UP)


def _require(db: Session, model: type, object_id: Optional[int], label: str) -> Any:
    if object_id is None:
        raise ValidationError(f"{label}_id is required")
    row = db.get(model, object_id)
    if not row:
        raise NotFound(f"{label} not found")
    return row


def entry_from_row(row: LedgerEvent) -> LedgerEntry:
    return LedgerEntry(
        id=row.id,
        kind=row.kind,
        business_date=row.business_date,
        recorded_at=row.recorded_at,
        category=row.category,
        subcategory=row.subcategory,
        quantity_kg=_decimal(row.quantity_kg),
        rate_per_kg=_decimal(row.rate_per_kg),
        total=_decimal(row.total),
        amount=_decimal(row.amount),
        vendor_id=row.vendor_id,
        hotel_id=row.hotel_id,
        hotel_bill_id=row.hotel_bill_id,
        product_id=row.product_id,
        notes=row.notes,
    )


def _load_entries(db: Session, *criteria) -> list[LedgerEntry]:
    stmt = select(LedgerEvent).where(*criteria).order_by(LedgerEvent.business_date, LedgerEvent.id)
    return [entry_from_row(row) for row in db.scalars(stmt)]


def _resolve_partition(
    db: Session,
    category: Optional[str],
    subcategory: Optional[str],
    product_id: Optional[int],
) -> tuple[str, str]:
    if product_id is not None:
        product = _require(db, Product, product_id, "product")
        category = category or product.category
        subcategory = subcategory or product.subcategory
    return _label(category, "category"), _label(subcategory, "subcategory")


def _partition_position(db: Session, category: str, subcategory: str) -> InventoryPosition:
    entries = _load_entries(
        db,
        LedgerEvent.category == category,
        LedgerEvent.subcategory == subcategory,
        LedgerEvent.kind != EVENT_VENDOR_PAYMENT,
    )
    return position_for(entries, category, subcategory)


def _refresh_vendor_balance(db: Session, vendor: Vendor) -> Decimal:
    balance = fold_vendor_balance(_load_entries(db, LedgerEvent.vendor_id == vendor.id))
    vendor.balance = balance
    return balance


def _insert_event(db: Session, **fields: Any) -> LedgerEvent:
    row = LedgerEvent(recorded_at=_now(), **fields)
    db.add(row)
    db.flush()
    return row


def create_purchase(
    db: Session,
    *,
    vendor_id: int,
    quantity_kg: Any,
    rate_per_kg: Any,
    business_date: date,
    category: Optional[str] = None,
    subcategory: Optional[str] = None,
    product_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> tuple[LedgerEntry, Decimal]:
    quantity = _positive("quantity_kg", quantity_kg, GRAM)
    rate = _positive("rate_per_kg", rate_per_kg)
    with store_call(db, "create_purchase"):
        vendor = _require(db, Vendor, vendor_id, "vendor")
        category, subcategory = _resolve_partition(db, category, subcategory, product_id)
        with vendor_locks.hold(vendor.id):
            row = _insert_event(
                db,
                kind=EVENT_PURCHASE,
                business_date=business_date,
                vendor_id=vendor.id,
                product_id=product_id,
                category=category,
                subcategory=subcategory,
                quantity_kg=quantity,
                rate_per_kg=rate,
                total=_line_total(quantity, rate),
                notes=notes,
            )
            balance = _refresh_vendor_balance(db, vendor)
            db.commit()
        db.refresh(row)
    logger.info(
        "purchase %s recorded: vendor=%s %s/%s %s kg @ %s, balance=%s",
        row.id, vendor.id, category, subcategory, quantity, rate, balance,
    )
    return entry_from_row(row), balance


def create_payment(
    db: Session,
    *,
    vendor_id: int,
    amount: Any,
    business_date: date,
    notes: Optional[str] = None,
) -> tuple[LedgerEntry, Decimal]:
    value = _positive("amount", amount)
    with store_call(db, "create_payment"):
        vendor = _require(db, Vendor, vendor_id, "vendor")
        with vendor_locks.hold(vendor.id):
            row = _insert_event(
                db,
                kind=EVENT_VENDOR_PAYMENT,
                business_date=business_date,
                vendor_id=vendor.id,
                amount=value,
                notes=notes,
            )
            balance = _refresh_vendor_balance(db, vendor)
            db.commit()
        db.refresh(row)
    logger.info("payment %s recorded: vendor=%s amount=%s, balance=%s", row.id, vendor.id, value, balance)
    return entry_from_row(row), balance


def _unique_bill_number(db: Session, business_date: date) -> str:
    existing = db.scalar(
        select(func.count()).select_from(HotelBill).where(HotelBill.business_date == business_date)
    ) or 0
    while True:
        candidate = next_bill_number(business_date, existing)
        taken = db.scalar(select(HotelBill.id).where(HotelBill.bill_number == candidate))
        if taken is None:
            return candidate
        existing += 1


def _guard_stock(db: Session, requested: list[tuple[tuple[str, str], Decimal]]) -> None:
    claimed: dict[tuple[str, str], Decimal] = {}
    for partition, quantity in requested:
        if partition not in claimed:
            claimed[partition] = ZERO
        position = _partition_position(db, *partition)
        available = position.remaining_kg - claimed[partition]
        if quantity > available:
            logger.warning(
                "sale rejected: %s/%s requested %s kg, %s kg available",
                partition[0], partition[1], quantity, available,
            )
            raise InsufficientStock(available=available, category=partition[0], subcategory=partition[1])
        claimed[partition] += quantity


def create_retail_sale(
    db: Session,
    *,
    quantity_kg: Any,
    rate_per_kg: Any,
    business_date: date,
    category: Optional[str] = None,
    subcategory: Optional[str] = None,
    product_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> LedgerEntry:
    quantity = _positive("quantity_kg", quantity_kg, GRAM)
    rate = _positive("rate_per_kg", rate_per_kg)
    with store_call(db, "create_retail_sale"):
        partition = _resolve_partition(db, category, subcategory, product_id)
        with partition_locks.hold(partition):
            _guard_stock(db, [(partition, quantity)])
            row = _insert_event(
                db,
                kind=EVENT_RETAIL_SALE,
                business_date=business_date,
                product_id=product_id,
                category=partition[0],
                subcategory=partition[1],
                quantity_kg=quantity,
                rate_per_kg=rate,
                total=_line_total(quantity, rate),
                notes=notes,
            )
            db.commit()
        db.refresh(row)
    logger.info("retail sale %s recorded: %s/%s %s kg @ %s", row.id, partition[0], partition[1], quantity, rate)
    return entry_from_row(row)


def create_hotel_bill(
    db: Session,
    *,
    hotel_id: int,
    business_date: date,
    lines: list[SaleLine],
    bill_number: Optional[str] = None,
    is_paid: bool = False,
) -> tuple[HotelBill, list[LedgerEntry]]:
    if not lines:
        raise ValidationError("a hotel bill needs at least one line item")
    prepared = [
        (
            line,
            _positive("quantity_kg", line.quantity_kg, GRAM),
            _positive("rate_per_kg", line.rate_per_kg),
        )
        for line in lines
    ]
    with store_call(db, "create_hotel_bill"):
        hotel = _require(db, Hotel, hotel_id, "hotel")
        requested = [
            (_resolve_partition(db, line.category, line.subcategory, line.product_id), quantity)
            for line, quantity, _ in prepared
        ]
        partitions = [partition for partition, _ in requested]
        with partition_locks.hold(*partitions), bill_number_locks.hold(business_date):
            _guard_stock(db, requested)
            bill = HotelBill(
                hotel_id=hotel.id,
                bill_number=(bill_number or "").strip() or _unique_bill_number(db, business_date),
                business_date=business_date,
                is_paid=is_paid,
                recorded_at=_now(),
            )
            db.add(bill)
            db.flush()
            rows = [
                _insert_event(
                    db,
                    kind=EVENT_HOTEL_SALE,
                    business_date=business_date,
                    hotel_id=hotel.id,
                    hotel_bill_id=bill.id,
                    product_id=line.product_id,
                    category=partition[0],
                    subcategory=partition[1],
                    quantity_kg=quantity,
                    rate_per_kg=rate,
                    total=_line_total(quantity, rate),
                )
                for (line, quantity, rate), (partition, _) in zip(prepared, requested)
            ]
            db.commit()
        db.refresh(bill)
        for row in rows:
            db.refresh(row)
    logger.info("hotel bill %s recorded: hotel=%s lines=%d", bill.bill_number, hotel.id, len(rows))
    return bill, [entry_from_row(row) for row in rows]


def create_sale(
    db: Session,
    *,
    kind: str,
    quantity_kg: Any,
    rate_per_kg: Any,
    business_date: date,
    category: Optional[str] = None,
    subcategory: Optional[str] = None,
    product_id: Optional[int] = None,
    hotel_id: Optional[int] = None,
    bill_number: Optional[str] = None,
) -> LedgerEntry:
    event_kind = SALE_KIND_BY_NAME.get(kind, kind)
    if event_kind == EVENT_RETAIL_SALE:
        return create_retail_sale(
            db,
            quantity_kg=quantity_kg,
            rate_per_kg=rate_per_kg,
            business_date=business_date,
            category=category,
            subcategory=subcategory,
            product_id=product_id,
        )
    if event_kind == EVENT_HOTEL_SALE:
        _, entries = create_hotel_bill(
            db,
            hotel_id=hotel_id,
            business_date=business_date,
            bill_number=bill_number,
            lines=[
                SaleLine(
                    quantity_kg=quantity_kg,
                    rate_per_kg=rate_per_kg,
                    category=category,
                    subcategory=subcategory,
                    product_id=product_id,
                )
            ],
        )
        return entries[0]
    raise ValidationError(f"unknown sale kind: {kind}")


def delete_event(db: Session, event_id: int) -> dict:
    with store_call(db, "delete_event"):
        row = db.get(LedgerEvent, event_id)
        if not row:
            raise NotFound("ledger event not found")
        entry = entry_from_row(row)
        result: dict[str, Any] = {"event_id": entry.id, "kind": entry.kind, "vendor_balance": None}

        if entry.kind in SALE_KINDS:
            bill = db.get(HotelBill, entry.hotel_bill_id) if entry.hotel_bill_id else None
            db.delete(row)
            db.flush()
            if bill is not None:
                remaining_lines = db.scalar(
                    select(func.count()).select_from(LedgerEvent).where(LedgerEvent.hotel_bill_id == bill.id)
                )
                if not remaining_lines:
                    db.delete(bill)
            db.commit()
        else:
            vendor = _require(db, Vendor, entry.vendor_id, "vendor")
            with vendor_locks.hold(vendor.id):
                db.delete(row)
                db.flush()
                result["vendor_balance"] = _refresh_vendor_balance(db, vendor)
                db.commit()
    logger.info("ledger event %s (%s) deleted", entry.id, entry.kind)
    return result


def current_balance(db: Session, vendor_id: int) -> Decimal:
    with store_call(db, "current_balance"):
        vendor = _require(db, Vendor, vendor_id, "vendor")
        return fold_vendor_balance(_load_entries(db, LedgerEvent.vendor_id == vendor.id))


def vendor_statement(db: Session, vendor_id: int) -> list[StatementLine]:
    with store_call(db, "vendor_statement"):
        vendor = _require(db, Vendor, vendor_id, "vendor")
        return fold_vendor_statement(_load_entries(db, LedgerEvent.vendor_id == vendor.id))


def query_events(
    db: Session,
    *,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    vendor_id: Optional[int] = None,
    hotel_id: Optional[int] = None,
    kind: Optional[str] = None,
) -> list[LedgerEntry]:
    if date_from and date_to and date_from > date_to:
        raise ValidationError("date_from must not be after date_to")
    if kind is not None and kind not in EVENT_KINDS:
        raise ValidationError(f"unknown event kind: {kind}")
    criteria = []
    if date_from is not None:
        criteria.append(LedgerEvent.business_date >= date_from)
    if date_to is not None:
        criteria.append(LedgerEvent.business_date <= date_to)
    if vendor_id is not None:
        criteria.append(LedgerEvent.vendor_id == vendor_id)
    if hotel_id is not None:
        criteria.append(LedgerEvent.hotel_id == hotel_id)
    if kind is not None:
        criteria.append(LedgerEvent.kind == kind)
    with store_call(db, "query_events"):
        return _load_entries(db, *criteria)


def get_inventory_positions(db: Session, as_of: date) -> list[InventoryPosition]:
    with store_call(db, "get_inventory_positions"):
        entries = _load_entries(
            db,
            LedgerEvent.business_date <= as_of,
            LedgerEvent.kind != EVENT_VENDOR_PAYMENT,
        )
    return inventory_window(entries, as_of, primary_category=settings.primary_category)


def get_daily_summary(db: Session, business_date: date) -> DailySummary:
    with store_call(db, "get_daily_summary"):
        entries = _load_entries(db, LedgerEvent.business_date <= business_date)
    return compile_daily_summary(entries, business_date, settings.primary_category)


def get_range_summary(db: Session, date_from: date, date_to: date) -> list[DailySummary]:
    if date_from > date_to:
        raise ValidationError("date_from must not be after date_to")
    with store_call(db, "get_range_summary"):
        entries = _load_entries(db, LedgerEvent.business_date <= date_to)
    return compile_range_summaries(entries, date_from, date_to, settings.primary_category)


def bill_total(db: Session, bill_id: int) -> Decimal:
    total = db.scalar(
        select(func.coalesce(func.sum(LedgerEvent.total), 0)).where(LedgerEvent.hotel_bill_id == bill_id)
    )
    return _decimal(total).quantize(CENT)


def bill_lines(db: Session, bill_id: int) -> list[LedgerEntry]:
    return _load_entries(db, LedgerEvent.hotel_bill_id == bill_id)


def set_bill_paid(db: Session, bill_id: int, is_paid: bool = True) -> HotelBill:
    with store_call(db, "set_bill_paid"):
        bill = _require(db, HotelBill, bill_id, "hotel bill")
        bill.is_paid = is_paid
        db.commit()
        db.refresh(bill)
    logger.info("hotel bill %s marked %s", bill.bill_number, "paid" if is_paid else "unpaid")
    return bill


def hotel_outstanding(db: Session, hotel_id: int) -> dict:
    with store_call(db, "hotel_outstanding"):
        hotel = _require(db, Hotel, hotel_id, "hotel")
        bills = db.scalars(
            select(HotelBill)
            .where(HotelBill.hotel_id == hotel.id, HotelBill.is_paid.is_(False))
            .order_by(HotelBill.business_date, HotelBill.id)
        ).all()
        unpaid = []
        for bill in bills:
            due = payment_due_date(hotel.payment_terms, bill.business_date)
            unpaid.append(
                {
                    "hotel_bill_id": bill.id,
                    "bill_number": bill.bill_number,
                    "business_date": bill.business_date.isoformat(),
                    "total": bill_total(db, bill.id),
                    "due_date": due.isoformat() if due else None,
                }
            )
    outstanding = sum((item["total"] for item in unpaid), ZERO)
    credit_limit = _decimal(hotel.credit_limit) if hotel.credit_limit is not None else None
    return {
        "hotel_id": hotel.id,
        "outstanding": outstanding,
        "credit_limit": credit_limit,
        "over_credit_limit": credit_limit is not None and outstanding > credit_limit,
        "unpaid_bills": unpaid,
    }


def order_suggestions(db: Session, hotel_id: int) -> list[OrderLine]:
    with store_call(db, "order_suggestions"):
        hotel = _require(db, Hotel, hotel_id, "hotel")
        catalog = db.scalars(select(Product).order_by(Product.id)).all()
    return resolve_order_suggestions(hotel.preferred_products, catalog, settings.fallback_rate_per_kg)
