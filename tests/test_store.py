import threading
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from meatshop import store
from meatshop.db import Base
from meatshop.errors import InsufficientStock, LedgerError, NotFound, StoreUnavailable, ValidationError
from meatshop.ledger import LedgerEntry
from meatshop.models import Hotel, Vendor

DAY = date(2026, 10, 19)


def _make_session() -> Session:
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)()


def _seed(db: Session) -> tuple[int, int]:
    now = datetime.now(timezone.utc)
    vendor = Vendor(name="Karim Poultry", phone="0300", balance=0, created_at=now)
    hotel = Hotel(name="Pearl Continental", created_at=now)
    db.add_all([vendor, hotel])
    db.commit()
    return vendor.id, hotel.id


def test_create_sale_dispatches_on_kind() -> None:
    db = _make_session()
    vendor_id, hotel_id = _seed(db)
    store.create_purchase(
        db, vendor_id=vendor_id, category="Chicken", subcategory=" Leg ",
        quantity_kg="5", rate_per_kg="300", business_date=DAY,
    )

    retail = store.create_sale(
        db, kind="retail", category="chicken", subcategory="leg",
        quantity_kg=Decimal("1"), rate_per_kg=Decimal("420"), business_date=DAY,
    )
    hotel = store.create_sale(
        db, kind="hotel", category="chicken", subcategory="leg",
        quantity_kg=Decimal("2"), rate_per_kg=Decimal("450"), business_date=DAY,
        hotel_id=hotel_id, bill_number="PC-0001",
    )
    assert retail.kind == "retail_sale"
    assert hotel.kind == "hotel_sale"
    assert hotel.hotel_bill_id is not None
    assert store.get_inventory_positions(db, DAY)[0].remaining_kg == Decimal("2")

    with pytest.raises(ValidationError):
        store.create_sale(
            db, kind="wholesale", category="chicken", subcategory="leg",
            quantity_kg=Decimal("1"), rate_per_kg=Decimal("1"), business_date=DAY,
        )
    with pytest.raises(ValidationError):
        store.create_sale(
            db, kind="hotel", category="chicken", subcategory="leg",
            quantity_kg=Decimal("1"), rate_per_kg=Decimal("450"), business_date=DAY,
            hotel_id=hotel_id, bill_number="PC-0001",
        )


def test_guard_rejects_without_persisting() -> None:
    db = _make_session()
    vendor_id, _ = _seed(db)
    store.create_purchase(
        db, vendor_id=vendor_id, category="chicken", subcategory="whole",
        quantity_kg="1.5", rate_per_kg="300", business_date=DAY,
    )
    with pytest.raises(InsufficientStock) as excinfo:
        store.create_retail_sale(
            db, category="chicken", subcategory="whole",
            quantity_kg="2", rate_per_kg="400", business_date=DAY,
        )
    assert excinfo.value.available == Decimal("1.5")
    assert store.query_events(db, kind="retail_sale") == []


def test_current_balance_and_missing_vendor() -> None:
    db = _make_session()
    vendor_id, _ = _seed(db)
    _, balance = store.create_purchase(
        db, vendor_id=vendor_id, category="mutton", subcategory="whole",
        quantity_kg="2", rate_per_kg="950.50", business_date=DAY,
    )
    assert balance == Decimal("1901.00")
    _, balance = store.create_payment(db, vendor_id=vendor_id, amount="2000", business_date=DAY)
    assert balance == 0
    assert store.current_balance(db, vendor_id) == 0
    with pytest.raises(NotFound):
        store.current_balance(db, 404)
    with pytest.raises(ValidationError):
        store.create_payment(db, vendor_id=vendor_id, amount="0", business_date=DAY)


def test_query_events_filters() -> None:
    db = _make_session()
    vendor_id, _ = _seed(db)
    store.create_purchase(
        db, vendor_id=vendor_id, category="chicken", subcategory="whole",
        quantity_kg="1", rate_per_kg="300", business_date=date(2026, 10, 18),
    )
    store.create_payment(db, vendor_id=vendor_id, amount="100", business_date=DAY)
    assert [e.kind for e in store.query_events(db, vendor_id=vendor_id)] == ["purchase", "vendor_payment"]
    assert [e.kind for e in store.query_events(db, date_from=DAY, date_to=DAY)] == ["vendor_payment"]
    with pytest.raises(ValidationError):
        store.query_events(db, date_from=DAY, date_to=date(2026, 10, 1))
    with pytest.raises(ValidationError):
        store.query_events(db, kind="refund")


def test_transport_failure_surfaces_as_store_unavailable(monkeypatch) -> None:
    db = _make_session()

    def broken(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    monkeypatch.setattr(store, "_load_entries", broken)
    with pytest.raises(StoreUnavailable) as excinfo:
        store.get_daily_summary(db, DAY)
    assert excinfo.value.retryable is True
    assert excinfo.value.to_dict()["retryable"] is True


def test_keyed_locks_reuse_one_lock_per_key() -> None:
    locks = store.KeyedLocks()
    assert locks.get(("chicken", "leg")) is locks.get(("chicken", "leg"))
    assert locks.get(("chicken", "leg")) is not locks.get(("chicken", "whole"))
    with locks.hold(("chicken", "leg"), ("chicken", "leg"), ("beef", "mince")):
        assert locks.get(("chicken", "leg")).locked()
        assert locks.get(("beef", "mince")).locked()
    assert not locks.get(("chicken", "leg")).locked()


def test_values_finer_than_storage_scale_are_rejected() -> None:
    db = _make_session()
    vendor_id, _ = _seed(db)
    with pytest.raises(ValidationError):
        store.create_purchase(
            db, vendor_id=vendor_id, category="chicken", subcategory="leg",
            quantity_kg="1.0005", rate_per_kg="100", business_date=DAY,
        )
    with pytest.raises(ValidationError):
        store.create_purchase(
            db, vendor_id=vendor_id, category="chicken", subcategory="leg",
            quantity_kg="10", rate_per_kg="100.004", business_date=DAY,
        )
    with pytest.raises(ValidationError):
        store.create_payment(db, vendor_id=vendor_id, amount="0.001", business_date=DAY)
    assert store.query_events(db) == []

    entry, balance = store.create_purchase(
        db, vendor_id=vendor_id, category="chicken", subcategory="leg",
        quantity_kg="1.0050", rate_per_kg="100.10", business_date=DAY,
    )
    assert entry.quantity_kg == Decimal("1.005")
    assert entry.total == Decimal("100.60")
    assert balance == Decimal("100.60")

    store.create_retail_sale(
        db, category="chicken", subcategory="leg",
        quantity_kg="1.005", rate_per_kg="120", business_date=DAY,
    )
    assert store.get_inventory_positions(db, DAY)[0].remaining_kg == 0


def test_purchase_delete_recomputes_after_sales() -> None:
    db = _make_session()
    vendor_id, _ = _seed(db)
    purchase, _ = store.create_purchase(
        db, vendor_id=vendor_id, category="chicken", subcategory="leg",
        quantity_kg="10", rate_per_kg="300", business_date=DAY,
    )
    store.create_retail_sale(
        db, category="chicken", subcategory="leg",
        quantity_kg="5", rate_per_kg="420", business_date=DAY,
    )
    result = store.delete_event(db, purchase.id)
    assert result["vendor_balance"] == 0
    assert store.get_inventory_positions(db, DAY)[0].remaining_kg == Decimal("-5")

    store.create_purchase(
        db, vendor_id=vendor_id, category="chicken", subcategory="leg",
        quantity_kg="10", rate_per_kg="280", business_date=DAY,
    )
    assert store.get_inventory_positions(db, DAY)[0].remaining_kg == Decimal("5")
    assert store.current_balance(db, vendor_id) == Decimal("2800")


def _file_sessions(tmp_path) -> sessionmaker:
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


def _run_together(count: int, work) -> list:
    barrier = threading.Barrier(count)
    outcomes = []

    def runner(index: int) -> None:
        barrier.wait()
        try:
            outcomes.append(work(index))
        except LedgerError as exc:
            outcomes.append(exc)

    threads = [threading.Thread(target=runner, args=(index,)) for index in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return outcomes


def test_concurrent_sales_never_oversell(tmp_path) -> None:
    sessions = _file_sessions(tmp_path)
    with sessions() as db:
        vendor_id, _ = _seed(db)
        store.create_purchase(
            db, vendor_id=vendor_id, category="chicken", subcategory="leg",
            quantity_kg="10", rate_per_kg="300", business_date=DAY,
        )

    def sell(_: int) -> LedgerEntry:
        with sessions() as db:
            return store.create_retail_sale(
                db, category="chicken", subcategory="leg",
                quantity_kg="3", rate_per_kg="420", business_date=DAY,
            )

    outcomes = _run_together(8, sell)
    assert len(outcomes) == 8
    assert len([o for o in outcomes if isinstance(o, LedgerEntry)]) == 3
    assert len([o for o in outcomes if isinstance(o, InsufficientStock)]) == 5
    with sessions() as db:
        assert store.get_inventory_positions(db, DAY)[0].remaining_kg == Decimal("1")


def test_concurrent_bills_on_one_date_get_distinct_numbers(tmp_path) -> None:
    sessions = _file_sessions(tmp_path)
    cuts = ["leg", "breast", "wings", "whole"]
    with sessions() as db:
        vendor_id, hotel_id = _seed(db)
        for cut in cuts:
            store.create_purchase(
                db, vendor_id=vendor_id, category="chicken", subcategory=cut,
                quantity_kg="5", rate_per_kg="300", business_date=DAY,
            )

    def bill(index: int) -> str:
        with sessions() as db:
            created, _ = store.create_hotel_bill(
                db, hotel_id=hotel_id, business_date=DAY,
                lines=[store.SaleLine(
                    quantity_kg=Decimal("1"), rate_per_kg=Decimal("450"),
                    category="chicken", subcategory=cuts[index],
                )],
            )
            return created.bill_number

    numbers = _run_together(len(cuts), bill)
    assert sorted(numbers) == [f"BILL-20261019-00{n}" for n in range(1, 5)]
