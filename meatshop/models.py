from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from meatshop.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
MONEY = Numeric(14, 2)
WEIGHT = Numeric(12, 3)

EVENT_PURCHASE = "purchase"
EVENT_RETAIL_SALE = "retail_sale"
EVENT_HOTEL_SALE = "hotel_sale"
EVENT_VENDOR_PAYMENT = "vendor_payment"

EVENT_KINDS = (EVENT_PURCHASE, EVENT_RETAIL_SALE, EVENT_HOTEL_SALE, EVENT_VENDOR_PAYMENT)
SALE_KINDS = (EVENT_RETAIL_SALE, EVENT_HOTEL_SALE)


class Vendor(Base):
    __tablename__ = "vendor"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    phone: Mapped[str] = mapped_column(Text, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    # Cached fold of the vendor's purchases and payments; refreshed by the store.
    balance: Mapped[Numeric] = mapped_column(MONEY, nullable=False, default=0)
    specialization: Mapped[list | None] = mapped_column(JSON_TYPE)
    custom_pricing: Mapped[dict | None] = mapped_column(JSON_TYPE)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class Hotel(Base):
    __tablename__ = "hotel"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    contact_person: Mapped[str | None] = mapped_column(Text)
    phone: Mapped[str | None] = mapped_column(Text)
    address: Mapped[str | None] = mapped_column(Text)
    order_frequency: Mapped[str | None] = mapped_column(Text)
    preferred_delivery_time: Mapped[str | None] = mapped_column(Text)
    payment_terms: Mapped[str | None] = mapped_column(Text)
    credit_limit: Mapped[Numeric | None] = mapped_column(MONEY)
    preferred_products: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class Product(Base):
    __tablename__ = "product"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    subcategory: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)


class HotelBill(Base):
    __tablename__ = "hotel_bill"
    __table_args__ = (UniqueConstraint("bill_number", name="uq_hotel_bill_number"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    hotel_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("hotel.id"), nullable=False
    )
    bill_number: Mapped[str] = mapped_column(Text, nullable=False)
    business_date: Mapped[Date] = mapped_column(Date, nullable=False)
    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recorded_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)


class LedgerEvent(Base):
    """Append-only ledger row; ``id`` doubles as the insertion sequence."""

    __tablename__ = "ledger_event"
    __table_args__ = (
        CheckConstraint(
            "kind IN ('purchase', 'retail_sale', 'hotel_sale', 'vendor_payment')",
            name="ck_ledger_event_kind",
        ),
        CheckConstraint("quantity_kg IS NULL OR quantity_kg > 0", name="ck_ledger_event_qty"),
        CheckConstraint("rate_per_kg IS NULL OR rate_per_kg > 0", name="ck_ledger_event_rate"),
        CheckConstraint("amount IS NULL OR amount > 0", name="ck_ledger_event_amount"),
        Index("ix_ledger_event_business_date", "business_date"),
        Index("ix_ledger_event_partition", "category", "subcategory"),
        Index("ix_ledger_event_vendor", "vendor_id"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(Text, nullable=False)
    business_date: Mapped[Date] = mapped_column(Date, nullable=False)
    recorded_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    vendor_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("vendor.id"))
    hotel_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("hotel.id"))
    hotel_bill_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("hotel_bill.id")
    )
    product_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("product.id"))
    category: Mapped[str | None] = mapped_column(Text)
    subcategory: Mapped[str | None] = mapped_column(Text)
    quantity_kg: Mapped[Numeric | None] = mapped_column(WEIGHT)
    rate_per_kg: Mapped[Numeric | None] = mapped_column(MONEY)
    total: Mapped[Numeric | None] = mapped_column(MONEY)
    amount: Mapped[Numeric | None] = mapped_column(MONEY)
    notes: Mapped[str | None] = mapped_column(Text)
