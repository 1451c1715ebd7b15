from __future__ import annotations

import json
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Literal, Optional, Union
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from meatshop import store
from meatshop.db import SessionLocal
from meatshop.errors import LedgerError
from meatshop.ledger import LedgerEntry
from meatshop.loggers import get_logger
from meatshop.models import Hotel, HotelBill, Product, Vendor
from meatshop.orders import suggest_purchase_rate

app = FastAPI(title="Meat Shop Ledger")
logger = get_logger("meatshop.api")


@app.exception_handler(LedgerError)
def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _money(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


def _paginate_by_id(query, model, limit: int, cursor: Optional[int]) -> tuple[list[Any], Optional[int]]:
    if cursor is not None:
        query = query.filter(model.id > cursor)
    rows = query.order_by(model.id).limit(limit + 1).all()
    next_cursor = None
    if len(rows) > limit:
        next_cursor = rows[limit - 1].id
        rows = rows[:limit]
    return rows, next_cursor


def _list_meta(limit: int, cursor: Optional[int], next_cursor: Optional[int]) -> dict:
    meta = _meta()
    if next_cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(next_cursor)}
    elif cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(cursor)}
    else:
        meta["page"] = {"limit": limit, "cursor": None}
    return meta


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


def _vendor_data(vendor: Vendor) -> dict:
    return {
        "vendor_id": vendor.id,
        "name": vendor.name,
        "phone": vendor.phone,
        "notes": vendor.notes,
        "balance": float(vendor.balance or 0),
        "specialization": vendor.specialization or [],
        "custom_pricing": vendor.custom_pricing or {},
    }


class VendorCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'name': 'Karim Poultry', 'phone': '0300-1234567', 'notes': 'Delivers before 7am', 'specialization': ['chicken'], 'custom_pricing': {'chicken-whole': 320}}}}
    name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    notes: Optional[str] = None
    specialization: Optional[list[str]] = None
    custom_pricing: Optional[dict[str, Decimal]] = None


class VendorUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    phone: Optional[str] = Field(default=None, min_length=1)
    notes: Optional[str] = None
    specialization: Optional[list[str]] = None
    custom_pricing: Optional[dict[str, Decimal]] = None


def _pricing_json(pricing: Optional[dict[str, Decimal]]) -> Optional[dict]:
    if pricing is None:
        return None
    return {key: str(value) for key, value in pricing.items()}


@app.post("/api/v1/vendors", tags=["Vendors"])
def create_vendor(payload: VendorCreate, db: Session = Depends(get_db)) -> dict:
    vendor = Vendor(
        name=payload.name,
        phone=payload.phone,
        notes=payload.notes,
        balance=0,
        specialization=payload.specialization,
        custom_pricing=_pricing_json(payload.custom_pricing),
        created_at=_now(),
    )
    db.add(vendor)
    db.commit()
    db.refresh(vendor)
    return {"data": _vendor_data(vendor), "meta": _meta()}


@app.get("/api/v1/vendors/{vendor_id}", tags=["Vendors"])
def get_vendor(vendor_id: int, db: Session = Depends(get_db)) -> dict:
    vendor = db.get(Vendor, vendor_id)
    if not vendor:
        raise HTTPException(status_code=404, detail="vendor not found")
    return {"data": _vendor_data(vendor), "meta": _meta()}


@app.patch("/api/v1/vendors/{vendor_id}", tags=["Vendors"])
def update_vendor(vendor_id: int, payload: VendorUpdate, db: Session = Depends(get_db)) -> dict:
    vendor = db.get(Vendor, vendor_id)
    if not vendor:
        raise HTTPException(status_code=404, detail="vendor not found")
    changes = payload.model_dump(exclude_unset=True)
    if "custom_pricing" in changes:
        changes["custom_pricing"] = _pricing_json(payload.custom_pricing)
    for key, value in changes.items():
        setattr(vendor, key, value)
    db.commit()
    db.refresh(vendor)
    return {"data": _vendor_data(vendor), "meta": _meta()}


@app.get("/api/v1/vendors", tags=["Vendors"])
def list_vendors(
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    rows, next_cursor = _paginate_by_id(db.query(Vendor), Vendor, limit, cursor)
    return {"data": [_vendor_data(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/vendors/{vendor_id}/balance", tags=["Vendors"])
def get_vendor_balance(vendor_id: int, db: Session = Depends(get_db)) -> dict:
    balance = store.current_balance(db, vendor_id)
    return {"data": {"vendor_id": vendor_id, "balance": float(balance)}, "meta": _meta()}


@app.get("/api/v1/vendors/{vendor_id}/statement", tags=["Vendors"])
def get_vendor_statement(vendor_id: int, db: Session = Depends(get_db)) -> dict:
    lines = store.vendor_statement(db, vendor_id)
    return {
        "data": {
            "vendor_id": vendor_id,
            "balance": float(lines[-1].balance) if lines else 0.0,
            "lines": [line.to_dict() for line in lines],
        },
        "meta": _meta(),
    }


@app.get("/api/v1/vendors/{vendor_id}/suggested-rate", tags=["Vendors"])
def get_vendor_suggested_rate(
    vendor_id: int,
    category: str = Query(...),
    subcategory: str = Query(...),
    db: Session = Depends(get_db),
) -> dict:
    vendor = db.get(Vendor, vendor_id)
    if not vendor:
        raise HTTPException(status_code=404, detail="vendor not found")
    rate = suggest_purchase_rate(vendor.custom_pricing, category.strip().lower(), subcategory.strip().lower())
    return {
        "data": {
            "vendor_id": vendor.id,
            "category": category,
            "subcategory": subcategory,
            "rate_per_kg": _money(rate),
        },
        "meta": _meta(),
    }


def _hotel_data(hotel: Hotel) -> dict:
    return {
        "hotel_id": hotel.id,
        "name": hotel.name,
        "contact_person": hotel.contact_person,
        "phone": hotel.phone,
        "address": hotel.address,
        "order_frequency": hotel.order_frequency,
        "preferred_delivery_time": hotel.preferred_delivery_time,
        "payment_terms": hotel.payment_terms,
        "credit_limit": _money(hotel.credit_limit),
        "preferred_products": hotel.preferred_products,
    }


PreferredProducts = Union[str, dict[str, Any], list[Any], None]


def _preferred_text(value: PreferredProducts) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value)


class HotelCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'name': 'Pearl Continental', 'contact_person': 'Mr. Aslam', 'phone': '042-111-505-505', 'order_frequency': 'daily', 'preferred_delivery_time': '06:00-08:00', 'payment_terms': '15days', 'credit_limit': 50000, 'preferred_products': '10kg chicken leg, 5kg mutton whole'}}}
    name: str = Field(min_length=1)
    contact_person: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    order_frequency: Optional[str] = None
    preferred_delivery_time: Optional[str] = None
    payment_terms: Optional[str] = None
    credit_limit: Optional[Decimal] = Field(default=None, ge=0)
    preferred_products: PreferredProducts = None


class HotelUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    contact_person: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    order_frequency: Optional[str] = None
    preferred_delivery_time: Optional[str] = None
    payment_terms: Optional[str] = None
    credit_limit: Optional[Decimal] = Field(default=None, ge=0)
    preferred_products: PreferredProducts = None


@app.post("/api/v1/hotels", tags=["Hotels"])
def create_hotel(payload: HotelCreate, db: Session = Depends(get_db)) -> dict:
    fields = payload.model_dump()
    fields["preferred_products"] = _preferred_text(payload.preferred_products)
    hotel = Hotel(created_at=_now(), **fields)
    db.add(hotel)
    db.commit()
    db.refresh(hotel)
    return {"data": _hotel_data(hotel), "meta": _meta()}


@app.get("/api/v1/hotels/{hotel_id}", tags=["Hotels"])
def get_hotel(hotel_id: int, db: Session = Depends(get_db)) -> dict:
    hotel = db.get(Hotel, hotel_id)
    if not hotel:
        raise HTTPException(status_code=404, detail="hotel not found")
    return {"data": _hotel_data(hotel), "meta": _meta()}


@app.patch("/api/v1/hotels/{hotel_id}", tags=["Hotels"])
def update_hotel(hotel_id: int, payload: HotelUpdate, db: Session = Depends(get_db)) -> dict:
    hotel = db.get(Hotel, hotel_id)
    if not hotel:
        raise HTTPException(status_code=404, detail="hotel not found")
    changes = payload.model_dump(exclude_unset=True)
    if "preferred_products" in changes:
        changes["preferred_products"] = _preferred_text(payload.preferred_products)
    for key, value in changes.items():
        setattr(hotel, key, value)
    db.commit()
    db.refresh(hotel)
    return {"data": _hotel_data(hotel), "meta": _meta()}


@app.get("/api/v1/hotels", tags=["Hotels"])
def list_hotels(
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    rows, next_cursor = _paginate_by_id(db.query(Hotel), Hotel, limit, cursor)
    return {"data": [_hotel_data(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/hotels/{hotel_id}/order-suggestions", tags=["Hotels"])
def get_hotel_order_suggestions(hotel_id: int, db: Session = Depends(get_db)) -> dict:
    suggestions = store.order_suggestions(db, hotel_id)
    warnings = [] if suggestions else ["no order suggestions could be derived; enter lines manually"]
    return {
        "data": {"hotel_id": hotel_id, "lines": [line.to_dict() for line in suggestions]},
        "meta": _meta(warnings=warnings),
    }


@app.get("/api/v1/hotels/{hotel_id}/outstanding", tags=["Hotels"])
def get_hotel_outstanding(hotel_id: int, db: Session = Depends(get_db)) -> dict:
    result = store.hotel_outstanding(db, hotel_id)
    return {
        "data": {
            "hotel_id": result["hotel_id"],
            "outstanding": float(result["outstanding"]),
            "credit_limit": _money(result["credit_limit"]),
            "over_credit_limit": result["over_credit_limit"],
            "unpaid_bills": [dict(item, total=float(item["total"])) for item in result["unpaid_bills"]],
        },
        "meta": _meta(),
    }


def _product_data(product: Product) -> dict:
    return {
        "product_id": product.id,
        "name": product.name,
        "category": product.category,
        "subcategory": product.subcategory,
        "description": product.description,
    }


class ProductCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'name': 'Chicken Leg', 'category': 'chicken', 'subcategory': 'leg', 'description': 'Skin-on leg quarters'}}}
    name: str = Field(min_length=1)
    category: str = Field(min_length=1)
    subcategory: str = Field(min_length=1)
    description: Optional[str] = None


@app.post("/api/v1/products", tags=["Products"])
def create_product(payload: ProductCreate, db: Session = Depends(get_db)) -> dict:
    product = Product(
        name=payload.name,
        category=payload.category.strip().lower(),
        subcategory=payload.subcategory.strip().lower(),
        description=payload.description,
    )
    db.add(product)
    db.commit()
    db.refresh(product)
    return {"data": _product_data(product), "meta": _meta()}


@app.get("/api/v1/products/{product_id}", tags=["Products"])
def get_product(product_id: int, db: Session = Depends(get_db)) -> dict:
    product = db.get(Product, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="product not found")
    return {"data": _product_data(product), "meta": _meta()}


@app.get("/api/v1/products", tags=["Products"])
def list_products(
    category: Optional[str] = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(Product)
    if category is not None:
        query = query.filter(Product.category == category.strip().lower())
    rows, next_cursor = _paginate_by_id(query, Product, limit, cursor)
    return {"data": [_product_data(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


class PurchaseCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'vendor_id': 1, 'category': 'chicken', 'subcategory': 'whole', 'quantity_kg': 40, 'rate_per_kg': 320, 'business_date': '2026-10-19'}}}
    vendor_id: int
    category: Optional[str] = None
    subcategory: Optional[str] = None
    product_id: Optional[int] = None
    quantity_kg: Decimal = Field(gt=0, decimal_places=3)
    rate_per_kg: Decimal = Field(gt=0, decimal_places=2)
    business_date: date
    notes: Optional[str] = None


@app.post("/api/v1/purchases", tags=["Purchases"])
def create_purchase(payload: PurchaseCreate, db: Session = Depends(get_db)) -> dict:
    entry, balance = store.create_purchase(db, **payload.model_dump())
    return {"data": dict(entry.to_dict(), vendor_balance=float(balance)), "meta": _meta()}


class RetailSaleCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'category': 'chicken', 'subcategory': 'whole', 'quantity_kg': 2.5, 'rate_per_kg': 400, 'business_date': '2026-10-19'}}}
    category: Optional[str] = None
    subcategory: Optional[str] = None
    product_id: Optional[int] = None
    quantity_kg: Decimal = Field(gt=0, decimal_places=3)
    rate_per_kg: Decimal = Field(gt=0, decimal_places=2)
    business_date: date
    notes: Optional[str] = None


@app.post("/api/v1/retail-sales", tags=["Sales"])
def create_retail_sale(payload: RetailSaleCreate, db: Session = Depends(get_db)) -> dict:
    entry = store.create_retail_sale(db, **payload.model_dump())
    return {"data": entry.to_dict(), "meta": _meta()}


class HotelBillLine(BaseModel):
    category: Optional[str] = None
    subcategory: Optional[str] = None
    product_id: Optional[int] = None
    quantity_kg: Decimal = Field(gt=0, decimal_places=3)
    rate_per_kg: Decimal = Field(gt=0, decimal_places=2)


class HotelBillCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'hotel_id': 1, 'business_date': '2026-10-19', 'bill_number': None, 'is_paid': False, 'items': [{'category': 'chicken', 'subcategory': 'leg', 'quantity_kg': 10, 'rate_per_kg': 450}]}}}
    hotel_id: int
    business_date: date
    bill_number: Optional[str] = None
    is_paid: bool = False
    items: list[HotelBillLine] = Field(min_length=1)


def _bill_data(db: Session, bill: HotelBill, lines: list[LedgerEntry]) -> dict:
    return {
        "hotel_bill_id": bill.id,
        "hotel_id": bill.hotel_id,
        "bill_number": bill.bill_number,
        "business_date": bill.business_date.isoformat(),
        "is_paid": bill.is_paid,
        "total": float(store.bill_total(db, bill.id)),
        "items": [line.to_dict() for line in lines],
    }


@app.post("/api/v1/hotel-bills", tags=["Sales"])
def create_hotel_bill(payload: HotelBillCreate, db: Session = Depends(get_db)) -> dict:
    bill, lines = store.create_hotel_bill(
        db,
        hotel_id=payload.hotel_id,
        business_date=payload.business_date,
        bill_number=payload.bill_number,
        is_paid=payload.is_paid,
        lines=[store.SaleLine(**item.model_dump()) for item in payload.items],
    )
    return {"data": _bill_data(db, bill, lines), "meta": _meta()}


@app.get("/api/v1/hotel-bills/{hotel_bill_id}", tags=["Sales"])
def get_hotel_bill(hotel_bill_id: int, db: Session = Depends(get_db)) -> dict:
    bill = db.get(HotelBill, hotel_bill_id)
    if not bill:
        raise HTTPException(status_code=404, detail="hotel bill not found")
    return {"data": _bill_data(db, bill, store.bill_lines(db, bill.id)), "meta": _meta()}


class BillPaymentStatus(BaseModel):
    is_paid: bool = True


@app.post("/api/v1/hotel-bills/{hotel_bill_id}:markPaid", tags=["Sales"])
def mark_hotel_bill_paid(
    hotel_bill_id: int,
    payload: Optional[BillPaymentStatus] = None,
    db: Session = Depends(get_db),
) -> dict:
    is_paid = payload.is_paid if payload is not None else True
    bill = store.set_bill_paid(db, hotel_bill_id, is_paid)
    return {"data": _bill_data(db, bill, store.bill_lines(db, bill.id)), "meta": _meta()}


class VendorPaymentCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'vendor_id': 1, 'amount': 5000, 'business_date': '2026-10-19', 'notes': 'cash'}}}
    vendor_id: int
    amount: Decimal = Field(gt=0, decimal_places=2)
    business_date: date
    notes: Optional[str] = None


@app.post("/api/v1/vendor-payments", tags=["Vendor Payments"])
def create_vendor_payment(payload: VendorPaymentCreate, db: Session = Depends(get_db)) -> dict:
    entry, balance = store.create_payment(db, **payload.model_dump())
    return {"data": dict(entry.to_dict(), vendor_balance=float(balance)), "meta": _meta()}


@app.get("/api/v1/ledger-events", tags=["Ledger"])
def list_ledger_events(
    date_from: Optional[date] = Query(default=None),
    date_to: Optional[date] = Query(default=None),
    vendor_id: Optional[int] = Query(default=None),
    hotel_id: Optional[int] = Query(default=None),
    kind: Optional[Literal["purchase", "retail_sale", "hotel_sale", "vendor_payment"]] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    entries = store.query_events(
        db,
        date_from=date_from,
        date_to=date_to,
        vendor_id=vendor_id,
        hotel_id=hotel_id,
        kind=kind,
    )
    return {"data": [entry.to_dict() for entry in entries], "meta": _meta()}


@app.delete("/api/v1/ledger-events/{event_id}", tags=["Ledger"])
def delete_ledger_event(event_id: int, db: Session = Depends(get_db)) -> dict:
    result = store.delete_event(db, event_id)
    return {
        "data": {
            "event_id": result["event_id"],
            "kind": result["kind"],
            "deleted": True,
            "vendor_balance": _money(result["vendor_balance"]),
        },
        "meta": _meta(),
    }


@app.get("/api/v1/inventory", tags=["Reports"])
def get_inventory(
    as_of: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    as_of = as_of or date.today()
    positions = store.get_inventory_positions(db, as_of)
    return {
        "data": {"as_of": as_of.isoformat(), "positions": [p.to_dict() for p in positions]},
        "meta": _meta(),
    }


@app.get("/api/v1/reports/daily", tags=["Reports"])
def get_daily_report(
    business_date: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    summary = store.get_daily_summary(db, business_date or date.today())
    return {"data": summary.to_dict(), "meta": _meta()}


@app.get("/api/v1/reports/range", tags=["Reports"])
def get_range_report(
    date_from: date = Query(...),
    date_to: date = Query(...),
    db: Session = Depends(get_db),
) -> dict:
    summaries = store.get_range_summary(db, date_from, date_to)
    return {"data": [summary.to_dict() for summary in summaries], "meta": _meta()}
