from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Protocol

QUANTITY_NAME_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*kg\s+(.+)", re.IGNORECASE)

PAYMENT_TERM_DAYS = (
    ("30days", 30),
    ("15days", 15),
    ("7days", 7),
)


class CatalogProduct(Protocol):
    id: int
    name: str


@dataclass(frozen=True)
class OrderLine:
    product_id: str
    quantity_kg: Optional[Decimal]
    rate_per_kg: Optional[Decimal]

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "quantity_kg": float(self.quantity_kg) if self.quantity_kg is not None else None,
            "rate_per_kg": float(self.rate_per_kg) if self.rate_per_kg is not None else None,
        }


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite() or number <= 0:
        return None
    return number


def _first(mapping: dict, *keys: str) -> Any:
    for key in keys:
        if key in mapping:
            return mapping[key]
    return None


def _line_from_mapping(product_id: Any, details: dict) -> Optional[OrderLine]:
    if product_id is None or str(product_id).strip() == "":
        return None
    return OrderLine(
        product_id=str(product_id),
        quantity_kg=_to_decimal(_first(details, "quantityKg", "quantity_kg", "quantity")),
        rate_per_kg=_to_decimal(_first(details, "ratePerKg", "rate_per_kg", "rate")),
    )


def _from_structured(parsed: Any) -> list[OrderLine]:
    lines: list[OrderLine] = []
    if isinstance(parsed, list):
        for item in parsed:
            if not isinstance(item, dict):
                continue
            line = _line_from_mapping(_first(item, "productId", "product_id"), item)
            if line is not None:
                lines.append(line)
    elif isinstance(parsed, dict):
        for product_id, details in parsed.items():
            if isinstance(details, dict):
                line = _line_from_mapping(product_id, details)
            else:
                line = _line_from_mapping(product_id, {"quantityKg": details})
            if line is not None:
                lines.append(line)
    return lines


def find_product_by_name(name: str, catalog: Iterable[CatalogProduct]) -> Optional[CatalogProduct]:
    wanted = name.strip().lower()
    if not wanted:
        return None
    for product in catalog:
        known = (product.name or "").strip().lower()
        if known and (wanted in known or known in wanted):
            return product
    return None


def _from_text(text: str, catalog: list, fallback_rate: Decimal) -> list[OrderLine]:
    lines: list[OrderLine] = []
    for segment in text.split(","):
        match = QUANTITY_NAME_PATTERN.search(segment.strip())
        if not match:
            continue
        quantity, product_name = match.groups()
        product = find_product_by_name(product_name, catalog)
        if product is None:
            continue
        lines.append(
            OrderLine(
                product_id=str(product.id),
                quantity_kg=Decimal(quantity),
                rate_per_kg=fallback_rate,
            )
        )
    return lines


def resolve_order_suggestions(
    preferred_products: Any,
    catalog: Iterable[CatalogProduct],
    fallback_rate: Decimal = Decimal("150"),
) -> list[OrderLine]:
    """Best-effort suggested order lines for a hotel's quick-order form.

    Structured JSON is tried first, then ``<qty> kg <name>`` segments of free
    text. Anything that cannot be understood is dropped; the result is never
    an error, only possibly empty.
    """
    if preferred_products is None:
        return []
    if isinstance(preferred_products, (dict, list)):
        return _from_structured(preferred_products)
    text = str(preferred_products).strip()
    if not text:
        return []
    try:
        parsed = json.loads(text)
    except ValueError:
        return _from_text(text, list(catalog), fallback_rate)
    return _from_structured(parsed)


def suggest_purchase_rate(
    custom_pricing: Optional[dict],
    category: str,
    subcategory: str,
) -> Optional[Decimal]:
    if not custom_pricing:
        return None
    for key in (f"{category}-{subcategory}", subcategory):
        rate = _to_decimal(custom_pricing.get(key))
        if rate is not None:
            return rate
    return None


def next_bill_number(business_date: date, existing_count: int) -> str:
    return f"BILL-{business_date:%Y%m%d}-{existing_count + 1:03d}"


def payment_due_date(payment_terms: Optional[str], bill_date: date) -> Optional[date]:
    """Due date implied by a hotel's payment terms; None when the terms are unknown."""
    if not payment_terms:
        return None
    terms = payment_terms.lower()
    if "cash" in terms:
        return bill_date
    for token, days in PAYMENT_TERM_DAYS:
        if token in terms:
            return bill_date + timedelta(days=days)
    return None
