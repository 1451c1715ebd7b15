from decimal import Decimal
from typing import Optional


class LedgerError(Exception):
    status_code = 500
    retryable = False

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> dict:
        return {"detail": self.detail, "error": type(self).__name__, "retryable": self.retryable}


class ValidationError(LedgerError):
    status_code = 400


class NotFound(LedgerError):
    status_code = 404


class InsufficientStock(LedgerError):
    status_code = 409

    def __init__(
        self,
        available: Decimal,
        category: Optional[str] = None,
        subcategory: Optional[str] = None,
    ) -> None:
        super().__init__(f"insufficient stock for {category}/{subcategory}: {available} kg available")
        self.available = available
        self.category = category
        self.subcategory = subcategory

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["available_kg"] = float(self.available)
        body["category"] = self.category
        body["subcategory"] = self.subcategory
        return body


class StoreUnavailable(LedgerError):
    status_code = 503
    retryable = True
