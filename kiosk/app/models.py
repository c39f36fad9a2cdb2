from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .validation import PaymentMethod, QueueStatus


class _CamelModel(BaseModel):
    # Persisted documents and the POS screen both speak camelCase.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class OrderItemIn(_CamelModel):
    product_id: str = Field(min_length=1)
    name: Optional[str] = None
    quantity: int = Field(ge=1)
    unit_price: float = Field(default=0, ge=0)
    tax_rate: float = Field(default=0, ge=0, le=100)
    discount_percentage: float = Field(default=0, ge=0, le=100)
    special_instructions: str = ""


class OrderIn(_CamelModel):
    customer_name: str = "POS"
    items: List[OrderItemIn] = Field(min_length=1)
    order_notes: str = ""
    payment_method: PaymentMethod = "cash"
    qr_name: Optional[str] = None
    seat: Optional[str] = None
    subtotal: Optional[float] = None
    tax: Optional[float] = None
    total_discount: Optional[float] = None
    total: Optional[float] = None

    def to_payload(self) -> dict:
        payload = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        if self.total is None:
            payload.update(compute_totals(payload["items"]))
        return payload


def compute_totals(items) -> dict:
    subtotal = 0.0
    discount = 0.0
    tax = 0.0
    for it in items or []:
        base = float(it.get("unitPrice") or 0) * int(it.get("quantity") or 0)
        line_discount = base * float(it.get("discountPercentage") or 0) / 100
        subtotal += base
        discount += line_discount
        tax += (base - line_discount) * float(it.get("taxRate") or 0) / 100
    return {
        "subtotal": round(subtotal, 2),
        "totalDiscount": round(discount, 2),
        "tax": round(tax, 2),
        "total": round(subtotal - discount + tax, 2),
    }


class QueuedOrder(_CamelModel):
    queue_id: str
    theater_id: str
    payload: dict[str, Any]
    status: QueueStatus = "pending"
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime
    synced_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    server_order: Optional[dict[str, Any]] = None

    @property
    def is_pending(self) -> bool:
        return self.status in ("pending", "failed")


class SyncResult(_CamelModel):
    succeeded: int = 0
    failed: int = 0
    total: int = 0
    skipped: int = 0
    offline: bool = False
    message: str = ""

    @property
    def success(self) -> bool:
        return self.failed == 0 and not self.offline

    def to_json(self) -> dict:
        data = super().to_json()
        data["success"] = self.success
        return data


class SyncProgress(_CamelModel):
    current: int = 0
    total: int = 0
    queue_id: Optional[str] = None
    status: Optional[QueueStatus] = None
    error: Optional[str] = None
