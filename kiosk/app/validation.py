from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _strip_str(v):
    if v is None:
        return v
    return str(v).strip()


QueueStatus = Annotated[Literal["pending", "syncing", "synced", "failed"], BeforeValidator(_to_lower_str)]
ConnectionStatus = Annotated[Literal["online", "offline"], BeforeValidator(_to_lower_str)]

# Statuses that still owe the backend a submission.
QUEUE_ELIGIBLE = frozenset({"pending", "failed"})


# Payment methods come from the theater's gateway configuration (cash, card, upi,
# razorpay, ...). Keep a tight, safe character set so methods are stable identifiers.
PaymentMethod = Annotated[
    str,
    BeforeValidator(_to_lower_str),
    StringConstraints(min_length=1, max_length=32, pattern=r"^[a-z0-9][a-z0-9_-]*$"),
]

TheaterId = Annotated[str, BeforeValidator(_strip_str), StringConstraints(min_length=1, max_length=64)]
