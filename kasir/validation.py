from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, TypeVar

from .errors import ValidationError
from .time_utils import parse_iso_date, parse_iso_datetime


# Upper bound for any single amount (999,999,999,999 minor units).
# Keeps sums well inside a 64-bit column.
MAX_AMOUNT_CENTS = 999_999_999_999

E = TypeVar("E", bound=Enum)


def coerce_int(value: Any, field: str) -> int:
    """
    Strict integer coercion for API input.

    Accepts ints and plain digit strings. Rejects bools, floats,
    decimals and scientific notation.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def coerce_positive_int(value: Any, field: str) -> int:
    number = coerce_int(value, field)
    if number <= 0:
        raise ValidationError(f"{field} must be greater than zero")
    return number


def coerce_amount(value: Any, field: str, *, allow_zero: bool = False) -> int:
    amount = coerce_int(value, field)
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationError(f"{field} must be {'non-negative' if allow_zero else 'positive'}")
    if amount > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} exceeds maximum of {MAX_AMOUNT_CENTS}")
    return amount


def coerce_enum(enum_cls: type[E], value: Any, field: str) -> E:
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().upper())
        except ValueError:
            pass
    allowed = ", ".join(member.value for member in enum_cls)
    raise ValidationError(f"{field} must be one of: {allowed}")


def coerce_datetime(value: Any, field: str) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return parse_iso_datetime(value)
        except ValueError:
            raise ValidationError(f"{field} must be an ISO-8601 datetime")
    raise ValidationError(f"{field} must be an ISO-8601 datetime")


def coerce_date(value: Any, field: str) -> date | None:
    if value is None or isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return parse_iso_date(value)
        except ValueError:
            raise ValidationError(f"{field} must be an ISO-8601 date (YYYY-MM-DD)")
    raise ValidationError(f"{field} must be an ISO-8601 date (YYYY-MM-DD)")


def normalize_items(items: Iterable[Any] | None, *, allow_empty: bool = True) -> dict[int, int]:
    """
    Turn [{"product_id": .., "quantity": ..}, ...] into {product_id: quantity}.

    Repeated products are merged so each product maps to one line.
    Insertion order of first appearance is kept.
    """
    if items is None:
        items = []
    if not isinstance(items, (list, tuple)):
        raise ValidationError("items must be a list")
    if not items and not allow_empty:
        raise ValidationError("items must not be empty")

    merged: dict[int, int] = {}
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{index}] must be an object")
        if "product_id" not in item or "quantity" not in item:
            raise ValidationError(f"items[{index}] requires product_id and quantity")
        product_id = coerce_positive_int(item["product_id"], f"items[{index}].product_id")
        quantity = coerce_positive_int(item["quantity"], f"items[{index}].quantity")
        merged[product_id] = merged.get(product_id, 0) + quantity
    return merged


def optional_int_arg(args, name: str) -> int | None:
    value = args.get(name)
    if value is None or value == "":
        return None
    return coerce_int(value, name)


def bool_arg(args, name: str) -> bool | None:
    value = args.get(name)
    if value is None or value == "":
        return None
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes"}:
        return True
    if lowered in {"0", "false", "no"}:
        return False
    raise ValidationError(f"{name} must be true or false")


def window_args(args) -> tuple[datetime | None, datetime | None]:
    """Inclusive (start, end) from ?start=&end= query parameters."""
    start = coerce_datetime(args.get("start") or None, "start")
    end = coerce_datetime(args.get("end") or None, "end")
    if start and end and start > end:
        raise ValidationError("start must be before end")
    return start, end


def page_args(args) -> tuple[int | None, int | None]:
    """?page=&per_page=; page None means unpaginated."""
    return optional_int_arg(args, "page"), optional_int_arg(args, "per_page")
