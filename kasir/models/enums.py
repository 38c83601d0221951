"""
Closed enumerations and state transition tables for the ledger core.

Columns store the `.value` strings; services convert through these
classes so unknown values are rejected at the boundary.
"""

from __future__ import annotations

from enum import Enum

from ..errors import InvalidState


class PaymentMethod(str, Enum):
    CASH = "CASH"
    QRIS = "QRIS"
    DEBIT = "DEBIT"


class MovementType(str, Enum):
    IN = "IN"
    OUT = "OUT"
    ADJUSTMENT = "ADJUSTMENT"
    RETURN = "RETURN"


class ReferenceType(str, Enum):
    SALE = "SALE"
    SALE_VOID = "SALE_VOID"
    RETURN = "RETURN"
    PURCHASE = "PURCHASE"
    OPNAME = "OPNAME"
    MANUAL = "MANUAL"


class CashTransactionType(str, Enum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"


class CashCategoryType(str, Enum):
    SALES = "SALES"
    RETURN = "RETURN"
    SALE_VOID = "SALE_VOID"
    PURCHASE = "PURCHASE"
    OPERATIONAL = "OPERATIONAL"
    OTHER = "OTHER"


class SaleStatus(str, Enum):
    DRAFT = "DRAFT"
    COMPLETED = "COMPLETED"
    LOCKED = "LOCKED"
    DELETED = "DELETED"


class DrawerStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    BALANCED = "BALANCED"
    OVER = "OVER"
    SHORT = "SHORT"


class ReturnStatus(str, Enum):
    COMPLETED = "COMPLETED"


SALE_TRANSITIONS: dict[SaleStatus, frozenset[SaleStatus]] = {
    SaleStatus.DRAFT: frozenset({SaleStatus.COMPLETED, SaleStatus.DELETED}),
    SaleStatus.COMPLETED: frozenset({SaleStatus.LOCKED, SaleStatus.DELETED}),
    SaleStatus.LOCKED: frozenset(),
    SaleStatus.DELETED: frozenset(),
}

DRAWER_TRANSITIONS: dict[DrawerStatus, frozenset[DrawerStatus]] = {
    DrawerStatus.OPEN: frozenset({
        DrawerStatus.CLOSED,
        DrawerStatus.BALANCED,
        DrawerStatus.OVER,
        DrawerStatus.SHORT,
    }),
    DrawerStatus.CLOSED: frozenset(),
    DrawerStatus.BALANCED: frozenset(),
    DrawerStatus.OVER: frozenset(),
    DrawerStatus.SHORT: frozenset(),
}

# Sales in these states have stock and cash posted to the ledgers
POSTED_SALE_STATUSES = (SaleStatus.COMPLETED.value, SaleStatus.LOCKED.value)


def ensure_transition(table: dict, current: str, target: Enum, *, entity: str, action: str) -> None:
    """Raise InvalidState unless `current -> target` is in the transition table."""
    current_status = type(target)(current)
    if target not in table[current_status]:
        raise InvalidState(
            f"Cannot {action} {entity} with status {current_status.value}",
            details={"status": current_status.value, "target_status": target.value},
        )
