from .tenancy import Store
from .inventory import Product, StockMovement, StockOpname
from .sales import Sale, SaleLine
from .cash import ExpenseCategory, CashTransaction
from .drawers import CashDrawer
from .returns import Return, ReturnLine
from .documents import DailySequence, AuditEvent

__all__ = [
    'Store',
    'Product', 'StockMovement', 'StockOpname',
    'Sale', 'SaleLine',
    'ExpenseCategory', 'CashTransaction',
    'CashDrawer',
    'Return', 'ReturnLine',
    'DailySequence', 'AuditEvent',
]
