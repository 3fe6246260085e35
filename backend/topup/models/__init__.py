from .stock import StockPool, StockItem
from .ledger import LedgerAccount, LedgerTransaction

__all__ = [
    'StockPool', 'StockItem',
    'LedgerAccount', 'LedgerTransaction',
]
