from .catalog import Merchant, Shop, InventoryItem
from .stock import StockAccount, MovementEntry, LedgerImmutabilityError
from .sales import SaleTransaction, SaleLineItem
from .sequences import SequenceCounter

__all__ = [
    'Merchant', 'Shop', 'InventoryItem',
    'StockAccount', 'MovementEntry', 'LedgerImmutabilityError',
    'SaleTransaction', 'SaleLineItem',
    'SequenceCounter',
]
