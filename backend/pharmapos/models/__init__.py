from .inventory import CachedInventoryItem
from .held import HeldTransaction
from .outbox import OfflineSale

__all__ = [
    'CachedInventoryItem',
    'HeldTransaction',
    'OfflineSale',
]
