from .tenancy import Organization
from .documents import DocumentSequence
from .catalog import Product, Sale, SaleLine
from .returns import ReturnRequest, ReturnLine
from .credits import StoreCreditEntry, StoreCreditUsage

__all__ = [
    'Organization',
    'DocumentSequence',
    'Product', 'Sale', 'SaleLine',
    'ReturnRequest', 'ReturnLine',
    'StoreCreditEntry', 'StoreCreditUsage',
]
