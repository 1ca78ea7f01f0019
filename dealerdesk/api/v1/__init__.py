# API v1 Package
from dealerdesk.api.v1 import quotations, invoices, inventory, analytics, currency

__all__ = [
    'quotations',
    'invoices',
    'inventory',
    'analytics',
    'currency',
]
