# Services Package
from dealerdesk.services.company_service import CompanyService, CompanyProfile
from dealerdesk.services.currency_service import CurrencyService, ConversionResult, currency_service
from dealerdesk.services.inventory_service import InventoryLedger, ReservationResult, StockItemService
from dealerdesk.services.quotation_service import QuotationService
from dealerdesk.services.invoice_service import InvoiceService
from dealerdesk.services.expense_service import ExpenseService
from dealerdesk.services.analytics_service import AnalyticsService, calculate_sales_analytics

__all__ = [
    'CompanyService',
    'CompanyProfile',
    'CurrencyService',
    'ConversionResult',
    'currency_service',
    'InventoryLedger',
    'ReservationResult',
    'StockItemService',
    'QuotationService',
    'InvoiceService',
    'ExpenseService',
    'AnalyticsService',
    'calculate_sales_analytics',
]
