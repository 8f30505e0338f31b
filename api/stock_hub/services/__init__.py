# stock_hub/services/__init__.py
"""
Business logic services for Stock Hub.
"""
from stock_hub.services.canonical import CanonicalService
from stock_hub.services.fetch_history import FetchHistoryService
from stock_hub.services.health import HealthService
from stock_hub.services.ingestion import IngestionService
from stock_hub.services.purchases import PurchaseService
from stock_hub.services.reconciliation import ReconciliationService
from stock_hub.services.stock import StockLedger
from stock_hub.services.stock_processor import StockProcessor

__all__ = [
    "CanonicalService",
    "FetchHistoryService",
    "HealthService",
    "IngestionService",
    "PurchaseService",
    "ReconciliationService",
    "StockLedger",
    "StockProcessor",
]
