from typing import Optional
import structlog

from medicare_billing.src.api.server.connection_handler import ConnectionHandler
from medicare_billing.src.core.config.settings import get_settings
from medicare_billing.src.core.database.db_session import get_async_session_factory
from medicare_billing.src.core.monitoring.app_metrics import MetricsCollector
from medicare_billing.src.processing.billing_engine import BillingEngine
from medicare_billing.src.processing.pricing_table import PricingTable
from medicare_billing.src.storage.billing_store import BillingStore, SQLAlchemyBillingStore

logger = structlog.get_logger(__name__)

_metrics_collector_instance: Optional[MetricsCollector] = None
_pricing_table_instance: Optional[PricingTable] = None
_billing_engine_instance: Optional[BillingEngine] = None
_billing_store_instance: Optional[BillingStore] = None

def get_metrics_collector() -> MetricsCollector:
    global _metrics_collector_instance
    if _metrics_collector_instance is None:
        _metrics_collector_instance = MetricsCollector()
        logger.info("Default MetricsCollector instance created.")
    return _metrics_collector_instance

def get_pricing_table() -> PricingTable:
    """Reference catalog, or the CSV named by SERVICE_CATALOG_PATH when set."""
    global _pricing_table_instance
    if _pricing_table_instance is None:
        app_settings = get_settings()
        if app_settings.SERVICE_CATALOG_PATH:
            _pricing_table_instance = PricingTable.from_csv(app_settings.SERVICE_CATALOG_PATH)
        else:
            _pricing_table_instance = PricingTable()
        logger.info("Default PricingTable instance created.", codes=list(_pricing_table_instance.valid_codes))
    return _pricing_table_instance

def get_billing_engine() -> BillingEngine:
    global _billing_engine_instance
    if _billing_engine_instance is None:
        _billing_engine_instance = BillingEngine(pricing_table=get_pricing_table())
        logger.info("Default BillingEngine instance created.")
    return _billing_engine_instance

def get_billing_store() -> BillingStore:
    global _billing_store_instance
    if _billing_store_instance is None:
        _billing_store_instance = SQLAlchemyBillingStore(
            db_session_factory=get_async_session_factory(),
            metrics_collector=get_metrics_collector(),
        )
        logger.info("Default SQLAlchemyBillingStore instance created.")
    return _billing_store_instance

def get_connection_handler() -> ConnectionHandler:
    app_settings = get_settings()
    return ConnectionHandler(
        billing_engine=get_billing_engine(),
        store=get_billing_store(),
        metrics_collector=get_metrics_collector(),
        greeting=app_settings.GREETING_MESSAGE,
        io_timeout_seconds=app_settings.CONNECTION_IO_TIMEOUT_SECONDS,
    )
