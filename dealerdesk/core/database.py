"""
Database Configuration
"""
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from typing import Generator

from dealerdesk.core.config import settings

# Get the properly formatted database URL
db_url = settings.database_url


def configure_sqlite_transactions(sqlite_engine: Engine) -> Engine:
    """
    Let SQLAlchemy emit BEGIN itself so SAVEPOINTs behave on pysqlite.
    Also turns on foreign key enforcement.
    """
    @event.listens_for(sqlite_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(sqlite_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return sqlite_engine


# Create engine
engine = create_engine(
    db_url,
    connect_args={"check_same_thread": False} if "sqlite" in db_url else {},
    echo=settings.DEBUG
)
if engine.dialect.name == "sqlite":
    configure_sqlite_transactions(engine)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base model
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """
    Dependency that provides a database session.
    Ensures the session is closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Initialize database tables"""
    # Import all models to register them with Base
    from dealerdesk.models import (
        Contact, Company, StockItem, UnitRecord, Quotation, QuotationItem,
        QuotationStatusHistory, Invoice, InvoiceItem, InvoiceStatusHistory,
        Expense, register_history_listeners
    )
    register_history_listeners()
    Base.metadata.create_all(bind=bind or engine)
