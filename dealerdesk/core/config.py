"""
Application Configuration
"""
from pydantic_settings import BaseSettings
from decimal import Decimal
from typing import List, Optional
import warnings


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    APP_NAME: str = "DealerDesk Sales API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite:///./dealerdesk.db"

    # CORS
    CORS_ORIGINS: str = "http://localhost:5000,http://127.0.0.1:5000"

    # Exchange rates
    OPEN_EXCHANGE_RATES_APP_ID: Optional[str] = None
    EXCHANGE_RATE_URL: str = "https://openexchangerates.org/api/latest.json"
    EXCHANGE_RATE_TIMEOUT_SECONDS: float = 10.0
    EXCHANGE_RATE_CACHE_TTL_SECONDS: int = 300  # 5 minutes
    BASE_CURRENCY: str = "USD"

    # Quotations / invoices
    QUOTATION_CURRENCY: Optional[str] = "AED"  # empty disables normalization on create
    QUOTATION_VALIDITY_DAYS: int = 3
    INVOICE_DUE_DAYS: int = 30

    # Fallback owner company, used when no owner company row exists
    COMPANY_NAME: str = "DealerDesk Motors"
    COMPANY_TRN: Optional[str] = None
    COMPANY_VAT_PERCENT: Decimal = Decimal("5")

    @property
    def cors_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    @property
    def database_url(self) -> str:
        """Get properly formatted database URL"""
        url = self.DATABASE_URL
        if url.startswith("file:"):
            path = url[5:]  # Remove 'file:' prefix
            return f"sqlite:///{path}"
        return url

    @property
    def is_production(self) -> bool:
        """Check if running in production environment"""
        return self.ENVIRONMENT.lower() == "production"

    def validate_runtime_settings(self):
        """Validate settings and warn about unusable defaults"""
        if self.is_production and self.DEBUG:
            raise ValueError(
                "CRITICAL: DEBUG mode is enabled in production! "
                "Set DEBUG=False for production environment."
            )

        if not self.OPEN_EXCHANGE_RATES_APP_ID:
            warnings.warn(
                "WARNING: OPEN_EXCHANGE_RATES_APP_ID is not set. "
                "Currency conversion will fall back to cached or neutral rates.",
                UserWarning
            )

        if self.EXCHANGE_RATE_CACHE_TTL_SECONDS <= 0:
            raise ValueError("EXCHANGE_RATE_CACHE_TTL_SECONDS must be positive")

        return True

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()

# Validate on import (but don't crash in development)
try:
    settings.validate_runtime_settings()
except ValueError as e:
    if settings.is_production:
        raise
    else:
        warnings.warn(str(e), UserWarning)
