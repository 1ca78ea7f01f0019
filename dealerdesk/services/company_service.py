"""
Company Service - owner company profile
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from dealerdesk.core.config import settings
from dealerdesk.models import Company
from dealerdesk.services.pricing import to_decimal


@dataclass(frozen=True)
class CompanyProfile:
    """Snapshot of the owner company passed into pricing and invoicing."""
    name: str
    vat_percent: Decimal
    trn: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    bank_name: Optional[str] = None
    bank_account: Optional[str] = None
    iban: Optional[str] = None
    bank_currency: Optional[str] = None

    @classmethod
    def from_company(cls, company: Company) -> "CompanyProfile":
        return cls(
            name=company.name,
            vat_percent=to_decimal(company.vat_percent),
            trn=company.trn,
            address=company.address,
            phone=company.phone,
            email=company.email,
            bank_name=company.bank_name,
            bank_account=company.bank_account,
            iban=company.iban,
            bank_currency=company.bank_currency,
        )

    @classmethod
    def from_settings(cls) -> "CompanyProfile":
        return cls(
            name=settings.COMPANY_NAME,
            vat_percent=to_decimal(settings.COMPANY_VAT_PERCENT),
            trn=settings.COMPANY_TRN,
        )


class CompanyService:
    def __init__(self, db: Session):
        self.db = db

    def get_owner(self) -> Optional[Company]:
        return self.db.query(Company).filter(Company.is_owner == True).order_by(Company.id).first()

    def get_profile(self) -> CompanyProfile:
        """Owner company profile, falling back to configured defaults."""
        owner = self.get_owner()
        if owner:
            return CompanyProfile.from_company(owner)
        return CompanyProfile.from_settings()
