"""
Invoice API Routes
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import datetime

from dealerdesk.core.database import get_db
from dealerdesk.core.security import Actor, get_current_actor
from dealerdesk.schemas import InvoiceCreate, InvoiceResponse, InvoiceWithItems, RecordPaymentRequest
from dealerdesk.services.company_service import CompanyService
from dealerdesk.services.invoice_service import InvoiceService

router = APIRouter(prefix="/invoices", tags=["Invoices"])


@router.post("", response_model=InvoiceWithItems, status_code=201)
async def create_invoice(
    invoice_data: InvoiceCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Create an invoice from an approved quotation"""
    company = CompanyService(db).get_profile()
    invoice = InvoiceService(db).create_from_quotation(invoice_data, actor.id, company)
    db.commit()
    return invoice


@router.get("", response_model=List[InvoiceResponse])
async def list_invoices(
    status: Optional[str] = None,
    currency: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """List invoices"""
    return InvoiceService(db).list(status, currency, date_from, date_to)


@router.get("/{invoice_id}", response_model=InvoiceWithItems)
async def get_invoice(
    invoice_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Get invoice by ID"""
    return InvoiceService(db).get(invoice_id)


@router.post("/{invoice_id}/payments", response_model=InvoiceWithItems)
async def record_payment(
    invoice_id: int,
    payment_data: RecordPaymentRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Record a customer payment"""
    invoice = InvoiceService(db).record_payment(invoice_id, payment_data, actor.id)
    db.commit()
    return invoice
