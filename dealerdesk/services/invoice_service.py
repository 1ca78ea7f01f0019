"""
Invoice Service - Invoices created from approved quotations, and payments
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from dealerdesk.core.config import settings
from dealerdesk.core.exceptions import (
    ConflictError, DealerDeskError, InvalidTransitionError, NotFoundError
)
from dealerdesk.models import (
    Invoice, InvoiceItem, InvoiceStatus, InvoiceStatusHistory, PaymentStatus, QuotationStatus
)
from dealerdesk.services.company_service import CompanyProfile
from dealerdesk.services.pricing import normalize_expenses, round_money, serialize_expenses, to_decimal
from dealerdesk.services.quotation_service import QuotationService, unit_requests

logger = logging.getLogger(__name__)

INVOICE_CREATED_NOTE = "Invoice created from this quotation"


def payment_state(paid_amount: Decimal, final_total: Decimal):
    """
    (payment status, invoice status) for the amount received so far.

    Nothing received is always due, even against a zero total.
    """
    if paid_amount <= 0:
        return PaymentStatus.DUE.value, InvoiceStatus.DRAFT.value
    if paid_amount >= final_total:
        return PaymentStatus.FULLY_PAID.value, InvoiceStatus.PAID.value
    return PaymentStatus.PARTIALLY_PAID.value, InvoiceStatus.SENT.value


class InvoiceService:
    def __init__(self, db: Session):
        self.db = db
        self.quotations = QuotationService(db)

    def get_by_id(self, invoice_id: int) -> Optional[Invoice]:
        return self.db.query(Invoice).options(
            selectinload(Invoice.items),
            selectinload(Invoice.status_history)
        ).filter(Invoice.id == invoice_id).first()

    def get(self, invoice_id: int) -> Invoice:
        invoice = self.get_by_id(invoice_id)
        if not invoice:
            raise NotFoundError("Invoice", invoice_id)
        return invoice

    def list(self, status: str = None, currency: str = None,
             date_from: datetime = None, date_to: datetime = None) -> List[Invoice]:
        query = self.db.query(Invoice)
        if status:
            query = query.filter(Invoice.status == status)
        if currency:
            query = query.filter(Invoice.currency == currency.upper())
        if date_from:
            query = query.filter(Invoice.created_at >= date_from)
        if date_to:
            query = query.filter(Invoice.created_at <= date_to)
        return query.order_by(Invoice.created_at.desc(), Invoice.id.desc()).all()

    def get_next_number(self, now: datetime = None) -> str:
        """Generate next invoice number, sequential within the year"""
        year = (now or datetime.utcnow()).year
        prefix = f"CI-{year}-"
        last = self.db.query(Invoice).filter(
            Invoice.invoice_number.like(f"{prefix}%")
        ).order_by(Invoice.id.desc()).first()

        if last:
            try:
                num = int(last.invoice_number.replace(prefix, ""))
                return f"{prefix}{num + 1:04d}"
            except ValueError:
                pass

        return f"{prefix}0001"

    def _append_history(self, invoice: Invoice, status: str, actor_id: str, note: str = None):
        invoice.status_history.append(InvoiceStatusHistory(
            status=status,
            changed_at=datetime.utcnow(),
            actor_id=actor_id,
            note=note,
        ))

    def create_from_quotation(self, invoice_data, actor_id: str, company: CompanyProfile) -> Invoice:
        """
        Issue the invoice for an approved quotation.

        The quotation's held units are finalized (hold -> sold, quantity
        untouched since it left stock with the hold) and the quotation moves
        to confirmed. The money summary is copied, never recomputed.
        """
        quotation = self.quotations.get(invoice_data.quotation_id)
        if quotation.status != QuotationStatus.APPROVED.value:
            raise InvalidTransitionError(
                quotation.status, QuotationStatus.CONFIRMED.value,
                "only approved quotations can be invoiced"
            )
        if quotation.invoice is not None:
            raise ConflictError(
                f"Quotation {quotation.quotation_number} already has invoice {quotation.invoice.invoice_number}"
            )
        if QuotationService.is_lapsed(quotation):
            raise InvalidTransitionError(
                quotation.status, QuotationStatus.CONFIRMED.value, "quotation validity has lapsed"
            )

        more_expense = invoice_data.more_expense
        more_expense_amount = round_money(more_expense.amount if more_expense else 0)
        final_total = round_money(to_decimal(quotation.total_amount) + more_expense_amount)
        if final_total <= 0:
            raise DealerDeskError(
                f"Quotation {quotation.quotation_number} totals {final_total}; nothing to invoice"
            )

        result = self.quotations.ledger.mark_sold_batch(unit_requests(quotation.items), quotation.quotation_ref)
        result.raise_if_failed("sell")

        payment = invoice_data.payment
        paid_amount = round_money(payment.amount if payment else 0)
        payment_status, status = payment_state(paid_amount, final_total)

        now = datetime.utcnow()
        invoice = Invoice(
            invoice_number=self.get_next_number(now),
            quotation=quotation,
            quotation_number=quotation.quotation_number,
            customer_id=quotation.customer_id,
            customer_code=quotation.customer_code,
            customer_name=quotation.customer_name,
            customer_email=quotation.customer_email,
            customer_phone=quotation.customer_phone,
            customer_address=quotation.customer_address,
            customer_trn=quotation.customer_trn,
            company_name=company.name,
            company_address=company.address,
            company_trn=company.trn,
            bank_name=company.bank_name,
            bank_account=company.bank_account,
            iban=company.iban,
            bank_currency=company.bank_currency or quotation.currency,
            title=quotation.title,
            export_to=quotation.export_to,
            currency=quotation.currency,
            subtotal=quotation.subtotal,
            discount_value=quotation.discount_value,
            discount_type=quotation.discount_type,
            discount_amount=quotation.discount_amount,
            additional_expenses=serialize_expenses(
                normalize_expenses(quotation.additional_expenses, quotation.currency)
            ),
            vat_percent=quotation.vat_percent,
            vat_amount=quotation.vat_amount,
            total_amount=quotation.total_amount,
            more_expense_description=(more_expense.description if more_expense else None) or "",
            more_expense_amount=more_expense_amount,
            final_total=final_total,
            payment_status=payment_status,
            payment_amount=paid_amount,
            payment_method=(payment.method.value if payment and payment.method else None),
            payment_date=(payment.payment_date or now) if paid_amount > 0 else None,
            payment_notes=payment.notes if payment else None,
            due_date=invoice_data.due_date or now + timedelta(days=settings.INVOICE_DUE_DAYS),
            status=status,
            notes=invoice_data.notes or quotation.notes,
            quotation_created_by=quotation.created_by,
            created_by=actor_id,
            created_at=now,
        )
        invoice.items = [
            InvoiceItem(
                position=item.position,
                stock_item_id=item.stock_item_id,
                name=item.name,
                item_type=item.item_type,
                brand=item.brand,
                model=item.model,
                year=item.year,
                color=item.color,
                description=item.description,
                unit_price=item.unit_price,
                quantity=item.quantity,
                chassis_numbers=list(item.chassis_numbers or []),
                total_price=item.total_price,
            )
            for item in quotation.items
        ]
        self._append_history(invoice, status, actor_id, f"Created from quotation {quotation.quotation_number}")
        self.db.add(invoice)
        try:
            self.db.flush()
        except IntegrityError as e:
            raise ConflictError(f"Invoice number {invoice.invoice_number} already exists") from e

        self.quotations.confirm(quotation.id, actor_id, note=INVOICE_CREATED_NOTE)

        logger.info(
            "Created invoice %s from quotation %s, final total %s %s",
            invoice.invoice_number, quotation.quotation_number, final_total, invoice.currency
        )
        return invoice

    def record_payment(self, invoice_id: int, payment_data, actor_id: str) -> Invoice:
        """Record a customer payment against an invoice"""
        invoice = self.get(invoice_id)
        if invoice.status == InvoiceStatus.CANCELLED.value:
            raise DealerDeskError(f"Invoice {invoice.invoice_number} is cancelled")

        amount = round_money(payment_data.amount)
        outstanding = round_money(to_decimal(invoice.final_total) - to_decimal(invoice.payment_amount))
        if outstanding <= 0:
            raise DealerDeskError(f"Invoice {invoice.invoice_number} is already fully paid")
        if amount > outstanding:
            raise DealerDeskError(
                f"Payment {amount} exceeds outstanding balance {outstanding} on invoice {invoice.invoice_number}"
            )

        invoice.payment_amount = round_money(to_decimal(invoice.payment_amount) + amount)
        invoice.payment_method = payment_data.method.value
        invoice.payment_date = payment_data.payment_date or datetime.utcnow()
        if payment_data.notes:
            invoice.payment_notes = payment_data.notes

        payment_status, status = payment_state(invoice.payment_amount, to_decimal(invoice.final_total))
        invoice.payment_status = payment_status
        if status != invoice.status:
            invoice.status = status
            self._append_history(invoice, status, actor_id, f"Payment of {amount} {invoice.currency} recorded")

        self.db.flush()
        logger.info("Recorded payment %s on invoice %s (%s)", amount, invoice.invoice_number, payment_status)
        return invoice
