"""
Tests for invoice creation from approved quotations and payment recording.
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from dealerdesk.core.exceptions import ConflictError, DealerDeskError, InvalidTransitionError
from dealerdesk.models import InvoiceStatus, PaymentStatus, QuotationStatus, UnitStatus
from dealerdesk.schemas import InvoiceCreate, RecordPaymentRequest
from dealerdesk.services.invoice_service import INVOICE_CREATED_NOTE, InvoiceService, payment_state
from dealerdesk.services.quotation_service import QuotationService

from tests.conftest import TEST_ACTOR, VINS


@pytest.fixture
def invoice(db, approved_quotation, company_profile):
    data = InvoiceCreate(
        quotation_id=approved_quotation.id,
        more_expense={"description": "Port handling", "amount": "500"},
    )
    return InvoiceService(db).create_from_quotation(data, TEST_ACTOR, company_profile)


class TestCreateFromQuotation:
    def test_invoice_copies_quotation_and_sells_units(self, db, invoice, approved_quotation, stock_item):
        assert invoice.invoice_number == f"CI-{datetime.utcnow().year}-0001"
        assert invoice.quotation_number == approved_quotation.quotation_number
        assert invoice.total_amount == Decimal("22680.00")
        assert invoice.more_expense_amount == Decimal("500.00")
        assert invoice.final_total == Decimal("23180.00")
        assert invoice.company_name == "DealerDesk Motors FZE"
        assert invoice.iban == "AE070331234567890123456"
        assert [i.chassis_numbers for i in invoice.items] == [VINS[:2]]
        assert invoice.payment_status == PaymentStatus.DUE.value
        assert invoice.status == InvoiceStatus.DRAFT.value

        db.expire_all()
        assert stock_item.quantity == 3
        sold = {u.chassis_number for u in stock_item.units if u.status == UnitStatus.SOLD.value}
        assert sold == set(VINS[:2])

    def test_quotation_confirmed_with_note(self, db, invoice, approved_quotation):
        assert approved_quotation.status == QuotationStatus.CONFIRMED.value
        assert approved_quotation.status_history[-1].note == INVOICE_CREATED_NOTE
        assert approved_quotation.invoice.id == invoice.id

    def test_quotation_must_be_approved(self, db, create_quotation, company_profile):
        quotation = create_quotation()
        with pytest.raises(InvalidTransitionError):
            InvoiceService(db).create_from_quotation(
                InvoiceCreate(quotation_id=quotation.id), TEST_ACTOR, company_profile
            )
        assert quotation.status == QuotationStatus.DRAFT.value

    def test_only_one_invoice_per_quotation(self, db, invoice, approved_quotation, company_profile):
        with pytest.raises(InvalidTransitionError):
            InvoiceService(db).create_from_quotation(
                InvoiceCreate(quotation_id=approved_quotation.id), TEST_ACTOR, company_profile
            )

    def test_upfront_payment(self, db, approved_quotation, company_profile):
        data = InvoiceCreate(
            quotation_id=approved_quotation.id,
            payment={"amount": "22680", "method": "bank_transfer"},
        )
        invoice = InvoiceService(db).create_from_quotation(data, TEST_ACTOR, company_profile)
        assert invoice.payment_status == PaymentStatus.FULLY_PAID.value
        assert invoice.status == InvoiceStatus.PAID.value
        assert invoice.payment_method == "bank_transfer"
        assert invoice.payment_date is not None

    def test_invoiced_quotation_cannot_be_rejected_or_deleted(self, db, invoice, approved_quotation):
        service = QuotationService(db)
        with pytest.raises(InvalidTransitionError):
            service.reject(approved_quotation.id, TEST_ACTOR)
        with pytest.raises(ConflictError):
            service.delete(approved_quotation.id)

    def test_confirmed_quotation_converts(self, db, invoice, approved_quotation):
        quotation = QuotationService(db).convert(approved_quotation.id, TEST_ACTOR)
        assert quotation.status == QuotationStatus.CONVERTED.value

    def test_lapsed_quotation_cannot_be_invoiced(self, db, approved_quotation, company_profile, stock_item):
        approved_quotation.valid_till = datetime.utcnow() - timedelta(hours=1)
        db.flush()

        with pytest.raises(InvalidTransitionError):
            InvoiceService(db).create_from_quotation(
                InvoiceCreate(quotation_id=approved_quotation.id), TEST_ACTOR, company_profile
            )

        db.expire_all()
        assert {u.status for u in stock_item.units if u.chassis_number in VINS[:2]} == {UnitStatus.HOLD.value}

    def test_invoiced_quotation_never_expires(self, db, invoice, approved_quotation):
        approved_quotation.valid_till = datetime.utcnow() - timedelta(days=10)
        db.flush()
        service = QuotationService(db)

        assert service.expire_overdue() == []
        assert service.convert(approved_quotation.id, TEST_ACTOR).status == QuotationStatus.CONVERTED.value

    def test_zero_total_quotation_not_invoiced(self, db, create_quotation, company_profile, stock_item):
        quotation = create_quotation(discount_value="100")
        service = QuotationService(db)
        for step in ("mark_sent", "mark_viewed", "accept", "send_review", "approve"):
            getattr(service, step)(quotation.id, TEST_ACTOR)
        assert quotation.total_amount == Decimal("0.00")

        with pytest.raises(DealerDeskError, match="nothing to invoice"):
            InvoiceService(db).create_from_quotation(
                InvoiceCreate(quotation_id=quotation.id), TEST_ACTOR, company_profile
            )

        db.expire_all()
        assert {u.status for u in stock_item.units if u.chassis_number in VINS[:2]} == {UnitStatus.HOLD.value}


class TestPayments:
    def test_partial_then_full(self, db, invoice):
        service = InvoiceService(db)

        service.record_payment(invoice.id, RecordPaymentRequest(amount="10000"), TEST_ACTOR)
        assert invoice.payment_status == PaymentStatus.PARTIALLY_PAID.value
        assert invoice.status == InvoiceStatus.SENT.value

        service.record_payment(invoice.id, RecordPaymentRequest(amount="13180", method="cash"), TEST_ACTOR)
        assert invoice.payment_amount == Decimal("23180.00")
        assert invoice.payment_status == PaymentStatus.FULLY_PAID.value
        assert invoice.status == InvoiceStatus.PAID.value
        assert [h.status for h in invoice.status_history] == ["draft", "sent", "paid"]

    def test_overpayment_rejected(self, db, invoice):
        with pytest.raises(DealerDeskError):
            InvoiceService(db).record_payment(invoice.id, RecordPaymentRequest(amount="23180.01"), TEST_ACTOR)
        assert invoice.payment_amount == Decimal("0")

    def test_paid_invoice_takes_no_more(self, db, invoice):
        service = InvoiceService(db)
        service.record_payment(invoice.id, RecordPaymentRequest(amount="23180"), TEST_ACTOR)
        with pytest.raises(DealerDeskError):
            service.record_payment(invoice.id, RecordPaymentRequest(amount="1"), TEST_ACTOR)


@pytest.mark.parametrize("paid, expected", [
    ("0", (PaymentStatus.DUE.value, InvoiceStatus.DRAFT.value)),
    ("1", (PaymentStatus.PARTIALLY_PAID.value, InvoiceStatus.SENT.value)),
    ("100", (PaymentStatus.FULLY_PAID.value, InvoiceStatus.PAID.value)),
])
def test_payment_state(paid, expected):
    assert payment_state(Decimal(paid), Decimal("100")) == expected


def test_nothing_received_is_due_even_on_zero_total():
    assert payment_state(Decimal("0"), Decimal("0")) == (PaymentStatus.DUE.value, InvoiceStatus.DRAFT.value)
