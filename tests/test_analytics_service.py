"""
Tests for sales and quotation profit analytics.
"""
from datetime import date, datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from dealerdesk.models import Expense, ExpenseStatus
from dealerdesk.schemas import InvoiceCreate
from dealerdesk.services.analytics_service import (
    AnalyticsService, calculate_quotation_analytics, calculate_sales_analytics, invoice_figures, time_bucket
)
from dealerdesk.services.expense_service import ExpenseService
from dealerdesk.services.invoice_service import InvoiceService
from dealerdesk.services.quotation_service import QuotationService

from tests.conftest import TEST_ACTOR, VINS

CAR = 1
COSTS = {CAR: Decimal("9000")}


def make_invoice(currency="AED", status="draft", created_at=datetime(2026, 10, 14, 9, 30),
                 customer_id=1, customer_name="Gulf Horizon Trading", export_to="Saudi Arabia",
                 quantity=1, unit_total="12000", discount="1200", vat="540", total="11340",
                 more_expense="500", expenses=None):
    return SimpleNamespace(
        currency=currency,
        status=status,
        created_at=created_at,
        customer_id=customer_id,
        customer_name=customer_name,
        export_to=export_to,
        subtotal=Decimal(unit_total),
        discount_amount=Decimal(discount),
        vat_amount=Decimal(vat),
        total_amount=Decimal(total),
        more_expense_amount=Decimal(more_expense),
        additional_expenses=expenses if expenses is not None else [{"category": "shipping", "amount": "300"}],
        items=[SimpleNamespace(stock_item_id=CAR, quantity=quantity, total_price=Decimal(unit_total))],
    )


class TestInvoiceFigures:
    def test_profit_formulas(self):
        figures = invoice_figures(make_invoice(), COSTS)

        assert figures.net_revenue == Decimal("10800")
        assert figures.item_cost == Decimal("9000.00")
        assert figures.total_cost == Decimal("9800.00")
        assert figures.profit_without_vat == Decimal("1000.00")
        assert figures.profit_with_vat == Decimal("460.00")

    def test_unknown_cost_counts_as_zero(self):
        figures = invoice_figures(make_invoice(expenses=[], more_expense="0"), {})
        assert figures.profit_without_vat == Decimal("10800")

    def test_legacy_single_expense_object(self):
        figures = invoice_figures(make_invoice(expenses={"expenceType": "inspection", "amount": "150"}), COSTS)
        assert figures.additional_expense == Decimal("150.00")


class TestTimeBuckets:
    def test_day_month_year(self):
        moment = datetime(2026, 10, 14, 23, 59)
        assert time_bucket(moment, "day")[0] == "2026-10-14"
        assert time_bucket(moment, "month")[:2] == ("2026-10", date(2026, 10, 1))
        assert time_bucket(moment, "year")[:2] == ("2026", date(2026, 1, 1))

    def test_iso_week_starts_monday(self):
        key, start, ident = time_bucket(datetime(2026, 10, 14), "week")
        assert key == "2026-W42"
        assert start == date(2026, 10, 12)
        assert ident == {"year": 2026, "week": 42}

    def test_week_belonging_to_next_iso_year(self):
        key, start, _ = time_bucket(datetime(2024, 12, 31), "week")
        assert key == "2025-W01"
        assert start == date(2024, 12, 30)


class TestSalesAnalytics:
    @pytest.fixture
    def invoices(self):
        return [
            make_invoice(status="paid"),
            make_invoice(created_at=datetime(2026, 10, 15, 11, 0)),
            make_invoice(currency="USD", status="sent", created_at=datetime(2026, 10, 15, 12, 0),
                         customer_id=2, customer_name="Lagos Auto Imports", export_to="Nigeria",
                         unit_total="30000", discount="0", vat="1500", total="31500",
                         more_expense="0", expenses=[]),
        ]

    def test_currency_partition_covers_every_invoice(self, invoices):
        report = calculate_sales_analytics(invoices, COSTS, group_by="day")

        assert report["summary"]["total_invoices"] == 3
        assert set(report["currency_summaries"]) == {"AED", "USD"}
        assert sum(s["total_invoices"] for s in report["currency_summaries"].values()) == 3
        assert report["currency_summaries"]["AED"]["total_amount"] == Decimal("22680.00")

    def test_summary_adds_across_currencies(self, invoices):
        summary = calculate_sales_analytics(invoices, COSTS)["summary"]

        assert summary["total_amount"] == Decimal("54180.00")
        assert summary["paid_invoices"] == 1
        assert summary["pending_invoices"] == 2
        assert summary["paid_amount"] == Decimal("11340.00")
        assert summary["min_invoice_value"] == Decimal("11340.00")
        assert summary["max_invoice_value"] == Decimal("31500.00")
        assert summary["average_invoice_value"] == Decimal("18060.00")
        # 1000 + 1000 + (30000 - 9000)
        assert summary["total_profit_without_vat"] == Decimal("23000.00")

    def test_time_series_sorted_and_limited(self, invoices):
        report = calculate_sales_analytics(invoices, COSTS, group_by="day", limit=1)

        assert [row["key"] for row in report["time_series"]] == ["2026-10-15"]
        assert report["time_series"][0]["total_invoices"] == 2
        assert [row["currency"] for row in report["currency_time_series"]["USD"]] == ["USD"]

    def test_group_by_none_has_no_series(self, invoices):
        report = calculate_sales_analytics(invoices, COSTS, group_by="none")
        assert report["time_series"] == []
        assert report["currency_time_series"] == {}

    def test_expenses_netted_per_currency(self, invoices):
        expense_totals = {
            "total": Decimal("500"),
            "by_currency": {"AED": {"total": Decimal("500"), "count": 2}},
        }
        report = calculate_sales_analytics(invoices, COSTS, expense_totals=expense_totals)

        aed = report["currency_summaries"]["AED"]
        assert aed["total_expenses"] == Decimal("500.00")
        assert aed["net_profit_after_expense"] == Decimal("1500.00")
        assert aed["expense_ratio"] == Decimal("25.00")
        assert report["currency_summaries"]["USD"]["total_expenses"] == Decimal("0.00")
        assert report["summary"]["net_profit_after_expense"] == Decimal("22500.00")

    def test_empty_input(self):
        report = calculate_sales_analytics([], {})
        assert report["summary"]["total_invoices"] == 0
        assert report["summary"]["average_invoice_value"] == Decimal("0.00")
        assert report["summary"]["expense_ratio"] == Decimal("0.00")
        assert report["currency_summaries"] == {}

    def test_unknown_grouping_rejected(self):
        with pytest.raises(ValueError):
            calculate_sales_analytics([], {}, group_by="fortnight")


class TestAnalyticsService:
    def _add_expense(self, db, amount, status, category="marketing", currency="AED"):
        db.add(Expense(title=f"{category} spend", amount=Decimal(amount), currency=currency,
                       category=category, status=status, created_at=datetime.utcnow()))
        db.flush()

    def test_report_over_stored_invoices(self, db, approved_quotation, company_profile):
        InvoiceService(db).create_from_quotation(
            InvoiceCreate(quotation_id=approved_quotation.id), TEST_ACTOR, company_profile
        )
        self._add_expense(db, "400", ExpenseStatus.APPROVED.value)
        self._add_expense(db, "999", ExpenseStatus.PENDING.value)

        report = AnalyticsService(db).get_sales_analytics(group_by="month")

        summary = report["summary"]
        assert summary["total_invoices"] == 1
        assert summary["total_amount"] == Decimal("22680.00")
        # 2 x (12000 - 9000) - 2400 discount
        assert summary["total_profit_without_vat"] == Decimal("3600.00")
        assert summary["total_expenses"] == Decimal("400.00")
        assert report["filters"]["default_window"] is True
        assert report["filters"]["cost_basis"] == "current_cost_price"
        assert report["additional"]["top_customers"][0]["customer_name"] == "Gulf Horizon Trading"
        assert report["additional"]["sales_by_export_to"][0]["export_to"] == "Saudi Arabia"
        assert {row["status"] for row in report["additional"]["expenses_by_status"]} == {"approved", "pending"}

    def test_profit_follows_current_cost_price(self, db, approved_quotation, company_profile, stock_item):
        InvoiceService(db).create_from_quotation(
            InvoiceCreate(quotation_id=approved_quotation.id), TEST_ACTOR, company_profile
        )
        stock_item.cost_price = Decimal("10000")
        db.flush()

        summary = AnalyticsService(db).get_sales_analytics()["summary"]
        assert summary["total_profit_without_vat"] == Decimal("1600.00")

    def test_window_excludes_old_invoices(self, db, approved_quotation, company_profile):
        InvoiceService(db).create_from_quotation(
            InvoiceCreate(quotation_id=approved_quotation.id), TEST_ACTOR, company_profile
        )
        report = AnalyticsService(db).get_sales_analytics(now=datetime.utcnow() + timedelta(days=45))
        assert report["summary"]["total_invoices"] == 0

    def test_invalid_limit(self, db):
        with pytest.raises(ValueError):
            AnalyticsService(db).get_sales_analytics(limit=0)


class TestQuotationAnalytics:
    @pytest.fixture
    def quotations(self):
        return [
            make_invoice(status="draft", more_expense="0"),
            make_invoice(status="approved", created_at=datetime(2026, 10, 15, 11, 0), more_expense="0"),
            make_invoice(status="approved", created_at=datetime(2026, 10, 15, 12, 0), more_expense="0",
                         unit_total="30000", discount="0", vat="1500", total="31500", expenses=[]),
        ]

    def test_status_partition_covers_every_quotation(self, quotations):
        report = calculate_quotation_analytics(quotations, COSTS, group_by="day")

        assert report["summary"]["total_quotations"] == 3
        assert set(report["status_summaries"]) == {"draft", "approved"}
        assert report["status_summaries"]["approved"]["total_quotations"] == 2
        assert report["status_summaries"]["approved"]["status"] == "approved"
        # (10800 - 9300) + (30000 - 9000)
        assert report["status_summaries"]["approved"]["total_profit_without_vat"] == Decimal("22500.00")
        assert report["summary"]["max_quotation_value"] == Decimal("31500.00")

    def test_no_payment_figures(self, quotations):
        summary = calculate_quotation_analytics(quotations, COSTS)["summary"]
        assert "paid_amount" not in summary
        assert "pending_quotations" not in summary
        assert "total_invoices" not in summary

    def test_status_time_series(self, quotations):
        report = calculate_quotation_analytics(quotations, COSTS, group_by="day")

        assert [row["key"] for row in report["time_series"]] == ["2026-10-14", "2026-10-15"]
        approved = report["status_time_series"]["approved"]
        assert [(row["key"], row["status"], row["total_quotations"]) for row in approved] == [
            ("2026-10-15", "approved", 2)
        ]

    def test_group_by_none_has_no_series(self, quotations):
        report = calculate_quotation_analytics(quotations, COSTS, group_by="none")
        assert report["time_series"] == []
        assert report["status_time_series"] == {}

    def test_stored_quotations(self, db, create_quotation):
        create_quotation(chassis_numbers=VINS[:2])
        rejected = create_quotation(chassis_numbers=[VINS[2]])
        QuotationService(db).reject(rejected.id, TEST_ACTOR)

        report = AnalyticsService(db).get_quotation_analytics(group_by="month")

        assert report["summary"]["total_quotations"] == 2
        draft = report["status_summaries"]["draft"]
        assert draft["total_amount"] == Decimal("22680.00")
        # 2 x (12000 - 9000) - 2400 discount
        assert draft["total_profit_without_vat"] == Decimal("3600.00")
        assert report["status_summaries"]["rejected"]["total_quotations"] == 1
        assert report["additional"]["top_customers"][0]["quotation_count"] == 2
        assert report["additional"]["quotations_by_creator"][0]["created_by"] == TEST_ACTOR
        assert report["filters"]["default_window"] is True

    def test_stored_quotations_filtered_by_status(self, db, create_quotation):
        create_quotation(chassis_numbers=[VINS[0]])
        report = AnalyticsService(db).get_quotation_analytics(status="approved")
        assert report["summary"]["total_quotations"] == 0
        assert report["status_summaries"] == {}


def test_expense_totals_count_only_approved_and_paid(db):
    for amount, status, currency in (("100", "approved", "AED"), ("50", "paid", "USD"),
                                     ("70", "rejected", "AED")):
        db.add(Expense(title="x", amount=Decimal(amount), status=status, currency=currency, category="ops"))
    db.flush()

    totals = ExpenseService(db).get_totals()

    assert totals["total"] == Decimal("150.00")
    assert totals["by_currency"]["AED"] == {"total": Decimal("100.00"), "count": 1}
    assert totals["by_category"] == [{"category": "ops", "total": Decimal("150.00"), "count": 2}]
