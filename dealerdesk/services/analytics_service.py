"""
Analytics Service - Profit reporting over invoices and quotations
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session, selectinload

from dealerdesk.core.exceptions import InternalError
from dealerdesk.models import Invoice, InvoiceStatus, Quotation, StockItem
from dealerdesk.services.expense_service import ExpenseService
from dealerdesk.services.pricing import expenses_total, normalize_expenses, round_money, to_decimal

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
DEFAULT_WINDOW_DAYS = 30
GROUP_BY_OPTIONS = ("day", "week", "month", "year", "none")

PAID_STATUSES = {InvoiceStatus.PAID.value}
PENDING_STATUSES = {InvoiceStatus.DRAFT.value, InvoiceStatus.SENT.value}


@dataclass
class InvoiceFigures:
    """Profit figures for one invoice"""
    currency: str
    status: str
    created_at: datetime
    total_amount: Decimal
    vat_amount: Decimal
    subtotal: Decimal
    discount: Decimal
    more_expense: Decimal
    additional_expense: Decimal
    item_cost: Decimal
    selling_amount: Decimal

    @property
    def net_revenue(self) -> Decimal:
        return self.selling_amount - self.discount

    @property
    def total_cost(self) -> Decimal:
        return self.item_cost + self.additional_expense + self.more_expense

    @property
    def profit_without_vat(self) -> Decimal:
        return self.net_revenue - self.total_cost

    @property
    def profit_with_vat(self) -> Decimal:
        return self.profit_without_vat - self.vat_amount


def invoice_figures(invoice, cost_prices: Dict[int, Decimal]) -> InvoiceFigures:
    """
    Compute the figures of one invoice, or of a quotation (no more-expense).

    Item cost uses the stock item's current cost price, so historical profit
    moves when costs are edited.
    """
    item_cost = ZERO
    selling = ZERO
    for item in invoice.items:
        cost_price = cost_prices.get(item.stock_item_id, ZERO) if item.stock_item_id else ZERO
        item_cost += to_decimal(cost_price) * to_decimal(item.quantity)
        selling += to_decimal(item.total_price)

    return InvoiceFigures(
        currency=invoice.currency or "AED",
        status=invoice.status,
        created_at=invoice.created_at,
        total_amount=to_decimal(invoice.total_amount),
        vat_amount=to_decimal(invoice.vat_amount),
        subtotal=to_decimal(invoice.subtotal),
        discount=to_decimal(invoice.discount_amount),
        more_expense=to_decimal(getattr(invoice, "more_expense_amount", 0)),
        additional_expense=expenses_total(normalize_expenses(invoice.additional_expenses)),
        item_cost=round_money(item_cost),
        selling_amount=round_money(selling),
    )


def time_bucket(moment: datetime, group_by: str) -> Tuple[str, date, dict]:
    """(key, bucket start date, id parts) for a timestamp. Weeks are ISO weeks starting Monday."""
    day = moment.date() if isinstance(moment, datetime) else moment
    if group_by == "year":
        return f"{day.year}", date(day.year, 1, 1), {"year": day.year}
    if group_by == "month":
        return f"{day.year}-{day.month:02d}", date(day.year, day.month, 1), {"year": day.year, "month": day.month}
    if group_by == "week":
        iso_year, iso_week, _ = day.isocalendar()
        monday = day - timedelta(days=day.weekday())
        return f"{iso_year}-W{iso_week:02d}", monday, {"year": iso_year, "week": iso_week}
    return day.isoformat(), day, {"year": day.year, "month": day.month, "day": day.day}


class _Totals:
    """Running totals for a summary or a time bucket"""

    FIELDS = (
        "total_amount", "total_vat_amount", "total_subtotal", "total_discount",
        "total_more_expense", "total_additional_expense", "total_cost_amount",
        "total_selling_amount", "total_net_revenue", "total_profit_without_vat",
        "total_profit_with_vat", "paid_amount", "pending_amount",
        "paid_profit_without_vat", "paid_profit_with_vat",
        "pending_profit_without_vat", "pending_profit_with_vat",
    )

    PAYMENT_FIELDS = (
        "paid_amount", "pending_amount", "paid_profit_without_vat", "paid_profit_with_vat",
        "pending_profit_without_vat", "pending_profit_with_vat",
    )

    def __init__(self, track_extremes: bool = False, noun: str = "invoice", track_payment: bool = True):
        self.noun = noun
        self.track_payment = track_payment
        self.count = 0
        self.paid_count = 0
        self.pending_count = 0
        self.sums = {name: ZERO for name in self.FIELDS}
        self.track_extremes = track_extremes
        self.values: List[Decimal] = []
        self.profits_without_vat: List[Decimal] = []
        self.profits_with_vat: List[Decimal] = []

    def add(self, f: InvoiceFigures):
        s = self.sums
        self.count += 1
        s["total_amount"] += f.total_amount
        s["total_vat_amount"] += f.vat_amount
        s["total_subtotal"] += f.subtotal
        s["total_discount"] += f.discount
        s["total_more_expense"] += f.more_expense
        s["total_additional_expense"] += f.additional_expense
        s["total_cost_amount"] += f.total_cost
        s["total_selling_amount"] += f.selling_amount
        s["total_net_revenue"] += f.net_revenue
        s["total_profit_without_vat"] += f.profit_without_vat
        s["total_profit_with_vat"] += f.profit_with_vat

        if self.track_payment and f.status in PAID_STATUSES:
            self.paid_count += 1
            s["paid_amount"] += f.total_amount
            s["paid_profit_without_vat"] += f.profit_without_vat
            s["paid_profit_with_vat"] += f.profit_with_vat
        elif self.track_payment and f.status in PENDING_STATUSES:
            self.pending_count += 1
            s["pending_amount"] += f.total_amount
            s["pending_profit_without_vat"] += f.profit_without_vat
            s["pending_profit_with_vat"] += f.profit_with_vat

        if self.track_extremes:
            self.values.append(f.total_amount)
            self.profits_without_vat.append(f.profit_without_vat)
            self.profits_with_vat.append(f.profit_with_vat)

    def _average(self, name: str) -> Decimal:
        if not self.count:
            return round_money(ZERO)
        return round_money(self.sums[name] / self.count)

    def to_dict(self) -> dict:
        noun = self.noun
        data = {f"total_{noun}s": self.count}
        if self.track_payment:
            data.update({f"paid_{noun}s": self.paid_count, f"pending_{noun}s": self.pending_count})
        data.update({
            name: round_money(value) for name, value in self.sums.items()
            if self.track_payment or name not in self.PAYMENT_FIELDS
        })
        data[f"average_{noun}_value"] = self._average("total_amount")
        data["average_profit_without_vat"] = self._average("total_profit_without_vat")
        data["average_profit_with_vat"] = self._average("total_profit_with_vat")

        if self.track_extremes:
            def _min(values): return round_money(min(values)) if values else round_money(ZERO)
            def _max(values): return round_money(max(values)) if values else round_money(ZERO)
            data.update({
                f"min_{noun}_value": _min(self.values),
                f"max_{noun}_value": _max(self.values),
                "min_profit_without_vat": _min(self.profits_without_vat),
                "max_profit_without_vat": _max(self.profits_without_vat),
                "min_profit_with_vat": _min(self.profits_with_vat),
                "max_profit_with_vat": _max(self.profits_with_vat),
            })
        return data


def _net_against_expenses(summary: dict, expenses: Decimal) -> dict:
    expenses = round_money(expenses)
    profit = summary["total_profit_without_vat"]
    summary["total_expenses"] = expenses
    summary["net_profit_after_expense"] = round_money(profit - expenses)
    summary["expense_ratio"] = round_money(expenses / profit * 100) if profit > 0 else round_money(ZERO)
    return summary


def _series(buckets: Dict[str, Tuple[date, dict, _Totals]], limit: int, extra: dict = None) -> List[dict]:
    rows = []
    for key, (bucket_date, bucket_id, totals) in buckets.items():
        row = {"key": key, "id": bucket_id, "date": bucket_date.isoformat()}
        row.update(extra or {})
        row.update(totals.to_dict())
        rows.append(row)
    rows.sort(key=lambda r: r["date"])
    return rows[-limit:] if limit else rows


def calculate_sales_analytics(
    invoices: Iterable,
    cost_prices: Dict[int, Decimal],
    group_by: str = "day",
    limit: int = 30,
    expense_totals: Optional[dict] = None,
) -> dict:
    """
    Aggregate invoices into an overall summary, per-currency summaries and
    time series.

    Every invoice lands in exactly one currency bucket. The overall summary
    adds amounts across currencies without conversion.
    """
    if group_by not in GROUP_BY_OPTIONS:
        raise ValueError(f"Unsupported group_by '{group_by}'")

    overall = _Totals(track_extremes=True)
    per_currency: Dict[str, _Totals] = {}
    series: Dict[str, Tuple[date, dict, _Totals]] = {}
    currency_series: Dict[str, Dict[str, Tuple[date, dict, _Totals]]] = defaultdict(dict)

    for invoice in invoices:
        figures = invoice_figures(invoice, cost_prices)
        overall.add(figures)
        per_currency.setdefault(figures.currency, _Totals(track_extremes=True)).add(figures)

        if group_by != "none":
            key, bucket_date, bucket_id = time_bucket(figures.created_at, group_by)
            series.setdefault(key, (bucket_date, bucket_id, _Totals()))[2].add(figures)
            currency_series[figures.currency].setdefault(
                key, (bucket_date, bucket_id, _Totals())
            )[2].add(figures)

    expense_totals = expense_totals or {}
    by_currency_expenses = expense_totals.get("by_currency", {})

    summary = _net_against_expenses(overall.to_dict(), to_decimal(expense_totals.get("total", 0)))
    currency_summaries = {
        code: _net_against_expenses(
            dict(totals.to_dict(), currency=code),
            to_decimal(by_currency_expenses.get(code, {}).get("total", 0)),
        )
        for code, totals in sorted(per_currency.items())
    }

    return {
        "summary": summary,
        "currency_summaries": currency_summaries,
        "time_series": _series(series, limit) if group_by != "none" else [],
        "currency_time_series": {
            code: _series(buckets, limit, extra={"currency": code})
            for code, buckets in sorted(currency_series.items())
        } if group_by != "none" else {},
    }


def calculate_quotation_analytics(
    quotations: Iterable,
    cost_prices: Dict[int, Decimal],
    group_by: str = "day",
    limit: int = 30,
) -> dict:
    """
    Aggregate quotations into an overall summary, one summary per quotation
    status, and time series overall and per status.

    Figures are the projected profit of each offer at current cost prices.
    Amounts are added across currencies without conversion.
    """
    if group_by not in GROUP_BY_OPTIONS:
        raise ValueError(f"Unsupported group_by '{group_by}'")

    def totals(extremes=False):
        return _Totals(track_extremes=extremes, noun="quotation", track_payment=False)

    overall = totals(True)
    per_status: Dict[str, _Totals] = {}
    series: Dict[str, Tuple[date, dict, _Totals]] = {}
    status_series: Dict[str, Dict[str, Tuple[date, dict, _Totals]]] = defaultdict(dict)

    for quotation in quotations:
        figures = invoice_figures(quotation, cost_prices)
        status = figures.status or "draft"
        overall.add(figures)
        per_status.setdefault(status, totals(True)).add(figures)

        if group_by != "none":
            key, bucket_date, bucket_id = time_bucket(figures.created_at, group_by)
            series.setdefault(key, (bucket_date, bucket_id, totals()))[2].add(figures)
            status_series[status].setdefault(key, (bucket_date, bucket_id, totals()))[2].add(figures)

    return {
        "summary": overall.to_dict(),
        "status_summaries": {
            status: dict(t.to_dict(), status=status) for status, t in sorted(per_status.items())
        },
        "time_series": _series(series, limit) if group_by != "none" else [],
        "status_time_series": {
            status: _series(buckets, limit, extra={"status": status})
            for status, buckets in sorted(status_series.items())
        } if group_by != "none" else {},
    }


def quotation_breakdowns(quotations: List) -> dict:
    top_customers = {}
    for quotation in quotations:
        entry = top_customers.setdefault(quotation.customer_id, {
            "customer_id": quotation.customer_id,
            "customer_name": quotation.customer_name,
            "quotation_count": 0,
            "total_amount": ZERO,
        })
        entry["quotation_count"] += 1
        entry["total_amount"] += to_decimal(quotation.total_amount)
    customers = sorted(top_customers.values(), key=lambda c: c["total_amount"], reverse=True)[:10]
    for c in customers:
        c["total_amount"] = round_money(c["total_amount"])

    return {
        "top_customers": customers,
        "quotations_by_currency": _group_amounts(quotations, lambda q: q.currency, "currency"),
        "quotations_by_creator": _group_amounts(quotations, lambda q: q.created_by or None, "created_by"),
        "quotations_by_export_to": _group_amounts(quotations, lambda q: q.export_to or None, "export_to"),
    }


def _group_amounts(invoices, key_fn, label: str) -> List[dict]:
    groups: Dict = {}
    for invoice in invoices:
        key = key_fn(invoice)
        if key is None:
            continue
        entry = groups.setdefault(key, {label: key, "count": 0, "total_amount": ZERO})
        entry["count"] += 1
        entry["total_amount"] += to_decimal(invoice.total_amount)
    rows = list(groups.values())
    for row in rows:
        row["total_amount"] = round_money(row["total_amount"])
    return sorted(rows, key=lambda r: r["total_amount"], reverse=True)


def additional_breakdowns(invoices: List) -> dict:
    top_customers = {}
    for invoice in invoices:
        entry = top_customers.setdefault(invoice.customer_id, {
            "customer_id": invoice.customer_id,
            "customer_name": invoice.customer_name,
            "invoice_count": 0,
            "total_amount": ZERO,
        })
        entry["invoice_count"] += 1
        entry["total_amount"] += to_decimal(invoice.total_amount)
    customers = sorted(top_customers.values(), key=lambda c: c["total_amount"], reverse=True)[:10]
    for c in customers:
        c["total_amount"] = round_money(c["total_amount"])

    return {
        "top_customers": customers,
        "sales_by_status": _group_amounts(invoices, lambda i: i.status, "status"),
        "sales_by_currency": _group_amounts(invoices, lambda i: i.currency, "currency"),
        "sales_by_export_to": _group_amounts(invoices, lambda i: i.export_to or None, "export_to"),
    }


class AnalyticsService:
    def __init__(self, db: Session):
        self.db = db

    def _current_cost_prices(self, records: List) -> Dict[int, Decimal]:
        ids = {item.stock_item_id for rec in records for item in rec.items if item.stock_item_id}
        if not ids:
            return {}
        rows = self.db.query(StockItem.id, StockItem.cost_price).filter(StockItem.id.in_(ids)).all()
        return {stock_id: to_decimal(cost) for stock_id, cost in rows}

    def get_sales_analytics(
        self,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        group_by: str = "day",
        limit: int = 30,
        currency: Optional[str] = None,
        status: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        """Sales profit analytics for a window (default: the last 30 days)"""
        if group_by not in GROUP_BY_OPTIONS:
            raise ValueError(f"group_by must be one of {', '.join(GROUP_BY_OPTIONS)}")
        if limit is not None and limit < 1:
            raise ValueError("limit must be positive")

        window_defaulted = not date_from and not date_to
        if window_defaulted:
            date_from = (now or datetime.utcnow()) - timedelta(days=DEFAULT_WINDOW_DAYS)

        query = self.db.query(Invoice).options(selectinload(Invoice.items))
        if date_from:
            query = query.filter(Invoice.created_at >= date_from)
        if date_to:
            query = query.filter(Invoice.created_at <= date_to)
        if currency:
            query = query.filter(Invoice.currency == currency.upper())
        if status:
            query = query.filter(Invoice.status == status)
        invoices = query.order_by(Invoice.created_at).all()

        expense_totals = ExpenseService(self.db).get_totals(date_from=date_from, date_to=date_to)

        try:
            report = calculate_sales_analytics(
                invoices,
                self._current_cost_prices(invoices),
                group_by=group_by,
                limit=limit,
                expense_totals=expense_totals,
            )
        except (ArithmeticError, TypeError, KeyError) as e:
            logger.error("Sales analytics computation failed: %s", e, exc_info=True)
            raise InternalError("Sales analytics computation failed") from e

        report["additional"] = dict(
            additional_breakdowns(invoices),
            expenses_by_category=expense_totals["by_category"],
            expenses_by_status=expense_totals["by_status"],
        )
        report["filters"] = {
            "date_from": date_from.isoformat() if date_from else None,
            "date_to": date_to.isoformat() if date_to else None,
            "default_window": window_defaulted,
            "group_by": group_by,
            "limit": limit,
            "currency": currency,
            "status": status,
            "cost_basis": "current_cost_price",
        }
        return report

    def get_quotation_analytics(
        self,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        group_by: str = "day",
        limit: int = 30,
        status: Optional[str] = None,
        customer_id: Optional[int] = None,
        created_by: Optional[str] = None,
        currency: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        """Projected profit of quotations per status for a window (default: the last 30 days)"""
        if group_by not in GROUP_BY_OPTIONS:
            raise ValueError(f"group_by must be one of {', '.join(GROUP_BY_OPTIONS)}")
        if limit is not None and limit < 1:
            raise ValueError("limit must be positive")

        window_defaulted = not date_from and not date_to
        if window_defaulted:
            date_from = (now or datetime.utcnow()) - timedelta(days=DEFAULT_WINDOW_DAYS)

        query = self.db.query(Quotation).options(selectinload(Quotation.items))
        if date_from:
            query = query.filter(Quotation.created_at >= date_from)
        if date_to:
            query = query.filter(Quotation.created_at <= date_to)
        if status:
            query = query.filter(Quotation.status == status)
        if customer_id:
            query = query.filter(Quotation.customer_id == customer_id)
        if created_by:
            query = query.filter(Quotation.created_by == created_by)
        if currency:
            query = query.filter(Quotation.currency == currency.upper())
        quotations = query.order_by(Quotation.created_at).all()

        try:
            report = calculate_quotation_analytics(
                quotations, self._current_cost_prices(quotations), group_by=group_by, limit=limit
            )
        except (ArithmeticError, TypeError, KeyError) as e:
            logger.error("Quotation analytics computation failed: %s", e, exc_info=True)
            raise InternalError("Quotation analytics computation failed") from e

        report["additional"] = quotation_breakdowns(quotations)
        report["filters"] = {
            "date_from": date_from.isoformat() if date_from else None,
            "date_to": date_to.isoformat() if date_to else None,
            "default_window": window_defaulted,
            "group_by": group_by,
            "limit": limit,
            "status": status,
            "customer_id": customer_id,
            "created_by": created_by,
            "currency": currency,
            "cost_basis": "current_cost_price",
        }
        return report
