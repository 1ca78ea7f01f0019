"""
Expense Service - expense totals for profit reporting
"""
from typing import Dict, Optional
from sqlalchemy.orm import Session
from sqlalchemy import func
from decimal import Decimal
from datetime import datetime

from dealerdesk.models import Expense, ExpenseStatus
from dealerdesk.services.pricing import round_money

COUNTED_STATUSES = (ExpenseStatus.APPROVED.value, ExpenseStatus.PAID.value)


class ExpenseService:
    def __init__(self, db: Session):
        self.db = db

    def _base_query(self, query, date_from: datetime = None, date_to: datetime = None,
                    category: str = None, currency: str = None):
        if date_from:
            query = query.filter(Expense.created_at >= date_from)
        if date_to:
            query = query.filter(Expense.created_at <= date_to)
        if category:
            query = query.filter(Expense.category == category)
        if currency:
            query = query.filter(Expense.currency == currency)
        return query

    def get_totals(
        self,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        category: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> Dict:
        """Approved/paid expense totals for a window, by currency, category and status"""
        counted = Expense.status.in_(COUNTED_STATUSES)

        by_currency_rows = self._base_query(
            self.db.query(Expense.currency, func.sum(Expense.amount), func.count(Expense.id)),
            date_from, date_to, category, currency
        ).filter(counted).group_by(Expense.currency).all()

        by_category_rows = self._base_query(
            self.db.query(Expense.category, func.sum(Expense.amount), func.count(Expense.id)),
            date_from, date_to, category, currency
        ).filter(counted).group_by(Expense.category).order_by(func.sum(Expense.amount).desc()).limit(10).all()

        # All statuses, so pending/rejected spend is visible too
        by_status_rows = self._base_query(
            self.db.query(Expense.status, func.sum(Expense.amount), func.count(Expense.id)),
            date_from, date_to, category, currency
        ).group_by(Expense.status).all()

        by_currency = {
            (code or "AED"): {"total": round_money(total or 0), "count": count}
            for code, total, count in by_currency_rows
        }
        return {
            # Plain sum across currencies, like the sales summary
            "total": round_money(sum((v["total"] for v in by_currency.values()), Decimal("0"))),
            "by_currency": by_currency,
            "by_category": [
                {"category": cat or "uncategorized", "total": round_money(total or 0), "count": count}
                for cat, total, count in by_category_rows
            ],
            "by_status": [
                {"status": status, "total": round_money(total or 0), "count": count}
                for status, total, count in by_status_rows
            ],
        }
