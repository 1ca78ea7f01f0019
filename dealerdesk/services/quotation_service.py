"""
Quotation Service - approval workflow, pricing and unit holds
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from dealerdesk.core.config import settings
from dealerdesk.core.exceptions import (
    ConflictError, DealerDeskError, InsufficientStockError, InvalidTransitionError, NotFoundError
)
from dealerdesk.core.security import SYSTEM_ACTOR
from dealerdesk.models import (
    Contact, ContactType, Quotation, QuotationItem, QuotationStatus,
    QuotationStatusHistory, StockItem, UnitRecord, UnitStatus
)
from dealerdesk.services.company_service import CompanyProfile
from dealerdesk.services.inventory_service import InventoryLedger
from dealerdesk.services.pricing import (
    calculate_quotation_totals, line_total, normalize_expenses, serialize_expenses, to_decimal
)

logger = logging.getLogger(__name__)

S = QuotationStatus

TERMINAL_STATUSES = {S.REJECTED.value, S.EXPIRED.value, S.CONVERTED.value}

# Caller-requested edges. Expiry is applied by the sweep only.
ALLOWED_TRANSITIONS: Dict[str, set] = {
    S.DRAFT.value: {S.SENT.value, S.REVIEW.value},
    S.SENT.value: {S.VIEWED.value, S.ACCEPTED.value},
    S.VIEWED.value: {S.ACCEPTED.value},
    S.ACCEPTED.value: {S.REJECTED.value, S.REVIEW.value},
    S.REVIEW.value: {S.APPROVED.value},
    S.APPROVED.value: {S.CONFIRMED.value},
    S.CONFIRMED.value: {S.CONVERTED.value},
}
for _status in S:
    if _status.value not in TERMINAL_STATUSES:
        ALLOWED_TRANSITIONS.setdefault(_status.value, set()).add(S.REJECTED.value)

REPRICEABLE_STATUSES = {S.ACCEPTED.value, S.REVIEW.value}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def unit_requests(items) -> List[tuple]:
    """(stock_item_id, chassis numbers) for every line that carries chassis numbers."""
    return [
        (item.stock_item_id, list(item.chassis_numbers or []))
        for item in items
        if item.stock_item_id and item.chassis_numbers
    ]


class QuotationService:
    def __init__(self, db: Session, currency_service=None):
        self.db = db
        self.currency_service = currency_service
        self.ledger = InventoryLedger(db)

    # ---------- reads ----------

    def get_by_id(self, quotation_id: int) -> Optional[Quotation]:
        return self.db.query(Quotation).options(
            selectinload(Quotation.items),
            selectinload(Quotation.status_history)
        ).filter(Quotation.id == quotation_id).first()

    def get(self, quotation_id: int) -> Quotation:
        quotation = self.get_by_id(quotation_id)
        if not quotation:
            raise NotFoundError("Quotation", quotation_id)
        return quotation

    def get_by_number(self, quotation_number: str) -> Quotation:
        quotation = self.db.query(Quotation).filter(
            Quotation.quotation_number == quotation_number
        ).first()
        if not quotation:
            raise NotFoundError("Quotation", quotation_number)
        return quotation

    def list(
        self,
        status: str = None,
        customer_id: int = None,
        currency: str = None,
        date_from: datetime = None,
        date_to: datetime = None,
    ) -> List[Quotation]:
        query = self.db.query(Quotation)
        if status:
            query = query.filter(Quotation.status == status)
        if customer_id:
            query = query.filter(Quotation.customer_id == customer_id)
        if currency:
            query = query.filter(Quotation.currency == currency.upper())
        if date_from:
            query = query.filter(Quotation.created_at >= date_from)
        if date_to:
            query = query.filter(Quotation.created_at <= date_to)
        return query.order_by(Quotation.created_at.desc(), Quotation.id.desc()).all()

    def search(self, term: str, limit: int = 20) -> List[Quotation]:
        """Case-insensitive match on number, title and customer name, email or code"""
        pattern = f"%{term.strip()}%"
        return self.db.query(Quotation).filter(or_(
            Quotation.quotation_number.ilike(pattern),
            Quotation.title.ilike(pattern),
            Quotation.customer_name.ilike(pattern),
            Quotation.customer_email.ilike(pattern),
            Quotation.customer_code.ilike(pattern),
        )).order_by(Quotation.created_at.desc(), Quotation.id.desc()).limit(limit).all()

    def expiring_soon(self, days: int = 3, now: datetime = None) -> List[Quotation]:
        """Open, uninvoiced quotations whose validity ends within ``days``, soonest first"""
        now = now or datetime.utcnow()
        return self.db.query(Quotation).filter(
            Quotation.valid_till >= now,
            Quotation.valid_till <= now + timedelta(days=days),
            Quotation.status.notin_(TERMINAL_STATUSES),
            ~Quotation.invoice.has()
        ).order_by(Quotation.valid_till, Quotation.id).all()

    def _count_by(self, column) -> Dict:
        rows = self.db.query(column, func.count(Quotation.id)).group_by(column).all()
        return {key: count for key, count in rows if key is not None}

    def status_counts(self) -> Dict[str, int]:
        return self._count_by(Quotation.status)

    def counts(self) -> dict:
        """Quotation counts per status, currency, customer and creator"""
        customers = self.db.query(
            Quotation.customer_id, Quotation.customer_name, func.count(Quotation.id)
        ).group_by(Quotation.customer_id, Quotation.customer_name).all()
        by_customer: Dict[int, dict] = {}
        for customer_id, name, count in customers:
            entry = by_customer.setdefault(customer_id, {"customer_id": customer_id, "customer_name": name,
                                                         "count": 0})
            entry["count"] += count
        return {
            "by_status": self.status_counts(),
            "by_currency": self._count_by(Quotation.currency),
            "by_customer": sorted(by_customer.values(), key=lambda c: (-c["count"], c["customer_id"])),
            "by_creator": self._count_by(Quotation.created_by),
        }

    # ---------- numbering ----------

    def get_next_number(self, now: datetime = None) -> str:
        """Generate next quotation number, sequential within the year"""
        year = (now or datetime.utcnow()).year
        prefix = f"QUO-{year}-"
        last = self.db.query(Quotation).filter(
            Quotation.quotation_number.like(f"{prefix}%")
        ).order_by(Quotation.id.desc()).first()

        if last:
            try:
                num = int(last.quotation_number.replace(prefix, ""))
                return f"{prefix}{num + 1:06d}"
            except ValueError:
                pass

        return f"{prefix}000001"

    def generate_ref(self, now: datetime = None) -> str:
        year = (now or datetime.utcnow()).year
        return f"QID-{year}-{secrets.randbelow(900000) + 100000}"

    # ---------- helpers ----------

    def _append_history(self, quotation: Quotation, status: str, actor_id: str, note: str = None):
        quotation.status_history.append(QuotationStatusHistory(
            status=status,
            changed_at=datetime.utcnow(),
            actor_id=actor_id,
            note=note,
        ))

    def _guard(self, quotation: Quotation, target: str, now: datetime = None):
        current = quotation.status
        if not can_transition(current, target):
            raise InvalidTransitionError(current, target)
        now = now or datetime.utcnow()
        if target != S.REJECTED.value and self.is_lapsed(quotation, now):
            raise InvalidTransitionError(current, target, "quotation validity has lapsed")

    @staticmethod
    def is_lapsed(quotation: Quotation, now: datetime = None) -> bool:
        """Open quotation past valid_till. An issued invoice binds the deal, so invoiced ones never lapse."""
        now = now or datetime.utcnow()
        return (
            quotation.status not in TERMINAL_STATUSES
            and quotation.invoice is None
            and quotation.valid_till is not None
            and quotation.valid_till < now
        )

    def _transition(self, quotation_id: int, target: str, actor_id: str, note: str = None) -> Quotation:
        quotation = self.get(quotation_id)
        self._guard(quotation, target)
        quotation.status = target
        quotation.updated_by = actor_id
        self._append_history(quotation, target, actor_id, note)
        self.db.flush()
        logger.info("Quotation %s moved to %s by %s", quotation.quotation_number, target, actor_id)
        return quotation

    def _get_customer(self, customer_id: int) -> Contact:
        customer = self.db.query(Contact).filter(
            Contact.id == customer_id,
            Contact.contact_type == ContactType.CUSTOMER.value
        ).first()
        if not customer:
            raise NotFoundError("Customer", customer_id)
        return customer

    def _unit_price(self, stock_item: StockItem, line, currency: str):
        if line.unit_price is not None:
            return to_decimal(line.unit_price)
        price = to_decimal(stock_item.selling_price)
        if self.currency_service and stock_item.currency and stock_item.currency != currency:
            return self.currency_service.convert(price, stock_item.currency, currency).converted_amount
        return price

    # ---------- create ----------

    def normalize_currency(self, quotation_data):
        """Re-price the payload into the configured quotation currency, if any."""
        target = settings.QUOTATION_CURRENCY
        if not target or not self.currency_service or quotation_data.currency == target.upper():
            return quotation_data
        payload, rate = self.currency_service.convert_quotation_payload(
            quotation_data.model_dump(mode="python"), target
        )
        logger.info(
            "Quotation payload converted from %s to %s at %s",
            quotation_data.currency, target, rate
        )
        return type(quotation_data).model_validate(payload)

    def create(self, quotation_data, actor_id: str, company: CompanyProfile) -> Quotation:
        quotation_data = self.normalize_currency(quotation_data)
        customer = self._get_customer(quotation_data.customer_id)
        currency = quotation_data.currency.upper()

        lines = []
        for position, line in enumerate(quotation_data.items):
            stock_item = self.db.get(StockItem, line.stock_item_id)
            if not stock_item:
                raise NotFoundError("Stock item", line.stock_item_id)
            unit_price = self._unit_price(stock_item, line, currency)
            lines.append(QuotationItem(
                position=position,
                stock_item_id=stock_item.id,
                name=stock_item.name,
                item_type=stock_item.item_type,
                brand=stock_item.brand,
                model=stock_item.model,
                year=stock_item.year,
                color=stock_item.color,
                description=line.description or stock_item.description,
                unit_price=unit_price,
                quantity=line.quantity,
                chassis_numbers=list(line.chassis_numbers),
                total_price=line_total(line.quantity, unit_price),
            ))

        return self._open(
            customer, lines, currency, actor_id, company,
            title=quotation_data.title,
            notes=quotation_data.notes,
            export_to=quotation_data.export_to,
            discount_value=quotation_data.discount_value,
            discount_type=quotation_data.discount_type,
            additional_expenses=quotation_data.additional_expenses,
        )

    def _open(self, customer: Contact, lines: List[QuotationItem], currency: str, actor_id: str,
              company: CompanyProfile, title=None, notes=None, export_to=None, discount_value=0,
              discount_type="percentage", additional_expenses=None,
              note: str = "Quotation created") -> Quotation:
        expenses = normalize_expenses(additional_expenses, currency)
        discount_type = getattr(discount_type, "value", discount_type)
        totals = calculate_quotation_totals(
            [{"quantity": l.quantity, "unit_price": l.unit_price} for l in lines],
            discount_value=discount_value,
            discount_type=discount_type,
            additional_expenses=expenses,
            vat_percent=company.vat_percent,
        )

        now = datetime.utcnow()
        quotation_ref = self.generate_ref(now)

        # Hold every unit before anything is written; a failed plan mutates nothing
        result = self.ledger.reserve_batch(unit_requests(lines), hold_ref=quotation_ref)
        result.raise_if_failed("reserve")

        quotation = Quotation(
            quotation_number=self.get_next_number(now),
            quotation_ref=quotation_ref,
            customer_id=customer.id,
            customer_code=customer.customer_code,
            customer_name=customer.name,
            customer_email=customer.email,
            customer_phone=customer.phone,
            customer_address=customer.address,
            customer_country_code=customer.country_code,
            customer_trn=customer.trn,
            title=title,
            notes=notes,
            export_to=export_to,
            currency=currency,
            valid_till=now + timedelta(days=settings.QUOTATION_VALIDITY_DAYS),
            subtotal=totals["subtotal"],
            discount_value=to_decimal(discount_value),
            discount_type=discount_type,
            discount_amount=totals["discount_amount"],
            additional_expenses=serialize_expenses(expenses),
            vat_percent=totals["vat_percent"],
            vat_amount=totals["vat_amount"],
            total_amount=totals["total_amount"],
            status=S.DRAFT.value,
            created_by=actor_id,
            updated_by=actor_id,
            created_at=now,
        )
        quotation.items = lines
        self._append_history(quotation, S.DRAFT.value, actor_id, note)
        self.db.add(quotation)
        try:
            self.db.flush()
        except IntegrityError as e:
            raise ConflictError(f"Quotation number {quotation.quotation_number} already exists") from e

        logger.info(
            "Created quotation %s for customer %s, total %s %s, %s units held",
            quotation.quotation_number, customer.id, quotation.total_amount, currency,
            sum(len(v) for v in result.reserved.values())
        )
        return quotation

    def _pick_active_units(self, stock_item_id: int, count: int, exclude: set) -> List[str]:
        rows = self.db.query(UnitRecord.chassis_number).filter(
            UnitRecord.stock_item_id == stock_item_id,
            UnitRecord.status == UnitStatus.ACTIVE.value,
        ).order_by(UnitRecord.id).all()
        picked = [chassis for (chassis,) in rows if chassis not in exclude][:count]
        if len(picked) < count:
            raise InsufficientStockError(
                f"Stock item {stock_item_id} has {len(picked)} available units, {count} needed"
            )
        return picked

    def duplicate(self, quotation_id: int, actor_id: str, company: CompanyProfile,
                  chassis_numbers: Dict[int, List[str]] = None, title: str = None) -> Quotation:
        """
        Open a new draft with the lines and pricing of an existing quotation.

        The source keeps its units. Each line that carried chassis numbers
        holds fresh units for the copy: the ones given in ``chassis_numbers``
        (keyed by line position), otherwise the first available units of the
        same stock item. Prices are copied; VAT and the customer snapshot are
        taken as they are now.
        """
        source = self.get(quotation_id)
        chassis_numbers = {
            position: [c.strip() for c in chosen if c and c.strip()]
            for position, chosen in (chassis_numbers or {}).items()
        }
        source_items = sorted(source.items, key=lambda i: i.position)
        unknown = set(chassis_numbers) - {i.position for i in source_items}
        if unknown:
            raise DealerDeskError(
                f"Quotation {source.quotation_number} has no line at position "
                f"{', '.join(str(p) for p in sorted(unknown))}"
            )

        customer = self._get_customer(source.customer_id)
        requested = {c for chosen in chassis_numbers.values() for c in chosen}
        lines = []
        for item in source_items:
            chosen = chassis_numbers.get(item.position)
            if not chosen and item.chassis_numbers and item.stock_item_id:
                chosen = self._pick_active_units(item.stock_item_id, item.quantity, requested)
                requested.update(chosen)
            quantity = len(chosen) if chosen else item.quantity
            lines.append(QuotationItem(
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
                quantity=quantity,
                chassis_numbers=list(chosen or []),
                total_price=line_total(quantity, item.unit_price),
            ))

        quotation = self._open(
            customer, lines, source.currency, actor_id, company,
            title=title or f"Copy of {source.title or source.quotation_number}",
            notes=source.notes,
            export_to=source.export_to,
            discount_value=source.discount_value,
            discount_type=source.discount_type,
            additional_expenses=source.additional_expenses,
            note=f"Duplicated from {source.quotation_number}",
        )
        logger.info("Quotation %s duplicated as %s", source.quotation_number, quotation.quotation_number)
        return quotation

    # ---------- transitions ----------

    def mark_sent(self, quotation_id: int, actor_id: str) -> Quotation:
        return self._transition(quotation_id, S.SENT.value, actor_id)

    def mark_viewed(self, quotation_id: int, actor_id: str) -> Quotation:
        return self._transition(quotation_id, S.VIEWED.value, actor_id)

    def accept(self, quotation_id: int, actor_id: str) -> Quotation:
        return self._transition(quotation_id, S.ACCEPTED.value, actor_id)

    def send_review(self, quotation_id: int, actor_id: str) -> Quotation:
        quotation = self.get(quotation_id)
        self._guard(quotation, S.REVIEW.value)

        # Units may have drifted out of hold since creation
        result = self.ledger.reassert_hold_batch(unit_requests(quotation.items), quotation.quotation_ref)
        if not result.ok:
            raise ConflictError(
                f"Quotation {quotation.quotation_number} units are no longer available: {result.describe()}"
            )

        quotation.status = S.REVIEW.value
        quotation.updated_by = actor_id
        self._append_history(quotation, S.REVIEW.value, actor_id)
        self.db.flush()
        logger.info("Quotation %s sent for review by %s", quotation.quotation_number, actor_id)
        return quotation

    def approve(self, quotation_id: int, actor_id: str) -> Quotation:
        return self._transition(quotation_id, S.APPROVED.value, actor_id)

    def confirm(self, quotation_id: int, actor_id: str, note: str = None) -> Quotation:
        return self._transition(quotation_id, S.CONFIRMED.value, actor_id, note)

    def convert(self, quotation_id: int, actor_id: str) -> Quotation:
        return self._transition(quotation_id, S.CONVERTED.value, actor_id)

    def reject(self, quotation_id: int, actor_id: str, note: str = None) -> Quotation:
        quotation = self.get(quotation_id)
        self._guard(quotation, S.REJECTED.value)
        if quotation.invoice is not None:
            raise InvalidTransitionError(
                quotation.status, S.REJECTED.value,
                f"invoice {quotation.invoice.invoice_number} already issued"
            )

        result = self.ledger.release_batch(
            unit_requests(quotation.items), tolerate_released=True, hold_ref=quotation.quotation_ref
        )
        result.raise_if_failed("release")

        quotation.status = S.REJECTED.value
        quotation.updated_by = actor_id
        self._append_history(quotation, S.REJECTED.value, actor_id, note)
        self.db.flush()

        logger.info(
            "Quotation %s rejected by %s, %s units released",
            quotation.quotation_number, actor_id, sum(len(v) for v in result.reserved.values())
        )
        return quotation

    def expire_overdue(self, now: datetime = None) -> List[Quotation]:
        """Mark every open, uninvoiced quotation past its validity date as expired."""
        now = now or datetime.utcnow()
        overdue = self.db.query(Quotation).filter(
            Quotation.valid_till < now,
            Quotation.status.notin_(TERMINAL_STATUSES),
            ~Quotation.invoice.has()
        ).order_by(Quotation.id).all()

        for quotation in overdue:
            quotation.status = S.EXPIRED.value
            quotation.updated_by = SYSTEM_ACTOR
            self._append_history(quotation, S.EXPIRED.value, SYSTEM_ACTOR, "Validity period lapsed")
            held = unit_requests(quotation.items)
            if held:
                logger.warning(
                    "Quotation %s expired while holding units %s",
                    quotation.quotation_number, held
                )

        self.db.flush()
        if overdue:
            logger.info("Expired %s quotations", len(overdue))
        return overdue

    # ---------- pricing changes ----------

    def update_pricing(self, quotation_id: int, pricing_data, actor_id: str) -> Quotation:
        """Re-price discount/expenses of an accepted or in-review quotation with its original VAT."""
        quotation = self.get(quotation_id)
        if quotation.status not in REPRICEABLE_STATUSES:
            raise InvalidTransitionError(
                quotation.status, quotation.status,
                "only accepted or review quotations can be re-priced"
            )

        changes = pricing_data.model_dump(exclude_unset=True)
        discount_value = changes.get("discount_value", quotation.discount_value)
        discount_type = changes.get("discount_type") or quotation.discount_type
        discount_type = getattr(discount_type, "value", discount_type)
        if "additional_expenses" in changes and changes["additional_expenses"] is not None:
            expenses = normalize_expenses(changes["additional_expenses"], quotation.currency)
        else:
            expenses = normalize_expenses(quotation.additional_expenses, quotation.currency)

        totals = calculate_quotation_totals(
            [{"quantity": i.quantity, "unit_price": i.unit_price} for i in quotation.items],
            discount_value=discount_value,
            discount_type=discount_type,
            additional_expenses=expenses,
            vat_percent=quotation.vat_percent,
        )

        quotation.discount_value = to_decimal(discount_value)
        quotation.discount_type = discount_type
        quotation.discount_amount = totals["discount_amount"]
        quotation.additional_expenses = serialize_expenses(expenses)
        quotation.subtotal = totals["subtotal"]
        quotation.vat_amount = totals["vat_amount"]
        quotation.total_amount = totals["total_amount"]
        quotation.updated_by = actor_id
        self.db.flush()
        return quotation

    # ---------- admin ----------

    def delete(self, quotation_id: int) -> None:
        """Administrative delete. Held units stay held; release them separately."""
        quotation = self.get(quotation_id)
        if quotation.invoice is not None:
            raise ConflictError(
                f"Quotation {quotation.quotation_number} has invoice {quotation.invoice.invoice_number}"
            )
        held = unit_requests(quotation.items)
        if held and quotation.status not in (S.REJECTED.value,):
            logger.warning(
                "Deleting quotation %s (%s) that still references held units %s",
                quotation.quotation_number, quotation.status, held
            )
        self.db.delete(quotation)
        self.db.flush()
