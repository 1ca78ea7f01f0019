"""
Inventory Service - Stock items and the per-unit reservation ledger
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import or_, update
from sqlalchemy.orm import Session, selectinload

from dealerdesk.core.exceptions import ConflictError, InsufficientStockError, NotFoundError
from dealerdesk.models import (
    StockItem, UnitRecord, Quotation, QuotationItem,
    StockStatus, UnitStatus, QuotationStatus
)
from dealerdesk.services.pricing import to_decimal

logger = logging.getLogger(__name__)

# (stock_item_id, [chassis numbers])
UnitRequest = Tuple[int, List[str]]

# Quotations whose units may still be on hold (expiry leaves holds in place)
HOLDING_QUOTATION_STATUSES = {
    QuotationStatus.DRAFT.value, QuotationStatus.SENT.value, QuotationStatus.VIEWED.value,
    QuotationStatus.REVIEW.value, QuotationStatus.ACCEPTED.value, QuotationStatus.APPROVED.value,
    QuotationStatus.EXPIRED.value,
}

# Failures raised as ConflictError rather than InsufficientStockError
CONFLICT_REASONS = {"conflict", "duplicate", "claimed"}


# ==================== RESERVATION LEDGER ====================

@dataclass
class ReservationFailure:
    stock_item_id: int
    reason: str  # unavailable, insufficient, duplicate, claimed, conflict
    chassis_number: Optional[str] = None
    detail: Optional[str] = None


@dataclass
class ReservationResult:
    reserved: Dict[int, List[str]] = field(default_factory=dict)
    failed: List[ReservationFailure] = field(default_factory=list)
    skipped: Dict[int, List[str]] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def raise_if_failed(self, action: str = "reserve"):
        if self.ok:
            return
        failed = [f.__dict__ for f in self.failed]
        if any(f.reason in CONFLICT_REASONS for f in self.failed):
            raise ConflictError(f"Could not {action} units: {self.describe()}")
        raise InsufficientStockError(f"Could not {action} units: {self.describe()}", failed=failed)

    def describe(self) -> str:
        parts = []
        for f in self.failed:
            target = f.chassis_number or f"stock item {f.stock_item_id}"
            parts.append(f"{target} {f.detail or f.reason}")
        return "; ".join(parts)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "reserved": self.reserved,
            "failed": [f.__dict__ for f in self.failed],
            "skipped": self.skipped,
        }


@dataclass
class _PlannedFlip:
    stock_item: StockItem
    units: List[UnitRecord]

    @property
    def chassis_numbers(self) -> List[str]:
        return [u.chassis_number for u in self.units]


@dataclass(frozen=True)
class _HoldOwner:
    """Quotation a batch acts for; units held under another ref are not its to touch."""
    ref: str
    skip_claimed: bool

    def claims(self, unit: UnitRecord) -> bool:
        return unit.hold_ref is not None and unit.hold_ref != self.ref


class _ApplyConflict(Exception):
    def __init__(self, failure: ReservationFailure):
        self.failure = failure
        super().__init__(failure.detail)


def merge_requests(
    requests: Iterable[UnitRequest],
    duplicates: Optional[List[Tuple[int, str]]] = None,
) -> "OrderedDict[int, List[str]]":
    """
    Group chassis numbers per stock item, dropping blanks and duplicates.

    A chassis number named more than once for the same stock item is kept
    once; pass ``duplicates`` to collect the repeats.
    """
    merged: "OrderedDict[int, List[str]]" = OrderedDict()
    for stock_item_id, chassis_numbers in requests:
        bucket = merged.setdefault(stock_item_id, [])
        for chassis in chassis_numbers or []:
            chassis = (chassis or "").strip()
            if not chassis:
                continue
            if chassis in bucket:
                if duplicates is not None:
                    duplicates.append((stock_item_id, chassis))
            else:
                bucket.append(chassis)
    return OrderedDict((k, v) for k, v in merged.items() if v)


class InventoryLedger:
    """
    Unit-level reservation bookkeeping.

    Every flip is planned for the whole batch first and only applied when the
    plan is clean. The apply step runs inside a savepoint and each UPDATE
    asserts the unit's expected prior status, so a concurrent writer that
    changed a unit in between makes the batch fail instead of overwriting.
    Quantity moves in the same savepoint as the unit flips.
    """

    def __init__(self, db: Session):
        self.db = db

    def _get_stock_item(self, stock_item_id: int) -> StockItem:
        item = self.db.get(StockItem, stock_item_id)
        if not item:
            raise NotFoundError("Stock item", stock_item_id)
        return item

    def _plan(
        self,
        requests: Iterable[UnitRequest],
        expected_status: str,
        quantity_delta: int,
        already_done_status: Optional[str],
        result: ReservationResult,
        owner: Optional[_HoldOwner] = None,
    ) -> List[_PlannedFlip]:
        duplicates = []
        merged = merge_requests(requests, duplicates)
        for stock_item_id, chassis in duplicates:
            result.failed.append(ReservationFailure(
                stock_item_id=stock_item_id,
                chassis_number=chassis,
                reason="duplicate",
                detail="is requested more than once",
            ))

        # Ownership only matters when the operation acts on held units
        owner = owner if UnitStatus.HOLD.value in (expected_status, already_done_status) else None
        plan = []
        for stock_item_id, chassis_numbers in merged.items():
            stock_item = self._get_stock_item(stock_item_id)
            units = {
                u.chassis_number: u
                for u in self.db.query(UnitRecord).filter(
                    UnitRecord.stock_item_id == stock_item_id,
                    UnitRecord.chassis_number.in_(chassis_numbers)
                ).all()
            }

            to_flip = []
            for chassis in chassis_numbers:
                unit = units.get(chassis)
                if unit is None:
                    logger.warning(
                        "Chassis number %s not found on stock item %s, skipping",
                        chassis, stock_item_id
                    )
                    result.skipped.setdefault(stock_item_id, []).append(chassis)
                elif owner and unit.status == UnitStatus.HOLD.value and owner.claims(unit):
                    if owner.skip_claimed:
                        logger.warning(
                            "Chassis number %s is held under %s, leaving it alone",
                            chassis, unit.hold_ref
                        )
                        result.skipped.setdefault(stock_item_id, []).append(chassis)
                    else:
                        result.failed.append(ReservationFailure(
                            stock_item_id=stock_item_id,
                            chassis_number=chassis,
                            reason="claimed",
                            detail=f"is held under {unit.hold_ref}",
                        ))
                elif already_done_status and unit.status == already_done_status:
                    continue
                elif unit.status != expected_status:
                    result.failed.append(ReservationFailure(
                        stock_item_id=stock_item_id,
                        chassis_number=chassis,
                        reason="unavailable",
                        detail=f"is {unit.status}, expected {expected_status}",
                    ))
                else:
                    to_flip.append(unit)

            if quantity_delta < 0 and len(to_flip) > (stock_item.quantity or 0):
                result.failed.append(ReservationFailure(
                    stock_item_id=stock_item_id,
                    reason="insufficient",
                    detail=f"requested {len(to_flip)} units, only {stock_item.quantity} in stock",
                ))

            if to_flip:
                plan.append(_PlannedFlip(stock_item, to_flip))
        return plan

    def _apply(self, flip: _PlannedFlip, expected_status: str, target_status: str, quantity_delta: int,
               owner: Optional[_HoldOwner] = None):
        stock_item = flip.stock_item
        requested = len(flip.chassis_numbers)

        stmt = update(UnitRecord).where(
            UnitRecord.stock_item_id == stock_item.id,
            UnitRecord.chassis_number.in_(flip.chassis_numbers),
            UnitRecord.status == expected_status,
        )
        if owner and expected_status == UnitStatus.HOLD.value:
            stmt = stmt.where(or_(UnitRecord.hold_ref.is_(None), UnitRecord.hold_ref == owner.ref))

        values = {"status": target_status, "updated_at": datetime.utcnow()}
        if target_status == UnitStatus.HOLD.value:
            values["hold_ref"] = owner.ref if owner else None
        elif target_status == UnitStatus.ACTIVE.value:
            values["hold_ref"] = None

        matched = self.db.execute(
            stmt.values(**values)
            .execution_options(synchronize_session="fetch")
        ).rowcount

        if matched != requested:
            raise _ApplyConflict(ReservationFailure(
                stock_item_id=stock_item.id,
                reason="conflict",
                detail=f"matched {matched} of {requested} units in status {expected_status}",
            ))

        if quantity_delta:
            delta = quantity_delta * matched
            stmt = update(StockItem).where(StockItem.id == stock_item.id)
            if delta < 0:
                stmt = stmt.where(StockItem.quantity >= -delta)
            changed = self.db.execute(
                stmt.values(quantity=StockItem.quantity + delta, updated_at=datetime.utcnow())
                .execution_options(synchronize_session="fetch")
            ).rowcount
            if changed != 1:
                raise _ApplyConflict(ReservationFailure(
                    stock_item_id=stock_item.id,
                    reason="conflict",
                    detail="stock quantity changed concurrently",
                ))

            self.db.refresh(stock_item)
            self._recompute_status(stock_item)
            self.db.flush()

    @staticmethod
    def _recompute_status(stock_item: StockItem):
        if stock_item.status not in (StockStatus.ACTIVE.value, StockStatus.OUT_OF_STOCK.value):
            return
        stock_item.status = (
            StockStatus.OUT_OF_STOCK.value if stock_item.quantity <= 0 else StockStatus.ACTIVE.value
        )

    def _transition_batch(
        self,
        requests: Iterable[UnitRequest],
        expected_status: str,
        target_status: str,
        quantity_delta: int,
        already_done_status: Optional[str] = None,
        owner: Optional[_HoldOwner] = None,
    ) -> ReservationResult:
        result = ReservationResult()
        plan = self._plan(requests, expected_status, quantity_delta, already_done_status, result, owner)
        if not result.ok:
            logger.warning(
                "Unit transition %s -> %s rejected at planning: %s",
                expected_status, target_status, result.describe()
            )
            return result

        try:
            with self.db.begin_nested():
                for flip in plan:
                    self._apply(flip, expected_status, target_status, quantity_delta, owner)
        except _ApplyConflict as e:
            logger.warning("Unit transition %s -> %s rolled back: %s", expected_status, target_status, e)
            result.failed.append(e.failure)
            # In-memory copies may carry values from the rolled back savepoint
            for flip in plan:
                self.db.expire(flip.stock_item)
                for unit in flip.units:
                    self.db.expire(unit)
            return result

        for flip in plan:
            result.reserved[flip.stock_item.id] = list(flip.chassis_numbers)
        return result

    # ---------- public operations ----------

    def reserve(
        self,
        stock_item_id: int,
        chassis_numbers: List[str],
        target_status: str = UnitStatus.HOLD.value,
        expected_status: str = UnitStatus.ACTIVE.value,
        adjust_quantity: bool = True,
    ) -> ReservationResult:
        """Flip units of one stock item out of ``expected_status``, taking them out of stock."""
        return self._transition_batch(
            [(stock_item_id, chassis_numbers)], expected_status, target_status,
            quantity_delta=-1 if adjust_quantity else 0,
        )

    def reserve_batch(self, requests: Iterable[UnitRequest], hold_ref: str = None) -> ReservationResult:
        """Hold every listed unit across several stock items, all or nothing, under ``hold_ref``."""
        owner = _HoldOwner(hold_ref, skip_claimed=False) if hold_ref else None
        return self._transition_batch(requests, UnitStatus.ACTIVE.value, UnitStatus.HOLD.value, -1, owner=owner)

    def release(self, stock_item_id: int, chassis_numbers: List[str]) -> ReservationResult:
        return self.release_batch([(stock_item_id, chassis_numbers)])

    def release_batch(self, requests: Iterable[UnitRequest], tolerate_released: bool = False,
                      hold_ref: str = None) -> ReservationResult:
        """
        Return held units to stock.

        With ``tolerate_released`` units already active are left alone. With
        ``hold_ref`` only units held under that ref are released; units held
        for another quotation are listed in ``skipped``. Without it (the
        administrative path) any held unit is released.
        """
        owner = _HoldOwner(hold_ref, skip_claimed=True) if hold_ref else None
        return self._transition_batch(
            requests, UnitStatus.HOLD.value, UnitStatus.ACTIVE.value, +1,
            already_done_status=UnitStatus.ACTIVE.value if tolerate_released else None,
            owner=owner,
        )

    def mark_sold(self, stock_item_id: int, chassis_numbers: List[str]) -> ReservationResult:
        return self.mark_sold_batch([(stock_item_id, chassis_numbers)])

    def mark_sold_batch(self, requests: Iterable[UnitRequest], hold_ref: str = None) -> ReservationResult:
        """Finalize held units; quantity already left stock when the hold was placed."""
        owner = _HoldOwner(hold_ref, skip_claimed=False) if hold_ref else None
        return self._transition_batch(requests, UnitStatus.HOLD.value, UnitStatus.SOLD.value, 0, owner=owner)

    def reassert_hold_batch(self, requests: Iterable[UnitRequest], hold_ref: str) -> ReservationResult:
        """Idempotent hold: own held units are left alone, active ones are held again."""
        return self._transition_batch(
            requests, UnitStatus.ACTIVE.value, UnitStatus.HOLD.value, -1,
            already_done_status=UnitStatus.HOLD.value,
            owner=_HoldOwner(hold_ref, skip_claimed=False),
        )

    def verify_quantity(self, stock_item_id: int) -> dict:
        stock_item = self._get_stock_item(stock_item_id)
        if not stock_item.units:
            return {"stock_item_id": stock_item_id, "quantity": stock_item.quantity,
                    "active_units": None, "consistent": True}
        active = sum(1 for u in stock_item.units if u.status == UnitStatus.ACTIVE.value)
        return {
            "stock_item_id": stock_item_id,
            "quantity": stock_item.quantity,
            "active_units": active,
            "consistent": active == stock_item.quantity,
        }

    def find_unit_holders(self, stock_item_id: int) -> List[dict]:
        """Which quotation holds each held unit of a stock item."""
        stock_item = self._get_stock_item(stock_item_id)
        held = [u for u in stock_item.units if u.status == UnitStatus.HOLD.value]
        if not held:
            return []

        refs = {u.hold_ref for u in held if u.hold_ref}
        by_ref = {
            q.quotation_ref: q
            for q in self.db.query(Quotation).filter(Quotation.quotation_ref.in_(refs)).all()
        } if refs else {}

        # Holds placed without a ref fall back to any open quotation listing the unit
        lines = self.db.query(QuotationItem).join(Quotation).filter(
            QuotationItem.stock_item_id == stock_item_id,
            Quotation.status.in_(HOLDING_QUOTATION_STATUSES)
        ).all()

        holders = []
        for unit in held:
            quotation = by_ref.get(unit.hold_ref)
            if quotation is None and not unit.hold_ref:
                line = next((l for l in lines if unit.chassis_number in (l.chassis_numbers or [])), None)
                quotation = line.quotation if line else None
            holders.append({
                "chassis_number": unit.chassis_number,
                "hold_ref": unit.hold_ref,
                "quotation_id": quotation.id if quotation else None,
                "quotation_number": quotation.quotation_number if quotation else None,
                "quotation_status": quotation.status if quotation else None,
                "customer_name": quotation.customer_name if quotation else None,
            })
        return holders


# ==================== STOCK ITEMS ====================

class StockItemService:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, stock_item_id: int) -> Optional[StockItem]:
        return self.db.query(StockItem).options(
            selectinload(StockItem.units)
        ).filter(StockItem.id == stock_item_id).first()

    def get(self, stock_item_id: int) -> StockItem:
        item = self.get_by_id(stock_item_id)
        if not item:
            raise NotFoundError("Stock item", stock_item_id)
        return item

    def get_by_sku(self, sku: str) -> Optional[StockItem]:
        return self.db.query(StockItem).filter(StockItem.sku == sku).first()

    def is_sku_unique(self, sku: str, exclude_id: int = None) -> bool:
        query = self.db.query(StockItem).filter(StockItem.sku == sku)
        if exclude_id:
            query = query.filter(StockItem.id != exclude_id)
        return query.first() is None

    def list(self, status: str = None, item_type: str = None) -> List[StockItem]:
        query = self.db.query(StockItem).options(selectinload(StockItem.units))
        if status:
            query = query.filter(StockItem.status == status)
        if item_type:
            query = query.filter(StockItem.item_type == item_type)
        return query.order_by(StockItem.created_at.desc(), StockItem.id.desc()).all()

    def create(self, item_data, actor_id: str = None) -> StockItem:
        """Create a stock item from a normalized import payload."""
        if not self.is_sku_unique(item_data.sku):
            raise ConflictError(f"Stock item with SKU '{item_data.sku}' already exists")

        if item_data.cost_price is not None and item_data.cost_price < 0:
            raise ValueError("Cost price cannot be negative")
        if item_data.selling_price is not None and item_data.selling_price < 0:
            raise ValueError("Selling price cannot be negative")

        chassis_numbers = list(item_data.chassis_numbers or [])
        taken = self.db.query(UnitRecord.chassis_number).filter(
            UnitRecord.chassis_number.in_(chassis_numbers)
        ).all() if chassis_numbers else []
        if taken:
            raise ConflictError(
                f"Chassis numbers already registered: {', '.join(c for (c,) in taken)}"
            )

        # Serialized stock is counted by its active units
        quantity = len(chassis_numbers) if chassis_numbers else (item_data.quantity or 0)

        item = StockItem(
            sku=item_data.sku,
            name=item_data.name,
            item_type=item_data.item_type,
            category=item_data.category,
            brand=item_data.brand,
            model=item_data.model,
            year=item_data.year,
            color=item_data.color,
            description=item_data.description,
            cost_price=to_decimal(item_data.cost_price),
            selling_price=to_decimal(item_data.selling_price),
            currency=item_data.currency.upper(),
            quantity=quantity,
            min_stock_level=item_data.min_stock_level or 0,
            status=StockStatus.ACTIVE.value if quantity > 0 else StockStatus.OUT_OF_STOCK.value,
            created_by=actor_id,
        )
        item.units = [UnitRecord(chassis_number=c, status=UnitStatus.ACTIVE.value) for c in chassis_numbers]
        self.db.add(item)
        self.db.flush()
        logger.info("Created stock item %s (%s) with %s units", item.sku, item.id, len(chassis_numbers))
        return item

    def update(self, stock_item_id: int, item_data) -> StockItem:
        """Update descriptive fields and prices; stock levels move only through the ledger."""
        item = self.get(stock_item_id)

        update_data = item_data.model_dump(exclude_unset=True)
        if "status" in update_data and update_data["status"] == StockStatus.ACTIVE.value:
            update_data["status"] = (
                StockStatus.OUT_OF_STOCK.value if item.quantity <= 0 else StockStatus.ACTIVE.value
            )
        if "currency" in update_data and update_data["currency"]:
            update_data["currency"] = update_data["currency"].upper()

        for key, value in update_data.items():
            setattr(item, key, value)

        self.db.flush()
        return item

    def list_catalog(self, currency_service, currency: str = None) -> List[dict]:
        """Active stock with only sellable units, prices shown in ``currency``."""
        rows = []
        for item in self.list(status=StockStatus.ACTIVE.value):
            rows.append({
                "id": item.id,
                "sku": item.sku,
                "name": item.name,
                "item_type": item.item_type,
                "brand": item.brand,
                "model": item.model,
                "year": item.year,
                "color": item.color,
                "selling_price": item.selling_price,
                "currency": item.currency,
                "quantity": item.quantity,
                "chassis_numbers": [
                    u.chassis_number for u in item.units if u.status == UnitStatus.ACTIVE.value
                ],
            })
        if currency:
            rows = currency_service.convert_prices(rows, currency)
        return rows
